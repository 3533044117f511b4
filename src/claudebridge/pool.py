import json
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .config import MAX_RETRY_COUNT, debug_print, mask_secret
from .errors import NoCredentialsAvailable


@dataclass
class Credential:
    session_key: str
    organization_id: str = ""


def _credential_from_pair(pair: str) -> Optional[Credential]:
    pair = str(pair or "").strip()
    if not pair:
        return None
    session_key, _, org_id = pair.partition(":")
    session_key = session_key.strip()
    if not session_key:
        return None
    return Credential(session_key=session_key, organization_id=org_id.strip())


def parse_sessions(value) -> List[Credential]:  # noqa: ANN001
    """
    Parse the configured sessions into credentials.

    Accepts the env format ``"key1:org1,key2,key3:org3"``, a JSON array of such
    strings, or a list of ``{"session_key": ..., "organization_id": ...}`` objects.
    Empty entries are skipped.
    """
    if value is None:
        return []

    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                debug_print("⚠️  SESSIONS looks like JSON but could not be parsed")
                return []
        else:
            value = text.split(",")

    credentials: List[Credential] = []
    if not isinstance(value, list):
        return credentials

    for entry in value:
        credential = None
        if isinstance(entry, str):
            credential = _credential_from_pair(entry)
        elif isinstance(entry, dict):
            key = str(entry.get("session_key") or entry.get("sessionKey") or "").strip()
            if key:
                org = str(entry.get("organization_id") or entry.get("orgId") or "").strip()
                credential = Credential(session_key=key, organization_id=org)
        if credential is not None:
            credentials.append(credential)
    return credentials


def parse_bearer_credential(token: str) -> Optional[Credential]:
    """Mirror mode: ``sessionKey[:organizationId]`` from an Authorization header."""
    token = str(token or "").strip()
    scheme, _, rest = token.partition(" ")
    if scheme.lower() == "bearer":
        token = rest
    return _credential_from_pair(token)


class CredentialPool:
    """Round-robin pool of upstream session credentials.

    Shared by every concurrent request. The cursor and each credential's
    organization id are only mutated while holding ``_lock``.
    """

    def __init__(self, credentials: Optional[Iterable[Credential]] = None) -> None:
        self._credentials: List[Credential] = list(credentials or [])
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> List[Credential]:
        return list(self._credentials)

    def get(self, index: int) -> Credential:
        with self._lock:
            if not self._credentials or index < 0 or index >= len(self._credentials):
                raise NoCredentialsAvailable(f"invalid session index: {index}")
            return self._credentials[index]

    def next_credential(self) -> Credential:
        with self._lock:
            if not self._credentials:
                raise NoCredentialsAvailable("no sessions configured")
            credential = self._credentials[self._index]
            self._index = (self._index + 1) % len(self._credentials)
            return credential

    def set_organization(self, session_key: str, organization_id: str) -> None:
        with self._lock:
            for credential in self._credentials:
                if credential.session_key == session_key:
                    debug_print(f"🏢 Setting OrgID for session {mask_secret(session_key, 20)} to {organization_id}")
                    credential.organization_id = organization_id
                    return

    async def resolve_organization(self, credential: Credential, client) -> str:  # noqa: ANN001
        if not self._credentials:
            raise NoCredentialsAvailable("no sessions configured")
        with self._lock:
            cached = credential.organization_id
        if cached:
            return cached

        organization_id = await client.get_organization_id()
        self.set_organization(credential.session_key, organization_id)
        # Credentials built outside the pool (mirror mode) still get the value.
        with self._lock:
            credential.organization_id = organization_id
        return organization_id


def retry_count_for(pool: CredentialPool) -> int:
    return max(1, min(len(pool), MAX_RETRY_COUNT))
