import asyncio
import base64
import binascii
import copy
import time
import uuid
from http import HTTPStatus
from typing import AsyncIterator, List, Optional

import httpx

from .config import debug_print, log_http_status
from .errors import (
    ConversationCreateFailed,
    CredentialError,
    DeleteFailed,
    NoOrganizationFound,
    RateLimited,
    UploadFailed,
    UpstreamRequestError,
    UpstreamStatusError,
)
from .impersonate import CurlImpersonateTransport, curl_available

CLAUDE_BASE_URL = "https://claude.ai"
THINK_MODEL_SUFFIX = "-think"
DEFAULT_ORG_TIER = "default_claude_ai"
ROOT_PARENT_MESSAGE_UUID = "00000000-0000-4000-8000-000000000000"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "accept": "text/event-stream, text/event-stream",
    "accept-language": "zh-CN,zh;q=0.9",
    "anthropic-client-platform": "web_claude_ai",
    "origin": CLAUDE_BASE_URL,
    "priority": "u=1, i",
    "user-agent": USER_AGENT,
}

DEFAULT_MESSAGE_ATTRS = {
    "personalized_styles": [
        {
            "type": "default",
            "key": "Default",
            "name": "Normal",
            "nameKey": "normal_style_name",
            "prompt": "Normal",
            "summary": "Default responses from Claude",
            "summaryKey": "normal_style_summary",
            "isDefault": True,
        }
    ],
    "tools": [{"type": "web_search_v0", "name": "web_search"}],
    "attachments": [],
    "files": [],
    "sync_sources": [],
    "rendering_mode": "messages",
    "timezone": "America/New_York",
}

UPLOAD_FILENAMES = {
    "image/jpeg": "image.jpg",
    "image/png": "image.png",
    "application/pdf": "document.pdf",
}


def split_model(model: str) -> tuple[str, bool]:
    """Strip the reasoning suffix: ``("claude-x", True)`` for ``"claude-x-think"``."""
    if len(model) > len(THINK_MODEL_SUFFIX) and model.endswith(THINK_MODEL_SUFFIX):
        return model[: -len(THINK_MODEL_SUFFIX)], True
    return model, False


def decode_data_uri(data_uri: str) -> tuple[str, bytes]:
    """
    Decode ``data:<mime>;base64,<payload>`` into ``(mime_type, bytes)``.

    Raises UploadFailed for anything that is not a base64 data URI.
    """
    header, sep, payload = data_uri.partition(",")
    if not sep:
        raise UploadFailed("invalid file data format")
    scheme, sep, meta = header.partition(":")
    if not sep or scheme != "data":
        raise UploadFailed("invalid content type in file data")
    mime_type, sep, encoding = meta.partition(";")
    if not sep or encoding != "base64":
        raise UploadFailed("invalid encoding in file data")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UploadFailed(f"failed to decode base64 data: {e}") from e
    return mime_type, data


class ClaudeWebClient:
    """
    One authenticated session against claude.ai's web conversation API.

    A client is bound to a single credential and lives for a single attempt;
    the attachments and files it collects belong to the one message it sends.
    """

    def __init__(
        self,
        session_key: str,
        *,
        proxy: Optional[str] = None,
        timeout_seconds: float = 300.0,
        response_header_timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        impersonate: Optional[str] = None,
        base_url: str = CLAUDE_BASE_URL,
    ) -> None:
        self.session_key = session_key
        self.organization_id = ""
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.response_header_timeout_seconds = float(response_header_timeout_seconds)
        self.message_attrs = copy.deepcopy(DEFAULT_MESSAGE_ATTRS)
        self._deadline: Optional[float] = None

        self.transport_name = "httpx"
        if transport is None and impersonate:
            if curl_available():
                transport = CurlImpersonateTransport(impersonate, proxy=proxy, timeout_seconds=self.timeout_seconds)
                self.transport_name = f"curl_cffi ({impersonate})"
                debug_print(f"Upstream transport: curl_cffi (impersonate={impersonate})")
            else:
                debug_print("⚠️  curl_cffi is not installed, sending upstream requests through plain httpx")

        client_kwargs = {
            "headers": BROWSER_HEADERS,
            "cookies": {"sessionKey": session_key},
            "timeout": httpx.Timeout(self.timeout_seconds, connect=min(30.0, self.timeout_seconds)),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif proxy:
            client_kwargs["proxy"] = proxy
        self._client = httpx.AsyncClient(**client_kwargs)

    async def __aenter__(self) -> "ClaudeWebClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        await self.aclose()
        return False

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_organization_id(self, organization_id: str) -> None:
        self.organization_id = organization_id

    def _require_org(self) -> str:
        if not self.organization_id:
            raise CredentialError("organization ID not set")
        return self.organization_id

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamRequestError(f"request failed: {type(e).__name__}: {e}") from e

    async def get_organization_id(self) -> str:
        response = await self._request(
            "GET",
            f"{self.base_url}/api/organizations",
            headers={"referer": f"{self.base_url}/new"},
        )
        if response.status_code != HTTPStatus.OK:
            log_http_status(response.status_code, "organizations")
            raise CredentialError(f"unexpected status code: {response.status_code}")
        try:
            orgs = response.json()
        except ValueError as e:
            raise CredentialError(f"failed to parse response: {e}") from e
        if not isinstance(orgs, list):
            raise CredentialError("failed to parse response: expected a list")

        orgs = [org for org in orgs if isinstance(org, dict)]
        if not orgs:
            raise NoOrganizationFound("no organizations found")
        if len(orgs) == 1:
            org_id = str(orgs[0].get("uuid") or "")
            if not org_id:
                raise NoOrganizationFound("organization without uuid")
            return org_id
        for org in orgs:
            if org.get("rate_limit_tier") == DEFAULT_ORG_TIER and org.get("uuid"):
                return str(org["uuid"])
        raise NoOrganizationFound("no default organization found")

    async def create_conversation(self, model: str) -> str:
        org_id = self._require_org()
        upstream_model, extended = split_model(model)
        body = {
            "model": upstream_model,
            "uuid": str(uuid.uuid4()),
            "name": "",
            "include_conversation_preferences": True,
        }
        if extended:
            body["paprika_mode"] = "extended"

        response = await self._request(
            "POST",
            f"{self.base_url}/api/organizations/{org_id}/chat_conversations",
            headers={"referer": f"{self.base_url}/new"},
            json=body,
        )
        if response.status_code not in (HTTPStatus.OK, HTTPStatus.CREATED):
            log_http_status(response.status_code, "create conversation")
            raise ConversationCreateFailed(
                f"unexpected status code: {response.status_code}", status_code=response.status_code
            )
        try:
            result = response.json()
        except ValueError as e:
            raise ConversationCreateFailed(f"failed to parse response: {e}") from e
        conversation_id = result.get("uuid") if isinstance(result, dict) else None
        if not isinstance(conversation_id, str) or not conversation_id:
            raise ConversationCreateFailed("conversation UUID not found in response")
        debug_print(f"💭 Created conversation {conversation_id} (model={upstream_model}, extended={extended})")
        return conversation_id

    async def upload_file(self, data_uri: str) -> str:
        """Upload one data URI and attach it to the outgoing message."""
        org_id = self._require_org()
        mime_type, data = decode_data_uri(data_uri)
        filename = UPLOAD_FILENAMES.get(mime_type, "file")

        response = await self._request(
            "POST",
            f"{self.base_url}/api/{org_id}/upload",
            headers={"referer": f"{self.base_url}/new"},
            files={"file": (filename, data, mime_type)},
        )
        if response.status_code != HTTPStatus.OK:
            log_http_status(response.status_code, "upload")
            raise UploadFailed(
                f"unexpected status code: {response.status_code}, response: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            result = response.json()
        except ValueError as e:
            raise UploadFailed(f"failed to parse response: {e}") from e
        file_uuid = result.get("file_uuid") if isinstance(result, dict) else None
        if not file_uuid:
            raise UploadFailed("file UUID not found in response")

        self.message_attrs["files"].append(file_uuid)
        debug_print(f"🖼️  Uploaded {filename} ({len(data)} bytes) as {file_uuid}")
        return file_uuid

    async def upload_files(self, data_uris: List[str]) -> List[str]:
        """Upload in order; the first failure aborts the rest."""
        uploaded = []
        for data_uri in data_uris:
            uploaded.append(await self.upload_file(data_uri))
        return uploaded

    def set_big_context(self, context: str) -> None:
        self.message_attrs["attachments"] = [
            {
                "file_name": "context.txt",
                "file_type": "text/plain",
                "file_size": len(context.encode("utf-8")),
                "extracted_content": context,
            }
        ]

    async def send_message(self, conversation_id: str, prompt: str) -> httpx.Response:
        """
        Submit the prompt and return the open streaming response.

        The caller owns the returned response and must ``aclose()`` it.
        """
        org_id = self._require_org()
        body = dict(self.message_attrs)
        body["prompt"] = prompt
        body["parent_message_uuid"] = ROOT_PARENT_MESSAGE_UUID

        request = self._client.build_request(
            "POST",
            f"{self.base_url}/api/organizations/{org_id}/chat_conversations/{conversation_id}/completion",
            headers={
                "referer": f"{self.base_url}/chat/{conversation_id}",
                "accept": "text/event-stream, text/event-stream",
                "cache-control": "no-cache",
            },
            json=body,
        )
        self._deadline = time.monotonic() + self.timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._client.send(request, stream=True),
                timeout=self.response_header_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamRequestError(
                f"no response headers within {self.response_header_timeout_seconds:g}s"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamRequestError(f"request failed: {type(e).__name__}: {e}") from e

        log_http_status(response.status_code, "Claude completion")
        if response.status_code == HTTPStatus.TOO_MANY_REQUESTS:
            await response.aclose()
            raise RateLimited()
        if response.status_code != HTTPStatus.OK:
            await response.aclose()
            raise UpstreamStatusError(
                f"unexpected status code: {response.status_code}", status_code=response.status_code
            )
        return response

    async def aiter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        """
        Yield the response's lines until the request deadline set by ``send_message``.

        The deadline bounds the whole exchange, so a trickling stream cannot
        hold a request open past ``timeout_seconds``.
        """
        lines = response.aiter_lines()
        while True:
            remaining = None
            if self._deadline is not None:
                remaining = self._deadline - time.monotonic()
                if remaining <= 0:
                    raise httpx.ReadTimeout("request deadline exceeded")
            try:
                line = await asyncio.wait_for(lines.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise httpx.ReadTimeout(f"request deadline of {self.timeout_seconds:g}s exceeded") from e
            yield line

    async def delete_conversation(self, conversation_id: str) -> None:
        org_id = self._require_org()
        try:
            response = await self._client.request(
                "DELETE",
                f"{self.base_url}/api/organizations/{org_id}/chat_conversations/{conversation_id}",
                headers={"referer": f"{self.base_url}/chat/{conversation_id}"},
                json={"uuid": conversation_id},
            )
        except httpx.HTTPError as e:
            raise DeleteFailed(f"request failed: {type(e).__name__}: {e}") from e
        if response.status_code not in (HTTPStatus.OK, HTTPStatus.NO_CONTENT):
            raise DeleteFailed(f"unexpected status code: {response.status_code}", status_code=response.status_code)


def build_client(session_key: str, config: dict) -> ClaudeWebClient:
    return ClaudeWebClient(
        session_key,
        proxy=config.get("proxy") or None,
        timeout_seconds=float(config.get("request_timeout_seconds") or 300.0),
        response_header_timeout_seconds=float(config.get("response_header_timeout_seconds") or 10.0),
        impersonate=config.get("curl_impersonate") or None,
    )
