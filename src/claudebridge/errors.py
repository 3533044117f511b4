"""Error taxonomy for the bridge.

Everything the retry loop treats as "try the next credential" derives from
``CredentialError`` or ``UpstreamRequestError``. ``ConfigurationError`` is
fatal at startup and ``CleanupError`` never reaches the caller.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for bridge failures."""


class ConfigurationError(BridgeError):
    pass


class NoCredentialsAvailable(ConfigurationError):
    pass


class CredentialError(BridgeError):
    """The credential could not be used (organization lookup failed, etc.)."""


class NoOrganizationFound(CredentialError):
    pass


class UpstreamRequestError(BridgeError):
    """Network failure or unexpected response from the upstream service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConversationCreateFailed(UpstreamRequestError):
    pass


class UploadFailed(UpstreamRequestError):
    pass


class UpstreamStatusError(UpstreamRequestError):
    """Non-200 status from the completion endpoint."""


class RateLimited(UpstreamStatusError):
    def __init__(self, message: str = "rate limit exceeded"):
        super().__init__(message, status_code=429)


class StreamError(BridgeError):
    """The upstream body could not be read."""


class CleanupError(BridgeError):
    pass


class DeleteFailed(CleanupError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ClientDisconnected(BridgeError):
    """The caller closed the connection before the answer was committed."""


RETRYABLE_ERRORS = (CredentialError, UpstreamRequestError, StreamError)
