"""httpx transport that sends requests through curl_cffi browser impersonation.

claude.ai sits behind bot protection that fingerprints the TLS handshake, so
the default upstream path presents a real browser's fingerprint. The rest of
the client keeps talking httpx; only the wire underneath changes.
"""

from typing import Optional

import httpx

try:
    from curl_cffi import CurlError
    from curl_cffi import requests as curl_requests
except ImportError:  # Optional; without it requests go out through plain httpx.
    CurlError = None
    curl_requests = None

# curl owns compression and framing when impersonating a browser.
DROPPED_REQUEST_HEADERS = {"accept-encoding", "connection", "content-length", "host"}
DROPPED_RESPONSE_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


def curl_available() -> bool:
    return curl_requests is not None


def _curl_errors() -> tuple:
    return (CurlError,) if CurlError is not None else ()


class _CurlResponseStream(httpx.AsyncByteStream):
    def __init__(self, response) -> None:  # noqa: ANN001
        self._response = response

    async def __aiter__(self):
        try:
            async for chunk in self._response.aiter_content():
                yield chunk
        except _curl_errors() as e:
            raise httpx.ReadError(f"curl_cffi read failed: {e}") from e

    async def aclose(self) -> None:
        await self._response.aclose()


class CurlImpersonateTransport(httpx.AsyncBaseTransport):
    def __init__(
        self,
        impersonate: str = "chrome",
        *,
        proxy: Optional[str] = None,
        timeout_seconds: float = 300.0,
    ) -> None:
        self.impersonate = impersonate
        self.timeout_seconds = float(timeout_seconds)
        self._session = curl_requests.AsyncSession(
            impersonate=impersonate,
            proxies={"http": proxy, "https": proxy} if proxy else None,
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        headers = {
            name: value for name, value in request.headers.items() if name.lower() not in DROPPED_REQUEST_HEADERS
        }
        body = await request.aread()
        try:
            response = await self._session.request(
                request.method,
                str(request.url),
                headers=headers,
                data=body or None,
                timeout=self.timeout_seconds,
                stream=True,
            )
        except _curl_errors() as e:
            raise httpx.ConnectError(f"curl_cffi request failed: {e}", request=request) from e

        return httpx.Response(
            status_code=response.status_code,
            headers=[
                (name, value)
                for name, value in response.headers.items()
                if name.lower() not in DROPPED_RESPONSE_HEADERS
            ],
            stream=_CurlResponseStream(response),
            request=request,
        )

    async def aclose(self) -> None:
        await self._session.close()
