"""
REST HTTP client for the Elyments identity and chat APIs.

Every request carries the synthetic web-client identification headers the
platform requires. Bearer tokens are passed per call because the refresh
endpoint authenticates with the refresh token, everything else with the
access token.
"""

import json
from typing import Any, Optional

import httpx

from elyments_chat.errors import HttpError

IDENTITY_BASE_URL = "https://identityapi.elyments.com/api/Identity/"
CHAT_BASE_URL = "https://chatapi.elyments.com/api/"
WEB_ORIGIN = "https://web.elyments.com"

CLIENT_INFO = json.dumps({
    "applicationVersion": "143.0.0",
    "deviceOSVersion": "Mac OS",
    "deviceModel": "chrome",
    "deviceOEMName": "browser",
    "deviceType": "Web",
}, separators=(",", ":"))


def client_headers() -> dict[str, str]:
    return {
        "Accept": "application/json, text/plain, */*",
        "elyments-client-info": CLIENT_INFO,
        "Referer": f"{WEB_ORIGIN}/",
        "Origin": WEB_ORIGIN,
        "User-Agent": "elyments-chat/0.1.0",
    }


class HttpClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self._timeout = timeout
        self._transport = transport
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=client_headers(),
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @staticmethod
    def _auth_headers(token: Optional[str]) -> dict[str, str]:
        if token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    @staticmethod
    def _parse(resp: httpx.Response) -> Any:
        """JSON when the body is JSON, otherwise the raw text."""
        try:
            return resp.json()
        except ValueError:
            return resp.text

    @staticmethod
    def _check(resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            raise HttpError(resp.status_code, f"HTTP {resp.status_code}: {resp.text[:200]}")

    async def get(self, path: str, token: Optional[str] = None, params: Optional[dict[str, Any]] = None) -> Any:
        resp = await self._client.get(path, params=params, headers=self._auth_headers(token))
        self._check(resp)
        return self._parse(resp)

    async def post(self, path: str, body: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> Any:
        resp = await self._client.post(path, json=body if body is not None else {}, headers=self._auth_headers(token))
        self._check(resp)
        return self._parse(resp)

    async def post_raw(self, path: str, body: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> httpx.Response:
        """POST without status checking, for callers that branch on the status code."""
        return await self._client.post(path, json=body if body is not None else {}, headers=self._auth_headers(token))

    async def put_bytes(self, url: str, content: bytes, headers: dict[str, str]) -> None:
        """Upload to an absolute (pre-signed) URL; no client headers or bearer."""
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as raw:
            resp = await raw.put(url, content=content, headers=headers)
        self._check(resp)

    async def fetch_bytes(self, url: str) -> bytes:
        resp = await self._client.get(url)
        self._check(resp)
        return resp.content

    async def close(self) -> None:
        await self._client.aclose()
