"""
SessionManager — token validity, refresh and the one-shot auth retry.
"""

import base64
import binascii
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from elyments_chat.auth import explicit_failure, extract_session
from elyments_chat.credentials import CredentialStore
from elyments_chat.errors import (
    MalformedSessionResponse,
    NoRefreshToken,
    NotLoggedIn,
    RefreshFailed,
    SessionExpired,
)
from elyments_chat.models.session import Session
from elyments_chat.transport.http import HttpClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPIRY_BUFFER_S = 60.0
AUTH_FAILURE_MARKERS = ("401", "unauthorized", "expired")


def token_expiry(token: str) -> Optional[float]:
    """The JWT ``exp`` claim in epoch seconds, or None if there is none.

    The signature is not checked; only the server cares about that.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(claims, dict):
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


def is_auth_failure(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in AUTH_FAILURE_MARKERS)


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        identity_http: HttpClient,
        expiry_buffer_s: float = EXPIRY_BUFFER_S,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._http = identity_http
        self._buffer = expiry_buffer_s
        self._clock = clock

    def is_expiring(self, token: str) -> bool:
        exp = token_expiry(token)
        if exp is None:
            return False
        return self._clock() >= exp - self._buffer

    async def get_valid_session(self) -> Session:
        session = self._store.load_session()
        if session is None:
            raise NotLoggedIn()
        if self.is_expiring(session.access_token):
            logger.debug("Access token for %s is expiring, refreshing", session.user_id)
            return await self.refresh()
        return session

    async def refresh(self) -> Session:
        current = self._store.load_session()
        if current is None or not current.refresh_token:
            raise NoRefreshToken()

        device = self._store.get_or_create_device()
        resp = await self._http.post_raw(
            "RefreshToken/V4",
            {"DeviceToken": device.device_token, "PlatformType": device.platform_type},
            token=current.refresh_token,
        )
        if resp.status_code == 401:
            raise SessionExpired()
        if resp.status_code >= 400:
            raise RefreshFailed(f"HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            body: Any = resp.json()
        except ValueError:
            raise RefreshFailed(f"Unexpected response: {resp.text[:200]}")
        if not isinstance(body, dict):
            raise RefreshFailed(f"Unexpected response: {resp.text[:200]}")
        failure = explicit_failure(body)
        if failure:
            raise RefreshFailed(failure)

        try:
            session = extract_session(body, existing=current)
        except MalformedSessionResponse:
            logger.error("Refresh response could not be parsed for %s", current.user_id)
            raise
        self._store.save_session(session)
        logger.info("Refreshed session for %s", session.user_id)
        return session

    async def with_auto_refresh(self, operation: Callable[[Session], Awaitable[T]]) -> T:
        """Run ``operation`` with a valid session, retrying once after a refresh.

        Only failures that look like authorization errors are retried, and
        never more than once: sends are not idempotent.
        """
        session = await self.get_valid_session()
        try:
            return await operation(session)
        except Exception as e:
            if not is_auth_failure(e):
                raise
            logger.info("Request failed with an auth error, refreshing session: %s", e)
            try:
                refreshed = await self.refresh()
            except Exception as refresh_error:
                raise e from refresh_error
        return await operation(refreshed)

    def logout(self) -> bool:
        return self._store.delete_session()
