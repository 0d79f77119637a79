"""
OTP login against the Elyments identity API.

Two-step phone verification: GenerateOtp/V2 sends the code by SMS,
VerifyOtp/V2 exchanges it for the session tokens.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from elyments_chat.credentials import CredentialStore
from elyments_chat.errors import HttpError, MalformedSessionResponse, OtpError
from elyments_chat.models.session import Session
from elyments_chat.transport.http import HttpClient

logger = logging.getLogger(__name__)

# Historical spellings, checked in order. The identity API has changed these
# without notice; keep every variant.
PAYLOAD_KEYS = ("ResponseData", "result", "data")
USER_ID_KEYS = ("UserId", "userId", "user_id")
ACCESS_TOKEN_KEYS = ("AccessToken", "accessToken", "access_token", "token")
CHAT_TOKEN_KEYS = ("ChatAccessToken", "chatAccessToken", "chat_access_token", "chatToken")
REFRESH_TOKEN_KEYS = ("RefreshToken", "refreshToken", "refresh_token")
SUCCESS_KEYS = ("IsSuccess", "isSuccess", "success")
MESSAGE_KEYS = ("Message", "message")


def _first(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _payload(body: dict[str, Any]) -> dict[str, Any]:
    for key in PAYLOAD_KEYS:
        inner = body.get(key)
        if isinstance(inner, dict):
            return inner
    return body


def explicit_failure(body: dict[str, Any]) -> Optional[str]:
    """Return the failure message when the body says ``success: false``."""
    for key in SUCCESS_KEYS:
        if body.get(key) is not None:
            if body[key] is False:
                message = _first(body, MESSAGE_KEYS)
                return str(message) if message is not None else "request failed"
            return None
    return None


def extract_session(body: Any, existing: Optional[Session] = None) -> Session:
    """Pull a Session out of a verify or refresh response.

    With ``existing`` (refresh), user id and refresh token fall back to the
    previous values when the response omits them.
    """
    if not isinstance(body, dict):
        raise MalformedSessionResponse(details={"body": str(body)[:200]})

    data = _payload(body)
    user_id = _first(data, USER_ID_KEYS)
    if user_id is None and isinstance(data.get("user"), dict):
        user_id = data["user"].get("id")
    access_token = _first(data, ACCESS_TOKEN_KEYS)
    chat_access_token = _first(data, CHAT_TOKEN_KEYS)
    refresh_token = _first(data, REFRESH_TOKEN_KEYS)

    if existing is not None:
        user_id = user_id or existing.user_id
        refresh_token = refresh_token or existing.refresh_token

    if not user_id or not access_token or not chat_access_token:
        logger.error("Unexpected session response shape: keys=%s", sorted(data))
        raise MalformedSessionResponse(details={"keys": sorted(data)})

    return Session(
        user_id=str(user_id),
        access_token=str(access_token),
        chat_access_token=str(chat_access_token),
        refresh_token=str(refresh_token) if refresh_token else "",
        saved_at=datetime.now(timezone.utc),
    )


def normalize_phone(phone: str) -> str:
    """Digits only, last ten kept (drops any country prefix typed inline)."""
    digits = re.sub(r"\D", "", phone)
    return digits[-10:] if len(digits) > 10 else digits


def normalize_country_code(country_code: str) -> str:
    return country_code.strip().lstrip("+")


class AuthAPI:
    def __init__(self, http: HttpClient, store: CredentialStore):
        self._http = http
        self._store = store

    async def request_otp(self, country_code: str, phone: str) -> None:
        """Step 1: ask the platform to text a one-time code."""
        try:
            body = await self._http.post("GenerateOtp/V2", {
                "CountryCode": normalize_country_code(country_code),
                "MobileNumber": normalize_phone(phone),
            })
        except HttpError as e:
            raise OtpError(f"Failed to request OTP: {e}") from e

        if isinstance(body, str):
            if "success" in body.lower():
                return
            raise OtpError(body or "OTP request failed")
        if not isinstance(body, dict) or not body.get("IsSuccess"):
            message = _first(body, MESSAGE_KEYS) if isinstance(body, dict) else None
            raise OtpError(str(message or "OTP request failed"))

    async def verify_otp(self, country_code: str, phone: str, otp: str) -> Session:
        """Step 2: exchange the code for tokens and persist the session."""
        device = self._store.get_or_create_device()
        payload = {
            "CountryCode": normalize_country_code(country_code),
            "MobileNumber": normalize_phone(phone),
            "Otp": otp.strip(),
            "DeviceToken": device.device_token,
            "PlatformType": device.platform_type,
        }
        try:
            body = await self._http.post("VerifyOtp/V2", payload)
        except HttpError as e:
            raise OtpError(f"Failed to verify OTP: {e}") from e

        if isinstance(body, str):
            raise OtpError(f"Unexpected response: {body[:200]}")
        failure = explicit_failure(body) if isinstance(body, dict) else None
        if failure:
            raise OtpError(failure)

        session = extract_session(body)
        self._store.save_session(session)
        logger.info("Logged in as %s", session.user_id)
        return session
