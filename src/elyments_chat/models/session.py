"""
Credential records persisted by the CredentialStore.
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    user_id: str
    access_token: str
    chat_access_token: str
    refresh_token: str = ""
    saved_at: datetime = Field(default_factory=_now)

    @property
    def is_complete(self) -> bool:
        return bool(self.access_token and self.chat_access_token)


class DeviceIdentity(BaseModel):
    """Stable device used for every OTP verify and token refresh."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    device_token: str
    platform_type: Literal["WEB", "MOBILE"] = "WEB"
    resource: str
    created_at: datetime = Field(default_factory=_now)


class Profile(BaseModel):
    sender_name: str
    user_id: str
    updated_at: datetime = Field(default_factory=_now)
