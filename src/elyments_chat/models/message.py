"""
Message models — decoded inbound events and outbound media descriptors.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class InboundEvent(BaseModel):
    """A decoded message stanza, consumed once by the handler pipeline."""

    model_config = ConfigDict(frozen=True)

    id: str
    from_address: str
    to_address: str = ""
    kind: Literal["direct", "group"] = "direct"
    body: str
    timestamp: datetime
    sender_name: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return self.kind == "group"


class MediaInfo(BaseModel):
    type: Literal["image", "video", "audio", "document"]
    url: str
    id: str
    name: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
