"""
Chat directory REST API — listings, contact sync, history and media upload.

Every call goes through SessionManager.with_auto_refresh so a stale access
token costs one refresh, not a failure.
"""

import logging
import mimetypes
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Optional, Union

from elyments_chat.address import format_group_address, is_group_address
from elyments_chat.errors import ElymentsError
from elyments_chat.models.chat import ChatSummary
from elyments_chat.models.message import InboundEvent, MediaInfo
from elyments_chat.models.session import Session
from elyments_chat.sessions import SessionManager
from elyments_chat.transport.http import HttpClient

logger = logging.getLogger(__name__)

MediaType = Literal["image", "video", "audio", "document"]

MEDIA_TYPES: dict[str, MediaType] = {
    **dict.fromkeys(("jpg", "jpeg", "png", "gif", "webp"), "image"),
    **dict.fromkeys(("mp4", "webm", "mov", "avi"), "video"),
    **dict.fromkeys(("mp3", "ogg", "wav", "m4a", "aac"), "audio"),
}

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "txt": "text/plain",
}


def media_type_for(extension: str) -> MediaType:
    return MEDIA_TYPES.get(extension.lower().lstrip("."), "document")


def mime_type_for(extension: str) -> str:
    ext = extension.lower().lstrip(".")
    return MIME_TYPES.get(ext) or mimetypes.types_map.get(f".{ext}", "application/octet-stream")


def _items(body: Any) -> list[dict[str, Any]]:
    """The ``data`` list of a ``{success, data}`` response; [] on failure."""
    if not isinstance(body, dict) or not body.get("success"):
        return []
    data = body.get("data")
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


ListingObserver = Callable[[list[ChatSummary]], None]


class ChatsAPI:
    def __init__(self, http: HttpClient, sessions: SessionManager):
        self._http = http
        self._sessions = sessions
        self._observers: list[ListingObserver] = []

    def add_listing_observer(self, observer: ListingObserver) -> None:
        """Called with every chat or group listing (used to fill the recipient index)."""
        self._observers.append(observer)

    def _notify(self, summaries: list[ChatSummary]) -> None:
        for observer in list(self._observers):
            observer(summaries)

    async def list_chats(self) -> list[ChatSummary]:
        async def op(session: Session) -> Any:
            return await self._http.get("Chat/List", token=session.access_token)

        body = await self._sessions.with_auto_refresh(op)
        summaries = [
            ChatSummary(
                id=str(chat.get("id", "")),
                address=str(chat.get("jid", "")),
                is_group=bool(chat.get("isGroup")) or is_group_address(str(chat.get("jid", ""))),
                title=str(chat.get("title") or ""),
                last_message=chat.get("lastMessage"),
            )
            for chat in _items(body)
            if chat.get("jid")
        ]
        self._notify(summaries)
        return summaries

    async def list_groups(self) -> list[ChatSummary]:
        async def op(session: Session) -> Any:
            return await self._http.get("Group/List", token=session.access_token)

        body = await self._sessions.with_auto_refresh(op)
        summaries = [
            ChatSummary(
                id=str(group.get("id", "")),
                address=format_group_address(str(group.get("jid", ""))),
                is_group=True,
                title=str(group.get("title") or ""),
                last_message=group.get("lastMessage"),
            )
            for group in _items(body)
            if group.get("jid")
        ]
        self._notify(summaries)
        return summaries

    async def sync_contacts(self) -> None:
        async def op(session: Session) -> Any:
            return await self._http.post("Contact/Sync", {}, token=session.access_token)

        await self._sessions.with_auto_refresh(op)

    async def get_history(self, address: str, limit: int = 50) -> list[InboundEvent]:
        async def op(session: Session) -> Any:
            return await self._http.post("Message/History", {"jid": address, "limit": limit}, token=session.access_token)

        body = await self._sessions.with_auto_refresh(op)
        events = []
        for msg in _items(body):
            timestamp = msg.get("timestamp") or 0
            events.append(InboundEvent(
                id=str(msg.get("id", "")),
                from_address=str(msg.get("from", "")),
                to_address=str(msg.get("to", "")),
                kind="group" if msg.get("type") == "groupchat" else "direct",
                body=str(msg.get("body") or ""),
                timestamp=datetime.fromtimestamp(float(timestamp) / 1000, tz=timezone.utc),
                sender_name=msg.get("senderName"),
            ))
        return events

    async def get_upload_url(self, filename: str, content_type: str, media_id: Optional[str] = None) -> dict[str, str]:
        """Issue a pre-signed upload target: ``{url, sasUrl, id}``."""
        media_id = media_id or str(uuid.uuid4())

        async def op(session: Session) -> Any:
            return await self._http.post(
                "Media/UploadUrl",
                {"id": media_id, "filename": filename, "contentType": content_type},
                token=session.access_token,
            )

        body = await self._sessions.with_auto_refresh(op)
        data = body.get("data") if isinstance(body, dict) and body.get("success") else None
        if not isinstance(data, dict) or not data.get("url") or not data.get("sasUrl"):
            raise ElymentsError("upload_url_failed", "Failed to get upload URL")
        return {"url": str(data["url"]), "sasUrl": str(data["sasUrl"]), "id": media_id}

    async def upload_media(self, source: Union[str, Path]) -> MediaInfo:
        """Upload a local file (or fetch and re-upload an http(s) URL)."""
        source_str = str(source)
        if source_str.startswith(("http://", "https://")):
            content = await self._http.fetch_bytes(source_str)
            filename = Path(source_str.split("?", 1)[0]).name or "file"
        else:
            path = Path(source).expanduser()
            content = path.read_bytes()
            filename = path.name

        ext = Path(filename).suffix
        mime_type = mime_type_for(ext)
        target = await self.get_upload_url(filename, mime_type)
        await self._http.put_bytes(target["sasUrl"], content, {
            "Content-Type": mime_type,
            "x-ms-blob-type": "BlockBlob",
        })
        logger.debug("Uploaded %s (%d bytes) as %s", filename, len(content), target["id"])
        return MediaInfo(
            type=media_type_for(ext),
            url=target["url"],
            id=target["id"],
            name=filename,
            size=len(content),
            mime_type=mime_type,
        )
