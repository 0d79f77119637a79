"""
Pairing store — pending approvals for unknown direct-message senders.

A pending request is created once per (channel, sender) and then reused, so
a sender who keeps writing is not sent a new code every time.
"""

import asyncio
import json
import logging
import os
import secrets
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# No 0/O/1/I so codes survive being read aloud or retyped.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


def generate_pairing_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class PairingRequest(BaseModel):
    channel: str
    sender_id: str
    code: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    meta: dict[str, Any] = Field(default_factory=dict)


class PairingUpsert(BaseModel):
    code: str
    created: bool


class PairingStore(Protocol):
    async def upsert_pairing_request(self, channel: str, sender_id: str, meta: dict[str, Any]) -> PairingUpsert: ...

    async def read_allow_from_store(self, channel: str) -> list[str]: ...


class _StoreData(BaseModel):
    requests: list[PairingRequest] = Field(default_factory=list)
    allow_from: dict[str, list[str]] = Field(default_factory=dict)


class JsonPairingStore:
    """Pairing requests and approved senders in one JSON file."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> _StoreData:
        try:
            return _StoreData.model_validate_json(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return _StoreData()

    def _save(self, data: _StoreData) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data.model_dump_json(indent=2))
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def upsert_pairing_request(self, channel: str, sender_id: str, meta: dict[str, Any]) -> PairingUpsert:
        async with self._lock:
            data = self._load()
            for request in data.requests:
                if request.channel == channel and request.sender_id == sender_id:
                    return PairingUpsert(code=request.code, created=False)
            taken = {r.code for r in data.requests}
            code = generate_pairing_code()
            while code in taken:
                code = generate_pairing_code()
            data.requests.append(PairingRequest(channel=channel, sender_id=sender_id, code=code, meta=meta))
            self._save(data)
            logger.info("Created pairing request %s for %s:%s", code, channel, sender_id)
            return PairingUpsert(code=code, created=True)

    async def read_allow_from_store(self, channel: str) -> list[str]:
        return list(self._load().allow_from.get(channel, []))

    async def list_requests(self, channel: Optional[str] = None) -> list[PairingRequest]:
        requests = self._load().requests
        if channel is None:
            return requests
        return [r for r in requests if r.channel == channel]

    async def approve(self, channel: str, code: str) -> Optional[PairingRequest]:
        """Move the request with ``code`` to the allow-list. None if unknown."""
        async with self._lock:
            data = self._load()
            wanted = code.strip().upper()
            for request in data.requests:
                if request.channel == channel and request.code == wanted:
                    data.requests.remove(request)
                    allowed = data.allow_from.setdefault(channel, [])
                    if request.sender_id not in allowed:
                        allowed.append(request.sender_id)
                    self._save(data)
                    logger.info("Approved %s:%s", channel, request.sender_id)
                    return request
            return None


def dump_requests(requests: list[PairingRequest]) -> str:
    return json.dumps([r.model_dump(mode="json") for r in requests], indent=2)
