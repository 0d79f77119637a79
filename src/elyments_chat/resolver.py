"""
RecipientResolver — human-entered targets to protocol addresses.

The index is keyed by lowercase address and by lowercase title. It is filled
from directory listings, overwritten on every listing and never expired.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from elyments_chat.address import (
    format_direct_address,
    format_group_address,
    is_address,
    is_group_address,
)
from elyments_chat.models.chat import ChatSummary, RecipientEntry, ResolvedRecipient

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "elyments:"
GROUP_PREFIX = "group:"
USER_PREFIX = "user:"

Refresher = Callable[[], Awaitable[object]]


def strip_channel_prefix(raw: str) -> str:
    value = raw.strip()
    if value.lower().startswith(CHANNEL_PREFIX):
        value = value[len(CHANNEL_PREFIX):].strip()
    return value


def normalize_target(raw: str) -> Optional[str]:
    """Canonical target spelling: addresses verbatim, ``group:``/``user:`` ids
    with a lowercase prefix, anything else trimmed. Empty input gives None."""
    value = strip_channel_prefix(raw)
    if not value:
        return None
    if is_address(value):
        return value
    lowered = value.lower()
    if lowered.startswith(GROUP_PREFIX):
        return f"{GROUP_PREFIX}{value[len(GROUP_PREFIX):].strip()}"
    if lowered.startswith(USER_PREFIX):
        return f"{USER_PREFIX}{value[len(USER_PREFIX):].strip()}"
    return value


def looks_like_target(raw: str) -> bool:
    value = raw.strip()
    if not value:
        return False
    if is_address(value):
        return True
    return value.lower().startswith((CHANNEL_PREFIX, GROUP_PREFIX, USER_PREFIX))


def normalize_allow_entry(entry: str) -> str:
    """Allow-list entries compare lowercase without channel or ``user:`` prefix."""
    value = strip_channel_prefix(str(entry)).lower()
    if value.startswith(USER_PREFIX):
        value = value[len(USER_PREFIX):].strip()
    return value


class RecipientResolver:
    def __init__(self, refreshers: Optional[list[Refresher]] = None):
        self._index: dict[str, RecipientEntry] = {}
        self._refreshers: list[Refresher] = list(refreshers or [])

    def add_refresher(self, refresher: Refresher) -> None:
        self._refreshers.append(refresher)

    def index(self, summaries: list[ChatSummary]) -> None:
        now = datetime.now(timezone.utc)
        for summary in summaries:
            entry = RecipientEntry(
                address=summary.address,
                title=summary.title,
                is_group=summary.is_group,
                last_indexed_at=now,
            )
            self._index[summary.address.lower()] = entry
            if summary.title:
                self._index[summary.title.lower()] = entry

    def lookup(self, query: str) -> Optional[RecipientEntry]:
        return self._index.get(query.strip().lower())

    def __len__(self) -> int:
        return len(self._index)

    async def resolve(self, query: str) -> Optional[ResolvedRecipient]:
        normalized = query.strip().lower()
        if not normalized:
            return None

        if is_address(normalized):
            address = query.strip()
            known = self._index.get(normalized)
            return ResolvedRecipient(
                address=address,
                is_group=is_group_address(normalized),
                title=known.title if known else address,
            )

        entry = self._index.get(normalized)
        if entry is None:
            logger.debug("Recipient %r not cached, refreshing directory", query)
            for refresh in self._refreshers:
                await refresh()
            entry = self._index.get(normalized)
        if entry is None:
            return None
        return ResolvedRecipient(address=entry.address, is_group=entry.is_group, title=entry.title)

    async def resolve_address(self, target: str, refresh: bool = True) -> str:
        """Address to send to. Unresolvable names are treated as user ids.

        With ``refresh`` false only the cache is consulted. A failed directory
        refresh is logged and falls through to the user-id address.
        """
        normalized = normalize_target(target)
        if normalized is None:
            raise ValueError("Empty recipient")
        if is_address(normalized):
            return normalized
        if normalized.startswith(GROUP_PREFIX):
            return format_group_address(normalized[len(GROUP_PREFIX):])
        if normalized.startswith(USER_PREFIX):
            return format_direct_address(normalized[len(USER_PREFIX):])

        cached = self.lookup(normalized)
        if cached is not None:
            return cached.address
        if refresh:
            try:
                resolved = await self.resolve(normalized)
            except Exception as e:
                logger.warning("Directory refresh failed while resolving %r: %s", target, e)
                resolved = None
            if resolved is not None:
                return resolved.address
        return format_direct_address(normalized)
