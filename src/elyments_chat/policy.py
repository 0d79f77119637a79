"""
PolicyGate — decides per inbound message whether the bot may reply.

Direct messages follow the DM policy (open, pairing, allowlist, disabled).
Group messages follow the group policy, per-group configuration and the
mention requirement. Decisions are recomputed for every message because the
allow-lists can change at any time.
"""

import logging
import re
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from elyments_chat.address import bare_address, format_group_address, resource_of, user_id_of
from elyments_chat.config import ChannelConfig, GroupConfig
from elyments_chat.models.message import InboundEvent
from elyments_chat.pairing import PairingStore
from elyments_chat.resolver import GROUP_PREFIX, normalize_allow_entry, strip_channel_prefix

logger = logging.getLogger(__name__)

CHANNEL_ID = "elyments"
WILDCARD = "*"

Notifier = Callable[[str, str], Awaitable[object]]
ErrorCallback = Callable[[BaseException], None]


class PolicyDecision(BaseModel):
    admit: bool
    reason: str
    pairing_code_issued: Optional[str] = None
    was_mentioned: bool = False
    command_authorized: bool = False


class SenderIdentity(BaseModel):
    chat_id: str
    sender_id: str
    display_name: str
    from_address: str
    bare_from: str


def sender_identity(event: InboundEvent) -> SenderIdentity:
    """Who sent ``event`` and which conversation it belongs to.

    Group stanzas come from ``group@muclight.localhost/<member>``; the member
    part names the sender.
    """
    bare = bare_address(event.from_address)
    if event.is_group:
        member = resource_of(event.from_address)
        sender_id = user_id_of(member) if member else user_id_of(bare)
    else:
        sender_id = user_id_of(bare)
    return SenderIdentity(
        chat_id=bare,
        sender_id=sender_id,
        display_name=event.sender_name or sender_id,
        from_address=event.from_address,
        bare_from=bare,
    )


def pairing_notice(code: str) -> str:
    return "\n".join([
        "Elyments bot: access not configured.",
        "",
        f"Pairing code: {code}",
        "",
        "Ask the bot owner to approve with:",
        f"elyments pairing approve {code}",
    ])


def build_mention_patterns(patterns: list[str], bot_name: Optional[str] = None) -> list[re.Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.warning("Ignoring invalid mention pattern %r: %s", pattern, e)
    if bot_name:
        compiled.append(re.compile(rf"@?\b{re.escape(bot_name)}\b", re.IGNORECASE))
    return compiled


def matches_mention(text: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(p.search(text) for p in patterns)


def has_control_command(text: str, names: list[str]) -> bool:
    """True when the message starts with ``/<command>`` for a known command."""
    stripped = text.strip()
    if not stripped.startswith("/"):
        return False
    token = stripped[1:].split(None, 1)[0] if len(stripped) > 1 else ""
    token = token.split("@", 1)[0].lower()
    return token in {n.lower().lstrip("/") for n in names}


def matches_allow_list(allow: list[str], *candidates: str) -> bool:
    wanted = {c.lower() for c in candidates if c}
    return any(entry == WILDCARD or entry in wanted for entry in allow)


class PolicyGate:
    def __init__(
        self,
        config: ChannelConfig,
        pairing_store: PairingStore,
        notify: Notifier,
        channel: str = CHANNEL_ID,
        bot_name: Optional[str] = None,
        on_send_error: Optional[ErrorCallback] = None,
    ):
        self._config = config
        self._store = pairing_store
        self._notify = notify
        self._channel = channel
        self._mentions = build_mention_patterns(config.mention_patterns, bot_name or config.sender_name)
        self._on_send_error = on_send_error
        self._groups = {self._group_key(k): v for k, v in config.groups.items()}

    @staticmethod
    def _group_key(key: str) -> str:
        value = strip_channel_prefix(key)
        if value.lower().startswith(GROUP_PREFIX):
            value = format_group_address(value[len(GROUP_PREFIX):].strip())
        return value.lower()

    def group_config(self, identity: SenderIdentity) -> Optional[GroupConfig]:
        for key in (identity.chat_id, identity.sender_id):
            found = self._groups.get(self._group_key(key))
            if found is not None:
                return found
        return None

    async def effective_allow_from(self) -> list[str]:
        try:
            stored = await self._store.read_allow_from_store(self._channel)
        except Exception as e:
            logger.warning("Could not read pairing allow-list: %s", e)
            stored = []
        entries = [normalize_allow_entry(e) for e in [*self._config.dm.allow_from, *stored]]
        return [e for e in entries if e]

    def command_authorized(self, allow: list[str], identity: SenderIdentity) -> bool:
        if not self._config.commands.use_access_groups:
            return True
        return bool(allow) and matches_allow_list(allow, identity.sender_id, identity.from_address)

    async def evaluate(self, event: InboundEvent) -> PolicyDecision:
        identity = sender_identity(event)
        allow = await self.effective_allow_from()
        authorized = self.command_authorized(allow, identity)
        if event.is_group:
            decision = self._evaluate_group(event, identity, authorized)
        else:
            decision = await self._evaluate_direct(identity, allow, authorized)
        if not decision.admit:
            logger.debug(
                "elyments: drop message %s from %s (%s)", event.id, identity.sender_id, decision.reason,
            )
        return decision

    async def _evaluate_direct(self, identity: SenderIdentity, allow: list[str], authorized: bool) -> PolicyDecision:
        dm = self._config.dm
        if not dm.enabled or dm.policy == "disabled":
            return PolicyDecision(admit=False, reason="dm-disabled")
        if dm.policy == "open":
            return PolicyDecision(admit=True, reason="dm-open", command_authorized=authorized)

        permitted = matches_allow_list(allow, identity.sender_id, identity.from_address, identity.bare_from)
        if permitted:
            return PolicyDecision(admit=True, reason="dm-allowlisted", command_authorized=authorized)

        if dm.policy == "pairing":
            result = await self._store.upsert_pairing_request(
                self._channel, identity.sender_id, {"name": identity.display_name},
            )
            if not result.created:
                return PolicyDecision(admit=False, reason="pairing-pending")
            try:
                await self._notify(identity.from_address, pairing_notice(result.code))
            except Exception as e:
                logger.debug("elyments pairing reply failed for %s: %s", identity.sender_id, e)
                if self._on_send_error:
                    self._on_send_error(e)
            return PolicyDecision(admit=False, reason="pairing-issued", pairing_code_issued=result.code)

        return PolicyDecision(admit=False, reason="not-allowlisted")

    def _evaluate_group(self, event: InboundEvent, identity: SenderIdentity, authorized: bool) -> PolicyDecision:
        if self._config.group_policy == "disabled":
            return PolicyDecision(admit=False, reason="group-disabled")

        group = self.group_config(identity)
        if self._config.group_policy == "allowlist":
            if group is None:
                return PolicyDecision(admit=False, reason="group-not-allowlisted")
            if not group.enabled:
                return PolicyDecision(admit=False, reason="group-disabled-in-config")
            if group.users and not matches_allow_list(
                [u.lower() for u in group.users], identity.sender_id, identity.display_name,
            ):
                return PolicyDecision(admit=False, reason="sender-not-in-group-users")

        group = group or GroupConfig()
        if group.auto_reply is True:
            require_mention = False
        elif group.auto_reply is False:
            require_mention = True
        else:
            require_mention = group.require_mention is not False

        text = event.body.strip()
        mentioned = matches_mention(text, self._mentions)
        commands = self._config.commands
        is_command = commands.text and has_control_command(text, commands.names)

        if is_command and not authorized:
            return PolicyDecision(admit=False, reason="unauthorized-command", was_mentioned=mentioned)

        if require_mention and not mentioned and not (is_command and authorized):
            return PolicyDecision(admit=False, reason="no-mention", command_authorized=authorized)

        return PolicyDecision(
            admit=True,
            reason="group-command-bypass" if require_mention and not mentioned else "group-ok",
            was_mentioned=mentioned,
            command_authorized=authorized,
        )
