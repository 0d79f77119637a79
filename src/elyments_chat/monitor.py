"""
Monitor — the inbound pipeline between the connection and a reply engine.

decode (XmppClient) -> PolicyGate -> ReplyEngine -> chunk -> send

Each admitted message is handled in its own task so a slow reply never stalls
the event stream. The monitor does not reconnect; whoever runs it decides
that.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from elyments_chat.client import ElymentsClient
from elyments_chat.config import ChannelConfig
from elyments_chat.models.message import InboundEvent
from elyments_chat.pairing import PairingStore
from elyments_chat.policy import CHANNEL_ID, PolicyDecision, PolicyGate, sender_identity
from elyments_chat.transport.xmpp import ClientEvent, ClientEventType

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[BaseException], None]


class InboundEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel: str = "Elyments"
    from_: str = Field(alias="from")
    timestamp: datetime
    body: str


class ReplyContext(BaseModel):
    session_key: str
    account_id: str
    chat_type: str  # "direct" | "channel"
    chat_id: str
    message_id: str
    sender_id: str
    sender_name: str
    raw_body: str
    was_mentioned: Optional[bool] = None
    command_authorized: bool = False
    group_system_prompt: Optional[str] = None
    skill_filter: Optional[list[str]] = None


class ReplyPayload(BaseModel):
    text: Optional[str] = None
    media_url: Optional[str] = None


class ReplyEngine(Protocol):
    async def generate(self, envelope: InboundEnvelope, context: ReplyContext) -> Sequence[ReplyPayload]: ...


def chunk_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into pieces of at most ``limit`` characters.

    Prefers paragraph breaks, then line breaks, then spaces; only cuts inside
    a word when a single word is longer than the limit.
    """
    text = text.strip()
    if limit <= 0 or len(text) <= limit:
        return [text] if text else []

    chunks: list[str] = []
    rest = text
    while len(rest) > limit:
        window = rest[:limit + 1]
        cut = -1
        for separator in ("\n\n", "\n", " "):
            cut = window.rfind(separator)
            if cut > 0:
                break
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut].rstrip())
        rest = rest[cut:].lstrip()
    if rest:
        chunks.append(rest)
    return [c for c in chunks if c]


def session_key_for(account_id: str, is_group: bool, chat_id: str) -> str:
    kind = "group" if is_group else "dm"
    return f"{CHANNEL_ID}:{account_id}:{kind}:{chat_id.lower()}"


class ElymentsMonitor:
    def __init__(
        self,
        client: ElymentsClient,
        config: ChannelConfig,
        reply_engine: ReplyEngine,
        pairing_store: PairingStore,
        on_error: Optional[ErrorCallback] = None,
        startup_grace_s: float = 0.0,
    ):
        self._client = client
        self._config = config
        self._engine = reply_engine
        self._on_error = on_error or (lambda e: logger.error("elyments: %s", e))
        self._grace_s = startup_grace_s
        self._started_at = datetime.now(timezone.utc)
        self._tasks: set[asyncio.Task[None]] = set()
        self.gate = PolicyGate(
            config,
            pairing_store,
            notify=self._send_notice,
            bot_name=config.sender_name,
            on_send_error=self._on_error,
        )

    @property
    def sender_name(self) -> str:
        return self._config.sender_name or self._client.sender_name

    async def _send_notice(self, address: str, text: str) -> None:
        await self._client.send_text(address, text, self.sender_name)

    async def run(self, stop: asyncio.Event) -> None:
        """Connect, handle messages until ``stop`` is set, then disconnect."""
        if not self._config.enabled:
            logger.info("elyments channel disabled in config")
            return
        self._started_at = datetime.now(timezone.utc)
        await self._client.connect()
        logger.info("elyments: logged in as %s", self._client.user_id)

        consumer = asyncio.create_task(self._consume())
        try:
            await stop.wait()
        finally:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
            await self._client.disconnect()
            for task in list(self._tasks):
                task.cancel()
            logger.info("elyments: monitor stopped")

    async def _consume(self) -> None:
        async for event in self._client.events():
            self.dispatch(event)

    def dispatch(self, event: ClientEvent) -> None:
        if event.type == ClientEventType.MESSAGE and event.message is not None:
            task = asyncio.create_task(self.handle_message(event.message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif event.type == ClientEventType.ERROR and event.error is not None:
            self._on_error(event.error)
        elif event.type == ClientEventType.CONNECTED:
            logger.info("elyments: connected as %s", self._client.user_id)
        elif event.type == ClientEventType.DISCONNECTED:
            logger.info("elyments: disconnected (%s)", event.reason or "unknown")

    async def handle_message(self, event: InboundEvent) -> Optional[PolicyDecision]:
        """Gate one message and, if admitted, run and deliver the reply."""
        try:
            return await self._handle_message(event)
        except Exception as e:
            logger.exception("elyments handler failed")
            self._on_error(e)
            return None

    async def _handle_message(self, event: InboundEvent) -> Optional[PolicyDecision]:
        if (self._started_at - event.timestamp).total_seconds() > self._grace_s:
            logger.debug("elyments: skip message %s from before startup", event.id)
            return None

        identity = sender_identity(event)
        if identity.sender_id == self._client.user_id:
            return None
        body = event.body.strip()
        if not body:
            return None

        decision = await self.gate.evaluate(event)
        if not decision.admit:
            return decision

        group = self.gate.group_config(identity) if event.is_group else None
        system_prompt = group.system_prompt.strip() if group and group.system_prompt else None
        envelope_from = identity.chat_id if event.is_group else identity.display_name
        envelope = InboundEnvelope(
            from_=envelope_from,
            timestamp=event.timestamp,
            body=f"{body}\n[elyments message id: {event.id} chat: {identity.chat_id}]",
        )
        context = ReplyContext(
            session_key=session_key_for(self._client.account_id, event.is_group, identity.chat_id),
            account_id=self._client.account_id,
            chat_type="channel" if event.is_group else "direct",
            chat_id=identity.chat_id,
            message_id=event.id,
            sender_id=identity.sender_id,
            sender_name=identity.display_name,
            raw_body=body,
            was_mentioned=decision.was_mentioned if event.is_group else None,
            command_authorized=decision.command_authorized,
            group_system_prompt=system_prompt or None,
            skill_filter=group.skills if group else None,
        )
        logger.debug(
            "elyments inbound: chat=%s from=%s preview=%r",
            identity.chat_id, identity.sender_id, re.sub(r"\s+", " ", body)[:200],
        )

        await self._typing(identity.chat_id, True)
        try:
            replies = await self._engine.generate(envelope, context)
            delivered = await self.deliver(identity.chat_id, replies)
        finally:
            await self._typing(identity.chat_id, False)
        if delivered:
            logger.debug("elyments: delivered %d message(s) to %s", delivered, identity.chat_id)
        return decision

    async def _typing(self, address: str, typing: bool) -> None:
        try:
            await self._client.send_typing(address, typing)
        except Exception as e:
            logger.debug("elyments typing indicator failed: %s", e)

    async def deliver(self, address: str, replies: Sequence[ReplyPayload]) -> int:
        """Send replies, chunked to the text limit. Returns messages sent.

        A failed send is reported to the error callback and delivery moves on
        to the next reply; nothing is retried.
        """
        sent = 0
        for reply in replies:
            chunks = chunk_text(reply.text or "", self._config.text_chunk_limit)
            try:
                if reply.media_url:
                    caption = chunks.pop(0) if chunks else ""
                    await self._client.send_message(address, caption, media=reply.media_url, sender_name=self.sender_name)
                    sent += 1
                for chunk in chunks:
                    await self._client.send_text(address, chunk, self.sender_name)
                    sent += 1
            except Exception as e:
                logger.error("elyments reply failed for %s: %s", address, e)
                self._on_error(e)
        return sent
