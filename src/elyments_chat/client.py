"""
ElymentsClient — the main SDK client.

Owns the credential store, session manager, REST APIs, recipient resolver and
the XMPP connection for one account. Create one per account and pass it to
whatever needs it; there is no process-wide instance.
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Optional, Union

import httpx

from elyments_chat.auth import AuthAPI
from elyments_chat.chats import ChatsAPI
from elyments_chat.credentials import DEFAULT_ACCOUNT_ID, CredentialStore
from elyments_chat.errors import NotConnected, NotLoggedIn
from elyments_chat.models.chat import ChatSummary, ResolvedRecipient
from elyments_chat.models.message import InboundEvent, MediaInfo
from elyments_chat.models.session import Profile, Session
from elyments_chat.resolver import RecipientResolver
from elyments_chat.sessions import SessionManager
from elyments_chat.transport.http import CHAT_BASE_URL, IDENTITY_BASE_URL, HttpClient
from elyments_chat.transport.xmpp import (
    XMPP_SERVICE,
    ClientEvent,
    ConnectionState,
    Connector,
    XmppClient,
)

logger = logging.getLogger(__name__)

DEFAULT_SENDER_NAME = "Elyments Bot"


class SendResult:
    __slots__ = ("message_id", "to")

    def __init__(self, message_id: str, to: str):
        self.message_id = message_id
        self.to = to

    def __repr__(self) -> str:
        return f"SendResult(message_id={self.message_id!r}, to={self.to!r})"


class ElymentsClient:
    def __init__(
        self,
        account_id: str = DEFAULT_ACCOUNT_ID,
        home: Optional[Path] = None,
        sender_name: Optional[str] = None,
        identity_url: str = IDENTITY_BASE_URL,
        chat_url: str = CHAT_BASE_URL,
        xmpp_service: str = XMPP_SERVICE,
        connector: Optional[Connector] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[CredentialStore] = None,
    ):
        self.account_id = account_id
        self.store = store or CredentialStore(home=home, account_id=account_id)
        self._sender_name = sender_name
        self._xmpp_service = xmpp_service
        self._connector = connector

        self.identity_http = HttpClient(identity_url, transport=http_transport)
        self.chat_http = HttpClient(chat_url, transport=http_transport)
        self.auth = AuthAPI(self.identity_http, self.store)
        self.sessions = SessionManager(self.store, self.identity_http)
        self.chats = ChatsAPI(self.chat_http, self.sessions)
        self.resolver = RecipientResolver([self.chats.list_chats, self.chats.list_groups])
        self.chats.add_listing_observer(self.resolver.index)

        self._xmpp: Optional[XmppClient] = None
        self._user_id: Optional[str] = None
        self._profile: Optional[Profile] = None
        self._profile_loaded = False

    @property
    def connected(self) -> bool:
        return self._xmpp is not None and self._xmpp.connected

    @property
    def xmpp(self) -> Optional[XmppClient]:
        return self._xmpp

    @property
    def user_id(self) -> Optional[str]:
        """Cached from the last connect; read from disk before that."""
        if self._user_id is not None:
            return self._user_id
        session = self.store.load_session()
        return session.user_id if session else None

    @property
    def sender_name(self) -> str:
        """Display name on outbound messages: explicit, profile, env, default."""
        if self._sender_name:
            return self._sender_name
        if not self._profile_loaded:
            self._profile = self.store.load_profile()
            self._profile_loaded = True
        if self._profile and self._profile.sender_name:
            return self._profile.sender_name
        return os.environ.get("ELYMENTS_SENDER_NAME") or DEFAULT_SENDER_NAME

    async def connect(self) -> None:
        """Connect, or reconnect after going offline with fresh credentials.

        The XmppClient is kept across reconnects so event consumers keep
        reading the same stream.
        """
        if self._xmpp is not None and self._xmpp.state in (ConnectionState.CONNECTING, ConnectionState.ONLINE):
            return
        session = await self.sessions.get_valid_session()
        self._user_id = session.user_id
        if self._xmpp is None:
            device = self.store.get_or_create_device()
            self._xmpp = XmppClient(
                session,
                device.resource,
                service=self._xmpp_service,
                connector=self._connector,
            )
        else:
            self._xmpp.update_session(session)
        await self._xmpp.connect()
        logger.info("Connected to Elyments as %s", session.user_id)

    async def disconnect(self) -> None:
        if self._xmpp is not None:
            await self._xmpp.disconnect()
        self._xmpp = None

    async def events(self) -> AsyncGenerator[ClientEvent, None]:
        if self._xmpp is None:
            raise NotConnected("Not connected. Call connect() first.")
        async for event in self._xmpp.events():
            yield event

    def _ensure_connected(self) -> XmppClient:
        if self._xmpp is None or not self._xmpp.connected:
            raise NotConnected("Not connected. Call connect() first.")
        return self._xmpp

    async def resolve_address(self, target: str) -> str:
        return await self.resolver.resolve_address(target)

    async def send_text(self, to: str, text: str, sender_name: Optional[str] = None) -> SendResult:
        xmpp = self._ensure_connected()
        address = await self.resolve_address(to)
        message_id = await xmpp.send_text(address, text, sender_name or self.sender_name)
        return SendResult(message_id, address)

    async def send_media(
        self,
        to: str,
        media: MediaInfo,
        caption: Optional[str] = None,
        sender_name: Optional[str] = None,
    ) -> SendResult:
        xmpp = self._ensure_connected()
        address = await self.resolve_address(to)
        message_id = await xmpp.send_media(address, media, caption, sender_name or self.sender_name)
        return SendResult(message_id, address)

    async def send_message(
        self,
        to: str,
        text: str,
        media: Optional[Union[str, Path]] = None,
        sender_name: Optional[str] = None,
    ) -> SendResult:
        """Send text, or upload ``media`` and send it with ``text`` as caption."""
        self._ensure_connected()
        if media:
            info = await self.chats.upload_media(media)
            return await self.send_media(to, info, text or None, sender_name)
        return await self.send_text(to, text, sender_name)

    async def send_typing(self, to: str, typing: bool) -> None:
        if not self.connected:
            return
        assert self._xmpp is not None
        address = await self.resolver.resolve_address(to, refresh=False)
        if typing:
            await self._xmpp.send_composing(address)
        else:
            await self._xmpp.send_paused(address)

    async def list_chats(self) -> list[ChatSummary]:
        return await self.chats.list_chats()

    async def list_groups(self) -> list[ChatSummary]:
        return await self.chats.list_groups()

    async def resolve_recipient(self, query: str) -> Optional[ResolvedRecipient]:
        return await self.resolver.resolve(query)

    async def get_history(self, to: str, limit: int = 50) -> list[InboundEvent]:
        address = await self.resolve_address(to)
        return await self.chats.get_history(address, limit)

    async def login(self, country_code: str, phone: str, otp: str) -> Session:
        return await self.auth.verify_otp(country_code, phone, otp)

    def logout(self) -> bool:
        self._user_id = None
        return self.sessions.logout()

    def update_profile(self, sender_name: str) -> Profile:
        session = self.store.load_session()
        if session is None:
            raise NotLoggedIn()
        profile = Profile(sender_name=sender_name, user_id=session.user_id, updated_at=datetime.now(timezone.utc))
        self.store.save_profile(profile)
        self._profile = profile
        self._profile_loaded = True
        return profile

    async def close(self) -> None:
        await self.disconnect()
        await self.identity_http.close()
        await self.chat_http.close()
