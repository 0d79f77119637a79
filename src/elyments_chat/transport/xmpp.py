"""
XMPP-over-WebSocket connection manager.

Connection: wss://chatim.elyments.com:5285/ws-xmpp, subprotocol ``xmpp``,
SASL PLAIN with the user id and the chat access token. connect() returns once
the stream is bound and the session setup stanzas have been written.

Lifecycle:  idle -> connecting -> online -> offline -> disconnected
"""

import asyncio
import enum
import itertools
import logging
import ssl
import xml.etree.ElementTree as ET
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from elyments_chat.errors import NotConnected, TransportError
from elyments_chat.models.message import InboundEvent, MediaInfo
from elyments_chat.models.session import Session
from elyments_chat.transport import stanza as st

logger = logging.getLogger(__name__)

XMPP_SERVICE = "wss://chatim.elyments.com:5285/ws-xmpp"
XMPP_DOMAIN = "localhost"
XMPP_ORIGIN = "https://chat.elyments.com"
PING_INTERVAL_S = 30.0
OPEN_TIMEOUT_S = 15.0


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"
    DISCONNECTED = "disconnected"


class ClientEventType:
    CONNECTING = "connecting"
    CONNECTED = "connected"
    MESSAGE = "message"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ClientEvent:
    __slots__ = ("type", "message", "reason", "error")

    def __init__(self, type: str, message: Optional[InboundEvent] = None,
                 reason: Optional[str] = None, error: Optional[BaseException] = None):
        self.type = type
        self.message = message
        self.reason = reason
        self.error = error

    def __repr__(self) -> str:
        return f"ClientEvent(type={self.type!r}, reason={self.reason!r})"


class WebSocketLike(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[WebSocketLike]]


def websocket_connector(
    origin: str = XMPP_ORIGIN,
    verify_tls: bool = False,
    open_timeout: float = OPEN_TIMEOUT_S,
) -> Connector:
    """Build the default connector.

    The platform checks the Origin header and its certificate chain does not
    validate, so verification is off unless asked for.
    """
    ssl_context = ssl.create_default_context()
    if not verify_tls:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

    async def connect(url: str) -> WebSocketLike:
        return await websockets.connect(
            url,
            subprotocols=["xmpp"],  # type: ignore[list-item]
            origin=origin,  # type: ignore[arg-type]
            ssl=ssl_context if url.startswith("wss://") else None,
            open_timeout=open_timeout,
            ping_interval=None,
        )

    return connect


class XmppClient:
    def __init__(
        self,
        session: Session,
        resource: str,
        service: str = XMPP_SERVICE,
        domain: str = XMPP_DOMAIN,
        connector: Optional[Connector] = None,
        ping_interval: float = PING_INTERVAL_S,
    ):
        self._session = session
        self._resource = resource
        self._service = service
        self._domain = domain
        self._connector = connector or websocket_connector()
        self._ping_interval = ping_interval

        self._state = ConnectionState.IDLE
        self._ws: Optional[WebSocketLike] = None
        self._jid: Optional[str] = None
        self._send_lock = asyncio.Lock()
        self._reader: Optional[asyncio.Task[None]] = None
        self._pinger: Optional[asyncio.Task[None]] = None
        self._events: asyncio.Queue[ClientEvent] = asyncio.Queue()
        self._ids = itertools.count(1)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.ONLINE

    @property
    def jid(self) -> Optional[str]:
        return self._jid

    def update_session(self, session: Session) -> None:
        """Use new credentials on the next connect()."""
        self._session = session

    def next_id(self) -> str:
        return f"elyments-{next(self._ids)}"

    def _emit(self, event: ClientEvent) -> None:
        self._events.put_nowait(event)

    async def events(self) -> AsyncGenerator[ClientEvent, None]:
        """The single lifecycle/message stream. Runs until the consumer stops."""
        while True:
            yield await self._events.get()

    # -- connection --------------------------------------------------------

    async def connect(self) -> None:
        if self._state in (ConnectionState.CONNECTING, ConnectionState.ONLINE):
            return

        self._state = ConnectionState.CONNECTING
        self._emit(ClientEvent(ClientEventType.CONNECTING))
        await self._close_socket()
        try:
            self._ws = await self._connector(self._service)
            self._jid = await self._negotiate()
        except Exception as e:
            await self._abort_connect()
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"Failed to connect to {self._service}: {e}") from e

        self._state = ConnectionState.ONLINE
        logger.info("XMPP online as %s", self._jid)
        self._emit(ClientEvent(ClientEventType.CONNECTED))
        self._reader = asyncio.create_task(self._read_loop())

        try:
            await self._initialize_session()
        except Exception as e:
            logger.error("Session init error: %s", e)
            self._emit(ClientEvent(ClientEventType.ERROR, error=e))

        if self._state is ConnectionState.ONLINE:
            self._pinger = asyncio.create_task(self._ping_loop())

    async def _abort_connect(self) -> None:
        self._state = ConnectionState.OFFLINE
        await self._close_socket()

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Ignoring websocket close error: %s", e)

    async def _recv_element(self) -> ET.Element:
        assert self._ws is not None
        frame = await self._ws.recv()
        if isinstance(frame, bytes):
            frame = frame.decode("utf-8")
        logger.debug("RECV %s", frame)
        element = st.parse_frame(frame)
        if st.local_name(element) == "error":
            raise TransportError(f"Stream error: {frame[:200]}", code="stream_error")
        if st.local_name(element) == "close":
            raise TransportError("Server closed the stream during negotiation")
        return element

    async def _expect(self, name: str) -> ET.Element:
        """Read frames until one named ``name`` arrives (skipping e.g. <open/>)."""
        while True:
            element = await self._recv_element()
            if st.local_name(element) == name:
                return element

    async def _negotiate(self) -> str:
        await self._write(st.build_open(self._domain))
        features = await self._expect("features")
        mechanisms = st.sasl_mechanisms(features)
        if mechanisms and "PLAIN" not in mechanisms:
            raise TransportError(f"Server does not offer SASL PLAIN (offers {mechanisms})", code="sasl_failed")

        await self._write(st.build_auth_plain(self._session.user_id, self._session.chat_access_token))
        while True:
            outcome = await self._recv_element()
            if st.local_name(outcome) == "success":
                break
            if st.local_name(outcome) == "failure":
                reason = next((st.local_name(c) for c in outcome), "unknown")
                raise TransportError(f"SASL authentication failed: {reason}", code="sasl_failed")

        await self._write(st.build_open(self._domain))
        await self._expect("features")

        bind_id = self.next_id()
        await self._write(st.build_bind(bind_id, self._resource))
        while True:
            iq = await self._expect("iq")
            if iq.get("id") != bind_id:
                continue
            if iq.get("type") != "result":
                raise TransportError("Resource binding failed", code="bind_failed")
            return st.bound_jid(iq) or f"{self._session.user_id}@{self._domain}/{self._resource}"

    async def _initialize_session(self) -> None:
        """Session, presence, carbons, roster, in that order.

        Without presence the server does not route messages to this
        connection. The roster result is not needed.
        """
        await self._write(st.build_session_iq(self.next_id()))
        await self._write(st.build_presence())
        await self._write(st.build_enable_carbons(self.next_id()))
        await self._write(st.build_roster_request(self.next_id()))
        logger.debug("Session initialized")

    async def _read_loop(self) -> None:
        assert self._ws is not None
        reason = "offline"
        try:
            async for frame in self._ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8")
                logger.debug("RECV %s", frame)
                try:
                    element = st.parse_frame(frame)
                except ET.ParseError as e:
                    self._emit(ClientEvent(ClientEventType.ERROR, error=TransportError(f"Malformed frame: {e}")))
                    continue
                if st.local_name(element) == "close":
                    reason = "server closed stream"
                    break
                await self._handle_element(element)
        except ConnectionClosed as e:
            reason = f"connection closed ({e.rcvd.code if e.rcvd else 'no close frame'})"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("XMPP read loop failed: %s", e)
            self._emit(ClientEvent(ClientEventType.ERROR, error=e))
            reason = str(e)
        self._go_offline(reason)
        if self._state is ConnectionState.OFFLINE:
            await self._close_socket()

    async def _handle_element(self, element: ET.Element) -> None:
        name = st.local_name(element)
        if name == "message":
            try:
                event = st.decode_message(element, self._session.user_id)
            except Exception as e:
                self._emit(ClientEvent(ClientEventType.ERROR, error=e))
                return
            if event is None:
                logger.debug("Skipped non-content message stanza id=%s", element.get("id"))
                return
            self._emit(ClientEvent(ClientEventType.MESSAGE, message=event))
        elif st.is_ping(element):
            try:
                await self._write(st.build_pong(element))
            except Exception as e:
                logger.debug("Failed to answer server ping: %s", e)
        elif name == "error":
            self._emit(ClientEvent(ClientEventType.ERROR, error=TransportError(
                f"Stream error: {st.serialize(element)[:200]}", code="stream_error",
            )))

    def _stop_ping(self) -> None:
        pinger, self._pinger = self._pinger, None
        if pinger is not None and pinger is not asyncio.current_task():
            pinger.cancel()

    def _go_offline(self, reason: str) -> None:
        if self._state is not ConnectionState.ONLINE:
            return
        self._state = ConnectionState.OFFLINE
        self._stop_ping()
        logger.info("XMPP offline: %s", reason)
        self._emit(ClientEvent(ClientEventType.DISCONNECTED, reason=reason))

    async def _ping_loop(self) -> None:
        while self._state is ConnectionState.ONLINE:
            await asyncio.sleep(self._ping_interval)
            if self._state is not ConnectionState.ONLINE:
                return
            try:
                await self._write(st.build_ping(self.next_id()))
            except Exception as e:
                # Only transport closure (seen by the read loop) means offline.
                logger.warning("Keep-alive ping failed: %s", e)

    async def disconnect(self) -> None:
        self._stop_ping()
        was_online = self._state is ConnectionState.ONLINE
        self._state = ConnectionState.DISCONNECTED
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            if was_online:
                try:
                    async with self._send_lock:
                        await ws.send(st.serialize(st.build_close()))
                except Exception as e:
                    logger.debug("Ignoring error while closing stream: %s", e)
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Ignoring websocket close error: %s", e)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    # -- sending -----------------------------------------------------------

    async def _write(self, element: ET.Element) -> None:
        if self._ws is None:
            raise NotConnected()
        frame = st.serialize(element)
        async with self._send_lock:
            logger.debug("SEND %s", frame)
            await self._ws.send(frame)

    def _ensure_online(self) -> None:
        if self._state is not ConnectionState.ONLINE or self._ws is None:
            raise NotConnected()

    async def send_text(self, address: str, text: str, sender_name: Optional[str] = None) -> str:
        """Send a text message. Returns the body envelope id, which the
        platform uses to de-duplicate carbons and echoes."""
        self._ensure_online()
        body_id = st.new_body_id()
        body = st.build_text_body(text, sender_name, body_id)
        await self._write(st.build_text_message(address, self.next_id(), body))
        return body_id

    async def send_media(
        self,
        address: str,
        media: MediaInfo,
        caption: Optional[str] = None,
        sender_name: Optional[str] = None,
    ) -> str:
        self._ensure_online()
        stanza_id = self.next_id()
        await self._write(st.build_media_message(address, stanza_id, media, caption, sender_name))
        return stanza_id

    async def send_composing(self, address: str) -> None:
        if not self.connected:
            return
        await self._write(st.build_chat_state(address, "composing"))

    async def send_paused(self, address: str) -> None:
        if not self.connected:
            return
        await self._write(st.build_chat_state(address, "paused"))
