"""Shared fixtures: credential store, tokens, and a scripted XMPP server."""

import asyncio
import base64
import json
import xml.etree.ElementTree as ET
from typing import Optional

import pytest

from elyments_chat.credentials import CredentialStore
from elyments_chat.models.session import Session

NS_STREAMS = "http://etherx.jabber.org/streams"
NS_SASL = "urn:ietf:params:xml:ns:xmpp-sasl"
NS_BIND = "urn:ietf:params:xml:ns:xmpp-bind"


def make_jwt(exp: Optional[float]) -> str:
    def segment(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    claims = {"sub": "alice"} if exp is None else {"sub": "alice", "exp": exp}
    return f"{segment({'alg': 'HS256'})}.{segment(claims)}.signature"


def local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class FakeXmppServer:
    """In-memory WebSocket that answers the client's negotiation frames."""

    def __init__(self, user_id: str = "alice", fail_auth: bool = False):
        self.user_id = user_id
        self.fail_auth = fail_auth
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._opens = 0

    @property
    def sent_elements(self) -> list[ET.Element]:
        return [ET.fromstring(frame) for frame in self.sent]

    @property
    def sent_names(self) -> list[str]:
        return [local(e.tag) for e in self.sent_elements]

    def push(self, frame: str) -> None:
        self._incoming.put_nowait(frame)

    def end(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, message: str) -> None:
        self.sent.append(message)
        element = ET.fromstring(message)
        name = local(element.tag)
        if name == "open":
            self._opens += 1
            self.push('<open xmlns="urn:ietf:params:xml:ns:xmpp-framing" from="localhost" version="1.0"/>')
            if self._opens == 1:
                self.push(
                    f'<features xmlns="{NS_STREAMS}"><mechanisms xmlns="{NS_SASL}">'
                    "<mechanism>PLAIN</mechanism></mechanisms></features>"
                )
            else:
                self.push(f'<features xmlns="{NS_STREAMS}"><bind xmlns="{NS_BIND}"/></features>')
        elif name == "auth":
            if self.fail_auth:
                self.push(f'<failure xmlns="{NS_SASL}"><not-authorized/></failure>')
            else:
                self.push(f'<success xmlns="{NS_SASL}"/>')
        elif name == "iq" and any(local(c.tag) == "bind" for c in element):
            resource = element[0][0].text
            self.push(
                f'<iq xmlns="jabber:client" type="result" id="{element.get("id")}">'
                f'<bind xmlns="{NS_BIND}"><jid>{self.user_id}@localhost/{resource}</jid></bind></iq>'
            )

    async def recv(self) -> str:
        frame = await self._incoming.get()
        if frame is None:
            raise ConnectionError("closed")
        return frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.end()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    return CredentialStore(home=tmp_path)


@pytest.fixture
def session() -> Session:
    return Session(user_id="alice", access_token="access-1", chat_access_token="chat-1", refresh_token="refresh-1")


@pytest.fixture
def logged_in(store, session) -> CredentialStore:
    store.save_session(session)
    return store


@pytest.fixture
def xmpp_server() -> FakeXmppServer:
    return FakeXmppServer()


@pytest.fixture
def connector(xmpp_server):
    async def connect(url: str) -> FakeXmppServer:
        return xmpp_server

    return connect


@pytest.fixture
def jwt():
    return make_jwt


@pytest.fixture
def server_factory():
    return FakeXmppServer
