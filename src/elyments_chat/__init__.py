"""
elyments-chat — Elyments messaging client for Python.

OTP login, XMPP-over-WebSocket connection and inbound reply gating for the
Elyments chat platform.
"""

from elyments_chat.client import ElymentsClient, SendResult
from elyments_chat.config import ChannelConfig, DmConfig, GroupConfig
from elyments_chat.credentials import CredentialStore
from elyments_chat.errors import (
    AuthError,
    ElymentsError,
    HttpError,
    MalformedSessionResponse,
    NoRefreshToken,
    NotConnected,
    NotLoggedIn,
    OtpError,
    RefreshFailed,
    SessionExpired,
    TransportError,
)
from elyments_chat.models.message import InboundEvent, MediaInfo
from elyments_chat.models.session import DeviceIdentity, Profile, Session
from elyments_chat.monitor import ElymentsMonitor, InboundEnvelope, ReplyContext, ReplyEngine, ReplyPayload
from elyments_chat.policy import PolicyDecision, PolicyGate
from elyments_chat.sessions import SessionManager
from elyments_chat.transport.xmpp import ClientEvent, ClientEventType, ConnectionState, XmppClient

__version__ = "0.1.0"
__all__ = [
    "ElymentsClient",
    "SendResult",
    "ChannelConfig",
    "DmConfig",
    "GroupConfig",
    "CredentialStore",
    "SessionManager",
    "XmppClient",
    "ClientEvent",
    "ClientEventType",
    "ConnectionState",
    "PolicyGate",
    "PolicyDecision",
    "ElymentsMonitor",
    "InboundEnvelope",
    "ReplyContext",
    "ReplyEngine",
    "ReplyPayload",
    "InboundEvent",
    "MediaInfo",
    "Session",
    "DeviceIdentity",
    "Profile",
    "ElymentsError",
    "AuthError",
    "NotLoggedIn",
    "NoRefreshToken",
    "SessionExpired",
    "RefreshFailed",
    "MalformedSessionResponse",
    "OtpError",
    "HttpError",
    "NotConnected",
    "TransportError",
]
