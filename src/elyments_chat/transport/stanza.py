"""
Stanza construction and parsing for the Elyments XMPP dialect.

Frames follow RFC 7395 (one complete element per WebSocket message). Message
bodies are themselves JSON envelopes; plain-text bodies from legacy clients
are still accepted on the way in.
"""

import base64
import json
import logging
import re
import secrets
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Optional

from elyments_chat.address import is_group_address
from elyments_chat.models.message import InboundEvent, MediaInfo

logger = logging.getLogger(__name__)

NS_CLIENT = "jabber:client"
NS_FRAMING = "urn:ietf:params:xml:ns:xmpp-framing"
NS_STREAMS = "http://etherx.jabber.org/streams"
NS_SASL = "urn:ietf:params:xml:ns:xmpp-sasl"
NS_BIND = "urn:ietf:params:xml:ns:xmpp-bind"
NS_SESSION = "urn:ietf:params:xml:ns:xmpp-session"
NS_CARBONS = "urn:xmpp:carbons:2"
NS_ROSTER = "jabber:iq:roster"
NS_PING = "urn:xmpp:ping"
NS_MAM = "urn:xmpp:mam:2"
NS_FORWARD = "urn:xmpp:forward:0"
NS_DELAY = "urn:xmpp:delay"
NS_SID = "urn:xmpp:sid:0"
NS_CHATSTATES = "http://jabber.org/protocol/chatstates"
NS_NICK = "http://jabber.org/protocol/nick"
NS_MEDIA = "elyments:media"

CLIENT_ORIGIN_TAG = "W|Python|elyments-chat"
DEFAULT_SENDER_NAME = "Elyments Bot"


# -- element helpers ---------------------------------------------------------

def split_tag(tag: str) -> tuple[Optional[str], str]:
    if tag.startswith("{"):
        ns, _, local = tag[1:].partition("}")
        return ns, local
    return None, tag


def local_name(element: ET.Element) -> str:
    return split_tag(element.tag)[1]


def find_child(element: ET.Element, name: str, namespace: Optional[str] = None) -> Optional[ET.Element]:
    """First direct child named ``name``, optionally restricted to a namespace."""
    for child in element:
        ns, local = split_tag(child.tag)
        if local == name and (namespace is None or ns == namespace):
            return child
    return None


def child_text(element: ET.Element, name: str) -> str:
    child = find_child(element, name)
    if child is None or child.text is None:
        return ""
    return child.text


def serialize(element: ET.Element) -> str:
    return ET.tostring(element, encoding="unicode")


def parse_frame(frame: str) -> ET.Element:
    """Parse one WebSocket frame. Raises ET.ParseError on malformed XML."""
    return ET.fromstring(frame)


def stanza_type_for(address: str) -> str:
    return "groupchat" if is_group_address(address) else "chat"


# -- stream negotiation ------------------------------------------------------

def build_open(domain: str) -> ET.Element:
    return ET.Element("open", {"xmlns": NS_FRAMING, "to": domain, "version": "1.0"})


def build_close() -> ET.Element:
    return ET.Element("close", {"xmlns": NS_FRAMING})


def build_auth_plain(username: str, password: str) -> ET.Element:
    auth = ET.Element("auth", {"xmlns": NS_SASL, "mechanism": "PLAIN"})
    auth.text = base64.b64encode(f"\0{username}\0{password}".encode()).decode("ascii")
    return auth


def build_bind(stanza_id: str, resource: str) -> ET.Element:
    iq = ET.Element("iq", {"xmlns": NS_CLIENT, "type": "set", "id": stanza_id})
    bind = ET.SubElement(iq, "bind", {"xmlns": NS_BIND})
    ET.SubElement(bind, "resource").text = resource
    return iq


def sasl_mechanisms(features: ET.Element) -> list[str]:
    mechanisms = find_child(features, "mechanisms", NS_SASL)
    if mechanisms is None:
        return []
    return [(m.text or "").strip() for m in mechanisms if local_name(m) == "mechanism"]


def bound_jid(iq: ET.Element) -> Optional[str]:
    bind = find_child(iq, "bind", NS_BIND)
    if bind is None:
        return None
    return child_text(bind, "jid") or None


# -- session setup and keep-alive -------------------------------------------

def build_session_iq(stanza_id: str) -> ET.Element:
    iq = ET.Element("iq", {"xmlns": NS_CLIENT, "id": stanza_id, "type": "set"})
    ET.SubElement(iq, "session", {"xmlns": NS_SESSION})
    return iq


def build_presence() -> ET.Element:
    presence = ET.Element("presence", {"xmlns": NS_CLIENT})
    ET.SubElement(presence, "show").text = "chat"
    ET.SubElement(presence, "priority").text = "10"
    return presence


def build_enable_carbons(stanza_id: str) -> ET.Element:
    iq = ET.Element("iq", {"xmlns": NS_CLIENT, "id": stanza_id, "type": "set"})
    ET.SubElement(iq, "enable", {"xmlns": NS_CARBONS})
    return iq


def build_roster_request(stanza_id: str) -> ET.Element:
    iq = ET.Element("iq", {"xmlns": NS_CLIENT, "id": stanza_id, "type": "get"})
    ET.SubElement(iq, "query", {"xmlns": NS_ROSTER})
    return iq


def build_ping(stanza_id: str) -> ET.Element:
    iq = ET.Element("iq", {"type": "get", "id": stanza_id})
    ET.SubElement(iq, "ping", {"xmlns": NS_PING})
    return iq


def build_pong(ping: ET.Element) -> ET.Element:
    attrs = {"xmlns": NS_CLIENT, "type": "result", "id": ping.get("id", "")}
    if ping.get("from"):
        attrs["to"] = ping.get("from", "")
    return ET.Element("iq", attrs)


def is_ping(element: ET.Element) -> bool:
    return (
        local_name(element) == "iq"
        and element.get("type") == "get"
        and find_child(element, "ping", NS_PING) is not None
    )


# -- outbound messages -------------------------------------------------------

def new_body_id() -> str:
    return secrets.token_hex(16).upper()


def build_text_body(text: str, sender_name: Optional[str], body_id: str) -> str:
    return json.dumps({
        "senderName": sender_name or DEFAULT_SENDER_NAME,
        "ver": 1,
        "info": {"message": text},
        "id": body_id,
        "type": "text",
        "lang": "en",
        "isFwd": False,
        "origin": CLIENT_ORIGIN_TAG,
    }, ensure_ascii=False)


def build_text_message(address: str, stanza_id: str, body: str) -> ET.Element:
    message = ET.Element("message", {
        "xmlns": NS_CLIENT,
        "id": stanza_id,
        "to": address,
        "type": stanza_type_for(address),
    })
    ET.SubElement(message, "origin-id", {"xmlns": NS_SID, "id": stanza_id})
    ET.SubElement(message, "body").text = body
    return message


def build_media_message(
    address: str,
    stanza_id: str,
    media: MediaInfo,
    caption: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> ET.Element:
    message = ET.Element("message", {"type": stanza_type_for(address), "to": address, "id": stanza_id})
    if caption:
        ET.SubElement(message, "body").text = caption

    attrs = {"xmlns": NS_MEDIA, "type": media.type, "url": media.url, "id": media.id}
    optional = {
        "name": media.name,
        "size": media.size,
        "mimeType": media.mime_type,
        "duration": media.duration,
        "thumbnail": media.thumbnail,
    }
    attrs.update({key: str(value) for key, value in optional.items() if value})
    ET.SubElement(message, "x", attrs)

    if sender_name:
        ET.SubElement(message, "nick", {"xmlns": NS_NICK}).text = sender_name
    return message


def build_chat_state(address: str, state: str) -> ET.Element:
    message = ET.Element("message", {"type": stanza_type_for(address), "to": address})
    ET.SubElement(message, state, {"xmlns": NS_CHATSTATES})
    return message


# -- inbound messages --------------------------------------------------------

def parse_body_payload(raw: str) -> tuple[str, Optional[str], Optional[str]]:
    """Split a raw body into (text, sender name, embedded id).

    Rich messages carry ``{senderName, info: {message|caption}, id}``;
    anything that is not such a JSON object is taken verbatim.
    """
    try:
        parsed: Any = json.loads(raw)
    except ValueError:
        return raw, None, None
    if not isinstance(parsed, dict):
        return raw, None, None

    info = parsed.get("info")
    text = None
    if isinstance(info, dict):
        text = info.get("message") or info.get("caption")
    sender_name = parsed.get("senderName") or parsed.get("sender_name")
    body_id = parsed.get("id")
    return (
        str(text) if text else raw,
        str(sender_name) if sender_name else None,
        str(body_id) if body_id else None,
    )


_FRACTION = re.compile(r"\.(\d+)")


def _parse_stamp(stamp: str) -> Optional[datetime]:
    # fromisoformat wants exactly three or six fractional digits on older interpreters
    value = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], stamp.strip(), count=1)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_message(
    stanza: ET.Element,
    self_user_id: str,
    received_at: Optional[datetime] = None,
) -> Optional[InboundEvent]:
    """Decode a ``<message/>`` stanza into an InboundEvent.

    Returns None for stanzas that carry no content (receipts, chat states),
    for self-echoes, and for anything that is not a message.
    """
    if local_name(stanza) != "message":
        return None

    from_address = stanza.get("from", "")
    if self_user_id and self_user_id in from_address:
        return None

    raw_body = child_text(stanza, "body")
    timestamp = received_at or datetime.now(timezone.utc)

    archived = find_child(stanza, "result", NS_MAM)
    if archived is not None:
        forwarded = find_child(archived, "forwarded", NS_FORWARD)
        if forwarded is not None:
            inner = find_child(forwarded, "message")
            if inner is not None:
                raw_body = child_text(inner, "body") or raw_body
            delay = find_child(forwarded, "delay", NS_DELAY)
            if delay is not None and delay.get("stamp"):
                timestamp = _parse_stamp(delay.get("stamp", "")) or timestamp

    if not raw_body:
        return None

    text, sender_name, body_id = parse_body_payload(raw_body)
    stanza_type = stanza.get("type", "chat")
    is_group = stanza_type == "groupchat" or is_group_address(from_address)

    return InboundEvent(
        id=body_id or stanza.get("id") or f"msg-{uuid.uuid4().hex}",
        from_address=from_address,
        to_address=stanza.get("to", ""),
        kind="group" if is_group else "direct",
        body=text,
        timestamp=timestamp,
        sender_name=sender_name,
    )
