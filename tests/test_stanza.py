"""Stanza building and inbound decoding."""

import base64
import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone

from elyments_chat.models.message import MediaInfo
from elyments_chat.transport import stanza as st


def message(from_address: str, body: str = None, type: str = "chat", id: str = "stanza-1") -> ET.Element:
    el = ET.Element("message", {"xmlns": st.NS_CLIENT, "from": from_address, "to": "alice@localhost", "type": type, "id": id})
    if body is not None:
        ET.SubElement(el, "body").text = body
    return ET.fromstring(st.serialize(el))


def envelope(text: str, sender: str = "Bob", id: str = "ABC123") -> str:
    return json.dumps({"senderName": sender, "info": {"message": text}, "id": id})


def test_decode_json_body():
    event = st.decode_message(message("bob@localhost/web", envelope("hello")), "alice")
    assert event is not None
    assert event.body == "hello"
    assert event.sender_name == "Bob"
    assert event.id == "ABC123"
    assert event.kind == "direct"
    assert event.from_address == "bob@localhost/web"
    assert event.to_address == "alice@localhost"


def test_decode_caption_body():
    body = json.dumps({"senderName": "Bob", "info": {"caption": "look"}, "id": "X"})
    assert st.decode_message(message("bob@localhost", body), "alice").body == "look"


def test_decode_plain_body_uses_stanza_id():
    event = st.decode_message(message("bob@localhost", "plain words", id="m-7"), "alice")
    assert event.body == "plain words"
    assert event.sender_name is None
    assert event.id == "m-7"


def test_decode_generates_id_when_missing():
    el = ET.fromstring('<message from="bob@localhost"><body>hi</body></message>')
    event = st.decode_message(el, "alice")
    assert event.id.startswith("msg-")


def test_decode_group_by_type_or_address():
    by_type = st.decode_message(message("team@muclight.localhost/bob", envelope("hi"), type="groupchat"), "alice")
    by_address = st.decode_message(message("team@muclight.localhost/bob", envelope("hi"), type="chat"), "alice")
    assert by_type.is_group
    assert by_address.is_group


def test_decode_skips_self_echo_and_empty():
    assert st.decode_message(message("alice@localhost/other", envelope("mine")), "alice") is None
    assert st.decode_message(message("bob@localhost"), "alice") is None
    assert st.decode_message(ET.fromstring('<presence from="bob@localhost"/>'), "alice") is None


def test_decode_archived_message():
    frame = (
        f'<message xmlns="{st.NS_CLIENT}" from="alice@localhost" to="alice@localhost/web" id="outer">'
        f'<result xmlns="{st.NS_MAM}" id="r1">'
        f'<forwarded xmlns="{st.NS_FORWARD}">'
        f'<delay xmlns="{st.NS_DELAY}" stamp="2024-03-01T10:15:00Z"/>'
        f'<message xmlns="{st.NS_CLIENT}" from="bob@localhost/web" type="chat"><body>archived</body></message>'
        "</forwarded></result></message>"
    )
    # Outer "from" is our own archive, so decode as another user.
    event = st.decode_message(ET.fromstring(frame), "carol")
    assert event.body == "archived"
    assert event.timestamp == datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)


def test_received_at_is_used_without_delay():
    at = datetime(2024, 1, 2, tzinfo=timezone.utc)
    assert st.decode_message(message("bob@localhost", "x"), "alice", received_at=at).timestamp == at


def test_text_message_round_trip():
    body = st.build_text_body("hello there", "Helper", "F00D")
    out = st.build_text_message("team@muclight.localhost", "elyments-3", body)
    assert out.get("type") == "groupchat"
    assert st.find_child(out, "origin-id").get("id") == "elyments-3"

    payload = json.loads(st.child_text(out, "body"))
    assert payload["origin"] == st.CLIENT_ORIGIN_TAG
    assert payload["info"] == {"message": "hello there"}

    out.set("from", "team@muclight.localhost/bob")
    event = st.decode_message(ET.fromstring(st.serialize(out)), "alice")
    assert (event.body, event.sender_name, event.id) == ("hello there", "Helper", "F00D")


def test_text_body_defaults_sender_name():
    assert json.loads(st.build_text_body("x", None, "1"))["senderName"] == st.DEFAULT_SENDER_NAME


def test_new_body_id_format():
    body_id = st.new_body_id()
    assert len(body_id) == 32
    assert body_id == body_id.upper()
    int(body_id, 16)


def test_media_message():
    media = MediaInfo(type="image", url="https://cdn/x.png", id="m1", name="x.png", size=42, mime_type="image/png")
    out = st.build_media_message("bob@localhost", "elyments-9", media, caption="look", sender_name="Helper")
    assert out.get("type") == "chat"
    assert st.child_text(out, "body") == "look"
    x = st.find_child(out, "x")
    assert x.get("xmlns") == st.NS_MEDIA
    assert (x.get("type"), x.get("url"), x.get("id")) == ("image", "https://cdn/x.png", "m1")
    assert (x.get("name"), x.get("size"), x.get("mimeType")) == ("x.png", "42", "image/png")
    assert x.get("duration") is None
    assert st.child_text(out, "nick") == "Helper"


def test_auth_plain():
    auth = st.build_auth_plain("alice", "chat-token")
    assert auth.get("mechanism") == "PLAIN"
    assert base64.b64decode(auth.text) == b"\0alice\0chat-token"


def test_presence_and_chat_state():
    presence = st.build_presence()
    assert st.child_text(presence, "show") == "chat"
    assert st.child_text(presence, "priority") == "10"
    state = st.build_chat_state("team@muclight.localhost", "composing")
    assert state.get("type") == "groupchat"
    assert st.local_name(state[0]) == "composing"


def test_ping_and_pong():
    ping = ET.fromstring(f'<iq type="get" id="p1" from="localhost"><ping xmlns="{st.NS_PING}"/></iq>')
    assert st.is_ping(ping)
    pong = st.build_pong(ping)
    assert (pong.get("type"), pong.get("id"), pong.get("to")) == ("result", "p1", "localhost")
    assert not st.is_ping(pong)


def test_sasl_mechanisms_and_bound_jid():
    features = ET.fromstring(
        f'<features xmlns="{st.NS_STREAMS}"><mechanisms xmlns="{st.NS_SASL}">'
        "<mechanism>PLAIN</mechanism><mechanism>SCRAM-SHA-1</mechanism></mechanisms></features>"
    )
    assert st.sasl_mechanisms(features) == ["PLAIN", "SCRAM-SHA-1"]
    iq = ET.fromstring(f'<iq type="result" id="b"><bind xmlns="{st.NS_BIND}"><jid>alice@localhost/r</jid></bind></iq>')
    assert st.bound_jid(iq) == "alice@localhost/r"


def test_delay_stamp_fraction_lengths():
    def stamped(stamp: str) -> ET.Element:
        return ET.fromstring(
            f'<message xmlns="{st.NS_CLIENT}" from="alice@localhost" id="outer">'
            f'<result xmlns="{st.NS_MAM}" id="r1"><forwarded xmlns="{st.NS_FORWARD}">'
            f'<delay xmlns="{st.NS_DELAY}" stamp="{stamp}"/>'
            f'<message xmlns="{st.NS_CLIENT}" from="bob@localhost/web" type="chat"><body>late</body></message>'
            "</forwarded></result></message>"
        )

    short = st.decode_message(stamped("2024-03-01T10:15:00.12Z"), "carol")
    long = st.decode_message(stamped("2024-03-01T10:15:00.1234567Z"), "carol")
    assert short.timestamp == datetime(2024, 3, 1, 10, 15, 0, 120000, tzinfo=timezone.utc)
    assert long.timestamp == datetime(2024, 3, 1, 10, 15, 0, 123456, tzinfo=timezone.utc)
