"""PolicyGate decisions for direct and group messages."""

from datetime import datetime, timezone

import pytest

from elyments_chat.config import ChannelConfig, CommandsConfig, DmConfig, GroupConfig
from elyments_chat.models.message import InboundEvent
from elyments_chat.pairing import CODE_ALPHABET, JsonPairingStore, generate_pairing_code
from elyments_chat.policy import (
    CHANNEL_ID,
    PolicyGate,
    has_control_command,
    pairing_notice,
    sender_identity,
)


def direct(body: str = "hello", sender: str = "bob") -> InboundEvent:
    return InboundEvent(
        id="m1", from_address=f"{sender}@localhost/web", body=body,
        timestamp=datetime.now(timezone.utc), sender_name=sender.title(),
    )


def group(body: str, sender: str = "bob", room: str = "team") -> InboundEvent:
    return InboundEvent(
        id="g1", from_address=f"{room}@muclight.localhost/{sender}", kind="group", body=body,
        timestamp=datetime.now(timezone.utc),
    )


class Notices:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def __call__(self, address: str, text: str) -> None:
        self.sent.append((address, text))


class BrokenStore:
    async def upsert_pairing_request(self, channel, sender_id, meta):
        raise RuntimeError("disk gone")

    async def read_allow_from_store(self, channel):
        raise RuntimeError("disk gone")


@pytest.fixture
def pairing_store(tmp_path) -> JsonPairingStore:
    return JsonPairingStore(tmp_path / "pairing.json")


def make_gate(pairing_store, notices=None, **config) -> PolicyGate:
    return PolicyGate(ChannelConfig(**config), pairing_store, notify=notices or Notices(), bot_name="Helper")


def test_sender_identity():
    d = sender_identity(direct())
    assert (d.chat_id, d.sender_id, d.display_name) == ("bob@localhost", "bob", "Bob")
    g = sender_identity(group("hi", sender="carol"))
    assert (g.chat_id, g.sender_id, g.display_name) == ("team@muclight.localhost", "carol", "carol")


def test_pairing_code_format():
    code = generate_pairing_code()
    assert len(code) == 8
    assert set(code) <= set(CODE_ALPHABET)
    assert "elyments pairing approve ABCD2345" in pairing_notice("ABCD2345")


def test_control_commands():
    names = CommandsConfig().names
    assert has_control_command("/status", names)
    assert has_control_command("  /RESET now", names)
    assert has_control_command("/help@Helper", names)
    assert not has_control_command("/unknown", names)
    assert not has_control_command("status", names)
    assert not has_control_command("/", names)


# -- direct messages --------------------------------------------------------------

@pytest.mark.asyncio
async def test_dm_open(pairing_store):
    decision = await make_gate(pairing_store, dm=DmConfig(policy="open")).evaluate(direct())
    assert (decision.admit, decision.reason) == (True, "dm-open")


@pytest.mark.asyncio
async def test_dm_disabled(pairing_store):
    assert (await make_gate(pairing_store, dm=DmConfig(policy="disabled")).evaluate(direct())).reason == "dm-disabled"
    assert (await make_gate(pairing_store, dm=DmConfig(enabled=False, policy="open")).evaluate(direct())).reason == "dm-disabled"


@pytest.mark.asyncio
async def test_dm_allowlist(pairing_store):
    notices = Notices()
    gate = make_gate(pairing_store, notices, dm=DmConfig(policy="allowlist", allow_from=["elyments:user:BOB"]))
    assert (await gate.evaluate(direct())).reason == "dm-allowlisted"
    denied = await gate.evaluate(direct(sender="eve"))
    assert (denied.admit, denied.reason) == (False, "not-allowlisted")
    assert notices.sent == []


@pytest.mark.asyncio
async def test_dm_wildcard(pairing_store):
    gate = make_gate(pairing_store, dm=DmConfig(policy="allowlist", allow_from=["*"]))
    assert (await gate.evaluate(direct(sender="anyone"))).admit


@pytest.mark.asyncio
async def test_dm_pairing_issues_one_code(pairing_store):
    notices = Notices()
    gate = make_gate(pairing_store, notices)

    first = await gate.evaluate(direct())
    assert (first.admit, first.reason) == (False, "pairing-issued")
    assert len(notices.sent) == 1
    address, text = notices.sent[0]
    assert address == "bob@localhost/web"
    assert first.pairing_code_issued in text

    second = await gate.evaluate(direct("hello again"))
    assert (second.admit, second.reason) == (False, "pairing-pending")
    assert len(notices.sent) == 1

    requests = await pairing_store.list_requests(CHANNEL_ID)
    assert [(r.sender_id, r.meta) for r in requests] == [("bob", {"name": "Bob"})]

    approved = await pairing_store.approve(CHANNEL_ID, first.pairing_code_issued.lower())
    assert approved.sender_id == "bob"
    assert await pairing_store.list_requests() == []
    assert (await gate.evaluate(direct())).reason == "dm-allowlisted"


@pytest.mark.asyncio
async def test_pairing_notice_failure_is_reported(pairing_store):
    errors = []

    async def failing_notify(address, text):
        raise ConnectionError("offline")

    gate = PolicyGate(ChannelConfig(), pairing_store, notify=failing_notify, on_send_error=errors.append)
    decision = await gate.evaluate(direct())
    assert decision.reason == "pairing-issued"
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_unreadable_allow_store_is_treated_as_empty():
    gate = make_gate(BrokenStore(), dm=DmConfig(policy="allowlist", allow_from=["bob"]))
    assert await gate.effective_allow_from() == ["bob"]
    assert (await gate.evaluate(direct())).admit


@pytest.mark.asyncio
async def test_approve_unknown_code(pairing_store):
    assert await pairing_store.approve(CHANNEL_ID, "NOPE2345") is None


# -- groups -----------------------------------------------------------------------

TEAM = {"group:team": GroupConfig()}


@pytest.mark.asyncio
async def test_group_not_allowlisted(pairing_store):
    decision = await make_gate(pairing_store).evaluate(group("Helper hi"))
    assert (decision.admit, decision.reason) == (False, "group-not-allowlisted")


@pytest.mark.asyncio
async def test_group_policy_disabled(pairing_store):
    gate = make_gate(pairing_store, group_policy="disabled", groups=TEAM)
    assert (await gate.evaluate(group("Helper hi"))).reason == "group-disabled"


@pytest.mark.asyncio
async def test_group_disabled_in_config(pairing_store):
    gate = make_gate(pairing_store, groups={"team@muclight.localhost": GroupConfig(enabled=False)})
    assert (await gate.evaluate(group("Helper hi"))).reason == "group-disabled-in-config"


@pytest.mark.asyncio
async def test_group_requires_mention_by_default(pairing_store):
    gate = make_gate(pairing_store, groups=TEAM)
    silent = await gate.evaluate(group("just chatting"))
    assert (silent.admit, silent.reason) == (False, "no-mention")

    mentioned = await gate.evaluate(group("@helper what's up?"))
    assert (mentioned.admit, mentioned.reason, mentioned.was_mentioned) == (True, "group-ok", True)


@pytest.mark.asyncio
async def test_group_custom_mention_pattern(pairing_store):
    gate = make_gate(pairing_store, groups=TEAM, mention_patterns=[r"\bbot\b", "(unclosed"])
    assert (await gate.evaluate(group("hey bot"))).admit


@pytest.mark.asyncio
async def test_group_auto_reply(pairing_store):
    gate = make_gate(pairing_store, groups={"group:team": GroupConfig(auto_reply=True, require_mention=True)})
    decision = await gate.evaluate(group("anyone here?"))
    assert (decision.admit, decision.was_mentioned) == (True, False)

    gate = make_gate(pairing_store, groups={"group:team": GroupConfig(require_mention=False)})
    assert (await gate.evaluate(group("anyone here?"))).admit


@pytest.mark.asyncio
async def test_group_users_filter(pairing_store):
    gate = make_gate(pairing_store, groups={"group:team": GroupConfig(users=["Carol"], auto_reply=True)})
    assert (await gate.evaluate(group("hi", sender="bob"))).reason == "sender-not-in-group-users"
    assert (await gate.evaluate(group("hi", sender="carol"))).admit


@pytest.mark.asyncio
async def test_group_open_policy_without_config(pairing_store):
    gate = make_gate(pairing_store, group_policy="open")
    assert not (await gate.evaluate(group("hi"))).admit
    assert (await gate.evaluate(group("Helper hi"))).admit


@pytest.mark.asyncio
async def test_group_commands(pairing_store):
    gate = make_gate(pairing_store, groups=TEAM)
    denied = await gate.evaluate(group("/status"))
    assert (denied.admit, denied.reason) == (False, "unauthorized-command")

    gate = make_gate(pairing_store, groups=TEAM, dm=DmConfig(allow_from=["bob"]))
    bypass = await gate.evaluate(group("/status"))
    assert (bypass.admit, bypass.reason, bypass.command_authorized) == (True, "group-command-bypass", True)


@pytest.mark.asyncio
async def test_commands_without_access_groups(pairing_store):
    gate = make_gate(pairing_store, groups=TEAM, commands=CommandsConfig(use_access_groups=False))
    assert (await gate.evaluate(group("/status"))).admit


@pytest.mark.asyncio
async def test_group_config_lookup(pairing_store):
    gate = make_gate(pairing_store, groups={"elyments:group:Team": GroupConfig(system_prompt="short answers")})
    identity = sender_identity(group("x"))
    assert gate.group_config(identity).system_prompt == "short answers"
