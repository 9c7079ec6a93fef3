"""Tests for the mautrix-backed transport.

The mautrix client is replaced with mocks; no homeserver is contacted.
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.errors import MNotFound, MUnknownToken
from mautrix.types import Member, Membership

from meowrelay.core.events import (
    AppStateSyncComplete,
    ConnectionEstablished,
    HistorySyncBlob,
    KeepAliveRestored,
    KeepAliveTimeout,
    PushNameChanged,
    StreamReplaced,
    TextMessage,
)
from meowrelay.core.replies import MEOW_POLL, OutboundReply, QuoteRef
from meowrelay.core.types import InvalidIdentityError, TransportError
from meowrelay.interfaces.matrix_transport import (
    MatrixConfig,
    MatrixTransport,
    _strip_reply_fallback,
    _update_config_yaml,
    invite_target,
    poll_content,
    text_content,
)


def _transport(**cfg) -> MatrixTransport:
    fields = dict(homeserver="https://matrix.example.org", user_id="@bot:example.org")
    fields.update(cfg)
    return MatrixTransport(MatrixConfig(**fields))


def _drain(transport: MatrixTransport) -> list:
    events = []
    while not transport._queue.empty():
        events.append(transport._queue.get_nowait())
    return events


def _mock_client(members=2) -> MagicMock:
    client = MagicMock()
    client.state_store.has_full_member_list = AsyncMock(return_value=True)
    client.state_store.get_members = AsyncMock(return_value=[f"@u{i}:x" for i in range(members)])
    client.send_message_event = AsyncMock(return_value="$sent")
    client.react = AsyncMock(return_value="$reaction")
    client.redact = AsyncMock(return_value="$redaction")
    client.send_state_event = AsyncMock(return_value="$state")
    client.get_event = AsyncMock()
    return client


def _message(body="halo", msgtype="m.text", reply_to=None, sender="@alice:example.org"):
    content = SimpleNamespace(msgtype=msgtype, body=body, get_reply_to=lambda: reply_to)
    return SimpleNamespace(room_id="!dm:example.org", event_id="$e1", sender=sender, content=content)


# ===================================================================
# Identities and links
# ===================================================================

class TestParseIdentity:
    def test_bare_number_uses_default_server(self):
        assert _transport().parse_identity("+62812345") == "@62812345:example.org"

    def test_configured_default_server(self):
        assert _transport(default_server="chat.example.net").parse_identity("alice") == \
            "@alice:chat.example.net"

    @pytest.mark.parametrize("ident", ["@alice:example.org", "!room:example.org", "#meow:example.org"])
    def test_full_ids_pass_through(self, ident):
        assert _transport().parse_identity(ident) == ident

    @pytest.mark.parametrize("ident", ["", "+", "@alice", "!room:", "#:example.org", "a:b", "two words"])
    def test_invalid(self, ident):
        with pytest.raises(InvalidIdentityError):
            _transport().parse_identity(ident)

    def test_is_group(self):
        transport = _transport()
        assert transport.is_group("!room:example.org")
        assert transport.is_group("#meow:example.org")
        assert not transport.is_group("@alice:example.org")


class TestInviteTarget:
    def test_matrix_to_alias(self):
        assert invite_target("https://matrix.to/#/%23meow%3Aexample.org") == "#meow:example.org"

    def test_matrix_to_room_with_via(self):
        assert invite_target("https://matrix.to/#/!abc:example.org?via=example.org") == "!abc:example.org"

    def test_bare_alias(self):
        assert invite_target("#meow:example.org") == "#meow:example.org"

    def test_not_a_link(self):
        with pytest.raises(InvalidIdentityError):
            invite_target("https://example.org/join/abc")


# ===================================================================
# Content builders
# ===================================================================

class TestContent:
    def test_quoted_text(self):
        reply = OutboundReply(chat="!dm:x", text="hi", quote=QuoteRef("$orig", "@a:x"))
        assert text_content(reply) == {
            "msgtype": "m.text",
            "body": "hi",
            "m.relates_to": {"m.in_reply_to": {"event_id": "$orig"}},
        }

    def test_unquoted_text(self):
        assert "m.relates_to" not in text_content(OutboundReply(chat="!dm:x", text="hi"))

    def test_poll(self):
        content = poll_content(MEOW_POLL)
        start = content["org.matrix.msc3381.poll.start"]
        assert start["question"] == {"org.matrix.msc1767.text": "Apakah kalian suka meow?"}
        assert start["max_selections"] == 1
        assert [a["org.matrix.msc1767.text"] for a in start["answers"]] == ["Suka", "Tidak Suka"]
        assert content["org.matrix.msc1767.text"].startswith("Apakah kalian suka meow?")

    def test_strip_reply_fallback(self):
        body = "> <@bot:x> Paris is the capital.\n> more\n\nwhy?"
        assert _strip_reply_fallback(body) == "why?"
        assert _strip_reply_fallback("plain") == "plain"


# ===================================================================
# Inbound translation
# ===================================================================

class TestInbound:
    @pytest.mark.asyncio
    async def test_direct_text_message(self):
        transport = _transport()
        transport._client = _mock_client(members=2)
        await transport._on_message(_message("halo"))
        evt, = _drain(transport)
        assert evt == TextMessage(message_id="$e1", sender="@alice:example.org",
                                  chat="!dm:example.org", body="halo")

    @pytest.mark.asyncio
    async def test_group_and_own_message(self):
        transport = _transport()
        transport._client = _mock_client(members=5)
        await transport._on_message(_message("!status", sender="@bot:example.org"))
        evt, = _drain(transport)
        assert evt.is_group
        assert evt.from_self

    @pytest.mark.asyncio
    async def test_media_message(self):
        transport = _transport()
        transport._client = _mock_client()
        await transport._on_message(_message("cat.jpg", msgtype="m.image"))
        evt, = _drain(transport)
        assert evt.media_type == "image"
        assert evt.body == ""

    @pytest.mark.asyncio
    async def test_sticker(self):
        transport = _transport()
        transport._client = _mock_client()
        await transport._on_sticker(_message("sticker"))
        evt, = _drain(transport)
        assert evt.media_type == "sticker"

    @pytest.mark.asyncio
    async def test_unknown_msgtype_ignored(self):
        transport = _transport()
        transport._client = _mock_client()
        await transport._on_message(_message("x", msgtype="m.server_notice"))
        assert _drain(transport) == []

    @pytest.mark.asyncio
    async def test_reply_fetches_quoted_event(self):
        transport = _transport()
        client = _mock_client()
        client.get_event.return_value = SimpleNamespace(
            sender="@bot:example.org", content=SimpleNamespace(body="Paris is the capital."))
        transport._client = client
        await transport._on_message(_message("> <@bot:example.org> Paris is the capital.\n\nwhy?",
                                             reply_to="$orig"))
        evt, = _drain(transport)
        assert evt.body == "why?"
        assert evt.quoted.body == "Paris is the capital."
        assert evt.quoted.message_id == "$orig"
        assert evt.quoted.sender == "@bot:example.org"

    @pytest.mark.asyncio
    async def test_sync_lifecycle_events(self):
        transport = _transport()
        await transport._on_sync_errored({"error": "timeout", "sleep_for": 5})
        await transport._on_sync_errored({"error": "timeout", "sleep_for": 10})
        data = {"account_data": {"events": [{"type": "m.push_rules", "content": {}}]}}
        await transport._on_sync_successful({"data": data, "since": None})
        await transport._on_sync_successful({"data": {}, "since": "s1"})

        assert _drain(transport) == [
            KeepAliveTimeout(error_count=1, error="timeout"),
            KeepAliveTimeout(error_count=2, error="timeout"),
            KeepAliveRestored(),
            ConnectionEstablished(),
            HistorySyncBlob(data),
            AppStateSyncComplete("m.push_rules"),
        ]

    @pytest.mark.asyncio
    async def test_revoked_token_during_sync_means_stream_replaced(self):
        transport = _transport(access_token="syt_revoked", device_id="DEV")
        client = transport._setup_client()
        client.sync = AsyncMock(side_effect=MUnknownToken(401, "Token revoked"))
        try:
            await asyncio.wait_for(client.start(None), timeout=5)
        finally:
            await client.api.session.close()
        assert _drain(transport) == [StreamReplaced()]

    @pytest.mark.asyncio
    async def test_clean_sync_stop_emits_nothing(self):
        transport = _transport()
        await transport._on_sync_stopped({"error": None})
        await transport._on_sync_stopped({"error": RuntimeError("boom")})
        assert _drain(transport) == []

    @pytest.mark.asyncio
    async def test_own_display_name_change(self):
        transport = _transport()
        transport.display_name = "Old"
        member = SimpleNamespace(state_key="@bot:example.org", content=SimpleNamespace(displayname="New"))
        await transport._on_member(member)
        await transport._on_member(member)
        other = SimpleNamespace(state_key="@alice:example.org", content=SimpleNamespace(displayname="A"))
        await transport._on_member(other)
        assert _drain(transport) == [PushNameChanged("New")]
        assert transport.display_name == "New"


class TestGroupDetection:
    ROOM = "!group:example.org"

    @pytest.mark.asyncio
    async def test_partial_member_store_asks_the_server(self):
        transport = _transport()
        client = _mock_client()
        client.state_store = MemoryStateStore()
        await client.state_store.set_member(self.ROOM, "@bob:example.org",
                                            Member(membership=Membership.JOIN))
        client.get_joined_members = AsyncMock(
            return_value={f"@u{i}:example.org": Member(membership=Membership.JOIN) for i in range(6)})
        transport._client = client

        assert await transport._is_group_room(self.ROOM)
        client.get_joined_members.assert_awaited_once_with(self.ROOM)

    @pytest.mark.asyncio
    async def test_group_message_with_partial_store_is_flagged(self):
        transport = _transport()
        client = _mock_client()
        client.state_store = MemoryStateStore()
        await client.state_store.set_member(self.ROOM, "@alice:example.org",
                                            Member(membership=Membership.JOIN))
        client.get_joined_members = AsyncMock(
            return_value={f"@u{i}:example.org": Member(membership=Membership.JOIN) for i in range(6)})
        transport._client = client

        msg = _message("halo")
        msg.room_id = self.ROOM
        await transport._on_message(msg)
        evt, = _drain(transport)
        assert evt.is_group

    @pytest.mark.asyncio
    async def test_full_member_list_is_used_from_the_store(self):
        transport = _transport()
        transport._client = client = _mock_client(members=2)
        client.get_joined_members = AsyncMock()
        assert not await transport._is_group_room(self.ROOM)
        client.get_joined_members.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_member_lookup_failure_counts_as_group(self):
        transport = _transport()
        client = _mock_client()
        client.state_store.has_full_member_list = AsyncMock(return_value=False)
        client.get_joined_members = AsyncMock(side_effect=MNotFound(404, "Room not found"))
        transport._client = client
        assert await transport._is_group_room(self.ROOM)


# ===================================================================
# Outbound
# ===================================================================

class TestOutbound:
    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(TransportError, match="Not connected"):
            await _transport().send_message(OutboundReply(chat="!r:x", text="hi"))

    @pytest.mark.asyncio
    async def test_send_text(self):
        transport = _transport()
        transport._client = client = _mock_client()
        result = await transport.send_message(OutboundReply(chat="!r:x", text="hi"))
        assert result.message_id == "$sent"
        room_id, _, content = client.send_message_event.await_args.args
        assert room_id == "!r:x"
        assert content == {"msgtype": "m.text", "body": "hi"}

    @pytest.mark.asyncio
    async def test_send_failure_wrapped(self):
        transport = _transport()
        transport._client = client = _mock_client()
        client.send_message_event.side_effect = OSError("connection reset")
        with pytest.raises(TransportError, match="connection reset"):
            await transport.send_message(OutboundReply(chat="!r:x", text="hi"))

    @pytest.mark.asyncio
    async def test_reaction_then_removal_redacts_it(self):
        transport = _transport()
        transport._client = client = _mock_client()
        await transport.send_reaction("!r:x", "$msg", "👍")
        client.react.assert_awaited_once_with("!r:x", "$msg", "👍")
        await transport.send_reaction("!r:x", "$msg", "")
        client.redact.assert_awaited_once_with("!r:x", "$reaction")

    @pytest.mark.asyncio
    async def test_removing_unknown_reaction_fails(self):
        transport = _transport()
        transport._client = _mock_client()
        with pytest.raises(TransportError):
            await transport.send_reaction("!r:x", "$msg", "")

    @pytest.mark.asyncio
    async def test_disappearing_timer(self):
        transport = _transport()
        transport._client = client = _mock_client()
        await transport.set_disappearing_timer("!r:x", timedelta(days=1))
        room_id, _, content = client.send_state_event.await_args.args
        assert room_id == "!r:x"
        assert content == {"max_lifetime": 86_400_000}

    @pytest.mark.asyncio
    async def test_connect_without_any_credentials(self):
        with pytest.raises(TransportError, match="pairing is disabled"):
            await _transport().connect()


# ===================================================================
# Config write-back
# ===================================================================

def test_update_config_yaml_preserves_comments(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "# top comment\n"
        "matrix:\n"
        "  homeserver: \"https://matrix.example.org\"  # keep me\n"
        "  access_token: \"\"\n"
        "  device_id: \"\"\n"
        "logging:\n"
        "  level: \"INFO\"\n",
        encoding="utf-8",
    )
    _update_config_yaml(config, "syt_token", "ABCDEF", "@bot:example.org")
    text = config.read_text(encoding="utf-8")
    assert "# top comment" in text
    assert "# keep me" in text
    assert 'access_token: "syt_token"' in text
    assert 'device_id: "ABCDEF"' in text
    assert 'user_id: "@bot:example.org"' in text


def test_update_config_yaml_without_matrix_section(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("logging:\n  level: INFO\n", encoding="utf-8")
    _update_config_yaml(config, "t", "d")
    assert config.read_text(encoding="utf-8") == "logging:\n  level: INFO\n"
