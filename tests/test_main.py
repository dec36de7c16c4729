"""Tests for the Matrix runtime: outlet error handling, invites, registration, event routing."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import nio
import pytest

from fakes import FakeLLMClient, make_persona
from roombot.config import reload_settings
from roombot.exceptions import ConfigurationError
from roombot.main import MatrixRoomOutlet, PersonaBot


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

OWN_ID = "@marvin:example.org"
ROOM_ID = "!room:example.org"


def _make_client() -> MagicMock:
    client = MagicMock()
    for name in (
        "update_receipt_marker",
        "room_typing",
        "room_send",
        "join",
        "whoami",
        "register",
        "sync",
        "sync_forever",
        "close",
    ):
        setattr(client, name, AsyncMock())
    client.whoami.return_value = MagicMock(spec=nio.WhoamiResponse, user_id=OWN_ID, device_id="DEV")
    return client


def _make_bot(persona=None, loader=None):
    reload_settings()
    persona = persona or make_persona()
    client = _make_client()
    bot = PersonaBot(persona, loader or MagicMock(), FakeLLMClient(persona.username), client=client)
    return bot, client


def _event(body, sender="@alice:example.org", msgtype="m.text", event_id="$e1"):
    return SimpleNamespace(
        sender=sender,
        event_id=event_id,
        source={"content": {"msgtype": msgtype, "body": body}},
    )


# ---------------------------------------------------------------------------
# MatrixRoomOutlet
# ---------------------------------------------------------------------------

class TestOutlet:
    @pytest.mark.asyncio
    async def test_reaction_content(self):
        client = _make_client()
        outlet = MatrixRoomOutlet(client, ROOM_ID)

        await outlet.send_reaction("$e1", "😊")

        client.room_send.assert_awaited_once_with(
            ROOM_ID,
            "m.reaction",
            {"m.relates_to": {"rel_type": "m.annotation", "event_id": "$e1", "key": "😊"}},
        )

    @pytest.mark.asyncio
    async def test_text_and_typing(self):
        client = _make_client()
        outlet = MatrixRoomOutlet(client, ROOM_ID)

        await outlet.set_typing(True, 120000)
        await outlet.send_text("hello")
        await outlet.send_read_receipt("$e1")

        client.room_typing.assert_awaited_once_with(ROOM_ID, typing_state=True, timeout=120000)
        client.room_send.assert_awaited_once_with(
            ROOM_ID, "m.room.message", {"msgtype": "m.text", "body": "hello"}
        )
        client.update_receipt_marker.assert_awaited_once_with(ROOM_ID, "$e1")

    @pytest.mark.asyncio
    async def test_send_exception_is_swallowed(self):
        client = _make_client()
        client.room_send.side_effect = RuntimeError("network down")

        await MatrixRoomOutlet(client, ROOM_ID).send_text("hello")

    @pytest.mark.asyncio
    async def test_error_response_is_logged(self, caplog):
        client = _make_client()
        client.room_send.return_value = MagicMock(spec=nio.ErrorResponse)

        await MatrixRoomOutlet(client, ROOM_ID).send_text("hello")

        assert "Matrix request returned an error" in caplog.text


# ---------------------------------------------------------------------------
# PersonaBot
# ---------------------------------------------------------------------------

class TestStart:
    @pytest.mark.asyncio
    async def test_start_with_token(self):
        bot, client = _make_bot()

        await bot.start()

        client.register.assert_not_awaited()
        assert client.access_token == "token"
        assert bot.own_user_id == OWN_ID
        client.sync.assert_awaited_once()
        callback_filters = [c.args[1] for c in client.add_event_callback.call_args_list]
        assert callback_filters == [
            nio.InviteMemberEvent,
            (nio.RoomMessageText, nio.RoomMessageEmote),
        ]

    @pytest.mark.asyncio
    async def test_registers_when_token_missing(self):
        persona = make_persona(access_token=None)
        loader = MagicMock()
        loader.set_access_token.return_value = make_persona(access_token="syt_new")
        bot, client = _make_bot(persona, loader)
        client.register.return_value = MagicMock(spec=nio.RegisterResponse, access_token="syt_new")

        await bot.start()

        client.register.assert_awaited_once_with("marvin", "secret")
        loader.set_access_token.assert_called_once_with(OWN_ID, "syt_new")
        assert client.access_token == "syt_new"

    @pytest.mark.asyncio
    async def test_failed_registration_is_fatal(self):
        bot, client = _make_bot(make_persona(access_token=None))
        client.register.return_value = MagicMock(spec=nio.ErrorResponse)

        with pytest.raises(ConfigurationError):
            await bot.start()


class TestEvents:
    @pytest.mark.asyncio
    async def test_invite_for_self_joins(self):
        bot, client = _make_bot()
        client.join.return_value = MagicMock(spec=nio.JoinResponse)
        room = SimpleNamespace(room_id=ROOM_ID)

        await bot._on_invite(room, SimpleNamespace(membership="invite", state_key=OWN_ID, sender="@alice:example.org"))
        await bot._on_invite(room, SimpleNamespace(membership="invite", state_key="@other:example.org", sender="@alice:example.org"))

        client.join.assert_awaited_once_with(ROOM_ID)

    @pytest.mark.asyncio
    async def test_message_is_routed_in_background(self):
        bot, client = _make_bot()
        room = SimpleNamespace(room_id=ROOM_ID)

        await bot._on_message(room, _event("hello"))
        await asyncio.gather(*bot._tasks)

        conversation = bot.conversation_manager.find_room(ROOM_ID)
        assert len(conversation.history) == 1
        client.update_receipt_marker.assert_awaited_once_with(ROOM_ID, "$e1")

    @pytest.mark.asyncio
    async def test_handler_failure_is_logged_not_raised(self, caplog):
        bot, client = _make_bot()
        bot.conversation_manager.get_room(ROOM_ID).on_message = AsyncMock(side_effect=RuntimeError("boom"))

        await bot._on_message(SimpleNamespace(room_id=ROOM_ID), _event("hello"))
        await asyncio.gather(*bot._tasks, return_exceptions=True)
        await asyncio.sleep(0)

        assert "Error handling message" in caplog.text
        assert bot._tasks == set()
        client.room_send.assert_not_awaited()
