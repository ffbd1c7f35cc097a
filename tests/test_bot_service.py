import asyncio

import pytest

from callrelay.schemas.telegram import TelegramUpdate, TelegramUser
from callrelay.services import admin_service, routing_store
from callrelay.services.admin_service import MainAdmins
from callrelay.services.admin_session import AdminDialogState, AdminSessionStore
from callrelay.services.bot_service import ACCESS_DENIED, BotService, parse_callback_data, parse_command
from callrelay.services.scenario_cache import ScenarioCache

MAIN_ADMIN_ID = 1001
ADMIN_ID = 2002
STRANGER_ID = 3003
GROUP_ID = -100500


@pytest.fixture
def main_admins():
    return MainAdmins.from_config([str(MAIN_ADMIN_ID), "@boss"])


@pytest.fixture
def bot(fake_telegram, fake_skorozvon, session_factory, main_admins):
    return BotService(
        fake_telegram,
        session_factory,
        main_admins,
        ScenarioCache(fake_skorozvon),
        AdminSessionStore(),
    )


def _user(user_id: int, **extra) -> dict:
    return {"id": user_id, "is_bot": False, "first_name": f"User{user_id}", **extra}


def _message(text: str, user_id: int = MAIN_ADMIN_ID, chat_id: int = None, chat_type: str = "private", **extra) -> TelegramUpdate:
    chat_id = chat_id if chat_id is not None else user_id
    chat = {"id": chat_id, "type": chat_type}
    if chat_type != "private":
        chat["title"] = "Продажи"
    return TelegramUpdate(
        **{
            "update_id": 1,
            "message": {"message_id": 1, "date": 1702000000, "chat": chat, "from": _user(user_id), "text": text, **extra},
        }
    )


def _callback(data: str, user_id: int = MAIN_ADMIN_ID, chat_id: int = None) -> TelegramUpdate:
    chat_id = chat_id if chat_id is not None else user_id
    return TelegramUpdate(
        **{
            "update_id": 2,
            "callback_query": {
                "id": "cb1",
                "from": _user(user_id),
                "data": data,
                "message": {"message_id": 5, "date": 1702000000, "chat": {"id": chat_id, "type": "private"}},
            },
        }
    )


def _handle(bot: BotService, update: TelegramUpdate):
    return asyncio.run(bot.handle_update(update))


def _last_reply(fake_telegram) -> str:
    return fake_telegram.send_message.call_args[0][1]


class TestParsing:
    def test_parse_command_with_bot_name(self):
        assert parse_command("/bind@CallRelayBot 42 -100500") == ("bind", "42 -100500")

    def test_parse_plain_text(self):
        assert parse_command("привет") == (None, "")

    def test_parse_callback_data(self):
        assert parse_callback_data("bind_chat:-100500") == ("bind_chat", "-100500")
        assert parse_callback_data("garbage") == (None, "")


class TestAuthorization:
    def test_stranger_cannot_bind(self, bot, db, fake_telegram):
        response = _handle(bot, _message("/bind 42 -100500", user_id=STRANGER_ID))

        assert response.success is False
        assert _last_reply(fake_telegram) == ACCESS_DENIED
        assert routing_store.list_bindings(db) == []

    def test_stranger_can_ask_whoami(self, bot, fake_telegram):
        response = _handle(bot, _message("/whoami", user_id=STRANGER_ID))

        assert response.success is True
        assert str(STRANGER_ID) in _last_reply(fake_telegram)
        assert "нет прав" in _last_reply(fake_telegram)

    def test_regular_admin_can_bind_but_not_manage_admins(self, bot, db, main_admins, fake_telegram):
        admin_service.add_admin(db, main_admins, ADMIN_ID, None)

        assert _handle(bot, _message("/bind 42 -100500", user_id=ADMIN_ID)).success is True
        assert routing_store.get_chat_for_scenario(db, "42") == "-100500"

        response = _handle(bot, _message("/add_admin 4004", user_id=ADMIN_ID))
        assert response.success is False
        assert _last_reply(fake_telegram) == ACCESS_DENIED
        assert admin_service.is_admin(db, main_admins, 4004, None) is False

    def test_main_admin_by_handle(self, bot, fake_telegram):
        update = TelegramUpdate(
            **{
                "update_id": 1,
                "message": {
                    "message_id": 1,
                    "date": 1702000000,
                    "chat": {"id": 4242, "type": "private"},
                    "from": _user(4242, username="Boss"),
                    "text": "/admins",
                },
            }
        )
        assert _handle(bot, update).success is True
        assert "Главные администраторы" in _last_reply(fake_telegram)

    def test_stranger_button_press_rejected(self, bot, db, fake_telegram):
        routing_store.upsert_binding(db, "42", "-100500")

        response = _handle(bot, _callback("unbind:42", user_id=STRANGER_ID))

        assert response.success is False
        fake_telegram.answer_callback_query.assert_awaited_once_with("cb1", ACCESS_DENIED, show_alert=True)
        assert routing_store.get_chat_for_scenario(db, "42") == "-100500"

    def test_unknown_command_is_ignored(self, bot, fake_telegram):
        assert _handle(bot, _message("/launch_rockets")).success is True
        fake_telegram.send_message.assert_not_awaited()


class TestBindCommand:
    def test_bind_with_explicit_chat(self, bot, db, fake_telegram):
        _handle(bot, _message("/bind 42 -100500"))

        [binding] = routing_store.list_bindings(db)
        assert binding.scenario_id == "42"
        assert binding.chat_id == "-100500"
        assert binding.scenario_name == "Холодные звонки"
        assert binding.chat_title == "Продажи"
        assert "привязан" in _last_reply(fake_telegram)

    def test_bind_in_group_uses_current_chat(self, bot, db):
        _handle(bot, _message("/bind 42", chat_id=GROUP_ID, chat_type="supergroup"))

        assert routing_store.get_chat_for_scenario(db, "42") == str(GROUP_ID)
        assert [chat.id for chat in routing_store.list_known_chats(db)] == [GROUP_ID]

    def test_rebind_replaces_destination(self, bot, db):
        _handle(bot, _message("/bind 42 -100500"))
        _handle(bot, _message("/bind 42 -200600"))

        assert routing_store.get_chat_for_scenario(db, "42") == "-200600"
        assert len(routing_store.list_bindings(db)) == 1

    def test_button_flow(self, bot, db, fake_telegram):
        routing_store.upsert_known_chat(db, GROUP_ID, "Продажи", "supergroup")

        _handle(bot, _message("/bind"))
        markup = fake_telegram.send_message.call_args[1]["reply_markup"]
        buttons = [button["callback_data"] for row in markup["inline_keyboard"] for button in row]
        assert "bind_scn:42" in buttons
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.AWAITING_SCENARIO

        _handle(bot, _callback("bind_scn:42"))
        markup = fake_telegram.send_message.call_args[1]["reply_markup"]
        assert markup["inline_keyboard"][0][0]["callback_data"] == f"bind_chat:{GROUP_ID}"
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.AWAITING_DESTINATION

        response = _handle(bot, _callback(f"bind_chat:{GROUP_ID}"))

        assert response.success is True
        assert routing_store.get_chat_for_scenario(db, "42") == str(GROUP_ID)
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.IDLE

    def test_destination_typed_as_text(self, bot, db, fake_telegram):
        _handle(bot, _message("/bind 42"))
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.AWAITING_DESTINATION

        _handle(bot, _message("не число"))
        assert "числовой id" in _last_reply(fake_telegram)
        assert routing_store.list_bindings(db) == []

        _handle(bot, _message("-100500"))
        assert routing_store.get_chat_for_scenario(db, "42") == "-100500"

    def test_stale_destination_button(self, bot, db, fake_telegram):
        response = _handle(bot, _callback(f"bind_chat:{GROUP_ID}"))

        assert response.success is False
        assert "устарел" in _last_reply(fake_telegram)
        assert routing_store.list_bindings(db) == []

    def test_cancel_ends_dialog(self, bot, db):
        _handle(bot, _message("/bind 42"))
        _handle(bot, _message("/cancel"))
        _handle(bot, _message("-100500"))

        assert routing_store.list_bindings(db) == []

    def test_no_scenarios_available(self, bot, fake_skorozvon, fake_telegram):
        fake_skorozvon.list_scenarios.return_value = []

        response = _handle(bot, _message("/bind"))

        assert response.success is False
        assert "не найдены" in _last_reply(fake_telegram)


class TestUnbindAndListing:
    def test_unbind_command(self, bot, db):
        routing_store.upsert_binding(db, "42", "-100500")
        _handle(bot, _message("/unbind 42"))
        assert routing_store.get_chat_for_scenario(db, "42") is None

    def test_unbind_button(self, bot, db):
        routing_store.upsert_binding(db, "42", "-100500")
        _handle(bot, _callback("unbind:42"))
        assert routing_store.get_chat_for_scenario(db, "42") is None

    def test_bindings_listing(self, bot, db, fake_telegram):
        routing_store.upsert_binding(db, "42", "-100500", scenario_name="Холодные", chat_title="Продажи")
        _handle(bot, _message("/bindings"))
        reply = _last_reply(fake_telegram)
        assert "Холодные" in reply
        assert "-100500" in reply

    def test_refresh_scenarios(self, bot, fake_telegram):
        _handle(bot, _message("/refresh_scenarios"))
        assert "2" in _last_reply(fake_telegram)
        assert len(bot.scenario_cache) == 2


class TestAdminManagement:
    def test_add_and_remove_admin(self, bot, db, main_admins):
        _handle(bot, _message(f"/add_admin {ADMIN_ID}"))
        assert admin_service.is_admin(db, main_admins, ADMIN_ID, None) is True

        _handle(bot, _message(f"/remove_admin {ADMIN_ID}"))
        assert admin_service.is_admin(db, main_admins, ADMIN_ID, None) is False

    def test_add_admin_from_forwarded_message(self, bot, db, main_admins):
        _handle(bot, _message("/add_admin"))
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.AWAITING_ADMIN_IDENTITY

        _handle(bot, _message("Привет", forward_from=_user(ADMIN_ID, username="maria")))

        assert admin_service.is_admin(db, main_admins, ADMIN_ID, "maria") is True
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.IDLE

    def test_hidden_forward_asks_again(self, bot, db, fake_telegram):
        _handle(bot, _message("/add_admin"))
        _handle(bot, _message("", forward_sender_name="Мария"))

        assert "скрыл" in _last_reply(fake_telegram)
        assert admin_service.list_admins(db) == []
        assert bot.sessions.get((MAIN_ADMIN_ID, MAIN_ADMIN_ID)).state == AdminDialogState.AWAITING_ADMIN_IDENTITY

    def test_remove_admin_button(self, bot, db, main_admins):
        admin = admin_service.add_admin(db, main_admins, ADMIN_ID, None).value

        _handle(bot, _callback(f"rm_admin:{admin.id}"))

        assert admin_service.is_admin(db, main_admins, ADMIN_ID, None) is False

    def test_main_admin_cannot_be_removed(self, bot, db, main_admins, fake_telegram):
        response = _handle(bot, _message(f"/remove_admin {MAIN_ADMIN_ID}"))

        assert response.success is False
        assert "нельзя" in _last_reply(fake_telegram)
        assert admin_service.is_admin(db, main_admins, MAIN_ADMIN_ID, None) is True

    def test_main_admin_stays_admin_with_empty_store(self, bot, db):
        assert admin_service.list_admins(db) == []
        user = TelegramUser(id=MAIN_ADMIN_ID, first_name="Иван")
        assert asyncio.run(bot.privilege_of(user)) == "main_admin"


class TestMembership:
    def _member_update(self, status: str) -> TelegramUpdate:
        return TelegramUpdate(
            **{
                "update_id": 3,
                "my_chat_member": {
                    "chat": {"id": GROUP_ID, "type": "supergroup", "title": "Продажи"},
                    "from": _user(MAIN_ADMIN_ID),
                    "date": 1702000000,
                    "new_chat_member": {"status": status, "user": {"id": 99, "is_bot": True, "first_name": "Bot"}},
                },
            }
        )

    def test_added_to_group(self, bot, db):
        _handle(bot, self._member_update("member"))
        assert [chat.title for chat in routing_store.list_known_chats(db)] == ["Продажи"]

    def test_removed_from_group(self, bot, db):
        _handle(bot, self._member_update("administrator"))
        _handle(bot, self._member_update("kicked"))
        assert routing_store.list_known_chats(db) == []
