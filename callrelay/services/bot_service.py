"""Admin bot: commands and button callbacks for managing bindings and admins."""

import html
from typing import Callable, Optional

from sqlalchemy.orm import Session

from callrelay.logging_config import get_logger
from callrelay.schemas.telegram import (
    TelegramCallbackQuery,
    TelegramChat,
    TelegramChatMemberUpdated,
    TelegramMessage,
    TelegramUpdate,
    TelegramUser,
    TelegramWebhookResponse,
)
from callrelay.services import admin_service, routing_store
from callrelay.services.admin_service import MainAdmins, parse_identity
from callrelay.services.admin_session import AdminDialogState, AdminSessionStore
from callrelay.services.db_tasks import run_with_session
from callrelay.services.scenario_cache import ScenarioCache
from callrelay.services.telegram_service import TelegramService, inline_keyboard

logger = get_logger("bot")

ACCESS_DENIED = "⛔ Недостаточно прав"
MAX_BUTTONS = 50

OPEN = "open"
ADMIN = "admin"
MAIN_ADMIN = "main_admin"

COMMAND_PRIVILEGES = {
    "start": OPEN,
    "help": OPEN,
    "whoami": OPEN,
    "cancel": OPEN,
    "refresh_scenarios": ADMIN,
    "bindings": ADMIN,
    "bind": ADMIN,
    "unbind": ADMIN,
    "chats": ADMIN,
    "admins": MAIN_ADMIN,
    "add_admin": MAIN_ADMIN,
    "remove_admin": MAIN_ADMIN,
}

CALLBACK_PRIVILEGES = {
    "bind_scn": ADMIN,
    "bind_chat": ADMIN,
    "unbind": ADMIN,
    "rm_admin": MAIN_ADMIN,
}

HELP_TEXT = """🤖 <b>Бот уведомлений о звонках</b>

/whoami — ваш id и права
/cancel — отменить текущее действие"""

ADMIN_HELP_TEXT = """
<b>Администратор:</b>
/refresh_scenarios — обновить список сценариев
/bindings — текущие привязки
/bind — привязать сценарий к чату
/unbind — отвязать сценарий
/chats — известные чаты"""

MAIN_ADMIN_HELP_TEXT = """
<b>Главный администратор:</b>
/admins — список администраторов
/add_admin — добавить администратора
/remove_admin — удалить администратора"""


def parse_command(text: str) -> tuple[Optional[str], str]:
    """Split "/bind@SomeBot 42" into ("bind", "42")."""
    if not text or not text.startswith("/"):
        return None, ""
    head, _, args = text.strip().partition(" ")
    command = head[1:].split("@", 1)[0].lower()
    return command or None, args.strip()


def parse_callback_data(data: Optional[str]) -> tuple[Optional[str], str]:
    if not data or ":" not in data:
        return None, ""
    action, _, value = data.partition(":")
    return action, value


class BotService:
    def __init__(
        self,
        telegram: TelegramService,
        session_factory: Callable[[], Session],
        main_admins: MainAdmins,
        scenario_cache: ScenarioCache,
        sessions: AdminSessionStore,
    ):
        self.telegram = telegram
        self._session_factory = session_factory
        self.main_admins = main_admins
        self.scenario_cache = scenario_cache
        self.sessions = sessions

    async def _db(self, fn, *args, **kwargs):
        return await run_with_session(self._session_factory, fn, *args, **kwargs)

    async def _reply(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> None:
        await self.telegram.send_message(str(chat_id), text, reply_markup=reply_markup)

    async def privilege_of(self, user: TelegramUser) -> str:
        if admin_service.is_main_admin(self.main_admins, user.id, user.username):
            return MAIN_ADMIN
        if await self._db(admin_service.is_admin, self.main_admins, user.id, user.username):
            return ADMIN
        return OPEN

    async def is_allowed(self, user: TelegramUser, required: str) -> bool:
        if required == OPEN:
            return True
        privilege = await self.privilege_of(user)
        if required == MAIN_ADMIN:
            return privilege == MAIN_ADMIN
        return privilege in (ADMIN, MAIN_ADMIN)

    # === UPDATES ===

    async def handle_update(self, update: TelegramUpdate) -> TelegramWebhookResponse:
        try:
            if update.my_chat_member:
                return await self.handle_membership(update.my_chat_member)
            if update.callback_query:
                return await self.handle_callback(update.callback_query)
            message = update.message or update.channel_post
            if message:
                return await self.handle_message(message)
            return TelegramWebhookResponse(success=True, message="No actionable content")
        except Exception as e:
            logger.error(f"Telegram update handling failed: {e}", exc_info=True)
            return TelegramWebhookResponse(success=False, message=str(e))

    async def handle_membership(self, member: TelegramChatMemberUpdated) -> TelegramWebhookResponse:
        chat = member.chat
        if member.new_chat_member.status in ("left", "kicked"):
            await self._db(routing_store.remove_known_chat, chat.id)
            logger.info("Bot removed from chat", extra={"context": {"chat_id": chat.id}})
            return TelegramWebhookResponse(success=True, message="Chat forgotten")
        await self._remember_chat(chat)
        return TelegramWebhookResponse(success=True, message="Chat remembered")

    async def _remember_chat(self, chat: TelegramChat) -> None:
        try:
            await self._db(routing_store.upsert_known_chat, chat.id, chat.display_title, chat.type)
        except Exception as e:
            logger.warning(f"Failed to remember chat {chat.id}: {e}")

    async def handle_message(self, message: TelegramMessage) -> TelegramWebhookResponse:
        if message.chat.type != "private":
            await self._remember_chat(message.chat)

        user = message.from_user
        if user is None or user.is_bot:
            return TelegramWebhookResponse(success=True, message="Ignoring message without user")

        command, args = parse_command(message.text or "")
        if command:
            return await self.handle_command(message, user, command, args)

        session = self.sessions.get((message.chat.id, user.id))
        if session.state == AdminDialogState.AWAITING_DESTINATION:
            return await self._complete_bind_from_text(message, user)
        if session.state == AdminDialogState.AWAITING_ADMIN_IDENTITY:
            return await self._complete_add_admin(message, user)
        return TelegramWebhookResponse(success=True, message="No dialog in progress")

    # === COMMANDS ===

    async def handle_command(
        self, message: TelegramMessage, user: TelegramUser, command: str, args: str
    ) -> TelegramWebhookResponse:
        required = COMMAND_PRIVILEGES.get(command)
        if required is None:
            return TelegramWebhookResponse(success=True, message=f"Unknown command: {command}")

        if not await self.is_allowed(user, required):
            logger.info("Command rejected", extra={"context": {"command": command, "user_id": user.id}})
            await self._reply(message.chat.id, ACCESS_DENIED)
            return TelegramWebhookResponse(success=False, message="Access denied")

        handler = getattr(self, f"cmd_{command}")
        logger.info("Command received", extra={"context": {"command": command, "user_id": user.id, "chat_id": message.chat.id}})
        return await handler(message, user, args)

    async def cmd_start(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        privilege = await self.privilege_of(user)
        text = HELP_TEXT
        if privilege in (ADMIN, MAIN_ADMIN):
            text += "\n" + ADMIN_HELP_TEXT
        if privilege == MAIN_ADMIN:
            text += "\n" + MAIN_ADMIN_HELP_TEXT
        await self._reply(message.chat.id, text)
        return TelegramWebhookResponse(success=True, message="Help sent")

    cmd_help = cmd_start

    async def cmd_whoami(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        privilege = await self.privilege_of(user)
        labels = {MAIN_ADMIN: "главный администратор", ADMIN: "администратор", OPEN: "нет прав администратора"}
        username = f"@{html.escape(user.username)}" if user.username else "—"
        text = (
            f"👤 <b>{html.escape(user.full_name)}</b>\n"
            f"ID: <code>{user.id}</code>\n"
            f"Username: {username}\n"
            f"Статус: {labels[privilege]}\n"
            f"ID этого чата: <code>{message.chat.id}</code>"
        )
        await self._reply(message.chat.id, text)
        return TelegramWebhookResponse(success=True, message="Identity sent")

    async def cmd_cancel(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        self.sessions.reset((message.chat.id, user.id))
        await self._reply(message.chat.id, "Действие отменено")
        return TelegramWebhookResponse(success=True, message="Cancelled")

    async def cmd_refresh_scenarios(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        await self._reply(message.chat.id, "🔄 Обновляю сценарии...")
        result = await self.scenario_cache.refresh()
        if not result.ok:
            await self._reply(message.chat.id, f"❌ Не удалось обновить сценарии: {html.escape(result.error or '')}")
            return TelegramWebhookResponse(success=False, message=result.error)
        await self._reply(message.chat.id, f"✅ Загружено сценариев: {result.value}")
        return TelegramWebhookResponse(success=True, message="Scenarios refreshed")

    async def cmd_bindings(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        bindings = await self._db(routing_store.list_bindings)
        if not bindings:
            await self._reply(message.chat.id, "Привязок пока нет. Используйте /bind")
            return TelegramWebhookResponse(success=True, message="No bindings")

        lines = ["📋 <b>Привязки сценариев:</b>", ""]
        for binding in bindings:
            scenario = html.escape(binding.scenario_name or binding.scenario_id)
            chat = html.escape(binding.chat_title or binding.chat_id)
            lines.append(f"• {scenario} (<code>{binding.scenario_id}</code>) → {chat} (<code>{binding.chat_id}</code>)")
        await self._reply(message.chat.id, "\n".join(lines))
        return TelegramWebhookResponse(success=True, message=f"{len(bindings)} bindings")

    async def cmd_bind(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        key = (message.chat.id, user.id)
        self.sessions.reset(key)
        parts = args.split()

        if parts:
            scenario_id = parts[0]
            if len(parts) > 1:
                chat_id, chat_title = parts[1], None
            elif message.chat.type != "private":
                chat_id, chat_title = str(message.chat.id), message.chat.display_title
            else:
                scenario = await self.scenario_cache.lookup_or_refresh(scenario_id)
                self.sessions.move(
                    key,
                    AdminDialogState.AWAITING_DESTINATION,
                    scenario_id=scenario_id,
                    scenario_name=scenario.scenario_name if scenario else None,
                )
                return await self._prompt_destination(message.chat.id, scenario_id)
            return await self._bind(message.chat.id, scenario_id, chat_id, chat_title)

        if not len(self.scenario_cache):
            await self.scenario_cache.refresh()
        scenarios = self.scenario_cache.entries
        if not scenarios:
            await self._reply(message.chat.id, "Сценарии не найдены. Проверьте доступ к Скорозвону и /refresh_scenarios")
            return TelegramWebhookResponse(success=False, message="No scenarios")

        rows = [[(s.scenario_name, f"bind_scn:{s.scenario_id}")] for s in scenarios[:MAX_BUTTONS]]
        self.sessions.move(key, AdminDialogState.AWAITING_SCENARIO)
        await self._reply(message.chat.id, "Выберите сценарий:", reply_markup=inline_keyboard(rows))
        return TelegramWebhookResponse(success=True, message="Scenario choice sent")

    async def _prompt_destination(self, chat_id: int, scenario_id: str) -> TelegramWebhookResponse:
        chats = await self._db(routing_store.list_known_chats)
        rows = [[(chat.title or str(chat.id), f"bind_chat:{chat.id}")] for chat in chats[:MAX_BUTTONS]]
        text = f"Сценарий <code>{html.escape(scenario_id)}</code>. Выберите чат или отправьте его id:"
        await self._reply(chat_id, text, reply_markup=inline_keyboard(rows) if rows else None)
        return TelegramWebhookResponse(success=True, message="Destination choice sent")

    async def _bind(
        self,
        reply_chat_id: int,
        scenario_id: str,
        chat_id: str,
        chat_title: Optional[str],
        scenario_name: Optional[str] = None,
    ) -> TelegramWebhookResponse:
        if not scenario_name:
            scenario = await self.scenario_cache.lookup_or_refresh(scenario_id)
            scenario_name = scenario.scenario_name if scenario else None
        if not chat_title:
            chat_title = await self._chat_title(chat_id)

        binding = await self._db(
            routing_store.upsert_binding,
            scenario_id,
            chat_id,
            scenario_name=scenario_name,
            chat_title=chat_title,
        )
        logger.info(
            "Scenario bound",
            extra={"context": {"scenario_id": binding.scenario_id, "chat_id": binding.chat_id}},
        )
        await self._reply(
            reply_chat_id,
            f"✅ Сценарий «{html.escape(scenario_name or scenario_id)}» привязан к чату "
            f"«{html.escape(chat_title or chat_id)}»",
        )
        return TelegramWebhookResponse(success=True, message="Bound")

    async def _chat_title(self, chat_id: str) -> Optional[str]:
        try:
            chat = await self.telegram.get_chat(chat_id)
        except Exception as e:
            logger.warning(f"getChat failed for {chat_id}: {e}")
            return None
        if not chat:
            return None
        return chat.get("title") or chat.get("first_name") or chat.get("username")

    async def _complete_bind_from_text(self, message: TelegramMessage, user: TelegramUser) -> TelegramWebhookResponse:
        if not await self.is_allowed(user, ADMIN):
            self.sessions.reset((message.chat.id, user.id))
            return TelegramWebhookResponse(success=False, message="Access denied")

        chat_id = (message.text or "").strip()
        if not chat_id.lstrip("-").isdigit():
            await self._reply(message.chat.id, "Отправьте числовой id чата (например -1001234567890) или /cancel")
            return TelegramWebhookResponse(success=False, message="Invalid chat id")

        key = (message.chat.id, user.id)
        session = self.sessions.get(key)
        self.sessions.move(key, AdminDialogState.IDLE)
        return await self._bind(message.chat.id, session.scenario_id, chat_id, None, session.scenario_name)

    async def cmd_unbind(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        if args:
            return await self._unbind(message.chat.id, args.split()[0])

        bindings = await self._db(routing_store.list_bindings)
        if not bindings:
            await self._reply(message.chat.id, "Привязок нет")
            return TelegramWebhookResponse(success=True, message="No bindings")
        rows = [
            [(f"❌ {b.scenario_name or b.scenario_id} → {b.chat_title or b.chat_id}", f"unbind:{b.scenario_id}")]
            for b in bindings[:MAX_BUTTONS]
        ]
        await self._reply(message.chat.id, "Какую привязку удалить?", reply_markup=inline_keyboard(rows))
        return TelegramWebhookResponse(success=True, message="Unbind choice sent")

    async def _unbind(self, reply_chat_id: int, scenario_id: str) -> TelegramWebhookResponse:
        removed = await self._db(routing_store.remove_binding, scenario_id)
        if removed:
            logger.info("Scenario unbound", extra={"context": {"scenario_id": scenario_id}})
            await self._reply(reply_chat_id, f"✅ Привязка сценария <code>{html.escape(scenario_id)}</code> удалена")
        else:
            await self._reply(reply_chat_id, f"Привязка для сценария <code>{html.escape(scenario_id)}</code> не найдена")
        return TelegramWebhookResponse(success=True, message="Unbound" if removed else "Binding not found")

    async def cmd_chats(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        chats = await self._db(routing_store.list_known_chats)
        if not chats:
            await self._reply(message.chat.id, "Бот пока не видел ни одного группового чата. Добавьте его в группу.")
            return TelegramWebhookResponse(success=True, message="No chats")
        lines = ["💬 <b>Известные чаты:</b>", ""]
        lines += [f"• {html.escape(chat.title or '—')} — <code>{chat.id}</code>" for chat in chats]
        await self._reply(message.chat.id, "\n".join(lines))
        return TelegramWebhookResponse(success=True, message=f"{len(chats)} chats")

    # === ADMIN MANAGEMENT ===

    async def cmd_admins(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        admins = await self._db(admin_service.list_admins)
        lines = ["👑 <b>Главные администраторы:</b>"]
        main_entries = [str(uid) for uid in sorted(self.main_admins.user_ids)]
        main_entries += [f"@{name}" for name in sorted(self.main_admins.usernames)]
        lines += [f"• {html.escape(entry)}" for entry in main_entries] or ["—"]
        lines += ["", "🛡 <b>Администраторы:</b>"]
        lines += [f"• {html.escape(admin.label)}" for admin in admins] or ["—"]

        rows = [[(f"❌ {admin.label}", f"rm_admin:{admin.id}")] for admin in admins[:MAX_BUTTONS]]
        await self._reply(message.chat.id, "\n".join(lines), reply_markup=inline_keyboard(rows) if rows else None)
        return TelegramWebhookResponse(success=True, message=f"{len(admins)} admins")

    async def cmd_add_admin(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        if args:
            user_id, username = parse_identity(args.split()[0])
            return await self._add_admin(message.chat.id, user_id, username, None)

        key = (message.chat.id, user.id)
        self.sessions.reset(key)
        self.sessions.move(key, AdminDialogState.AWAITING_ADMIN_IDENTITY)
        await self._reply(
            message.chat.id,
            "Перешлите сообщение пользователя или отправьте его id / @username. /cancel — отмена",
        )
        return TelegramWebhookResponse(success=True, message="Awaiting admin identity")

    async def _complete_add_admin(self, message: TelegramMessage, user: TelegramUser) -> TelegramWebhookResponse:
        key = (message.chat.id, user.id)
        if not await self.is_allowed(user, MAIN_ADMIN):
            self.sessions.reset(key)
            return TelegramWebhookResponse(success=False, message="Access denied")

        forwarded = message.forwarded_user
        if forwarded:
            user_id, username, display_name = forwarded.id, forwarded.username, forwarded.full_name
        else:
            user_id, username = parse_identity(message.text or "")
            display_name = None
            if user_id is None and not username:
                hidden = " (пользователь скрыл аккаунт при пересылке)" if message.forward_sender_name else ""
                await self._reply(message.chat.id, f"Не удалось определить пользователя{hidden}. Отправьте id или @username")
                return TelegramWebhookResponse(success=False, message="Invalid identity")

        self.sessions.move(key, AdminDialogState.IDLE)
        return await self._add_admin(message.chat.id, user_id, username, display_name)

    async def _add_admin(
        self,
        reply_chat_id: int,
        user_id: Optional[int],
        username: Optional[str],
        display_name: Optional[str],
    ) -> TelegramWebhookResponse:
        result = await self._db(admin_service.add_admin, self.main_admins, user_id, username, display_name)
        if not result.ok:
            await self._reply(reply_chat_id, f"❌ {html.escape(result.error or '')}")
            return TelegramWebhookResponse(success=False, message=result.error)
        await self._reply(reply_chat_id, f"✅ Администратор добавлен: {html.escape(result.value.label)}")
        return TelegramWebhookResponse(success=True, message="Admin added")

    async def cmd_remove_admin(self, message: TelegramMessage, user: TelegramUser, args: str) -> TelegramWebhookResponse:
        if not args:
            return await self.cmd_admins(message, user, args)
        user_id, username = parse_identity(args.split()[0])
        return await self._remove_admin(message.chat.id, user_id=user_id, username=username)

    async def _remove_admin(self, reply_chat_id: int, **identity) -> TelegramWebhookResponse:
        result = await self._db(admin_service.remove_admin, self.main_admins, **identity)
        if not result.ok:
            await self._reply(reply_chat_id, f"❌ {html.escape(result.error or '')}")
            return TelegramWebhookResponse(success=False, message=result.error)
        await self._reply(reply_chat_id, f"✅ Администратор удалён: {html.escape(result.value)}")
        return TelegramWebhookResponse(success=True, message="Admin removed")

    # === BUTTONS ===

    async def handle_callback(self, callback: TelegramCallbackQuery) -> TelegramWebhookResponse:
        action, value = parse_callback_data(callback.data)
        required = CALLBACK_PRIVILEGES.get(action or "")
        if required is None or not value:
            await self.telegram.answer_callback_query(callback.id, "❓ Неизвестное действие")
            return TelegramWebhookResponse(success=False, message=f"Invalid callback data: {callback.data}")

        user = callback.from_user
        if not await self.is_allowed(user, required):
            await self.telegram.answer_callback_query(callback.id, ACCESS_DENIED, show_alert=True)
            return TelegramWebhookResponse(success=False, message="Access denied")

        chat_id = callback.message.chat.id if callback.message else user.id
        await self.telegram.answer_callback_query(callback.id)
        logger.info("Callback", extra={"context": {"action": action, "value": value, "user_id": user.id}})

        if action == "bind_scn":
            key = (chat_id, user.id)
            scenario = self.scenario_cache.lookup_by_id(value)
            session = self.sessions.get(key)
            if session.state != AdminDialogState.AWAITING_SCENARIO:
                self.sessions.reset(key)
            self.sessions.move(
                key,
                AdminDialogState.AWAITING_DESTINATION,
                scenario_id=value,
                scenario_name=scenario.scenario_name if scenario else None,
            )
            return await self._prompt_destination(chat_id, value)

        if action == "bind_chat":
            key = (chat_id, user.id)
            session = self.sessions.get(key)
            if session.state != AdminDialogState.AWAITING_DESTINATION or not session.scenario_id:
                await self._reply(chat_id, "Выбор устарел, начните заново: /bind")
                return TelegramWebhookResponse(success=False, message="Session expired")
            self.sessions.move(key, AdminDialogState.IDLE)
            return await self._bind(chat_id, session.scenario_id, value, None, session.scenario_name)

        if action == "unbind":
            return await self._unbind(chat_id, value)

        if not value.isdigit():
            return TelegramWebhookResponse(success=False, message=f"Invalid admin id: {value}")
        return await self._remove_admin(chat_id, admin_id=int(value))
