from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None

    @property
    def full_name(self) -> str:
        name = self.first_name or ""
        if self.last_name:
            name = f"{name} {self.last_name}".strip()
        return name or (f"@{self.username}" if self.username else str(self.id))


class TelegramChat(BaseModel):
    id: int
    type: str  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None

    @property
    def display_title(self) -> str:
        return self.title or self.first_name or (f"@{self.username}" if self.username else str(self.id))


class TelegramMessage(BaseModel):
    message_id: int
    date: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = None  # "from" is reserved in Python
    text: Optional[str] = None
    forward_from: Optional[TelegramUser] = None
    forward_origin: Optional[dict[str, Any]] = None
    forward_sender_name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def __init__(self, **data):
        # Handle "from" -> "from_user" mapping
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)

    @property
    def forwarded_user(self) -> Optional[TelegramUser]:
        """Original author of a forwarded message, when Telegram discloses it."""
        if self.forward_from:
            return self.forward_from
        if self.forward_origin and self.forward_origin.get("type") == "user":
            sender = self.forward_origin.get("sender_user")
            if isinstance(sender, dict):
                return TelegramUser(**sender)
        return None


class TelegramCallbackQuery(BaseModel):
    id: str
    from_user: TelegramUser
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None  # callback_data from button

    def __init__(self, **data):
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)


class TelegramChatMember(BaseModel):
    status: str
    user: TelegramUser


class TelegramChatMemberUpdated(BaseModel):
    chat: TelegramChat
    from_user: TelegramUser
    date: int
    new_chat_member: TelegramChatMember

    def __init__(self, **data):
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    channel_post: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None
    my_chat_member: Optional[TelegramChatMemberUpdated] = None


class TelegramWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
