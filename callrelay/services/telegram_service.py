from typing import Any, Optional

import httpx

from callrelay.logging_config import get_logger

logger = get_logger("telegram_service")

CAPTION_LIMIT = 1024
MESSAGE_LIMIT = 4096


def _truncate(text: str, limit: int, parse_mode: Optional[str]) -> str:
    """Shorten plain text to the API limit. Formatted text is sent as is: callers bound it."""
    if parse_mode:
        return text
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


PARSE_ERROR_HINTS = ("can't parse", "can't find end", "unsupported start tag")


def is_parse_error(response: dict) -> bool:
    """True when Telegram rejected a message because of its HTML markup."""
    description = str(response.get("description") or "").lower()
    return any(hint in description for hint in PARSE_ERROR_HINTS)


class TelegramService:
    """Async client for the Telegram Bot API.

    Every method returns the decoded Bot API response. Transport failures are
    reported the same way Telegram reports API errors: ``{"ok": False, ...}``.
    """

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Make request to Telegram API."""
        if not self.enabled:
            return {"ok": False, "error": "bot token not configured"}
        url = f"{self.base_url}/{method}"
        try:
            client = self._get_client()
            request_timeout = timeout if timeout is not None else self.timeout
            if files:
                response = await client.post(url, data=data or {}, files=files, timeout=request_timeout)
            else:
                response = await client.post(url, json=data or {}, timeout=request_timeout)
            result = response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {method}: {e}")
            return {"ok": False, "error": str(e)}

        if not result.get("ok"):
            logger.warning(
                "Telegram API call rejected",
                extra={"context": {"method": method, "description": result.get("description")}},
            )
        return result

    async def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: Optional[str] = "HTML",
        disable_web_page_preview: bool = True,
    ) -> dict:
        """Send message to Telegram chat."""
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "text": _truncate(text, MESSAGE_LIMIT, parse_mode),
            "disable_web_page_preview": disable_web_page_preview,
        }
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_markup:
            data["reply_markup"] = reply_markup
        return await self._make_request("sendMessage", data)

    async def send_audio(
        self,
        chat_id: str,
        audio: bytes,
        filename: str,
        caption: Optional[str] = None,
        title: Optional[str] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> dict:
        """Upload an audio file with an optional caption."""
        data: dict[str, Any] = {"chat_id": chat_id}
        if caption:
            data["caption"] = _truncate(caption, CAPTION_LIMIT, parse_mode)
            if parse_mode:
                data["parse_mode"] = parse_mode
        if title:
            data["title"] = title
        files = {"audio": (filename, audio, "audio/mpeg")}
        return await self._make_request("sendAudio", data=data, files=files, timeout=max(self.timeout, 60.0))

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None, show_alert: bool = False) -> dict:
        data: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        if show_alert:
            data["show_alert"] = True
        return await self._make_request("answerCallbackQuery", data)

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 25) -> list[dict]:
        """Long-poll for updates. Returns an empty list on any failure."""
        data: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "channel_post", "callback_query", "my_chat_member"],
        }
        if offset is not None:
            data["offset"] = offset
        result = await self._make_request("getUpdates", data, timeout=timeout + 10)
        if not result.get("ok"):
            return []
        return result.get("result") or []

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> dict:
        data: dict[str, Any] = {
            "url": url,
            "allowed_updates": ["message", "channel_post", "callback_query", "my_chat_member"],
        }
        if secret_token:
            data["secret_token"] = secret_token
        return await self._make_request("setWebhook", data)

    async def delete_webhook(self) -> dict:
        return await self._make_request("deleteWebhook", {"drop_pending_updates": False})

    async def get_webhook_info(self) -> dict:
        return await self._make_request("getWebhookInfo")

    async def get_chat(self, chat_id: str) -> Optional[dict]:
        result = await self._make_request("getChat", {"chat_id": chat_id})
        if result.get("ok"):
            return result.get("result")
        return None


def inline_keyboard(rows: list[list[tuple[str, str]]]) -> dict:
    """Build reply_markup from rows of (text, callback_data) pairs."""
    return {"inline_keyboard": [[{"text": text, "callback_data": data} for text, data in row] for row in rows]}
