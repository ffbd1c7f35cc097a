import html
import re
from datetime import datetime
from typing import Iterable, Optional

from callrelay.schemas.skorozvon import CallEvent
from callrelay.services.telegram_service import CAPTION_LIMIT, MESSAGE_LIMIT

RECORDING_UNAVAILABLE_MARKER = "⚠️ Запись звонка недоступна"
DATE_FORMAT = "%d.%m.%Y %H:%M"
SHORT_FIELD_LIMIT = 100
ELLIPSIS = "…"

_TAG_RE = re.compile(r"<[^>]+>")

MESSAGE_TEMPLATE = """🔥 <b>Успешный звонок</b>

<b>Менеджер:</b> {manager}
<b>Телефон:</b> {phone}
<b>Результат:</b> {result}
<b>Комментарий:</b> {comment}
<b>Дата:</b> {date}
<b>Длительность:</b> {duration}
<b>ID звонка:</b> <code>{call_id}</code>"""


def is_actionable(result_name: Optional[str], markers: Iterable[str]) -> bool:
    """True when the call result contains any success marker, ignoring case."""
    if not result_name:
        return False
    normalized = result_name.casefold()
    return any(marker and marker.casefold() in normalized for marker in markers)


def text_length(text: str) -> int:
    """Length as Telegram counts it, in UTF-16 code units."""
    return len(text.encode("utf-16-le")) // 2


def _escape_bounded(text: str, limit: int) -> str:
    """HTML-escape ``text`` so the escaped result is at most ``limit`` units long.

    Cuts between source characters, never inside an entity.
    """
    escaped = html.escape(text)
    if text_length(escaped) <= limit:
        return escaped
    if limit < len(ELLIPSIS):
        return ""
    pieces = []
    size = 0
    for char in text:
        piece = html.escape(char)
        if size + text_length(piece) > limit - len(ELLIPSIS):
            break
        pieces.append(piece)
        size += text_length(piece)
    return "".join(pieces) + ELLIPSIS


def _field(value: Optional[str], placeholder: str, limit: Optional[int] = None) -> str:
    if value is None or not str(value).strip():
        text = placeholder
    else:
        text = str(value).strip()
    if limit is None:
        return html.escape(text)
    return _escape_bounded(text, limit)


def format_date(value: Optional[datetime], placeholder: str) -> str:
    if value is None:
        return html.escape(placeholder)
    return value.strftime(DATE_FORMAT)


def format_duration(seconds: Optional[float], placeholder: str) -> str:
    if seconds is None or seconds < 0:
        return html.escape(placeholder)
    total = int(round(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


def format_call_message(event: CallEvent, placeholder: str = "не указано", limit: int = CAPTION_LIMIT) -> str:
    """Notification body used both as the audio caption and as the text fallback.

    Free-text fields are shortened before rendering so the whole body stays
    within ``limit`` with every field line and the call id intact.
    The comment gets whatever room the other fields leave.
    """
    fields = {
        "manager": _field(event.manager_name, placeholder, SHORT_FIELD_LIMIT),
        "phone": _field(event.phone, placeholder, SHORT_FIELD_LIMIT),
        "result": _field(event.result_name, placeholder, SHORT_FIELD_LIMIT),
        "date": format_date(event.started_at, placeholder),
        "duration": format_duration(event.duration, placeholder),
        "call_id": _field(event.call_id, placeholder, SHORT_FIELD_LIMIT),
    }
    room = limit - text_length(MESSAGE_TEMPLATE.format(comment="", **fields))
    return MESSAGE_TEMPLATE.format(comment=_field(event.comment, placeholder, max(room, 0)), **fields)


def format_fallback_message(body: str, recording_link: Optional[str] = None) -> str:
    text = f"{body}\n\n{RECORDING_UNAVAILABLE_MARKER}"
    if recording_link:
        link = f'\n<a href="{html.escape(recording_link, quote=True)}">Открыть звонок</a>'
        # a link that does not fit is dropped rather than cut
        if text_length(text + link) <= MESSAGE_LIMIT:
            text += link
    return text


def strip_html(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text))


def recording_file_name(event: CallEvent) -> str:
    return f"call_{event.call_id}.mp3"
