import hmac
import json
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status

from callrelay.logging_config import get_logger
from callrelay.schemas.telegram import TelegramUpdate, TelegramWebhookResponse

logger = get_logger("telegram_webhook")

router = APIRouter()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


@router.post("/telegram-webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(request: Request):
    """Handle Telegram updates delivered in push mode: commands, dialog input, buttons, membership changes."""
    services = request.app.state.services
    secret = services.settings.telegram_webhook_secret
    if secret and not hmac.compare_digest(request.headers.get(SECRET_HEADER, ""), secret):
        logger.warning("Telegram webhook with invalid secret token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret token")

    body = await parse_telegram_update(request)
    if body is None:
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    logger.debug(f"Telegram webhook received: {body}")

    try:
        update = TelegramUpdate(**body)
    except Exception as e:
        logger.warning(f"Telegram update rejected: {e}")
        return TelegramWebhookResponse(success=False, message=str(e))

    return await services.bot.handle_update(update)


@router.get("/tg/webhook-info")
async def telegram_webhook_info(request: Request):
    """Current Telegram webhook registration, for diagnostics."""
    return await request.app.state.services.telegram.get_webhook_info()
