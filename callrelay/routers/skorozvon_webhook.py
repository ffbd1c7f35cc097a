import json
from typing import Optional

from fastapi import APIRouter, Request

from callrelay.logging_config import get_logger
from callrelay.schemas.skorozvon import SkorozvonWebhook, SkorozvonWebhookResponse

logger = get_logger("skorozvon_webhook")

router = APIRouter()


async def parse_webhook_body(request: Request) -> Optional[dict]:
    """Decode the CRM payload, tolerating broken encodings. Returns dict or None."""
    raw = await request.body()
    for enc in ("utf-8", "cp1251", "latin-1"):
        try:
            payload = json.loads(raw.decode(enc))
        except (UnicodeDecodeError, ValueError):
            continue
        return payload if isinstance(payload, dict) else None

    logger.warning("Failed to decode Skorozvon webhook payload")
    return None


@router.post("/webhook/skorozvon", response_model=SkorozvonWebhookResponse)
async def handle_skorozvon_webhook(request: Request):
    """
    Receive a call-result notification from Skorozvon.

    Always answers 200: delivery outcomes are visible in logs and the call log,
    never in the response code, so the CRM does not retry.
    """
    body = await parse_webhook_body(request)
    if body is None:
        return SkorozvonWebhookResponse(success=False, status="invalid")

    try:
        event = SkorozvonWebhook(**body).to_event()
    except Exception as e:
        logger.warning(f"Skorozvon webhook rejected: {e}")
        return SkorozvonWebhookResponse(success=False, status="invalid")

    logger.info(
        "Skorozvon webhook received",
        extra={"context": {"call_id": event.call_id, "scenario_id": event.scenario_id, "result_name": event.result_name}},
    )

    pipeline = request.app.state.services.pipeline
    outcome = await pipeline.submit(event)
    return SkorozvonWebhookResponse(success=True, status=outcome.value, call_id=event.call_id)


# Short path used by older CRM integrations
@router.post("/webhook", response_model=SkorozvonWebhookResponse)
async def handle_webhook_alias(request: Request):
    return await handle_skorozvon_webhook(request)
