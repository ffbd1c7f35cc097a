"""Delivery of successful-call notifications from Skorozvon to Telegram.

One inbound CallEvent produces at most one Telegram notification:

    validate -> dedup -> classify -> resolve chat -> compose
        -> wait for the recording -> audio with caption | text fallback
        -> processed-call log

``submit`` runs the fast decision steps inline and schedules the slow part
(waiting and fetching the recording) as an independent asyncio task, so the
webhook can be acknowledged immediately.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from callrelay.logging_config import CallLoggerAdapter, get_logger
from callrelay.schemas.skorozvon import CallEvent
from callrelay.services import routing_store
from callrelay.services.alert_service import alert_error
from callrelay.services.db_tasks import run_with_session
from callrelay.services.dedup import DedupSet
from callrelay.services.notification_service import (
    format_call_message,
    format_fallback_message,
    is_actionable,
    recording_file_name,
    strip_html,
)
from callrelay.services.result import AUTH_ERROR, CONFIG_ERROR, RECORDING_ERROR, SEND_ERROR, Result
from callrelay.services.skorozvon_client import SkorozvonClient, SkorozvonError
from callrelay.services.telegram_service import TelegramService, is_parse_error

logger = get_logger("delivery")


class PipelineOutcome(str, Enum):
    INVALID = "invalid"
    DUPLICATE = "duplicate"
    NOT_ACTIONABLE = "not_actionable"
    UNROUTABLE = "unroutable"
    SCHEDULED = "scheduled"
    ERROR = "error"


class DeliveryStatus(str, Enum):
    AUDIO = "audio"
    TEXT = "text"
    FAILED = "failed"


@dataclass
class PipelineConfig:
    success_markers: list[str]
    fallback_chat_id: Optional[str] = None
    recording_delay_seconds: float = 120.0
    recording_retry_delays: list[float] = field(default_factory=list)
    fetch_timeout_seconds: float = 30.0
    placeholder: str = "не указано"
    call_link_template: str = ""

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        return cls(
            success_markers=list(settings.successful_result_names),
            fallback_chat_id=settings.fallback_chat_id,
            recording_delay_seconds=settings.recording_delay_seconds,
            recording_retry_delays=list(settings.recording_retry_delays),
            fetch_timeout_seconds=settings.recording_fetch_timeout_seconds,
            placeholder=settings.not_specified_placeholder,
            call_link_template=settings.call_link_template,
        )

    @property
    def recording_schedule(self) -> list[float]:
        """Waits before each recording fetch attempt."""
        return [self.recording_delay_seconds, *self.recording_retry_delays]


class DeliveryPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        session_factory: Callable[[], Session],
        skorozvon: SkorozvonClient,
        telegram: TelegramService,
        dedup: DedupSet,
    ):
        self.config = config
        self._session_factory = session_factory
        self._skorozvon = skorozvon
        self._telegram = telegram
        self._dedup = dedup
        self._shutdown = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def _with_session(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        return await run_with_session(self._session_factory, fn, *args, **kwargs)

    # === DECISION STEPS ===

    async def submit(self, event: CallEvent) -> PipelineOutcome:
        """Decide what to do with an event and schedule delivery when needed. Never raises."""
        log = CallLoggerAdapter(logger, {"call_id": event.call_id, "scenario_id": event.scenario_id})
        try:
            return await self._submit(event, log)
        except Exception as e:
            log.error(f"Call event processing failed: {e}", exc_info=True)
            return PipelineOutcome.ERROR

    async def _submit(self, event: CallEvent, log: CallLoggerAdapter) -> PipelineOutcome:
        if not event.call_id or not event.scenario_id:
            log.debug("Call event without call id or scenario id ignored")
            return PipelineOutcome.INVALID

        if not await self._dedup.check_and_mark(event.call_id):
            log.info("Duplicate call event ignored (memory)")
            return PipelineOutcome.DUPLICATE

        if await self._is_recorded(event.call_id, log):
            log.info("Duplicate call event ignored (call log)")
            return PipelineOutcome.DUPLICATE

        if not is_actionable(event.result_name, self.config.success_markers):
            log.debug("Call result is not actionable", context={"result_name": event.result_name})
            return PipelineOutcome.NOT_ACTIONABLE

        chat_id = await self.resolve_destination(event.scenario_id, log)
        if not chat_id:
            log.info("No chat bound to scenario, call dropped")
            return PipelineOutcome.UNROUTABLE

        body = format_call_message(event, self.config.placeholder)
        task = asyncio.create_task(self.deliver(event, chat_id, body), name=f"deliver-call-{event.call_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("Delivery scheduled", context={"chat_id": chat_id})
        return PipelineOutcome.SCHEDULED

    async def _is_recorded(self, call_id: str, log: CallLoggerAdapter) -> bool:
        try:
            return await self._with_session(routing_store.is_call_recorded, call_id)
        except Exception as e:
            log.warning(f"Call log lookup failed, relying on memory dedup: {e}")
            return False

    async def resolve_destination(self, scenario_id: str, log: Optional[CallLoggerAdapter] = None) -> Optional[str]:
        """Binding for the scenario, then the configured fallback chat, then nothing."""
        log = log or CallLoggerAdapter(logger, {"scenario_id": scenario_id})
        chat_id = None
        try:
            chat_id = await self._with_session(routing_store.get_chat_for_scenario, scenario_id)
        except Exception as e:
            log.error(f"Binding lookup failed: {e}", exc_info=True)

        if chat_id:
            return chat_id
        if self.config.fallback_chat_id:
            log.info("Scenario not bound, using fallback chat")
            return self.config.fallback_chat_id
        return None

    # === DELIVERY ===

    async def deliver(self, event: CallEvent, chat_id: str, body: str) -> DeliveryStatus:
        """Wait for the recording, send exactly one notification, record the outcome."""
        log = CallLoggerAdapter(logger, {"call_id": event.call_id, "chat_id": chat_id})
        try:
            status = await self._deliver(event, chat_id, body, log)
        except Exception as e:
            log.error(f"Delivery failed unexpectedly: {e}", exc_info=True)
            status = await self._last_resort(event, chat_id, body, log)

        await self._record(event, chat_id, status, log)
        return status

    async def _deliver(self, event: CallEvent, chat_id: str, body: str, log: CallLoggerAdapter) -> DeliveryStatus:
        recording = await self._wait_for_recording(event.call_id, log)
        if recording.ok:
            response = await self._telegram.send_audio(
                chat_id,
                recording.value,
                filename=recording_file_name(event),
                caption=body,
                title=f"Звонок {event.call_id}",
            )
            if response.get("ok"):
                log.info("Recording delivered")
                return DeliveryStatus.AUDIO
            recording = Result.failure(str(response.get("description") or response.get("error")), SEND_ERROR)

        log.info(
            "Falling back to text notification",
            context={"reason": recording.error, "error_code": recording.error_code},
        )
        return await self._send_fallback(event, chat_id, body, log)

    async def _wait_for_recording(self, call_id: str, log: CallLoggerAdapter) -> Result[bytes]:
        if not self._skorozvon.configured:
            return Result.failure("Skorozvon credentials are not configured", CONFIG_ERROR)

        result: Result[bytes] = Result.failure("no fetch attempted", RECORDING_ERROR)
        for attempt, delay in enumerate(self.config.recording_schedule, start=1):
            if await self._sleep(delay):
                return Result.failure("shutting down", RECORDING_ERROR)
            result = await self._fetch_recording(call_id)
            if result.ok or result.error_code == AUTH_ERROR:
                return result
            log.info(f"Recording not ready (attempt {attempt}): {result.error}")
        return result

    async def _sleep(self, delay: float) -> bool:
        """Wait ``delay`` seconds. Returns True if shutdown interrupted the wait."""
        if delay <= 0:
            return self._shutdown.is_set()
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _fetch_recording(self, call_id: str) -> Result[bytes]:
        try:
            await self._skorozvon.get_access_token()
        except SkorozvonError as e:
            return Result.failure(e.message, AUTH_ERROR)
        except Exception as e:
            return Result.from_exception(e, AUTH_ERROR)

        try:
            data = await self._skorozvon.fetch_recording(call_id, timeout=self.config.fetch_timeout_seconds)
        except SkorozvonError as e:
            # the client already retried once with a fresh token
            code = AUTH_ERROR if e.status_code in (401, 403) else RECORDING_ERROR
            return Result.failure(e.message, code)
        except Exception as e:
            return Result.from_exception(e, RECORDING_ERROR)
        return Result.success(data)

    def _call_link(self, event: CallEvent, log: CallLoggerAdapter) -> Optional[str]:
        if not self.config.call_link_template:
            return None
        try:
            return self.config.call_link_template.format(call_id=event.call_id)
        except (KeyError, IndexError, ValueError) as e:
            log.warning(f"Call link template is invalid, link omitted: {e}")
            return None

    async def _send_fallback(self, event: CallEvent, chat_id: str, body: str, log: CallLoggerAdapter) -> DeliveryStatus:
        text = format_fallback_message(body, self._call_link(event, log))

        response = await self._telegram.send_message(chat_id, text)
        if response.get("ok"):
            return DeliveryStatus.TEXT

        # Only a markup rejection is safe to resend: after a transport error the
        # first message may have reached the chat.
        if not is_parse_error(response):
            return await self._report_failure(event, chat_id, response, log)
        return await self._send_plain(event, chat_id, text, log)

    async def _send_plain(self, event: CallEvent, chat_id: str, text: str, log: CallLoggerAdapter) -> DeliveryStatus:
        response = await self._telegram.send_message(chat_id, strip_html(text), parse_mode=None)
        if response.get("ok"):
            return DeliveryStatus.TEXT
        return await self._report_failure(event, chat_id, response, log)

    async def _last_resort(self, event: CallEvent, chat_id: str, body: str, log: CallLoggerAdapter) -> DeliveryStatus:
        try:
            return await self._send_plain(event, chat_id, format_fallback_message(body), log)
        except Exception as e:
            log.error(f"Plain-text notification failed: {e}", exc_info=True)
            return DeliveryStatus.FAILED

    async def _report_failure(self, event: CallEvent, chat_id: str, response: dict, log: CallLoggerAdapter) -> DeliveryStatus:
        error = response.get("description") or response.get("error")
        log.error(f"Notification could not be delivered: {error}")
        await alert_error("Уведомление о звонке не доставлено", {"call_id": event.call_id, "chat_id": chat_id, "error": error})
        return DeliveryStatus.FAILED

    async def _record(self, event: CallEvent, chat_id: str, status: DeliveryStatus, log: CallLoggerAdapter) -> None:
        try:
            await self._with_session(
                routing_store.record_call,
                call_id=event.call_id,
                scenario_id=event.scenario_id,
                result_name=event.result_name,
                manager_name=event.manager_name,
                phone=event.phone,
                comment=event.comment,
                started_at=event.started_at,
                chat_id=chat_id,
                delivery=status.value,
            )
        except Exception as e:
            log.error(f"Failed to write call log: {e}", exc_info=True)

    # === LIFECYCLE ===

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Interrupt pending waits and give in-flight deliveries ``timeout`` seconds to finish."""
        self._shutdown.set()
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info(f"Draining {len(tasks)} pending deliveries")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Abandoned {len(pending)} deliveries on shutdown")

    async def wait_idle(self) -> None:
        """Wait for all scheduled deliveries to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
