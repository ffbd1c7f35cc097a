from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, field_validator


def _coerce_identifier(value: object) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _coerce_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


Identifier = Annotated[Optional[str], BeforeValidator(_coerce_identifier)]
OptionalText = Annotated[Optional[str], BeforeValidator(_coerce_text)]


class SkorozvonUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Identifier = None
    name: OptionalText = None


class SkorozvonCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Identifier = None
    scenario_id: Identifier = None
    phone: OptionalText = None
    started_at: Optional[datetime] = None
    duration: Optional[float] = None
    user: Optional[SkorozvonUser] = None

    @field_validator("started_at", mode="before")
    @classmethod
    def parse_started_at(cls, value: object) -> Optional[datetime]:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None

    @field_validator("duration", mode="before")
    @classmethod
    def parse_duration(cls, value: object) -> Optional[float]:
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None


class SkorozvonCallResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    result_name: OptionalText = None
    comment: OptionalText = None


class CallEvent(BaseModel):
    """One inbound call-result notification, flattened for the delivery pipeline."""

    call_id: Identifier = None
    scenario_id: Identifier = None
    result_name: OptionalText = None
    manager_name: OptionalText = None
    phone: OptionalText = None
    comment: OptionalText = None
    started_at: Optional[datetime] = None
    duration: Optional[float] = None


class SkorozvonWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    call: Optional[SkorozvonCall] = None
    call_result: Optional[SkorozvonCallResult] = None

    def to_event(self) -> CallEvent:
        call = self.call or SkorozvonCall()
        result = self.call_result or SkorozvonCallResult()
        return CallEvent(
            call_id=call.id,
            scenario_id=call.scenario_id,
            result_name=result.result_name,
            manager_name=call.user.name if call.user else None,
            phone=call.phone,
            comment=result.comment,
            started_at=call.started_at,
            duration=call.duration,
        )


class SkorozvonWebhookResponse(BaseModel):
    success: bool = True
    status: str
    call_id: Optional[str] = None
