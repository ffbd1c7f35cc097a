import string
from typing import Annotated, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

DEFAULT_SUCCESS_MARKERS = ["Успех", "Горячий", "Горячая", "Hot"]


def _split_csv(value: object) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ValueError("expected a comma-separated string or a list")
    return [item.strip() for item in items if item and item.strip()]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./bot_data.db"
    debug: bool = False
    log_level: str = "INFO"

    tg_bot_token: str = ""
    public_url: str = ""
    telegram_webhook_secret: str = ""
    alert_bot_token: str = ""
    alert_chat_id: str = ""

    skorozvon_base_url: str = "https://app.skorozvon.ru"
    skorozvon_username: str = ""
    skorozvon_api_key: str = ""
    skorozvon_client_id: str = ""
    skorozvon_client_secret: str = ""

    successful_result_names: Annotated[list[str], NoDecode] = list(DEFAULT_SUCCESS_MARKERS)
    main_admins: Annotated[list[str], NoDecode] = []
    fallback_chat_id: Optional[str] = None

    recording_delay_seconds: float = 120.0
    recording_retry_delays: Annotated[list[float], NoDecode] = []
    recording_fetch_timeout_seconds: float = 30.0
    dedup_ttl_seconds: int = 86400
    scenario_refresh_interval_seconds: float = 3600.0
    admin_session_ttl_seconds: int = 600
    shutdown_drain_seconds: float = 10.0
    not_specified_placeholder: str = "не указано"
    call_link_template: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("successful_result_names", mode="before")
    @classmethod
    def parse_markers(cls, value: object) -> list[str]:
        markers = _split_csv(value)
        return markers or list(DEFAULT_SUCCESS_MARKERS)

    @field_validator("main_admins", mode="before")
    @classmethod
    def parse_main_admins(cls, value: object) -> list[str]:
        return _split_csv(value)

    @field_validator("recording_retry_delays", mode="before")
    @classmethod
    def parse_retry_delays(cls, value: object) -> list[float]:
        delays = [float(item) for item in _split_csv(value)]
        if any(delay < 0 for delay in delays):
            raise ValueError("recording_retry_delays must be non-negative")
        return delays

    @field_validator("fallback_chat_id", mode="before")
    @classmethod
    def blank_fallback_is_none(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("call_link_template")
    @classmethod
    def check_call_link_template(cls, value: str) -> str:
        value = value.strip()
        if not value:
            return value
        fields = {name for _, name, _, _ in string.Formatter().parse(value) if name is not None}
        if fields != {"call_id"}:
            raise ValueError("call_link_template must contain {call_id} and no other fields")
        return value


settings = Settings()
