from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

AUTH_ERROR = "auth_error"
RECORDING_ERROR = "recording_error"
SEND_ERROR = "send_error"
DB_ERROR = "db_error"
CONFIG_ERROR = "config_error"
MAIN_ADMIN = "main_admin"


@dataclass
class Result(Generic[T]):
    """Outcome of a collaborator call that must not raise across a pipeline step."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def from_exception(exc: BaseException, code: str) -> "Result[T]":
        message = str(exc) or type(exc).__name__
        return Result(ok=False, error=message, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
