import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional


class AdminDialogState(str, Enum):
    IDLE = "idle"
    AWAITING_SCENARIO = "awaiting_scenario"
    AWAITING_DESTINATION = "awaiting_destination"
    AWAITING_ADMIN_IDENTITY = "awaiting_admin_identity"


VALID_TRANSITIONS = {
    AdminDialogState.IDLE: [
        AdminDialogState.AWAITING_SCENARIO,
        AdminDialogState.AWAITING_DESTINATION,
        AdminDialogState.AWAITING_ADMIN_IDENTITY,
    ],
    AdminDialogState.AWAITING_SCENARIO: [AdminDialogState.AWAITING_DESTINATION, AdminDialogState.IDLE],
    AdminDialogState.AWAITING_DESTINATION: [AdminDialogState.IDLE],
    AdminDialogState.AWAITING_ADMIN_IDENTITY: [AdminDialogState.IDLE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: AdminDialogState, to_state: AdminDialogState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: AdminDialogState, to_state: AdminDialogState) -> bool:
    """Check if transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: AdminDialogState, to_state: AdminDialogState) -> AdminDialogState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


@dataclass
class AdminSession:
    state: AdminDialogState = AdminDialogState.IDLE
    scenario_id: Optional[str] = None
    scenario_name: Optional[str] = None
    expires_at: float = 0.0
    data: dict = field(default_factory=dict)


SessionKey = tuple[int, int]  # (chat_id, user_id)


class AdminSessionStore:
    """Per-conversation dialog state with explicit expiry.

    An expired session reads back as IDLE, so an abandoned /bind never
    captures a later unrelated message.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[SessionKey, AdminSession] = {}

    def get(self, key: SessionKey) -> AdminSession:
        session = self._sessions.get(key)
        if session is None:
            return AdminSession()
        if session.expires_at <= self._clock():
            del self._sessions[key]
            return AdminSession()
        return session

    def move(self, key: SessionKey, to_state: AdminDialogState, **values) -> AdminSession:
        """Transition the conversation to ``to_state`` and refresh its expiry."""
        current = self.get(key)
        new_state = transition(current.state, to_state)
        if new_state == AdminDialogState.IDLE:
            self._sessions.pop(key, None)
            return AdminSession()
        current.state = new_state
        for name, value in values.items():
            setattr(current, name, value)
        current.expires_at = self._clock() + self.ttl_seconds
        self._sessions[key] = current
        return current

    def reset(self, key: SessionKey) -> None:
        self._sessions.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, session in self._sessions.items() if session.expires_at <= now]
        for key in expired:
            del self._sessions[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
