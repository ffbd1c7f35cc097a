import pytest

from callrelay.services.admin_session import (
    AdminDialogState,
    AdminSessionStore,
    InvalidTransitionError,
    can_transition,
    transition,
)

KEY = (-100500, 1001)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTransitions:
    def test_idle_can_start_any_dialog(self):
        assert can_transition(AdminDialogState.IDLE, AdminDialogState.AWAITING_SCENARIO)
        assert can_transition(AdminDialogState.IDLE, AdminDialogState.AWAITING_DESTINATION)
        assert can_transition(AdminDialogState.IDLE, AdminDialogState.AWAITING_ADMIN_IDENTITY)

    def test_scenario_then_destination(self):
        assert transition(AdminDialogState.AWAITING_SCENARIO, AdminDialogState.AWAITING_DESTINATION) == (
            AdminDialogState.AWAITING_DESTINATION
        )

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidTransitionError):
            transition(AdminDialogState.AWAITING_ADMIN_IDENTITY, AdminDialogState.AWAITING_DESTINATION)

    def test_every_dialog_can_return_to_idle(self):
        for state in AdminDialogState:
            if state != AdminDialogState.IDLE:
                assert can_transition(state, AdminDialogState.IDLE)


class TestAdminSessionStore:
    def test_missing_session_is_idle(self):
        assert AdminSessionStore().get(KEY).state == AdminDialogState.IDLE

    def test_move_stores_values(self):
        store = AdminSessionStore()
        store.move(KEY, AdminDialogState.AWAITING_SCENARIO)
        store.move(KEY, AdminDialogState.AWAITING_DESTINATION, scenario_id="42", scenario_name="Холодные")

        session = store.get(KEY)
        assert session.state == AdminDialogState.AWAITING_DESTINATION
        assert session.scenario_id == "42"
        assert session.scenario_name == "Холодные"

    def test_back_to_idle_drops_session(self):
        store = AdminSessionStore()
        store.move(KEY, AdminDialogState.AWAITING_ADMIN_IDENTITY)
        store.move(KEY, AdminDialogState.IDLE)
        assert len(store) == 0

    def test_sessions_are_per_user_and_chat(self):
        store = AdminSessionStore()
        store.move(KEY, AdminDialogState.AWAITING_ADMIN_IDENTITY)
        assert store.get((-100500, 2002)).state == AdminDialogState.IDLE
        assert store.get((555, 1001)).state == AdminDialogState.IDLE

    def test_expired_session_reads_as_idle(self):
        clock = FakeClock()
        store = AdminSessionStore(ttl_seconds=600, clock=clock)
        store.move(KEY, AdminDialogState.AWAITING_ADMIN_IDENTITY)

        clock.now = 601
        assert store.get(KEY).state == AdminDialogState.IDLE
        assert len(store) == 0

    def test_purge_expired(self):
        clock = FakeClock()
        store = AdminSessionStore(ttl_seconds=10, clock=clock)
        store.move(KEY, AdminDialogState.AWAITING_SCENARIO)
        store.move((1, 2), AdminDialogState.AWAITING_SCENARIO)
        clock.now = 11
        assert store.purge_expired() == 2

    def test_invalid_move_keeps_state(self):
        store = AdminSessionStore()
        store.move(KEY, AdminDialogState.AWAITING_ADMIN_IDENTITY)
        with pytest.raises(InvalidTransitionError):
            store.move(KEY, AdminDialogState.AWAITING_SCENARIO)
        assert store.get(KEY).state == AdminDialogState.AWAITING_ADMIN_IDENTITY
