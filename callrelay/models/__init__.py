from callrelay.models.admin_user import AdminUser
from callrelay.models.call_log import CallLog
from callrelay.models.known_chat import KnownChat
from callrelay.models.scenario_binding import ScenarioBinding

__all__ = [
    "AdminUser",
    "CallLog",
    "KnownChat",
    "ScenarioBinding",
]
