import asyncio
from datetime import datetime, timezone
from typing import Optional

from callrelay.logging_config import get_logger
from callrelay.services.result import AUTH_ERROR, Result
from callrelay.services.skorozvon_client import Scenario, SkorozvonClient, SkorozvonError

logger = get_logger("scenario_cache")


class ScenarioCache:
    """In-memory copy of the Skorozvon scenario catalog.

    The catalog is an immutable tuple replaced in a single assignment, so
    readers never observe a half-built list while a refresh is running.
    """

    def __init__(self, client: SkorozvonClient):
        self._client = client
        self._entries: tuple[Scenario, ...] = ()
        self._refreshed_at: Optional[datetime] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def entries(self) -> tuple[Scenario, ...]:
        return self._entries

    @property
    def refreshed_at(self) -> Optional[datetime]:
        return self._refreshed_at

    def __len__(self) -> int:
        return len(self._entries)

    async def refresh(self) -> Result[int]:
        """Reload the whole catalog. On failure the previous catalog is kept."""
        async with self._refresh_lock:
            try:
                scenarios = await self._client.list_scenarios()
            except SkorozvonError as e:
                logger.warning(f"Scenario refresh failed: {e.message}")
                return Result.failure(e.message, AUTH_ERROR if e.status_code in (400, 401, 403) else "provider_error")
            except Exception as e:
                logger.error(f"Scenario refresh failed: {e}", exc_info=True)
                return Result.failure(str(e), "provider_error")

            self._entries = tuple(sorted(scenarios, key=lambda s: s.scenario_name.casefold()))
            self._refreshed_at = datetime.now(timezone.utc)

        logger.info("Scenario catalog refreshed", extra={"context": {"count": len(self._entries)}})
        return Result.success(len(self._entries))

    def lookup_by_id(self, scenario_id: str) -> Optional[Scenario]:
        scenario_id = str(scenario_id)
        for entry in self._entries:
            if entry.scenario_id == scenario_id:
                return entry
        return None

    async def lookup_or_refresh(self, scenario_id: str) -> Optional[Scenario]:
        """Lookup that refreshes once on a miss, for scenarios created after the last refresh."""
        entry = self.lookup_by_id(scenario_id)
        if entry is not None:
            return entry
        result = await self.refresh()
        if not result.ok:
            return None
        return self.lookup_by_id(scenario_id)
