import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from callrelay.logging_config import get_logger

logger = get_logger("skorozvon")

TOKEN_REFRESH_MARGIN_SECONDS = 60
MAX_RECORDING_BYTES = 50 * 1024 * 1024  # Bot API upload limit
SCENARIO_PAGE_SIZE = 100
MAX_SCENARIO_PAGES = 50


class SkorozvonError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class Scenario:
    scenario_id: str
    scenario_name: str


def _extract_items(payload: Any) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "scenarios", "items", "result"):
            items = payload.get(key)
            if isinstance(items, list):
                return items
    return []


def _total_pages(payload: Any) -> int:
    if not isinstance(payload, dict):
        return 1
    meta = payload.get("meta") or payload.get("pagination") or {}
    try:
        return max(int(meta.get("total_pages") or meta.get("pages") or 1), 1)
    except (TypeError, ValueError, AttributeError):
        return 1


class SkorozvonClient:
    """Client for the Skorozvon REST API: OAuth token, scenarios, call recordings."""

    def __init__(
        self,
        base_url: str,
        username: str,
        api_key: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.api_key = api_key
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._client = client
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return all([self.username, self.api_key, self.client_id, self.client_secret])

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def get_access_token(self, force: bool = False) -> str:
        """Exchange credentials for an access token, reusing it until shortly before expiry."""
        if not self.configured:
            raise SkorozvonError("Skorozvon credentials are not configured")

        async with self._token_lock:
            now = time.monotonic()
            if not force and self._token and now < self._token_expires_at:
                return self._token

            try:
                response = await self._get_client().post(
                    f"{self.base_url}/oauth/token",
                    data={
                        "grant_type": "password",
                        "username": self.username,
                        "api_key": self.api_key,
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )
            except httpx.HTTPError as exc:
                raise SkorozvonError(f"Token request failed: {exc}") from exc

            if response.status_code != 200:
                raise SkorozvonError(
                    f"Token request rejected: {response.status_code} - {response.text[:200]}",
                    status_code=response.status_code,
                )

            data = response.json()
            token = data.get("access_token")
            if not token:
                raise SkorozvonError("Token response has no access_token")

            expires_in = float(data.get("expires_in") or 0)
            self._token = token
            self._token_expires_at = now + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0)
            logger.debug(f"Skorozvon token refreshed, expires_in={expires_in}")
            return token

    async def list_scenarios(self) -> list[Scenario]:
        """Fetch the full scenario catalog."""
        token = await self.get_access_token()
        scenarios: list[Scenario] = []
        page = 1
        while page <= MAX_SCENARIO_PAGES:
            try:
                response = await self._get_client().get(
                    f"{self.base_url}/api/v2/scenarios",
                    params={"page": page, "length": SCENARIO_PAGE_SIZE},
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise SkorozvonError(f"Scenario request failed: {exc}") from exc

            if response.status_code != 200:
                raise SkorozvonError(
                    f"Scenario request rejected: {response.status_code}",
                    status_code=response.status_code,
                )

            payload = response.json()
            for item in _extract_items(payload):
                if not isinstance(item, dict) or item.get("id") is None:
                    continue
                scenario_id = str(item["id"])
                scenarios.append(Scenario(scenario_id=scenario_id, scenario_name=str(item.get("name") or scenario_id)))

            if page >= _total_pages(payload):
                break
            page += 1

        return scenarios

    async def fetch_recording(self, call_id: str, timeout: Optional[float] = None) -> bytes:
        """Download the mp3 recording of a call; each download attempt is bounded by ``timeout``.

        A 401/403 means the cached token went stale on the server side: it is
        replaced with a fresh one and the download is tried once more.
        """
        token = await self.get_access_token()
        try:
            return await self._bounded(self._download_recording(call_id, token), timeout)
        except SkorozvonError as exc:
            if exc.status_code not in (401, 403):
                raise
            logger.info(f"Recording download unauthorized ({exc.status_code}), refreshing token")

        token = await self.get_access_token(force=True)
        return await self._bounded(self._download_recording(call_id, token), timeout)

    async def _bounded(self, download, timeout: Optional[float]) -> bytes:
        if timeout is None:
            return await download
        try:
            return await asyncio.wait_for(download, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise SkorozvonError(f"Recording download timed out after {timeout}s") from exc

    async def _download_recording(self, call_id: str, token: str) -> bytes:
        url = f"{self.base_url}/api/v2/calls/{call_id}.mp3"
        data = bytearray()
        try:
            async with self._get_client().stream(
                "GET",
                url,
                headers={"Authorization": f"Bearer {token}"},
                follow_redirects=True,
            ) as response:
                if response.status_code != 200:
                    raise SkorozvonError(
                        f"Recording not available: {response.status_code}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    if not chunk:
                        continue
                    data.extend(chunk)
                    if len(data) > MAX_RECORDING_BYTES:
                        raise SkorozvonError("Recording exceeds upload limit")
        except httpx.HTTPError as exc:
            raise SkorozvonError(f"Recording download failed: {exc}") from exc

        if not data:
            raise SkorozvonError("Recording is empty")
        return bytes(data)
