"""
Sleeper API client.

Supplies the league state feed used by the TTL policy engine and the
producers used by cache warming. Calls are retried with exponential
back-off on connection failures, timeouts, rate limits and 5xx responses.
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from sleeper_cache.cache.core import LeaguePhase

load_dotenv()

logger = logging.getLogger("sleeper_client")

BASE_URL = "https://api.sleeper.app/v1"
USER_AGENT = "Sleeper-Cache/1.0.0"


class SleeperAPIError(Exception):
    """Raised when the Sleeper API returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SleeperRateLimitError(SleeperAPIError):
    """Raised when the Sleeper API rate limits us."""
    pass


class SleeperServerError(SleeperAPIError):
    """Raised on 5xx responses."""
    pass


RETRYABLE = (
    requests.ConnectionError,
    requests.Timeout,
    SleeperRateLimitError,
    SleeperServerError,
)


class SleeperClient:
    """Thin synchronous client for the read-only Sleeper endpoints we cache."""

    def __init__(
        self,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        })

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type(RETRYABLE),
        reraise=True,
    )
    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"Sleeper API request: GET {url} params={params}")
        response = self.session.get(url, params=params, timeout=self.timeout)

        if response.status_code == 429:
            raise SleeperRateLimitError("Rate limited by Sleeper API", 429)
        if response.status_code >= 500:
            raise SleeperServerError(
                f"Sleeper API error {response.status_code} for {path}",
                response.status_code,
            )
        if response.status_code >= 400:
            logger.error(f"Sleeper API response error: {response.status_code} {url}")
            raise SleeperAPIError(
                f"Sleeper API error {response.status_code} for {path}",
                response.status_code,
            )
        return response.json()

    # State
    def get_nfl_state(self) -> Dict[str, Any]:
        return self._get("/state/nfl")

    def get_current_phase(self) -> LeaguePhase:
        """League state feed for the TTL policy engine."""
        return LeaguePhase.from_state(self.get_nfl_state())

    # Players
    def get_all_players(self, sport: str = "nfl") -> Dict[str, Any]:
        return self._get(f"/players/{sport}")

    def get_trending_players(
        self,
        sport: str = "nfl",
        trend: str = "add",
        lookback_hours: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {k: v for k, v in (("lookback_hours", lookback_hours), ("limit", limit)) if v is not None}
        return self._get(f"/players/{sport}/trending/{trend}", params=params or None)

    # Leagues
    def get_league(self, league_id: str) -> Dict[str, Any]:
        return self._get(f"/league/{league_id}")

    def get_rosters(self, league_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/league/{league_id}/rosters")

    def get_users(self, league_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/league/{league_id}/users")

    def get_matchups(self, league_id: str, week: int) -> List[Dict[str, Any]]:
        return self._get(f"/league/{league_id}/matchups/{week}")

    def close(self) -> None:
        self.session.close()
