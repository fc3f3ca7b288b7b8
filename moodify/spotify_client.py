"""
Spotify Web API Client - playback control, search and library access
"""
import requests
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from .errors import (
    AuthenticationError,
    MoodifyError,
    NoActiveDeviceError,
    NotFoundError,
    TransientError,
)
from .logging_utils import redact
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ARTISTS_PER_REQUEST = 50
AUDIO_FEATURES_PER_REQUEST = 100


class SpotifyClient:
    """Thin blocking client for the endpoints the Auto-DJ needs"""

    BASE_URL = "https://api.spotify.com/v1"

    def __init__(
        self,
        token_provider: Callable[[], Optional[str]],
        timeout: float = 10.0,
        calls_per_second: float = 5.0,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        market: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Spotify client

        Args:
            token_provider: Returns the current OAuth access token
            timeout: Per-request timeout in seconds
            calls_per_second: Client-side request rate ceiling
            max_retries: Attempts for 5xx, 429 and network failures
            initial_delay: First backoff delay in seconds (doubles per retry)
            market: Market for catalog search ("from_token" uses the account's)
            session: Pre-built requests session (tests)
        """
        self.token_provider = token_provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.market = market
        self.session = session or requests.Session()
        self.rate_limiter = RateLimiter(calls_per_second=calls_per_second)

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider()
        if not token:
            raise AuthenticationError("No Spotify access token available", code="NOT_AUTHENTICATED")
        return {"Authorization": f"Bearer {token}"}

    def _raise_for_client_error(self, response: requests.Response, path: str, player: bool) -> None:
        status = response.status_code
        detail = response.text[:200] if response.text else ""
        if status == 401:
            raise AuthenticationError(f"Spotify rejected token for {path}", code="AUTH_EXPIRED", details=detail)
        if status == 403:
            code = "PREMIUM_REQUIRED" if player else "FORBIDDEN"
            raise AuthenticationError(f"Spotify refused {path}", code=code, details=detail)
        if status == 404:
            if player:
                raise NoActiveDeviceError(f"No active device for {path}", details=detail)
            raise NotFoundError(f"{path} not found", details=detail)
        raise MoodifyError(f"Spotify returned {status} for {path}", code=f"HTTP_{status}", details=detail)

    def _make_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        player: bool = False,
    ) -> Optional[Dict]:
        """
        Make a request with retry logic

        Retries 5xx, 429 (honouring Retry-After), timeouts and connection
        failures with exponential backoff; 4xx errors raise immediately.

        Args:
            method: HTTP method
            path: Endpoint path below BASE_URL
            params: Query parameters
            json: JSON body
            player: Whether this is a playback endpoint (changes 403/404 mapping)

        Returns:
            Decoded JSON body, or None for empty responses
        """
        url = f"{self.BASE_URL}{path}"
        last_error: Optional[TransientError] = None

        for attempt in range(self.max_retries):
            self.rate_limiter.wait()
            delay = self.initial_delay * (2 ** attempt)
            try:
                headers = self._headers()
                logger.debug(f"{method} {path} params={redact(params)}")
                response = self.session.request(
                    method, url, params=params, json=json, headers=headers, timeout=self.timeout
                )
            except requests.exceptions.Timeout:
                last_error = TransientError(f"Spotify request timed out: {method} {path}", code="TIMEOUT")
                logger.warning(f"{last_error} (attempt {attempt + 1}/{self.max_retries})")
                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                continue
            except requests.exceptions.RequestException as e:
                last_error = TransientError(f"Spotify request failed: {method} {path}: {e}", code="NETWORK_ERROR")
                logger.warning(f"{last_error} (attempt {attempt + 1}/{self.max_retries})")
                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                continue

            status = response.status_code
            if status == 429:
                retry_after = float(response.headers.get("Retry-After", delay) or delay)
                self.rate_limiter.pause_for(retry_after)
                last_error = TransientError(f"Spotify throttled {path}", code="THROTTLED")
                continue

            if status >= 500:
                last_error = TransientError(f"Spotify returned {status} for {path}", code="SERVER_ERROR")
                logger.warning(
                    f"Spotify returned {status} (attempt {attempt + 1}/{self.max_retries}) for {path}"
                )
                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                continue

            if status >= 400:
                self._raise_for_client_error(response, path, player)

            if status == 204 or not response.content:
                return None
            return response.json()

        logger.error(f"Spotify {method} {path} failed after {self.max_retries} attempts")
        raise last_error or TransientError(f"Spotify {method} {path} failed")

    # Playback
    def get_playback_state(self) -> Optional[Dict]:
        """Current playback, or None when nothing is active"""
        return self._make_request("GET", "/me/player", player=True)

    def play(self, uris: Optional[List[str]] = None, device_id: Optional[str] = None) -> None:
        params = {"device_id": device_id} if device_id else None
        body = {"uris": list(uris)} if uris else None
        self._make_request("PUT", "/me/player/play", params=params, json=body, player=True)

    def pause(self) -> None:
        self._make_request("PUT", "/me/player/pause", player=True)

    def next_track(self) -> None:
        self._make_request("POST", "/me/player/next", player=True)

    def previous_track(self) -> None:
        self._make_request("POST", "/me/player/previous", player=True)

    def add_to_queue(self, uri: str) -> None:
        self._make_request("POST", "/me/player/queue", params={"uri": uri}, player=True)

    def get_queue(self) -> Dict:
        return self._make_request("GET", "/me/player/queue", player=True) or {}

    # Catalog and library
    def search_tracks(self, query: str, limit: int = 5) -> List[Dict]:
        params = {"q": query, "type": "track", "limit": limit}
        if self.market:
            params["market"] = self.market
        data = self._make_request("GET", "/search", params=params)
        return ((data or {}).get("tracks") or {}).get("items") or []

    def get_saved_tracks(self, limit: int = 50, offset: int = 0) -> Dict:
        return self._make_request("GET", "/me/tracks", params={"limit": limit, "offset": offset}) or {}

    def get_artists(self, artist_ids: List[str]) -> List[Optional[Dict]]:
        """Artist objects in the order of `artist_ids` (None where unknown)"""
        results: List[Optional[Dict]] = []
        for start in range(0, len(artist_ids), ARTISTS_PER_REQUEST):
            chunk = artist_ids[start:start + ARTISTS_PER_REQUEST]
            data = self._make_request("GET", "/artists", params={"ids": ",".join(chunk)}) or {}
            results.extend((data.get("artists") or [None] * len(chunk))[:len(chunk)])
        return results

    def get_audio_features(self, track_ids: List[str]) -> List[Optional[Dict]]:
        """Audio features in the order of `track_ids` (None where unavailable)"""
        results: List[Optional[Dict]] = []
        for start in range(0, len(track_ids), AUDIO_FEATURES_PER_REQUEST):
            chunk = track_ids[start:start + AUDIO_FEATURES_PER_REQUEST]
            data = self._make_request("GET", "/audio-features", params={"ids": ",".join(chunk)}) or {}
            results.extend((data.get("audio_features") or [None] * len(chunk))[:len(chunk)])
        return results
