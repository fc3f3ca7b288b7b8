"""
Recommendation Oracle - model suggestions grounded in the listener's taste

Builds prompt context from the taste graph and listening history, asks the
OpenAI client for suggestions in a worker thread, and validates the result
against the catalog so only playable, unheard tracks come back.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .errors import AuthenticationError, TransientError
from .models import ExpansionResult, RescueResult, Track, VibeOption
from .track_validator import TrackValidator

logger = logging.getLogger(__name__)

RESCUE_SKIP_CONTEXT = 5
RECENT_HISTORY_LIMIT = 10


class RecommendationOracle:
    def __init__(
        self,
        client,
        validator: TrackValidator,
        graph=None,
        app_db=None,
        timeout: float = 60.0,
        expansion_count: int = 5,
        rescue_count: int = 10,
        vibe_option_count: int = 8,
    ):
        """
        Args:
            client: OpenAIClient (blocking)
            validator: Catalog validation and backfill
            graph: TasteGraphService for taste context (optional)
            app_db: AppDatabase for recent history (optional)
            timeout: Seconds allowed for one model request
            expansion_count: Tracks returned by expand_vibe
            rescue_count: Tracks returned by get_rescue_vibe
            vibe_option_count: Options returned by get_vibe_options
        """
        self.client = client
        self.validator = validator
        self.graph = graph
        self.app_db = app_db
        self.timeout = timeout
        self.expansion_count = expansion_count
        self.rescue_count = rescue_count
        self.vibe_option_count = vibe_option_count

    async def _call(self, name: str, *args, **kwargs):
        if self.client is None:
            raise AuthenticationError("No OpenAI API key configured", code="INVALID_KEY")
        func = getattr(self.client, name)
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientError(f"Model request timed out after {self.timeout:.0f}s", code="TIMEOUT") from e

    async def _taste(self) -> Optional[Dict[str, Any]]:
        if self.graph is None:
            return None
        profile = await asyncio.to_thread(self.graph.get_taste_profile)
        return profile.as_prompt_context()

    async def _recent(self) -> List[str]:
        if self.app_db is None:
            return []
        rows = await asyncio.to_thread(self.app_db.get_recent_history, RECENT_HISTORY_LIMIT)
        return [f"{r['track_name']} - {r['artist_name']}" for r in rows]

    async def _heard_today(self) -> List[str]:
        if self.app_db is None:
            return []
        return await asyncio.to_thread(self.app_db.get_daily_history)

    def clear_session(self) -> None:
        """Forget which tracks were handed out (new listening session)"""
        self.validator.clear_session()

    async def get_vibe_options(self, instruction: str = "") -> List[VibeOption]:
        taste, recent, heard = await asyncio.gather(self._taste(), self._recent(), self._heard_today())
        options = await self._call(
            "vibe_options",
            instruction,
            recent,
            taste=taste,
            exclude=heard,
            count=self.vibe_option_count + 4,
        )
        return await self.validator.validate_vibe_options(options, target=self.vibe_option_count)

    async def expand_vibe(
        self,
        seed: Track,
        mood_hint: Optional[str] = None,
        exclude_uris: Sequence[str] = (),
    ) -> ExpansionResult:
        """
        More tracks in the mood of `seed`.

        Args:
            seed: Track to extend from (usually the one playing)
            mood_hint: Current session mood, if known
            exclude_uris: URIs that must not come back (queue, session history)
        """
        taste, heard = await asyncio.gather(self._taste(), self._heard_today())
        raw = await self._call(
            "expand_vibe",
            seed.title,
            seed.artist,
            mood_hint=mood_hint,
            taste=taste,
            exclude=heard,
            count=self.expansion_count + 4,
        )
        tracks = await self.validator.validate_and_fill(
            raw["items"],
            self.expansion_count,
            f"Matching vibe of: {seed.title} - {seed.artist}",
            extra_exclusions=[seed.uri, *exclude_uris],
        )
        return ExpansionResult(items=tracks, mood=raw.get("mood"))

    async def get_rescue_vibe(self, recent_skips: Sequence, strategy) -> RescueResult:
        """
        A new direction after repeated skips.

        Args:
            recent_skips: SkipEvents, newest last; only the last few are sent
            strategy: Strategy derived from earlier rescues
        """
        skipped = [f"{e.track_name} - {e.artist}" for e in list(recent_skips)[-RESCUE_SKIP_CONTEXT:]]
        strategy_name = getattr(strategy, "value", strategy)
        taste, heard = await asyncio.gather(self._taste(), self._heard_today())
        raw = await self._call(
            "rescue_vibe",
            skipped,
            strategy_name,
            taste=taste,
            exclude=heard,
            count=self.rescue_count + 2,
        )
        tracks = await self.validator.validate_and_fill(
            raw["items"],
            self.rescue_count,
            f"New direction vibe: {raw['vibe']}",
        )
        logger.info(f"Rescue vibe '{raw['vibe']}' with {len(tracks)} tracks: {raw['reasoning']}")
        return RescueResult(items=tracks, vibe=raw["vibe"], reasoning=raw["reasoning"])
