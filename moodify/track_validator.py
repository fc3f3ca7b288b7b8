"""
Track Validator - turns model suggestions into playable tracks

Suggestions are looked up with an exact field search first
(track:"title" artist:"artist"), then a loose title search whose results
must share the artist. A URI is handed out at most once per listening
session; the set is seeded with what was already played today. When too
few suggestions survive, the model is asked for alternatives (at most
MAX_BACKFILL_ROUNDS times).
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import NotFoundError, OracleError, TransientError
from .models import Track, VibeOption

logger = logging.getLogger(__name__)

MAX_BACKFILL_ROUNDS = 2
SEARCH_LIMIT = 5
BACKFILL_EXTRA = 3


@dataclass(frozen=True)
class Suggestion:
    title: str
    artist: str
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> Optional["Suggestion"]:
        title = item.get("title") or item.get("t")
        artist = item.get("artist") or item.get("a")
        if not title or not artist:
            return None
        return cls(title=str(title), artist=str(artist), reason=item.get("reason"))

    def label(self) -> str:
        return f"{self.title} - {self.artist}"


def _clean(value: str) -> str:
    return re.sub(r'[:"]', "", value).strip()


def _artist_matches(wanted: str, found: str) -> bool:
    wanted, found = wanted.lower(), found.lower()
    return wanted in found or found in wanted


class TrackValidator:
    def __init__(self, player, client=None, app_db=None, timeout: float = 60.0):
        """
        Args:
            player: RemotePlayerAdapter used for catalog search
            client: OpenAIClient for backfill requests (optional)
            app_db: AppDatabase whose daily log seeds the seen set (optional)
            timeout: Seconds allowed for one backfill request
        """
        self.player = player
        self.client = client
        self.app_db = app_db
        self.timeout = timeout
        self.seen_uris: Set[str] = set()

    def clear_session(self) -> None:
        self.seen_uris.clear()

    def add_seen(self, uris: Iterable[str]) -> None:
        self.seen_uris.update(u for u in uris if u)

    async def _seed_from_daily_log(self) -> List[str]:
        """Mark today's plays as seen; returns 'Title - Artist' strings for prompts"""
        if self.app_db is None:
            return []
        uris = await asyncio.to_thread(self.app_db.get_daily_history_uris)
        self.add_seen(uris)
        return await asyncio.to_thread(self.app_db.get_daily_history)

    def _claim(self, track: Track, suggestion: Suggestion) -> Optional[Track]:
        if track.uri in self.seen_uris:
            logger.debug(f"Duplicate skipped: {suggestion.label()}")
            return None
        self.seen_uris.add(track.uri)
        return Track(
            title=track.title,
            artist=track.artist or "Unknown",
            uri=track.uri,
            artwork=track.artwork,
            duration_ms=track.duration_ms,
            reason=suggestion.reason,
        )

    async def validate_track(self, suggestion: Suggestion) -> Optional[Track]:
        """
        Find the catalog track for a suggestion

        Returns:
            The matched track, or None when nothing matches or it was already used
        """
        try:
            query = f'track:"{_clean(suggestion.title)}" artist:"{_clean(suggestion.artist)}"'
            results = await self.player.search_tracks(query, SEARCH_LIMIT)
            if results:
                return self._claim(results[0], suggestion)

            logger.debug(f"Exact match failed for '{suggestion.title}', trying loose search")
            results = await self.player.search_tracks(_clean(suggestion.title), SEARCH_LIMIT)
            for track in results:
                if _artist_matches(suggestion.artist, track.artist):
                    return self._claim(track, suggestion)
        except (TransientError, NotFoundError) as e:
            logger.warning(f"Search failed for {suggestion.label()}: {e}")
            return None

        logger.debug(f"No match for {suggestion.label()}")
        return None

    async def validate_batch(self, suggestions: List[Suggestion]) -> Tuple[List[Track], List[Suggestion]]:
        """Validate concurrently; returns (validated, failed) in input order"""
        results = await asyncio.gather(*(self.validate_track(s) for s in suggestions))
        validated: List[Track] = []
        failed: List[Suggestion] = []
        for suggestion, track in zip(suggestions, results):
            if track is not None:
                validated.append(track)
            else:
                failed.append(suggestion)
        logger.debug(f"Batch result: {len(validated)} valid, {len(failed)} failed")
        return validated, failed

    async def _backfill(
        self,
        count: int,
        context: str,
        failed: List[str],
        existing: List[str],
        exclude: List[str],
    ) -> List[Suggestion]:
        if self.client is None:
            return []
        try:
            items = await asyncio.wait_for(
                asyncio.to_thread(self.client.backfill, count, context, failed, existing, exclude),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Backfill request timed out after {self.timeout:.0f}s")
            return []
        except (TransientError, NotFoundError, OracleError) as e:
            logger.warning(f"Backfill request failed: {e}")
            return []
        return [s for s in (Suggestion.from_dict(i) for i in items) if s is not None]

    async def validate_and_fill(
        self,
        items: List[Dict[str, Any]],
        target: int,
        context: str,
        extra_exclusions: Iterable[str] = (),
    ) -> List[Track]:
        """
        Validate raw suggestions and backfill until `target` tracks are found

        Args:
            items: Raw {"title", "artist"} dicts from the model
            target: Number of tracks wanted
            context: Short description of the request, used in backfill prompts
            extra_exclusions: URIs that must not be returned (session history)

        Returns:
            Up to `target` validated tracks
        """
        daily = await self._seed_from_daily_log()
        self.add_seen(extra_exclusions)

        suggestions = [s for s in (Suggestion.from_dict(i) for i in items) if s is not None]
        validated, failed = await self.validate_batch(suggestions)

        rounds = 0
        while len(validated) < target and failed and rounds < MAX_BACKFILL_ROUNDS:
            rounds += 1
            needed = target - len(validated)
            logger.info(f"Backfill round {rounds}: need {needed} more tracks")
            extra = await self._backfill(
                needed + BACKFILL_EXTRA,
                context,
                [s.label() for s in failed],
                [f"{t.title} - {t.artist}" for t in validated],
                daily,
            )
            if not extra:
                logger.info("Backfill returned no suggestions, stopping")
                break
            more, failed = await self.validate_batch(extra)
            validated.extend(more)

        final = validated[:target]
        logger.info(f"Validated {len(final)}/{target} tracks ({rounds} backfill rounds)")
        return final

    async def validate_vibe_options(self, options: List[Dict[str, Any]], target: int = 8) -> List[VibeOption]:
        """Keep options whose seed track exists, backfilling plain options if short"""
        daily = await self._seed_from_daily_log()

        pairs = []
        for i, option in enumerate(options):
            track = option.get("track") or {}
            suggestion = Suggestion.from_dict({**track, "reason": option.get("reason")})
            if suggestion is not None:
                pairs.append((i, option, suggestion))

        tracks = await asyncio.gather(*(self.validate_track(s) for _, _, s in pairs))
        result: List[VibeOption] = []
        failed: List[Suggestion] = []
        for (i, option, suggestion), track in zip(pairs, tracks):
            if track is None:
                failed.append(suggestion)
                continue
            if len(result) < target:
                result.append(VibeOption(
                    id=str(option.get("id") or f"v{i + 1}"),
                    title=option.get("title") or f"{track.artist} Vibes",
                    description=option.get("description") or "",
                    track=track,
                    reason=option.get("reason"),
                ))

        if len(result) < target and failed:
            extra = await self._backfill(
                target - len(result) + 2,
                "Diverse vibe options",
                [s.label() for s in failed],
                [f"{o.track.title} - {o.track.artist}" for o in result],
                daily,
            )
            for suggestion in extra:
                if len(result) >= target:
                    break
                track = await self.validate_track(suggestion)
                if track is not None:
                    result.append(VibeOption(
                        id=f"backfill_{len(result)}",
                        title=f"{track.artist} Vibes",
                        description="Alternative suggestion",
                        track=track,
                        reason="Backfill option",
                    ))

        logger.info(f"Returning {len(result)} validated vibe options")
        return result
