# -*- coding: utf-8 -*-
"""
Moodify Auto-DJ - Main Application
Runs an autonomous listening session against the Spotify player
"""
import argparse
import asyncio
import logging
import os
import sys
from typing import Dict, Optional

from moodify.app_db import AppDatabase
from moodify.config_loader import Config
from moodify.dj import AutoDJ, OperationLock, SkipTracker, VibeSession
from moodify.error_surface import ErrorSurface
from moodify.errors import MoodifyError
from moodify.graph import GraphStore, TasteGraphService
from moodify.graph.models import IngestProgress
from moodify.logging_utils import (
    ProgressLogger,
    add_logging_args,
    configure_logging,
    resolve_log_level,
)
from moodify.openai_client import OpenAIClient
from moodify.player import QueueReconciler, SpotifyPlayerAdapter
from moodify.recommendation import RecommendationOracle
from moodify.spotify_client import SpotifyClient
from moodify.track_validator import TrackValidator

logger = logging.getLogger("moodify.app")


class MoodifyApp:
    """Main application orchestrator"""

    def __init__(self, config: Config):
        self.config = config
        logger.info("Initializing Moodify Auto-DJ")

        self.errors = ErrorSurface()
        self.app_db = AppDatabase(config.database_path)
        self.store = GraphStore(config.database_path)
        self.graph = TasteGraphService(
            self.store,
            app_db=self.app_db,
            error_surface=self.errors,
            reinforce_increment=config.reinforce_increment,
            max_edge_weight=config.max_edge_weight,
        )

        self.spotify = SpotifyClient(
            token_provider=self._spotify_token,
            timeout=config.request_timeout_seconds,
            market=config.spotify_market,
        )
        self.adapter = SpotifyPlayerAdapter(self.spotify, timeout=config.request_timeout_seconds)

        self.openai = None
        if config.openai_api_key:
            self.openai = OpenAIClient(
                api_key=config.openai_api_key,
                model=config.openai_model,
                timeout=config.openai_timeout_seconds,
            )
        else:
            logger.warning("OpenAI API key missing; vibe suggestions are unavailable")

        self.validator = TrackValidator(
            self.adapter, client=self.openai, app_db=self.app_db, timeout=config.openai_timeout_seconds
        )
        self.oracle = RecommendationOracle(
            self.openai,
            self.validator,
            graph=self.graph,
            app_db=self.app_db,
            timeout=config.openai_timeout_seconds,
            expansion_count=config.expansion_track_count,
            rescue_count=config.rescue_track_count,
        )

        self.player = QueueReconciler(
            self.adapter,
            error_surface=self.errors,
            suppress_seconds=config.sync_suppress_seconds,
            enqueue_delay=config.enqueue_delay_seconds,
            append_delay=config.append_delay_seconds,
            home_interval=config.home_poll_interval,
            background_interval=config.background_poll_interval,
            boundary_interval=config.boundary_poll_interval,
        )
        self.dj = AutoDJ(
            self.player,
            self.oracle,
            self.graph,
            tracker=SkipTracker(skip_threshold_seconds=config.skip_threshold_seconds),
            lock=OperationLock(),
            session=VibeSession(),
            error_surface=self.errors,
            app_db=self.app_db,
            rescue_threshold=config.rescue_skip_threshold,
            expansion_threshold=config.expansion_listen_threshold,
            low_queue_threshold=config.low_queue_threshold,
            expansion_cooldown=config.expansion_cooldown_seconds,
            expansion_count=config.expansion_track_count,
        )
        self.dj.attach()

    def _spotify_token(self) -> Optional[str]:
        return self.app_db.get_service_token("spotify") or self.config.spotify_access_token or None

    async def ingest(self) -> bool:
        """Import liked songs into the taste graph"""
        stages: Dict[str, ProgressLogger] = {}

        def on_progress(p: IngestProgress) -> None:
            if p.stage not in stages:
                stages[p.stage] = ProgressLogger(logger, p.total, f"Ingest {p.stage}", interval_s=5.0)
            progress = stages[p.stage]
            progress.update(max(p.current - progress.processed, 0))

        try:
            report = await self.graph.ingest_liked_songs(
                self.spotify, on_progress=on_progress, batch_size=self.config.ingest_batch_size
            )
        except MoodifyError as e:
            logger.error(f"Ingestion failed: {e}")
            return False
        if report.failed:
            logger.error(f"Ingestion stopped early after {report.songs} songs; run --ingest again to finish")
            return False
        logger.info(f"Ingested {report.songs} songs, {report.artists} artists, {report.genres} genres")
        return True

    async def run(self, instruction: str, background: bool = False) -> int:
        """
        Pick a vibe for `instruction` and keep the DJ running until interrupted

        Returns:
            Process exit code
        """
        if not self.graph.is_ingested():
            logger.info("Taste graph is empty; run with --ingest to import liked songs")

        options = await self.dj.choose_vibe(instruction)
        if not options:
            logger.error("No vibe options available")
            for error in self.errors.active():
                logger.error(f"  {error.user_message}")
            return 1

        for option in options:
            logger.info(f"  {option.title}: {option.description} ({option.track.title} - {option.track.artist})")
        choice = options[0]
        logger.info(f"Starting '{choice.title}'")

        result = await self.dj.start_vibe_option(choice)
        if not result.success:
            logger.error(f"Could not start playback: {result.error}")
            return 1

        self.player.set_home_active(not background)
        self.player.start_auto_sync()
        try:
            await self.dj.run(self.config.evaluate_interval_seconds)
        finally:
            self.player.stop_auto_sync()
            await self.dj.drain()
            summary = await asyncio.to_thread(self.dj.session.commit, self.graph)
            if summary:
                logger.info(f"Session committed: {summary.songs} songs, {summary.listened} listened")
        return 0

    def close(self) -> None:
        self.store.close()
        self.app_db.close()


async def _main_async(args, config: Config) -> int:
    app = MoodifyApp(config)
    try:
        if args.reset_graph:
            app.graph.reset_graph()
        if args.ingest:
            if not await app.ingest():
                return 1
            if not args.vibe:
                return 0
        return await app.run(args.vibe or "", background=args.background)
    finally:
        app.close()


def main():
    """Entry point"""
    parser = argparse.ArgumentParser(
        description="Run an AI DJ session that adapts to what you skip and what you keep"
    )
    parser.add_argument("--config", type=str, default="config.yaml", help="Path to config file")
    parser.add_argument(
        "--vibe",
        type=str,
        help="Describe what you want to hear (e.g., --vibe \"late night focus\")"
    )
    parser.add_argument("--ingest", action="store_true", help="Import liked songs into the taste graph first")
    parser.add_argument("--reset-graph", action="store_true", help="Delete the taste graph before starting")
    parser.add_argument(
        "--background",
        action="store_true",
        help="Poll the player at the slower background interval"
    )
    add_logging_args(parser)
    args = parser.parse_args()

    if not os.path.exists(args.config):
        configure_logging(level="INFO")
        logger.error(f"{args.config} not found; copy config.example.yaml and fill in your credentials")
        sys.exit(1)

    try:
        config = Config(args.config)
    except ValueError as e:
        configure_logging(level="INFO")
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(
        level=resolve_log_level(args, default=config.log_level),
        log_file=args.log_file or config.log_file,
        show_session_id=args.show_session_id,
    )

    try:
        code = asyncio.run(_main_async(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
