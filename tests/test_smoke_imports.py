"""Smoke tests for module imports.

These tests verify that key modules can be imported without errors.
This catches missing dependencies, syntax errors, and circular imports.
"""


class TestCoreImports:
    """Test that core modules are importable."""

    def test_config_loader(self):
        from moodify.config_loader import Config
        assert Config is not None

    def test_spotify_client(self):
        from moodify.spotify_client import SpotifyClient
        assert SpotifyClient is not None

    def test_openai_client(self):
        from moodify.openai_client import OpenAIClient
        assert OpenAIClient is not None

    def test_app_db(self):
        from moodify.app_db import AppDatabase
        assert AppDatabase is not None

    def test_recommendation(self):
        from moodify.recommendation import RecommendationOracle
        assert RecommendationOracle is not None


class TestSubpackageImports:
    """Test that the graph, player and dj subpackages are importable."""

    def test_graph(self):
        from moodify.graph import GraphStore, TasteGraphService
        assert GraphStore is not None
        assert TasteGraphService is not None

    def test_player(self):
        from moodify.player import QueueReconciler, SpotifyPlayerAdapter
        assert QueueReconciler is not None
        assert SpotifyPlayerAdapter is not None

    def test_dj(self):
        from moodify.dj import AutoDJ, OperationLock, SkipTracker
        assert AutoDJ is not None
        assert OperationLock is not None
        assert SkipTracker is not None

    def test_main_app(self):
        from main_app import MoodifyApp, main
        assert MoodifyApp is not None
        assert main is not None
