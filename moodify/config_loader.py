"""
Configuration Loader - Manages YAML configuration and environment variables
"""
import yaml
import os
from typing import Any, Optional


class Config:
    """Configuration manager for the Moodify Auto-DJ"""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = config_path
        self.config = self._load_config()
        self._validate_config()

    def _load_config(self) -> dict:
        """Load configuration from YAML file"""
        if not os.path.exists(self.config_path):
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _validate_config(self):
        """Validate required configuration fields"""
        required_fields = [
            ('database', 'path'),
        ]

        for section, field in required_fields:
            if section not in self.config:
                raise ValueError(f"Missing configuration section: {section}")
            if field not in (self.config[section] or {}):
                raise ValueError(f"Missing configuration field: {section}.{field}")

            value = self.config[section][field]
            if not value or str(value).startswith('YOUR_'):
                raise ValueError(f"Please set {section}.{field} in {self.config_path}")

        for section in ('autodj', 'player', 'graph'):
            values = self.config.get(section) or {}
            for key, value in values.items():
                if isinstance(value, (int, float)) and value < 0:
                    raise ValueError(f"{section}.{key} must not be negative (got {value})")

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get configuration value

        Args:
            section: Configuration section
            key: Configuration key
            default: Default value if not found

        Returns:
            Configuration value or default
        """
        if section not in self.config or self.config[section] is None:
            return default
        return self.config[section].get(key, default)

    @property
    def database_path(self) -> str:
        """Get SQLite database path (with environment variable override)"""
        return os.getenv('MOODIFY_DB_PATH') or self.config['database']['path']

    @property
    def openai_api_key(self) -> str:
        """Get OpenAI API key (with environment variable override)"""
        key = os.getenv('OPENAI_API_KEY') or self.get('openai', 'api_key', '') or ''
        return '' if key.startswith('YOUR_') else key

    @property
    def openai_model(self) -> str:
        return self.get('openai', 'model', 'gpt-4o-mini')

    @property
    def openai_timeout_seconds(self) -> float:
        return float(self.get('openai', 'timeout_seconds', 60))

    @property
    def spotify_access_token(self) -> str:
        """Get Spotify access token; empty means use the stored service token"""
        return os.getenv('SPOTIFY_ACCESS_TOKEN') or self.get('spotify', 'access_token', '') or ''

    @property
    def spotify_market(self) -> str:
        return self.get('spotify', 'market', 'from_token')

    # Auto-DJ thresholds
    @property
    def skip_threshold_seconds(self) -> float:
        """Dwell time below which a track change counts as a skip"""
        return float(self.get('autodj', 'skip_threshold_seconds', 30))

    @property
    def rescue_skip_threshold(self) -> int:
        """Consecutive skips that trigger a rescue"""
        return int(self.get('autodj', 'rescue_skip_threshold', 3))

    @property
    def expansion_listen_threshold(self) -> int:
        """Consecutive listens that trigger an expansion"""
        return int(self.get('autodj', 'expansion_listen_threshold', 5))

    @property
    def low_queue_threshold(self) -> int:
        return int(self.get('autodj', 'low_queue_threshold', 5))

    @property
    def expansion_cooldown_seconds(self) -> float:
        return float(self.get('autodj', 'expansion_cooldown_seconds', 15))

    @property
    def evaluate_interval_seconds(self) -> float:
        return float(self.get('autodj', 'evaluate_interval_seconds', 2))

    @property
    def expansion_track_count(self) -> int:
        return int(self.get('autodj', 'expansion_track_count', 5))

    @property
    def rescue_track_count(self) -> int:
        return int(self.get('autodj', 'rescue_track_count', 10))

    # Player / reconciliation
    @property
    def home_poll_interval(self) -> float:
        return float(self.get('player', 'home_poll_interval', 1.0))

    @property
    def background_poll_interval(self) -> float:
        return float(self.get('player', 'background_poll_interval', 5.0))

    @property
    def sync_suppress_seconds(self) -> float:
        """Window after a local action during which remote syncs are ignored"""
        return float(self.get('player', 'sync_suppress_seconds', 1.5))

    @property
    def enqueue_delay_seconds(self) -> float:
        return float(self.get('player', 'enqueue_delay_seconds', 0.15))

    @property
    def append_delay_seconds(self) -> float:
        return float(self.get('player', 'append_delay_seconds', 0.2))

    @property
    def request_timeout_seconds(self) -> float:
        return float(self.get('player', 'request_timeout_seconds', 10))

    @property
    def boundary_poll_interval(self) -> float:
        return float(self.get('player', 'boundary_poll_interval', 1.0))

    # Taste graph
    @property
    def reinforce_increment(self) -> float:
        return float(self.get('graph', 'reinforce_increment', 0.5))

    @property
    def max_edge_weight(self) -> float:
        return float(self.get('graph', 'max_edge_weight', 10.0))

    @property
    def ingest_batch_size(self) -> int:
        return int(self.get('graph', 'ingest_batch_size', 50))

    # Logging
    @property
    def log_level(self) -> str:
        return str(self.get('logging', 'level', 'INFO')).upper()

    @property
    def log_file(self) -> Optional[str]:
        return self.get('logging', 'file', None)

    def __repr__(self) -> str:
        """String representation (hides sensitive data)"""
        return f"Config(database={self.database_path}, model={self.openai_model})"
