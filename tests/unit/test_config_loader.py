import pytest

from moodify.config_loader import Config


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config(str(tmp_path / "nope.yaml"))


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("MOODIFY_DB_PATH", raising=False)
    config = Config(_write(tmp_path, "database:\n  path: moodify.db\n"))
    assert config.database_path == "moodify.db"
    assert config.skip_threshold_seconds == 30.0
    assert config.rescue_skip_threshold == 3
    assert config.expansion_listen_threshold == 5
    assert config.low_queue_threshold == 5
    assert config.expansion_cooldown_seconds == 15.0
    assert config.sync_suppress_seconds == 1.5
    assert config.enqueue_delay_seconds == 0.15
    assert config.append_delay_seconds == 0.2
    assert config.reinforce_increment == 0.5
    assert config.max_edge_weight == 10.0
    assert config.openai_model == "gpt-4o-mini"
    assert config.openai_api_key == ""
    assert config.log_level == "INFO"


def test_overrides_and_env(tmp_path, monkeypatch):
    monkeypatch.setenv("MOODIFY_DB_PATH", "/tmp/other.db")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    config = Config(_write(tmp_path, """
database:
  path: moodify.db
autodj:
  skip_threshold_seconds: 20
player:
  home_poll_interval: 2
logging:
  level: debug
"""))
    assert config.database_path == "/tmp/other.db"
    assert config.openai_api_key == "sk-env"
    assert config.skip_threshold_seconds == 20.0
    assert config.home_poll_interval == 2.0
    assert config.log_level == "DEBUG"


def test_placeholder_api_key_is_treated_as_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = Config(_write(tmp_path, "database:\n  path: x.db\nopenai:\n  api_key: YOUR_OPENAI_KEY\n"))
    assert config.openai_api_key == ""


def test_missing_database_section(tmp_path):
    with pytest.raises(ValueError, match="database"):
        Config(_write(tmp_path, "openai:\n  model: gpt-4o\n"))


def test_placeholder_database_path(tmp_path):
    with pytest.raises(ValueError, match="database.path"):
        Config(_write(tmp_path, "database:\n  path: YOUR_DB_PATH\n"))


def test_negative_threshold_rejected(tmp_path):
    with pytest.raises(ValueError, match="autodj.rescue_skip_threshold"):
        Config(_write(tmp_path, "database:\n  path: x.db\nautodj:\n  rescue_skip_threshold: -1\n"))


def test_repr_hides_secrets(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
    config = Config(_write(tmp_path, "database:\n  path: x.db\n"))
    assert "sk-secret" not in repr(config)
