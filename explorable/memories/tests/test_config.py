"""Tests for memories_config.yaml loading and validation, and runtime settings."""

from __future__ import annotations

import textwrap
from datetime import timedelta
from pathlib import Path

import pytest

from explorable.config import Settings
from explorable.memories.config_loader import (
    ConfigValidationError,
    MemoriesConfig,
    _validate_and_build,
    get_memories_config,
    load_memories_config,
    reload_memories_config,
)


class TestConfigLoading:
    """Tests for loading the bundled memories_config.yaml."""

    def test_load_default_config(self, memories_config: MemoriesConfig) -> None:
        assert memories_config.version == "1.0"
        px = memories_config.proximity
        assert px.outer_threshold_m == 500
        assert px.dead_zone_m == 50
        assert px.home_radius_m == 1000
        assert px.max_results == 3

    def test_durations(self, memories_config: MemoriesConfig) -> None:
        assert memories_config.proximity.check_interval == timedelta(minutes=30)
        assert memories_config.proximity.cooldown == timedelta(hours=24)
        assert memories_config.scheduler.foreground_interval == timedelta(hours=1)

    def test_message_tiers_descending(self, memories_config: MemoriesConfig) -> None:
        assert memories_config.messages.tiers_days == [365, 180, 90, 30]
        assert memories_config.messages.favorite_visit_threshold == 3

    def test_recall_years(self, memories_config: MemoriesConfig) -> None:
        assert memories_config.recall.max_years == 5


class TestConfigValidation:
    """Tests for config validation logic."""

    def test_empty_config_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config.proximity.outer_threshold_m == 500
        assert config.recall.max_years == 5

    def test_dead_zone_must_be_inside_threshold(self) -> None:
        raw = {"proximity": {"outer_threshold_m": 40, "dead_zone_m": 50}}
        with pytest.raises(ConfigValidationError, match="dead_zone_m"):
            _validate_and_build(raw)

    def test_non_numeric_value_raises(self) -> None:
        raw = {"proximity": {"cooldown_hours": "a day"}}
        with pytest.raises(ConfigValidationError, match="cooldown_hours"):
            _validate_and_build(raw)

    def test_tiers_must_descend(self) -> None:
        raw = {"messages": {"tiers_days": [30, 90, 180, 365]}}
        with pytest.raises(ConfigValidationError, match="descending"):
            _validate_and_build(raw)

    def test_errors_are_collected(self) -> None:
        raw = {"proximity": {"max_results": 0}, "recall": {"max_years": 0}}
        with pytest.raises(ConfigValidationError, match="2 validation error"):
            _validate_and_build(raw)

    def test_hot_reload(self, tmp_path: Path) -> None:
        """reload_memories_config() should replace the global singleton."""
        config_file = tmp_path / "memories_config.yaml"
        config_file.write_text(
            textwrap.dedent(
                """
                version: "2.0-test"
                proximity:
                  outer_threshold_m: 750
                """
            ).strip()
        )
        try:
            new_config = reload_memories_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert get_memories_config().proximity.outer_threshold_m == 750
        finally:
            reload_memories_config()

    def test_invalid_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_memories_config()
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("proximity: {max_results: 0}")
        with pytest.raises(ConfigValidationError):
            reload_memories_config(path=config_file)
        assert get_memories_config() is before

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("proximity: [unclosed")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_memories_config(path=config_file)

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_memories_config(path=Path("/nonexistent/path/config.yaml"))


class TestSettings:
    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EXPLORABLE_SUPABASE_DB_URL", "postgresql://db/explorable")
        monkeypatch.setenv("EXPLORABLE_DB_POOL_MAX_SIZE", "9")
        settings = Settings()
        assert settings.supabase_db_url == "postgresql://db/explorable"
        assert settings.db_pool_max_size == 9
        assert settings.expo_push_url.startswith("https://exp.host/")
