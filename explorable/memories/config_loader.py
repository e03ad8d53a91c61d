"""Load, validate, and hot-reload the memories engine configuration.

The config lives in ``memories_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_memories_config()`` to
re-read from disk without restarting the host process.

Usage::

    from explorable.memories.config_loader import get_memories_config

    config = get_memories_config()
    config.proximity.outer_threshold_m   # 500.0
    config.proximity.cooldown            # timedelta(hours=24)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("explorable.memories.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "memories_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ProximityConfig:
    """Thresholds for the proximity detector."""

    outer_threshold_m: float
    dead_zone_m: float
    home_radius_m: float
    check_interval_minutes: int
    cooldown_hours: int
    spot_min_days_since_visit: int
    activity_min_days_since_visit: int
    activity_end_min_separation_m: float
    max_results: int

    @property
    def check_interval(self) -> timedelta:
        return timedelta(minutes=self.check_interval_minutes)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(hours=self.cooldown_hours)


@dataclass
class MessageConfig:
    """Proximity message wording tiers."""

    tiers_days: list[int]
    favorite_visit_threshold: int


@dataclass
class RecallConfig:
    max_years: int


@dataclass
class SchedulerConfig:
    """Foreground timer and OS background task intervals."""

    foreground_interval_minutes: int
    periodic_interval_hours: int
    location_time_interval_s: int
    location_distance_interval_m: int

    @property
    def foreground_interval(self) -> timedelta:
        return timedelta(minutes=self.foreground_interval_minutes)


@dataclass
class MemoriesConfig:
    """Complete, validated memories configuration.

    Attributes:
        version:    Config schema version string.
        proximity:  Proximity detector thresholds.
        messages:   Message composition tiers.
        recall:     Recall detector settings.
        scheduler:  Timer / background task intervals.
    """

    version: str
    proximity: ProximityConfig
    messages: MessageConfig
    recall: RecallConfig
    scheduler: SchedulerConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when memories_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Memories config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> MemoriesConfig:
    """Validate the raw YAML dict and construct a MemoriesConfig.

    Every numeric field is coerced and range-checked; all problems are
    collected and reported together.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, path: str, default: Any, cast=float, minimum=0):
        value = section.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return cast(default)
        if number < minimum:
            errors.append(f"{path}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Proximity ──
    px_raw = raw.get("proximity") or {}
    proximity = ProximityConfig(
        outer_threshold_m=_number(px_raw, "outer_threshold_m", "proximity", 500, minimum=1),
        dead_zone_m=_number(px_raw, "dead_zone_m", "proximity", 50),
        home_radius_m=_number(px_raw, "home_radius_m", "proximity", 1000),
        check_interval_minutes=_number(px_raw, "check_interval_minutes", "proximity", 30, int),
        cooldown_hours=_number(px_raw, "cooldown_hours", "proximity", 24, int),
        spot_min_days_since_visit=_number(px_raw, "spot_min_days_since_visit", "proximity", 7, int),
        activity_min_days_since_visit=_number(
            px_raw, "activity_min_days_since_visit", "proximity", 30, int
        ),
        activity_end_min_separation_m=_number(
            px_raw, "activity_end_min_separation_m", "proximity", 500
        ),
        max_results=_number(px_raw, "max_results", "proximity", 3, int, minimum=1),
    )
    if proximity.dead_zone_m >= proximity.outer_threshold_m:
        errors.append(
            f"proximity.dead_zone_m ({proximity.dead_zone_m}) must be smaller than "
            f"proximity.outer_threshold_m ({proximity.outer_threshold_m})"
        )

    # ── Messages ──
    msg_raw = raw.get("messages") or {}
    tiers_raw = msg_raw.get("tiers_days", [365, 180, 90, 30])
    tiers: list[int] = []
    if not isinstance(tiers_raw, list) or not tiers_raw:
        errors.append("messages.tiers_days must be a non-empty list")
    else:
        for t in tiers_raw:
            try:
                tiers.append(int(t))
            except (TypeError, ValueError):
                errors.append(f"messages.tiers_days entry must be an integer, got {t!r}")
        if len(tiers) != 4:
            errors.append(f"messages.tiers_days must have 4 entries, got {len(tiers)}")
        if tiers != sorted(tiers, reverse=True):
            errors.append("messages.tiers_days must be in descending order")
    messages = MessageConfig(
        tiers_days=tiers,
        favorite_visit_threshold=_number(msg_raw, "favorite_visit_threshold", "messages", 3, int),
    )

    # ── Recall ──
    rc_raw = raw.get("recall") or {}
    recall = RecallConfig(max_years=_number(rc_raw, "max_years", "recall", 5, int, minimum=1))

    # ── Scheduler ──
    sc_raw = raw.get("scheduler") or {}
    scheduler = SchedulerConfig(
        foreground_interval_minutes=_number(
            sc_raw, "foreground_interval_minutes", "scheduler", 60, int, minimum=1
        ),
        periodic_interval_hours=_number(
            sc_raw, "periodic_interval_hours", "scheduler", 24, int, minimum=1
        ),
        location_time_interval_s=_number(sc_raw, "location_time_interval_s", "scheduler", 900, int),
        location_distance_interval_m=_number(
            sc_raw, "location_distance_interval_m", "scheduler", 50, int
        ),
    )

    if errors:
        raise ConfigValidationError(
            f"memories_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return MemoriesConfig(
        version=version,
        proximity=proximity,
        messages=messages,
        recall=recall,
        scheduler=scheduler,
        _raw=raw,
    )


def load_memories_config(path: Path | None = None) -> MemoriesConfig:
    """Load and validate the memories config from disk.

    Args:
        path: Override path to YAML. Uses the bundled memories_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded memories config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: MemoriesConfig | None = None
_config_lock = threading.Lock()


def get_memories_config() -> MemoriesConfig:
    """Return the global MemoriesConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_memories_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_memories_config()
    return _config


def reload_memories_config(path: Path | None = None) -> MemoriesConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_memories_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded memories config: %s → %s", old_version, new_config.version)
    return new_config
