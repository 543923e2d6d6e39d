"""
Runtime configuration for the Typerush score service.
Policy constants are read from the environment once at startup.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple


DEFAULT_DATABASE_URL = "sqlite:///./typerush.db"

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Policy:
    """Tunable limits for run tokens, score validation and the leaderboard."""
    run_ttl_seconds: float = 30.0
    min_play_seconds: float = 2.0
    max_lps: float = 60.0
    max_score: float = 20.0
    max_ms_per_letter: float = 1_000_000.0
    ms_per_letter_tolerance: float = 5.0
    # game_mode -> (min seconds, max seconds), both inclusive
    time_windows: Dict[int, Tuple[float, float]] = field(
        default_factory=lambda: {15: (1.5, 120.0), 30: (3.0, 300.0)}
    )
    # game_mode -> score multiplier; modes not listed use 1.0
    mode_multipliers: Dict[int, float] = field(default_factory=lambda: {30: 1.22})
    run_retention_hours: float = 24.0
    leaderboard_cache_minutes: float = 5.0
    leaderboard_scan_limit: int = 10000
    # upper bound for total_letters and each error count
    max_letter_count: int = 100_000


def load_policy() -> Policy:
    return Policy(
        run_ttl_seconds=_env_float("RUN_TTL_SECONDS", 30.0),
        min_play_seconds=_env_float("MIN_PLAY_SECONDS", 2.0),
        max_lps=_env_float("MAX_LPS", 60.0),
        max_score=_env_float("MAX_SCORE", 20.0),
        ms_per_letter_tolerance=_env_float("MS_PER_LETTER_TOLERANCE", 5.0),
        run_retention_hours=_env_float("RUN_RETENTION_HOURS", 24.0),
        leaderboard_cache_minutes=_env_float("LEADERBOARD_CACHE_MINUTES", 5.0),
    )


def database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def database_timeout() -> float:
    return _env_float("DB_TIMEOUT_SECONDS", 5.0)


def cors_origins() -> List[str]:
    return _env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
