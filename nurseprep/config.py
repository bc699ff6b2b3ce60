"""Exam constants and environment-driven settings. No UI."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# Exam composition
DEFAULT_QUESTION_COUNT = 50
DEFAULT_DURATION_MINUTES = 60
PAPERS = ("paper-1", "paper-2")

# Difficulty split for specialized papers: 30% beginner, 50% intermediate, 20% advanced
DEFAULT_DIFFICULTY_TARGETS = {"easy": 0.3, "medium": 0.5, "hard": 0.2}

# Timer warnings (seconds remaining)
LOW_TIME_SECONDS = 15 * 60
CRITICAL_TIME_SECONDS = 5 * 60
TICK_INTERVAL_SECONDS = 1.0

# Persistence
AUTOSAVE_INTERVAL_SECONDS = 30
FINALIZE_MAX_ATTEMPTS = 5
FINALIZE_BACKOFF_SECONDS = 0.5
FINALIZE_BACKOFF_CAP_SECONDS = 8.0
SNAPSHOT_DIR = ".nurseprep/snapshots"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Runtime knobs for one exam service. Build with from_env() or pass values directly in tests."""

    question_count: int = DEFAULT_QUESTION_COUNT
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    autosave_interval_seconds: float = AUTOSAVE_INTERVAL_SECONDS
    autosave_on_change: bool = True
    tick_interval_seconds: float = TICK_INTERVAL_SECONDS
    low_time_seconds: int = LOW_TIME_SECONDS
    critical_time_seconds: int = CRITICAL_TIME_SECONDS
    finalize_max_attempts: int = FINALIZE_MAX_ATTEMPTS
    finalize_backoff_seconds: float = FINALIZE_BACKOFF_SECONDS
    finalize_backoff_cap_seconds: float = FINALIZE_BACKOFF_CAP_SECONDS
    snapshot_dir: Path = Path(SNAPSHOT_DIR)
    admin_emails: Tuple[str, ...] = ()
    # Background threads for timer ticks and autosaves; hosts that poll (Streamlit) leave this off
    threaded: bool = False
    difficulty_targets: Optional[Dict[str, float]] = field(default=None)

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        admins = tuple(
            e.strip().lower() for e in os.environ.get("ADMIN_EMAILS", "").split(",") if e.strip()
        )
        values = dict(
            question_count=_env_int("EXAM_QUESTION_COUNT", DEFAULT_QUESTION_COUNT),
            duration_minutes=_env_int("EXAM_DURATION_MINUTES", DEFAULT_DURATION_MINUTES),
            autosave_interval_seconds=_env_float("AUTOSAVE_INTERVAL_SECONDS", AUTOSAVE_INTERVAL_SECONDS),
            finalize_max_attempts=_env_int("FINALIZE_MAX_ATTEMPTS", FINALIZE_MAX_ATTEMPTS),
            finalize_backoff_seconds=_env_float("FINALIZE_BACKOFF_SECONDS", FINALIZE_BACKOFF_SECONDS),
            finalize_backoff_cap_seconds=_env_float("FINALIZE_BACKOFF_CAP_SECONDS", FINALIZE_BACKOFF_CAP_SECONDS),
            snapshot_dir=Path(os.environ.get("SNAPSHOT_DIR", SNAPSHOT_DIR)),
            admin_emails=admins,
        )
        values.update(overrides)
        return cls(**values)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for scripts and the Streamlit app."""
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
