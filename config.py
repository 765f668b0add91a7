import logging
import math
import os
from dataclasses import dataclass, fields, replace
from dotenv import load_dotenv

# .env dosyasını yükle
load_dotenv()

logger = logging.getLogger(__name__)


class Settings:
    """
    Application settings and environment variables.
    """
    # Relational store
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coach_memory.db")

    # LLM completion service (optional, insights degrade to rule-based without it)
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "8"))

    # Coach summary cache
    SUMMARY_CACHE_TTL_SECONDS = int(os.getenv("SUMMARY_CACHE_TTL_SECONDS", "300"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls):
        """
        Reports optional variables that are missing.
        """
        missing = []
        if not cls.GEMINI_API_KEY:
            missing.append("GEMINI_API_KEY")

        if missing:
            raise ValueError(f"Missing environment variables: {', '.join(missing)}")


# Upper bound on the fixed-size part of a serialized summary (scalars, closed enums, clipped names)
SUMMARY_MIN_CHARS = 1024


@dataclass(frozen=True)
class LearningPolicy:
    """
    Tuned constants for the learning, summary and insight layers.

    These were tuned empirically; nothing else should be read into them.
    """
    # Aggregation window and decay
    window_days: int = 84
    weekly_decay: float = 0.85
    prior_weight: float = 1.0

    # Progression pace (accepted increases per week)
    pace_fast_per_week: float = 2.0
    pace_slow_per_week: float = 0.5
    pace_hysteresis_windows: int = 3

    # Decline tracking
    decline_relief_per_accept: int = 2
    soft_ask_decline_count: int = 3
    decline_cooldown_days: int = 7

    # Coach summary bounds
    summary_max_movements: int = 5
    summary_max_decline_topics: int = 3
    summary_max_chars: int = 2048
    summary_max_name_len: int = 40

    # Insight rules
    streak_high: int = 7
    streak_low: int = 3
    streak_rest_day: int = 5
    weekly_progress_high: float = 0.8
    weekly_progress_low: float = 0.3
    inactivity_days: int = 3
    new_user_workouts: int = 5
    milestone_interval: int = 10
    struggling_lookback_days: int = 56

    # Anti-spam
    wellness_cooldown_days: int = 7
    wellness_reduced_cooldown_days: int = 14
    insight_expiry_hours: int = 4
    category_repeat_limit: int = 2
    category_repeat_window_hours: int = 72

    # Wellness check-in preferences
    checkin_reduce_after_dismissals: int = 2
    checkin_default_snooze_days: int = 7
    checkin_max_snooze_days: int = 30

    # Tendency thresholds used by nudges and suggestions
    recovery_nudge_threshold: float = 0.7
    confirmation_threshold: float = 0.6

    # Load recommendation scaling (average of load and movement confidence)
    load_cut_confidence: float = 0.4
    load_boost_confidence: float = 0.7
    load_cut_factor: float = 0.5
    load_boost_factor: float = 1.25
    min_load_increase: float = 0.5

    # Retention
    event_retention_days: int = 180

    def __post_init__(self):
        if self.summary_max_chars < SUMMARY_MIN_CHARS:
            raise ValueError(
                f"summary_max_chars must be at least {SUMMARY_MIN_CHARS}, got {self.summary_max_chars}"
            )

    @property
    def decay_lambda_per_day(self) -> float:
        """exp(-lambda * 7) == weekly_decay"""
        return -math.log(self.weekly_decay) / 7.0

    @classmethod
    def from_env(cls) -> "LearningPolicy":
        """Override numeric fields with COACH_POLICY_<FIELD> variables."""
        overrides = {}
        for f in fields(cls):
            raw = os.getenv(f"COACH_POLICY_{f.name.upper()}")
            if raw is None:
                continue
            try:
                overrides[f.name] = int(raw) if f.type in (int, "int") else float(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid policy override {f.name}={raw!r}")
        try:
            return replace(cls(), **overrides)
        except ValueError as e:
            logger.warning(f"Ignoring policy overrides: {e}")
            return cls()


# Ayarları doğrula (Import edildiğinde çalışır)
try:
    Settings.validate()
except ValueError as e:
    logger.warning(f"{e} - AI insights disabled, rule-based insights only")
