"""
Coach Memory Summary Builder
============================

Produces the UserCoachSummary: the ONLY object prompt construction may read.
Raw events never leave the tendency aggregator.

Key Requirements:
1. Fixed field set, no unbounded lists
2. Serialized size <= policy.summary_max_chars regardless of history length
3. Keep only the N lowest-confidence movements and N most active decline topics
"""

from datetime import datetime, timedelta
from threading import Lock
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple
import logging

from config import LearningPolicy
from coach_memory.clock import Clock, SystemClock
from coach_memory.repository import CoachMemoryRepository
from coach_memory.state import (
    CoachPersonality, DeclineRecord, TendencyView, UserCoachSummary, UserTendencies
)
from coach_memory.tendency_aggregator import TendencyAggregator

logger = logging.getLogger(__name__)

# Stored onboarding coaching-style strings -> personality
COACHING_STYLE_PERSONALITIES = MappingProxyType({
    "direct-challenging": CoachPersonality.AGGRESSIVE,
    "strict-structured": CoachPersonality.DISCIPLINED,
    "encouraging-positive": CoachPersonality.FRIENDLY,
    "calm-patient": CoachPersonality.CALM,
    "supportive": CoachPersonality.FRIENDLY,
    "direct": CoachPersonality.AGGRESSIVE,
    "analytical": CoachPersonality.DISCIPLINED,
})

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

EXPERIENCE_LEVELS = MappingProxyType({
    "beginner": "beginner",
    "novice": "beginner",
    "intermediate": "intermediate",
    "advanced": "advanced",
    "expert": "advanced",
})


def personality_for_style(coaching_style: Optional[str]) -> CoachPersonality:
    if coaching_style:
        try:
            return CoachPersonality(coaching_style)
        except ValueError:
            pass
    return COACHING_STYLE_PERSONALITIES.get(coaching_style or "", CoachPersonality.FRIENDLY)


def normalize_experience(fitness_level: Optional[str]) -> str:
    """Closed experience level; free-form or missing values read as beginner."""
    key = (fitness_level or "").strip().lower()
    return EXPERIENCE_LEVELS.get(key, "beginner")


class SummaryCache:
    """Short-lived per-user summary cache shared across requests."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: Dict[int, UserCoachSummary] = {}
        self._lock = Lock()

    def get(self, user_id: int, now: datetime) -> Optional[UserCoachSummary]:
        with self._lock:
            cached = self._entries.get(user_id)
            if cached is None:
                return None
            if now - cached.generated_at >= self.ttl:
                del self._entries[user_id]
                return None
            return cached

    def put(self, summary: UserCoachSummary):
        with self._lock:
            self._entries[summary.user_id] = summary

    def invalidate(self, user_id: int):
        with self._lock:
            self._entries.pop(user_id, None)


class CoachSummaryBuilder:
    """
    Builds bounded coach summaries from tendencies + workout facts.

    build() raises PersistenceError when the store is unreachable;
    the service facade converts that into a safe default.
    """

    def __init__(
        self,
        repo: CoachMemoryRepository,
        aggregator: TendencyAggregator,
        policy: Optional[LearningPolicy] = None,
        clock: Optional[Clock] = None,
        cache: Optional[SummaryCache] = None,
    ):
        self.repo = repo
        self.aggregator = aggregator
        self.policy = policy or LearningPolicy()
        self.clock = clock or SystemClock()
        self.cache = cache

    def build(self, user_id: int, force_refresh: bool = False) -> UserCoachSummary:
        now = self.clock.now()
        if self.cache and not force_refresh:
            cached = self.cache.get(user_id, now)
            if cached:
                logger.debug(f"Coach summary cache hit for user {user_id}")
                return cached

        user = self.repo.get_user(user_id)
        target_per_week = (user.training_days_per_week if user else None) or 3

        facts = self.repo.get_workout_facts(user_id, now, target_per_week)
        tendencies = self.aggregator.refresh(user_id)
        view, flags = self._bound_tendencies(tendencies)

        summary = UserCoachSummary(
            user_id=user_id,
            coach_personality=personality_for_style(user.coaching_style if user else None),
            experience_level=normalize_experience(user.fitness_level if user else None),
            display_name=self._clip((user.full_name if user else None) or "there"),
            streak_days=facts.streak_days,
            total_workouts=facts.total_workouts,
            days_since_last_workout=facts.days_since_last_workout,
            last_workout_at=facts.last_workout_at,
            weekly_progress=facts.weekly_progress,
            struggling_days=facts.struggling_days[:7],
            tendencies=view,
            top_decline_flags=flags,
            generated_at=now,
            checkin=tendencies.checkin,
        )
        self._enforce_size(summary)

        if self.cache:
            self.cache.put(summary)
        logger.info(
            f"Built coach summary for user {user_id} "
            f"({summary.serialized_size()} chars, streak {summary.streak_days})"
        )
        return summary

    def default_summary(self, user_id: int) -> UserCoachSummary:
        """Neutral summary served when the memory store cannot be read."""
        view, flags = self._bound_tendencies(UserTendencies.neutral(self.clock.now()))
        return UserCoachSummary(
            user_id=user_id,
            coach_personality=CoachPersonality.FRIENDLY,
            experience_level="beginner",
            display_name="there",
            streak_days=0,
            total_workouts=0,
            days_since_last_workout=None,
            last_workout_at=None,
            weekly_progress=0.0,
            struggling_days=[],
            tendencies=view,
            top_decline_flags=flags,
            generated_at=self.clock.now(),
        )

    def format_for_prompt(self, summary: UserCoachSummary) -> str:
        return format_summary_for_prompt(summary)

    def _clip(self, name: str) -> str:
        return name[:self.policy.summary_max_name_len]

    def _bound_tendencies(self, tendencies: UserTendencies) -> Tuple[TendencyView, List[str]]:
        lowest = sorted(tendencies.movement_confidence.items(), key=lambda kv: (kv[1], kv[0]))
        low_confidence: Dict[str, float] = {}
        for name, score in lowest:
            if len(low_confidence) >= self.policy.summary_max_movements:
                break
            # Clipped names can collide; the lower score wins
            low_confidence.setdefault(self._clip(name), score)

        ranked = sorted(
            (d for d in tendencies.recent_declines if d.count > 0),
            key=lambda d: (-d.count, -d.last_at.timestamp(), d.topic),
        )
        active: List[DeclineRecord] = []
        for d in ranked:
            if len(active) >= self.policy.summary_max_decline_topics:
                break
            topic = self._clip(d.topic)
            if any(a.topic == topic for a in active):
                continue
            active.append(DeclineRecord(topic, d.count, d.last_at))

        flags = [d.topic for d in active if d.count >= self.policy.soft_ask_decline_count]

        view = TendencyView(
            progression_pace=tendencies.progression_pace,
            prefers_confirmation=tendencies.prefers_confirmation,
            confidence_with_load=tendencies.confidence_with_load,
            recovery_need=tendencies.recovery_need,
            low_confidence_movements=low_confidence,
            active_declines=active,
        )
        return view, flags

    def _enforce_size(self, summary: UserCoachSummary):
        """Drop the least important list entries, then the display name, until the summary fits."""
        cap = self.policy.summary_max_chars
        view = summary.tendencies
        while summary.serialized_size() > cap:
            if view.low_confidence_movements:
                # Highest-confidence movement is the least useful to the coach
                last = list(view.low_confidence_movements)[-1]
                del view.low_confidence_movements[last]
            elif view.active_declines:
                dropped = view.active_declines.pop()
                if dropped.topic in summary.top_decline_flags:
                    summary.top_decline_flags.remove(dropped.topic)
            elif summary.struggling_days:
                summary.struggling_days.pop()
            elif summary.display_name != "there":
                summary.display_name = "there"
            else:
                logger.error(
                    f"Coach summary for user {summary.user_id} still exceeds {cap} chars"
                )
                break


def format_summary_for_prompt(summary: UserCoachSummary) -> str:
    """Render the summary block embedded in the LLM system prompt."""
    t = summary.tendencies
    parts = [
        "=== USER COACH SUMMARY ===",
        f"Name: {summary.display_name}",
        f"Experience: {summary.experience_level}",
        f"Coach personality: {summary.coach_personality.value}",
    ]

    if summary.streak_days > 0:
        parts.append(f"Current streak: {summary.streak_days} days")
    parts.append(f"Workouts logged: {summary.total_workouts}")
    parts.append(f"This week: {round(summary.weekly_progress * 100)}% of target")
    if summary.days_since_last_workout is not None:
        parts.append(f"Days since last workout: {summary.days_since_last_workout}")

    if summary.struggling_days:
        parts.append(f"Tends to skip: {', '.join(DAY_NAMES[d] for d in summary.struggling_days)}")

    parts.append(f"Progression pace: {t.progression_pace.value}")
    parts.append(
        f"Prefers confirmation: {t.prefers_confirmation:.2f} | "
        f"Load confidence: {t.confidence_with_load:.2f} | "
        f"Recovery need: {t.recovery_need:.2f}"
    )

    if t.low_confidence_movements:
        movements = ", ".join(f"{m} ({s:.2f})" for m, s in t.low_confidence_movements.items())
        parts.append(f"Least confident movements: {movements}")

    if summary.top_decline_flags:
        parts.append(
            f"Recently declined (not ready yet, ask gently): {', '.join(summary.top_decline_flags)}"
        )

    return "\n".join(parts)
