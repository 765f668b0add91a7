"""
Coach Memory State
==================

Value types shared by every layer of the learning engine:
- BehaviorEvent (append-only input)
- UserTendencies (one decayed profile per user)
- UserCoachSummary (the only object prompt construction may read)
- CoachInsight / InsightHistoryEntry (nudges and their anti-spam log)
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import json


class EventType(str, Enum):
    WORKOUT_COMPLETED = "workout_completed"
    WORKOUT_SKIPPED = "workout_skipped"
    SUGGESTION_SHOWN = "suggestion_shown"
    SUGGESTION_ACCEPTED = "suggestion_accepted"
    SUGGESTION_DECLINED = "suggestion_declined"
    WEIGHT_ADJUSTED = "weight_adjusted"
    EXERCISE_SWAPPED = "exercise_swapped"
    FEEDBACK_SUBMITTED = "feedback_submitted"
    NUDGE_ACCEPTED = "nudge_accepted"
    NUDGE_REJECTED = "nudge_rejected"
    NUDGE_DISMISSED = "nudge_dismissed"
    CHECKIN_ACCEPTED = "checkin_accepted"
    CHECKIN_DISMISSED = "checkin_dismissed"
    CHECKIN_SNOOZED = "checkin_snoozed"
    CHECKIN_DISABLED = "checkin_disabled"
    CHECKIN_ENABLED = "checkin_enabled"


ACCEPT_EVENTS = frozenset({EventType.SUGGESTION_ACCEPTED, EventType.NUDGE_ACCEPTED})
DECLINE_EVENTS = frozenset({EventType.SUGGESTION_DECLINED, EventType.NUDGE_REJECTED})
CHECKIN_EVENTS = frozenset({
    EventType.CHECKIN_ACCEPTED,
    EventType.CHECKIN_DISMISSED,
    EventType.CHECKIN_SNOOZED,
    EventType.CHECKIN_DISABLED,
    EventType.CHECKIN_ENABLED,
})


class ContextMode(str, Enum):
    IN_WORKOUT = "in_workout"
    POST_WORKOUT = "post_workout"
    HOME = "home"
    CHAT = "chat"


class CoachPersonality(str, Enum):
    AGGRESSIVE = "aggressive"
    DISCIPLINED = "disciplined"
    CALM = "calm"
    FRIENDLY = "friendly"


class ProgressionPace(str, Enum):
    SLOW = "slow"
    MODERATE = "moderate"
    FAST = "fast"


class Difficulty(str, Enum):
    EASY = "easy"
    PERFECT = "perfect"
    TOO_HARD = "too_hard"

    @classmethod
    def parse(cls, value: Any) -> "Difficulty":
        """
        Normalize the many ways clients have rated effort.
        Raises ValueError for anything unrecognized.
        """
        if isinstance(value, Difficulty):
            return value
        if not isinstance(value, str):
            raise ValueError(f"difficulty must be a string, got {type(value).__name__}")
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        if key in _DIFFICULTY_ALIASES:
            return _DIFFICULTY_ALIASES[key]
        raise ValueError(f"unknown difficulty: {value!r}")


_DIFFICULTY_ALIASES = {
    "easy": Difficulty.EASY,
    "too_easy": Difficulty.EASY,
    "great": Difficulty.EASY,
    "perfect": Difficulty.PERFECT,
    "just_right": Difficulty.PERFECT,
    "medium": Difficulty.PERFECT,
    "moderate": Difficulty.PERFECT,
    "hard": Difficulty.TOO_HARD,
    "too_hard": Difficulty.TOO_HARD,
    "toohard": Difficulty.TOO_HARD,
    "tired": Difficulty.TOO_HARD,
    "pain": Difficulty.TOO_HARD,
}


class InsightCategory(str, Enum):
    MOTIVATION = "motivation"
    PROGRESS = "progress"
    SCHEDULE = "schedule"
    TIP = "tip"
    STREAK = "streak"
    RECOVERY = "recovery"
    SUGGESTION = "suggestion"
    MENTAL_HEALTH = "mental_health"
    WELLNESS = "wellness"


# Categories governed by the Eligible -> Shown -> Cooling cooldown
WELLNESS_CATEGORIES = frozenset({InsightCategory.MENTAL_HEALTH, InsightCategory.WELLNESS})


class InsightAction(str, Enum):
    START_WORKOUT = "start_workout"
    SWAP_DAY = "swap_day"
    ASK_COACH = "ask_coach"
    EDIT_WORKOUT = "edit_workout"
    VIEW_STATS = "view_stats"
    REST_DAY = "rest_day"
    NONE = "none"


class CategoryState(str, Enum):
    ELIGIBLE = "eligible"
    SHOWN = "shown"
    COOLING = "cooling"
    SNOOZED = "snoozed"
    DISABLED = "disabled"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class BehaviorEvent:
    """Immutable learning signal. Owned by the event store."""
    user_id: int
    event_type: EventType
    created_at: datetime
    topic: Optional[str] = None
    context_mode: Optional[ContextMode] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def movement(self) -> Optional[str]:
        for key in ("movement", "movement_pattern", "exercise"):
            value = self.payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
        return None

    @property
    def difficulty(self) -> Optional[Difficulty]:
        raw = self.payload.get("difficulty", self.payload.get("feedback_type"))
        if raw is None:
            return None
        try:
            return Difficulty.parse(raw)
        except ValueError:
            return None

    @property
    def reported_pain(self) -> bool:
        return bool(self.payload.get("pain")) or self.payload.get("feedback_type") == "pain"

    @property
    def delta(self) -> float:
        value = self.payload.get("delta", 0)
        return float(value) if isinstance(value, (int, float)) else 0.0


@dataclass
class DeclineRecord:
    """Consecutive declines on one topic. Count decays, the topic is never dropped."""
    topic: str
    count: int
    last_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"topic": self.topic, "count": self.count, "last_at": _iso(self.last_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeclineRecord":
        return cls(topic=data["topic"], count=int(data["count"]), last_at=_parse_dt(data["last_at"]))


@dataclass
class CheckInPreferences:
    """
    Wellness check-in controls, folded from checkin_* events.
    last_event_id is the fold watermark: events at or below it are already applied.
    """
    enabled: bool = True
    snoozed_until: Optional[datetime] = None
    dismiss_count: int = 0
    reduced_frequency: bool = False
    last_response_at: Optional[datetime] = None
    last_event_id: Optional[int] = None

    def is_snoozed(self, now: datetime) -> bool:
        return self.snoozed_until is not None and self.snoozed_until > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "snoozed_until": _iso(self.snoozed_until),
            "dismiss_count": self.dismiss_count,
            "reduced_frequency": self.reduced_frequency,
            "last_response_at": _iso(self.last_response_at),
            "last_event_id": self.last_event_id,
        }

    def summary_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "snoozed_until": _iso(self.snoozed_until),
            "reduced_frequency": self.reduced_frequency,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CheckInPreferences":
        if not data:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", True)),
            snoozed_until=_parse_dt(data.get("snoozed_until")),
            dismiss_count=int(data.get("dismiss_count", 0)),
            reduced_frequency=bool(data.get("reduced_frequency", False)),
            last_response_at=_parse_dt(data.get("last_response_at")),
            last_event_id=data.get("last_event_id"),
        )


NEUTRAL = 0.5


@dataclass
class UserTendencies:
    """Decayed numeric profile. Every scalar stays in [0, 1]."""
    progression_pace: ProgressionPace = ProgressionPace.MODERATE
    prefers_confirmation: float = NEUTRAL
    confidence_with_load: float = NEUTRAL
    recovery_need: float = NEUTRAL
    movement_confidence: Dict[str, float] = field(default_factory=dict)
    recent_declines: List[DeclineRecord] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    checkin: CheckInPreferences = field(default_factory=CheckInPreferences)

    @classmethod
    def neutral(cls, now: Optional[datetime] = None) -> "UserTendencies":
        return cls(last_updated=now)

    def decline_for(self, topic: str) -> Optional[DeclineRecord]:
        for record in self.recent_declines:
            if record.topic == topic:
                return record
        return None

    def movement_score(self, movement: Optional[str]) -> float:
        if not movement:
            return NEUTRAL
        return self.movement_confidence.get(movement.lower(), NEUTRAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "progression_pace": self.progression_pace.value,
            "prefers_confirmation": round(self.prefers_confirmation, 4),
            "confidence_with_load": round(self.confidence_with_load, 4),
            "recovery_need": round(self.recovery_need, 4),
            "movement_confidence": {
                k: round(v, 4) for k, v in sorted(self.movement_confidence.items())
            },
            "recent_declines": [d.to_dict() for d in self.recent_declines],
            "last_updated": _iso(self.last_updated),
            "checkin": self.checkin.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserTendencies":
        return cls(
            progression_pace=ProgressionPace(data.get("progression_pace", "moderate")),
            prefers_confirmation=float(data.get("prefers_confirmation", NEUTRAL)),
            confidence_with_load=float(data.get("confidence_with_load", NEUTRAL)),
            recovery_need=float(data.get("recovery_need", NEUTRAL)),
            movement_confidence=dict(data.get("movement_confidence") or {}),
            recent_declines=[DeclineRecord.from_dict(d) for d in data.get("recent_declines") or []],
            last_updated=_parse_dt(data.get("last_updated")),
            checkin=CheckInPreferences.from_dict(data.get("checkin")),
        )


@dataclass
class TendencyView:
    """Bounded projection of UserTendencies for prompts."""
    progression_pace: ProgressionPace
    prefers_confirmation: float
    confidence_with_load: float
    recovery_need: float
    low_confidence_movements: Dict[str, float]
    active_declines: List[DeclineRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "progression_pace": self.progression_pace.value,
            "prefers_confirmation": round(self.prefers_confirmation, 2),
            "confidence_with_load": round(self.confidence_with_load, 2),
            "recovery_need": round(self.recovery_need, 2),
            "low_confidence_movements": {
                k: round(v, 2) for k, v in self.low_confidence_movements.items()
            },
            "active_declines": [d.to_dict() for d in self.active_declines],
        }


@dataclass
class UserCoachSummary:
    """The single bounded object prompt construction may read."""
    user_id: int
    coach_personality: CoachPersonality
    experience_level: str
    display_name: str
    streak_days: int
    total_workouts: int
    days_since_last_workout: Optional[int]
    last_workout_at: Optional[datetime]
    weekly_progress: float
    struggling_days: List[int]
    tendencies: TendencyView
    top_decline_flags: List[str]
    generated_at: datetime
    checkin: CheckInPreferences = field(default_factory=CheckInPreferences)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "coach_personality": self.coach_personality.value,
            "experience_level": self.experience_level,
            "display_name": self.display_name,
            "streak_days": self.streak_days,
            "total_workouts": self.total_workouts,
            "days_since_last_workout": self.days_since_last_workout,
            "last_workout_at": _iso(self.last_workout_at),
            "weekly_progress": round(self.weekly_progress, 2),
            "struggling_days": list(self.struggling_days),
            "tendencies": self.tendencies.to_dict(),
            "top_decline_flags": list(self.top_decline_flags),
            "generated_at": _iso(self.generated_at),
            "checkin": self.checkin.summary_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False, separators=(",", ":"))

    def serialized_size(self) -> int:
        return len(self.to_json())

    def has_decline_flag(self, topic: str) -> bool:
        return topic in self.top_decline_flags


@dataclass
class CoachInsight:
    """Ephemeral candidate message. Only its id/category survive, in insight history."""
    id: str
    message: str
    category: InsightCategory
    action: InsightAction
    action_label: str
    priority: int
    generated_at: datetime
    expires_at: datetime
    # Freshness of the trigger, used to break priority ties
    triggered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "category": self.category.value,
            "action": self.action.value,
            "action_label": self.action_label,
            "priority": self.priority,
            "generated_at": _iso(self.generated_at),
            "expires_at": _iso(self.expires_at),
        }


@dataclass(frozen=True)
class InsightHistoryEntry:
    insight_id: str
    category: InsightCategory
    shown_at: datetime
