"""
Coach Nudges
============

Short interactive prompts (readiness checks, recovery and schedule adjustments)
chosen from the coach summary. Nudges are ephemeral: only their resolution
survives, as a nudge_* behavior event that feeds back into tendencies.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from config import LearningPolicy
from coach_memory.clock import Clock, SystemClock
from coach_memory.errors import CoachMemoryError, PersistenceError, ValidationError
from coach_memory.event_store import EventStore, build_event
from coach_memory.state import BehaviorEvent, EventType, UserCoachSummary, UserTendencies
from coach_memory.summary_builder import CoachSummaryBuilder

logger = logging.getLogger(__name__)


class NudgeType(str, Enum):
    READINESS_CHECK = "readiness_check"
    SCHEDULE_ADJUST = "schedule_adjust"
    RECOVERY_ADJUST = "recovery_adjust"


class NudgeSituation(str, Enum):
    EXERCISE_START = "exercise_start"
    WORKOUT_START = "workout_start"
    HOME_VIEW = "home_view"


class NudgeResolution(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DISMISSED = "dismissed"


RESOLUTION_EVENTS = {
    NudgeResolution.ACCEPTED: EventType.NUDGE_ACCEPTED,
    NudgeResolution.REJECTED: EventType.NUDGE_REJECTED,
    NudgeResolution.DISMISSED: EventType.NUDGE_DISMISSED,
}

# Decline-tracking topic each nudge type feeds
NUDGE_TOPICS = {
    NudgeType.READINESS_CHECK: "weight_increase",
    NudgeType.SCHEDULE_ADJUST: "schedule",
    NudgeType.RECOVERY_ADJUST: "recovery",
}


@dataclass
class NudgeAction:
    label: str
    action: str  # accept, decline, ask_coach, adjust, dismiss
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "action": self.action, "payload": self.payload}


@dataclass
class ExerciseContext:
    name: str
    previous_weight: Optional[float] = None
    suggested_weight: Optional[float] = None
    movement_pattern: Optional[str] = None


@dataclass
class CoachNudge:
    id: str
    user_id: int
    nudge_type: NudgeType
    priority: int
    message: str
    actions: List[NudgeAction]
    created_at: datetime
    expires_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def topic(self) -> str:
        return NUDGE_TOPICS[self.nudge_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "nudge_type": self.nudge_type.value,
            "priority": self.priority,
            "message": self.message,
            "actions": [a.to_dict() for a in self.actions],
            "context": self.context,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


def _kg(value: float) -> str:
    return f"{value:g}kg"


def adjust_recommendation(
    weight_increase: float,
    tendencies: UserTendencies,
    movement: Optional[str] = None,
    policy: Optional[LearningPolicy] = None,
) -> float:
    """
    Scale a proposed load jump by confidence.
    Below load_cut_confidence it is cut (never below min_load_increase),
    above load_boost_confidence it is boosted.
    """
    if not weight_increase:
        return weight_increase
    p = policy or LearningPolicy()
    avg_confidence = (tendencies.confidence_with_load + tendencies.movement_score(movement)) / 2
    if avg_confidence < p.load_cut_confidence:
        return max(p.min_load_increase, weight_increase * p.load_cut_factor)
    if avg_confidence > p.load_boost_confidence:
        return weight_increase * p.load_boost_factor
    return weight_increase


class NudgeGenerator:
    """At most one nudge per situation, chosen from the coach summary."""

    def __init__(
        self,
        summary_builder: CoachSummaryBuilder,
        store: EventStore,
        policy: Optional[LearningPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.summary_builder = summary_builder
        self.store = store
        self.policy = policy or LearningPolicy()
        self.clock = clock or SystemClock()

    def generate(
        self,
        user_id: int,
        situation: NudgeSituation,
        exercise: Optional[ExerciseContext] = None,
    ) -> Optional[CoachNudge]:
        try:
            summary = self.summary_builder.build(user_id)
        except CoachMemoryError as e:
            logger.warning(f"Skipping nudge for user {user_id}, summary unavailable: {e}")
            return None

        situation = NudgeSituation(situation)
        if situation == NudgeSituation.EXERCISE_START:
            nudge = self._exercise_nudge(summary, exercise) if exercise else None
        elif situation == NudgeSituation.WORKOUT_START:
            nudge = self._workout_start_nudge(summary)
        else:
            nudge = self._home_nudge(summary)

        if nudge:
            logger.info(f"Created {nudge.nudge_type.value} nudge for user {user_id}")
        return nudge

    def _new(self, summary, nudge_type, priority, message, actions, expires_in_hours, context=None):
        now = self.clock.now()
        return CoachNudge(
            id=f"{nudge_type.value}-{summary.user_id}-{int(now.timestamp())}",
            user_id=summary.user_id,
            nudge_type=nudge_type,
            priority=priority,
            message=message,
            actions=actions,
            created_at=now,
            expires_at=now + timedelta(hours=expires_in_hours),
            context=context or {},
        )

    def _exercise_nudge(self, summary: UserCoachSummary, exercise: ExerciseContext) -> Optional[CoachNudge]:
        previous, suggested = exercise.previous_weight, exercise.suggested_weight
        if not previous or not suggested or suggested <= previous:
            return None

        topics = {"weight_increase"}
        if exercise.movement_pattern:
            topics.add(exercise.movement_pattern.lower())
        soft_ask = any(
            d.topic in topics and d.count >= self.policy.soft_ask_decline_count
            for d in summary.tendencies.active_declines
        )
        diff = suggested - previous
        name = exercise.name

        if soft_ask:
            message = (
                f"Last time we stayed at {_kg(previous)} for {name}. "
                f"Want to try {_kg(suggested)} today, or hold again?"
            )
            actions = [
                NudgeAction("Try it", "accept", {"weight": suggested}),
                NudgeAction("Hold", "decline", {"weight": previous}),
                NudgeAction("Ask coach", "ask_coach"),
            ]
        elif summary.tendencies.prefers_confirmation > self.policy.confirmation_threshold:
            message = f"Ready to try {_kg(suggested)} on {name}? That's +{_kg(diff)} from last time."
            actions = [
                NudgeAction("Yes, let's go", "accept", {"weight": suggested}),
                NudgeAction("Not today", "decline", {"weight": previous}),
                NudgeAction("Adjust", "adjust"),
            ]
        else:
            message = f"{name}: {_kg(suggested)} suggested (+{diff:g}). Good to go?"
            actions = [
                NudgeAction("Yes", "accept", {"weight": suggested}),
                NudgeAction("Adjust", "adjust"),
            ]

        return self._new(
            summary, NudgeType.READINESS_CHECK, 7, message, actions, 2,
            context={
                "exercise": name,
                "previous_weight": previous,
                "suggested_weight": suggested,
                "movement_pattern": exercise.movement_pattern,
                "soft_ask": soft_ask,
            },
        )

    def _workout_start_nudge(self, summary: UserCoachSummary) -> Optional[CoachNudge]:
        if summary.tendencies.recovery_need <= self.policy.recovery_nudge_threshold:
            return None
        return self._new(
            summary, NudgeType.RECOVERY_ADJUST, 6,
            "You've been pushing hard lately. Want to take it easier today with lighter weights or fewer sets?",
            [
                NudgeAction("Good idea", "accept"),
                NudgeAction("I'm fine", "decline"),
                NudgeAction("Ask coach", "ask_coach"),
            ],
            4,
        )

    def _home_nudge(self, summary: UserCoachSummary) -> Optional[CoachNudge]:
        if summary.weekly_progress >= self.policy.weekly_progress_low:
            return None

        now = self.clock.now()
        cooldown = timedelta(days=self.policy.decline_cooldown_days)
        recently_declined = any(
            d.topic == NUDGE_TOPICS[NudgeType.SCHEDULE_ADJUST] and now - d.last_at <= cooldown
            for d in summary.tendencies.active_declines
        )
        if recently_declined:
            return None

        return self._new(
            summary, NudgeType.SCHEDULE_ADJUST, 4,
            "Would it help to adjust your training schedule? Sometimes less is more.",
            [
                NudgeAction("Yes, let's adjust", "accept"),
                NudgeAction("I'm good", "decline"),
                NudgeAction("Talk to coach", "ask_coach"),
            ],
            24,
        )

    def resolve(
        self,
        user_id: int,
        nudge_type: NudgeType,
        resolution: NudgeResolution,
        nudge_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[BehaviorEvent]:
        """
        Record the learning event for a resolved nudge.
        Raises ValidationError on bad input; store failures are logged and return None.
        """
        try:
            nudge_type = NudgeType(nudge_type)
            resolution = NudgeResolution(resolution)
        except ValueError as e:
            raise ValidationError(str(e), "nudge")

        event_payload = dict(payload or {})
        event_payload["nudge_type"] = nudge_type.value
        if nudge_id:
            event_payload["nudge_id"] = nudge_id

        event = build_event(
            user_id,
            RESOLUTION_EVENTS[resolution].value,
            topic=NUDGE_TOPICS[nudge_type],
            payload=event_payload,
            created_at=self.clock.now(),
        )
        try:
            recorded = self.store.record(event)
        except PersistenceError as e:
            logger.warning(f"Could not record nudge resolution for user {user_id}: {e}")
            return None

        self._invalidate(user_id)
        logger.info(f"Resolved {nudge_type.value} nudge for user {user_id}: {resolution.value}")
        return recorded

    def _invalidate(self, user_id: int):
        if self.summary_builder.cache:
            self.summary_builder.cache.invalidate(user_id)
