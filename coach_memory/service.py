"""
Coach Memory Service
====================

Caller-facing facade. Wires the components for one request/session and
enforces the boundary policy: only ValidationError from event ingestion
reaches the caller, everything else degrades to a safe default.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from config import LearningPolicy, Settings
from coach_memory.clock import Clock, SystemClock
from coach_memory.errors import CoachMemoryError, PersistenceError, ValidationError
from coach_memory.event_store import EventStore, build_event
from coach_memory.insight_generator import InsightGenerator
from coach_memory.llm_client import LLMClient
from coach_memory.nudges import CoachNudge, ExerciseContext, NudgeGenerator, NudgeResolution, NudgeSituation, NudgeType
from coach_memory.personality import PersonalityAdapter
from coach_memory.repository import CoachMemoryRepository
from coach_memory.state import (
    BehaviorEvent, CoachInsight, ContextMode, CoachPersonality, EventType, UserCoachSummary
)
from coach_memory.summary_builder import CoachSummaryBuilder, SummaryCache
from coach_memory.tendency_aggregator import TendencyAggregator

logger = logging.getLogger(__name__)


class CheckInResponse(str, Enum):
    """Answers to the home screen wellness check-in."""
    ACTED = "acted"
    DISMISS = "dismiss"
    SNOOZE_3_DAYS = "snooze_3_days"
    SNOOZE_1_WEEK = "snooze_1_week"
    DISABLE = "disable"
    ENABLE = "enable"


# response -> (event type, payload)
CHECKIN_RESPONSE_EVENTS = {
    CheckInResponse.ACTED: (EventType.CHECKIN_ACCEPTED, None),
    CheckInResponse.DISMISS: (EventType.CHECKIN_DISMISSED, None),
    CheckInResponse.SNOOZE_3_DAYS: (EventType.CHECKIN_SNOOZED, {"days": 3}),
    CheckInResponse.SNOOZE_1_WEEK: (EventType.CHECKIN_SNOOZED, {"days": 7}),
    CheckInResponse.DISABLE: (EventType.CHECKIN_DISABLED, None),
    CheckInResponse.ENABLE: (EventType.CHECKIN_ENABLED, None),
}


@dataclass
class EventAck:
    """Result of record_behavior_event. recorded=False means learning was skipped."""
    recorded: bool
    event_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"recorded": self.recorded, "event_id": self.event_id, "error": self.error}


class CoachMemoryService:
    """
    Entry point for chat / home screen layers.

    Usage:
        service = CoachMemoryService(db)
        summary = service.get_user_coach_summary(user_id)
        insights = service.get_coach_insights(user_id, count=3)
    """

    def __init__(
        self,
        db: Session,
        policy: Optional[LearningPolicy] = None,
        clock: Optional[Clock] = None,
        llm_client: Optional[LLMClient] = None,
        cache: Optional[SummaryCache] = None,
        adapter: Optional[PersonalityAdapter] = None,
        llm_timeout: Optional[float] = None,
    ):
        self.db = db
        self.policy = policy or LearningPolicy()
        self.clock = clock or SystemClock()
        self.adapter = adapter or PersonalityAdapter()

        self.store = EventStore(db, self.clock)
        self.repo = CoachMemoryRepository(db, self.policy)
        self.aggregator = TendencyAggregator(self.store, self.repo, self.policy, self.clock)
        self.summary_builder = CoachSummaryBuilder(
            self.repo, self.aggregator, self.policy, self.clock, cache
        )
        self.insights = InsightGenerator(
            self.repo,
            self.summary_builder,
            self.adapter,
            self.policy,
            self.clock,
            llm_client=llm_client,
            llm_timeout=llm_timeout if llm_timeout is not None else Settings.LLM_TIMEOUT_SECONDS,
        )
        self.nudges = NudgeGenerator(self.summary_builder, self.store, self.policy, self.clock)

    # ==========================================================================
    # SUMMARY
    # ==========================================================================

    def get_user_coach_summary(self, user_id: int) -> UserCoachSummary:
        """
        Bounded summary for prompt construction.
        Never raises; an unreachable store yields the neutral default summary.
        """
        try:
            return self.summary_builder.build(user_id)
        except CoachMemoryError as e:
            logger.warning(f"Coach summary unavailable for user {user_id}, serving default: {e}")
            return self.summary_builder.default_summary(user_id)

    def build_system_prompt(self, user_id: int, base_prompt: str, context_mode: ContextMode) -> str:
        """System prompt for the chat layer. Falls back to base + mode directive."""
        try:
            summary = self.summary_builder.build(user_id)
        except CoachMemoryError as e:
            logger.warning(f"Coach summary unavailable for user {user_id}, prompt without memory: {e}")
            return f"{base_prompt}\n\n{self.adapter.context_directive(context_mode)}"
        return self.adapter.build_system_prompt(base_prompt, summary, context_mode)

    # ==========================================================================
    # INSIGHTS
    # ==========================================================================

    def get_coach_insights(self, user_id: int, count: int = 10, include_ai: bool = False) -> List[CoachInsight]:
        return self.insights.get_insights(user_id, count=count, include_ai=include_ai)

    # ==========================================================================
    # EVENTS
    # ==========================================================================

    def record_behavior_event(
        self,
        user_id: Any,
        event_type: Any,
        topic: Any = None,
        context_mode: Any = None,
        payload: Any = None,
    ) -> EventAck:
        """
        Append a learning event.

        Raises:
            ValidationError: malformed event (the only error surfaced to callers)
        """
        event = build_event(user_id, event_type, topic, context_mode, payload, created_at=self.clock.now())
        return self.record(event)

    def record(self, event: BehaviorEvent) -> EventAck:
        try:
            recorded = self.store.record(event)
        except PersistenceError as e:
            logger.warning(f"Learning event dropped for user {event.user_id}: {e}")
            return EventAck(recorded=False, error="event store unavailable")

        if self.summary_builder.cache:
            self.summary_builder.cache.invalidate(event.user_id)
        return EventAck(recorded=True, event_id=recorded.id)

    def respond_to_checkin(self, user_id: Any, response: Any) -> EventAck:
        """
        Record the user's answer to a wellness check-in.

        Raises:
            ValidationError: unknown response or malformed user id
        """
        try:
            response = CheckInResponse(response)
        except ValueError:
            raise ValidationError(f"unknown check-in response: {response!r}", "response")

        event_type, payload = CHECKIN_RESPONSE_EVENTS[response]
        return self.record_behavior_event(
            user_id, event_type.value, topic="wellness", context_mode=ContextMode.HOME.value, payload=payload
        )

    def prune_events(self, now: Optional[datetime] = None) -> int:
        """Age-based retention. Returns 0 if the store is unavailable."""
        now = now or self.clock.now()
        try:
            return self.store.prune(now - timedelta(days=self.policy.event_retention_days))
        except PersistenceError as e:
            logger.error(f"Event pruning failed: {e}")
            return 0

    # ==========================================================================
    # PRESENTATION
    # ==========================================================================

    def adapt_message(self, message: str, personality: CoachPersonality, context_mode: ContextMode) -> str:
        return self.adapter.adapt(message, personality, context_mode)

    # ==========================================================================
    # NUDGES
    # ==========================================================================

    def get_nudge(
        self,
        user_id: int,
        situation: NudgeSituation,
        exercise: Optional[ExerciseContext] = None,
    ) -> Optional[CoachNudge]:
        return self.nudges.generate(user_id, situation, exercise)

    def resolve_nudge(
        self,
        user_id: int,
        nudge_type: NudgeType,
        resolution: NudgeResolution,
        nudge_id: Optional[str] = None,
    ) -> EventAck:
        event = self.nudges.resolve(user_id, nudge_type, resolution, nudge_id)
        if event is None:
            return EventAck(recorded=False, error="event store unavailable")
        return EventAck(recorded=True, event_id=event.id)
