"""
Coach Memory Tendency Aggregator
================================

Turns a bounded window of behavior events into one UserTendencies row.

Rules:
1. Every event contributes with weight exp(-lambda * age_days)
2. Scalars are weighted means of per-event signals around a neutral prior,
   so zero events give exactly 0.5 and one event never pins an extreme
3. Progression pace only moves after a sustained signal across several
   consecutive weekly windows (hysteresis)
4. Declines accumulate per topic; an acceptance reduces the count but never
   deletes the topic - "declined" means "not yet", never "never"
5. Wellness check-in preferences are folded incrementally past a stored
   event-id watermark, so an opt-out outlives the aggregation window

Each pass computes a complete replacement row from the event store, so
re-running is idempotent and concurrent writers are last-writer-wins.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence
import math
import logging

from config import LearningPolicy
from coach_memory.clock import Clock, SystemClock
from coach_memory.errors import AggregationSkipped, PersistenceError
from coach_memory.event_store import EventFilters, EventStore
from coach_memory.repository import CoachMemoryRepository
from coach_memory.state import (
    ACCEPT_EVENTS, CHECKIN_EVENTS, DECLINE_EVENTS, NEUTRAL,
    BehaviorEvent, CheckInPreferences, DeclineRecord, Difficulty, EventType,
    ProgressionPace, UserTendencies
)

logger = logging.getLogger(__name__)

PROGRESSION_TOPICS = frozenset({"weight_increase", "rep_increase"})

# Feedback signals: (recovery_need, confidence_with_load, movement_confidence)
_DIFFICULTY_SIGNALS = {
    Difficulty.EASY: (0.2, 0.8, 0.8),
    Difficulty.PERFECT: (0.4, 0.6, 0.6),
    Difficulty.TOO_HARD: (0.85, 0.3, 0.25),
}


def decay_weight(age_days: float, decay_lambda: float) -> float:
    """exp(-lambda * age). Future-dated events count as age 0."""
    return math.exp(-decay_lambda * max(age_days, 0.0))


def event_signals(event: BehaviorEvent) -> Dict[str, float]:
    """Per-event signal in [0, 1] for each tendency the event informs."""
    et = event.event_type
    signals: Dict[str, float] = {}

    if et == EventType.SUGGESTION_ACCEPTED:
        signals = {"prefers_confirmation": 0.2, "confidence_with_load": 0.75, "movement": 0.75}
    elif et == EventType.SUGGESTION_DECLINED:
        signals = {"prefers_confirmation": 0.85, "confidence_with_load": 0.3, "movement": 0.3}
    elif et == EventType.NUDGE_ACCEPTED:
        signals = {"prefers_confirmation": 0.3}
    elif et == EventType.NUDGE_REJECTED:
        signals = {"prefers_confirmation": 0.7}
    elif et == EventType.NUDGE_DISMISSED:
        signals = {"prefers_confirmation": 0.6}
    elif et == EventType.WEIGHT_ADJUSTED:
        if event.delta < 0:
            signals = {"confidence_with_load": 0.2, "recovery_need": 0.7, "movement": 0.25}
        elif event.delta > 0:
            signals = {"confidence_with_load": 0.85, "movement": 0.8}
    elif et == EventType.WORKOUT_SKIPPED:
        signals = {"recovery_need": 0.7}

    if et in (EventType.FEEDBACK_SUBMITTED, EventType.WORKOUT_COMPLETED):
        difficulty = event.difficulty
        if difficulty is not None:
            recovery, load, movement = _DIFFICULTY_SIGNALS[difficulty]
            signals = {"recovery_need": recovery, "confidence_with_load": load, "movement": movement}

    if event.reported_pain:
        signals["recovery_need"] = 1.0

    return signals


class _WeightedMean:
    """Decayed weighted mean anchored at a neutral prior."""

    def __init__(self, prior_weight: float):
        self.num = prior_weight * NEUTRAL
        self.den = prior_weight

    def add(self, signal: float, weight: float):
        self.num += signal * weight
        self.den += weight

    @property
    def value(self) -> float:
        return min(1.0, max(0.0, self.num / self.den))


@dataclass
class _PaceWindow:
    accepted_increases: int = 0
    has_signal: bool = False


def _is_progression_event(event: BehaviorEvent) -> bool:
    if event.event_type == EventType.WEIGHT_ADJUSTED:
        return event.delta > 0
    return (
        event.topic in PROGRESSION_TOPICS
        and (event.event_type in ACCEPT_EVENTS or event.event_type in DECLINE_EVENTS)
    )


class TendencyAggregator:
    """
    Computes and persists UserTendencies.

    compute() is pure (events + now -> tendencies).
    refresh() wraps it with store access and never lets a failure
    overwrite the previous row.
    """

    def __init__(
        self,
        store: EventStore,
        repo: CoachMemoryRepository,
        policy: Optional[LearningPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.repo = repo
        self.policy = policy or LearningPolicy()
        self.clock = clock or SystemClock()

    # ==========================================================================
    # PURE CORE
    # ==========================================================================

    def compute(self, events: Iterable[BehaviorEvent], now: datetime) -> UserTendencies:
        """
        Build a complete tendencies record from events.

        Raises:
            AggregationSkipped: no events to learn from
        """
        chronological = sorted(events, key=lambda e: (e.created_at, e.id or 0))
        if not chronological:
            raise AggregationSkipped("no events in window")

        decay_lambda = self.policy.decay_lambda_per_day
        prior = self.policy.prior_weight
        scalars = {
            "prefers_confirmation": _WeightedMean(prior),
            "confidence_with_load": _WeightedMean(prior),
            "recovery_need": _WeightedMean(prior),
        }
        movements: Dict[str, _WeightedMean] = {}

        for event in chronological:
            signals = event_signals(event)
            if not signals:
                continue
            weight = decay_weight(self._age_days(event, now), decay_lambda)

            for name, mean in scalars.items():
                if name in signals:
                    mean.add(signals[name], weight)

            movement = event.movement
            if movement and "movement" in signals:
                movements.setdefault(movement, _WeightedMean(prior)).add(signals["movement"], weight)

        return UserTendencies(
            progression_pace=self.derive_pace(chronological, now),
            prefers_confirmation=scalars["prefers_confirmation"].value,
            confidence_with_load=scalars["confidence_with_load"].value,
            recovery_need=scalars["recovery_need"].value,
            movement_confidence={name: mean.value for name, mean in sorted(movements.items())},
            recent_declines=self.replay_declines(chronological),
            last_updated=now,
        )

    @staticmethod
    def _age_days(event: BehaviorEvent, now: datetime) -> float:
        return (now - event.created_at).total_seconds() / 86400.0

    def _pace_signal(self, window: _PaceWindow) -> Optional[ProgressionPace]:
        if not window.has_signal:
            return None
        rate = window.accepted_increases  # per 7-day window
        if rate >= self.policy.pace_fast_per_week:
            return ProgressionPace.FAST
        if rate < self.policy.pace_slow_per_week:
            return ProgressionPace.SLOW
        return ProgressionPace.MODERATE

    def derive_pace(self, chronological: Sequence[BehaviorEvent], now: datetime) -> ProgressionPace:
        """
        Bucket progression events into 7-day windows ending at `now`, then replay
        a hysteresis state machine from the oldest window. Windows without
        progression events carry no signal and neither advance nor reset a run.
        """
        num_windows = max(1, math.ceil(self.policy.window_days / 7))
        windows = [_PaceWindow() for _ in range(num_windows)]

        for event in chronological:
            if not _is_progression_event(event):
                continue
            index = max(0, int(self._age_days(event, now) // 7))
            if index >= num_windows:
                continue
            windows[index].has_signal = True
            if event.event_type in ACCEPT_EVENTS or event.event_type == EventType.WEIGHT_ADJUSTED:
                windows[index].accepted_increases += 1

        current = ProgressionPace.MODERATE
        candidate = None
        run = 0
        for window in reversed(windows):
            signal = self._pace_signal(window)
            if signal is None:
                continue
            if signal == current:
                candidate, run = None, 0
                continue
            if signal == candidate:
                run += 1
            else:
                candidate, run = signal, 1
            if run >= self.policy.pace_hysteresis_windows:
                current, candidate, run = candidate, None, 0
        return current

    def replay_declines(self, chronological: Sequence[BehaviorEvent]) -> List[DeclineRecord]:
        records: Dict[str, DeclineRecord] = {}
        for event in chronological:
            topic = event.topic or "general"
            if event.event_type in DECLINE_EVENTS:
                record = records.get(topic)
                if record is None:
                    records[topic] = DeclineRecord(topic=topic, count=1, last_at=event.created_at)
                else:
                    record.count += 1
                    record.last_at = event.created_at
            elif event.event_type in ACCEPT_EVENTS and topic in records:
                record = records[topic]
                record.count = max(0, record.count - self.policy.decline_relief_per_accept)

        return sorted(records.values(), key=lambda d: (-d.last_at.timestamp(), d.topic))

    # ==========================================================================
    # CHECK-IN PREFERENCES
    # ==========================================================================

    def fold_checkin(self, prefs: CheckInPreferences, events: Iterable[BehaviorEvent]) -> CheckInPreferences:
        """
        Apply checkin_* responses newer than the watermark, oldest first.

        dismissed: dismiss_count + 1, reduced frequency once it reaches the policy limit
        accepted:  dismiss_count - 1 (reduced frequency stays until re-enabled)
        snoozed:   hidden until created_at + payload["days"]
        disabled / enabled: opt out / reset everything
        """
        p = self.policy
        watermark = prefs.last_event_id
        pending = [
            e for e in events
            if e.event_type in CHECKIN_EVENTS and (watermark is None or (e.id or 0) > watermark)
        ]
        folded = replace(prefs)

        for event in sorted(pending, key=lambda e: (e.created_at, e.id or 0)):
            et = event.event_type
            if et == EventType.CHECKIN_ENABLED:
                folded = CheckInPreferences(last_response_at=folded.last_response_at)
                continue

            if et == EventType.CHECKIN_DISABLED:
                folded.enabled = False
            elif et == EventType.CHECKIN_SNOOZED:
                folded.snoozed_until = event.created_at + timedelta(days=self._snooze_days(event))
            elif et == EventType.CHECKIN_DISMISSED:
                folded.dismiss_count += 1
                if folded.dismiss_count >= p.checkin_reduce_after_dismissals:
                    folded.reduced_frequency = True
            elif et == EventType.CHECKIN_ACCEPTED:
                folded.dismiss_count = max(0, folded.dismiss_count - 1)
            folded.last_response_at = event.created_at

        ids = [e.id for e in pending if e.id is not None]
        if ids:
            folded.last_event_id = max(ids + [watermark or 0])
        return folded

    def _snooze_days(self, event: BehaviorEvent) -> float:
        days = event.payload.get("days")
        if isinstance(days, bool) or not isinstance(days, (int, float)) or days <= 0:
            return self.policy.checkin_default_snooze_days
        return min(days, self.policy.checkin_max_snooze_days)

    # ==========================================================================
    # STORE-BACKED PASS
    # ==========================================================================

    def refresh(self, user_id: int) -> UserTendencies:
        """
        Recompute tendencies from the event window and replace the stored row.
        Never raises; on store failure returns the last known (or neutral) row.
        """
        now = self.clock.now()
        since = now - timedelta(days=self.policy.window_days)

        try:
            events = list(self.store.query(user_id, since=since, until=now))
            previous = self.repo.get_tendencies(user_id)
            checkin_events = list(self.store.query(
                user_id, EventFilters.of(event_types=CHECKIN_EVENTS), until=now
            ))
        except PersistenceError as e:
            logger.error(f"Aggregation for user {user_id} aborted, event store unavailable: {e}")
            return self._last_known(user_id, now)

        try:
            tendencies = self.compute(events, now)
        except AggregationSkipped:
            logger.info(f"No recent events for user {user_id}, using neutral tendencies")
            tendencies = UserTendencies.neutral(now)
        tendencies.checkin = self.fold_checkin(
            previous.checkin if previous else CheckInPreferences(), checkin_events
        )

        try:
            self.repo.replace_tendencies(user_id, tendencies)
        except PersistenceError as e:
            logger.error(f"Could not persist tendencies for user {user_id}: {e}")

        logger.info(
            f"Updated tendencies for user {user_id}: pace={tendencies.progression_pace.value} "
            f"confirmation={tendencies.prefers_confirmation:.2f} "
            f"load={tendencies.confidence_with_load:.2f} "
            f"recovery={tendencies.recovery_need:.2f} ({len(events)} events)"
        )
        return tendencies

    def _last_known(self, user_id: int, now: datetime) -> UserTendencies:
        try:
            stored = self.repo.get_tendencies(user_id)
        except PersistenceError:
            stored = None
        return stored or UserTendencies.neutral(now)
