"""
Coach Memory Repository Layer
=============================

Data access for tendencies, insight history and the (external) workout log.
Every SQLAlchemy failure surfaces as PersistenceError, after a rollback.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import LearningPolicy
from coach_memory.errors import PersistenceError
from coach_memory.models import InsightHistoryRecord, UserTendencyRecord
from coach_memory.state import (
    CheckInPreferences, DeclineRecord, InsightCategory, InsightHistoryEntry,
    ProgressionPace, UserTendencies
)
import models  # Main app models

logger = logging.getLogger(__name__)

STREAK_LOOKBACK_DAYS = 366


@dataclass
class WorkoutFacts:
    """Cheap derived facts from the workout history store."""
    streak_days: int = 0
    total_workouts: int = 0
    last_workout_at: Optional[datetime] = None
    days_since_last_workout: Optional[int] = None
    weekly_progress: float = 0.0
    struggling_days: List[int] = field(default_factory=list)


def compute_streak(workout_times: Iterable[datetime], now: datetime) -> int:
    """Consecutive days with a workout, counting back from today."""
    today = now.date()
    streak = 0
    for day in sorted({t.date() for t in workout_times}, reverse=True):
        days_diff = (today - day).days
        if days_diff == streak:
            streak += 1
        elif days_diff > streak:
            break
    return streak


def compute_struggling_days(workout_times: Iterable[datetime]) -> List[int]:
    """Weekdays (Mon=0) with fewer than half the average workouts."""
    day_count = [0] * 7
    for t in workout_times:
        day_count[t.weekday()] += 1
    avg = sum(day_count) / 7
    return [day for day, count in enumerate(day_count) if count < avg * 0.5]


class CoachMemoryRepository:
    """
    Repository for coach memory tables.

    Tendencies are replaced whole, never patched.
    Insight history is append-only with age-based pruning.
    """

    def __init__(self, db: Session, policy: Optional[LearningPolicy] = None):
        self.db = db
        self.policy = policy or LearningPolicy()

    # ==========================================================================
    # USER TENDENCIES
    # ==========================================================================

    def get_tendencies(self, user_id: int) -> Optional[UserTendencies]:
        try:
            row = self.db.query(UserTendencyRecord).filter(
                UserTendencyRecord.user_id == user_id
            ).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not load tendencies for user {user_id}: {e}") from e

        if not row:
            return None
        return UserTendencies(
            progression_pace=ProgressionPace(row.progression_pace),
            prefers_confirmation=row.prefers_confirmation,
            confidence_with_load=row.confidence_with_load,
            recovery_need=row.recovery_need,
            movement_confidence=dict(row.movement_confidence or {}),
            recent_declines=[DeclineRecord.from_dict(d) for d in row.recent_declines or []],
            last_updated=row.last_updated,
            checkin=CheckInPreferences.from_dict(row.checkin_preferences),
        )

    def replace_tendencies(self, user_id: int, tendencies: UserTendencies) -> None:
        """Write a complete replacement row. On failure the old row is untouched."""
        data = tendencies.to_dict()
        try:
            row = self.db.query(UserTendencyRecord).filter(
                UserTendencyRecord.user_id == user_id
            ).first()
            if row is None:
                row = UserTendencyRecord(user_id=user_id)
                self.db.add(row)

            row.progression_pace = data["progression_pace"]
            row.prefers_confirmation = data["prefers_confirmation"]
            row.confidence_with_load = data["confidence_with_load"]
            row.recovery_need = data["recovery_need"]
            row.movement_confidence = data["movement_confidence"]
            row.recent_declines = data["recent_declines"]
            row.checkin_preferences = data["checkin"]
            row.last_updated = tendencies.last_updated
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"could not save tendencies for user {user_id}: {e}") from e

    # ==========================================================================
    # INSIGHT HISTORY
    # ==========================================================================

    def get_insight_history(self, user_id: int, since: datetime) -> List[InsightHistoryEntry]:
        try:
            rows = self.db.query(InsightHistoryRecord).filter(
                InsightHistoryRecord.user_id == user_id,
                InsightHistoryRecord.shown_at >= since
            ).order_by(InsightHistoryRecord.shown_at.desc()).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not load insight history for user {user_id}: {e}") from e

        entries = []
        for row in rows:
            try:
                category = InsightCategory(row.category)
            except ValueError:
                continue
            entries.append(InsightHistoryEntry(row.insight_id, category, row.shown_at))
        return entries

    def append_insight_history(self, user_id: int, entries: Iterable[InsightHistoryEntry]) -> int:
        rows = [
            InsightHistoryRecord(
                user_id=user_id,
                insight_id=e.insight_id[:80],
                category=e.category.value,
                shown_at=e.shown_at,
            )
            for e in entries
        ]
        if not rows:
            return 0
        try:
            self.db.add_all(rows)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"could not append insight history for user {user_id}: {e}") from e
        return len(rows)

    def prune_insight_history(self, user_id: int, older_than: datetime) -> int:
        try:
            deleted = self.db.query(InsightHistoryRecord).filter(
                InsightHistoryRecord.user_id == user_id,
                InsightHistoryRecord.shown_at < older_than
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"could not prune insight history for user {user_id}: {e}") from e
        return deleted

    # ==========================================================================
    # USER + WORKOUT HISTORY (external store, read-only)
    # ==========================================================================

    def get_user(self, user_id: int) -> Optional[models.User]:
        try:
            return self.db.query(models.User).filter(models.User.id == user_id).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not load user {user_id}: {e}") from e

    def get_workout_facts(self, user_id: int, now: datetime, target_per_week: int = 3) -> WorkoutFacts:
        lookback_start = now - timedelta(days=STREAK_LOOKBACK_DAYS)
        try:
            total = self.db.query(models.WorkoutLog).filter(
                models.WorkoutLog.user_id == user_id,
                models.WorkoutLog.completed_at <= now
            ).count()
            times = [
                row[0] for row in self.db.query(models.WorkoutLog.completed_at).filter(
                    models.WorkoutLog.user_id == user_id,
                    models.WorkoutLog.completed_at >= lookback_start,
                    models.WorkoutLog.completed_at <= now
                ).order_by(models.WorkoutLog.completed_at.desc()).all()
            ]
            if times:
                last_workout_at = times[0]
            else:
                last_workout_at = self.db.query(models.WorkoutLog.completed_at).filter(
                    models.WorkoutLog.user_id == user_id,
                    models.WorkoutLog.completed_at <= now
                ).order_by(models.WorkoutLog.completed_at.desc()).limit(1).scalar()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not load workout history for user {user_id}: {e}") from e

        # Week starts Monday 00:00
        week_start = datetime.combine(now.date() - timedelta(days=now.weekday()), datetime.min.time())
        this_week = sum(1 for t in times if t >= week_start)
        weekly_progress = min(this_week / max(target_per_week, 1), 1.0)

        struggling_start = now - timedelta(days=self.policy.struggling_lookback_days)
        struggling_days = compute_struggling_days(t for t in times if t >= struggling_start)

        return WorkoutFacts(
            streak_days=compute_streak(times, now),
            total_workouts=total,
            last_workout_at=last_workout_at,
            days_since_last_workout=(now - last_workout_at).days if last_workout_at else None,
            weekly_progress=weekly_progress,
            struggling_days=struggling_days,
        )
