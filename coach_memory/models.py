"""
Coach Memory SQLAlchemy Models
==============================

Three logical tables back the learning engine:
- behavior_events: append-only, pruned by age only
- user_tendencies: one row per user, replaced whole on every aggregation
- insight_history: append-only anti-spam log, pruned past the lookback window

These are separate from the main models.py to keep coach_memory self-contained.
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, Index, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class BehaviorEventRecord(Base):
    """Learning-relevant user action. Never updated."""
    __tablename__ = "behavior_events"
    __table_args__ = (
        Index("ix_behavior_events_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    event_type = Column(String(40), nullable=False)
    topic = Column(String(80), nullable=True)          # e.g. weight_increase, squat
    context_mode = Column(String(20), nullable=True)   # in_workout, post_workout, home, chat
    payload = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class UserTendencyRecord(Base):
    """Per-user decayed tendencies (complete replacement on each pass)."""
    __tablename__ = "user_tendencies"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    progression_pace = Column(String(10), nullable=False, default="moderate")
    prefers_confirmation = Column(Float, nullable=False, default=0.5)
    confidence_with_load = Column(Float, nullable=False, default=0.5)
    recovery_need = Column(Float, nullable=False, default=0.5)

    movement_confidence = Column(JSONType, nullable=False, default=dict)
    recent_declines = Column(JSONType, nullable=False, default=list)
    checkin_preferences = Column(JSONType, nullable=True)  # enabled, snooze, dismissals, watermark

    last_updated = Column(DateTime, nullable=True)


class InsightHistoryRecord(Base):
    """Which insight was shown when. Used purely for anti-spam lookback."""
    __tablename__ = "insight_history"
    __table_args__ = (
        Index("ix_insight_history_user_shown", "user_id", "shown_at"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    insight_id = Column(String(80), nullable=False)
    category = Column(String(20), nullable=False)

    shown_at = Column(DateTime, nullable=False)
