from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Coaching preferences (set during onboarding)
    coaching_style = Column(String, nullable=True)  # e.g. "calm-patient", "direct-challenging"
    fitness_level = Column(String, nullable=True)   # beginner, intermediate, advanced
    training_days_per_week = Column(Integer, default=3)

    workouts = relationship("WorkoutLog", back_populates="user")


class WorkoutLog(Base):
    """Completed workout sessions. Only the completion time matters to the coach."""
    __tablename__ = "workout_logs"
    __table_args__ = (
        Index("ix_workout_logs_user_completed", "user_id", "completed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    workout_name = Column(String, nullable=True)
    completed_at = Column(DateTime, nullable=False)

    user = relationship("User", back_populates="workouts")
