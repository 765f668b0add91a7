"""
Shared fixtures for coach_memory tests.

In-memory SQLite (StaticPool, so every session sees the same database)
and a FixedClock starting on a Monday morning.
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import LearningPolicy
from database import Base
import models
import coach_memory.models  # noqa: F401
from coach_memory.clock import FixedClock
from coach_memory.event_store import EventStore, build_event
from coach_memory.repository import CoachMemoryRepository
from coach_memory.summary_builder import CoachSummaryBuilder
from coach_memory.tendency_aggregator import TendencyAggregator

# Monday 2024-01-01 10:00 UTC
T0 = datetime(2024, 1, 1, 10, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def policy():
    return LearningPolicy()


@pytest.fixture
def user(db):
    user = models.User(
        id=1,
        email="alex@example.com",
        full_name="Alex Doe",
        coaching_style="encouraging-positive",
        fitness_level="intermediate",
        training_days_per_week=3,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def store(db, clock):
    return EventStore(db, clock)


@pytest.fixture
def repo(db, policy):
    return CoachMemoryRepository(db, policy)


@pytest.fixture
def aggregator(store, repo, policy, clock):
    return TendencyAggregator(store, repo, policy, clock)


@pytest.fixture
def builder(repo, aggregator, policy, clock):
    return CoachSummaryBuilder(repo, aggregator, policy, clock)


@pytest.fixture
def record(store, clock):
    """record(event_type, days_ago=0, topic=None, payload=None, user_id=1)"""
    def _record(event_type, days_ago=0, topic=None, payload=None, user_id=1, context_mode=None):
        created_at = clock.now() - timedelta(days=days_ago)
        return store.record(build_event(user_id, event_type, topic, context_mode, payload, created_at))
    return _record


@pytest.fixture
def add_workouts(db, clock):
    """add_workouts([days_ago, ...]) logs completed workouts one hour before `now - days_ago`."""
    def _add(days_ago_list, user_id=1):
        now = clock.now()
        for days_ago in days_ago_list:
            db.add(models.WorkoutLog(
                user_id=user_id,
                workout_name="Full body",
                completed_at=now - timedelta(days=days_ago, hours=1),
            ))
        db.commit()
    return _add
