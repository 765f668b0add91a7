"""
Coach Memory Event Store Tests
==============================
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from coach_memory.errors import PersistenceError, ValidationError
from coach_memory.event_store import EventFilters, EventStore, build_event
from coach_memory.models import BehaviorEventRecord
from coach_memory.state import BehaviorEvent, ContextMode, EventType


class TestBuildEvent:
    """Validation at the ingestion boundary."""

    def test_valid_event_is_normalized(self):
        event = build_event(1, "feedback_submitted", topic="  Squat ", context_mode="post_workout",
                            payload={"difficulty": "Too-Hard"})

        assert event.event_type == EventType.FEEDBACK_SUBMITTED
        assert event.topic == "squat"
        assert event.context_mode == ContextMode.POST_WORKOUT
        assert event.payload["difficulty"] == "too_hard"

    @pytest.mark.parametrize("user_id", [0, -3, "7", None, True])
    def test_rejects_bad_user_id(self, user_id):
        with pytest.raises(ValidationError) as exc:
            build_event(user_id, "workout_completed")
        assert exc.value.field == "user_id"

    def test_rejects_unknown_event_type(self):
        with pytest.raises(ValidationError) as exc:
            build_event(1, "workout_teleported")
        assert exc.value.field == "event_type"

    def test_rejects_unknown_context_mode(self):
        with pytest.raises(ValidationError):
            build_event(1, "workout_completed", context_mode="gym_floor")

    def test_rejects_long_topic(self):
        with pytest.raises(ValidationError):
            build_event(1, "suggestion_declined", topic="x" * 81)

    def test_rejects_non_mapping_payload(self):
        with pytest.raises(ValidationError):
            build_event(1, "workout_completed", payload=["not", "a", "dict"])

    def test_rejects_oversized_payload(self):
        with pytest.raises(ValidationError):
            build_event(1, "workout_completed", payload={"note": "a" * 3000})

    def test_rejects_unknown_difficulty(self):
        with pytest.raises(ValidationError) as exc:
            build_event(1, "feedback_submitted", payload={"difficulty": "spicy"})
        assert exc.value.field == "payload.difficulty"

    @pytest.mark.parametrize("raw,expected", [
        ("great", "easy"),
        ("too_easy", "easy"),
        ("just right", "perfect"),
        ("medium", "perfect"),
        ("tired", "too_hard"),
        ("pain", "too_hard"),
    ])
    def test_legacy_difficulty_strings(self, raw, expected):
        event = build_event(1, "feedback_submitted", payload={"difficulty": raw})
        assert event.payload["difficulty"] == expected

    def test_rejects_non_numeric_delta(self):
        with pytest.raises(ValidationError):
            build_event(1, "weight_adjusted", payload={"delta": "up"})


class TestEventStore:

    def test_record_assigns_id_and_clock_time(self, store, user, clock):
        event = store.record(build_event(1, "workout_completed"))

        assert event.id is not None
        assert event.created_at == clock.now()

    def test_query_is_newest_first(self, store, user, record):
        record("workout_completed", days_ago=3)
        record("suggestion_declined", days_ago=1, topic="weight_increase")
        record("suggestion_accepted", days_ago=2, topic="weight_increase")

        events = list(store.query(1))

        assert [e.event_type for e in events] == [
            EventType.SUGGESTION_DECLINED,
            EventType.SUGGESTION_ACCEPTED,
            EventType.WORKOUT_COMPLETED,
        ]

    def test_query_is_restartable(self, store, user, record):
        for days_ago in range(5):
            record("workout_completed", days_ago=days_ago)

        query = store.query(1)
        first = [e.id for e in query]
        second = [e.id for e in query]

        assert first == second
        assert len(first) == 5
        assert query.count() == 5

    def test_query_filters(self, store, user, record, clock):
        record("suggestion_declined", days_ago=1, topic="weight_increase")
        record("suggestion_declined", days_ago=1, topic="rep_increase")
        record("workout_completed", days_ago=1, context_mode="in_workout")
        record("suggestion_declined", days_ago=40, topic="weight_increase")

        declines = list(store.query(1, EventFilters.of(event_types=[EventType.SUGGESTION_DECLINED])))
        assert len(declines) == 3

        weight = list(store.query(1, EventFilters.of(topics=["weight_increase"]),
                                  since=clock.now() - timedelta(days=7)))
        assert len(weight) == 1

        in_workout = list(store.query(1, EventFilters.of(context_mode=ContextMode.IN_WORKOUT)))
        assert len(in_workout) == 1

    def test_query_is_scoped_to_user(self, store, user, record):
        record("workout_completed", user_id=1)
        record("workout_completed", user_id=2)

        assert store.query(1).count() == 1

    def test_prune_is_age_only(self, store, db, user, record, clock):
        record("suggestion_declined", days_ago=200, topic="weight_increase")
        record("suggestion_declined", days_ago=10, topic="weight_increase")

        deleted = store.prune(clock.now() - timedelta(days=180))

        assert deleted == 1
        assert db.query(BehaviorEventRecord).count() == 1

    def test_commit_failure_raises_persistence_error(self, clock):
        db = MagicMock()
        db.commit.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        store = EventStore(db, clock)

        with pytest.raises(PersistenceError):
            store.record(build_event(1, "workout_completed"))
        db.rollback.assert_called_once()

    def test_typed_event_is_revalidated(self, store, user, clock):
        bad = BehaviorEvent(
            user_id=1,
            event_type=EventType.FEEDBACK_SUBMITTED,
            created_at=clock.now(),
            payload={"difficulty": "whatever"},
        )

        with pytest.raises(ValidationError):
            store.record(bad)
