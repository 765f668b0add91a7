"""
Coach Memory Event Store
========================

Append-only record of learning-relevant behavior.

- record() validates and appends, nothing else ever writes here
- query() returns a lazy, restartable, newest-first sequence
- prune() removes events by age only, never by content
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional
import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coach_memory.clock import Clock, SystemClock
from coach_memory.errors import PersistenceError, ValidationError
from coach_memory.models import BehaviorEventRecord
from coach_memory.state import BehaviorEvent, ContextMode, Difficulty, EventType

logger = logging.getLogger(__name__)

MAX_TOPIC_LEN = 80
MAX_PAYLOAD_CHARS = 2048


@dataclass(frozen=True)
class EventFilters:
    """Optional narrowing for query(). None means no constraint."""
    event_types: Optional[frozenset] = None
    topics: Optional[frozenset] = None
    context_mode: Optional[ContextMode] = None

    @classmethod
    def of(
        cls,
        event_types: Optional[Iterable[EventType]] = None,
        topics: Optional[Iterable[str]] = None,
        context_mode: Optional[ContextMode] = None,
    ) -> "EventFilters":
        return cls(
            event_types=frozenset(event_types) if event_types else None,
            topics=frozenset(topics) if topics else None,
            context_mode=context_mode,
        )


def build_event(
    user_id: Any,
    event_type: Any,
    topic: Any = None,
    context_mode: Any = None,
    payload: Any = None,
    created_at: Optional[datetime] = None,
) -> BehaviorEvent:
    """
    Parse loosely-typed input (HTTP bodies, other services) into a BehaviorEvent.
    Raises ValidationError on anything malformed.
    """
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise ValidationError(f"user_id must be a positive integer, got {user_id!r}", "user_id")

    try:
        parsed_type = EventType(event_type)
    except ValueError:
        raise ValidationError(f"unknown event_type: {event_type!r}", "event_type")

    if topic is not None:
        if not isinstance(topic, str):
            raise ValidationError("topic must be a string", "topic")
        topic = topic.strip().lower() or None
        if topic and len(topic) > MAX_TOPIC_LEN:
            raise ValidationError(f"topic exceeds {MAX_TOPIC_LEN} chars", "topic")

    parsed_mode = None
    if context_mode is not None:
        try:
            parsed_mode = ContextMode(context_mode)
        except ValueError:
            raise ValidationError(f"unknown context_mode: {context_mode!r}", "context_mode")

    payload = _validate_payload(payload)

    return BehaviorEvent(
        user_id=user_id,
        event_type=parsed_type,
        topic=topic,
        context_mode=parsed_mode,
        payload=payload,
        created_at=created_at,
    )


def _validate_payload(payload: Any) -> Dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be an object", "payload")

    payload = dict(payload)
    try:
        encoded = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        raise ValidationError("payload must be JSON-serializable", "payload")
    if len(encoded) > MAX_PAYLOAD_CHARS:
        raise ValidationError(f"payload exceeds {MAX_PAYLOAD_CHARS} chars", "payload")

    if "difficulty" in payload:
        try:
            payload["difficulty"] = Difficulty.parse(payload["difficulty"]).value
        except ValueError as e:
            raise ValidationError(str(e), "payload.difficulty")

    if "delta" in payload:
        delta = payload["delta"]
        if isinstance(delta, bool) or not isinstance(delta, (int, float)):
            raise ValidationError("payload.delta must be numeric", "payload.delta")

    return payload


def _to_event(row: BehaviorEventRecord) -> BehaviorEvent:
    return BehaviorEvent(
        id=row.id,
        user_id=row.user_id,
        event_type=EventType(row.event_type),
        topic=row.topic,
        context_mode=ContextMode(row.context_mode) if row.context_mode else None,
        payload=dict(row.payload or {}),
        created_at=row.created_at,
    )


class EventQuery:
    """
    Lazy newest-first view over a user's events.
    Each iteration issues a fresh streamed query, so it can be restarted.
    """

    BATCH_SIZE = 500

    def __init__(
        self,
        db: Session,
        user_id: int,
        filters: EventFilters,
        since: Optional[datetime],
        until: Optional[datetime],
    ):
        self.db = db
        self.user_id = user_id
        self.filters = filters
        self.since = since
        self.until = until

    def _statement(self):
        query = self.db.query(BehaviorEventRecord).filter(
            BehaviorEventRecord.user_id == self.user_id
        )
        if self.since is not None:
            query = query.filter(BehaviorEventRecord.created_at >= self.since)
        if self.until is not None:
            query = query.filter(BehaviorEventRecord.created_at <= self.until)
        if self.filters.event_types:
            query = query.filter(
                BehaviorEventRecord.event_type.in_(sorted(t.value for t in self.filters.event_types))
            )
        if self.filters.topics:
            query = query.filter(BehaviorEventRecord.topic.in_(sorted(self.filters.topics)))
        if self.filters.context_mode is not None:
            query = query.filter(BehaviorEventRecord.context_mode == self.filters.context_mode.value)
        return query.order_by(
            BehaviorEventRecord.created_at.desc(),
            BehaviorEventRecord.id.desc(),
        )

    def __iter__(self) -> Iterator[BehaviorEvent]:
        try:
            for row in self._statement().yield_per(self.BATCH_SIZE):
                yield _to_event(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"event query failed for user {self.user_id}: {e}") from e

    def count(self) -> int:
        try:
            return self._statement().count()
        except SQLAlchemyError as e:
            raise PersistenceError(f"event count failed for user {self.user_id}: {e}") from e


class EventStore:
    """Sole owner of behavior_events."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    def record(self, event: BehaviorEvent) -> BehaviorEvent:
        """
        Validate and append an event.

        Raises:
            ValidationError: malformed event
            PersistenceError: store unreachable (callers treat as non-fatal)
        """
        # Re-run validation so typed callers get the same guarantees as raw ones
        validated = build_event(
            event.user_id,
            event.event_type.value if isinstance(event.event_type, EventType) else event.event_type,
            event.topic,
            event.context_mode.value if isinstance(event.context_mode, ContextMode) else event.context_mode,
            event.payload,
        )
        created_at = event.created_at or self.clock.now()

        row = BehaviorEventRecord(
            user_id=validated.user_id,
            event_type=validated.event_type.value,
            topic=validated.topic,
            context_mode=validated.context_mode.value if validated.context_mode else None,
            payload=validated.payload,
            created_at=created_at,
        )
        try:
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"could not record {validated.event_type.value}: {e}") from e

        logger.info(
            f"Recorded {row.event_type} for user {row.user_id} (topic: {row.topic or '-'})"
        )
        return _to_event(row)

    def query(
        self,
        user_id: int,
        filters: Optional[EventFilters] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> EventQuery:
        return EventQuery(self.db, user_id, filters or EventFilters(), since, until)

    def prune(self, older_than: datetime) -> int:
        """Delete events created before `older_than`. Age is the only criterion."""
        try:
            deleted = self.db.query(BehaviorEventRecord).filter(
                BehaviorEventRecord.created_at < older_than
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"event prune failed: {e}") from e

        if deleted:
            logger.info(f"Pruned {deleted} behavior events older than {older_than:%Y-%m-%d}")
        return deleted
