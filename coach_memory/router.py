"""
Coach Memory API Router
=======================

Thin FastAPI surface over CoachMemoryService.
"""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session
import logging

from config import LearningPolicy, Settings
from database import get_db
from coach_memory.errors import ValidationError
from coach_memory.llm_client import GeminiClient
from coach_memory.nudges import ExerciseContext, NudgeResolution, NudgeSituation, NudgeType
from coach_memory.service import CoachMemoryService
from coach_memory.state import CoachPersonality, ContextMode
from coach_memory.summary_builder import SummaryCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/coach-memory", tags=["coach_memory"])

summary_cache = SummaryCache(Settings.SUMMARY_CACHE_TTL_SECONDS)
policy = LearningPolicy.from_env()
_llm_client = None


# ==============================================================================
# Request/Response Models
# ==============================================================================

class BehaviorEventBody(BaseModel):
    user_id: Any
    event_type: Any
    topic: Optional[Any] = None
    context_mode: Optional[Any] = None
    payload: Optional[Any] = None


class EventAckBody(BaseModel):
    recorded: bool
    event_id: Optional[int] = None
    error: Optional[str] = None


class AdaptRequestBody(BaseModel):
    message: str
    personality: CoachPersonality
    context_mode: ContextMode


class AdaptResponseBody(BaseModel):
    message: str


class InsightBody(BaseModel):
    id: str
    message: str
    category: str
    action: str
    action_label: str
    priority: int
    generated_at: str
    expires_at: str


class NudgeResolveBody(BaseModel):
    nudge_type: NudgeType
    resolution: NudgeResolution
    nudge_id: Optional[str] = None


class CheckInResponseBody(BaseModel):
    response: Any


# ==============================================================================
# Dependencies
# ==============================================================================

def get_llm_client():
    """Shared Gemini client, or None when no key is configured."""
    global _llm_client
    if _llm_client is None and Settings.GEMINI_API_KEY:
        _llm_client = GeminiClient(Settings.GEMINI_API_KEY, Settings.GEMINI_MODEL)
    return _llm_client


def get_service(db: Session = Depends(get_db)) -> CoachMemoryService:
    return CoachMemoryService(
        db,
        policy=policy,
        llm_client=get_llm_client(),
        cache=summary_cache,
    )


# ==============================================================================
# Endpoints
# ==============================================================================

@router.get("/users/{user_id}/summary")
def get_summary(user_id: int, service: CoachMemoryService = Depends(get_service)) -> Dict[str, Any]:
    return service.get_user_coach_summary(user_id).to_dict()


@router.get("/users/{user_id}/insights", response_model=List[InsightBody])
def get_insights(
    user_id: int,
    count: int = Query(10, ge=1, le=20),
    include_ai: bool = False,
    service: CoachMemoryService = Depends(get_service),
):
    insights = service.get_coach_insights(user_id, count=count, include_ai=include_ai)
    return [i.to_dict() for i in insights]


@router.post("/events", response_model=EventAckBody, status_code=202)
def record_event(body: BehaviorEventBody, service: CoachMemoryService = Depends(get_service)):
    """Fire-and-forget learning event. 422 only for malformed events."""
    try:
        ack = service.record_behavior_event(
            body.user_id, body.event_type, body.topic, body.context_mode, body.payload
        )
    except ValidationError as e:
        logger.warning(f"Rejected behavior event ({e.field}): {e}")
        raise HTTPException(status_code=422, detail={"field": e.field, "message": str(e)})
    return ack.to_dict()


@router.post("/adapt", response_model=AdaptResponseBody)
def adapt_message(body: AdaptRequestBody, service: CoachMemoryService = Depends(get_service)):
    return {"message": service.adapt_message(body.message, body.personality, body.context_mode)}


@router.get("/users/{user_id}/nudges")
def get_nudges(
    user_id: int,
    situation: NudgeSituation = NudgeSituation.HOME_VIEW,
    exercise_name: Optional[str] = None,
    previous_weight: Optional[float] = None,
    suggested_weight: Optional[float] = None,
    movement_pattern: Optional[str] = None,
    service: CoachMemoryService = Depends(get_service),
):
    exercise = None
    if exercise_name:
        exercise = ExerciseContext(exercise_name, previous_weight, suggested_weight, movement_pattern)
    nudge = service.get_nudge(user_id, situation, exercise)
    return {"nudges": [nudge.to_dict()] if nudge else []}


@router.post("/users/{user_id}/nudges/resolve", response_model=EventAckBody, status_code=202)
def resolve_nudge(user_id: int, body: NudgeResolveBody, service: CoachMemoryService = Depends(get_service)):
    try:
        ack = service.resolve_nudge(user_id, body.nudge_type, body.resolution, body.nudge_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": str(e)})
    return ack.to_dict()


@router.post("/users/{user_id}/checkin", response_model=EventAckBody, status_code=202)
def respond_to_checkin(user_id: int, body: CheckInResponseBody, service: CoachMemoryService = Depends(get_service)):
    """acted / dismiss / snooze_3_days / snooze_1_week / disable / enable"""
    try:
        ack = service.respond_to_checkin(user_id, body.response)
    except ValidationError as e:
        logger.warning(f"Rejected check-in response for user {user_id}: {e}")
        raise HTTPException(status_code=422, detail={"field": e.field, "message": str(e)})
    return ack.to_dict()
