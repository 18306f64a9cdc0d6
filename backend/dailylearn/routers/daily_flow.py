"""
Daily Flow API Router.
Today's feed, mark-as-read (streaks), per-day stats and the manual trigger.
"""

from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dailylearn.database import get_db
from dailylearn.dependencies.auth import get_current_user_id, require_admin
from dailylearn.services.daily_flow import get_daily_flow_service

router = APIRouter(prefix="/api/v1/daily", tags=["daily"])


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class FeedTopic(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    icon: Optional[str] = None


class FeedQuestion(BaseModel):
    text: Optional[str] = None
    difficulty: Optional[str] = None
    tags: List[str] = []


class FeedAnswer(BaseModel):
    content: str = ""
    generated_at: Optional[datetime] = None


class DailyFeedItem(BaseModel):
    daily_selection_id: str
    topic: FeedTopic
    question: FeedQuestion
    answer: FeedAnswer


class MarkReadRequest(BaseModel):
    daily_selection_id: str


class StreakResponse(BaseModel):
    streak_count: int
    last_active_date: date
    changed: bool


class TopicBreakdown(BaseModel):
    topic_name: str
    question_text: str
    notifications_sent: int


class DailyStatsResponse(BaseModel):
    date: str
    topics_with_content: int
    total_notifications_sent: int
    breakdown: List[TopicBreakdown]


class TriggerResponse(BaseModel):
    message: str
    job_id: str


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.get("/feed", response_model=List[DailyFeedItem])
def get_daily_feed(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Today's question and answer for each topic the caller follows."""
    return get_daily_flow_service().get_daily_feed(db, user_id)


@router.post("/mark-read", response_model=StreakResponse)
def mark_as_read(
    request: MarkReadRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    update = get_daily_flow_service().mark_as_read(db, user_id, request.daily_selection_id)
    return StreakResponse(
        streak_count=update.count,
        last_active_date=update.last_active_date,
        changed=update.changed,
    )


@router.get("/stats", response_model=DailyStatsResponse, dependencies=[Depends(require_admin)])
def get_daily_stats(
    date: Optional[str] = Query(None, description="Day in YYYY-MM-DD format, defaults to today"),
    db: Session = Depends(get_db),
):
    return get_daily_flow_service().get_daily_stats(db, date)


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_admin)],
)
def trigger_daily_flow():
    """
    Run the daily flow now.

    Returns immediately; check /stats for the outcome.
    """
    ack = get_daily_flow_service().trigger_daily_flow()
    return TriggerResponse(message=ack.message, job_id=ack.job_id)
