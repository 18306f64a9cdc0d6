"""
Push Notifications API Router.
Token registration, delivery history, per-selection stats and admin tools.
"""

import json
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dailylearn.database import get_db
from dailylearn.dependencies.auth import get_current_user_id, require_admin
from dailylearn.services.notification_dispatcher import (
    DEFAULT_LIMIT,
    DEFAULT_PAGE,
    get_notification_dispatcher,
)
from dailylearn.services.push_gateway import get_push_gateway

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class PushSubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionRequest(BaseModel):
    endpoint: str
    keys: PushSubscriptionKeys


class NotificationLogResponse(BaseModel):
    id: str
    daily_selection_id: Optional[str]
    status: str
    error: Optional[str]
    sent_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class PaginationMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class NotificationHistoryResponse(BaseModel):
    data: List[NotificationLogResponse]
    meta: PaginationMeta


class DeliveryStatsResponse(BaseModel):
    total: int
    sent: int
    failed: int
    delivered: int
    pending: int


class TestNotificationRequest(BaseModel):
    user_id: str
    title: str = Field("Test Notification", min_length=1)
    body: str = Field("This is a test notification from DailyLearn!", min_length=1)


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.get("/vapid-public-key")
async def get_vapid_public_key():
    """Get the VAPID public key for push subscription."""
    public_key = get_push_gateway().get_vapid_public_key()

    if not public_key:
        raise HTTPException(
            status_code=503,
            detail="Push notifications not configured"
        )

    return {"vapid_public_key": public_key}


@router.put("/token")
def register_push_token(
    subscription: PushSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Register (or replace) the caller's push subscription."""
    token = json.dumps(subscription.model_dump(), separators=(",", ":"))
    get_notification_dispatcher().register_token(db, user_id, token)
    return {"success": True}


@router.get("/history", response_model=NotificationHistoryResponse)
def get_notification_history(
    page: int = Query(DEFAULT_PAGE),
    limit: int = Query(DEFAULT_LIMIT),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Caller's notifications, most recent first. Out-of-range paging is clamped."""
    return get_notification_dispatcher().get_notification_history(db, user_id, page, limit)


@router.get(
    "/stats/{selection_id}",
    response_model=DeliveryStatsResponse,
    dependencies=[Depends(require_admin)],
)
def get_delivery_stats(selection_id: str, db: Session = Depends(get_db)):
    return get_notification_dispatcher().get_delivery_stats(db, selection_id)


@router.post("/test", response_model=NotificationLogResponse, dependencies=[Depends(require_admin)])
def send_test_notification(request: TestNotificationRequest, db: Session = Depends(get_db)):
    """Send an ad-hoc notification to one user's stored token."""
    return get_notification_dispatcher().send_test_notification(
        db, request.user_id, request.title, request.body
    )


@router.post("/cleanup", dependencies=[Depends(require_admin)])
def cleanup_invalid_tokens(db: Session = Depends(get_db)):
    cleaned = get_notification_dispatcher().cleanup_invalid_tokens(db)
    return {"cleaned": cleaned}
