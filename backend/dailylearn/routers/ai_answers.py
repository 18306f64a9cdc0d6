"""
AI Answers API Router.
Read, (re)generate and invalidate generated answers.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dailylearn.database import get_db
from dailylearn.dependencies.auth import require_admin
from dailylearn.errors import not_found
from dailylearn.services.answer_generator import get_answer_generator

router = APIRouter(prefix="/api/v1/ai-answers", tags=["ai-answers"])


# ============================================================================
# Request/Response Models
# ============================================================================

class AiAnswerResponse(BaseModel):
    id: str
    question_id: str
    answer: str
    generated_at: datetime
    model: str
    token_count: Optional[int]
    is_stale: bool

    class Config:
        from_attributes = True


class GenerationStatsResponse(BaseModel):
    total_answers: int
    stale_answers: int
    questions_without_answers: int
    last_generation_run: Optional[datetime]


class BatchTriggerResponse(BaseModel):
    message: str
    job_id: str


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/question/{question_id}", response_model=AiAnswerResponse)
def get_answer_for_question(question_id: str, db: Session = Depends(get_db)):
    return get_answer_generator().find_by_question_id(db, question_id)


@router.post(
    "/generate/{question_id}",
    response_model=AiAnswerResponse,
    dependencies=[Depends(require_admin)],
)
def generate_answer(question_id: str, db: Session = Depends(get_db)):
    """Generate an answer now. Returns the cached one when it is not stale."""
    return get_answer_generator().generate_for_question(db, question_id)


@router.post(
    "/generate-batch",
    response_model=BatchTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_admin)],
)
def generate_batch():
    """Start the nightly generation run in the background."""
    ack = get_answer_generator().trigger_batch_generation()
    return BatchTriggerResponse(message=ack.message, job_id=ack.job_id)


@router.post("/stale/{question_id}", dependencies=[Depends(require_admin)])
def mark_answer_stale(question_id: str, db: Session = Depends(get_db)):
    if not get_answer_generator().mark_as_stale(db, question_id):
        raise not_found(f'AI answer for question "{question_id}" not found')
    return {"success": True}


@router.get("/stats", response_model=GenerationStatsResponse, dependencies=[Depends(require_admin)])
def get_generation_stats(db: Session = Depends(get_db)):
    return get_answer_generator().get_generation_stats(db)
