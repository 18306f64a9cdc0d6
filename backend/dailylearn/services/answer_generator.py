"""
AI Answer Generator.

Produces and caches one generated answer per question:
- generate_answer: completion call with retry/backoff on transient errors
- generate_for_question: idempotent, returns the cached answer unless stale
- nightly_generation: 02:00 batch job filling missing and stale answers
"""

import time
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Optional, Dict, Any, List

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dailylearn.config import Settings, get_settings
from dailylearn.errors import ServiceError, not_found
from dailylearn.database import SessionLocal
from dailylearn.models.models import AiAnswer, Question
from dailylearn.services.background_tasks import (
    JobAcknowledgement,
    JobRunner,
    get_job_runner,
    run_with_session,
)
from dailylearn.utils.api_retry import (
    ANSWER_GENERATION_RETRY,
    RetryConfig,
    call_with_retry,
    classify_external_error,
)
from dailylearn.utils.dates import Clock, utcnow
from dailylearn.utils.openai_client import CompletionClient

logger = logging.getLogger(__name__)

MAX_TOKENS = 1000
TEMPERATURE = 0.7

# Above this share of failed questions the nightly run is a systemic problem
SYSTEMIC_FAILURE_RATE = 0.5


@dataclass
class GeneratedAnswer:
    answer: str
    token_count: int


@dataclass
class NightlySummary:
    total: int
    succeeded: int
    failed: int
    duration_ms: int


def build_system_prompt(topic_name: str, difficulty: str) -> str:
    return " ".join([
        "You are an expert developer educator.",
        f"Provide a clear, concise, and practical answer to the following {difficulty} level {topic_name} question.",
        "Include code examples where relevant.",
        "Format the answer in markdown.",
        "Keep it under 500 words.",
    ])


class AnswerGenerator:
    """Generates, caches and refreshes AI answers for questions."""

    def __init__(
        self,
        completion_client: Optional[CompletionClient] = None,
        settings: Optional[Settings] = None,
        retry_config: RetryConfig = ANSWER_GENERATION_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = utcnow,
        job_runner: Optional[JobRunner] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.completion_client = completion_client if completion_client is not None else CompletionClient()
        self.settings = settings if settings is not None else get_settings()
        self.retry_config = retry_config
        self.sleep = sleep
        self.clock = clock
        self.job_runner = job_runner if job_runner is not None else get_job_runner()
        self.session_factory = session_factory

    @property
    def model(self) -> str:
        return self.settings.openai_model

    # ========================================================================
    # Core generation
    # ========================================================================

    def generate_answer(self, question_text: str, topic_name: str, difficulty: str) -> GeneratedAnswer:
        """
        Call the completion API with exponential-backoff retry.

        Raises:
            ServiceError: TRANSIENT_EXTERNAL or PERMANENT_EXTERNAL once the
                attempts are exhausted or a non-retryable error occurs
        """
        system_prompt = build_system_prompt(topic_name, difficulty)

        def attempt():
            return self.completion_client.complete(
                system_prompt=system_prompt,
                user_prompt=question_text,
                model=self.model,
                max_tokens=MAX_TOKENS,
                temperature=TEMPERATURE,
            )

        try:
            completion = call_with_retry(
                attempt,
                config=self.retry_config,
                sleep=self.sleep,
                description=f"Answer generation ({topic_name}/{difficulty})",
            )
        except Exception as e:
            logger.error(
                f"Answer generation failed for {topic_name} question "
                f"'{question_text[:120]}': {e}"
            )
            raise ServiceError(classify_external_error(e), f"Answer generation failed: {e}") from e

        return GeneratedAnswer(answer=completion.text, token_count=completion.total_tokens)

    # ========================================================================
    # Per-question generation (idempotent)
    # ========================================================================

    def generate_for_question(self, db: Session, question_id: str) -> AiAnswer:
        """Return the fresh cached answer, or generate and store a new one."""
        existing = db.query(AiAnswer).filter(
            AiAnswer.question_id == question_id,
            AiAnswer.is_stale == False,  # noqa: E712
        ).first()

        if existing:
            logger.debug(f"Non-stale answer exists for question {question_id}; returning cached version")
            return existing

        question = db.query(Question).filter(Question.id == question_id).first()
        if not question:
            raise not_found(f'Question with id "{question_id}" not found')

        topic_name = question.topic.name if question.topic else "General"

        generated = self.generate_answer(question.text, topic_name, question.difficulty)
        saved = self._upsert_answer(db, question_id, generated)

        logger.info(
            f"AI answer generated for question {question_id} "
            f"(model={saved.model}, tokens={saved.token_count})"
        )
        return saved

    def _upsert_answer(self, db: Session, question_id: str, generated: GeneratedAnswer) -> AiAnswer:
        fields = {
            "answer": generated.answer,
            "generated_at": self.clock(),
            "model": self.model,
            "token_count": generated.token_count,
            "is_stale": False,
        }

        answer = db.query(AiAnswer).filter(AiAnswer.question_id == question_id).first()
        if answer is None:
            answer = AiAnswer(question_id=question_id, **fields)
            db.add(answer)
            try:
                db.commit()
            except IntegrityError:
                # Another run inserted the row first; overwrite theirs
                db.rollback()
                answer = db.query(AiAnswer).filter(AiAnswer.question_id == question_id).one()
                for key, value in fields.items():
                    setattr(answer, key, value)
                db.commit()
        else:
            for key, value in fields.items():
                setattr(answer, key, value)
            db.commit()

        db.refresh(answer)
        return answer

    # ========================================================================
    # Read / staleness
    # ========================================================================

    def find_by_question_id(self, db: Session, question_id: str) -> AiAnswer:
        answer = db.query(AiAnswer).filter(AiAnswer.question_id == question_id).first()
        if not answer:
            raise not_found(f'AI answer for question "{question_id}" not found')
        return answer

    def mark_as_stale(self, db: Session, question_id: str) -> bool:
        """Flag the answer for regeneration. Returns False if there is none."""
        updated = db.query(AiAnswer).filter(
            AiAnswer.question_id == question_id
        ).update({AiAnswer.is_stale: True}, synchronize_session=False)
        db.commit()

        if updated == 0:
            logger.warning(f"Attempted to mark answer as stale but none exists for question {question_id}")
            return False

        logger.info(f"AI answer marked as stale for question {question_id}")
        return True

    # ========================================================================
    # Nightly batch generation
    # ========================================================================

    def _questions_needing_answers(self, db: Session) -> List[str]:
        rows = db.query(Question.id).outerjoin(
            AiAnswer, AiAnswer.question_id == Question.id
        ).filter(
            Question.is_active == True,  # noqa: E712
            or_(AiAnswer.id.is_(None), AiAnswer.is_stale == True),  # noqa: E712
        ).order_by(Question.created_at, Question.id).all()
        return [row.id for row in rows]

    def nightly_generation(self, db: Session) -> NightlySummary:
        """
        Generate answers for every active question without a fresh one.

        Questions are processed in batches of settings.ai_batch_size with a
        pause of settings.ai_batch_delay_seconds between batches. A failed
        question is counted and skipped.
        """
        start = time.perf_counter()
        logger.info("Starting nightly AI answer generation")

        question_ids = self._questions_needing_answers(db)
        total = len(question_ids)

        if total == 0:
            logger.info("Nightly generation: no questions require answers")
            return NightlySummary(total=0, succeeded=0, failed=0, duration_ms=0)

        logger.info(f"Nightly generation: {total} question(s) to process")

        batch_size = self.settings.ai_batch_size
        succeeded = 0
        failed = 0

        for i in range(0, total, batch_size):
            batch = question_ids[i:i + batch_size]

            for question_id in batch:
                try:
                    self.generate_for_question(db, question_id)
                    succeeded += 1
                except Exception as e:
                    db.rollback()
                    failed += 1
                    logger.error(f"Failed to generate answer for question {question_id} during nightly run: {e}")

            # Rate-limit courtesy pause, skipped after the last batch
            if i + batch_size < total:
                self.sleep(self.settings.ai_batch_delay_seconds)

        summary = NightlySummary(
            total=total,
            succeeded=succeeded,
            failed=failed,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

        failure_rate = failed / total
        if failure_rate > SYSTEMIC_FAILURE_RATE:
            logger.error(
                f"CRITICAL: Nightly generation completed with {failure_rate:.0%} failure rate: {asdict(summary)}"
            )
        else:
            logger.info(f"Nightly AI answer generation completed: {asdict(summary)}")

        return summary

    def trigger_batch_generation(self) -> JobAcknowledgement:
        """Start the nightly generation in the background and return immediately."""
        logger.info("Manual batch generation triggered")
        future = self.job_runner.submit(
            "answer_generation", run_with_session, self.nightly_generation, self.session_factory
        )
        return JobAcknowledgement(message="Batch generation started", job_id=future.job_id, future=future)

    # ========================================================================
    # Statistics
    # ========================================================================

    def get_generation_stats(self, db: Session) -> Dict[str, Any]:
        total_answers = db.query(func.count(AiAnswer.id)).scalar() or 0
        stale_answers = db.query(func.count(AiAnswer.id)).filter(
            AiAnswer.is_stale == True  # noqa: E712
        ).scalar() or 0

        questions_without_answers = db.query(func.count(Question.id)).outerjoin(
            AiAnswer, AiAnswer.question_id == Question.id
        ).filter(
            Question.is_active == True,  # noqa: E712
            AiAnswer.id.is_(None),
        ).scalar() or 0

        last_generated: Optional[datetime] = db.query(func.max(AiAnswer.generated_at)).scalar()

        return {
            "total_answers": total_answers,
            "stale_answers": stale_answers,
            "questions_without_answers": questions_without_answers,
            "last_generation_run": last_generated,
        }


# Singleton instance
_answer_generator: Optional[AnswerGenerator] = None


def get_answer_generator() -> AnswerGenerator:
    """Get the singleton AnswerGenerator instance."""
    global _answer_generator
    if _answer_generator is None:
        _answer_generator = AnswerGenerator()
    return _answer_generator
