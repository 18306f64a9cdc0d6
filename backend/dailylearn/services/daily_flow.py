"""
Daily Flow Orchestrator.

Runs the 05:00 pipeline and owns the user-facing daily read paths:
- Claims one question per active topic (least recently used first)
- Verifies an AI answer exists for it
- Creates the DailySelection record once per (date, topic)
- Sends push notifications to subscribed users
- Maintains user streaks (mark-as-read, midnight reset)

Each topic is processed on its own; one topic failing never stops the rest.
Concurrent runs (cron + manual trigger) are safe because the question claim
is a compare-and-swap update and the selection insert ignores conflicts.
"""

import time
import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Callable, Optional, List, Dict, Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from dailylearn.database import SessionLocal
from dailylearn.errors import ErrorKind, ServiceError, not_found, validation_error
from dailylearn.models.models import (
    AiAnswer,
    DailySelection,
    Question,
    Topic,
    User,
    generate_uuid,
    user_topic_subscriptions,
)
from dailylearn.services.background_tasks import (
    JobAcknowledgement,
    JobRunner,
    get_job_runner,
    run_with_session,
)
from dailylearn.services.catalog import TopicCatalog, TopicSummary
from dailylearn.services.notification_dispatcher import (
    DispatchInterrupted,
    NotificationDispatcher,
    NotificationPayload,
    get_notification_dispatcher,
)
from dailylearn.utils.dates import Clock, days_ago, days_between, is_date_string, today_string, utcnow

logger = logging.getLogger(__name__)

# Notification body preview length
PREVIEW_LENGTH = 100

# Compare-and-swap retries before giving up on a contended row
MAX_CLAIM_ATTEMPTS = 5
MAX_STREAK_ATTEMPTS = 3

# Streaks idle for longer than this are zeroed at midnight
STALE_STREAK_DAYS = 2


@dataclass
class FlowSummary:
    """Logged once at the end of every daily flow run."""
    topics_processed: int = 0
    questions_selected: int = 0
    notifications_sent: int = 0
    errors: int = 0
    duration_ms: int = 0


@dataclass
class ClaimedQuestion:
    id: str
    text: str
    previous_last_used_date: Optional[datetime]
    usage_count: int


@dataclass
class StreakUpdate:
    count: int
    last_active_date: date
    changed: bool


def build_payload(topic: TopicSummary, question_text: str, daily_selection_id: str) -> NotificationPayload:
    preview = question_text
    if len(question_text) > PREVIEW_LENGTH:
        preview = question_text[:PREVIEW_LENGTH] + "..."

    return NotificationPayload(
        title=f"Daily {topic.name} Question",
        body=preview,
        data={"dailySelectionId": daily_selection_id, "topicId": topic.id},
    )


class DailyFlowService:
    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        catalog: Optional[TopicCatalog] = None,
        job_runner: Optional[JobRunner] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = utcnow,
    ):
        self.dispatcher = dispatcher if dispatcher is not None else get_notification_dispatcher()
        self.catalog = catalog if catalog is not None else TopicCatalog()
        self.job_runner = job_runner if job_runner is not None else get_job_runner()
        self.session_factory = session_factory
        self.clock = clock

    def today(self) -> str:
        return today_string(self.clock)

    # ========================================================================
    # Daily flow
    # ========================================================================

    def run_daily_flow(self, db: Session) -> FlowSummary:
        """
        Select, record and announce today's question for every active topic.

        Raises only if the active topics cannot be loaded; everything that
        goes wrong inside a topic is logged and counted in the summary.
        """
        start = time.perf_counter()
        today = self.today()
        summary = FlowSummary()

        logger.info(f"Starting daily flow orchestration for {today}")

        try:
            topics = self.catalog.list_active_topics(db)
        except Exception as e:
            logger.critical(f"Critical error in daily flow orchestration: could not load topics: {e}")
            raise

        logger.info(f"Active topics retrieved: {len(topics)}")

        if not topics:
            logger.warning("No active topics found, skipping daily flow")
            summary.duration_ms = int((time.perf_counter() - start) * 1000)
            return summary

        for topic in topics:
            try:
                self._process_topic(db, topic, today, summary)
            except Exception as e:
                db.rollback()
                summary.errors += 1
                logger.exception(f"Error processing topic {topic.name} ({topic.id}): {e}")

        summary.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(f"Daily flow orchestration completed: {asdict(summary)}")
        return summary

    def _process_topic(self, db: Session, topic: TopicSummary, today: str, summary: FlowSummary) -> None:
        claimed = self.claim_question(db, topic.id)
        if claimed is None:
            logger.warning(f"No active questions available for topic {topic.name} ({topic.id})")
            summary.errors += 1
            return

        summary.questions_selected += 1
        logger.info(
            f"Question {claimed.id} selected for topic {topic.name} "
            f"(previously used {claimed.previous_last_used_date or 'never'})"
        )

        answer_id = db.query(AiAnswer.id).filter(AiAnswer.question_id == claimed.id).scalar()
        if answer_id is None:
            logger.warning(
                f"AI answer not found for question {claimed.id} ({topic.name}); "
                "nightly pre-generation may have missed it"
            )

        selection = self.upsert_selection(db, today, topic.id, claimed.id, answer_id)
        logger.info(f"DailySelection {selection.id} ensured for {today}/{topic.name}")

        question_text = claimed.text
        if selection.question_id != claimed.id:
            # Rerun for a day that already has a selection: announce that question
            question_text = db.query(Question.text).filter(
                Question.id == selection.question_id
            ).scalar() or claimed.text

        payload = build_payload(topic, question_text, selection.id)
        sent = 0
        try:
            result = self.dispatcher.send_daily_notifications(db, topic.id, selection.id, payload)
            sent = result.sent
        except DispatchInterrupted as e:
            sent = e.result.sent
            summary.errors += 1
            logger.error(f"Notifications for topic {topic.name} stopped after {sent} sent: {e}")
        except Exception as e:
            db.rollback()
            summary.errors += 1
            logger.error(f"Failed to send notifications for topic {topic.name}: {e}")

        if sent:
            db.query(DailySelection).filter(DailySelection.id == selection.id).update(
                {DailySelection.notifications_sent: DailySelection.notifications_sent + sent},
                synchronize_session=False,
            )
            db.commit()

        summary.notifications_sent += sent
        summary.topics_processed += 1
        logger.info(f"Topic {topic.name} processing complete: {sent} notification(s) sent")

    def claim_question(self, db: Session, topic_id: str) -> Optional[ClaimedQuestion]:
        """
        Atomically take the least recently used active question of a topic.

        The update only applies if usage_count is still the value we read,
        so two concurrent runs can never both claim the same question.
        """
        for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
            candidate = db.query(
                Question.id, Question.text, Question.last_used_date, Question.usage_count
            ).filter(
                Question.topic_id == topic_id,
                Question.is_active == True,  # noqa: E712
            ).order_by(
                Question.last_used_date.asc().nulls_first(),
                Question.created_at.asc(),
                Question.id.asc(),
            ).first()

            if candidate is None:
                return None

            now = self.clock()
            if candidate.last_used_date is not None and candidate.last_used_date > now:
                now = candidate.last_used_date

            claimed = db.query(Question).filter(
                Question.id == candidate.id,
                Question.usage_count == candidate.usage_count,
                Question.is_active == True,  # noqa: E712
            ).update(
                {
                    Question.last_used_date: now,
                    Question.usage_count: Question.usage_count + 1,
                },
                synchronize_session=False,
            )
            db.commit()

            if claimed == 1:
                return ClaimedQuestion(
                    id=candidate.id,
                    text=candidate.text,
                    previous_last_used_date=candidate.last_used_date,
                    usage_count=candidate.usage_count + 1,
                )

            logger.info(f"Question {candidate.id} was claimed concurrently (attempt {attempt}), retrying")

        raise ServiceError(ErrorKind.CONFLICT, f"Could not claim a question for topic {topic_id}")

    def upsert_selection(
        self,
        db: Session,
        day: str,
        topic_id: str,
        question_id: str,
        answer_id: Optional[str],
    ) -> DailySelection:
        """Insert today's selection unless one exists, then read it back."""
        now = self.clock()
        values = {
            "id": generate_uuid(),
            "date": day,
            "topic_id": topic_id,
            "question_id": question_id,
            "ai_answer_id": answer_id,
            "notifications_sent": 0,
            "created_at": now,
            "updated_at": now,
        }

        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(DailySelection).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(DailySelection).values(**values)
        else:
            raise ServiceError(ErrorKind.INFRASTRUCTURE, f"Unsupported database dialect: {dialect}")

        db.execute(stmt.on_conflict_do_nothing(index_elements=["date", "topic_id"]))
        db.commit()

        selection = db.query(DailySelection).filter(
            DailySelection.date == day,
            DailySelection.topic_id == topic_id,
        ).first()
        if selection is None:
            raise ServiceError(
                ErrorKind.INFRASTRUCTURE,
                f"Failed to retrieve daily selection after upsert ({day}/{topic_id})",
            )
        return selection

    def trigger_daily_flow(self) -> JobAcknowledgement:
        """Start the daily flow in the background and return immediately."""
        logger.info("Manual daily flow triggered")
        future = self.job_runner.submit(
            "daily_flow", run_with_session, self.run_daily_flow, self.session_factory
        )
        return JobAcknowledgement(message="Daily flow triggered", job_id=future.job_id, future=future)

    # ========================================================================
    # Daily feed
    # ========================================================================

    def get_daily_feed(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        """Today's question and answer for each of the user's subscribed topics."""
        today = self.today()

        user = db.query(User.id).filter(User.id == user_id).first()
        if not user:
            logger.warning(f"User {user_id} not found for daily feed")
            raise not_found("User not found")

        topic_ids = [
            row.topic_id for row in db.query(user_topic_subscriptions.c.topic_id).filter(
                user_topic_subscriptions.c.user_id == user_id
            ).all()
        ]
        if not topic_ids:
            logger.info(f"User {user_id} has no subscribed topics, returning empty feed")
            return []

        rows = db.query(DailySelection, Question, AiAnswer, Topic).outerjoin(
            Question, Question.id == DailySelection.question_id
        ).outerjoin(
            AiAnswer, AiAnswer.question_id == DailySelection.question_id
        ).outerjoin(
            Topic, Topic.id == DailySelection.topic_id
        ).filter(
            DailySelection.date == today,
            DailySelection.topic_id.in_(topic_ids),
        ).order_by(Topic.sort_order, Topic.name).all()

        feed = []
        for selection, question, answer, topic in rows:
            feed.append({
                "daily_selection_id": selection.id,
                "topic": {
                    "name": topic.name if topic else None,
                    "slug": topic.slug if topic else None,
                    "icon": topic.icon if topic else None,
                },
                "question": {
                    "text": question.text if question else None,
                    "difficulty": question.difficulty if question else None,
                    "tags": (question.tags or []) if question else [],
                },
                "answer": {
                    "content": answer.answer if answer else "",
                    "generated_at": answer.generated_at if answer else None,
                },
            })

        logger.info(f"Daily feed for user {user_id}: {len(feed)} item(s)")
        return feed

    # ========================================================================
    # Streaks
    # ========================================================================

    def mark_as_read(self, db: Session, user_id: str, daily_selection_id: str) -> StreakUpdate:
        """
        Record that the user read today's content and update their streak.

        Same day -> unchanged, yesterday -> +1, anything else -> 1. The write
        is guarded on the streak values we read so concurrent calls cannot
        double count.
        """
        selection = db.query(DailySelection.id).filter(DailySelection.id == daily_selection_id).first()
        if not selection:
            logger.warning(f"Daily selection {daily_selection_id} not found")
            raise not_found("Daily selection not found")

        for attempt in range(1, MAX_STREAK_ATTEMPTS + 1):
            user = db.query(User.streak_count, User.streak_last_active_date).filter(
                User.id == user_id
            ).first()
            if not user:
                logger.warning(f"User {user_id} not found for streak update")
                raise not_found("User not found")

            today = self.clock().date()
            last_active = user.streak_last_active_date
            current = user.streak_count or 0

            if last_active == today:
                logger.info(f"User {user_id} already active today, streak stays {current}")
                return StreakUpdate(count=current, last_active_date=today, changed=False)

            if last_active is not None and days_between(last_active, today) == 1:
                new_count = current + 1
            else:
                new_count = 1

            updated = db.query(User).filter(
                User.id == user_id,
                User.streak_count == user.streak_count,
                User.streak_last_active_date.is_not_distinct_from(last_active),
            ).update(
                {User.streak_count: new_count, User.streak_last_active_date: today},
                synchronize_session=False,
            )
            db.commit()

            if updated == 1:
                logger.info(f"User {user_id} streak updated: {current} -> {new_count} (last active {last_active})")
                return StreakUpdate(count=new_count, last_active_date=today, changed=True)

            logger.info(f"Streak for user {user_id} changed concurrently (attempt {attempt}), retrying")

        raise ServiceError(ErrorKind.CONFLICT, f"Could not update streak for user {user_id}")

    def reset_stale_streaks(self, db: Session) -> int:
        """Zero streaks of users inactive for more than two days."""
        logger.info("Starting stale streak reset")
        cutoff = days_ago(self.clock, STALE_STREAK_DAYS)

        reset = db.query(User).filter(
            User.streak_last_active_date < cutoff,
            User.streak_count > 0,
        ).update({User.streak_count: 0}, synchronize_session=False)
        db.commit()

        logger.info(f"Stale streak reset completed: {reset} user(s) reset")
        return reset

    # ========================================================================
    # Daily stats
    # ========================================================================

    def get_daily_stats(self, db: Session, day: Optional[str] = None) -> Dict[str, Any]:
        target_date = day or self.today()
        if not is_date_string(target_date):
            raise validation_error("date must be in YYYY-MM-DD format")

        rows = db.query(DailySelection, Question.text, Topic.name).outerjoin(
            Question, Question.id == DailySelection.question_id
        ).outerjoin(
            Topic, Topic.id == DailySelection.topic_id
        ).filter(
            DailySelection.date == target_date
        ).order_by(Topic.sort_order, Topic.name).all()

        breakdown = [
            {
                "topic_name": topic_name or "Unknown",
                "question_text": question_text or "No question",
                "notifications_sent": selection.notifications_sent or 0,
            }
            for selection, question_text, topic_name in rows
        ]

        stats = {
            "date": target_date,
            "topics_with_content": len(breakdown),
            "total_notifications_sent": sum(item["notifications_sent"] for item in breakdown),
            "breakdown": breakdown,
        }

        logger.info(
            f"Daily stats for {target_date}: {stats['topics_with_content']} topic(s), "
            f"{stats['total_notifications_sent']} notification(s)"
        )
        return stats


# Singleton instance
_daily_flow_service: Optional[DailyFlowService] = None


def get_daily_flow_service() -> DailyFlowService:
    """Get the singleton DailyFlowService instance."""
    global _daily_flow_service
    if _daily_flow_service is None:
        _daily_flow_service = DailyFlowService()
    return _daily_flow_service
