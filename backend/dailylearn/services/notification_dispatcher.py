"""
Notification Dispatcher.

Delivers push payloads to one or many users through the messaging gateway
and keeps an auditable NotificationLog row for every attempt. Tokens the
gateway reports as invalid are flagged with INVALID_TOKEN_SENTINEL and
cleared by the 03:00 cleanup job.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from dailylearn.config import get_settings
from dailylearn.errors import not_found, validation_error
from dailylearn.models.models import (
    INVALID_TOKEN_SENTINEL,
    NotificationLog,
    NotificationStatus,
    User,
    generate_uuid,
    user_topic_subscriptions,
)
from dailylearn.services.push_gateway import (
    INVALID_TOKEN_CODES,
    PushDeliveryError,
    get_push_gateway,
    parse_subscription,
)
from dailylearn.utils.dates import Clock, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass
class NotificationPayload:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


@dataclass
class Recipient:
    user_id: str
    token: str


@dataclass
class BatchSendResult:
    sent: int = 0
    failed: int = 0


class DispatchInterrupted(Exception):
    """A multi-batch send stopped early. ``result`` holds the committed totals."""

    def __init__(self, result: BatchSendResult, cause: Exception):
        super().__init__(f"Dispatch interrupted after sent={result.sent}, failed={result.failed}: {cause}")
        self.result = result


def format_error(code: Optional[str], message: Optional[str]) -> str:
    return f"{code or 'unknown'}: {message or 'Unknown error'}"


class NotificationDispatcher:
    """Batched push delivery with per-recipient outcome logging."""

    def __init__(self, gateway=None, batch_limit: Optional[int] = None, clock: Clock = utcnow):
        self.gateway = gateway if gateway is not None else get_push_gateway()
        self.batch_limit = max(1, batch_limit if batch_limit is not None else get_settings().push_batch_limit)
        self.clock = clock

    # ========================================================================
    # Single recipient
    # ========================================================================

    def send_to_one(
        self,
        db: Session,
        user_id: str,
        token: str,
        payload: NotificationPayload,
        daily_selection_id: Optional[str] = None,
    ) -> NotificationLog:
        """
        Send one notification and persist the outcome.

        Delivery failures are logged and returned as a failed NotificationLog;
        only errors building the request (e.g. gateway not configured) raise.
        """
        log_entry = NotificationLog(
            user_id=user_id,
            daily_selection_id=daily_selection_id,
            status=NotificationStatus.PENDING.value,
        )

        try:
            message_id = self.gateway.send_one(token, payload.title, payload.body, payload.data)
        except PushDeliveryError as e:
            log_entry.status = NotificationStatus.FAILED.value
            log_entry.error = format_error(e.code, e.message)
            log_entry.sent_at = self.clock()
            db.add(log_entry)

            if e.code in INVALID_TOKEN_CODES:
                logger.warning(f"Invalid push token for user {user_id} ({e.code}), marking for cleanup")
                self._mark_tokens_invalid(db, [user_id])
            else:
                logger.error(f"Failed to send notification to user {user_id}: {log_entry.error}")

            db.commit()
            db.refresh(log_entry)
            return log_entry

        log_entry.status = NotificationStatus.SENT.value
        log_entry.sent_at = self.clock()
        db.add(log_entry)
        db.commit()
        db.refresh(log_entry)

        logger.info(f"Notification sent to user {user_id} (message_id={message_id or '-'})")
        return log_entry

    # ========================================================================
    # Many recipients (batched)
    # ========================================================================

    def send_to_many(
        self,
        db: Session,
        recipients: List[Recipient],
        payload: NotificationPayload,
        daily_selection_id: str,
    ) -> BatchSendResult:
        """
        Send to every recipient in batches of at most ``batch_limit``.

        One multicast call per batch, one log row per recipient. A batch whose
        multicast call raises is logged entirely as batch_error failures and
        the remaining batches still run.

        Raises:
            DispatchInterrupted: if persisting a batch fails; carries the
                totals of the batches already committed
        """
        total_batches = math.ceil(len(recipients) / self.batch_limit)
        result = BatchSendResult()

        logger.info(
            f"Starting batch notification send: {len(recipients)} users, "
            f"{total_batches} batch(es), selection {daily_selection_id}"
        )

        for batch_index in range(total_batches):
            start = batch_index * self.batch_limit
            batch = recipients[start:start + self.batch_limit]
            batch_number = batch_index + 1

            try:
                sent, failed = self._send_batch(
                    db, batch, payload, daily_selection_id, batch_number, total_batches
                )
            except Exception as e:
                db.rollback()
                logger.error(
                    f"Batch {batch_number}/{total_batches} could not be recorded, stopping: {e} "
                    f"(already committed: sent={result.sent}, failed={result.failed})"
                )
                raise DispatchInterrupted(result, e) from e

            result.sent += sent
            result.failed += failed

        logger.info(
            f"All batches completed for selection {daily_selection_id}: "
            f"sent={result.sent}, failed={result.failed}"
        )
        return result

    def _send_batch(
        self,
        db: Session,
        batch: List[Recipient],
        payload: NotificationPayload,
        daily_selection_id: str,
        batch_number: int,
        total_batches: int,
    ) -> Tuple[int, int]:
        """Send and record one batch. Returns (sent, failed) once committed."""
        try:
            responses = self.gateway.send_multicast(
                [r.token for r in batch], payload.title, payload.body, payload.data
            )
            if len(responses) != len(batch):
                raise RuntimeError(
                    f"Gateway returned {len(responses)} results for {len(batch)} tokens"
                )
        except Exception as e:
            logger.error(f"Entire batch {batch_number}/{total_batches} failed: {e}")
            now = self.clock()
            self._insert_logs(db, [
                self._log_row(r.user_id, daily_selection_id, NotificationStatus.FAILED,
                              now, error=f"batch_error: {e}")
                for r in batch
            ])
            db.commit()
            return 0, len(batch)

        now = self.clock()
        rows = []
        invalid_user_ids = []
        sent = 0

        for recipient, response in zip(batch, responses):
            if response.success:
                sent += 1
                rows.append(self._log_row(
                    recipient.user_id, daily_selection_id, NotificationStatus.SENT, now
                ))
                continue

            if response.error_code in INVALID_TOKEN_CODES:
                invalid_user_ids.append(recipient.user_id)
            rows.append(self._log_row(
                recipient.user_id, daily_selection_id, NotificationStatus.FAILED, now,
                error=format_error(response.error_code, response.error_message),
            ))

        self._insert_logs(db, rows)
        if invalid_user_ids:
            self._mark_tokens_invalid(db, invalid_user_ids)
            logger.warning(
                f"Invalid tokens flagged in batch {batch_number}: {len(invalid_user_ids)}"
            )
        db.commit()

        failed = len(batch) - sent
        logger.info(
            f"Batch {batch_number}/{total_batches} completed: sent={sent}, failed={failed}"
        )
        return sent, failed

    # ========================================================================
    # Daily notifications
    # ========================================================================

    def get_eligible_recipients(self, db: Session, topic_id: str) -> List[Recipient]:
        """Active users subscribed to the topic with a usable token."""
        rows = db.query(User.id, User.notification_token).join(
            user_topic_subscriptions, user_topic_subscriptions.c.user_id == User.id
        ).filter(
            user_topic_subscriptions.c.topic_id == topic_id,
            User.is_active == True,  # noqa: E712
            User.notification_token.isnot(None),
            User.notification_token != INVALID_TOKEN_SENTINEL,
        ).order_by(User.id).all()

        return [Recipient(user_id=row.id, token=row.notification_token) for row in rows]

    def send_daily_notifications(
        self,
        db: Session,
        topic_id: str,
        daily_selection_id: str,
        payload: NotificationPayload,
    ) -> BatchSendResult:
        logger.info(f"Starting daily notification dispatch for topic {topic_id}")

        recipients = self.get_eligible_recipients(db, topic_id)
        if not recipients:
            logger.info(f"No eligible users found for daily notification (topic {topic_id})")
            return BatchSendResult()

        logger.info(f"Eligible users for topic {topic_id}: {len(recipients)}")
        result = self.send_to_many(db, recipients, payload, daily_selection_id)

        logger.info(
            f"Daily notification dispatch completed for topic {topic_id}: "
            f"sent={result.sent}, failed={result.failed}"
        )
        return result

    def send_test_notification(self, db: Session, user_id: str, title: str, body: str) -> NotificationLog:
        """Ad-hoc message to one user's stored token (not tied to a selection)."""
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise not_found("User not found")
        if not user.notification_token or user.notification_token == INVALID_TOKEN_SENTINEL:
            raise validation_error("User has no valid notification token")

        return self.send_to_one(db, user.id, user.notification_token, NotificationPayload(title=title, body=body))

    # ========================================================================
    # Token registration
    # ========================================================================

    def register_token(self, db: Session, user_id: str, token: str) -> None:
        """Store a browser PushSubscription (JSON) as the user's token."""
        try:
            parse_subscription(token)
        except PushDeliveryError as e:
            raise validation_error(e.message) from e

        updated = db.query(User).filter(User.id == user_id).update(
            {User.notification_token: token}, synchronize_session=False
        )
        if updated == 0:
            db.rollback()
            raise not_found("User not found")
        db.commit()
        logger.info(f"Push token registered for user {user_id}")

    # ========================================================================
    # Token cleanup
    # ========================================================================

    def cleanup_invalid_tokens(self, db: Session) -> int:
        """Clear flagged tokens so the client can register a fresh one."""
        cleaned = db.query(User).filter(
            User.notification_token == INVALID_TOKEN_SENTINEL
        ).update({User.notification_token: None}, synchronize_session=False)
        db.commit()

        if cleaned:
            logger.info(f"Invalid push tokens cleaned up: {cleaned}")
        return cleaned

    # ========================================================================
    # Read paths
    # ========================================================================

    def get_delivery_stats(self, db: Session, daily_selection_id: str) -> Dict[str, int]:
        rows = db.query(NotificationLog.status, func.count(NotificationLog.id)).filter(
            NotificationLog.daily_selection_id == daily_selection_id
        ).group_by(NotificationLog.status).all()

        stats = {"total": 0, "sent": 0, "failed": 0, "delivered": 0, "pending": 0}
        for status, count in rows:
            stats["total"] += count
            if status in stats:
                stats[status] = count

        logger.info(f"Delivery stats for selection {daily_selection_id}: {stats}")
        return stats

    def get_notification_history(
        self,
        db: Session,
        user_id: str,
        page: int = DEFAULT_PAGE,
        limit: int = DEFAULT_LIMIT,
    ) -> Dict[str, Any]:
        safe_page = max(1, page)
        safe_limit = min(max(1, limit), MAX_LIMIT)
        offset = (safe_page - 1) * safe_limit

        query = db.query(NotificationLog).filter(NotificationLog.user_id == user_id)
        total = query.count()

        # Pages past the end are empty; the offset may not even fit a SQL integer
        logs = []
        if offset < total:
            logs = query.order_by(
                NotificationLog.sent_at.desc(), NotificationLog.created_at.desc()
            ).offset(offset).limit(safe_limit).all()

        return {
            "data": logs,
            "meta": {
                "total": total,
                "page": safe_page,
                "limit": safe_limit,
                "total_pages": math.ceil(total / safe_limit),
            },
        }

    # ========================================================================
    # Helpers
    # ========================================================================

    def _log_row(
        self,
        user_id: str,
        daily_selection_id: str,
        status: NotificationStatus,
        sent_at,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "id": generate_uuid(),
            "user_id": user_id,
            "daily_selection_id": daily_selection_id,
            "status": status.value,
            "error": error,
            "sent_at": sent_at,
            "created_at": sent_at,
        }

    def _insert_logs(self, db: Session, rows: List[Dict[str, Any]]) -> None:
        if rows:
            db.execute(NotificationLog.__table__.insert(), rows)

    def _mark_tokens_invalid(self, db: Session, user_ids: List[str]) -> None:
        db.query(User).filter(User.id.in_(user_ids)).update(
            {User.notification_token: INVALID_TOKEN_SENTINEL}, synchronize_session=False
        )


# Singleton instance
_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the singleton NotificationDispatcher instance."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
