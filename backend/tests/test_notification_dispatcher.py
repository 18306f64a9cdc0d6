"""
Tests for the Notification Dispatcher.

Tests cover:
- Single sends and outcome logging
- Batched multicast sends, whole-batch failures
- Invalid token flagging and cleanup
- Eligible recipient filtering
- Delivery stats and paginated history
"""

import pytest
from sqlalchemy.orm import Session

from dailylearn.errors import ErrorKind, ServiceError
from dailylearn.models.models import INVALID_TOKEN_SENTINEL, NotificationLog, User
from dailylearn.services.notification_dispatcher import (
    BatchSendResult,
    DispatchInterrupted,
    NotificationDispatcher,
    NotificationPayload,
    Recipient,
)
from tests.mocks import FIXED_NOW, FakePushGateway, subscription_token

PAYLOAD = NotificationPayload(
    title="Daily Python Question",
    body="What does the GIL protect?",
    data={"dailySelectionId": "selection-1", "topicId": "topic-python"},
)


def token_of(db: Session, user_id: str):
    db.expire_all()
    return db.query(User).filter(User.id == user_id).one().notification_token


class TestSendToOne:

    @pytest.mark.unit
    def test_success_is_logged_as_sent(self, db: Session, dispatcher, push_gateway, make_user):
        user = make_user()

        log = dispatcher.send_to_one(db, user.id, user.notification_token, PAYLOAD, "selection-1")

        assert log.status == "sent"
        assert log.error is None
        assert log.sent_at == FIXED_NOW
        assert log.daily_selection_id == "selection-1"
        assert push_gateway.sent[0]["title"] == "Daily Python Question"

    @pytest.mark.unit
    def test_ad_hoc_send_has_no_selection(self, db: Session, dispatcher, make_user):
        user = make_user()

        log = dispatcher.send_to_one(db, user.id, user.notification_token, PAYLOAD)

        assert log.daily_selection_id is None

    @pytest.mark.unit
    def test_expired_token_is_flagged(self, db: Session, dispatcher, push_gateway, make_user):
        token = subscription_token("expired")
        push_gateway.expired.add(token)
        user = make_user(token=token)

        log = dispatcher.send_to_one(db, user.id, token, PAYLOAD)

        assert log.status == "failed"
        assert log.error.startswith("webpush/subscription-expired: ")
        assert token_of(db, user.id) == INVALID_TOKEN_SENTINEL

    @pytest.mark.unit
    def test_transient_failure_keeps_token(self, db: Session, dispatcher, push_gateway, make_user):
        token = subscription_token("flaky")
        push_gateway.failing.add(token)
        user = make_user(token=token)

        log = dispatcher.send_to_one(db, user.id, token, PAYLOAD)

        assert log.status == "failed"
        assert log.error.startswith("webpush/server-error")
        assert token_of(db, user.id) == token


class TestSendToMany:

    @pytest.mark.unit
    def test_recipients_are_split_into_batches(self, db: Session, push_gateway, clock, make_user):
        dispatcher = NotificationDispatcher(gateway=push_gateway, batch_limit=2, clock=clock)
        recipients = [Recipient(u.id, u.notification_token) for u in [make_user() for _ in range(5)]]

        result = dispatcher.send_to_many(db, recipients, PAYLOAD, "selection-1")

        assert result == BatchSendResult(sent=5, failed=0)
        assert [len(call) for call in push_gateway.multicast_calls] == [2, 2, 1]
        assert db.query(NotificationLog).filter(NotificationLog.status == "sent").count() == 5

    @pytest.mark.unit
    def test_failed_batch_does_not_stop_later_batches(self, db: Session, clock, make_user):
        gateway = FakePushGateway(fail_multicast_calls={2})
        dispatcher = NotificationDispatcher(gateway=gateway, batch_limit=2, clock=clock)
        users = [make_user() for _ in range(5)]
        recipients = [Recipient(u.id, u.notification_token) for u in users]

        result = dispatcher.send_to_many(db, recipients, PAYLOAD, "selection-1")

        assert result == BatchSendResult(sent=3, failed=2)
        failed_logs = db.query(NotificationLog).filter(NotificationLog.status == "failed").all()
        assert sorted(log.user_id for log in failed_logs) == [users[2].id, users[3].id]
        assert all(log.error.startswith("batch_error: ") for log in failed_logs)

    @pytest.mark.unit
    def test_storage_failure_reports_committed_totals(
        self, db: Session, push_gateway, clock, make_user, monkeypatch
    ):
        dispatcher = NotificationDispatcher(gateway=push_gateway, batch_limit=2, clock=clock)
        recipients = [Recipient(u.id, u.notification_token) for u in [make_user() for _ in range(4)]]

        real_insert = dispatcher._insert_logs
        calls = {"n": 0}

        def insert_then_fail(session, rows):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("disk full")
            real_insert(session, rows)

        monkeypatch.setattr(dispatcher, "_insert_logs", insert_then_fail)

        with pytest.raises(DispatchInterrupted) as exc_info:
            dispatcher.send_to_many(db, recipients, PAYLOAD, "selection-1")

        assert exc_info.value.result == BatchSendResult(sent=2, failed=0)
        assert db.query(NotificationLog).filter(NotificationLog.status == "sent").count() == 2

    @pytest.mark.unit
    def test_mixed_outcomes_are_counted_per_recipient(self, db: Session, dispatcher, push_gateway, make_user):
        expired = subscription_token("expired")
        flaky = subscription_token("flaky")
        push_gateway.expired.add(expired)
        push_gateway.failing.add(flaky)
        ok_user = make_user()
        expired_user = make_user(token=expired)
        flaky_user = make_user(token=flaky)
        recipients = [Recipient(u.id, u.notification_token) for u in (ok_user, expired_user, flaky_user)]

        result = dispatcher.send_to_many(db, recipients, PAYLOAD, "selection-1")

        assert result == BatchSendResult(sent=1, failed=2)
        assert token_of(db, expired_user.id) == INVALID_TOKEN_SENTINEL
        assert token_of(db, flaky_user.id) == flaky
        assert db.query(NotificationLog).count() == 3

    @pytest.mark.unit
    def test_every_recipient_gets_exactly_one_log(self, db: Session, dispatcher, make_user):
        users = [make_user() for _ in range(3)]
        recipients = [Recipient(u.id, u.notification_token) for u in users]

        dispatcher.send_to_many(db, recipients, PAYLOAD, "selection-1")

        logged = sorted(log.user_id for log in db.query(NotificationLog).all())
        assert logged == sorted(u.id for u in users)


class TestDailyNotifications:

    @pytest.mark.unit
    def test_only_eligible_users_are_recipients(self, db: Session, dispatcher, make_topic, make_user):
        topic = make_topic("Python")
        other = make_topic("Rust")
        eligible = make_user(topics=[topic])
        make_user(topics=[topic], is_active=False)
        make_user(topics=[topic], token=None)
        make_user(topics=[topic], token=INVALID_TOKEN_SENTINEL)
        make_user(topics=[other])

        recipients = dispatcher.get_eligible_recipients(db, topic.id)

        assert [r.user_id for r in recipients] == [eligible.id]

    @pytest.mark.unit
    def test_no_recipients_sends_nothing(self, db: Session, dispatcher, push_gateway, make_topic):
        topic = make_topic("Python")

        result = dispatcher.send_daily_notifications(db, topic.id, "selection-1", PAYLOAD)

        assert result == BatchSendResult()
        assert push_gateway.multicast_calls == []

    @pytest.mark.unit
    def test_daily_send_reaches_subscribers(self, db: Session, dispatcher, push_gateway, make_topic, make_user):
        topic = make_topic("Python")
        make_user(topics=[topic])
        make_user(topics=[topic])

        result = dispatcher.send_daily_notifications(db, topic.id, "selection-1", PAYLOAD)

        assert result.sent == 2
        assert all(m["data"]["dailySelectionId"] == "selection-1" for m in push_gateway.sent)


class TestTestNotification:

    @pytest.mark.unit
    def test_sends_to_stored_token(self, db: Session, dispatcher, push_gateway, make_user):
        user = make_user()

        log = dispatcher.send_test_notification(db, user.id, "Hello", "Just checking")

        assert log.status == "sent"
        assert push_gateway.sent[0]["token"] == user.notification_token
        assert push_gateway.sent[0]["title"] == "Hello"

    @pytest.mark.unit
    def test_unknown_user(self, db: Session, dispatcher):
        with pytest.raises(ServiceError) as exc_info:
            dispatcher.send_test_notification(db, "nobody", "Hello", "Body")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.unit
    @pytest.mark.parametrize("token", [None, INVALID_TOKEN_SENTINEL])
    def test_user_without_usable_token(self, db: Session, dispatcher, make_user, token):
        user = make_user(token=token)

        with pytest.raises(ServiceError) as exc_info:
            dispatcher.send_test_notification(db, user.id, "Hello", "Body")

        assert exc_info.value.kind == ErrorKind.VALIDATION


class TestTokens:

    @pytest.mark.unit
    def test_register_valid_subscription(self, db: Session, dispatcher, make_user):
        user = make_user(token=None)
        token = subscription_token("new-device")

        dispatcher.register_token(db, user.id, token)

        assert token_of(db, user.id) == token

    @pytest.mark.unit
    def test_register_rejects_malformed_subscription(self, db: Session, dispatcher, make_user):
        user = make_user(token=None)

        with pytest.raises(ServiceError) as exc_info:
            dispatcher.register_token(db, user.id, '{"endpoint": "https://push.example.com"}')

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert token_of(db, user.id) is None

    @pytest.mark.unit
    def test_register_for_unknown_user(self, db: Session, dispatcher):
        with pytest.raises(ServiceError) as exc_info:
            dispatcher.register_token(db, "nobody", subscription_token("x"))

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.unit
    def test_cleanup_clears_flagged_tokens(self, db: Session, dispatcher, make_user):
        flagged = make_user(token=INVALID_TOKEN_SENTINEL)
        healthy = make_user()

        assert dispatcher.cleanup_invalid_tokens(db) == 1
        assert dispatcher.cleanup_invalid_tokens(db) == 0
        assert token_of(db, flagged.id) is None
        assert token_of(db, healthy.id) == healthy.notification_token


class TestReadPaths:

    @pytest.mark.unit
    def test_delivery_stats_by_status(self, db: Session, dispatcher, push_gateway, make_user):
        expired = subscription_token("expired")
        push_gateway.expired.add(expired)
        users = [make_user(), make_user(), make_user(token=expired)]
        recipients = [Recipient(u.id, u.notification_token) for u in users]
        dispatcher.send_to_many(db, recipients, PAYLOAD, "selection-1")

        stats = dispatcher.get_delivery_stats(db, "selection-1")

        assert stats == {"total": 3, "sent": 2, "failed": 1, "delivered": 0, "pending": 0}

    @pytest.mark.unit
    def test_delivery_stats_for_unknown_selection_are_zero(self, db: Session, dispatcher):
        stats = dispatcher.get_delivery_stats(db, "missing")

        assert stats == {"total": 0, "sent": 0, "failed": 0, "delivered": 0, "pending": 0}

    @pytest.mark.unit
    def test_history_is_paginated_newest_first(self, db: Session, dispatcher, clock, make_user):
        user = make_user()
        for _ in range(25):
            dispatcher.send_to_one(db, user.id, user.notification_token, PAYLOAD)
            clock.advance(minutes=1)

        page = dispatcher.get_notification_history(db, user.id, page=2, limit=10)

        assert len(page["data"]) == 10
        assert page["meta"] == {"total": 25, "page": 2, "limit": 10, "total_pages": 3}
        sent_times = [log.sent_at for log in page["data"]]
        assert sent_times == sorted(sent_times, reverse=True)

    @pytest.mark.unit
    def test_history_clamps_page_and_limit(self, db: Session, dispatcher, make_user):
        user = make_user()
        dispatcher.send_to_one(db, user.id, user.notification_token, PAYLOAD)

        page = dispatcher.get_notification_history(db, user.id, page=0, limit=1000)

        assert page["meta"]["page"] == 1
        assert page["meta"]["limit"] == 100

    @pytest.mark.unit
    @pytest.mark.parametrize("page", [3, 10**19])
    def test_history_page_past_the_end_is_empty(self, db: Session, dispatcher, make_user, page):
        user = make_user()
        dispatcher.send_to_one(db, user.id, user.notification_token, PAYLOAD)

        result = dispatcher.get_notification_history(db, user.id, page=page, limit=10)

        assert result["data"] == []
        assert result["meta"]["total"] == 1
        assert result["meta"]["page"] == page
        assert result["meta"]["total_pages"] == 1

    @pytest.mark.unit
    def test_history_excludes_other_users(self, db: Session, dispatcher, make_user):
        me = make_user()
        other = make_user()
        dispatcher.send_to_one(db, other.id, other.notification_token, PAYLOAD)

        page = dispatcher.get_notification_history(db, me.id)

        assert page["data"] == []
        assert page["meta"]["total"] == 0
        assert page["meta"]["total_pages"] == 0
