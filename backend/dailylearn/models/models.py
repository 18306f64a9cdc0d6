from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Date, JSON, ForeignKey, Text,
    Table, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
import uuid
from dailylearn.database import Base

# Sentinel written over a push token the gateway rejected; cleared by the 03:00 cleanup job
INVALID_TOKEN_SENTINEL = "__invalid__"


def generate_uuid():
    return str(uuid.uuid4())


class QuestionDifficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class NotificationStatus(str, Enum):
    """
    Lifecycle of a NotificationLog row.

    pending -> sent | failed. DELIVERED is reserved for a delivery-receipt
    hook and is never written by the dispatcher.
    """
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


user_topic_subscriptions = Table(
    "user_topic_subscriptions",
    Base.metadata,
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("topic_id", String, ForeignKey("topics.id", ondelete="CASCADE"), primary_key=True, index=True),
)


class Topic(Base):
    __tablename__ = "topics"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, unique=True, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    category = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    icon = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    questions = relationship("Question", back_populates="topic")

    __table_args__ = (
        Index("ix_topics_active_order", "is_active", "sort_order"),
    )


class Question(Base):
    __tablename__ = "questions"

    id = Column(String, primary_key=True, default=generate_uuid)
    topic_id = Column(String, ForeignKey("topics.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    difficulty = Column(String, default=QuestionDifficulty.INTERMEDIATE.value, index=True)
    tags = Column(JSON, default=list)
    is_active = Column(Boolean, default=True)

    # Written only by the daily claim (least recently used first)
    last_used_date = Column(DateTime, nullable=True, index=True)
    usage_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    topic = relationship("Topic", back_populates="questions")
    answer = relationship("AiAnswer", back_populates="question", uselist=False)

    __table_args__ = (
        Index("ix_questions_claim", "topic_id", "is_active", "last_used_date"),
    )


class AiAnswer(Base):
    """Generated answer for a question. At most one row per question."""
    __tablename__ = "ai_answers"

    id = Column(String, primary_key=True, default=generate_uuid)
    question_id = Column(String, ForeignKey("questions.id"), unique=True, nullable=False, index=True)
    answer = Column(Text, nullable=False)
    generated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    model = Column(String, nullable=False)
    token_count = Column(Integer, nullable=True)
    is_stale = Column(Boolean, default=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    question = relationship("Question", back_populates="answer")


class DailySelection(Base):
    """One question pinned to one topic for one calendar date."""
    __tablename__ = "daily_selections"

    id = Column(String, primary_key=True, default=generate_uuid)
    date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    topic_id = Column(String, ForeignKey("topics.id"), nullable=False)
    question_id = Column(String, ForeignKey("questions.id"), nullable=False)
    ai_answer_id = Column(String, ForeignKey("ai_answers.id"), nullable=True)
    notifications_sent = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    topic = relationship("Topic")
    question = relationship("Question")

    __table_args__ = (
        UniqueConstraint("date", "topic_id", name="uq_daily_selection_date_topic"),
    )


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    role = Column(String, default="user")
    is_active = Column(Boolean, default=True, index=True)

    # JSON-encoded PushSubscription, NULL, or INVALID_TOKEN_SENTINEL
    notification_token = Column(Text, nullable=True)

    # Streak (calendar days)
    streak_count = Column(Integer, default=0, nullable=False)
    streak_last_active_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscribed_topics = relationship("Topic", secondary=user_topic_subscriptions)
    notification_logs = relationship("NotificationLog", back_populates="user")


class NotificationLog(Base):
    """One row per dispatch attempt per recipient; never updated."""
    __tablename__ = "notification_logs"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # NULL for ad-hoc sends that are not tied to a daily selection
    daily_selection_id = Column(String, ForeignKey("daily_selections.id"), nullable=True, index=True)
    status = Column(String, default=NotificationStatus.PENDING.value, nullable=False, index=True)
    error = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="notification_logs")

    __table_args__ = (
        Index("ix_notification_logs_user_sent", "user_id", "sent_at"),
    )
