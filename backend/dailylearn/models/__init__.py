from dailylearn.models.models import (
    INVALID_TOKEN_SENTINEL,
    AiAnswer,
    DailySelection,
    NotificationLog,
    NotificationStatus,
    Question,
    QuestionDifficulty,
    Topic,
    User,
    generate_uuid,
    user_topic_subscriptions,
)

__all__ = [
    "INVALID_TOKEN_SENTINEL",
    "AiAnswer",
    "DailySelection",
    "NotificationLog",
    "NotificationStatus",
    "Question",
    "QuestionDifficulty",
    "Topic",
    "User",
    "generate_uuid",
    "user_topic_subscriptions",
]
