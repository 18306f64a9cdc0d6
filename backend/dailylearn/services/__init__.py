# Services module

# Push delivery
from dailylearn.services.push_gateway import (
    PushDeliveryError,
    WebPushGateway,
    get_push_gateway,
)
from dailylearn.services.notification_dispatcher import (
    NotificationDispatcher,
    get_notification_dispatcher,
)

# Answer generation
from dailylearn.services.answer_generator import (
    AnswerGenerator,
    get_answer_generator,
)

# Daily flow
from dailylearn.services.daily_flow import (
    DailyFlowService,
    FlowSummary,
    get_daily_flow_service,
)

__all__ = [
    "PushDeliveryError",
    "WebPushGateway",
    "get_push_gateway",
    "NotificationDispatcher",
    "get_notification_dispatcher",
    "AnswerGenerator",
    "get_answer_generator",
    "DailyFlowService",
    "FlowSummary",
    "get_daily_flow_service",
]
