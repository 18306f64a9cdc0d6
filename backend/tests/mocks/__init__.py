"""
Mock infrastructure for DailyLearn testing.
Provides deterministic fakes for OpenAI, Web Push and the clock.
"""

from .openai_mocks import (
    MOCK_ANSWER,
    MOCK_TOTAL_TOKENS,
    MockChatCompletion,
    MockOpenAIClient,
    FakeCompletionClient,
    CodedNetworkError,
    openai_status_error,
    openai_connection_error,
)
from .push_mocks import FakePushGateway, subscription_token
from .clock_mocks import FIXED_NOW, FakeClock, RecordingSleep

__all__ = [
    "MOCK_ANSWER",
    "MOCK_TOTAL_TOKENS",
    "MockChatCompletion",
    "MockOpenAIClient",
    "FakeCompletionClient",
    "CodedNetworkError",
    "openai_status_error",
    "openai_connection_error",
    "FakePushGateway",
    "subscription_token",
    "FIXED_NOW",
    "FakeClock",
    "RecordingSleep",
]
