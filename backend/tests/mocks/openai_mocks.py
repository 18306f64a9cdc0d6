"""
Deterministic OpenAI mocks for DailyLearn testing.

These mocks provide predictable responses without API costs, for the
completion gateway and the answer generator's retry behaviour.
"""

from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field

import httpx
import openai

from dailylearn.utils.openai_client import Completion


# =============================================================================
# Mock Data - Deterministic Responses
# =============================================================================

MOCK_ANSWER = """## Closures in JavaScript

A closure is a function that keeps access to variables from the scope it
was created in, even after that scope has returned.

```javascript
function counter() {
  let count = 0;
  return () => ++count;
}
```
"""

MOCK_TOTAL_TOKENS = 256

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


# =============================================================================
# SDK response objects
# =============================================================================

@dataclass
class MockMessage:
    """Mock OpenAI message object"""
    content: Optional[str]
    role: str = "assistant"


@dataclass
class MockChoice:
    """Mock OpenAI choice object"""
    message: MockMessage
    index: int = 0
    finish_reason: str = "stop"


@dataclass
class MockUsage:
    prompt_tokens: int = 56
    completion_tokens: int = 200
    total_tokens: int = MOCK_TOTAL_TOKENS


@dataclass
class MockChatCompletion:
    """Mock OpenAI chat completion response"""
    id: str = "mock-completion-123"
    object: str = "chat.completion"
    created: int = 1699999999
    model: str = "gpt-4"
    choices: List[MockChoice] = None
    usage: Optional[MockUsage] = field(default_factory=MockUsage)

    def __post_init__(self):
        if self.choices is None:
            self.choices = [MockChoice(message=MockMessage(content=MOCK_ANSWER))]


class MockCompletions:
    """Mock for client.chat.completions endpoint"""

    def __init__(self, response: Optional[MockChatCompletion] = None):
        self.response = response or MockChatCompletion()
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs) -> MockChatCompletion:
        self.calls.append(kwargs)
        return self.response


class MockChatEndpoint:
    """Mock for client.chat endpoint"""

    def __init__(self, response: Optional[MockChatCompletion] = None):
        self.completions = MockCompletions(response)


class MockOpenAIClient:
    """Stands in for openai.OpenAI in CompletionClient tests."""

    def __init__(self, response: Optional[MockChatCompletion] = None):
        self.chat = MockChatEndpoint(response)

    def get_last_call(self) -> Optional[Dict[str, Any]]:
        calls = self.chat.completions.calls
        return calls[-1] if calls else None


# =============================================================================
# Completion gateway fake
# =============================================================================

class FakeCompletionClient:
    """
    Scripted CompletionClient.

    ``script`` items are consumed in order, one per call: a Completion is
    returned, an exception is raised. ``failures`` maps a question text to
    an exception raised every time that question is asked. Once the script
    runs out every call returns MOCK_ANSWER.
    """

    def __init__(
        self,
        script: Optional[List[Union[Completion, BaseException]]] = None,
        failures: Optional[Dict[str, BaseException]] = None,
    ):
        self.script = list(script or [])
        self.failures = dict(failures or {})
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def complete(self, system_prompt, user_prompt, model, max_tokens, temperature) -> Completion:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })

        if user_prompt in self.failures:
            raise self.failures[user_prompt]

        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item

        return Completion(text=MOCK_ANSWER, total_tokens=MOCK_TOTAL_TOKENS)


# =============================================================================
# Error factories
# =============================================================================

def openai_status_error(status_code: int, message: str = "mock API error") -> openai.APIStatusError:
    """An SDK error carrying an HTTP status code, like the real client raises."""
    request = httpx.Request("POST", OPENAI_URL)
    response = httpx.Response(status_code, request=request)
    return openai.APIStatusError(message, response=response, body=None)


def openai_connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL))


class CodedNetworkError(Exception):
    """Network failure identified only by an errno-style code."""

    def __init__(self, code: str):
        super().__init__(f"network failure {code}")
        self.code = code
