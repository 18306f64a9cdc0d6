"""
Lazy-initialized OpenAI client to prevent import-time errors
when OPENAI_API_KEY is not set, plus the thin completion gateway the
answer generator talks to.
"""

from dataclasses import dataclass
from typing import Optional
import httpx
from openai import OpenAI

from dailylearn.config import get_settings

_client: Optional[OpenAI] = None


def _default_timeout() -> httpx.Timeout:
    # Total request timeout from settings, 10s to connect
    return httpx.Timeout(get_settings().openai_timeout_seconds, connect=10.0)


def get_openai_client() -> OpenAI:
    """
    Get a lazily-initialized OpenAI client with timeout configuration.

    The SDK's own retries are disabled; retry/backoff is handled by
    dailylearn.utils.api_retry so attempts are counted in one place.

    Raises:
        ValueError: If OPENAI_API_KEY is not set
    """
    global _client

    if _client is None:
        api_key = get_settings().openai_api_key
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY environment variable is not set. "
                "Please set it before using AI features."
            )
        _client = OpenAI(api_key=api_key, timeout=_default_timeout(), max_retries=0)

    return _client


def reset_client() -> None:
    """
    Reset the client (useful for testing or when API key changes).
    """
    global _client
    _client = None


@dataclass
class Completion:
    text: str
    total_tokens: int


class CompletionClient:
    """Chat completion gateway: one system prompt, one user prompt, one answer."""

    def __init__(self, client: Optional[OpenAI] = None):
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        response = self.client.chat.completions.create(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        total_tokens = response.usage.total_tokens if response.usage else 0

        return Completion(text=text, total_tokens=total_tokens)
