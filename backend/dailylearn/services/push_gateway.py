"""
Web Push messaging gateway.

Delivers push messages to browser PushSubscriptions with pywebpush. A
user's notification token is the JSON-encoded PushSubscription object
({"endpoint": ..., "keys": {"p256dh": ..., "auth": ...}}).
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

import requests
from pywebpush import webpush, WebPushException

from dailylearn.config import get_settings
from dailylearn.errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)

# Error codes meaning the subscription is gone for good
INVALID_TOKEN_CODES = frozenset({
    "webpush/invalid-token",
    "webpush/subscription-not-found",
    "webpush/subscription-expired",
})

_STATUS_CODES = {
    404: "webpush/subscription-not-found",
    410: "webpush/subscription-expired",
    413: "webpush/payload-too-large",
    429: "webpush/rate-limited",
}


class PushDeliveryError(Exception):
    """A single message was rejected or could not be delivered."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class SendResponse:
    success: bool
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


def _code_for_status(status_code: Optional[int]) -> str:
    if status_code is None:
        return "webpush/unknown"
    if status_code in _STATUS_CODES:
        return _STATUS_CODES[status_code]
    if status_code >= 500:
        return "webpush/server-error"
    return f"webpush/http-{status_code}"


def parse_subscription(token: str) -> Dict[str, Any]:
    """Decode a stored token into pywebpush subscription_info."""
    try:
        subscription = json.loads(token)
    except (TypeError, ValueError):
        raise PushDeliveryError("webpush/invalid-token", "Token is not valid subscription JSON")

    if not isinstance(subscription, dict) or not subscription.get("endpoint"):
        raise PushDeliveryError("webpush/invalid-token", "Subscription has no endpoint")
    keys = subscription.get("keys") or {}
    if not keys.get("p256dh") or not keys.get("auth"):
        raise PushDeliveryError("webpush/invalid-token", "Subscription is missing encryption keys")
    return subscription


class WebPushGateway:
    """
    Messaging gateway backed by the Web Push protocol.

    send_one raises PushDeliveryError for a rejected message;
    send_multicast never raises for per-token failures and reports one
    SendResponse per token, in order. Both raise ServiceError
    (INFRASTRUCTURE) when VAPID keys are not configured.
    """

    def __init__(
        self,
        vapid_private_key: Optional[str] = None,
        vapid_public_key: Optional[str] = None,
        vapid_email: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.vapid_private_key = vapid_private_key or settings.vapid_private_key
        self.vapid_public_key = vapid_public_key or settings.vapid_public_key
        self.vapid_email = vapid_email or settings.vapid_email
        self.timeout = timeout or settings.push_timeout_seconds

        if not self.is_configured():
            logger.warning("VAPID keys not configured - push notifications disabled")

    def is_configured(self) -> bool:
        """Check if push notifications are properly configured."""
        return bool(self.vapid_private_key and self.vapid_public_key)

    def get_vapid_public_key(self) -> Optional[str]:
        """Get the VAPID public key for client subscription."""
        return self.vapid_public_key

    def _ensure_configured(self) -> None:
        if not self.is_configured():
            raise ServiceError(
                ErrorKind.INFRASTRUCTURE,
                "Push gateway is not configured (missing VAPID keys)",
            )

    def _build_payload(self, title: str, body: str, data: Optional[Dict[str, str]]) -> str:
        return json.dumps({
            "title": title,
            "body": body,
            "tag": "dailylearn",
            "data": dict(data or {}),
        })

    def _deliver(self, token: str, payload: str) -> str:
        subscription_info = parse_subscription(token)
        try:
            response = webpush(
                subscription_info=subscription_info,
                data=payload,
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_email},
                timeout=self.timeout,
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise PushDeliveryError(_code_for_status(status_code), str(e))
        except requests.RequestException as e:
            raise PushDeliveryError("webpush/network-error", str(e))

        headers = getattr(response, "headers", None) or {}
        return headers.get("Location") or ""

    def send_one(self, token: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> str:
        """Send one message. Returns the push service message id (may be empty)."""
        self._ensure_configured()
        return self._deliver(token, self._build_payload(title, body, data))

    def send_multicast(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, str]] = None,
    ) -> List[SendResponse]:
        """Send the same message to every token; results are in token order."""
        self._ensure_configured()
        payload = self._build_payload(title, body, data)

        responses = []
        for token in tokens:
            try:
                message_id = self._deliver(token, payload)
                responses.append(SendResponse(success=True, message_id=message_id))
            except PushDeliveryError as e:
                responses.append(SendResponse(
                    success=False, error_code=e.code, error_message=e.message
                ))

        return responses


# Singleton instance
_push_gateway: Optional[WebPushGateway] = None


def get_push_gateway() -> WebPushGateway:
    """Get the singleton WebPushGateway instance."""
    global _push_gateway
    if _push_gateway is None:
        _push_gateway = WebPushGateway()
    return _push_gateway
