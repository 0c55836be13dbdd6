"""
Messaging error taxonomy.

Adapters raise these; the registry and dispatcher turn them into result
values so nothing escapes into the HTTP layer. ``http_status`` is the code the
HTTP layer answers with.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from luvora.messaging.types import Platform


class MessagingError(Exception):
    code = "MESSAGING_ERROR"
    http_status = 500

    def __init__(self, message: str, platform: Optional[Platform] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "platform": self.platform.value if self.platform else None,
        }


class ConfigurationInvalid(MessagingError):
    """Config failed platform validation (bad token, malformed identity)."""

    code = "CONFIGURATION_INVALID"
    http_status = 400


class ConnectionFailed(MessagingError):
    """Transport-level failure while starting. Callers may retry with backoff."""

    code = "CONNECTION_FAILED"
    http_status = 502


class CapacityExceeded(MessagingError):
    code = "CAPACITY_EXCEEDED"
    http_status = 503


class NotReady(MessagingError):
    """Send attempted on a handle that is not connected and linked."""

    code = "NOT_READY"
    http_status = 409


class SendFailed(MessagingError):
    code = "SEND_FAILED"
    http_status = 502

    def __init__(self, message: str, platform: Optional[Platform] = None, category: str = "unknown"):
        super().__init__(message, platform)
        self.category = category

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["category"] = self.category
        return data
