"""Error types and the hand-off point to the user-facing notification layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base error carrying a technical message and a localizable message key."""

    user_message = "error.generic"

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if user_message:
            self.user_message = user_message
        self.original = original

    @property
    def details(self) -> str:
        if self.original is not None:
            return f"{self.message}: {self.original}"
        return self.message


class ConfigurationError(AppError):
    user_message = "error.configuration"


class MappingError(AppError):
    user_message = "error.mappingFailed"


class StreamError(AppError):
    user_message = "error.streamError"


class AlreadyStreamingError(AppError):
    user_message = "error.alreadyStreaming"

    def __init__(self) -> None:
        super().__init__("A completion is already streaming")


class PersistenceError(AppError):
    user_message = "error.saveFailed"


class McpError(AppError):
    user_message = "error.mcpConnection"


class McpConnectionError(McpError):
    pass


class McpRpcError(McpError):
    def __init__(self, message: str, code: int | None = None, data: object = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class McpProtocolError(McpError):
    pass


@dataclass
class Notification:
    title: str
    message: str
    details: str


Notifier = Callable[[Notification], None]

_notifiers: list[Notifier] = []


def add_notifier(notifier: Notifier) -> None:
    _notifiers.append(notifier)


def remove_notifier(notifier: Notifier) -> None:
    if notifier in _notifiers:
        _notifiers.remove(notifier)


def handle_app_error(error: BaseException, title: str) -> Notification:
    """Log an error and forward a descriptor to every registered notifier."""
    if isinstance(error, AppError):
        notification = Notification(title=title, message=error.user_message, details=error.details)
        logger.warning("%s: %s", title, error.details)
    else:
        notification = Notification(title=title, message="error.generic", details=str(error) or type(error).__name__)
        logger.error("%s: %s", title, notification.details, exc_info=error)

    for notifier in list(_notifiers):
        try:
            notifier(notification)
        except Exception:
            logger.debug("Notifier failed", exc_info=True)
    return notification
