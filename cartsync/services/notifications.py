"""
NotificationEmitter - turns engine outcomes into display-ready events.

The engine never renders anything. It pushes Notification records onto an
ordered queue; the UI shows them and dismisses them by id, either when
they expire or when the shopper closes one early.
"""

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from cartsync import config
from cartsync.errors import (
    DEFAULT_SUBJECT,
    MSG_CART_ADDED,
    MSG_CART_CLEARED,
    MSG_CART_DUPLICATE,
    MSG_CART_NOT_FOUND,
    MSG_CART_REMOVED,
    MSG_CART_UPDATED,
    MSG_CONFLICT,
    MSG_INVALID_ITEM,
    MSG_LOGIN_REQUIRED,
    MSG_MERGE_FAILED,
    MSG_MERGE_PARTIAL,
    MSG_MERGE_RESTORED,
    MSG_NETWORK,
    MSG_REMOTE_REJECTED,
    MSG_STOCK_INSUFFICIENT,
    MSG_STOCK_UNAVAILABLE,
    MSG_STORAGE,
    MSG_TIMEOUT,
    MSG_WISHLIST_ADDED,
    MSG_WISHLIST_CLEARED,
    MSG_WISHLIST_DUPLICATE,
    MSG_WISHLIST_MOVED,
    MSG_WISHLIST_REMOVED,
)
from cartsync.logging import get_logger

logger = get_logger(__name__)


class NotificationType(str, Enum):
    CART = "cart"
    WISHLIST = "wishlist"
    GENERAL = "general"


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# (type, action) -> template, used when no reason-specific text applies
_ACTION_TEMPLATES = {
    (NotificationType.CART, "added"): MSG_CART_ADDED,
    (NotificationType.CART, "removed"): MSG_CART_REMOVED,
    (NotificationType.CART, "updated"): MSG_CART_UPDATED,
    (NotificationType.CART, "cleared"): MSG_CART_CLEARED,
    (NotificationType.WISHLIST, "added"): MSG_WISHLIST_ADDED,
    (NotificationType.WISHLIST, "removed"): MSG_WISHLIST_REMOVED,
    (NotificationType.WISHLIST, "cleared"): MSG_WISHLIST_CLEARED,
    (NotificationType.WISHLIST, "moved"): MSG_WISHLIST_MOVED,
    (NotificationType.GENERAL, "merged"): MSG_MERGE_RESTORED,
}

# reason -> template, wins over the action template
_REASON_TEMPLATES = {
    "unavailable": MSG_STOCK_UNAVAILABLE,
    "insufficient": MSG_STOCK_INSUFFICIENT,
    "network": MSG_NETWORK,
    "timeout": MSG_TIMEOUT,
    "conflict": MSG_CONFLICT,
    "storage": MSG_STORAGE,
    "remote": MSG_REMOTE_REJECTED,
    "validation": MSG_INVALID_ITEM,
    "not_found": MSG_CART_NOT_FOUND,
    "login_required": MSG_LOGIN_REQUIRED,
    "merge_partial": MSG_MERGE_PARTIAL,
    "merge_failed": MSG_MERGE_FAILED,
}

_DUPLICATE_TEMPLATES = {
    NotificationType.CART: MSG_CART_DUPLICATE,
    NotificationType.WISHLIST: MSG_WISHLIST_DUPLICATE,
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


@dataclass(frozen=True)
class Notification:
    """A display-ready event."""

    id: str
    type: NotificationType
    outcome: Outcome
    message: str
    created_at: float
    expires_at: float
    subject: Optional[str] = None
    action: Optional[str] = None
    reason: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


Listener = Callable[[list[Notification]], None]


class NotificationEmitter:
    """
    Ordered queue of notifications with a fixed time-to-live.

    Args:
        timeout_ms: Lifetime of each notification (default from config, 3000 ms)
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(self, timeout_ms: int | None = None, clock: Callable[[], float] = time.monotonic):
        self.timeout_ms = config.NOTIFICATION_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self._clock = clock
        self._queue: list[Notification] = []
        self._listeners: list[Listener] = []

    def render(
        self,
        type: NotificationType,
        action: str | None = None,
        subject: str | None = None,
        reason: str | None = None,
        **values,
    ) -> str:
        """Pick and fill the message template for an outcome."""
        if reason == "duplicate":
            template = _DUPLICATE_TEMPLATES.get(type, MSG_REMOTE_REJECTED)
        elif reason in _REASON_TEMPLATES:
            template = _REASON_TEMPLATES[reason]
        else:
            template = _ACTION_TEMPLATES.get((type, action), "")
        values.setdefault("subject", subject or DEFAULT_SUBJECT)
        return template.format_map(_Blank(values))

    def emit(
        self,
        type: NotificationType | str,
        outcome: Outcome | str,
        *,
        action: str | None = None,
        subject: str | None = None,
        reason: str | None = None,
        message: str | None = None,
        **values,
    ) -> Notification:
        """
        Push a notification onto the queue.

        Args:
            type: cart, wishlist or general
            outcome: success or error
            action: What happened (added, removed, updated, cleared, moved, merged)
            subject: Display name of the item involved
            reason: Failure or warning reason (unavailable, insufficient, network, ...)
            message: Explicit text; overrides the templates
            **values: Extra template values (available, count)

        Returns:
            The queued Notification
        """
        type = NotificationType(type)
        outcome = Outcome(outcome)
        text = message or self.render(type, action, subject, reason, **values)
        if not text:
            text = "Done" if outcome is Outcome.SUCCESS else MSG_REMOTE_REJECTED

        now = self._clock()
        notification = Notification(
            id=uuid.uuid4().hex,
            type=type,
            outcome=outcome,
            message=text,
            created_at=now,
            expires_at=now + self.timeout_ms / 1000,
            subject=subject,
            action=action,
            reason=reason,
        )
        self._queue.append(notification)
        logger.debug("Notification %s/%s: %s", type.value, outcome.value, text)
        self._publish()
        return notification

    def dismiss(self, notification_id: str) -> bool:
        """Remove a notification early. Unknown ids are ignored."""
        before = len(self._queue)
        self._queue = [n for n in self._queue if n.id != notification_id]
        if len(self._queue) == before:
            return False
        self._publish()
        return True

    def prune(self) -> int:
        """Drop expired notifications and return how many were removed."""
        now = self._clock()
        kept = [n for n in self._queue if not n.is_expired(now)]
        removed = len(self._queue) - len(kept)
        if removed:
            self._queue = kept
            self._publish()
        return removed

    def active(self) -> list[Notification]:
        """Unexpired notifications, oldest first."""
        self.prune()
        return list(self._queue)

    def clear(self) -> None:
        if self._queue:
            self._queue = []
            self._publish()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with the queue after every change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = list(self._queue)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Notification listener failed")
