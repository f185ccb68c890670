# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Event Bus

Single coordinating channel between the core and whatever presents it.
Status changes and user-facing notifications are published here; a
presentation layer (the control API, a tray icon, a test) reads them and
answers notifications that ask for a decision.

All methods are meant to be called from the event loop thread.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class StatusLevel(str, Enum):
    """Severity of the current status line."""
    OK = "ok"
    BUSY = "busy"
    ERROR = "error"


class NotificationKind(str, Enum):
    """What a notification is about."""
    MAJOR_UPDATE = "major_update"
    UPDATE_AVAILABLE = "update_available"
    UPDATE_READY = "update_ready"
    UPDATE_MANUAL = "update_manual"
    ERROR = "error"


@dataclass
class StatusSnapshot:
    """Current status line."""
    text: str
    level: StatusLevel = StatusLevel.OK
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "level": self.level.value,
            "updated_at": self.updated_at,
        }


@dataclass
class Notification:
    """A message for the user, optionally offering actions to choose from."""
    id: str
    kind: NotificationKind
    title: str
    message: str
    actions: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    response: Optional[str] = None
    _future: Optional[asyncio.Future] = field(default=None, init=False, repr=False)

    @property
    def answered(self) -> bool:
        return self.response is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "actions": list(self.actions),
            "created_at": self.created_at,
            "response": self.response,
        }


class EventBus:
    """
    Publishes status and notifications to subscribers.

    Subscribers are plain callables receiving event dicts:
    ``{"type": "status" | "notification" | "response" | "proxy_state", ...}``.
    """

    def __init__(self):
        self._status = StatusSnapshot(text="Ready")
        self._notifications: Dict[str, Notification] = {}
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Register an event callback. Returns a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: Dict[str, Any]) -> None:
        """Deliver an event to every subscriber."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event subscriber error: %s", e)

    # =========================================================================
    # STATUS
    # =========================================================================

    @property
    def status(self) -> StatusSnapshot:
        return self._status

    def set_status(self, text: str, level: StatusLevel = StatusLevel.OK) -> None:
        self._status = StatusSnapshot(text=text, level=level)
        self.publish({"type": "status", **self._status.to_dict()})

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def notify(
        self,
        kind: NotificationKind,
        title: str,
        message: str,
        actions: Sequence[str] = (),
    ) -> Notification:
        """Create and publish a notification."""
        notification = Notification(
            id=f"ntf-{uuid.uuid4().hex[:12]}",
            kind=kind,
            title=title,
            message=message,
            actions=list(actions),
        )
        self._notifications[notification.id] = notification
        logger.debug("Notification %s (%s): %s", notification.id, kind.value, title)
        self.publish({"type": "notification", **notification.to_dict()})
        return notification

    def get(self, notification_id: str) -> Optional[Notification]:
        return self._notifications.get(notification_id)

    def pending(self) -> List[Notification]:
        """Notifications that have not been answered yet, oldest first."""
        return [n for n in self._notifications.values() if not n.answered]

    def respond(self, notification_id: str, action: str) -> Notification:
        """
        Answer a notification.

        Raises:
            KeyError: Unknown notification ID
            ValueError: Action not offered, or notification already answered
        """
        notification = self._notifications.get(notification_id)
        if notification is None:
            raise KeyError(notification_id)
        if notification.answered:
            raise ValueError(f"Notification {notification_id} already answered")
        if notification.actions and action not in notification.actions:
            raise ValueError(f"Action '{action}' not offered by {notification_id}")

        notification.response = action
        if notification._future is not None and not notification._future.done():
            notification._future.set_result(action)
        self.publish({"type": "response", "id": notification_id, "action": action})
        return notification

    async def wait_for_response(
        self,
        notification: Notification,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Wait until the user answers. Returns None on timeout."""
        if notification.answered:
            return notification.response
        if notification._future is None:
            notification._future = asyncio.get_running_loop().create_future()
        try:
            return await asyncio.wait_for(asyncio.shield(notification._future), timeout)
        except asyncio.TimeoutError:
            return None

    def dismiss_all(self) -> int:
        """Drop every notification, answered or not."""
        count = len(self._notifications)
        for notification in self._notifications.values():
            if notification._future is not None and not notification._future.done():
                notification._future.cancel()
        self._notifications.clear()
        return count
