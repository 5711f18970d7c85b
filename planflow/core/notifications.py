"""Typed notification channel for PlanFlow.

Components publish on named topics; observers subscribe to one topic or to
all of them. Dispatch is synchronous and in-process: ``publish`` calls every
listener before returning. Publishers only call ``publish`` after the state
change that triggered it has completed, so listeners always observe the
post-mutation state.

A listener that raises is logged and skipped. It never affects other
listeners or the publishing component.

Example:
    >>> channel = NotificationChannel()
    >>> channel.subscribe(NotificationTopic.TASK_ASSIGNED, lambda n: print(n.payload["agent_id"]))
    >>> channel.publish(NotificationTopic.TASK_ASSIGNED, {"agent_id": "tester-agent"})
    tester-agent
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NotificationTopic(str, Enum):
    """Notification topics."""

    PLAN_CREATED = "plan:created"
    TASK_ASSIGNED = "task:assigned"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"
    TASK_SKIPPED = "task:skipped"
    ASSIGNMENT_STALE = "assignment:stale"
    PROGRESS_UPDATED = "progress:updated"
    BLOCKER_DETECTED = "blocker:detected"
    BLOCKER_RESOLVED = "blocker:resolved"
    CHECKPOINT_REACHED = "checkpoint:reached"
    EXECUTION_STARTED = "execution:started"
    EXECUTION_PAUSED = "execution:paused"
    EXECUTION_RESUMED = "execution:resumed"
    EXECUTION_COMPLETED = "execution:completed"
    EXECUTION_FAILED = "execution:failed"
    ITERATION_STARTED = "iteration:started"
    ITERATION_RETRYING = "iteration:retrying"
    ITERATION_COMPLETED = "iteration:completed"
    ITERATION_ESCALATED = "iteration:escalated"
    ITERATION_CANCELLED = "iteration:cancelled"
    PHASE_STARTED = "phase:started"
    PHASE_COMPLETED = "phase:completed"
    PHASE_FAILED = "phase:failed"
    VERIFY_FAILED = "verify:failed"


class Notification(BaseModel):
    """A published notification."""

    topic: NotificationTopic
    source: str = Field(default="", description="Publishing component")
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


Listener = Callable[[Notification], Any]


class NotificationChannel:
    """Synchronous publish/subscribe channel with named topics.

    Args:
        history_size: Number of recent notifications kept for inspection.
    """

    def __init__(self, history_size: int = 200) -> None:
        """Initialize the channel."""
        self._listeners: dict[NotificationTopic, list[Listener]] = {topic: [] for topic in NotificationTopic}
        self._wildcard: list[Listener] = []
        self._history: deque[Notification] = deque(maxlen=history_size)
        self._logger = logging.getLogger(__name__)

    def subscribe(self, topic: NotificationTopic | str | None, listener: Listener) -> None:
        """Register a listener.

        Args:
            topic: Topic to listen to. ``None`` subscribes to every topic.
            listener: Callable receiving the ``Notification``.
        """
        if topic is None:
            self._wildcard.append(listener)
            return
        self._listeners[NotificationTopic(topic)].append(listener)

    def unsubscribe(self, topic: NotificationTopic | str | None, listener: Listener) -> bool:
        """Remove a listener.

        Returns:
            True if the listener was registered.
        """
        listeners = self._wildcard if topic is None else self._listeners[NotificationTopic(topic)]
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def publish(
        self,
        topic: NotificationTopic | str,
        payload: dict[str, Any] | None = None,
        source: str = "",
    ) -> Notification:
        """Dispatch a notification to every listener of ``topic``.

        Args:
            topic: Notification topic.
            payload: Event data.
            source: Name of the publishing component.

        Returns:
            The dispatched notification.
        """
        notification = Notification(topic=NotificationTopic(topic), source=source, payload=payload or {})
        self._history.append(notification)
        self._logger.debug(f"notify {notification.topic.value} from {source or '-'}")

        for listener in [*self._listeners[notification.topic], *self._wildcard]:
            try:
                listener(notification)
            except Exception as e:
                self._logger.warning(f"Listener error on {notification.topic.value}: {e}")
        return notification

    def history(self, topic: NotificationTopic | str | None = None) -> list[Notification]:
        """Return recent notifications, optionally filtered by topic."""
        if topic is None:
            return list(self._history)
        wanted = NotificationTopic(topic)
        return [n for n in self._history if n.topic == wanted]

    def listener_count(self, topic: NotificationTopic | str | None = None) -> int:
        """Count listeners for a topic, or wildcard listeners when ``topic`` is None."""
        if topic is None:
            return len(self._wildcard)
        return len(self._listeners[NotificationTopic(topic)])
