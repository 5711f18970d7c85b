"""PlanFlow コア層.

例外体系・通知チャネル・クロック・レジストリを提供します。
"""

from planflow.core.clock import Clock, ManualClock, SystemClock, sleep_until
from planflow.core.exceptions import (
    AgentNotFoundError,
    AssignmentNotFoundError,
    CircularDependencyError,
    ConfigurationError,
    CoordinationError,
    DependencyNotSatisfiedError,
    DuplicateTaskError,
    EscalationError,
    InvalidProgressTransitionError,
    IterationError,
    IterationNotFoundError,
    IterationStateError,
    NoAvailableAgentError,
    PlanFlowError,
    PlanningError,
    ProgressError,
    TaskAlreadyAssignedError,
    TaskNotFoundError,
    UnknownDependencyError,
)
from planflow.core.notifications import Notification, NotificationChannel, NotificationTopic
from planflow.core.registry import Registry


__all__ = [
    "AgentNotFoundError",
    "AssignmentNotFoundError",
    "CircularDependencyError",
    "Clock",
    "ConfigurationError",
    "CoordinationError",
    "DependencyNotSatisfiedError",
    "DuplicateTaskError",
    "EscalationError",
    "InvalidProgressTransitionError",
    "IterationError",
    "IterationNotFoundError",
    "IterationStateError",
    "ManualClock",
    "NoAvailableAgentError",
    "Notification",
    "NotificationChannel",
    "NotificationTopic",
    "PlanFlowError",
    "PlanningError",
    "ProgressError",
    "Registry",
    "SystemClock",
    "TaskAlreadyAssignedError",
    "TaskNotFoundError",
    "UnknownDependencyError",
    "sleep_until",
]
