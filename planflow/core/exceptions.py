"""Custom exceptions for PlanFlow."""

from __future__ import annotations

from typing import Any


class PlanFlowError(Exception):
    """Base exception for all PlanFlow errors."""


class ConfigurationError(PlanFlowError):
    """Raised when configuration is invalid."""


class PlanningError(PlanFlowError):
    """Base exception for plan construction and plan mutation errors."""


class CircularDependencyError(PlanningError):
    """Raised when the task dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        """Initialize CircularDependencyError.

        Args:
            cycle: Task IDs forming the cycle, with the first ID repeated at the end.
        """
        super().__init__(f"Circular dependencies detected in task graph: {' -> '.join(cycle)}")
        self.cycle = cycle


class DuplicateTaskError(PlanningError):
    """Raised when two tasks share the same ID."""

    def __init__(self, task_id: str) -> None:
        """Initialize DuplicateTaskError.

        Args:
            task_id: The duplicated task ID.
        """
        super().__init__(f"Duplicate task id: {task_id}")
        self.task_id = task_id


class UnknownDependencyError(PlanningError):
    """Raised when a task depends on a task that is not part of the plan."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        """Initialize UnknownDependencyError.

        Args:
            task_id: The task declaring the dependency.
            dependency_id: The missing dependency.
        """
        super().__init__(f"Task {task_id} depends on non-existent task {dependency_id}")
        self.task_id = task_id
        self.dependency_id = dependency_id


class TaskNotFoundError(PlanningError):
    """Raised when a task is not found."""

    def __init__(self, task_id: str) -> None:
        """Initialize TaskNotFoundError.

        Args:
            task_id: The ID of the task that was not found.
        """
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DependencyNotSatisfiedError(PlanningError):
    """Raised when a task is completed before its dependencies."""

    def __init__(self, task_id: str, pending: list[str]) -> None:
        """Initialize DependencyNotSatisfiedError.

        Args:
            task_id: The task being completed.
            pending: Dependencies that are neither completed nor skipped.
        """
        super().__init__(f"Task {task_id} cannot complete before dependencies: {', '.join(pending)}")
        self.task_id = task_id
        self.pending = pending


class CoordinationError(PlanFlowError):
    """Base exception for agent coordination errors."""


class NoAvailableAgentError(CoordinationError):
    """Raised when no available agent can take a task.

    This error is recoverable: the caller may retry once an agent is released.
    """

    def __init__(self, task_id: str, reason: str = "No suitable agent available for task") -> None:
        """Initialize NoAvailableAgentError.

        Args:
            task_id: The task that could not be assigned.
            reason: Human readable reason.
        """
        super().__init__(f"{reason}: {task_id}")
        self.task_id = task_id


class AgentNotFoundError(CoordinationError):
    """Raised when an agent is not registered."""

    def __init__(self, agent_id: str) -> None:
        """Initialize AgentNotFoundError.

        Args:
            agent_id: The ID of the agent that was not found.
        """
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class AssignmentNotFoundError(CoordinationError):
    """Raised when a task has no active assignment."""

    def __init__(self, task_id: str) -> None:
        """Initialize AssignmentNotFoundError.

        Args:
            task_id: The task without an assignment.
        """
        super().__init__(f"Assignment not found for task: {task_id}")
        self.task_id = task_id


class TaskAlreadyAssignedError(CoordinationError):
    """Raised when a task already holds an active assignment."""

    def __init__(self, task_id: str, agent_id: str) -> None:
        """Initialize TaskAlreadyAssignedError.

        Args:
            task_id: The task being assigned.
            agent_id: The agent currently holding the task.
        """
        super().__init__(f"Task {task_id} is already assigned to {agent_id}")
        self.task_id = task_id
        self.agent_id = agent_id


class ProgressError(PlanFlowError):
    """Base exception for progress tracking errors."""


class InvalidProgressTransitionError(ProgressError):
    """Raised when a finished task is moved to another state."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        """Initialize InvalidProgressTransitionError.

        Args:
            task_id: The task being updated.
            current: The recorded state.
            requested: The requested state.
        """
        super().__init__(f"Invalid transition for task {task_id}: {current} -> {requested}")
        self.task_id = task_id
        self.current = current
        self.requested = requested


class IterationError(PlanFlowError):
    """Base exception for iteration-related errors."""


class IterationNotFoundError(IterationError):
    """Raised when an iteration is not found."""

    def __init__(self, iteration_id: str) -> None:
        """Initialize IterationNotFoundError.

        Args:
            iteration_id: The ID of the iteration that was not found.
        """
        super().__init__(f"Iteration not found: {iteration_id}")
        self.iteration_id = iteration_id


class IterationStateError(IterationError):
    """Raised when a phase is run on an iteration that already finished."""

    def __init__(self, iteration_id: str, status: str) -> None:
        """Initialize IterationStateError.

        Args:
            iteration_id: The iteration.
            status: Its terminal status.
        """
        super().__init__(f"Iteration {iteration_id} is already {status}")
        self.iteration_id = iteration_id
        self.status = status


class EscalationError(IterationError):
    """Raised when an escalated iteration requires external intervention."""

    def __init__(self, iteration_id: str, reason: str, level: Any = None) -> None:
        """Initialize EscalationError.

        Args:
            iteration_id: The escalated iteration.
            reason: Why the iteration escalated.
            level: Escalation level at the time of escalation.
        """
        super().__init__(f"Iteration {iteration_id} escalated: {reason}")
        self.iteration_id = iteration_id
        self.reason = reason
        self.level = level
