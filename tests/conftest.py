"""Pytest configuration and shared fixtures."""

from typing import Any

import pytest

from planflow.core.clock import ManualClock
from planflow.core.notifications import NotificationChannel
from planflow.orchestration.coordinator import AgentCoordinator, default_agent_registry
from planflow.orchestration.iteration import IterationConfig, IterationManager
from planflow.orchestration.orchestrator import OrchestratorConfig, PlanOrchestrator
from planflow.orchestration.planner import ExecutionPlanner
from planflow.orchestration.progress import ProgressTracker


@pytest.fixture
def clock() -> ManualClock:
    """Create a deterministic clock.

    Returns:
        ManualClock starting at 2024-01-01 00:00.
    """
    return ManualClock()


@pytest.fixture
def channel() -> NotificationChannel:
    """Create a fresh notification channel."""
    return NotificationChannel()


@pytest.fixture
def planner(channel: NotificationChannel, clock: ManualClock) -> ExecutionPlanner:
    """Create a planner with default configuration."""
    return ExecutionPlanner(channel=channel, clock=clock)


@pytest.fixture
def coordinator(channel: NotificationChannel, clock: ManualClock) -> AgentCoordinator:
    """Create a coordinator backed by the default agent pool."""
    return AgentCoordinator(default_agent_registry(), channel=channel, clock=clock)


@pytest.fixture
def tracker(channel: NotificationChannel, clock: ManualClock) -> ProgressTracker:
    """Create a progress tracker."""
    return ProgressTracker(channel=channel, clock=clock)


@pytest.fixture
def iterations(channel: NotificationChannel, clock: ManualClock) -> IterationManager:
    """Create an iteration manager with a one second retry delay."""
    return IterationManager(IterationConfig(retry_delay_seconds=1.0), channel=channel, clock=clock)


@pytest.fixture
def orchestrator(
    planner: ExecutionPlanner,
    coordinator: AgentCoordinator,
    tracker: ProgressTracker,
    iterations: IterationManager,
    channel: NotificationChannel,
    clock: ManualClock,
) -> PlanOrchestrator:
    """Create an orchestrator wired to the shared channel and clock."""
    return PlanOrchestrator(
        planner,
        coordinator,
        tracker,
        iterations,
        config=OrchestratorConfig(max_task_retries=2, task_retry_delay_seconds=5.0),
        channel=channel,
        clock=clock,
    )


@pytest.fixture
def web_app_tasks() -> list[dict[str, Any]]:
    """Create a small web application task list.

    Returns:
        Tasks spanning setup, implementation, testing and deployment.
    """
    return [
        {"id": "setup", "name": "Initialize repository", "category": "setup"},
        {"id": "api", "name": "Build REST API", "category": "backend", "dependencies": ["setup"], "complexity": 3},
        {"id": "ui", "name": "Build dashboard", "category": "frontend", "dependencies": ["setup"], "complexity": 2},
        {"id": "tests", "name": "Write tests", "category": "testing", "dependencies": ["api", "ui"]},
        {"id": "deploy", "name": "Ship container", "category": "deployment", "dependencies": ["tests"]},
    ]
