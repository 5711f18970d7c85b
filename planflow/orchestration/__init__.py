"""PlanFlow オーケストレーション層.

実行計画・Agent調整・進捗追跡・反復管理と、それらを束ねる駆動ループを提供します。

使用例:
    >>> from planflow.orchestration import PlanOrchestrator
    >>>
    >>> orchestrator = PlanOrchestrator.from_settings()
    >>> plan = orchestrator.create_plan(tasks)
    >>> result = await orchestrator.execute_plan(plan, execute_task)
"""

from planflow.orchestration.coordinator import (
    Agent,
    AgentCoordinator,
    AgentRegistry,
    AgentSelector,
    AgentStatus,
    Assignment,
    AssignmentResult,
    AssignmentStrategy,
    CoordinatorConfig,
    default_agent_registry,
    required_capabilities,
    score_agent,
)
from planflow.orchestration.iteration import (
    EscalationLevel,
    Iteration,
    IterationConfig,
    IterationManager,
    IterationPhase,
    IterationResult,
    IterationStatus,
    PhaseOutcome,
    PhaseResult,
)
from planflow.orchestration.models import (
    Capability,
    Checkpoint,
    CheckpointType,
    ExecutionGroup,
    Plan,
    PlanStatus,
    Task,
    TaskPhase,
    TaskPriority,
    TaskStatus,
    infer_category,
    infer_phase,
)
from planflow.orchestration.orchestrator import ExecutionResult, OrchestratorConfig, PlanOrchestrator
from planflow.orchestration.planner import ExecutionPlanner, PlannerConfig
from planflow.orchestration.progress import (
    Blocker,
    BlockerType,
    ProgressSnapshot,
    ProgressStatus,
    ProgressTracker,
    TrackerConfig,
)


__all__ = [
    "Agent",
    "AgentCoordinator",
    "AgentRegistry",
    "AgentSelector",
    "AgentStatus",
    "Assignment",
    "AssignmentResult",
    "AssignmentStrategy",
    "Blocker",
    "BlockerType",
    "Capability",
    "Checkpoint",
    "CheckpointType",
    "CoordinatorConfig",
    "EscalationLevel",
    "ExecutionGroup",
    "ExecutionPlanner",
    "ExecutionResult",
    "Iteration",
    "IterationConfig",
    "IterationManager",
    "IterationPhase",
    "IterationResult",
    "IterationStatus",
    "OrchestratorConfig",
    "PhaseOutcome",
    "PhaseResult",
    "Plan",
    "PlanOrchestrator",
    "PlanStatus",
    "PlannerConfig",
    "ProgressSnapshot",
    "ProgressStatus",
    "ProgressTracker",
    "Task",
    "TaskPhase",
    "TaskPriority",
    "TaskStatus",
    "TrackerConfig",
    "default_agent_registry",
    "infer_category",
    "infer_phase",
    "required_capabilities",
    "score_agent",
]
