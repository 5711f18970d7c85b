"""PlanFlow - 依存グラフ実行計画と反復オーケストレーション.

協調して動作するワーカーAgent群のための、
実行計画・能力ベース割当・進捗追跡・Build/Test/Fix/Verify 反復管理を提供します。
"""

__version__ = "0.1.0"

from planflow.config import PlanFlowSettings, get_settings
from planflow.core import NotificationChannel, NotificationTopic, PlanFlowError
from planflow.orchestration import (
    AgentCoordinator,
    AgentRegistry,
    ExecutionPlanner,
    IterationManager,
    Plan,
    PlanOrchestrator,
    ProgressTracker,
    Task,
)


__all__ = [
    "AgentCoordinator",
    "AgentRegistry",
    "ExecutionPlanner",
    "IterationManager",
    "NotificationChannel",
    "NotificationTopic",
    "Plan",
    "PlanFlowError",
    "PlanFlowSettings",
    "PlanOrchestrator",
    "ProgressTracker",
    "Task",
    "__version__",
]
