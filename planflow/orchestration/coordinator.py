"""Agent調整 - 能力ベースのタスク割当.

登録済みAgentの能力タグとタスクの必要能力を照合し、
割当戦略に従って空きAgentへタスクを割り当てる。
各Agentが同時に保持できる割当は1件のみ。

空きAgentが存在しない場合は待ち行列に入れず ``NoAvailableAgentError`` を送出する。
再試行は呼び出し側（PlanOrchestrator）の責務。

使用例:
    >>> from planflow.orchestration.coordinator import AgentCoordinator, AgentRegistry
    >>>
    >>> registry = AgentRegistry.from_specs([{"id": "tester-agent", "capabilities": ["testing"]}])
    >>> coordinator = AgentCoordinator(registry)
    >>> result = coordinator.assign_task({"id": "t1", "category": "testing"})
    >>> result.assignment.agent_id
    'tester-agent'
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

from planflow.core.clock import Clock, SystemClock
from planflow.core.exceptions import (
    AgentNotFoundError,
    AssignmentNotFoundError,
    ConfigurationError,
    NoAvailableAgentError,
    TaskAlreadyAssignedError,
)
from planflow.core.notifications import NotificationChannel, NotificationTopic
from planflow.core.registry import Registry
from planflow.orchestration.models import (
    PHASE_CAPABILITY,
    Capability,
    Plan,
    Task,
    capabilities_for,
    infer_phase,
)


if TYPE_CHECKING:
    from planflow.config.settings import PlanFlowSettings


class AgentStatus(str, Enum):
    """Agent状態."""

    AVAILABLE = "available"
    BUSY = "busy"


class AssignmentStrategy(str, Enum):
    """割当戦略."""

    CAPABILITY_MATCH = "capability_match"
    ROUND_ROBIN = "round_robin"
    LOAD_BALANCED = "load_balanced"


class Agent(BaseModel):
    """ワーカーAgent.

    Attributes:
        id: Agent ID
        name: 表示名
        capabilities: 能力タグ
        status: 状態
        current_task_id: 実行中タスクID
        completed_tasks: 完了タスク数
        failed_tasks: 失敗タスク数
    """

    id: str
    name: str = ""
    capabilities: set[Capability] = Field(default_factory=set)
    status: AgentStatus = Field(default=AgentStatus.AVAILABLE)
    current_task_id: str | None = None
    completed_tasks: int = Field(default=0, ge=0)
    failed_tasks: int = Field(default=0, ge=0)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _parse_capabilities(cls, value: Any) -> Any:
        if value is None:
            return set()
        if isinstance(value, str):
            value = [value]
        return {Capability.parse(tag) for tag in value}

    @property
    def workload(self) -> int:
        """処理済みタスク数."""
        return self.completed_tasks + self.failed_tasks

    @property
    def is_available(self) -> bool:
        """割当可能か."""
        return self.status == AgentStatus.AVAILABLE


class Assignment(BaseModel):
    """タスク割当（Agentごとに最大1件）."""

    task_id: str
    agent_id: str
    created_at: datetime = Field(default_factory=datetime.now)
    retry_count: int = Field(default=0, ge=0)
    score: int = Field(default=0, ge=0)


class AssignmentResult(BaseModel):
    """割当結果."""

    success: bool
    assignment: Assignment | None = None


AgentSelector = Callable[[Task, list[Agent]], Agent | None]


class AgentRegistry(Registry[Agent]):
    """Agentレジストリ.

    明示的に生成して参照を渡す。テストでは新しいインスタンスを生成する。
    """

    def add(self, agent: Agent) -> Agent:
        """AgentをIDで登録."""
        self.register(agent.id, agent)
        return agent

    @classmethod
    def from_specs(cls, specs: Iterable[dict[str, Any] | Agent]) -> AgentRegistry:
        """登録定義 ``{id, capabilities: [tag]}`` から生成.

        Args:
            specs: Agent定義

        Returns:
            AgentRegistry

        Raises:
            ValueError: 未知の能力タグを含む場合
        """
        registry = cls()
        for spec in specs:
            registry.add(spec if isinstance(spec, Agent) else Agent.model_validate(spec))
        return registry


_DEFAULT_AGENTS: tuple[tuple[str, str, tuple[Capability, ...]], ...] = (
    ("architect-agent", "Architect", (Capability.ARCHITECTURE, Capability.SETUP)),
    ("backend-agent", "Backend Developer", (Capability.BACKEND, Capability.IMPLEMENTATION)),
    ("frontend-agent", "Frontend Developer", (Capability.FRONTEND, Capability.IMPLEMENTATION)),
    ("mobile-agent", "Mobile Developer", (Capability.MOBILE, Capability.IMPLEMENTATION)),
    ("tester-agent", "Tester", (Capability.TESTING, Capability.ANALYSIS)),
    ("docs-agent", "Technical Writer", (Capability.DOCUMENTATION, Capability.SETUP)),
    ("deploy-agent", "DevOps", (Capability.DEPLOYMENT,)),
    ("analyzer-agent", "Code Analyzer", (Capability.ANALYSIS, Capability.TESTING)),
)


def default_agent_registry() -> AgentRegistry:
    """標準Agentプールを持つレジストリを生成."""
    return AgentRegistry.from_specs(
        Agent(id=agent_id, name=name, capabilities=set(caps)) for agent_id, name, caps in _DEFAULT_AGENTS
    )


def required_capabilities(task: Task) -> set[Capability]:
    """タスクの必要能力（カテゴリ由来 + フェーズ由来）."""
    phase = task.phase or infer_phase(task.category)
    return {*capabilities_for(task.category), PHASE_CAPABILITY[phase]}


def score_agent(agent: Agent, task: Task) -> int:
    """Agentの適合度（必要能力との重なり数）."""
    return len(agent.capabilities & required_capabilities(task))


@dataclass
class CoordinatorConfig:
    """調整設定.

    Attributes:
        strategy: 割当戦略
        task_timeout_seconds: 割当の停滞判定時間
    """

    strategy: AssignmentStrategy | str = AssignmentStrategy.CAPABILITY_MATCH
    task_timeout_seconds: float = 300.0

    def __post_init__(self) -> None:
        """設定値を検証."""
        try:
            self.strategy = AssignmentStrategy(self.strategy)
        except ValueError as e:
            msg = f"Unknown assignment strategy: {self.strategy}"
            raise ConfigurationError(msg) from e
        if self.task_timeout_seconds <= 0:
            msg = f"task_timeout_seconds must be > 0, got {self.task_timeout_seconds}"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: PlanFlowSettings) -> CoordinatorConfig:
        """PlanFlowSettings から生成."""
        return cls(
            strategy=settings.assignment_strategy,
            task_timeout_seconds=settings.task_timeout_seconds,
        )


class AgentCoordinator:
    """Agent調整.

    主な機能:
    - 能力スコアによる候補選定
    - 割当戦略（能力一致 / ラウンドロビン / 負荷分散 / カスタム）
    - 完了・失敗報告によるAgent解放とタスク単位のリトライ回数管理
    - 停滞した割当の検出

    Example:
        >>> coordinator = AgentCoordinator(default_agent_registry())
        >>> result = coordinator.assign_task(task)
        >>> coordinator.report_task_completed(task.id)
    """

    def __init__(
        self,
        registry: AgentRegistry | None = None,
        config: CoordinatorConfig | None = None,
        channel: NotificationChannel | None = None,
        clock: Clock | None = None,
        selector: AgentSelector | None = None,
    ) -> None:
        """初期化.

        Args:
            registry: Agentレジストリ（未指定時は標準プール）
            config: 調整設定
            channel: 通知チャネル
            clock: 時刻ソース
            selector: カスタム選択関数（指定時は戦略より優先）
        """
        self._registry = registry if registry is not None else default_agent_registry()
        self._config = config or CoordinatorConfig()
        self._channel = channel or NotificationChannel()
        self._clock = clock or SystemClock()
        self._selector = selector
        self._assignments: dict[str, Assignment] = {}
        self._retry_counts: dict[str, int] = {}
        self._cursor = 0
        self._logger = logging.getLogger(__name__)

    @property
    def registry(self) -> AgentRegistry:
        """Agentレジストリ."""
        return self._registry

    @property
    def config(self) -> CoordinatorConfig:
        """調整設定."""
        return self._config

    def assign_task(self, task: Task | dict[str, Any]) -> AssignmentResult:
        """タスクをAgentに割り当て.

        ``task.agent`` が登録済みかつ空きのAgentを指す場合はそれを優先する。

        Args:
            task: タスク

        Returns:
            AssignmentResult

        Raises:
            TaskAlreadyAssignedError: タスクが既に割当済みの場合
            NoAvailableAgentError: 適合する空きAgentがない場合
        """
        if isinstance(task, dict):
            task = Task.model_validate(task)

        existing = self._assignments.get(task.id)
        if existing is not None:
            raise TaskAlreadyAssignedError(task.id, existing.agent_id)

        agent = self._select_agent(task)
        if agent is None:
            self._logger.warning(f"割当可能なAgentなし: {task.id} (category={task.category or '-'})")
            raise NoAvailableAgentError(task.id)

        agent.status = AgentStatus.BUSY
        agent.current_task_id = task.id
        assignment = Assignment(
            task_id=task.id,
            agent_id=agent.id,
            created_at=self._clock.now(),
            retry_count=self._retry_counts.get(task.id, 0),
            score=score_agent(agent, task),
        )
        self._assignments[task.id] = assignment
        task.agent = agent.id

        self._logger.info(f"タスク割当: {task.id} -> {agent.id} (score={assignment.score})")
        self._channel.publish(
            NotificationTopic.TASK_ASSIGNED,
            {
                "task_id": task.id,
                "agent_id": agent.id,
                "score": assignment.score,
                "retry_count": assignment.retry_count,
            },
            source="coordinator",
        )
        return AssignmentResult(success=True, assignment=assignment)

    def report_task_completed(self, task_id: str, result: dict[str, Any] | None = None) -> Assignment:
        """タスク完了を報告してAgentを解放.

        Raises:
            AssignmentNotFoundError: 割当が存在しない場合
        """
        assignment, agent = self._release(task_id)
        if agent is not None:
            agent.completed_tasks += 1

        self._logger.info(f"タスク完了: {task_id} ({assignment.agent_id})")
        self._channel.publish(
            NotificationTopic.TASK_COMPLETED,
            {"task_id": task_id, "agent_id": assignment.agent_id, "result": result or {}},
            source="coordinator",
        )
        return assignment

    def report_task_failed(self, task_id: str, error: str | None = None) -> Assignment:
        """タスク失敗を報告してAgentを解放.

        タスク単位のリトライ回数を加算する。

        Raises:
            AssignmentNotFoundError: 割当が存在しない場合
        """
        assignment, agent = self._release(task_id)
        if agent is not None:
            agent.failed_tasks += 1
        self._retry_counts[task_id] = self._retry_counts.get(task_id, 0) + 1

        self._logger.warning(f"タスク失敗: {task_id} ({assignment.agent_id}): {error}")
        self._channel.publish(
            NotificationTopic.TASK_FAILED,
            {
                "task_id": task_id,
                "agent_id": assignment.agent_id,
                "error": error,
                "retry_count": self._retry_counts[task_id],
            },
            source="coordinator",
        )
        return assignment

    def release_task(self, task_id: str, reason: str = "") -> Assignment:
        """実行が中断されたタスクの割当を解除（リトライ回数は加算しない）.

        Raises:
            AssignmentNotFoundError: 割当が存在しない場合
        """
        assignment, _ = self._release(task_id)
        self._logger.info(f"割当解除: {task_id} ({assignment.agent_id}) {reason}".rstrip())
        return assignment

    def get_retry_count(self, task_id: str) -> int:
        """タスクの失敗回数を取得."""
        return self._retry_counts.get(task_id, 0)

    def get_agent(self, agent_id: str) -> Agent:
        """Agentを取得.

        Raises:
            AgentNotFoundError: 未登録の場合
        """
        agent = self._registry.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def get_agents(self) -> list[Agent]:
        """全Agentを登録順で取得."""
        return self._registry.list_all()

    def get_available_agents(self) -> list[Agent]:
        """空きAgentを取得."""
        return [agent for agent in self._registry if agent.is_available]

    def get_assignment(self, task_id: str) -> Assignment | None:
        """タスクの割当を取得."""
        return self._assignments.get(task_id)

    def get_active_assignments(self) -> list[Assignment]:
        """有効な割当を取得."""
        return list(self._assignments.values())

    def find_stale_assignments(self, now: datetime | None = None) -> list[Assignment]:
        """停滞判定時間を超えた割当を検出.

        Args:
            now: 判定時刻（未指定時はクロックの現在時刻）

        Returns:
            停滞した割当
        """
        now = now or self._clock.now()
        timeout = self._config.task_timeout_seconds
        stale = [a for a in self._assignments.values() if (now - a.created_at).total_seconds() > timeout]
        for assignment in stale:
            self._logger.warning(f"割当停滞: {assignment.task_id} ({assignment.agent_id})")
            self._channel.publish(
                NotificationTopic.ASSIGNMENT_STALE,
                {
                    "task_id": assignment.task_id,
                    "agent_id": assignment.agent_id,
                    "elapsed_seconds": (now - assignment.created_at).total_seconds(),
                },
                source="coordinator",
            )
        return stale

    def can_execute(self, plan: Plan) -> dict[str, Any]:
        """計画の全タスクを担当可能なAgentが登録されているか確認.

        Returns:
            ``{"feasible": bool, "unassignable": [task_id]}``
        """
        agents = self._registry.list_all()
        unassignable = [
            task.id
            for task in plan.tasks
            if not (task.agent and task.agent in self._registry)
            and not any(score_agent(agent, task) >= 1 for agent in agents)
        ]
        return {"feasible": not unassignable, "unassignable": unassignable}

    def get_stats(self) -> dict[str, Any]:
        """統計情報を取得."""
        agents = self._registry.list_all()
        return {
            "strategy": AssignmentStrategy(self._config.strategy).value,
            "total_agents": len(agents),
            "available_agents": sum(1 for agent in agents if agent.is_available),
            "busy_agents": sum(1 for agent in agents if not agent.is_available),
            "active_assignments": len(self._assignments),
            "completed_tasks": sum(agent.completed_tasks for agent in agents),
            "failed_tasks": sum(agent.failed_tasks for agent in agents),
        }

    def _select_agent(self, task: Task) -> Agent | None:
        """候補Agentから戦略に従って選択."""
        if task.agent:
            preferred = self._registry.get(task.agent)
            if preferred is not None and preferred.is_available:
                return preferred

        scored = [(agent, score_agent(agent, task)) for agent in self._registry if agent.is_available]
        candidates = [(agent, score) for agent, score in scored if score >= 1]
        if not candidates:
            return None

        if self._selector is not None:
            return self._selector(task, [agent for agent, _ in candidates])

        strategy = self._config.strategy
        if strategy == AssignmentStrategy.ROUND_ROBIN:
            agent = candidates[self._cursor % len(candidates)][0]
            self._cursor += 1
            return agent
        if strategy == AssignmentStrategy.LOAD_BALANCED:
            return min(candidates, key=lambda c: (c[0].workload, -c[1]))[0]
        return max(candidates, key=lambda c: c[1])[0]

    def _release(self, task_id: str) -> tuple[Assignment, Agent | None]:
        """割当を削除してAgentを空きに戻す."""
        assignment = self._assignments.pop(task_id, None)
        if assignment is None:
            raise AssignmentNotFoundError(task_id)
        agent = self._registry.get(assignment.agent_id)
        if agent is not None and agent.current_task_id == task_id:
            agent.status = AgentStatus.AVAILABLE
            agent.current_task_id = None
        return assignment, agent


__all__ = [
    "Agent",
    "AgentCoordinator",
    "AgentRegistry",
    "AgentSelector",
    "AgentStatus",
    "Assignment",
    "AssignmentResult",
    "AssignmentStrategy",
    "CoordinatorConfig",
    "default_agent_registry",
    "required_capabilities",
    "score_agent",
]
