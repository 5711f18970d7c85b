"""実行計画データモデル.

Task / ExecutionGroup / Checkpoint / Plan と、カテゴリ文字列から
能力タグ・フェーズ・推奨Agentを導出する固定ルックアップを定義する。

カテゴリは自由形式の文字列だが、判定は全て列挙型 ``Capability`` と
``TaskPhase`` に変換してから行う。
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr, field_validator


class TaskPhase(str, Enum):
    """タスクフェーズ（スケジューリング順）."""

    SETUP = "setup"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    DEPLOYMENT = "deployment"


PHASE_ORDER: dict[TaskPhase, int] = {phase: i for i, phase in enumerate(TaskPhase)}


class TaskPriority(IntEnum):
    """タスク優先度（小さいほど先に実行）."""

    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    OPTIONAL = 5


class TaskStatus(str, Enum):
    """タスク状態."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


RESOLVED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


class Capability(str, Enum):
    """Agent能力タグ."""

    SETUP = "setup"
    ARCHITECTURE = "architecture"
    BACKEND = "backend"
    FRONTEND = "frontend"
    MOBILE = "mobile"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    DEPLOYMENT = "deployment"
    ANALYSIS = "analysis"

    @classmethod
    def parse(cls, tag: str | Capability) -> Capability:
        """タグ文字列を能力に変換.

        Args:
            tag: 列挙値または別名（"deploy", "test", "docs" など）

        Returns:
            Capability

        Raises:
            ValueError: 未知のタグの場合
        """
        if isinstance(tag, Capability):
            return tag
        key = str(tag).strip().lower()
        if key in cls._value2member_map_:
            return cls(key)
        if key in _CAPABILITY_ALIASES:
            return _CAPABILITY_ALIASES[key]
        msg = f"Unknown capability tag: {tag}"
        raise ValueError(msg)


_CAPABILITY_ALIASES: dict[str, Capability] = {
    "config": Capability.SETUP,
    "init": Capability.SETUP,
    "architect": Capability.ARCHITECTURE,
    "design": Capability.ARCHITECTURE,
    "blueprint": Capability.ARCHITECTURE,
    "api": Capability.BACKEND,
    "server": Capability.BACKEND,
    "database": Capability.BACKEND,
    "ui": Capability.FRONTEND,
    "react": Capability.FRONTEND,
    "dashboard": Capability.FRONTEND,
    "flutter": Capability.MOBILE,
    "impl": Capability.IMPLEMENTATION,
    "test": Capability.TESTING,
    "tests": Capability.TESTING,
    "qa": Capability.TESTING,
    "docs": Capability.DOCUMENTATION,
    "doc": Capability.DOCUMENTATION,
    "deploy": Capability.DEPLOYMENT,
    "docker": Capability.DEPLOYMENT,
    "devops": Capability.DEPLOYMENT,
    "release": Capability.DEPLOYMENT,
    "security": Capability.ANALYSIS,
    "review": Capability.ANALYSIS,
}

# 判定順（カテゴリ推論では最初にマッチしたものを採用）
_CAPABILITY_PATTERNS: tuple[tuple[Capability, re.Pattern[str]], ...] = (
    (Capability.TESTING, re.compile(r"\btest|\bspecs?\b|\bcoverage|\bqa\b|\be2e\b")),
    (Capability.DEPLOYMENT, re.compile(r"\bdeploy|\bdocker|\bcontainer|\brelease|\bdevops|\bci\b")),
    (Capability.DOCUMENTATION, re.compile(r"\bdoc(?:s|umentation)?\b|\breadme")),
    (Capability.ARCHITECTURE, re.compile(r"\barchitect|\bdesign|\bblueprint")),
    (Capability.SETUP, re.compile(r"\bsetup|\bconfig|\binit|\bbootstrap|\bscaffold")),
    (Capability.BACKEND, re.compile(r"\bbackend|\bapi\b|\bserver|\bendpoint|\bdatabase|\bnode")),
    (Capability.FRONTEND, re.compile(r"\bfrontend|\bui\b|\breact|\bdashboard|\badmin|\bcomponent|\bpage")),
    (Capability.MOBILE, re.compile(r"\bmobile|\bflutter|\bios\b|\bandroid")),
    (Capability.ANALYSIS, re.compile(r"\bsecurity|\banalysis|\breview|\baudit")),
)

PHASE_CAPABILITY: dict[TaskPhase, Capability] = {
    TaskPhase.SETUP: Capability.SETUP,
    TaskPhase.IMPLEMENTATION: Capability.IMPLEMENTATION,
    TaskPhase.TESTING: Capability.TESTING,
    TaskPhase.DEPLOYMENT: Capability.DEPLOYMENT,
}

SUGGESTED_AGENTS: dict[Capability, str] = {
    Capability.TESTING: "tester-agent",
    Capability.DEPLOYMENT: "deploy-agent",
    Capability.DOCUMENTATION: "docs-agent",
    Capability.ARCHITECTURE: "architect-agent",
    Capability.SETUP: "architect-agent",
    Capability.BACKEND: "backend-agent",
    Capability.FRONTEND: "frontend-agent",
    Capability.MOBILE: "mobile-agent",
    Capability.ANALYSIS: "analyzer-agent",
}


def capabilities_for(category: str | None) -> list[Capability]:
    """カテゴリ文字列にマッチする能力を判定順で返す."""
    text = (category or "").strip().lower()
    if not text:
        return []
    matched: list[Capability] = []
    if text in Capability._value2member_map_ or text in _CAPABILITY_ALIASES:
        matched.append(Capability.parse(text))
    for capability, pattern in _CAPABILITY_PATTERNS:
        if capability not in matched and pattern.search(text):
            matched.append(capability)
    return matched


def infer_category(text: str) -> str:
    """名前・説明文からカテゴリを推論（該当なしは implementation）."""
    lowered = text.lower()
    for capability, pattern in _CAPABILITY_PATTERNS:
        if pattern.search(lowered):
            return capability.value
    return Capability.IMPLEMENTATION.value


def infer_phase(category: str | None) -> TaskPhase:
    """カテゴリからフェーズを推論."""
    capabilities = set(capabilities_for(category))
    if capabilities & {Capability.SETUP, Capability.ARCHITECTURE}:
        return TaskPhase.SETUP
    if capabilities & {Capability.TESTING, Capability.ANALYSIS}:
        return TaskPhase.TESTING
    if Capability.DEPLOYMENT in capabilities:
        return TaskPhase.DEPLOYMENT
    return TaskPhase.IMPLEMENTATION


def infer_agent(category: str | None) -> str | None:
    """カテゴリから推奨Agent IDを推論."""
    for capability in capabilities_for(category):
        if capability in SUGGESTED_AGENTS:
            return SUGGESTED_AGENTS[capability]
    return None


class Task(BaseModel):
    """計画タスク.

    Attributes:
        id: タスクID
        name: タスク名
        description: 説明
        category: 自由形式カテゴリ（フェーズ・Agent推論に使用）
        phase: フェーズ（計画前は None）
        priority: 優先度
        dependencies: 依存タスクID（重複なし、順序保持）
        complexity: 複雑度（進捗の重み）
        status: 状態
        agent: 割当済み／推奨Agent ID
        started_at: 開始時刻
        completed_at: 完了時刻
        failed_at: 失敗時刻
        result: 実行結果
        error: エラー内容
        metadata: 付加情報
    """

    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:8]}")
    name: str = Field(default="", description="タスク名")
    description: str = Field(default="", description="説明")
    category: str = Field(default="", description="カテゴリ")
    phase: TaskPhase | None = Field(default=None)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    dependencies: list[str] = Field(default_factory=list)
    complexity: float = Field(default=1.0, gt=0)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    agent: str | None = Field(default=None)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    failed_at: datetime | None = Field(default=None)
    result: dict[str, Any] | None = Field(default=None)
    error: str | None = Field(default=None)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("phase", mode="before")
    @classmethod
    def _parse_phase(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Any) -> Any:
        if value is None:
            return TaskPriority.MEDIUM
        if isinstance(value, str) and not value.strip().isdigit():
            name = value.strip().upper()
            if name not in TaskPriority.__members__:
                msg = f"Unknown priority: {value}"
                raise ValueError(msg)
            return TaskPriority[name]
        if isinstance(value, str):
            return int(value)
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return list(dict.fromkeys(value))

    @field_validator("complexity", mode="before")
    @classmethod
    def _default_complexity(cls, value: Any) -> Any:
        return 1.0 if value is None else value

    @property
    def is_resolved(self) -> bool:
        """COMPLETED または SKIPPED."""
        return self.status in RESOLVED_STATUSES


class ExecutionGroup(BaseModel):
    """実行グループ（トポロジカル順序の1レイヤー片）."""

    order: int = Field(..., ge=0)
    phase: TaskPhase = Field(default=TaskPhase.IMPLEMENTATION)
    task_ids: list[str] = Field(default_factory=list)
    can_run_in_parallel: bool = Field(default=True)

    @property
    def size(self) -> int:
        """グループ内タスク数."""
        return len(self.task_ids)


class CheckpointType(str, Enum):
    """チェックポイント種別."""

    PHASE_TRANSITION = "phase_transition"
    PERIODIC = "periodic"
    FINAL = "final"


class Checkpoint(BaseModel):
    """チェックポイント（グループ境界の報告・ゲート用マーカー）."""

    id: str
    type: CheckpointType
    after_order: int = Field(..., ge=0)
    phase: TaskPhase | None = None
    description: str = ""


class PlanStatus(str, Enum):
    """計画実行状態."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Plan(BaseModel):
    """実行計画.

    生成後にタスクが追加されることはなく、タスク状態のみ更新される。

    Attributes:
        id: 計画ID
        tasks: タスク（トポロジカル順）
        execution_groups: 実行グループ（order昇順）
        checkpoints: チェックポイント
        status: 計画実行状態
        dependents: 逆依存グラフ（task_id -> 依存元タスクID）
        max_concurrency: グループ最大サイズ
        estimated_duration_seconds: 推定所要時間
        created_at: 作成時刻
        metadata: 付加情報
    """

    id: str = Field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:8]}")
    tasks: list[Task] = Field(default_factory=list)
    execution_groups: list[ExecutionGroup] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    status: PlanStatus = Field(default=PlanStatus.PENDING)
    dependents: dict[str, list[str]] = Field(default_factory=dict)
    max_concurrency: int = Field(default=3, ge=1)
    estimated_duration_seconds: float = Field(default=0.0, ge=0.0)
    created_at: datetime = Field(default_factory=datetime.now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    _index: dict[str, Task] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        """タスク索引を構築."""
        self._index = {task.id: task for task in self.tasks}

    def get_task(self, task_id: str) -> Task | None:
        """タスクを取得."""
        return self._index.get(task_id)

    def get_group(self, order: int) -> ExecutionGroup | None:
        """order でグループを取得."""
        for group in self.execution_groups:
            if group.order == order:
                return group
        return None

    def group_of(self, task_id: str) -> ExecutionGroup | None:
        """タスクが属するグループを取得."""
        for group in self.execution_groups:
            if task_id in group.task_ids:
                return group
        return None

    def completed_ids(self) -> set[str]:
        """COMPLETED タスクID."""
        return {task.id for task in self.tasks if task.status == TaskStatus.COMPLETED}

    def resolved_ids(self) -> set[str]:
        """COMPLETED または SKIPPED タスクID."""
        return {task.id for task in self.tasks if task.is_resolved}

    def is_group_terminal(self, order: int) -> bool:
        """グループ内の全タスクが COMPLETED/SKIPPED か."""
        group = self.get_group(order)
        if group is None:
            return False
        return all(self._index[task_id].is_resolved for task_id in group.task_ids)

    def next_group(self) -> ExecutionGroup | None:
        """未完了の最初のグループ（全て完了なら None）."""
        for group in self.execution_groups:
            if not self.is_group_terminal(group.order):
                return group
        return None

    def tasks_by_phase(self) -> dict[TaskPhase, list[Task]]:
        """フェーズ別にタスクをまとめる（フェーズ順）."""
        grouped: dict[TaskPhase, list[Task]] = {}
        for task in sorted(self.tasks, key=lambda t: PHASE_ORDER[t.phase or TaskPhase.IMPLEMENTATION]):
            grouped.setdefault(task.phase or TaskPhase.IMPLEMENTATION, []).append(task)
        return grouped

    def to_dict(self) -> dict[str, Any]:
        """外部インターフェース形式（camelCase）に変換."""
        return {
            "id": self.id,
            "status": self.status.value,
            "tasks": [
                {
                    "id": task.id,
                    "name": task.name,
                    "category": task.category,
                    "phase": task.phase.value if task.phase else None,
                    "priority": int(task.priority),
                    "dependencies": list(task.dependencies),
                    "complexity": task.complexity,
                    "status": task.status.value,
                    "agent": task.agent,
                    "completedAt": task.completed_at.isoformat() if task.completed_at else None,
                }
                for task in self.tasks
            ],
            "executionGroups": [
                {
                    "order": group.order,
                    "phase": group.phase.value,
                    "tasks": list(group.task_ids),
                    "canRunInParallel": group.can_run_in_parallel,
                }
                for group in self.execution_groups
            ],
            "checkpoints": [
                {"id": cp.id, "type": cp.type.value, "afterOrder": cp.after_order}
                for cp in self.checkpoints
            ],
            "estimatedDurationSeconds": self.estimated_duration_seconds,
        }
