"""実行計画 - 依存グラフからの実行グループ生成.

タスク一覧を正規化し、依存関係を検証（循環検出）した上で、
Kahnのアルゴリズムによるトポロジカル層分けを行い、
最大並列数以下の実行グループとチェックポイントを持つ Plan を生成する。

使用例:
    >>> from planflow.orchestration.planner import ExecutionPlanner
    >>>
    >>> planner = ExecutionPlanner()
    >>> plan = planner.create_plan(
    ...     [
    ...         {"id": "t1", "name": "Setup project", "category": "setup"},
    ...         {"id": "t2", "name": "Build API", "category": "backend", "dependencies": ["t1"]},
    ...     ]
    ... )
    >>> [group.task_ids for group in plan.execution_groups]
    [['t1'], ['t2']]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from graphlib import TopologicalSorter
from itertools import groupby
from typing import TYPE_CHECKING, Any

from planflow.core.clock import Clock, SystemClock
from planflow.core.exceptions import (
    CircularDependencyError,
    ConfigurationError,
    DependencyNotSatisfiedError,
    DuplicateTaskError,
    TaskNotFoundError,
    UnknownDependencyError,
)
from planflow.core.notifications import NotificationChannel, NotificationTopic
from planflow.orchestration.models import (
    PHASE_ORDER,
    RESOLVED_STATUSES,
    Checkpoint,
    CheckpointType,
    ExecutionGroup,
    Plan,
    Task,
    TaskStatus,
    infer_agent,
    infer_category,
    infer_phase,
)


if TYPE_CHECKING:
    from planflow.config.settings import PlanFlowSettings


# get_next_tasks で対象外とする状態
_NOT_DISPATCHABLE = frozenset({TaskStatus.COMPLETED, TaskStatus.RUNNING, TaskStatus.SKIPPED})


@dataclass
class PlannerConfig:
    """計画設定.

    Attributes:
        max_concurrency: 実行グループの最大サイズ
        enable_parallel_execution: グループ内並列実行を許可
        checkpoint_frequency: 定期チェックポイント間隔（タスク数、0で無効）
        minutes_per_complexity: 複雑度1あたりの推定所要時間（分）
    """

    max_concurrency: int = 3
    enable_parallel_execution: bool = True
    checkpoint_frequency: int = 0
    minutes_per_complexity: float = 5.0

    def __post_init__(self) -> None:
        """設定値を検証."""
        if self.max_concurrency < 1:
            msg = f"max_concurrency must be >= 1, got {self.max_concurrency}"
            raise ConfigurationError(msg)
        if self.checkpoint_frequency < 0:
            msg = f"checkpoint_frequency must be >= 0, got {self.checkpoint_frequency}"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: PlanFlowSettings) -> PlannerConfig:
        """PlanFlowSettings から生成."""
        return cls(
            max_concurrency=settings.max_concurrency,
            enable_parallel_execution=settings.enable_parallel_execution,
            checkpoint_frequency=settings.checkpoint_frequency,
        )


class ExecutionPlanner:
    """実行計画作成.

    主な機能:
    - タスク正規化（ID・カテゴリ・フェーズ・推奨Agentの補完）
    - 依存関係検証と循環検出
    - トポロジカル層分けと実行グループ分割
    - フェーズ遷移・定期・最終チェックポイント

    Example:
        >>> planner = ExecutionPlanner(PlannerConfig(max_concurrency=2))
        >>> plan = planner.create_plan([{"id": f"t{i}"} for i in range(4)])
        >>> [group.size for group in plan.execution_groups]
        [2, 2]
    """

    def __init__(
        self,
        config: PlannerConfig | None = None,
        channel: NotificationChannel | None = None,
        clock: Clock | None = None,
    ) -> None:
        """初期化.

        Args:
            config: 計画設定
            channel: 通知チャネル
            clock: 時刻ソース
        """
        self._config = config or PlannerConfig()
        self._channel = channel or NotificationChannel()
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger(__name__)

    @property
    def config(self) -> PlannerConfig:
        """計画設定."""
        return self._config

    def create_plan(
        self,
        tasks: Iterable[dict[str, Any] | Task],
        max_concurrency: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Plan:
        """実行計画を作成.

        Args:
            tasks: タスク定義（dict または Task）
            max_concurrency: グループ最大サイズ（未指定時は設定値）
            metadata: 計画の付加情報

        Returns:
            Plan

        Raises:
            DuplicateTaskError: タスクIDが重複している場合
            UnknownDependencyError: 存在しないタスクに依存している場合
            CircularDependencyError: 依存関係が循環している場合
        """
        limit = self._config.max_concurrency if max_concurrency is None else max_concurrency
        if limit < 1:
            msg = f"max_concurrency must be >= 1, got {limit}"
            raise ConfigurationError(msg)

        normalized = self._normalize_all(list(tasks))
        self._logger.info(f"計画作成開始: {len(normalized)}タスク, 最大並列数={limit}")

        self._validate(normalized)
        cycle = self._find_cycle(normalized)
        if cycle is not None:
            self._logger.error(f"循環依存を検出: {' -> '.join(cycle)}")
            raise CircularDependencyError(cycle)

        layers = self._build_layers(normalized)
        groups = self._build_groups(layers, limit)
        by_id = {task.id: task for task in normalized}
        ordered = [by_id[task_id] for group in groups for task_id in group.task_ids]

        plan = Plan(
            tasks=ordered,
            execution_groups=groups,
            checkpoints=self._build_checkpoints(groups),
            dependents=self._build_dependents(ordered),
            max_concurrency=limit,
            estimated_duration_seconds=self._estimate_duration(groups, by_id),
            created_at=self._clock.now(),
            metadata=dict(metadata or {}),
        )

        self._logger.info(
            f"計画作成完了: {plan.id}, {len(groups)}グループ, "
            f"{len(plan.checkpoints)}チェックポイント, 推定{plan.estimated_duration_seconds:.0f}秒"
        )
        self._channel.publish(
            NotificationTopic.PLAN_CREATED,
            {
                "plan_id": plan.id,
                "task_count": len(plan.tasks),
                "group_count": len(groups),
                "estimated_duration_seconds": plan.estimated_duration_seconds,
            },
            source="planner",
        )
        return plan

    def get_next_tasks(self, plan: Plan, completed_ids: Iterable[str]) -> list[Task]:
        """実行可能なタスクを取得.

        依存関係が全て ``completed_ids`` に含まれ、自身は未完了・未実行のタスクを
        優先度順（同順位は計画順）で返す。計画は変更しない。

        Args:
            plan: 実行計画
            completed_ids: 完了済みタスクID

        Returns:
            実行可能なタスク
        """
        done = set(completed_ids)
        ready = [
            task
            for task in plan.tasks
            if task.id not in done
            and task.status not in _NOT_DISPATCHABLE
            and all(dep in done for dep in task.dependencies)
        ]
        return sorted(ready, key=lambda task: task.priority)

    def update_task_status(
        self,
        plan: Plan,
        task_id: str,
        status: TaskStatus | str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Task:
        """タスク状態を更新.

        Args:
            plan: 実行計画
            task_id: タスクID
            status: 新しい状態
            result: 実行結果（COMPLETED時）
            error: エラー内容（FAILED時）

        Returns:
            更新後のタスク

        Raises:
            TaskNotFoundError: タスクが存在しない場合
            DependencyNotSatisfiedError: 依存未解決のまま COMPLETED にしようとした場合
        """
        task = plan.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        new_status = TaskStatus(status)
        if new_status == TaskStatus.COMPLETED:
            pending = [
                dep
                for dep in task.dependencies
                if (dep_task := plan.get_task(dep)) is None or dep_task.status not in RESOLVED_STATUSES
            ]
            if pending:
                raise DependencyNotSatisfiedError(task_id, pending)

        now = self._clock.now()
        task.status = new_status
        if new_status == TaskStatus.RUNNING:
            task.started_at = now
            task.error = None
        elif new_status == TaskStatus.COMPLETED:
            task.completed_at = now
            task.result = result
            task.error = None
        elif new_status == TaskStatus.FAILED:
            task.failed_at = now
            task.error = error

        self._logger.debug(f"タスク状態更新: {task_id} -> {new_status.value}")
        return task

    def get_execution_groups(self, plan: Plan) -> list[ExecutionGroup]:
        """実行グループを order 順で取得."""
        return sorted(plan.execution_groups, key=lambda group: group.order)

    def _normalize_all(self, raw_tasks: list[dict[str, Any] | Task]) -> list[Task]:
        """全タスクを正規化（生成IDは明示IDと衝突しない連番）."""
        definitions = [self._as_dict(raw) for raw in raw_tasks]
        taken = {str(data["id"]) for data in definitions if data.get("id") is not None}
        counter = 0
        for data in definitions:
            if data.get("id") is not None:
                continue
            counter += 1
            while f"task-{counter}" in taken:
                counter += 1
            data["id"] = f"task-{counter}"
            taken.add(data["id"])
        return [self._normalize(data, i) for i, data in enumerate(definitions, start=1)]

    @staticmethod
    def _as_dict(raw: dict[str, Any] | Task) -> dict[str, Any]:
        if isinstance(raw, Task):
            return raw.model_dump(exclude_unset=True)
        if isinstance(raw, dict):
            return dict(raw)
        msg = f"Task definition must be a dict or Task, got {type(raw).__name__}"
        raise TypeError(msg)

    def _normalize(self, data: dict[str, Any], index: int) -> Task:
        """タスク定義を正規化（名前・カテゴリ・フェーズ・推奨Agentを補完）."""
        data["id"] = str(data["id"])
        data["name"] = data.get("name") or f"Task {index}"
        if not data.get("category"):
            data["category"] = infer_category(f"{data['name']} {data.get('description', '')}")
        data["status"] = TaskStatus.PENDING

        task = Task.model_validate(data)
        if task.phase is None:
            task.phase = infer_phase(task.category)
        if task.agent is None:
            task.agent = infer_agent(task.category)
        return task

    def _validate(self, tasks: list[Task]) -> None:
        """ID重複と未知の依存を検証."""
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                raise DuplicateTaskError(task.id)
            seen.add(task.id)
        for task in tasks:
            for dep in task.dependencies:
                if dep not in seen:
                    raise UnknownDependencyError(task.id, dep)

    def _find_cycle(self, tasks: list[Task]) -> list[str] | None:
        """再帰スタック付きDFSで循環を検出.

        Returns:
            循環経路（先頭IDを末尾に繰り返す）、循環がなければ None
        """
        graph = {task.id: task.dependencies for task in tasks}
        visited: set[str] = set()

        for root in graph:
            if root in visited:
                continue
            path = [root]
            on_path = {root}
            stack: list[tuple[str, Iterator[str]]] = [(root, iter(graph[root]))]
            while stack:
                node, deps = stack[-1]
                dep = next(deps, None)
                if dep is None:
                    stack.pop()
                    path.pop()
                    on_path.discard(node)
                    visited.add(node)
                    continue
                if dep in on_path:
                    return [*path[path.index(dep) :], dep]
                if dep not in visited:
                    stack.append((dep, iter(graph[dep])))
                    path.append(dep)
                    on_path.add(dep)
        return None

    def _build_layers(self, tasks: list[Task]) -> list[list[Task]]:
        """Kahnのアルゴリズムで層分け（層内はフェーズ・優先度・入力順）."""
        by_id = {task.id: task for task in tasks}
        position = {task.id: i for i, task in enumerate(tasks)}
        sorter = TopologicalSorter({task.id: task.dependencies for task in tasks})
        sorter.prepare()
        layers: list[list[Task]] = []

        while sorter.is_active():
            ready_ids = sorter.get_ready()
            ready = sorted(
                (by_id[task_id] for task_id in ready_ids),
                key=lambda t: (PHASE_ORDER[t.phase], t.priority, position[t.id]),
            )
            layers.append(ready)
            sorter.done(*ready_ids)
        return layers

    def _build_groups(self, layers: list[list[Task]], limit: int) -> list[ExecutionGroup]:
        """層をフェーズごとに分け、最大サイズ以下のグループに分割."""
        groups: list[ExecutionGroup] = []
        for layer in layers:
            for phase, phase_tasks in groupby(layer, key=lambda t: t.phase):
                items = list(phase_tasks)
                for start in range(0, len(items), limit):
                    chunk = items[start : start + limit]
                    groups.append(
                        ExecutionGroup(
                            order=len(groups),
                            phase=phase,
                            task_ids=[task.id for task in chunk],
                            can_run_in_parallel=self._config.enable_parallel_execution and len(chunk) > 1,
                        )
                    )
        return groups

    def _build_checkpoints(self, groups: list[ExecutionGroup]) -> list[Checkpoint]:
        """フェーズ遷移・定期・最終チェックポイントを生成."""
        checkpoints: list[Checkpoint] = []
        frequency = self._config.checkpoint_frequency
        next_mark = frequency
        task_count = 0

        def add(type_: CheckpointType, group: ExecutionGroup, description: str) -> None:
            checkpoints.append(
                Checkpoint(
                    id=f"cp-{len(checkpoints) + 1}",
                    type=type_,
                    after_order=group.order,
                    phase=group.phase,
                    description=description,
                )
            )

        for current, following in zip(groups, [*groups[1:], None]):
            task_count += current.size
            if following is None:
                add(CheckpointType.FINAL, current, "All execution groups finished")
                break
            if current.phase != following.phase:
                add(
                    CheckpointType.PHASE_TRANSITION,
                    current,
                    f"Phase transition: {current.phase.value} -> {following.phase.value}",
                )
            if frequency and task_count >= next_mark:
                add(CheckpointType.PERIODIC, current, f"{task_count} tasks dispatched")
                while next_mark <= task_count:
                    next_mark += frequency
        return checkpoints

    def _build_dependents(self, tasks: list[Task]) -> dict[str, list[str]]:
        """逆依存グラフを構築."""
        dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
        for task in tasks:
            for dep in task.dependencies:
                dependents[dep].append(task.id)
        return dependents

    def _estimate_duration(self, groups: list[ExecutionGroup], tasks: dict[str, Task]) -> float:
        """各グループの最長タスクの合計で所要時間を推定."""
        seconds_per_point = self._config.minutes_per_complexity * 60
        total = 0.0
        for group in groups:
            estimates = []
            for task_id in group.task_ids:
                estimate = tasks[task_id].complexity * seconds_per_point
                tasks[task_id].metadata["estimated_seconds"] = estimate
                estimates.append(estimate)
            total += max(estimates, default=0.0)
        return total


__all__ = ["ExecutionPlanner", "PlannerConfig"]
