"""計画オーケストレーター - 実行計画の駆動ループ.

ExecutionPlanner / AgentCoordinator / ProgressTracker / IterationManager を
1つの通知チャネルとクロックで束ね、実行グループ単位で計画を進める。

- グループ内のタスクは ``asyncio.gather`` で並行実行
- 空きAgentがない場合は次回試行時刻まで待って再割当（上限あり）
- 失敗タスクは線形遅延で再実行（上限あり）
- 失敗タスクが残ると次のグループへ進まない（``skip_failed_tasks`` でスキップ可）

使用例:
    >>> orchestrator = PlanOrchestrator.from_settings(get_settings())
    >>> plan = orchestrator.create_plan(tasks)
    >>> result = await orchestrator.execute_plan(plan, execute_task)
    >>> result.status
    <PlanStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from planflow.config.settings import PlanFlowSettings
from planflow.core.clock import Clock, SystemClock, sleep_until
from planflow.core.exceptions import ConfigurationError, CoordinationError, NoAvailableAgentError
from planflow.core.notifications import Notification, NotificationChannel, NotificationTopic
from planflow.orchestration.coordinator import AgentCoordinator, AgentRegistry, Assignment, CoordinatorConfig
from planflow.orchestration.iteration import (
    IterationConfig,
    IterationManager,
    IterationResult,
    PhaseCallback,
    PhaseOutcome,
)
from planflow.orchestration.models import Plan, PlanStatus, Task, TaskStatus
from planflow.orchestration.planner import ExecutionPlanner, PlannerConfig
from planflow.orchestration.progress import Blocker, ProgressSnapshot, ProgressTracker, TrackerConfig


TaskExecutor = Callable[[Task, Assignment], Any]


@dataclass
class OrchestratorConfig:
    """駆動ループ設定.

    Attributes:
        max_task_retries: タスク単位の最大再実行回数
        task_retry_delay_seconds: 再実行の待機時間（n回目は n 倍）
        assignment_attempts: Agent空き待ちの最大試行回数
        assignment_wait_seconds: 割当再試行までの待機時間
        skip_failed_tasks: 失敗タスクをスキップして続行
    """

    max_task_retries: int = 3
    task_retry_delay_seconds: float = 5.0
    assignment_attempts: int = 10
    assignment_wait_seconds: float = 1.0
    skip_failed_tasks: bool = False

    def __post_init__(self) -> None:
        """設定値を検証."""
        if self.max_task_retries < 0:
            msg = f"max_task_retries must be >= 0, got {self.max_task_retries}"
            raise ConfigurationError(msg)
        if self.assignment_attempts < 1:
            msg = f"assignment_attempts must be >= 1, got {self.assignment_attempts}"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: PlanFlowSettings) -> OrchestratorConfig:
        """PlanFlowSettings から生成."""
        return cls(
            max_task_retries=settings.max_task_retries,
            task_retry_delay_seconds=settings.task_retry_delay_seconds,
            assignment_attempts=settings.assignment_attempts,
            assignment_wait_seconds=settings.assignment_wait_seconds,
            skip_failed_tasks=settings.skip_failed_tasks,
        )


class ExecutionResult(BaseModel):
    """計画実行結果."""

    plan_id: str
    status: PlanStatus
    success: bool = False
    completed_task_ids: list[str] = Field(default_factory=list)
    failed_task_ids: list[str] = Field(default_factory=list)
    skipped_task_ids: list[str] = Field(default_factory=list)
    blocked_task_ids: list[str] = Field(default_factory=list)
    checkpoints_reached: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    error: str | None = None


class PlanOrchestrator:
    """計画オーケストレーター.

    一時停止・再開・取消は協調的で、タスクの割当前に確認される。
    """

    def __init__(
        self,
        planner: ExecutionPlanner,
        coordinator: AgentCoordinator,
        tracker: ProgressTracker,
        iterations: IterationManager,
        config: OrchestratorConfig | None = None,
        channel: NotificationChannel | None = None,
        clock: Clock | None = None,
    ) -> None:
        """初期化.

        Args:
            planner: 実行計画
            coordinator: Agent調整
            tracker: 進捗追跡
            iterations: 反復管理
            config: 駆動ループ設定
            channel: 通知チャネル（各コンポーネントと共有）
            clock: 時刻ソース
        """
        self._planner = planner
        self._coordinator = coordinator
        self._tracker = tracker
        self._iterations = iterations
        self._config = config or OrchestratorConfig()
        self._channel = channel or NotificationChannel()
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger(__name__)

        self._plan: Plan | None = None
        self._running = False
        self._cancelled = False
        self._resume = asyncio.Event()
        self._resume.set()
        self._checkpoints_reached: list[str] = []
        self._counters = {"blockers_detected": 0, "escalations": 0}

        self._channel.subscribe(NotificationTopic.BLOCKER_DETECTED, self._on_blocker)
        self._channel.subscribe(NotificationTopic.ITERATION_ESCALATED, self._on_escalation)

    @classmethod
    def from_settings(
        cls,
        settings: PlanFlowSettings | None = None,
        registry: AgentRegistry | None = None,
        channel: NotificationChannel | None = None,
        clock: Clock | None = None,
    ) -> PlanOrchestrator:
        """設定から全コンポーネントを構築.

        Args:
            settings: PlanFlow設定（未指定時は既定値）
            registry: Agentレジストリ（未指定時は標準プール）
            channel: 共有通知チャネル
            clock: 共有時刻ソース

        Returns:
            PlanOrchestrator
        """
        settings = settings or PlanFlowSettings()
        channel = channel or NotificationChannel()
        clock = clock or SystemClock()
        return cls(
            planner=ExecutionPlanner(PlannerConfig.from_settings(settings), channel, clock),
            coordinator=AgentCoordinator(registry, CoordinatorConfig.from_settings(settings), channel, clock),
            tracker=ProgressTracker(TrackerConfig.from_settings(settings), channel, clock),
            iterations=IterationManager(IterationConfig.from_settings(settings), channel, clock),
            config=OrchestratorConfig.from_settings(settings),
            channel=channel,
            clock=clock,
        )

    @property
    def planner(self) -> ExecutionPlanner:
        """実行計画."""
        return self._planner

    @property
    def coordinator(self) -> AgentCoordinator:
        """Agent調整."""
        return self._coordinator

    @property
    def tracker(self) -> ProgressTracker:
        """進捗追跡."""
        return self._tracker

    @property
    def iterations(self) -> IterationManager:
        """反復管理."""
        return self._iterations

    @property
    def channel(self) -> NotificationChannel:
        """共有通知チャネル."""
        return self._channel

    def create_plan(self, tasks: Iterable[dict[str, Any] | Task], max_concurrency: int | None = None) -> Plan:
        """計画を作成し、進捗追跡を初期化."""
        plan = self._planner.create_plan(tasks, max_concurrency=max_concurrency)
        self._tracker.initialize_plan(plan)
        self._plan = plan

        feasibility = self._coordinator.can_execute(plan)
        if not feasibility["feasible"]:
            self._logger.warning(f"担当可能なAgentがいないタスク: {feasibility['unassignable']}")
        return plan

    async def execute_plan(self, plan: Plan, execute_task: TaskExecutor) -> ExecutionResult:
        """計画を実行グループ順に実行.

        Args:
            plan: 実行計画
            execute_task: ``(task, assignment)`` を受け取る実行コールバック。
                ``{"success": bool, "error": str}`` 形式の dict を返す。

        Returns:
            ExecutionResult

        Raises:
            CoordinationError: 既に実行中の場合
        """
        if self._running:
            msg = "Plan execution already in progress"
            raise CoordinationError(msg)

        self._running = True
        self._cancelled = False
        self._resume.set()
        self._checkpoints_reached = []
        self._plan = plan
        if self._tracker.plan_id != plan.id:
            self._tracker.initialize_plan(plan)

        started = self._clock.now()
        blocked: list[str] = []
        plan.status = PlanStatus.RUNNING
        self._logger.info(f"計画実行開始: {plan.id} ({len(plan.execution_groups)}グループ)")
        self._channel.publish(
            NotificationTopic.EXECUTION_STARTED,
            {"plan_id": plan.id, "group_count": len(plan.execution_groups)},
            source="orchestrator",
        )

        try:
            for group in self._planner.get_execution_groups(plan):
                await self._resume.wait()
                if self._cancelled:
                    break
                if not plan.is_group_terminal(group.order):
                    tasks = [plan.get_task(task_id) for task_id in group.task_ids]
                    pending = [task for task in tasks if task is not None and not task.is_resolved]
                    await self._run_group(plan, pending, execute_task)
                    if self._cancelled:
                        break

                    failed = [tid for tid in group.task_ids if plan.get_task(tid).status == TaskStatus.FAILED]
                    if failed and not self._config.skip_failed_tasks:
                        blocked = failed
                        self._logger.error(f"グループ{group.order}で失敗タスクあり、実行停止: {failed}")
                        break
                    for task_id in failed:
                        self._skip_task(plan, task_id)

                self._reach_checkpoints(plan, group.order)
        except BaseException:
            plan.status = PlanStatus.CANCELLED
            self._logger.warning(f"計画実行中断: {plan.id}")
            raise
        finally:
            self._running = False

        if self._cancelled:
            plan.status = PlanStatus.CANCELLED
        elif blocked:
            plan.status = PlanStatus.FAILED
        else:
            plan.status = PlanStatus.COMPLETED

        result = self._build_result(plan, blocked, started)
        self._logger.info(f"計画実行終了: {plan.id} status={plan.status.value}")
        self._channel.publish(
            NotificationTopic.EXECUTION_COMPLETED if result.success else NotificationTopic.EXECUTION_FAILED,
            {"plan_id": plan.id, "status": plan.status.value, "blocked_task_ids": blocked},
            source="orchestrator",
        )
        return result

    def pause_execution(self) -> None:
        """実行を一時停止（実行中タスクは完了まで継続）."""
        if self._resume.is_set():
            self._resume.clear()
            self._logger.info("実行一時停止")
            self._channel.publish(NotificationTopic.EXECUTION_PAUSED, self._plan_payload(), source="orchestrator")

    def resume_execution(self) -> None:
        """一時停止を解除."""
        if not self._resume.is_set():
            self._resume.set()
            self._logger.info("実行再開")
            self._channel.publish(NotificationTopic.EXECUTION_RESUMED, self._plan_payload(), source="orchestrator")

    def cancel_execution(self) -> None:
        """実行を取り消す（未割当タスクは実行しない）."""
        self._cancelled = True
        self._resume.set()
        self._logger.info("実行取消")

    @property
    def is_paused(self) -> bool:
        """一時停止中か."""
        return not self._resume.is_set()

    async def run_iteration(
        self,
        plan_id: str,
        build_fn: PhaseCallback,
        test_fn: PhaseCallback,
        fix_fn: PhaseCallback | None = None,
    ) -> IterationResult:
        """Build → Test → Fix → Verify サイクルを実行."""
        iteration = self._iterations.start_iteration(plan_id)
        return await self._iterations.run_full_cycle(iteration.id, build_fn=build_fn, test_fn=test_fn, fix_fn=fix_fn)

    def report_blocker(
        self,
        description: str,
        task_ids: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> Blocker:
        """ブロッカーを手動登録."""
        return self._tracker.add_blocker(description, task_ids=task_ids, details=details)

    def resolve_blocker(self, blocker_id: str, resolution: str = "") -> Blocker | None:
        """ブロッカーを解決."""
        return self._tracker.resolve_blocker(blocker_id, resolution)

    def get_progress(self) -> ProgressSnapshot:
        """進捗スナップショットを取得."""
        return self._tracker.get_progress()

    def get_status(self) -> dict[str, Any]:
        """実行状態を取得."""
        plan = self._plan
        next_group = plan.next_group() if plan else None
        return {
            "plan_id": plan.id if plan else None,
            "plan_status": plan.status.value if plan else None,
            "running": self._running,
            "paused": self.is_paused,
            "cancelled": self._cancelled,
            "current_group": next_group.order if next_group else None,
            "progress": self._tracker.get_progress().percentage,
            "active_assignments": [a.model_dump(mode="json") for a in self._coordinator.get_active_assignments()],
        }

    def get_metrics(self) -> dict[str, Any]:
        """実行メトリクスを取得."""
        return {
            "progress": self._tracker.get_report(),
            "coordinator": self._coordinator.get_stats(),
            "iterations": self._iterations.get_stats(),
            "checkpoints_reached": list(self._checkpoints_reached),
            **self._counters,
        }

    async def _run_task(self, plan: Plan, task: Task, execute_task: TaskExecutor) -> None:
        """1タスクを割当・実行・報告（失敗時は上限まで再実行）."""
        while True:
            await self._resume.wait()
            if self._cancelled:
                return

            assignment = await self._acquire_agent(task)
            if assignment is None:
                error = f"No agent available after {self._config.assignment_attempts} attempts"
                self._planner.update_task_status(plan, task.id, TaskStatus.FAILED, error=error)
                self._tracker.mark_task_failed(task.id, error)
                return

            try:
                self._planner.update_task_status(plan, task.id, TaskStatus.RUNNING)
                self._tracker.mark_task_started(task.id, assignment.agent_id)
                outcome = await self._execute(execute_task, task, assignment)
            except BaseException:
                self._coordinator.release_task(task.id, "interrupted")
                self._planner.update_task_status(plan, task.id, TaskStatus.PENDING)
                self._tracker.mark_task_interrupted(task.id)
                raise

            if outcome.success:
                self._planner.update_task_status(plan, task.id, TaskStatus.COMPLETED, result=outcome.data)
                self._coordinator.report_task_completed(task.id, outcome.data)
                self._tracker.mark_task_completed(task.id, outcome.data)
                return

            self._planner.update_task_status(plan, task.id, TaskStatus.FAILED, error=outcome.error)
            self._coordinator.report_task_failed(task.id, outcome.error)
            self._tracker.mark_task_failed(task.id, outcome.error)

            failures = self._coordinator.get_retry_count(task.id)
            if failures > self._config.max_task_retries:
                self._logger.error(f"タスク再実行上限: {task.id} ({failures}回失敗)")
                return
            next_attempt_at = self._clock.now() + timedelta(seconds=self._config.task_retry_delay_seconds * failures)
            self._logger.info(f"タスク再実行待機: {task.id} ({failures}/{self._config.max_task_retries})")
            await sleep_until(self._clock, next_attempt_at)

    async def _run_group(self, plan: Plan, tasks: list[Task], execute_task: TaskExecutor) -> None:
        """グループ内タスクを並行実行（1つが例外を送出したら残りを取り消す）."""
        runs = [asyncio.ensure_future(self._run_task(plan, task, execute_task)) for task in tasks]
        try:
            await asyncio.gather(*runs)
        except BaseException:
            for run in runs:
                run.cancel()
            await asyncio.gather(*runs, return_exceptions=True)
            raise

    async def _acquire_agent(self, task: Task) -> Assignment | None:
        """空きAgentが見つかるまで割当を試行."""
        for attempt in range(1, self._config.assignment_attempts + 1):
            try:
                return self._coordinator.assign_task(task).assignment
            except NoAvailableAgentError:
                if attempt == self._config.assignment_attempts:
                    break
                self._logger.debug(f"Agent待ち: {task.id} ({attempt}/{self._config.assignment_attempts})")
                await self._clock.sleep(self._config.assignment_wait_seconds)
        return None

    async def _execute(self, execute_task: TaskExecutor, task: Task, assignment: Assignment) -> PhaseOutcome:
        """実行コールバックを呼び、結果を正規化."""
        try:
            value = execute_task(task, assignment)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            self._logger.warning(f"タスク実行例外: {task.id}: {e}")
            return PhaseOutcome(success=False, error=str(e) or type(e).__name__)
        return PhaseOutcome.coerce(value)

    def _skip_task(self, plan: Plan, task_id: str) -> None:
        self._planner.update_task_status(plan, task_id, TaskStatus.SKIPPED)
        self._tracker.mark_task_skipped(task_id, "Skipped after exhausting retries")
        self._logger.warning(f"失敗タスクをスキップ: {task_id}")
        self._channel.publish(
            NotificationTopic.TASK_SKIPPED,
            {"plan_id": plan.id, "task_id": task_id},
            source="orchestrator",
        )

    def _reach_checkpoints(self, plan: Plan, order: int) -> None:
        for checkpoint in plan.checkpoints:
            if checkpoint.after_order != order:
                continue
            self._checkpoints_reached.append(checkpoint.id)
            self._channel.publish(
                NotificationTopic.CHECKPOINT_REACHED,
                {
                    "plan_id": plan.id,
                    "checkpoint_id": checkpoint.id,
                    "type": checkpoint.type.value,
                    "after_order": order,
                    "progress": self._tracker.get_progress().percentage,
                },
                source="orchestrator",
            )

    def _build_result(self, plan: Plan, blocked: list[str], started: datetime) -> ExecutionResult:
        def ids(status: TaskStatus) -> list[str]:
            return [task.id for task in plan.tasks if task.status == status]

        error = None
        if blocked:
            error = f"Execution blocked by failed tasks: {', '.join(blocked)}"
        elif plan.status == PlanStatus.CANCELLED:
            error = "Execution cancelled"
        return ExecutionResult(
            plan_id=plan.id,
            status=plan.status,
            success=plan.status == PlanStatus.COMPLETED,
            completed_task_ids=ids(TaskStatus.COMPLETED),
            failed_task_ids=ids(TaskStatus.FAILED),
            skipped_task_ids=ids(TaskStatus.SKIPPED),
            blocked_task_ids=list(blocked),
            checkpoints_reached=list(self._checkpoints_reached),
            duration_seconds=(self._clock.now() - started).total_seconds(),
            error=error,
        )

    def _plan_payload(self) -> dict[str, Any]:
        return {"plan_id": self._plan.id if self._plan else None}

    def _on_blocker(self, notification: Notification) -> None:
        self._counters["blockers_detected"] += 1
        self._logger.warning(f"ブロッカー通知: {notification.payload.get('description')}")

    def _on_escalation(self, notification: Notification) -> None:
        self._counters["escalations"] += 1
        self._logger.warning(f"反復エスカレーション通知: {notification.payload.get('iteration_id')}")


__all__ = ["ExecutionResult", "OrchestratorConfig", "PlanOrchestrator", "TaskExecutor"]
