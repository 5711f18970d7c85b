"""進捗追跡 - 重み付き完了率・速度・ETA・ブロッカー検出.

Plan の状態とは独立したタスク状態ビューを保持し、
複雑度で重み付けした完了率、スライディングウィンドウの速度、
推定完了時刻、ブロッカーを算出する。

ブロッカーは通知のみで、実行を止めることはない。
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import BaseModel, Field

from planflow.core.clock import Clock, SystemClock
from planflow.core.exceptions import ConfigurationError, InvalidProgressTransitionError, TaskNotFoundError
from planflow.core.notifications import NotificationChannel, NotificationTopic
from planflow.orchestration.models import PHASE_ORDER, RESOLVED_STATUSES, Plan, TaskPhase, TaskStatus


if TYPE_CHECKING:
    from planflow.config.settings import PlanFlowSettings


class ProgressStatus(str, Enum):
    """全体進捗状態."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class BlockerType(str, Enum):
    """ブロッカー種別."""

    CONSECUTIVE_FAILURES = "consecutive_failures"
    HIGH_FAILURE_RATE = "high_failure_rate"
    MANUAL = "manual"


class Blocker(BaseModel):
    """ブロッカー."""

    id: str = Field(default_factory=lambda: f"blocker-{uuid.uuid4().hex[:8]}")
    type: BlockerType
    description: str = ""
    task_ids: list[str] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=datetime.now)
    resolved_at: datetime | None = None
    resolution: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        """未解決か."""
        return self.resolved_at is None


class TaskProgress(BaseModel):
    """タスク単位の進捗."""

    task_id: str
    phase: TaskPhase | None = None
    complexity: float = 1.0
    status: TaskStatus = TaskStatus.PENDING
    agent_id: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error: str | None = None
    skip_reason: str | None = None


class ProgressMetrics(BaseModel):
    """現在状態ごとのタスク数."""

    total_tasks: int = 0
    total_weight: float = 0.0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    in_progress_tasks: int = 0


class Velocity(BaseModel):
    """完了速度."""

    tasks_per_hour: float = 0.0
    points_per_hour: float = 0.0


class Eta(BaseModel):
    """完了予測."""

    estimated_completion: datetime | None = None
    remaining_seconds: float | None = None
    remaining_tasks: int = 0


class ProgressSnapshot(BaseModel):
    """進捗スナップショット."""

    percentage: float = 0.0
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    metrics: ProgressMetrics = Field(default_factory=ProgressMetrics)
    velocity: Velocity = Field(default_factory=Velocity)
    eta: Eta = Field(default_factory=Eta)
    elapsed_seconds: float = 0.0
    blockers: list[Blocker] = Field(default_factory=list)


class _Sample(NamedTuple):
    timestamp: datetime
    complexity: float


_BUCKETS: dict[TaskStatus, str] = {
    TaskStatus.RUNNING: "in_progress_tasks",
    TaskStatus.COMPLETED: "completed_tasks",
    TaskStatus.FAILED: "failed_tasks",
    TaskStatus.SKIPPED: "skipped_tasks",
}


@dataclass
class TrackerConfig:
    """進捗追跡設定.

    Attributes:
        blocker_detection_threshold: ブロッカー検出の連続失敗数
        velocity_window_size: 速度計算に使う直近完了数
        high_failure_rate_threshold: 高失敗率ブロッカーの閾値
    """

    blocker_detection_threshold: int = 3
    velocity_window_size: int = 10
    high_failure_rate_threshold: float = 0.3

    def __post_init__(self) -> None:
        """設定値を検証."""
        if self.blocker_detection_threshold < 1:
            msg = f"blocker_detection_threshold must be >= 1, got {self.blocker_detection_threshold}"
            raise ConfigurationError(msg)
        if self.velocity_window_size < 1:
            msg = f"velocity_window_size must be >= 1, got {self.velocity_window_size}"
            raise ConfigurationError(msg)
        if not 0.0 < self.high_failure_rate_threshold <= 1.0:
            msg = f"high_failure_rate_threshold must be in (0, 1], got {self.high_failure_rate_threshold}"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: PlanFlowSettings) -> TrackerConfig:
        """PlanFlowSettings から生成."""
        return cls(
            blocker_detection_threshold=settings.blocker_detection_threshold,
            velocity_window_size=settings.velocity_window_size,
            high_failure_rate_threshold=settings.high_failure_rate_threshold,
        )


class ProgressTracker:
    """進捗追跡.

    COMPLETED と SKIPPED は終端状態で、同じ状態の再設定は無視し、
    それ以外への遷移は ``InvalidProgressTransitionError`` とする。

    Example:
        >>> tracker = ProgressTracker()
        >>> tracker.initialize_plan(plan)
        >>> tracker.mark_task_started("t1")
        >>> tracker.mark_task_completed("t1")
        >>> tracker.get_progress().percentage
    """

    def __init__(
        self,
        config: TrackerConfig | None = None,
        channel: NotificationChannel | None = None,
        clock: Clock | None = None,
    ) -> None:
        """初期化.

        Args:
            config: 進捗追跡設定
            channel: 通知チャネル
            clock: 時刻ソース
        """
        self._config = config or TrackerConfig()
        self._channel = channel or NotificationChannel()
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger(__name__)
        self._reset()

    def _reset(self) -> None:
        self._plan_id: str | None = None
        self._tasks: dict[str, TaskProgress] = {}
        self._metrics = ProgressMetrics()
        self._samples: deque[_Sample] = deque(maxlen=self._config.velocity_window_size)
        self._window_anchor: datetime | None = None
        self._started_at: datetime | None = None
        self._consecutive_failures = 0
        self._failure_rate_reported = False
        self._blockers: list[Blocker] = []

    def initialize_plan(self, plan: Plan) -> None:
        """計画から追跡状態を初期化.

        Plan 側のタスク状態に関わらず全タスクを PENDING として扱う。
        """
        self._reset()
        self._plan_id = plan.id
        for task in plan.tasks:
            self._tasks[task.id] = TaskProgress(
                task_id=task.id,
                phase=task.phase,
                complexity=task.complexity,
            )
        self._metrics.total_tasks = len(self._tasks)
        self._metrics.total_weight = sum(t.complexity for t in self._tasks.values())
        self._started_at = self._clock.now()
        self._window_anchor = self._started_at
        self._logger.info(
            f"進捗追跡開始: {plan.id}, {self._metrics.total_tasks}タスク, 重み合計={self._metrics.total_weight}"
        )

    @property
    def plan_id(self) -> str | None:
        """追跡中の計画ID."""
        return self._plan_id

    def mark_task_started(self, task_id: str, agent_id: str | None = None) -> TaskProgress:
        """タスク開始を記録."""
        progress = self._transition(task_id, TaskStatus.RUNNING)
        if progress is not None:
            progress.attempts += 1
            progress.started_at = self._clock.now()
            progress.agent_id = agent_id or progress.agent_id
            progress.error = None
        return self._after_mark(task_id)

    def mark_task_completed(self, task_id: str, result: dict[str, Any] | None = None) -> TaskProgress:
        """タスク完了を記録（連続失敗カウントをリセット）."""
        progress = self._transition(task_id, TaskStatus.COMPLETED)
        if progress is not None:
            now = self._clock.now()
            progress.completed_at = now
            if len(self._samples) == self._samples.maxlen:
                self._window_anchor = self._samples[0].timestamp
            self._samples.append(_Sample(now, progress.complexity))
            if self._consecutive_failures >= self._config.blocker_detection_threshold:
                self._resolve_by_type(BlockerType.CONSECUTIVE_FAILURES, f"Task {task_id} completed")
            self._consecutive_failures = 0
        return self._after_mark(task_id)

    def mark_task_failed(self, task_id: str, error: str | None = None) -> TaskProgress:
        """タスク失敗を記録し、ブロッカーを判定."""
        progress = self._transition(task_id, TaskStatus.FAILED)
        if progress is not None:
            progress.failed_at = self._clock.now()
            progress.error = error
            self._consecutive_failures += 1
            self._check_blockers(task_id)
        return self._after_mark(task_id)

    def mark_task_skipped(self, task_id: str, reason: str | None = None) -> TaskProgress:
        """タスクのスキップを記録."""
        progress = self._transition(task_id, TaskStatus.SKIPPED)
        if progress is not None:
            progress.skip_reason = reason
        return self._after_mark(task_id)

    def mark_task_interrupted(self, task_id: str) -> TaskProgress:
        """中断された実行中タスクを PENDING に戻す."""
        progress = self._tasks.get(task_id)
        if progress is None:
            raise TaskNotFoundError(task_id)
        if progress.status == TaskStatus.RUNNING:
            self._transition(task_id, TaskStatus.PENDING)
            progress.started_at = None
        return self._after_mark(task_id)

    def add_blocker(
        self,
        description: str,
        task_ids: list[str] | None = None,
        blocker_type: BlockerType = BlockerType.MANUAL,
        details: dict[str, Any] | None = None,
    ) -> Blocker:
        """ブロッカーを登録して通知."""
        blocker = Blocker(
            type=blocker_type,
            description=description,
            task_ids=list(task_ids or []),
            detected_at=self._clock.now(),
            details=dict(details or {}),
        )
        self._blockers.append(blocker)
        self._logger.warning(f"ブロッカー検出: {blocker.type.value} - {description}")
        self._channel.publish(
            NotificationTopic.BLOCKER_DETECTED,
            {
                "blocker_id": blocker.id,
                "type": blocker.type.value,
                "description": description,
                "task_ids": blocker.task_ids,
                **blocker.details,
            },
            source="tracker",
        )
        return blocker

    def resolve_blocker(self, blocker_id: str, resolution: str = "") -> Blocker | None:
        """ブロッカーを解決済みにする.

        Returns:
            解決したブロッカー、存在しないか解決済みの場合 None
        """
        for blocker in self._blockers:
            if blocker.id == blocker_id and blocker.is_active:
                blocker.resolved_at = self._clock.now()
                blocker.resolution = resolution
                self._logger.info(f"ブロッカー解決: {blocker_id}")
                self._channel.publish(
                    NotificationTopic.BLOCKER_RESOLVED,
                    {"blocker_id": blocker_id, "resolution": resolution},
                    source="tracker",
                )
                return blocker
        return None

    def get_blockers(self, active_only: bool = True) -> list[Blocker]:
        """ブロッカー一覧を取得."""
        if active_only:
            return [b for b in self._blockers if b.is_active]
        return list(self._blockers)

    def get_progress(self) -> ProgressSnapshot:
        """現在の進捗を取得."""
        percentage = self._percentage()
        blockers = self.get_blockers()
        velocity = self._velocity()
        return ProgressSnapshot(
            percentage=percentage,
            status=self._status(percentage, blockers),
            metrics=self._metrics.model_copy(),
            velocity=velocity,
            eta=self._eta(velocity),
            elapsed_seconds=self._elapsed_seconds(),
            blockers=blockers,
        )

    def get_task_progress(self, task_id: str) -> TaskProgress:
        """タスク単位の進捗を取得.

        Raises:
            TaskNotFoundError: 追跡対象外の場合
        """
        progress = self._tasks.get(task_id)
        if progress is None:
            raise TaskNotFoundError(task_id)
        return progress

    def get_all_task_progress(self) -> list[TaskProgress]:
        """全タスクの進捗を取得."""
        return list(self._tasks.values())

    def get_progress_by_phase(self) -> dict[TaskPhase, dict[str, int]]:
        """フェーズ別の進捗を取得（件数ベース、整数パーセント）."""
        phases: dict[TaskPhase, dict[str, int]] = {}
        ordered = sorted(self._tasks.values(), key=lambda t: PHASE_ORDER[t.phase or TaskPhase.IMPLEMENTATION])
        for progress in ordered:
            entry = phases.setdefault(
                progress.phase or TaskPhase.IMPLEMENTATION,
                {"total": 0, "completed": 0, "failed": 0, "skipped": 0, "percentage": 0},
            )
            entry["total"] += 1
            if progress.status == TaskStatus.COMPLETED:
                entry["completed"] += 1
            elif progress.status == TaskStatus.FAILED:
                entry["failed"] += 1
            elif progress.status == TaskStatus.SKIPPED:
                entry["skipped"] += 1
        for entry in phases.values():
            entry["percentage"] = round(entry["completed"] / entry["total"] * 100)
        return phases

    def get_report(self) -> dict[str, Any]:
        """進捗レポートを取得."""
        snapshot = self.get_progress()
        metrics = snapshot.metrics
        return {
            "plan_id": self._plan_id,
            "summary": {
                "progress": snapshot.percentage,
                "status": snapshot.status.value,
                "elapsed_seconds": snapshot.elapsed_seconds,
                "eta_seconds": snapshot.eta.remaining_seconds,
            },
            "tasks": {
                "total": metrics.total_tasks,
                "completed": metrics.completed_tasks,
                "failed": metrics.failed_tasks,
                "skipped": metrics.skipped_tasks,
                "in_progress": metrics.in_progress_tasks,
                "remaining": snapshot.eta.remaining_tasks,
            },
            "velocity": snapshot.velocity.model_dump(),
            "phases": {phase.value: entry for phase, entry in self.get_progress_by_phase().items()},
            "blockers": [b.model_dump(mode="json") for b in snapshot.blockers],
            "generated_at": self._clock.now().isoformat(),
        }

    def _transition(self, task_id: str, status: TaskStatus) -> TaskProgress | None:
        """状態遷移とカウンタ更新（同一終端状態への再設定は None）."""
        progress = self._tasks.get(task_id)
        if progress is None:
            raise TaskNotFoundError(task_id)

        current = progress.status
        if current in RESOLVED_STATUSES:
            if current == status:
                return None
            raise InvalidProgressTransitionError(task_id, current.value, status.value)
        if current == status:
            return None

        if current in _BUCKETS:
            bucket = _BUCKETS[current]
            setattr(self._metrics, bucket, getattr(self._metrics, bucket) - 1)
        if status in _BUCKETS:
            bucket = _BUCKETS[status]
            setattr(self._metrics, bucket, getattr(self._metrics, bucket) + 1)
        progress.status = status
        return progress

    def _after_mark(self, task_id: str) -> TaskProgress:
        self._check_failure_rate()
        percentage = self._percentage()
        self._channel.publish(
            NotificationTopic.PROGRESS_UPDATED,
            {
                "task_id": task_id,
                "status": self._tasks[task_id].status.value,
                "percentage": percentage,
                "overall_status": self._status(percentage, self.get_blockers()).value,
            },
            source="tracker",
        )
        return self._tasks[task_id]

    def _check_blockers(self, task_id: str) -> None:
        threshold = self._config.blocker_detection_threshold
        if self._consecutive_failures == threshold:
            self.add_blocker(
                f"{threshold} consecutive task failures",
                task_ids=[task_id],
                blocker_type=BlockerType.CONSECUTIVE_FAILURES,
                details={"failure_count": threshold},
            )

    def _check_failure_rate(self) -> None:
        """失敗率ブロッカーを閾値の上下で登録・解決."""
        rate = self._failure_rate()
        limit = self._config.high_failure_rate_threshold
        if rate > limit and not self._failure_rate_reported:
            self._failure_rate_reported = True
            self.add_blocker(
                f"Failure rate {rate:.0%} exceeds {limit:.0%}",
                blocker_type=BlockerType.HIGH_FAILURE_RATE,
                details={"rate": rate},
            )
        elif rate <= limit and self._failure_rate_reported:
            self._failure_rate_reported = False
            self._resolve_by_type(BlockerType.HIGH_FAILURE_RATE, f"Failure rate back to {rate:.0%}")

    def _resolve_by_type(self, blocker_type: BlockerType, resolution: str) -> None:
        for blocker in self.get_blockers():
            if blocker.type == blocker_type:
                self.resolve_blocker(blocker.id, resolution)

    def _failure_rate(self) -> float:
        if self._metrics.total_tasks == 0:
            return 0.0
        return self._metrics.failed_tasks / self._metrics.total_tasks

    def _resolved_count(self) -> int:
        return self._metrics.completed_tasks + self._metrics.skipped_tasks

    def _percentage(self) -> float:
        if self._metrics.total_weight <= 0:
            return 0.0
        if self._resolved_count() == self._metrics.total_tasks:
            return 100.0
        done = sum(t.complexity for t in self._tasks.values() if t.status in RESOLVED_STATUSES)
        return min(round(done / self._metrics.total_weight * 100, 2), 99.99)

    def _status(self, percentage: float, blockers: list[Blocker]) -> ProgressStatus:
        if percentage >= 100.0:
            return ProgressStatus.COMPLETED
        if blockers:
            return ProgressStatus.BLOCKED
        if all(t.status == TaskStatus.PENDING for t in self._tasks.values()):
            return ProgressStatus.NOT_STARTED
        return ProgressStatus.IN_PROGRESS

    def _velocity(self) -> Velocity:
        if not self._samples or self._window_anchor is None:
            return Velocity()
        hours = (self._samples[-1].timestamp - self._window_anchor).total_seconds() / 3600
        if hours <= 0:
            return Velocity()
        points = sum(sample.complexity for sample in self._samples)
        return Velocity(
            tasks_per_hour=round(len(self._samples) / hours, 1),
            points_per_hour=round(points / hours, 1),
        )

    def _eta(self, velocity: Velocity) -> Eta:
        remaining = self._metrics.total_tasks - self._resolved_count()
        now = self._clock.now()
        if remaining <= 0:
            return Eta(estimated_completion=now, remaining_seconds=0.0, remaining_tasks=0)
        if velocity.tasks_per_hour <= 0:
            return Eta(remaining_tasks=remaining)
        seconds = remaining / velocity.tasks_per_hour * 3600
        return Eta(
            estimated_completion=now + timedelta(seconds=seconds),
            remaining_seconds=seconds,
            remaining_tasks=remaining,
        )

    def _elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return (self._clock.now() - self._started_at).total_seconds()


__all__ = [
    "Blocker",
    "BlockerType",
    "Eta",
    "ProgressMetrics",
    "ProgressSnapshot",
    "ProgressStatus",
    "ProgressTracker",
    "TaskProgress",
    "TrackerConfig",
    "Velocity",
]
