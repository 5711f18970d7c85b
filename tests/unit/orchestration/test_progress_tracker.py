"""ProgressTracker のユニットテスト."""

from datetime import timedelta

import pytest

from planflow.core.clock import ManualClock
from planflow.core.exceptions import ConfigurationError, InvalidProgressTransitionError, TaskNotFoundError
from planflow.core.notifications import NotificationChannel, NotificationTopic
from planflow.orchestration.models import Plan, TaskPhase, TaskStatus
from planflow.orchestration.planner import ExecutionPlanner
from planflow.orchestration.progress import (
    BlockerType,
    ProgressStatus,
    ProgressTracker,
    TrackerConfig,
)


def _independent_plan(planner: ExecutionPlanner, count: int, **fields) -> Plan:
    tasks = [{"id": f"t{i}", **fields} for i in range(count)]
    return planner.create_plan(tasks, max_concurrency=count)


class TestPercentage:
    """完了率のテスト."""

    def test_weighted_by_complexity(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """完了率は複雑度で重み付けされる."""
        plan = planner.create_plan([{"id": "small", "complexity": 1}, {"id": "large", "complexity": 3}])
        tracker.initialize_plan(plan)

        tracker.mark_task_completed("small")

        assert tracker.get_progress().percentage == 25.0

    def test_skipped_counts_as_resolved(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """スキップしたタスクも解決済みとして数える."""
        tracker.initialize_plan(_independent_plan(planner, 2))

        tracker.mark_task_completed("t0")
        tracker.mark_task_skipped("t1", "not needed")
        snapshot = tracker.get_progress()

        assert snapshot.percentage == 100.0
        assert snapshot.status == ProgressStatus.COMPLETED
        assert snapshot.metrics.skipped_tasks == 1

    def test_capped_below_hundred_until_all_resolved(
        self, planner: ExecutionPlanner, tracker: ProgressTracker
    ) -> None:
        """未解決タスクが残る間は100%にならない."""
        plan = planner.create_plan([{"id": "huge", "complexity": 100000}, {"id": "tiny", "complexity": 1}])
        tracker.initialize_plan(plan)

        tracker.mark_task_completed("huge")

        assert tracker.get_progress().percentage == 99.99

    def test_empty_plan(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """タスクのない計画は0%で未開始."""
        tracker.initialize_plan(planner.create_plan([]))

        snapshot = tracker.get_progress()

        assert snapshot.percentage == 0.0
        assert snapshot.status == ProgressStatus.NOT_STARTED


class TestTransitions:
    """状態遷移のテスト."""

    def test_status_progression(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """未開始から進行中へ遷移する."""
        tracker.initialize_plan(_independent_plan(planner, 2))
        assert tracker.get_progress().status == ProgressStatus.NOT_STARTED

        tracker.mark_task_started("t0", agent_id="backend-agent")
        snapshot = tracker.get_progress()

        assert snapshot.status == ProgressStatus.IN_PROGRESS
        assert snapshot.metrics.in_progress_tasks == 1
        assert tracker.get_task_progress("t0").agent_id == "backend-agent"

    def test_retry_after_failure(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """失敗したタスクは再開始できる."""
        tracker.initialize_plan(_independent_plan(planner, 10))

        tracker.mark_task_started("t0")
        tracker.mark_task_failed("t0", "flaky")
        tracker.mark_task_started("t0")
        tracker.mark_task_completed("t0")
        progress = tracker.get_task_progress("t0")
        metrics = tracker.get_progress().metrics

        assert progress.attempts == 2
        assert progress.error is None
        assert metrics.failed_tasks == 0
        assert metrics.completed_tasks == 1
        assert metrics.in_progress_tasks == 0

    def test_interrupted_task_returns_to_pending(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """中断された実行中タスクは PENDING に戻り、再開始できる."""
        tracker.initialize_plan(_independent_plan(planner, 2))
        tracker.mark_task_started("t0")

        tracker.mark_task_interrupted("t0")

        assert tracker.get_task_progress("t0").status == TaskStatus.PENDING
        assert tracker.get_progress().metrics.in_progress_tasks == 0

        tracker.mark_task_started("t0")
        assert tracker.get_task_progress("t0").attempts == 2

    def test_repeat_terminal_mark_is_noop(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """同じ終端状態の再設定は無視される."""
        tracker.initialize_plan(_independent_plan(planner, 2))

        tracker.mark_task_completed("t0")
        tracker.mark_task_completed("t0")

        assert tracker.get_progress().metrics.completed_tasks == 1

    def test_leaving_terminal_state_rejected(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """終端状態から別の状態へは遷移できない."""
        tracker.initialize_plan(_independent_plan(planner, 2))
        tracker.mark_task_completed("t0")

        with pytest.raises(InvalidProgressTransitionError):
            tracker.mark_task_failed("t0", "late failure")

    def test_unknown_task(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """追跡対象外のタスクはエラー."""
        tracker.initialize_plan(_independent_plan(planner, 1))

        with pytest.raises(TaskNotFoundError):
            tracker.mark_task_started("ghost")

    def test_progress_published(
        self, planner: ExecutionPlanner, tracker: ProgressTracker, channel: NotificationChannel
    ) -> None:
        """マークごとに progress:updated が通知される."""
        tracker.initialize_plan(_independent_plan(planner, 4))

        tracker.mark_task_completed("t0")

        [notification] = channel.history(NotificationTopic.PROGRESS_UPDATED)
        assert notification.payload["task_id"] == "t0"
        assert notification.payload["percentage"] == 25.0
        assert notification.payload["overall_status"] == "in_progress"


class TestVelocity:
    """速度とETAのテスト."""

    def test_velocity_and_eta(self, planner: ExecutionPlanner, tracker: ProgressTracker, clock: ManualClock) -> None:
        """完了速度から残り時間を推定する."""
        tracker.initialize_plan(_independent_plan(planner, 10))

        clock.advance(1800)
        tracker.mark_task_completed("t0")
        clock.advance(1800)
        tracker.mark_task_completed("t1")
        snapshot = tracker.get_progress()

        assert snapshot.velocity.tasks_per_hour == 2.0
        assert snapshot.eta.remaining_tasks == 8
        assert snapshot.eta.remaining_seconds == 14400.0
        assert snapshot.eta.estimated_completion == clock.now() + timedelta(hours=4)
        assert snapshot.elapsed_seconds == 3600.0

    def test_sliding_window(self, planner: ExecutionPlanner, clock: ManualClock) -> None:
        """速度は直近の完了のみで計算する."""
        tracker = ProgressTracker(TrackerConfig(velocity_window_size=2), clock=clock)
        tracker.initialize_plan(_independent_plan(planner, 5, complexity=2))

        for task_id in ("t0", "t1", "t2"):
            clock.advance(600)
            tracker.mark_task_completed(task_id)
        velocity = tracker.get_progress().velocity

        assert velocity.tasks_per_hour == 6.0
        assert velocity.points_per_hour == 12.0

    def test_no_velocity_without_completions(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """完了がなければETAは不明."""
        tracker.initialize_plan(_independent_plan(planner, 3))

        snapshot = tracker.get_progress()

        assert snapshot.velocity.tasks_per_hour == 0.0
        assert snapshot.eta.remaining_seconds is None
        assert snapshot.eta.remaining_tasks == 3


class TestBlockers:
    """ブロッカー検出のテスト."""

    def test_consecutive_failures_raise_blocker(
        self, planner: ExecutionPlanner, tracker: ProgressTracker, channel: NotificationChannel
    ) -> None:
        """連続失敗が閾値に達するとブロッカーを登録する."""
        tracker.initialize_plan(_independent_plan(planner, 10))

        for task_id in ("t0", "t1", "t2"):
            tracker.mark_task_failed(task_id, "boom")
        [blocker] = tracker.get_blockers()

        assert blocker.type == BlockerType.CONSECUTIVE_FAILURES
        assert blocker.task_ids == ["t2"]
        assert tracker.get_progress().status == ProgressStatus.BLOCKED
        assert channel.history(NotificationTopic.BLOCKER_DETECTED)[0].payload["failure_count"] == 3

    def test_completion_resolves_consecutive_blocker(
        self, planner: ExecutionPlanner, tracker: ProgressTracker
    ) -> None:
        """完了でカウントがリセットされ、ブロッカーが解決される."""
        tracker.initialize_plan(_independent_plan(planner, 10))
        for task_id in ("t0", "t1", "t2"):
            tracker.mark_task_failed(task_id)

        tracker.mark_task_completed("t3")
        [blocker] = tracker.get_blockers(active_only=False)

        assert tracker.get_blockers() == []
        assert blocker.resolution == "Task t3 completed"

    def test_failures_below_threshold(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """閾値未満の連続失敗ではブロッカーにならない."""
        tracker.initialize_plan(_independent_plan(planner, 10))

        tracker.mark_task_failed("t0")
        tracker.mark_task_failed("t1")
        tracker.mark_task_completed("t2")
        tracker.mark_task_failed("t3")

        assert tracker.get_blockers() == []

    def test_high_failure_rate(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """失敗率が閾値を超えるとブロッカー、下回ると解決."""
        tracker.initialize_plan(_independent_plan(planner, 3))

        tracker.mark_task_failed("t0")
        [blocker] = tracker.get_blockers()
        assert blocker.type == BlockerType.HIGH_FAILURE_RATE

        tracker.mark_task_started("t0")

        assert tracker.get_blockers() == []

    def test_manual_blocker(
        self, planner: ExecutionPlanner, tracker: ProgressTracker, channel: NotificationChannel
    ) -> None:
        """手動ブロッカーの登録と解決."""
        tracker.initialize_plan(_independent_plan(planner, 2))
        blocker = tracker.add_blocker("waiting for credentials", task_ids=["t1"])

        assert tracker.get_progress().status == ProgressStatus.BLOCKED

        resolved = tracker.resolve_blocker(blocker.id, "credentials provided")

        assert resolved is blocker
        assert tracker.resolve_blocker(blocker.id) is None
        assert len(channel.history(NotificationTopic.BLOCKER_RESOLVED)) == 1

    def test_initialize_clears_previous_state(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """再初期化で以前の状態を破棄する."""
        tracker.initialize_plan(_independent_plan(planner, 2))
        tracker.add_blocker("stale")
        tracker.mark_task_completed("t0")

        plan = planner.create_plan([{"id": "fresh"}])
        tracker.initialize_plan(plan)

        assert tracker.plan_id == plan.id
        assert tracker.get_blockers(active_only=False) == []
        assert tracker.get_progress().metrics.total_tasks == 1


class TestReports:
    """レポートのテスト."""

    def test_progress_by_phase(
        self, planner: ExecutionPlanner, tracker: ProgressTracker, web_app_tasks: list
    ) -> None:
        """フェーズ別に件数と整数パーセントを集計する."""
        tracker.initialize_plan(planner.create_plan(web_app_tasks))
        tracker.mark_task_completed("setup")
        tracker.mark_task_completed("api")

        phases = tracker.get_progress_by_phase()

        assert list(phases) == [TaskPhase.SETUP, TaskPhase.IMPLEMENTATION, TaskPhase.TESTING, TaskPhase.DEPLOYMENT]
        assert phases[TaskPhase.SETUP]["percentage"] == 100
        assert phases[TaskPhase.IMPLEMENTATION] == {
            "total": 2,
            "completed": 1,
            "failed": 0,
            "skipped": 0,
            "percentage": 50,
        }

    def test_report_shape(self, planner: ExecutionPlanner, tracker: ProgressTracker, web_app_tasks: list) -> None:
        """レポートは集計値をまとめて返す."""
        plan = planner.create_plan(web_app_tasks)
        tracker.initialize_plan(plan)
        tracker.mark_task_started("setup")

        report = tracker.get_report()

        assert report["plan_id"] == plan.id
        assert report["summary"]["status"] == "in_progress"
        assert report["tasks"]["in_progress"] == 1
        assert report["tasks"]["remaining"] == 5
        assert set(report["phases"]) == {"setup", "implementation", "testing", "deployment"}

    def test_tracker_ignores_plan_status(self, planner: ExecutionPlanner, tracker: ProgressTracker) -> None:
        """初期化時は計画側の状態に関わらず全タスク未着手."""
        plan = _independent_plan(planner, 2)
        plan.tasks[0].status = TaskStatus.COMPLETED

        tracker.initialize_plan(plan)

        assert all(p.status == TaskStatus.PENDING for p in tracker.get_all_task_progress())


class TestTrackerConfig:
    """設定検証のテスト."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"blocker_detection_threshold": 0},
            {"velocity_window_size": 0},
            {"high_failure_rate_threshold": 0.0},
            {"high_failure_rate_threshold": 1.5},
        ],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        """不正な設定値は ConfigurationError."""
        with pytest.raises(ConfigurationError):
            TrackerConfig(**kwargs)
