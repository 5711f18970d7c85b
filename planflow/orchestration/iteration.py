"""反復管理 - Build → Test → Fix → Verify サイクル.

計画ごとの反復を状態機械として管理し、リトライ回数と修正試行回数の
予算内でサイクルを進める。予算を使い切った場合は ESCALATED へ遷移する。

フェーズコールバックは同期・非同期のどちらでもよく、
``{"success": bool, "failures": [...], "error": str}`` 形式の dict または
``PhaseOutcome`` を返す。コールバック内の例外は失敗結果として記録され、
呼び出し元には伝播しない。

使用例:
    >>> manager = IterationManager(IterationConfig(max_fix_attempts=2))
    >>> iteration = manager.start_iteration("plan-1")
    >>> result = await manager.run_full_cycle(
    ...     iteration.id,
    ...     build_fn=build,
    ...     test_fn=run_tests,
    ...     fix_fn=apply_fix,
    ... )
    >>> result.raise_for_escalation()
"""

from __future__ import annotations

import inspect
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from planflow.core.clock import Clock, SystemClock, sleep_until
from planflow.core.exceptions import (
    ConfigurationError,
    EscalationError,
    IterationNotFoundError,
    IterationStateError,
)
from planflow.core.notifications import NotificationChannel, NotificationTopic


if TYPE_CHECKING:
    from planflow.config.settings import PlanFlowSettings


class IterationPhase(str, Enum):
    """反復フェーズ."""

    BUILD = "build"
    TEST = "test"
    FIX = "fix"
    VERIFY = "verify"


class IterationStatus(str, Enum):
    """反復状態."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"


_TERMINAL = frozenset({IterationStatus.COMPLETED, IterationStatus.FAILED})


class EscalationLevel(IntEnum):
    """エスカレーションレベル."""

    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class PhaseOutcome(BaseModel):
    """フェーズコールバックの結果."""

    success: bool = False
    failures: list[Any] = Field(default_factory=list)
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> PhaseOutcome:
        """コールバックの戻り値を PhaseOutcome に変換.

        ``passed`` は ``success`` の別名として扱う。
        """
        if isinstance(value, PhaseOutcome):
            return value
        if isinstance(value, bool):
            return cls(success=value)
        if isinstance(value, dict):
            data = {k: v for k, v in value.items() if k not in ("success", "passed", "failures", "error")}
            error = value.get("error")
            return cls(
                success=bool(value.get("success") or value.get("passed")),
                failures=list(value.get("failures") or []),
                error=None if error is None else str(error),
                data=data,
            )
        if value is None:
            return cls(success=False, error="Callback returned no result")
        msg = f"Unsupported phase result type: {type(value).__name__}"
        return cls(success=False, error=msg)


class PhaseRecord(BaseModel):
    """フェーズ実行履歴."""

    phase: IterationPhase
    attempt: int = 0
    success: bool = False
    error: str | None = None
    failures: list[Any] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)


class Iteration(BaseModel):
    """反復状態.

    Attributes:
        id: 反復ID
        plan_id: 計画ID
        phase: 現在フェーズ
        status: 状態
        retry_count: 使用済みリトライ回数
        fix_attempts: 使用済み修正試行回数
        max_retries: 最大リトライ回数
        max_fix_attempts: 最大修正試行回数
        escalation_level: エスカレーションレベル
        escalation_reason: エスカレーション理由
        next_attempt_at: 次回リトライ可能時刻
        failures: 直近の失敗項目
        history: フェーズ履歴
        errors: エラー記録
    """

    id: str
    plan_id: str
    phase: IterationPhase = IterationPhase.BUILD
    status: IterationStatus = IterationStatus.PENDING
    retry_count: int = 0
    fix_attempts: int = 0
    max_retries: int = 3
    max_fix_attempts: int = 5
    escalation_level: EscalationLevel = EscalationLevel.NONE
    escalation_reason: str | None = None
    next_attempt_at: datetime | None = None
    failures: list[Any] = Field(default_factory=list)
    history: list[PhaseRecord] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    ended_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PhaseResult(BaseModel):
    """フェーズ実行結果."""

    success: bool = False
    phase: IterationPhase | None = None
    iteration_id: str = ""
    failures: list[Any] = Field(default_factory=list)
    error: str | None = None
    can_retry: bool = False
    retries_remaining: int = 0
    escalated: bool = False
    escalation_level: EscalationLevel = EscalationLevel.NONE
    reason: str | None = None
    needs_verification: bool = False
    needs_another_fix: bool = False
    cancelled: bool = False


class IterationResult(BaseModel):
    """サイクル全体の結果."""

    success: bool
    iteration_id: str
    status: IterationStatus
    escalated: bool = False
    escalation_level: EscalationLevel = EscalationLevel.NONE
    reason: str | None = None
    retry_count: int = 0
    fix_attempts: int = 0
    duration_seconds: float = 0.0

    def raise_for_escalation(self) -> IterationResult:
        """エスカレーション時に例外を送出.

        Raises:
            EscalationError: 反復がエスカレーションされた場合
        """
        if self.escalated:
            raise EscalationError(self.iteration_id, self.reason or "escalated", self.escalation_level)
        return self


PhaseCallback = Callable[..., Any]


@dataclass
class IterationConfig:
    """反復設定.

    Attributes:
        max_retries: 反復あたりの最大リトライ回数
        max_fix_attempts: 反復あたりの最大修正試行回数
        retry_delay_seconds: リトライ間隔（n回目は n 倍）
    """

    max_retries: int = 3
    max_fix_attempts: int = 5
    retry_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        """設定値を検証."""
        if self.max_retries < 0 or self.max_fix_attempts < 0:
            msg = "max_retries and max_fix_attempts must be >= 0"
            raise ConfigurationError(msg)
        if self.retry_delay_seconds < 0:
            msg = f"retry_delay_seconds must be >= 0, got {self.retry_delay_seconds}"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: PlanFlowSettings) -> IterationConfig:
        """PlanFlowSettings から生成."""
        return cls(
            max_retries=settings.max_retries,
            max_fix_attempts=settings.max_fix_attempts,
            retry_delay_seconds=settings.retry_delay_seconds,
        )


class IterationManager:
    """反復管理.

    ESCALATED の反復に対するフェーズ呼び出しは ``escalated=True`` を返し、
    COMPLETED / FAILED の反復に対しては ``IterationStateError`` を送出する。
    実行中に取り消された反復では、後から届いたコールバック結果で状態を上書きしない。
    """

    def __init__(
        self,
        config: IterationConfig | None = None,
        channel: NotificationChannel | None = None,
        clock: Clock | None = None,
    ) -> None:
        """初期化.

        Args:
            config: 反復設定
            channel: 通知チャネル
            clock: 時刻ソース
        """
        self._config = config or IterationConfig()
        self._channel = channel or NotificationChannel()
        self._clock = clock or SystemClock()
        self._iterations: dict[str, Iteration] = {}
        self._stats = {
            "total_iterations": 0,
            "successful_iterations": 0,
            "failed_iterations": 0,
            "escalated_iterations": 0,
            "total_retries": 0,
            "total_fix_attempts": 0,
        }
        self._logger = logging.getLogger(__name__)

    def start_iteration(
        self,
        plan_id: str,
        max_retries: int | None = None,
        max_fix_attempts: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Iteration:
        """反復を開始.

        Args:
            plan_id: 計画ID
            max_retries: 最大リトライ回数（未指定時は設定値）
            max_fix_attempts: 最大修正試行回数（未指定時は設定値）
            metadata: 付加情報

        Returns:
            Iteration
        """
        iteration = Iteration(
            id=f"iter-{plan_id}-{uuid.uuid4().hex[:8]}",
            plan_id=plan_id,
            max_retries=self._config.max_retries if max_retries is None else max_retries,
            max_fix_attempts=self._config.max_fix_attempts if max_fix_attempts is None else max_fix_attempts,
            started_at=self._clock.now(),
            metadata=dict(metadata or {}),
        )
        self._iterations[iteration.id] = iteration
        self._stats["total_iterations"] += 1

        self._logger.info(f"反復開始: {iteration.id}")
        self._channel.publish(
            NotificationTopic.ITERATION_STARTED,
            {"iteration_id": iteration.id, "plan_id": plan_id, "phase": iteration.phase.value},
            source="iterations",
        )
        return iteration

    async def run_build_phase(self, iteration_id: str, build_fn: PhaseCallback) -> PhaseResult:
        """Build フェーズを実行.

        失敗時は記録のみ行い、自動修正はしない。リトライ予算は ``retry`` が消費する。
        """
        iteration = self._get(iteration_id)
        if iteration.status == IterationStatus.ESCALATED:
            return self._escalated_result(iteration, IterationPhase.BUILD)

        self._enter(iteration, IterationPhase.BUILD)
        outcome = await self._invoke(build_fn)
        if self._interrupted(iteration):
            return self._cancelled_result(iteration, IterationPhase.BUILD)
        if outcome.success:
            return self._phase_succeeded(iteration, IterationPhase.BUILD, outcome)
        return self._phase_failed(iteration, IterationPhase.BUILD, outcome)

    async def run_test_phase(self, iteration_id: str, test_fn: PhaseCallback) -> PhaseResult:
        """Test フェーズを実行（失敗項目を保持）."""
        iteration = self._get(iteration_id)
        if iteration.status == IterationStatus.ESCALATED:
            return self._escalated_result(iteration, IterationPhase.TEST)

        self._enter(iteration, IterationPhase.TEST)
        outcome = await self._invoke(test_fn)
        if self._interrupted(iteration):
            return self._cancelled_result(iteration, IterationPhase.TEST)
        if outcome.success:
            return self._phase_succeeded(iteration, IterationPhase.TEST, outcome)
        if outcome.failures:
            iteration.failures = list(outcome.failures)
        return self._phase_failed(iteration, IterationPhase.TEST, outcome)

    async def run_fix_phase(
        self,
        iteration_id: str,
        fix_fn: PhaseCallback,
        failures: list[Any] | None = None,
    ) -> PhaseResult:
        """Fix フェーズを実行.

        修正試行回数が上限に達している場合はコールバックを呼ばずにエスカレーションする。

        Args:
            iteration_id: 反復ID
            fix_fn: 失敗項目を受け取る修正コールバック
            failures: 修正対象（未指定時は直近の失敗項目）
        """
        iteration = self._get(iteration_id)
        if iteration.status == IterationStatus.ESCALATED:
            return self._escalated_result(iteration, IterationPhase.FIX)
        if iteration.fix_attempts >= iteration.max_fix_attempts:
            return self._escalate(iteration, "Maximum fix attempts exceeded", IterationPhase.FIX)

        iteration.fix_attempts += 1
        self._stats["total_fix_attempts"] += 1
        self._enter(iteration, IterationPhase.FIX)
        outcome = await self._invoke(fix_fn, list(iteration.failures) if failures is None else failures)
        if self._interrupted(iteration):
            return self._cancelled_result(iteration, IterationPhase.FIX)
        if not outcome.success:
            return self._phase_failed(iteration, IterationPhase.FIX, outcome)

        result = self._phase_succeeded(iteration, IterationPhase.FIX, outcome)
        iteration.phase = IterationPhase.VERIFY
        result.needs_verification = True
        return result

    async def run_verify_phase(self, iteration_id: str, verify_fn: PhaseCallback) -> PhaseResult:
        """Verify フェーズを実行（修正後のテスト再実行）.

        成功で反復完了。失敗時は修正予算が残っていれば ``needs_another_fix``、
        なければエスカレーションする。
        """
        iteration = self._get(iteration_id)
        if iteration.status == IterationStatus.ESCALATED:
            return self._escalated_result(iteration, IterationPhase.VERIFY)

        self._enter(iteration, IterationPhase.VERIFY)
        outcome = await self._invoke(verify_fn)
        if self._interrupted(iteration):
            return self._cancelled_result(iteration, IterationPhase.VERIFY)
        if outcome.success:
            result = self._phase_succeeded(iteration, IterationPhase.VERIFY, outcome)
            self._complete(iteration)
            return result

        if outcome.failures:
            iteration.failures = list(outcome.failures)
        self._record(iteration, IterationPhase.VERIFY, outcome, attempt=iteration.fix_attempts)
        self._channel.publish(
            NotificationTopic.VERIFY_FAILED,
            {"iteration_id": iteration.id, "failures": list(iteration.failures)},
            source="iterations",
        )
        if iteration.fix_attempts >= iteration.max_fix_attempts:
            return self._escalate(iteration, "Verification failed after max fix attempts", IterationPhase.VERIFY)
        return PhaseResult(
            success=False,
            phase=IterationPhase.VERIFY,
            iteration_id=iteration.id,
            failures=list(iteration.failures),
            error=outcome.error,
            needs_another_fix=True,
        )

    async def retry(self, iteration_id: str, retry_fn: PhaseCallback) -> PhaseResult:
        """現在フェーズをリトライ.

        n 回目のリトライは ``retry_delay_seconds × n`` 秒後（注入クロック基準）に実行する。
        予算を使い切るとエスカレーションする。
        """
        iteration = self._get(iteration_id)
        if iteration.status == IterationStatus.ESCALATED:
            return self._escalated_result(iteration, iteration.phase)
        if iteration.retry_count >= iteration.max_retries:
            return self._escalate(iteration, "Maximum retries exceeded", iteration.phase)

        iteration.retry_count += 1
        self._stats["total_retries"] += 1
        iteration.next_attempt_at = self._clock.now() + timedelta(
            seconds=self._config.retry_delay_seconds * iteration.retry_count
        )
        self._logger.info(f"リトライ待機: {iteration.id} ({iteration.retry_count}/{iteration.max_retries})")
        self._channel.publish(
            NotificationTopic.ITERATION_RETRYING,
            {
                "iteration_id": iteration.id,
                "phase": iteration.phase.value,
                "attempt": iteration.retry_count,
                "next_attempt_at": iteration.next_attempt_at.isoformat(),
            },
            source="iterations",
        )

        await sleep_until(self._clock, iteration.next_attempt_at)
        if iteration.status in _TERMINAL:
            return self._cancelled_result(iteration, iteration.phase)

        phase = iteration.phase
        self._enter(iteration, phase)
        outcome = await self._invoke(retry_fn)
        iteration.next_attempt_at = None
        if self._interrupted(iteration):
            return self._cancelled_result(iteration, phase)
        if outcome.success:
            return self._phase_succeeded(iteration, phase, outcome)

        self._record(iteration, phase, outcome, attempt=iteration.retry_count)
        if iteration.retry_count >= iteration.max_retries:
            return self._escalate(iteration, f"Retry failed: {outcome.error}", phase)
        return PhaseResult(
            success=False,
            phase=phase,
            iteration_id=iteration.id,
            failures=list(outcome.failures),
            error=outcome.error,
            can_retry=True,
            retries_remaining=iteration.max_retries - iteration.retry_count,
        )

    async def run_full_cycle(
        self,
        iteration_id: str,
        build_fn: PhaseCallback,
        test_fn: PhaseCallback,
        fix_fn: PhaseCallback | None = None,
    ) -> IterationResult:
        """Build → Test → (Fix → Verify)* を予算内で実行.

        Build 失敗は ``retry`` でリトライし、Test 失敗は Fix/Verify ループで修正する。
        Verify には ``test_fn`` を使う。

        Returns:
            IterationResult
        """
        iteration = self._get(iteration_id)

        build = await self.run_build_phase(iteration_id, build_fn)
        while not build.success:
            if build.escalated or build.cancelled:
                return self._result(iteration)
            build = await self.retry(iteration_id, build_fn)

        test = await self.run_test_phase(iteration_id, test_fn)
        if test.escalated or test.cancelled:
            return self._result(iteration)
        if test.success:
            self._complete(iteration)
            return self._result(iteration)
        if fix_fn is None:
            self._escalate(iteration, "Tests failed and no fix callback was provided", IterationPhase.TEST)
            return self._result(iteration)

        while True:
            fix = await self.run_fix_phase(iteration_id, fix_fn)
            if fix.escalated or fix.cancelled:
                return self._result(iteration)
            if not fix.success:
                continue
            verify = await self.run_verify_phase(iteration_id, test_fn)
            if verify.success or verify.escalated or verify.cancelled:
                return self._result(iteration)

    def cancel_iteration(self, iteration_id: str, reason: str = "Cancelled by user") -> bool:
        """反復を即時に FAILED とする.

        Returns:
            取り消した場合 True（既に終了済みなら False）

        Raises:
            IterationNotFoundError: 反復が存在しない場合
        """
        iteration = self._iterations.get(iteration_id)
        if iteration is None:
            raise IterationNotFoundError(iteration_id)
        if iteration.status in _TERMINAL or iteration.status == IterationStatus.ESCALATED:
            return False

        iteration.status = IterationStatus.FAILED
        iteration.ended_at = self._clock.now()
        iteration.next_attempt_at = None
        iteration.errors.append(
            {"phase": iteration.phase.value, "error": reason, "timestamp": iteration.ended_at.isoformat()}
        )
        self._stats["failed_iterations"] += 1

        self._logger.info(f"反復取消: {iteration_id} ({reason})")
        self._channel.publish(
            NotificationTopic.ITERATION_CANCELLED,
            {"iteration_id": iteration_id, "plan_id": iteration.plan_id, "reason": reason},
            source="iterations",
        )
        return True

    def get_iteration(self, iteration_id: str) -> Iteration:
        """反復を取得.

        Raises:
            IterationNotFoundError: 反復が存在しない場合
        """
        iteration = self._iterations.get(iteration_id)
        if iteration is None:
            raise IterationNotFoundError(iteration_id)
        return iteration

    def get_active_iterations(self, plan_id: str | None = None) -> list[Iteration]:
        """実行中（RUNNING）の反復を取得."""
        return [
            i
            for i in self._iterations.values()
            if i.status == IterationStatus.RUNNING and (plan_id is None or i.plan_id == plan_id)
        ]

    def get_iteration_history(self, plan_id: str) -> list[Iteration]:
        """計画の反復履歴を開始順で取得."""
        return sorted(
            (i for i in self._iterations.values() if i.plan_id == plan_id),
            key=lambda i: i.started_at,
        )

    def get_stats(self) -> dict[str, int]:
        """統計情報を取得."""
        return dict(self._stats)

    def get_report(self) -> dict[str, Any]:
        """反復レポートを取得."""
        total = self._stats["total_iterations"]

        def rate(count: int) -> float:
            return round(count / total * 100, 2) if total else 0.0

        def average(count: int) -> float:
            return round(count / total, 2) if total else 0.0

        return {
            "summary": {
                "total": total,
                "successful": self._stats["successful_iterations"],
                "failed": self._stats["failed_iterations"],
                "escalated": self._stats["escalated_iterations"],
                "success_rate": rate(self._stats["successful_iterations"]),
                "escalation_rate": rate(self._stats["escalated_iterations"]),
            },
            "retries": {
                "total": self._stats["total_retries"],
                "average_per_iteration": average(self._stats["total_retries"]),
            },
            "fixes": {
                "total": self._stats["total_fix_attempts"],
                "average_per_iteration": average(self._stats["total_fix_attempts"]),
            },
            "active_iterations": len(self.get_active_iterations()),
        }

    def shutdown(self) -> int:
        """未終了の反復を全て取り消す.

        Returns:
            取り消した反復数
        """
        pending = [
            i.id
            for i in self._iterations.values()
            if i.status in (IterationStatus.PENDING, IterationStatus.RUNNING)
        ]
        for iteration_id in pending:
            self.cancel_iteration(iteration_id, "Iteration manager shutdown")
        return len(pending)

    def _get(self, iteration_id: str) -> Iteration:
        """フェーズ実行可能な反復を取得."""
        iteration = self.get_iteration(iteration_id)
        if iteration.status in _TERMINAL:
            raise IterationStateError(iteration_id, iteration.status.value)
        return iteration

    def _enter(self, iteration: Iteration, phase: IterationPhase) -> None:
        iteration.phase = phase
        iteration.status = IterationStatus.RUNNING
        self._channel.publish(
            NotificationTopic.PHASE_STARTED,
            {
                "iteration_id": iteration.id,
                "phase": phase.value,
                "retry_count": iteration.retry_count,
                "fix_attempts": iteration.fix_attempts,
            },
            source="iterations",
        )

    async def _invoke(self, fn: PhaseCallback, *args: Any) -> PhaseOutcome:
        """コールバックを実行し、例外を失敗結果に変換."""
        try:
            value = fn(*args)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            self._logger.warning(f"フェーズコールバック例外: {e}")
            return PhaseOutcome(success=False, error=str(e) or type(e).__name__)
        return PhaseOutcome.coerce(value)

    def _interrupted(self, iteration: Iteration) -> bool:
        """コールバック実行中に取り消されたか."""
        return iteration.status != IterationStatus.RUNNING

    def _record(self, iteration: Iteration, phase: IterationPhase, outcome: PhaseOutcome, attempt: int) -> None:
        now = self._clock.now()
        iteration.history.append(
            PhaseRecord(
                phase=phase,
                attempt=attempt,
                success=outcome.success,
                error=outcome.error,
                failures=list(outcome.failures),
                timestamp=now,
            )
        )
        if not outcome.success:
            iteration.errors.append(
                {
                    "phase": phase.value,
                    "error": outcome.error or f"{phase.value} failed",
                    "retry_count": iteration.retry_count,
                    "timestamp": now.isoformat(),
                }
            )

    def _attempt_for(self, iteration: Iteration, phase: IterationPhase) -> int:
        if phase in (IterationPhase.FIX, IterationPhase.VERIFY):
            return iteration.fix_attempts
        return iteration.retry_count + 1

    def _phase_succeeded(self, iteration: Iteration, phase: IterationPhase, outcome: PhaseOutcome) -> PhaseResult:
        self._record(iteration, phase, outcome, attempt=self._attempt_for(iteration, phase))
        self._channel.publish(
            NotificationTopic.PHASE_COMPLETED,
            {"iteration_id": iteration.id, "phase": phase.value, "success": True},
            source="iterations",
        )
        return PhaseResult(success=True, phase=phase, iteration_id=iteration.id)

    def _phase_failed(self, iteration: Iteration, phase: IterationPhase, outcome: PhaseOutcome) -> PhaseResult:
        self._record(iteration, phase, outcome, attempt=self._attempt_for(iteration, phase))
        self._logger.warning(f"フェーズ失敗: {iteration.id} {phase.value}: {outcome.error}")
        self._channel.publish(
            NotificationTopic.PHASE_FAILED,
            {
                "iteration_id": iteration.id,
                "phase": phase.value,
                "error": outcome.error,
                "retry_count": iteration.retry_count,
            },
            source="iterations",
        )
        return PhaseResult(
            success=False,
            phase=phase,
            iteration_id=iteration.id,
            failures=list(outcome.failures),
            error=outcome.error,
            can_retry=iteration.retry_count < iteration.max_retries,
            retries_remaining=max(iteration.max_retries - iteration.retry_count, 0),
        )

    def _escalate(self, iteration: Iteration, reason: str, phase: IterationPhase | None = None) -> PhaseResult:
        """反復をエスカレーション."""
        if len(iteration.errors) > 5:
            level = EscalationLevel.CRITICAL
        elif iteration.retry_count < 2:
            level = EscalationLevel.MEDIUM
        else:
            level = EscalationLevel.HIGH

        iteration.status = IterationStatus.ESCALATED
        iteration.escalation_level = level
        iteration.escalation_reason = reason
        iteration.next_attempt_at = None
        iteration.ended_at = self._clock.now()
        self._stats["escalated_iterations"] += 1

        self._logger.warning(f"反復エスカレーション: {iteration.id} level={level.name} ({reason})")
        self._channel.publish(
            NotificationTopic.ITERATION_ESCALATED,
            {
                "iteration_id": iteration.id,
                "plan_id": iteration.plan_id,
                "level": int(level),
                "reason": reason,
                "errors": list(iteration.errors),
                "failures": list(iteration.failures),
            },
            source="iterations",
        )
        return self._escalated_result(iteration, phase)

    def _escalated_result(self, iteration: Iteration, phase: IterationPhase | None) -> PhaseResult:
        return PhaseResult(
            success=False,
            phase=phase,
            iteration_id=iteration.id,
            escalated=True,
            escalation_level=iteration.escalation_level,
            reason=iteration.escalation_reason,
        )

    def _cancelled_result(self, iteration: Iteration, phase: IterationPhase) -> PhaseResult:
        if iteration.status == IterationStatus.ESCALATED:
            return self._escalated_result(iteration, phase)
        return PhaseResult(success=False, phase=phase, iteration_id=iteration.id, cancelled=True)

    def _complete(self, iteration: Iteration) -> None:
        iteration.status = IterationStatus.COMPLETED
        iteration.ended_at = self._clock.now()
        self._stats["successful_iterations"] += 1

        duration = (iteration.ended_at - iteration.started_at).total_seconds()
        self._logger.info(f"反復完了: {iteration.id} ({duration:.1f}秒)")
        self._channel.publish(
            NotificationTopic.ITERATION_COMPLETED,
            {
                "iteration_id": iteration.id,
                "plan_id": iteration.plan_id,
                "success": True,
                "duration_seconds": duration,
                "retry_count": iteration.retry_count,
                "fix_attempts": iteration.fix_attempts,
            },
            source="iterations",
        )

    def _result(self, iteration: Iteration) -> IterationResult:
        ended = iteration.ended_at or self._clock.now()
        return IterationResult(
            success=iteration.status == IterationStatus.COMPLETED,
            iteration_id=iteration.id,
            status=iteration.status,
            escalated=iteration.status == IterationStatus.ESCALATED,
            escalation_level=iteration.escalation_level,
            reason=iteration.escalation_reason,
            retry_count=iteration.retry_count,
            fix_attempts=iteration.fix_attempts,
            duration_seconds=(ended - iteration.started_at).total_seconds(),
        )


__all__ = [
    "EscalationLevel",
    "Iteration",
    "IterationConfig",
    "IterationManager",
    "IterationPhase",
    "IterationResult",
    "IterationStatus",
    "PhaseOutcome",
    "PhaseRecord",
    "PhaseResult",
]
