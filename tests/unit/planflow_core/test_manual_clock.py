"""クロックのテスト."""

from datetime import datetime, timedelta

import pytest

from planflow.core.clock import ManualClock, SystemClock, sleep_until


class TestManualClock:
    """ManualClock のテスト."""

    def test_default_start(self) -> None:
        """既定の開始時刻は 2024-01-01."""
        assert ManualClock().now() == datetime(2024, 1, 1)

    def test_advance(self) -> None:
        """advance で時刻が進み、負の値は無視される."""
        clock = ManualClock(datetime(2024, 5, 1, 12, 0))

        clock.advance(90)
        clock.advance(-30)

        assert clock.now() == datetime(2024, 5, 1, 12, 1, 30)

    @pytest.mark.asyncio
    async def test_sleep_advances_and_records(self) -> None:
        """sleep は待たずに時刻を進める."""
        clock = ManualClock()

        await clock.sleep(2.5)

        assert clock.sleeps == [2.5]
        assert clock.now() == datetime(2024, 1, 1) + timedelta(seconds=2.5)


class TestSleepUntil:
    """sleep_until のテスト."""

    @pytest.mark.asyncio
    async def test_waits_for_remaining_time(self) -> None:
        """指定時刻までの残り時間だけ待つ."""
        clock = ManualClock()
        target = clock.now() + timedelta(seconds=10)
        clock.advance(4)

        await sleep_until(clock, target)

        assert clock.sleeps == [6.0]
        assert clock.now() == target

    @pytest.mark.asyncio
    async def test_past_or_missing_target(self) -> None:
        """過去の時刻や None は即座に戻る."""
        clock = ManualClock()

        await sleep_until(clock, None)
        await sleep_until(clock, clock.now() - timedelta(seconds=1))

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_system_clock_zero_sleep(self) -> None:
        """SystemClock は実時間を返す."""
        clock = SystemClock()
        before = datetime.now()

        await clock.sleep(0)

        assert clock.now() >= before
