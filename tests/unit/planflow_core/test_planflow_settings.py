"""PlanFlowSettings のテスト."""

import pytest
from pydantic import ValidationError

from planflow.config.settings import PlanFlowSettings, get_settings
from planflow.core.exceptions import ConfigurationError
from planflow.orchestration.coordinator import AssignmentStrategy, CoordinatorConfig
from planflow.orchestration.iteration import IterationConfig
from planflow.orchestration.orchestrator import OrchestratorConfig
from planflow.orchestration.planner import PlannerConfig
from planflow.orchestration.progress import TrackerConfig


class TestPlanFlowSettings:
    """設定読込のテスト."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        """既定値."""
        monkeypatch.chdir(tmp_path)
        settings = PlanFlowSettings()

        assert settings.max_concurrency == 3
        assert settings.assignment_strategy == "capability_match"
        assert settings.max_fix_attempts == 5
        assert settings.blocker_detection_threshold == 3

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        """PLANFLOW_ 接頭辞の環境変数で上書きできる."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PLANFLOW_MAX_CONCURRENCY", "5")
        monkeypatch.setenv("PLANFLOW_ASSIGNMENT_STRATEGY", "load_balanced")
        monkeypatch.setenv("PLANFLOW_SKIP_FAILED_TASKS", "true")

        settings = PlanFlowSettings()

        assert settings.max_concurrency == 5
        assert settings.assignment_strategy == "load_balanced"
        assert settings.skip_failed_tasks is True

    def test_assignment_wait_from_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        """割当再試行間隔は環境変数から駆動ループ設定へ渡る."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PLANFLOW_ASSIGNMENT_WAIT_SECONDS", "2.5")

        config = OrchestratorConfig.from_settings(PlanFlowSettings())

        assert config.assignment_wait_seconds == 2.5

    def test_invalid_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """範囲外の値は検証エラー."""
        monkeypatch.setenv("PLANFLOW_MAX_CONCURRENCY", "0")

        with pytest.raises(ValidationError):
            PlanFlowSettings()

    def test_get_settings_cached(self) -> None:
        """get_settings は同じインスタンスを返す."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestComponentConfigs:
    """設定からのコンポーネント設定生成テスト."""

    def test_from_settings(self) -> None:
        """各コンポーネント設定に値が引き継がれる."""
        settings = PlanFlowSettings(
            max_concurrency=4,
            checkpoint_frequency=2,
            assignment_strategy="round_robin",
            max_retries=1,
            velocity_window_size=5,
            max_task_retries=0,
        )

        assert PlannerConfig.from_settings(settings).checkpoint_frequency == 2
        assert CoordinatorConfig.from_settings(settings).strategy == AssignmentStrategy.ROUND_ROBIN
        assert IterationConfig.from_settings(settings).max_retries == 1
        assert TrackerConfig.from_settings(settings).velocity_window_size == 5
        assert OrchestratorConfig.from_settings(settings).max_task_retries == 0

    def test_unknown_strategy_rejected(self) -> None:
        """未知の割当戦略はコンポーネント生成時に ConfigurationError."""
        settings = PlanFlowSettings(assignment_strategy="fastest")

        with pytest.raises(ConfigurationError):
            CoordinatorConfig.from_settings(settings)

    def test_planner_config_validation(self) -> None:
        """PlannerConfig の検証."""
        with pytest.raises(ConfigurationError):
            PlannerConfig(max_concurrency=0)
        with pytest.raises(ConfigurationError):
            PlannerConfig(checkpoint_frequency=-1)
