"""PlanFlow CLI のテスト."""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from planflow.cli.main import cli
from planflow.config.settings import get_settings


@pytest.fixture(autouse=True)
def quiet_settings(monkeypatch: pytest.MonkeyPatch):
    """CLI が読み込む設定をテストごとに作り直す."""
    monkeypatch.setenv("PLANFLOW_LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def tasks_file(tmp_path: Path, web_app_tasks: list) -> Path:
    """YAML のタスク定義ファイル."""
    path = tmp_path / "tasks.yaml"
    path.write_text(yaml.safe_dump(web_app_tasks), encoding="utf-8")
    return path


class TestCLI:
    """CLI メインコマンドのテスト."""

    def test_cli_help(self) -> None:
        """--help オプションが動作することをテスト."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "PlanFlow" in result.output
        assert "plan" in result.output

    def test_cli_version(self) -> None:
        """--version オプションが動作することをテスト."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "planflow" in result.output
        assert "0.1.0" in result.output


class TestPlanCommand:
    """plan コマンドのテスト."""

    def test_plan_table_output(self, tasks_file: Path) -> None:
        """実行グループとチェックポイントを表示する."""
        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(tasks_file)])

        assert result.exit_code == 0
        assert "Execution Groups" in result.output
        assert "Checkpoints" in result.output
        assert "5 tasks in 4 groups" in result.output

    def test_plan_json_output(self, tasks_file: Path) -> None:
        """--json で外部インターフェース形式を出力する."""
        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(tasks_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [g["tasks"] for g in data["executionGroups"]] == [["setup"], ["api", "ui"], ["tests"], ["deploy"]]
        assert data["checkpoints"][-1]["type"] == "final"

    def test_plan_max_concurrency(self, tasks_file: Path) -> None:
        """--max-concurrency でグループが分割される."""
        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(tasks_file), "-c", "1", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert len(data["executionGroups"]) == 5

    def test_plan_json_file_with_tasks_key(self, tmp_path: Path) -> None:
        """JSON の ``{"tasks": [...]}`` 形式も読み込める."""
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps({"tasks": [{"id": "a"}, {"id": "b", "dependencies": ["a"]}]}), encoding="utf-8")

        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(path), "--json"])

        assert result.exit_code == 0
        assert len(json.loads(result.output)["executionGroups"]) == 2

    def test_plan_cycle_reported(self, tmp_path: Path) -> None:
        """循環依存はエラーパネルを表示して終了コード1."""
        path = tmp_path / "cycle.yaml"
        path.write_text(
            yaml.safe_dump([{"id": "a", "dependencies": ["b"]}, {"id": "b", "dependencies": ["a"]}]),
            encoding="utf-8",
        )

        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(path)])

        assert result.exit_code == 1
        assert "Planning Failed" in result.output

    def test_plan_invalid_structure(self, tmp_path: Path) -> None:
        """タスク一覧を含まないファイルはエラー."""
        path = tmp_path / "bad.yaml"
        path.write_text("name: not a task list\n", encoding="utf-8")

        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(path)])

        assert result.exit_code == 1
        assert "Planning Failed" in result.output

    def test_plan_missing_file(self, tmp_path: Path) -> None:
        """存在しないファイルは引数エラー."""
        runner = CliRunner()
        result = runner.invoke(cli, ["plan", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 2


class TestAgentsCommand:
    """agents コマンドのテスト."""

    def test_agents_listed(self) -> None:
        """標準Agentプールを表示する."""
        runner = CliRunner()
        result = runner.invoke(cli, ["agents"])

        assert result.exit_code == 0
        assert "tester-agent" in result.output
        assert "deploy-agent" in result.output
