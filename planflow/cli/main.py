"""PlanFlow CLI メインエントリーポイント.

タスク定義ファイル（JSON / YAML）から実行計画を作成して表示します。
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from planflow import __version__
from planflow.config.settings import get_settings
from planflow.core.exceptions import PlanFlowError
from planflow.orchestration.coordinator import default_agent_registry
from planflow.orchestration.models import Plan
from planflow.orchestration.planner import ExecutionPlanner, PlannerConfig


# Rich Console インスタンス
console = Console()


class PlanFlowCLI(click.Group):
    """PlanFlow CLI グループクラス."""

    def format_help(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """ヘルプメッセージをフォーマット.

        Args:
            ctx: Click コンテキスト
            formatter: ヘルプフォーマッター
        """
        title = Text("PlanFlow CLI", style="bold cyan")
        subtitle = Text("Execution planning for cooperating agents", style="dim")

        console.print()
        console.print(Panel(title, subtitle=subtitle, border_style="cyan"))
        console.print()

        super().format_help(ctx, formatter)


def _load_tasks(tasks_path: Path) -> list[dict[str, Any]]:
    """タスク定義ファイルを読み込む.

    トップレベルがリスト、または ``tasks`` キーを持つマッピングを受け付けます。
    """
    text = tasks_path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if tasks_path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        msg = f"Invalid task file: {e}"
        raise ValueError(msg) from e

    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        msg = "Task file must contain a list of tasks or a mapping with a 'tasks' list"
        raise ValueError(msg)
    for i, item in enumerate(data, start=1):
        if not isinstance(item, dict):
            msg = f"Task #{i} must be a mapping object"
            raise ValueError(msg)
    return data


def _render_plan(plan: Plan) -> None:
    """実行計画を表示."""
    groups = Table(title=f"Execution Groups ({plan.id})")
    groups.add_column("Order", justify="right", style="cyan")
    groups.add_column("Phase", style="magenta")
    groups.add_column("Tasks")
    groups.add_column("Parallel", justify="center")
    for group in plan.execution_groups:
        groups.add_row(
            str(group.order),
            group.phase.value,
            ", ".join(group.task_ids),
            "✓" if group.can_run_in_parallel else "-",
        )
    console.print(groups)

    checkpoints = Table(title="Checkpoints")
    checkpoints.add_column("ID", style="cyan")
    checkpoints.add_column("Type", style="magenta")
    checkpoints.add_column("After", justify="right")
    checkpoints.add_column("Description", style="dim")
    for checkpoint in plan.checkpoints:
        checkpoints.add_row(
            checkpoint.id,
            checkpoint.type.value,
            str(checkpoint.after_order),
            checkpoint.description,
        )
    console.print(checkpoints)

    minutes = plan.estimated_duration_seconds / 60
    console.print(
        f"[green]✓[/green] {len(plan.tasks)} tasks in {len(plan.execution_groups)} groups, "
        f"estimated {minutes:.0f} min"
    )


@click.group(cls=PlanFlowCLI)
@click.version_option(version=__version__, prog_name="planflow")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="詳細な出力を表示",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """PlanFlow - 依存グラフに基づく実行計画ツール.

    使用例:

        \b
        # タスク定義から実行計画を作成
        $ planflow plan tasks.yaml --max-concurrency 2

        \b
        # 標準Agentプールを表示
        $ planflow agents
    """
    settings = get_settings()
    if verbose:
        logging.getLogger("planflow").setLevel(logging.DEBUG)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["settings"] = settings


@cli.command("plan")
@click.argument(
    "tasks_path",
    metavar="TASKS_FILE",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--max-concurrency",
    "-c",
    type=int,
    default=None,
    help="実行グループあたりの最大タスク数",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="JSON形式で出力",
)
@click.pass_context
def plan_command(ctx: click.Context, tasks_path: Path, max_concurrency: int | None, json_output: bool) -> None:
    """タスク定義ファイル（JSON / YAML）から実行計画を作成."""
    settings = ctx.obj["settings"]
    try:
        tasks = _load_tasks(tasks_path)
        planner = ExecutionPlanner(PlannerConfig.from_settings(settings))
        plan = planner.create_plan(tasks, max_concurrency=max_concurrency)
    except (PlanFlowError, ValueError) as e:
        console.print(Panel(f"[red]{e}[/red]", title="Planning Failed", border_style="red"))
        raise click.exceptions.Exit(1) from e

    if json_output:
        click.echo(json.dumps(plan.to_dict(), indent=2, ensure_ascii=False))
        return
    _render_plan(plan)


@cli.command("agents")
def agents_command() -> None:
    """標準Agentプールと能力タグを表示."""
    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Capabilities", style="magenta")
    for agent in default_agent_registry():
        table.add_row(agent.id, agent.name, ", ".join(sorted(c.value for c in agent.capabilities)))
    console.print(table)


def main() -> None:
    """CLI メインエントリーポイント."""
    try:
        cli(obj={})
    except PlanFlowError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
