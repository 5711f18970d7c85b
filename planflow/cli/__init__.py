"""PlanFlow CLI."""

from planflow.cli.main import cli, main


__all__ = ["cli", "main"]
