"""Typer command line for ``kubeboot``.

``configure`` is what the node's boot unit runs; the other commands are
read-only helpers for operators inspecting a node or a manifest template.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import BootSettings, ConfigError, Configuration, load_environment, load_settings
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .manifests import ManifestError, ManifestTemplater, TokenTable
from .pipeline import PipelineOrchestrator, PipelineReport, StageStatus, build_context, stages_for
from .role import Role, resolve_role
from .templates import write_if_changed

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to an alternate kubeboot settings file.",
)
ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    help="Path to the node's kube-env file (defaults to <kube_home>/kube-env).",
)

STATUS_STYLES = {
    StageStatus.SUCCESS: "green",
    StageStatus.SKIPPED: "yellow",
    StageStatus.FATAL: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Bootstrap a freshly booted VM into a cluster control-plane host or a
        worker node.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Objects shared by every command."""

    settings: BootSettings
    logger: StructuredLogger


def _configure_logging(verbose: bool) -> None:
    root = logging.getLogger("kubeboot")
    if any(isinstance(handler, RichHandler) for handler in root.handlers):
        return
    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        settings = load_settings(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.USAGE)) from exc
    runtime = RuntimeContext(settings=settings, logger=StructuredLogger(settings.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the kubeboot version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"kubeboot {__version__}")
        raise typer.Exit(code=int(ExitCode.OK))

    _configure_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=int(ExitCode.OK))


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FATAL),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _load_node_config(
    runtime: RuntimeContext, env_file: Path | None, op: OperationScope
) -> Configuration:
    path = env_file or runtime.settings.paths.env_file
    try:
        return load_environment(path)
    except ConfigError as exc:
        _command_error(op, str(exc))


def _render_report(report: PipelineReport) -> None:
    table = Table(title=f"kubeboot configure ({report.role.value})")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for outcome in report.outcomes:
        style = STATUS_STYLES[outcome.result.status]
        table.add_row(
            outcome.stage,
            f"[{style}]{outcome.result.status.value}[/{style}]",
            outcome.result.detail,
        )
    console.print(table)
    if report.failure is not None:
        console.print(f"[red]Aborted at stage {report.failure.stage}.[/red]")
    else:
        console.print(f"[green]Reached {report.state.value}.[/green]")


@app.command()
def configure(ctx: typer.Context, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Run the bootstrap pipeline for this node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure --load-env",
        args={"env_file": env_file},
        target={"kind": "node"},
    ) as op:
        config = _load_node_config(runtime, env_file, op)
        op.success("Loaded kube-env.", changed=0, context={"variables": len(config)})

    context = build_context(config, runtime.settings)
    report = PipelineOrchestrator(context, runtime.logger).run()
    _render_report(report)
    raise typer.Exit(code=int(report.exit_code))


@app.command()
def plan(
    ctx: typer.Context,
    env_file: Path | None = ENV_FILE_OPTION,
    role: Role | None = typer.Option(
        None, "--role", help="Show the plan for this role instead of the kube-env's."
    ),
) -> None:
    """List the stages the pipeline would run for this node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("plan", args={"role": role}, target={"kind": "node"}) as op:
        resolved = role
        if resolved is None:
            resolved = resolve_role(_load_node_config(runtime, env_file, op))
        table = Table(title=f"Pipeline for {resolved.value}")
        table.add_column("#", justify="right")
        table.add_column("Stage")
        table.add_column("Reaches")
        stages = stages_for(resolved)
        for index, stage in enumerate(stages, start=1):
            table.add_row(str(index), stage.name, stage.state.value)
        console.print(table)
        op.success("Listed pipeline stages.", changed=0, context={"stages": len(stages)})


@app.command("role")
def show_role(ctx: typer.Context, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Print the role this node's kube-env resolves to."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("role", target={"kind": "node"}) as op:
        resolved = resolve_role(_load_node_config(runtime, env_file, op))
        console.print(resolved.value)
        op.success("Resolved node role.", changed=0, context={"role": resolved.value})


def _parse_assignments(values: Sequence[str], option: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for raw in values:
        name, sep, value = raw.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"expected NAME=VALUE, got {raw!r}", param_hint=option)
        if name in parsed and parsed[name] != value:
            raise typer.BadParameter(f"{name} given twice", param_hint=option)
        parsed[name] = value
    return parsed


@app.command()
def render(
    ctx: typer.Context,
    template: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    set_values: list[str] = typer.Option(
        [], "--set", help="Bind a simple token: NAME=VALUE (repeatable)."
    ),
    pillar_values: list[str] = typer.Option(
        [], "--pillar", help="Bind a keyed token: KEY=VALUE (repeatable)."
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write the rendered manifest here instead of stdout."
    ),
) -> None:
    """Render one manifest template with ad-hoc token values."""
    runtime = _get_runtime(ctx)
    table = TokenTable(
        _parse_assignments(set_values, "--set"),
        pillar=_parse_assignments(pillar_values, "--pillar"),
    )
    with runtime.logger.operation(
        "render",
        args={"template": template, "output": output, "tokens": len(table)},
        target={"kind": "manifest", "path": template},
    ) as op:
        try:
            rendered = ManifestTemplater().render_file(template, table)
        except ManifestError as exc:
            _command_error(op, str(exc))
        warnings = [f"unresolved placeholder {token}" for token in rendered.unresolved]
        for warning in warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        changed = 0
        if output is None:
            console.out(rendered.text, end="", highlight=False)
        else:
            changed = int(write_if_changed(output, rendered.text, mode=0o644))
            console.print(f"Wrote {output}")
        if warnings:
            op.warning("Rendered with unresolved placeholders.", warnings=warnings, changed=changed)
        else:
            op.success("Rendered manifest.", changed=changed)


def main() -> None:
    """Console-script entry point."""
    app()


__all__ = ["app", "main"]
