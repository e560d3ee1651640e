"""Typer CLI wiring for automode."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import typer

from automode import __version__
from automode.agents.feature_executor import FeatureExecutor
from automode.agents.scheduler import ConcurrencyScheduler
from automode.config import AutomodeSettings, load_settings
from automode.errors import AutomodeError
from automode.logging import configure_logging, get_logger, log_exceptions
from automode.pipeline.service import pipeline_service
from automode.providers.factory import ProviderFactory
from automode.services.context_manager import FileContextManager
from automode.services.feature_loader import FileFeatureLoader

logger = get_logger(__name__)

app = typer.Typer(help="Autonomous coding-agent runner for feature backlogs")
pipeline_app = typer.Typer(help="Manage the project's pipeline steps")

app.add_typer(pipeline_app, name="pipeline")


def _version_callback(value: bool) -> None:
    """Print the automode package version when requested."""

    if value:
        typer.echo(f"automode {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the automode version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "",
        "--log-level",
        help="Set automode log level (e.g. info, warning, debug). Overrides AUTOMODE_LOG_LEVEL.",
    ),
) -> None:
    """Global callback to wire shared options like --version."""

    configure_logging(log_level or None)

    return None


def _config_option(help_text: str) -> Optional[Path]:
    """Shared configuration file option declaration for CLI commands."""

    return typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help=help_text,
    )


def _project_option() -> Path:
    return typer.Option(
        Path("."),
        "--project",
        "-p",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Project directory containing the .automaker folder.",
    )


@dataclass
class _Runtime:
    settings: AutomodeSettings
    factory: ProviderFactory
    loader: FileFeatureLoader
    executor: FeatureExecutor
    scheduler: ConcurrencyScheduler


def _build_runtime(config: Optional[Path], overrides: Optional[dict] = None) -> _Runtime:
    settings = load_settings(config, overrides)
    if settings.log_level:
        configure_logging(settings.log_level)
    factory = ProviderFactory(settings.provider_config())
    loader = FileFeatureLoader()
    executor = FeatureExecutor(
        factory,
        loader,
        FileContextManager(),
        pipeline_service,
        max_turns=settings.max_turns,
        default_model=settings.default_model,
        claude_profile=settings.claude_profile,
    )
    scheduler = ConcurrencyScheduler(
        executor, loader, max_concurrency=settings.max_concurrency
    )
    return _Runtime(settings, factory, loader, executor, scheduler)


def _print_event(event: dict[str, Any]) -> None:
    kind = event.get("type")
    feature_id = event.get("featureId", "")
    if kind == "auto_mode_progress":
        typer.echo(event.get("content", ""), nl=False)
    elif kind == "auto_mode_phase":
        typer.secho(f"[{feature_id}] {event.get('message', '')}", fg=typer.colors.CYAN)
    elif kind == "auto_mode_tool":
        typer.secho(f"[{feature_id}] tool: {event.get('tool')}", fg=typer.colors.BLUE)
    elif kind == "auto_mode_error":
        typer.secho(f"[{feature_id}] error: {event.get('error')}", fg=typer.colors.RED, err=True)
    elif kind == "auto_mode_feature_complete":
        colour = typer.colors.GREEN if event.get("passes") else typer.colors.YELLOW
        typer.secho(f"[{feature_id}] complete (passes={event.get('passes')})", fg=colour)


@app.command()
def run(
    project: Path = _project_option(),
    config: Optional[Path] = _config_option("Path to the automode.yaml configuration file."),
    max_concurrency: Optional[int] = typer.Option(
        None,
        "--max-concurrency",
        min=1,
        help="Maximum number of features running at once.",
    ),
) -> None:
    """Run backlog features until nothing eligible is left."""

    overrides = {"max_concurrency": max_concurrency} if max_concurrency else None
    runtime = _build_runtime(config, overrides)
    try:
        with log_exceptions(logger, message="Auto mode run failed"):
            asyncio.run(runtime.scheduler.run_until_idle(project, _print_event))
    except KeyboardInterrupt:
        runtime.scheduler.stop_all()
        raise typer.Exit(code=130)


@app.command()
def implement(
    feature_id: str = typer.Argument(..., help="Identifier of the feature to run."),
    project: Path = _project_option(),
    config: Optional[Path] = _config_option("Path to the automode.yaml configuration file."),
    commit: bool = typer.Option(
        False, "--commit", help="Commit the changes after a passing run."
    ),
) -> None:
    """Run a single feature in the foreground."""

    runtime = _build_runtime(config)

    async def _run() -> bool:
        feature = await asyncio.to_thread(runtime.loader.get_feature, project, feature_id)
        result = await runtime.executor.implement_feature(feature, project, _print_event)
        if result.passes and commit:
            await runtime.executor.commit_changes_only(feature, project, _print_event)
        return result.passes

    try:
        passes = asyncio.run(_run())
    except AutomodeError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo("")
    typer.echo(f"Feature {feature_id}: {'passed' if passes else 'needs attention'}")
    if not passes:
        raise typer.Exit(code=1)


@app.command()
def providers(
    config: Optional[Path] = _config_option("Path to the automode.yaml configuration file."),
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Report installation status for every agent backend."""

    runtime = _build_runtime(config)
    statuses = asyncio.run(runtime.factory.detect_all())
    if as_json:
        typer.echo(
            json.dumps({name: status.to_dict() for name, status in statuses.items()}, indent=2)
        )
        return
    for name, status in statuses.items():
        marker = "installed" if status.installed else "missing"
        detail = status.path or status.error or ""
        typer.echo(f"{name:<10} {marker:<10} {detail}")


@app.command()
def serve(
    project: Path = _project_option(),
    config: Optional[Path] = _config_option("Path to the automode.yaml configuration file."),
    host: Optional[str] = typer.Option(None, help="Host interface to bind the server"),
    port: Optional[int] = typer.Option(None, help="Port to bind the server"),
) -> None:
    """Start the HTTP control API."""

    import uvicorn

    from automode.server import create_app

    runtime = _build_runtime(config)
    bind_host = host or runtime.settings.server_host
    bind_port = port or runtime.settings.server_port
    app_instance = create_app(runtime.scheduler, pipeline_service, project, runtime.factory)
    typer.echo(f"Serving automode for {project} on http://{bind_host}:{bind_port}")
    uvicorn.run(app_instance, host=bind_host, port=bind_port)


@pipeline_app.command("list")
def pipeline_list(project: Path = _project_option()) -> None:
    """Show pipeline steps in order."""

    config = pipeline_service.get_pipeline_config(project)
    if not config.steps:
        typer.echo("No pipeline steps configured.")
        return
    for step in config.sorted_steps():
        typer.echo(f"{step.order:>3}  {step.id}  {step.name}")


@pipeline_app.command("add")
def pipeline_add(
    name: str = typer.Argument(..., help="Display name of the step."),
    instructions: str = typer.Option("", "--instructions", "-i", help="Prompt for the step."),
    order: Optional[int] = typer.Option(None, "--order", help="Position of the step."),
    color: Optional[str] = typer.Option(None, "--color", help="Display colour class."),
    project: Path = _project_option(),
) -> None:
    """Append a pipeline step."""

    step = pipeline_service.add_step(
        project, name=name, order=order, instructions=instructions, color=color
    )
    typer.echo(f"Added step {step.id} ({step.name})")


@pipeline_app.command("delete")
def pipeline_delete(
    step_id: str = typer.Argument(..., help="Identifier of the step to remove."),
    project: Path = _project_option(),
) -> None:
    """Remove a pipeline step."""

    try:
        pipeline_service.delete_step(project, step_id)
    except AutomodeError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Deleted step {step_id}")


@pipeline_app.command("reorder")
def pipeline_reorder(
    step_ids: list[str] = typer.Argument(..., help="Step ids in their new order."),
    project: Path = _project_option(),
) -> None:
    """Rewrite step order from the given id list."""

    try:
        pipeline_service.reorder_steps(project, step_ids)
    except AutomodeError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo("Pipeline reordered")


def main() -> None:
    """Entry point used by the console script."""

    app()


if __name__ == "__main__":
    main()
