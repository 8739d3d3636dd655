from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from layergate.collaborators import CommandCollaborator, StageCollaborator
from layergate.config import LayergateConfig, load_config, save_config
from layergate.controller import PipelineController
from layergate.errors import LayergateError
from layergate.state import RunStore

EXIT_HOLD = 2


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: LayergateConfig
    store: RunStore
    controller: PipelineController
    events: list[dict[str, Any]]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_collaborators(
    config: LayergateConfig,
    repo_root: Path,
    events: list[dict[str, Any]],
) -> dict[str, StageCollaborator]:
    collaborators: dict[str, StageCollaborator] = {}
    missing: list[str] = []
    for stage in config.stages:
        if not stage.command.strip():
            missing.append(stage.id)
            continue
        collaborators[stage.id] = CommandCollaborator(
            stage.command,
            working_directory=repo_root,
            event_hook=events.append,
        )
    if missing:
        raise click.ClickException(
            "Stages without a command: " + ", ".join(missing) + ". Set `command` in the config."
        )
    return collaborators


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        events: list[dict[str, Any]] = []
        controller = PipelineController(
            config.build_stages(),
            _build_collaborators(config, repo_root, events),
            rework_limit=config.pipeline.rework_limit,
            classification=config.classification,
            pipeline_id=config.pipeline.id,
            event_hook=events.append,
        )
    except LayergateError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=RunStore(repo_root),
        controller=controller,
        events=events,
    )


def _read_payload(payload_file: str | None) -> Any:
    if payload_file is None:
        return {}
    try:
        return json.loads(Path(payload_file).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not read payload {payload_file}: {exc}") from exc


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log pipeline progress to stderr.")
def cli(verbose: bool) -> None:
    """Layergate CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="layergate.toml", show_default=True)
@click.option("--force", is_flag=True, default=False)
def init_command(config_value: str, force: bool) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists. Use --force to overwrite.")
    config = LayergateConfig.default()
    save_config(config_path, config)
    (repo_root / ".layergate").mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized layergate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Stages: {len(config.stages)}")


@cli.command("stages")
@click.option("--config", "config_value", default="layergate.toml", show_default=True)
def stages_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
        stages = config.build_stages()
    except LayergateError as exc:
        raise click.ClickException(str(exc)) from exc
    for stage in stages:
        click.echo(f"{stage.ordinal}. {stage.stage_id} (timeout {stage.timeout_seconds:g}s)")
        for criterion in stage.criteria:
            expected = "" if criterion.value is None else f" {criterion.value!r}"
            click.echo(
                f"   - {criterion.name}: {criterion.field_path} {criterion.operator}{expected}"
            )
    click.echo(f"Rework limit: {config.pipeline.rework_limit}")


@cli.command("run")
@click.argument("payload_file", required=False)
@click.option("--pipeline-id", default=None)
@click.option("--config", "config_value", default="layergate.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    payload_file: str | None,
    pipeline_id: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    payload = _read_payload(payload_file)
    outcome = asyncio.run(runtime.controller.run(payload, pipeline_id=pipeline_id))
    try:
        runtime.store.archive_outcome(outcome, runtime.events)
    except LayergateError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
    if not outcome.released:
        ctx.exit(EXIT_HOLD)


@cli.command("report")
@click.option("--run-id", default=None)
def report_command(run_id: str | None) -> None:
    store = RunStore(Path.cwd().resolve())
    if run_id is None:
        click.echo(json.dumps(store.get_metrics(), ensure_ascii=False, indent=2))
        return
    run = store.get_run(run_id)
    if run is None:
        raise click.ClickException(f"Run not found: {run_id}")
    click.echo(json.dumps(run, ensure_ascii=False, indent=2))
