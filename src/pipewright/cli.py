# cli.py
from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from pipewright.config import Settings
from pipewright.controller import PipelineController
from pipewright.dag import plan
from pipewright.errors import ConfigurationError
from pipewright.loader import load_pipeline
from pipewright.ui.console import Console, get_console, set_console

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config_error(e: ConfigurationError) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items() if k != "problems"]
    details.extend(e.details.get("problems", []))
    if e.job:
        details.insert(0, f"job: {e.job}")
    if e.step:
        details.insert(1 if e.job else 0, f"step: {e.step}")
    console.print_error("Invalid pipeline", e.message, details=details or None)


def _load_settings(**overrides) -> Settings:
    try:
        settings = Settings()
    except ValidationError as e:
        raise ConfigurationError("invalid PIPEWRIGHT_* environment settings", problems=[str(e)]) from e
    updates = {k: v for k, v in overrides.items() if v is not None}
    return settings.model_copy(update=updates)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, job logs and debug logging)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: self-hosted, cache-aware CI/CD pipeline runner."""
    set_console(Console(debug=debug))
    _configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--max-parallel", type=click.IntRange(min=1), default=None, help="Maximum jobs running at once")
@click.option("--dry-run", is_flag=True, default=False, help="Validate and print the plan without running anything")
@click.option("--cache-dir", default=None, help="Cache directory (default: .pipewright/cache)")
@click.option("--workspace", default=None, type=click.Path(file_okay=False), help="Working tree for steps (default: .)")
@click.pass_context
def run(ctx, pipeline_file, max_parallel, dry_run, cache_dir, workspace):
    """Run a pipeline definition."""
    console = get_console()

    try:
        settings = _load_settings(cache_dir=cache_dir, workspace=workspace, max_parallel=max_parallel)
        controller = PipelineController(settings, console=console)
        definition = controller.load(pipeline_file)
    except ConfigurationError as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG)

    interrupted = False

    def _on_sigint(signum, frame):
        nonlocal interrupted
        interrupted = True
        console.print_info("\nInterrupted, cancelling running jobs (Ctrl-C again to force)...")
        signal.signal(signal.SIGINT, signal.default_int_handler)
        controller.abort()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        result = controller.run_pipeline(definition, max_parallel=settings.max_parallel, dry_run=dry_run)
    except ConfigurationError as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)
    finally:
        signal.signal(signal.SIGINT, previous)

    if interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False, path_type=Path))
def validate(pipeline_file):
    """Validate a pipeline definition and print its stages."""
    console = get_console()
    try:
        definition = load_pipeline(pipeline_file)
    except ConfigurationError as e:
        _print_config_error(e)
        sys.exit(EXIT_CONFIG)

    build_names = [j.name for j in definition.build_jobs]
    stages = plan(definition.build_jobs)
    if definition.deploy_jobs:
        stages += plan(definition.deploy_jobs, satisfied=build_names)
    console.print_info(f"{definition.name}: {len(definition.jobs)} job(s), definition OK")
    console.print_plan(stages)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
