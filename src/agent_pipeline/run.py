# run.py
# Entry point. Config and wiring only. No pipeline logic lives here.
#
#   agent-pipeline run <pipeline.yaml> [--prompt TEXT] [--verbose] [--dry-run]
#   agent-pipeline validate <pipeline.yaml>
#   agent-pipeline prompt <prompt.md> [--mark-done]
#   agent-pipeline jobs
#   agent-pipeline resume <run-id>
#   agent-pipeline watch <run-id> [--interval SECONDS]
#   agent-pipeline lint-prompts [dir]
#   agent-pipeline create-prompt [name] [--dir prompts] [--open]
#
# Every execution goes through the JobManager so it leaves a durable run
# record under PIPELINE_RUNS_DIR; the CLI simply waits for the job.

import os
import threading
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError

from agent_pipeline import display
from agent_pipeline.config import RuntimeConfig
from agent_pipeline.models import TERMINAL_STATUSES, RunMetadata
from agent_pipeline.parser import PipelineParser, PipelineValidationError
from agent_pipeline.prompt import (
    PromptFormatError,
    create_prompt,
    lint_prompts,
    parse_prompt_file,
    update_prompt_status,
)
from agent_pipeline.runs import JobManager, JobUpdate, RunStateError, RunStore, reconcile_interrupted

app = typer.Typer(
    name="agent-pipeline",
    help="Run YAML-defined pipelines of shell tasks, gates and tool-using agents.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)


def _manager(config: RuntimeConfig, verbose: bool) -> JobManager:
    store = RunStore(config.runs_dir)
    return JobManager(store, config, os.getcwd(), verbose=verbose, echo=True)


def _finish(run: RunMetadata | None) -> None:
    if run is None:
        display.error("Run record disappeared before completion")
        raise typer.Exit(1)
    display.info(f"Run {run.id} {run.status}. Logs: {run.artifacts_dir}")
    if run.status != "completed":
        if run.error:
            display.error(run.error)
        raise typer.Exit(1)


def _load_pipeline(path: str):
    try:
        return PipelineParser().load_from_file(path)
    except PipelineValidationError as exc:
        display.error(str(exc))
        raise typer.Exit(1) from exc


@app.command("run")
def run_pipeline(
    pipeline_path: Annotated[str, typer.Argument(help="Path to pipeline YAML file")],
    prompt: Annotated[str | None, typer.Option("--prompt", "-p", help="User prompt exposed as {{prompt}}")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show commands, tool calls and iterations")] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Validate and show the plan without executing")] = False,
) -> None:
    """Execute a pipeline, stopping at the first failing node."""
    pipeline = _load_pipeline(pipeline_path)
    if dry_run:
        display.validation_summary(pipeline_path, pipeline)
        return

    config = RuntimeConfig.from_env()
    manager = _manager(config, verbose)
    run = manager.queue_job(pipeline_path, pipeline.name or Path(pipeline_path).stem, prompt)
    _finish(manager.wait(run.id))


@app.command("validate")
def validate(
    pipeline_path: Annotated[str, typer.Argument(help="Path to pipeline YAML file")],
) -> None:
    """Parse and validate a pipeline file without running it."""
    pipeline = _load_pipeline(pipeline_path)
    display.validation_summary(pipeline_path, pipeline)


@app.command("prompt")
def run_prompt(
    prompt_path: Annotated[str, typer.Argument(help="Path to a markdown prompt with YAML front matter")],
    mark_done: Annotated[bool, typer.Option("--mark-done", help="Set status: done after a successful run")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    """Run a prompt file through the JSON action loop."""
    try:
        parsed = parse_prompt_file(prompt_path)
    except PromptFormatError as exc:
        display.error(str(exc))
        raise typer.Exit(1) from exc

    if parsed.front_matter.status in ("done", "archived"):
        display.warning(f"Prompt status is {parsed.front_matter.status}; running anyway.")

    config = RuntimeConfig.from_env()
    manager = _manager(config, verbose)
    run = manager.queue_prompt(prompt_path)
    final = manager.wait(run.id)

    if mark_done and final is not None and final.status == "completed":
        path = Path(prompt_path)
        path.write_text(update_prompt_status(path.read_text(encoding="utf-8"), "done"), encoding="utf-8")
        display.info(f"Marked {path} as done")
    _finish(final)


@app.command("jobs")
def jobs() -> None:
    """List recorded runs, newest first."""
    config = RuntimeConfig.from_env()
    store = RunStore(config.runs_dir)
    for run in reconcile_interrupted(store):
        display.warning(f"Run {run.id} was interrupted")
    display.job_table(store.list_runs())


@app.command("watch")
def watch(
    run_id: Annotated[str, typer.Argument(help="ID of the run to follow")],
    interval: Annotated[
        float | None, typer.Option("--interval", help="Seconds between polls (default JOB_POLL_INTERVAL)")
    ] = None,
) -> None:
    """Follow a run's log lines and status until it finishes, even if another process owns it."""
    config = RuntimeConfig.from_env()
    store = RunStore(config.runs_dir)
    reconcile_interrupted(store)
    run = store.load_metadata(run_id)
    if run is None:
        display.error(f"Run {run_id} not found")
        raise typer.Exit(1)

    if run.status in TERMINAL_STATUSES:
        display.job_update(run, store.read_plain_logs(run_id))
        _finish(run)
        return

    manager = JobManager(store, config, os.getcwd(), poll_interval=interval)
    finished = threading.Event()

    def on_update(update: JobUpdate) -> None:
        if update.run.id != run_id:
            return
        display.job_update(update.run, update.new_lines)
        if update.run.status in TERMINAL_STATUSES:
            finished.set()

    unsubscribe = manager.subscribe(on_update)
    manager.track(run)
    manager.start_polling()
    try:
        finished.wait()
    finally:
        manager.stop()
        unsubscribe()
    _finish(store.load_metadata(run_id))


@app.command("resume")
def resume(
    run_id: Annotated[str, typer.Argument(help="ID of a failed or interrupted run")],
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    """Replay a failed or interrupted run from the beginning."""
    config = RuntimeConfig.from_env()
    manager = _manager(config, verbose)
    reconcile_interrupted(manager.store)
    try:
        manager.resume_job(run_id)
    except RunStateError as exc:
        display.error(str(exc))
        raise typer.Exit(1) from exc
    _finish(manager.wait(run_id))


@app.command("lint-prompts")
def lint(
    directory: Annotated[str, typer.Argument(help="Directory of prompt files")] = "prompts",
) -> None:
    """Check that every prompt file is markdown with valid front matter."""
    try:
        issues = lint_prompts(directory)
    except PromptFormatError as exc:
        display.error(str(exc))
        raise typer.Exit(1) from exc

    if issues:
        display.error("Prompt lint failed", "\n".join(f"- {issue}" for issue in issues))
        raise typer.Exit(1)
    display.info("Prompt lint passed.")


@app.command("create-prompt")
def new_prompt(
    name: Annotated[str | None, typer.Argument(help="Bare name (placed in --dir) or a path")] = None,
    directory: Annotated[str, typer.Option("--dir", help="Directory for bare names")] = "prompts",
    open_editor: Annotated[bool, typer.Option("--open", help="Open the file afterwards")] = False,
) -> None:
    """Scaffold a draft prompt file. Existing files are left untouched."""
    path, created = create_prompt(name, os.getcwd(), directory)
    if created:
        display.info(f"Created {path}")
    else:
        display.warning(f"{path} already exists; left unchanged")
    if open_editor:
        typer.launch(str(path))


def main() -> None:
    try:
        app()
    except (ValidationError, ValueError) as exc:
        display.error(f"Configuration error: {exc}")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
