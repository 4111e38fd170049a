# runs.py
# Durable runs and background jobs.
#
# Layout on disk, one directory per run:
#
#   <base>/<run-id>/metadata.json      RunMetadata (camelCase keys)
#   <base>/<run-id>/logs.jsonl         structured log entries
#   <base>/<run-id>/logs.txt           plain, timestamp-prefixed lines
#   <base>/<run-id>/tool-calls.jsonl   agent tool calls and results
#   <base>/<run-id>/.lock              held while a status transition is applied
#
# metadata.json is the only record of progress. It is rewritten atomically on
# every status transition, so a crash leaves either the old or the new file.
# Transitions read and write under an exclusive flock on the run's .lock file,
# so concurrent processes never interleave a read-modify-write.
#
# Run lifecycle:
#   queued → running → completed | failed
#   running (owning process gone) → interrupted
#   failed | interrupted → running (resume)

import fcntl
import json
import os
import shutil
import socket
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from pydantic import ValidationError

from agent_pipeline import display
from agent_pipeline.config import RuntimeConfig
from agent_pipeline.engine import PipelineExecutor
from agent_pipeline.harness import PromptRunner
from agent_pipeline.llm import ModelClient
from agent_pipeline.logger import RunLogger
from agent_pipeline.models import (
    RESUMABLE_STATUSES,
    TERMINAL_STATUSES,
    ExecutionContext,
    LogEntry,
    RunMetadata,
    RunStatus,
    utc_now,
)
from agent_pipeline.parser import PipelineParser

METADATA_FILE = "metadata.json"
STRUCTURED_LOG_FILE = "logs.jsonl"
PLAIN_LOG_FILE = "logs.txt"
TOOL_CALLS_FILE = "tool-calls.jsonl"
LOCK_FILE = ".lock"

ACTIVE_STATUSES = frozenset({"queued", "running"})

# Runs executing on a job thread anywhere in this process, across managers.
_live_lock = threading.Lock()
_live_runs: set[str] = set()


class RunStateError(Exception):
    """Raised for unknown runs, unreadable metadata and illegal transitions."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RunStore:
    """Filesystem-backed run records. Safe to share across job threads."""

    def __init__(self, base_dir: str = ".pipeline-runs") -> None:
        self.base_dir = Path(base_dir).resolve()
        self._lock = threading.Lock()
        self._transition = threading.Lock()

    # Paths -------------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        return self.base_dir / run_id

    def metadata_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / METADATA_FILE

    def structured_log_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / STRUCTURED_LOG_FILE

    def plain_log_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / PLAIN_LOG_FILE

    def tool_calls_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / TOOL_CALLS_FILE

    # Metadata ------------------------------------------------------------

    def create_run(
        self,
        pipeline_path: str,
        pipeline_name: str,
        user_prompt: str | None = None,
        kind: str = "pipeline",
    ) -> RunMetadata:
        run_id = str(uuid.uuid4())
        run_dir = self.run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=False)
        metadata = RunMetadata(
            id=run_id,
            pipeline_path=str(Path(pipeline_path).resolve()),
            pipeline_name=pipeline_name,
            user_prompt=user_prompt,
            kind=kind,
            status="queued",
            created_at=utc_now(),
            artifacts_dir=str(run_dir),
        )
        self.save_metadata(metadata)
        return metadata

    def save_metadata(self, metadata: RunMetadata) -> None:
        target = self.metadata_path(metadata.id)
        payload = metadata.model_dump_json(by_alias=True, indent=2)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".metadata-", suffix=".tmp", dir=target.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

    def load_metadata(self, run_id: str) -> RunMetadata | None:
        """Return the run's metadata, or None if the run does not exist."""
        path = self.metadata_path(run_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RunStateError(f"Failed to read run metadata at {path}: {exc}") from exc
        try:
            return RunMetadata.model_validate_json(text)
        except ValidationError as exc:
            raise RunStateError(f"Invalid run metadata at {path}: {exc}") from exc

    @contextmanager
    def transition_lock(self, run_id: str) -> Iterator[None]:
        """Exclusive across threads and processes for one run's read-modify-write."""
        run_dir = self.run_dir(run_id)
        if not run_dir.is_dir():
            raise RunStateError(f"Run {run_id} not found")
        with self._transition:
            with open(run_dir / LOCK_FILE, "a") as fh:
                fcntl.flock(fh, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(fh, fcntl.LOCK_UN)

    def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        error: str | None = None,
        only_if: Callable[[RunMetadata], bool] | None = None,
    ) -> RunMetadata | None:
        """
        Apply a status transition. With `only_if`, the current metadata is
        checked under the transition lock and None is returned, with nothing
        written, when the check fails.
        """
        with self.transition_lock(run_id):
            metadata = self.load_metadata(run_id)
            if metadata is None:
                raise RunStateError(f"Run {run_id} not found")
            if only_if is not None and not only_if(metadata):
                return None

            changes: dict[str, Any] = {"status": status}
            if status == "running":
                if metadata.started_at is None:
                    changes["started_at"] = utc_now()
                changes["completed_at"] = None
                changes["error"] = None
                changes["owner_pid"] = os.getpid()
                changes["owner_host"] = socket.gethostname()
            elif status in TERMINAL_STATUSES:
                changes["completed_at"] = utc_now()
                changes["error"] = error

            updated = metadata.model_copy(update=changes)
            self.save_metadata(updated)
            return updated

    def list_runs(self) -> list[RunMetadata]:
        """All readable runs, newest first. Directories without valid metadata are skipped."""
        if not self.base_dir.is_dir():
            return []
        runs: list[RunMetadata] = []
        for entry in self.base_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                metadata = self.load_metadata(entry.name)
            except RunStateError:
                continue
            if metadata is not None:
                runs.append(metadata)
        runs.sort(key=lambda run: run.created_at, reverse=True)
        return runs

    def delete_run(self, run_id: str) -> None:
        shutil.rmtree(self.run_dir(run_id), ignore_errors=True)

    def can_resume(self, run_id: str) -> bool:
        metadata = self.load_metadata(run_id)
        return metadata is not None and metadata.status in RESUMABLE_STATUSES

    # Logs ----------------------------------------------------------------

    def _append(self, path: Path, line: str) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def append_structured_log(self, run_id: str, entry: LogEntry) -> None:
        self._append(self.structured_log_path(run_id), entry.model_dump_json(exclude_none=True))

    def append_plain_log(self, run_id: str, message: str) -> None:
        self._append(self.plain_log_path(run_id), f"{utc_now()} {message}")

    def append_tool_call(self, run_id: str, payload: dict[str, Any]) -> None:
        record = {"timestamp": utc_now(), **payload}
        self._append(self.tool_calls_path(run_id), json.dumps(record, default=str))

    def read_structured_logs(self, run_id: str) -> list[LogEntry]:
        path = self.structured_log_path(run_id)
        if not path.exists():
            return []
        entries: list[LogEntry] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(LogEntry.model_validate_json(line))
            except ValidationError:
                continue
        return entries

    def read_plain_logs(self, run_id: str) -> list[str]:
        path = self.plain_log_path(run_id)
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()


def owner_alive(run: RunMetadata) -> bool:
    """Whether the process that owns a running run still exists."""
    if run.owner_pid is None:
        return False
    if run.owner_host != socket.gethostname():
        # Another machine sharing the runs directory; its pids mean nothing here.
        return True
    if run.owner_pid == os.getpid():
        with _live_lock:
            return run.id in _live_runs
    try:
        os.kill(run.owner_pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _orphaned(run: RunMetadata) -> bool:
    return run.status == "running" and not owner_alive(run)


def reconcile_interrupted(store: RunStore) -> list[RunMetadata]:
    """Mark `running` runs whose owning process is gone as `interrupted`. Returns the runs changed."""
    changed: list[RunMetadata] = []
    for run in store.list_runs():
        if run.status != "running":
            continue
        updated = store.update_run_status(
            run.id, "interrupted", error="Run was interrupted before completion", only_if=_orphaned
        )
        if updated is not None:
            changed.append(updated)
    return changed


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass
class JobUpdate:
    run: RunMetadata
    new_lines: list[str] = field(default_factory=list)


class JobManager:
    """
    Runs pipelines and prompts on background threads and publishes progress.

    The registry of live jobs is in memory and guarded by a lock; everything
    durable goes through the RunStore.
    """

    def __init__(
        self,
        store: RunStore,
        config: RuntimeConfig,
        working_directory: str,
        poll_interval: float | None = None,
        verbose: bool = False,
        echo: bool = False,
        client: ModelClient | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.working_directory = str(Path(working_directory).resolve())
        self.poll_interval = poll_interval if poll_interval is not None else config.poll_interval
        self.verbose = verbose
        self.echo = echo
        self.client = client

        self._lock = threading.Lock()
        self._jobs: dict[str, threading.Thread] = {}
        self._subscribers: list[Callable[[JobUpdate], None]] = []
        self._offsets: dict[str, int] = {}
        self._statuses: dict[str, str] = {}
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None

    # Submission ----------------------------------------------------------

    def queue_job(self, pipeline_path: str, pipeline_name: str, user_prompt: str | None = None) -> RunMetadata:
        metadata = self.store.create_run(pipeline_path, pipeline_name, user_prompt, kind="pipeline")
        return self._start(metadata, frozenset({"queued"}))

    def queue_prompt(self, prompt_path: str, name: str | None = None) -> RunMetadata:
        metadata = self.store.create_run(prompt_path, name or Path(prompt_path).stem, kind="prompt")
        return self._start(metadata, frozenset({"queued"}))

    def resume_job(self, run_id: str) -> RunMetadata:
        metadata = self.store.load_metadata(run_id)
        if metadata is None:
            raise RunStateError(f"Run {run_id} not found")
        return self._start(metadata, RESUMABLE_STATUSES)

    def _start(self, metadata: RunMetadata, claimable: frozenset[str]) -> RunMetadata:
        """
        Claim the run and launch its job thread. The liveness check, the
        durable move to running and the registration happen under one lock,
        so two callers can never both start the same run.
        """
        with self._lock:
            claimed = None if metadata.id in self._jobs else self._claim(metadata.id, claimable)
            if claimed is None:
                raise RunStateError("Job cannot be resumed")
            thread = threading.Thread(
                target=self._execute, args=(claimed,), name=f"job-{metadata.id[:8]}", daemon=True
            )
            self._jobs[metadata.id] = thread
        thread.start()
        return claimed

    def _claim(self, run_id: str, claimable: frozenset[str]) -> RunMetadata | None:
        with _live_lock:
            if run_id in _live_runs:
                return None
            _live_runs.add(run_id)
        claimed = self.store.update_run_status(run_id, "running", only_if=lambda run: run.status in claimable)
        if claimed is None:
            with _live_lock:
                _live_runs.discard(run_id)
        return claimed

    # Execution -----------------------------------------------------------

    def _execute(self, metadata: RunMetadata) -> None:
        logger = RunLogger(metadata.id, self.store, verbose=self.verbose, echo=self.echo)
        success = False
        error: str | None = None
        try:
            if metadata.kind == "prompt":
                runner = PromptRunner(self.config, logger, self.working_directory, client=self.client)
                success = runner.run(metadata.pipeline_path).success
            else:
                success, error = self._run_pipeline(metadata, logger)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.error(f"Run {metadata.id} failed", error)

        logger.flush()
        try:
            final = self.store.update_run_status(
                metadata.id, "completed" if success else "failed", None if success else error
            )
        except RunStateError as exc:
            display.error(f"Failed to record final status for run {metadata.id}", str(exc))
            final = None
        finally:
            logger.close()
            with _live_lock:
                _live_runs.discard(metadata.id)
            with self._lock:
                self._jobs.pop(metadata.id, None)

        if final is not None:
            self._publish(JobUpdate(run=final))

    def _run_pipeline(self, metadata: RunMetadata, logger: RunLogger) -> tuple[bool, str | None]:
        logger.loading(f"Loading pipeline from: {metadata.pipeline_path}")
        pipeline = PipelineParser().load_from_file(metadata.pipeline_path)
        context = ExecutionContext(
            working_directory=self.working_directory,
            user_prompt=metadata.user_prompt,
            verbose=self.verbose,
        )
        result = PipelineExecutor(self.config, logger, self.client).execute(pipeline, context)
        if result.success:
            return True, None
        failed = result.outcomes[-1]
        return False, f"Node {failed.node_id} failed: {failed.error or 'Unknown error'}"

    # Observation -----------------------------------------------------------

    def subscribe(self, callback: Callable[[JobUpdate], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, update: JobUpdate) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(update)
            except Exception as exc:
                display.error("Job subscriber raised", f"{type(exc).__name__}: {exc}")

    def active_ids(self) -> set[str]:
        with self._lock:
            return {run_id for run_id, thread in self._jobs.items() if thread.is_alive()}

    def track(self, run: RunMetadata) -> None:
        """Seed polling with a known status so a run that finishes before the first poll still reports."""
        with self._lock:
            self._statuses.setdefault(run.id, run.status)

    def poll_once(self) -> list[JobUpdate]:
        """Publish status changes and new plain-log lines for queued or running runs."""
        updates: list[JobUpdate] = []
        for run in self.store.list_runs():
            previous = self._statuses.get(run.id)
            if run.status not in ACTIVE_STATUSES and previous in (None, run.status):
                continue

            lines = self.store.read_plain_logs(run.id)
            offset = self._offsets.get(run.id, 0)
            new_lines = lines[offset:]
            self._offsets[run.id] = len(lines)
            self._statuses[run.id] = run.status

            if new_lines or previous != run.status:
                updates.append(JobUpdate(run=run, new_lines=new_lines))

        for update in updates:
            self._publish(update)
        return updates

    def start_polling(self) -> None:
        if self._poller is not None and self._poller.is_alive():
            return
        self._stop.clear()
        self._poller = threading.Thread(target=self._poll_loop, name="job-poller", daemon=True)
        self._poller.start()

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except RunStateError as exc:
                display.error("Job polling failed", str(exc))

    def stop(self) -> None:
        self._stop.set()
        if self._poller is not None:
            self._poller.join()
            self._poller = None

    def wait(self, run_id: str, timeout: float | None = None) -> RunMetadata | None:
        with self._lock:
            thread = self._jobs.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.store.load_metadata(run_id)
