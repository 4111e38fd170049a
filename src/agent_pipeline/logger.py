# logger.py
# Event sink for the runtime.
#
# Logger forwards events to display.py, dropping verbose-only events unless
# asked for them. RunLogger additionally mirrors every event to the run's
# artifacts directory:
#
#   logs.jsonl        one LogEntry per line
#   logs.txt          "<timestamp> [LEVEL] [category] message"
#   tool-calls.jsonl  agent tool calls and their results
#
# Disk writes happen on a single private writer thread so callers never block
# on I/O and entries land in emission order.

import json
import queue
import threading
from typing import Any

from agent_pipeline import display
from agent_pipeline.models import LogEntry


class Logger:
    def __init__(self, verbose: bool = False, echo: bool = True) -> None:
        self.verbose = verbose
        self.echo = echo

    # Hooks for subclasses; the base logger keeps nothing.
    def _record(self, level: str, category: str, message: str, data: dict[str, Any] | None = None) -> None:
        pass

    def _record_tool(self, kind: str, payload: dict[str, Any]) -> None:
        pass

    def _show(self, verbose_only: bool = False) -> bool:
        return self.echo and (self.verbose or not verbose_only)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def pipeline_start(self, name: str, description: str | None, node_count: int) -> None:
        if self._show():
            display.pipeline_start(name, description, node_count)
        self._record("info", "pipeline", f"Starting pipeline: {name}", {"description": description, "nodes": node_count})

    def pipeline_success(self, node_count: int, total_ms: int, files_changed: int) -> None:
        if self._show():
            display.pipeline_success(node_count, total_ms, files_changed)
        self._record(
            "info",
            "pipeline",
            "Pipeline completed successfully",
            {"nodeCount": node_count, "totalTime": total_ms, "filesChanged": files_changed},
        )

    def pipeline_failed(self, node_id: str, error: str | None) -> None:
        if self._show():
            display.pipeline_failed(node_id, error)
        self._record("error", "pipeline", "Pipeline failed", {"nodeId": node_id, "error": error})

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def node_start(self, node_id: str, node_type: str, description: str | None = None) -> None:
        if self._show():
            display.node_start(node_id, node_type, description)
        self._record(
            "info",
            "node",
            f"Starting node: {node_id} ({node_type})",
            {"nodeId": node_id, "nodeType": node_type, "phase": "start", "description": description},
        )

    def node_success(self, node_id: str, duration: int) -> None:
        if self._show():
            display.node_success(node_id, duration)
        self._record(
            "info",
            "node",
            f"Node completed: {node_id} ({duration}ms)",
            {"nodeId": node_id, "phase": "success", "duration": duration},
        )

    def node_failed(self, node_id: str, error: str, duration: int) -> None:
        if self._show():
            display.node_failed(node_id, error, duration)
        self._record(
            "error",
            "node",
            f"Node failed: {node_id} - {error} ({duration}ms)",
            {"nodeId": node_id, "phase": "failed", "duration": duration, "error": error},
        )

    # ------------------------------------------------------------------
    # Task and gate
    # ------------------------------------------------------------------

    def task_command(self, command: str) -> None:
        if self._show(verbose_only=True):
            display.task_command(command)
        self._record("debug", "task", "Executing command", {"command": command})

    def task_files_changed(self, files: list[str]) -> None:
        if files and self._show(verbose_only=True):
            display.task_files_changed(files)
        self._record("info", "task", f"Changed {len(files)} file(s)", {"files": files})

    def write_stdout(self, text: str) -> None:
        if self.echo:
            display.task_output(text, "stdout")
        self._record("info", "stdout", text.rstrip("\n"))

    def write_stderr(self, text: str) -> None:
        if self.echo:
            display.task_output(text, "stderr")
        self._record("warn", "stderr", text.rstrip("\n"))

    def gate_check(self, command: str) -> None:
        if self._show(verbose_only=True):
            display.gate_check(command)
        self._record("debug", "gate", "Gate check", {"command": command})

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    def agent_prompt(self, prompt: str) -> None:
        if self._show(verbose_only=True):
            display.agent_prompt(prompt)
        self._record("debug", "agent", "Agent prompt", {"prompt": prompt})

    def agent_tools(self, tools: list[str]) -> None:
        if self._show(verbose_only=True):
            display.agent_tools(tools)
        self._record("debug", "agent", "Agent tools", {"tools": tools})

    def agent_iteration(self, current: int, maximum: int) -> None:
        if self._show(verbose_only=True):
            display.agent_iteration(current, maximum)
        self._record("debug", "agent", f"Iteration {current}/{maximum}", {"current": current, "max": maximum})

    def agent_tool_call(self, tool_name: str, args: Any) -> None:
        if self._show(verbose_only=True):
            display.agent_tool_call(tool_name, args)
        self._record("info", "tool", f"Tool call: {tool_name}", {"tool": tool_name, "input": args})
        self._record_tool("call", {"tool": tool_name, "input": args})

    def agent_tool_result(self, result: Any) -> None:
        if self._show(verbose_only=True):
            display.agent_tool_result(result)
        self._record("debug", "tool", "Tool result", {"result": result})
        self._record_tool("result", {"result": result})

    def agent_json_retry(self, error: str, attempt: int, maximum: int) -> None:
        if self._show():
            display.agent_json_retry(error, attempt, maximum)
        self._record("warn", "agent", f"Output retry {attempt}/{maximum}", {"error": error})

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    def loading(self, message: str) -> None:
        if self._show():
            display.info(message)
        self._record("info", "system", message)

    def info(self, message: str) -> None:
        if self._show(verbose_only=True):
            display.info(message)
        self._record("info", "system", message)

    def warning(self, message: str) -> None:
        if self._show():
            display.warning(message)
        self._record("warn", "system", message)

    def error(self, message: str, details: str | None = None) -> None:
        if self._show():
            display.error(message, details if self.verbose else None)
        self._record("error", "system", message, {"details": details} if details else None)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Durable run logger
# ---------------------------------------------------------------------------

_STOP = object()


def format_plain(entry: LogEntry) -> str:
    line = f"[{entry.level.upper()}] [{entry.category}] {entry.message}"
    if entry.data:
        data = {k: v for k, v in entry.data.items() if v is not None}
        if data:
            line += f" {json.dumps(data, default=str)}"
    return line


class RunLogger(Logger):
    """
    Logger bound to one run in a RunStore. Every event is queued and written
    by one writer thread; flush() blocks until everything queued so far is on
    disk. A failed write is reported and skipped, never raised.
    """

    def __init__(self, run_id: str, store, verbose: bool = False, echo: bool = True) -> None:
        super().__init__(verbose=verbose, echo=echo)
        self.run_id = run_id
        self.store = store
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._writer = threading.Thread(target=self._drain, name=f"run-logger-{run_id[:8]}", daemon=True)
        self._writer.start()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                kind, payload = item
                if kind == "log":
                    self.store.append_structured_log(self.run_id, payload)
                    self.store.append_plain_log(self.run_id, format_plain(payload))
                else:
                    self.store.append_tool_call(self.run_id, payload)
            except Exception as exc:
                display.error(f"[run-logger] Failed to write log for run {self.run_id}: {exc}")
            finally:
                self._queue.task_done()

    def _record(self, level: str, category: str, message: str, data: dict[str, Any] | None = None) -> None:
        if self._closed:
            return
        self._queue.put(("log", LogEntry(level=level, category=category, message=message, data=data)))

    def _record_tool(self, kind: str, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        self._queue.put(("tool", {"type": kind, **payload}))

    def flush(self) -> None:
        self._queue.join()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._writer.join()

    def get_log_paths(self) -> dict[str, str]:
        return {
            "structured": str(self.store.structured_log_path(self.run_id)),
            "plain": str(self.store.plain_log_path(self.run_id)),
            "tool_calls": str(self.store.tool_calls_path(self.run_id)),
        }
