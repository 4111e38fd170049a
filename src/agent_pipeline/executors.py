# executors.py
# One executor per node kind. Each turns (node, state, context) into exactly
# one NodeOutcome and never raises: any failure becomes success=False with
# the error message attached.

import codecs
import os
import subprocess
import threading
import time
from pathlib import Path

from agent_pipeline.config import RuntimeConfig
from agent_pipeline.harness import ToolCallLoop, build_agent_system_prompt
from agent_pipeline.llm import ModelClient
from agent_pipeline.models import AgentNode, ExecutionContext, GateNode, NodeOutcome, PipelineState, TaskNode
from agent_pipeline.schema import SchemaParser
from agent_pipeline.template import TemplateResolver
from agent_pipeline.tools import build_dispatcher, get_tools

SKIPPED_DIRECTORIES = frozenset({"node_modules", "__pycache__", "venv", "site-packages"})


def _now_ms() -> int:
    return int(time.time() * 1000)


def _outcome(node, start: int, success: bool, **fields) -> NodeOutcome:
    end = _now_ms()
    return NodeOutcome(
        node_id=node.id,
        type=node.type,
        success=success,
        start_time=start,
        end_time=end,
        duration=end - start,
        **fields,
    )


def _environment(context: ExecutionContext, extra: dict[str, str] | None = None) -> dict[str, str]:
    return {**os.environ, **context.environment, **(extra or {})}


# ---------------------------------------------------------------------------
# File change tracking
# ---------------------------------------------------------------------------


def snapshot_mtimes(root: str) -> dict[str, int]:
    """Map of file path → mtime_ns under `root`, skipping dot entries and dependency caches."""
    stamps: dict[str, int] = {}
    for current, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if not d.startswith(".") and d not in SKIPPED_DIRECTORIES]
        for name in files:
            if name.startswith("."):
                continue
            path = os.path.join(current, name)
            try:
                stamps[path] = os.stat(path).st_mtime_ns
            except OSError:
                continue
    return stamps


def detect_changed_files(before: dict[str, int], after: dict[str, int]) -> list[str]:
    return sorted(path for path, stamp in after.items() if path not in before or stamp > before[path])


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


READ_CHUNK = 4096


def _pump(stream, sink, chunks: list[str]) -> None:
    """Forward each chunk as soon as the pipe yields it, partial lines included."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    fd = stream.fileno()
    while True:
        data = os.read(fd, READ_CHUNK)
        text = decoder.decode(data, final=not data)
        if text:
            chunks.append(text)
            sink(text)
        if not data:
            break
    stream.close()


class TaskExecutor:
    def __init__(self, logger) -> None:
        self.logger = logger
        self.templates = TemplateResolver()

    def execute(self, node: TaskNode, state: PipelineState, context: ExecutionContext) -> NodeOutcome:
        start = _now_ms()
        try:
            command = self.templates.resolve(node.command, state)
            cwd = str(Path(context.working_directory, node.cwd or ".").resolve())
            self.logger.task_command(command)

            before = snapshot_mtimes(cwd) if node.track_changes else None
            exit_code, stdout = self._run(command, cwd, _environment(context, node.env))

            changed: list[str] | None = None
            if before is not None:
                changed = [
                    Path(os.path.relpath(path, context.working_directory)).as_posix()
                    for path in detect_changed_files(before, snapshot_mtimes(cwd))
                ]
                state.record_changed_files(changed)
                self.logger.task_files_changed(changed)

            if exit_code != 0:
                return _outcome(
                    node, start, False, output=stdout, error=f"Command exited with code {exit_code}",
                    changed_files=changed,
                )
            return _outcome(node, start, True, output=stdout, changed_files=changed)
        except Exception as exc:
            return _outcome(node, start, False, error=str(exc))

    def _run(self, command: str, cwd: str, env: dict[str, str]) -> tuple[int, str]:
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        out: list[str] = []
        err: list[str] = []
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, self.logger.write_stdout, out), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, self.logger.write_stderr, err), daemon=True),
        ]
        for pump in pumps:
            pump.start()
        exit_code = proc.wait()
        for pump in pumps:
            pump.join()
        return exit_code, "".join(out)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class GateExecutor:
    def __init__(self, logger) -> None:
        self.logger = logger
        self.templates = TemplateResolver()

    def execute(self, node: GateNode, state: PipelineState, context: ExecutionContext) -> NodeOutcome:
        start = _now_ms()
        try:
            command = self.templates.resolve(node.command, state)
            self.logger.gate_check(command)
            completed = subprocess.run(
                command,
                shell=True,
                cwd=context.working_directory,
                env=_environment(context),
            )
        except Exception as exc:
            return _outcome(node, start, False, error=node.message or str(exc))

        if completed.returncode != 0:
            error = node.message or f"Gate check failed with exit code {completed.returncode}"
            return _outcome(node, start, False, error=error)
        return _outcome(node, start, True)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class AgentExecutor:
    def __init__(self, config: RuntimeConfig, logger, client: ModelClient | None = None) -> None:
        self.config = config
        self.logger = logger
        self.client = client or ModelClient(config)
        self.templates = TemplateResolver()
        self.schemas = SchemaParser()

    def execute(self, node: AgentNode, state: PipelineState, context: ExecutionContext) -> NodeOutcome:
        start = _now_ms()
        try:
            tools = get_tools(node.tools)
            schema = self.schemas.parse(node.output_schema)
            prompt = self.templates.resolve(node.prompt, state)

            self.logger.agent_prompt(prompt)
            self.logger.agent_tools([tool["name"] for tool in tools])

            system_prompt = build_agent_system_prompt(node.description, node.tools, schema.to_wire_schema())
            loop = ToolCallLoop(
                self.client,
                build_dispatcher(self.config, context.working_directory, self.logger),
                self.logger,
                max_iterations=self.config.agent_max_iterations,
                schema_retries=self.config.schema_retries,
                model=node.model,
            )
            output = loop.run(prompt, system_prompt, tools, schema)
        except Exception as exc:
            return _outcome(node, start, False, error=str(exc))
        return _outcome(node, start, True, output=output)
