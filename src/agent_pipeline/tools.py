# tools.py
# Tool registry and action dispatch.
#
# Agents act through four actions: read_file, write_file, list_directory and
# run_npm_script. Argument contracts live here as pydantic models; the
# ActionDispatcher executes a validated action against a Workspace and a
# ScriptPolicyEngine and turns the result into an observation string.
#
# The loops in harness.py import ActionDispatcher and TOOLS and never touch
# the filesystem or spawn processes themselves.

import re
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, Field, StrictBool, StrictStr, TypeAdapter, model_validator

from agent_pipeline.config import RuntimeConfig, load_script_policy
from agent_pipeline.policy import ProjectManifest, ScriptPolicyEngine, ScriptResult
from agent_pipeline.workspace import Workspace

READ_LIMIT = 6000
DEFAULT_MAX_RESULTS = 200
MAX_RESULTS_LIMIT = 1000
IGNORED_DIRECTORIES = frozenset({"node_modules", ".git", "dist"})

NEXT_ACTION = "Respond with the next JSON action."


class ToolNotFoundError(Exception):
    """Raised when an agent node requests a tool absent from the registry."""


# ---------------------------------------------------------------------------
# Argument contracts
# ---------------------------------------------------------------------------


class ReadFileArgs(BaseModel):
    path: str = Field(..., min_length=1, validation_alias=AliasChoices("path", "file_path"))


class WriteFileArgs(BaseModel):
    path: str = Field(..., min_length=1, validation_alias=AliasChoices("path", "file_path"))
    contents: str = Field(..., validation_alias=AliasChoices("contents", "content"))


class ListDirectoryArgs(BaseModel):
    path: str = Field(default=".", min_length=1, validation_alias=AliasChoices("path", "directory"))
    recursive: bool = False
    pattern: str | None = Field(default=None, min_length=1)
    max_results: int = Field(
        default=DEFAULT_MAX_RESULTS,
        gt=0,
        le=MAX_RESULTS_LIMIT,
        validation_alias=AliasChoices("max_results", "maxResults"),
    )


class RunNpmScriptArgs(BaseModel):
    script: str = Field(..., min_length=1)
    flags: dict[str, StrictStr | StrictBool] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _null_flags(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("flags") is None:
            data = {k: v for k, v in data.items() if k != "flags"}
        return data


class ReadFileAction(BaseModel):
    action: Literal["read_file"]
    args: ReadFileArgs


class WriteFileAction(BaseModel):
    action: Literal["write_file"]
    args: WriteFileArgs


class ListDirectoryAction(BaseModel):
    action: Literal["list_directory"]
    args: ListDirectoryArgs = Field(default_factory=ListDirectoryArgs)


class RunNpmScriptAction(BaseModel):
    action: Literal["run_npm_script"]
    args: RunNpmScriptArgs


AgentAction = Annotated[
    Union[ReadFileAction, WriteFileAction, ListDirectoryAction, RunNpmScriptAction],
    Field(discriminator="action"),
]

AGENT_ACTION_NAMES = ("read_file", "write_file", "list_directory", "run_npm_script")

_action_adapter = TypeAdapter(AgentAction)


def is_agent_action_name(value: str) -> bool:
    return value in AGENT_ACTION_NAMES


def parse_action(raw: Any):
    """Validate one raw {action, args} mapping. Raises pydantic.ValidationError."""
    return _action_adapter.validate_python(raw)


# ---------------------------------------------------------------------------
# Directory listing
# ---------------------------------------------------------------------------


def glob_to_regex(pattern: str) -> re.Pattern:
    """
    Translate a glob into an anchored regex over POSIX relative paths.
    `*` and `?` stay within one segment; `**/` spans zero or more segments.
    """
    out = ["^"]
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern[i + 1:i + 2] == "*":
                if pattern[i + 2:i + 3] == "/":
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
            else:
                out.append("[^/]*")
                i += 1
            continue
        if char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        i += 1
    out.append("$")
    return re.compile("".join(out))


@dataclass
class DirectoryListing:
    resolved_path: str
    entries: list[tuple[str, str]]
    truncated: bool
    pattern: str | None
    recursive: bool
    limit: int


def list_directory(workspace: Workspace, args: ListDirectoryArgs) -> DirectoryListing:
    resolved = workspace.resolve(args.path)
    if not workspace.exists(resolved):
        raise FileNotFoundError(f"Failed to access path {resolved}: no such file or directory")
    if not workspace.is_dir(resolved):
        raise NotADirectoryError(f"list_directory requires a directory path. Received {resolved}")

    matcher = glob_to_regex(args.pattern) if args.pattern else None
    entries: list[tuple[str, str]] = []

    def walk(current: str, prefix: str) -> bool:
        for entry in sorted(workspace.list_entries(current), key=lambda e: e.name):
            if len(entries) >= args.max_results:
                return True
            if entry.is_dir and entry.name in IGNORED_DIRECTORIES:
                continue

            relative = f"{prefix}{entry.name}"
            candidate = f"{relative}/" if entry.is_dir else relative
            if matcher is None or matcher.match(candidate):
                entries.append(("directory" if entry.is_dir else "file", candidate))
                if len(entries) >= args.max_results:
                    return True

            if entry.is_dir and args.recursive:
                child = workspace.resolve(f"{workspace.relative(current)}/{entry.name}")
                if walk(child, f"{relative}/"):
                    return True
        return False

    truncated = walk(resolved, "")
    return DirectoryListing(resolved, entries, truncated, args.pattern, args.recursive, args.max_results)


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------


def truncate_contents(contents: str, limit: int = READ_LIMIT) -> str:
    if len(contents) <= limit:
        return contents
    return f"{contents[:limit]}\n...[truncated {len(contents) - limit} characters]"


def _stream_block(text: str, truncated: bool, overflow: int, empty: str) -> str:
    suffix = f"\n...[truncated {overflow} characters]" if truncated else ""
    return f"{text or empty}{suffix}"


def format_script_result(result: ScriptResult) -> str:
    return "\n".join(
        [
            "Observation: run_npm_script completed.",
            f"script: {result.script}",
            f"exit_code: {'null' if result.exit_code is None else result.exit_code}",
            f"signal: {result.signal or 'null'}",
            f"timed_out: {str(result.timed_out).lower()}",
            "stdout:",
            _stream_block(result.stdout, result.stdout_truncated, result.stdout_overflow, "[no stdout]"),
            "stderr:",
            _stream_block(result.stderr, result.stderr_truncated, result.stderr_overflow, "[no stderr]"),
        ]
    )


@dataclass
class ActionResult:
    observation: str
    continue_loop: bool
    history_injection: str | None = None


def _observed(observation: str) -> ActionResult:
    return ActionResult(observation, True, f"{observation}\n{NEXT_ACTION}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ActionDispatcher:
    """
    Executes validated actions. Exactly one place turns an action into side
    effects; errors from a single action become tool_error observations.
    """

    def __init__(self, workspace: Workspace, policy_engine: ScriptPolicyEngine | None, logger) -> None:
        self.workspace = workspace
        self.policy_engine = policy_engine
        self.logger = logger

    def execute(self, action) -> ActionResult:
        handler = getattr(self, f"_{action.action}")
        try:
            return handler(action.args)
        except Exception as exc:
            return self.error_result(action.action, exc)

    def error_result(self, action_name: str, exc: Exception) -> ActionResult:
        message = f"{type(exc).__name__}: {exc}"
        self.logger.error(f"[agent] Tool error during action: {action_name} -> {message}")
        return _observed(
            "\n".join(
                [
                    "Observation: tool_error encountered.",
                    f"action: {action_name}",
                    f"error: {message}",
                ]
            )
        )

    def _read_file(self, args: ReadFileArgs) -> ActionResult:
        self.logger.agent_tool_call("read_file", args.model_dump())
        contents, resolved = self.workspace.read_text(args.path)
        self.logger.agent_tool_result({"path": resolved, "length": len(contents)})
        self.logger.info(f"Read file: {resolved} ({len(contents)} chars)")
        return _observed(
            f"Observation: read_file succeeded.\npath: {resolved}\ncontents:\n{truncate_contents(contents)}"
        )

    def _write_file(self, args: WriteFileArgs) -> ActionResult:
        self.logger.agent_tool_call("write_file", {"path": args.path, "length": len(args.contents)})
        resolved = self.workspace.write_text(args.path, args.contents)
        self.logger.agent_tool_result({"path": resolved})
        self.logger.info(f"Wrote file: {resolved}")
        return ActionResult(f"Observation: write_file succeeded at {resolved}.", False)

    def _list_directory(self, args: ListDirectoryArgs) -> ActionResult:
        self.logger.agent_tool_call("list_directory", args.model_dump())
        listing = list_directory(self.workspace, args)
        if listing.entries:
            entries_text = "\n".join(f"- [{kind}] {path}" for kind, path in listing.entries)
        else:
            entries_text = "- [empty] (no entries matched)"
        note = f"\n...[truncated to {listing.limit} entries]" if listing.truncated else ""
        observation = (
            f"Observation: list_directory succeeded.\npath: {listing.resolved_path}\n"
            f"pattern: {listing.pattern or '<none>'}\nrecursive: {str(listing.recursive).lower()}\n"
            f"entries:\n{entries_text}{note}"
        )
        self.logger.agent_tool_result({"count": len(listing.entries), "truncated": listing.truncated})
        self.logger.info(
            f"Listed directory: {listing.resolved_path} "
            f"({len(listing.entries)}{'+' if listing.truncated else ''} entries)"
        )
        return _observed(observation)

    def _run_npm_script(self, args: RunNpmScriptArgs) -> ActionResult:
        self.logger.agent_tool_call("run_npm_script", args.model_dump())
        if self.policy_engine is None:
            raise RuntimeError("run_npm_script is unavailable: no script policy configured")
        result = self.policy_engine.run(args.script, args.flags)
        self.logger.agent_tool_result({"exit_code": result.exit_code, "timed_out": result.timed_out})
        exit_label = "null" if result.exit_code is None else result.exit_code
        self.logger.info(f"Ran npm script: {result.underlying} (exit {exit_label})")
        return _observed(format_script_result(result))


def build_dispatcher(config: RuntimeConfig, working_directory: str, logger) -> ActionDispatcher:
    """Dispatcher rooted at `working_directory` with the configured script policy."""
    policy = load_script_policy(config.script_policy_path)
    manifest = ProjectManifest.load(working_directory)
    engine = ScriptPolicyEngine(policy, manifest)
    return ActionDispatcher(Workspace(working_directory), engine, logger)


# ---------------------------------------------------------------------------
# Native tool definitions (agent nodes)
# ---------------------------------------------------------------------------

_PATH_SCHEMA = {"type": "string", "description": "Path relative to the workspace root."}

_READ = {
    "action": "read_file",
    "description": "Read a UTF-8 text file from the workspace. Long files are truncated.",
    "input_schema": {
        "type": "object",
        "properties": {"path": _PATH_SCHEMA},
        "required": ["path"],
    },
}

_WRITE = {
    "action": "write_file",
    "description": "Create or overwrite a UTF-8 text file in the workspace.",
    "input_schema": {
        "type": "object",
        "properties": {"path": _PATH_SCHEMA, "contents": {"type": "string"}},
        "required": ["path", "contents"],
    },
}

_LIST = {
    "action": "list_directory",
    "description": "List entries of a workspace directory, optionally recursive and filtered by a glob.",
    "input_schema": {
        "type": "object",
        "properties": {
            "path": {**_PATH_SCHEMA, "default": "."},
            "recursive": {"type": "boolean", "default": False},
            "pattern": {"type": "string", "description": "Glob such as **/*.py"},
            "max_results": {"type": "integer", "minimum": 1, "maximum": MAX_RESULTS_LIMIT},
        },
    },
}

_SCRIPT = {
    "action": "run_npm_script",
    "description": "Run an allow-listed project script. Flags must be permitted by the script policy.",
    "input_schema": {
        "type": "object",
        "properties": {
            "script": {"type": "string"},
            "flags": {
                "type": "object",
                "additionalProperties": {"type": ["string", "boolean"]},
            },
        },
        "required": ["script"],
    },
}

TOOLS: dict[str, dict[str, Any]] = {
    "read_file":      {"name": "read_file", **_READ},
    "write_file":     {"name": "write_file", **_WRITE},
    "list_directory": {"name": "list_directory", **_LIST},
    "run_npm_script": {"name": "run_npm_script", **_SCRIPT},
    "file_read":      {"name": "file_read", **_READ},
    "file_write":     {"name": "file_write", **_WRITE},
    "file_list":      {"name": "file_list", **_LIST},
}


def get_tools(names: list[str]) -> list[dict[str, Any]]:
    tools = []
    for name in names:
        if name not in TOOLS:
            raise ToolNotFoundError(f"Tool not found: {name}")
        tools.append(TOOLS[name])
    return tools
