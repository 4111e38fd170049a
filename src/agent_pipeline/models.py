# models.py
# Data contracts for the pipeline runtime.
# No business logic lives here. Pure schema and validation.

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    """ISO 8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


class TaskNode(BaseModel):
    """Runs a shell command, optionally tracking files it modifies."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    type: Literal["task"] = "task"
    description: str | None = None
    command: str = Field(..., min_length=1)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    track_changes: bool = False


class AgentNode(BaseModel):
    """Drives a model through the tool loop and returns schema-checked JSON."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    type: Literal["agent"] = "agent"
    description: str | None = None
    prompt: str = Field(..., min_length=1)
    tools: list[str]
    output_schema: str | dict[str, Any]
    model: str | None = None


class GateNode(BaseModel):
    """A pass/fail shell check. Failure halts the pipeline."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    type: Literal["gate"] = "gate"
    description: str | None = None
    command: str = Field(..., min_length=1)
    message: str | None = None


Node = Annotated[Union[TaskNode, AgentNode, GateNode], Field(discriminator="type")]


class Pipeline(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str | None = None
    description: str | None = None
    nodes: list[Node] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class NodeOutcome(BaseModel):
    """Produced exactly once per executed node. Times are epoch milliseconds."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    type: str
    success: bool
    output: Any = None
    error: str | None = None
    changed_files: list[str] | None = None
    start_time: int
    end_time: int
    duration: int


class PipelineState(BaseModel):
    """Mutable accumulator owned by the engine for the duration of one run."""

    nodes: dict[str, NodeOutcome] = Field(default_factory=dict)
    changed_files: list[str] = Field(default_factory=list)
    working_directory: str
    user_prompt: str | None = None

    def record_changed_files(self, files: list[str]) -> None:
        """Merge files into the changed set. The set never shrinks."""
        seen = set(self.changed_files)
        for path in files:
            if path not in seen:
                seen.add(path)
                self.changed_files.append(path)


class ExecutionContext(BaseModel):
    working_directory: str
    environment: dict[str, str] = Field(default_factory=dict)
    user_prompt: str | None = None
    verbose: bool = False


class PipelineResult(BaseModel):
    success: bool
    outcomes: list[NodeOutcome]


class ConversationEntry(BaseModel):
    role: Literal["user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# Prompt files
# ---------------------------------------------------------------------------

Provider = Literal["openai", "openrouter", "anthropic"]


class PromptFrontMatter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["draft", "active", "done", "archived"] = "draft"
    provider: Provider | None = None
    model: str | None = None


class ParsedPrompt(BaseModel):
    front_matter: PromptFrontMatter
    body: str
    file_path: str | None = None


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

RunStatus = Literal["queued", "running", "completed", "failed", "interrupted"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "interrupted"})
RESUMABLE_STATUSES: frozenset[str] = frozenset({"failed", "interrupted"})


class RunMetadata(BaseModel):
    """Sole durable record of run progress. Persisted on every transition."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    pipeline_path: str = Field(..., alias="pipelinePath")
    pipeline_name: str = Field(..., alias="pipelineName")
    user_prompt: str | None = Field(default=None, alias="userPrompt")
    kind: Literal["pipeline", "prompt"] = "pipeline"
    status: RunStatus = "queued"
    created_at: str = Field(..., alias="createdAt")
    started_at: str | None = Field(default=None, alias="startedAt")
    completed_at: str | None = Field(default=None, alias="completedAt")
    error: str | None = None
    artifacts_dir: str = Field(..., alias="artifactsDir")
    # Process that last moved the run to running.
    owner_pid: int | None = Field(default=None, alias="ownerPid")
    owner_host: str | None = Field(default=None, alias="ownerHost")


LogLevel = Literal["debug", "info", "warn", "error"]


class LogEntry(BaseModel):
    timestamp: str = Field(default_factory=utc_now)
    level: LogLevel
    category: str
    message: str
    data: dict[str, Any] | None = None
