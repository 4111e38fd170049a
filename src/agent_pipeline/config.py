# config.py
# Runtime configuration. Values come from the environment (and .env, via
# python-dotenv); nothing else in the package reads os.environ for settings.

import json
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from agent_pipeline.models import Provider
from agent_pipeline.policy import ScriptPolicy

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class RuntimeConfig(BaseModel):
    """Process-wide settings, resolved once at start-up and passed down."""

    provider: Provider = "openai"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openrouter_api_key: str | None = None
    openrouter_model: str = "anthropic/claude-3.5-haiku"
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-3-5-sonnet-20241022"

    prompt_max_iterations: int = Field(default=5, ge=1, le=10)
    agent_max_iterations: int = Field(default=10, ge=1)
    schema_retries: int = Field(default=3, ge=0)

    runs_dir: str = ".pipeline-runs"
    poll_interval: float = Field(default=1.0, gt=0)
    script_policy_path: str | None = None

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        provider = (os.getenv("AGENT_PROVIDER") or os.getenv("PROVIDER") or "openai").lower()
        if provider not in ("openai", "openrouter", "anthropic"):
            provider = "openai"

        prompt_iterations = max(1, min(_int_env("AGENT_MAX_ITERATIONS", 5), 10))

        return cls(
            provider=provider,
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            openrouter_model=os.getenv("OPENROUTER_MODEL", "anthropic/claude-3.5-haiku"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022"),
            prompt_max_iterations=prompt_iterations,
            agent_max_iterations=max(1, _int_env("AGENT_NODE_MAX_ITERATIONS", 10)),
            schema_retries=max(0, _int_env("AGENT_SCHEMA_RETRIES", 3)),
            runs_dir=os.getenv("PIPELINE_RUNS_DIR", ".pipeline-runs"),
            poll_interval=max(0.05, _float_env("JOB_POLL_INTERVAL", 1.0)),
            script_policy_path=os.getenv("SCRIPT_POLICY_PATH") or None,
        )


def load_script_policy(path: str | None) -> ScriptPolicy:
    """
    Load a ScriptPolicy from a YAML or JSON file. A missing path yields the
    default policy; an unreadable or malformed file is a configuration error.
    """
    if not path:
        return ScriptPolicy()

    resolved = Path(path).resolve()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Failed to read script policy at {resolved}: {exc}") from exc

    if resolved.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text) or {}

    return ScriptPolicy.model_validate(data)
