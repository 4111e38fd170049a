# policy.py
# Script policy engine.
#
# Turns a declarative allow/deny policy into a validated argument vector for
# a project script, then runs it with a timeout and bounded output capture.
# Nothing is spawned until every check in prepare() has passed.
#
# Resolution order for a requested script:
#   override merge → manifest check → whitelist → flag validation
#
# A timed-out script gets SIGTERM on its process group, then SIGKILL once
# KILL_GRACE_MS has passed.

import contextlib
import json
import os
import re
import signal
import subprocess
import threading
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

DEFAULT_TIMEOUT_MS = 3 * 60 * 1000
KILL_GRACE_MS = 2000
STDOUT_LIMIT = 6000
STDERR_LIMIT = 4000
READ_CHUNK = 4096

_FLAG_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ScriptPolicyError(Exception):
    """Raised when a script request is rejected by policy."""


# ---------------------------------------------------------------------------
# Policy configuration
# ---------------------------------------------------------------------------


class BooleanFlag(BaseModel):
    type: Literal["boolean"]
    flag: str
    description: str | None = None


class StringFlag(BaseModel):
    type: Literal["string"]
    flag: str | None = None
    description: str | None = None
    allow_empty: bool = False


FlagSpec = Annotated[Union[BooleanFlag, StringFlag], Field(discriminator="type")]


class ScriptOverride(BaseModel):
    """Per-script settings. Unset fields fall back to the policy defaults."""

    script: str | None = Field(default=None, description="Underlying manifest script name.")
    cwd: str | None = None
    allowed_flags: dict[str, FlagSpec] | None = None
    allow_unknown_flags: bool | None = None
    timeout_ms: int | None = Field(default=None, gt=0)


class ScriptPolicy(BaseModel):
    allowed_scripts: list[str] | None = None
    default_cwd: str | None = None
    default_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    allow_unknown_flags: bool = False
    runner: list[str] = Field(default_factory=lambda: ["npm", "run"], min_length=1)
    env: dict[str, str] = Field(default_factory=dict)
    overrides: dict[str, ScriptOverride] = Field(default_factory=dict)


class ResolvedScript(BaseModel):
    name: str
    script: str
    cwd: str
    allowed_flags: dict[str, FlagSpec] | None
    allow_unknown_flags: bool
    timeout_ms: int


class ScriptInvocation(BaseModel):
    resolved: ResolvedScript
    argv: list[str]
    cwd: str
    timeout_ms: int


class ScriptResult(BaseModel):
    script: str
    underlying: str
    command: str
    args: list[str]
    cwd: str
    exit_code: int | None
    signal: str | None
    timed_out: bool
    stdout: str
    stderr: str
    stdout_truncated: bool
    stdout_overflow: int
    stderr_truncated: bool
    stderr_overflow: int


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ProjectManifest:
    """Scripts declared by the project. Loaded once and injected."""

    def __init__(self, scripts: set[str] | frozenset[str], root: str, path: str | None = None) -> None:
        self.scripts = frozenset(scripts)
        self.root = root
        self.path = path

    @classmethod
    def load(cls, root: str) -> "ProjectManifest":
        """
        Read the `scripts` table of <root>/package.json. A missing manifest
        declares no scripts; a malformed one is a configuration error.
        """
        root_path = Path(root).resolve()
        manifest_path = root_path / "package.json"
        if not manifest_path.exists():
            return cls(frozenset(), str(root_path), None)
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ScriptPolicyError(f"Failed to read manifest at {manifest_path}: {exc}") from exc
        scripts = data.get("scripts") if isinstance(data, dict) else None
        names = frozenset(scripts) if isinstance(scripts, dict) else frozenset()
        return cls(names, str(root_path), str(manifest_path))

    def declares(self, script: str) -> bool:
        return script in self.scripts


# ---------------------------------------------------------------------------
# Bounded capture
# ---------------------------------------------------------------------------


class BoundedBuffer:
    """
    Keeps the first `limit` characters of a stream and counts the rest.
    Callers must keep feeding past the limit so the child never blocks.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._parts: list[str] = []
        self._kept = 0
        self.total = 0
        self.truncated = False

    def feed(self, chunk: str) -> None:
        self.total += len(chunk)
        if self.truncated:
            return
        remaining = self.limit - self._kept
        if len(chunk) <= remaining:
            self._parts.append(chunk)
            self._kept += len(chunk)
            return
        if remaining > 0:
            self._parts.append(chunk[:remaining])
            self._kept += remaining
        self.truncated = True

    @property
    def value(self) -> str:
        return "".join(self._parts)

    @property
    def overflow(self) -> int:
        return max(0, self.total - self._kept)


def _drain(stream, buffer: BoundedBuffer) -> None:
    for chunk in iter(lambda: stream.read(READ_CHUNK), ""):
        buffer.feed(chunk)
    stream.close()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ScriptPolicyEngine:
    def __init__(
        self,
        policy: ScriptPolicy,
        manifest: ProjectManifest,
        environment: dict[str, str] | None = None,
    ) -> None:
        self.policy = policy
        self.manifest = manifest
        self.environment = dict(environment or {})

    def resolve(self, name: str) -> ResolvedScript:
        override = self.policy.overrides.get(name) or ScriptOverride()
        script = override.script or name

        # Manifest before whitelist.
        if not self.manifest.declares(script):
            raise ScriptPolicyError(f"Script {script} is not defined")
        if self.policy.allowed_scripts is not None and name not in self.policy.allowed_scripts:
            raise ScriptPolicyError(f"Script {name} is not allowed")

        cwd = override.cwd or self.policy.default_cwd or self.manifest.root
        allow_unknown = (
            override.allow_unknown_flags
            if override.allow_unknown_flags is not None
            else self.policy.allow_unknown_flags
        )
        return ResolvedScript(
            name=name,
            script=script,
            cwd=str(Path(self.manifest.root, cwd).resolve()),
            allowed_flags=override.allowed_flags,
            allow_unknown_flags=allow_unknown,
            timeout_ms=override.timeout_ms or self.policy.default_timeout_ms,
        )

    def build_args(self, resolved: ResolvedScript, flags: dict[str, str | bool]) -> list[str]:
        extra: list[str] = []
        table = resolved.allowed_flags

        if table is None and flags and not resolved.allow_unknown_flags:
            provided = ", ".join(sorted(flags))
            raise ScriptPolicyError(f"Script {resolved.script} does not accept flags. Received: {provided}")

        for flag_name, value in flags.items():
            rule = table.get(flag_name) if table is not None else None

            if rule is None:
                if not resolved.allow_unknown_flags:
                    raise ScriptPolicyError(f'Flag "{flag_name}" is not allowed for script {resolved.script}')
                extra.extend(self._passthrough(flag_name, value))
                continue

            if isinstance(rule, BooleanFlag):
                if not isinstance(value, bool):
                    raise ScriptPolicyError(f'Flag "{flag_name}" expects a boolean value.')
                if value:
                    extra.append(rule.flag)
                continue

            if not isinstance(value, str):
                raise ScriptPolicyError(f'Flag "{flag_name}" expects a string value.')
            if not value and not rule.allow_empty:
                raise ScriptPolicyError(f'Flag "{flag_name}" requires a non-empty string.')
            if rule.flag:
                extra.append(rule.flag)
            elif value.startswith("-"):
                raise ScriptPolicyError(f'Flag "{flag_name}" value may not start with "-".')
            extra.append(value)

        return extra

    @staticmethod
    def _passthrough(flag_name: str, value: str | bool) -> list[str]:
        if not _FLAG_NAME.match(flag_name):
            raise ScriptPolicyError(f'Flag "{flag_name}" is not a valid flag name.')
        switch = f"-{flag_name}" if len(flag_name) == 1 else f"--{flag_name}"
        if isinstance(value, bool):
            return [switch] if value else []
        if not isinstance(value, str) or not value:
            raise ScriptPolicyError(f'Flag "{flag_name}" requires a non-empty string.')
        return [switch, value]

    def prepare(self, name: str, flags: dict[str, str | bool] | None = None) -> ScriptInvocation:
        resolved = self.resolve(name)
        extra = self.build_args(resolved, flags or {})
        argv = [*self.policy.runner, resolved.script]
        if extra:
            argv += ["--", *extra]
        return ScriptInvocation(resolved=resolved, argv=argv, cwd=resolved.cwd, timeout_ms=resolved.timeout_ms)

    def run(self, name: str, flags: dict[str, str | bool] | None = None) -> ScriptResult:
        invocation = self.prepare(name, flags)
        env = {**os.environ, **self.policy.env, **self.environment}

        proc = subprocess.Popen(
            invocation.argv,
            cwd=invocation.cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )

        stdout = BoundedBuffer(STDOUT_LIMIT)
        stderr = BoundedBuffer(STDERR_LIMIT)
        readers = [
            threading.Thread(target=_drain, args=(proc.stdout, stdout), daemon=True),
            threading.Thread(target=_drain, args=(proc.stderr, stderr), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            proc.wait(timeout=invocation.timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            timed_out = True
            # Signal the whole group so grandchildren release the pipes.
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGTERM)
            try:
                proc.wait(timeout=KILL_GRACE_MS / 1000)
            except subprocess.TimeoutExpired:
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(proc.pid, signal.SIGKILL)
                proc.wait()

        for reader in readers:
            reader.join()

        exit_code: int | None = proc.returncode
        signal_name: str | None = None
        if exit_code is not None and exit_code < 0:
            signal_name = signal.Signals(-exit_code).name
            exit_code = None

        return ScriptResult(
            script=name,
            underlying=invocation.resolved.script,
            command=invocation.argv[0],
            args=invocation.argv[1:],
            cwd=invocation.cwd,
            exit_code=exit_code,
            signal=signal_name,
            timed_out=timed_out,
            stdout=stdout.value,
            stderr=stderr.value,
            stdout_truncated=stdout.truncated,
            stdout_overflow=stdout.overflow,
            stderr_truncated=stderr.truncated,
            stderr_overflow=stderr.overflow,
        )
