# prompt.py
# Markdown prompt files with YAML front matter.
#
#   ---
#   status: active
#   provider: openai
#   ---
#   Body text is the literal user prompt.

from pathlib import Path

import yaml
from pydantic import ValidationError

from agent_pipeline.models import ParsedPrompt, PromptFrontMatter


class PromptFormatError(Exception):
    """Raised when a prompt file has missing or invalid front matter."""


def _split_front_matter(text: str) -> tuple[str, str] | None:
    trimmed = text.lstrip()
    if not trimmed.startswith("---"):
        return None
    end = trimmed.find("\n---", 3)
    if end == -1:
        return None
    return trimmed[3:end].strip(), trimmed[end + 4:]


def parse_prompt_string(text: str, file_path: str | None = None) -> ParsedPrompt:
    if not text.lstrip().startswith("---"):
        raise PromptFormatError("Prompt is missing YAML front matter. Expected to start with ---")

    split = _split_front_matter(text)
    if split is None:
        raise PromptFormatError("Front matter not closed with ---")
    block, rest = split

    # Drop the remainder of the closing delimiter line and one blank line.
    newline = rest.find("\n")
    body = rest[newline + 1:] if newline != -1 else ""
    if body.startswith("\n"):
        body = body[1:]

    try:
        data = yaml.safe_load(block) or {}
    except yaml.YAMLError as exc:
        raise PromptFormatError(f"Invalid YAML front matter: {exc}") from exc

    if not isinstance(data, dict):
        raise PromptFormatError("Invalid front matter: expected a mapping")

    try:
        front_matter = PromptFrontMatter.model_validate(data)
    except ValidationError as exc:
        issues = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise PromptFormatError(f"Invalid front matter: {issues}") from exc

    return ParsedPrompt(front_matter=front_matter, body=body, file_path=file_path)


def parse_prompt_file(file_path: str) -> ParsedPrompt:
    resolved = Path(file_path).resolve()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise PromptFormatError(f"Failed to read prompt at {resolved}: {exc}") from exc
    return parse_prompt_string(text, str(resolved))


def update_prompt_status(text: str, status: str) -> str:
    """Return `text` with the front matter status replaced (or added)."""
    split = _split_front_matter(text)
    if split is None:
        return text
    block, rest = split

    try:
        data = yaml.safe_load(block) or {}
    except yaml.YAMLError:
        return text
    if not isinstance(data, dict):
        return text

    data["status"] = status
    prefix = text[: text.find("---")]
    dumped = yaml.safe_dump(data, sort_keys=False, width=100)
    return f"{prefix}---\n{dumped}---{rest}"


# ---------------------------------------------------------------------------
# Linting and scaffolding
# ---------------------------------------------------------------------------

PROMPT_TEMPLATE = """---
status: draft
---

<!-- Write your prompt below. YAML front matter above, Markdown body here. -->

"""


def lint_prompts(directory: str) -> list[str]:
    """
    Check every file under `directory` and return one "<path>: <reason>"
    line per offending file. README.md files are skipped; anything else must
    be a .md prompt whose front matter parses and validates.
    """
    root = Path(directory).resolve()
    if not root.is_dir():
        raise PromptFormatError(f"Prompts directory not found at {root}")

    issues: list[str] = []
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        if path.name.lower() == "readme.md":
            continue
        relative = path.relative_to(root).as_posix()
        if path.suffix.lower() != ".md":
            issues.append(f"{relative}: invalid extension '{path.suffix}'. Expected .md")
            continue
        try:
            parse_prompt_string(path.read_text(encoding="utf-8"), str(path))
        except OSError as exc:
            issues.append(f"{relative}: failed to read file: {exc}")
        except PromptFormatError as exc:
            issues.append(f"{relative}: {exc}")
    return issues


def _looks_like_path(name: str) -> bool:
    return "/" in name or "\\" in name or name.startswith((".", "~"))


def create_prompt(name: str | None, cwd: str, directory: str = "prompts") -> tuple[Path, bool]:
    """
    Scaffold a draft prompt. A bare name lands in `directory`; anything
    path-like is resolved against `cwd`. Existing files are never
    overwritten. Returns the path and whether it was created.
    """
    name = (name or "").strip()
    if not name:
        target = Path(cwd, directory, "new-prompt.md")
    else:
        filename = name if name.lower().endswith(".md") else f"{name}.md"
        if _looks_like_path(name):
            target = Path(cwd, Path(filename).expanduser())
        else:
            target = Path(cwd, directory, filename)
    target = target.resolve()

    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        return target, False
    target.write_text(PROMPT_TEMPLATE, encoding="utf-8")
    return target, True
