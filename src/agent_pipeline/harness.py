# harness.py
# Tool-calling loops.
#
# The harness owns control flow. Models are passive responders: they propose
# actions, the harness validates and executes them through ActionDispatcher,
# and feeds observations back. Two loops share that machinery:
#
#   ActionLoop    plain-text replies carrying JSON actions (prompt files)
#   ToolCallLoop  native tool calls plus a schema-checked JSON answer
#                 (agent nodes)
#
# Both are bounded by an iteration limit and execute at most two actions per
# model turn.

import json
import re
from dataclasses import dataclass, field
from typing import Any

from agent_pipeline.config import RuntimeConfig
from agent_pipeline.llm import ChatTurn, ModelClient
from agent_pipeline.models import ConversationEntry
from agent_pipeline.prompt import parse_prompt_file
from agent_pipeline.schema import ParsedSchema
from agent_pipeline.tools import TOOLS, ActionDispatcher, build_dispatcher, is_agent_action_name, parse_action

MAX_ACTIONS_PER_TURN = 2


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ActionParseError(ValueError):
    """Raised when a model reply cannot be turned into a list of actions."""


class IterationLimitError(Exception):
    """Raised when a loop exhausts its iteration bound without finishing."""


class SchemaRetryError(Exception):
    """Raised when an agent's final answer still fails its schema after all retries."""


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

ACTION_SYSTEM_PROMPT = """\
You are a coding agent working inside a project workspace. You act only by \
replying with JSON. Every reply must be a single JSON object of this shape:

{"action": "<action_name>", "args": {...}}

or, to perform two actions in one turn:

{"actions": [{"action": "...", "args": {...}}, {"action": "...", "args": {...}}]}

Available actions and their arguments:
- read_file: {"path": "<string>"}
- list_directory: {"path": "<string, default .>", "recursive": <bool>, "pattern": "<glob>", "max_results": <int>}
- run_npm_script: {"script": "<string>", "flags": {"<name>": "<string>" | <bool>}}
- write_file: {"path": "<string>", "contents": "<string>"}

Rules:
- Paths are relative to the workspace root and must stay inside it.
- At most two actions are executed per reply; extra actions are ignored.
- After each observation, respond with the next JSON action.
- write_file completes the task. Use it once, with the final file contents.
- Reply with JSON only. No prose outside the JSON.\
"""

AGENT_SYSTEM_TEMPLATE = """\
You are an AI agent executing a task as part of an automated pipeline.

Your role: {role}

You have access to the following tools:
{tools}

CRITICAL: You MUST produce output that matches this exact JSON schema:
{schema}

Return ONLY valid JSON matching this schema. Do not include any explanatory text outside the JSON.\
"""


def build_agent_system_prompt(role: str | None, tool_names: list[str], wire_schema: dict) -> str:
    return AGENT_SYSTEM_TEMPLATE.format(
        role=role or "Execute the user's request",
        tools=", ".join(tool_names) or "(none)",
        schema=json.dumps(wire_schema, indent=2),
    )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_payload(raw: str) -> Any:
    """Parse a reply as JSON, unwrapping a leading ``` fence if present."""
    trimmed = raw.strip()
    if trimmed.startswith("```"):
        match = _FENCE.search(trimmed)
        if match:
            return json.loads(match.group(1), strict=False)
    return json.loads(trimmed, strict=False)


def extract_json_value(raw: str) -> Any:
    """
    Like extract_json_payload, but also accepts a fence anywhere in the text
    or the outermost {...} / [...] span embedded in prose.
    """
    try:
        return extract_json_payload(raw)
    except json.JSONDecodeError:
        pass

    match = _FENCE.search(raw)
    if match:
        try:
            return json.loads(match.group(1), strict=False)
        except json.JSONDecodeError:
            pass

    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = raw.find(opener), raw.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(raw[start:end + 1], strict=False)
            except json.JSONDecodeError:
                continue

    raise ValueError("No JSON value found in response")


def _unwrap_args(action: str, value: Any) -> dict:
    if isinstance(value, dict) and "args" in value:
        return {"action": action, "args": value["args"]}
    return {"action": action, "args": value}


def normalize_actions_payload(payload: Any) -> list:
    """
    Accepted shapes, in order:
      [ {...}, ... ]
      {"actions": [ {...}, ... ]}
      {"actions": {"read_file": {...}, ...}}
      {"action": "...", "args": {...}}
      {"read_file": {...}, "list_directory": {...}}
    """
    if isinstance(payload, list):
        return payload

    if isinstance(payload, dict):
        actions = payload.get("actions")
        if isinstance(actions, list):
            return actions
        if isinstance(actions, dict) and actions:
            return [_unwrap_args(name, value) for name, value in actions.items()]
        if "action" in payload:
            return [payload]
        if payload and all(is_agent_action_name(key) for key in payload):
            return [_unwrap_args(name, value) for name, value in payload.items()]

    raise ActionParseError("Unsupported agent response shape.")


def parse_action_payload(raw: str, logger) -> list:
    try:
        raw_actions = normalize_actions_payload(extract_json_payload(raw))
        if len(raw_actions) > MAX_ACTIONS_PER_TURN:
            logger.warning("[agent] Received more than two actions. Truncating to the first two.")
        return [parse_action(item) for item in raw_actions[:MAX_ACTIONS_PER_TURN]]
    except ValueError:
        logger.error("[agent] Failed to parse agent response. Raw payload follows:", raw)
        raise


# ---------------------------------------------------------------------------
# JSON action loop
# ---------------------------------------------------------------------------


@dataclass
class LoopResult:
    success: bool
    iterations: int
    history: list[ConversationEntry] = field(default_factory=list)


class ActionLoop:
    def __init__(
        self,
        client: ModelClient,
        dispatcher: ActionDispatcher,
        logger,
        max_iterations: int = 5,
        system_prompt: str = ACTION_SYSTEM_PROMPT,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        self.client = client
        self.dispatcher = dispatcher
        self.logger = logger
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self.provider = provider
        self.model = model

    def run(self, user_prompt: str) -> LoopResult:
        history = [ConversationEntry(role="user", content=user_prompt)]

        for iteration in range(1, self.max_iterations + 1):
            self.logger.agent_iteration(iteration, self.max_iterations)
            has_next = iteration < self.max_iterations

            reply = self.client.complete(self.system_prompt, history, provider=self.provider, model=self.model)
            history.append(ConversationEntry(role="assistant", content=reply))
            self.logger.info(f"Model response received ({len(reply)} chars)")

            try:
                actions = parse_action_payload(reply, self.logger)
            except ValueError as exc:
                self.logger.error("[agent] Invalid JSON from model. Will inject parse_error and continue.")
                if has_next:
                    observation = f"Observation: parse_error encountered.\nerror: {type(exc).__name__}: {exc}"
                    history.append(
                        ConversationEntry(role="user", content=f"{observation}\nRespond with the next JSON action.")
                    )
                continue

            for index, action in enumerate(actions, start=1):
                self.logger.info(f"Executing action {index}/{len(actions)}: {action.action}")
                result = self.dispatcher.execute(action)
                self.logger.info(result.observation)

                if not result.continue_loop:
                    self.logger.info(f"Agent loop completed after {iteration} iteration(s)")
                    return LoopResult(success=True, iterations=iteration, history=history)

                if result.history_injection and has_next:
                    history.append(ConversationEntry(role="user", content=result.history_injection))

        raise IterationLimitError(
            f"Agent did not complete the task within {self.max_iterations} iteration(s)"
        )


# ---------------------------------------------------------------------------
# Native tool loop
# ---------------------------------------------------------------------------


class ToolCallLoop:
    def __init__(
        self,
        client: ModelClient,
        dispatcher: ActionDispatcher,
        logger,
        max_iterations: int = 10,
        schema_retries: int = 3,
        model: str | None = None,
    ) -> None:
        self.client = client
        self.dispatcher = dispatcher
        self.logger = logger
        self.max_iterations = max_iterations
        self.schema_retries = schema_retries
        self.model = model

    def _dispatch(self, name: str, arguments: dict, allowed: set[str]) -> str:
        tool = TOOLS.get(name)
        if tool is None or name not in allowed:
            return self.dispatcher.error_result(name, LookupError(f"Unknown tool: {name}")).observation
        try:
            action = parse_action({"action": tool["action"], "args": arguments})
        except ValueError as exc:
            return self.dispatcher.error_result(name, exc).observation
        return self.dispatcher.execute(action).observation

    def _tool_turn(self, turn: ChatTurn, messages: list[dict], allowed: set[str]) -> None:
        calls = turn.tool_calls
        if len(calls) > MAX_ACTIONS_PER_TURN:
            self.logger.warning("[agent] Received more than two tool calls. Truncating to the first two.")
            calls = calls[:MAX_ACTIONS_PER_TURN]

        messages.append(
            {
                "role": "assistant",
                "content": turn.content,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in calls
                ],
            }
        )
        for call in calls:
            observation = self._dispatch(call.name, call.arguments, allowed)
            messages.append({"role": "tool", "tool_call_id": call.id, "content": observation})

    def run(self, prompt: str, system_prompt: str, tools: list[dict], output_schema: ParsedSchema) -> Any:
        """Return the agent's final JSON value once it satisfies `output_schema`."""
        messages: list[dict] = [{"role": "user", "content": prompt}]
        allowed = {tool["name"] for tool in tools}
        retries = 0

        for iteration in range(1, self.max_iterations + 1):
            self.logger.agent_iteration(iteration, self.max_iterations)
            turn = self.client.chat(system_prompt, messages, tools, model=self.model)

            if turn.tool_calls:
                self._tool_turn(turn, messages, allowed)
                continue

            text = turn.content or ""
            messages.append({"role": "assistant", "content": text})

            try:
                value = extract_json_value(text)
            except ValueError as exc:
                error = f"Response is not valid JSON: {exc}"
            else:
                validation = output_schema.validate(value)
                if validation.valid:
                    return value
                error = f"Output does not match schema: {'; '.join(validation.errors or [])}"

            retries += 1
            if retries > self.schema_retries:
                raise SchemaRetryError(
                    f"Agent output failed validation after {self.schema_retries} retries: {error}"
                )
            self.logger.agent_json_retry(error, retries, self.schema_retries)
            messages.append(
                {"role": "user", "content": f"{error}\nReturn ONLY valid JSON matching the required schema."}
            )

        raise IterationLimitError(f"Agent did not produce output within {self.max_iterations} iteration(s)")


# ---------------------------------------------------------------------------
# Prompt files
# ---------------------------------------------------------------------------


class PromptRunner:
    """
    Executes a markdown prompt file through ActionLoop.

    Provider and model come from the file's front matter, falling back to
    the runtime configuration.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        logger,
        working_directory: str,
        client: ModelClient | None = None,
        dispatcher: ActionDispatcher | None = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.working_directory = working_directory
        self.client = client or ModelClient(config)
        self.dispatcher = dispatcher or build_dispatcher(config, working_directory, logger)

    def run(self, prompt_path: str) -> LoopResult:
        self.logger.loading(f"Loading prompt from: {prompt_path}")
        parsed = parse_prompt_file(prompt_path)
        provider = parsed.front_matter.provider or self.config.provider
        max_iterations = self.config.prompt_max_iterations

        self.logger.info(f"Using provider: {provider}")
        self.logger.info(f"Max iterations: {max_iterations}")

        loop = ActionLoop(
            self.client,
            self.dispatcher,
            self.logger,
            max_iterations=max_iterations,
            provider=provider,
            model=parsed.front_matter.model,
        )
        result = loop.run(parsed.body)
        self.logger.info("Prompt execution completed successfully")
        return result
