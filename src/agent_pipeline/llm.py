# llm.py
# Model client. One object, three providers:
#
#   openai      OpenAI SDK, default base URL
#   openrouter  OpenAI SDK, OpenRouter base URL
#   anthropic   Anthropic SDK (Messages API)
#
# Conversations are kept in OpenAI chat format by callers. Anthropic requests
# are translated on the way out and normalized on the way back, so the loops
# in harness.py never branch on provider.

import json
from dataclasses import dataclass, field
from typing import Any

from anthropic import Anthropic
from openai import OpenAI

from agent_pipeline.config import RuntimeConfig
from agent_pipeline.models import ConversationEntry, Provider

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
MAX_TOKENS = 4096


class ModelError(Exception):
    """Raised for missing credentials, failed calls and empty replies."""


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ChatTurn:
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)


def _parse_arguments(raw: str | dict | None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ModelError(f"Tool call arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ModelError("Tool call arguments must be a JSON object")
    return parsed


def _to_anthropic_messages(messages: list[dict]) -> list[dict]:
    """OpenAI chat messages → Anthropic Messages API content blocks."""
    out: list[dict] = []
    for msg in messages:
        role = msg["role"]
        if role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg["tool_call_id"], "content": msg["content"]}
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
            continue

        if role == "assistant" and msg.get("tool_calls"):
            blocks: list[dict] = []
            if msg.get("content"):
                blocks.append({"type": "text", "text": msg["content"]})
            for call in msg["tool_calls"]:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["function"]["name"],
                        "input": _parse_arguments(call["function"]["arguments"]),
                    }
                )
            out.append({"role": "assistant", "content": blocks})
            continue

        out.append({"role": role, "content": msg["content"]})
    return out


def _to_anthropic_tools(tools: list[dict]) -> list[dict]:
    return [{"name": t["name"], "description": t["description"], "input_schema": t["input_schema"]} for t in tools]


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {"name": t["name"], "description": t["description"], "parameters": t["input_schema"]},
        }
        for t in tools
    ]


class ModelClient:
    """
    Thin, synchronous wrapper over the provider SDKs. SDK clients are built
    lazily so a run that never calls a model never needs credentials.
    """

    def __init__(self, config: RuntimeConfig, provider: Provider | None = None) -> None:
        self.config = config
        self.provider: Provider = provider or config.provider
        self._clients: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def _client(self, provider: Provider):
        if provider in self._clients:
            return self._clients[provider]

        if provider == "anthropic":
            if not self.config.anthropic_api_key:
                raise ModelError("ANTHROPIC_API_KEY is not set")
            client = Anthropic(api_key=self.config.anthropic_api_key)
        elif provider == "openrouter":
            if not self.config.openrouter_api_key:
                raise ModelError("OPENROUTER_API_KEY is not set")
            client = OpenAI(base_url=OPENROUTER_BASE_URL, api_key=self.config.openrouter_api_key)
        else:
            if not self.config.openai_api_key:
                raise ModelError("OPENAI_API_KEY is not set")
            client = OpenAI(api_key=self.config.openai_api_key)

        self._clients[provider] = client
        return client

    def default_model(self, provider: Provider) -> str:
        return {
            "openai": self.config.openai_model,
            "openrouter": self.config.openrouter_model,
            "anthropic": self.config.anthropic_model,
        }[provider]

    # ------------------------------------------------------------------
    # Plain completion (JSON action loop)
    # ------------------------------------------------------------------

    def complete(
        self,
        system_prompt: str,
        history: list[ConversationEntry],
        provider: Provider | None = None,
        model: str | None = None,
    ) -> str:
        provider = provider or self.provider
        model = model or self.default_model(provider)
        messages = [{"role": entry.role, "content": entry.content} for entry in history]
        client = self._client(provider)

        try:
            if provider == "anthropic":
                response = client.messages.create(
                    model=model,
                    system=system_prompt,
                    messages=messages,
                    max_tokens=MAX_TOKENS,
                    temperature=0,
                )
                text = "".join(block.text for block in response.content if block.type == "text")
            else:
                response = client.chat.completions.create(
                    model=model,
                    messages=[{"role": "system", "content": system_prompt}, *messages],
                    temperature=0,
                )
                text = response.choices[0].message.content or ""
        except ModelError:
            raise
        except Exception as exc:
            raise ModelError(f"{provider} request failed: {exc}") from exc

        text = text.strip()
        if not text:
            raise ModelError(f"{provider} returned an empty response")
        return text

    # ------------------------------------------------------------------
    # Native tool calling (agent nodes)
    # ------------------------------------------------------------------

    def chat(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
        model: str | None = None,
    ) -> ChatTurn:
        provider = self.provider
        model = model or self.default_model(provider)
        client = self._client(provider)

        try:
            if provider == "anthropic":
                kwargs: dict[str, Any] = {}
                if tools:
                    kwargs["tools"] = _to_anthropic_tools(tools)
                response = client.messages.create(
                    model=model,
                    system=system_prompt,
                    messages=_to_anthropic_messages(messages),
                    max_tokens=MAX_TOKENS,
                    temperature=0,
                    **kwargs,
                )
                return self._anthropic_turn(response)

            kwargs = {"tools": _to_openai_tools(tools)} if tools else {}
            response = client.chat.completions.create(
                model=model,
                messages=[{"role": "system", "content": system_prompt}, *messages],
                temperature=0,
                **kwargs,
            )
        except ModelError:
            raise
        except Exception as exc:
            raise ModelError(f"{provider} request failed: {exc}") from exc

        choice = response.choices[0]
        calls = [
            ToolCall(id=call.id, name=call.function.name, arguments=_parse_arguments(call.function.arguments))
            for call in (choice.message.tool_calls or [])
        ]
        if not calls and not (choice.message.content or "").strip():
            raise ModelError(f"{provider} returned an empty response")
        return ChatTurn(content=choice.message.content, tool_calls=calls)

    @staticmethod
    def _anthropic_turn(response) -> ChatTurn:
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=_parse_arguments(block.input)))

        content = "".join(text_parts) or None
        if not calls and not (content or "").strip():
            raise ModelError("anthropic returned an empty response")
        return ChatTurn(content=content, tool_calls=calls)
