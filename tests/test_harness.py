import copy
import json
import pytest
from unittest.mock import MagicMock

from agent_pipeline.config import RuntimeConfig
from agent_pipeline.harness import (
    ActionLoop,
    ActionParseError,
    IterationLimitError,
    PromptRunner,
    SchemaRetryError,
    ToolCallLoop,
    build_agent_system_prompt,
    extract_json_payload,
    extract_json_value,
    normalize_actions_payload,
    parse_action_payload,
)
from agent_pipeline.llm import ChatTurn, ToolCall
from agent_pipeline.schema import SchemaParser
from agent_pipeline.tools import ActionDispatcher, get_tools
from agent_pipeline.workspace import InMemoryFileSystem, Workspace


@pytest.fixture
def dispatcher():
    workspace = Workspace("/proj", fs=InMemoryFileSystem({"/proj/a.txt": "alpha", "/proj/b.txt": "beta"}))
    return ActionDispatcher(workspace, None, MagicMock())

# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def test_extract_bare_json():
    assert extract_json_payload(' {"action": "read_file"} ') == {"action": "read_file"}

def test_extract_fenced_json():
    raw = '```json\n{"action": "read_file", "args": {"path": "a.txt"}}\n```'
    assert extract_json_payload(raw)["args"] == {"path": "a.txt"}

def test_extract_rejects_prose():
    with pytest.raises(json.JSONDecodeError):
        extract_json_payload("I'll read the file now.")

def test_extract_value_embedded_in_prose():
    assert extract_json_value('Here you go: {"ok": true} Thanks!') == {"ok": True}
    assert extract_json_value("Result:\n```\n[1, 2]\n```") == [1, 2]
    with pytest.raises(ValueError):
        extract_json_value("no json at all")

# ---------------------------------------------------------------------------
# Action shapes
# ---------------------------------------------------------------------------

EQUIVALENT_SHAPES = [
    [{"action": "read_file", "args": {"path": "a.txt"}}, {"action": "list_directory", "args": {"path": "."}}],
    {"actions": [{"action": "read_file", "args": {"path": "a.txt"}}, {"action": "list_directory", "args": {"path": "."}}]},
    {"actions": {"read_file": {"args": {"path": "a.txt"}}, "list_directory": {"path": "."}}},
    {"read_file": {"path": "a.txt"}, "list_directory": {"args": {"path": "."}}},
]

@pytest.mark.parametrize("payload", EQUIVALENT_SHAPES)
def test_shapes_normalize_to_the_same_actions(payload):
    logger = MagicMock()
    actions = parse_action_payload(json.dumps(payload), logger)
    assert [a.action for a in actions] == ["read_file", "list_directory"]
    assert actions[0].args.path == "a.txt"
    assert actions[1].args.path == "."

def test_single_action_shape():
    actions = parse_action_payload('{"action": "read_file", "args": {"path": "a.txt"}}', MagicMock())
    assert len(actions) == 1
    assert actions[0].args.path == "a.txt"

def test_nested_actions_mapping_scenario():
    actions = parse_action_payload('{"actions":{"read_file":{"args":{"path":"a.txt"}}}}', MagicMock())
    assert len(actions) == 1
    assert actions[0].action == "read_file"
    assert actions[0].args.path == "a.txt"

@pytest.mark.parametrize("payload", [{"thought": "hmm"}, "read_file", 42, {}, {"read_file": {}, "note": "x"}])
def test_unsupported_shapes(payload):
    with pytest.raises(ActionParseError, match="Unsupported agent response shape."):
        normalize_actions_payload(payload)

def test_more_than_two_actions_truncated():
    logger = MagicMock()
    payload = [{"action": "read_file", "args": {"path": f"{n}.txt"}} for n in range(3)]
    actions = parse_action_payload(json.dumps(payload), logger)
    assert [a.args.path for a in actions] == ["0.txt", "1.txt"]
    logger.warning.assert_called_once()

def test_parse_failure_logs_raw_payload_and_reraises():
    logger = MagicMock()
    with pytest.raises(ValueError):
        parse_action_payload("not json", logger)
    logger.error.assert_called_once()
    assert "not json" in logger.error.call_args.args

# ---------------------------------------------------------------------------
# JSON action loop
# ---------------------------------------------------------------------------

def _client(*replies) -> MagicMock:
    client = MagicMock()
    client.complete.side_effect = list(replies)
    return client

def test_action_loop_reads_then_writes(dispatcher):
    client = _client(
        '{"action": "read_file", "args": {"path": "a.txt"}}',
        '{"action": "write_file", "args": {"path": "out.txt", "contents": "ALPHA"}}',
    )
    result = ActionLoop(client, dispatcher, MagicMock(), max_iterations=5).run("uppercase a.txt")

    assert result.success is True
    assert result.iterations == 2
    assert dispatcher.workspace.read_text("out.txt")[0] == "ALPHA"
    injected = result.history[2].content
    assert injected.startswith("Observation: read_file succeeded.\npath: /proj/a.txt")
    assert injected.endswith("Respond with the next JSON action.")

def test_action_loop_recovers_from_parse_error(dispatcher):
    client = _client(
        "Sure! Let me think...",
        '{"action": "write_file", "args": {"path": "x.txt", "contents": "1"}}',
    )
    result = ActionLoop(client, dispatcher, MagicMock(), max_iterations=3).run("go")
    assert result.success is True
    assert result.history[2].content.startswith("Observation: parse_error encountered.\nerror: JSONDecodeError")

def test_action_loop_continues_after_tool_error(dispatcher):
    client = _client(
        '{"action": "read_file", "args": {"path": "missing.txt"}}',
        '{"action": "write_file", "args": {"path": "x.txt", "contents": "1"}}',
    )
    result = ActionLoop(client, dispatcher, MagicMock(), max_iterations=3).run("go")
    assert result.success is True
    assert "tool_error encountered" in result.history[2].content

def test_action_loop_iteration_limit(dispatcher):
    client = _client(*['{"action": "read_file", "args": {"path": "a.txt"}}'] * 3)
    with pytest.raises(IterationLimitError):
        ActionLoop(client, dispatcher, MagicMock(), max_iterations=3).run("loop forever")
    assert client.complete.call_count == 3

def test_action_loop_stops_at_write_within_turn(dispatcher):
    client = _client(
        '[{"action": "write_file", "args": {"path": "x.txt", "contents": "1"}},'
        ' {"action": "write_file", "args": {"path": "y.txt", "contents": "2"}}]'
    )
    ActionLoop(client, dispatcher, MagicMock()).run("go")
    assert not dispatcher.workspace.exists("/proj/y.txt")

# ---------------------------------------------------------------------------
# Native tool loop
# ---------------------------------------------------------------------------

def _chat_client(*turns):
    snapshots = []
    replies = iter(turns)

    def chat(system_prompt, messages, tools, model=None):
        snapshots.append(copy.deepcopy(messages))
        return next(replies)

    client = MagicMock()
    client.chat.side_effect = chat
    return client, snapshots

SCHEMA = SchemaParser().parse("{summary: string}")

def test_tool_loop_executes_calls_then_returns_json(dispatcher):
    client, snapshots = _chat_client(
        ChatTurn(content=None, tool_calls=[ToolCall("c1", "read_file", {"path": "a.txt"})]),
        ChatTurn(content='{"summary": "alpha"}'),
    )
    loop = ToolCallLoop(client, dispatcher, MagicMock())
    output = loop.run("summarize a.txt", "system", get_tools(["read_file"]), SCHEMA)

    assert output == {"summary": "alpha"}
    second = snapshots[1]
    assert second[1]["tool_calls"][0]["id"] == "c1"
    assert second[2]["role"] == "tool"
    assert second[2]["tool_call_id"] == "c1"
    assert "contents:\nalpha" in second[2]["content"]

def test_tool_loop_caps_tool_calls_per_turn(dispatcher):
    calls = [ToolCall(f"c{n}", "file_read", {"path": "a.txt"}) for n in range(3)]
    client, snapshots = _chat_client(
        ChatTurn(content=None, tool_calls=calls),
        ChatTurn(content='{"summary": "s"}'),
    )
    logger = MagicMock()
    ToolCallLoop(client, dispatcher, logger).run("p", "s", get_tools(["file_read"]), SCHEMA)

    history = snapshots[1]
    assert [c["id"] for c in history[1]["tool_calls"]] == ["c0", "c1"]
    assert [m["tool_call_id"] for m in history if m["role"] == "tool"] == ["c0", "c1"]
    logger.warning.assert_called_once()

def test_tool_loop_rejects_tools_not_granted(dispatcher):
    client, snapshots = _chat_client(
        ChatTurn(content=None, tool_calls=[ToolCall("c1", "write_file", {"path": "z.txt", "contents": "x"})]),
        ChatTurn(content='{"summary": "s"}'),
    )
    ToolCallLoop(client, dispatcher, MagicMock()).run("p", "s", get_tools(["read_file"]), SCHEMA)
    assert "tool_error encountered" in snapshots[1][2]["content"]
    assert not dispatcher.workspace.exists("/proj/z.txt")

def test_tool_loop_bad_arguments_become_tool_error(dispatcher):
    client, snapshots = _chat_client(
        ChatTurn(content=None, tool_calls=[ToolCall("c1", "read_file", {})]),
        ChatTurn(content='{"summary": "s"}'),
    )
    ToolCallLoop(client, dispatcher, MagicMock()).run("p", "s", get_tools(["read_file"]), SCHEMA)
    assert "error: ValidationError" in snapshots[1][2]["content"]

def test_tool_loop_schema_retry_then_success(dispatcher):
    client, snapshots = _chat_client(
        ChatTurn(content='{"wrong": 1}'),
        ChatTurn(content='```json\n{"summary": "fixed"}\n```'),
    )
    logger = MagicMock()
    output = ToolCallLoop(client, dispatcher, logger).run("p", "s", [], SCHEMA)
    assert output == {"summary": "fixed"}
    logger.agent_json_retry.assert_called_once()
    assert "Missing required property: summary" in snapshots[1][-1]["content"]

def test_tool_loop_schema_retries_exhausted(dispatcher):
    client, _ = _chat_client(*[ChatTurn(content="not json")] * 4)
    with pytest.raises(SchemaRetryError):
        ToolCallLoop(client, dispatcher, MagicMock(), schema_retries=3).run("p", "s", [], SCHEMA)
    assert client.chat.call_count == 4

def test_tool_loop_iteration_limit(dispatcher):
    turn = ChatTurn(content=None, tool_calls=[ToolCall("c", "read_file", {"path": "a.txt"})])
    client, _ = _chat_client(*[turn] * 2)
    with pytest.raises(IterationLimitError):
        ToolCallLoop(client, dispatcher, MagicMock(), max_iterations=2).run("p", "s", get_tools(["read_file"]), SCHEMA)

def test_agent_system_prompt_contains_role_tools_and_schema():
    prompt = build_agent_system_prompt("Reviewer", ["read_file"], SCHEMA.to_wire_schema())
    assert "Your role: Reviewer" in prompt
    assert "read_file" in prompt
    assert '"summary"' in prompt

# ---------------------------------------------------------------------------
# Prompt runner
# ---------------------------------------------------------------------------

def test_prompt_runner_uses_front_matter(tmp_path):
    prompt = tmp_path / "task.md"
    prompt.write_text("---\nstatus: active\nprovider: anthropic\nmodel: claude-x\n---\nWrite hello.txt\n")
    client = _client('{"action": "write_file", "args": {"path": "hello.txt", "contents": "hi"}}')

    runner = PromptRunner(RuntimeConfig(), MagicMock(), str(tmp_path), client=client)
    result = runner.run(str(prompt))

    assert result.success is True
    assert (tmp_path / "hello.txt").read_text() == "hi"
    kwargs = client.complete.call_args.kwargs
    assert kwargs["provider"] == "anthropic"
    assert kwargs["model"] == "claude-x"
    history = client.complete.call_args.args[1]
    assert history[0].content == "Write hello.txt\n"

def test_prompt_runner_defaults_provider_from_config(tmp_path):
    prompt = tmp_path / "task.md"
    prompt.write_text("---\nstatus: active\n---\nWrite it\n")
    client = _client('{"action": "write_file", "args": {"path": "o.txt", "contents": "x"}}')

    PromptRunner(RuntimeConfig(provider="openrouter"), MagicMock(), str(tmp_path), client=client).run(str(prompt))
    assert client.complete.call_args.kwargs["provider"] == "openrouter"
    assert client.complete.call_args.kwargs["model"] is None
