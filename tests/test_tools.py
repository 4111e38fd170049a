import pytest
from unittest.mock import MagicMock
from pydantic import ValidationError

from agent_pipeline.policy import ScriptPolicyError, ScriptResult
from agent_pipeline.tools import (
    READ_LIMIT,
    ActionDispatcher,
    ListDirectoryArgs,
    ReadFileAction,
    RunNpmScriptAction,
    ToolNotFoundError,
    WriteFileAction,
    get_tools,
    glob_to_regex,
    list_directory,
    parse_action,
)
from agent_pipeline.workspace import InMemoryFileSystem, Workspace, WorkspaceError

FILES = {
    "/proj/README.md": "# readme",
    "/proj/src/a.ts": "export const a = 1;",
    "/proj/src/b.py": "print('b')",
    "/proj/src/nested/c.ts": "export const c = 3;",
    "/proj/node_modules/dep/index.js": "module.exports = {};",
    "/proj/.git/HEAD": "ref: refs/heads/main",
}


@pytest.fixture
def workspace():
    return Workspace("/proj", fs=InMemoryFileSystem(FILES))


@pytest.fixture
def dispatcher(workspace):
    return ActionDispatcher(workspace, MagicMock(), MagicMock())

# ---------------------------------------------------------------------------
# Action contracts
# ---------------------------------------------------------------------------

def test_read_file_accepts_file_path_alias():
    action = parse_action({"action": "read_file", "args": {"file_path": "a.txt"}})
    assert isinstance(action, ReadFileAction)
    assert action.args.path == "a.txt"

def test_write_file_accepts_content_alias():
    action = parse_action({"action": "write_file", "args": {"path": "a.txt", "content": "hi"}})
    assert isinstance(action, WriteFileAction)
    assert action.args.contents == "hi"

def test_list_directory_defaults():
    action = parse_action({"action": "list_directory", "args": {"directory": "src", "maxResults": 5}})
    assert action.args.path == "src"
    assert action.args.max_results == 5
    assert action.args.recursive is False
    assert parse_action({"action": "list_directory"}).args.path == "."

def test_list_directory_limit_bounds():
    with pytest.raises(ValidationError):
        parse_action({"action": "list_directory", "args": {"max_results": 1001}})

def test_run_npm_script_flags_are_strict():
    action = parse_action({"action": "run_npm_script", "args": {"script": "test", "flags": {"watch": True}}})
    assert isinstance(action, RunNpmScriptAction)
    assert action.args.flags == {"watch": True}
    assert parse_action({"action": "run_npm_script", "args": {"script": "t", "flags": None}}).args.flags == {}
    with pytest.raises(ValidationError):
        parse_action({"action": "run_npm_script", "args": {"script": "test", "flags": {"n": 3}}})

def test_unknown_action_rejected():
    with pytest.raises(ValidationError):
        parse_action({"action": "delete_file", "args": {"path": "a"}})

def test_read_file_requires_path():
    with pytest.raises(ValidationError):
        parse_action({"action": "read_file", "args": {}})

# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

def test_workspace_blocks_escape(workspace):
    with pytest.raises(WorkspaceError, match="outside the workspace root /proj"):
        workspace.resolve("../etc/passwd")

def test_workspace_read_write(workspace):
    resolved = workspace.write_text("out/new.txt", "data")
    assert resolved == "/proj/out/new.txt"
    assert workspace.read_text("out/new.txt") == ("data", "/proj/out/new.txt")

def test_workspace_missing_file_error_has_path(workspace):
    with pytest.raises(WorkspaceError, match="Failed to read file at /proj/missing.txt"):
        workspace.read_text("missing.txt")

def test_local_workspace(tmp_path):
    workspace = Workspace(str(tmp_path))
    resolved = workspace.write_text("dir/file.txt", "hello")
    assert (tmp_path / "dir" / "file.txt").read_text() == "hello"
    assert workspace.read_text("dir/file.txt")[0] == "hello"
    assert resolved.endswith("file.txt")
    with pytest.raises(WorkspaceError):
        workspace.resolve("../outside.txt")

# ---------------------------------------------------------------------------
# Directory listing
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "pattern, path, expected",
    [
        ("*.ts", "a.ts", True),
        ("*.ts", "src/a.ts", False),
        ("**/*.ts", "a.ts", True),
        ("**/*.ts", "src/nested/a.ts", True),
        ("src/?.py", "src/b.py", True),
        ("src/?.py", "src/bb.py", False),
        ("*.test.ts", "a.test.ts", True),
        ("*.test.ts", "atest.ts", False),
    ],
)
def test_glob_to_regex(pattern, path, expected):
    assert bool(glob_to_regex(pattern).match(path)) is expected

def test_list_directory_top_level(workspace):
    listing = list_directory(workspace, ListDirectoryArgs())
    assert listing.entries == [("file", "README.md"), ("directory", "src/")]
    assert listing.truncated is False

def test_list_directory_recursive_pattern(workspace):
    listing = list_directory(workspace, ListDirectoryArgs(recursive=True, pattern="**/*.ts"))
    assert listing.entries == [("file", "src/a.ts"), ("file", "src/nested/c.ts")]

def test_list_directory_truncates(workspace):
    listing = list_directory(workspace, ListDirectoryArgs(recursive=True, max_results=2))
    assert len(listing.entries) == 2
    assert listing.truncated is True

def test_list_directory_rejects_file(workspace):
    with pytest.raises(NotADirectoryError):
        list_directory(workspace, ListDirectoryArgs(path="README.md"))

# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def test_read_observation(dispatcher):
    result = dispatcher.execute(parse_action({"action": "read_file", "args": {"path": "src/a.ts"}}))
    assert result.observation == (
        "Observation: read_file succeeded.\npath: /proj/src/a.ts\ncontents:\nexport const a = 1;"
    )
    assert result.continue_loop is True
    assert result.history_injection == f"{result.observation}\nRespond with the next JSON action."

def test_read_truncation(workspace, dispatcher):
    workspace.write_text("big.txt", "x" * (READ_LIMIT + 500))
    result = dispatcher.execute(parse_action({"action": "read_file", "args": {"path": "big.txt"}}))
    assert result.observation.endswith("x" * READ_LIMIT + "\n...[truncated 500 characters]")

def test_write_is_terminal(workspace, dispatcher):
    result = dispatcher.execute(parse_action({"action": "write_file", "args": {"path": "out.md", "contents": "done"}}))
    assert result.observation == "Observation: write_file succeeded at /proj/out.md."
    assert result.continue_loop is False
    assert result.history_injection is None
    assert workspace.read_text("out.md")[0] == "done"

def test_list_observation(dispatcher):
    result = dispatcher.execute(parse_action({"action": "list_directory", "args": {"path": "src"}}))
    assert result.observation == (
        "Observation: list_directory succeeded.\npath: /proj/src\npattern: <none>\nrecursive: false\n"
        "entries:\n- [file] a.ts\n- [file] b.py\n- [directory] nested/"
    )

def test_list_observation_empty(dispatcher):
    result = dispatcher.execute(parse_action({"action": "list_directory", "args": {"pattern": "*.rs"}}))
    assert "- [empty] (no entries matched)" in result.observation

def test_tool_error_becomes_observation(dispatcher):
    result = dispatcher.execute(parse_action({"action": "read_file", "args": {"path": "../secret"}}))
    assert result.observation.startswith(
        "Observation: tool_error encountered.\naction: read_file\nerror: WorkspaceError: Path /secret is outside"
    )
    assert result.continue_loop is True
    dispatcher.logger.error.assert_called_once()

def _script_result(**overrides) -> ScriptResult:
    fields = dict(
        script="test", underlying="test", command="npm", args=["run", "test"], cwd="/proj",
        exit_code=1, signal=None, timed_out=False, stdout="FAIL a.test.ts", stderr="",
        stdout_truncated=True, stdout_overflow=42, stderr_truncated=False, stderr_overflow=0,
    )
    fields.update(overrides)
    return ScriptResult(**fields)

def test_run_npm_script_observation(dispatcher):
    dispatcher.policy_engine.run.return_value = _script_result()
    result = dispatcher.execute(
        parse_action({"action": "run_npm_script", "args": {"script": "test", "flags": {"run": True}}})
    )
    dispatcher.policy_engine.run.assert_called_once_with("test", {"run": True})
    assert result.observation == "\n".join(
        [
            "Observation: run_npm_script completed.",
            "script: test",
            "exit_code: 1",
            "signal: null",
            "timed_out: false",
            "stdout:",
            "FAIL a.test.ts\n...[truncated 42 characters]",
            "stderr:",
            "[no stderr]",
        ]
    )
    assert result.continue_loop is True

def test_run_npm_script_policy_rejection(dispatcher):
    dispatcher.policy_engine.run.side_effect = ScriptPolicyError("Script deploy is not defined")
    result = dispatcher.execute(parse_action({"action": "run_npm_script", "args": {"script": "deploy"}}))
    assert "error: ScriptPolicyError: Script deploy is not defined" in result.observation

# ---------------------------------------------------------------------------
# Native tool registry
# ---------------------------------------------------------------------------

def test_get_tools_with_aliases():
    tools = get_tools(["read_file", "file_write", "file_list"])
    assert [tool["name"] for tool in tools] == ["read_file", "file_write", "file_list"]
    assert [tool["action"] for tool in tools] == ["read_file", "write_file", "list_directory"]
    assert all("input_schema" in tool and tool["description"] for tool in tools)

def test_get_tools_unknown():
    with pytest.raises(ToolNotFoundError, match="web_search"):
        get_tools(["read_file", "web_search"])
