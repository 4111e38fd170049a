import json
import os
import socket
import subprocess
import pytest
from unittest.mock import MagicMock

from agent_pipeline.config import RuntimeConfig
from agent_pipeline.llm import ChatTurn
from agent_pipeline.logger import RunLogger
from agent_pipeline.runs import JobManager, RunStateError, RunStore, reconcile_interrupted

HELLO_PIPELINE = """
name: hello
nodes:
  - id: say
    type: task
    command: echo hi
"""

SLOW_PIPELINE = """
name: slow
nodes:
  - id: nap
    type: task
    command: sleep 1
"""

FAILING_PIPELINE = """
name: broken
nodes:
  - id: check
    type: gate
    command: "false"
    message: Lint must pass
  - id: never
    type: task
    command: echo unreachable
"""


@pytest.fixture
def store(tmp_path):
    return RunStore(str(tmp_path / "runs"))


@pytest.fixture
def manager(tmp_path, store):
    return JobManager(store, RuntimeConfig(), str(tmp_path), poll_interval=0.05)


def _pipeline(tmp_path, text, name="pipeline.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def test_create_run_is_queued(store, tmp_path):
    run = store.create_run(str(tmp_path / "p.yaml"), "demo", "add tests")
    assert run.status == "queued"
    assert run.started_at is None
    assert run.user_prompt == "add tests"
    assert store.run_dir(run.id).is_dir()
    on_disk = json.loads(store.metadata_path(run.id).read_text())
    assert on_disk["pipelineName"] == "demo"
    assert on_disk["userPrompt"] == "add tests"

def test_started_at_is_set_once(store):
    run = store.create_run("p.yaml", "demo")
    first = store.update_run_status(run.id, "running")
    store.update_run_status(run.id, "failed", "boom")
    resumed = store.update_run_status(run.id, "running")
    assert resumed.started_at == first.started_at
    assert resumed.completed_at is None
    assert resumed.error is None

def test_terminal_status_sets_completion(store):
    run = store.create_run("p.yaml", "demo")
    store.update_run_status(run.id, "running")
    failed = store.update_run_status(run.id, "failed", "Node a failed: boom")
    assert failed.completed_at is not None
    assert failed.error == "Node a failed: boom"
    assert store.load_metadata(run.id).status == "failed"

def test_update_unknown_run(store):
    with pytest.raises(RunStateError, match="not found"):
        store.update_run_status("missing", "running")

def test_list_runs_newest_first_and_skips_junk(store):
    older = store.create_run("a.yaml", "a")
    newer = store.create_run("b.yaml", "b")
    store.save_metadata(older.model_copy(update={"created_at": "2024-01-01T00:00:00.000Z"}))
    store.save_metadata(newer.model_copy(update={"created_at": "2024-06-01T00:00:00.000Z"}))
    (store.base_dir / "junk").mkdir()
    (store.base_dir / "junk" / "metadata.json").write_text("{not json")
    (store.base_dir / "empty").mkdir()
    assert [run.id for run in store.list_runs()] == [newer.id, older.id]

def test_invalid_metadata_raises(store):
    (store.base_dir / "bad").mkdir(parents=True)
    (store.base_dir / "bad" / "metadata.json").write_text('{"id": "bad"}')
    with pytest.raises(RunStateError, match="Invalid run metadata"):
        store.load_metadata("bad")

def test_can_resume(store):
    run = store.create_run("p.yaml", "demo")
    assert not store.can_resume(run.id)
    store.update_run_status(run.id, "interrupted", "gone")
    assert store.can_resume(run.id)
    assert not store.can_resume("missing")

def test_logs_round_trip(store):
    run = store.create_run("p.yaml", "demo")
    store.append_plain_log(run.id, "[INFO] [system] hello")
    store.append_tool_call(run.id, {"type": "call", "tool": "read_file"})
    assert store.read_plain_logs(run.id)[0].endswith("[INFO] [system] hello")
    record = json.loads(store.tool_calls_path(run.id).read_text())
    assert record["tool"] == "read_file"
    assert "timestamp" in record
    assert store.read_structured_logs(run.id) == []

def test_delete_run(store):
    run = store.create_run("p.yaml", "demo")
    store.delete_run(run.id)
    assert store.load_metadata(run.id) is None

def _owned_by(store, run, **owner):
    store.update_run_status(run.id, "running")
    store.save_metadata(store.load_metadata(run.id).model_copy(update=owner))

def test_reconcile_marks_orphans_interrupted(store):
    orphan = store.create_run("a.yaml", "a")
    store.update_run_status(orphan.id, "running")
    changed = reconcile_interrupted(store)
    assert [run.id for run in changed] == [orphan.id]
    assert store.load_metadata(orphan.id).status == "interrupted"
    assert store.load_metadata(orphan.id).error == "Run was interrupted before completion"

def test_reconcile_leaves_runs_owned_by_live_processes(store):
    sleeper = subprocess.Popen(["sleep", "5"])
    finished = subprocess.Popen(["true"])
    finished.wait()
    try:
        alive = store.create_run("a.yaml", "a")
        dead = store.create_run("b.yaml", "b")
        remote = store.create_run("c.yaml", "c")
        _owned_by(store, alive, owner_pid=sleeper.pid)
        _owned_by(store, dead, owner_pid=finished.pid)
        _owned_by(store, remote, owner_pid=1, owner_host="some-other-host")

        changed = reconcile_interrupted(store)
    finally:
        sleeper.kill()
        sleeper.wait()

    assert [run.id for run in changed] == [dead.id]
    assert store.load_metadata(alive.id).status == "running"
    assert store.load_metadata(remote.id).status == "running"

def test_reconcile_skips_run_live_in_another_manager(tmp_path, manager):
    run = manager.queue_job(_pipeline(tmp_path, SLOW_PIPELINE), "slow")
    other = RunStore(str(manager.store.base_dir))

    assert reconcile_interrupted(other) == []
    assert other.load_metadata(run.id).status == "running"
    with pytest.raises(RunStateError, match="Job cannot be resumed"):
        JobManager(other, RuntimeConfig(), str(tmp_path)).resume_job(run.id)

    assert manager.wait(run.id, timeout=10).status == "completed"

def test_conditional_transition_writes_nothing_when_check_fails(store):
    run = store.create_run("a.yaml", "a")
    assert store.update_run_status(run.id, "running", only_if=lambda r: r.status == "failed") is None
    assert store.load_metadata(run.id).status == "queued"
    assert (store.run_dir(run.id) / ".lock").exists()

# ---------------------------------------------------------------------------
# Run logger
# ---------------------------------------------------------------------------

def test_run_logger_writes_all_streams(store):
    run = store.create_run("p.yaml", "demo")
    logger = RunLogger(run.id, store, echo=False)
    logger.node_start("scan", "agent")
    logger.agent_tool_call("read_file", {"path": "a.ts"})
    logger.agent_tool_result("Observation: read_file succeeded.")
    logger.flush()

    entries = store.read_structured_logs(run.id)
    assert [entry.category for entry in entries] == ["node", "tool", "tool"]
    assert entries[0].data["nodeId"] == "scan"
    assert "[INFO] [node] Starting node: scan (agent)" in store.read_plain_logs(run.id)[0]
    tool_lines = store.tool_calls_path(run.id).read_text().splitlines()
    assert [json.loads(line)["type"] for line in tool_lines] == ["call", "result"]

    logger.close()
    logger.info("after close")
    logger.flush()
    assert len(store.read_structured_logs(run.id)) == 3

def test_run_logger_paths(store):
    run = store.create_run("p.yaml", "demo")
    logger = RunLogger(run.id, store, echo=False)
    paths = logger.get_log_paths()
    logger.close()
    assert paths["structured"].endswith("logs.jsonl")
    assert paths["plain"].endswith("logs.txt")
    assert paths["tool_calls"].endswith("tool-calls.jsonl")

# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def test_pipeline_job_completes(tmp_path, manager, store):
    path = _pipeline(tmp_path, HELLO_PIPELINE)
    run = manager.queue_job(path, "hello")
    final = manager.wait(run.id, timeout=10)

    assert final.status == "completed"
    assert final.started_at is not None
    assert final.completed_at is not None
    assert final.error is None
    messages = [entry.message for entry in store.read_structured_logs(run.id)]
    assert "Starting pipeline: hello" in messages
    assert "hi" in messages
    assert "Pipeline completed successfully" in messages
    assert final.owner_pid == os.getpid()
    assert final.owner_host == socket.gethostname()
    assert manager.active_ids() == set()

def test_pipeline_job_failure_records_node_error(tmp_path, manager):
    run = manager.queue_job(_pipeline(tmp_path, FAILING_PIPELINE), "broken")
    final = manager.wait(run.id, timeout=10)
    assert final.status == "failed"
    assert final.error == "Node check failed: Lint must pass"

def test_unparseable_pipeline_fails_the_run(tmp_path, manager):
    run = manager.queue_job(_pipeline(tmp_path, "nodes: []\n"), "empty")
    final = manager.wait(run.id, timeout=10)
    assert final.status == "failed"
    assert final.error.startswith("PipelineValidationError")

def test_prompt_job(tmp_path, store):
    prompt = tmp_path / "task.md"
    prompt.write_text("---\nstatus: active\n---\nWrite a greeting to hello.txt\n")
    client = MagicMock()
    client.complete.return_value = '{"action": "write_file", "args": {"path": "hello.txt", "contents": "hi"}}'
    manager = JobManager(store, RuntimeConfig(), str(tmp_path), client=client)

    run = manager.queue_prompt(str(prompt))
    final = manager.wait(run.id, timeout=10)

    assert run.kind == "prompt"
    assert run.pipeline_name == "task"
    assert final.status == "completed"
    assert (tmp_path / "hello.txt").read_text() == "hi"

def test_subscribers_receive_final_update(tmp_path, manager):
    updates = []
    unsubscribe = manager.subscribe(updates.append)
    run = manager.queue_job(_pipeline(tmp_path, HELLO_PIPELINE), "hello")
    manager.wait(run.id, timeout=10)
    unsubscribe()

    assert updates[-1].run.id == run.id
    assert updates[-1].run.status == "completed"

    manager.queue_job(_pipeline(tmp_path, HELLO_PIPELINE, "again.yaml"), "again")
    assert len(updates) == 1

def test_failing_subscriber_does_not_break_others(tmp_path, manager):
    seen = []
    manager.subscribe(MagicMock(side_effect=RuntimeError("bad subscriber")))
    manager.subscribe(seen.append)
    run = manager.queue_job(_pipeline(tmp_path, HELLO_PIPELINE), "hello")
    manager.wait(run.id, timeout=10)
    assert [update.run.status for update in seen] == ["completed"]

def test_resume_rejects_non_resumable(tmp_path, manager):
    run = manager.queue_job(_pipeline(tmp_path, HELLO_PIPELINE), "hello")
    manager.wait(run.id, timeout=10)
    with pytest.raises(RunStateError, match="Job cannot be resumed"):
        manager.resume_job(run.id)
    with pytest.raises(RunStateError, match="not found"):
        manager.resume_job("missing")

def test_resume_replays_interrupted_run(tmp_path, manager, store):
    run = store.create_run(_pipeline(tmp_path, HELLO_PIPELINE), "hello")
    store.update_run_status(run.id, "running")
    reconcile_interrupted(store)
    first_started = store.load_metadata(run.id).started_at

    manager.resume_job(run.id)
    final = manager.wait(run.id, timeout=10)
    assert final.status == "completed"
    assert final.started_at == first_started

def test_second_resume_of_a_resuming_run_is_rejected(tmp_path, manager, store):
    run = store.create_run(_pipeline(tmp_path, SLOW_PIPELINE), "slow")
    store.update_run_status(run.id, "running")
    store.update_run_status(run.id, "failed", "boom")

    manager.resume_job(run.id)
    with pytest.raises(RunStateError, match="Job cannot be resumed"):
        manager.resume_job(run.id)
    with pytest.raises(RunStateError, match="Job cannot be resumed"):
        JobManager(store, RuntimeConfig(), str(tmp_path)).resume_job(run.id)

    assert manager.wait(run.id, timeout=10).status == "completed"

def test_poll_once_reports_new_lines(manager, store):
    run = store.create_run("p.yaml", "demo")
    store.update_run_status(run.id, "running")
    store.append_plain_log(run.id, "[INFO] [system] one")

    first = manager.poll_once()
    assert len(first) == 1
    assert len(first[0].new_lines) == 1
    assert manager.poll_once() == []

    store.append_plain_log(run.id, "[INFO] [system] two")
    store.update_run_status(run.id, "completed")
    last = manager.poll_once()
    assert last[0].run.status == "completed"
    assert last[0].new_lines[0].endswith("two")
    assert manager.poll_once() == []

def test_polling_thread_publishes(manager, store):
    run = store.create_run("p.yaml", "demo")
    store.update_run_status(run.id, "running")
    seen = []
    manager.subscribe(seen.append)
    manager.start_polling()
    try:
        for _ in range(100):
            if seen:
                break
            manager._stop.wait(0.02)
    finally:
        manager.stop()
    assert seen[0].run.id == run.id
