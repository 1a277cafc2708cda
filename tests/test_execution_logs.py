from __future__ import annotations

import json
import os
import threading
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from gwtui.tasks.common import utc_now
from gwtui.tasks.errors import NotFound, ValidationError
from gwtui.tasks.logs import CleanupPolicy, ExecutionLogManager, RenderMode, render_line
from gwtui.tasks.models import Execution, ExitStatus, RunnerKind

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Execution Logs"),
]


def _execution(exec_id: str, *, ended_days_ago: float | None) -> Execution:
    now = utc_now()
    if ended_days_ago is None:
        return Execution(
            exec_id=exec_id,
            task_id="t1",
            runner=RunnerKind.CODEX,
            started_at=now - timedelta(days=60),
            log_path="",
        )
    ended_at = now - timedelta(days=ended_days_ago)
    return Execution(
        exec_id=exec_id,
        task_id="t1",
        runner=RunnerKind.CODEX,
        started_at=ended_at - timedelta(minutes=5),
        ended_at=ended_at,
        exit_status=ExitStatus.SUCCEEDED,
        exit_code=0,
        log_path="",
    )


def _write_log(manager: ExecutionLogManager, exec_id: str, lines: int = 3) -> None:
    with manager.open_writer(exec_id, task_id="t1") as writer:
        for index in range(lines):
            writer.write("stdout", f"line {index}")


def test_writer_stores_one_json_object_per_line(queue_dir: Path) -> None:
    manager = ExecutionLogManager(queue_dir)
    with manager.open_writer("exec-0123456789ab", task_id="t1") as writer:
        writer.write("stdout", '{"type": "thread.started", "thread_id": "th-1"}')
        writer.write("stderr", "warning: something")
        writer.write("stdout", "   ")
        writer.note("exited with code 0")

    lines = list(manager.tail("exec-0123456789ab"))
    entries = [json.loads(line) for line in lines]
    assert len(entries) == 3
    assert entries[0]["type"] == "thread.started"
    assert entries[0]["execution_id"] == "exec-0123456789ab"
    assert entries[1] == {
        **entries[1],
        "stream": "stderr",
        "type": "text",
        "text": "warning: something",
    }
    assert entries[2]["stream"] == "worker"
    assert entries[2]["type"] == "note"


def test_log_path_rejects_traversal(queue_dir: Path) -> None:
    manager = ExecutionLogManager(queue_dir)

    with pytest.raises(ValidationError):
        manager.log_path("../tasks/task-abc")
    with pytest.raises(NotFound):
        list(manager.tail("exec-ffffffffffff"))


def test_follow_yields_appended_lines_until_execution_finishes(queue_dir: Path) -> None:
    manager = ExecutionLogManager(queue_dir, refresh_interval=0.02)
    exec_id = "exec-aaaaaaaaaaaa"
    running = threading.Event()
    running.set()

    def _produce() -> None:
        with manager.open_writer(exec_id, task_id="t1") as writer:
            for index in range(5):
                writer.write("stdout", f"chunk {index}")
                time.sleep(0.02)
        running.clear()

    producer = threading.Thread(target=_produce)
    producer.start()
    lines = list(manager.tail(exec_id, follow=True, is_running=running.is_set))
    producer.join()

    assert [json.loads(line)["text"] for line in lines] == [f"chunk {i}" for i in range(5)]


def test_render_pretty_and_raw(queue_dir: Path) -> None:
    manager = ExecutionLogManager(queue_dir)
    exec_id = "exec-bbbbbbbbbbbb"
    with manager.open_writer(exec_id, task_id="t1") as writer:
        writer.write(
            "stdout",
            json.dumps(
                {
                    "type": "item.completed",
                    "item": {"id": "i0", "type": "agent_message", "text": "All done"},
                },
            ),
        )

    pretty = list(manager.render(exec_id, RenderMode.PRETTY))
    raw = list(manager.render(exec_id, RenderMode.RAW))

    assert len(pretty) == 1
    assert pretty[0].endswith("All done")
    assert json.loads(raw[0])["item"]["text"] == "All done"


def test_render_line_understands_claude_stream_json() -> None:
    line = json.dumps(
        {
            "timestamp": "2026-01-01T10:00:00+00:00",
            "stream": "stdout",
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "name": "Bash", "input": {"cmd": "ls"}}]},
        },
    )

    assert render_line(line) == ['10:00:00 tool Bash {"cmd": "ls"}']
    assert render_line("not json at all") == ["not json at all"]
    assert render_line(json.dumps({"type": "mystery"})) == ['{"type": "mystery"}']


def test_cleanup_removes_only_logs_of_executions_ended_before_cutoff(queue_dir: Path) -> None:
    manager = ExecutionLogManager(queue_dir)
    old = _execution("exec-000000000001", ended_days_ago=45)
    recent = _execution("exec-000000000002", ended_days_ago=2)
    running = _execution("exec-000000000003", ended_days_ago=None)
    for execution in (old, recent, running):
        _write_log(manager, execution.exec_id)

    result = manager.cleanup(
        CleanupPolicy(older_than=timedelta(days=30)),
        [old, recent, running],
    )

    assert result.deleted == [old.exec_id]
    assert result.skipped_running == 1
    assert not manager.exists(old.exec_id)
    assert manager.exists(recent.exec_id)
    assert manager.exists(running.exec_id)


def test_cleanup_dry_run_keeps_files(queue_dir: Path) -> None:
    manager = ExecutionLogManager(queue_dir)
    old = _execution("exec-000000000004", ended_days_ago=45)
    _write_log(manager, old.exec_id)

    result = manager.cleanup(CleanupPolicy(older_than=timedelta(days=30), dry_run=True), [old])

    assert result.deleted == [old.exec_id]
    assert result.freed_bytes > 0
    assert manager.exists(old.exec_id)


def test_cleanup_size_cap_deletes_oldest_first_and_ages_orphans_by_mtime(
    queue_dir: Path,
) -> None:
    manager = ExecutionLogManager(queue_dir)
    older = _execution("exec-000000000005", ended_days_ago=3)
    newer = _execution("exec-000000000006", ended_days_ago=1)
    for execution in (older, newer):
        _write_log(manager, execution.exec_id, lines=50)
    orphan = "exec-000000000007"
    _write_log(manager, orphan, lines=50)
    stale = time.time() - 10 * 86_400
    os.utime(manager.log_path(orphan), (stale, stale))

    cap = manager.size(newer.exec_id)
    result = manager.cleanup(CleanupPolicy(max_total_bytes=cap), [older, newer])

    assert result.deleted == [orphan, older.exec_id]
    assert manager.total_size() <= cap
