import asyncio
import sys
import time
from pathlib import Path

import pytest

from quartet.backends.command import CommandTool
from quartet.config import RunnerConfig
from quartet.errors import TaskRegistryError
from quartet.runtime import ProcessRunner, TaskStatus


def _runner(script: str, **overrides) -> ProcessRunner:
    config = RunnerConfig(terminate_grace_seconds=2.0, drain_timeout_seconds=2.0, **overrides)
    return ProcessRunner(CommandTool([sys.executable, "-c", script]), config=config)


WRITE_FILE = """
import sys
from pathlib import Path
Path("out.txt").write_text(sys.argv[1], encoding="utf-8")
print("wrote out.txt")
print("second line")
"""


def test_successful_task_reports_output_and_modified_files(tmp_path: Path) -> None:
    (tmp_path / "untouched.txt").write_text("x", encoding="utf-8")
    runner = _runner(WRITE_FILE)

    result = asyncio.run(runner.execute("t1", "hello", tmp_path, 30))

    assert result.success is True
    assert result.failure_kind is None
    assert result.exit_code == 0
    assert result.output == "wrote out.txt\nsecond line"
    assert result.modified_files == ["out.txt"]
    assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "hello"
    assert runner.registry.get_status("t1").status is TaskStatus.COMPLETED
    assert runner.registry.get_output_snapshot("t1") == ["wrote out.txt", "second line"]


def test_hash_change_detection_matches_content(tmp_path: Path) -> None:
    runner = _runner(WRITE_FILE, change_detection="hash")

    result = asyncio.run(runner.execute("t1", "hashed", tmp_path, 30))

    assert result.success is True
    assert result.modified_files == ["out.txt"]


def test_non_zero_exit_is_a_failure(tmp_path: Path) -> None:
    runner = _runner("import sys; print('partial'); sys.stderr.write('bad input\\n'); sys.exit(3)")

    result = asyncio.run(runner.execute("t1", "x", tmp_path, 30))

    assert result.success is False
    assert result.failure_kind == "exit"
    assert result.exit_code == 3
    assert result.output == "partial"
    assert "bad input" in result.stderr
    assert result.failure_reason == "Tool exited with code 3: bad input"
    assert runner.registry.get_status("t1").status is TaskStatus.FAILED


def test_missing_binary_is_a_spawn_failure(tmp_path: Path) -> None:
    runner = ProcessRunner(CommandTool([str(tmp_path / "no-such-tool")]))

    result = asyncio.run(runner.execute("t1", "x", tmp_path, 30))

    status = runner.registry.get_status("t1")
    assert result.success is False
    assert result.failure_kind == "spawn"
    assert status.status is TaskStatus.FAILED
    assert status.started_at is None


def test_missing_workspace_is_a_spawn_failure(tmp_path: Path) -> None:
    runner = _runner("print('never')")

    result = asyncio.run(runner.execute("t1", "x", tmp_path / "missing", 30))

    assert result.failure_kind == "spawn"
    assert "does not exist" in result.failure_reason


def test_timeout_terminates_the_process(tmp_path: Path) -> None:
    runner = _runner("import time\nprint('started', flush=True)\ntime.sleep(30)")
    events: list[dict] = []
    runner.event_hook = events.append

    started = time.monotonic()
    result = asyncio.run(runner.execute("t1", "x", tmp_path, 0.5))
    elapsed = time.monotonic() - started

    assert result.success is False
    assert result.failure_kind == "timeout"
    assert result.exit_code is not None
    assert result.output == "started"
    assert elapsed < 10
    assert any(event["event"] == "task_timeout" for event in events)


def test_cancel_running_task(tmp_path: Path) -> None:
    runner = _runner("import time\nprint('working', flush=True)\ntime.sleep(30)")

    async def scenario():
        task = asyncio.create_task(runner.execute("t1", "x", tmp_path, 60))
        while runner.registry.get_output_snapshot("t1") != ["working"]:
            await asyncio.sleep(0.02)
        cancelled = await runner.cancel("t1")
        again = await runner.cancel("t1")
        return cancelled, again, await task

    cancelled, again, result = asyncio.run(asyncio.wait_for(scenario(), timeout=20))

    assert cancelled is True
    assert again is False
    assert result.success is False
    assert result.failure_kind == "cancelled"
    assert runner.registry.get_status("t1").status is TaskStatus.CANCELLED


def test_cancel_unknown_or_finished_task_returns_false(tmp_path: Path) -> None:
    runner = _runner("print('done')")

    async def scenario() -> tuple[bool, bool]:
        await runner.execute("t1", "x", tmp_path, 30)
        return await runner.cancel("t1"), await runner.cancel("ghost")

    assert asyncio.run(scenario()) == (False, False)
    assert runner.registry.get_status("t1").status is TaskStatus.COMPLETED


def test_output_callback_receives_lines_in_order(tmp_path: Path) -> None:
    runner = _runner("for n in range(3): print(f'line {n}', flush=True)")
    seen: list[str] = []

    result = asyncio.run(runner.execute("t1", "x", tmp_path, 30, on_output=seen.append))

    assert result.success is True
    assert seen == ["line 0", "line 1", "line 2"]


def test_raising_callback_becomes_internal_failure(tmp_path: Path) -> None:
    runner = _runner("print('boom')")

    def explode(line: str) -> None:
        raise RuntimeError(f"sink rejected {line}")

    result = asyncio.run(runner.execute("t1", "x", tmp_path, 30, on_output=explode))

    assert result.success is False
    assert result.failure_kind == "internal"
    assert "sink rejected boom" in result.failure_reason
    assert runner.registry.get_status("t1").status is TaskStatus.FAILED


def test_duplicate_task_id_is_rejected(tmp_path: Path) -> None:
    runner = _runner("print('x')")

    async def scenario() -> None:
        await runner.execute("t1", "x", tmp_path, 30)
        await runner.execute("t1", "x", tmp_path, 30)

    with pytest.raises(TaskRegistryError, match="already used"):
        asyncio.run(scenario())


def test_failing_event_hook_does_not_change_the_result(tmp_path: Path) -> None:
    runner = _runner("print('fine')")

    def hook(event: dict) -> None:
        if event["event"] in {"task_spawn", "task_finished"}:
            raise RuntimeError("event store down")

    runner.event_hook = hook

    result = asyncio.run(runner.execute("t1", "x", tmp_path, 30))

    assert result.success is True
    assert result.output == "fine"
    assert runner.dropped_events == 2
    assert runner.registry.is_active("t1") is False
    assert runner.registry.get_status("t1").status is TaskStatus.COMPLETED


def test_failing_event_hook_still_retires_failed_spawn(tmp_path: Path) -> None:
    runner = ProcessRunner(CommandTool([str(tmp_path / "no-such-tool")]))

    def hook(event: dict) -> None:
        raise RuntimeError(f"cannot record {event['event']}")

    runner.event_hook = hook

    async def scenario():
        result = await runner.execute("t1", "x", tmp_path, 30)
        streamed = [line async for line in runner.registry.stream("t1")]
        return result, streamed

    result, streamed = asyncio.run(asyncio.wait_for(scenario(), timeout=10))

    assert result.failure_kind == "spawn"
    assert streamed == []
    assert runner.registry.is_active("t1") is False
    assert runner.registry.get_status("t1").status is TaskStatus.FAILED


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_timeout_kills_a_process_that_ignores_sigterm(tmp_path: Path) -> None:
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('armed', flush=True)\n"
        "time.sleep(30)\n"
    )
    config = RunnerConfig(terminate_grace_seconds=0.5, drain_timeout_seconds=1.0)
    runner = ProcessRunner(CommandTool([sys.executable, "-c", script]), config=config)

    started = time.monotonic()
    result = asyncio.run(runner.execute("t1", "x", tmp_path, 1.5))
    elapsed = time.monotonic() - started

    assert result.success is False
    assert result.failure_kind == "timeout"
    assert result.output == "armed"
    assert result.exit_code == -9
    assert "[timeout]" in result.stderr
    assert elapsed < 1.5 + 0.5 + 1.0 + 2.0


def test_cancelling_execute_leaves_no_reader_tasks(tmp_path: Path) -> None:
    runner = _runner("import time\nprint('working', flush=True)\ntime.sleep(30)")

    async def scenario() -> set:
        task = asyncio.create_task(runner.execute("t1", "x", tmp_path, 60))
        while runner.registry.get_output_snapshot("t1") != ["working"]:
            await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)
        return {other for other in asyncio.all_tasks() if other is not asyncio.current_task()}

    leftovers = asyncio.run(asyncio.wait_for(scenario(), timeout=20))

    assert leftovers == set()
    assert runner.registry.is_active("t1") is False
    assert runner.registry.get_status("t1").status is TaskStatus.CANCELLED
