"""Tests for runner.py: dependency-ordered execution, skips, cancellation."""

import concurrent.futures
import dataclasses
import threading
from pathlib import Path

import pytest

from stackctl.config import StackConfig
from stackctl.dag import resolve
from stackctl.dsl import command, copy_if_absent, define_stack, file_exists, mkdir, remove, setup, sh, start, stop
from stackctl.model import ServiceState, TaskStatus
from stackctl.runner import Executor, StackLoadError, load_stack, run_stack, run_tasks
from stackctl.shell import CommandResult
from stackctl.supervisor import Supervisor

REPO_ROOT = Path(__file__).resolve().parents[1]


def _run(tasks, targets, **kwargs):
    return run_tasks(resolve(tasks, targets), **kwargs)


class TestFailures:
    def test_failure_skips_only_dependents(self, fake_runner, tmp_path):
        fake_runner.responses["fail-a"] = CommandResult(cmd="fail-a", exit_code=1, output="boom")
        tasks = [
            command("a", sh("a", "fail-a")),
            command("b", sh("b", "ok-b")),
            command("c", sh("c", "ok-c"), needs=["a"]),
        ]

        report = _run(tasks, ["b", "c"], root=tmp_path, runner=fake_runner)

        assert report.statuses == {
            "a": TaskStatus.FAILED,
            "b": TaskStatus.SUCCEEDED,
            "c": TaskStatus.SKIPPED,
        }
        assert report.reasons["c"] == "dependency 'a' failed"
        assert "exit=1" in report.reasons["a"]
        assert report.status == TaskStatus.FAILED
        assert report.exit_code == 1
        assert fake_runner.called("ok-c") == []
        assert report.record("a").output == "boom"
        assert [t.status for t in tasks] == [TaskStatus.FAILED, TaskStatus.SUCCEEDED, TaskStatus.SKIPPED]

    def test_skip_propagates_transitively(self, fake_runner, tmp_path):
        fake_runner.responses["fail"] = CommandResult(cmd="fail", exit_code=2)
        tasks = [
            command("a", sh("a", "fail")),
            command("b", sh("b", "ok"), needs=["a"]),
            command("c", sh("c", "ok"), needs=["b"]),
        ]

        report = _run(tasks, ["c"], root=tmp_path, runner=fake_runner)

        assert report.skipped == ["b", "c"]
        # dependents name the task that actually failed
        assert report.reasons["c"] == "dependency 'a' failed"

    def test_fail_fast_stops_scheduling(self, fake_runner, tmp_path):
        fake_runner.responses["fail-a"] = CommandResult(cmd="fail-a", exit_code=1)
        tasks = [
            command("a", sh("a", "fail-a")),
            command("b", sh("b", "ok-b")),
            command("d", sh("d", "ok-d"), needs=["b"]),
        ]

        report = _run(tasks, ["a", "d"], root=tmp_path, runner=fake_runner, max_workers=1, fail_fast=True)

        assert report.statuses["a"] == TaskStatus.FAILED
        assert report.statuses["d"] == TaskStatus.SKIPPED
        assert report.reasons["d"] == "not started (fail-fast)"
        assert fake_runner.called("ok-d") == []

    def test_without_fail_fast_independent_work_continues(self, fake_runner, tmp_path):
        fake_runner.responses["fail-a"] = CommandResult(cmd="fail-a", exit_code=1)
        tasks = [
            command("a", sh("a", "fail-a")),
            command("b", sh("b", "ok-b")),
            command("d", sh("d", "ok-d"), needs=["b"]),
        ]

        report = _run(tasks, ["a", "d"], root=tmp_path, runner=fake_runner, max_workers=1)

        assert report.statuses["d"] == TaskStatus.SUCCEEDED
        assert report.exit_code == 1

    def test_unknown_unit_fails_the_task(self, fake_runner, tmp_path):
        report = _run([start("ghost")], ["ghost"], root=tmp_path, runner=fake_runner)

        assert report.statuses["ghost"] == TaskStatus.FAILED
        assert "unknown unit 'ghost'" in report.reasons["ghost"]

    def test_records_are_immutable(self, fake_runner, tmp_path):
        report = _run([command("a", sh("a", "ok"))], ["a"], root=tmp_path, runner=fake_runner)

        record = report.record("a")
        assert record.status == TaskStatus.SUCCEEDED
        assert record.duration >= 0
        with pytest.raises(dataclasses.FrozenInstanceError):
            record.status = TaskStatus.FAILED


class TestConcurrency:
    def test_independent_tasks_run_in_parallel(self, tmp_path):
        barrier = threading.Barrier(2, timeout=5)

        def runner(cmd, **kwargs):
            # both tasks must be in flight at once to pass the barrier
            barrier.wait()
            return CommandResult(cmd=cmd, exit_code=0)

        tasks = [command("x", sh("x", "x")), command("y", sh("y", "y"))]

        report = _run(tasks, ["x", "y"], root=tmp_path, runner=runner, max_workers=2)

        assert report.ok

    def test_middleware_ready_before_dependents_start(self, runtime, make_container, tmp_path):
        units = [make_container("mw"), make_container("api"), make_container("web")]
        stack = define_stack(
            "demo",
            tasks=[start("mw"), start("api", needs=["mw"]), start("web", needs=["mw"])],
            units=units,
        )

        report = run_stack(stack, ["api", "web"], root=tmp_path, runner=runtime, max_workers=4)

        assert report.ok
        events = runtime.events
        assert events.index("ready mw") < events.index("start api")
        assert events.index("ready mw") < events.index("start web")
        assert all(u.state == ServiceState.HEALTHY for u in units)

    def test_unhealthy_unit_fails_start(self, runtime, make_container, tmp_path):
        runtime.never_ready.add("mw")
        unit = make_container("mw", max_attempts=3)
        stack = define_stack("demo", tasks=[start("mw"), start("api", needs=["mw"])], units=[unit, make_container("api")])

        report = run_stack(stack, ["api"], root=tmp_path, runner=runtime)

        assert report.statuses["mw"] == TaskStatus.FAILED
        assert "not ready after 3 attempt(s)" in report.reasons["mw"]
        assert report.statuses["api"] == TaskStatus.SKIPPED
        assert unit.state == ServiceState.UNHEALTHY
        assert runtime.called("start api") == []


class TestIdempotency:
    def _stack(self, make_container):
        return define_stack(
            "demo",
            tasks=[
                setup("env", copy_if_absent(".env.example", ".env"), skip_if=[file_exists(".env")]),
                start("db", needs=["env"]),
            ],
            units=[make_container("db")],
        )

    def test_setup_twice_is_a_noop(self, runtime, make_container, tmp_path):
        (tmp_path / ".env.example").write_text("KEY=template\n")
        stack = self._stack(make_container)

        first = run_stack(stack, ["db"], root=tmp_path, runner=runtime)
        (tmp_path / ".env").write_text("KEY=edited\n")
        second = run_stack(stack, ["db"], root=tmp_path, runner=runtime)

        assert first.statuses == {"env": TaskStatus.SUCCEEDED, "db": TaskStatus.SUCCEEDED}
        assert second.statuses == {"env": TaskStatus.SKIPPED, "db": TaskStatus.SKIPPED}
        assert second.reasons["env"] == ".env already exists"
        assert second.ok
        assert len(runtime.called("start db")) == 1
        assert (tmp_path / ".env").read_text() == "KEY=edited\n"

    def test_stop_of_stopped_unit_is_skipped(self, runtime, make_container, tmp_path):
        stack = define_stack("demo", tasks=[stop("db")], units=[make_container("db")])

        report = run_stack(stack, ["stop-db"], root=tmp_path, runner=runtime)

        assert report.statuses["stop-db"] == TaskStatus.SKIPPED
        assert report.reasons["stop-db"] == "db not running"
        assert report.ok
        assert runtime.called("stop db") == []


class TestCancellation:
    def test_ctrl_c_drains_in_flight_and_stops_starting_units(self, runtime, make_container, tmp_path, monkeypatch):
        runtime.never_ready.add("slow")
        stack = define_stack(
            "demo",
            tasks=[
                start("slow"),
                command("after", sh("after", "ok"), needs=["slow"]),
                command("later", sh("later", "ok"), needs=["after"]),
            ],
            units=[make_container("slow", interval=0.05, max_attempts=1000)],
        )
        waits = []

        def interrupted_wait(*args, **kwargs):
            waits.append(args)
            if len(waits) == 1:
                raise KeyboardInterrupt
            return concurrent.futures.wait(*args, **kwargs)

        monkeypatch.setattr("stackctl.runner.wait", interrupted_wait)

        report = run_stack(stack, ["later"], root=tmp_path, runner=runtime)

        assert report.cancelled
        assert report.exit_code == 130
        assert report.statuses["slow"] == TaskStatus.FAILED
        assert report.reasons["slow"].startswith("cancelled")
        assert report.reasons["after"] == "cancelled"
        assert report.reasons["later"] == "cancelled"
        assert len(waits) >= 2
        assert runtime.called("stop slow") == ["stop slow"]
        assert runtime.called("ok") == []

    def test_cancelled_before_start(self, fake_runner, tmp_path):
        cancel = threading.Event()
        cancel.set()
        tasks = [command("a", sh("a", "ok")), command("b", sh("b", "ok"), needs=["a"])]

        report = _run(tasks, ["b"], root=tmp_path, runner=fake_runner, cancel=cancel)

        assert report.cancelled
        assert report.exit_code == 130
        assert set(report.statuses.values()) == {TaskStatus.SKIPPED}
        assert report.reasons == {"a": "cancelled", "b": "cancelled"}
        assert fake_runner.calls == []

    def test_cancel_during_readiness_stops_starting_unit(self, runtime, make_container, tmp_path):
        runtime.never_ready.add("slow")
        unit = make_container("slow", interval=0.05, max_attempts=1000)
        stack = define_stack("demo", tasks=[start("slow")], units=[unit])
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()

        try:
            report = run_stack(stack, ["slow"], root=tmp_path, runner=runtime, cancel=cancel)
        finally:
            timer.cancel()

        assert report.cancelled
        assert report.exit_code == 130
        assert report.statuses["slow"] == TaskStatus.FAILED
        assert runtime.called("stop slow") == ["stop slow"]
        assert "slow" not in runtime.running


class TestSteps:
    def test_file_steps(self, tmp_path):
        (tmp_path / "tpl").write_text("x")
        (tmp_path / "old" / "nested").mkdir(parents=True)
        (tmp_path / "stale.txt").write_text("y")
        task = command(
            "files",
            mkdir("data/conf"),
            copy_if_absent("tpl", "data/conf/out"),
            remove("old"),
            remove("stale.txt"),
            remove("never-existed"),
        )

        report = run_tasks([task], root=tmp_path)

        assert report.ok
        assert (tmp_path / "data" / "conf" / "out").read_text() == "x"
        assert not (tmp_path / "old").exists()
        assert not (tmp_path / "stale.txt").exists()
        assert "never-existed not present" in report.record("files").output

    def test_missing_template_fails(self, tmp_path):
        task = setup("env", copy_if_absent("missing.example", ".env"))

        report = run_tasks([task], root=tmp_path)

        assert report.statuses["env"] == TaskStatus.FAILED
        assert "Template not found" in report.record("env").output
        assert not (tmp_path / ".env").exists()

    def test_task_env_reaches_the_runner(self, tmp_path):
        seen = {}

        def runner(cmd, *, cwd=None, env=None, timeout=None):
            seen.update(cwd=cwd, env=env)
            return CommandResult(cmd=cmd, exit_code=0)

        (tmp_path / "api").mkdir()
        task = command("migrate", sh("migrate", "flask db upgrade"), cwd="api", env={"FLASK_APP": "app.py"})

        Executor(root=tmp_path, runner=runner).run([task])

        assert seen["cwd"] == (tmp_path / "api").resolve()
        assert seen["env"] == {"FLASK_APP": "app.py"}


class TestLoadStack:
    def test_example_stack_file(self, tmp_path):
        stack = load_stack(REPO_ROOT / "stackctl_stack.py", StackConfig(root=tmp_path))

        assert stack.name == "example"
        assert [u.name for u in stack.units] == ["redis", "app"]
        assert [t.name for t in resolve(stack.tasks, stack.targets["up"])] == ["env", "redis", "app"]

    def test_constant_stack(self, tmp_path):
        path = tmp_path / "mystack.py"
        path.write_text(
            "from stackctl.dsl import command, define_stack, sh\n"
            "STACK = define_stack('const', tasks=[command('hi', sh('hi', 'echo hi'))])\n"
        )

        assert load_stack(path, StackConfig(root=tmp_path)).name == "const"

    def test_missing_file(self, tmp_path):
        with pytest.raises(StackLoadError, match="not found"):
            load_stack(tmp_path / "nope.py", StackConfig(root=tmp_path))

    def test_not_python(self, tmp_path):
        path = tmp_path / "stack.yaml"
        path.write_text("tasks: []\n")
        with pytest.raises(StackLoadError, match=".py"):
            load_stack(path, StackConfig(root=tmp_path))

    def test_file_without_stack(self, tmp_path):
        path = tmp_path / "empty.py"
        path.write_text("X = 1\n")
        with pytest.raises(StackLoadError, match="must return/define a Stack"):
            load_stack(path, StackConfig(root=tmp_path))


def test_shared_supervisor_sees_units(runtime, make_container, tmp_path):
    unit = make_container("db")
    sup = Supervisor(root=tmp_path, runner=runtime)
    stack = define_stack("demo", tasks=[start("db")], units=[unit])

    run_stack(stack, ["db"], root=tmp_path, supervisor=sup, runner=runtime)

    assert sup.status(unit) == ServiceState.HEALTHY
