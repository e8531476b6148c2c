"""Tests for the built-in dev and full stacks."""

import pytest

from stackctl.config import StackConfig
from stackctl.dag import resolve, resolve_levels
from stackctl.model import TaskAction
from stackctl.presets import QUALITY_TARGETS, builtin_stack


@pytest.fixture
def config(tmp_path):
    return StackConfig(root=tmp_path)


def _names(stack, target):
    return [t.name for t in resolve(stack.tasks, stack.targets[target])]


@pytest.mark.parametrize("profile", ["dev", "full"])
def test_every_target_resolves(tmp_path, profile):
    stack = builtin_stack(StackConfig(root=tmp_path, profile=profile))

    for target, names in stack.targets.items():
        assert resolve(stack.tasks, names), target
    for task in stack.tasks:
        if task.action in (TaskAction.START, TaskAction.STOP):
            stack.unit(task.unit)


def test_dev_up_waits_for_middleware(config):
    stack = builtin_stack(config)

    order = _names(stack, "up")

    assert order.index("middleware") < order.index("api")
    assert order.index("middleware") < order.index("web")
    assert order.index("middleware-env") < order.index("middleware")


def test_dev_migration_needs_running_middleware(config):
    stack = builtin_stack(config)

    assert set(stack.task("api-migrate").needs) == {"api-deps", "middleware"}
    order = _names(stack, "setup")
    assert order.index("middleware") < order.index("api-migrate")


def test_dev_clean_stops_middleware_first(config):
    stack = builtin_stack(config)

    order = _names(stack, "clean")

    assert order.index("stop-middleware") < order.index("clean-volumes")
    paths = [s.data["path"] for s in stack.task("clean-volumes").steps]
    assert "docker/volumes/db" in paths
    assert "api/storage" in paths


def test_dev_health_checks(config):
    stack = builtin_stack(config)

    assert stack.unit("middleware").health.port == config.db_port
    assert stack.unit("api").health.url == "http://127.0.0.1:5001/health"
    assert stack.unit("worker").health is None
    assert stack.unit("web").env == {"PORT": "3000"}
    assert stack.unit("middleware").health.max_attempts == config.health_attempts


def test_check_runs_quality_tools_in_parallel(config):
    stack = builtin_stack(config)

    assert resolve_levels(stack.tasks, stack.targets["check"]) == [sorted(QUALITY_TARGETS)]


def test_full_gateway_after_stack(tmp_path):
    stack = builtin_stack(StackConfig(root=tmp_path, profile="full"))

    assert _names(stack, "up") == ["middleware-env", "sandbox-conf", "stack", "gateway"]
    assert _names(stack, "down") == ["stop-gateway", "stop-stack"]
    assert "podman start dify_nginx_1" == stack.unit("gateway").start


def test_unknown_profile(tmp_path):
    with pytest.raises(ValueError, match="Unknown profile"):
        builtin_stack(StackConfig(root=tmp_path, profile="staging"))
