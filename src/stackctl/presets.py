# presets.py
# Built-in stacks for the multi-service app layout:
#   docker/  compose files + middleware.env(.example)
#   api/     Python API server and worker (uv)
#   web/     web frontend (pnpm)
#
# "dev"  : middleware containers + local api/worker/web processes
# "full" : the whole app from published images, fronted by the gateway container
from __future__ import annotations

from typing import Dict, List

from .config import StackConfig
from .dsl import (
    command,
    container,
    copy_if_absent,
    define_stack,
    exec_check,
    file_exists,
    http,
    mkdir,
    process,
    remove,
    setup,
    sh,
    start,
    stop,
    tcp,
)
from .model import ServiceUnit, Stack, Task

PROFILES = ("dev", "full")

# Data directories removed by `clean`, relative to docker_dir.
VOLUME_DIRS = ["volumes/db", "volumes/redis", "volumes/plugin_daemon", "volumes/weaviate"]


def _timing(config: StackConfig) -> Dict[str, float]:
    return {
        "interval": config.health_interval,
        "timeout": config.health_timeout,
        "max_attempts": config.health_attempts,
    }


def _env_tasks(config: StackConfig) -> List[Task]:
    mw_env = f"{config.docker_dir}/{config.middleware_env_file}"
    web_env = f"{config.web_dir}/.env"
    api_env = f"{config.api_dir}/.env"
    return [
        setup(
            "middleware-env",
            copy_if_absent(f"{mw_env}.example", mw_env),
            skip_if=[file_exists(mw_env)],
            description="create middleware env file from template",
        ),
        setup(
            "web-env",
            copy_if_absent(f"{web_env}.example", web_env),
            skip_if=[file_exists(web_env)],
            description="create web env file from template",
        ),
        setup(
            "api-env",
            copy_if_absent(f"{api_env}.example", api_env),
            skip_if=[file_exists(api_env)],
            description="create api env file from template",
        ),
    ]


def quality_tasks(config: StackConfig) -> List[Task]:
    """Code-quality pass-throughs; each passes when its tool exits 0."""
    uv = config.py_pm
    api = config.api_dir
    return [
        command("format-check", sh("ruff format --check", f"{uv} run --project {api} --dev ruff format --check ./{api}")),
        command("lint", sh("ruff check", f"{uv} run --project {api} --dev ruff check ./{api}")),
        command("import-lint", sh("lint-imports", f"{uv} run --directory {api} --dev lint-imports")),
        command(
            "dotenv-lint",
            sh(
                "dotenv-linter",
                f"{uv} run --project {api} --dev dotenv-linter "
                f"./{api}/.env.example ./{config.web_dir}/.env.example",
            ),
        ),
        command("type-check", sh("basedpyright", f"{uv} run --directory {api} --dev basedpyright")),
        command("unit-test", sh("pytest", f"{uv} run --project {api} --dev dev/pytest/pytest_unit_tests.sh")),
    ]


QUALITY_TARGETS = ["format-check", "lint", "import-lint", "dotenv-lint", "type-check", "unit-test"]


# ----------------------------------------------------------------------
# dev profile
# ----------------------------------------------------------------------

def dev_units(config: StackConfig) -> List[ServiceUnit]:
    compose = config.compose(config.middleware_compose_file, config.middleware_project)
    timing = _timing(config)
    return [
        container(
            "middleware",
            start=f"{compose} up -d",
            stop=f"{compose} down",
            status=f"{compose} ps -q",
            logs=f"{compose} logs",
            cwd=config.docker_dir,
            health=tcp(config.db_port, config.probe_host, **timing),
        ),
        process(
            "api",
            f"{config.py_pm} run flask run --host {config.api_host} --port {config.api_port}",
            cwd=config.api_dir,
            health=http(f"http://{config.probe_host}:{config.api_port}/health", **timing),
        ),
        process(
            "worker",
            f"{config.py_pm} run celery -A app.celery worker -P gevent -c 1 "
            f"--loglevel INFO -Q {config.worker_queues}",
            cwd=config.api_dir,
        ),
        process(
            "web",
            f"{config.web_pm} dev",
            cwd=config.web_dir,
            env={"PORT": str(config.web_port)},
            health=tcp(config.web_port, config.probe_host, **timing),
        ),
    ]


def dev_stack(config: StackConfig) -> Stack:
    tasks: List[Task] = _env_tasks(config)
    tasks += [
        start("middleware", needs=["middleware-env"]),
        setup(
            "web-deps",
            sh("install web dependencies", f"{config.web_pm} install"),
            needs=["web-env"],
            cwd=config.web_dir,
        ),
        setup(
            "api-deps",
            sh("sync api environment", f"{config.py_pm} sync --dev"),
            needs=["api-env"],
            cwd=config.api_dir,
        ),
        setup(
            "api-migrate",
            sh("migrate database", f"{config.py_pm} run flask db upgrade"),
            needs=["api-deps", "middleware"],
            cwd=config.api_dir,
        ),
        start("api", needs=["middleware", "api-env"]),
        start("worker", needs=["middleware", "api-env"]),
        start("web", needs=["middleware", "web-env"]),
        stop("api"),
        stop("worker"),
        stop("web"),
        stop("middleware"),
        start("middleware", name="restart-middleware", needs=["stop-middleware"]),
        command(
            "clean-volumes",
            *[remove(f"{config.docker_dir}/{path}") for path in VOLUME_DIRS],
            remove(f"{config.api_dir}/storage"),
            needs=["stop-middleware"],
            description="remove middleware data volumes",
        ),
    ]
    tasks += quality_tasks(config)

    targets = {
        "setup": ["middleware-env", "middleware", "web-env", "web-deps", "api-env", "api-deps", "api-migrate"],
        "up": ["api", "web"],
        "down": ["stop-api", "stop-worker", "stop-web", "stop-middleware"],
        "restart": ["restart-middleware"],
        "clean": ["stop-api", "stop-worker", "stop-web", "clean-volumes"],
        "check": list(QUALITY_TARGETS),
    }
    return define_stack("dev", tasks=tasks, units=dev_units(config), targets=targets)


# ----------------------------------------------------------------------
# full profile
# ----------------------------------------------------------------------

def full_units(config: StackConfig) -> List[ServiceUnit]:
    compose = config.compose(config.compose_file, config.project)
    runtime = config.container_cmd
    name = config.gateway_container
    timing = _timing(config)
    return [
        container(
            "stack",
            start=f"{compose} up -d",
            stop=f"{compose} down",
            status=f"{compose} ps -q",
            logs=f"{compose} logs",
            cwd=config.docker_dir,
            health=exec_check(f"{compose} ps -q | grep -q .", **timing),
        ),
        container(
            "gateway",
            start=f"{runtime} start {name}",
            stop=f"{runtime} stop {name}",
            status=f"{runtime} ps -q --filter name=^{name}$",
            logs=f"{runtime} logs {name}",
            health=http(f"http://{config.probe_host}:{config.gateway_port}/", **timing),
        ),
    ]


def full_stack(config: StackConfig) -> Stack:
    compose = config.compose(config.compose_file, config.project)
    conf_dir = f"{config.docker_dir}/.docker-data/sandbox/conf"
    tasks: List[Task] = [
        _env_tasks(config)[0],
        setup(
            "sandbox-conf",
            mkdir(conf_dir),
            copy_if_absent(f"{config.docker_dir}/volumes/sandbox/conf/config.yaml", f"{conf_dir}/config.yaml"),
            skip_if=[file_exists(f"{conf_dir}/config.yaml")],
            description="seed sandbox configuration",
        ),
        start("stack", needs=["middleware-env", "sandbox-conf"]),
        start("gateway", needs=["stack"]),
        stop("gateway"),
        stop("stack", needs=["stop-gateway"]),
        start("stack", name="restart-stack", needs=["stop-stack"]),
        start("gateway", name="restart-gateway", needs=["restart-stack"]),
        command(
            "pull",
            sh("pull images", f"{compose} pull", cwd=config.docker_dir),
            needs=["middleware-env"],
        ),
    ]
    tasks += quality_tasks(config)

    targets = {
        "setup": ["middleware-env", "sandbox-conf"],
        "up": ["gateway"],
        "down": ["stop-gateway", "stop-stack"],
        "restart": ["restart-gateway"],
        "pull": ["pull"],
        "check": list(QUALITY_TARGETS),
    }
    return define_stack("full", tasks=tasks, units=full_units(config), targets=targets)


def builtin_stack(config: StackConfig) -> Stack:
    if config.profile == "dev":
        return dev_stack(config)
    if config.profile == "full":
        return full_stack(config)
    raise ValueError(f"Unknown profile {config.profile!r}. Known profiles: {list(PROFILES)}")
