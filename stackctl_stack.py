# stackctl_stack.py
# Example custom stack: a redis container plus a local app server.
# Use it with: stackctl --stack stackctl_stack.py up
from __future__ import annotations

from stackctl.dsl import (
    command,
    container,
    copy_if_absent,
    define_stack,
    file_exists,
    http,
    process,
    setup,
    sh,
    start,
    stop,
    tcp,
)


def stack(config):
    runtime = config.container_cmd
    return define_stack(
        "example",
        units=[
            container(
                "redis",
                start=f"{runtime} run -d --rm --name example-redis -p {config.redis_port}:6379 redis:7",
                stop=f"{runtime} stop example-redis",
                status=f"{runtime} ps -q --filter name=^example-redis$",
                logs=f"{runtime} logs example-redis",
                health=tcp(config.redis_port, config.probe_host, interval=0.5, max_attempts=40),
            ),
            process(
                "app",
                f"python -m http.server {config.api_port}",
                health=http(f"http://{config.probe_host}:{config.api_port}/", interval=0.5, max_attempts=20),
            ),
        ],
        tasks=[
            # Env file - created once, never overwritten
            setup(
                "env",
                copy_if_absent(".env.example", ".env"),
                skip_if=[file_exists(".env")],
            ),
            start("redis", needs=["env"]),
            start("app", needs=["redis"]),
            stop("app"),
            stop("redis", needs=["stop-app"]),
            # Tests - pass/fail is the tool's exit code
            command("test", sh("Run pytest", "pytest -q")),
        ],
        targets={
            "setup": ["env"],
            "up": ["app"],
            "down": ["stop-redis"],
            "check": ["test"],
        },
    )
