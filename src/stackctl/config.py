"""
Configuration for stackctl.

One StackConfig object is built per invocation and passed explicitly to every
task, unit and probe; nothing reads the ambient working directory or
environment after loading.

Configuration sources (in order of precedence):
1. Explicit overrides (CLI flags)
2. Environment variables (STACKCTL_*)
3. The stack env file (stackctl.env, parsed with python-dotenv)
4. Default values

Example:
    export STACKCTL_API_PORT=5002
    stackctl up
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, field_validator

from .state import copy_if_absent

ENV_PREFIX = "STACKCTL_"
DEFAULT_ENV_FILE = "stackctl.env"


class ConfigError(ValueError):
    """Configuration could not be loaded or failed validation."""


class StackConfig(BaseModel):
    """Every knob the built-in stacks read."""

    model_config = {"extra": "ignore"}

    root: Path = Field(default_factory=Path.cwd)
    profile: str = "dev"

    # images
    registry: str = "langgenius"
    web_image: str = "dify-web"
    api_image: str = "dify-api"
    version: str = "latest"

    # tools
    compose_cmd: str = "podman-compose"
    container_cmd: str = "podman"
    web_pm: str = "pnpm"
    py_pm: str = "uv"

    # compose projects
    docker_dir: str = "docker"
    middleware_compose_file: str = "podman-compose.middleware.yaml"
    middleware_env_file: str = "middleware.env"
    middleware_project: str = "dify-middlewares-dev"
    compose_file: str = "podman-compose.yml"
    project: str = "dify"
    gateway_container: str = "dify_nginx_1"

    # local services
    api_dir: str = "api"
    web_dir: str = "web"
    api_host: str = "0.0.0.0"
    api_port: int = 5001
    web_port: int = 3000
    gateway_port: int = 15678
    db_port: int = 5432
    redis_port: int = 6379
    probe_host: str = "127.0.0.1"
    worker_queues: str = "dataset,generation,mail,ops_trace,app_deletion"

    # readiness
    health_interval: float = 1.0
    health_timeout: float = 2.0
    health_attempts: int = 60

    # executor
    max_workers: Optional[int] = None
    fail_fast: bool = False

    run_dir: str = ".stackctl"

    @field_validator("api_port", "web_port", "gateway_port", "db_port", "redis_port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("health_timeout")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("health_timeout must be > 0")
        return v

    @field_validator("health_attempts")
    @classmethod
    def _at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("health_attempts must be >= 1")
        return v

    @field_validator("profile")
    @classmethod
    def _known_profile(cls, v: str) -> str:
        return v.strip().lower()

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def web_image_ref(self) -> str:
        return f"{self.registry}/{self.web_image}:{self.version}"

    @property
    def api_image_ref(self) -> str:
        return f"{self.registry}/{self.api_image}:{self.version}"

    def path(self, *parts: str) -> Path:
        """Absolute path under the stack root."""
        return self.root.joinpath(*parts)

    @property
    def log_dir(self) -> Path:
        return self.path(self.run_dir, "logs")

    def compose(self, compose_file: str, project: str) -> str:
        """Compose invocation prefix, run from `docker_dir`."""
        return (
            f"{self.compose_cmd} -f {compose_file} "
            f"--env-file {self.middleware_env_file} -p {project}"
        )


def _from_env(environ: Mapping[str, str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            out[key[len(ENV_PREFIX):].lower()] = value
    return out


def _from_env_file(path: Path) -> Dict[str, str]:
    values = dotenv_values(path)
    out: Dict[str, str] = {}
    for key, value in values.items():
        if value is None:
            continue
        k = key[len(ENV_PREFIX):] if key.startswith(ENV_PREFIX) else key
        out[k.lower()] = value
    return out


def ensure_env_file(env_file: Path) -> bool:
    """
    Create `env_file` from `<env_file>.example` if it is missing.

    Returns True if a copy was made. Never overwrites an existing file.
    """
    template = env_file.with_name(env_file.name + ".example")
    if env_file.exists() or not template.exists():
        return False
    return copy_if_absent(template, env_file)


def load_config(
    root: str | Path | None = None,
    *,
    env_file: str | Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> StackConfig:
    """
    Build a StackConfig from defaults, the env file, STACKCTL_* variables and
    explicit overrides (None values are ignored).
    """
    root_p = Path(root or Path.cwd()).expanduser().resolve()
    env_path = Path(env_file) if env_file else root_p / DEFAULT_ENV_FILE
    if not env_path.is_absolute():
        env_path = root_p / env_path

    ensure_env_file(env_path)

    values: Dict[str, Any] = {}
    if env_path.exists():
        values.update(_from_env_file(env_path))
    values.update(_from_env(os.environ if environ is None else environ))
    values.update({k: v for k, v in overrides.items() if v is not None})
    values["root"] = root_p

    try:
        return StackConfig(**values)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            problems.append(f"{loc}: {err.get('msg')}")
        raise ConfigError("Invalid configuration: " + "; ".join(problems)) from e
