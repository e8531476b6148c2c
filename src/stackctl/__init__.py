from .dsl import command, container, copy_if_absent, define_stack, process, setup, sh, start, stop
from .model import HealthCheck, ServiceUnit, Stack, Step, Task
from .runner import run_stack, run_tasks

__all__ = [
    "command",
    "container",
    "copy_if_absent",
    "define_stack",
    "process",
    "setup",
    "sh",
    "start",
    "stop",
    "HealthCheck",
    "ServiceUnit",
    "Stack",
    "Step",
    "Task",
    "run_stack",
    "run_tasks",
]
