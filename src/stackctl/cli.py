# cli.py
from __future__ import annotations

import sys
import threading
import time
from typing import List, Optional, Tuple

import click

from stackctl.config import ConfigError, StackConfig, load_config
from stackctl.dag import CycleError, UnknownTaskError, resolve_levels
from stackctl.model import ServiceUnit, Stack, TaskAction
from stackctl.presets import PROFILES, builtin_stack
from stackctl.runner import StackLoadError, load_stack, run_stack
from stackctl.supervisor import Supervisor
from stackctl.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

# Poll interval while attached to local processes.
ATTACH_POLL_SECONDS = 0.5


def _load(ctx: click.Context) -> Tuple[StackConfig, Stack]:
    """Build config and stack once per invocation; usage errors exit 2."""
    if "stack" in ctx.obj:
        return ctx.obj["config"], ctx.obj["stack"]

    console = get_console()
    try:
        config = load_config(
            ctx.obj["root"],
            env_file=ctx.obj["env_file"],
            profile=ctx.obj["profile"],
        )
        if ctx.obj["stack_file"]:
            stack = load_stack(ctx.obj["stack_file"], config)
        else:
            stack = builtin_stack(config)
    except ConfigError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_USAGE)
    except StackLoadError as e:
        console.print_error(
            "Failed to load stack",
            str(e),
            suggestion="A stack file defines `def stack(config): return define_stack(...)`.",
        )
        sys.exit(EXIT_USAGE)
    except ValueError as e:
        console.print_error("Invalid stack", str(e))
        sys.exit(EXIT_USAGE)

    ctx.obj["config"] = config
    ctx.obj["stack"] = stack
    ctx.obj["supervisor"] = Supervisor(stack.units, root=config.root, log_dir=config.log_dir)
    return config, stack


def _targets_for(ctx: click.Context, command: str) -> List[str]:
    _config, stack = _load(ctx)
    targets = stack.targets.get(command)
    if not targets:
        get_console().print_error(
            f"'{command}' is not available",
            f"Stack '{stack.name}' defines no '{command}' target.",
            details=[f"Available: {', '.join(sorted(stack.targets)) or '(none)'}"],
        )
        sys.exit(EXIT_USAGE)
    return targets


def _unit(ctx: click.Context, name: str) -> ServiceUnit:
    _config, stack = _load(ctx)
    try:
        return stack.unit(name)
    except KeyError as e:
        get_console().print_error("Unknown unit", str(e.args[0]))
        sys.exit(EXIT_USAGE)


def _attach(supervisor: Supervisor) -> int:
    """Stay in the foreground while local processes run; Ctrl+C stops them."""
    console = get_console()
    names = [u.name for u in supervisor.running_processes()]
    console.print_info(f"\nAttached to: {', '.join(names)} (press Ctrl+C to stop)")
    try:
        while True:
            running = supervisor.running_processes()
            if len(running) < len(names):
                gone = sorted(set(names) - {u.name for u in running})
                console.print_error("Process exited", f"Stopped unexpectedly: {', '.join(gone)}")
                supervisor.stop_processes()
                return EXIT_FAILED
            time.sleep(ATTACH_POLL_SECONDS)
    except KeyboardInterrupt:
        console.print_info("\nStopping local processes...")
        for res in supervisor.stop_processes():
            console.print_debug(str(res))
        return 0


def _execute(
    ctx: click.Context,
    command: str,
    targets: List[str],
    workers: Optional[int],
    fail_fast: Optional[bool],
    attach: bool = False,
) -> None:
    console = get_console()
    config, stack = _load(ctx)
    supervisor: Supervisor = ctx.obj["supervisor"]

    try:
        levels = resolve_levels(stack.tasks, targets)
    except (UnknownTaskError, CycleError) as e:
        console.print_error("Invalid task graph", str(e))
        sys.exit(EXIT_USAGE)

    console.print_run_started(stack.name, command, sum(len(level) for level in levels))
    console.print_plan(levels)

    try:
        report = run_stack(
            stack,
            targets,
            root=config.root,
            supervisor=supervisor,
            max_workers=workers or config.max_workers,
            fail_fast=config.fail_fast if fail_fast is None else fail_fast,
            cancel=threading.Event(),
        )
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(report)

    if not report.ok:
        # never leave background processes behind a failed run
        supervisor.stop_processes()
        sys.exit(report.exit_code)

    if attach and supervisor.running_processes():
        sys.exit(_attach(supervisor))
    sys.exit(0)


def run_options(fn):
    fn = click.option(
        "--fail-fast/--no-fail-fast",
        default=None,
        help="Stop scheduling new tasks after the first failure (default: off)",
    )(fn)
    fn = click.option("--workers", default=None, type=int, help="Number of parallel workers")(fn)
    return fn


@click.group()
@click.option("--root", default=".", show_default=True, type=click.Path(file_okay=False),
              help="Project root containing docker/, api/ and web/")
@click.option("--profile", type=click.Choice(PROFILES), default=None,
              help="Built-in stack to use (default: dev, or STACKCTL_PROFILE)")
@click.option("--stack", "stack_file", default=None, help="Custom stack file (a .py defining stack(config))")
@click.option("--env-file", default=None, help="Config env file (default: <root>/stackctl.env)")
@click.option("--debug", is_flag=True, default=False,
              help="Enable debug mode (show stack traces and detailed output)")
@click.pass_context
def cli(ctx, root, profile, stack_file, env_file, debug):
    """stackctl: bring a multi-service dev stack up, down and back."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj.update(root=root, profile=profile, stack_file=stack_file, env_file=env_file, debug=debug)


@cli.command()
@run_options
@click.pass_context
def setup(ctx, workers, fail_fast):
    """Prepare env files, dependencies, middleware and migrations."""
    _execute(ctx, "setup", _targets_for(ctx, "setup"), workers, fail_fast)


@cli.command()
@run_options
@click.option("--attach/--no-attach", default=True, show_default=True,
              help="Stay attached to started local processes until Ctrl+C")
@click.pass_context
def up(ctx, workers, fail_fast, attach):
    """Start the stack and wait until it is ready."""
    _execute(ctx, "up", _targets_for(ctx, "up"), workers, fail_fast, attach=attach)


@cli.command()
@run_options
@click.pass_context
def down(ctx, workers, fail_fast):
    """Stop the stack."""
    _execute(ctx, "down", _targets_for(ctx, "down"), workers, fail_fast)


@cli.command()
@run_options
@click.pass_context
def restart(ctx, workers, fail_fast):
    """Stop and start the container units again."""
    _execute(ctx, "restart", _targets_for(ctx, "restart"), workers, fail_fast)


@cli.command()
@run_options
@click.pass_context
def clean(ctx, workers, fail_fast):
    """Stop the stack and delete its data volumes."""
    _execute(ctx, "clean", _targets_for(ctx, "clean"), workers, fail_fast)


@cli.command()
@run_options
@click.pass_context
def pull(ctx, workers, fail_fast):
    """Pull the latest images."""
    _execute(ctx, "pull", _targets_for(ctx, "pull"), workers, fail_fast)


@cli.command()
@run_options
@click.pass_context
def check(ctx, workers, fail_fast):
    """Run the code-quality tools and report pass/fail."""
    _execute(ctx, "check", _targets_for(ctx, "check"), workers, fail_fast)


@cli.command("run")
@click.argument("service")
@run_options
@click.option("--attach/--no-attach", default=True, show_default=True,
              help="Stay attached to the started process until Ctrl+C")
@click.pass_context
def run_service(ctx, service, workers, fail_fast, attach):
    """Start one service (and what it needs)."""
    _config, stack = _load(ctx)
    unit = _unit(ctx, service)
    starts = [t for t in stack.tasks if t.action == TaskAction.START and t.unit == unit.name]
    if not starts:
        get_console().print_error("Nothing to run", f"No start task for unit '{unit.name}'.")
        sys.exit(EXIT_USAGE)
    # prefer the task named after the unit over restart variants
    task = next((t for t in starts if t.name == unit.name), starts[0])
    _execute(ctx, f"run {service}", [task.name], workers, fail_fast, attach=attach)


@cli.command()
@click.pass_context
def status(ctx):
    """Show the state of every unit."""
    _config, stack = _load(ctx)
    supervisor: Supervisor = ctx.obj["supervisor"]
    rows = [(u.name, u.kind.value, supervisor.status(u).value) for u in stack.units]
    get_console().print_status(rows)


@cli.command()
@click.argument("units", nargs=-1)
@click.option("--follow/--no-follow", "-f", default=True, show_default=True, help="Keep streaming new lines")
@click.pass_context
def logs(ctx, units, follow):
    """Show logs of one or more units (default: all)."""
    console = get_console()
    _config, stack = _load(ctx)
    supervisor: Supervisor = ctx.obj["supervisor"]
    selected = [_unit(ctx, name) for name in units] if units else list(stack.units)
    prefix = len(selected) > 1

    def pump(unit: ServiceUnit) -> None:
        for line in supervisor.logs(unit, follow=follow):
            console.print_log_line(unit.name, line, prefix=prefix)

    try:
        if not follow or len(selected) == 1:
            for unit in selected:
                pump(unit)
            return
        threads = [threading.Thread(target=pump, args=(u,), daemon=True) for u in selected]
        for t in threads:
            t.start()
        while any(t.is_alive() for t in threads):
            time.sleep(ATTACH_POLL_SECONDS)
    except KeyboardInterrupt:
        sys.exit(0)


@cli.command()
@click.argument("targets", nargs=-1, required=True)
@click.pass_context
def plan(ctx, targets):
    """Print the stages a command or task would run, without running them."""
    console = get_console()
    _config, stack = _load(ctx)
    names: List[str] = []
    for t in targets:
        names.extend(stack.targets.get(t, [t]))
    try:
        levels = resolve_levels(stack.tasks, names)
    except (UnknownTaskError, CycleError) as e:
        console.print_error("Invalid task graph", str(e))
        sys.exit(EXIT_USAGE)
    console.print_plan(levels)
    for level in levels:
        for name in level:
            task = stack.task(name)
            if task.description:
                console.print_info(f"  {name}: {task.description}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
