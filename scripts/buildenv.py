"""
Shared helpers for provisioning build containers.

Provides the console, timing collector, task registry, typed command runner
and the retry executor used by the build-environment scripts in this
directory.
"""

from __future__ import annotations

import enum
import os
import shlex
import subprocess
import sys
import time
import typing as t

from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType

DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 15.0

# Exit status reported for commands that could not be started at all
COMMAND_NOT_STARTED = 127

# ---------------------------------------------------------------------------
# Console and timings
# ---------------------------------------------------------------------------


class Console:
    """Writes progress and diagnostics to stderr, never to stdout."""

    def __init__(self, *, verbose: bool = True, stream: t.TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    def info(self, message: str) -> None:
        if self.verbose:
            self._emit(message)

    def always(self, message: str) -> None:
        self._emit(message)

    def _emit(self, message: str) -> None:
        # Resolved per call so redirected stderr is honoured
        print(message, file=self._stream or sys.stderr, flush=True)


@dataclass(slots=True)
class TimingsCollector:
    entries: list[tuple[str, float]] = field(default_factory=list)

    def add(self, label: str, duration: float) -> None:
        self.entries.append((label, duration))

    @property
    def total(self) -> float:
        return sum(duration for _, duration in self.entries)

    def summary(self) -> list[str]:
        if not self.entries:
            return []
        width = max(len(label) for label, _ in self.entries)
        lines = [f"  {label:<{width}}  {duration:8.2f}s" for label, duration in self.entries]
        lines.append(f"  {'total':<{width}}  {self.total:8.2f}s")
        return lines


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProvisioningError(RuntimeError):
    """A provisioning step could not complete."""

    exit_code: int = 1


@dataclass(slots=True, frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandFailedError(ProvisioningError):
    def __init__(self, label: str, result: CommandResult) -> None:
        super().__init__(f"{label} failed with exit code {result.exit_code}")
        self.label = label
        self.result = result
        self.exit_code = result.exit_code or 1


class RetriesExhaustedError(ProvisioningError):
    def __init__(self, label: str, attempts: int, result: CommandResult) -> None:
        super().__init__(
            f"{label} failed after {attempts} attempts "
            f"(last exit code {result.exit_code})"
        )
        self.label = label
        self.attempts = attempts
        self.result = result
        self.exit_code = result.exit_code or 1


# ---------------------------------------------------------------------------
# Commands and environment
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Command:
    """An argument vector plus the options used to run it. Never shell-evaluated."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    capture_output: bool = False

    def __post_init__(self) -> None:
        argv = tuple(str(part) for part in self.argv)
        if not argv:
            raise ValueError("Command requires at least one argument")
        object.__setattr__(self, "argv", argv)

    @classmethod
    def of(
        cls,
        *argv: str | os.PathLike[str],
        cwd: Path | None = None,
        capture_output: bool = False,
    ) -> Command:
        return cls(tuple(str(part) for part in argv), cwd=cwd, capture_output=capture_output)

    @property
    def program(self) -> str:
        return self.argv[0]

    def display(self) -> str:
        return shlex.join(self.argv)


def _join_search_path(entries: t.Iterable[str], inherited: str | None) -> str:
    parts = list(entries)
    if inherited:
        parts.append(inherited)
    return os.pathsep.join(parts)


@dataclass(slots=True, frozen=True)
class BuildEnvironment:
    """Immutable process environment handed to every provisioning step.

    ``base`` is a snapshot of the environment the script started with;
    ``variables`` are the exports layered on top. ``PATH`` and
    ``LD_LIBRARY_PATH`` are rendered from the prefix entries in front of
    whatever the base environment already holds.
    """

    base: t.Mapping[str, str] = field(default_factory=dict)
    variables: t.Mapping[str, str] = field(default_factory=dict)
    path_entries: tuple[str, ...] = ()
    library_entries: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", MappingProxyType(dict(self.base)))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @classmethod
    def capture(
        cls,
        environ: t.Mapping[str, str] | None = None,
        **variables: str,
    ) -> BuildEnvironment:
        source = os.environ if environ is None else environ
        return cls(base=dict(source), variables=variables)

    def with_variables(self, **updates: str) -> BuildEnvironment:
        merged = {**self.variables, **updates}
        return replace(self, variables=merged)

    def prepend_path(self, *entries: str | os.PathLike[str]) -> BuildEnvironment:
        added = tuple(str(entry) for entry in entries)
        return replace(self, path_entries=added + self.path_entries)

    def prepend_library_path(self, *entries: str | os.PathLike[str]) -> BuildEnvironment:
        added = tuple(str(entry) for entry in entries)
        return replace(self, library_entries=added + self.library_entries)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.as_environ().get(name, default)

    @property
    def search_path(self) -> str:
        return self.as_environ().get("PATH", "")

    def as_environ(self) -> dict[str, str]:
        environ = dict(self.base)
        environ.update(self.variables)
        if self.path_entries:
            environ["PATH"] = _join_search_path(self.path_entries, environ.get("PATH"))
        if self.library_entries:
            environ["LD_LIBRARY_PATH"] = _join_search_path(
                self.library_entries, environ.get("LD_LIBRARY_PATH")
            )
        return environ


# ---------------------------------------------------------------------------
# Retry executor
# ---------------------------------------------------------------------------


class RetryOutcome(enum.Enum):
    SUCCESS = "success"
    EXHAUSTED_RETRIES = "exhausted-retries"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    delay: float = DEFAULT_RETRY_DELAY

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must not be negative, got {self.delay}")


def run_with_retry(
    attempt: t.Callable[[], bool],
    *,
    description: str,
    policy: RetryPolicy | None = None,
    console: Console | None = None,
    sleep: t.Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Invoke ``attempt`` until it reports success or the policy runs out.

    ``attempt`` returns True on success. Every failure is reported with its
    attempt index; the delay is only slept between attempts. A failed command
    is reported through the returned outcome, not an exception.
    """
    policy = policy or RetryPolicy()
    console = console or Console()

    for index in range(1, policy.max_attempts + 1):
        console.always(f"executing with retry: {description}")
        if attempt():
            return RetryOutcome.SUCCESS
        console.always(f"execute '{description}' failed, tries: {index}")
        if index < policy.max_attempts:
            sleep(policy.delay)

    console.always(f"execute '{description}' failed")
    return RetryOutcome.EXHAUSTED_RETRIES


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


class CommandRunner:
    """Runs typed commands against an explicit build environment."""

    def __init__(
        self,
        console: Console,
        *,
        policy: RetryPolicy | None = None,
        sleep: t.Callable[[float], None] = time.sleep,
    ) -> None:
        self.console = console
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def execute(self, command: Command, env: BuildEnvironment) -> CommandResult:
        """Invoke ``command`` once and report how it exited."""
        try:
            completed = subprocess.run(
                list(command.argv),
                cwd=str(command.cwd) if command.cwd is not None else None,
                env=env.as_environ(),
                stdout=subprocess.PIPE if command.capture_output else None,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            self.console.always(f"[{command.program}] unable to start: {exc}")
            return CommandResult(exit_code=COMMAND_NOT_STARTED, stderr=str(exc))

        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def run(self, label: str, command: Command, env: BuildEnvironment) -> CommandResult:
        self.console.info(f"[{label}] {command.display()}")
        result = self.execute(command, env)
        if not result.ok:
            raise CommandFailedError(label, result)
        return result

    def retry(self, label: str, command: Command, env: BuildEnvironment) -> CommandResult:
        results: list[CommandResult] = []

        def attempt() -> bool:
            result = self.execute(command, env)
            results.append(result)
            return result.ok

        outcome = run_with_retry(
            attempt,
            description=command.display(),
            policy=self.policy,
            console=self.console,
            sleep=self.sleep,
        )
        if outcome is RetryOutcome.EXHAUSTED_RETRIES:
            raise RetriesExhaustedError(label, len(results), results[-1])
        return results[-1]


# ---------------------------------------------------------------------------
# Task registry
# ---------------------------------------------------------------------------


TaskFunc = t.Callable[[t.Any, BuildEnvironment], "BuildEnvironment | None"]


@dataclass(slots=True, frozen=True)
class TaskDefinition:
    name: str
    func: TaskFunc
    dependencies: tuple[str, ...] = ()
    description: str = ""


class TaskRegistry:
    def __init__(self) -> None:
        self._tasks: dict[str, TaskDefinition] = {}

    def task(
        self,
        *,
        name: str,
        deps: t.Sequence[str] = (),
        description: str = "",
    ) -> t.Callable[[TaskFunc], TaskFunc]:
        def decorator(func: TaskFunc) -> TaskFunc:
            if name in self._tasks:
                raise ValueError(f"Task {name!r} is already registered")
            self._tasks[name] = TaskDefinition(
                name=name,
                func=func,
                dependencies=tuple(deps),
                description=description,
            )
            return func

        return decorator

    @property
    def tasks(self) -> dict[str, TaskDefinition]:
        return dict(self._tasks)

    def layers(self) -> list[list[TaskDefinition]]:
        """Group tasks into dependency layers, keeping registration order."""
        remaining = self.tasks
        for task in remaining.values():
            missing = [dep for dep in task.dependencies if dep not in remaining]
            if missing:
                raise RuntimeError(
                    f"Task {task.name} depends on unknown task(s): {', '.join(missing)}"
                )

        completed: set[str] = set()
        layers: list[list[TaskDefinition]] = []
        while remaining:
            ready = [
                task
                for task in remaining.values()
                if all(dep in completed for dep in task.dependencies)
            ]
            if not ready:
                unresolved = ", ".join(remaining)
                raise RuntimeError(f"Dependency cycle detected: {unresolved}")
            layers.append(ready)
            for task in ready:
                completed.add(task.name)
                remaining.pop(task.name)
        return layers

    def order(self) -> list[TaskDefinition]:
        return [task for layer in self.layers() for task in layer]


def format_dependency_graph(registry: TaskRegistry) -> str:
    lines: list[str] = []
    for task in registry.order():
        line = task.name
        if task.dependencies:
            line += f" <- {', '.join(task.dependencies)}"
        if task.description:
            line += f"  # {task.description}"
        lines.append(line)
    return "\n".join(lines)


def run_task_graph(
    registry: TaskRegistry,
    ctx: t.Any,
    env: BuildEnvironment,
) -> BuildEnvironment:
    """Run every task one at a time, threading the environment through.

    ``ctx`` must expose ``console`` and ``timings``.
    """
    for task in registry.order():
        ctx.console.info(f"-> starting task {task.name}")
        start = time.perf_counter()
        updated = task.func(ctx, env)
        if updated is not None:
            env = updated
        duration = time.perf_counter() - start
        ctx.timings.add(f"task:{task.name}", duration)
        ctx.console.info(f"[OK] {task.name} completed in {duration:.2f}s")
    return env
