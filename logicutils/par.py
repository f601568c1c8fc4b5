"""Dependency-aware parallel execution of shell tasks."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence


class ParError(Exception):
    """Base class for task-graph errors."""


class CycleDetectedError(ParError):
    """The task graph contains a cycle."""

    def __init__(self, task: str) -> None:
        super().__init__(f"cycle detected involving task: {task}")
        self.task = task


class UnknownDepError(ParError):
    """A task depends on an id that no task has."""

    def __init__(self, task: str, dep: str) -> None:
        super().__init__(f"unknown dependency '{dep}' in task '{task}'")
        self.task = task
        self.dep = dep


class TaskFailedError(ParError):
    """A task finished with a non-zero exit code."""

    def __init__(self, task: str, exit_code: int) -> None:
        super().__init__(f"task '{task}' failed with exit code {exit_code}")
        self.task = task
        self.exit_code = exit_code


class InvalidLineError(ParError):
    """A task line could not be parsed."""

    def __init__(self, line: str) -> None:
        super().__init__(f"invalid task line: {line}")
        self.line = line


@dataclass
class Task:
    """A node of the task graph."""

    id: str
    deps: list[str] = field(default_factory=list)
    command: str = ""


@dataclass
class ExecOptions:
    """Options for :func:`execute_par_with`.

    ``transaction`` names a directory that is snapshotted before running and
    restored if any task fails.
    """

    parallelism: int = 1
    keep_going: bool = False
    retry: int = 0
    prefix_output: bool = False
    transaction: Path | str | None = None


@dataclass
class TaskResult:
    """Outcome of running one task."""

    id: str
    success: bool
    exit_code: int


def parse_task_line(line: str) -> Task:
    """Parse ``ID<TAB>DEPS<TAB>COMMAND``; deps are comma separated, may be empty."""
    parts = line.split("\t", 2)
    if len(parts) < 3:
        raise InvalidLineError(line)
    task_id, deps_field, command = parts
    deps = [d.strip() for d in deps_field.split(",")] if deps_field else []
    return Task(id=task_id, deps=deps, command=command)


def _kahn(tasks: Sequence[Task]) -> tuple[list[str], dict[str, int]]:
    in_degree: dict[str, int] = {}
    adjacent: dict[str, list[str]] = {}
    for task in tasks:
        in_degree.setdefault(task.id, 0)
        for dep in task.deps:
            adjacent.setdefault(dep, []).append(task.id)
            in_degree[task.id] += 1

    queue = deque(node for node, degree in in_degree.items() if degree == 0)
    order: list[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for nxt in adjacent.get(node, ()):
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)
    return order, in_degree


def validate_dag(tasks: Sequence[Task]) -> None:
    """Raise if a dependency is unknown or the graph has a cycle."""
    ids = {task.id for task in tasks}
    for task in tasks:
        for dep in task.deps:
            if dep not in ids:
                raise UnknownDepError(task.id, dep)

    order, in_degree = _kahn(tasks)
    if len(order) != len(tasks):
        in_cycle = next(
            (node for node, degree in in_degree.items() if degree > 0), "unknown"
        )
        raise CycleDetectedError(in_cycle)


def topological_order(tasks: Sequence[Task]) -> list[str]:
    """Return task ids in an order where every task follows its dependencies."""
    validate_dag(tasks)
    order, _ = _kahn(tasks)
    return order


class _DirSnapshot:
    """Copy of a directory tree that can be put back later."""

    def __init__(self, src: Path, backup: Path) -> None:
        self.src = src
        self.backup = backup

    @classmethod
    def capture(cls, src: Path) -> _DirSnapshot | None:
        if not src.exists():
            return None
        backup = Path(tempfile.gettempdir()) / (
            f"lu-par-tx-{os.getpid()}-{time.time_ns()}"
        )
        shutil.copytree(src, backup, symlinks=True)
        return cls(src, backup)

    def restore(self) -> None:
        if self.src.exists():
            shutil.rmtree(self.src)
        shutil.copytree(self.backup, self.src, symlinks=True)
        shutil.rmtree(self.backup, ignore_errors=True)

    def discard(self) -> None:
        shutil.rmtree(self.backup, ignore_errors=True)


def _run_shell(command: str) -> int:
    try:
        completed = subprocess.run(["sh", "-c", command])
    except OSError:
        return 127
    # Killed by a signal: there is no exit code, report a plain failure.
    return completed.returncode if completed.returncode >= 0 else 1


class _Scheduler:
    def __init__(self, tasks: Sequence[Task], options: ExecOptions) -> None:
        self.options = options
        self.tasks = {task.id: task for task in tasks}
        self.remaining = {task.id: len(task.deps) for task in tasks}
        self.dependents: dict[str, list[str]] = {}
        for task in tasks:
            for dep in task.deps:
                self.dependents.setdefault(dep, []).append(task.id)
        self.ready = deque(task.id for task in tasks if not task.deps)
        self.results: list[TaskResult] = []
        self.any_failed = False
        self.in_flight = 0
        self.cond = threading.Condition()

    def _stopped(self) -> bool:
        return not self.options.keep_going and self.any_failed

    def _next_task(self) -> str | None:
        with self.cond:
            while True:
                if self._stopped():
                    return None
                if self.ready:
                    self.in_flight += 1
                    return self.ready.popleft()
                if self.in_flight == 0:
                    return None
                self.cond.wait()

    def _execute(self, task: Task) -> TaskResult:
        retry = self.options.retry
        exit_code = 0
        for attempt in range(retry + 1):
            if self.options.prefix_output and attempt > 0:
                print(f"[{task.id}] retry {attempt}/{retry}", file=sys.stderr)
            exit_code = _run_shell(task.command)
            if exit_code == 0:
                return TaskResult(task.id, True, 0)
        return TaskResult(task.id, False, exit_code)

    def _finish(self, result: TaskResult) -> None:
        with self.cond:
            self.results.append(result)
            if result.success:
                for dependent in self.dependents.get(result.id, ()):
                    self.remaining[dependent] -= 1
                    if self.remaining[dependent] == 0:
                        self.ready.append(dependent)
            else:
                self.any_failed = True
            self.in_flight -= 1
            self.cond.notify_all()

    def worker(self) -> None:
        while (task_id := self._next_task()) is not None:
            self._finish(self._execute(self.tasks[task_id]))

    def run(self) -> list[TaskResult]:
        count = min(self.options.parallelism, len(self.tasks))
        threads = [threading.Thread(target=self.worker) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return self.results


def execute_par_with(
    tasks: Iterable[Task], options: ExecOptions | None = None
) -> list[TaskResult]:
    """Run tasks through ``sh -c`` in dependency order, in parallel.

    Results are listed in completion order. Without ``keep_going`` no new task
    starts once one has failed.
    """
    options = options or ExecOptions()
    tasks = list(tasks)
    snapshot = (
        _DirSnapshot.capture(Path(options.transaction))
        if options.transaction is not None
        else None
    )
    try:
        validate_dag(tasks)
    except ParError:
        if snapshot is not None:
            snapshot.discard()
        raise

    results = _Scheduler(tasks, options).run()

    if snapshot is not None:
        if any(not r.success for r in results):
            try:
                snapshot.restore()
            except OSError as exc:
                print(f"lu-par: transaction rollback failed: {exc}", file=sys.stderr)
            else:
                print("lu-par: transaction rolled back content store", file=sys.stderr)
        else:
            snapshot.discard()
    return results


def execute_par(
    tasks: Iterable[Task],
    parallelism: int,
    keep_going: bool,
    retry: int,
    prefix_output: bool,
) -> list[TaskResult]:
    """Run tasks with positional options and no transaction."""
    return execute_par_with(
        tasks,
        ExecOptions(
            parallelism=parallelism,
            keep_going=keep_going,
            retry=retry,
            prefix_output=prefix_output,
        ),
    )