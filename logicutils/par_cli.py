"""Command line entry point for the dependency-aware parallel executor."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Sequence

from logicutils.par import ExecOptions, ParError, Task, execute_par_with, parse_task_line, topological_order

PROTOCOL_VERSION = "0.1.0"
DEFAULT_STORE = ".lu-store"

_EXIT_SUCCESS = 0
_EXIT_FAILURE = 1
_EXIT_ERROR = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lu-par", description="Dependency-aware parallel executor"
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=os.cpu_count() or 1,
        help="number of parallel jobs (default: number of CPUs)",
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="continue executing independent tasks after a failure",
    )
    parser.add_argument(
        "--retry", type=int, default=0, help="number of retries for failed tasks"
    )
    parser.add_argument(
        "--taskfile", type=Path, help="read tasks from file instead of stdin"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="print execution order without running",
    )
    parser.add_argument(
        "--prefix", action="store_true", help="prefix each task's output with its ID"
    )
    parser.add_argument(
        "--progress", action="store_true", help="print progress to stderr"
    )
    parser.add_argument(
        "--transaction",
        nargs="?",
        const=DEFAULT_STORE,
        default=None,
        type=Path,
        help="snapshot this content-store path and restore it on any failure",
    )
    parser.add_argument(
        "--protocol-version",
        action="store_true",
        help="print protocol version and exit",
    )
    return parser


def _error(message: str) -> None:
    print(f"lu-par: {message}", file=sys.stderr)


def _read_lines(taskfile: Path | None) -> list[str]:
    if taskfile is not None:
        return taskfile.read_text().splitlines()
    return sys.stdin.read().splitlines()


def _parse_tasks(lines: Sequence[str]) -> list[Task]:
    tasks = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        tasks.append(parse_task_line(line))
    return tasks


def main(argv: Sequence[str] | None = None) -> int:
    """Run the executor; return the process exit code."""
    args = _build_parser().parse_args(argv)

    if args.protocol_version:
        print(PROTOCOL_VERSION)
        return _EXIT_SUCCESS

    try:
        lines = _read_lines(args.taskfile)
    except OSError as exc:
        _error(f"cannot read {args.taskfile}: {exc}")
        return _EXIT_ERROR

    try:
        tasks = _parse_tasks(lines)
    except ParError as exc:
        _error(str(exc))
        return _EXIT_ERROR

    if not tasks:
        return _EXIT_SUCCESS

    if args.dry_run:
        try:
            order = topological_order(tasks)
        except ParError as exc:
            _error(str(exc))
            return _EXIT_ERROR
        for task_id in order:
            print(task_id)
        return _EXIT_SUCCESS

    if args.progress:
        _error(f"executing {len(tasks)} tasks with {args.jobs} jobs")

    options = ExecOptions(
        parallelism=args.jobs,
        keep_going=args.keep_going,
        retry=args.retry,
        prefix_output=args.prefix,
        transaction=args.transaction,
    )
    try:
        results = execute_par_with(tasks, options)
    except (ParError, OSError) as exc:
        _error(str(exc))
        return _EXIT_ERROR

    failed = [r for r in results if not r.success]
    if args.progress:
        _error(f"{len(results) - len(failed)}/{len(results)} tasks succeeded")
    if not failed:
        return _EXIT_SUCCESS
    for result in failed:
        _error(f"task '{result.id}' failed (exit {result.exit_code})")
    return _EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())