"""Command line entry point for the local and cluster job queue."""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from logicutils.jobqueue import JobStatus, QueueError, SubmitArgs, create_engine

PROTOCOL_VERSION = "0.1.0"
DEFAULT_ENGINE = "local"

_EXIT_SUCCESS = 0
_EXIT_FAILURE = 1
_EXIT_ERROR = 2

_STATUS_EXIT = {
    JobStatus.DONE: _EXIT_SUCCESS,
    JobStatus.RUNNING: _EXIT_FAILURE,
    JobStatus.PENDING: _EXIT_FAILURE,
    JobStatus.FAILED: _EXIT_ERROR,
}


def _build_parser() -> argparse.ArgumentParser:
    # --engine may be given before or after the subcommand; the subcommand
    # copy only overrides the top-level value when it is actually present.
    engine_parent = argparse.ArgumentParser(add_help=False)
    engine_parent.add_argument(
        "--engine",
        default=argparse.SUPPRESS,
        help="queue engine: local, slurm, sge, pbs",
    )

    parser = argparse.ArgumentParser(
        prog="lu-queue", description="Local and cluster queue abstraction"
    )
    parser.add_argument(
        "--engine",
        default=DEFAULT_ENGINE,
        help="queue engine: local, slurm, sge, pbs",
    )
    parser.add_argument(
        "--protocol-version",
        action="store_true",
        help="print protocol version and exit",
    )
    commands = parser.add_subparsers(dest="command")

    submit = commands.add_parser(
        "submit", parents=[engine_parent], help="submit a job, print job ID to stdout"
    )
    submit.add_argument("job_command", metavar="command", help="command to execute")
    submit.add_argument("--deps", help="job dependencies (comma-separated job IDs)")
    submit.add_argument("--slots", type=int, help="number of slots/tasks")
    submit.add_argument("--mem", help="memory limit")
    submit.add_argument("--time", help="time limit")
    submit.add_argument(
        "--extra",
        action="append",
        default=[],
        help="extra engine-specific argument (repeatable)",
    )

    status = commands.add_parser("status", parents=[engine_parent], help="check job status")
    status.add_argument("job_id", help="job ID")

    wait = commands.add_parser("wait", parents=[engine_parent], help="wait for jobs to complete")
    wait.add_argument("job_ids", nargs="*", help="job IDs")

    cancel = commands.add_parser("cancel", parents=[engine_parent], help="cancel a job")
    cancel.add_argument("job_id", help="job ID")

    commands.add_parser("list", parents=[engine_parent], help="list active jobs")
    return parser


def _error(message: object) -> None:
    print(f"lu-queue: {message}", file=sys.stderr)


def _parse_deps(deps: str | None) -> list[str]:
    if deps is None:
        return []
    return [d.strip() for d in deps.split(",")]


def main(argv: Sequence[str] | None = None) -> int:
    """Run the queue command; return the process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.protocol_version:
        print(PROTOCOL_VERSION)
        return _EXIT_SUCCESS

    if args.command is None:
        parser.error("a subcommand is required")

    try:
        engine = create_engine(args.engine)
    except QueueError as exc:
        _error(exc)
        return _EXIT_ERROR

    try:
        if args.command == "submit":
            submit_args = SubmitArgs(
                slots=args.slots, mem=args.mem, time=args.time, extra=list(args.extra)
            )
            job_id = engine.submit(args.job_command, _parse_deps(args.deps), submit_args)
            print(job_id)
            return _EXIT_SUCCESS

        if args.command == "status":
            status = engine.status(args.job_id)
            print(status)
            return _STATUS_EXIT[status]

        if args.command == "wait":
            results = engine.wait(args.job_ids)
            for job_id, status in results:
                print(f"{job_id}: {status}", file=sys.stderr)
            if any(status is JobStatus.FAILED for _, status in results):
                return _EXIT_FAILURE
            return _EXIT_SUCCESS

        if args.command == "cancel":
            engine.cancel(args.job_id)
            return _EXIT_SUCCESS

        for job in engine.list():
            print(f"{job.id}\t{job.status}\t{job.command}")
        return _EXIT_SUCCESS
    except QueueError as exc:
        _error(exc)
        return _EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())