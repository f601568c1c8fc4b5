"""Local and cluster job queues behind one interface."""

from __future__ import annotations

import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

_POLL_INTERVAL = 0.5


class QueueError(Exception):
    """Base class for queue errors."""


class UnknownEngineError(QueueError):
    """No engine exists under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown engine: {name}")
        self.name = name


class JobNotFoundError(QueueError):
    """The engine knows no job with this id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class CommandFailedError(QueueError):
    """A scheduler command exited unsuccessfully."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"engine command failed: {detail}")
        self.detail = detail


class UnsupportedError(QueueError):
    """The engine does not support the requested operation."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"unsupported operation for engine: {operation}")
        self.operation = operation


class JobStatus(Enum):
    """Lifecycle state of a job."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class JobInfo:
    """A job as reported by :meth:`QueueEngine.list`."""

    id: str
    status: JobStatus
    command: str


@dataclass
class SubmitArgs:
    """Resource requests passed along with a submitted job."""

    slots: int | None = None
    mem: str | None = None
    time: str | None = None
    extra: list[str] = field(default_factory=list)


def _run(argv: Sequence[str], stdin_text: str | None = None) -> subprocess.CompletedProcess:
    """Run a command, capturing its output as text."""
    try:
        return subprocess.run(
            list(argv),
            input=stdin_text,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise QueueError(f"IO error: {exc}") from exc


def _run_plain(argv: Sequence[str]) -> int:
    """Run a command with inherited standard streams; return its exit code."""
    try:
        return subprocess.run(list(argv)).returncode
    except OSError as exc:
        raise QueueError(f"IO error: {exc}") from exc


class QueueEngine(ABC):
    """Interface shared by all queue engines."""

    name: str = ""

    @abstractmethod
    def submit(
        self, command: str, deps: Sequence[str] = (), args: SubmitArgs | None = None
    ) -> str:
        """Submit a shell command and return its job id."""

    @abstractmethod
    def status(self, job_id: str) -> JobStatus:
        """Return the current status of a job."""

    @abstractmethod
    def wait(self, job_ids: Sequence[str]) -> list[tuple[str, JobStatus]]:
        """Block until the jobs finish; return their final statuses in order."""

    @abstractmethod
    def cancel(self, job_id: str) -> None:
        """Cancel a job."""

    @abstractmethod
    def list(self) -> list[JobInfo]:
        """Return the jobs the engine knows about."""

    def _poll_until_finished(self, job_ids: Sequence[str]) -> list[tuple[str, JobStatus]]:
        out = []
        for job_id in job_ids:
            while True:
                status = self.status(job_id)
                if status in (JobStatus.DONE, JobStatus.FAILED):
                    out.append((job_id, status))
                    break
                time.sleep(_POLL_INTERVAL)
        return out


# --- local ---------------------------------------------------------------


@dataclass
class _LocalJob:
    command: str
    thread: threading.Thread | None
    status: JobStatus = JobStatus.RUNNING


class LocalEngine(QueueEngine):
    """Runs each job through ``sh -c`` in a background thread."""

    name = "local"

    def __init__(self) -> None:
        self._next_id = 1
        self._jobs: dict[str, _LocalJob] = {}
        self._lock = threading.Lock()

    def _run_job(self, job: _LocalJob) -> None:
        try:
            code = subprocess.run(["sh", "-c", job.command]).returncode
            if code < 0:
                code = 1
        except OSError:
            code = 127
        with self._lock:
            job.status = JobStatus.DONE if code == 0 else JobStatus.FAILED

    def submit(
        self, command: str, deps: Sequence[str] = (), args: SubmitArgs | None = None
    ) -> str:
        with self._lock:
            job_id = f"local-{self._next_id}"
            self._next_id += 1
            job = _LocalJob(command=command, thread=None)
            job.thread = threading.Thread(target=self._run_job, args=(job,))
            self._jobs[job_id] = job
        job.thread.start()
        return job_id

    def status(self, job_id: str) -> JobStatus:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.status

    def wait(self, job_ids: Sequence[str]) -> list[tuple[str, JobStatus]]:
        results = []
        for job_id in job_ids:
            with self._lock:
                job = self._jobs.get(job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                thread, job.thread = job.thread, None
            if thread is not None:
                thread.join()
            results.append((job_id, self.status(job_id)))
        return results

    def cancel(self, job_id: str) -> None:
        # A running local job cannot be stopped; only its existence is checked.
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)

    def list(self) -> list[JobInfo]:
        with self._lock:
            return [
                JobInfo(id=job_id, status=job.status, command=job.command)
                for job_id, job in self._jobs.items()
            ]


# --- SLURM ---------------------------------------------------------------

_SLURM_STATES = {
    "PENDING": JobStatus.PENDING,
    "RUNNING": JobStatus.RUNNING,
    "COMPLETED": JobStatus.DONE,
}


class SlurmEngine(QueueEngine):
    """Submits jobs with ``sbatch`` and inspects them with ``squeue``."""

    name = "slurm"

    def submit(
        self, command: str, deps: Sequence[str] = (), args: SubmitArgs | None = None
    ) -> str:
        args = args or SubmitArgs()
        argv = ["sbatch", "--parsable"]
        if args.slots is not None:
            argv.append(f"--ntasks={args.slots}")
        if args.mem is not None:
            argv.append(f"--mem={args.mem}")
        if args.time is not None:
            argv.append(f"--time={args.time}")
        if deps:
            argv.append(f"--dependency=afterok:{':'.join(deps)}")
        argv.extend(args.extra)
        argv.extend(["--wrap", command])

        output = _run(argv)
        if output.returncode != 0:
            raise CommandFailedError(output.stderr)
        return output.stdout.strip()

    def status(self, job_id: str) -> JobStatus:
        output = _run(["squeue", "--job", job_id, "--noheader", "-o", "%T"])
        state = output.stdout.strip().upper()
        if not state:
            # No longer in the queue.
            return JobStatus.DONE
        return _SLURM_STATES.get(state, JobStatus.FAILED)

    def wait(self, job_ids: Sequence[str]) -> list[tuple[str, JobStatus]]:
        for job_id in job_ids:
            try:
                subprocess.run(["srun", "--dependency", f"afterany:{job_id}", "true"])
            except OSError:
                pass
        return [(job_id, self.status(job_id)) for job_id in job_ids]

    def cancel(self, job_id: str) -> None:
        if _run_plain(["scancel", job_id]) != 0:
            raise CommandFailedError("scancel failed")

    def list(self) -> list[JobInfo]:
        output = _run(["squeue", "--me", "--noheader", "-o", "%i\t%T\t%o"])
        jobs = []
        for line in output.stdout.splitlines():
            parts = line.split("\t", 2)
            if len(parts) < 3:
                continue
            status = _SLURM_STATES.get(parts[1].upper(), JobStatus.FAILED)
            jobs.append(JobInfo(id=parts[0], status=status, command=parts[2]))
        return jobs


# --- SGE -----------------------------------------------------------------

_SGE_STATUS_STATES = {
    **dict.fromkeys(("qw", "hqw", "h"), JobStatus.PENDING),
    **dict.fromkeys(("r", "t", "Rr", "Rt"), JobStatus.RUNNING),
    **dict.fromkeys(("Eqw", "E", "dr", "dRr"), JobStatus.FAILED),
}

_SGE_LIST_STATES = {
    **dict.fromkeys(("qw", "hqw"), JobStatus.PENDING),
    **dict.fromkeys(("r", "t"), JobStatus.RUNNING),
    **dict.fromkeys(("Eqw", "E"), JobStatus.FAILED),
}


def _first_token(text: str) -> str:
    tokens = text.split()
    return tokens[0] if tokens else ""


def _strip_tags(line: str, tag: str) -> str | None:
    opening = f"<{tag}>"
    if not line.startswith(opening):
        return None
    rest = line[len(opening):]
    closing = f"</{tag}>"
    while rest.endswith(closing):
        rest = rest[: -len(closing)]
    return rest


class SgeEngine(QueueEngine):
    """Submits jobs with ``qsub`` on Sun/Univa Grid Engine."""

    name = "sge"

    def submit(
        self, command: str, deps: Sequence[str] = (), args: SubmitArgs | None = None
    ) -> str:
        args = args or SubmitArgs()
        argv = ["qsub", "-terse", "-b", "y"]
        if args.slots is not None:
            argv.extend(["-pe", "smp", str(args.slots)])
        if args.mem is not None:
            argv.extend(["-l", f"h_vmem={args.mem}"])
        if args.time is not None:
            argv.extend(["-l", f"h_rt={args.time}"])
        if deps:
            argv.extend(["-hold_jid", ",".join(deps)])
        argv.extend(args.extra)
        argv.extend(["sh", "-c", command])

        output = _run(argv)
        if output.returncode != 0:
            raise CommandFailedError(output.stderr)
        job_id = output.stdout.strip()
        if not job_id:
            raise CommandFailedError("qsub returned empty job id")
        return job_id

    def _finished_status(self, job_id: str) -> JobStatus:
        try:
            acct = _run(["qacct", "-j", job_id])
        except QueueError:
            return JobStatus.DONE
        if acct.returncode != 0:
            return JobStatus.DONE
        line = next(
            (l for l in acct.stdout.splitlines() if l.startswith("exit_status")), None
        )
        if line is None:
            return JobStatus.DONE
        try:
            code = int(_first_token(line[len("exit_status"):]))
        except ValueError:
            return JobStatus.DONE
        return JobStatus.DONE if code == 0 else JobStatus.FAILED

    def status(self, job_id: str) -> JobStatus:
        output = _run(["qstat", "-j", job_id])
        if output.returncode != 0:
            return self._finished_status(job_id)
        for line in output.stdout.splitlines():
            if line.startswith("job_state"):
                state = _first_token(line[len("job_state"):])
                return _SGE_STATUS_STATES.get(state, JobStatus.PENDING)
        return JobStatus.PENDING

    def wait(self, job_ids: Sequence[str]) -> list[tuple[str, JobStatus]]:
        return self._poll_until_finished(job_ids)

    def cancel(self, job_id: str) -> None:
        if _run_plain(["qdel", job_id]) != 0:
            raise CommandFailedError("qdel failed")

    def list(self) -> list[JobInfo]:
        output = _run(["qstat", "-u", "*", "-xml"])
        jobs = []
        cur_id = cur_state = cur_cmd = ""
        for raw in output.stdout.splitlines():
            line = raw.strip()
            if (value := _strip_tags(line, "JB_job_number")) is not None:
                cur_id = value
            elif (value := _strip_tags(line, "state")) is not None:
                cur_state = value
            elif (value := _strip_tags(line, "JB_name")) is not None:
                cur_cmd = value
            elif line == "</job_list>" and cur_id:
                status = _SGE_LIST_STATES.get(cur_state, JobStatus.PENDING)
                jobs.append(JobInfo(id=cur_id, status=status, command=cur_cmd))
                cur_id = cur_state = cur_cmd = ""
        return jobs


# --- PBS -----------------------------------------------------------------

_PBS_LIST_STATES = {
    **dict.fromkeys(("Q", "H", "W"), JobStatus.PENDING),
    **dict.fromkeys(("R", "E", "T"), JobStatus.RUNNING),
    **dict.fromkeys(("F", "C"), JobStatus.DONE),
}


class PbsEngine(QueueEngine):
    """Submits jobs to PBS/Torque by writing a script to ``qsub``."""

    name = "pbs"

    def submit(
        self, command: str, deps: Sequence[str] = (), args: SubmitArgs | None = None
    ) -> str:
        args = args or SubmitArgs()
        argv = ["qsub"]
        if args.slots is not None:
            argv.extend(["-l", f"ncpus={args.slots}"])
        if args.mem is not None:
            argv.extend(["-l", f"mem={args.mem}"])
        if args.time is not None:
            argv.extend(["-l", f"walltime={args.time}"])
        if deps:
            argv.extend(["-W", f"depend=afterok:{':'.join(deps)}"])
        argv.extend(args.extra)
        argv.append("-")

        output = _run(argv, stdin_text=f"#!/bin/sh\n{command}\n")
        if output.returncode != 0:
            raise CommandFailedError(output.stderr)
        job_id = next(
            (l.strip() for l in output.stdout.splitlines() if l.strip()), None
        )
        if job_id is None:
            raise CommandFailedError("qsub returned empty job id")
        return job_id

    def status(self, job_id: str) -> JobStatus:
        output = _run(["qstat", "-f", "-x", job_id])
        if output.returncode != 0:
            return JobStatus.DONE
        state: str | None = None
        exit_code: int | None = None
        for raw in output.stdout.splitlines():
            line = raw.strip()
            if line.startswith("job_state ="):
                state = line[len("job_state ="):].strip()
            elif line.startswith("Exit_status ="):
                try:
                    exit_code = int(line[len("Exit_status ="):].strip())
                except ValueError:
                    exit_code = None
        if state in ("Q", "H", "W"):
            return JobStatus.PENDING
        if state in ("R", "E", "T"):
            return JobStatus.RUNNING
        if state in ("F", "C"):
            return JobStatus.DONE if exit_code in (0, None) else JobStatus.FAILED
        return JobStatus.PENDING

    def wait(self, job_ids: Sequence[str]) -> list[tuple[str, JobStatus]]:
        return self._poll_until_finished(job_ids)

    def cancel(self, job_id: str) -> None:
        if _run_plain(["qdel", job_id]) != 0:
            raise CommandFailedError("qdel failed")

    def list(self) -> list[JobInfo]:
        output = _run(["qstat", "-x", "-f"])
        jobs = []
        cur_id = cur_state = cur_cmd = ""

        def flush() -> None:
            status = _PBS_LIST_STATES.get(cur_state, JobStatus.PENDING)
            jobs.append(JobInfo(id=cur_id, status=status, command=cur_cmd))

        for raw in output.stdout.splitlines():
            line = raw.strip()
            if line.startswith("Job Id:"):
                if cur_id:
                    flush()
                    cur_state = cur_cmd = ""
                cur_id = line[len("Job Id:"):].strip()
            elif line.startswith("job_state ="):
                cur_state = line[len("job_state ="):].strip()
            elif line.startswith("Job_Name ="):
                cur_cmd = line[len("Job_Name ="):].strip()
        if cur_id:
            flush()
        return jobs


_ENGINES: dict[str, type[QueueEngine]] = {
    "local": LocalEngine,
    "slurm": SlurmEngine,
    "sge": SgeEngine,
    "pbs": PbsEngine,
}


def create_engine(name: str) -> QueueEngine:
    """Return a new engine for ``name``: local, slurm, sge or pbs."""
    try:
        return _ENGINES[name]()
    except KeyError:
        raise UnknownEngineError(name) from None