import subprocess
from unittest import mock

import pytest

from logicutils import jobqueue
from logicutils.jobqueue import (
    CommandFailedError,
    JobInfo,
    JobNotFoundError,
    JobStatus,
    LocalEngine,
    PbsEngine,
    SgeEngine,
    SlurmEngine,
    SubmitArgs,
    UnknownEngineError,
    create_engine,
)


def _completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class _FakeRun:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        return self.responses.pop(0)


def _patched(fake):
    return mock.patch.object(jobqueue.subprocess, "run", side_effect=fake)


# --- local engine, cases from the source ---


def test_local_submit_and_wait():
    engine = LocalEngine()
    job_id = engine.submit("true", [], SubmitArgs())
    assert job_id.startswith("local-")
    results = engine.wait([job_id])
    assert len(results) == 1
    assert results[0][1] == JobStatus.DONE


def test_local_submit_failure():
    engine = LocalEngine()
    job_id = engine.submit("false", [], SubmitArgs())
    results = engine.wait([job_id])
    assert results[0][1] == JobStatus.FAILED


def test_local_list():
    engine = LocalEngine()
    job_id = engine.submit("sleep 0.01", [], SubmitArgs())
    jobs = engine.list()
    assert any(j.id == job_id and j.command == "sleep 0.01" for j in jobs)
    engine.wait([job_id])


def test_local_status_not_found():
    engine = LocalEngine()
    with pytest.raises(JobNotFoundError):
        engine.status("nonexistent")


def test_create_engine():
    engine = create_engine("local")
    assert engine.name == "local"
    with pytest.raises(UnknownEngineError):
        create_engine("nonexistent")


# --- local engine, further behaviour ---


def test_local_ids_increase():
    engine = LocalEngine()
    first = engine.submit("true")
    second = engine.submit("true")
    assert (first, second) == ("local-1", "local-2")
    assert [s for _, s in engine.wait([first, second])] == [JobStatus.DONE] * 2


def test_local_wait_unknown():
    engine = LocalEngine()
    with pytest.raises(JobNotFoundError):
        engine.wait(["local-9"])


def test_local_cancel():
    engine = LocalEngine()
    job_id = engine.submit("true")
    engine.wait([job_id])
    engine.cancel(job_id)
    assert engine.status(job_id) == JobStatus.DONE
    with pytest.raises(JobNotFoundError):
        engine.cancel("missing")


def test_local_wait_twice_keeps_status():
    engine = LocalEngine()
    job_id = engine.submit("exit 3")
    assert engine.wait([job_id]) == [(job_id, JobStatus.FAILED)]
    assert engine.wait([job_id]) == [(job_id, JobStatus.FAILED)]


def test_status_display():
    engine = LocalEngine()
    job_id = engine.submit("true")
    engine.wait([job_id])
    assert str(engine.status(job_id)) == "done"
    with _patched(_FakeRun(_completed("PENDING\n"))):
        assert f"{SlurmEngine().status('1')}" == "pending"


@pytest.mark.parametrize("name", ["local", "slurm", "sge", "pbs"])
def test_create_engine_names(name):
    assert create_engine(name).name == name


def test_unknown_engine_message():
    with pytest.raises(UnknownEngineError, match="unknown engine: lsf"):
        create_engine("lsf")


# --- SLURM ---


def test_slurm_submit_builds_arguments():
    fake = _FakeRun(_completed("4242\n"))
    with _patched(fake):
        job_id = SlurmEngine().submit(
            "echo hi",
            ["1", "2"],
            SubmitArgs(slots=4, mem="2G", time="01:00", extra=["--qos=low"]),
        )
    assert job_id == "4242"
    assert fake.calls[0][0] == [
        "sbatch",
        "--parsable",
        "--ntasks=4",
        "--mem=2G",
        "--time=01:00",
        "--dependency=afterok:1:2",
        "--qos=low",
        "--wrap",
        "echo hi",
    ]


def test_slurm_submit_failure():
    fake = _FakeRun(_completed(returncode=1, stderr="bad partition"))
    with _patched(fake), pytest.raises(CommandFailedError, match="bad partition"):
        SlurmEngine().submit("true")


@pytest.mark.parametrize(
    "output, expected",
    [
        ("PENDING\n", JobStatus.PENDING),
        ("running\n", JobStatus.RUNNING),
        ("COMPLETED\n", JobStatus.DONE),
        ("", JobStatus.DONE),
        ("CANCELLED\n", JobStatus.FAILED),
    ],
)
def test_slurm_status(output, expected):
    with _patched(_FakeRun(_completed(output))):
        assert SlurmEngine().status("7") == expected


def test_slurm_list():
    out = "11\tRUNNING\tjob one\n12\tPENDING\tjob two\nbroken\n"
    with _patched(_FakeRun(_completed(out))):
        jobs = SlurmEngine().list()
    assert jobs == [
        JobInfo("11", JobStatus.RUNNING, "job one"),
        JobInfo("12", JobStatus.PENDING, "job two"),
    ]


def test_slurm_cancel_failure():
    with _patched(_FakeRun(_completed(returncode=1))):
        with pytest.raises(CommandFailedError, match="scancel failed"):
            SlurmEngine().cancel("5")


# --- SGE ---


def test_sge_submit_builds_arguments():
    fake = _FakeRun(_completed("99\n"))
    with _patched(fake):
        job_id = SgeEngine().submit("make", ["1", "2"], SubmitArgs(slots=2, mem="1G"))
    assert job_id == "99"
    assert fake.calls[0][0] == [
        "qsub", "-terse", "-b", "y", "-pe", "smp", "2", "-l", "h_vmem=1G",
        "-hold_jid", "1,2", "sh", "-c", "make",
    ]


def test_sge_submit_empty_id():
    with _patched(_FakeRun(_completed("  \n"))):
        with pytest.raises(CommandFailedError, match="empty job id"):
            SgeEngine().submit("true")


def test_sge_status_running():
    out = "job_number: 5\njob_state r\n"
    with _patched(_FakeRun(_completed(out))):
        assert SgeEngine().status("5") == JobStatus.RUNNING


@pytest.mark.parametrize(
    "acct, expected",
    [
        ("jobname x\nexit_status   0\n", JobStatus.DONE),
        ("exit_status   137\n", JobStatus.FAILED),
        ("jobname x\n", JobStatus.DONE),
    ],
)
def test_sge_status_from_accounting(acct, expected):
    fake = _FakeRun(_completed(returncode=1), _completed(acct))
    with _patched(fake):
        assert SgeEngine().status("5") == expected
    assert fake.calls[1][0] == ["qacct", "-j", "5"]


def test_sge_list():
    xml = """<job_info>
  <queue_info>
    <job_list state="running">
      <JB_job_number>101</JB_job_number>
      <JB_name>align</JB_name>
      <state>r</state>
    </job_list>
    <job_list state="pending">
      <JB_job_number>102</JB_job_number>
      <JB_name>sort</JB_name>
      <state>qw</state>
    </job_list>
  </queue_info>
</job_info>
"""
    with _patched(_FakeRun(_completed(xml))):
        jobs = SgeEngine().list()
    assert jobs == [
        JobInfo("101", JobStatus.RUNNING, "align"),
        JobInfo("102", JobStatus.PENDING, "sort"),
    ]


def test_sge_wait_polls_until_finished():
    fake = _FakeRun(
        _completed("job_state qw\n"),
        _completed(returncode=1),
        _completed(returncode=1),
    )
    with _patched(fake), mock.patch.object(jobqueue.time, "sleep") as sleep:
        results = SgeEngine().wait(["8"])
    assert results == [("8", JobStatus.DONE)]
    assert sleep.call_count == 1


# --- PBS ---


def test_pbs_submit_writes_script():
    fake = _FakeRun(_completed("\n123.server\n"))
    with _patched(fake):
        job_id = PbsEngine().submit("echo hi", ["1"], SubmitArgs(time="10:00"))
    assert job_id == "123.server"
    argv, kwargs = fake.calls[0]
    assert argv == ["qsub", "-l", "walltime=10:00", "-W", "depend=afterok:1", "-"]
    assert kwargs["input"] == "#!/bin/sh\necho hi\n"


@pytest.mark.parametrize(
    "out, expected",
    [
        ("    job_state = Q\n", JobStatus.PENDING),
        ("    job_state = R\n", JobStatus.RUNNING),
        ("    job_state = F\n    Exit_status = 0\n", JobStatus.DONE),
        ("    job_state = F\n    Exit_status = 2\n", JobStatus.FAILED),
        ("    job_state = C\n", JobStatus.DONE),
        ("nothing here\n", JobStatus.PENDING),
    ],
)
def test_pbs_status(out, expected):
    with _patched(_FakeRun(_completed(out))):
        assert PbsEngine().status("3") == expected


def test_pbs_status_unknown_job_is_done():
    with _patched(_FakeRun(_completed(returncode=153))):
        assert PbsEngine().status("3") == JobStatus.DONE


def test_pbs_list():
    out = (
        "Job Id: 1.srv\n    Job_Name = first\n    job_state = R\n\n"
        "Job Id: 2.srv\n    Job_Name = second\n    job_state = F\n\n"
        "Job Id: 3.srv\n    Job_Name = third\n"
    )
    with _patched(_FakeRun(_completed(out))):
        jobs = PbsEngine().list()
    assert jobs == [
        JobInfo("1.srv", JobStatus.RUNNING, "first"),
        JobInfo("2.srv", JobStatus.DONE, "second"),
        JobInfo("3.srv", JobStatus.PENDING, "third"),
    ]