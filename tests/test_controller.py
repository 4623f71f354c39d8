import threading
import time

import pytest

from pipewright.controller import PipelineController, RunState, overall_status
from pipewright.dsl import checkout, docker_build, docker_push, job, remote, sh
from pipewright.errors import ConfigurationError
from pipewright.model import FailureKind, JobStatus, PipelineDefinition, PipelineStatus, RunResult

from conftest import FakeGate


def _pipeline(*jobs, registry="registry.example.com"):
    return PipelineDefinition(name="demo", jobs=tuple(jobs), registry=registry)


def _rust_service(test_cmd="touch tested"):
    return _pipeline(
        job("build", checkout(), sh("compile", "touch built")),
        job("test", sh("unit", test_cmd), needs=["build"]),
        job(
            "publish",
            docker_build("app:latest"),
            docker_push(),
            remote("deploy@prod", "docker compose up -d"),
            needs=["test"],
            deploy=True,
        ),
    )


def test_successful_pipeline_pushes_after_build_jobs(make_controller, workspace, events, fake_gate):
    c = make_controller()
    result = c.run_pipeline(_rust_service())

    assert result.status is PipelineStatus.SUCCESS
    assert result.exit_code == 0
    assert c.state is RunState.COMPLETED_SUCCESS
    assert [r.job for r in result.results] == ["build", "test", "publish"]
    assert all(r.status is JobStatus.SUCCEEDED for r in result.results)
    assert (workspace / "built").exists() and (workspace / "tested").exists()

    names = events.names()
    assert names.index("authenticate") < names.index("push") < names.index("remote")
    assert names.count("authenticate") == 1
    # the session is released once deploy jobs are done
    assert fake_gate.closed == fake_gate.sessions


def test_failing_test_skips_deploy(make_controller, events):
    c = make_controller()
    result = c.run_pipeline(_rust_service(test_cmd="exit 1"))

    by_job = result.by_job
    assert by_job["build"].status is JobStatus.SUCCEEDED
    assert by_job["test"].status is JobStatus.FAILED
    assert by_job["publish"].status is JobStatus.SKIPPED
    assert result.status is PipelineStatus.FAILURE
    assert result.exit_code == 1
    assert c.state is RunState.COMPLETED_FAILURE
    assert "authenticate" not in events.names()
    assert "push" not in events.names()


def test_gate_denied_fails_deploy_jobs(make_controller, events, fake_containers):
    gate = FakeGate(events, deny=True)
    c = make_controller(gate=gate)
    result = c.run_pipeline(_rust_service())

    by_job = result.by_job
    assert by_job["build"].status is JobStatus.SUCCEEDED
    assert by_job["test"].status is JobStatus.SUCCEEDED
    assert by_job["publish"].status is JobStatus.FAILED
    assert by_job["publish"].failure_kind is FailureKind.GATE_DENIED
    assert result.status is PipelineStatus.FAILURE
    assert fake_containers.built == []
    assert fake_containers.pushed == []


def test_gate_denial_skips_later_deploy_jobs(make_controller, events):
    gate = FakeGate(events, deny=True)
    c = make_controller(gate=gate)
    definition = _pipeline(
        job("build", sh("compile", "true")),
        job("push", docker_push("app:1"), needs=["build"], deploy=True),
        job("roll", remote("prod", "restart"), needs=["push"], deploy=True),
    )
    by_job = c.run_pipeline(definition).by_job
    assert by_job["push"].failure_kind is FailureKind.GATE_DENIED
    assert by_job["roll"].status is JobStatus.SKIPPED
    assert events.names().count("authenticate") == 1


def test_cycle_fails_before_any_step_runs(make_controller, workspace):
    c = make_controller()
    definition = _pipeline(
        job("a", sh("mark", "touch a.ran"), needs=["b"]),
        job("b", sh("mark", "touch b.ran"), needs=["a"]),
    )
    with pytest.raises(ConfigurationError, match="cycle"):
        c.run_pipeline(definition)
    assert c.state is RunState.COMPLETED_FAILURE
    assert list(workspace.iterdir()) == []


def test_dry_run_prints_plan_without_running(make_controller, workspace, events, console):
    c = make_controller()
    result = c.run_pipeline(_rust_service(), dry_run=True)

    assert result.dry_run
    assert result.status is PipelineStatus.SUCCESS
    assert result.results == ()
    assert result.plan == (("build",), ("test",), ("publish",))
    assert events.items == []
    assert list(workspace.iterdir()) == []
    assert "stage 1: build" in console._stream.getvalue()


def test_controller_runs_a_single_pipeline(make_controller):
    c = make_controller()
    definition = _pipeline(job("a", sh("x", "true")))
    c.run_pipeline(definition)
    with pytest.raises(RuntimeError):
        c.run_pipeline(definition)


def test_load_then_run(make_controller, tmp_path):
    p = tmp_path / "pipeline.yml"
    p.write_text("jobs:\n  hello:\n    steps:\n      - run: echo hello\n")
    c = make_controller()
    definition = c.load(p)
    assert c.state is RunState.LOADING
    result = c.run_pipeline(definition)
    assert result.status is PipelineStatus.SUCCESS
    assert "hello" in result.results[0].log


def test_load_error_completes_with_failure(make_controller, tmp_path):
    c = make_controller()
    with pytest.raises(ConfigurationError):
        c.load(tmp_path / "missing.yml")
    assert c.state is RunState.COMPLETED_FAILURE


def test_abort_cancels_in_flight_jobs(make_controller):
    c = make_controller()
    definition = _pipeline(
        job("slow", sh("wait", "sleep 30")),
        job("after", sh("x", "true"), needs=["slow"]),
    )
    threading.Timer(0.3, c.abort).start()
    start = time.monotonic()
    result = c.run_pipeline(definition)

    assert time.monotonic() - start < 10
    by_job = result.by_job
    assert by_job["slow"].status is JobStatus.FAILED
    assert by_job["slow"].failure_kind is FailureKind.CANCELLED
    assert by_job["after"].status is JobStatus.SKIPPED
    assert result.status is PipelineStatus.FAILURE


def test_independent_build_jobs_share_the_run(make_controller):
    c = make_controller()
    definition = _pipeline(
        job("lint", sh("x", "true")),
        job("build", sh("x", "true")),
        job("test", sh("x", "false"), needs=["build"]),
    )
    by_job = c.run_pipeline(definition, max_parallel=2).by_job
    assert by_job["lint"].status is JobStatus.SUCCEEDED
    assert by_job["test"].status is JobStatus.FAILED


def test_overall_status_is_order_independent():
    ok = RunResult(job="a", status=JobStatus.SUCCEEDED)
    bad = RunResult(job="b", status=JobStatus.FAILED)
    skipped_deploy = RunResult(job="d", status=JobStatus.SKIPPED)

    assert overall_status([ok]) is PipelineStatus.SUCCESS
    assert overall_status([ok, bad]) is overall_status([bad, ok]) is PipelineStatus.FAILURE
    assert overall_status([ok, skipped_deploy], ["d"]) is PipelineStatus.FAILURE
    assert overall_status([ok, skipped_deploy]) is PipelineStatus.SUCCESS


def test_default_collaborators_are_built_from_settings(tmp_path):
    from pipewright.config import DeploySecrets, Settings

    secrets = DeploySecrets(docker_password="hunter2hunter2")
    c = PipelineController(Settings(workspace=str(tmp_path)), secrets=secrets)
    assert c.executor.execute("echo hunter2hunter2").stdout == "***\n"
