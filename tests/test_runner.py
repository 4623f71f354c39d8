from pipewright.dsl import cache, cache_restore, cache_save, checkout, docker_build, docker_push, job, remote, sh
from pipewright.interfaces import GateSession
from pipewright.model import FailureKind, JobStatus, StepKind

from conftest import SECRET


def test_steps_run_in_order_and_stop_at_first_failure(runner, workspace):
    j = job(
        "build",
        sh("first", "echo one"),
        sh("second", "echo two; exit 4"),
        sh("third", "touch third.ran"),
    )
    r = runner.run(j)

    assert r.status is JobStatus.FAILED
    assert r.failed_step == "second"
    assert r.exit_code == 4
    assert r.failure_kind is FailureKind.STEP_FAILED
    assert [s.name for s in r.steps] == ["first", "second"]
    assert "one" in r.log and "two" in r.log
    assert not (workspace / "third.ran").exists()


def test_successful_job(runner):
    r = runner.run(job("ok", sh("a", "true"), sh("b", "echo done")))
    assert r.status is JobStatus.SUCCEEDED
    assert r.succeeded
    assert r.failure_kind is None
    assert len(r.steps) == 2


def test_env_and_working_directory(runner, workspace):
    (workspace / "sub").mkdir()
    j = job(
        "env",
        sh("show", 'echo "$A-$B" > out.txt', cwd="sub", env={"B": "step"}),
        env={"A": "job", "B": "job"},
    )
    assert runner.run(j).succeeded
    assert (workspace / "sub" / "out.txt").read_text().strip() == "job-step"


def test_missing_working_directory_is_an_error(runner):
    r = runner.run(job("j", sh("x", "true", cwd="nowhere")))
    assert r.status is JobStatus.FAILED
    assert r.failure_kind is FailureKind.ERROR


def test_step_timeout_fails_the_job(runner):
    r = runner.run(job("slow", sh("sleep", "sleep 30", timeout=0.3)))
    assert r.status is JobStatus.FAILED
    assert r.failure_kind is FailureKind.TIMEOUT
    assert "timed out" in r.log


def test_default_timeout_applies(executor, cache_store, workspace, console):
    from pipewright.runner import JobRunner

    runner = JobRunner(executor, cache_store, workspace=workspace, default_timeout=0.3, console=console)
    r = runner.run(job("slow", sh("sleep", "sleep 30")))
    assert r.failure_kind is FailureKind.TIMEOUT


def test_checkout_moves_into_the_tree(runner, workspace, events):
    (workspace / "README").write_text("checked out")
    r = runner.run(job("co", checkout("main"), sh("read", "cat README")))
    assert r.succeeded
    assert "checked out" in r.log
    assert ("checkout", "main") in events.items


def test_cache_restore_miss_then_hit(runner, workspace, cache_store):
    (workspace / "Cargo.lock").write_text("v1")
    deps = cache("linux-cargo", ["target"], files=["Cargo.lock"], restore_keys=["linux-cargo-"])
    build = job(
        "build",
        cache_restore(deps),
        sh("compile", "mkdir -p target && [ -f target/out ] && echo reused || echo fresh > target/out"),
        cache_save(deps),
    )

    first = runner.run(build)
    assert first.succeeded
    assert "cache miss" in first.log
    assert len(cache_store.keys()) == 1

    # lose the build output; the cache brings it back
    (workspace / "target" / "out").unlink()
    second = runner.run(build)
    assert second.succeeded
    assert "reused" in second.log
    assert "save skipped" in second.log


def test_cache_restore_key_fallback_after_lock_change(runner, workspace, cache_store):
    (workspace / "Cargo.lock").write_text("v1")
    deps = cache("linux-cargo", ["target"], files=["Cargo.lock"], restore_keys=["linux-cargo-"])
    build = job("build", cache_restore(deps), sh("compile", "mkdir -p target && touch target/out"), cache_save(deps))
    assert runner.run(build).succeeded

    (workspace / "Cargo.lock").write_text("v2")
    (workspace / "target" / "out").unlink()
    r = runner.run(job("build", cache_restore(deps), sh("check", "test -f target/out"), cache_save(deps)))
    assert r.succeeded
    assert "partial hit" in r.log
    # the new lock file gets its own entry
    assert len(cache_store.keys()) == 2


def test_unreadable_cache_entry_is_a_miss(runner, workspace, cache_store):
    deps = cache("static", ["target"])
    cache_store.put("static", b"not a tarball")
    r = runner.run(job("build", cache_restore(deps)))
    assert r.succeeded
    assert "unreadable" in r.log


def test_docker_build_and_push(runner, fake_containers, workspace):
    session = GateSession(registry="registry.example.com")
    j = job("publish", docker_build("app:1.0"), docker_push(), deploy=True)
    r = runner.run(j, session)

    assert r.succeeded
    assert fake_containers.built == [(workspace.resolve(), "app:1.0")]
    assert fake_containers.pushed == [("app:1.0", "registry.example.com", session)]


def test_push_failure_fails_the_job(runner, fake_containers):
    fake_containers.push_ok = False
    r = runner.run(job("publish", docker_push("app:1.0"), deploy=True), GateSession(registry=None))
    assert r.status is JobStatus.FAILED
    assert r.failure_kind is FailureKind.STEP_FAILED


def test_push_without_image_is_an_error(runner):
    r = runner.run(job("publish", docker_push(), deploy=True), GateSession(registry=None))
    assert r.failure_kind is FailureKind.ERROR


def test_gated_step_without_session_is_denied(runner, fake_containers):
    r = runner.run(job("publish", docker_build("app"), docker_push(), deploy=True))
    assert r.status is JobStatus.FAILED
    assert r.failure_kind is FailureKind.GATE_DENIED
    assert r.failed_step == "docker-push"
    assert fake_containers.pushed == []


def test_remote_step_uses_gate(runner, fake_gate, events):
    session = GateSession(registry=None)
    r = runner.run(job("deploy", remote("deploy@prod", "docker compose up -d"), deploy=True), session)
    assert r.succeeded
    assert ("remote", "deploy@prod", "docker compose up -d") in events.items

    fake_gate.remote_exit = 255
    r = runner.run(job("deploy", remote("deploy@prod", "false"), deploy=True), session)
    assert r.failure_kind is FailureKind.STEP_FAILED
    assert r.exit_code == 255


def test_secrets_are_masked_in_job_log(runner):
    r = runner.run(job("leak", sh("echo", f"echo token={SECRET}; exit 1")))
    assert SECRET not in r.log
    assert "token=***" in r.log


def test_cancelled_executor_stops_before_next_step(runner, executor, workspace):
    executor.cancel()
    r = runner.run(job("j", sh("a", "touch a.ran")))
    assert r.status is JobStatus.FAILED
    assert r.failure_kind is FailureKind.CANCELLED
    assert not (workspace / "a.ran").exists()


def test_step_kinds_all_have_handlers(runner):
    assert set(runner._handlers) == set(StepKind)


def test_binary_step_output_keeps_job_and_log(runner):
    r = runner.run(job("bin", sh("emit", "printf '\\377\\376ok'; exit 0")))
    assert r.status is JobStatus.SUCCEEDED
    assert "ok" in r.log
