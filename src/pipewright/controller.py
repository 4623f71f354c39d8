# controller.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .cache import CacheStore
from .config import DeploySecrets, Settings
from .dag import plan
from .errors import ConfigurationError, DeployGateDenied
from .executor import StepExecutor
from .git_facts.git import GitCheckout
from .interfaces import ContainerBuilder, DeployGate, GateSession, VersionControl
from .loader import load_pipeline, validate_definition
from .model import FailureKind, Job, JobStatus, PipelineDefinition, PipelineStatus, RunResult
from .runner import JobRunner
from .scheduler import Scheduler
from .step_workflows.deploy import SSHDeployGate
from .step_workflows.docker import DockerCLI
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SCHEDULING = "scheduling"
    RUNNING = "running"
    COMPLETED_SUCCESS = "completed-success"
    COMPLETED_FAILURE = "completed-failure"


_STATE_FLOW = {
    RunState.IDLE: {RunState.LOADING},
    RunState.LOADING: {RunState.SCHEDULING, RunState.COMPLETED_FAILURE},
    # dry runs complete straight from scheduling
    RunState.SCHEDULING: {RunState.RUNNING, RunState.COMPLETED_SUCCESS, RunState.COMPLETED_FAILURE},
    RunState.RUNNING: {RunState.COMPLETED_SUCCESS, RunState.COMPLETED_FAILURE},
}


@dataclass(frozen=True)
class PipelineResult:
    status: PipelineStatus
    results: Tuple[RunResult, ...]  # completion order
    duration: float = 0.0
    dry_run: bool = False
    plan: Tuple[Tuple[str, ...], ...] = ()

    @property
    def exit_code(self) -> int:
        return 0 if self.status is PipelineStatus.SUCCESS else 1

    @property
    def by_job(self) -> Dict[str, RunResult]:
        return {r.job: r for r in self.results}


def overall_status(results: Iterable[RunResult], deploy_jobs: Iterable[str] = ()) -> PipelineStatus:
    """
    Failure if any job failed, or a deploy job was skipped; else Success.
    Order-independent.
    """
    deploy = set(deploy_jobs)
    for r in results:
        if r.status is JobStatus.FAILED:
            return PipelineStatus.FAILURE
        if r.status is JobStatus.SKIPPED and r.job in deploy:
            return PipelineStatus.FAILURE
    return PipelineStatus.SUCCESS


class PipelineController:
    """
    Top-level entry: load -> schedule build jobs -> gate -> deploy jobs.

    One controller drives exactly one run; create a new instance for the next.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        executor: StepExecutor | None = None,
        cache: CacheStore | None = None,
        vcs: VersionControl | None = None,
        containers: ContainerBuilder | None = None,
        gate: DeployGate | None = None,
        secrets: DeploySecrets | None = None,
        console: Console | None = None,
    ):
        self.settings = settings or Settings()
        self.console = console or get_console()

        secrets = secrets if secrets is not None else (None if gate is not None else DeploySecrets())
        mask = gate.mask if gate is not None else secrets.mask
        self.executor = executor or StepExecutor(mask=mask)
        self.gate: DeployGate = gate or SSHDeployGate(secrets, self.executor)
        self.containers: ContainerBuilder = containers or DockerCLI(self.executor)
        self._cache = cache
        self._vcs = vcs

        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()

        self._gate_lock = threading.Lock()
        self._session: GateSession | None = None
        self._gate_error: DeployGateDenied | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    def _set_state(self, new: RunState) -> None:
        with self._state_lock:
            if new not in _STATE_FLOW.get(self._state, set()):
                raise RuntimeError(
                    f"cannot go from {self._state.value} to {new.value}; a controller runs one pipeline"
                )
            logger.debug("run state %s -> %s", self._state.value, new.value)
            self._state = new

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, path: str | Path) -> PipelineDefinition:
        self._set_state(RunState.LOADING)
        try:
            return load_pipeline(path)
        except ConfigurationError:
            self._set_state(RunState.COMPLETED_FAILURE)
            raise

    def abort(self) -> None:
        """Stop dispatching, terminate in-flight steps; unfinished jobs end Failed/cancelled."""
        logger.info("abort requested")
        self._cancel.set()
        self.executor.cancel()

    def run_pipeline(
        self,
        definition: PipelineDefinition,
        *,
        max_parallel: int | None = None,
        dry_run: bool = False,
    ) -> PipelineResult:
        if self._state is RunState.IDLE:
            self._set_state(RunState.LOADING)
            try:
                validate_definition(definition)
            except ConfigurationError:
                self._set_state(RunState.COMPLETED_FAILURE)
                raise
        elif self._state is not RunState.LOADING:
            raise RuntimeError(f"controller already used (state={self._state.value}); create a new one")

        self._set_state(RunState.SCHEDULING)
        try:
            build_names = [j.name for j in definition.build_jobs]
            stages = plan(definition.build_jobs)
            stages += plan(definition.deploy_jobs, satisfied=build_names) if definition.deploy_jobs else []
        except ConfigurationError:
            self._set_state(RunState.COMPLETED_FAILURE)
            raise

        self.console.print_run_started(
            pipeline=definition.name,
            source=str(definition.source or "<in-memory>"),
            job_count=len(definition.jobs),
        )
        plan_t = tuple(tuple(s) for s in stages)

        if dry_run:
            self.console.print_plan(stages)
            self._set_state(RunState.COMPLETED_SUCCESS)
            return PipelineResult(status=PipelineStatus.SUCCESS, results=(), dry_run=True, plan=plan_t)

        self._set_state(RunState.RUNNING)
        start = time.monotonic()
        try:
            results = self._execute(definition, max_parallel or self.settings.max_parallel)
        except BaseException:
            self._set_state(RunState.COMPLETED_FAILURE)
            raise

        status = overall_status(results, (j.name for j in definition.deploy_jobs))
        self._set_state(
            RunState.COMPLETED_SUCCESS if status is PipelineStatus.SUCCESS else RunState.COMPLETED_FAILURE
        )
        duration = time.monotonic() - start
        self.console.print_results(results, status.value, duration)
        return PipelineResult(status=status, results=tuple(results), duration=duration, plan=plan_t)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _make_runner(self, definition: PipelineDefinition) -> JobRunner:
        s = self.settings
        cache = self._cache or CacheStore(s.cache_dir)
        vcs = self._vcs or GitCheckout(s.workspace, repository=definition.repository, work_dir=s.work_dir)
        return JobRunner(
            self.executor,
            cache,
            workspace=s.workspace,
            vcs=vcs,
            containers=self.containers,
            gate=self.gate,
            registry=definition.registry,
            default_timeout=s.default_timeout,
            cache_keep=s.cache_keep,
            console=self.console,
        )

    def _collect(self, stream: Iterable[RunResult], into: List[RunResult]) -> None:
        for r in stream:
            into.append(r)
            self.console.print_job_finished(r)

    def _execute(self, definition: PipelineDefinition, max_parallel: Optional[int]) -> List[RunResult]:
        runner = self._make_runner(definition)
        results: List[RunResult] = []

        build = Scheduler(max_parallel, cancel_event=self._cancel)
        self._collect(build.schedule(definition.build_jobs, runner.run), results)

        deploy_jobs = definition.deploy_jobs
        if not deploy_jobs:
            return results

        if overall_status(results) is not PipelineStatus.SUCCESS or self._cancel.is_set():
            for j in deploy_jobs:
                r = RunResult(job=j.name, status=JobStatus.SKIPPED, log="build jobs did not all succeed")
                results.append(r)
                self.console.print_job_finished(r)
            return results

        succeeded: Set[str] = {r.job for r in results if r.succeeded}
        deploy = Scheduler(max_parallel, cancel_event=self._cancel)
        try:
            self._collect(
                deploy.schedule(deploy_jobs, lambda job: self._run_gated(runner, job, definition), satisfied=succeeded),
                results,
            )
        finally:
            if self._session is not None:
                self.gate.close(self._session)
                self._session = None
        return results

    def _run_gated(self, runner: JobRunner, job: Job, definition: PipelineDefinition) -> RunResult:
        # authenticate once, on the first deploy job to be dispatched
        with self._gate_lock:
            if self._session is None and self._gate_error is None:
                try:
                    self._session = self.gate.authenticate(definition.registry)
                except DeployGateDenied as e:
                    self._gate_error = e
                    self.console.print_error("Deploy gate denied", str(e))

        if self._gate_error is not None:
            return RunResult(
                job=job.name,
                status=JobStatus.FAILED,
                log=str(self._gate_error),
                failure_kind=FailureKind.GATE_DENIED,
            )
        return runner.run(job, self._session)
