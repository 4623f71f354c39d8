# runner.py
from __future__ import annotations

import logging
import tarfile
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Set

from .cache import CacheStore, compute_cache_key, pack_paths, unpack_payload
from .errors import CIError, CollaboratorError, DeployGateDenied, StepFailure
from .executor import StepExecutor
from .interfaces import ContainerBuilder, DeployGate, GateSession, VersionControl
from .model import FailureKind, Job, JobStatus, RunResult, Step, StepKind, StepResult
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


@dataclass
class _JobContext:
    """Mutable state of one job while its steps run."""
    job: Job
    cwd: Path
    session: GateSession | None
    log: List[str] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    # key computed at restore time, by CacheSpec.key
    cache_keys: Dict[str, str] = field(default_factory=dict)
    exact_hits: Set[str] = field(default_factory=set)


Handler = Callable[[_JobContext, Step], StepResult]


class JobRunner:
    """
    Runs the steps of one job in order, stopping at the first failure.

    Step kinds are resolved through a dispatch table; collaborators that a
    pipeline does not use may be left as None.
    """

    def __init__(
        self,
        executor: StepExecutor,
        cache: CacheStore,
        *,
        workspace: str | Path = ".",
        vcs: VersionControl | None = None,
        containers: ContainerBuilder | None = None,
        gate: DeployGate | None = None,
        registry: str | None = None,
        default_timeout: float | None = None,
        cache_keep: int | None = None,
        console: Console | None = None,
    ):
        self.executor = executor
        self.cache = cache
        self.workspace = Path(workspace).resolve()
        self.vcs = vcs
        self.containers = containers
        self.gate = gate
        self.registry = registry
        self.default_timeout = default_timeout
        self.cache_keep = cache_keep
        self.console = console or get_console()

        self._handlers: Dict[StepKind, Handler] = {
            StepKind.CHECKOUT: self._checkout,
            StepKind.CACHE_RESTORE: self._cache_restore,
            StepKind.CACHE_SAVE: self._cache_save,
            StepKind.RUN: self._run_command,
            StepKind.DOCKER_BUILD: self._docker_build,
            StepKind.DOCKER_PUSH: self._docker_push,
            StepKind.REMOTE: self._remote,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, job: Job, session: GateSession | None = None) -> RunResult:
        self.console.print_job_start(job.name)
        start = time.monotonic()
        ctx = _JobContext(job=job, cwd=self.workspace, session=session)

        try:
            for step in job.steps:
                if self.executor.cancelled:
                    raise StepFailure(job.name, step.name, step.run or step.kind.value, -1, FailureKind.CANCELLED)

                self.console.print_step(job.name, step.name)
                ctx.log.append(f"==> {step.name}")
                res = replace(self._dispatch(ctx, step), name=step.name)
                ctx.steps.append(res)
                for out in (res.stdout, res.stderr):
                    if out.strip():
                        ctx.log.append(out.rstrip("\n"))

                if not res.ok:
                    raise StepFailure(
                        job=job.name,
                        step=step.name,
                        cmd=step.run or step.kind.value,
                        exit_code=res.exit_code,
                        failure_kind=res.failure_kind or FailureKind.STEP_FAILED,
                    )
        except StepFailure as e:
            ctx.log.append(str(e))
            logger.debug("%s", e)
            return RunResult(
                job=job.name,
                status=JobStatus.FAILED,
                duration=time.monotonic() - start,
                log=self._mask("\n".join(ctx.log)),
                failure_kind=e.failure_kind,
                failed_step=e.step,
                exit_code=e.exit_code,
                steps=tuple(ctx.steps),
            )

        return RunResult(
            job=job.name,
            status=JobStatus.SUCCEEDED,
            duration=time.monotonic() - start,
            log=self._mask("\n".join(ctx.log)),
            steps=tuple(ctx.steps),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, ctx: _JobContext, step: Step) -> StepResult:
        handler = self._handlers[step.kind]
        start = time.monotonic()
        try:
            res = handler(ctx, step)
        except DeployGateDenied as e:
            return StepResult(exit_code=-1, stderr=str(e), duration=time.monotonic() - start, failure_kind=FailureKind.GATE_DENIED)
        except (CIError, OSError) as e:
            return StepResult(exit_code=-1, stderr=str(e), duration=time.monotonic() - start, failure_kind=FailureKind.ERROR)
        if not res.duration:
            res = replace(res, duration=time.monotonic() - start)
        return res

    def _mask(self, text: str) -> str:
        return self.gate.mask(text) if self.gate is not None else text

    def _resolve_cwd(self, ctx: _JobContext, step: Step) -> Path:
        return (ctx.cwd / step.cwd).resolve() if step.cwd else ctx.cwd

    # ------------------------------------------------------------------
    # Step kinds
    # ------------------------------------------------------------------

    def _checkout(self, ctx: _JobContext, step: Step) -> StepResult:
        if self.vcs is None:
            raise CollaboratorError("vcs", "no version control collaborator configured")
        ref = str(step.data.get("ref") or "HEAD")
        path = self.vcs.checkout(ref)
        ctx.cwd = Path(path).resolve()
        return StepResult(exit_code=0, stdout=f"checked out {ref} at {ctx.cwd}")

    def _run_command(self, ctx: _JobContext, step: Step) -> StepResult:
        cwd = self._resolve_cwd(ctx, step)
        if not cwd.exists():
            raise FileNotFoundError(f"[{ctx.job.name}] step '{step.name}' cwd not found: {cwd}")

        env = dict(ctx.job.env)
        env.update(step.env)
        timeout = step.timeout if step.timeout is not None else self.default_timeout
        return self.executor.execute(step.run, timeout, cwd=cwd, env=env)

    def _cache_restore(self, ctx: _JobContext, step: Step) -> StepResult:
        spec = step.cache
        assert spec is not None  # enforced by the loader
        key = compute_cache_key(spec, ctx.cwd)
        ctx.cache_keys[spec.key] = key

        hit = self.cache.get(key, spec.restore_keys)
        if hit is None:
            self.console.print_cache(ctx.job.name, f"miss ({key})")
            return StepResult(exit_code=0, stdout=f"cache miss for {key}, building from scratch")

        try:
            files = unpack_payload(hit.payload, ctx.cwd)
        except (tarfile.TarError, EOFError, OSError, ValueError) as e:
            # a broken entry is treated like a miss
            logger.warning("[%s] cache entry %s unreadable: %s", ctx.job.name, hit.path, e)
            self.console.print_cache(ctx.job.name, f"miss (unreadable entry for {hit.matched_key})")
            return StepResult(exit_code=0, stdout=f"cache entry unreadable, building from scratch: {e}")

        if hit.exact:
            ctx.exact_hits.add(key)
        self.console.print_cache(ctx.job.name, hit.reason)
        return StepResult(exit_code=0, stdout=f"cache {hit.reason}: restored {len(files)} file(s)")

    def _cache_save(self, ctx: _JobContext, step: Step) -> StepResult:
        spec = step.cache
        assert spec is not None  # enforced by the loader
        key = ctx.cache_keys.get(spec.key) or compute_cache_key(spec, ctx.cwd)

        if key in ctx.exact_hits:
            self.console.print_cache(ctx.job.name, f"unchanged ({key}), not saving")
            return StepResult(exit_code=0, stdout=f"cache hit on {key} earlier in job, save skipped")

        payload = pack_paths(ctx.cwd, spec.paths)
        self.cache.put(key, payload)
        if self.cache_keep:
            self.cache.prune(key, keep=self.cache_keep)
        short = key[:40] + "..." if len(key) > 40 else key
        self.console.print_cache(ctx.job.name, f"saved ({short})")
        return StepResult(exit_code=0, stdout=f"cache saved under {key} ({len(payload)} bytes)")

    def _docker_build(self, ctx: _JobContext, step: Step) -> StepResult:
        containers = self._require_containers()
        context = (ctx.cwd / str(step.data.get("context", "."))).resolve()
        tag = str(step.data["tag"])
        image_id = containers.build(context, tag)
        ctx.images.append(tag)
        return StepResult(exit_code=0, stdout=f"built {tag} ({image_id})")

    def _docker_push(self, ctx: _JobContext, step: Step) -> StepResult:
        containers = self._require_containers()
        session = self._require_session(ctx)
        image = step.data.get("image") or (ctx.images[-1] if ctx.images else None)
        if not image:
            raise CollaboratorError("docker", "nothing to push: no image built in this job and no 'image' given")
        registry = step.data.get("registry", self.registry)
        ok = containers.push(str(image), registry, session)
        if not ok:
            return StepResult(exit_code=1, stderr=f"push of {image} to {registry or 'default registry'} failed", failure_kind=FailureKind.STEP_FAILED)
        return StepResult(exit_code=0, stdout=f"pushed {image} to {registry or 'default registry'}")

    def _remote(self, ctx: _JobContext, step: Step) -> StepResult:
        session = self._require_session(ctx)
        host = str(step.data["host"])
        command = str(step.data.get("command") or step.run)
        code = self.gate.remote_execute(host, command, session)
        if code != 0:
            return StepResult(exit_code=code, stderr=f"{host}: '{command}' exited {code}", failure_kind=FailureKind.STEP_FAILED)
        return StepResult(exit_code=0, stdout=f"{host}: '{command}' ok")

    def _require_containers(self) -> ContainerBuilder:
        if self.containers is None:
            raise CollaboratorError("docker", "no container build collaborator configured")
        return self.containers

    def _require_session(self, ctx: _JobContext) -> GateSession:
        if ctx.session is None or self.gate is None:
            raise DeployGateDenied(f"job '{ctx.job.name}' has no deploy gate session")
        return ctx.session

