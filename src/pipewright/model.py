# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


class StepKind(str, Enum):
    """Built-in step kinds resolved by the job runner's dispatch table."""
    CHECKOUT = "checkout"
    CACHE_RESTORE = "cache-restore"
    CACHE_SAVE = "cache-save"
    RUN = "run"
    DOCKER_BUILD = "docker-build"
    DOCKER_PUSH = "docker-push"
    REMOTE = "remote"


# steps that need a deploy gate session
GATED_KINDS = frozenset({StepKind.DOCKER_PUSH, StepKind.REMOTE})


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class FailureKind(str, Enum):
    STEP_FAILED = "step-failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    GATE_DENIED = "gate-denied"
    ERROR = "error"


class PipelineStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CacheSpec:
    """
    Cache declaration for cache-restore / cache-save steps.

    key:          static prefix, e.g. "linux-cargo"
    files:        globs hashed into the key (lock files)
    restore_keys: prefixes tried in order on an exact miss
    paths:        files/dirs archived on save and extracted on restore
    """
    key: str
    files: Tuple[str, ...] = ()
    restore_keys: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Step:
    """A single action inside a CI job."""
    name: str
    kind: StepKind = StepKind.RUN
    run: str = ""
    cwd: str | None = None
    timeout: float | None = None
    cache: CacheSpec | None = None
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    data: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Job:
    """A CI job: ordered steps plus the jobs it needs."""
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    deploy: bool = False


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[Job, ...]
    registry: Optional[str] = None
    repository: Optional[str] = None
    source: Optional[Path] = None

    @property
    def names(self) -> list[str]:
        return [j.name for j in self.jobs]

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def deploy_jobs(self) -> list[Job]:
        return [j for j in self.jobs if j.deploy]

    @property
    def build_jobs(self) -> list[Job]:
        return [j for j in self.jobs if not j.deploy]


@dataclass(frozen=True)
class StepResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    failure_kind: FailureKind | None = None
    name: str = ""

    @property
    def ok(self) -> bool:
        return self.failure_kind is None and self.exit_code == 0


@dataclass(frozen=True)
class RunResult:
    """Outcome of one job. Created when the job reaches a terminal status."""
    job: str
    status: JobStatus
    duration: float = 0.0
    log: str = ""
    failure_kind: FailureKind | None = None
    failed_step: str | None = None
    exit_code: int | None = None
    steps: Tuple[StepResult, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED
