# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from .errors import ConfigurationError
from .model import CacheSpec, Job, Step, StepKind


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, kind=StepKind.RUN, run=cmd, cwd=cwd, timeout=timeout, env=dict(env or {}))


def checkout(ref: str = "HEAD", *, name: str = "checkout") -> Step:
    return Step(name=name, kind=StepKind.CHECKOUT, data={"ref": ref})


def cache(
    key: str,
    paths: Sequence[str],
    *,
    files: Sequence[str] = (),
    restore_keys: Sequence[str] = (),
) -> CacheSpec:
    """
    Cache declaration shared by cache_restore/cache_save.

    Example:
        deps = cache("cargo", ["target"], files=["Cargo.lock"], restore_keys=["cargo-"])
    """
    return CacheSpec(key=key, files=tuple(files), restore_keys=tuple(restore_keys), paths=tuple(paths))


def cache_restore(spec: CacheSpec, *, name: str = "cache-restore") -> Step:
    return Step(name=name, kind=StepKind.CACHE_RESTORE, cache=spec)


def cache_save(spec: CacheSpec, *, name: str = "cache-save") -> Step:
    return Step(name=name, kind=StepKind.CACHE_SAVE, cache=spec)


def docker_build(tag: str, *, context: str = ".", name: str = "docker-build") -> Step:
    return Step(name=name, kind=StepKind.DOCKER_BUILD, data={"context": context, "tag": tag})


def docker_push(image: str | None = None, *, registry: str | None = None, name: str = "docker-push") -> Step:
    data: Dict[str, str] = {}
    if image:
        data["image"] = image
    if registry:
        data["registry"] = registry
    return Step(name=name, kind=StepKind.DOCKER_PUSH, data=data)


def remote(host: str, command: str, *, name: str = "remote") -> Step:
    return Step(name=name, kind=StepKind.REMOTE, data={"host": host, "command": command})


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    deploy: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None or s.kind is not StepKind.RUN else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        deploy=deploy,
    )


def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper.

        from pipewright.dsl import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)
