# loader.py
"""
Pipeline definition loading.

A definition is read from YAML/JSON (validated with pydantic) or from a
Python workflow file built with pipewright.dsl, then checked as a whole
(needs, cycles, deploy rules) before anything may run.
"""
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml  # PyYAML
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, ValidationError, field_validator, model_validator

from .dag import plan
from .errors import ConfigurationError
from .model import GATED_KINDS, CacheSpec, Job, PipelineDefinition, Step, StepKind

# GitHub action references accepted as aliases of built-in step kinds
ACTION_ALIASES = {
    "actions/checkout": StepKind.CHECKOUT,
    "actions/cache": StepKind.CACHE_RESTORE,
    "actions/cache/restore": StepKind.CACHE_RESTORE,
    "actions/cache/save": StepKind.CACHE_SAVE,
}

_USES_KINDS = {k.value: k for k in StepKind if k is not StepKind.RUN}


def resolve_uses(uses: str) -> StepKind:
    """Map a `uses:` value to a StepKind (built-in name or action alias, version pinned or not)."""
    name = uses.strip()
    if name in _USES_KINDS:
        return _USES_KINDS[name]
    base = name.split("@", 1)[0]
    if base in ACTION_ALIASES:
        return ACTION_ALIASES[base]
    known = sorted(_USES_KINDS) + sorted(ACTION_ALIASES)
    raise ValueError(f"unknown step kind {uses!r}; known: {', '.join(known)}")


# ---------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------

def _stringify(v):
    # YAML turns 1 and true into int/bool; env values are always strings
    if isinstance(v, dict):
        return {str(k): str(val) for k, val in v.items()}
    return v


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CacheModel(_Strict):
    key: str = Field(min_length=1)
    files: List[str] = Field(default_factory=list)
    restore_keys: List[str] = Field(default_factory=list, alias="restore-keys")
    paths: List[str] = Field(default_factory=list)


class StepModel(_Strict):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    cwd: Optional[str] = Field(default=None, alias="working-directory")
    timeout: Optional[PositiveFloat] = None
    env: Dict[str, str] = Field(default_factory=dict)
    cache: Optional[CacheModel] = None

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v):
        return _stringify(v)

    @model_validator(mode="after")
    def check_kind(self):
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and not self.run.strip():
            raise ValueError("'run' must not be empty")
        kind = self.kind
        if kind in (StepKind.CACHE_RESTORE, StepKind.CACHE_SAVE):
            if self.cache is None:
                raise ValueError(f"'{kind.value}' steps need a 'cache' block")
            if not self.cache.paths:
                raise ValueError("cache block needs at least one entry in 'paths'")
        if kind is StepKind.DOCKER_BUILD and not self.with_.get("tag"):
            raise ValueError("'docker-build' steps need with.tag")
        if kind is StepKind.REMOTE:
            if not self.with_.get("host"):
                raise ValueError("'remote' steps need with.host")
            if not self.with_.get("command"):
                raise ValueError("'remote' steps need with.command")
        return self

    @property
    def kind(self) -> StepKind:
        return StepKind.RUN if self.uses is None else resolve_uses(self.uses)


class JobModel(_Strict):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    steps: List[StepModel] = Field(min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    deploy: bool = False

    @field_validator("needs", mode="before")
    @classmethod
    def needs_as_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, v):
        return _stringify(v)


class PipelineModel(_Strict):
    name: Optional[str] = None
    registry: Optional[str] = None
    repository: Optional[str] = None
    jobs: Dict[str, JobModel] = Field(min_length=1)


# ---------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------

def _to_step(index: int, m: StepModel) -> Step:
    kind = m.kind
    cache = None
    if m.cache is not None:
        cache = CacheSpec(
            key=m.cache.key,
            files=tuple(m.cache.files),
            restore_keys=tuple(m.cache.restore_keys),
            paths=tuple(m.cache.paths),
        )
    name = m.name or (m.run.splitlines()[0].strip() if m.run else kind.value) or f"step-{index + 1}"
    return Step(
        name=name,
        kind=kind,
        run=m.run or "",
        cwd=m.cwd,
        timeout=m.timeout,
        cache=cache,
        env=dict(m.env),
        data=dict(m.with_),
    )


def _to_definition(model: PipelineModel, *, default_name: str, source: Path | None) -> PipelineDefinition:
    jobs = []
    for key, jm in model.jobs.items():
        jobs.append(
            Job(
                name=jm.name or key,
                steps=tuple(_to_step(i, s) for i, s in enumerate(jm.steps)),
                needs=tuple(dict.fromkeys(jm.needs)),
                env=dict(jm.env),
                deploy=jm.deploy,
            )
        )
    return PipelineDefinition(
        name=model.name or default_name,
        jobs=tuple(jobs),
        registry=model.registry,
        repository=model.repository,
        source=source,
    )


def _format_validation_error(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        lines.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return lines


def parse_definition(
    data: Dict[str, Any],
    *,
    default_name: str = "pipeline",
    source: Path | None = None,
) -> PipelineDefinition:
    """Validate a parsed document and return the definition (fully checked)."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"definition root must be a mapping, got {type(data).__name__}")
    try:
        model = PipelineModel.model_validate(data)
    except ValidationError as e:
        problems = _format_validation_error(e)
        raise ConfigurationError(
            f"invalid pipeline definition ({len(problems)} problem(s))",
            problems=problems,
        ) from e
    return validate_definition(_to_definition(model, default_name=default_name, source=source))


# ---------------------------------------------------------------------
# Whole-definition checks
# ---------------------------------------------------------------------

def validate_definition(definition: PipelineDefinition) -> PipelineDefinition:
    """
    Checks that need the whole definition:
      - unique names, known needs, no cycles
      - gated steps (docker-push, remote) only in deploy jobs
      - build jobs never need deploy jobs
    """
    if not definition.jobs:
        raise ConfigurationError("pipeline has no jobs")

    deploy_names = {j.name for j in definition.deploy_jobs}
    for j in definition.jobs:
        if not j.steps:
            raise ConfigurationError(f"Job '{j.name}' has no steps", job=j.name)
        for s in j.steps:
            if s.kind in GATED_KINDS and not j.deploy:
                raise ConfigurationError(
                    f"'{s.kind.value}' steps are only allowed in deploy jobs",
                    job=j.name,
                    step=s.name,
                )
            if s.kind in (StepKind.CACHE_RESTORE, StepKind.CACHE_SAVE) and s.cache is None:
                raise ConfigurationError(f"'{s.kind.value}' step has no cache spec", job=j.name, step=s.name)
        if not j.deploy:
            bad = sorted(set(j.needs) & deploy_names)
            if bad:
                raise ConfigurationError(f"build job needs deploy job(s) {bad}", job=j.name)

    plan(definition.jobs)  # unknown needs, duplicates and cycles
    return definition


# ---------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------

def _read_document(path: Path) -> Any:
    suffix = path.suffix.lower()
    try:
        with path.open("r", encoding="utf-8") as f:
            if suffix in {".yaml", ".yml"}:
                return yaml.safe_load(f)
            return json.load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path.name}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid JSON in {path.name}: {e}") from e


def load_workflow(path: Path) -> List[Job]:
    """
    Load jobs from a python workflow file.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    module_name = f"pipewright_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
        jobs = None
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            jobs = globals_dict["workflow"]()
        elif "JOBS" in globals_dict:
            jobs = globals_dict["JOBS"]
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"workflow file {path.name} failed to load: {e}") from e

    if not isinstance(jobs, (list, tuple)) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigurationError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return list(jobs)


def load_pipeline(path: Union[str, Path]) -> PipelineDefinition:
    """Load and fully validate a pipeline definition file (.yml/.yaml/.json/.py)."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigurationError(f"Pipeline file not found: {p}")

    suffix = p.suffix.lower()
    if suffix == ".py":
        definition = PipelineDefinition(name=p.stem, jobs=tuple(load_workflow(p)), source=p)
        return validate_definition(definition)
    if suffix not in {".yaml", ".yml", ".json"}:
        raise ConfigurationError(f"Unsupported pipeline format: {p.suffix or '<none>'} (use .yml, .yaml, .json or .py)")

    data = _read_document(p)
    if data is None:
        raise ConfigurationError(f"{p.name} is empty")
    return parse_definition(data, default_name=p.stem, source=p)
