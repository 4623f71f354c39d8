# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from .model import FailureKind


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Invalid pipeline definition (cycle, unknown dependency, malformed step)."""

    def __init__(self, message: str, *, job: str | None = None, step: str | None = None, **details: Any):
        super().__init__(kind="configuration", message=message, job=job, step=step, details=details)


class DeployGateDenied(CIError):
    """The deploy trust gate refused to open (missing secrets, failed login)."""

    def __init__(self, message: str, *, registry: str | None = None):
        details = {"registry": registry} if registry else {}
        super().__init__(kind="deploy_gate_denied", message=message, details=details)


class CollaboratorError(CIError):
    """An external collaborator (git, docker, ssh) failed."""

    def __init__(self, collaborator: str, message: str, **details: Any):
        super().__init__(kind=f"{collaborator}_failed", message=message, details=details)


@dataclass(eq=False)
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    failure_kind: FailureKind = FailureKind.STEP_FAILED

    def __str__(self) -> str:
        if self.failure_kind is FailureKind.TIMEOUT:
            return f"[{self.job}] step '{self.step}' timed out: {self.cmd}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
