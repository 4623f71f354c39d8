"""Protocol interfaces for the external collaborators of a pipeline run.

Structural typing: the real git/docker/ssh implementations and the test
fakes both satisfy these without inheritance.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, eq=False)
class GateSession:
    """
    Opaque handle returned by the deploy gate.

    Steps receive only this object. Whatever the gate needs to act on the
    session's behalf lives in `_private`, which is excluded from repr.
    """
    registry: str | None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    _private: dict[str, Any] = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Version control
# ---------------------------------------------------------------------------

@runtime_checkable
class VersionControl(Protocol):
    """Provides a read-only working tree for a ref."""

    def checkout(self, ref: str) -> Path: ...


# ---------------------------------------------------------------------------
# Container build
# ---------------------------------------------------------------------------

@runtime_checkable
class ContainerBuilder(Protocol):
    """Builds images and pushes them to a registry."""

    def build(self, context: Path, tag: str) -> str: ...

    def push(self, image: str, registry: str | None, session: GateSession) -> bool: ...


# ---------------------------------------------------------------------------
# Deploy trust gate
# ---------------------------------------------------------------------------

@runtime_checkable
class DeployGate(Protocol):
    """The only holder of deploy secrets."""

    def authenticate(self, registry: str | None) -> GateSession: ...

    def remote_execute(self, host: str, command: str, session: GateSession) -> int: ...

    def close(self, session: GateSession) -> None: ...

    def mask(self, text: str) -> str: ...
