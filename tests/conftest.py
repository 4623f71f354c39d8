"""
Shared fixtures: in-memory fakes for the external collaborators
(version control, container builder, deploy gate) plus a quiet console.

Real shell commands are still used for `run` steps; everything that would
reach git, docker or ssh goes through the fakes.
"""
from __future__ import annotations

import io
import threading
from pathlib import Path

import pytest

from pipewright.cache import CacheStore
from pipewright.config import Settings
from pipewright.controller import PipelineController
from pipewright.errors import DeployGateDenied
from pipewright.executor import StepExecutor
from pipewright.interfaces import GateSession
from pipewright.runner import JobRunner
from pipewright.ui.console import Console

SECRET = "s3cr3t-value-123"


class Events:
    def __init__(self):
        self._lock = threading.Lock()
        self.items: list[tuple] = []

    def add(self, *item) -> None:
        with self._lock:
            self.items.append(item)

    def names(self) -> list[str]:
        return [i[0] for i in self.items]


class FakeVCS:
    def __init__(self, tree: Path, events: Events):
        self.tree = tree
        self.events = events

    def checkout(self, ref: str) -> Path:
        self.events.add("checkout", ref)
        return self.tree


class FakeContainers:
    def __init__(self, events: Events, *, push_ok: bool = True):
        self.events = events
        self.push_ok = push_ok
        self.built: list[tuple[Path, str]] = []
        self.pushed: list[tuple[str, str | None, GateSession]] = []

    def build(self, context: Path, tag: str) -> str:
        self.events.add("build", tag)
        self.built.append((context, tag))
        return f"sha256:{abs(hash(tag)):x}"

    def push(self, image: str, registry: str | None, session: GateSession) -> bool:
        self.events.add("push", image, registry)
        self.pushed.append((image, registry, session))
        return self.push_ok


class FakeGate:
    def __init__(self, events: Events, *, deny: bool = False, remote_exit: int = 0):
        self.events = events
        self.deny = deny
        self.remote_exit = remote_exit
        self.sessions: list[GateSession] = []
        self.closed: list[GateSession] = []

    def authenticate(self, registry: str | None) -> GateSession:
        self.events.add("authenticate", registry)
        if self.deny:
            raise DeployGateDenied("bad credentials", registry=registry)
        session = GateSession(registry=registry)
        self.sessions.append(session)
        return session

    def remote_execute(self, host: str, command: str, session: GateSession) -> int:
        self.events.add("remote", host, command)
        return self.remote_exit

    def close(self, session: GateSession) -> None:
        self.closed.append(session)

    def mask(self, text: str) -> str:
        return text.replace(SECRET, "***")


@pytest.fixture
def events() -> Events:
    return Events()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())


@pytest.fixture
def cache_store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def fake_vcs(workspace: Path, events: Events) -> FakeVCS:
    return FakeVCS(workspace, events)


@pytest.fixture
def fake_containers(events: Events) -> FakeContainers:
    return FakeContainers(events)


@pytest.fixture
def fake_gate(events: Events) -> FakeGate:
    return FakeGate(events)


@pytest.fixture
def executor(fake_gate: FakeGate) -> StepExecutor:
    return StepExecutor(mask=fake_gate.mask)


@pytest.fixture
def runner(executor, cache_store, workspace, fake_vcs, fake_containers, fake_gate, console) -> JobRunner:
    return JobRunner(
        executor,
        cache_store,
        workspace=workspace,
        vcs=fake_vcs,
        containers=fake_containers,
        gate=fake_gate,
        registry="registry.example.com",
        console=console,
    )


@pytest.fixture
def make_controller(tmp_path, workspace, cache_store, fake_vcs, fake_containers, fake_gate, console):
    def _make(**overrides) -> PipelineController:
        settings = Settings(workspace=str(workspace), cache_dir=str(tmp_path / "cache"), max_parallel=4)
        kwargs = dict(
            cache=cache_store,
            vcs=fake_vcs,
            containers=fake_containers,
            gate=fake_gate,
            console=console,
        )
        kwargs.update(overrides)
        return PipelineController(settings, **kwargs)

    return _make
