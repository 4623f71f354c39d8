# step_workflows/docker.py
from __future__ import annotations

import logging
import shlex
from pathlib import Path

from ..errors import CollaboratorError
from ..executor import StepExecutor
from ..interfaces import GateSession

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "ssh": "Install an OpenSSH client or fix PATH.",
    "git": "Install Git or fix PATH.",
}

# generous: image builds routinely take minutes
DEFAULT_BUILD_TIMEOUT_S = 3600.0


def qualify(image: str, registry: str | None) -> str:
    """Prefix image with registry unless it already carries it."""
    if not registry or image.startswith(registry.rstrip("/") + "/"):
        return image
    return f"{registry.rstrip('/')}/{image}"


class DockerCLI:
    """Container build collaborator backed by the docker CLI."""

    def __init__(self, executor: StepExecutor, *, build_timeout: float | None = DEFAULT_BUILD_TIMEOUT_S):
        self.executor = executor
        self.build_timeout = build_timeout
        self._checked = False

    def _check_docker_available(self) -> None:
        if self._checked:
            return
        res = self.executor.execute("docker --version", timeout=30)
        if not res.ok:
            raise CollaboratorError(
                "docker",
                "Docker is not available",
                hint=TOOL_HINTS["docker"],
            )
        self._checked = True

    def build(self, context: Path, tag: str) -> str:
        """Build context into tag. Returns the image id."""
        self._check_docker_available()
        q = shlex.quote
        res = self.executor.execute(
            f"docker build -t {q(tag)} {q(str(context))}",
            timeout=self.build_timeout,
        )
        if not res.ok:
            raise CollaboratorError(
                "docker",
                f"docker build failed for {tag}",
                exit_code=res.exit_code,
                failure=res.failure_kind.value if res.failure_kind else None,
                stderr=res.stderr[-4000:],
            )

        inspect = self.executor.execute(f"docker image inspect --format '{{{{.Id}}}}' {q(tag)}", timeout=60)
        image_id = inspect.stdout.strip() if inspect.ok else ""
        logger.debug("built %s -> %s", tag, image_id or "<unknown id>")
        return image_id or tag

    def push(self, image: str, registry: str | None, session: GateSession) -> bool:
        """
        Push image to registry. The session must come from authenticating
        against the same registry (docker login stores the credentials).
        """
        self._check_docker_available()
        if session.registry != registry:
            raise CollaboratorError(
                "docker",
                "gate session was opened for a different registry",
                session_registry=session.registry,
                registry=registry,
            )

        q = shlex.quote
        target = qualify(image, registry)
        if target != image:
            tagged = self.executor.execute(f"docker tag {q(image)} {q(target)}", timeout=60)
            if not tagged.ok:
                raise CollaboratorError("docker", f"docker tag failed for {target}", stderr=tagged.stderr[-4000:])

        res = self.executor.execute(f"docker push {q(target)}", timeout=self.build_timeout)
        if not res.ok:
            logger.debug("docker push %s failed: %s", target, res.stderr.strip())
        return res.ok
