# step_workflows/deploy.py
from __future__ import annotations

import logging
import os
import shlex
import tempfile
from pathlib import Path

from ..config import DeploySecrets
from ..errors import DeployGateDenied
from ..executor import StepExecutor
from ..interfaces import GateSession

logger = logging.getLogger(__name__)

SSH_OPTIONS = (
    "-o BatchMode=yes",
    "-o StrictHostKeyChecking=accept-new",
)
DEFAULT_REMOTE_TIMEOUT_S = 900.0


class SSHDeployGate:
    """
    Deploy trust gate: registry login plus SSH access to deploy hosts.

    This is the only object that ever reads DeploySecrets. Callers get an
    opaque GateSession back; the private key lives in a 0600 temp file
    for the lifetime of the session.
    """

    def __init__(
        self,
        secrets: DeploySecrets,
        executor: StepExecutor,
        *,
        remote_timeout: float | None = DEFAULT_REMOTE_TIMEOUT_S,
    ):
        self._secrets = secrets
        self.executor = executor
        self.remote_timeout = remote_timeout

    def mask(self, text: str) -> str:
        return self._secrets.mask(text)

    def authenticate(self, registry: str | None) -> GateSession:
        missing = self._secrets.missing()
        if missing:
            raise DeployGateDenied(f"missing secrets: {', '.join(missing)}", registry=registry)

        user = self._secrets.docker_username.get_secret_value()
        password = self._secrets.docker_password.get_secret_value()
        target = shlex.quote(registry) if registry else ""
        login = self.executor.execute(
            f"docker login {target} --username {shlex.quote(user)} --password-stdin".replace("  ", " "),
            timeout=120,
            stdin=password,
        )
        if not login.ok:
            raise DeployGateDenied(
                f"registry login failed (exit={login.exit_code}): {login.stderr.strip()[-500:]}",
                registry=registry,
            )

        key_path = self._write_key(self._secrets.ssh_private_key.get_secret_value())
        logger.debug("deploy gate opened for %s", registry or "default registry")
        return GateSession(registry=registry, _private={"key_path": key_path})

    def remote_execute(self, host: str, command: str, session: GateSession) -> int:
        key_path = session._private.get("key_path")
        if not key_path or not Path(key_path).exists():
            raise DeployGateDenied("session is closed or was not issued by this gate", registry=session.registry)

        ssh = " ".join(["ssh", "-i", shlex.quote(str(key_path)), *SSH_OPTIONS, shlex.quote(host), shlex.quote(command)])
        res = self.executor.execute(ssh, timeout=self.remote_timeout)
        if res.stdout.strip():
            logger.info("[%s] %s", host, res.stdout.strip())
        if not res.ok:
            logger.warning("[%s] remote command failed (exit=%s): %s", host, res.exit_code, res.stderr.strip())
        return res.exit_code

    def close(self, session: GateSession) -> None:
        key_path = session._private.pop("key_path", None)
        if key_path:
            Path(key_path).unlink(missing_ok=True)
        target = shlex.quote(session.registry) if session.registry else ""
        self.executor.execute(f"docker logout {target}".strip(), timeout=60)

    @staticmethod
    def _write_key(key: str) -> Path:
        fd, name = tempfile.mkstemp(prefix="pipewright-key-")
        try:
            os.fchmod(fd, 0o600)
            if not key.endswith("\n"):
                key += "\n"
            os.write(fd, key.encode("utf-8"))
        finally:
            os.close(fd)
        return Path(name)
