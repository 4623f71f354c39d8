"""Runner configuration using pydantic-settings."""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


DEFAULT_CACHE_DIR = ".pipewright/cache"
DEFAULT_WORK_DIR = ".pipewright/work"


class Settings(BaseSettings):
    """Local runner settings. CLI flags override these."""

    model_config = {"env_prefix": "PIPEWRIGHT_"}

    workspace: str = "."
    cache_dir: str = DEFAULT_CACHE_DIR
    work_dir: str = DEFAULT_WORK_DIR
    max_parallel: int | None = Field(default=None, ge=1)
    default_timeout: float | None = Field(default=None, gt=0)
    cache_keep: int | None = Field(default=None, ge=1)  # None keeps every entry


class DeploySecrets(BaseSettings):
    """
    Secrets consumed only by the deploy gate.

    Read from DOCKER_USERNAME, DOCKER_PASSWORD and SSH_PRIVATE_KEY.
    """

    model_config = {"env_prefix": ""}

    docker_username: SecretStr | None = None
    docker_password: SecretStr | None = None
    ssh_private_key: SecretStr | None = None

    def missing(self) -> list[str]:
        return [
            name.upper()
            for name in ("docker_username", "docker_password", "ssh_private_key")
            if not _reveal(getattr(self, name))
        ]

    def mask(self, text: str) -> str:
        """Replace the password and private key in text with ***."""
        # the username is an identifier, often a short common word; not masked
        secret = [v for v in (_reveal(self.docker_password), _reveal(self.ssh_private_key)) if v]
        # longest first so a value containing another is masked whole
        for v in sorted(secret, key=len, reverse=True):
            text = text.replace(v, "***")
            # multi-line keys may appear line by line
            for line in v.splitlines():
                if len(line.strip()) >= 8:
                    text = text.replace(line, "***")
        return text


def _reveal(value: SecretStr | None) -> str:
    return value.get_secret_value() if value is not None else ""
