# pipewright_workflow.py
# Workflow for pipewright itself: lint, test with a cached virtualenv, then
# a gated image publish.
from __future__ import annotations
from pipewright.dsl import cache, cache_restore, cache_save, checkout, docker_build, docker_push, job, sh, wf

venv = cache(
    "linux-venv",
    [".venv"],
    files=["pyproject.toml"],
    restore_keys=["linux-venv-"],
)


def workflow():
    return wf(
        job(
            "lint",
            checkout(),
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
        ),

        job(
            "test",
            checkout(),
            cache_restore(venv),
            sh("Create venv", "test -d .venv || python -m venv .venv"),
            sh("Install package", ".venv/bin/pip install -q -e '.[test]'"),
            sh("Run pytest", ".venv/bin/pytest -q", timeout=1800),
            cache_save(venv),
            needs=["lint"],
        ),

        # only reached when lint and test succeeded
        job(
            "publish",
            docker_build("pipewright:latest"),
            docker_push(),
            needs=["test"],
            deploy=True,
        ),
    )
