# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Callable, Dict, Mapping, Optional, Set

from .model import FailureKind, StepResult

logger = logging.getLogger(__name__)

# how long a terminated process group gets before SIGKILL
TERMINATE_GRACE_S = 2.0


def _no_mask(text: str) -> str:
    return text


class StepExecutor:
    """
    Runs shell commands with a timeout and captured output.

    One executor is shared by every job of a run so that cancel() can reach
    all in-flight processes.
    """

    def __init__(self, *, mask: Callable[[str], str] | None = None):
        self._mask = mask or _no_mask
        self._procs: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(
        self,
        command: str,
        timeout: float | None = None,
        *,
        cwd: str | os.PathLike | None = None,
        env: Optional[Mapping[str, str]] = None,
        stdin: str | None = None,
    ) -> StepResult:
        start = time.monotonic()
        if self._cancelled.is_set():
            return StepResult(exit_code=-1, stderr="cancelled before start", failure_kind=FailureKind.CANCELLED)

        full_env: Dict[str, str] = os.environ.copy()
        full_env.update(env or {})

        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",  # tool output is not always valid UTF-8
            start_new_session=True,  # own process group, so kill reaches children
        )
        with self._lock:
            self._procs.add(proc)
        # cancel() may have run between the check above and registration
        if self._cancelled.is_set():
            self._terminate(proc)

        failure: FailureKind | None = None
        try:
            try:
                stdout, stderr = proc.communicate(input=stdin, timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.debug("command timed out after %ss: %s", timeout, command)
                self._kill(proc)
                stdout, stderr = proc.communicate()
                failure = FailureKind.TIMEOUT
        finally:
            with self._lock:
                self._procs.discard(proc)

        if failure is None and proc.returncode != 0:
            failure = FailureKind.CANCELLED if self._cancelled.is_set() else FailureKind.STEP_FAILED

        return StepResult(
            exit_code=proc.returncode,
            stdout=self._mask(stdout or ""),
            stderr=self._mask(stderr or ""),
            duration=time.monotonic() - start,
            failure_kind=failure,
        )

    def cancel(self) -> None:
        """Terminate every in-flight process; later execute() calls return cancelled."""
        self._cancelled.set()
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            self._terminate(proc)

    # ------------------------------------------------------------------

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _kill(self, proc: subprocess.Popen) -> None:
        self._signal_group(proc, signal.SIGKILL)

    def _terminate(self, proc: subprocess.Popen) -> None:
        self._signal_group(proc, signal.SIGTERM)

        def _escalate() -> None:
            try:
                proc.wait(timeout=TERMINATE_GRACE_S)
            except subprocess.TimeoutExpired:
                self._kill(proc)

        threading.Thread(target=_escalate, daemon=True).start()
