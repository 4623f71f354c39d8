"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import JobStatus, RunResult


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and job logs
            stream: Output stream (defaults to sys.stdout at print time)
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, source: str, job_count: int) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED", f"Pipeline: {pipeline}", f"Definition: {source}", f"Jobs: {job_count}", "")

    def print_plan(self, stages: list[list[str]]) -> None:
        """Print the execution stages of a dry run."""
        self.print_header("PLAN")
        lines = [f"  stage {i + 1}: {', '.join(stage)}" for i, stage in enumerate(stages)]
        self._out(*lines)

    def print_job_start(self, name: str) -> None:
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_cache(self, job: str, message: str) -> None:
        self._out(f"[{job}] CACHE: {message}")

    def print_job_finished(self, result: RunResult) -> None:
        """Print the terminal status of a job (and its log on failure)."""
        if result.status is JobStatus.SUCCEEDED:
            self._out(f"[{result.job}] STATUS: success ({result.duration:.1f}s)")
            return
        if result.status is JobStatus.SKIPPED:
            self._out(f"\nJOB SKIPPED: {result.job}", f"Reason: {result.log or 'a dependency failed'}")
            return

        lines = [f"JOB FAILED: {result.job}"]
        if result.failed_step:
            lines.append(f"Step: {result.failed_step}")
        if result.failure_kind is not None:
            lines.append(f"Kind: {result.failure_kind.value}")
        if result.exit_code is not None:
            lines.append(f"Exit code: {result.exit_code}")
        if self.debug:
            lines.append(result.log)
        else:
            # last lines of the log are usually the interesting ones
            tail = [ln for ln in result.log.splitlines() if ln.strip()][-10:]
            lines.extend(f"  {ln}" for ln in tail)
        self._out(*lines)

    def print_results(self, results: Iterable[RunResult], status: str, duration: float) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in results:
            suffix = f" ({r.failure_kind.value})" if r.failure_kind else ""
            lines.append(f"  {r.job}: {r.status.value.upper()}{suffix}")
        lines.append(f"\nPIPELINE: {status.upper()} in {duration:.1f}s")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
