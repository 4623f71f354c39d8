# scheduler.py
from __future__ import annotations

import logging
import os
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, Iterable, Iterator, List

from .dag import build_dag, dependents, topo_levels
from .model import FailureKind, Job, JobStatus, RunResult

logger = logging.getLogger(__name__)

RunFn = Callable[[Job], RunResult]

_ALLOWED = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
}


def default_parallelism() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Dispatches jobs as soon as all their needs succeeded.

    - independent jobs run concurrently, at most max_parallel at a time
    - a failed job skips everything that transitively needs it
    - results are yielded in completion order
    """

    def __init__(self, max_parallel: int | None = None, *, cancel_event: threading.Event | None = None):
        if max_parallel is not None and max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.max_parallel = max_parallel or default_parallelism()
        self.cancel_event = cancel_event or threading.Event()
        self.statuses: Dict[str, JobStatus] = {}

    def _transition(self, name: str, new: JobStatus) -> None:
        old = self.statuses[name]
        if new not in _ALLOWED.get(old, set()):
            raise RuntimeError(f"illegal status transition for job '{name}': {old.value} -> {new.value}")
        self.statuses[name] = new

    def _finish(self, name: str, result: RunResult) -> RunResult:
        # a running job can only end succeeded or failed
        if result.status not in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            result = replace(result, status=JobStatus.FAILED, failure_kind=result.failure_kind or FailureKind.ERROR)
        self._transition(name, result.status)
        return result

    def schedule(
        self,
        jobs: Iterable[Job],
        run_fn: RunFn,
        *,
        satisfied: Iterable[str] = (),
    ) -> Iterator[RunResult]:
        """
        Yield one RunResult per job in completion order.

        Raises ConfigurationError (before running anything) on unknown needs
        or cycles. Names in `satisfied` count as already succeeded.
        """
        jobs = list(jobs)
        by_name = {j.name: j for j in jobs}
        adj, indeg = build_dag(jobs, satisfied=satisfied)
        topo_levels(adj, indeg)  # cycle check before any dispatch

        self.statuses = {j.name: JobStatus.PENDING for j in jobs}
        remaining = dict(indeg)
        # declaration order for deterministic dispatch among ready jobs
        ready: deque[str] = deque(j.name for j in jobs if remaining[j.name] == 0)
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="pipewright-job") as pool:
            while ready or in_flight:
                while ready and len(in_flight) < self.max_parallel and not self.cancel_event.is_set():
                    name = ready.popleft()
                    self._transition(name, JobStatus.RUNNING)
                    logger.debug("dispatching %s", name)
                    in_flight[pool.submit(run_fn, by_name[name])] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:  # run_fn crashed; the job fails, the run goes on
                        logger.exception("job %s crashed", name)
                        result = RunResult(
                            job=name,
                            status=JobStatus.FAILED,
                            log=f"internal error: {e}",
                            failure_kind=FailureKind.ERROR,
                        )
                    result = self._finish(name, result)
                    yield result

                    if result.status is JobStatus.SUCCEEDED:
                        for child in sorted(adj[name]):
                            remaining[child] -= 1
                            if remaining[child] == 0 and self.statuses[child] is JobStatus.PENDING:
                                ready.append(child)
                    else:
                        yield from self._skip_dependents(adj, name)

        # only reachable with jobs left over after a cancel: ready jobs that
        # were never dispatched fail, whatever needs them is skipped
        for name in list(ready) + self._pending():
            if self.statuses[name] is not JobStatus.PENDING:
                continue
            self._transition(name, JobStatus.FAILED)
            yield RunResult(job=name, status=JobStatus.FAILED, log="cancelled before start", failure_kind=FailureKind.CANCELLED)
            yield from self._skip_dependents(adj, name)

    def _skip_dependents(self, adj, failed: str) -> Iterator[RunResult]:
        for name in sorted(dependents(adj, failed)):
            if self.statuses[name] is JobStatus.PENDING:
                self._transition(name, JobStatus.SKIPPED)
                yield RunResult(job=name, status=JobStatus.SKIPPED, log=f"needs '{failed}', which did not succeed")

    def _pending(self) -> List[str]:
        return [n for n, s in self.statuses.items() if s is JobStatus.PENDING]
