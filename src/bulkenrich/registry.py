from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from .utils import log_event


class JobRegistry:
    """Bounded pool of worker threads running jobs, keyed by job id."""

    def __init__(
        self,
        runner: Callable[[str], Any],
        max_workers: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        self._runner = runner
        self._logger = logger or logging.getLogger("bulkenrich.registry")
        self.max_workers = max(1, max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="bulkenrich-job"
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, job_id: str) -> bool:
        with self._lock:
            if self._closed:
                raise RuntimeError("job registry is shut down")
            self._prune()
            current = self._futures.get(job_id)
            if current is not None and not current.done():
                return False
            self._futures[job_id] = self._executor.submit(self._run, job_id)
        log_event(self._logger, logging.INFO, "job_submitted", job_id=job_id)
        return True

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            future = self._futures.get(job_id)
            return future is not None and not future.done()

    def active_job_ids(self) -> list[str]:
        with self._lock:
            self._prune()
            return sorted(self._futures)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def wait_all(self, timeout: float | None = None) -> bool:
        with self._lock:
            futures = list(self._futures.values())
        if not futures:
            return True
        _, pending = wait(futures, timeout=timeout)
        return not pending

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_jobs, cancel_futures=not wait_for_jobs)
        log_event(self._logger, logging.INFO, "job_registry_shutdown", waited=wait_for_jobs)

    def _run(self, job_id: str) -> Any:
        try:
            return self._runner(job_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger, logging.ERROR, "job_thread_error", job_id=job_id, error=str(exc)
            )
            return None

    def _prune(self) -> None:
        for job_id in [key for key, future in self._futures.items() if future.done()]:
            del self._futures[job_id]
