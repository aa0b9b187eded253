from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .config import Config, load_runtime_config
from .errors import InvalidFilter, NotFound, Unauthorized
from .llm import CompletionClient
from .models import ARTICLE_STATUSES, FilterCriteria, ItemOutcome, JobOptions, JobRecord
from .orchestrator import run_job
from .pipelines import DEFAULT_OPERATION, Operation, get_operation
from .registry import JobRegistry
from .storage import (
    cancel_job,
    complete_job,
    create_job,
    get_article,
    get_job,
    init_db,
    list_job_items,
    list_jobs,
    list_resumable_jobs,
    mark_job_processing,
    scan_article_ids,
)
from .utils import log_event, utc_now_iso_offset

_FILTER_KEYS = {"statuses", "require_snapshot", "limit"}


class JobController:
    def __init__(
        self,
        *,
        connect: Callable[[], Any],
        client: Any,
        config: Config,
        registry: JobRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._connect = connect
        self.client = client
        self.config = config
        self._sleep = sleep
        self._logger = logger or logging.getLogger("bulkenrich.controller")
        self._owns_registry = registry is None
        self.registry = registry or JobRegistry(
            self.run_job, max_workers=config.jobs.max_concurrent_jobs, logger=self._logger
        )

    @classmethod
    def from_env(cls, db_path: str | None = None, logger: logging.Logger | None = None) -> "JobController":
        def connect():
            return init_db(db_path)

        conn = connect()
        try:
            config = load_runtime_config(conn)
        finally:
            conn.close()
        return cls(
            connect=connect,
            client=CompletionClient(config.llm, logger),
            config=config,
            logger=logger,
        )

    @contextmanager
    def connection(self) -> Iterator[Any]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def reload_config(self, config: Config) -> None:
        self.config = config
        if isinstance(self.client, CompletionClient):
            self.client = CompletionClient(config.llm, self._logger)
        self._resize_registry()

    def _resize_registry(self) -> None:
        size = max(1, self.config.jobs.max_concurrent_jobs)
        if not self._owns_registry or self.registry.max_workers == size:
            return
        if self.registry.active_job_ids():
            # applied on the next start or resume once the pool is idle
            log_event(
                self._logger,
                logging.INFO,
                "job_pool_resize_deferred",
                max_workers=self.registry.max_workers,
                requested=size,
            )
            return
        previous = self.registry
        self.registry = JobRegistry(self.run_job, max_workers=size, logger=self._logger)
        previous.shutdown(wait_for_jobs=True)
        log_event(self._logger, logging.INFO, "job_pool_resized", max_workers=size)

    def preview(
        self, article_id: str, actor: str | None, operation_type: str = DEFAULT_OPERATION
    ) -> dict[str, Any]:
        _require_actor(actor)
        operation = get_operation(operation_type)
        with self.connection() as conn:
            article = get_article(conn, article_id)
            if article is None:
                raise NotFound(f"Article not found: {article_id}")
            existing = operation.existing_value(conn, article)
        result = operation.generate(article, self.client, self.config.llm)
        log_event(
            self._logger,
            logging.INFO,
            "preview_generated",
            article_id=article_id,
            operation_type=operation_type,
            actor=actor,
        )
        return {
            "article_id": article_id,
            "operation_type": operation_type,
            "result": result,
            "existing_value": existing,
        }

    def start(
        self,
        filter_criteria: FilterCriteria | dict[str, Any] | None,
        actor: str | None,
        operation_type: str = DEFAULT_OPERATION,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        _require_actor(actor)
        operation = get_operation(operation_type)
        criteria = parse_filter(filter_criteria, operation)
        if not isinstance(options, JobOptions):
            options = JobOptions.from_dict(options)

        with self.connection() as conn:
            item_ids = self._enumerate(conn, criteria)
            job = create_job(
                conn,
                operation_type=operation_type,
                item_ids=item_ids,
                created_by=str(actor),
                filter_criteria=criteria.to_dict(),
                options={"force": options.force, "dry_run": options.dry_run},
            )
            log_event(
                self._logger,
                logging.INFO,
                "job_created",
                job_id=job.id,
                operation_type=operation_type,
                total_items=job.total_items,
                actor=actor,
            )
            if not item_ids:
                mark_job_processing(conn, job.id)
                complete_job(conn, job.id)
                log_event(self._logger, logging.INFO, "job_completed", job_id=job.id, total_items=0)
                return {"job_id": job.id, "total_items": 0, "status": "completed"}

        self._resize_registry()
        self.registry.submit(job.id)
        return {"job_id": job.id, "total_items": job.total_items, "status": job.status}

    def status(self, job_id: str, actor: str | None) -> JobRecord:
        _require_actor(actor)
        with self.connection() as conn:
            job = get_job(conn, job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}")
        return job

    def cancel(self, job_id: str, actor: str | None) -> dict[str, Any]:
        _require_actor(actor)
        with self.connection() as conn:
            if get_job(conn, job_id) is None:
                raise NotFound(f"Job not found: {job_id}")
            changed = cancel_job(conn, job_id)
            job = get_job(conn, job_id)
        log_event(
            self._logger,
            logging.INFO,
            "job_cancel_requested",
            job_id=job_id,
            changed=changed,
            status=job.status if job else None,
            actor=actor,
        )
        return {"acknowledged": True, "job_id": job_id, "status": job.status if job else None}

    def resume(self, job_id: str, actor: str | None) -> dict[str, Any]:
        job = self.status(job_id, actor)
        if job.is_terminal:
            return {"job_id": job_id, "resumed": False, "status": job.status}
        self._resize_registry()
        submitted = self.registry.submit(job_id)
        log_event(
            self._logger,
            logging.INFO,
            "job_resume_requested",
            job_id=job_id,
            submitted=submitted,
            processed_items=job.processed_items,
            actor=actor,
        )
        return {"job_id": job_id, "resumed": submitted, "status": job.status}

    def list_jobs(self, actor: str | None, limit: int = 50) -> list[JobRecord]:
        _require_actor(actor)
        with self.connection() as conn:
            return list_jobs(conn, limit=limit)

    def job_items(self, job_id: str, actor: str | None) -> list[ItemOutcome]:
        self.status(job_id, actor)
        with self.connection() as conn:
            return list_job_items(conn, job_id)

    def recover(self) -> list[str]:
        """Resubmit queued jobs and processing jobs that stopped checkpointing."""
        stale_before = utc_now_iso_offset(seconds=-self.config.jobs.stale_after_seconds)
        with self.connection() as conn:
            jobs = list_resumable_jobs(conn, stale_before)
        resumed = []
        for job in jobs:
            if self.registry.is_running(job.id):
                continue
            if self.registry.submit(job.id):
                resumed.append(job.id)
                log_event(
                    self._logger,
                    logging.INFO,
                    "job_recovered",
                    job_id=job.id,
                    status=job.status,
                    processed_items=job.processed_items,
                    total_items=job.total_items,
                )
        return resumed

    def run_job(self, job_id: str) -> JobRecord | None:
        return run_job(
            job_id,
            connect=self._connect,
            client=self.client,
            config=self.config,
            sleep=self._sleep,
            logger=logging.getLogger("bulkenrich.orchestrator"),
        )

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self.registry.shutdown(wait_for_jobs=wait_for_jobs)

    def _enumerate(self, conn, criteria: FilterCriteria) -> list[str]:
        page_size = self.config.scan.page_size
        item_ids: list[str] = []
        offset = 0
        while True:
            page = scan_article_ids(conn, criteria, offset, page_size)
            item_ids.extend(page)
            if criteria.limit is not None and len(item_ids) >= criteria.limit:
                return item_ids[: criteria.limit]
            if len(page) < page_size:
                return item_ids
            offset += page_size


def parse_filter(
    raw: FilterCriteria | dict[str, Any] | None, operation: Operation
) -> FilterCriteria:
    if isinstance(raw, FilterCriteria):
        criteria = raw
    elif raw is None:
        criteria = operation.default_filter
    elif isinstance(raw, dict):
        unknown = set(raw) - _FILTER_KEYS
        if unknown:
            raise InvalidFilter(f"unknown filter keys: {', '.join(sorted(unknown))}")
        default = operation.default_filter
        statuses = raw.get("statuses", list(default.statuses))
        if isinstance(statuses, str):
            statuses = [statuses]
        if not isinstance(statuses, list) or not all(isinstance(s, str) for s in statuses):
            raise InvalidFilter("statuses must be a list of strings")
        require_snapshot = raw.get("require_snapshot", default.require_snapshot)
        if not isinstance(require_snapshot, bool):
            raise InvalidFilter("require_snapshot must be a boolean")
        limit = raw.get("limit", default.limit)
        if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool)):
            raise InvalidFilter("limit must be an integer")
        criteria = FilterCriteria(
            statuses=tuple(statuses), require_snapshot=require_snapshot, limit=limit
        )
    else:
        raise InvalidFilter("filter must be an object")

    if not criteria.statuses:
        raise InvalidFilter("statuses must not be empty")
    unknown_statuses = set(criteria.statuses) - ARTICLE_STATUSES
    if unknown_statuses:
        raise InvalidFilter(f"unknown statuses: {', '.join(sorted(unknown_statuses))}")
    if criteria.limit is not None and criteria.limit < 1:
        raise InvalidFilter("limit must be >= 1")
    return criteria


def _require_actor(actor: str | None) -> None:
    if actor is None or not str(actor).strip():
        raise Unauthorized("Unauthorized")
