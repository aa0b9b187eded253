from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import Config
from .errors import OrchestrationError
from .models import (
    ITEM_FAILED,
    ITEM_PREVIEW,
    ITEM_SKIPPED,
    ITEM_UPDATED,
    JOB_PROCESSING,
    ItemOutcome,
    JobOptions,
    JobRecord,
)
from .pipelines import Operation, get_operation
from .storage import (
    checkpoint_job,
    complete_job,
    fail_job,
    fetch_articles_by_ids,
    get_job,
    get_job_status,
    mark_job_processing,
)
from .utils import chunked, log_event, utc_now_iso


@dataclass
class BatchTally:
    successful: int = 0
    failed: int = 0
    last_error: str | None = None
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def record(self, position: int, article_id: str, outcome: str, error: str | None = None) -> None:
        if outcome == ITEM_FAILED:
            self.failed += 1
            self.last_error = f"{article_id}: {error}"
        else:
            self.successful += 1
        self.outcomes.append(
            ItemOutcome(
                position=position,
                article_id=article_id,
                outcome=outcome,
                error=error,
                processed_at=utc_now_iso(),
            )
        )


def run_job(
    job_id: str,
    *,
    connect: Callable[[], Any],
    client: Any,
    config: Config,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> JobRecord | None:
    """Drive one job to a terminal state, checkpointing after every micro-batch.

    Item failures are tallied and never raised. Anything else that goes
    wrong (job row missing, checkpoint write failing) fails the job.
    """
    logger = logger or logging.getLogger("bulkenrich.orchestrator")
    try:
        conn = connect()
    except Exception as exc:  # noqa: BLE001
        # Left queued/processing; startup recovery picks it up again.
        log_event(logger, logging.ERROR, "job_connect_failed", job_id=job_id, error=str(exc))
        return None
    try:
        return _drive(conn, job_id, client, config, sleep, logger)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        _fail_quietly(conn, job_id, str(exc), logger)
        return _read_quietly(conn, job_id)
    finally:
        conn.close()


def _drive(conn, job_id: str, client, config: Config, sleep, logger) -> JobRecord | None:
    job = get_job(conn, job_id)
    if job is None:
        raise OrchestrationError(f"job_not_found {job_id}")
    if job.is_terminal:
        log_event(logger, logging.INFO, "job_already_terminal", job_id=job_id, status=job.status)
        return job
    operation = get_operation(job.operation_type)
    options = JobOptions.from_dict(job.options)

    if not mark_job_processing(conn, job_id):
        log_event(logger, logging.INFO, "job_cancel_observed", job_id=job_id, stage="start")
        return get_job(conn, job_id)

    processed = job.processed_items
    successful = job.successful_items
    failed = job.failed_items
    log_event(
        logger,
        logging.INFO,
        "job_started" if processed == 0 else "job_resumed",
        job_id=job_id,
        operation_type=job.operation_type,
        total_items=job.total_items,
        resume_from=processed,
        batch_size=config.jobs.batch_size,
    )

    batches = chunked(job.item_ids[processed:], config.jobs.batch_size)
    for index, batch in enumerate(batches):
        status = get_job_status(conn, job_id)
        if status is None:
            raise OrchestrationError(f"job_row_missing {job_id}")
        if status != JOB_PROCESSING:
            log_event(
                logger,
                logging.INFO,
                "job_cancel_observed",
                job_id=job_id,
                status=status,
                processed_items=processed,
            )
            return get_job(conn, job_id)

        tally = _process_batch(
            conn, job_id, operation, options, batch, processed, client, config, sleep, logger
        )
        processed += len(batch)
        successful += tally.successful
        failed += tally.failed
        if not checkpoint_job(
            conn,
            job_id,
            processed_items=processed,
            successful_items=successful,
            failed_items=failed,
            last_error=tally.last_error,
            outcomes=tally.outcomes,
        ):
            log_event(
                logger,
                logging.INFO,
                "job_cancel_observed",
                job_id=job_id,
                status=get_job_status(conn, job_id),
                stage="checkpoint",
            )
            return get_job(conn, job_id)
        log_event(
            logger,
            logging.INFO,
            "job_checkpoint",
            job_id=job_id,
            processed_items=processed,
            successful_items=successful,
            failed_items=failed,
            total_items=job.total_items,
        )
        if index < len(batches) - 1:
            sleep(config.jobs.batch_delay_seconds)

    if complete_job(conn, job_id):
        log_event(
            logger,
            logging.INFO,
            "job_completed",
            job_id=job_id,
            successful_items=successful,
            failed_items=failed,
        )
    else:
        log_event(
            logger,
            logging.INFO,
            "job_complete_skipped",
            job_id=job_id,
            status=get_job_status(conn, job_id),
        )
    return get_job(conn, job_id)


def _process_batch(
    conn,
    job_id: str,
    operation: Operation,
    options: JobOptions,
    batch: list[str],
    start_position: int,
    client,
    config: Config,
    sleep,
    logger: logging.Logger,
) -> BatchTally:
    tally = BatchTally()
    try:
        articles = {article.id: article for article in fetch_articles_by_ids(conn, batch)}
    except Exception as exc:  # noqa: BLE001
        _rollback_quietly(conn)
        log_event(logger, logging.WARNING, "job_batch_fetch_failed", job_id=job_id, error=str(exc))
        for offset, article_id in enumerate(batch):
            tally.record(start_position + offset, article_id, ITEM_FAILED, f"fetch_failed: {exc}")
        return tally

    for offset, article_id in enumerate(batch):
        position = start_position + offset
        article = articles.get(article_id)
        if article is None:
            tally.record(position, article_id, ITEM_FAILED, "article_not_found")
            log_event(
                logger, logging.WARNING, "job_item_failed", job_id=job_id, article_id=article_id,
                error="article_not_found",
            )
            continue
        called_upstream = False
        try:
            if not options.force and operation.is_complete(conn, article):
                tally.record(position, article_id, ITEM_SKIPPED)
                log_event(logger, logging.DEBUG, "job_item_skipped", job_id=job_id, article_id=article_id)
                continue
            called_upstream = True
            result = operation.generate(article, client, config.llm)
            if options.dry_run:
                tally.record(position, article_id, ITEM_PREVIEW)
            else:
                operation.apply(conn, article, result)
                tally.record(position, article_id, ITEM_UPDATED)
        except Exception as exc:  # noqa: BLE001
            _rollback_quietly(conn)
            tally.record(position, article_id, ITEM_FAILED, str(exc))
            log_event(
                logger,
                logging.WARNING,
                "job_item_failed",
                job_id=job_id,
                article_id=article_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        finally:
            if called_upstream:
                sleep(config.jobs.item_delay_seconds)
    return tally


def _fail_quietly(conn, job_id: str, error: str, logger: logging.Logger) -> None:
    try:
        _rollback_quietly(conn)
        fail_job(conn, job_id, error)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "job_fail_write_failed", job_id=job_id, error=str(exc))


def _read_quietly(conn, job_id: str) -> JobRecord | None:
    try:
        return get_job(conn, job_id)
    except Exception:  # noqa: BLE001
        return None


def _rollback_quietly(conn) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass
