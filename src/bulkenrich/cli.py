from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import yaml

from .config import ConfigError, get_runtime_config, set_runtime_config
from .controller import JobController
from .errors import BulkEnrichError
from .pipelines import DEFAULT_OPERATION, OPERATIONS
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("bulkenrich")


def _actor(args: argparse.Namespace) -> str:
    return args.actor or os.environ.get("USER") or "cli"


def _controller(args: argparse.Namespace, logger: logging.Logger) -> JobController:
    return JobController.from_env(db_path=args.db, logger=logger)


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_api_starting", host=args.host, port=args.port)
    uvicorn.run("bulkenrich.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def _cmd_start(args: argparse.Namespace, logger: logging.Logger) -> int:
    filter_criteria: dict[str, object] = {}
    if args.status:
        filter_criteria["statuses"] = args.status
    if args.all_articles:
        filter_criteria["require_snapshot"] = False
    if args.limit is not None:
        filter_criteria["limit"] = args.limit

    controller = _controller(args, logger)
    try:
        started = controller.start(
            filter_criteria or None,
            _actor(args),
            args.operation,
            {"force": args.force, "dry_run": args.dry_run},
        )
        log_event(logger, logging.INFO, "start_requested", **started)
        if args.wait and started["total_items"]:
            controller.registry.wait(started["job_id"])
            job = controller.status(started["job_id"], _actor(args))
            log_event(
                logger,
                logging.INFO,
                "job_finished",
                job_id=job.id,
                status=job.status,
                processed_items=job.processed_items,
                successful_items=job.successful_items,
                failed_items=job.failed_items,
                last_error=job.last_error,
            )
    except BulkEnrichError as exc:
        log_event(logger, logging.ERROR, "start_failed", code=exc.code, error=exc.message)
        return 1
    finally:
        controller.shutdown(wait_for_jobs=True)
    return 0


def _cmd_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    controller = _controller(args, logger)
    try:
        job = controller.status(args.job_id, _actor(args))
    except BulkEnrichError as exc:
        log_event(logger, logging.ERROR, "status_failed", code=exc.code, error=exc.message)
        return 1
    finally:
        controller.shutdown(wait_for_jobs=False)
    data = job.to_dict()
    data.pop("item_ids", None)
    log_event(logger, logging.INFO, "job", **data)
    return 0


def _cmd_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    controller = _controller(args, logger)
    try:
        result = controller.cancel(args.job_id, _actor(args))
    except BulkEnrichError as exc:
        log_event(logger, logging.ERROR, "cancel_failed", code=exc.code, error=exc.message)
        return 1
    finally:
        controller.shutdown(wait_for_jobs=False)
    log_event(logger, logging.INFO, "job_cancel", **result)
    return 0


def _cmd_resume(args: argparse.Namespace, logger: logging.Logger) -> int:
    controller = _controller(args, logger)
    try:
        result = controller.resume(args.job_id, _actor(args))
        log_event(logger, logging.INFO, "job_resume", **result)
    except BulkEnrichError as exc:
        log_event(logger, logging.ERROR, "resume_failed", code=exc.code, error=exc.message)
        return 1
    finally:
        controller.shutdown(wait_for_jobs=True)
    return 0


def _cmd_preview(args: argparse.Namespace, logger: logging.Logger) -> int:
    controller = _controller(args, logger)
    try:
        preview = controller.preview(args.article_id, _actor(args), args.operation)
    except BulkEnrichError as exc:
        log_event(logger, logging.ERROR, "preview_failed", code=exc.code, error=exc.message)
        return 1
    finally:
        controller.shutdown(wait_for_jobs=False)
    log_event(
        logger,
        logging.INFO,
        "preview",
        article_id=preview["article_id"],
        operation_type=preview["operation_type"],
        result=preview["result"],
        existing=preview["existing_value"],
    )
    return 0


def _cmd_jobs(args: argparse.Namespace, logger: logging.Logger) -> int:
    controller = _controller(args, logger)
    try:
        jobs = controller.list_jobs(_actor(args), limit=args.limit)
    finally:
        controller.shutdown(wait_for_jobs=False)
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            operation_type=job.operation_type,
            status=job.status,
            total_items=job.total_items,
            processed_items=job.processed_items,
            successful_items=job.successful_items,
            failed_items=job.failed_items,
            created_by=job.created_by,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )
    return 0


def _cmd_config_export(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    Path(args.path).write_text(yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8")
    log_event(logger, logging.INFO, "config_exported", path=args.path)
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = Path(args.path)
    if not path.exists():
        log_event(logger, logging.ERROR, "config_missing", path=args.path)
        return 1
    with path.open("r", encoding="utf-8") as handle:
        cfg = yaml.safe_load(handle)
    if not isinstance(cfg, dict):
        log_event(logger, logging.ERROR, "config_error", error="config must be a mapping")
        return 1
    conn = init_db(args.db)
    try:
        set_runtime_config(conn, cfg)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bulkenrich", description="bulkenrich CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the sqlite state db (defaults to BE_DB_URL or BE_DATA_DIR)",
    )
    parser.add_argument(
        "--actor",
        dest="actor",
        default=None,
        help="Identity recorded as created_by (defaults to $USER)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.set_defaults(func=_cmd_serve)

    start_parser = subparsers.add_parser("start", help="Start a bulk job")
    start_parser.add_argument(
        "--status",
        action="append",
        default=None,
        help="Article status to include (repeatable)",
    )
    start_parser.add_argument(
        "--operation",
        default=DEFAULT_OPERATION,
        choices=sorted(OPERATIONS),
        help="Operation type",
    )
    start_parser.add_argument(
        "--all-articles",
        action="store_true",
        help="Include articles without a TL;DR snapshot",
    )
    start_parser.add_argument("--limit", type=int, default=None, help="Cap on selected items")
    start_parser.add_argument("--force", action="store_true", help="Regenerate complete items")
    start_parser.add_argument("--dry-run", action="store_true", help="Generate without persisting")
    start_parser.add_argument(
        "--wait", action="store_true", help="Block until the job finishes and log the result"
    )
    start_parser.set_defaults(func=_cmd_start)

    status_parser = subparsers.add_parser("status", help="Show job progress")
    status_parser.add_argument("job_id", help="Job id")
    status_parser.set_defaults(func=_cmd_status)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job id")
    cancel_parser.set_defaults(func=_cmd_cancel)

    resume_parser = subparsers.add_parser("resume", help="Resume a job from its last checkpoint")
    resume_parser.add_argument("job_id", help="Job id")
    resume_parser.set_defaults(func=_cmd_resume)

    preview_parser = subparsers.add_parser("preview", help="Generate output for one article")
    preview_parser.add_argument("article_id", help="Article id")
    preview_parser.add_argument(
        "--operation",
        default=DEFAULT_OPERATION,
        choices=sorted(OPERATIONS),
        help="Operation type",
    )
    preview_parser.set_defaults(func=_cmd_preview)

    jobs_parser = subparsers.add_parser("jobs", help="List recent jobs")
    jobs_parser.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_parser.set_defaults(func=_cmd_jobs)

    config_parser = subparsers.add_parser("config", help="Runtime config")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)

    config_export = config_subparsers.add_parser("export", help="Write runtime config to YAML")
    config_export.add_argument("path", help="Output YAML path")
    config_export.set_defaults(func=_cmd_config_export)

    config_import = config_subparsers.add_parser("import", help="Load runtime config from YAML")
    config_import.add_argument("path", help="Input YAML path")
    config_import.set_defaults(func=_cmd_config_import)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
