from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("bulkenrich.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            slug TEXT NULL,
            excerpt TEXT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            content_json TEXT NULL,
            tldr_snapshot_json TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_status ON articles(status, id)")


def _migration_bulk_queue(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bulk_operation_queue (
            id TEXT PRIMARY KEY,
            operation_type TEXT NOT NULL,
            status TEXT NOT NULL,
            article_ids_json TEXT NOT NULL,
            filter_json TEXT NULL,
            options_json TEXT NULL,
            total_items INTEGER NOT NULL DEFAULT 0,
            processed_items INTEGER NOT NULL DEFAULT 0,
            successful_items INTEGER NOT NULL DEFAULT 0,
            failed_items INTEGER NOT NULL DEFAULT 0,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT NULL,
            last_error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_bulk_queue_status ON bulk_operation_queue(status, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bulk_job_items (
            job_id TEXT NOT NULL REFERENCES bulk_operation_queue(id),
            position INTEGER NOT NULL,
            article_id TEXT NOT NULL,
            outcome TEXT NOT NULL,
            error TEXT NULL,
            processed_at TEXT NOT NULL,
            PRIMARY KEY (job_id, position)
        )
        """
    )


def _migration_articles_enriched(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles_enriched (
            article_id TEXT PRIMARY KEY REFERENCES articles(id),
            title TEXT NOT NULL,
            summary TEXT NOT NULL,
            entities_json TEXT NOT NULL,
            keyphrases_json TEXT NOT NULL,
            topics_json TEXT NOT NULL,
            metadata_timestamp TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_bulk_queue", _migration_bulk_queue),
        ("003_articles_enriched", _migration_articles_enriched),
    ]
