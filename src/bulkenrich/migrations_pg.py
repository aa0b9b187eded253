from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("bulkenrich.migrations")
    conn.execute("BEGIN")
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
    if "pg_bootstrap_001" not in applied:
        _bootstrap_schema(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_bootstrap_001", utc_now_iso()),
        )
        conn.commit()
        logger.info("migration_applied version=pg_bootstrap_001")
        conn.execute("BEGIN")
    if "pg_articles_enriched_002" not in applied:
        _migrate_articles_enriched(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            ("pg_articles_enriched_002", utc_now_iso()),
        )
        logger.info("migration_applied version=pg_articles_enriched_002")
    conn.commit()


def _bootstrap_schema(conn) -> None:
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
            job_id TEXT NOT NULL REFERENCES bulk_operation_queue(id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            article_id TEXT NOT NULL,
            outcome TEXT NOT NULL,
            error TEXT NULL,
            processed_at TEXT NOT NULL,
            PRIMARY KEY (job_id, position)
        )
        """
    )


def _migrate_articles_enriched(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles_enriched (
            article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            summary TEXT NOT NULL,
            entities_json TEXT NOT NULL,
            keyphrases_json TEXT NOT NULL,
            topics_json TEXT NOT NULL,
            metadata_timestamp TEXT NOT NULL
        )
        """
    )
