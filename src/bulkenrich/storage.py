from __future__ import annotations

import uuid
from typing import Any, Iterable

from .db import DBConn, connect_db
from .errors import StoreError
from .models import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    Article,
    FilterCriteria,
    ItemOutcome,
    JobRecord,
)
from .utils import json_dumps, json_loads, utc_now_iso

_JOB_COLUMNS = """
    id, operation_type, status, article_ids_json, filter_json, options_json,
    total_items, processed_items, successful_items, failed_items, created_by,
    created_at, started_at, updated_at, completed_at, last_error
"""

_ARTICLE_COLUMNS = "id, title, slug, excerpt, status, content_json, tldr_snapshot_json"

# partial-update field name -> (column, json encoded)
_ARTICLE_UPDATABLE = {
    "title": ("title", False),
    "excerpt": ("excerpt", False),
    "content": ("content_json", True),
    "tldr_snapshot": ("tldr_snapshot_json", True),
}


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    return json_loads(row[0], default)


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def upsert_article(conn: Any, article: Article, published_at: str | None = None) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO articles
            (id, title, slug, excerpt, status, content_json, tldr_snapshot_json,
             published_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            title = excluded.title,
            slug = excluded.slug,
            excerpt = excluded.excerpt,
            status = excluded.status,
            content_json = excluded.content_json,
            tldr_snapshot_json = excluded.tldr_snapshot_json,
            published_at = excluded.published_at,
            updated_at = excluded.updated_at
        """,
        (
            article.id,
            article.title,
            article.slug,
            article.excerpt,
            article.status,
            json_dumps(article.content) if article.content is not None else None,
            json_dumps(article.tldr_snapshot) if article.tldr_snapshot is not None else None,
            published_at,
            now,
            now,
        ),
    )
    conn.commit()


def get_article(conn: Any, article_id: str) -> Article | None:
    row = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?",
        (article_id,),
    ).fetchone()
    return _row_to_article(row) if row else None


def fetch_articles_by_ids(conn: Any, article_ids: list[str]) -> list[Article]:
    if not article_ids:
        return []
    placeholders = ",".join("?" for _ in article_ids)
    cursor = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id IN ({placeholders})",
        tuple(article_ids),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def update_article(conn: Any, article_id: str, fields: dict[str, Any]) -> None:
    if not fields:
        return
    assignments = []
    params: list[object] = []
    for name, value in fields.items():
        if name not in _ARTICLE_UPDATABLE:
            raise StoreError(f"unsupported_article_field {name}")
        column, is_json = _ARTICLE_UPDATABLE[name]
        assignments.append(f"{column} = ?")
        params.append(json_dumps(value) if is_json and value is not None else value)
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(article_id)
    try:
        cursor = conn.execute(
            f"UPDATE articles SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        conn.commit()
    except Exception as exc:  # noqa: BLE001
        conn.rollback()
        raise StoreError(f"article_update_failed {article_id}: {exc}") from exc
    if cursor.rowcount != 1:
        raise StoreError(f"article_update_missed {article_id}")


def scan_article_ids(
    conn: Any, criteria: FilterCriteria, offset: int, limit: int
) -> list[str]:
    params: list[object] = []
    clauses = []
    if criteria.statuses:
        placeholders = ",".join("?" for _ in criteria.statuses)
        clauses.append(f"status IN ({placeholders})")
        params.extend(criteria.statuses)
    if criteria.require_snapshot:
        clauses.append("tldr_snapshot_json IS NOT NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.extend([limit, offset])
    cursor = conn.execute(
        f"""
        SELECT id FROM articles
        {where}
        ORDER BY id ASC
        LIMIT ? OFFSET ?
        """,
        tuple(params),
    )
    return [row[0] for row in cursor.fetchall()]


def upsert_article_enrichment(
    conn: Any, article_id: str, title: str, result: dict[str, Any]
) -> None:
    try:
        conn.execute(
            """
            INSERT INTO articles_enriched
                (article_id, title, summary, entities_json, keyphrases_json, topics_json,
                 metadata_timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(article_id) DO UPDATE SET
                title = excluded.title,
                summary = excluded.summary,
                entities_json = excluded.entities_json,
                keyphrases_json = excluded.keyphrases_json,
                topics_json = excluded.topics_json,
                metadata_timestamp = excluded.metadata_timestamp
            """,
            (
                article_id,
                title,
                result.get("summary") or "",
                json_dumps(result.get("entities") or []),
                json_dumps(result.get("keyphrases") or []),
                json_dumps(result.get("topics") or []),
                utc_now_iso(),
            ),
        )
        conn.commit()
    except Exception as exc:  # noqa: BLE001
        conn.rollback()
        raise StoreError(f"enrichment_upsert_failed {article_id}: {exc}") from exc


def get_article_enrichment(conn: Any, article_id: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT article_id, title, summary, entities_json, keyphrases_json, topics_json,
               metadata_timestamp
        FROM articles_enriched
        WHERE article_id = ?
        """,
        (article_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "article_id": row[0],
        "title": row[1],
        "summary": row[2],
        "entities": json_loads(row[3], []),
        "keyphrases": json_loads(row[4], []),
        "topics": json_loads(row[5], []),
        "metadata_timestamp": row[6],
    }


def create_job(
    conn: Any,
    *,
    operation_type: str,
    item_ids: list[str],
    created_by: str,
    filter_criteria: dict[str, Any] | None = None,
    options: dict[str, Any] | None = None,
) -> JobRecord:
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO bulk_operation_queue
            (id, operation_type, status, article_ids_json, filter_json, options_json,
             total_items, processed_items, successful_items, failed_items, created_by,
             created_at, started_at, updated_at, completed_at, last_error)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, 0, ?, ?, NULL, ?, NULL, NULL)
        """,
        (
            job_id,
            operation_type,
            JOB_QUEUED,
            json_dumps(list(item_ids)),
            json_dumps(filter_criteria or {}),
            json_dumps(options or {}),
            len(item_ids),
            created_by,
            now,
            now,
        ),
    )
    conn.commit()
    job = get_job(conn, job_id)
    if job is None:
        raise StoreError(f"job_insert_lost {job_id}")
    return job


def get_job(conn: Any, job_id: str) -> JobRecord | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM bulk_operation_queue WHERE id = ?",
        (job_id,),
    ).fetchone()
    return _row_to_job(row) if row else None


def get_job_status(conn: Any, job_id: str) -> str | None:
    row = conn.execute(
        "SELECT status FROM bulk_operation_queue WHERE id = ?", (job_id,)
    ).fetchone()
    return row[0] if row else None


def list_jobs(conn: Any, limit: int = 50) -> list[JobRecord]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM bulk_operation_queue
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def list_resumable_jobs(conn: Any, stale_before: str) -> list[JobRecord]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM bulk_operation_queue
        WHERE status = ?
           OR (status = ? AND updated_at < ?)
        ORDER BY created_at ASC
        """,
        (JOB_QUEUED, JOB_PROCESSING, stale_before),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def mark_job_processing(conn: Any, job_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE bulk_operation_queue
        SET status = ?, started_at = COALESCE(started_at, ?), updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (JOB_PROCESSING, now, now, job_id, JOB_QUEUED, JOB_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def checkpoint_job(
    conn: Any,
    job_id: str,
    *,
    processed_items: int,
    successful_items: int,
    failed_items: int,
    last_error: str | None,
    outcomes: Iterable[ItemOutcome] = (),
) -> bool:
    """Persist counters and item outcomes for one finished micro-batch.

    Status is never written here; counters only move while the job is
    ``processing`` so a concurrent cancel is neither overwritten nor followed
    by further counter changes. Item outcomes are recorded either way since
    their article writes have already landed. Returns False when the job left
    ``processing``.
    """
    now = utc_now_iso()
    rows = [
        (job_id, item.position, item.article_id, item.outcome, item.error, item.processed_at)
        for item in outcomes
    ]
    try:
        cursor = conn.execute(
            """
            UPDATE bulk_operation_queue
            SET processed_items = ?,
                successful_items = ?,
                failed_items = ?,
                last_error = COALESCE(?, last_error),
                updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                processed_items,
                successful_items,
                failed_items,
                last_error,
                now,
                job_id,
                JOB_PROCESSING,
            ),
        )
        accepted = cursor.rowcount == 1
        if rows:
            conn.executemany(
                """
                INSERT INTO bulk_job_items
                    (job_id, position, article_id, outcome, error, processed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, position) DO UPDATE SET
                    outcome = excluded.outcome,
                    error = excluded.error,
                    processed_at = excluded.processed_at
                """,
                rows,
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return accepted


def complete_job(conn: Any, job_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE bulk_operation_queue
        SET status = ?, completed_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (JOB_COMPLETED, now, now, job_id, JOB_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE bulk_operation_queue
        SET status = ?, completed_at = ?, updated_at = ?, last_error = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (JOB_FAILED, now, now, error, job_id, JOB_QUEUED, JOB_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_job(conn: Any, job_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE bulk_operation_queue
        SET status = ?, completed_at = ?, updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (JOB_CANCELLED, now, now, job_id, JOB_QUEUED, JOB_PROCESSING),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_job_items(conn: Any, job_id: str) -> list[ItemOutcome]:
    cursor = conn.execute(
        """
        SELECT position, article_id, outcome, error, processed_at
        FROM bulk_job_items
        WHERE job_id = ?
        ORDER BY position ASC
        """,
        (job_id,),
    )
    return [
        ItemOutcome(
            position=row[0],
            article_id=row[1],
            outcome=row[2],
            error=row[3],
            processed_at=row[4],
        )
        for row in cursor.fetchall()
    ]


def _row_to_article(row: tuple) -> Article:
    (article_id, title, slug, excerpt, status, content_json, snapshot_json) = row
    return Article(
        id=article_id,
        title=title,
        slug=slug,
        excerpt=excerpt,
        status=status,
        content=json_loads(content_json),
        tldr_snapshot=json_loads(snapshot_json),
    )


def _row_to_job(row: tuple) -> JobRecord:
    (
        job_id,
        operation_type,
        status,
        article_ids_json,
        filter_json,
        options_json,
        total_items,
        processed_items,
        successful_items,
        failed_items,
        created_by,
        created_at,
        started_at,
        updated_at,
        completed_at,
        last_error,
    ) = row
    return JobRecord(
        id=job_id,
        operation_type=operation_type,
        status=status,
        item_ids=[str(item) for item in json_loads(article_ids_json, [])],
        total_items=int(total_items or 0),
        processed_items=int(processed_items or 0),
        successful_items=int(successful_items or 0),
        failed_items=int(failed_items or 0),
        created_by=created_by,
        created_at=created_at,
        started_at=started_at,
        updated_at=updated_at,
        completed_at=completed_at,
        last_error=last_error,
        filter=json_loads(filter_json, {}) or {},
        options=json_loads(options_json, {}) or {},
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
