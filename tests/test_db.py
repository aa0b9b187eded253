from bulkenrich.db import _normalize_sql, get_state_db_path, is_postgres_url


def test_sqlite_sql_is_untouched():
    sql = "SELECT * FROM articles WHERE id = ?"
    assert _normalize_sql(sql, "sqlite") == sql


def test_postgres_placeholders_skip_literals():
    sql = "SELECT '?' AS q, id FROM articles WHERE id = ? AND status IN (?, ?)"
    assert _normalize_sql(sql, "postgres") == (
        "SELECT '?' AS q, id FROM articles WHERE id = %s AND status IN (%s, %s)"
    )


def test_insert_or_ignore_becomes_on_conflict():
    sql = "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)"
    assert _normalize_sql(sql, "postgres") == (
        "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    )


def test_backend_detection(monkeypatch, tmp_path):
    assert is_postgres_url("postgresql://user@db/bulk")
    assert is_postgres_url("postgres://user@db/bulk")
    assert not is_postgres_url("sqlite:///tmp/x")
    assert not is_postgres_url(None)
    monkeypatch.setenv("BE_DATA_DIR", str(tmp_path))
    assert get_state_db_path() == str(tmp_path / "bulkenrich.sqlite3")
