import logging

from bulkenrich.errors import RateLimited
from bulkenrich.orchestrator import run_job
from bulkenrich.storage import (
    cancel_job,
    create_job,
    get_article,
    get_job,
    init_db,
    list_job_items,
    update_article,
)

from conftest import FakeClient, make_config, seed_articles


def _create(conn, ids, operation_type="tldr_context_update", options=None):
    return create_job(
        conn,
        operation_type=operation_type,
        item_ids=ids,
        created_by="admin",
        options=options,
    )


def _run(db_path, job_id, client, config, sleeps=None):
    sleeps = [] if sleeps is None else sleeps
    return run_job(
        job_id,
        connect=lambda: init_db(db_path),
        client=client,
        config=config,
        sleep=sleeps.append,
    )


def test_seven_items_run_in_batches_of_three(conn, db_path, caplog):
    ids = seed_articles(conn, 7)
    job = _create(conn, ids)
    client = FakeClient()
    sleeps = []
    config = make_config(batch_size=3, batch_delay_seconds=0.2, item_delay_seconds=0.3)

    caplog.set_level(logging.INFO)
    result = _run(db_path, job.id, client, config, sleeps)

    assert result.status == "completed"
    assert result.processed_items == 7
    assert result.successful_items == 7
    assert result.failed_items == 0
    assert result.started_at is not None
    assert result.completed_at is not None

    checkpoints = [r.getMessage() for r in caplog.records if "event=job_checkpoint" in r.getMessage()]
    assert len(checkpoints) == 3
    assert "processed_items=3" in checkpoints[0]
    assert "processed_items=6" in checkpoints[1]
    assert "processed_items=7" in checkpoints[2]

    # no batch delay after the last batch
    assert sleeps.count(0.2) == 2
    assert sleeps.count(0.3) == 7


def test_rate_limited_item_is_isolated(conn, db_path):
    ids = seed_articles(conn, 5)
    job = _create(conn, ids)
    client = FakeClient(failures={"art-02": RateLimited("Rate limit exceeded")})

    result = _run(db_path, job.id, client, make_config(batch_size=5))

    assert result.status == "completed"
    assert result.successful_items == 4
    assert result.failed_items == 1
    assert result.processed_items == 5
    assert result.last_error == "art-02: Rate limit exceeded"

    assert "whoShouldPayAttention" not in get_article(conn, "art-02").tldr_snapshot
    for ident in ("art-01", "art-03", "art-04", "art-05"):
        assert get_article(conn, ident).tldr_snapshot["whoShouldPayAttention"]

    outcomes = [(item.article_id, item.outcome) for item in list_job_items(conn, job.id)]
    assert outcomes == [
        ("art-01", "updated"),
        ("art-02", "failed"),
        ("art-03", "updated"),
        ("art-04", "updated"),
        ("art-05", "updated"),
    ]


def test_items_are_processed_in_job_order(conn, db_path):
    seed_articles(conn, 6)
    order = ["art-05", "art-02", "art-06", "art-01", "art-04", "art-03"]
    job = _create(conn, order)
    client = FakeClient()

    _run(db_path, job.id, client, make_config(batch_size=4))

    assert client.calls == order
    assert [item.article_id for item in list_job_items(conn, job.id)] == order


def test_complete_items_are_skipped(conn, db_path):
    ids = seed_articles(conn, 3)
    update_article(
        conn,
        "art-02",
        {"tldr_snapshot": {"bullets": ["x"], "whoShouldPayAttention": "Editors", "whatChangesNext": ""}},
    )
    job = _create(conn, ids)
    client = FakeClient()

    result = _run(db_path, job.id, client, make_config())

    assert client.calls == ["art-01", "art-03"]
    assert result.successful_items == 3
    assert get_article(conn, "art-02").tldr_snapshot["whoShouldPayAttention"] == "Editors"
    outcomes = {item.article_id: item.outcome for item in list_job_items(conn, job.id)}
    assert outcomes["art-02"] == "skipped"


def test_force_regenerates_complete_items(conn, db_path):
    ids = seed_articles(
        conn, 2, snapshot={"bullets": ["x"], "whoShouldPayAttention": "Editors", "whatChangesNext": ""}
    )
    job = _create(conn, ids, options={"force": True})
    client = FakeClient()

    _run(db_path, job.id, client, make_config())

    assert client.calls == ids
    assert get_article(conn, "art-01").tldr_snapshot["whoShouldPayAttention"].startswith("Founders")


def test_snapshot_keys_from_other_writers_survive(conn, db_path):
    images = [{"url": "https://cdn.example/img.png"}]
    snapshot = {
        "bullets": ["a", "b", "c"],
        "whoShouldPayAttention": "",
        "whatChangesNext": "",
        "signalImages": images,
    }
    ids = seed_articles(conn, 1, snapshot=snapshot)
    job = _create(conn, ids)

    result = _run(db_path, job.id, FakeClient(), make_config())

    assert result.successful_items == 1
    stored = get_article(conn, "art-01").tldr_snapshot
    assert stored["signalImages"] == images
    assert stored["bullets"] == ["a", "b", "c"]
    assert stored["whoShouldPayAttention"] == "Founders | Regulators | art-01"


def test_force_keeps_snapshot_keys_from_other_writers(conn, db_path):
    images = [{"url": "https://cdn.example/img.png", "alt": "Chart"}]
    ids = seed_articles(
        conn,
        2,
        snapshot={
            "bullets": ["x"],
            "whoShouldPayAttention": "Editors",
            "whatChangesNext": "",
            "signalImages": images,
        },
    )
    job = _create(conn, ids, options={"force": True})

    _run(db_path, job.id, FakeClient(), make_config())

    for ident in ids:
        stored = get_article(conn, ident).tldr_snapshot
        assert stored["signalImages"] == images
        assert stored["whoShouldPayAttention"] == f"Founders | Regulators | {ident}"


def test_dry_run_does_not_persist(conn, db_path):
    ids = seed_articles(conn, 2)
    job = _create(conn, ids, options={"dry_run": True})

    result = _run(db_path, job.id, FakeClient(), make_config())

    assert result.status == "completed"
    assert result.successful_items == 2
    assert get_article(conn, "art-01").tldr_snapshot == ["First point", "Second point"]
    assert {item.outcome for item in list_job_items(conn, job.id)} == {"preview"}


def test_missing_article_fails_only_that_item(conn, db_path):
    seed_articles(conn, 2)
    job = _create(conn, ["art-01", "ghost", "art-02"])

    result = _run(db_path, job.id, FakeClient(), make_config())

    assert result.status == "completed"
    assert result.successful_items == 2
    assert result.failed_items == 1
    assert result.last_error == "ghost: article_not_found"


def test_cancel_stops_after_in_flight_batch(conn, db_path):
    ids = seed_articles(conn, 7)
    job = _create(conn, ids)

    def cancel_during_first_batch(ident):
        if ident == "art-02":
            other = init_db(db_path)
            try:
                cancel_job(other, job.id)
            finally:
                other.close()

    client = FakeClient(on_call=cancel_during_first_batch)
    result = _run(db_path, job.id, client, make_config(batch_size=3))

    assert result.status == "cancelled"
    assert result.completed_at is not None
    # the in-flight batch finishes, nothing after it starts
    assert client.calls == ["art-01", "art-02", "art-03"]
    for ident in ("art-04", "art-05", "art-06", "art-07"):
        assert get_article(conn, ident).tldr_snapshot == ["First point", "Second point"]
    # the batch's article writes landed, so its outcomes are logged too
    items = list_job_items(conn, job.id)
    written = [
        ident for ident in ids if "whoShouldPayAttention" in get_article(conn, ident).tldr_snapshot
    ]
    assert written == ["art-01", "art-02", "art-03"]
    assert [(item.article_id, item.outcome) for item in items] == [
        (ident, "updated") for ident in written
    ]
    assert result.processed_items == 0
    assert result.processed_items == result.successful_items + result.failed_items


def test_cancelled_job_is_not_started(conn, db_path):
    ids = seed_articles(conn, 2)
    job = _create(conn, ids)
    cancel_job(conn, job.id)
    client = FakeClient()

    result = _run(db_path, job.id, client, make_config())

    assert result.status == "cancelled"
    assert client.calls == []


def test_counters_hold_at_every_observation(conn, db_path):
    ids = seed_articles(conn, 8)
    job = _create(conn, ids)
    observed = []

    def observe(ident):
        reader = init_db(db_path)
        try:
            observed.append(get_job(reader, job.id))
        finally:
            reader.close()

    client = FakeClient(
        failures={"art-03": RateLimited("Rate limit exceeded"), "art-07": RateLimited("again")},
        on_call=observe,
    )
    result = _run(db_path, job.id, client, make_config(batch_size=3))
    observed.append(result)

    assert len(observed) == 9
    for record in observed:
        assert record.processed_items == record.successful_items + record.failed_items
        assert record.processed_items <= record.total_items
    progress = [record.processed_items for record in observed]
    assert progress == sorted(progress)
    assert result.failed_items == 2


def test_resume_continues_from_checkpoint(conn, db_path):
    ids = seed_articles(conn, 5)
    job = _create(conn, ids)
    conn.execute(
        """
        UPDATE bulk_operation_queue
        SET status = 'processing', processed_items = 3, successful_items = 2, failed_items = 1
        WHERE id = ?
        """,
        (job.id,),
    )
    conn.commit()
    client = FakeClient()

    result = _run(db_path, job.id, client, make_config(batch_size=3))

    assert client.calls == ["art-04", "art-05"]
    assert result.status == "completed"
    assert (result.processed_items, result.successful_items, result.failed_items) == (5, 4, 1)


def test_unknown_operation_fails_job(conn, db_path):
    seed_articles(conn, 1)
    job = _create(conn, ["art-01"], operation_type="retired_operation")

    result = _run(db_path, job.id, FakeClient(), make_config())

    assert result.status == "failed"
    assert "retired_operation" in result.last_error
    assert result.completed_at is not None


def test_missing_job_returns_none(db_path):
    assert _run(db_path, "job_missing", FakeClient(), make_config()) is None


def test_terminal_job_is_left_alone(conn, db_path):
    ids = seed_articles(conn, 1)
    job = _create(conn, ids)
    cancel_job(conn, job.id)
    before = get_job(conn, job.id)

    result = _run(db_path, job.id, FakeClient(), make_config())

    assert result == before
