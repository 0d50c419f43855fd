import sqlite3
from datetime import timedelta

from conftest import FailingAdapter, seed_articles

from notified import orchestrator
from notified.config import default_config
from notified.errors import UpstreamUnavailable
from notified.models import Article, UserChannelConfig
from notified.orchestrator import CYCLE_LEASE, format_article_message, is_eligible, run_cycle
from notified.storage import (
    get_user_config,
    list_delivery_records_for_user,
    try_acquire_lease,
    upsert_user_config,
)
from notified.utils import to_iso, utc_now


def _seed_user(conn, user_id="u1", categories=None, channels=None, last_sent=None, interval=60):
    upsert_user_config(
        conn,
        UserChannelConfig(
            user_id=user_id,
            categories=categories if categories is not None else ["SPORTS"],
            enabled_channels=channels if channels is not None else ["EMAIL", "TELEGRAM"],
            contacts={"EMAIL": f"{user_id}@example.com", "TELEGRAM": "42"},
            notification_interval_minutes=interval,
            last_notification_sent_at=last_sent,
        ),
    )


def test_is_eligible():
    now = utc_now()

    def user(last_sent):
        return UserChannelConfig(
            user_id="u1",
            categories=["SPORTS"],
            enabled_channels=["EMAIL"],
            contacts={},
            notification_interval_minutes=60,
            last_notification_sent_at=last_sent,
        )

    assert is_eligible(user(None), now)
    assert is_eligible(user(to_iso(now - timedelta(minutes=60))), now)
    assert not is_eligible(user(to_iso(now - timedelta(minutes=59))), now)


def test_format_article_message():
    now = utc_now()
    article = Article(
        id=1,
        category="SPORTS",
        title="India wins test match",
        description="A big day",
        link="https://example.com/india",
        source="BBC Sport",
        published_at=to_iso(now),
        content_fingerprint="fp",
        ingested_at=to_iso(now),
    )
    subject, body = format_article_message(article)
    assert subject == "SPORTS News: India wins test match"
    assert "A big day" in body
    assert "Link: https://example.com/india" in body
    assert body.endswith("Source: BBC Sport")


def test_cycle_end_to_end(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 3, now)
    _seed_user(conn)

    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert not report.skipped
    assert report.records_created == 3
    assert report.records_sent == 3

    records = list_delivery_records_for_user(conn, "u1")
    assert len(records) == 3
    assert {record.status for record in records} <= {"SENT", "FAILED"}
    assert len({record.article_fingerprint for record in records}) == 3
    assert len({record.batch_id for record in records}) == 1
    assert get_user_config(conn, "u1").last_notification_sent_at == to_iso(now)
    assert len(fake_adapters["EMAIL"].sent) == 3

    again = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert again.users_eligible == 0
    assert again.records_created == 0
    assert len(list_delivery_records_for_user(conn, "u1")) == 3


def test_cycle_never_resends_recorded_articles(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 5, now)
    _seed_user(conn)
    config = default_config()

    first = run_cycle(db_path, config, fake_adapters, now=now)
    assert first.records_created == 3
    second = run_cycle(db_path, config, fake_adapters, now=now + timedelta(minutes=61))
    assert second.records_created == 2
    third = run_cycle(db_path, config, fake_adapters, now=now + timedelta(minutes=122))
    assert third.records_created == 0
    # Nothing new went out, so the interval clock is left alone.
    assert get_user_config(conn, "u1").last_notification_sent_at == to_iso(
        now + timedelta(minutes=61)
    )
    fingerprints = [r.article_fingerprint for r in list_delivery_records_for_user(conn, "u1")]
    assert len(fingerprints) == len(set(fingerprints)) == 5


def test_cycle_records_failures(conn, db_path):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    _seed_user(conn, channels=["EMAIL"])
    report = run_cycle(db_path, default_config(), {"EMAIL": FailingAdapter("EMAIL")}, now=now)
    assert report.records_failed == 2
    records = list_delivery_records_for_user(conn, "u1")
    assert {record.status for record in records} == {"FAILED"}
    assert all(record.failed_channels == ["EMAIL"] for record in records)
    assert get_user_config(conn, "u1").last_notification_sent_at == to_iso(now)


def test_cycle_skips_users_without_work(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    _seed_user(conn, "no-categories", categories=[])
    _seed_user(conn, "travel", categories=["TRAVEL"])
    _seed_user(conn, "recent", last_sent=to_iso(now - timedelta(minutes=5)))
    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert report.users_total == 3
    assert report.users_eligible == 2
    assert report.records_created == 0
    assert get_user_config(conn, "travel").last_notification_sent_at is None


def test_cycle_runs_users_independently(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    seed_articles(conn, "FINANCE", 2, now)
    _seed_user(conn, "u1", categories=["SPORTS"])
    _seed_user(conn, "u2", categories=["SPORTS", "FINANCE"])
    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert report.users_processed == 2
    assert len(list_delivery_records_for_user(conn, "u1")) == 2
    assert len(list_delivery_records_for_user(conn, "u2")) == 3


def test_cycle_skipped_while_running(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 1, now)
    _seed_user(conn)
    assert orchestrator._CYCLE_LOCK.acquire(blocking=False)
    try:
        report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    finally:
        orchestrator._CYCLE_LOCK.release()
    assert report.skipped
    assert report.reason == "cycle_in_progress"
    assert list_delivery_records_for_user(conn, "u1") == []


def test_cycle_skipped_when_lease_held(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 1, now)
    _seed_user(conn)
    assert try_acquire_lease(conn, CYCLE_LEASE, "other-process", 600)
    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert report.skipped
    assert report.reason == "lease_held"
    assert list_delivery_records_for_user(conn, "u1") == []


def test_cycle_lock_released_when_db_open_fails(conn, db_path, fake_adapters, monkeypatch):
    now = utc_now()
    seed_articles(conn, "SPORTS", 1, now)
    _seed_user(conn)
    real_init_db = orchestrator.init_db
    calls = []

    def flaky_init_db(path=None):
        calls.append(path)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_init_db(path)

    monkeypatch.setattr(orchestrator, "init_db", flaky_init_db)
    first = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert first.skipped
    assert first.reason == "upstream_unavailable"

    second = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert not second.skipped
    assert second.records_created == 1


def test_cycle_survives_one_user_crashing(conn, db_path, fake_adapters, monkeypatch):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    _seed_user(conn, "u1")
    _seed_user(conn, "u2")
    real_process_user = orchestrator.process_user

    def process_user(user_conn, user, *args):
        if user.user_id == "u1":
            raise sqlite3.OperationalError("db gone")
        return real_process_user(user_conn, user, *args)

    monkeypatch.setattr(orchestrator, "process_user", process_user)
    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert not report.skipped
    assert report.users_failed == 1
    assert report.users_processed == 1
    assert list_delivery_records_for_user(conn, "u1") == []
    assert len(list_delivery_records_for_user(conn, "u2")) == 2


def test_cycle_skips_user_when_articles_unavailable(conn, db_path, fake_adapters, monkeypatch):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    _seed_user(conn)

    def unavailable(*args, **kwargs):
        raise UpstreamUnavailable("article_source", "connection refused")

    monkeypatch.setattr(orchestrator, "fetch_unseen_candidates", unavailable)
    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert report.users_failed == 1
    assert report.records_created == 0
    assert get_user_config(conn, "u1").last_notification_sent_at is None
    assert fake_adapters["EMAIL"].sent == []


def test_cycle_completes_when_last_sent_update_fails(conn, db_path, fake_adapters, monkeypatch):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    _seed_user(conn)
    real_update = orchestrator.update_user_config

    def broken_update(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(orchestrator, "update_user_config", broken_update)
    report = run_cycle(db_path, default_config(), fake_adapters, now=now)
    assert report.users_processed == 1
    assert report.records_sent == 2
    assert get_user_config(conn, "u1").last_notification_sent_at is None

    monkeypatch.setattr(orchestrator, "update_user_config", real_update)
    again = run_cycle(db_path, default_config(), fake_adapters, now=now + timedelta(minutes=1))
    assert again.users_eligible == 1
    assert again.records_created == 0
