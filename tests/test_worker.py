import sqlite3
from datetime import timedelta

import pytest
from conftest import seed_articles

from notified import worker
from notified.models import PreferenceProfile, UserChannelConfig
from notified.storage import (
    get_profile,
    get_setting,
    list_delivery_records_for_user,
    save_profile,
    upsert_user_config,
)
from notified.utils import to_iso, utc_now
from notified.worker import DECAY_SETTING_KEY, build_parser, run_once


def test_run_once_starts_decay_clock(conn, db_path, fake_adapters):
    now = utc_now()
    save_profile(conn, PreferenceProfile(user_id="u1", category_scores={"SPORTS": 1.0}))
    assert run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=now) == 0
    assert get_setting(conn, DECAY_SETTING_KEY, None) == to_iso(now)
    assert get_profile(conn, "u1").category_scores == {"SPORTS": 1.0}


def test_run_once_applies_decay_when_due(conn, db_path, fake_adapters):
    now = utc_now()
    save_profile(conn, PreferenceProfile(user_id="u1", category_scores={"SPORTS": 1.0}))
    run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=now)

    run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=now + timedelta(hours=1))
    assert get_profile(conn, "u1").category_scores == {"SPORTS": 1.0}

    later = now + timedelta(hours=168)
    run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=later)
    assert get_profile(conn, "u1").category_scores["SPORTS"] == 0.95
    assert get_setting(conn, DECAY_SETTING_KEY, None) == to_iso(later)


def test_run_once_delivers(conn, db_path, fake_adapters):
    now = utc_now()
    seed_articles(conn, "SPORTS", 2, now)
    upsert_user_config(
        conn,
        UserChannelConfig(
            user_id="u1",
            categories=["SPORTS"],
            enabled_channels=["APP"],
            contacts={},
            notification_interval_minutes=60,
            last_notification_sent_at=None,
        ),
    )
    assert run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=now) == 0
    assert len(list_delivery_records_for_user(conn, "u1")) == 2
    assert len(fake_adapters["APP"].sent) == 2


def test_worker_parser_defaults():
    args = build_parser().parse_args(["--once", "--worker-id", "w1"])
    assert args.once is True
    assert args.worker_id == "w1"
    assert args.sleep_seconds is None


def test_run_once_reports_failed_cycle(conn, db_path, fake_adapters, monkeypatch):
    def broken_cycle(*args, **kwargs):
        raise sqlite3.OperationalError("db gone")

    monkeypatch.setattr(worker, "run_cycle", broken_cycle)
    assert run_once("worker-1", db_path=db_path, adapters=fake_adapters) == 1


def test_run_once_reports_failed_decay(conn, db_path, fake_adapters, monkeypatch):
    now = utc_now()
    run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=now)

    def busy(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(worker, "apply_decay", busy)
    later = now + timedelta(hours=168)
    assert run_once("worker-1", db_path=db_path, adapters=fake_adapters, now=later) == 1
    assert get_setting(conn, DECAY_SETTING_KEY, None) == to_iso(now)


class _StopLoop(Exception):
    pass


def test_run_loop_keeps_ticking_after_failure(monkeypatch):
    results = iter([1, 0])
    ticks = []

    def fake_run_once(worker_id):
        ticks.append(worker_id)
        try:
            return next(results)
        except StopIteration:
            raise _StopLoop() from None

    monkeypatch.setattr(worker, "run_once", fake_run_once)
    monkeypatch.setattr(worker.time, "sleep", lambda seconds: None)
    with pytest.raises(_StopLoop):
        worker.run_loop("w1", sleep_seconds=0)
    assert ticks == ["w1", "w1", "w1"]
