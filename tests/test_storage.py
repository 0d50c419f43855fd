from datetime import timedelta

import pytest

from notified import storage
from notified.errors import NotFoundError
from notified.models import Article, DeliveryStatus, PreferenceProfile, Reaction, UserChannelConfig
from notified.storage import (
    count_notified_users,
    create_delivery_record,
    delete_user_config,
    finalize_delivery_record,
    get_articles_by_category,
    get_delivery_stats,
    get_profile,
    get_setting,
    get_user_config,
    has_delivery_record,
    init_db,
    insert_articles,
    list_recent_sent_records,
    release_lease,
    set_record_reaction,
    set_setting,
    try_acquire_lease,
    update_profile,
    update_user_config,
    upsert_user_config,
)
from notified.utils import utc_now


def test_migrations_idempotent(db_path):
    first = init_db(db_path)
    first.close()
    second = init_db(db_path)
    versions = [row[0] for row in second.execute("SELECT version FROM schema_migrations")]
    assert sorted(versions) == ["001_initial_schema", "002_delivery_ledger", "003_leases"]
    second.close()


def test_settings_round_trip(conn):
    assert get_setting(conn, "missing", "fallback") == "fallback"
    set_setting(conn, "decay.last_applied_at", "2024-01-01T00:00:00+00:00")
    assert get_setting(conn, "decay.last_applied_at", None) == "2024-01-01T00:00:00+00:00"


def test_delivery_record_unique_per_article(conn):
    first = create_delivery_record(conn, user_id="u1", message="m", article_fingerprint="fp1")
    assert first is not None
    assert first.status == "PENDING"
    assert first.reaction == "none"
    assert create_delivery_record(conn, user_id="u1", message="m", article_fingerprint="fp1") is None
    assert create_delivery_record(conn, user_id="u2", message="m", article_fingerprint="fp1")
    assert has_delivery_record(conn, "u1", "fp1")
    assert not has_delivery_record(conn, "u1", "fp2")
    # Manual sends carry no fingerprint and are never deduplicated.
    assert create_delivery_record(conn, user_id="u1", message="a")
    assert create_delivery_record(conn, user_id="u1", message="a")


def test_finalize_is_terminal(conn):
    record = create_delivery_record(conn, user_id="u1", message="m")
    assert finalize_delivery_record(
        conn,
        record.id,
        status=DeliveryStatus.FAILED,
        channels_attempted=["EMAIL"],
        failed_channels=["EMAIL"],
        message_ref=None,
        error="EMAIL:down",
    )
    assert not finalize_delivery_record(
        conn,
        record.id,
        status=DeliveryStatus.SENT,
        channels_attempted=["EMAIL"],
        failed_channels=[],
        message_ref="x",
        error=None,
    )
    with pytest.raises(ValueError):
        finalize_delivery_record(
            conn,
            record.id,
            status=DeliveryStatus.PENDING,
            channels_attempted=[],
            failed_channels=[],
            message_ref=None,
            error=None,
        )


def test_update_user_config(conn):
    upsert_user_config(
        conn,
        UserChannelConfig(
            user_id="u1",
            categories=["sports"],
            enabled_channels=["email"],
            contacts={"EMAIL": "u1@example.com"},
            notification_interval_minutes=30,
            last_notification_sent_at=None,
        ),
    )
    updated = update_user_config(conn, "u1", {"last_notification_sent_at": "2024-01-01T00:00:00+00:00"})
    assert updated.categories == ["SPORTS"]
    assert updated.enabled_channels == ["EMAIL"]
    assert updated.last_notification_sent_at == "2024-01-01T00:00:00+00:00"
    with pytest.raises(NotFoundError):
        update_user_config(conn, "ghost", {"notification_interval_minutes": 5})
    with pytest.raises(ValueError):
        update_user_config(conn, "u1", {"colour": "blue"})


def test_update_profile_is_atomic_merge(conn):
    def bump(current):
        profile = current or PreferenceProfile(user_id="u1")
        profile.category_scores["SPORTS"] = profile.category_scores.get("SPORTS", 0.0) + 1
        return profile

    update_profile(conn, "u1", bump)
    update_profile(conn, "u1", bump)
    assert get_profile(conn, "u1").category_scores == {"SPORTS": 2.0}
    assert update_profile(conn, "ghost", lambda current: None) is None
    assert get_profile(conn, "ghost") is None


def test_update_profile_rolls_back_on_error(conn):
    update_profile(conn, "u1", lambda current: PreferenceProfile(user_id="u1", total_likes=1))

    def broken(current):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        update_profile(conn, "u1", broken)
    assert get_profile(conn, "u1").total_likes == 1


def test_lease_single_holder(conn):
    now = utc_now()
    assert try_acquire_lease(conn, "delivery_cycle", "a", 60, now=now)
    assert not try_acquire_lease(conn, "delivery_cycle", "b", 60, now=now)
    assert try_acquire_lease(conn, "delivery_cycle", "a", 60, now=now)
    assert try_acquire_lease(conn, "delivery_cycle", "b", 60, now=now + timedelta(seconds=61))
    assert not release_lease(conn, "delivery_cycle", "a")
    assert release_lease(conn, "delivery_cycle", "b")
    assert try_acquire_lease(conn, "delivery_cycle", "c", 60, now=now)


def test_delivery_stats(conn):
    now = utc_now()
    sent = create_delivery_record(conn, user_id="u1", message="m")
    finalize_delivery_record(
        conn,
        sent.id,
        status=DeliveryStatus.SENT,
        channels_attempted=["EMAIL", "TELEGRAM"],
        failed_channels=["TELEGRAM"],
        message_ref=None,
        error=None,
    )
    set_record_reaction(conn, sent.id, Reaction.LIKE)
    create_delivery_record(conn, user_id="u2", message="m")
    stats = get_delivery_stats(conn, now=now + timedelta(minutes=1))
    assert stats["total_notifications"] == 2
    assert stats["by_status"] == {"SENT": 1, "PENDING": 1}
    assert stats["by_channel"] == {"EMAIL": 1, "TELEGRAM": 1}
    assert stats["reactions"] == {"likes": 1, "dislikes": 0}
    assert stats["sent_last_24_hours"] == 1
    assert stats["sent_last_7_days"] == 1
    assert len(stats["daily_breakdown"]) == 7


def _article(title: str, published_at: str | None) -> Article:
    return Article(
        id=None,
        category="SPORTS",
        title=title,
        description=None,
        link=f"https://example.com/{title}",
        source="BBC Sport",
        published_at=published_at,
        content_fingerprint=title,
        ingested_at="2024-05-01T12:00:00+00:00",
    )


def test_articles_ordered_by_instant_across_offsets(conn):
    insert_articles(
        conn,
        [
            _article("utc_0900", "2024-05-01T09:00:00Z"),
            _article("ist_1600", "2024-05-01T16:00:00+05:30"),
            _article("space_1100", "2024-05-01 11:00:00+00:00"),
            _article("undated", None),
            _article("garbled", "yesterday-ish"),
        ],
    )
    articles = get_articles_by_category(conn, "sports", 5)
    assert [a.title for a in articles[:3]] == ["space_1100", "ist_1600", "utc_0900"]
    assert articles[0].published_at == "2024-05-01T11:00:00+00:00"
    assert articles[1].published_at == "2024-05-01T10:30:00+00:00"
    assert {a.title for a in articles[3:]} == {"undated", "garbled"}
    assert all(a.published_at is None for a in articles[3:])
    assert [a.title for a in get_articles_by_category(conn, "SPORTS", 1)] == ["space_1100"]


def test_delete_user_config(conn):
    upsert_user_config(
        conn,
        UserChannelConfig(
            user_id="u1",
            categories=["SPORTS"],
            enabled_channels=["EMAIL"],
            contacts={},
            notification_interval_minutes=30,
            last_notification_sent_at=None,
        ),
    )
    assert delete_user_config(conn, "u1")
    assert get_user_config(conn, "u1") is None
    assert not delete_user_config(conn, "u1")


def test_recent_sent_records_and_user_count(conn):
    older = create_delivery_record(conn, user_id="u1", message="a")
    newer = create_delivery_record(conn, user_id="u2", message="b")
    create_delivery_record(conn, user_id="u2", message="pending")
    for record, sent_at in ((older, "2024-05-01T09:00:00+00:00"), (newer, "2024-05-01T10:00:00+00:00")):
        finalize_delivery_record(
            conn,
            record.id,
            status=DeliveryStatus.SENT,
            channels_attempted=["APP"],
            failed_channels=[],
            message_ref=None,
            error=None,
            sent_at=sent_at,
        )
    assert [r.id for r in list_recent_sent_records(conn, limit=5)] == [newer.id, older.id]
    assert [r.id for r in list_recent_sent_records(conn, limit=1)] == [newer.id]
    assert count_notified_users(conn) == 2


def test_update_user_config_row_vanishing_raises_not_found(conn, monkeypatch):
    upsert_user_config(
        conn,
        UserChannelConfig(
            user_id="u1",
            categories=["SPORTS"],
            enabled_channels=["APP"],
            contacts={},
            notification_interval_minutes=30,
            last_notification_sent_at=None,
        ),
    )
    monkeypatch.setattr(storage, "get_user_config", lambda conn, user_id: None)
    with pytest.raises(NotFoundError):
        update_user_config(conn, "u1", {"notification_interval_minutes": 5})
