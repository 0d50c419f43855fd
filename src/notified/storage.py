from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from .db import DBConn, connect_db
from .errors import NotFoundError
from .models import (
    Article,
    DeliveryRecord,
    DeliveryStatus,
    PreferenceProfile,
    Reaction,
    UserChannelConfig,
)
from .utils import json_dumps, json_loads_or, parse_iso, to_iso, utc_now, utc_now_iso

_ARTICLE_COLUMNS = """
    id, category, title, description, link, source, published_at,
    content_fingerprint, ingested_at
"""

_USER_COLUMNS = """
    user_id, categories_json, enabled_channels_json, contacts_json,
    notification_interval_minutes, last_notification_sent_at
"""

_PROFILE_COLUMNS = """
    user_id, category_scores_json, source_scores_json, keyword_scores_json,
    total_likes, total_dislikes, decay_factor, last_updated_at
"""

_RECORD_COLUMNS = """
    id, user_id, article_fingerprint, batch_id, subject, message,
    channels_attempted_json, failed_channels_json, status, created_at, sent_at,
    channel_message_ref, reaction, error
"""


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


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


# Article source. Category is the logical partition and is always passed
# explicitly by the caller.


def insert_articles(conn: Any, articles: Iterable[Article]) -> int:
    rows = [
        (
            article.content_fingerprint,
            article.category.upper(),
            article.title,
            article.description,
            article.link,
            article.source,
            _normalize_timestamp(article.published_at),
            article.ingested_at,
        )
        for article in articles
    ]
    if not rows:
        return 0
    before = conn.total_changes
    conn.executemany(
        """
        INSERT OR IGNORE INTO articles
            (content_fingerprint, category, title, description, link, source,
             published_at, ingested_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    conn.commit()
    return conn.total_changes - before


def _normalize_timestamp(value: str | None) -> str | None:
    # Stored as UTC ISO text so ORDER BY on the column is chronological.
    parsed = parse_iso(value)
    return to_iso(parsed) if parsed else None


def get_articles_by_category(conn: Any, category: str, limit: int) -> list[Article]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS}
        FROM articles
        WHERE category = ?
        ORDER BY published_at IS NULL, published_at DESC, id DESC
        LIMIT ?
        """,
        (category.upper(), limit),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def count_articles_by_category(conn: Any, category: str) -> int:
    cursor = conn.execute(
        "SELECT COUNT(*) FROM articles WHERE category = ?", (category.upper(),)
    )
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def get_article_by_fingerprint(conn: Any, fingerprint: str) -> Article | None:
    cursor = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE content_fingerprint = ?",
        (fingerprint,),
    )
    row = cursor.fetchone()
    return _row_to_article(row) if row else None


# User preference store (channel configs).


def list_user_configs(conn: Any) -> list[UserChannelConfig]:
    cursor = conn.execute(f"SELECT {_USER_COLUMNS} FROM user_channel_configs ORDER BY user_id")
    return [_row_to_user_config(row) for row in cursor.fetchall()]


def get_user_config(conn: Any, user_id: str) -> UserChannelConfig | None:
    cursor = conn.execute(
        f"SELECT {_USER_COLUMNS} FROM user_channel_configs WHERE user_id = ?",
        (user_id,),
    )
    row = cursor.fetchone()
    return _row_to_user_config(row) if row else None


def upsert_user_config(conn: Any, config: UserChannelConfig) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO user_channel_configs
            (user_id, categories_json, enabled_channels_json, contacts_json,
             notification_interval_minutes, last_notification_sent_at,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            categories_json=excluded.categories_json,
            enabled_channels_json=excluded.enabled_channels_json,
            contacts_json=excluded.contacts_json,
            notification_interval_minutes=excluded.notification_interval_minutes,
            last_notification_sent_at=excluded.last_notification_sent_at,
            updated_at=excluded.updated_at
        """,
        (
            config.user_id,
            json_dumps([category.upper() for category in config.categories]),
            json_dumps([channel.upper() for channel in config.enabled_channels]),
            json_dumps(config.contacts),
            config.notification_interval_minutes,
            config.last_notification_sent_at,
            now,
            now,
        ),
    )
    conn.commit()


def delete_user_config(conn: Any, user_id: str) -> bool:
    cursor = conn.execute("DELETE FROM user_channel_configs WHERE user_id = ?", (user_id,))
    conn.commit()
    return cursor.rowcount == 1


_USER_UPDATABLE = {
    "categories": ("categories_json", lambda v: json_dumps([str(c).upper() for c in v])),
    "enabled_channels": (
        "enabled_channels_json",
        lambda v: json_dumps([str(c).upper() for c in v]),
    ),
    "contacts": ("contacts_json", json_dumps),
    "notification_interval_minutes": ("notification_interval_minutes", int),
    "last_notification_sent_at": ("last_notification_sent_at", lambda v: v),
}


def update_user_config(conn: Any, user_id: str, partial: dict[str, Any]) -> UserChannelConfig:
    assignments = []
    params: list[object] = []
    for key, value in partial.items():
        if key not in _USER_UPDATABLE:
            raise ValueError(f"unknown user config field: {key}")
        column, encode = _USER_UPDATABLE[key]
        assignments.append(f"{column} = ?")
        params.append(encode(value))
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(user_id)
    cursor = conn.execute(
        f"UPDATE user_channel_configs SET {', '.join(assignments)} WHERE user_id = ?",
        tuple(params),
    )
    conn.commit()
    if cursor.rowcount != 1:
        raise NotFoundError(f"user not found: {user_id}")
    updated = get_user_config(conn, user_id)
    if updated is None:
        raise NotFoundError(f"user not found: {user_id}")
    return updated


# Preference profile store.


def get_profile(conn: Any, user_id: str) -> PreferenceProfile | None:
    cursor = conn.execute(
        f"SELECT {_PROFILE_COLUMNS} FROM preference_profiles WHERE user_id = ?",
        (user_id,),
    )
    row = cursor.fetchone()
    return _row_to_profile(row) if row else None


def list_profile_user_ids(conn: Any) -> list[str]:
    cursor = conn.execute("SELECT user_id FROM preference_profiles ORDER BY user_id")
    return [row[0] for row in cursor.fetchall()]


def save_profile(conn: Any, profile: PreferenceProfile, *, commit: bool = True) -> None:
    conn.execute(
        """
        INSERT INTO preference_profiles
            (user_id, category_scores_json, source_scores_json, keyword_scores_json,
             total_likes, total_dislikes, decay_factor, last_updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            category_scores_json=excluded.category_scores_json,
            source_scores_json=excluded.source_scores_json,
            keyword_scores_json=excluded.keyword_scores_json,
            total_likes=excluded.total_likes,
            total_dislikes=excluded.total_dislikes,
            decay_factor=excluded.decay_factor,
            last_updated_at=excluded.last_updated_at
        """,
        (
            profile.user_id,
            json_dumps(profile.category_scores),
            json_dumps(profile.source_scores),
            json_dumps(profile.keyword_scores),
            profile.total_likes,
            profile.total_dislikes,
            profile.decay_factor,
            profile.last_updated_at or utc_now_iso(),
        ),
    )
    if commit:
        conn.commit()


def update_profile(
    conn: DBConn,
    user_id: str,
    mutate: Callable[[PreferenceProfile | None], PreferenceProfile | None],
) -> PreferenceProfile | None:
    """Atomically read, mutate and write one profile.

    ``mutate`` receives the stored profile (or None) and returns the profile
    to persist, or None to leave the row untouched. The whole exchange runs
    under one write transaction.
    """
    with conn.transaction():
        current = get_profile(conn, user_id)
        updated = mutate(current)
        if updated is not None:
            save_profile(conn, updated, commit=False)
    return updated


# Delivery ledger.


def create_delivery_record(
    conn: Any,
    *,
    user_id: str,
    message: str,
    subject: str | None = None,
    article_fingerprint: str | None = None,
    batch_id: str | None = None,
    created_at: str | None = None,
) -> DeliveryRecord | None:
    """Insert a PENDING record; returns None if (user, article) is already recorded."""
    record_id = uuid.uuid4().hex
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO delivery_records
            (id, user_id, article_fingerprint, batch_id, subject, message,
             status, created_at, reaction)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record_id,
            user_id,
            article_fingerprint,
            batch_id,
            subject,
            message,
            DeliveryStatus.PENDING.value,
            created_at or utc_now_iso(),
            Reaction.NONE.value,
        ),
    )
    conn.commit()
    if cursor.rowcount != 1:
        return None
    return get_delivery_record(conn, record_id)


def has_delivery_record(conn: Any, user_id: str, article_fingerprint: str) -> bool:
    cursor = conn.execute(
        "SELECT 1 FROM delivery_records WHERE user_id = ? AND article_fingerprint = ?",
        (user_id, article_fingerprint),
    )
    return cursor.fetchone() is not None


def get_delivery_record(conn: Any, record_id: str) -> DeliveryRecord | None:
    cursor = conn.execute(
        f"SELECT {_RECORD_COLUMNS} FROM delivery_records WHERE id = ?", (record_id,)
    )
    row = cursor.fetchone()
    return _row_to_record(row) if row else None


def find_delivery_record_by_ref(
    conn: Any, message_ref: str, user_id: str | None = None
) -> DeliveryRecord | None:
    if user_id:
        cursor = conn.execute(
            f"""
            SELECT {_RECORD_COLUMNS} FROM delivery_records
            WHERE channel_message_ref = ? AND user_id = ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (message_ref, user_id),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_RECORD_COLUMNS} FROM delivery_records
            WHERE channel_message_ref = ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (message_ref,),
        )
    row = cursor.fetchone()
    return _row_to_record(row) if row else None


def list_delivery_records(conn: Any, limit: int | None = None) -> list[DeliveryRecord]:
    sql = f"SELECT {_RECORD_COLUMNS} FROM delivery_records ORDER BY created_at DESC, id"
    params: tuple = ()
    if limit is not None:
        sql += " LIMIT ?"
        params = (limit,)
    return [_row_to_record(row) for row in conn.execute(sql, params).fetchall()]


def list_delivery_records_for_user(conn: Any, user_id: str) -> list[DeliveryRecord]:
    cursor = conn.execute(
        f"""
        SELECT {_RECORD_COLUMNS} FROM delivery_records
        WHERE user_id = ?
        ORDER BY created_at DESC, id
        """,
        (user_id,),
    )
    return [_row_to_record(row) for row in cursor.fetchall()]


def finalize_delivery_record(
    conn: Any,
    record_id: str,
    *,
    status: DeliveryStatus,
    channels_attempted: list[str],
    failed_channels: list[str],
    message_ref: str | None,
    error: str | None,
    sent_at: str | None = None,
) -> bool:
    if status == DeliveryStatus.PENDING:
        raise ValueError("finalize requires a terminal status")
    cursor = conn.execute(
        """
        UPDATE delivery_records
        SET status = ?,
            channels_attempted_json = ?,
            failed_channels_json = ?,
            channel_message_ref = COALESCE(?, channel_message_ref),
            sent_at = ?,
            error = ?
        WHERE id = ? AND status = 'PENDING'
        """,
        (
            status.value,
            json_dumps(channels_attempted),
            json_dumps(failed_channels),
            message_ref,
            (sent_at or utc_now_iso()) if status == DeliveryStatus.SENT else None,
            error,
            record_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_record_reaction(conn: Any, record_id: str, reaction: Reaction) -> bool:
    cursor = conn.execute(
        "UPDATE delivery_records SET reaction = ? WHERE id = ?",
        (reaction.value, record_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def delete_delivery_record(conn: Any, record_id: str) -> bool:
    cursor = conn.execute("DELETE FROM delivery_records WHERE id = ?", (record_id,))
    conn.commit()
    return cursor.rowcount == 1


def list_recent_sent_records(conn: Any, limit: int = 20) -> list[DeliveryRecord]:
    cursor = conn.execute(
        f"""
        SELECT {_RECORD_COLUMNS} FROM delivery_records
        WHERE sent_at IS NOT NULL
        ORDER BY sent_at DESC, id
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_record(row) for row in cursor.fetchall()]


def count_notified_users(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(DISTINCT user_id) FROM delivery_records").fetchone()
    return int(row[0]) if row else 0


def get_delivery_stats(conn: Any, now: datetime | None = None) -> dict[str, object]:
    now = now or utc_now()
    records = list_delivery_records(conn)
    by_status: dict[str, int] = {}
    by_channel: dict[str, int] = {}
    likes = dislikes = 0
    sent_24h = sent_7d = 0
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    daily = {(day_start - timedelta(days=offset)).date().isoformat(): 0 for offset in range(6, -1, -1)}
    for record in records:
        by_status[record.status] = by_status.get(record.status, 0) + 1
        for channel in record.channels_attempted:
            by_channel[channel] = by_channel.get(channel, 0) + 1
        if record.reaction == Reaction.LIKE.value:
            likes += 1
        elif record.reaction == Reaction.DISLIKE.value:
            dislikes += 1
        sent_at = parse_iso(record.sent_at)
        if sent_at is None:
            continue
        if sent_at > now - timedelta(hours=24):
            sent_24h += 1
        if sent_at > now - timedelta(days=7):
            sent_7d += 1
        day = sent_at.date().isoformat()
        if day in daily:
            daily[day] += 1
    return {
        "total_notifications": len(records),
        "by_status": by_status,
        "by_channel": by_channel,
        "reactions": {"likes": likes, "dislikes": dislikes},
        "sent_last_24_hours": sent_24h,
        "sent_last_7_days": sent_7d,
        "daily_breakdown": daily,
    }


# Leases keep a named piece of work single-flight across processes.


def try_acquire_lease(
    conn: DBConn,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
    now: datetime | None = None,
) -> bool:
    now = now or utc_now()
    expires_at = to_iso(now + timedelta(seconds=ttl_seconds))
    try:
        with conn.transaction():
            row = conn.execute(
                "SELECT holder, expires_at FROM leases WHERE name = ?", (lease_name,)
            ).fetchone()
            if row:
                current_holder, current_expiry = row
                expiry = parse_iso(current_expiry)
                if current_holder != holder and expiry is not None and expiry > now:
                    return False
            conn.execute(
                """
                INSERT INTO leases (name, holder, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                """,
                (lease_name, holder, to_iso(now), expires_at),
            )
    except sqlite3.OperationalError:
        return False
    return True


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?", (lease_name, holder)
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_article(row: tuple) -> Article:
    (
        article_id,
        category,
        title,
        description,
        link,
        source,
        published_at,
        fingerprint,
        ingested_at,
    ) = row
    return Article(
        id=article_id,
        category=category,
        title=title,
        description=description,
        link=link,
        source=source,
        published_at=published_at,
        content_fingerprint=fingerprint,
        ingested_at=ingested_at,
    )


def _row_to_user_config(row: tuple) -> UserChannelConfig:
    (
        user_id,
        categories_json,
        channels_json,
        contacts_json,
        interval,
        last_sent,
    ) = row
    return UserChannelConfig(
        user_id=user_id,
        categories=list(json_loads_or(categories_json, [])),
        enabled_channels=list(json_loads_or(channels_json, [])),
        contacts=dict(json_loads_or(contacts_json, {})),
        notification_interval_minutes=int(interval),
        last_notification_sent_at=last_sent,
    )


def _row_to_profile(row: tuple) -> PreferenceProfile:
    (
        user_id,
        category_json,
        source_json,
        keyword_json,
        total_likes,
        total_dislikes,
        decay_factor,
        last_updated_at,
    ) = row
    return PreferenceProfile(
        user_id=user_id,
        category_scores=_float_map(category_json),
        source_scores=_float_map(source_json),
        keyword_scores=_float_map(keyword_json),
        total_likes=int(total_likes),
        total_dislikes=int(total_dislikes),
        decay_factor=float(decay_factor),
        last_updated_at=last_updated_at,
    )


def _row_to_record(row: tuple) -> DeliveryRecord:
    (
        record_id,
        user_id,
        fingerprint,
        batch_id,
        subject,
        message,
        attempted_json,
        failed_json,
        status,
        created_at,
        sent_at,
        message_ref,
        reaction,
        error,
    ) = row
    return DeliveryRecord(
        id=record_id,
        user_id=user_id,
        article_fingerprint=fingerprint,
        batch_id=batch_id,
        subject=subject,
        message=message,
        channels_attempted=list(json_loads_or(attempted_json, [])),
        failed_channels=list(json_loads_or(failed_json, [])),
        status=status,
        created_at=created_at,
        sent_at=sent_at,
        channel_message_ref=message_ref,
        reaction=reaction or Reaction.NONE.value,
        error=error,
    )


def _float_map(value: str | None) -> dict[str, float]:
    data = json_loads_or(value, {})
    if not isinstance(data, dict):
        return {}
    return {str(key): float(score) for key, score in data.items()}
