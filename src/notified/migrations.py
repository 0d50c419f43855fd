from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    # Schema changes go through new migrations only; never edit an applied one.
    logger = logging.getLogger("notified.migrations")
    if conn.in_transaction:
        conn.commit()
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
                (version, datetime.now(tz=timezone.utc).isoformat()),
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
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content_fingerprint TEXT NOT NULL UNIQUE,
            category TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NULL,
            link TEXT NULL,
            source TEXT NULL,
            published_at TEXT NULL,
            ingested_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_articles_category_published
        ON articles(category, published_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_channel_configs (
            user_id TEXT PRIMARY KEY,
            categories_json TEXT NOT NULL DEFAULT '[]',
            enabled_channels_json TEXT NOT NULL DEFAULT '[]',
            contacts_json TEXT NOT NULL DEFAULT '{}',
            notification_interval_minutes INTEGER NOT NULL DEFAULT 60,
            last_notification_sent_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS preference_profiles (
            user_id TEXT PRIMARY KEY,
            category_scores_json TEXT NOT NULL DEFAULT '{}',
            source_scores_json TEXT NOT NULL DEFAULT '{}',
            keyword_scores_json TEXT NOT NULL DEFAULT '{}',
            total_likes INTEGER NOT NULL DEFAULT 0,
            total_dislikes INTEGER NOT NULL DEFAULT 0,
            decay_factor REAL NOT NULL DEFAULT 0.95,
            last_updated_at TEXT NOT NULL
        )
        """
    )


def _migration_delivery_ledger(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS delivery_records (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            article_fingerprint TEXT NULL,
            batch_id TEXT NULL,
            subject TEXT NULL,
            message TEXT NOT NULL,
            channels_attempted_json TEXT NOT NULL DEFAULT '[]',
            failed_channels_json TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'PENDING',
            created_at TEXT NOT NULL,
            sent_at TEXT NULL,
            channel_message_ref TEXT NULL,
            reaction TEXT NOT NULL DEFAULT 'none',
            error TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_delivery_user_article
        ON delivery_records(user_id, article_fingerprint)
        WHERE article_fingerprint IS NOT NULL
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_delivery_message_ref
        ON delivery_records(channel_message_ref)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_delivery_user_created
        ON delivery_records(user_id, created_at)
        """
    )


def _migration_leases(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_delivery_ledger", _migration_delivery_ledger),
        ("003_leases", _migration_leases),
    ]
