"""Scheduled delivery cycle.

For each user whose notification interval has elapsed: pull the newest
articles of their categories, drop anything already in the delivery
ledger, rank the rest, and deliver the top few over every enabled channel.

Each delivery record is written PENDING before any channel is tried so the
channel message (chat buttons and the like) can point back at it. If the
process dies between that write and the send, the next cycle sees the
record and will not retry the article. That gap is accepted; reactions
depend on the record existing first.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping

from .channels import ChannelAdapter
from .config import Config
from .db import DBConn
from .dispatcher import dispatch_and_record
from .errors import UpstreamUnavailable
from .models import Article, CycleReport, DeliveryStatus, UserChannelConfig
from .recommender import fetch_unseen_candidates, rank_for_user
from .storage import (
    create_delivery_record,
    init_db,
    list_user_configs,
    release_lease,
    try_acquire_lease,
    update_user_config,
)
from .utils import log_event, parse_iso, to_iso, utc_now

CYCLE_LEASE = "delivery_cycle"

logger = logging.getLogger("notified.orchestrator")

_CYCLE_LOCK = threading.Lock()


@dataclass(frozen=True)
class UserBatchResult:
    user_id: str
    status: str
    created: int = 0
    sent: int = 0
    failed: int = 0
    error: str | None = None


def is_eligible(user: UserChannelConfig, now: datetime) -> bool:
    last_sent = parse_iso(user.last_notification_sent_at)
    if last_sent is None:
        return True
    return now - last_sent >= timedelta(minutes=user.notification_interval_minutes)


def format_article_message(article: Article) -> tuple[str, str]:
    subject = f"{article.category} News: {article.title}"
    lines = [article.category.upper(), "", article.title, ""]
    if article.description:
        lines.extend([article.description, ""])
    if article.link:
        lines.append(f"Link: {article.link}")
    lines.append(f"Source: {article.source or 'unknown'}")
    return subject, "\n".join(lines)


def process_user(
    conn: DBConn,
    user: UserChannelConfig,
    config: Config,
    adapters: Mapping[str, ChannelAdapter],
    now: datetime,
) -> UserBatchResult:
    if not user.categories:
        return UserBatchResult(user_id=user.user_id, status="no_categories")

    try:
        candidates = fetch_unseen_candidates(
            conn, user.user_id, user.categories, config.delivery.per_category_limit
        )
    except UpstreamUnavailable as exc:
        log_event(
            logger,
            logging.WARNING,
            "user_skipped_upstream_unavailable",
            user_id=user.user_id,
            component=exc.component,
            error=exc.detail,
        )
        return UserBatchResult(user_id=user.user_id, status="upstream_unavailable", error=str(exc))
    if not candidates:
        log_event(logger, logging.DEBUG, "user_no_candidates", user_id=user.user_id)
        return UserBatchResult(user_id=user.user_id, status="no_candidates")

    ranked = rank_for_user(conn, user.user_id, candidates, now=now, config=config.recommender)
    selected = ranked[: config.delivery.max_articles_per_batch]
    batch_id = uuid.uuid4().hex[:8]
    created = sent = failed = 0
    for scored in selected:
        article = scored.article
        subject, message = format_article_message(article)
        record = create_delivery_record(
            conn,
            user_id=user.user_id,
            message=message,
            subject=subject,
            article_fingerprint=article.content_fingerprint,
            batch_id=batch_id,
            created_at=to_iso(now),
        )
        if record is None:
            # Another writer recorded this article between selection and insert.
            log_event(
                logger,
                logging.INFO,
                "delivery_already_recorded",
                user_id=user.user_id,
                article_fingerprint=article.content_fingerprint,
            )
            continue
        created += 1
        outcome, _ = dispatch_and_record(
            conn,
            user,
            record,
            adapters,
            timeout_seconds=config.delivery.channel_timeout_seconds,
        )
        if outcome.status == DeliveryStatus.SENT:
            sent += 1
        else:
            failed += 1

    if created == 0:
        return UserBatchResult(user_id=user.user_id, status="no_candidates")

    try:
        update_user_config(conn, user.user_id, {"last_notification_sent_at": to_iso(now)})
    except (sqlite3.Error, LookupError) as exc:
        # Left unset so the user is picked up again next cycle.
        log_event(
            logger,
            logging.ERROR,
            "last_sent_update_failed",
            user_id=user.user_id,
            error=exc,
        )
    log_event(
        logger,
        logging.INFO,
        "user_batch_complete",
        user_id=user.user_id,
        batch_id=batch_id,
        created=created,
        sent=sent,
        failed=failed,
        interval_minutes=user.notification_interval_minutes,
    )
    return UserBatchResult(
        user_id=user.user_id, status="delivered", created=created, sent=sent, failed=failed
    )


def _process_user_thread(
    db_path: str,
    user: UserChannelConfig,
    config: Config,
    adapters: Mapping[str, ChannelAdapter],
    now: datetime,
) -> UserBatchResult:
    conn = None
    try:
        conn = init_db(db_path)
        return process_user(conn, user, config, adapters, now)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "user_batch_failed", user_id=user.user_id, error=exc)
        return UserBatchResult(user_id=user.user_id, status="error", error=str(exc))
    finally:
        if conn is not None:
            conn.close()


def run_cycle(
    db_path: str,
    config: Config,
    adapters: Mapping[str, ChannelAdapter],
    *,
    now: datetime | None = None,
    holder: str | None = None,
) -> CycleReport:
    """Run one delivery cycle unless another one is already in progress."""
    if not _CYCLE_LOCK.acquire(blocking=False):
        log_event(logger, logging.INFO, "cycle_skipped", reason="cycle_in_progress")
        return CycleReport(skipped=True, reason="cycle_in_progress")
    holder = holder or f"cycle-{uuid.uuid4().hex[:8]}"
    try:
        try:
            conn = init_db(db_path)
        except sqlite3.Error as exc:
            log_event(
                logger,
                logging.ERROR,
                "cycle_skipped_upstream_unavailable",
                component="state_db",
                error=exc,
            )
            return CycleReport(skipped=True, reason="upstream_unavailable")
        try:
            return _run_cycle_leased(conn, db_path, config, adapters, now, holder)
        finally:
            conn.close()
    finally:
        _CYCLE_LOCK.release()


def _run_cycle_leased(
    conn: DBConn,
    db_path: str,
    config: Config,
    adapters: Mapping[str, ChannelAdapter],
    now: datetime | None,
    holder: str,
) -> CycleReport:
    if not try_acquire_lease(conn, CYCLE_LEASE, holder, config.delivery.lease_ttl_seconds):
        log_event(logger, logging.INFO, "cycle_skipped", reason="lease_held")
        return CycleReport(skipped=True, reason="lease_held")
    try:
        return _run_cycle_locked(conn, db_path, config, adapters, now or utc_now())
    finally:
        release_lease(conn, CYCLE_LEASE, holder)


def _run_cycle_locked(
    conn: DBConn,
    db_path: str,
    config: Config,
    adapters: Mapping[str, ChannelAdapter],
    now: datetime,
) -> CycleReport:
    try:
        users = list_user_configs(conn)
    except sqlite3.Error as exc:
        log_event(
            logger,
            logging.ERROR,
            "cycle_skipped_upstream_unavailable",
            component="user_preference_store",
            error=exc,
        )
        return CycleReport(skipped=True, reason="upstream_unavailable")

    eligible = [user for user in users if is_eligible(user, now)]
    if not eligible:
        log_event(logger, logging.DEBUG, "cycle_no_eligible_users", users=len(users))
        return CycleReport(skipped=False, users_total=len(users))
    log_event(logger, logging.INFO, "cycle_started", users=len(users), eligible=len(eligible))

    workers = max(1, min(config.delivery.user_concurrency, len(eligible)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="delivery") as executor:
        results = list(
            executor.map(
                lambda user: _process_user_thread(db_path, user, config, adapters, now),
                eligible,
            )
        )

    report = CycleReport(
        skipped=False,
        users_total=len(users),
        users_eligible=len(eligible),
        users_processed=sum(1 for r in results if r.status == "delivered"),
        users_failed=sum(1 for r in results if r.status in {"error", "upstream_unavailable"}),
        records_created=sum(r.created for r in results),
        records_sent=sum(r.sent for r in results),
        records_failed=sum(r.failed for r in results),
    )
    log_event(
        logger,
        logging.INFO,
        "cycle_complete",
        users_processed=report.users_processed,
        users_failed=report.users_failed,
        records_created=report.records_created,
        records_sent=report.records_sent,
        records_failed=report.records_failed,
    )
    return report
