from __future__ import annotations

import argparse
import logging
import os
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Mapping

from .channels import ChannelAdapter, build_adapters
from .config import Config, ConfigError, bootstrap_runtime_config, load_runtime_config
from .db import get_state_db_path
from .errors import UpstreamUnavailable
from .orchestrator import run_cycle
from .reactions import apply_decay
from .storage import get_setting, init_db, set_setting
from .utils import configure_logging, log_event, parse_iso, to_iso, utc_now

DECAY_SETTING_KEY = "decay.last_applied_at"
DEFAULT_SLEEP_SECONDS = 60


def _setup_logging() -> logging.Logger:
    return configure_logging("notified.worker")


def run_once(
    worker_id: str,
    *,
    db_path: str | None = None,
    adapters: Mapping[str, ChannelAdapter] | None = None,
    now: datetime | None = None,
) -> int:
    logger = _setup_logging()
    db_path = db_path or get_state_db_path()
    try:
        conn = init_db(db_path)
    except sqlite3.Error as exc:
        log_event(logger, logging.ERROR, "tick_failed", worker_id=worker_id, error=exc)
        return 1
    try:
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
        now = now or utc_now()
        report = run_cycle(
            db_path,
            config,
            adapters if adapters is not None else build_adapters(config.channels),
            now=now,
            holder=worker_id,
        )
        if report.skipped:
            log_event(logger, logging.INFO, "tick_cycle_skipped", worker_id=worker_id, reason=report.reason)
        _maybe_apply_decay(conn, config, now, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    except (sqlite3.Error, UpstreamUnavailable) as exc:
        log_event(logger, logging.ERROR, "tick_failed", worker_id=worker_id, error=exc)
        return 1
    finally:
        conn.close()
    return 0


def _maybe_apply_decay(conn, config: Config, now: datetime, logger: logging.Logger) -> bool:
    if not config.decay.enabled:
        return False
    last_applied = get_setting(conn, DECAY_SETTING_KEY, None)
    last_dt = parse_iso(last_applied) if isinstance(last_applied, str) else None
    if last_dt is None:
        # First tick only starts the clock; no reactions have aged yet.
        set_setting(conn, DECAY_SETTING_KEY, to_iso(now))
        return False
    if last_dt + timedelta(hours=config.decay.interval_hours) > now:
        return False
    count = apply_decay(conn, prune_threshold=config.decay.prune_threshold)
    set_setting(conn, DECAY_SETTING_KEY, to_iso(now))
    log_event(logger, logging.INFO, "scheduled_decay_complete", profiles=count)
    return True


def run_loop(worker_id: str, sleep_seconds: int | None = None) -> int:
    logger = _setup_logging()
    log_event(logger, logging.INFO, "worker_started", worker_id=worker_id)
    while True:
        if run_once(worker_id) != 0:
            log_event(logger, logging.WARNING, "tick_unsuccessful", worker_id=worker_id)
        time.sleep(sleep_seconds if sleep_seconds is not None else _cycle_interval(logger))


def _cycle_interval(logger: logging.Logger) -> int:
    try:
        conn = init_db()
    except sqlite3.Error as exc:
        log_event(logger, logging.ERROR, "config_unavailable", error=exc)
        return DEFAULT_SLEEP_SECONDS
    try:
        return load_runtime_config(conn).delivery.cycle_interval_seconds
    except (ConfigError, sqlite3.Error) as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return DEFAULT_SLEEP_SECONDS
    finally:
        conn.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notified-worker")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument(
        "--sleep-seconds",
        type=int,
        default=None,
        help="Seconds between ticks (defaults to delivery.cycle_interval_seconds)",
    )
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once(args.worker_id)
    return run_loop(args.worker_id, args.sleep_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
