from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict
from datetime import datetime

import yaml

from .channels import build_adapters
from .config import ConfigError, bootstrap_runtime_config, load_runtime_config
from .db import get_state_db_path
from .errors import ValidationError
from .models import Article
from .normalize import normalize_category
from .orchestrator import run_cycle
from .reactions import apply_decay
from .recommender import get_recommendations
from .services.users_service import save_user
from .storage import init_db, insert_articles
from .utils import configure_logging, content_fingerprint, log_event, to_iso, utc_now_iso


def _setup_logging() -> logging.Logger:
    return configure_logging("notified.cli")


def _load_items(path: str) -> list[dict]:
    """Read a JSON or YAML file holding one mapping or a list of mappings."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(f"unable to read {path}: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValidationError(f"{path} must contain a mapping or a list of mappings")
    return data


def _timestamp_text(value: object) -> str | None:
    # Unquoted YAML timestamps arrive as datetime objects.
    if isinstance(value, datetime):
        return to_iso(value)
    return str(value) if value else None


def _article_from_item(item: dict, ingested_at: str) -> Article:
    title = str(item.get("title") or "").strip()
    category = normalize_category(item.get("category"))
    if not title or not category:
        raise ValidationError("articles need a title and a category")
    link = item.get("link") or item.get("url")
    published_at = item.get("published_at") or item.get("publishedAt")
    return Article(
        id=None,
        category=category,
        title=title,
        description=item.get("description"),
        link=link,
        source=item.get("source"),
        published_at=_timestamp_text(published_at),
        content_fingerprint=content_fingerprint(title, link),
        ingested_at=ingested_at,
    )


def _open(args: argparse.Namespace):
    conn = init_db(args.db or get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _cmd_init_db(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    log_event(logger, logging.INFO, "db_ready", path=conn.path)
    conn.close()
    return 0


def _cmd_import_articles(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        items = _load_items(args.path)
        now = utc_now_iso()
        articles = [_article_from_item(item, now) for item in items]
    except ValidationError as exc:
        log_event(logger, logging.ERROR, "articles_import_error", error=str(exc))
        return 1
    conn = _open(args)
    try:
        inserted = insert_articles(conn, articles)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "articles_imported", found=len(articles), inserted=inserted)
    return 0


def _cmd_upsert_user(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        for item in _load_items(args.path):
            saved = save_user(conn, str(item.get("user_id") or ""), item)
            log_event(logger, logging.INFO, "user_saved", user_id=saved["user_id"])
    except ValidationError as exc:
        log_event(logger, logging.ERROR, "user_upsert_error", error=str(exc))
        return 1
    finally:
        conn.close()
    return 0


def _cmd_run_cycle(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    report = run_cycle(conn.path, config, build_adapters(config.channels), holder="cli")
    log_event(logger, logging.INFO, "cycle_report", **asdict(report))
    return 0


def _cmd_apply_decay(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        config = load_runtime_config(conn)
        count = apply_decay(conn, prune_threshold=config.decay.prune_threshold)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "decay_complete", profiles=count)
    return 0


def _cmd_recommend(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = _open(args)
    try:
        config = load_runtime_config(conn)
        categories = [c.strip() for c in args.categories.split(",") if c.strip()] if args.categories else None
        ranked = get_recommendations(
            conn, args.user_id, categories, args.limit, config=config.recommender
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    output = [
        {
            "title": scored.article.title,
            "category": scored.article.category,
            "source": scored.article.source,
            "link": scored.article.link,
            "recommendation_score": round(scored.score, 2),
            "score_explanation": scored.explanation,
        }
        for scored in ranked
    ]
    print(json.dumps(output, indent=2))
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    if args.db:
        os.environ["NF_DB_PATH"] = os.path.abspath(args.db)
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("notified.api:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notified", description="Notified CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the sqlite database (defaults to $NF_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create or migrate the database")
    init_parser.set_defaults(func=_cmd_init_db)

    import_parser = subparsers.add_parser("import-articles", help="Load articles from JSON/YAML")
    import_parser.add_argument("path", help="File holding a list of articles")
    import_parser.set_defaults(func=_cmd_import_articles)

    user_parser = subparsers.add_parser("upsert-user", help="Create or update user channel configs")
    user_parser.add_argument("path", help="File holding one user config or a list of them")
    user_parser.set_defaults(func=_cmd_upsert_user)

    cycle_parser = subparsers.add_parser("run-cycle", help="Run one delivery cycle now")
    cycle_parser.set_defaults(func=_cmd_run_cycle)

    decay_parser = subparsers.add_parser("apply-decay", help="Decay every preference profile")
    decay_parser.set_defaults(func=_cmd_apply_decay)

    recommend_parser = subparsers.add_parser("recommend", help="Print ranked recommendations")
    recommend_parser.add_argument("user_id", help="User id")
    recommend_parser.add_argument("--categories", default=None, help="Comma separated categories")
    recommend_parser.add_argument("--limit", type=int, default=None, help="Maximum results")
    recommend_parser.set_defaults(func=_cmd_recommend)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
