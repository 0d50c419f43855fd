from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from .channels import ChannelAdapter, build_adapters
from .config import (
    Config,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .db import DBConn, get_state_db_path
from .errors import NotFoundError, ValidationError
from .orchestrator import run_cycle
from .reactions import apply_decay, record_reaction
from .recommender import get_recommendations, profile_summary
from .services.notifications_service import (
    broadcast,
    delete_notification,
    get_notification,
    list_notifications,
    list_user_notifications,
    recent_notifications,
    send_notification,
)
from .services.telegram_service import handle_update
from .services.users_service import delete_user, get_user, list_users, save_user
from .storage import count_notified_users, get_delivery_stats, init_db
from .utils import configure_logging, log_event

app = FastAPI(title="Notified API")

logger = logging.getLogger("notified.api")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("NF_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _require_telegram_secret(request: Request) -> None:
    secret = os.environ.get("NF_TELEGRAM_WEBHOOK_SECRET")
    if not secret:
        return
    if request.headers.get("X-Telegram-Bot-Api-Secret-Token") != secret:
        raise HTTPException(status_code=401, detail="unauthorized")


def get_conn() -> Iterator[DBConn]:
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def get_config(conn: DBConn = Depends(get_conn)) -> Config:
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def get_adapters(config: Config = Depends(get_config)) -> dict[str, ChannelAdapter]:
    return build_adapters(config.channels)


class ReactionRequest(BaseModel):
    reaction: str | None = None
    category: str | None = None
    source: str | None = None
    title: str | None = None
    notification_id: str | None = None
    message_ref: str | None = None


class NotificationRequest(BaseModel):
    user_id: str | None = None
    message: str | None = None
    subject: str | None = None


class UserRequest(BaseModel):
    categories: list[str] | None = None
    enabled_channels: list[str] | None = None
    contacts: dict[str, str] | None = None
    notification_interval_minutes: int | None = None


class BroadcastRequest(BaseModel):
    subject: str | None = None
    message: str | None = None


class SelectedBroadcastRequest(BroadcastRequest):
    user_ids: list[str] = []


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "Notified API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/recommendations/{user_id}")
def recommendations(
    user_id: str,
    categories: str | None = None,
    limit: int | None = None,
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
) -> dict[str, object]:
    category_list = [c.strip() for c in categories.split(",") if c.strip()] if categories else None
    ranked = get_recommendations(
        conn, user_id, category_list, limit, config=config.recommender
    )
    items = [
        {
            "id": scored.article.id,
            "content_fingerprint": scored.article.content_fingerprint,
            "title": scored.article.title,
            "description": scored.article.description,
            "category": scored.article.category,
            "source": scored.article.source,
            "link": scored.article.link,
            "published_at": scored.article.published_at,
            "recommendation_score": round(scored.score, 2),
            "score_explanation": scored.explanation,
        }
        for scored in ranked
    ]
    return {"user_id": user_id, "count": len(items), "recommendations": items}


@app.get("/recommendations/{user_id}/profile")
def recommendations_profile(user_id: str, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    summary = profile_summary(conn, user_id)
    summary["user_id"] = user_id
    return summary


@app.post("/recommendations/{user_id}/react")
def recommendations_react(
    user_id: str,
    payload: ReactionRequest,
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
) -> dict[str, object]:
    try:
        outcome = record_reaction(
            conn,
            user_id,
            payload.reaction or "",
            payload.category,
            payload.source,
            payload.title,
            notification_id=payload.notification_id,
            message_ref=payload.message_ref,
            default_decay_factor=config.decay.default_decay_factor,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if outcome is None:
        raise HTTPException(status_code=404, detail="notification_not_found")
    return {
        "status": "success",
        "message": "Reaction recorded successfully" if outcome.score_applied else "Reaction removed",
        "user_id": user_id,
        "reaction": outcome.reaction,
        "notification_id": outcome.record_id,
        "stored_reaction": outcome.stored_reaction,
        "score_applied": outcome.score_applied,
    }


@app.post("/recommendations/admin/apply-decay", dependencies=[Depends(_require_admin_token)])
def recommendations_apply_decay(
    conn: DBConn = Depends(get_conn), config: Config = Depends(get_config)
) -> dict[str, object]:
    count = apply_decay(conn, prune_threshold=config.decay.prune_threshold)
    return {
        "status": "success",
        "message": "Decay applied to all user preferences",
        "profiles": count,
    }


@app.get("/notifications")
def notifications_list(limit: int | None = None, conn: DBConn = Depends(get_conn)) -> list[dict[str, object]]:
    return list_notifications(conn, limit=limit)


@app.get("/notifications/user/{user_id}")
def notifications_for_user(user_id: str, conn: DBConn = Depends(get_conn)) -> list[dict[str, object]]:
    return list_user_notifications(conn, user_id)


@app.get("/notifications/{record_id}")
def notifications_read(record_id: str, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    record = get_notification(conn, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="notification_not_found")
    return record


@app.delete(
    "/notifications/{record_id}",
    status_code=204,
    dependencies=[Depends(_require_admin_token)],
)
def notifications_delete(record_id: str, conn: DBConn = Depends(get_conn)) -> Response:
    delete_notification(conn, record_id)
    return Response(status_code=204)


@app.post("/notifications", status_code=201)
def notifications_send(
    payload: NotificationRequest,
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
    adapters: dict[str, ChannelAdapter] = Depends(get_adapters),
) -> dict[str, object]:
    try:
        return send_notification(
            conn,
            payload.model_dump(),
            adapters,
            timeout_seconds=config.delivery.channel_timeout_seconds,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="user_not_found") from exc


@app.get("/users")
def users_list(conn: DBConn = Depends(get_conn)) -> list[dict[str, object]]:
    return list_users(conn)


@app.get("/users/{user_id}")
def users_read(user_id: str, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    user = get_user(conn, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="user_not_found")
    return user


@app.put("/users/{user_id}")
def users_save(
    user_id: str, payload: UserRequest, conn: DBConn = Depends(get_conn)
) -> dict[str, object]:
    try:
        return save_user(conn, user_id, payload.model_dump(exclude_unset=True))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete(
    "/users/{user_id}",
    status_code=204,
    dependencies=[Depends(_require_admin_token)],
)
def users_delete(user_id: str, conn: DBConn = Depends(get_conn)) -> Response:
    delete_user(conn, user_id)
    return Response(status_code=204)


@app.get("/telegram/webhook")
def telegram_webhook_info() -> dict[str, str]:
    return {"status": "Telegram webhook endpoint is active"}


@app.post("/telegram/webhook", dependencies=[Depends(_require_telegram_secret)])
def telegram_webhook(
    update: dict,
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
    adapters: dict[str, ChannelAdapter] = Depends(get_adapters),
) -> dict[str, object]:
    # Telegram retries anything but a 200, so bad updates are logged and acknowledged.
    try:
        result = handle_update(
            conn,
            update,
            adapters,
            default_decay_factor=config.decay.default_decay_factor,
        )
    except ValidationError as exc:
        log_event(logger, logging.WARNING, "telegram_update_rejected", error=str(exc))
        result = {"handled": False, "reason": "invalid_update"}
    return {"ok": True, **result}


@app.get("/admin/stats/notifications")
def stats_notifications(conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    return get_delivery_stats(conn)


@app.get("/admin/stats/notifications/recent")
def stats_notifications_recent(
    limit: int = 20, conn: DBConn = Depends(get_conn)
) -> list[dict[str, object]]:
    return recent_notifications(conn, limit=limit)


@app.get("/admin/stats/users/count")
def stats_users_count(conn: DBConn = Depends(get_conn)) -> dict[str, int]:
    return {"unique_users": count_notified_users(conn)}


@app.post("/admin/broadcast/all", dependencies=[Depends(_require_admin_token)])
def admin_broadcast_all(
    payload: BroadcastRequest,
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
    adapters: dict[str, ChannelAdapter] = Depends(get_adapters),
) -> dict[str, object]:
    try:
        return broadcast(
            conn,
            payload.model_dump(),
            adapters,
            timeout_seconds=config.delivery.channel_timeout_seconds,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/admin/broadcast/selected", dependencies=[Depends(_require_admin_token)])
def admin_broadcast_selected(
    payload: SelectedBroadcastRequest,
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
    adapters: dict[str, ChannelAdapter] = Depends(get_adapters),
) -> dict[str, object]:
    try:
        return broadcast(
            conn,
            payload.model_dump(),
            adapters,
            user_ids=payload.user_ids,
            timeout_seconds=config.delivery.channel_timeout_seconds,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/admin/run-cycle", dependencies=[Depends(_require_admin_token)])
def admin_run_cycle(
    conn: DBConn = Depends(get_conn),
    config: Config = Depends(get_config),
    adapters: dict[str, ChannelAdapter] = Depends(get_adapters),
) -> dict[str, object]:
    report = run_cycle(conn.path, config, adapters, holder="api")
    log_event(logger, logging.INFO, "cycle_triggered", skipped=report.skipped, reason=report.reason)
    return asdict(report)


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get(conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(
    payload: RuntimeConfigRequest, conn: DBConn = Depends(get_conn)
) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


def _setup_logging() -> None:
    configure_logging("notified.api")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("notified")
    except Exception:  # noqa: BLE001
        return "unknown"
