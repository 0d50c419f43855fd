from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Mapping

from ..channels import ChannelAdapter, resolve_destination
from ..dispatcher import dispatch_and_record
from ..errors import NotFoundError, ValidationError
from ..models import Channel, ChannelResult, DeliveryRecord
from ..storage import (
    create_delivery_record,
    delete_delivery_record,
    get_delivery_record,
    get_user_config,
    list_delivery_records,
    list_delivery_records_for_user,
    list_recent_sent_records,
    list_user_configs,
)
from ..utils import log_event

logger = logging.getLogger("notified.notifications")


def record_to_dict(record: DeliveryRecord) -> dict[str, Any]:
    return asdict(record)


def list_notifications(conn: Any, limit: int | None = None) -> list[dict[str, Any]]:
    return [record_to_dict(record) for record in list_delivery_records(conn, limit=limit)]


def list_user_notifications(conn: Any, user_id: str) -> list[dict[str, Any]]:
    return [record_to_dict(record) for record in list_delivery_records_for_user(conn, user_id)]


def get_notification(conn: Any, record_id: str) -> dict[str, Any] | None:
    record = get_delivery_record(conn, record_id)
    return record_to_dict(record) if record else None


def delete_notification(conn: Any, record_id: str) -> bool:
    deleted = delete_delivery_record(conn, record_id)
    if deleted:
        log_event(logger, logging.INFO, "notification_deleted", record_id=record_id)
    return deleted


def send_notification(
    conn: Any,
    payload: Mapping[str, Any],
    adapters: Mapping[str, ChannelAdapter],
    *,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    user_id = str(payload.get("user_id") or "").strip()
    message = str(payload.get("message") or "").strip()
    if not user_id:
        raise ValidationError("user_id is required")
    if not message:
        raise ValidationError("message is required")
    subject = payload.get("subject") or None

    user = get_user_config(conn, user_id)
    if user is None:
        raise NotFoundError(f"user not found: {user_id}")

    record = create_delivery_record(conn, user_id=user_id, message=message, subject=subject)
    if record is None:
        raise RuntimeError("failed to create delivery record")
    log_event(logger, logging.INFO, "manual_send", user_id=user_id, record_id=record.id)
    _, finalized = dispatch_and_record(
        conn, user, record, adapters, timeout_seconds=timeout_seconds
    )
    return record_to_dict(finalized)


def recent_notifications(conn: Any, limit: int = 20) -> list[dict[str, Any]]:
    return [
        {
            "id": record.id,
            "user_id": record.user_id,
            "subject": record.subject,
            "status": record.status,
            "sent_at": record.sent_at,
            "channels": record.channels_attempted,
            "reaction": record.reaction,
        }
        for record in list_recent_sent_records(conn, limit=limit)
    ]


def broadcast(
    conn: Any,
    payload: Mapping[str, Any],
    adapters: Mapping[str, ChannelAdapter],
    *,
    user_ids: list[str] | None = None,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    """Send one admin message to every user, or to ``user_ids`` only.

    Broadcasts are not article deliveries and leave the delivery ledger alone.
    """
    message = str(payload.get("message") or "").strip()
    if not message:
        raise ValidationError("message is required")
    subject = payload.get("subject") or "Announcement"
    users = list_user_configs(conn)
    if user_ids is not None:
        if not user_ids:
            raise ValidationError("user_ids must not be empty")
        wanted = set(user_ids)
        users = [user for user in users if user.user_id in wanted]

    tally: dict[str, dict[str, int]] = {
        channel.value: {"success": 0, "failed": 0} for channel in Channel
    }
    for user in users:
        for channel in dict.fromkeys(c.upper() for c in user.enabled_channels):
            adapter = adapters.get(channel)
            destination = resolve_destination(channel, user.user_id, user.contacts)
            if adapter is None or not destination:
                continue
            try:
                result = adapter.send(destination, subject, message, timeout=timeout_seconds)
            except Exception as exc:  # noqa: BLE001
                result = ChannelResult(channel=channel, ok=False, error=f"unexpected: {exc}")
            counts = tally.setdefault(channel, {"success": 0, "failed": 0})
            if result.ok:
                counts["success"] += 1
            else:
                counts["failed"] += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "broadcast_channel_failed",
                    user_id=user.user_id,
                    channel=channel,
                    error=result.error,
                )
    log_event(
        logger,
        logging.INFO,
        "broadcast_complete",
        users=len(users),
        selected=user_ids is not None,
    )
    return {"total_users": len(users), "channels": tally, "message": "Broadcast completed"}
