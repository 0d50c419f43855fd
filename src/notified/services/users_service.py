from __future__ import annotations

from dataclasses import asdict
from typing import Any

from ..errors import ValidationError
from ..models import Channel, UserChannelConfig
from ..normalize import normalize_category
from ..storage import delete_user_config, get_user_config, list_user_configs, upsert_user_config

_CHANNELS = {channel.value for channel in Channel}


def list_users(conn: Any) -> list[dict[str, Any]]:
    return [asdict(user) for user in list_user_configs(conn)]


def get_user(conn: Any, user_id: str) -> dict[str, Any] | None:
    user = get_user_config(conn, user_id)
    return asdict(user) if user else None


def save_user(conn: Any, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required")
    existing = get_user_config(conn, user_id)

    categories = payload.get("categories")
    if categories is None:
        categories = existing.categories if existing else []
    channels = payload.get("enabled_channels")
    if channels is None:
        channels = existing.enabled_channels if existing else []
    channels = [str(channel).strip().upper() for channel in channels]
    unknown = [channel for channel in channels if channel not in _CHANNELS]
    if unknown:
        raise ValidationError(f"unknown channels: {', '.join(unknown)}")

    contacts = payload.get("contacts")
    if contacts is None:
        contacts = existing.contacts if existing else {}
    interval = payload.get("notification_interval_minutes")
    if interval is None:
        interval = existing.notification_interval_minutes if existing else 60
    if int(interval) < 1:
        raise ValidationError("notification_interval_minutes must be >= 1")

    config = UserChannelConfig(
        user_id=user_id,
        categories=[normalize_category(c) for c in categories if normalize_category(c)],
        enabled_channels=channels,
        contacts={str(k).upper(): str(v) for k, v in dict(contacts).items()},
        notification_interval_minutes=int(interval),
        last_notification_sent_at=payload.get(
            "last_notification_sent_at",
            existing.last_notification_sent_at if existing else None,
        ),
    )
    upsert_user_config(conn, config)
    return asdict(get_user_config(conn, user_id))


def delete_user(conn: Any, user_id: str) -> bool:
    """Remove the channel config; the preference profile and ledger are kept."""
    return delete_user_config(conn, user_id)
