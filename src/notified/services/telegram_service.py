"""Inbound chat updates from the Telegram bot webhook."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..channels import ChannelAdapter
from ..models import Channel, Reaction
from ..reactions import REACTION_CALLBACK_PREFIX, parse_reaction_callback, record_reaction
from ..storage import get_delivery_record
from ..utils import log_event

logger = logging.getLogger("notified.telegram")


def handle_update(
    conn: Any,
    update: Mapping[str, Any],
    adapters: Mapping[str, ChannelAdapter],
    *,
    default_decay_factor: float = 0.95,
) -> dict[str, Any]:
    """Apply a like/dislike button press; other updates are ignored."""
    callback = update.get("callback_query")
    if not isinstance(callback, Mapping):
        return {"handled": False, "reason": "not_a_callback"}
    data = str(callback.get("data") or "")
    query_id = str(callback.get("id") or "")
    if not data.startswith(REACTION_CALLBACK_PREFIX):
        return {"handled": False, "reason": "unsupported_callback"}

    reaction, record_id = parse_reaction_callback(data)
    record = get_delivery_record(conn, record_id)
    outcome = None
    if record is not None:
        outcome = record_reaction(
            conn,
            record.user_id,
            reaction.value,
            notification_id=record.id,
            default_decay_factor=default_decay_factor,
        )
    if record is None or outcome is None:
        log_event(logger, logging.WARNING, "telegram_reaction_record_not_found", record_id=record_id)
        _acknowledge(adapters, query_id, "Article not found")
        return {"handled": False, "reason": "notification_not_found", "notification_id": record_id}

    if outcome.score_applied:
        text = "Thanks for your feedback!" if reaction == Reaction.LIKE else "Thanks, noted."
    else:
        text = "Reaction removed"
    _acknowledge(adapters, query_id, text)
    return {
        "handled": True,
        "user_id": record.user_id,
        "notification_id": record.id,
        "stored_reaction": outcome.stored_reaction,
        "score_applied": outcome.score_applied,
    }


def _acknowledge(adapters: Mapping[str, ChannelAdapter], query_id: str, text: str) -> None:
    adapter = adapters.get(Channel.TELEGRAM.value)
    if adapter is not None and query_id:
        adapter.acknowledge(query_id, text)
