from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Mapping

from .channels import ChannelAdapter, resolve_destination
from .models import (
    ChannelResult,
    DeliveryRecord,
    DeliveryStatus,
    DispatchOutcome,
    UserChannelConfig,
)
from .storage import finalize_delivery_record, get_delivery_record
from .utils import log_event

logger = logging.getLogger("notified.dispatcher")


def dispatch(
    user: UserChannelConfig,
    record: DeliveryRecord,
    adapters: Mapping[str, ChannelAdapter],
    *,
    timeout_seconds: float = 10.0,
) -> DispatchOutcome:
    """Send one record over every channel the user has enabled.

    Channels run side by side; a failure, an exception or a timeout in one
    channel only marks that channel failed.
    """
    results: dict[str, ChannelResult] = {}
    pending: dict[Future, str] = {}
    channels = list(dict.fromkeys(channel.upper() for channel in user.enabled_channels))
    if not channels:
        return DispatchOutcome(results=[])

    executor = ThreadPoolExecutor(
        max_workers=len(channels), thread_name_prefix=f"dispatch-{record.id[:8]}"
    )
    try:
        for channel in channels:
            adapter = adapters.get(channel)
            if adapter is None:
                results[channel] = ChannelResult(channel=channel, ok=False, error="no_adapter")
                continue
            destination = resolve_destination(channel, user.user_id, user.contacts)
            if not destination:
                results[channel] = ChannelResult(channel=channel, ok=False, error="missing_destination")
                continue
            future = executor.submit(
                adapter.send,
                destination,
                record.subject,
                record.message,
                record_id=record.id,
                timeout=timeout_seconds,
            )
            pending[future] = channel
        done, not_done = wait(pending.keys(), timeout=timeout_seconds)
        for future in done:
            channel = pending[future]
            try:
                results[channel] = future.result()
            except Exception as exc:  # noqa: BLE001
                results[channel] = ChannelResult(channel=channel, ok=False, error=f"unexpected: {exc}")
        for future in not_done:
            future.cancel()
            results[pending[future]] = ChannelResult(
                channel=pending[future], ok=False, error="timeout"
            )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    ordered = [results[channel] for channel in channels]
    for result in ordered:
        if result.ok:
            continue
        log_event(
            logger,
            logging.WARNING,
            "channel_failed",
            user_id=user.user_id,
            record_id=record.id,
            article_fingerprint=record.article_fingerprint,
            channel=result.channel,
            error=result.error,
        )
    return DispatchOutcome(results=ordered)


def dispatch_and_record(
    conn: Any,
    user: UserChannelConfig,
    record: DeliveryRecord,
    adapters: Mapping[str, ChannelAdapter],
    *,
    timeout_seconds: float = 10.0,
) -> tuple[DispatchOutcome, DeliveryRecord]:
    outcome = dispatch(user, record, adapters, timeout_seconds=timeout_seconds)
    finalize_delivery_record(
        conn,
        record.id,
        status=outcome.status,
        channels_attempted=outcome.attempted_channels,
        failed_channels=outcome.failed_channels,
        message_ref=outcome.message_ref,
        error=None if outcome.status == DeliveryStatus.SENT and not outcome.failed_channels else outcome.error,
    )
    log_event(
        logger,
        logging.INFO if outcome.status == DeliveryStatus.SENT else logging.WARNING,
        "dispatch_complete",
        user_id=user.user_id,
        record_id=record.id,
        article_fingerprint=record.article_fingerprint,
        status=outcome.status.value,
        sent=",".join(outcome.sent_channels) or "-",
        failed=",".join(outcome.failed_channels) or "-",
    )
    return outcome, get_delivery_record(conn, record.id) or record
