from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .models import DeliveryRecord, PreferenceProfile, Reaction
from .normalize import extract_keywords, normalize_category, normalize_source
from .storage import (
    find_delivery_record_by_ref,
    get_article_by_fingerprint,
    get_delivery_record,
    list_profile_user_ids,
    set_record_reaction,
    update_profile,
)
from .utils import log_event, to_iso, utc_now

logger = logging.getLogger("notified.reactions")

_DELTAS = {Reaction.LIKE: 1.0, Reaction.DISLIKE: -1.0}
REACTION_CALLBACK_PREFIX = "reaction_"


@dataclass(frozen=True)
class ReactionOutcome:
    user_id: str
    reaction: str
    record_id: str | None
    stored_reaction: str | None
    score_applied: bool


def parse_reaction(value: str | None) -> Reaction:
    normalized = (value or "").strip().lower()
    try:
        reaction = Reaction(normalized)
    except ValueError as exc:
        raise ValidationError("reaction must be 'like' or 'dislike'") from exc
    if reaction == Reaction.NONE:
        raise ValidationError("reaction must be 'like' or 'dislike'")
    return reaction


def parse_reaction_callback(data: str) -> tuple[Reaction, str]:
    """Decode chat button data such as ``reaction_like_<record id>``."""
    for reaction in (Reaction.LIKE, Reaction.DISLIKE):
        prefix = f"{REACTION_CALLBACK_PREFIX}{reaction.value}_"
        if data.startswith(prefix) and len(data) > len(prefix):
            return reaction, data[len(prefix):]
    raise ValidationError(f"unrecognized reaction callback: {data}")


def reaction_callback_data(reaction: Reaction, record_id: str) -> str:
    return f"{REACTION_CALLBACK_PREFIX}{reaction.value}_{record_id}"


def apply_reaction_to_profile(
    profile: PreferenceProfile | None,
    user_id: str,
    reaction: Reaction,
    category: str | None,
    source: str | None,
    title: str | None,
    *,
    now: datetime,
    default_decay_factor: float = 0.95,
) -> PreferenceProfile:
    if profile is None:
        profile = PreferenceProfile(user_id=user_id, decay_factor=default_decay_factor)
    delta = _DELTAS[reaction]
    categories = dict(profile.category_scores)
    sources = dict(profile.source_scores)
    keywords = dict(profile.keyword_scores)
    if category:
        key = normalize_category(category)
        categories[key] = categories.get(key, 0.0) + delta
    if source:
        key = normalize_source(source)
        sources[key] = sources.get(key, 0.0) + delta
    for keyword in extract_keywords(title):
        keywords[keyword] = keywords.get(keyword, 0.0) + delta
    return replace(
        profile,
        category_scores=categories,
        source_scores=sources,
        keyword_scores=keywords,
        total_likes=profile.total_likes + (1 if reaction == Reaction.LIKE else 0),
        total_dislikes=profile.total_dislikes + (1 if reaction == Reaction.DISLIKE else 0),
        last_updated_at=to_iso(now),
    )


def decay_profile(profile: PreferenceProfile, prune_threshold: float = 0.1) -> PreferenceProfile:
    factor = profile.decay_factor

    def _decay(scores: dict[str, float]) -> dict[str, float]:
        decayed = {key: value * factor for key, value in scores.items()}
        return {key: value for key, value in decayed.items() if abs(value) >= prune_threshold}

    return replace(
        profile,
        category_scores=_decay(profile.category_scores),
        source_scores=_decay(profile.source_scores),
        keyword_scores=_decay(profile.keyword_scores),
    )


def _find_record(
    conn: Any,
    user_id: str,
    notification_id: str | None,
    message_ref: str | None,
) -> DeliveryRecord | None:
    if notification_id:
        record = get_delivery_record(conn, notification_id)
        if record is not None and record.user_id == user_id:
            return record
        return None
    if message_ref:
        return find_delivery_record_by_ref(conn, message_ref, user_id=user_id)
    return None


def record_reaction(
    conn: Any,
    user_id: str,
    reaction: str,
    category: str | None = None,
    source: str | None = None,
    title: str | None = None,
    *,
    notification_id: str | None = None,
    message_ref: str | None = None,
    now: datetime | None = None,
    default_decay_factor: float = 0.95,
) -> ReactionOutcome | None:
    """Fold a like/dislike into the user's profile.

    When the reaction names a delivery record (by id or by channel message
    ref) the record's stored reaction is toggled: repeating the stored
    reaction clears it and leaves the profile alone, anything else overwrites
    it and applies a fresh delta. Earlier deltas are never retracted.

    Returns None when a named delivery record does not exist for the user.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    parsed = parse_reaction(reaction)
    now = now or utc_now()

    record: DeliveryRecord | None = None
    if notification_id or message_ref:
        record = _find_record(conn, user_id, notification_id, message_ref)
        if record is None:
            log_event(
                logger,
                logging.WARNING,
                "reaction_record_not_found",
                user_id=user_id,
                notification_id=notification_id,
                message_ref=message_ref,
            )
            return None
        if record.reaction == parsed.value:
            set_record_reaction(conn, record.id, Reaction.NONE)
            log_event(
                logger,
                logging.INFO,
                "reaction_cleared",
                user_id=user_id,
                record_id=record.id,
                reaction=parsed.value,
            )
            return ReactionOutcome(
                user_id=user_id,
                reaction=parsed.value,
                record_id=record.id,
                stored_reaction=Reaction.NONE.value,
                score_applied=False,
            )
        if record.article_fingerprint and not (category and source and title):
            article = get_article_by_fingerprint(conn, record.article_fingerprint)
            if article is not None:
                category = category or article.category
                source = source or article.source
                title = title or article.title

    if not (category or source or title):
        raise ValidationError("category, source or title is required")

    update_profile(
        conn,
        user_id,
        lambda current: apply_reaction_to_profile(
            current,
            user_id,
            parsed,
            category,
            source,
            title,
            now=now,
            default_decay_factor=default_decay_factor,
        ),
    )
    if record is not None:
        set_record_reaction(conn, record.id, parsed)
    log_event(
        logger,
        logging.INFO,
        "reaction_recorded",
        user_id=user_id,
        reaction=parsed.value,
        category=category,
        source=source,
        record_id=record.id if record else None,
        article_fingerprint=record.article_fingerprint if record else None,
    )
    return ReactionOutcome(
        user_id=user_id,
        reaction=parsed.value,
        record_id=record.id if record else None,
        stored_reaction=parsed.value if record else None,
        score_applied=True,
    )


def apply_decay(conn: Any, prune_threshold: float = 0.1) -> int:
    """Decay every stored profile; each profile is its own transaction."""
    count = 0
    for user_id in list_profile_user_ids(conn):
        updated = update_profile(
            conn,
            user_id,
            lambda current: decay_profile(current, prune_threshold) if current else None,
        )
        if updated is not None:
            count += 1
    log_event(logger, logging.INFO, "decay_applied", profiles=count)
    return count
