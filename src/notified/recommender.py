"""Preference-weighted ranking of candidate articles.

Each candidate gets four sub-scores read from the user's learned profile:

* category: ``category_scores[CATEGORY]``
* source: ``source_scores[normalize_source(source)]``
* keyword: mean of the non-zero keyword scores found in the title
* recency: linear decay from 1 to 0 over the recency window (7 days)

and a final weighted sum. Without a profile the candidates are returned
newest first with a zero score.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Iterable

from .config import RecommenderConfig, default_config
from .errors import UpstreamUnavailable
from .models import Article, PreferenceProfile, ScoredArticle
from .normalize import extract_keywords, normalize_category, normalize_source
from .storage import get_articles_by_category, get_profile, has_delivery_record
from .utils import log_event, parse_iso, utc_now

COLD_START_EXPLANATION = "No preference data yet"
UNKNOWN_PUBLISH_RECENCY = 0.5

logger = logging.getLogger("notified.recommender")


def category_score(profile: PreferenceProfile, category: str | None) -> float:
    if category is None:
        return 0.0
    return profile.category_scores.get(normalize_category(category), 0.0)


def source_score(profile: PreferenceProfile, source: str | None) -> float:
    if source is None:
        return 0.0
    return profile.source_scores.get(normalize_source(source), 0.0)


def keyword_score(profile: PreferenceProfile, title: str | None) -> float:
    matched = [
        profile.keyword_scores[keyword]
        for keyword in extract_keywords(title)
        if profile.keyword_scores.get(keyword, 0.0) != 0
    ]
    if not matched:
        return 0.0
    return sum(matched) / len(matched)


def recency_score(
    published_at: str | None, now: datetime, window_hours: float = 168.0
) -> float:
    published = parse_iso(published_at)
    if published is None:
        return UNKNOWN_PUBLISH_RECENCY
    # Whole hours elapsed; a publish time in the future counts as brand new.
    hours_old = max(0, int((now - published).total_seconds() // 3600))
    return max(0.0, 1.0 - hours_old / window_hours)


def score_article(
    article: Article,
    profile: PreferenceProfile,
    now: datetime,
    config: RecommenderConfig,
) -> ScoredArticle:
    cat = category_score(profile, article.category)
    src = source_score(profile, article.source)
    kw = keyword_score(profile, article.title)
    rec = recency_score(article.published_at, now, config.recency_window_hours)
    final = (
        config.category_weight * cat
        + config.source_weight * src
        + config.keyword_weight * kw
        + config.recency_weight * rec
    )
    explanation = (
        f"Category({article.category}): {cat:.2f}, Source({article.source}): {src:.2f}, "
        f"Keywords: {kw:.2f}, Recency: {rec:.2f}"
    )
    return ScoredArticle(article=article, score=final, explanation=explanation)


def order_by_recency(candidates: Iterable[Article]) -> list[Article]:
    """Newest first; unknown publish times sink to the end, ties keep input order."""
    indexed = list(enumerate(candidates))
    dated = [(i, a, parse_iso(a.published_at)) for i, a in indexed]
    known = sorted(
        [item for item in dated if item[2] is not None],
        key=lambda item: (-item[2].timestamp(), item[0]),
    )
    unknown = [item for item in dated if item[2] is None]
    return [article for _, article, _ in known + unknown]


def rank(
    profile: PreferenceProfile | None,
    candidates: list[Article],
    *,
    now: datetime | None = None,
    config: RecommenderConfig | None = None,
) -> list[ScoredArticle]:
    config = config or default_config().recommender
    now = now or utc_now()
    if profile is None:
        return [
            ScoredArticle(article=article, score=0.0, explanation=COLD_START_EXPLANATION)
            for article in order_by_recency(candidates)
        ]
    scored = [score_article(article, profile, now, config) for article in candidates]
    # sorted() is stable, so equal scores keep candidate order.
    return sorted(scored, key=lambda item: -item.score)


def rank_for_user(
    conn: Any,
    user_id: str,
    candidates: list[Article],
    *,
    now: datetime | None = None,
    config: RecommenderConfig | None = None,
) -> list[ScoredArticle]:
    return rank(get_profile(conn, user_id), candidates, now=now, config=config)


def fetch_unseen_candidates(
    conn: Any,
    user_id: str,
    categories: Iterable[str],
    per_category_limit: int,
) -> list[Article]:
    """Newest articles of each category the user has no delivery record for."""
    candidates: list[Article] = []
    seen: set[str] = set()
    for category in categories:
        try:
            articles = get_articles_by_category(conn, normalize_category(category), per_category_limit)
        except sqlite3.Error as exc:
            raise UpstreamUnavailable("article_source", f"{category}: {exc}") from exc
        for article in articles:
            if article.content_fingerprint in seen:
                continue
            seen.add(article.content_fingerprint)
            if has_delivery_record(conn, user_id, article.content_fingerprint):
                continue
            candidates.append(article)
    return candidates


def get_recommendations(
    conn: Any,
    user_id: str,
    categories: list[str] | None = None,
    limit: int | None = None,
    *,
    now: datetime | None = None,
    config: RecommenderConfig | None = None,
) -> list[ScoredArticle]:
    config = config or default_config().recommender
    categories = categories or config.default_categories
    limit = limit if limit is not None else config.default_limit
    try:
        candidates = fetch_unseen_candidates(conn, user_id, categories, config.per_category_limit)
    except UpstreamUnavailable as exc:
        log_event(logger, logging.WARNING, "recommendations_upstream_unavailable", user_id=user_id, error=exc)
        return []
    if not candidates:
        log_event(logger, logging.INFO, "recommendations_empty", user_id=user_id, categories=",".join(categories))
        return []
    ranked = rank_for_user(conn, user_id, candidates, now=now, config=config)[: max(0, limit)]
    log_event(logger, logging.INFO, "recommendations_generated", user_id=user_id, count=len(ranked))
    return ranked


def _top(scores: dict[str, float], n: int) -> dict[str, float]:
    ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return dict(ordered[:n])


def profile_summary(conn: Any, user_id: str) -> dict[str, object]:
    profile = get_profile(conn, user_id)
    if profile is None:
        return {
            "status": "no_data",
            "message": "No preference data yet. React to some articles to build your profile!",
        }
    least = sorted(
        [(key, value) for key, value in profile.category_scores.items() if value < 0],
        key=lambda item: item[1],
    )[:3]
    return {
        "status": "active",
        "total_likes": profile.total_likes,
        "total_dislikes": profile.total_dislikes,
        "last_updated": profile.last_updated_at,
        "top_categories": _top(profile.category_scores, 5),
        "top_sources": _top(profile.source_scores, 5),
        "top_keywords": _top(profile.keyword_scores, 10),
        "least_preferred_categories": dict(least),
    }
