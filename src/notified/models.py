from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"
    TELEGRAM = "TELEGRAM"
    APP = "APP"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Reaction(str, Enum):
    NONE = "none"
    LIKE = "like"
    DISLIKE = "dislike"


@dataclass(frozen=True)
class Article:
    id: int | None
    category: str
    title: str
    description: str | None
    link: str | None
    source: str | None
    published_at: str | None
    content_fingerprint: str
    ingested_at: str


@dataclass(frozen=True)
class UserChannelConfig:
    user_id: str
    categories: list[str]
    enabled_channels: list[str]
    contacts: dict[str, str]
    notification_interval_minutes: int
    last_notification_sent_at: str | None


@dataclass
class PreferenceProfile:
    user_id: str
    category_scores: dict[str, float] = field(default_factory=dict)
    source_scores: dict[str, float] = field(default_factory=dict)
    keyword_scores: dict[str, float] = field(default_factory=dict)
    total_likes: int = 0
    total_dislikes: int = 0
    decay_factor: float = 0.95
    last_updated_at: str | None = None


@dataclass(frozen=True)
class DeliveryRecord:
    id: str
    user_id: str
    article_fingerprint: str | None
    batch_id: str | None
    subject: str | None
    message: str
    channels_attempted: list[str]
    failed_channels: list[str]
    status: str
    created_at: str
    sent_at: str | None
    channel_message_ref: str | None
    reaction: str
    error: str | None


@dataclass(frozen=True)
class ScoredArticle:
    article: Article
    score: float
    explanation: str


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    ok: bool
    message_ref: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    results: list[ChannelResult]

    @property
    def sent_channels(self) -> list[str]:
        return [result.channel for result in self.results if result.ok]

    @property
    def failed_channels(self) -> list[str]:
        return [result.channel for result in self.results if not result.ok]

    @property
    def attempted_channels(self) -> list[str]:
        return [result.channel for result in self.results]

    @property
    def status(self) -> DeliveryStatus:
        if self.sent_channels:
            return DeliveryStatus.SENT
        return DeliveryStatus.FAILED

    @property
    def message_ref(self) -> str | None:
        for result in self.results:
            if result.ok and result.message_ref:
                return result.message_ref
        return None

    @property
    def error(self) -> str | None:
        if not self.results:
            return "no_channels_enabled"
        errors = [
            f"{result.channel}:{result.error}" for result in self.results if not result.ok
        ]
        return "; ".join(errors) or None


@dataclass(frozen=True)
class CycleReport:
    skipped: bool
    reason: str | None = None
    users_total: int = 0
    users_eligible: int = 0
    users_processed: int = 0
    users_failed: int = 0
    records_created: int = 0
    records_sent: int = 0
    records_failed: int = 0
