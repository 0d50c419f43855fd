from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from notified.channels import ChannelAdapter
from notified.errors import ChannelDeliveryError
from notified.models import Article
from notified.storage import init_db, insert_articles
from notified.utils import content_fingerprint, to_iso


class RecordingAdapter(ChannelAdapter):
    def __init__(self, channel: str, ref_prefix: str | None = None) -> None:
        self.channel = channel
        self.ref_prefix = ref_prefix
        self.sent: list[dict[str, object]] = []
        self.acks: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        with self._lock:
            self.sent.append(
                {
                    "destination": destination,
                    "subject": subject,
                    "body": body,
                    "record_id": record_id,
                }
            )
        if self.ref_prefix:
            return f"{self.ref_prefix}-{record_id}"
        return None

    def acknowledge(self, token, text, *, timeout=10.0):
        self.acks.append((token, text))


class FailingAdapter(ChannelAdapter):
    def __init__(self, channel: str, detail: str = "gateway down") -> None:
        self.channel = channel
        self.detail = detail

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        raise ChannelDeliveryError(self.channel, self.detail)


class ExplodingAdapter(ChannelAdapter):
    def __init__(self, channel: str) -> None:
        self.channel = channel

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        raise RuntimeError("boom")


class SlowAdapter(ChannelAdapter):
    def __init__(self, channel: str, delay: float) -> None:
        self.channel = channel
        self.delay = delay

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        time.sleep(self.delay)
        return None


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("NF_DATA_DIR", str(tmp_path / "data"))
    for name in (
        "NF_DB_PATH",
        "NF_CONFIG_PATH",
        "NF_ADMIN_TOKEN",
        "NF_SMTP_PASSWORD",
        "NF_TELEGRAM_BOT_TOKEN",
        "NF_TELEGRAM_WEBHOOK_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "data" / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def fake_adapters() -> dict[str, ChannelAdapter]:
    return {
        "EMAIL": RecordingAdapter("EMAIL"),
        "TELEGRAM": RecordingAdapter("TELEGRAM", ref_prefix="tg"),
        "SMS": RecordingAdapter("SMS"),
        "WHATSAPP": RecordingAdapter("WHATSAPP"),
        "APP": RecordingAdapter("APP"),
    }


def seed_articles(conn, category: str, count: int, now) -> list[Article]:
    """Insert ``count`` articles of one category, one hour apart, newest first."""
    articles = []
    for idx in range(count):
        title = f"{category.title()} story {idx}"
        link = f"https://example.com/{category.lower()}/{idx}"
        articles.append(
            Article(
                id=None,
                category=category,
                title=title,
                description="Short summary",
                link=link,
                source="BBC Sport",
                published_at=to_iso(now - timedelta(hours=idx)),
                content_fingerprint=content_fingerprint(title, link),
                ingested_at=to_iso(now),
            )
        )
    insert_articles(conn, articles)
    return articles
