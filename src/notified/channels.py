from __future__ import annotations

import json
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import ChannelsConfig
from .errors import ChannelDeliveryError
from .models import Channel, ChannelResult, Reaction
from .reactions import reaction_callback_data
from .utils import log_event

logger = logging.getLogger("notified.channels")


class ChannelAdapter:
    """Transport for one channel.

    ``deliver`` does the actual work and raises ChannelDeliveryError on a
    transport failure; ``send`` wraps it into a ChannelResult so callers
    never see the exception.
    """

    channel: str = ""

    def deliver(
        self,
        destination: str,
        subject: str | None,
        body: str,
        *,
        record_id: str | None = None,
        timeout: float = 10.0,
    ) -> str | None:
        raise NotImplementedError

    def send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        *,
        record_id: str | None = None,
        timeout: float = 10.0,
    ) -> ChannelResult:
        try:
            ref = self.deliver(destination, subject, body, record_id=record_id, timeout=timeout)
        except ChannelDeliveryError as exc:
            return ChannelResult(channel=self.channel, ok=False, error=exc.detail)
        return ChannelResult(channel=self.channel, ok=True, message_ref=ref)

    def acknowledge(self, token: str, text: str, *, timeout: float = 10.0) -> None:
        """Confirm an interactive action such as a chat button press."""
        return None


class LogAdapter(ChannelAdapter):
    """Channels without a wired gateway: the send is logged and counted as delivered."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        log_event(
            logger,
            logging.INFO,
            "channel_send_logged",
            channel=self.channel,
            destination=destination,
            record_id=record_id,
            subject=subject,
        )
        return None


class EmailAdapter(ChannelAdapter):
    channel = Channel.EMAIL.value

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        use_tls: bool = True,
        username: str = "",
        password: str | None = None,
        from_address: str = "notified@localhost",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.from_address = from_address

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        if not self.smtp_host:
            log_event(
                logger,
                logging.INFO,
                "email_not_configured",
                destination=destination,
                record_id=record_id,
            )
            return None
        message = EmailMessage()
        message["From"] = self.from_address
        message["To"] = destination
        message["Subject"] = subject or "Notification"
        message.set_content(body)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError(self.channel, str(exc)) from exc
        return message.get("Message-ID")


class TelegramAdapter(ChannelAdapter):
    channel = Channel.TELEGRAM.value

    def __init__(self, token: str, api_base: str = "https://api.telegram.org") -> None:
        self.token = token
        self.api_base = api_base.rstrip("/")

    def deliver(self, destination, subject, body, *, record_id=None, timeout=10.0):
        if not self.token:
            raise ChannelDeliveryError(self.channel, "bot token not configured")
        payload: dict[str, Any] = {"chat_id": destination, "text": body}
        if record_id:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [
                        {"text": "Like", "callback_data": reaction_callback_data(Reaction.LIKE, record_id)},
                        {"text": "Dislike", "callback_data": reaction_callback_data(Reaction.DISLIKE, record_id)},
                    ]
                ]
            }
        content = self._call("sendMessage", payload, timeout)
        message_id = (content.get("result") or {}).get("message_id")
        return str(message_id) if message_id is not None else None

    def acknowledge(self, token, text, *, timeout=10.0):
        if not self.token:
            return None
        try:
            self._call("answerCallbackQuery", {"callback_query_id": token, "text": text}, timeout)
        except ChannelDeliveryError as exc:
            log_event(logger, logging.WARNING, "telegram_ack_failed", error=exc.detail)
        return None

    def _call(self, method: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        request = Request(
            f"{self.api_base}/bot{self.token}/{method}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=timeout) as response:
                content = json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            raise ChannelDeliveryError(self.channel, f"http_{exc.code}") from exc
        except (URLError, OSError, ValueError) as exc:
            raise ChannelDeliveryError(self.channel, str(exc)) from exc
        if not content.get("ok"):
            raise ChannelDeliveryError(self.channel, str(content.get("description") or "not_ok"))
        return content


def build_adapters(config: ChannelsConfig) -> dict[str, ChannelAdapter]:
    email = config.email
    return {
        Channel.EMAIL.value: EmailAdapter(
            smtp_host=email.smtp_host,
            smtp_port=email.smtp_port,
            use_tls=email.use_tls,
            username=email.username,
            password=os.environ.get("NF_SMTP_PASSWORD"),
            from_address=email.from_address,
        ),
        Channel.TELEGRAM.value: TelegramAdapter(
            token=os.environ.get("NF_TELEGRAM_BOT_TOKEN", ""),
            api_base=config.telegram.api_base,
        ),
        Channel.SMS.value: LogAdapter(Channel.SMS.value),
        Channel.WHATSAPP.value: LogAdapter(Channel.WHATSAPP.value),
        Channel.APP.value: LogAdapter(Channel.APP.value),
    }


def resolve_destination(channel: str, user_id: str, contacts: dict[str, str]) -> str | None:
    destination = contacts.get(channel) or contacts.get(channel.lower())
    if destination:
        return destination
    if channel == Channel.APP.value:
        return user_id
    if channel in {Channel.SMS.value, Channel.WHATSAPP.value}:
        return contacts.get("PHONE") or contacts.get("phone")
    return None
