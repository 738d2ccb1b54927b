"""
Channel Transports

One transport per delivery channel, each a single outbound call:
- Email: Postmark (HTTP API) or SMTP (self-hosted)
- Pushover, Rocket.Chat, Microsoft Teams: HTTP
- Web push: VAPID via pywebpush

Transports raise ChannelError on failure; the message is what ends up in the
audit entry. The dispatcher owns error isolation, not the transports.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Dict, Optional

import aiosmtplib
import httpx
from pywebpush import WebPushException, webpush

from bugnotify.config import Settings
from bugnotify.errors import ChannelError, ChannelNotConfiguredError, SubscriptionGoneError
from bugnotify.models import NotificationChannel

logger = logging.getLogger(__name__)

POSTMARK_API_URL = "https://api.postmarkapp.com/email"
PUSHOVER_API_URL = "https://api.pushover.net/1/messages.json"


@dataclass
class ChannelMessage:
    """Rendered notification, shared by every channel of one dispatch."""
    subject: str
    text: str
    html: Optional[str] = None
    url: Optional[str] = None
    bug_id: Optional[int] = None

    @property
    def html_or_pre(self) -> str:
        if self.html:
            return self.html
        return f"<pre>{escape(self.text)}</pre>"

    @property
    def markdown(self) -> str:
        return f"**{self.subject}**\n{self.text}"


@dataclass
class PushTarget:
    """A stored web-push subscription."""
    subscription_id: int
    endpoint: str
    p256dh: str
    auth: str


def _raise_for_response(provider: str, response: httpx.Response) -> None:
    if response.is_error:
        detail = response.text[:500] if response.text else ""
        message = f"{response.status_code} {response.reason_phrase}"
        if detail:
            message = f"{message}: {detail}"
        logger.error(f"{provider} API error: {message}")
        raise ChannelError(message, status_code=response.status_code)


class ChannelTransport(ABC):
    """Abstract base class for channel transports."""

    channel: NotificationChannel

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the transport has the credentials it needs."""
        pass

    @abstractmethod
    async def send(self, target: Any, message: ChannelMessage) -> Optional[str]:
        """Deliver the message. Returns a provider message id when known."""
        pass

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ChannelNotConfiguredError(f"{self.channel.value} transport not configured")


# =============================================================================
# EMAIL
# =============================================================================

class PostmarkTransport(ChannelTransport):
    """
    Postmark email transport.

    https://postmarkapp.com/developer/api/email-api
    """

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        client: httpx.AsyncClient,
        server_token: str,
        from_address: str,
        from_name: str = "",
        subject_prefix: str = "",
        message_stream: str = "outbound",
        timeout: float = 30.0,
    ):
        self.client = client
        self.server_token = server_token
        self.from_address = from_address
        self.from_name = from_name
        self.subject_prefix = subject_prefix
        self.message_stream = message_stream
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.server_token and self.from_address)

    async def send(self, target: str, message: ChannelMessage) -> Optional[str]:
        self._require_configured()
        sender = f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        subject = f"{self.subject_prefix} {message.subject}".strip()

        try:
            response = await self.client.post(
                POSTMARK_API_URL,
                headers={
                    "Accept": "application/json",
                    "X-Postmark-Server-Token": self.server_token,
                },
                json={
                    "From": sender,
                    "To": target,
                    "Subject": subject,
                    "HtmlBody": message.html_or_pre,
                    "TextBody": message.text,
                    "MessageStream": self.message_stream,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"Postmark request failed: {e}") from e

        _raise_for_response("Postmark", response)
        return response.json().get("MessageID")


class SMTPTransport(ChannelTransport):
    """SMTP email transport for self-hosted mail servers."""

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        from_name: str = "",
        subject_prefix: str = "",
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.from_name = from_name
        self.subject_prefix = subject_prefix
        self.use_tls = use_tls
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.host and self.from_address)

    async def send(self, target: str, message: ChannelMessage) -> Optional[str]:
        self._require_configured()

        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{self.subject_prefix} {message.subject}".strip()
        msg["From"] = f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        msg["To"] = target

        # Attach plain text and HTML versions
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html_or_pre, "html"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.use_tls,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            raise ChannelError(f"SMTP delivery failed: {e}") from e
        return None


# =============================================================================
# CHAT / PUSH WEBHOOKS
# =============================================================================

class PushoverTransport(ChannelTransport):
    """
    Pushover transport.

    https://pushover.net/api
    """

    channel = NotificationChannel.PUSHOVER

    def __init__(self, client: httpx.AsyncClient, user_key: str, api_token: str, timeout: float = 30.0):
        self.client = client
        self.user_key = user_key
        self.api_token = api_token
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.user_key and self.api_token)

    async def send(self, target: Optional[str], message: ChannelMessage) -> Optional[str]:
        self._require_configured()
        payload = {
            "token": self.api_token,
            "user": target or self.user_key,
            "title": message.subject[:250],
            "message": message.text[:1024],
        }
        if message.url:
            payload["url"] = message.url

        try:
            response = await self.client.post(PUSHOVER_API_URL, data=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise ChannelError(f"Pushover request failed: {e}") from e

        _raise_for_response("Pushover", response)
        return response.json().get("request")


class WebhookTransport(ChannelTransport):
    """Incoming-webhook transport posting ``{"text": ...}`` (Rocket.Chat, Teams)."""

    def __init__(
        self,
        channel: NotificationChannel,
        client: httpx.AsyncClient,
        webhook_url: str,
        timeout: float = 30.0,
    ):
        self.channel = channel
        self.client = client
        self.webhook_url = webhook_url
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, target: Optional[str], message: ChannelMessage) -> Optional[str]:
        self._require_configured()
        text = message.markdown
        if message.url:
            text = f"{text}\n{message.url}"

        try:
            response = await self.client.post(
                target or self.webhook_url,
                json={"text": text},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"{self.channel.value} webhook request failed: {e}") from e

        _raise_for_response(self.channel.value, response)
        return None


class WebPushTransport(ChannelTransport):
    """
    Web push transport (VAPID).

    pywebpush is blocking, so each push runs in a worker thread.
    """

    channel = NotificationChannel.WEBPUSH

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: float = 30.0):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_subject)

    def build_payload(self, message: ChannelMessage) -> str:
        return json.dumps({
            "title": message.subject,
            "body": message.text[:240],
            "icon": "/icon-192.png",
            "badge": "/badge-72.png",
            "data": {"url": message.url, "bug_id": message.bug_id},
        })

    async def send(self, target: PushTarget, message: ChannelMessage) -> Optional[str]:
        self._require_configured()
        subscription_info = {
            "endpoint": target.endpoint,
            "keys": {"p256dh": target.p256dh, "auth": target.auth},
        }

        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=self.build_payload(message),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                timeout=self.timeout,
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            if status_code in (404, 410):
                raise SubscriptionGoneError(
                    f"{status_code} subscription expired",
                    subscription_id=target.subscription_id,
                    status_code=status_code,
                ) from e
            raise ChannelError(f"Web push failed: {e}", status_code=status_code) from e
        return None


# =============================================================================
# CONSOLE (DEVELOPMENT)
# =============================================================================

class ConsoleTransport(ChannelTransport):
    """Console transport for development/testing - logs instead of sending."""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    def is_configured(self) -> bool:
        return True

    async def send(self, target: Any, message: ChannelMessage) -> Optional[str]:
        destination = target.endpoint if isinstance(target, PushTarget) else target
        logger.info(
            f"\n{'='*60}\n"
            f"{self.channel.value.upper()} (Console Mode)\n"
            f"{'='*60}\n"
            f"To: {destination or '(channel default)'}\n"
            f"Subject: {message.subject}\n"
            f"{'-'*60}\n"
            f"{message.text}\n"
            f"{'='*60}\n"
        )
        return f"console-{self.channel.value}"


# =============================================================================
# FACTORY
# =============================================================================

def build_transports(
    settings: Settings,
    client: httpx.AsyncClient,
) -> Dict[str, ChannelTransport]:
    """
    Build transports for every globally enabled channel.

    Development mode (or EMAIL_PROVIDER=console) swaps in console transports.
    """
    console_mode = settings.APP_ENV == "development"
    timeout = settings.CHANNEL_TIMEOUT_SECONDS
    transports: Dict[str, ChannelTransport] = {}

    for name in settings.enabled_channels:
        channel = NotificationChannel(name)
        if console_mode:
            transports[name] = ConsoleTransport(channel)
            continue

        if channel == NotificationChannel.EMAIL:
            if settings.EMAIL_PROVIDER == "smtp":
                logger.info("Using SMTP email transport")
                transports[name] = SMTPTransport(
                    host=settings.SMTP_HOST,
                    port=settings.SMTP_PORT,
                    username=settings.SMTP_USERNAME,
                    password=settings.SMTP_PASSWORD,
                    from_address=settings.EMAIL_FROM_ADDRESS,
                    from_name=settings.EMAIL_FROM_NAME,
                    subject_prefix=settings.EMAIL_SUBJECT_PREFIX,
                    use_tls=settings.SMTP_USE_TLS,
                    timeout=timeout,
                )
            elif settings.EMAIL_PROVIDER == "console":
                transports[name] = ConsoleTransport(channel)
            else:
                logger.info("Using Postmark email transport")
                transports[name] = PostmarkTransport(
                    client=client,
                    server_token=settings.POSTMARK_SERVER_TOKEN,
                    from_address=settings.EMAIL_FROM_ADDRESS,
                    from_name=settings.EMAIL_FROM_NAME,
                    subject_prefix=settings.EMAIL_SUBJECT_PREFIX,
                    message_stream=settings.POSTMARK_MESSAGE_STREAM,
                    timeout=timeout,
                )
        elif channel == NotificationChannel.PUSHOVER:
            transports[name] = PushoverTransport(
                client, settings.PUSHOVER_USER_KEY, settings.PUSHOVER_API_TOKEN, timeout=timeout
            )
        elif channel == NotificationChannel.ROCKETCHAT:
            transports[name] = WebhookTransport(
                channel, client, settings.ROCKETCHAT_WEBHOOK_URL, timeout=timeout
            )
        elif channel == NotificationChannel.TEAMS:
            transports[name] = WebhookTransport(
                channel, client, settings.TEAMS_WEBHOOK_URL, timeout=timeout
            )
        elif channel == NotificationChannel.WEBPUSH:
            transports[name] = WebPushTransport(
                settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT, timeout=timeout
            )

        if not transports[name].is_configured():
            logger.warning(f"{name} channel enabled but not configured; deliveries will fail")

    return transports
