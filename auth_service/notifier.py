"""Out-of-band delivery of codes and links.

The OTP and recovery flows only see :class:`Notifier`. Which channel sits
behind it is decided once, at startup, by :func:`build_notifier`:

1. Gmail (``GMAIL_USER`` / ``GMAIL_APP_PASSWORD``), SSL on 465
2. Brevo (``BREVO_SMTP_USER`` / ``BREVO_SMTP_PASS``), STARTTLS on 587
3. any SMTP server (``SMTP_HOST`` / ``SMTP_USER`` / ``SMTP_PASS``)
4. a sandbox (in-process outbox, or an Ethereal test account) when nothing
   real is configured or the real channel fails verification and sandbox
   fallback is allowed

Transient failures are retried with a linear backoff; authentication
failures are not.
"""

import logging
import re
import smtplib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.utils import formataddr, make_msgid, parseaddr
from typing import Callable, TypeVar

import httpx

from shared.errors import (
    ChannelAuthError,
    ConfigError,
    DeliveryError,
    TransientDeliveryError,
)
from shared.utils import utcnow
from .config import Settings

__all__ = [
    "DeliveryReceipt",
    "Channel",
    "SmtpChannel",
    "EtherealChannel",
    "OutboxChannel",
    "Notifier",
    "with_retries",
    "select_channel",
    "build_notifier",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

NODEMAILER_API_URL = "https://api.nodemailer.com/user"
ETHEREAL_WEB_URL = "https://ethereal.email"
_MSGID_RE = re.compile(r"MSGID=([^\s\]]+)")


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str
    channel: str
    accepted: tuple[str, ...]
    # set only by sandbox channels
    preview_url: str | None = None


class Channel:
    """One way of getting a message to an address."""

    name = "channel"
    sandbox = False

    def deliver(self, msg: EmailMessage) -> DeliveryReceipt:
        raise NotImplementedError

    def check(self) -> None:
        """Raise :class:`DeliveryError` if the channel cannot be used."""


# -------------------------
# SMTP
# -------------------------

class SmtpChannel(Channel):
    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        use_ssl: bool = False,
        timeout: float = 10.0,
    ):
        self.name = name
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    def _open(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            server.starttls()
        except BaseException:
            server.close()
            raise
        return server

    def _connect(self) -> smtplib.SMTP:
        server = self._open()
        try:
            server.login(self.username, self.password)
        except BaseException:
            server.close()
            raise
        return server

    def check(self) -> None:
        try:
            with self._connect() as server:
                server.noop()
        except smtplib.SMTPAuthenticationError as e:
            raise ChannelAuthError(f"{self.name} authentication failed") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError(f"{self.name} is unreachable: {e}") from e

    def deliver(self, msg: EmailMessage) -> DeliveryReceipt:
        recipients = [addr.strip() for addr in str(msg["To"]).split(",")]
        envelope_from = parseaddr(str(msg["From"]))[1] or self.username
        try:
            with self._connect() as server:
                response = self._transmit(server, envelope_from, recipients, msg)
        except smtplib.SMTPAuthenticationError as e:
            raise ChannelAuthError(f"{self.name} authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError("Recipient address was refused") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError(f"{self.name} delivery failed: {e}") from e

        return DeliveryReceipt(
            message_id=str(msg["Message-ID"]),
            channel=self.name,
            accepted=tuple(recipients),
            preview_url=self.preview_url(response),
        )

    @staticmethod
    def _transmit(server: smtplib.SMTP, envelope_from: str, recipients: list[str], msg: EmailMessage) -> str:
        # mail/rcpt/data by hand so the server's final reply is kept
        server.ehlo_or_helo_if_needed()
        code, resp = server.mail(envelope_from)
        if code != 250:
            raise smtplib.SMTPSenderRefused(code, resp, envelope_from)
        for rcpt in recipients:
            code, resp = server.rcpt(rcpt)
            if code not in (250, 251):
                raise smtplib.SMTPRecipientsRefused({rcpt: (code, resp)})
        code, resp = server.data(msg.as_bytes(policy=policy.SMTP))
        return resp.decode("utf-8", errors="replace")

    def preview_url(self, response: str) -> str | None:
        return None


class EtherealChannel(SmtpChannel):
    """Throwaway SMTP account on ethereal.email. Nothing reaches a real inbox."""

    sandbox = True

    def __init__(self, host: str, port: int, username: str, password: str, *,
                 use_ssl: bool = False, timeout: float = 10.0, web_url: str = ETHEREAL_WEB_URL):
        super().__init__("Ethereal", host, port, username, password, use_ssl=use_ssl, timeout=timeout)
        self.web_url = web_url.rstrip("/")

    @classmethod
    def create(cls, timeout: float = 10.0, client: httpx.Client | None = None) -> "EtherealChannel":
        payload = {"requestor": "digital-library-auth", "version": "1.0.0"}
        try:
            if client is None:
                with httpx.Client(timeout=timeout) as c:
                    res = c.post(NODEMAILER_API_URL, json=payload)
            else:
                res = client.post(NODEMAILER_API_URL, json=payload)
            res.raise_for_status()
            data = res.json()
        except httpx.HTTPError as e:
            raise TransientDeliveryError("Could not create Ethereal test account") from e

        if data.get("status") != "success":
            raise ChannelAuthError(f"Ethereal account creation refused: {data.get('error')}")

        smtp = data.get("smtp") or {}
        logger.info("Created Ethereal test account %s", data.get("user"))
        return cls(
            host=smtp.get("host", "smtp.ethereal.email"),
            port=int(smtp.get("port", 587)),
            username=data["user"],
            password=data["pass"],
            use_ssl=bool(smtp.get("secure", False)),
            timeout=timeout,
            web_url=data.get("web", ETHEREAL_WEB_URL),
        )

    def preview_url(self, response: str) -> str | None:
        match = _MSGID_RE.search(response or "")
        if not match:
            return None
        return f"{self.web_url}/message/{match.group(1)}"


# -------------------------
# In-process sandbox
# -------------------------

@dataclass(frozen=True)
class OutboxMessage:
    message_id: str
    to: str
    sender: str
    subject: str
    text: str
    html: str | None
    sent_at: datetime


class OutboxChannel(Channel):
    """Keeps the most recent messages in memory and serves them for preview in non-production."""

    name = "Outbox"
    sandbox = True

    def __init__(self, preview_base_url: str = "", max_messages: int = 200):
        self.preview_base_url = preview_base_url.rstrip("/")
        self.max_messages = max(1, max_messages)
        self._messages: OrderedDict[str, OutboxMessage] = OrderedDict()
        self._lock = threading.Lock()

    def deliver(self, msg: EmailMessage) -> DeliveryReceipt:
        key = str(msg["Message-ID"]).strip("<>").split("@", 1)[0]
        text_part = msg.get_body(preferencelist=("plain",))
        html_part = msg.get_body(preferencelist=("html",))
        stored = OutboxMessage(
            message_id=key,
            to=str(msg["To"]),
            sender=str(msg["From"]),
            subject=str(msg["Subject"]),
            text=text_part.get_content() if text_part is not None else "",
            html=html_part.get_content() if html_part is not None else None,
            sent_at=utcnow(),
        )
        with self._lock:
            self._messages[key] = stored
            # oldest first out
            while len(self._messages) > self.max_messages:
                self._messages.popitem(last=False)

        return DeliveryReceipt(
            message_id=key,
            channel=self.name,
            accepted=(stored.to,),
            preview_url=f"{self.preview_base_url}/dev/outbox/{key}",
        )

    def get(self, message_id: str) -> OutboxMessage | None:
        with self._lock:
            return self._messages.get(message_id)

    @property
    def messages(self) -> list[OutboxMessage]:
        with self._lock:
            return list(self._messages.values())


# -------------------------
# Retry + Notifier
# -------------------------

def with_retries(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_seconds: float = 1.0,
    retryable: tuple[type[Exception], ...] = (TransientDeliveryError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` up to ``attempts`` times, waiting 1x, 2x, ... ``backoff_seconds``.

    Errors outside ``retryable`` propagate immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retryable as e:
            if attempt == attempts:
                logger.error("Delivery failed after %d attempts: %s", attempts, e)
                raise
            delay = backoff_seconds * attempt
            logger.warning(
                "Delivery error (attempt %d/%d): %s. Retrying in %.1fs",
                attempt,
                attempts,
                e,
                delay,
            )
            sleep(delay)
    raise RuntimeError("Retry loop exited without error or result")


class Notifier:
    def __init__(
        self,
        channel: Channel,
        *,
        sender_address: str,
        sender_name: str = "",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        factory: Callable[[], Channel] | None = None,
    ):
        self.channel = channel
        self.sender_address = sender_address
        self.sender_name = sender_name
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.factory = factory

    @property
    def is_sandbox(self) -> bool:
        return self.channel.sandbox

    def _build(self, address: str, subject: str, body: str, html: str | None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.sender_name, self.sender_address)) if self.sender_name else self.sender_address
        msg["To"] = address
        msg["Message-ID"] = make_msgid(domain=self.sender_address.rpartition("@")[2] or None)
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def send(self, address: str, subject: str, body: str, html: str | None = None) -> DeliveryReceipt:
        msg = self._build(address, subject, body, html)
        channel = self.channel
        try:
            receipt = with_retries(
                lambda: channel.deliver(msg),
                attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
                sleep=self.sleep,
            )
        except ChannelAuthError:
            logger.error("%s rejected our credentials; check the mail configuration", channel.name)
            raise
        except DeliveryError:
            logger.error("Could not deliver %r to %s via %s", subject, address, channel.name)
            raise

        logger.info("Sent %r to %s via %s (%s)", subject, address, channel.name, receipt.message_id)
        if receipt.preview_url:
            logger.info("Preview URL: %s", receipt.preview_url)
        return receipt

    def redial(self) -> Channel:
        """Pick the channel again, e.g. after credentials were rotated."""
        if self.factory is None:
            raise ConfigError("Notifier has no channel factory")
        self.channel = self.factory()
        return self.channel


# -------------------------
# Channel selection
# -------------------------

def _configured_channel(settings: Settings) -> Channel | None:
    timeout = settings.mail_timeout_seconds
    if settings.gmail_user and settings.gmail_app_password:
        return SmtpChannel(
            "Gmail", "smtp.gmail.com", 465,
            settings.gmail_user, settings.gmail_app_password,
            use_ssl=True, timeout=timeout,
        )
    if settings.brevo_smtp_user and settings.brevo_smtp_pass:
        return SmtpChannel(
            "Brevo", "smtp-relay.brevo.com", 587,
            settings.brevo_smtp_user, settings.brevo_smtp_pass,
            timeout=timeout,
        )
    if settings.smtp_host and settings.smtp_user and settings.smtp_pass:
        return SmtpChannel(
            "SMTP", settings.smtp_host, settings.smtp_port,
            settings.smtp_user, settings.smtp_pass,
            use_ssl=settings.smtp_port == 465, timeout=timeout,
        )
    return None


def _sandbox_channel(settings: Settings) -> Channel:
    outbox = OutboxChannel(settings.public_base_url + settings.api_prefix)
    if settings.notifier_sandbox != "ethereal":
        return outbox
    try:
        return EtherealChannel.create(timeout=settings.mail_timeout_seconds)
    except DeliveryError:
        logger.warning("Ethereal unavailable, using in-process outbox", exc_info=True)
        return outbox


def select_channel(settings: Settings, verify: bool = True) -> Channel:
    channel = _configured_channel(settings)
    if channel is None:
        if not settings.sandbox_allowed:
            raise ConfigError(
                "No mail channel configured. Set GMAIL_*, BREVO_SMTP_* or SMTP_* variables."
            )
        logger.warning("No email credentials found; using %s sandbox", settings.notifier_sandbox)
        return _sandbox_channel(settings)

    if not verify:
        return channel

    try:
        channel.check()
    except DeliveryError:
        if settings.sandbox_allowed:
            logger.warning("Failed to verify %s; falling back to sandbox", channel.name, exc_info=True)
            return _sandbox_channel(settings)
        # keep it: sends will fail loudly and redial() can recover later
        logger.error("Failed to verify %s", channel.name, exc_info=True)
        return channel

    logger.info("%s SMTP server is ready to send emails", channel.name)
    return channel


def build_notifier(
    settings: Settings,
    *,
    verify: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> Notifier:
    return Notifier(
        select_channel(settings, verify=verify),
        sender_address=settings.sender_address,
        sender_name=settings.sender_name,
        max_attempts=settings.mail_max_attempts,
        backoff_seconds=settings.mail_backoff_seconds,
        sleep=sleep,
        factory=lambda: select_channel(settings, verify=verify),
    )
