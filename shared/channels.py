"""
Notification transports for operator alerts.

Two independent transports:
- Push: Server酱 (ServerChan) - a single HTTPS form post per message
- Email: SMTP, implicit TLS on port 465, STARTTLS elsewhere when offered

Design decisions:
- Every send returns a NotificationResult; transports never raise
- Channels track sent messages for test assertions
- The HTTP client and SMTP connection factory are injectable for tests
"""

import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Callable, Optional

import httpx

logger = logging.getLogger("notifications")

IMPLICIT_TLS_SMTP_PORT = 465
SERVER_CHAN_BASE_URL = "https://sctapi.ftqq.com"


class ChannelType(str, Enum):
    """Supported notification transports."""
    PUSH = "push"
    EMAIL = "email"


@dataclass
class NotificationResult:
    """
    Result of a notification send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    channel: ChannelType
    recipient: str
    subject: str
    body: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"{status} {self.channel.value.upper()} to {self.recipient}: {self.subject}"


class PushChannel:
    """
    Server酱 push transport.

    Posts `title` and `desp` as a form to https://sctapi.ftqq.com/<key>.send.
    The service answers JSON with code == 0 on success.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        base_url: str = SERVER_CHAN_BASE_URL,
        timeout: float = 10.0,
    ):
        self.client = client or httpx.Client(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.sent_messages: list[NotificationResult] = []

    def send(self, key: str, title: str, body: str) -> NotificationResult:
        """Send a push message. The SendKey is the recipient and is never logged."""
        result = NotificationResult(
            success=False,
            channel=ChannelType.PUSH,
            recipient="server-chan",
            subject=title,
            body=body,
        )
        if not key:
            result.error = "push key not configured"
            logger.warning("[PUSH SKIPPED] No SendKey configured")
            self.sent_messages.append(result)
            return result

        try:
            response = self.client.post(
                f"{self.base_url}/{key}.send",
                data={"title": title, "desp": body},
            )
            payload = response.json()
            result.success = response.status_code == 200 and payload.get("code") == 0
            if not result.success:
                result.error = f"HTTP {response.status_code}, code={payload.get('code')}"
        except (httpx.HTTPError, ValueError) as e:
            result.error = str(e)

        if result.success:
            logger.info(f"[PUSH] {title}")
        else:
            logger.error(f"[PUSH FAILED] {title} | Error: {result.error}")
        self.sent_messages.append(result)
        return result

    def get_sent_count(self) -> int:
        return len(self.sent_messages)

    def clear_history(self):
        self.sent_messages.clear()


# Builds a connected SMTP client: (host, port, use_implicit_tls, timeout) -> smtplib.SMTP
SMTPFactory = Callable[[str, int, bool, float], smtplib.SMTP]


def default_smtp_factory(host: str, port: int, implicit_tls: bool, timeout: float) -> smtplib.SMTP:
    if implicit_tls:
        return smtplib.SMTP_SSL(host, port, timeout=timeout)
    return smtplib.SMTP(host, port, timeout=timeout)


class EmailChannel:
    """
    SMTP email transport.

    The connection is secure from the first byte when the port is 465;
    on any other port it is upgraded with STARTTLS if the server offers it.
    """

    def __init__(self, smtp_factory: Optional[SMTPFactory] = None, timeout: float = 10.0):
        self.smtp_factory = smtp_factory or default_smtp_factory
        self.timeout = timeout
        self.sent_messages: list[NotificationResult] = []

    def send(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        to: str,
        subject: str,
        html_body: str,
    ) -> NotificationResult:
        """
        Send an HTML email from `user` to `to`.

        Args:
            host, port, user, password: SMTP server and credentials
            to: Recipient address
            subject: Email subject line
            html_body: HTML content

        Returns:
            NotificationResult indicating success/failure
        """
        result = NotificationResult(
            success=False,
            channel=ChannelType.EMAIL,
            recipient=to,
            subject=subject,
            body=html_body,
        )
        if not (host and user and password and to):
            result.error = "email transport not fully configured"
            logger.warning(f"[EMAIL SKIPPED] Incomplete SMTP settings for {to or '(no recipient)'}")
            self.sent_messages.append(result)
            return result

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = user
        message["To"] = to
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html_body, subtype="html")

        implicit_tls = port == IMPLICIT_TLS_SMTP_PORT
        try:
            with self.smtp_factory(host, port, implicit_tls, self.timeout) as server:
                if not implicit_tls:
                    server.ehlo()
                    if server.has_extn("starttls"):
                        server.starttls()
                        server.ehlo()
                server.login(user, password)
                server.send_message(message)
            result.success = True
            logger.info(f"[EMAIL] To: {to} | Subject: {subject}")
        except (smtplib.SMTPException, OSError) as e:
            result.error = str(e)
            logger.error(f"[EMAIL FAILED] To: {to} | Subject: {subject} | Error: {result.error}")

        self.sent_messages.append(result)
        return result

    def get_sent_count(self) -> int:
        return len(self.sent_messages)

    def clear_history(self):
        self.sent_messages.clear()


class NotificationChannels:
    """
    Facade over both transports.

    The dispatcher sends through this so tests can swap in recording
    transports in one place.
    """

    def __init__(
        self,
        push: Optional[PushChannel] = None,
        email: Optional[EmailChannel] = None,
        timeout: float = 10.0,
    ):
        self.push = push or PushChannel(timeout=timeout)
        self.email = email or EmailChannel(timeout=timeout)

    def get_all_sent_messages(self) -> list[NotificationResult]:
        return self.push.sent_messages + self.email.sent_messages

    def get_total_sent_count(self) -> int:
        return self.push.get_sent_count() + self.email.get_sent_count()

    def clear_all_history(self):
        self.push.clear_history()
        self.email.clear_history()
