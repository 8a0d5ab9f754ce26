"""
Outbound delivery channels for codes and links.

Two kinds of channel:
- SMS (Twilio in production, console in development)
- Email (SendGrid in production, console in development)

Channels are built from DeliverySettings when the app starts and handed to
the components that need them. A channel raises DeliveryError when the
gateway rejects or fails a send; callers turn that into a typed failure.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from ..config import DeliverySettings

logger = logging.getLogger(__name__)

APP_NAME = "QuickPrint"

# console channels keep only the most recent messages
CONSOLE_HISTORY = 100


class DeliveryError(Exception):
    """Gateway refused or failed to deliver a message."""


@dataclass
class SentMessage:
    to: str
    body: str
    subject: str | None = None
    sent_at: datetime = field(default_factory=datetime.now)


class ConsoleSmsChannel:
    """Development SMS channel: logs the message instead of sending it."""

    def __init__(self):
        self.sent: deque[SentMessage] = deque(maxlen=CONSOLE_HISTORY)

    def send_sms(self, to: str, body: str) -> None:
        logger.info("[MOCK SMS] to=%s body=%s", to, body)
        self.sent.append(SentMessage(to=to, body=body))


class ConsoleEmailChannel:
    """Development email channel: logs the message instead of sending it."""

    def __init__(self):
        self.sent: deque[SentMessage] = deque(maxlen=CONSOLE_HISTORY)

    def send_email(self, to: str, subject: str, html: str) -> None:
        logger.info("[MOCK EMAIL] to=%s subject=%s", to, subject)
        self.sent.append(SentMessage(to=to, subject=subject, body=html))


class TwilioSmsChannel:
    def __init__(self, account_sid: str, auth_token: str, from_number: str):
        self._client = TwilioClient(account_sid, auth_token)
        self._from_number = from_number

    def send_sms(self, to: str, body: str) -> None:
        try:
            message = self._client.messages.create(to=to, from_=self._from_number, body=body)
        except TwilioRestException as e:
            logger.error("Twilio error %s sending to %s: %s", e.code, to, e.msg)
            raise DeliveryError("Failed to send SMS") from e
        logger.info("SMS sent to %s, SID: %s", to, message.sid)


class SendGridEmailChannel:
    def __init__(self, api_key: str, from_email: str):
        self._client = SendGridAPIClient(api_key)
        self._from_email = from_email

    def send_email(self, to: str, subject: str, html: str) -> None:
        message = Mail(
            from_email=(self._from_email, APP_NAME),
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        try:
            response = self._client.send(message)
        except Exception as e:
            # python_http_client raises a family of HTTPError subclasses per status
            logger.error("SendGrid error sending to %s: %s", to, e)
            raise DeliveryError("Failed to send email") from e
        if response.status_code >= 300:
            logger.error("SendGrid rejected email to %s with status %s", to, response.status_code)
            raise DeliveryError("Failed to send email")
        logger.info("Email sent to %s, status: %s", to, response.status_code)


def build_sms_channel(settings: DeliverySettings):
    """SMS channel for the configured mode, or None when SMS is unavailable."""
    if settings.use_mock:
        return ConsoleSmsChannel()
    if settings.twilio_enabled:
        return TwilioSmsChannel(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_from_number,
        )
    return None


def build_email_channel(settings: DeliverySettings):
    """Email channel for the configured mode, or None when email is unavailable."""
    if settings.sendgrid_enabled:
        return SendGridEmailChannel(settings.sendgrid_api_key, settings.sendgrid_from_email)
    if settings.use_mock:
        return ConsoleEmailChannel()
    return None


def otp_sms_body(code: str, ttl_minutes: int) -> str:
    return f"Your {APP_NAME} verification code is: {code}. Valid for {ttl_minutes} minutes."


def otp_email_subject(code: str) -> str:
    return f"{code} is your {APP_NAME} verification code"


def otp_email_html(code: str, ttl_minutes: int) -> str:
    return (
        f"<h2>Verify your email</h2>"
        f"<p>Use this code to verify your email. It expires in {ttl_minutes} minutes.</p>"
        f"<p style=\"font-size:32px;letter-spacing:8px;font-weight:bold\">{code}</p>"
        f"<p>If you didn't request this, ignore this email.</p>"
    )


def magic_link_html(url: str, name: str | None, ttl_minutes: int) -> str:
    greeting = f"Hi {name}," if name else "Hi there,"
    return (
        f"<h2>Confirm your {APP_NAME} partner account</h2>"
        f"<p>{greeting} click the link below to verify your email and finish registering your shop. "
        f"This link expires in {ttl_minutes} minutes.</p>"
        f"<p><a href=\"{url}\">Verify email</a></p>"
        f"<p>If you didn't request this, ignore this email.</p>"
    )


def sign_in_link_html(url: str, name: str | None, ttl_minutes: int) -> str:
    greeting = f"Hi {name}," if name else "Hi there,"
    return (
        f"<h2>Sign in to {APP_NAME}</h2>"
        f"<p>{greeting} click the link below to sign in. "
        f"This link expires in {ttl_minutes} minutes and can only be used once.</p>"
        f"<p><a href=\"{url}\">Sign in</a></p>"
        f"<p>If you didn't request this, ignore this email.</p>"
    )
