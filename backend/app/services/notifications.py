"""Outbound delivery of one-time codes over email (SMTP) and SMS (Twilio)."""
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import logging
import re
import smtplib
from typing import Protocol

import httpx

from app.config import Settings
from app.services.common import redact

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
TWILIO_VERIFY_BASE = "https://verify.twilio.com/v2"


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    detail: str = ""


class Notifier(Protocol):
    def send_code(self, destination: str, code: str, expires_minutes: int) -> DeliveryResult:
        ...


class PhoneVerificationService(Protocol):
    """External service that owns the whole code lifecycle for a phone number."""

    def start(self, phone: str) -> DeliveryResult:
        ...

    def check(self, phone: str, code: str) -> bool:
        ...


def generate_otp_email_html(code: str, expires_minutes: int, app_name: str) -> str:
    return f"""
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="color: #1e40af;">{app_name} verification</h1>
        <p>Your verification code is:</p>
        <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>
        <p>This code expires in {expires_minutes} minutes. If you did not request it, ignore this email.</p>
    </body>
    </html>
    """


class EmailNotifier:
    """Send codes using SMTP. Reports ``sent=False`` when SMTP is not configured."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host)

    def send_code(self, destination: str, code: str, expires_minutes: int) -> DeliveryResult:
        if not self.is_configured:
            logger.warning("SMTP not configured, skipping email")
            return DeliveryResult(sent=False, detail="email service not configured")

        html_content = generate_otp_email_html(code, expires_minutes, self.settings.app_name)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{self.settings.app_name}: your verification code"
        msg["From"] = self.settings.smtp_from_email
        msg["To"] = destination

        # Plain text fallback
        plain_text = html_content.replace("<br>", "\n").replace("</p>", "\n\n")
        plain_text = re.sub(r"<[^>]+>", "", plain_text)

        msg.attach(MIMEText(plain_text, "plain"))
        msg.attach(MIMEText(html_content, "html"))

        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port) as server:
                server.starttls()
                if self.settings.smtp_user and self.settings.smtp_password:
                    server.login(self.settings.smtp_user, self.settings.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {redact(destination)}: {e}")
            return DeliveryResult(sent=False, detail="email delivery failed")

        logger.info(f"Verification email sent to {redact(destination)}")
        return DeliveryResult(sent=True)


class TwilioSmsNotifier:
    """Send codes through the Twilio Messages API."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.settings = settings
        self.client = client

    @property
    def is_configured(self) -> bool:
        return bool(
            self.settings.twilio_account_sid
            and self.settings.twilio_auth_token
            and self.settings.twilio_from_number
        )

    def send_code(self, destination: str, code: str, expires_minutes: int) -> DeliveryResult:
        if not self.is_configured:
            logger.warning("Twilio not configured, skipping SMS")
            return DeliveryResult(sent=False, detail="sms service not configured")

        url = f"{TWILIO_API_BASE}/Accounts/{self.settings.twilio_account_sid}/Messages.json"
        body = (
            f"Your {self.settings.app_name} verification code is: {code}. "
            f"This code expires in {expires_minutes} minutes."
        )
        try:
            response = _post(
                self.client,
                url,
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                data={"From": self.settings.twilio_from_number, "To": destination, "Body": body},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS to {redact(destination)}: {e}")
            return DeliveryResult(sent=False, detail="sms delivery failed")

        logger.info(f"Verification SMS sent to {redact(destination)}")
        return DeliveryResult(sent=True)


class TwilioVerifyService:
    """Delegated phone verification through Twilio Verify."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.settings = settings
        self.client = client

    @property
    def is_configured(self) -> bool:
        return bool(
            self.settings.twilio_account_sid
            and self.settings.twilio_auth_token
            and self.settings.twilio_verify_service_sid
        )

    def _url(self, resource: str) -> str:
        return f"{TWILIO_VERIFY_BASE}/Services/{self.settings.twilio_verify_service_sid}/{resource}"

    def start(self, phone: str) -> DeliveryResult:
        try:
            response = _post(
                self.client,
                self._url("Verifications"),
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                data={"To": phone, "Channel": "sms"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Twilio Verify start failed for {redact(phone)}: {e}")
            return DeliveryResult(sent=False, detail="sms delivery failed")
        return DeliveryResult(sent=True, detail=response.json().get("status", "pending"))

    def check(self, phone: str, code: str) -> bool:
        try:
            response = _post(
                self.client,
                self._url("VerificationCheck"),
                auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                data={"To": phone, "Code": code},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Twilio Verify check failed for {redact(phone)}: {e}")
            return False
        return response.json().get("status") == "approved"


def _post(client: httpx.Client | None, url: str, **kwargs) -> httpx.Response:
    if client is not None:
        return client.post(url, **kwargs)
    with httpx.Client(timeout=httpx.Timeout(10.0, connect=5.0)) as owned:
        return owned.post(url, **kwargs)


def build_phone_verifier(settings: Settings) -> PhoneVerificationService | None:
    """Return the delegated phone verifier when Twilio Verify is configured."""
    service = TwilioVerifyService(settings)
    return service if service.is_configured else None
