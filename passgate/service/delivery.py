from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from passgate.logging import get_logger
from passgate.service.errors import DeliveryError, ServiceUnavailableError
from passgate.storage.models import (
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    PURPOSE_LOGIN,
    PURPOSE_VERIFY_SECONDARY_CHANNEL,
)

logger = get_logger(__name__)

_PURPOSE_SUBJECTS = {
    PURPOSE_LOGIN: "Your sign-in link",
    PURPOSE_VERIFY_SECONDARY_CHANNEL: "Confirm your contact details",
}
_DEFAULT_SUBJECT = "Verify your identity"


class DeliveryGateway(Protocol):
    """Ships a raw one-time secret to its destination out-of-band."""

    async def send_link(
        self,
        channel: str,
        destination: str,
        url: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None: ...

    async def send_code(
        self,
        channel: str,
        destination: str,
        code: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None: ...


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_phone(phone: str) -> str:
    return f"***{phone[-2:]}" if len(phone) > 4 else "redacted"


class EmailGateway:
    """SMTP delivery for magic links and codes.

    When SMTP is not configured and ``allow_unconfigured`` is set (development),
    sends are logged with the recipient redacted and without the body, which
    carries the secret. In production an unconfigured gateway refuses to send.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Passgate",
        timeout_seconds: float = 10.0,
        allow_unconfigured: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds
        self.allow_unconfigured = allow_unconfigured

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=_redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=_redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=_redact_email(to_email),
                refused_count=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPSenderRefused as e:
            logger.error(
                "email_sender_refused",
                to=_redact_email(to_email),
                sender=self.from_email,
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_send_failed",
                to=_redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    async def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            if not self.allow_unconfigured:
                logger.error("email_not_configured", to=_redact_email(to_email))
                raise ServiceUnavailableError("email delivery is not configured")
            # Body carries the secret, so only the envelope is logged
            logger.info("email_dev_mode", to=_redact_email(to_email), subject=subject)
            return
        try:
            # Thread deadline sits slightly above the socket timeout
            sent = await asyncio.wait_for(
                asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body),
                self.timeout_seconds + 1,
            )
        except asyncio.TimeoutError as exc:
            logger.error("email_delivery_timeout", to=_redact_email(to_email))
            raise DeliveryError("credential delivery failed") from exc
        if not sent:
            raise DeliveryError("credential delivery failed")

    async def send_link(
        self,
        channel: str,
        destination: str,
        url: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        subject = _PURPOSE_SUBJECTS.get(purpose, _DEFAULT_SUBJECT)
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{subject}</h1>
        <p>Use the button below to continue. The link works once.</p>
        <p style="margin: 30px 0;">
            <a href="{url}" style="display: inline-block; background: #10a37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600;">Continue</a>
        </p>
        <p>This link will expire in {expires_in_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">If the button doesn't work, copy and paste this URL: {url}</p>
    </div>
</body>
</html>
"""
        text_body = f"""{subject}

Open the link below to continue. The link works once.

{url}

This link will expire in {expires_in_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        await self._deliver(destination, subject, html_body, text_body)

    async def send_code(
        self,
        channel: str,
        destination: str,
        code: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        subject = f"{_PURPOSE_SUBJECTS.get(purpose, _DEFAULT_SUBJECT)}: your code"
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <p>Your verification code is</p>
        <p style="font-size: 32px; font-weight: 700; letter-spacing: 6px;">{code}</p>
        <p>This code will expire in {expires_in_minutes} minutes.</p>
    </div>
</body>
</html>
"""
        text_body = (
            f"Your verification code is {code}\n\n"
            f"This code will expire in {expires_in_minutes} minutes.\n"
        )
        await self._deliver(destination, subject, html_body, text_body)


class SmsGateway:
    """SMS delivery through the Twilio Messages REST API."""

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 10.0,
        allow_unconfigured: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.allow_unconfigured = allow_unconfigured
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def _send_sms(self, to_number: str, body: str) -> None:
        if not self.is_configured:
            if not self.allow_unconfigured:
                logger.error("sms_not_configured", to=_redact_phone(to_number))
                raise ServiceUnavailableError("sms delivery is not configured")
            logger.info("sms_dev_mode", to=_redact_phone(to_number))
            return

        url = f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=False,
                auth=(self.account_sid, self.auth_token),
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    url,
                    data={"To": to_number, "From": self.from_number, "Body": body},
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_provider_rejected",
                to=_redact_phone(to_number),
                status_code=exc.response.status_code,
            )
            raise DeliveryError("credential delivery failed") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=_redact_phone(to_number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError("credential delivery failed") from exc
        logger.info("sms_sent", to=_redact_phone(to_number))

    async def send_link(
        self,
        channel: str,
        destination: str,
        url: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        await self._send_sms(
            destination,
            f"Continue here: {url} (expires in {expires_in_minutes} min, works once)",
        )

    async def send_code(
        self,
        channel: str,
        destination: str,
        code: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        await self._send_sms(
            destination,
            f"Your verification code is {code}. It expires in {expires_in_minutes} minutes.",
        )


class MultiChannelGateway:
    """Routes each send to the gateway registered for its channel."""

    def __init__(self, *, email: DeliveryGateway, sms: DeliveryGateway) -> None:
        self._gateways = {CHANNEL_EMAIL: email, CHANNEL_SMS: sms}

    def _for(self, channel: str) -> DeliveryGateway:
        gateway = self._gateways.get(channel)
        if gateway is None:
            raise ValueError(f"unknown delivery channel: {channel}")
        return gateway

    async def send_link(
        self,
        channel: str,
        destination: str,
        url: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        await self._for(channel).send_link(
            channel, destination, url, purpose=purpose, expires_in_minutes=expires_in_minutes
        )

    async def send_code(
        self,
        channel: str,
        destination: str,
        code: str,
        *,
        purpose: str,
        expires_in_minutes: int,
    ) -> None:
        await self._for(channel).send_code(
            channel, destination, code, purpose=purpose, expires_in_minutes=expires_in_minutes
        )
