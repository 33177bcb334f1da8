"""Tests for the email and SMS delivery gateways."""

import smtplib
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs

import httpx
import pytest

from passgate.service.delivery import EmailGateway, MultiChannelGateway, SmsGateway
from passgate.service.errors import DeliveryError, ServiceUnavailableError
from passgate.storage.models import CHANNEL_EMAIL, CHANNEL_SMS, PURPOSE_LOGIN


def _email_gateway(**overrides) -> EmailGateway:
    values = {
        "smtp_host": "smtp.example.com",
        "smtp_port": 587,
        "smtp_user": "mailer",
        "smtp_password": "pw",
        "from_email": "noreply@example.com",
        "timeout_seconds": 1.0,
    }
    values.update(overrides)
    return EmailGateway(**values)


def _sms_gateway(handler, **overrides) -> SmsGateway:
    values = {
        "account_sid": "AC123",
        "auth_token": "auth",
        "from_number": "+15550000000",
        "api_base_url": "https://sms.test/2010-04-01",
        "timeout_seconds": 1.0,
        "transport": httpx.MockTransport(handler),
    }
    values.update(overrides)
    return SmsGateway(**values)


class TestEmailGateway:
    """SMTP delivery."""

    async def test_link_sent_over_starttls(self):
        gateway = _email_gateway()
        with patch("passgate.service.delivery.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            await gateway.send_link(
                CHANNEL_EMAIL,
                "user@example.com",
                "http://localhost:8000/credentials/redeem?token=abc",
                purpose=PURPOSE_LOGIN,
                expires_in_minutes=15,
            )
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        sender, recipient, body = server.sendmail.call_args.args
        assert sender == "noreply@example.com"
        assert recipient == "user@example.com"
        assert "token=abc" in body

    async def test_smtp_failure_raises_delivery_error(self):
        gateway = _email_gateway()
        with patch("passgate.service.delivery.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})
            with pytest.raises(DeliveryError):
                await gateway.send_code(
                    CHANNEL_EMAIL,
                    "user@example.com",
                    "123456",
                    purpose=PURPOSE_LOGIN,
                    expires_in_minutes=10,
                )

    async def test_unconfigured_logs_in_development(self):
        gateway = EmailGateway(allow_unconfigured=True)
        with patch("passgate.service.delivery.smtplib.SMTP") as smtp_cls:
            await gateway.send_code(
                CHANNEL_EMAIL, "user@example.com", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
            )
        smtp_cls.assert_not_called()

    async def test_unconfigured_refuses_in_production(self):
        gateway = EmailGateway(allow_unconfigured=False)
        with pytest.raises(ServiceUnavailableError):
            await gateway.send_code(
                CHANNEL_EMAIL, "user@example.com", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
            )


class TestSmsGateway:
    """Twilio REST delivery."""

    async def test_code_posted_to_messages_api(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        gateway = _sms_gateway(handler)
        await gateway.send_code(
            CHANNEL_SMS, "+15555550123", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
        )
        assert len(seen) == 1
        request = seen[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+15555550123"]
        assert form["From"] == ["+15550000000"]
        assert "123456" in form["Body"][0]

    async def test_provider_rejection_raises_delivery_error(self):
        gateway = _sms_gateway(lambda request: httpx.Response(400, json={"code": 21211}))
        with pytest.raises(DeliveryError):
            await gateway.send_code(
                CHANNEL_SMS, "+15555550123", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
            )

    async def test_transport_error_raises_delivery_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        gateway = _sms_gateway(handler)
        with pytest.raises(DeliveryError):
            await gateway.send_link(
                CHANNEL_SMS, "+15555550123", "http://x/redeem", purpose=PURPOSE_LOGIN, expires_in_minutes=15
            )

    async def test_unconfigured_refuses_in_production(self):
        gateway = SmsGateway(allow_unconfigured=False)
        with pytest.raises(ServiceUnavailableError):
            await gateway.send_code(
                CHANNEL_SMS, "+15555550123", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
            )


class TestMultiChannelGateway:
    """Channel routing."""

    async def test_routes_by_channel(self):
        email = MagicMock()
        sms = MagicMock()
        email.send_code = AsyncMock()
        sms.send_code = AsyncMock()
        gateway = MultiChannelGateway(email=email, sms=sms)
        await gateway.send_code(
            CHANNEL_SMS, "+15555550123", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
        )
        sms.send_code.assert_called_once()
        email.send_code.assert_not_called()

    async def test_unknown_channel(self):
        gateway = MultiChannelGateway(email=MagicMock(), sms=MagicMock())
        with pytest.raises(ValueError):
            await gateway.send_code(
                "carrier-pigeon", "x", "123456", purpose=PURPOSE_LOGIN, expires_in_minutes=10
            )
