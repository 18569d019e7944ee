"""
Tests for the notification publisher and OTP email delivery.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.fsm.states import OtpStage
from app.services.email_service import CeleryEmailDispatcher, SmtpEmailService, build_otp_message
from app.services.notification_service import RedisNotificationPublisher


@pytest.mark.asyncio
async def test_redis_publisher_sends_json():
    mock_redis = AsyncMock()
    mock_redis.publish.return_value = 1

    with patch("app.services.notification_service.get_redis", new=AsyncMock(return_value=mock_redis)):
        await RedisNotificationPublisher(channel="test:donations").publish(
            "donationUpdated", {"donationId": "abc", "status": "picked"}
        )

    channel, message = mock_redis.publish.call_args.args
    assert channel == "test:donations"
    assert json.loads(message) == {
        "event": "donationUpdated",
        "payload": {"donationId": "abc", "status": "picked"},
    }


@pytest.mark.asyncio
async def test_celery_dispatcher_enqueues():
    task = MagicMock()
    with patch("app.workers.otp_email.deliver_otp_email", task):
        await CeleryEmailDispatcher().send_otp_email("donor@example.com", "123456", OtpStage.PICKUP)

    task.delay.assert_called_once_with("donor@example.com", "123456", "pickup")


def test_otp_message_contents():
    message = build_otp_message("recipient@example.com", "654321", OtpStage.DELIVERY)
    assert message["Subject"] == "Food Delivery OTP"
    assert message["To"] == "recipient@example.com"
    assert "654321" in message.get_body(preferencelist=("plain",)).get_content()


def test_smtp_not_configured_logs_instead():
    service = SmtpEmailService()
    service.host = ""
    with patch("app.services.email_service.smtplib.SMTP") as smtp:
        assert service.send_otp_email("donor@example.com", "123456", OtpStage.PICKUP) is False
    smtp.assert_not_called()


def test_smtp_sends_message():
    service = SmtpEmailService()
    service.host = "smtp.example.com"
    service.username = "mailer@example.com"
    service.password = "secret"
    service.use_tls = True

    with patch("app.services.email_service.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        assert service.send_otp_email("donor@example.com", "123456", OtpStage.PICKUP) is True

    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer@example.com", "secret")
    sent = server.send_message.call_args.args[0]
    assert sent["Subject"] == "Food Pickup OTP"


def test_smtp_message_from_login_user():
    service = SmtpEmailService()
    service.host = "smtp.example.com"
    service.username = "mailer@example.com"
    service.password = ""
    service.use_tls = False

    with patch("app.services.email_service.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        service.send_otp_email("donor@example.com", "123456", OtpStage.PICKUP)

    server.starttls.assert_not_called()
    server.login.assert_not_called()
    assert server.send_message.call_args.args[0]["From"] == "mailer@example.com"
