import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock, patch

import httpx
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from intake.errors import TransportConfigurationError
from intake.models import Message
from integrations.transport import (
    MailTransport,
    MailgunTransport,
    SendGridTransport,
    SimulationTransport,
    SmtpTransport,
    build_mime,
    build_transport,
    create_sandbox_account,
    resolve_transport,
)

SANDBOX_ACCOUNT = {
    "status": "success",
    "user": "abc123@ethereal.email",
    "pass": "secret",
    "smtp": {"host": "smtp.ethereal.email", "port": 587, "secure": False},
    "web": "https://ethereal.email",
}


def make_message(**overrides):
    fields = {
        "sender": "DevFlow <noreply@devflow.example>",
        "to": "owner@devflow.example",
        "subject": "New contact from Jean Dupont - Individual",
        "html": "<p>Hello</p>",
        "text": "Hello",
        "reply_to": "jean@example.com",
    }
    fields.update(overrides)
    return Message(**fields)


class TestTransportSelection:
    """Test provider resolution at startup."""

    def test_direct_credentials_take_precedence(self):
        settings = Settings(environment="production", email_user="me@gmail.com", email_pass="app-pass",
                            email_provider="sendgrid", sendgrid_api_key="SG.key")

        transport = asyncio.run(build_transport(settings))

        assert isinstance(transport, SmtpTransport)
        assert transport.name == "gmail"
        assert transport.host == "smtp.gmail.com"
        assert transport.use_tls is True

    def test_direct_credentials_in_development(self):
        settings = Settings(email_user="me@gmail.com", email_pass="app-pass")

        with patch("integrations.transport.create_sandbox_account") as mock_sandbox:
            transport = asyncio.run(build_transport(settings))

        assert transport.name == "gmail"
        mock_sandbox.assert_not_called()

    def test_production_sendgrid(self):
        settings = Settings(environment="production", email_provider="SendGrid", sendgrid_api_key="SG.key")

        transport = asyncio.run(build_transport(settings))

        assert isinstance(transport, SendGridTransport)

    def test_production_mailgun(self):
        settings = Settings(environment="production", email_provider="mailgun",
                            mailgun_api_key="key-1", mailgun_domain="mg.devflow.example")

        transport = asyncio.run(build_transport(settings))

        assert isinstance(transport, MailgunTransport)
        assert transport.domain == "mg.devflow.example"

    def test_production_custom_smtp(self):
        settings = Settings(environment="staging", email_provider="smtp", smtp_host="mail.devflow.example",
                            smtp_port="2525", smtp_user="u", smtp_pass="p", smtp_tls_reject_unauthorized=False)

        transport = asyncio.run(build_transport(settings))

        assert transport.name == "smtp"
        assert transport.port == 2525
        assert transport.validate_certs is False

    @pytest.mark.parametrize("settings", [
        Settings(environment="production", email_provider="gmail"),
        Settings(environment="production", email_provider="sendgrid"),
        Settings(environment="production", email_provider="mailgun", mailgun_api_key="key-1"),
        Settings(environment="production", email_provider="smtp", smtp_host="mail.devflow.example"),
        Settings(environment="production", email_provider="smtp", smtp_host="h", smtp_port="abc",
                 smtp_user="u", smtp_pass="p"),
        Settings(environment="production", email_provider="pigeon"),
    ])
    def test_production_missing_configuration_is_an_error(self, settings):
        with pytest.raises(TransportConfigurationError):
            asyncio.run(build_transport(settings))

    def test_development_uses_sandbox(self):
        settings = Settings()

        with patch("integrations.transport.create_sandbox_account", new=AsyncMock(return_value=SANDBOX_ACCOUNT)):
            transport = asyncio.run(build_transport(settings))

        assert transport.name == "sandbox"
        assert transport.username == "abc123@ethereal.email"
        assert transport.port == 587
        assert transport.start_tls is True
        assert transport.preview_web == "https://ethereal.email"

    def test_resolve_falls_back_to_simulation_on_config_error(self):
        settings = Settings(environment="production", email_provider="sendgrid")

        transport = asyncio.run(resolve_transport(settings))

        assert isinstance(transport, SimulationTransport)
        assert "SENDGRID_API_KEY" in transport.reason

    def test_resolve_falls_back_when_sandbox_unavailable(self):
        settings = Settings()

        with patch("integrations.transport.create_sandbox_account",
                   new=AsyncMock(side_effect=httpx.ConnectError("network down"))):
            transport = asyncio.run(resolve_transport(settings))

        assert isinstance(transport, SimulationTransport)

        outcome = asyncio.run(transport.send(make_message()))
        assert outcome.sent is True
        assert outcome.message_id.startswith("simulation-")
        assert outcome.error is None


class TestSandboxAccount:
    """Test disposable mailbox creation."""

    def test_account_created(self):
        def handler(request):
            assert request.method == "POST"
            return httpx.Response(200, json=SANDBOX_ACCOUNT)

        account = asyncio.run(create_sandbox_account(http_transport=httpx.MockTransport(handler)))

        assert account["user"] == "abc123@ethereal.email"

    def test_account_refused(self):
        def handler(request):
            return httpx.Response(200, json={"status": "error", "error": "rate limited"})

        with pytest.raises(TransportConfigurationError):
            asyncio.run(create_sandbox_account(http_transport=httpx.MockTransport(handler)))


class TestSend:
    """Test the send contract of each provider."""

    def test_send_never_raises(self):
        class BrokenTransport(MailTransport):
            name = "broken"

            async def _deliver(self, message):
                raise RuntimeError("relay exploded")

        outcome = asyncio.run(BrokenTransport().send(make_message()))

        assert outcome.sent is False
        assert outcome.error == "relay exploded"
        assert outcome.provider == "broken"
        assert outcome.message_id is None

    def test_simulation_ids_are_unique(self):
        transport = SimulationTransport()

        first = asyncio.run(transport.send(make_message()))
        second = asyncio.run(transport.send(make_message()))

        assert first.message_id != second.message_id

    def test_smtp_send(self):
        transport = SmtpTransport(name="sandbox", host="smtp.ethereal.email", port=587, username="u",
                                  password="p", start_tls=True, preview_web="https://ethereal.email")
        response = "250 Accepted [STATUS=new MSGID=YWJjZGVm]"

        with patch("integrations.transport.aiosmtplib.send", new=AsyncMock(return_value=({}, response))) as mock_send:
            outcome = asyncio.run(transport.send(make_message()))

        assert outcome.sent is True
        assert outcome.message_id.startswith("<")
        assert outcome.preview_url == "https://ethereal.email/message/YWJjZGVm"

        mime = mock_send.call_args.args[0]
        assert mime["To"] == "owner@devflow.example"
        assert mime["Reply-To"] == "jean@example.com"
        assert mock_send.call_args.kwargs["hostname"] == "smtp.ethereal.email"
        assert mock_send.call_args.kwargs["start_tls"] is True

    def test_smtp_refused_recipient(self):
        transport = SmtpTransport(name="smtp", host="mail.devflow.example", port=25)
        refused = {"owner@devflow.example": (550, "No such user")}

        with patch("integrations.transport.aiosmtplib.send", new=AsyncMock(return_value=(refused, "ok"))):
            outcome = asyncio.run(transport.send(make_message()))

        assert outcome.sent is False
        assert "owner@devflow.example" in outcome.error

    def test_smtp_connection_error(self):
        transport = SmtpTransport(name="gmail", host="smtp.gmail.com", port=465, use_tls=True)

        with patch("integrations.transport.aiosmtplib.send", new=AsyncMock(side_effect=OSError("timed out"))):
            outcome = asyncio.run(transport.send(make_message()))

        assert outcome.sent is False
        assert outcome.error == "timed out"

    def test_sendgrid_send(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "sg-123"})

        transport = SendGridTransport("SG.key", http_transport=httpx.MockTransport(handler))
        outcome = asyncio.run(transport.send(make_message()))

        assert outcome.sent is True
        assert outcome.message_id == "sg-123"
        assert captured["url"] == "https://api.sendgrid.com/v3/mail/send"
        assert captured["auth"] == "Bearer SG.key"
        assert captured["body"]["from"] == {"email": "noreply@devflow.example", "name": "DevFlow"}
        assert captured["body"]["reply_to"] == {"email": "jean@example.com"}

    def test_sendgrid_http_error(self):
        transport = SendGridTransport(
            "SG.bad", http_transport=httpx.MockTransport(lambda request: httpx.Response(401))
        )

        outcome = asyncio.run(transport.send(make_message()))

        assert outcome.sent is False
        assert outcome.provider == "sendgrid"

    def test_mailgun_send(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = request.content.decode()
            return httpx.Response(200, json={"id": "<mg-1@mg.devflow.example>", "message": "Queued. Thank you."})

        transport = MailgunTransport("key-1", "mg.devflow.example", http_transport=httpx.MockTransport(handler))
        outcome = asyncio.run(transport.send(make_message()))

        assert outcome.sent is True
        assert outcome.message_id == "<mg-1@mg.devflow.example>"
        assert captured["url"] == "https://api.mailgun.net/v3/mg.devflow.example/messages"
        assert "h%3AReply-To=jean%40example.com" in captured["body"]


class TestHealth:
    """Test transport health reporting."""

    def test_simulation_not_configured(self):
        health = asyncio.run(SimulationTransport(reason="no creds").health_check())

        assert health["status"] == "not_configured"
        assert health["config"]["reason"] == "no creds"

    def test_verify_failure_is_unhealthy(self):
        transport = SendGridTransport(
            "SG.bad", http_transport=httpx.MockTransport(lambda request: httpx.Response(403))
        )

        health = asyncio.run(transport.health_check())

        assert health["status"] == "unhealthy"

    def test_mime_has_both_parts(self):
        mime = build_mime(make_message())

        assert mime.is_multipart()
        assert [part.get_content_type() for part in mime.iter_parts()] == ["text/plain", "text/html"]
        assert mime["Message-ID"].endswith("@devflow.example>")
