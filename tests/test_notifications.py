import json
import smtplib

import httpx

from stepgate.service import notifications
from stepgate.service.notifications import (
    HttpNotificationSender,
    SmtpNotificationSender,
    render_code_message,
)


def lookup(identity_id):
    return {"user-1": "alice@example.com"}.get(identity_id)


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.sent.append((from_addr, to_addr, message))


def smtp_sender(**overrides):
    options = dict(
        address_lookup=lookup,
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    options.update(overrides)
    return SmtpNotificationSender(**options)


class TestCodeMessage:
    """Message template."""

    def test_message_contains_code_and_lifetime(self):
        """Both bodies carry the code and its expiry."""
        message = render_code_message("482913", ttl_minutes=10, product_name="Acme")

        assert message.subject == "Your Acme verification code"
        assert "482913" in message.text
        assert "482913" in message.html
        assert "10 minutes" in message.text


class TestSmtpSender:
    """SMTP delivery."""

    async def test_sends_over_starttls(self, monkeypatch):
        """Configured senders log in and deliver to the looked-up address."""
        FakeSMTP.instances = []
        FakeSMTP.fail_with = None
        monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)

        delivered = await smtp_sender().send_code("user-1", "482913")

        assert delivered is True
        server = FakeSMTP.instances[-1]
        assert server.started_tls
        assert server.logged_in == ("mailer", "pw")
        from_addr, to_addr, body = server.sent[0]
        assert (from_addr, to_addr) == ("noreply@example.com", "alice@example.com")
        assert "Subject: Your StepGate verification code" in body

    async def test_implicit_tls_when_starttls_disabled(self, monkeypatch):
        """smtp_use_tls=False uses an SMTP_SSL connection."""
        FakeSMTP.instances = []
        FakeSMTP.fail_with = None
        monkeypatch.setattr(notifications.smtplib, "SMTP_SSL", FakeSMTP)

        delivered = await smtp_sender(smtp_use_tls=False, smtp_port=465).send_code("user-1", "482913")

        assert delivered is True
        assert FakeSMTP.instances[-1].port == 465
        assert not FakeSMTP.instances[-1].started_tls

    async def test_auth_failure_returns_false(self, monkeypatch):
        """SMTP errors are reported as a failed delivery."""
        FakeSMTP.instances = []
        FakeSMTP.fail_with = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)

        try:
            assert await smtp_sender().send_code("user-1", "482913") is False
        finally:
            FakeSMTP.fail_with = None

    async def test_connection_refused_returns_false(self, monkeypatch):
        """Socket errors are reported as a failed delivery."""

        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(notifications.smtplib, "SMTP", refuse)

        assert await smtp_sender().send_code("user-1", "482913") is False

    async def test_unconfigured_returns_false(self):
        """Without a host nothing is sent."""
        sender = SmtpNotificationSender(address_lookup=lookup)

        assert sender.is_configured is False
        assert await sender.send_code("user-1", "482913") is False

    async def test_unknown_address_returns_false(self, monkeypatch):
        """Identities without an address cannot receive codes."""
        monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)

        assert await smtp_sender().send_code("user-2", "482913") is False


class TestHttpSender:
    """HTTP email API delivery."""

    def make_sender(self, handler, **overrides):
        options = dict(
            address_lookup=lookup,
            api_url="https://mail.example.com/emails",
            api_key="key-123",
            from_email="noreply@example.com",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        options.update(overrides)
        return HttpNotificationSender(**options)

    async def test_posts_json_with_bearer_key(self):
        """The request carries the API key and the rendered message."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "msg_1"})

        sender = self.make_sender(handler)
        try:
            delivered = await sender.send_code("user-1", "482913")
        finally:
            await sender.aclose()

        assert delivered is True
        assert captured["auth"] == "Bearer key-123"
        body = captured["body"]
        assert body["from"] == "StepGate <noreply@example.com>"
        assert body["to"] == ["alice@example.com"]
        assert "482913" in body["text"]
        assert "482913" in body["html"]
        assert body["subject"] == "Your StepGate verification code"

    async def test_rejected_request_returns_false(self):
        """Non-2xx answers are a failed delivery."""
        sender = self.make_sender(lambda request: httpx.Response(422, json={"error": "bad"}))
        try:
            assert await sender.send_code("user-1", "482913") is False
        finally:
            await sender.aclose()

    async def test_network_error_returns_false(self):
        """Transport errors are a failed delivery."""

        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        sender = self.make_sender(handler)
        try:
            assert await sender.send_code("user-1", "482913") is False
        finally:
            await sender.aclose()

    async def test_missing_api_key_returns_false(self):
        """An unconfigured API transport sends nothing."""
        calls = []
        sender = self.make_sender(lambda request: calls.append(request), api_key=None)
        try:
            assert await sender.send_code("user-1", "482913") is False
        finally:
            await sender.aclose()
        assert calls == []
