from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Protocol

import httpx

from stepgate.logging import get_logger

logger = get_logger(__name__)

AddressLookup = Callable[[str], Optional[str]]


class NotificationSender(Protocol):
    """Delivers a one-time code out of band.

    Implementations return ``False`` on any delivery failure instead of
    raising, and never log the code.
    """

    async def send_code(self, identity_id: str, code: str) -> bool: ...


@dataclass(frozen=True)
class CodeMessage:
    subject: str
    html: str
    text: str


def render_code_message(code: str, *, ttl_minutes: int = 10, product_name: str = "StepGate") -> CodeMessage:
    """Build the verification email carrying ``code``."""
    subject = f"Your {product_name} verification code"

    html = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Verification code</h1>
        <p>Use this code to finish signing in:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {ttl_minutes} minutes.</p>
        <p>If you didn't try to sign in, someone may know your password. Change it as soon as possible.</p>
        <div class="footer">
            <p>{product_name}</p>
        </div>
    </div>
</body>
</html>
"""

    text = f"""Your {product_name} verification code

Use this code to finish signing in:

{code}

This code will expire in {ttl_minutes} minutes.

If you didn't try to sign in, someone may know your password. Change it as soon as possible.

---
{product_name}
"""
    return CodeMessage(subject=subject, html=html, text=text)


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpNotificationSender:
    """Sends verification codes over SMTP with STARTTLS or implicit TLS.

    The blocking ``smtplib`` exchange runs in a worker thread.
    """

    def __init__(
        self,
        *,
        address_lookup: AddressLookup,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "StepGate",
        code_ttl_minutes: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.address_lookup = address_lookup
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send_code(self, identity_id: str, code: str) -> bool:
        if not self.is_configured:
            logger.error("email_transport_unconfigured", identity_id=identity_id, transport="smtp")
            return False
        to_email = self.address_lookup(identity_id)
        if not to_email:
            logger.warning("email_address_missing", identity_id=identity_id)
            return False
        message = render_code_message(
            code, ttl_minutes=self.code_ttl_minutes, product_name=self.from_name
        )
        return await asyncio.to_thread(self._send_email, identity_id, to_email, message)

    def _build_mime(self, to_email: str, message: CodeMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))
        return msg

    def _send_email(self, identity_id: str, to_email: str, message: CodeMessage) -> bool:
        """Send one message via SMTP. Returns True if the server accepted it."""
        redacted = _redact_email(to_email)
        try:
            msg = self._build_mime(to_email, message)
            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redacted,
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", identity_id=identity_id, to=redacted)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                identity_id=identity_id,
                host=self.smtp_host,
                user=self.smtp_user,
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError:
            logger.error(
                "email_connect_failed",
                identity_id=identity_id,
                host=self.smtp_host,
                port=self.smtp_port,
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", identity_id=identity_id, to=redacted)
            return False
        except smtplib.SMTPSenderRefused:
            logger.error("email_sender_refused", identity_id=identity_id, sender=self.from_email)
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                identity_id=identity_id,
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except ssl.SSLError:
            logger.error(
                "email_ssl_error",
                identity_id=identity_id,
                host=self.smtp_host,
                port=self.smtp_port,
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                identity_id=identity_id,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False


class HttpNotificationSender:
    """Sends verification codes through an HTTP email API.

    The API receives a JSON body with ``from``, ``to``, ``subject``, ``html``
    and ``text`` and a bearer token in the ``Authorization`` header.
    """

    def __init__(
        self,
        *,
        address_lookup: AddressLookup,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "StepGate",
        code_ttl_minutes: int = 10,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.address_lookup = address_lookup
        self.api_url = api_url
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key and self.from_email)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        return self._client

    async def send_code(self, identity_id: str, code: str) -> bool:
        if not self.is_configured:
            logger.error("email_transport_unconfigured", identity_id=identity_id, transport="http")
            return False
        to_email = self.address_lookup(identity_id)
        if not to_email:
            logger.warning("email_address_missing", identity_id=identity_id)
            return False
        message = render_code_message(
            code, ttl_minutes=self.code_ttl_minutes, product_name=self.from_name
        )
        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to_email],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        try:
            client = await self._get_client()
            response = await client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_api_rejected",
                identity_id=identity_id,
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException:
            logger.error("email_api_timeout", identity_id=identity_id)
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_api_unreachable",
                identity_id=identity_id,
                error_type=type(e).__name__,
            )
            return False
        logger.info("email_sent", identity_id=identity_id, to=_redact_email(to_email))
        return True

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
