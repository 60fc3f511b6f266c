import re
import time
import uuid
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from typing import Any, Callable, Dict, Optional, Tuple

import aiosmtplib
import httpx
from loguru import logger

from config import Settings
from intake.errors import SendError, TransportConfigurationError
from intake.models import DispatchOutcome, Message

GMAIL_HOST = "smtp.gmail.com"
GMAIL_PORT = 465

SANDBOX_ACCOUNT_URL = "https://api.nodemailer.com/user"
SANDBOX_HOST = "smtp.ethereal.email"
SANDBOX_PORT = 587
SANDBOX_WEB = "https://ethereal.email"

SENDGRID_BASE_URL = "https://api.sendgrid.com"

_SANDBOX_MSGID = re.compile(r"MSGID=([^\s\]]+)")


def build_mime(message: Message) -> EmailMessage:
    """Render a Message as a multipart/alternative RFC 822 email."""
    mime = EmailMessage()
    mime["From"] = message.sender
    mime["To"] = message.to
    mime["Subject"] = message.subject
    if message.reply_to:
        mime["Reply-To"] = message.reply_to
    domain = parseaddr(message.sender)[1].rpartition("@")[2] or None
    mime["Message-ID"] = make_msgid(domain=domain)
    mime.set_content(message.text)
    mime.add_alternative(message.html, subtype="html")
    return mime


class MailTransport:
    """Common send capability shared by every provider variant."""

    name = "base"

    async def send(self, message: Message) -> DispatchOutcome:
        """
        Deliver one message.

        Never raises: any failure is returned as an outcome with sent=False.
        """
        try:
            message_id, preview_url = await self._deliver(message)
        except Exception as e:
            logger.error(f"{self.name} send to {message.to} failed: {e}")
            return DispatchOutcome.failure(e, provider=self.name)

        logger.info(f"{self.name} accepted message {message_id} for {message.to}")
        if preview_url:
            logger.info(f"Sandbox preview: {preview_url}")
        return DispatchOutcome.success(message_id, provider=self.name, preview_url=preview_url)

    async def _deliver(self, message: Message) -> Tuple[str, Optional[str]]:
        raise NotImplementedError

    async def verify(self) -> bool:
        return True

    def describe(self) -> Dict[str, Any]:
        return {"provider": self.name}

    async def health_check(self) -> Dict[str, Any]:
        try:
            ok = await self.verify()
        except Exception as e:
            logger.error(f"Email health check failed: {e}")
            return {"status": "error", "message": "Email health check failed", "error": str(e), "config": self.describe()}

        return {
            "status": "healthy" if ok else "unhealthy",
            "message": "Email service operational" if ok else "Email connection error",
            "config": self.describe(),
        }


class SmtpTransport(MailTransport):
    """SMTP relay: Gmail, a custom server, or the disposable sandbox."""

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        start_tls: Optional[bool] = None,
        validate_certs: bool = True,
        timeout: float = 20.0,
        preview_web: Optional[str] = None,
    ):
        self.name = name
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.validate_certs = validate_certs
        self.timeout = timeout
        self.preview_web = preview_web

    async def _deliver(self, message: Message) -> Tuple[str, Optional[str]]:
        mime = build_mime(message)
        refused, response = await aiosmtplib.send(
            mime,
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            use_tls=self.use_tls,
            start_tls=self.start_tls,
            validate_certs=self.validate_certs,
            timeout=self.timeout,
        )
        if refused:
            raise SendError(f"Recipients refused: {', '.join(refused)}")

        preview_url = None
        if self.preview_web:
            match = _SANDBOX_MSGID.search(response or "")
            if match:
                preview_url = f"{self.preview_web}/message/{match.group(1)}"

        return mime["Message-ID"], preview_url

    async def verify(self) -> bool:
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=self.start_tls,
            validate_certs=self.validate_certs,
            timeout=self.timeout,
        )
        try:
            await smtp.connect()
            if self.username:
                await smtp.login(self.username, self.password)
            await smtp.quit()
            logger.info(f"SMTP connection verified: {self.host}:{self.port}")
            return True
        except aiosmtplib.SMTPException as e:
            logger.error(f"SMTP verification failed for {self.host}: {e}")
            return False

    def describe(self) -> Dict[str, Any]:
        config = {"provider": self.name, "host": self.host, "port": self.port, "user": self.username}
        if self.preview_web:
            config["preview"] = self.preview_web
        return config


class SendGridTransport(MailTransport):
    """SendGrid v3 Mail Send API."""

    name = "sendgrid"

    def __init__(self, api_key: str, timeout: float = 20.0, base_url: str = SENDGRID_BASE_URL,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.http_transport = http_transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, message: Message) -> Dict[str, Any]:
        sender_name, sender_email = parseaddr(message.sender)
        sender = {"email": sender_email}
        if sender_name:
            sender["name"] = sender_name

        payload = {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": sender,
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html},
            ],
        }
        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}
        return payload

    async def _deliver(self, message: Message) -> Tuple[str, Optional[str]]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
            response = await client.post(
                f"{self.base_url}/v3/mail/send",
                json=self._build_payload(message),
                headers=self._get_headers(),
            )
            response.raise_for_status()
        return response.headers.get("X-Message-Id") or f"sendgrid-{uuid.uuid4().hex}", None

    async def verify(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
            response = await client.get(f"{self.base_url}/v3/scopes", headers=self._get_headers())
        return response.status_code == 200


class MailgunTransport(MailTransport):
    """Mailgun Messages API."""

    name = "mailgun"

    def __init__(self, api_key: str, domain: str, base_url: str = "https://api.mailgun.net",
                 timeout: float = 20.0, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.domain = domain
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http_transport = http_transport

    async def _deliver(self, message: Message) -> Tuple[str, Optional[str]]:
        data = {
            "from": message.sender,
            "to": message.to,
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        if message.reply_to:
            data["h:Reply-To"] = message.reply_to

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
            response = await client.post(
                f"{self.base_url}/v3/{self.domain}/messages",
                data=data,
                auth=("api", self.api_key),
            )
            response.raise_for_status()
        return response.json().get("id") or f"mailgun-{uuid.uuid4().hex}", None

    async def verify(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
            response = await client.get(f"{self.base_url}/v3/domains/{self.domain}", auth=("api", self.api_key))
        return response.status_code == 200

    def describe(self) -> Dict[str, Any]:
        return {"provider": self.name, "domain": self.domain}


class SimulationTransport(MailTransport):
    """Accepts every message without sending it, so intake keeps working."""

    name = "simulation"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason

    async def _deliver(self, message: Message) -> Tuple[str, Optional[str]]:
        logger.warning(f"Simulation mode: would send '{message.subject}' from {message.sender} to {message.to}")
        return f"simulation-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}", None

    async def verify(self) -> bool:
        return False

    def describe(self) -> Dict[str, Any]:
        return {"provider": self.name, "reason": self.reason}

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "not_configured",
            "message": "Email not configured - simulation mode active",
            "config": self.describe(),
        }


def _require(settings: Settings, provider: str, *fields: str) -> None:
    missing = [f.upper() for f in fields if not getattr(settings, f)]
    if missing:
        raise TransportConfigurationError(f"{provider} requires {', '.join(missing)}")


def build_gmail(settings: Settings) -> MailTransport:
    _require(settings, "Gmail", "email_user", "email_pass")
    logger.info(f"Gmail configured for: {settings.email_user}")
    return SmtpTransport(
        name="gmail",
        host=GMAIL_HOST,
        port=GMAIL_PORT,
        username=settings.email_user,
        password=settings.email_pass,
        use_tls=True,
        timeout=settings.email_send_timeout,
    )


def build_sendgrid(settings: Settings) -> MailTransport:
    _require(settings, "SendGrid", "sendgrid_api_key")
    logger.info("Email configured with SendGrid")
    return SendGridTransport(settings.sendgrid_api_key, timeout=settings.email_send_timeout)


def build_mailgun(settings: Settings) -> MailTransport:
    _require(settings, "Mailgun", "mailgun_api_key", "mailgun_domain")
    logger.info(f"Email configured with Mailgun for {settings.mailgun_domain}")
    return MailgunTransport(
        settings.mailgun_api_key,
        settings.mailgun_domain,
        base_url=settings.mailgun_base_url,
        timeout=settings.email_send_timeout,
    )


def build_custom_smtp(settings: Settings) -> MailTransport:
    _require(settings, "SMTP", "smtp_host", "smtp_port", "smtp_user", "smtp_pass")
    try:
        port = int(settings.smtp_port)
    except ValueError:
        raise TransportConfigurationError(f"SMTP_PORT must be an integer, got {settings.smtp_port!r}")

    logger.info(f"Email configured with custom SMTP {settings.smtp_host}:{port}")
    return SmtpTransport(
        name="smtp",
        host=settings.smtp_host,
        port=port,
        username=settings.smtp_user,
        password=settings.smtp_pass,
        use_tls=settings.smtp_secure,
        validate_certs=settings.smtp_tls_reject_unauthorized,
        timeout=settings.email_send_timeout,
    )


PRODUCTION_PROVIDERS: Dict[str, Callable[[Settings], MailTransport]] = {
    "gmail": build_gmail,
    "sendgrid": build_sendgrid,
    "mailgun": build_mailgun,
    "smtp": build_custom_smtp,
}


async def create_sandbox_account(timeout: float = 20.0,
                                 http_transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Create a disposable Ethereal mailbox."""
    async with httpx.AsyncClient(timeout=timeout, transport=http_transport) as client:
        response = await client.post(
            SANDBOX_ACCOUNT_URL,
            json={"requestor": "contact-intake", "version": "1.0.0"},
        )
        response.raise_for_status()
        account = response.json()

    if account.get("status") != "success" or not account.get("user"):
        raise TransportConfigurationError(f"Sandbox account creation failed: {account.get('error', account)}")
    return account


async def build_sandbox(settings: Settings) -> MailTransport:
    logger.info("Configuring disposable sandbox mailbox for development")
    account = await create_sandbox_account(timeout=settings.email_send_timeout)
    smtp = account.get("smtp") or {}

    logger.info(f"Sandbox account: {account['user']}")
    logger.info(f"Previews available at: {account.get('web', SANDBOX_WEB)}")
    return SmtpTransport(
        name="sandbox",
        host=smtp.get("host", SANDBOX_HOST),
        port=int(smtp.get("port", SANDBOX_PORT)),
        username=account["user"],
        password=account["pass"],
        use_tls=bool(smtp.get("secure", False)),
        start_tls=not smtp.get("secure", False),
        validate_certs=False,
        timeout=settings.email_send_timeout,
        preview_web=account.get("web", SANDBOX_WEB),
    )


async def build_transport(settings: Settings) -> MailTransport:
    """
    Select the live transport.

    Direct credentials win; then the configured provider in production;
    otherwise a disposable sandbox.

    Raises:
        TransportConfigurationError: the selected provider is misconfigured
    """
    logger.info(f"Initializing email transport for environment: {settings.environment}")

    if settings.has_direct_credentials:
        logger.info("Direct credentials detected, using Gmail")
        return build_gmail(settings)

    if settings.is_production:
        provider = (settings.email_provider or "gmail").lower()
        builder = PRODUCTION_PROVIDERS.get(provider)
        if builder is None:
            raise TransportConfigurationError(f"Unsupported email provider: {provider}")
        return builder(settings)

    logger.info("No mail credentials, using sandbox mailbox")
    return await build_sandbox(settings)


async def resolve_transport(settings: Settings) -> MailTransport:
    """Build the transport once at startup, falling back to simulation on any error."""
    try:
        transport = await build_transport(settings)
    except Exception as e:
        logger.error(f"Email configuration failed: {e}")
        logger.warning("Email disabled - continuing in simulation mode")
        return SimulationTransport(reason=str(e))

    logger.info(f"Email transport ready: {transport.name}")
    return transport
