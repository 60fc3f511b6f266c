import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

PRODUCTION_ENVIRONMENTS = ("production", "staging")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment (and .env)."""

    environment: str = "development"

    # Direct Gmail credentials (take precedence over EMAIL_PROVIDER)
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    email_provider: str = "gmail"

    sendgrid_api_key: Optional[str] = None

    mailgun_api_key: Optional[str] = None
    mailgun_domain: Optional[str] = None
    mailgun_base_url: str = "https://api.mailgun.net"

    smtp_host: Optional[str] = None
    smtp_port: Optional[str] = None
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_secure: bool = False
    smtp_tls_reject_unauthorized: bool = True

    email_from: str = "noreply@example.com"
    email_to: str = "owner@example.com"
    email_send_timeout: float = 20.0

    business_name: str = "DevFlow"
    owner_name: str = "DevFlow Team"
    owner_phone: Optional[str] = None
    owner_location: Optional[str] = None

    redis_url: Optional[str] = None
    admin_token: Optional[str] = None

    log_file: Optional[str] = "logs/app.log"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in PRODUCTION_ENVIRONMENTS

    @property
    def has_direct_credentials(self) -> bool:
        return bool(self.email_user and self.email_pass)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=_env("ENVIRONMENT", "development"),
            email_user=_env("EMAIL_USER"),
            email_pass=_env("EMAIL_PASS"),
            email_provider=_env("EMAIL_PROVIDER", "gmail"),
            sendgrid_api_key=_env("SENDGRID_API_KEY"),
            mailgun_api_key=_env("MAILGUN_API_KEY"),
            mailgun_domain=_env("MAILGUN_DOMAIN"),
            mailgun_base_url=_env("MAILGUN_BASE_URL", "https://api.mailgun.net"),
            smtp_host=_env("SMTP_HOST"),
            smtp_port=_env("SMTP_PORT"),
            smtp_user=_env("SMTP_USER"),
            smtp_pass=_env("SMTP_PASS"),
            smtp_secure=_env_bool("SMTP_SECURE", False),
            smtp_tls_reject_unauthorized=_env_bool("SMTP_TLS_REJECT_UNAUTHORIZED", True),
            email_from=_env("EMAIL_FROM", "noreply@example.com"),
            email_to=_env("EMAIL_TO", "owner@example.com"),
            email_send_timeout=float(_env("EMAIL_SEND_TIMEOUT", "20")),
            business_name=_env("BUSINESS_NAME", "DevFlow"),
            owner_name=_env("OWNER_NAME", "DevFlow Team"),
            owner_phone=_env("OWNER_PHONE"),
            owner_location=_env("OWNER_LOCATION"),
            redis_url=_env("REDIS_URL"),
            admin_token=_env("ADMIN_TOKEN"),
            log_file=_env("LOG_FILE", "logs/app.log"),
            log_level=_env("LOG_LEVEL", "INFO"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings.from_env()
