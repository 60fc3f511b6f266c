import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from loguru import logger

from intake.models import (
    BUDGET_CHOICES,
    NOT_PROVIDED,
    TIMELINE_CHOICES,
    FieldError,
    NormalizedSubmission,
    ValidationResult,
)
from intake.state import IntakeState

NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s'-]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-()]{8,20}$")

DISPOSABLE_EMAIL_DOMAINS = {
    "10minutemail.com",
    "tempmail.org",
    "guerrillamail.com",
    "mailinator.com",
}

SPAM_KEYWORDS = (
    "viagra",
    "casino",
    "lottery",
    "win money",
    "click here",
    "free money",
    "guaranteed",
)

BOT_USER_AGENT_PATTERNS = ("bot", "crawler", "spider", "scraper")
MIN_FILL_TIME_SECONDS = 5

# Each checker returns (sanitized_value, error_message)
CheckResult = Tuple[Any, Optional[str]]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def check_name(value: Any) -> CheckResult:
    if _is_blank(value) or not isinstance(value, str):
        return None, "Name is required"
    # Names end up in mail headers, so collapse line breaks and tabs
    name = " ".join(value.split())
    if len(name) < 2:
        return None, "Name must be at least 2 characters"
    if len(name) > 50:
        return None, "Name cannot exceed 50 characters"
    if not NAME_PATTERN.match(name):
        return None, "Name may only contain letters, spaces, apostrophes and hyphens"
    return name, None


def check_email(value: Any) -> CheckResult:
    if _is_blank(value) or not isinstance(value, str):
        return None, "Email is required"
    email = value.strip().lower()
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return None, "Invalid email format"
    if len(email) > 100:
        return None, "Email cannot exceed 100 characters"
    domain = email.rsplit("@", 1)[-1]
    if domain in DISPOSABLE_EMAIL_DOMAINS:
        logger.warning(f"Disposable email rejected: {email}")
        return None, "Please use a permanent email address"
    return email, None


def check_message(value: Any) -> CheckResult:
    if _is_blank(value) or not isinstance(value, str):
        return None, "Message is required"
    message = value.strip()
    if len(message) < 10:
        return None, "Message must be at least 10 characters"
    if len(message) > 2000:
        return None, "Message cannot exceed 2000 characters"
    lowered = message.lower()
    if any(keyword in lowered for keyword in SPAM_KEYWORDS):
        logger.warning(f"Spam keyword in message: {message[:50]}...")
        return None, "Message was detected as spam"
    return message, None


def check_phone(value: Any) -> CheckResult:
    if _is_blank(value):
        return NOT_PROVIDED, None
    if not isinstance(value, str):
        return None, "Invalid phone format"
    phone = value.strip()
    if not PHONE_PATTERN.match(phone):
        return None, "Invalid phone number"
    return re.sub(r"[^\d+]", "", phone), None


def check_company(value: Any) -> CheckResult:
    if _is_blank(value):
        return NOT_PROVIDED, None
    if not isinstance(value, str):
        return None, "Invalid company name"
    company = " ".join(value.split())
    if len(company) > 100:
        return None, "Company name cannot exceed 100 characters"
    return company, None


def check_budget(value: Any) -> CheckResult:
    if _is_blank(value):
        return NOT_PROVIDED, None
    if value not in BUDGET_CHOICES:
        return None, "Invalid budget"
    return value, None


def check_timeline(value: Any) -> CheckResult:
    if _is_blank(value):
        return NOT_PROVIDED, None
    if value not in TIMELINE_CHOICES:
        return None, "Invalid timeline"
    return value, None


FIELD_CHECKS = (
    ("name", check_name),
    ("email", check_email),
    ("message", check_message),
    ("phone", check_phone),
    ("company", check_company),
    ("budget", check_budget),
    ("timeline", check_timeline),
)


def validate(raw: Dict[str, Any], meta: Optional[Dict[str, Any]] = None) -> ValidationResult:
    """
    Check and normalize every form field.

    All field errors are collected; a present but malformed optional field
    is an error, not a blank.

    Args:
        raw: Form payload as received
        meta: Request metadata (ip, user_agent, referer, timestamp, indicators)

    Returns:
        ValidationResult with either a NormalizedSubmission or the error list
    """
    raw = raw if isinstance(raw, dict) else {}
    meta = meta or {}

    errors: List[FieldError] = []
    sanitized: Dict[str, Any] = {}

    for field_name, check in FIELD_CHECKS:
        value, error = check(raw.get(field_name))
        if error:
            errors.append(FieldError(field=field_name, message=error))
        else:
            sanitized[field_name] = value

    if errors:
        return ValidationResult(errors=errors)

    submission = NormalizedSubmission(
        ip=meta.get("ip"),
        user_agent=meta.get("user_agent"),
        referer=meta.get("referer"),
        timestamp=meta.get("timestamp") or datetime.now(timezone.utc),
        indicators=tuple(meta.get("indicators") or ()),
        **sanitized,
    )
    return ValidationResult(submission=submission)


def detect_bot_signals(raw: Dict[str, Any], meta: Dict[str, Any], production: bool = False) -> List[str]:
    """Informational bot indicators; they never affect the spam score."""
    raw = raw if isinstance(raw, dict) else {}
    indicators = []

    fill_time = raw.get("fillTime")
    if isinstance(fill_time, (int, float)) and not isinstance(fill_time, bool) and fill_time < MIN_FILL_TIME_SECONDS:
        indicators.append("fast_fill")

    if raw.get("honeypot"):
        indicators.append("honeypot_filled")

    user_agent = (meta.get("user_agent") or "").lower()
    if any(pattern in user_agent for pattern in BOT_USER_AGENT_PATTERNS):
        indicators.append("bot_user_agent")

    if production and not meta.get("referer"):
        indicators.append("missing_referer")

    return indicators


def validate_node(state: IntakeState) -> IntakeState:
    """Validate the raw payload; a failure ends the workflow."""
    raw = state.get("raw", {})
    logger.info(f"Starting validation for contact: {raw.get('email', 'unknown') if isinstance(raw, dict) else 'unknown'}")

    result = validate(raw, state.get("meta", {}))

    if not result.is_valid:
        state["field_errors"] = result.errors
        state["stage"] = "rejected"
        logger.info(f"Validation failed on fields: {[e.field for e in result.errors]}")
        return state

    state["submission"] = result.submission
    state["field_errors"] = []
    state["stage"] = "validated"
    logger.info(f"Validation completed for {result.submission.email}")
    return state
