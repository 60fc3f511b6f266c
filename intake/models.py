from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

BUDGET_CHOICES = ("2k-5k", "5k-10k", "10k-25k", "25k-50k", "50k+")
TIMELINE_CHOICES = ("asap", "1month", "2-3months", "3-6months", "6months+")

SPAM_THRESHOLD = 70


class NotProvided:
    """Marker for an optional field the submitter left blank.

    Falsy, and renders as a fixed label so formatting code can interpolate
    it directly.
    """

    _instance = None
    label = "Not provided"

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return self.label

    def __repr__(self) -> str:
        return "NOT_PROVIDED"


NOT_PROVIDED = NotProvided()

OptionalField = Union[str, NotProvided]


def provided(value: OptionalField) -> Optional[str]:
    """Convert an optional field back to ``None`` for storage."""
    return None if value is NOT_PROVIDED else value


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass(frozen=True)
class NormalizedSubmission:
    name: str
    email: str
    message: str
    phone: OptionalField = NOT_PROVIDED
    company: OptionalField = NOT_PROVIDED
    budget: OptionalField = NOT_PROVIDED
    timeline: OptionalField = NOT_PROVIDED
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    indicators: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SpamAssessment:
    score: int
    is_spam: bool
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Message:
    """One outbound email, independent of the provider that sends it."""

    sender: str
    to: str
    subject: str
    html: str
    text: str
    reply_to: Optional[str] = None


@dataclass(frozen=True)
class DispatchOutcome:
    sent: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None
    preview_url: Optional[str] = None
    sent_at: Optional[datetime] = None

    @classmethod
    def success(cls, message_id: str, provider: str, preview_url: Optional[str] = None) -> "DispatchOutcome":
        return cls(
            sent=True,
            message_id=message_id,
            provider=provider,
            preview_url=preview_url,
            sent_at=datetime.now(timezone.utc),
        )

    @classmethod
    def failure(cls, error: Any, provider: Optional[str] = None) -> "DispatchOutcome":
        return cls(sent=False, error=str(error) or error.__class__.__name__, provider=provider)

    def to_receipt(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "message_id": self.message_id,
            "error": self.error,
        }


@dataclass(frozen=True)
class DispatchResult:
    notification: DispatchOutcome
    confirmation: DispatchOutcome
    overall_accepted: bool = True

    @property
    def notification_sent(self) -> bool:
        return self.notification.sent

    @property
    def confirmation_sent(self) -> bool:
        return self.confirmation.sent


@dataclass
class ValidationResult:
    submission: Optional[NormalizedSubmission] = None
    errors: List[FieldError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.submission is not None
