import re
from html import escape
from typing import Optional

from config import Settings
from intake.models import NOT_PROVIDED, Message, NormalizedSubmission, OptionalField

BUDGET_LABELS = {
    "2k-5k": "2,000 - 5,000 €",
    "5k-10k": "5,000 - 10,000 €",
    "10k-25k": "10,000 - 25,000 €",
    "25k-50k": "25,000 - 50,000 €",
    "50k+": "50,000+ €",
}

TIMELINE_LABELS = {
    "asap": "As soon as possible",
    "1month": "1 month",
    "2-3months": "2-3 months",
    "3-6months": "3-6 months",
    "6months+": "6+ months",
}

COMMITMENTS = (
    "First reply within 2 hours",
    "Tailored quote within 24 hours",
    "Project kickoff within 1 week",
    "Technical support 24/7",
)


def format_budget(budget: OptionalField) -> str:
    """Display label for a budget; unknown or missing values fall back."""
    return BUDGET_LABELS.get(budget, NOT_PROVIDED.label) if budget else NOT_PROVIDED.label


def format_timeline(timeline: OptionalField) -> str:
    return TIMELINE_LABELS.get(timeline, NOT_PROVIDED.label) if timeline else NOT_PROVIDED.label


def whatsapp_link(phone: OptionalField) -> Optional[str]:
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    return f"https://wa.me/{digits}" if digits else None


class MessageComposer:
    """Builds the owner notification and the submitter confirmation."""

    def __init__(self, settings: Settings):
        self.sender = settings.email_from
        self.owner_address = settings.email_to
        self.business_name = settings.business_name
        self.owner_name = settings.owner_name
        self.owner_phone = settings.owner_phone
        self.owner_location = settings.owner_location

    def notification_subject(self, submission: NormalizedSubmission) -> str:
        company = submission.company or "Individual"
        return " ".join(f"New contact from {submission.name} - {company}".split())

    def confirmation_subject(self) -> str:
        return f"Message received - {self.business_name} will reply within 2 hours"

    def compose_notification(self, submission: NormalizedSubmission) -> Message:
        return Message(
            sender=self.sender,
            to=self.owner_address,
            subject=self.notification_subject(submission),
            html=self._notification_html(submission),
            text=self._notification_text(submission),
            reply_to=submission.email,
        )

    def compose_confirmation(self, submission: NormalizedSubmission) -> Message:
        return Message(
            sender=self.sender,
            to=submission.email,
            subject=self.confirmation_subject(),
            html=self._confirmation_html(submission),
            text=self._confirmation_text(submission),
        )

    def _fields(self, submission: NormalizedSubmission):
        return [
            ("Name", submission.name),
            ("Email", submission.email),
            ("Phone", str(submission.phone)),
            ("Company", str(submission.company)),
            ("Budget", format_budget(submission.budget)),
            ("Timeline", format_timeline(submission.timeline)),
            ("Date", submission.timestamp.strftime("%d/%m/%Y %H:%M:%S")),
        ]

    def _notification_text(self, submission: NormalizedSubmission) -> str:
        lines = [f"NEW CONTACT - {self.business_name}", "", "Contact details:"]
        lines += [f"- {label}: {value}" for label, value in self._fields(submission)]
        lines += ["", "Message:", submission.message, "", "Actions:", f"- Reply: mailto:{submission.email}"]

        link = whatsapp_link(submission.phone)
        if link:
            lines.append(f"- WhatsApp: {link}")

        if submission.indicators:
            lines += ["", f"Bot indicators: {', '.join(submission.indicators)}"]

        return "\n".join(lines)

    def _notification_html(self, submission: NormalizedSubmission) -> str:
        rows = "\n".join(
            f'<div class="field"><strong>{label}:</strong> {escape(value)}</div>'
            for label, value in self._fields(submission)
        )
        email = escape(submission.email, quote=True)
        actions = f'<a href="mailto:{email}" class="btn">Reply by email</a>'

        link = whatsapp_link(submission.phone)
        if link:
            actions += f' <a href="{link}" class="btn">Contact on WhatsApp</a>'

        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>New Contact - {escape(self.business_name)}</title></head>
<body style="font-family: Arial, sans-serif;">
  <h1>New Contact</h1>
  <p>{escape(self.business_name)} - website contact form</p>
  <div class="info-box">
{rows}
  </div>
  <div class="message-box">
    <h3>Message:</h3>
    <p style="white-space: pre-wrap;">{escape(submission.message)}</p>
  </div>
  <div class="actions">{actions}</div>
  <p style="color: #777; font-size: 14px;">Generated automatically by the {escape(self.business_name)} contact form.</p>
</body>
</html>"""

    def _contact_lines(self):
        lines = []
        if self.owner_phone:
            link = whatsapp_link(self.owner_phone)
            if link:
                lines.append(("WhatsApp", link))
            lines.append(("Phone", self.owner_phone))
        lines.append(("Email", self.sender))
        return lines

    def _confirmation_text(self, submission: NormalizedSubmission) -> str:
        lines = [
            f"Hello {submission.name},",
            "",
            "Thank you for your message! We have received your request and will reply within the next 2 hours.",
            "",
            "OUR COMMITMENTS:",
        ]
        lines += [f"- {item}" for item in COMMITMENTS]
        lines += ["", "DIRECT CONTACT:"]
        lines += [f"{label}: {value}" for label, value in self._contact_lines()]
        lines += ["", f"{self.owner_name} - {self.business_name}"]
        if self.owner_location:
            lines.append(self.owner_location)
        return "\n".join(lines)

    def _confirmation_html(self, submission: NormalizedSubmission) -> str:
        commitments = "\n".join(f"    <li>{escape(item)}</li>" for item in COMMITMENTS)
        contacts = "\n".join(
            f"    <li>{label}: {escape(value)}</li>" for label, value in self._contact_lines()
        )
        location = f"<p>{escape(self.owner_location)}</p>" if self.owner_location else ""

        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Message Received - {escape(self.business_name)}</title></head>
<body style="font-family: Arial, sans-serif;">
  <h1>{escape(self.business_name)}</h1>
  <h2>Hello {escape(submission.name)}</h2>
  <p>Thank you for your message! We have received your request and will reply within the next <strong>2 hours</strong>.</p>
  <h3>Our commitments</h3>
  <ul>
{commitments}
  </ul>
  <p>For anything urgent, reach us directly:</p>
  <ul>
{contacts}
  </ul>
  <div class="footer">
    <p><strong>{escape(self.owner_name)}</strong> - {escape(self.business_name)}</p>
    {location}
    <p style="font-size: 12px;">This confirmation was generated automatically. Please do not reply to this email.</p>
  </div>
</body>
</html>"""
