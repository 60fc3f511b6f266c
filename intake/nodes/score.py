from intake.models import NOT_PROVIDED, SPAM_THRESHOLD, NormalizedSubmission, SpamAssessment
from intake.state import IntakeState
from loguru import logger

# (reason, weight); weights are never negative
SPAM_WEIGHTS = {
    "short_message": 20,
    "temp_email": 30,
    "no_phone": 10,
    "spam_keyword": 50,
}

SHORT_MESSAGE_LENGTH = 20

def score_submission(submission: NormalizedSubmission) -> SpamAssessment:
    """Additive spam heuristic; every term reads the same snapshot."""
    message = submission.message or ""
    reasons = []

    if len(message) < SHORT_MESSAGE_LENGTH:
        reasons.append("short_message")

    if "temp" in (submission.email or "").lower():
        reasons.append("temp_email")

    if submission.phone is NOT_PROVIDED or not submission.phone:
        reasons.append("no_phone")

    if "viagra" in message.lower():
        reasons.append("spam_keyword")

    total = sum(SPAM_WEIGHTS[reason] for reason in reasons)
    total = max(0, min(100, total))

    return SpamAssessment(score=total, is_spam=total > SPAM_THRESHOLD, reasons=tuple(reasons))

def score(state: IntakeState) -> IntakeState:
    """Attach a spam assessment for human triage. Never blocks a submission."""
    submission = state["submission"]
    logger.info(f"Starting spam scoring for contact: {submission.email}")

    assessment = score_submission(submission)
    state["assessment"] = assessment
    state["stage"] = "scored"

    if assessment.is_spam:
        logger.warning(f"Likely spam ({assessment.score}/100) from {submission.email}: {list(assessment.reasons)}")
    else:
        logger.info(f"Spam score: {assessment.score}/100 for {submission.email}")

    return state
