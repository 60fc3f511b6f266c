from typing import TypedDict, Optional, List, Dict, Any

from intake.models import DispatchResult, FieldError, NormalizedSubmission, SpamAssessment

class IntakeState(TypedDict, total=False):
    """State shape for the contact intake workflow."""
    raw: Dict[str, Any]                    # original form payload
    meta: Dict[str, Any]                   # ip, user_agent, referer, timestamp
    submission: NormalizedSubmission
    field_errors: List[FieldError]
    assessment: SpamAssessment
    dispatch_result: DispatchResult
    record_id: Optional[str]
    errors: List[str]                      # degraded-path messages, never user-facing
    stage: str                             # received | validated | rejected | scored | dispatched | persisted
