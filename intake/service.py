from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from langgraph.graph import StateGraph, START, END
from loguru import logger

from config import Settings
from integrations.composer import MessageComposer
from integrations.contact_store import ContactStore
from integrations.transport import MailTransport
from intake.errors import ValidationError
from intake.nodes.dispatch import NotificationDispatcher, make_dispatch_node
from intake.nodes.persist import make_persist_node
from intake.nodes.score import score
from intake.nodes.validate import detect_bot_signals, validate_node
from intake.state import IntakeState


@dataclass(frozen=True)
class IntakeResponse:
    status_code: int
    body: Dict[str, Any]


class IntakeService:
    """
    Contact intake pipeline: validate -> score -> dispatch -> (persist).

    The transport is built once at startup and shared read-only by every
    request; the store is optional.
    """

    def __init__(self, settings: Settings, transport: MailTransport,
                 store: Optional[ContactStore] = None, composer: Optional[MessageComposer] = None):
        self.settings = settings
        self.transport = transport
        self.store = store
        self.dispatcher = NotificationDispatcher(transport, composer or MessageComposer(settings))
        self.workflow = self._build_workflow()

    def _build_workflow(self):
        """Build the contact processing workflow."""
        workflow = StateGraph(IntakeState)

        # Add nodes
        workflow.add_node("validate", validate_node)
        workflow.add_node("score", score)
        workflow.add_node("dispatch", make_dispatch_node(self.dispatcher))

        # Add edges
        workflow.add_edge(START, "validate")

        # Invalid submissions stop here
        def after_validation(state: IntakeState) -> str:
            return "score" if state.get("stage") == "validated" else "rejected"

        workflow.add_conditional_edges(
            "validate",
            after_validation,
            {"score": "score", "rejected": END}
        )
        workflow.add_edge("score", "dispatch")

        if self.store is not None:
            workflow.add_node("persist", make_persist_node(self.store))
            workflow.add_edge("dispatch", "persist")
            workflow.add_edge("persist", END)
        else:
            workflow.add_edge("dispatch", END)

        return workflow.compile()

    async def process(self, body: Any, request_meta: Optional[Dict[str, Any]] = None) -> IntakeState:
        """
        Run one submission through the workflow.

        Raises:
            ValidationError: with every field error when the payload is invalid
        """
        request_meta = request_meta or {}
        meta = {
            "ip": request_meta.get("ip"),
            "user_agent": request_meta.get("user_agent"),
            "referer": request_meta.get("referer"),
            "timestamp": datetime.now(timezone.utc),
        }
        meta["indicators"] = detect_bot_signals(body, meta, production=self.settings.is_production)
        if meta["indicators"]:
            logger.warning(f"Bot indicators from {meta['ip']}: {meta['indicators']}")

        initial_state = {
            "raw": body if isinstance(body, dict) else {},
            "meta": meta,
            "errors": [],
            "stage": "received",
        }

        result = await self.workflow.ainvoke(initial_state)

        if result.get("stage") == "rejected":
            raise ValidationError([e.to_dict() for e in result.get("field_errors", [])])

        return result

    async def submit_contact(self, body: Any, request_meta: Optional[Dict[str, Any]] = None) -> IntakeResponse:
        """
        Entry point for the HTTP layer.

        200 whenever validation passed (email delivery is best effort),
        400 with the full field error list, 500 for anything unexpected.
        """
        email = body.get("email", "unknown") if isinstance(body, dict) else "unknown"
        logger.info(f"New contact message from {email}")

        try:
            result = await self.process(body, request_meta)
        except ValidationError as e:
            logger.info(f"Contact rejected with {len(e.errors)} field errors")
            return IntakeResponse(400, e.to_response())
        except Exception as e:
            logger.exception(f"Contact processing failed: {e}")
            content = {"success": False, "message": "Internal server error"}
            if not self.settings.is_production:
                content["error"] = str(e)
            return IntakeResponse(500, content)

        dispatch = result["dispatch_result"]
        submission = result["submission"]

        if result.get("errors"):
            logger.warning(f"Contact accepted with degraded steps: {result['errors']}")
        logger.info(f"Message processed successfully for {submission.email}")

        return IntakeResponse(200, {
            "success": True,
            "message": "Message sent successfully",
            "data": {
                "timestamp": submission.timestamp.isoformat(),
                "notificationSent": dispatch.notification_sent,
                "confirmationSent": dispatch.confirmation_sent,
            },
        })
