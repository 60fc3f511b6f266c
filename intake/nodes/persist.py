from loguru import logger

from integrations.contact_store import ContactStore
from intake.state import IntakeState


def make_persist_node(store: ContactStore):
    """Bind the contact store into a workflow node."""

    def persist(state: IntakeState) -> IntakeState:
        """Record the accepted submission; a store failure never rejects it."""
        submission = state["submission"]
        logger.info(f"Starting persistence for contact: {submission.email}")

        try:
            state["record_id"] = store.create_record(
                submission,
                state["assessment"],
                state["dispatch_result"],
            )
            state["stage"] = "persisted"
        except Exception as e:
            error_msg = f"Persistence failed: {str(e)}"
            logger.error(error_msg)
            state.setdefault("errors", []).append(error_msg)
            state["record_id"] = None

        return state

    return persist
