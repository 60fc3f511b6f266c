import asyncio
from typing import Callable

from loguru import logger

from integrations.composer import MessageComposer
from integrations.transport import MailTransport
from intake.models import DispatchOutcome, DispatchResult, Message, NormalizedSubmission
from intake.state import IntakeState


class NotificationDispatcher:
    """Sends the owner notification and the submitter confirmation side by side."""

    def __init__(self, transport: MailTransport, composer: MessageComposer):
        self.transport = transport
        self.composer = composer

    async def _deliver(self, kind: str, compose: Callable[[NormalizedSubmission], Message],
                       submission: NormalizedSubmission) -> DispatchOutcome:
        try:
            message = compose(submission)
            return await self.transport.send(message)
        except Exception as e:
            logger.error(f"{kind} email failed: {e}")
            return DispatchOutcome.failure(e, provider=self.transport.name)

    async def dispatch(self, submission: NormalizedSubmission) -> DispatchResult:
        """
        Compose and send both messages concurrently.

        Each send settles independently; a failure of one never cancels the
        other, and the result is returned even when both fail.

        Args:
            submission: Validated submission

        Returns:
            DispatchResult with both outcomes (always accepted)
        """
        pending = asyncio.gather(
            self._deliver("Notification", self.composer.compose_notification, submission),
            self._deliver("Confirmation", self.composer.compose_confirmation, submission),
            return_exceptions=True,
        )
        # A caller timing out must not abort sends already in flight
        notification, confirmation = await asyncio.shield(pending)

        if isinstance(notification, BaseException):
            logger.error(f"Notification email failed: {notification}")
            notification = DispatchOutcome.failure(notification, provider=self.transport.name)
        if isinstance(confirmation, BaseException):
            logger.error(f"Confirmation email failed: {confirmation}")
            confirmation = DispatchOutcome.failure(confirmation, provider=self.transport.name)

        return DispatchResult(notification=notification, confirmation=confirmation)


def make_dispatch_node(dispatcher: NotificationDispatcher):
    """Bind the dispatcher into a workflow node."""

    async def dispatch(state: IntakeState) -> IntakeState:
        submission = state["submission"]
        logger.info(f"Starting email dispatch for contact: {submission.email}")

        result = await dispatcher.dispatch(submission)
        state["dispatch_result"] = result
        state["stage"] = "dispatched"

        if not result.notification_sent:
            state.setdefault("errors", []).append(f"notification_failed: {result.notification.error}")
        if not result.confirmation_sent:
            state.setdefault("errors", []).append(f"confirmation_failed: {result.confirmation.error}")

        logger.info(
            f"Dispatch completed for {submission.email}: "
            f"notification={result.notification_sent}, confirmation={result.confirmation_sent}"
        )
        return state

    return dispatch
