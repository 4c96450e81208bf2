"""Queue consumer protocol: resolve, claim, run the pipeline, settle the delivery.

Per delivery:
  1. Decode the message and resolve its Task by (reference, kind, email).
  2. Claim the task (conditional update + lease). A task that is already
     COMPLETED/FAILED is a duplicate delivery: ack and drop it. A task leased
     by another worker is requeued after a short delay.
  3. Run the pipeline for the task kind with fresh job parameters.
  4. Ack on success.
  5. A message that cannot be decoded or names the wrong kind is
     dead-lettered on its first delivery.
  6. On any other error release the lease and reject with requeue after an
     exponential backoff, unless the delivery has used up ``max_deliveries``:
     then dead-letter it and mark the task FAILED.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.exceptions import MessageFormatError, TaskAlreadyClaimed, UnsupportedReportKind
from eod_reports.jobs.queue import Delivery, MessageChannel
from eod_reports.jobs.routing import parse_report_kind
from eod_reports.models.db.enums import ReportKind
from eod_reports.models.schemas.messages import QueueMessage
from eod_reports.pipeline.context import ReportJobParameters
from eod_reports.pipeline.runner import PipelineRunner
from eod_reports.services.task_state import (
    claim_task,
    find_task_for_message,
    is_terminal,
    mark_failed,
    release_claim,
)
from eod_reports.utils import get_logger, log_business_event
from eod_reports.utils.backoff import compute_backoff_seconds

logger = get_logger(__name__)

ACKED = "acked"
DUPLICATE = "duplicate"
REQUEUED = "requeued"
DEAD_LETTERED = "dead_lettered"


@dataclass(slots=True)
class DispatchOutcome:
    action: str
    reference: str
    task_id: Optional[int] = None
    error: Optional[BaseException] = None
    delay_seconds: float = 0.0


class ReportDispatcher:
    def __init__(
        self,
        kind: ReportKind,
        channel: MessageChannel,
        runner: PipelineRunner,
        *,
        session_factory: Callable[[], Session],
        settings: DispatchSettings,
    ):
        self.kind = kind
        self.channel = channel
        self.runner = runner
        self._session_factory = session_factory
        self._settings = settings

    def handle(self, delivery: Delivery) -> DispatchOutcome:
        task_id: Optional[int] = None
        try:
            message = QueueMessage.from_wire(delivery.payload)
            kind = parse_report_kind(message.task_type)
            if kind != self.kind:
                raise UnsupportedReportKind(kind.value)
            logger.info(
                "Message received",
                queue=self.channel.name,
                reference=message.message_id,
                delivery_count=delivery.delivery_count,
                redelivered=delivery.redelivered,
            )

            session = self._session_factory()
            try:
                task = find_task_for_message(session, message.message_id, kind, message.subscriber_email)
                task_id = task.id
                if is_terminal(task) or not claim_task(session, task, lease_seconds=self._settings.claim_lease_seconds):
                    if is_terminal(task):
                        logger.info("Duplicate delivery for finished task; dropping", reference=task.reference, status=task.status.value)
                        self.channel.ack(delivery)
                        return DispatchOutcome(DUPLICATE, message.message_id, task_id)
                    raise TaskAlreadyClaimed(task.reference)
            finally:
                session.close()

            params = ReportJobParameters.for_task(task_id, message.subscriber_email)
            self.runner.run(kind, params)
            self.channel.ack(delivery)
            return DispatchOutcome(ACKED, message.message_id, task_id)
        except TaskAlreadyClaimed as e:
            delay = self._settings.claimed_requeue_delay_seconds
            logger.warning("Task leased by another worker; requeueing", reference=e.reference, delay_seconds=delay)
            self.channel.reject(delivery, requeue=True, delay_seconds=delay)
            return DispatchOutcome(REQUEUED, delivery.message_id, task_id, e, delay)
        except (UnsupportedReportKind, MessageFormatError) as e:
            return self._dead_letter_unprocessable(delivery, e)
        except Exception as e:
            return self._on_failure(delivery, task_id, e)

    def _dead_letter_unprocessable(self, delivery: Delivery, error: Exception) -> DispatchOutcome:
        """A message no redelivery can fix goes straight to the dead-letter list."""
        error_text = f"{type(error).__name__}: {error}"
        logger.error(
            "Unprocessable message; dead-lettering",
            queue=self.channel.name,
            message_id=delivery.message_id,
            delivery_count=delivery.delivery_count,
            error=error_text,
        )
        self.channel.dead_letter(delivery, reason=error_text)
        log_business_event(
            "message_dead_lettered",
            {"queue": self.channel.name, "deliveries": delivery.delivery_count, "error": error_text},
            task_reference=delivery.message_id,
        )
        return DispatchOutcome(DEAD_LETTERED, delivery.message_id, None, error)

    def _record_failure(self, task_id: int, error_text: str, *, final: bool) -> None:
        session = self._session_factory()
        try:
            release_claim(session, task_id, error=error_text)
            if final:
                mark_failed(session, task_id, error=error_text)
        finally:
            session.close()

    def _on_failure(self, delivery: Delivery, task_id: Optional[int], error: Exception) -> DispatchOutcome:
        error_text = f"{type(error).__name__}: {error}"
        final = delivery.delivery_count >= self._settings.max_deliveries
        logger.error(
            "Message processing failed",
            queue=self.channel.name,
            message_id=delivery.message_id,
            task_id=task_id,
            delivery_count=delivery.delivery_count,
            error=error_text,
            exc_info=True,
        )
        if task_id is not None:
            # task bookkeeping must not keep the delivery from being settled
            try:
                self._record_failure(task_id, error_text, final=final)
            except Exception as bookkeeping_error:
                logger.error(
                    "Could not record task failure",
                    task_id=task_id,
                    message_id=delivery.message_id,
                    error=str(bookkeeping_error),
                    exc_info=True,
                )

        if final:
            self.channel.dead_letter(delivery, reason=error_text)
            log_business_event(
                "message_dead_lettered",
                {"queue": self.channel.name, "task_id": task_id, "deliveries": delivery.delivery_count, "error": error_text},
                task_reference=delivery.message_id,
            )
            return DispatchOutcome(DEAD_LETTERED, delivery.message_id, task_id, error)

        delay = compute_backoff_seconds(delivery.delivery_count, policy=self._settings.backoff)
        self.channel.reject(delivery, requeue=True, delay_seconds=delay)
        logger.info("Message requeued", message_id=delivery.message_id, delay_seconds=round(delay, 3), delivery_count=delivery.delivery_count)
        return DispatchOutcome(REQUEUED, delivery.message_id, task_id, error, delay)


__all__ = ["ReportDispatcher", "DispatchOutcome", "ACKED", "DUPLICATE", "REQUEUED", "DEAD_LETTERED"]
