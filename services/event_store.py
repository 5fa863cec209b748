import logging
import traceback
from typing import List, Optional

from sqlmodel import Session, select

from core.billing_utils import Clock, utcnow
from core.config import Settings
from core.database import insert_or_get_existing
from models.models import BillingEvent, BillingEventStatus
from schemas.billing_schema import InboundEvent, IngestResult, IngestStatus, RetryResult
from services.event_router import EventRouter
from services.notifications import BillingNotifier

logger = logging.getLogger(__name__)


class EventStore:
    """
    Durable, idempotent log of inbound billing events.

    A processed event is terminal and never runs again. Handler work runs in a
    SAVEPOINT so a failure leaves only the failed event row behind.
    """

    def __init__(
        self,
        session: Session,
        router: EventRouter,
        notifier: BillingNotifier,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.router = router
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def get(self, external_id: str) -> Optional[BillingEvent]:
        return self.session.exec(select(BillingEvent).where(BillingEvent.external_id == external_id)).first()

    # ------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------
    def ingest(self, event: InboundEvent) -> IngestResult:
        """
        Record ``event`` and dispatch it once.

        Handler errors mark the row failed and are re-raised so the delivery
        channel can redeliver.
        """
        existing = self.get(event.id)
        if existing and existing.processed:
            logger.info(f"🔁 Event {event.id} already processed — skipping")
            return IngestResult(
                event_id=event.id,
                status=IngestStatus.ALREADY_PROCESSED,
                handled=bool(existing.handled),
                box_id=existing.box_id,
            )

        now = self.clock()
        if existing is None:
            record = BillingEvent(
                external_id=event.id,
                type=event.type,
                payload=event.model_dump(mode="json"),
                max_retries=self.settings.BILLING_EVENT_MAX_RETRIES,
                created_at=now,
                updated_at=now,
            )
            record, was_existing = insert_or_get_existing(self.session, record, lambda: self.get(event.id))
            if was_existing:
                if record.processed:
                    return IngestResult(
                        event_id=event.id,
                        status=IngestStatus.ALREADY_PROCESSED,
                        handled=bool(record.handled),
                        box_id=record.box_id,
                    )
                record.delivery_count += 1
        else:
            record = existing
            record.delivery_count += 1

        return self._process(record, event)

    def _process(self, record: BillingEvent, event: InboundEvent) -> IngestResult:
        now = self.clock()
        record.status = BillingEventStatus.PROCESSING.value
        record.last_attempt_at = now
        record.updated_at = now
        self.session.add(record)
        self.session.flush()

        mark = self.notifier.savepoint()
        try:
            with self.session.begin_nested():
                outcome = self.router.route(event)
        except Exception as e:
            self.notifier.rollback_to(mark)
            record.status = BillingEventStatus.FAILED.value
            record.error = str(e)
            record.stack_trace = traceback.format_exc()
            record.retry_count += 1
            record.updated_at = self.clock()
            self.session.add(record)
            self.session.flush()
            logger.error(f"❌ Event {event.id} ({event.type}) failed on attempt {record.retry_count}: {e}")
            raise

        record.status = BillingEventStatus.PROCESSED.value
        record.processed = True
        record.processed_at = self.clock()
        record.handled = outcome.handled
        record.box_id = outcome.box_id
        record.error = None
        record.stack_trace = None
        record.updated_at = record.processed_at
        self.session.add(record)
        self.session.flush()
        logger.info(f"✅ Event {event.id} ({event.type}) processed, handled={outcome.handled}")
        return IngestResult(
            event_id=event.id,
            status=IngestStatus.PROCESSED,
            handled=outcome.handled,
            box_id=outcome.box_id,
        )

    # ------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------
    def retryable(self, max_retries: Optional[int] = None) -> List[BillingEvent]:
        query = select(BillingEvent).where(
            BillingEvent.status == BillingEventStatus.FAILED.value,
            BillingEvent.processed == False,  # noqa: E712
        )
        if max_retries is None:
            query = query.where(BillingEvent.retry_count < BillingEvent.max_retries)
        else:
            query = query.where(BillingEvent.retry_count < max_retries)
        return list(self.session.exec(query.order_by(BillingEvent.created_at, BillingEvent.id)).all())

    def retry_failed(self, max_retries: Optional[int] = None) -> List[RetryResult]:
        """Re-run failed events below the retry bound. One failure never stops the rest."""
        results: List[RetryResult] = []
        for record in self.retryable(max_retries):
            event = InboundEvent.model_validate(record.payload)
            try:
                self._process(record, event)
                results.append(RetryResult(event_id=record.external_id, success=True, status=record.status))
            except Exception as e:
                results.append(
                    RetryResult(event_id=record.external_id, success=False, status=record.status, error=str(e))
                )
        if results:
            logger.info(
                f"🔁 Retried {len(results)} event(s): "
                f"{sum(1 for r in results if r.success)} succeeded, {sum(1 for r in results if not r.success)} failed"
            )
        return results
