import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlmodel import Session

from core.billing_utils import Clock, add_months, days_between, month_window, utcnow
from core.config import Settings, settings as default_settings
from core.database import engine
from models.models import Box
from services.container import BillingServices

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchItemResult:
    item: Any
    success: bool
    result: Any = None
    error: Optional[str] = None
    timed_out: bool = False


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Any],
    batch_size: int = 10,
    delay: float = 1.0,
    timeout: Optional[float] = None,
) -> List[BatchItemResult]:
    """
    Run a blocking ``worker`` over ``items`` in fixed-size batches.

    Each item runs in a worker thread with its own timeout. Item failures are
    captured in the returned results and never raised.

    A timeout stops waiting, not the thread: a timed-out worker keeps running
    and may still finish its work, so ``worker`` must be safe to run again.
    """
    async def _one(item: T) -> Any:
        call: Awaitable[Any] = asyncio.to_thread(worker, item)
        if timeout:
            return await asyncio.wait_for(call, timeout=timeout)
        return await call

    results: List[BatchItemResult] = []
    batch_size = max(1, batch_size)
    for offset in range(0, len(items), batch_size):
        if offset and delay > 0:
            await asyncio.sleep(delay)
        batch = list(items[offset:offset + batch_size])
        outcomes = await asyncio.gather(*(_one(item) for item in batch), return_exceptions=True)
        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, asyncio.TimeoutError):
                results.append(BatchItemResult(item=item, success=False, error="timed out", timed_out=True))
            elif isinstance(outcome, BaseException):
                results.append(BatchItemResult(item=item, success=False, error=str(outcome)))
            else:
                results.append(BatchItemResult(item=item, success=True, result=outcome))
    return results


@dataclass
class SchedulerRunSummary:
    ran_at: Any
    jobs: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


class BillingScheduler:
    """
    Periodic billing jobs: event retries, period-end cancellations, grace
    period warnings and the monthly overage run.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        services_factory: Optional[Callable[[Session], BillingServices]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or default_settings
        self.clock = clock
        self.session_factory = session_factory or (lambda: Session(engine))
        self.services_factory = services_factory or (
            lambda session: BillingServices(session, settings=self.settings, clock=self.clock)
        )

    # ------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------
    def _in_session(self, job: Callable[[BillingServices], T]) -> T:
        with self.session_factory() as session:
            services = self.services_factory(session)
            try:
                result = job(services)
                services.commit()
                return result
            except Exception:
                services.rollback()
                raise

    # ------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------
    def retry_failed_events(self) -> Dict[str, int]:
        results = self._in_session(lambda services: services.events.retry_failed())
        return {
            "retried": len(results),
            "succeeded": sum(1 for r in results if r.success),
            "failed": sum(1 for r in results if not r.success),
        }

    def finalize_cancellations(self) -> int:
        return self._in_session(lambda services: len(services.lifecycle.finalize_period_end_cancellations()))

    def warn_expiring_grace_periods(self) -> int:
        def job(services: BillingServices) -> int:
            now = self.clock()
            expiring = services.grace_periods.sweep_expiring(self.settings.GRACE_PERIOD_WARNING_DAYS)
            for grace_period in expiring:
                box = services.session.get(Box, grace_period.box_id)
                if box:
                    services.notifier.grace_period_expiring(box, grace_period, days_between(now, grace_period.ends_at))
            return len(expiring)

        return self._in_session(job)

    def _bill_box(self, box_id: int, period_start, period_end):
        return self._in_session(lambda services: services.overage.bill_box(box_id, period_start, period_end))

    async def monthly_overage(self, period_start=None, period_end=None) -> Dict[str, Any]:
        """Bill the previous calendar month, one box per session."""
        if period_start is None or period_end is None:
            period_start, period_end = month_window(add_months(self.clock(), -1))

        box_ids = self._in_session(
            lambda services: [s.box_id for s in services.overage.billable_subscriptions()]
        )
        results = await run_in_batches(
            box_ids,
            lambda box_id: self._bill_box(box_id, period_start, period_end),
            batch_size=self.settings.BATCH_SIZE,
            delay=self.settings.BATCH_DELAY_SECONDS,
            timeout=self.settings.EXTERNAL_CALL_TIMEOUT_SECONDS * 3,
        )
        for failed in (r for r in results if not r.success):
            if failed.timed_out:
                # The charge may still land; the next run returns the existing record
                logger.warning(f"⏱️ Overage billing for box {failed.item} timed out and may still complete")
            else:
                logger.error(f"❌ Overage billing failed for box {failed.item}: {failed.error}")
        return {
            "period_start": period_start,
            "period_end": period_end,
            "succeeded": sum(1 for r in results if r.success),
            "failed": sum(1 for r in results if not r.success),
            "failed_boxes": [r.item for r in results if not r.success],
            "unconfirmed_boxes": [r.item for r in results if r.timed_out],
            "total_amount": sum(r.result.amount for r in results if r.success and r.result),
        }

    # ------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------
    async def run_once(self) -> SchedulerRunSummary:
        now = self.clock()
        summary = SchedulerRunSummary(ran_at=now)
        jobs: List[tuple] = [
            ("retry_failed_events", self.retry_failed_events),
            ("finalize_cancellations", self.finalize_cancellations),
            ("grace_period_warnings", self.warn_expiring_grace_periods),
        ]
        for name, job in jobs:
            try:
                summary.jobs[name] = await asyncio.to_thread(job)
            except Exception as e:
                logger.exception("❌ Scheduler job %s failed: %s", name, e)
                summary.errors[name] = str(e)

        if now.day == 1:
            try:
                summary.jobs["monthly_overage"] = await self.monthly_overage()
            except Exception as e:
                logger.exception("❌ Monthly overage run failed: %s", e)
                summary.errors["monthly_overage"] = str(e)

        logger.info(f"⏰ Scheduler run finished: {summary.jobs}")
        return summary

    async def start(self) -> None:
        """Run forever, once per SCHEDULER_INTERVAL_SECONDS."""
        logger.info(f"⏰ Billing scheduler started (every {self.settings.SCHEDULER_INTERVAL_SECONDS}s)")
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("❌ Scheduler loop error: %s", e)
            await asyncio.sleep(self.settings.SCHEDULER_INTERVAL_SECONDS)
