import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from core.billing_utils import Clock, month_window, utcnow
from core.config import Settings
from core.database import insert_or_get_existing
from core.errors import InvalidStateError, NotFoundError
from models.models import (
    LIMIT_GRACE_REASONS,
    Box,
    Order,
    OrderKind,
    OrderStatus,
    OverageBilling,
    OverageBillingStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageEventType,
)
from schemas.billing_schema import (
    OverageBatchSummary,
    OverageBillingResult,
    OverageCalculation,
    OverageOrderResult,
    UsageEventInput,
)
from services.grace_periods import GracePeriodManager
from services.notifications import BillingNotifier
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


def overage_order_id(box_id: int, period_start: datetime, period_end: datetime) -> str:
    return f"overage_{box_id}_{period_start:%Y%m%d}_{period_end:%Y%m%d}"


class OverageBillingEngine:
    """Monthly overage charges, idempotent per (box, billing period)."""

    def __init__(
        self,
        session: Session,
        usage: UsageLedger,
        grace_periods: GracePeriodManager,
        notifier: BillingNotifier,
        settings: Settings,
        clock: Clock = utcnow,
        commit: Optional[Callable[[], None]] = None,
    ):
        self.session = session
        self.usage = usage
        self.grace_periods = grace_periods
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self._commit = commit

    # ------------------------------------------------------------
    # Calculation (pure)
    # ------------------------------------------------------------
    def calculate_overage_for_period(
        self,
        box_id: int,
        subscription_id: int,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[OverageCalculation]:
        """None when no role is over its limit, otherwise the per-role breakdown."""
        subscription = self.session.get(Subscription, subscription_id)
        if not subscription or subscription.box_id != box_id:
            raise NotFoundError(
                f"Subscription {subscription_id} not found for box {box_id}",
                {"box_id": box_id, "subscription_id": subscription_id},
            )

        usage = self.usage.compute_usage(box_id)
        plan = self.session.get(SubscriptionPlan, subscription.plan_id) if subscription.plan_id else None
        if plan:
            athlete_limit, coach_limit = plan.athlete_limit, plan.coach_limit
            athlete_rate, coach_rate = plan.athlete_overage_price, plan.coach_overage_price
        else:
            athlete_limit, coach_limit = usage.athlete_limit, usage.coach_limit
            athlete_rate, coach_rate = usage.athlete_overage_rate, usage.coach_overage_rate

        athlete_overage = max(0, usage.athlete_count - athlete_limit)
        coach_overage = max(0, usage.coach_count - coach_limit)
        if athlete_overage == 0 and coach_overage == 0:
            return None

        athlete_amount = athlete_overage * athlete_rate
        coach_amount = coach_overage * coach_rate
        return OverageCalculation(
            box_id=box_id,
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            athlete_limit=athlete_limit,
            athlete_count=usage.athlete_count,
            athlete_overage=athlete_overage,
            athlete_overage_rate=athlete_rate,
            athlete_overage_amount=athlete_amount,
            coach_limit=coach_limit,
            coach_count=usage.coach_count,
            coach_overage=coach_overage,
            coach_overage_rate=coach_rate,
            coach_overage_amount=coach_amount,
            total_overage_amount=athlete_amount + coach_amount,
        )

    # ------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------
    def _existing_billing(self, box_id: int, period_start: datetime, period_end: datetime) -> Optional[OverageBilling]:
        return self.session.exec(
            select(OverageBilling).where(
                OverageBilling.box_id == box_id,
                OverageBilling.billing_period_start == period_start,
                OverageBilling.billing_period_end == period_end,
            )
        ).first()

    def create_overage_billing(
        self,
        box_id: int,
        subscription_id: int,
        period_start: datetime,
        period_end: datetime,
    ) -> Tuple[Optional[OverageBilling], bool]:
        """Returns ``(record, was_existing)``; record is None when there is no overage."""
        box = self.session.get(Box, box_id)
        if not box:
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})
        if not box.is_overage_enabled:
            raise InvalidStateError(f"Overage billing is not enabled for box {box_id}")

        existing = self._existing_billing(box_id, period_start, period_end)
        if existing:
            return existing, True

        calculation = self.calculate_overage_for_period(box_id, subscription_id, period_start, period_end)
        if calculation is None:
            return None, False

        now = self.clock()
        record = OverageBilling(
            box_id=box_id,
            subscription_id=subscription_id,
            billing_period_start=period_start,
            billing_period_end=period_end,
            athlete_limit=calculation.athlete_limit,
            athlete_count=calculation.athlete_count,
            athlete_overage=calculation.athlete_overage,
            athlete_overage_rate=calculation.athlete_overage_rate,
            athlete_overage_amount=calculation.athlete_overage_amount,
            coach_limit=calculation.coach_limit,
            coach_count=calculation.coach_count,
            coach_overage=calculation.coach_overage,
            coach_overage_rate=calculation.coach_overage_rate,
            coach_overage_amount=calculation.coach_overage_amount,
            total_overage_amount=calculation.total_overage_amount,
            calculated_at=now,
            created_at=now,
            updated_at=now,
        )
        record, was_existing = insert_or_get_existing(
            self.session, record, lambda: self._existing_billing(box_id, period_start, period_end)
        )
        if not was_existing:
            self.usage.record_usage_events(
                box_id,
                [
                    UsageEventInput(
                        event_type=UsageEventType.OVERAGE_BILLED.value,
                        quantity=record.athlete_overage + record.coach_overage,
                        is_billable=True,
                        entity_id=str(record.id),
                        entity_type="overage_billing",
                        details={"amount": record.total_overage_amount},
                    )
                ],
            )
            logger.info(f"💰 Overage of {record.total_overage_amount} recorded for box {box_id}")
        return record, was_existing

    def create_overage_order(self, billing: OverageBilling) -> Order:
        """Payable order for an overage record, one per (box, period)."""
        external_order_id = overage_order_id(billing.box_id, billing.billing_period_start, billing.billing_period_end)
        now = self.clock()
        order = Order(
            box_id=billing.box_id,
            subscription_id=billing.subscription_id,
            external_order_id=external_order_id,
            kind=OrderKind.OVERAGE.value,
            status=OrderStatus.PENDING.value,
            amount=billing.total_overage_amount,
            currency=billing.currency,
            billing_reason="overage",
            period_start=billing.billing_period_start,
            period_end=billing.billing_period_end,
            created_at=now,
            updated_at=now,
        )
        order, _ = insert_or_get_existing(
            self.session,
            order,
            lambda: self.session.exec(select(Order).where(Order.external_order_id == external_order_id)).first(),
        )
        if billing.order_id != order.id:
            billing.order_id = order.id
            billing.updated_at = now
            self.session.add(billing)
            self.session.flush()
        return order

    def bill_subscription(
        self,
        subscription: Subscription,
        period_start: datetime,
        period_end: datetime,
    ) -> OverageBillingResult:
        billing, was_existing = self.create_overage_billing(
            subscription.box_id, subscription.id, period_start, period_end
        )
        if billing is None:
            return OverageBillingResult(
                box_id=subscription.box_id,
                subscription_id=subscription.id,
                success=True,
                skipped_reason="no_overage",
            )

        order = self.create_overage_order(billing)
        if not was_existing:
            box = self.session.get(Box, subscription.box_id)
            self.notifier.overage_charged(box, billing)
        return OverageBillingResult(
            box_id=subscription.box_id,
            subscription_id=subscription.id,
            success=True,
            amount=billing.total_overage_amount,
            billing_id=billing.id,
            order_id=order.id,
            was_existing=was_existing,
        )

    def bill_box(self, box_id: int, period_start: datetime, period_end: datetime) -> OverageBillingResult:
        subscription = self.session.exec(
            select(Subscription).where(
                Subscription.box_id == box_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        ).first()
        if subscription is None:
            raise NotFoundError(f"Box {box_id} has no active subscription", {"box_id": box_id})
        return self.bill_subscription(subscription, period_start, period_end)

    # ------------------------------------------------------------
    # Monthly batch
    # ------------------------------------------------------------
    def billable_subscriptions(self) -> List[Subscription]:
        return list(
            self.session.exec(
                select(Subscription)
                .join(Box, Box.id == Subscription.box_id)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Box.is_overage_enabled == True,  # noqa: E712
                )
                .order_by(Subscription.box_id)
            ).all()
        )

    def process_monthly_overage_billing(
        self,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> OverageBatchSummary:
        """
        Bill every active subscription whose box has overage billing enabled.

        Boxes are processed in small batches with a pause in between. Each box
        runs in its own savepoint; a failure is recorded in the summary and
        the batch moves on.
        """
        if period_start is None or period_end is None:
            period_start, period_end = month_window(self.clock())
        summary = OverageBatchSummary(period_start=period_start, period_end=period_end)

        targets = [(s.id, s.box_id) for s in self.billable_subscriptions()]
        batch_size = max(1, self.settings.BATCH_SIZE)
        logger.info(f"🧾 Overage billing for {len(targets)} subscription(s), period {period_start:%Y-%m-%d} → {period_end:%Y-%m-%d}")

        for offset in range(0, len(targets), batch_size):
            if offset and self.settings.BATCH_DELAY_SECONDS > 0:
                time.sleep(self.settings.BATCH_DELAY_SECONDS)
            for subscription_id, box_id in targets[offset:offset + batch_size]:
                summary.results.append(self._bill_one(subscription_id, box_id, period_start, period_end))

        logger.info(f"✅ Overage billing done: {summary.succeeded} succeeded, {summary.failed} failed")
        return summary

    def _bill_one(self, subscription_id: int, box_id: int, period_start: datetime, period_end: datetime) -> OverageBillingResult:
        mark = self.notifier.savepoint()
        try:
            with self.session.begin_nested():
                subscription = self.session.get(Subscription, subscription_id)
                result = self.bill_subscription(subscription, period_start, period_end)
            if self._commit:
                self._commit()
            return result
        except Exception as e:
            self.notifier.rollback_to(mark)
            if self._commit:
                self.session.rollback()
            logger.exception("❌ Overage billing failed for box %s: %s", box_id, e)
            return OverageBillingResult(
                box_id=box_id,
                subscription_id=subscription_id,
                success=False,
                error=str(e),
            )

    # ------------------------------------------------------------
    # Payment outcome
    # ------------------------------------------------------------
    def _get_billing(self, billing_id: int) -> OverageBilling:
        billing = self.session.get(OverageBilling, billing_id)
        if not billing:
            raise NotFoundError(f"Overage billing {billing_id} not found")
        return billing

    def _order_for(self, billing: OverageBilling) -> Optional[Order]:
        return self.session.get(Order, billing.order_id) if billing.order_id else None

    def mark_overage_paid(self, billing_id: int) -> OverageBilling:
        billing = self._get_billing(billing_id)
        now = self.clock()
        billing.status = OverageBillingStatus.PAID.value
        billing.paid_at = now
        billing.failure_reason = None
        billing.updated_at = now
        self.session.add(billing)
        order = self._order_for(billing)
        if order:
            order.status = OrderStatus.PAID.value
            order.paid_at = now
            order.updated_at = now
            self.session.add(order)
        self.session.flush()
        return billing

    def mark_overage_failed(self, billing_id: int, reason: Optional[str] = None) -> OverageBilling:
        billing = self._get_billing(billing_id)
        now = self.clock()
        billing.status = OverageBillingStatus.FAILED.value
        billing.failure_reason = reason
        billing.updated_at = now
        self.session.add(billing)
        order = self._order_for(billing)
        if order:
            order.status = OrderStatus.FAILED.value
            order.updated_at = now
            self.session.add(order)
        self.session.flush()
        return billing

    # ------------------------------------------------------------
    # Box settings & reporting
    # ------------------------------------------------------------
    def enable_overage_billing(self, box_id: int, actor: Optional[str] = None) -> int:
        """Turn overage billing on. Open limit grace periods are resolved."""
        box = self.session.get(Box, box_id)
        if not box:
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})
        box.is_overage_enabled = True
        box.updated_at = self.clock()
        self.session.add(box)
        resolved = self.grace_periods.resolve_for_reasons(box_id, LIMIT_GRACE_REASONS, "overage_enabled", actor)
        logger.info(f"✅ Overage billing enabled for box {box_id} ({resolved} grace period(s) resolved)")
        return resolved

    def disable_overage_billing(self, box_id: int) -> Box:
        box = self.session.get(Box, box_id)
        if not box:
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})
        box.is_overage_enabled = False
        box.updated_at = self.clock()
        self.session.add(box)
        self.session.flush()
        return box

    def overage_history(self, box_id: int, limit: int = 12) -> List[OverageBilling]:
        return list(
            self.session.exec(
                select(OverageBilling)
                .where(OverageBilling.box_id == box_id)
                .order_by(OverageBilling.billing_period_start.desc())
                .limit(limit)
            ).all()
        )

    def overage_summary(self, box_id: int) -> Dict[str, Any]:
        rows = self.session.exec(
            select(
                OverageBilling.status,
                func.count(OverageBilling.id),
                func.coalesce(func.sum(OverageBilling.total_overage_amount), 0),
            )
            .where(OverageBilling.box_id == box_id)
            .group_by(OverageBilling.status)
        ).all()
        by_status = {status: (int(count), int(amount)) for status, count, amount in rows}
        paid = by_status.get(OverageBillingStatus.PAID.value, (0, 0))[1]
        total = sum(amount for _, amount in by_status.values())
        return {
            "billing_count": sum(count for count, _ in by_status.values()),
            "total_billed": total,
            "total_paid": paid,
            "outstanding": total - paid,
        }

    def current_month_overage(self, box_id: int) -> Optional[OverageCalculation]:
        subscription = self.session.exec(
            select(Subscription).where(
                Subscription.box_id == box_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        ).first()
        if subscription is None:
            return None
        period_start, period_end = month_window(self.clock())
        return self.calculate_overage_for_period(box_id, subscription.id, period_start, period_end)
