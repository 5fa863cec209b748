import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from core.billing_utils import Clock, days_between, round_cents, utcnow
from core.errors import InvalidStateError, NotFoundError
from models.models import (
    LIMIT_GRACE_REASONS,
    LIVE_SUBSCRIPTION_STATUSES,
    BillingInterval,
    Box,
    PlanChangeRequest,
    PlanChangeStatus,
    PlanChangeType,
    ProrationType,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionPlan,
    UsageEventType,
)
from schemas.billing_schema import PlanChangeResult, ProrationQuote
from services.grace_periods import GracePeriodManager
from services.notifications import BillingNotifier
from services.payment_gateway import PaymentGateway
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class ProrationEngine:
    """
    Prorated charge for switching plans mid-period.

    Both plans' monthly prices are spread over the days of the *current*
    period; the difference is charged for the days remaining.
    """

    def quote(
        self,
        current_monthly_price: int,
        new_monthly_price: int,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        proration_type: str = ProrationType.IMMEDIATE.value,
    ) -> ProrationQuote:
        total_days = days_between(period_start, period_end)
        remaining_days = min(total_days, days_between(now, period_end))
        if total_days == 0:
            return ProrationQuote(0, 0, Decimal(0), Decimal(0), 0)

        current_rate = Decimal(current_monthly_price) / Decimal(total_days)
        new_rate = Decimal(new_monthly_price) / Decimal(total_days)
        amount = 0
        if proration_type == ProrationType.IMMEDIATE.value:
            amount = round_cents((new_rate - current_rate) * remaining_days)
        return ProrationQuote(
            total_days=total_days,
            remaining_days=remaining_days,
            current_daily_rate=current_rate,
            new_daily_rate=new_rate,
            prorated_amount=amount,
        )


def classify_change(current_price: int, new_price: int) -> str:
    if new_price > current_price:
        return PlanChangeType.UPGRADE.value
    if new_price < current_price:
        return PlanChangeType.DOWNGRADE.value
    return PlanChangeType.LATERAL.value


class PlanChangeWorkflow:
    """Request, approve and cancel plan changes for a box's live subscription."""

    def __init__(
        self,
        session: Session,
        proration: ProrationEngine,
        grace_periods: GracePeriodManager,
        usage: UsageLedger,
        notifier: BillingNotifier,
        gateway: PaymentGateway,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.proration = proration
        self.grace_periods = grace_periods
        self.usage = usage
        self.notifier = notifier
        self.gateway = gateway
        self.clock = clock

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _get_request(self, request_id: int) -> PlanChangeRequest:
        request = self.session.get(PlanChangeRequest, request_id)
        if not request:
            raise NotFoundError(f"Plan change request {request_id} not found", {"request_id": request_id})
        return request

    def _get_plan(self, plan_id: Optional[int]) -> Optional[SubscriptionPlan]:
        return self.session.get(SubscriptionPlan, plan_id) if plan_id else None

    @staticmethod
    def _monthly_price(subscription: Subscription, plan: Optional[SubscriptionPlan]) -> int:
        return plan.monthly_price if plan else subscription.amount

    def _claim(self, request: PlanChangeRequest, **values) -> None:
        """Move a pending request on. Fails if someone else got there first."""
        result = self.session.connection().execute(
            update(PlanChangeRequest)
            .where(
                PlanChangeRequest.id == request.id,
                PlanChangeRequest.status == PlanChangeStatus.PENDING.value,
            )
            .values(updated_at=self.clock(), **values)
        )
        if result.rowcount != 1:
            raise InvalidStateError(f"Plan change request {request.id} is no longer pending")
        self.session.refresh(request)

    def pending_for_box(self, box_id: int) -> List[PlanChangeRequest]:
        return list(
            self.session.exec(
                select(PlanChangeRequest).where(
                    PlanChangeRequest.box_id == box_id,
                    PlanChangeRequest.status == PlanChangeStatus.PENDING.value,
                )
            ).all()
        )

    def change_history(self, box_id: int, limit: int = 50) -> List[SubscriptionChange]:
        return list(
            self.session.exec(
                select(SubscriptionChange)
                .where(
                    SubscriptionChange.box_id == box_id,
                    SubscriptionChange.change_type == SubscriptionChangeType.PLAN_CHANGE.value,
                )
                .order_by(SubscriptionChange.created_at.desc(), SubscriptionChange.id.desc())
                .limit(limit)
            ).all()
        )

    # ------------------------------------------------------------
    # Request
    # ------------------------------------------------------------
    def request_change(
        self,
        box_id: int,
        to_plan_id: int,
        actor: Optional[str] = None,
        effective_date: Optional[datetime] = None,
        proration_type: str = ProrationType.IMMEDIATE.value,
    ) -> PlanChangeRequest:
        if not self.session.get(Box, box_id):
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})

        subscription = self.session.exec(
            select(Subscription)
            .where(Subscription.box_id == box_id, Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        ).first()
        if subscription is None:
            raise NotFoundError(f"Box {box_id} has no active subscription", {"box_id": box_id})

        to_plan = self._get_plan(to_plan_id)
        if not to_plan or not to_plan.is_active:
            raise NotFoundError(f"Plan {to_plan_id} not found", {"plan_id": to_plan_id})
        if subscription.plan_id == to_plan_id:
            raise InvalidStateError("Subscription is already on this plan")
        if any(r.subscription_id == subscription.id for r in self.pending_for_box(box_id)):
            raise InvalidStateError("A plan change is already pending for this subscription")

        current_plan = self._get_plan(subscription.plan_id)
        now = self.clock()
        request = PlanChangeRequest(
            box_id=box_id,
            subscription_id=subscription.id,
            from_plan_id=subscription.plan_id,
            to_plan_id=to_plan_id,
            change_type=classify_change(self._monthly_price(subscription, current_plan), to_plan.monthly_price),
            proration_type=ProrationType(proration_type).value,
            requested_at=now,
            requested_by=actor,
            effective_date=effective_date,
            created_at=now,
            updated_at=now,
        )
        self.session.add(request)
        self.session.flush()
        logger.info(f"📝 Plan change {request.id} requested for box {box_id}: {request.change_type} to {to_plan.name}")
        return request

    # ------------------------------------------------------------
    # Approve
    # ------------------------------------------------------------
    def process_request(self, request_id: int, approver: Optional[str] = None) -> PlanChangeResult:
        """
        Approve a pending request and apply the new plan.

        The request claim, subscription, box limits and audit row change
        together inside one savepoint.
        """
        request = self._get_request(request_id)
        if request.status != PlanChangeStatus.PENDING.value:
            raise InvalidStateError(f"Plan change request {request_id} is {request.status}, not pending")

        subscription = self.session.get(Subscription, request.subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {request.subscription_id} not found")
        if subscription.status not in LIVE_SUBSCRIPTION_STATUSES:
            raise InvalidStateError(f"Subscription {subscription.id} is {subscription.status}")
        to_plan = self._get_plan(request.to_plan_id)
        if not to_plan:
            raise NotFoundError(f"Plan {request.to_plan_id} not found", {"plan_id": request.to_plan_id})
        current_plan = self._get_plan(subscription.plan_id)

        now = self.clock()
        quote = self.proration.quote(
            self._monthly_price(subscription, current_plan),
            to_plan.monthly_price,
            subscription.current_period_start,
            subscription.current_period_end,
            now,
            request.proration_type,
        )

        if subscription.external_subscription_id:
            price_id = (
                to_plan.external_annual_price_id
                if subscription.interval == BillingInterval.YEAR.value
                else to_plan.external_monthly_price_id
            )
            self.gateway.update_subscription(
                subscription.external_subscription_id,
                price_id=price_id,
                prorate=request.proration_type == ProrationType.IMMEDIATE.value,
            )

        if request.proration_type == ProrationType.IMMEDIATE.value:
            effective_date = now
        else:
            effective_date = request.effective_date or subscription.current_period_end

        with self.session.begin_nested():
            self._claim(
                request,
                status=PlanChangeStatus.APPROVED.value,
                approved_at=now,
                approved_by=approver,
                prorated_amount=quote.prorated_amount,
            )

            subscription.plan_id = to_plan.id
            subscription.plan_version = to_plan.version
            subscription.amount = (
                to_plan.annual_price if subscription.interval == BillingInterval.YEAR.value else to_plan.monthly_price
            )
            subscription.updated_at = now
            self.session.add(subscription)

            box = self.session.get(Box, request.box_id)
            box.subscription_tier = to_plan.tier
            box.current_athlete_limit = to_plan.athlete_limit
            box.current_coach_limit = to_plan.coach_limit
            box.updated_at = now
            self.session.add(box)

            change = SubscriptionChange(
                box_id=box.id,
                subscription_id=subscription.id,
                change_type=SubscriptionChangeType.PLAN_CHANGE.value,
                from_plan_id=request.from_plan_id,
                to_plan_id=to_plan.id,
                from_status=subscription.status,
                to_status=subscription.status,
                effective_date=effective_date,
                prorated_amount=quote.prorated_amount,
                proration_type=request.proration_type,
                changed_by=approver,
                plan_change_request_id=request.id,
                created_at=now,
            )
            self.session.add(change)
            self.session.flush()

            upgraded = request.change_type == PlanChangeType.UPGRADE.value
            self.usage.record(
                box.id,
                UsageEventType.PLAN_UPGRADED.value if upgraded else UsageEventType.PLAN_DOWNGRADED.value,
                from_plan_id=request.from_plan_id,
                to_plan_id=to_plan.id,
                prorated_amount=quote.prorated_amount,
            )
            if upgraded:
                usage = self.usage.refresh_usage_counts(box.id)
                if not usage.is_over_limit:
                    self.grace_periods.resolve_for_reasons(box.id, LIMIT_GRACE_REASONS, "plan_upgraded", approver)
            elif request.change_type == PlanChangeType.DOWNGRADE.value:
                self.usage.enforce_limits(box.id, [UsageEventType.PLAN_DOWNGRADED.value])

        self.notifier.plan_change_confirmed(box, request)
        logger.info(
            f"✅ Plan change {request.id} approved for box {box.id}: plan {request.from_plan_id} → {to_plan.id}, "
            f"prorated {quote.prorated_amount}"
        )
        return PlanChangeResult(request=request, change=change, subscription=subscription, quote=quote)

    # ------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------
    def cancel_request(self, request_id: int, actor: Optional[str] = None, reason: Optional[str] = None) -> PlanChangeRequest:
        request = self._get_request(request_id)
        if request.status != PlanChangeStatus.PENDING.value:
            raise InvalidStateError(f"Plan change request {request_id} is {request.status}, not pending")
        self._claim(
            request,
            status=PlanChangeStatus.CANCELED.value,
            canceled_at=self.clock(),
            canceled_by=actor,
            canceled_reason=reason,
        )
        logger.info(f"🚫 Plan change {request.id} canceled")
        return request
