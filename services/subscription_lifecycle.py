import logging
from typing import List, Optional

from sqlmodel import Session, select

from core.billing_utils import Clock, utcnow
from core.config import Settings
from core.errors import InvalidStateError, NotFoundError
from models.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    Box,
    BoxStatus,
    CheckoutSession,
    GracePeriodReason,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageEventType,
)
from schemas.billing_schema import (
    CancellationContext,
    CancellationResult,
    GracePeriodContext,
    PaymentFailedContext,
    ReactivationResult,
    TransitionOutcome,
    TransitionResult,
    TrialEndingContext,
)
from services.grace_periods import GracePeriodManager
from services.notifications import BillingNotifier
from services.payment_gateway import PaymentGateway
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

PAYMENT_REMEDIATED_REASONS = (
    GracePeriodReason.PAYMENT_FAILED.value,
    GracePeriodReason.BILLING_ISSUE.value,
)
REACTIVATION_REMEDIATED_REASONS = (
    GracePeriodReason.SUBSCRIPTION_CANCELED.value,
    GracePeriodReason.BILLING_ISSUE.value,
)


class SubscriptionStateMachine:
    """
    Owns subscription status per box and the side effects of each transition.

    Status is overwritten by the latest processed event. Re-applying the
    current status is a no-op apart from re-syncing the box projection.
    """

    def __init__(
        self,
        session: Session,
        grace_periods: GracePeriodManager,
        usage: UsageLedger,
        notifier: BillingNotifier,
        gateway: PaymentGateway,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.grace_periods = grace_periods
        self.usage = usage
        self.notifier = notifier
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------
    def get_box(self, box_id: int) -> Box:
        box = self.session.get(Box, box_id)
        if not box:
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})
        return box

    def live_subscription(self, box_id: int) -> Optional[Subscription]:
        return self.session.exec(
            select(Subscription)
            .where(Subscription.box_id == box_id, Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        ).first()

    def by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        return self.session.exec(
            select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
        ).first()

    def history(self, box_id: int, limit: int = 50) -> List[SubscriptionChange]:
        return list(
            self.session.exec(
                select(SubscriptionChange)
                .where(SubscriptionChange.box_id == box_id)
                .order_by(SubscriptionChange.created_at.desc(), SubscriptionChange.id.desc())
                .limit(limit)
            ).all()
        )

    # ------------------------------------------------------------
    # Box projection
    # ------------------------------------------------------------
    def project_box_status(self, box: Box, subscription: Subscription) -> str:
        status = subscription.status
        if status in (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value):
            return BoxStatus.ACTIVE.value
        if status == SubscriptionStatus.PAST_DUE.value:
            if self.grace_periods.has_open(box.id, GracePeriodReason.PAYMENT_FAILED.value):
                return BoxStatus.ACTIVE.value
            return BoxStatus.PAYMENT_FAILED.value
        return BoxStatus.SUSPENDED.value

    def sync_box(self, subscription: Subscription) -> Box:
        box = self.get_box(subscription.box_id)
        box.subscription_status = subscription.status
        box.status = self.project_box_status(box, subscription)
        if subscription.status in LIVE_SUBSCRIPTION_STATUSES:
            box.next_billing_date = subscription.current_period_end
            box.external_subscription_id = subscription.external_subscription_id or box.external_subscription_id
            box.subscription_ends_at = (
                subscription.current_period_end if subscription.cancel_at_period_end else None
            )
        elif subscription.status == SubscriptionStatus.CANCELED.value:
            box.subscription_ends_at = subscription.canceled_at
        box.updated_at = self.clock()
        self.session.add(box)
        return box

    # ------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------
    def _supersede_active(self, subscription: Subscription) -> None:
        """Cancel any other active row of the box before this one becomes active."""
        others = self.session.exec(
            select(Subscription).where(
                Subscription.box_id == subscription.box_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.id != subscription.id,
            )
        ).all()
        now = self.clock()
        for other in others:
            logger.info(f"🔄 Subscription {other.id} superseded by {subscription.id} for box {other.box_id}")
            other.status = SubscriptionStatus.CANCELED.value
            other.canceled_at = other.canceled_at or now
            other.cancel_reason = other.cancel_reason or "superseded"
            other.updated_at = now
            self.session.add(other)
        if others:
            self.session.flush()

    def apply_status(
        self,
        subscription: Subscription,
        new_status: str,
        context: Optional[GracePeriodContext] = None,
        actor: Optional[str] = None,
        change_type: str = SubscriptionChangeType.STATUS_CHANGE.value,
        reason: Optional[str] = None,
        previous_status: Optional[str] = None,
    ) -> TransitionResult:
        """Move a specific subscription row to ``new_status`` and run side effects."""
        previous = subscription.status if previous_status is None else previous_status
        if subscription.status == new_status and previous_status is None:
            box = self.sync_box(subscription)
            return TransitionResult(
                outcome=TransitionOutcome.UNCHANGED,
                subscription=subscription,
                previous_status=previous,
                new_status=new_status,
                box_status=box.status,
            )

        now = self.clock()
        if new_status == SubscriptionStatus.ACTIVE.value:
            self._supersede_active(subscription)

        subscription.status = new_status
        subscription.updated_at = now
        if new_status == SubscriptionStatus.CANCELED.value:
            subscription.canceled_at = subscription.canceled_at or now
            subscription.cancel_at_period_end = False
            subscription.cancel_reason = subscription.cancel_reason or reason
            subscription.canceled_by = subscription.canceled_by or actor
        self.session.add(subscription)
        self.session.flush()

        box = self.get_box(subscription.box_id)

        if new_status == SubscriptionStatus.PAST_DUE.value:
            payment_context = context if isinstance(context, PaymentFailedContext) else PaymentFailedContext()
            self.grace_periods.open(box.id, GracePeriodReason.PAYMENT_FAILED.value, context=payment_context)
            self.usage.record(
                box.id,
                UsageEventType.PAYMENT_FAILED.value,
                invoice_id=payment_context.invoice_id,
                attempt_count=payment_context.attempt_count,
            )
        elif new_status == SubscriptionStatus.CANCELED.value:
            cancel_context = (
                context
                if isinstance(context, CancellationContext)
                else CancellationContext(
                    subscription_id=subscription.id,
                    reason=subscription.cancel_reason,
                    canceled_at=subscription.canceled_at,
                    access_ends_at=subscription.canceled_at,
                )
            )
            self.grace_periods.open(box.id, GracePeriodReason.SUBSCRIPTION_CANCELED.value, context=cancel_context)
            self.usage.record(box.id, UsageEventType.SUBSCRIPTION_CANCELED.value, subscription_id=subscription.id)
            self.notifier.subscription_canceled(box, subscription, subscription.canceled_at, immediate=True)
        elif new_status == SubscriptionStatus.ACTIVE.value:
            self.grace_periods.resolve_for_reasons(box.id, PAYMENT_REMEDIATED_REASONS, "payment_received", actor)
            if previous == SubscriptionStatus.PAST_DUE.value:
                self.usage.record(box.id, UsageEventType.PAYMENT_RECEIVED.value, subscription_id=subscription.id)

        self.session.add(
            SubscriptionChange(
                box_id=box.id,
                subscription_id=subscription.id,
                change_type=change_type,
                from_plan_id=subscription.plan_id,
                to_plan_id=subscription.plan_id,
                from_status=previous,
                to_status=new_status,
                effective_date=now,
                reason=reason,
                changed_by=actor,
                created_at=now,
            )
        )

        box = self.sync_box(subscription)
        logger.info(f"🔁 Subscription {subscription.id} for box {box.id}: {previous} → {new_status} (box {box.status})")
        return TransitionResult(
            outcome=TransitionOutcome.TRANSITIONED,
            subscription=subscription,
            previous_status=previous,
            new_status=new_status,
            box_status=box.status,
        )

    def transition(
        self,
        box_id: int,
        new_status: str,
        context: Optional[GracePeriodContext] = None,
        actor: Optional[str] = None,
    ) -> TransitionResult:
        """Apply ``new_status`` to the box's live subscription, if it has one."""
        self.get_box(box_id)
        subscription = self.live_subscription(box_id)
        if subscription is None:
            logger.info(f"ℹ️ No live subscription for box {box_id}; {new_status} ignored")
            return TransitionResult(outcome=TransitionOutcome.NO_ACTIVE_SUBSCRIPTION, new_status=new_status)
        return self.apply_status(subscription, new_status, context=context, actor=actor)

    # ------------------------------------------------------------
    # Cancellation / reactivation
    # ------------------------------------------------------------
    def cancel(
        self,
        box_id: int,
        cancel_at_period_end: bool = True,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> CancellationResult:
        box = self.get_box(box_id)
        subscription = self.live_subscription(box_id)
        if subscription is None:
            raise NotFoundError(f"Box {box_id} has no subscription to cancel", {"box_id": box_id})
        if cancel_at_period_end and subscription.cancel_at_period_end:
            raise InvalidStateError("Subscription is already scheduled to cancel at period end")

        # Provider first: a gateway failure leaves local state untouched
        if subscription.external_subscription_id:
            if cancel_at_period_end:
                self.gateway.cancel_subscription(subscription.external_subscription_id)
            else:
                self.gateway.revoke_subscription(subscription.external_subscription_id)

        now = self.clock()
        subscription.cancel_reason = reason
        subscription.canceled_by = actor

        if not cancel_at_period_end:
            subscription.canceled_at = now
            self.apply_status(
                subscription,
                SubscriptionStatus.CANCELED.value,
                context=CancellationContext(
                    subscription_id=subscription.id,
                    reason=reason,
                    canceled_at=now,
                    access_ends_at=now,
                ),
                actor=actor,
                change_type=SubscriptionChangeType.CANCELLATION.value,
                reason=reason,
            )
            change = self.history(box_id, limit=1)[0]
            return CancellationResult(subscription=subscription, change=change, immediate=True, effective_date=now)

        subscription.cancel_at_period_end = True
        subscription.updated_at = now
        self.session.add(subscription)
        change = SubscriptionChange(
            box_id=box_id,
            subscription_id=subscription.id,
            change_type=SubscriptionChangeType.CANCELLATION.value,
            from_plan_id=subscription.plan_id,
            to_plan_id=subscription.plan_id,
            from_status=subscription.status,
            to_status=subscription.status,
            effective_date=subscription.current_period_end,
            reason=reason,
            changed_by=actor,
            created_at=now,
        )
        self.session.add(change)
        self.sync_box(subscription)
        self.notifier.subscription_canceled(box, subscription, subscription.current_period_end, immediate=False)
        self.session.flush()
        logger.info(f"🗓️ Subscription {subscription.id} will cancel at {subscription.current_period_end}")
        return CancellationResult(
            subscription=subscription,
            change=change,
            immediate=False,
            effective_date=subscription.current_period_end,
        )

    def _reactivation_candidate(self, box_id: int) -> Optional[Subscription]:
        """A live row with a pending cancellation, else the latest canceled row."""
        live = self.live_subscription(box_id)
        if live is not None:
            if not live.cancel_at_period_end:
                raise InvalidStateError("Subscription is not canceled")
            return live
        return self.session.exec(
            select(Subscription)
            .where(Subscription.box_id == box_id, Subscription.status == SubscriptionStatus.CANCELED.value)
            .order_by(Subscription.canceled_at.desc(), Subscription.id.desc())
        ).first()

    def reactivate(self, box_id: int, actor: Optional[str] = None) -> ReactivationResult:
        box = self.get_box(box_id)
        subscription = self._reactivation_candidate(box_id)
        if subscription is None:
            raise NotFoundError(f"Box {box_id} has no canceled subscription", {"box_id": box_id})

        if subscription.external_subscription_id:
            self.gateway.update_subscription(subscription.external_subscription_id, cancel_at_period_end=False)

        now = self.clock()
        was_terminal = subscription.status == SubscriptionStatus.CANCELED.value
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.cancel_reason = None
        subscription.canceled_by = None
        self.session.add(subscription)

        if was_terminal:
            self.apply_status(
                subscription,
                SubscriptionStatus.ACTIVE.value,
                actor=actor,
                change_type=SubscriptionChangeType.REACTIVATION.value,
                reason="reactivated",
            )
        else:
            self.session.add(
                SubscriptionChange(
                    box_id=box_id,
                    subscription_id=subscription.id,
                    change_type=SubscriptionChangeType.REACTIVATION.value,
                    from_plan_id=subscription.plan_id,
                    to_plan_id=subscription.plan_id,
                    from_status=subscription.status,
                    to_status=subscription.status,
                    effective_date=now,
                    reason="reactivated",
                    changed_by=actor,
                    created_at=now,
                )
            )
            self.sync_box(subscription)

        resolved = self.grace_periods.resolve_for_reasons(
            box_id, REACTIVATION_REMEDIATED_REASONS, "subscription_reactivated", actor
        )
        self.usage.record(box_id, UsageEventType.SUBSCRIPTION_REACTIVATED.value, subscription_id=subscription.id)
        self.session.flush()

        change = self.history(box_id, limit=1)[0]
        self.notifier.subscription_reactivated(box, subscription, change)
        logger.info(f"✅ Subscription {subscription.id} reactivated for box {box_id}")
        return ReactivationResult(subscription=subscription, change=change, resolved_grace_periods=resolved)

    # ------------------------------------------------------------
    # Scheduled transitions
    # ------------------------------------------------------------
    def expire_trial(self, box_id: int) -> TransitionResult:
        """Trial ran out without a paid subscription: trial → incomplete."""
        subscription = self.live_subscription(box_id)
        if subscription is None or subscription.status != SubscriptionStatus.TRIAL.value:
            return TransitionResult(
                outcome=TransitionOutcome.NO_ACTIVE_SUBSCRIPTION,
                new_status=SubscriptionStatus.INCOMPLETE.value,
            )

        result = self.apply_status(subscription, SubscriptionStatus.INCOMPLETE.value, reason="trial_expired")
        box = self.get_box(box_id)
        self.grace_periods.open(
            box_id,
            GracePeriodReason.TRIAL_ENDING.value,
            context=TrialEndingContext(subscription_id=subscription.id, trial_ended_at=subscription.trial_end or self.clock()),
        )
        box.status = BoxStatus.TRIAL_EXPIRED.value
        self.session.add(box)
        self.usage.record(box_id, UsageEventType.TRIAL_EXPIRED.value, subscription_id=subscription.id)
        self.notifier.trial_expired(box, subscription)
        result.box_status = box.status
        return result

    def finalize_period_end_cancellations(self) -> List[TransitionResult]:
        """Cancel subscriptions whose scheduled period-end cancellation is due."""
        now = self.clock()
        due = self.session.exec(
            select(Subscription).where(
                Subscription.cancel_at_period_end == True,  # noqa: E712
                Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
                Subscription.current_period_end <= now,
            )
        ).all()
        results = []
        for subscription in due:
            logger.info(f"🔄 Finalizing period-end cancellation for subscription {subscription.id}")
            results.append(
                self.apply_status(
                    subscription,
                    SubscriptionStatus.CANCELED.value,
                    change_type=SubscriptionChangeType.CANCELLATION.value,
                    reason=subscription.cancel_reason or "period_end",
                )
            )
        return results

    # ------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------
    def start_checkout(
        self,
        box_id: int,
        plan_id: int,
        interval: str,
        actor: Optional[str] = None,
    ) -> CheckoutSession:
        box = self.get_box(box_id)
        plan = self.session.get(SubscriptionPlan, plan_id)
        if not plan or not plan.is_active:
            raise NotFoundError(f"Plan {plan_id} not found", {"plan_id": plan_id})

        customer_id = self.gateway.sync_customer(box)
        if customer_id != box.external_customer_id:
            box.external_customer_id = customer_id
            self.session.add(box)

        created = self.gateway.create_checkout_session(
            box,
            plan,
            interval,
            success_url=self.settings.CHECKOUT_SUCCESS_URL,
            cancel_url=self.settings.CHECKOUT_CANCEL_URL,
        )
        checkout = CheckoutSession(
            box_id=box_id,
            plan_id=plan_id,
            interval=interval,
            external_session_id=created["id"],
            url=created.get("url"),
            created_by=actor,
            created_at=self.clock(),
        )
        self.session.add(checkout)
        self.session.flush()
        logger.info(f"🛒 Checkout {checkout.external_session_id} started for box {box_id} on plan {plan.name}")
        return checkout
