import logging
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session, select

from core.billing_utils import Clock, add_months, from_unix, utcnow
from core.database import insert_or_get_existing
from core.errors import NotFoundError
from models.models import (
    Box,
    CheckoutSession,
    CheckoutStatus,
    GracePeriodReason,
    Order,
    OrderKind,
    OrderStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageEventType,
)
from schemas.billing_schema import InboundEvent, PaymentFailedContext, RouteOutcome, UsageEventInput
from services.grace_periods import GracePeriodManager
from services.notifications import BillingNotifier
from services.overage_billing import OverageBillingEngine
from services.subscription_lifecycle import PAYMENT_REMEDIATED_REASONS, SubscriptionStateMachine
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


# gateway status -> local status
GATEWAY_STATUS_MAP: Dict[str, str] = {
    "trialing": SubscriptionStatus.TRIAL.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE.value,
    "paused": SubscriptionStatus.PAUSED.value,
}

Handler = Callable[[InboundEvent, Optional[int]], RouteOutcome]


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


class EventRouter:
    """
    Dispatches a stored event to the billing components.

    Handlers are registered per event type on the instance. Unknown types are
    reported back as not handled instead of failing.
    """

    def __init__(
        self,
        session: Session,
        lifecycle: SubscriptionStateMachine,
        usage: UsageLedger,
        grace_periods: GracePeriodManager,
        overage: OverageBillingEngine,
        notifier: BillingNotifier,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.lifecycle = lifecycle
        self.usage = usage
        self.grace_periods = grace_periods
        self.overage = overage
        self.notifier = notifier
        self.clock = clock
        self.handlers: Dict[str, Handler] = {
            "customer.subscription.created": self._subscription_upserted,
            "customer.subscription.updated": self._subscription_upserted,
            "customer.subscription.deleted": self._subscription_deleted,
            "subscription.revoked": self._subscription_deleted,
            "customer.updated": self._customer_updated,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
            "checkout.session.completed": self._checkout_completed,
            "internal.members_changed": self._members_changed,
            "internal.trial_expired": self._trial_expired,
        }

    def register(self, event_type: str, handler: Handler) -> None:
        self.handlers[event_type] = handler

    # ------------------------------------------------------------
    # Tenant resolution
    # ------------------------------------------------------------
    def resolve_tenant(self, event: InboundEvent) -> Optional[int]:
        """metadata.tenant_id, then object metadata, then subscription id, then customer id."""
        box_id = _to_int(event.metadata.tenant_id)
        if box_id is not None:
            return box_id

        obj = event.object
        object_metadata = obj.get("metadata") or {}
        for key in ("box_id", "tenant_id"):
            box_id = _to_int(object_metadata.get(key))
            if box_id is not None:
                return box_id
        box_id = _to_int(obj.get("box_id")) or _to_int(obj.get("client_reference_id"))
        if box_id is not None:
            return box_id

        subscription_ref = obj.get("subscription")
        if not subscription_ref and obj.get("object") == "subscription":
            subscription_ref = obj.get("id")
        if isinstance(subscription_ref, str):
            subscription = self.lifecycle.by_external_id(subscription_ref)
            if subscription:
                return subscription.box_id
            box = self.session.exec(select(Box).where(Box.external_subscription_id == subscription_ref)).first()
            if box:
                return box.id

        customer_ref = obj.get("customer")
        if not customer_ref and obj.get("object") == "customer":
            customer_ref = obj.get("id")
        if isinstance(customer_ref, str):
            box = self.session.exec(select(Box).where(Box.external_customer_id == customer_ref)).first()
            if box:
                return box.id
        return None

    # ------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------
    def route(self, event: InboundEvent) -> RouteOutcome:
        handler = self.handlers.get(event.type)
        box_id = self.resolve_tenant(event)
        if handler is None:
            logger.info(f"ℹ️ Unhandled event type: {event.type}")
            return RouteOutcome(handled=False, box_id=box_id)
        return handler(event, box_id)

    def _require_box(self, event: InboundEvent, box_id: Optional[int]) -> Box:
        box = self.session.get(Box, box_id) if box_id is not None else None
        if not box:
            raise NotFoundError(f"No box found for event {event.id} ({event.type})", {"event_id": event.id})
        return box

    # ------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------
    def _plan_for(self, obj: Dict[str, Any]) -> SubscriptionPlan:
        items = (obj.get("items") or {}).get("data") or []
        price = (items[0].get("price") or {}) if items else (obj.get("plan") or {})
        price_id = price.get("id")
        product_id = price.get("product")

        plan = None
        if price_id:
            plan = self.session.exec(
                select(SubscriptionPlan).where(
                    (SubscriptionPlan.external_monthly_price_id == price_id)
                    | (SubscriptionPlan.external_annual_price_id == price_id)
                )
            ).first()
        if plan is None and product_id:
            plan = self.session.exec(
                select(SubscriptionPlan).where(
                    SubscriptionPlan.external_product_id == product_id,
                    SubscriptionPlan.is_current_version == True,  # noqa: E712
                )
            ).first()
        if plan is None:
            plan_id = _to_int((obj.get("metadata") or {}).get("plan_id"))
            plan = self.session.get(SubscriptionPlan, plan_id) if plan_id else None
        if plan is None:
            raise NotFoundError(
                f"No plan matches price {price_id or product_id}",
                {"price_id": price_id, "product_id": product_id},
            )
        return plan

    @staticmethod
    def _period(obj: Dict[str, Any], now) -> tuple:
        items = (obj.get("items") or {}).get("data") or []
        item = items[0] if items else {}
        start = from_unix(obj.get("current_period_start") or item.get("current_period_start"))
        end = from_unix(obj.get("current_period_end") or item.get("current_period_end"))
        start = start or now
        return start, end or add_months(start, 1)

    def _subscription_upserted(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        obj = event.object
        box = self._require_box(event, box_id)
        plan = self._plan_for(obj)
        now = self.clock()

        gateway_status = obj.get("status") or "incomplete"
        new_status = GATEWAY_STATUS_MAP.get(gateway_status)
        if new_status is None:
            logger.warning(f"⚠️ Unknown gateway status {gateway_status}, treating as incomplete")
            new_status = SubscriptionStatus.INCOMPLETE.value

        items = (obj.get("items") or {}).get("data") or []
        recurring = ((items[0].get("price") or {}).get("recurring") or {}) if items else {}
        interval = recurring.get("interval") or "month"
        period_start, period_end = self._period(obj, now)

        external_id = obj.get("id")
        subscription = self.lifecycle.by_external_id(external_id) if external_id else None
        created = subscription is None
        if created:
            subscription = Subscription(
                box_id=box.id,
                status=SubscriptionStatus.INCOMPLETE.value,
                external_subscription_id=external_id,
                created_at=now,
            )
        elif subscription.box_id != box.id:
            raise NotFoundError(f"Subscription {external_id} belongs to another box", {"box_id": box.id})

        subscription.plan_id = plan.id
        subscription.plan_version = plan.version
        subscription.interval = interval
        subscription.currency = (obj.get("currency") or plan.currency).upper()
        subscription.amount = plan.annual_price if interval == "year" else plan.monthly_price
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
        subscription.trial_start = from_unix(obj.get("trial_start"))
        subscription.trial_end = from_unix(obj.get("trial_end"))
        subscription.external_customer_id = obj.get("customer") or box.external_customer_id
        subscription.last_synced_at = now
        subscription.updated_at = now
        if created:
            subscription, _ = insert_or_get_existing(
                self.session, subscription, lambda: self.lifecycle.by_external_id(external_id)
            )
        else:
            self.session.add(subscription)
            self.session.flush()

        if new_status == SubscriptionStatus.CANCELED.value:
            subscription.canceled_at = subscription.canceled_at or from_unix(obj.get("canceled_at")) or now
        self.lifecycle.apply_status(subscription, new_status, reason=f"gateway:{gateway_status}")

        box.subscription_tier = plan.tier
        box.current_athlete_limit = plan.athlete_limit
        box.current_coach_limit = plan.coach_limit
        box.external_customer_id = subscription.external_customer_id or box.external_customer_id
        box.subscription_started_at = box.subscription_started_at or period_start
        box.trial_starts_at = subscription.trial_start or box.trial_starts_at
        box.trial_ends_at = subscription.trial_end or box.trial_ends_at
        self.session.add(box)

        self.usage.record(
            box.id,
            UsageEventType.SUBSCRIPTION_CREATED.value if created else UsageEventType.SUBSCRIPTION_UPDATED.value,
            subscription_id=subscription.id,
            plan_id=plan.id,
            status=new_status,
        )
        logger.info(f"✅ Subscription {external_id} synced for box {box.id}: {new_status} on {plan.name}")
        return RouteOutcome(handled=True, box_id=box.id)

    def _subscription_deleted(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        obj = event.object
        box = self._require_box(event, box_id)
        subscription = self.lifecycle.by_external_id(obj.get("id")) if obj.get("id") else None
        if subscription is None:
            self.lifecycle.transition(box.id, SubscriptionStatus.CANCELED.value)
        elif subscription.status != SubscriptionStatus.CANCELED.value:
            subscription.canceled_at = from_unix(obj.get("canceled_at")) or self.clock()
            self.lifecycle.apply_status(subscription, SubscriptionStatus.CANCELED.value, reason="gateway:deleted")
        return RouteOutcome(handled=True, box_id=box.id)

    def _customer_updated(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        obj = event.object
        box = self._require_box(event, box_id)
        if obj.get("email") and obj["email"] != box.billing_email:
            box.billing_email = obj["email"]
            box.updated_at = self.clock()
            self.session.add(box)
            logger.info(f"📧 Billing email updated for box {box.id}")
        return RouteOutcome(handled=True, box_id=box.id)

    # ------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------
    def _record_order(self, box: Box, subscription: Optional[Subscription], obj: Dict[str, Any], status: str) -> Order:
        invoice_id = obj.get("id")
        is_overage = (obj.get("metadata") or {}).get("type") == "overage"
        now = self.clock()
        amount = obj.get("amount_paid") if status == OrderStatus.PAID.value else obj.get("amount_due")
        order = Order(
            box_id=box.id,
            subscription_id=subscription.id if subscription else None,
            external_order_id=invoice_id,
            kind=OrderKind.OVERAGE.value if is_overage else OrderKind.SUBSCRIPTION.value,
            status=status,
            amount=amount or 0,
            currency=(obj.get("currency") or "usd").upper(),
            billing_reason=obj.get("billing_reason"),
            period_start=from_unix(obj.get("period_start")),
            period_end=from_unix(obj.get("period_end")),
            paid_at=now if status == OrderStatus.PAID.value else None,
            created_at=now,
            updated_at=now,
        )
        order, was_existing = insert_or_get_existing(
            self.session,
            order,
            lambda: self.session.exec(select(Order).where(Order.external_order_id == invoice_id)).first(),
        )
        if was_existing and order.status != OrderStatus.PAID.value:
            order.status = status
            order.amount = amount or order.amount
            order.paid_at = now if status == OrderStatus.PAID.value else None
            order.updated_at = now
            self.session.add(order)
        return order

    def _invoice_subscription(self, obj: Dict[str, Any], box: Box) -> Optional[Subscription]:
        external_id = obj.get("subscription")
        if isinstance(external_id, str):
            subscription = self.lifecycle.by_external_id(external_id)
            if subscription:
                return subscription
        return self.lifecycle.live_subscription(box.id)

    def _invoice_paid(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        obj = event.object
        box = self._require_box(event, box_id)
        subscription = self._invoice_subscription(obj, box)
        self._record_order(box, subscription, obj, OrderStatus.PAID.value)

        metadata = obj.get("metadata") or {}
        if metadata.get("type") == "overage":
            billing_id = _to_int(metadata.get("overage_billing_id"))
            if billing_id:
                self.overage.mark_overage_paid(billing_id)
            return RouteOutcome(handled=True, box_id=box.id)

        if subscription and subscription.status == SubscriptionStatus.PAST_DUE.value:
            self.lifecycle.apply_status(subscription, SubscriptionStatus.ACTIVE.value, reason="payment_received")
        else:
            self.grace_periods.resolve_for_reasons(box.id, PAYMENT_REMEDIATED_REASONS, "payment_received")
        self.notifier.payment_succeeded(box, obj.get("id"), obj.get("amount_paid") or 0)
        logger.info(f"💰 Invoice {obj.get('id')} paid for box {box.id}")
        return RouteOutcome(handled=True, box_id=box.id)

    def _invoice_failed(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        obj = event.object
        box = self._require_box(event, box_id)
        subscription = self._invoice_subscription(obj, box)
        self._record_order(box, subscription, obj, OrderStatus.FAILED.value)

        metadata = obj.get("metadata") or {}
        if metadata.get("type") == "overage":
            billing_id = _to_int(metadata.get("overage_billing_id"))
            if billing_id:
                self.overage.mark_overage_failed(billing_id, "payment_failed")
            return RouteOutcome(handled=True, box_id=box.id)

        context = PaymentFailedContext(
            invoice_id=obj.get("id"),
            amount_due=obj.get("amount_due") or 0,
            attempt_count=obj.get("attempt_count") or 1,
        )
        if subscription and subscription.is_live:
            self.lifecycle.apply_status(subscription, SubscriptionStatus.PAST_DUE.value, context=context)
        else:
            self.grace_periods.open(box.id, GracePeriodReason.PAYMENT_FAILED.value, context=context)
        self.notifier.payment_failed(box, context.invoice_id, context.attempt_count, context.amount_due)
        logger.warning(f"⚠️ Invoice {obj.get('id')} failed for box {box.id} (attempt {context.attempt_count})")
        return RouteOutcome(handled=True, box_id=box.id)

    # ------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------
    def _checkout_completed(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        obj = event.object
        box = self._require_box(event, box_id)
        now = self.clock()
        checkout = self.session.exec(
            select(CheckoutSession).where(CheckoutSession.external_session_id == obj.get("id"))
        ).first()
        if checkout and checkout.status != CheckoutStatus.COMPLETED.value:
            checkout.status = CheckoutStatus.COMPLETED.value
            checkout.completed_at = now
            self.session.add(checkout)

        if obj.get("customer"):
            box.external_customer_id = obj["customer"]
        if obj.get("subscription"):
            box.external_subscription_id = obj["subscription"]
        box.updated_at = now
        self.session.add(box)
        logger.info(f"🛒 Checkout {obj.get('id')} completed for box {box.id}")
        return RouteOutcome(handled=True, box_id=box.id)

    # ------------------------------------------------------------
    # Internal triggers
    # ------------------------------------------------------------
    def _members_changed(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        box = self._require_box(event, box_id)
        events = [UsageEventInput.model_validate(item) for item in event.data.get("events", [])]
        self.usage.record_usage_events(box.id, events)
        self.usage.enforce_limits(box.id, [e.event_type for e in events])
        return RouteOutcome(handled=True, box_id=box.id)

    def _trial_expired(self, event: InboundEvent, box_id: Optional[int]) -> RouteOutcome:
        box = self._require_box(event, box_id)
        self.lifecycle.expire_trial(box.id)
        return RouteOutcome(handled=True, box_id=box.id)
