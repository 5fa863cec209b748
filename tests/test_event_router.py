"""
Unit tests for event routing.

Tests tenant resolution and the per-type handlers that translate gateway and
internal events into billing state changes.
"""

import pytest
from sqlmodel import select

from core.billing_utils import add_months, month_window, to_unix
from core.errors import NotFoundError
from models.models import (
    Box,
    BoxStatus,
    CheckoutSession,
    CheckoutStatus,
    GracePeriod,
    GracePeriodReason,
    MemberRole,
    Order,
    OrderStatus,
    OverageBilling,
    OverageBillingStatus,
    SubscriptionStatus,
)
from schemas.billing_schema import InboundEvent

from conftest import gateway_event


def _event(event_id, event_type, obj, tenant_id=None):
    return InboundEvent.model_validate(gateway_event(event_id, event_type, obj, tenant_id=tenant_id))


class TestTenantResolution:
    """Events are attributed to a box by metadata first, then by gateway ids."""

    def test_metadata_tenant_wins(self, services, make_box):
        linked = make_box(name="Linked", external_customer_id="cus_linked")
        other = make_box(name="Other")
        event = _event("evt_1", "customer.updated", {"id": "cus_linked", "object": "customer"}, tenant_id=other.id)

        assert services.router.resolve_tenant(event) == other.id
        assert linked.id != other.id

    def test_camel_case_tenant_key(self, services, make_box):
        box = make_box()
        event = InboundEvent(id="evt_camel", type="internal.members_changed", metadata={"tenantId": str(box.id)})

        assert event.metadata.tenant_id == str(box.id)
        assert services.router.resolve_tenant(event) == box.id

    def test_camel_case_tenant_survives_retry_payload(self, services, make_box):
        box = make_box()
        event = InboundEvent(id="evt_camel_2", type="internal.members_changed", metadata={"tenantId": str(box.id)})

        stored = InboundEvent.model_validate(event.model_dump(mode="json"))

        assert services.router.resolve_tenant(stored) == box.id

    def test_object_metadata_box_id(self, services, make_box):
        box = make_box()
        event = _event("evt_2", "invoice.paid", {"id": "in_1", "metadata": {"box_id": str(box.id)}})

        assert services.router.resolve_tenant(event) == box.id

    def test_client_reference_id(self, services, make_box):
        box = make_box()
        event = _event("evt_3", "checkout.session.completed", {"id": "cs_1", "client_reference_id": str(box.id)})

        assert services.router.resolve_tenant(event) == box.id

    def test_subscription_reference(self, services, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan(), external_subscription_id="sub_ref")
        event = _event("evt_4", "invoice.paid", {"id": "in_2", "subscription": "sub_ref"})

        assert services.router.resolve_tenant(event) == box.id

    def test_customer_reference(self, services, make_box):
        box = make_box(external_customer_id="cus_abc")
        event = _event("evt_5", "invoice.paid", {"id": "in_3", "customer": "cus_abc"})

        assert services.router.resolve_tenant(event) == box.id

    def test_unresolvable_event(self, services):
        event = _event("evt_6", "invoice.paid", {"id": "in_4", "customer": "cus_missing"})

        assert services.router.resolve_tenant(event) is None

    def test_customer_updated_changes_billing_email(self, services, session, make_box):
        box = make_box(external_customer_id="cus_abc")
        event = _event("evt_7", "customer.updated", {"id": "cus_abc", "object": "customer", "email": "new@box.com"})

        services.events.ingest(event)
        services.commit()

        assert session.get(Box, box.id).billing_email == "new@box.com"


class TestSubscriptionEvents:
    """Gateway subscription events keep the local subscription in sync."""

    def _subscription_object(self, box, clock, status="active", price_id="price_grow_monthly", with_metadata=True):
        start = clock.now
        obj = {
            "id": "sub_new",
            "object": "subscription",
            "customer": "cus_1",
            "status": status,
            "currency": "usd",
            "current_period_start": to_unix(start),
            "current_period_end": to_unix(add_months(start, 1)),
            "items": {"data": [{"price": {"id": price_id, "recurring": {"interval": "month"}}}]},
        }
        if with_metadata:
            obj["metadata"] = {"box_id": str(box.id)}
        return obj

    def test_created_subscription_is_synced(self, services, session, make_box, make_plan, clock):
        box = make_box()
        make_plan()
        grow = make_plan(tier="grow", athlete_limit=150, coach_limit=6, monthly_price=6000)

        services.events.ingest(
            _event("evt_sub_1", "customer.subscription.created", self._subscription_object(box, clock))
        )
        services.commit()

        subscription = services.lifecycle.by_external_id("sub_new")
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.plan_id == grow.id
        assert subscription.amount == 6000
        assert subscription.current_period_end == add_months(clock.now, 1)

        box = session.get(Box, box.id)
        assert box.subscription_tier == "grow"
        assert box.current_athlete_limit == 150
        assert box.current_coach_limit == 6
        assert box.external_customer_id == "cus_1"
        assert box.external_subscription_id == "sub_new"
        assert box.status == BoxStatus.ACTIVE.value
        assert box.next_billing_date == add_months(clock.now, 1)

    def test_update_to_past_due_opens_payment_grace_period(self, services, session, make_box, make_plan, clock):
        box = make_box()
        make_plan(tier="grow", athlete_limit=150, coach_limit=6, monthly_price=6000)
        services.events.ingest(
            _event("evt_sub_1", "customer.subscription.created", self._subscription_object(box, clock))
        )
        services.commit()

        services.events.ingest(
            _event(
                "evt_sub_2",
                "customer.subscription.updated",
                self._subscription_object(box, clock, status="past_due", with_metadata=False),
            )
        )
        services.commit()

        assert services.lifecycle.by_external_id("sub_new").status == SubscriptionStatus.PAST_DUE.value
        assert services.grace_periods.has_open(box.id, GracePeriodReason.PAYMENT_FAILED.value)
        assert session.get(Box, box.id).status == BoxStatus.ACTIVE.value

    def test_unknown_price_fails_the_event(self, services, make_box, clock):
        box = make_box()

        with pytest.raises(NotFoundError):
            services.events.ingest(
                _event(
                    "evt_sub_3",
                    "customer.subscription.created",
                    self._subscription_object(box, clock, price_id="price_unknown"),
                )
            )

    def test_deleted_subscription_is_canceled(self, services, session, make_box, make_plan, make_subscription):
        box = make_box()
        subscription = make_subscription(box, make_plan(), external_subscription_id="sub_1")

        services.events.ingest(_event("evt_del", "customer.subscription.deleted", {"id": "sub_1", "object": "subscription"}))
        services.commit()

        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.canceled_at is not None
        assert session.get(Box, box.id).status == BoxStatus.SUSPENDED.value
        assert services.grace_periods.has_open(box.id, GracePeriodReason.SUBSCRIPTION_CANCELED.value)


class TestInvoiceEvents:
    """Invoice outcomes drive payment recovery and overage settlement."""

    def test_paid_invoice_recovers_past_due_subscription(
        self, services, session, make_box, make_plan, make_subscription, notification_client
    ):
        box = make_box()
        subscription = make_subscription(
            box, make_plan(), status=SubscriptionStatus.PAST_DUE.value, external_subscription_id="sub_1"
        )
        services.grace_periods.open(box.id, GracePeriodReason.PAYMENT_FAILED.value)
        services.commit()

        result = services.events.ingest(
            _event("evt_paid", "invoice.paid", {"id": "in_9", "subscription": "sub_1", "amount_paid": 3000})
        )
        services.commit()

        assert result.box_id == box.id
        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert not services.grace_periods.has_open(box.id, GracePeriodReason.PAYMENT_FAILED.value)
        grace_period = session.exec(select(GracePeriod).where(GracePeriod.box_id == box.id)).one()
        assert grace_period.resolution == "payment_received"
        assert session.get(Box, box.id).status == BoxStatus.ACTIVE.value
        assert "payment_succeeded" in notification_client.types()
        assert "grace_period_resolved" in notification_client.types()

        order = session.exec(select(Order).where(Order.external_order_id == "in_9")).one()
        assert order.status == OrderStatus.PAID.value
        assert order.amount == 3000

    def test_paid_overage_invoice_settles_the_overage(
        self, services, session, make_box, make_plan, make_subscription, add_members, clock
    ):
        box = make_box(overage=True)
        make_subscription(box, make_plan())
        add_members(box, MemberRole.ATHLETE.value, 80)
        period_start, period_end = month_window(clock.now)
        billed = services.overage.bill_box(box.id, period_start, period_end)
        services.commit()

        services.events.ingest(
            _event(
                "evt_overage_paid",
                "invoice.paid",
                {
                    "id": "in_overage",
                    "amount_paid": 500,
                    "metadata": {"type": "overage", "overage_billing_id": str(billed.billing_id), "box_id": str(box.id)},
                },
            )
        )
        services.commit()

        billing = session.get(OverageBilling, billed.billing_id)
        assert billing.status == OverageBillingStatus.PAID.value
        assert billing.paid_at is not None
        assert session.get(Order, billed.order_id).status == OrderStatus.PAID.value

    def test_failed_overage_invoice_marks_overage_failed(
        self, services, session, make_box, make_plan, make_subscription, add_members, clock
    ):
        box = make_box(overage=True)
        make_subscription(box, make_plan())
        add_members(box, MemberRole.ATHLETE.value, 80)
        billed = services.overage.bill_box(box.id, *month_window(clock.now))
        services.commit()

        services.events.ingest(
            _event(
                "evt_overage_failed",
                "invoice.payment_failed",
                {
                    "id": "in_overage",
                    "amount_due": 500,
                    "metadata": {"type": "overage", "overage_billing_id": str(billed.billing_id), "box_id": str(box.id)},
                },
            )
        )
        services.commit()

        billing = session.get(OverageBilling, billed.billing_id)
        assert billing.status == OverageBillingStatus.FAILED.value
        assert billing.failure_reason == "payment_failed"
        assert not services.grace_periods.has_open(box.id, GracePeriodReason.PAYMENT_FAILED.value)


class TestInternalEvents:
    """Internal triggers for membership changes and trial expiry."""

    def test_members_changed_enforces_limits(
        self, services, make_box, make_plan, make_subscription, add_members, notification_client
    ):
        box = make_box()
        make_subscription(box, make_plan())
        add_members(box, MemberRole.ATHLETE.value, 76)

        event = InboundEvent(
            id="evt_members",
            type="internal.members_changed",
            data={"events": [{"event_type": "athlete_added", "quantity": 1, "user_id": "athlete-75"}]},
            metadata={"tenant_id": str(box.id)},
        )
        result = services.events.ingest(event)
        services.commit()

        assert result.handled is True
        assert services.grace_periods.has_open(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value)
        assert "limit_exceeded" in notification_client.types()

    def test_trial_expired(self, services, session, make_box, make_plan, make_subscription, notification_client):
        box = make_box()
        subscription = make_subscription(box, make_plan(), status=SubscriptionStatus.TRIAL.value)

        event = InboundEvent(id="evt_trial", type="internal.trial_expired", metadata={"tenant_id": str(box.id)})
        services.events.ingest(event)
        services.commit()

        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.INCOMPLETE.value
        assert session.get(Box, box.id).status == BoxStatus.TRIAL_EXPIRED.value
        assert services.grace_periods.has_open(box.id, GracePeriodReason.TRIAL_ENDING.value)
        assert "trial_expired" in notification_client.types()

    def test_trial_expired_with_camel_case_tenant(self, services, session, make_box, make_plan, make_subscription):
        box = make_box()
        subscription = make_subscription(box, make_plan(), status=SubscriptionStatus.TRIAL.value)

        event = InboundEvent(id="evt_trial_camel", type="internal.trial_expired", metadata={"tenantId": str(box.id)})
        result = services.events.ingest(event)
        services.commit()

        assert result.box_id == box.id
        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.INCOMPLETE.value

    def test_checkout_completed_links_gateway_ids(self, services, session, make_box, make_plan):
        box = make_box()
        plan = make_plan()
        checkout = services.lifecycle.start_checkout(box.id, plan.id, "month")
        services.commit()

        services.events.ingest(
            _event(
                "evt_checkout",
                "checkout.session.completed",
                {
                    "id": checkout.external_session_id,
                    "object": "checkout.session",
                    "client_reference_id": str(box.id),
                    "customer": "cus_9",
                    "subscription": "sub_9",
                },
            )
        )
        services.commit()

        stored = session.exec(
            select(CheckoutSession).where(CheckoutSession.external_session_id == checkout.external_session_id)
        ).one()
        assert stored.status == CheckoutStatus.COMPLETED.value
        assert stored.completed_at is not None
        box = session.get(Box, box.id)
        assert box.external_customer_id == "cus_9"
        assert box.external_subscription_id == "sub_9"
