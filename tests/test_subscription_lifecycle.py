"""
Unit tests for the subscription state machine.

Tests status transitions and their side effects, cancellation,
reactivation, trial expiry and checkout.
"""

from datetime import timedelta

import pytest
from sqlmodel import select

from core.errors import ExternalServiceError, InvalidStateError, NotFoundError
from models.models import (
    Box,
    BoxStatus,
    GracePeriod,
    GracePeriodReason,
    GracePeriodSeverity,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionStatus,
    UsageEvent,
    UsageEventType,
)
from schemas.billing_schema import PaymentFailedContext, TransitionOutcome


class TestTransitions:
    """Status changes on the live subscription and the box projection."""

    def test_past_due_opens_payment_grace_period(self, services, session, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan())

        result = services.lifecycle.transition(
            box.id,
            SubscriptionStatus.PAST_DUE.value,
            context=PaymentFailedContext(invoice_id="in_1", amount_due=3000, attempt_count=2),
        )
        services.commit()

        assert result.outcome == TransitionOutcome.TRANSITIONED
        assert result.previous_status == SubscriptionStatus.ACTIVE.value
        assert result.new_status == SubscriptionStatus.PAST_DUE.value
        # Access continues while the payment grace period is open
        assert result.box_status == BoxStatus.ACTIVE.value

        grace_period = session.exec(select(GracePeriod).where(GracePeriod.box_id == box.id)).one()
        assert grace_period.reason == GracePeriodReason.PAYMENT_FAILED.value
        assert grace_period.context_snapshot["invoice_id"] == "in_1"
        assert grace_period.context_snapshot["attempt_count"] == 2

        box = session.get(Box, box.id)
        assert box.subscription_status == SubscriptionStatus.PAST_DUE.value

    def test_past_due_after_grace_lapses_blocks_box(self, services, make_box, make_plan, make_subscription, clock):
        box = make_box()
        subscription = make_subscription(box, make_plan())
        services.lifecycle.transition(box.id, SubscriptionStatus.PAST_DUE.value)
        services.commit()

        clock.advance(days=4)
        assert services.lifecycle.project_box_status(box, subscription) == BoxStatus.PAYMENT_FAILED.value

    def test_same_status_is_a_no_op(self, services, session, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan())

        result = services.lifecycle.transition(box.id, SubscriptionStatus.ACTIVE.value)
        services.commit()

        assert result.outcome == TransitionOutcome.UNCHANGED
        assert session.exec(select(SubscriptionChange)).all() == []

    def test_no_live_subscription(self, services, make_box):
        box = make_box()

        result = services.lifecycle.transition(box.id, SubscriptionStatus.PAST_DUE.value)

        assert result.outcome == TransitionOutcome.NO_ACTIVE_SUBSCRIPTION
        assert result.subscription is None

    def test_unknown_box(self, services):
        with pytest.raises(NotFoundError):
            services.lifecycle.transition(999, SubscriptionStatus.ACTIVE.value)

    def test_activation_supersedes_previous_active_row(
        self, services, session, make_box, make_plan, make_subscription, clock
    ):
        box = make_box()
        plan = make_plan()
        old = make_subscription(box, plan)
        new = make_subscription(box, plan, status=SubscriptionStatus.INCOMPLETE.value, days_used=0, days_left=30)

        services.lifecycle.apply_status(new, SubscriptionStatus.ACTIVE.value)
        services.commit()

        active = session.exec(
            select(Subscription).where(
                Subscription.box_id == box.id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        ).all()
        assert [s.id for s in active] == [new.id]
        session.refresh(old)
        assert old.status == SubscriptionStatus.CANCELED.value
        assert old.cancel_reason == "superseded"

    def test_recovery_from_past_due_records_payment(self, services, session, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan())
        services.lifecycle.transition(box.id, SubscriptionStatus.PAST_DUE.value)
        services.lifecycle.transition(box.id, SubscriptionStatus.ACTIVE.value)
        services.commit()

        assert not services.grace_periods.has_open(box.id, GracePeriodReason.PAYMENT_FAILED.value)
        event_types = [e.event_type for e in session.exec(select(UsageEvent)).all()]
        assert UsageEventType.PAYMENT_FAILED.value in event_types
        assert UsageEventType.PAYMENT_RECEIVED.value in event_types
        assert len(services.lifecycle.history(box.id)) == 2


class TestCancellation:
    """Period-end and immediate cancellation."""

    def test_cancel_at_period_end(
        self, services, session, make_box, make_plan, make_subscription, gateway, notification_client
    ):
        box = make_box()
        subscription = make_subscription(box, make_plan(), external_subscription_id="sub_1")

        result = services.lifecycle.cancel(box.id, cancel_at_period_end=True, reason="moving", actor="owner-1")
        services.commit()

        assert result.immediate is False
        assert result.effective_date == subscription.current_period_end
        assert result.change.change_type == SubscriptionChangeType.CANCELLATION.value
        assert gateway.called("cancel_subscription")[0][1] == ("sub_1",)

        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.cancel_at_period_end is True
        assert subscription.cancel_reason == "moving"
        assert session.get(Box, box.id).subscription_ends_at == subscription.current_period_end
        assert notification_client.types() == ["subscription_canceled"]

    def test_cancel_twice_at_period_end_is_rejected(self, services, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan())
        services.lifecycle.cancel(box.id)
        services.commit()

        with pytest.raises(InvalidStateError):
            services.lifecycle.cancel(box.id)

    def test_immediate_cancel(self, services, session, make_box, make_plan, make_subscription, gateway):
        box = make_box()
        subscription = make_subscription(box, make_plan(), external_subscription_id="sub_1")

        result = services.lifecycle.cancel(box.id, cancel_at_period_end=False, reason="closing")
        services.commit()

        assert result.immediate is True
        assert gateway.called("revoke_subscription")
        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.canceled_at is not None

        grace_period = session.exec(select(GracePeriod).where(GracePeriod.box_id == box.id)).one()
        assert grace_period.reason == GracePeriodReason.SUBSCRIPTION_CANCELED.value
        assert grace_period.severity == GracePeriodSeverity.BLOCKING.value
        assert session.get(Box, box.id).status == BoxStatus.SUSPENDED.value

    def test_gateway_failure_leaves_local_state(self, services, session, make_box, make_plan, make_subscription, gateway):
        box = make_box()
        subscription = make_subscription(box, make_plan(), external_subscription_id="sub_1")
        gateway.fail_with = ExternalServiceError("Payment provider timed out")

        with pytest.raises(ExternalServiceError):
            services.lifecycle.cancel(box.id)
        services.rollback()

        session.refresh(subscription)
        assert subscription.cancel_at_period_end is False
        assert session.exec(select(SubscriptionChange)).all() == []

    def test_cancel_without_subscription(self, services, make_box):
        box = make_box()

        with pytest.raises(NotFoundError):
            services.lifecycle.cancel(box.id)

    def test_finalize_due_period_end_cancellations(self, services, session, make_box, make_plan, make_subscription, clock):
        box = make_box()
        subscription = make_subscription(box, make_plan())
        services.lifecycle.cancel(box.id)
        services.commit()

        assert services.lifecycle.finalize_period_end_cancellations() == []

        clock.advance(days=11)
        results = services.lifecycle.finalize_period_end_cancellations()
        services.commit()

        assert len(results) == 1
        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.cancel_at_period_end is False
        assert session.get(Box, box.id).status == BoxStatus.SUSPENDED.value


class TestReactivation:
    """Undoing a cancellation."""

    def test_reactivate_after_immediate_cancel(
        self, services, session, make_box, make_plan, make_subscription, notification_client
    ):
        box = make_box()
        subscription = make_subscription(box, make_plan())
        services.lifecycle.cancel(box.id, cancel_at_period_end=False)
        services.commit()

        result = services.lifecycle.reactivate(box.id, actor="owner-1")
        services.commit()

        assert result.resolved_grace_periods == 1
        assert result.change.change_type == SubscriptionChangeType.REACTIVATION.value
        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.canceled_at is None
        assert session.get(Box, box.id).status == BoxStatus.ACTIVE.value
        assert not services.grace_periods.has_open(box.id, GracePeriodReason.SUBSCRIPTION_CANCELED.value)
        assert "subscription_reactivated" in notification_client.types()

    def test_reactivate_pending_cancellation(self, services, session, make_box, make_plan, make_subscription, gateway):
        box = make_box()
        subscription = make_subscription(box, make_plan(), external_subscription_id="sub_1")
        services.lifecycle.cancel(box.id)
        services.commit()

        result = services.lifecycle.reactivate(box.id)
        services.commit()

        assert result.resolved_grace_periods == 0
        session.refresh(subscription)
        assert subscription.cancel_at_period_end is False
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert session.get(Box, box.id).subscription_ends_at is None
        assert gateway.called("update_subscription")[0][2]["cancel_at_period_end"] is False

    def test_each_reactivation_is_notified_once(self, services, make_box, make_plan, make_subscription, notification_client):
        box = make_box()
        make_subscription(box, make_plan())
        changes = []

        for _ in range(2):
            services.lifecycle.cancel(box.id)
            services.commit()
            result = services.lifecycle.reactivate(box.id)
            services.commit()
            changes.append(result.change.id)

        sent = [p for p in notification_client.sent if p.type == "subscription_reactivated"]
        assert [p.deduplication_key for p in sent] == [f"subscription_reactivated_{box.id}_{change_id}" for change_id in changes]
        assert [p.data["change_id"] for p in sent] == changes

    def test_reactivate_uncanceled_subscription_is_rejected(self, services, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan())

        with pytest.raises(InvalidStateError):
            services.lifecycle.reactivate(box.id)

    def test_reactivate_without_subscription(self, services, make_box):
        box = make_box()

        with pytest.raises(NotFoundError):
            services.lifecycle.reactivate(box.id)


class TestTrialAndCheckout:
    """Trial expiry and starting a checkout."""

    def test_expire_trial(self, services, session, make_box, make_plan, make_subscription):
        box = make_box()
        subscription = make_subscription(box, make_plan(), status=SubscriptionStatus.TRIAL.value)

        result = services.lifecycle.expire_trial(box.id)
        services.commit()

        assert result.box_status == BoxStatus.TRIAL_EXPIRED.value
        session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.INCOMPLETE.value
        assert session.get(Box, box.id).status == BoxStatus.TRIAL_EXPIRED.value

    def test_expire_trial_ignores_paid_subscription(self, services, make_box, make_plan, make_subscription):
        box = make_box()
        make_subscription(box, make_plan())

        result = services.lifecycle.expire_trial(box.id)

        assert result.outcome == TransitionOutcome.NO_ACTIVE_SUBSCRIPTION

    def test_start_checkout(self, services, session, make_box, make_plan, gateway):
        box = make_box()
        plan = make_plan()

        checkout = services.lifecycle.start_checkout(box.id, plan.id, "month", actor="owner-1")
        services.commit()

        assert checkout.external_session_id == "cs_test_1"
        assert checkout.url.endswith("cs_test_1")
        assert checkout.created_by == "owner-1"
        assert session.get(Box, box.id).external_customer_id == f"cus_{box.id}"
        assert gateway.called("create_checkout_session")[0][1] == (box.id, plan.id, "month")

    def test_checkout_for_inactive_plan(self, services, make_box, make_plan):
        box = make_box()
        plan = make_plan(is_active=False)

        with pytest.raises(NotFoundError):
            services.lifecycle.start_checkout(box.id, plan.id, "month")

    def test_history_is_newest_first(self, services, make_box, make_plan, make_subscription, clock):
        box = make_box()
        make_subscription(box, make_plan())
        services.lifecycle.transition(box.id, SubscriptionStatus.PAST_DUE.value)
        clock.advance(hours=1)
        services.lifecycle.transition(box.id, SubscriptionStatus.ACTIVE.value)
        services.commit()

        history = services.lifecycle.history(box.id)
        assert [c.to_status for c in history] == [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
        assert history[0].created_at - history[1].created_at == timedelta(hours=1)
