"""
Unit tests for proration and the plan change workflow.

Tests proration arithmetic, request validation, approval side effects and
the all-or-nothing application of an approved change.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlmodel import select

from core.errors import InvalidStateError, NotFoundError
from models.models import (
    Box,
    GracePeriodReason,
    MemberRole,
    PlanChangeRequest,
    PlanChangeStatus,
    PlanChangeType,
    ProrationType,
    SubscriptionChange,
    SubscriptionChangeType,
)
from services.plan_changes import ProrationEngine, classify_change


NOW = datetime(2024, 3, 15, 12, 0, 0)


class TestProration:
    """Prorated amounts for mid-period plan changes."""

    def test_upgrade_mid_period(self):
        quote = ProrationEngine().quote(3000, 6000, NOW - timedelta(days=20), NOW + timedelta(days=10), NOW)

        assert quote.total_days == 30
        assert quote.remaining_days == 10
        assert quote.current_daily_rate == Decimal(100)
        assert quote.new_daily_rate == Decimal(200)
        assert quote.prorated_amount == 1000

    def test_downgrade_is_a_credit(self):
        quote = ProrationEngine().quote(6000, 3000, NOW - timedelta(days=20), NOW + timedelta(days=10), NOW)

        assert quote.prorated_amount == -1000

    def test_next_cycle_charges_nothing(self):
        quote = ProrationEngine().quote(
            3000, 6000, NOW - timedelta(days=20), NOW + timedelta(days=10), NOW, ProrationType.NEXT_CYCLE.value
        )

        assert quote.remaining_days == 10
        assert quote.prorated_amount == 0

    def test_partial_day_counts_as_whole_day(self):
        quote = ProrationEngine().quote(
            3000, 6000, NOW - timedelta(days=20), NOW + timedelta(days=9, hours=12), NOW
        )

        assert quote.total_days == 30
        assert quote.remaining_days == 10

    def test_rounds_half_up_to_cents(self):
        quote = ProrationEngine().quote(0, 5, NOW - timedelta(days=9), NOW + timedelta(days=1), NOW)

        assert quote.prorated_amount == 1

    def test_zero_length_period(self):
        quote = ProrationEngine().quote(3000, 6000, NOW, NOW, NOW)

        assert quote.total_days == 0
        assert quote.prorated_amount == 0

    def test_past_period_end_has_no_remaining_days(self):
        quote = ProrationEngine().quote(3000, 6000, NOW - timedelta(days=30), NOW - timedelta(days=1), NOW)

        assert quote.remaining_days == 0
        assert quote.prorated_amount == 0

    def test_classify_change(self):
        assert classify_change(3000, 6000) == PlanChangeType.UPGRADE.value
        assert classify_change(6000, 3000) == PlanChangeType.DOWNGRADE.value
        assert classify_change(3000, 3000) == PlanChangeType.LATERAL.value


@pytest.fixture
def plans(make_plan):
    seed = make_plan()
    grow = make_plan(tier="grow", athlete_limit=150, coach_limit=6, monthly_price=6000)
    return seed, grow


class TestRequestChange:
    """Creating plan change requests."""

    def test_upgrade_request(self, services, plans, make_box, make_subscription, clock):
        seed, grow = plans
        box = make_box()
        subscription = make_subscription(box, seed)

        request = services.plan_changes.request_change(box.id, grow.id, actor="owner-1")
        services.commit()

        assert request.status == PlanChangeStatus.PENDING.value
        assert request.change_type == PlanChangeType.UPGRADE.value
        assert request.subscription_id == subscription.id
        assert request.from_plan_id == seed.id
        assert request.requested_at == clock.now
        assert services.plan_changes.pending_for_box(box.id)[0].id == request.id

    def test_same_plan_is_rejected(self, services, plans, make_box, make_subscription):
        seed, _ = plans
        box = make_box()
        make_subscription(box, seed)

        with pytest.raises(InvalidStateError):
            services.plan_changes.request_change(box.id, seed.id)

    def test_second_pending_request_is_rejected(self, services, plans, make_box, make_subscription):
        seed, grow = plans
        box = make_box()
        make_subscription(box, seed)
        services.plan_changes.request_change(box.id, grow.id)

        with pytest.raises(InvalidStateError):
            services.plan_changes.request_change(box.id, grow.id)

    def test_box_without_subscription(self, services, plans, make_box):
        _, grow = plans
        box = make_box()

        with pytest.raises(NotFoundError):
            services.plan_changes.request_change(box.id, grow.id)

    def test_inactive_plan(self, services, plans, make_box, make_subscription, make_plan):
        seed, _ = plans
        box = make_box()
        make_subscription(box, seed)
        retired = make_plan(tier="scale", monthly_price=9000, is_active=False)

        with pytest.raises(NotFoundError):
            services.plan_changes.request_change(box.id, retired.id)


class TestProcessRequest:
    """Approving a request applies the new plan."""

    def test_approved_upgrade(
        self, services, session, plans, make_box, make_subscription, gateway, notification_client
    ):
        seed, grow = plans
        box = make_box()
        subscription = make_subscription(box, seed, external_subscription_id="sub_1")
        request = services.plan_changes.request_change(box.id, grow.id)

        result = services.plan_changes.process_request(request.id, approver="owner-1")
        services.commit()

        assert result.quote.prorated_amount == 1000
        assert result.request.status == PlanChangeStatus.APPROVED.value
        assert result.request.prorated_amount == 1000
        assert result.request.approved_by == "owner-1"

        session.refresh(subscription)
        assert subscription.plan_id == grow.id
        assert subscription.amount == 6000

        box = session.get(Box, box.id)
        assert box.subscription_tier == "grow"
        assert box.current_athlete_limit == 150
        assert box.current_coach_limit == 6

        change = session.exec(select(SubscriptionChange)).one()
        assert change.change_type == SubscriptionChangeType.PLAN_CHANGE.value
        assert change.plan_change_request_id == request.id
        assert change.prorated_amount == 1000
        assert services.plan_changes.change_history(box.id)[0].id == change.id

        kwargs = gateway.called("update_subscription")[0][2]
        assert kwargs["price_id"] == "price_grow_monthly"
        assert kwargs["prorate"] is True
        assert notification_client.types() == ["plan_change_confirmed"]

    def test_upgrade_resolves_limit_grace_period(
        self, services, plans, make_box, make_subscription, add_members
    ):
        seed, grow = plans
        box = make_box()
        make_subscription(box, seed)
        add_members(box, MemberRole.ATHLETE.value, 80)
        services.grace_periods.open(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value)
        request = services.plan_changes.request_change(box.id, grow.id)

        services.plan_changes.process_request(request.id)
        services.commit()

        assert not services.grace_periods.has_open(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value)

    def test_downgrade_over_new_limit_opens_grace_period(
        self, services, plans, make_box, make_subscription, add_members
    ):
        seed, grow = plans
        box = make_box(tier="grow", athlete_limit=150, coach_limit=6)
        make_subscription(box, grow)
        add_members(box, MemberRole.ATHLETE.value, 80)
        request = services.plan_changes.request_change(box.id, seed.id)

        result = services.plan_changes.process_request(request.id)
        services.commit()

        assert result.quote.prorated_amount == -1000
        assert services.grace_periods.has_open(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value)

    def test_next_cycle_change_takes_effect_at_period_end(self, services, session, plans, make_box, make_subscription):
        seed, grow = plans
        box = make_box()
        subscription = make_subscription(box, seed)
        request = services.plan_changes.request_change(box.id, grow.id, proration_type=ProrationType.NEXT_CYCLE.value)

        result = services.plan_changes.process_request(request.id)
        services.commit()

        assert result.quote.prorated_amount == 0
        assert result.change.effective_date == subscription.current_period_end

    def test_processing_twice_is_rejected(self, services, plans, make_box, make_subscription):
        seed, grow = plans
        box = make_box()
        make_subscription(box, seed)
        request = services.plan_changes.request_change(box.id, grow.id)
        services.plan_changes.process_request(request.id)
        services.commit()

        with pytest.raises(InvalidStateError):
            services.plan_changes.process_request(request.id)

    def test_failure_applies_nothing(self, services, session, plans, make_box, make_subscription, monkeypatch):
        seed, grow = plans
        box = make_box()
        subscription = make_subscription(box, seed)
        request = services.plan_changes.request_change(box.id, grow.id)
        services.commit()

        def broken_record(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(services.usage, "record", broken_record)
        with pytest.raises(RuntimeError):
            services.plan_changes.process_request(request.id)
        services.commit()

        session.refresh(request)
        session.refresh(subscription)
        assert request.status == PlanChangeStatus.PENDING.value
        assert subscription.plan_id == seed.id
        assert session.get(Box, box.id).subscription_tier == "seed"
        assert session.exec(select(SubscriptionChange)).all() == []
        assert services.notifier.pending == []

    def test_request_claimed_elsewhere_is_rejected(self, services, session, plans, make_box, make_subscription):
        seed, grow = plans
        box = make_box()
        subscription = make_subscription(box, seed)
        request = services.plan_changes.request_change(box.id, grow.id)
        services.commit()
        request_id = request.id
        assert request.status == PlanChangeStatus.PENDING.value

        # Another approver cancels the request behind this session's back
        session.connection().execute(
            update(PlanChangeRequest)
            .where(PlanChangeRequest.id == request_id)
            .values(status=PlanChangeStatus.CANCELED.value)
        )

        with pytest.raises(InvalidStateError):
            services.plan_changes.process_request(request_id)
        services.rollback()

        session.refresh(subscription)
        assert subscription.plan_id == seed.id


class TestCancelRequest:
    """Withdrawing a pending request."""

    def test_cancel_pending_request(self, services, plans, make_box, make_subscription, clock):
        seed, grow = plans
        box = make_box()
        make_subscription(box, seed)
        request = services.plan_changes.request_change(box.id, grow.id)

        canceled = services.plan_changes.cancel_request(request.id, actor="owner-1", reason="changed my mind")
        services.commit()

        assert canceled.status == PlanChangeStatus.CANCELED.value
        assert canceled.canceled_at == clock.now
        assert canceled.canceled_by == "owner-1"
        assert canceled.canceled_reason == "changed my mind"
        assert services.plan_changes.pending_for_box(box.id) == []

    def test_cancel_approved_request_is_rejected(self, services, plans, make_box, make_subscription):
        seed, grow = plans
        box = make_box()
        make_subscription(box, seed)
        request = services.plan_changes.request_change(box.id, grow.id)
        services.plan_changes.process_request(request.id)

        with pytest.raises(InvalidStateError):
            services.plan_changes.cancel_request(request.id)

    def test_cancel_missing_request(self, services):
        with pytest.raises(NotFoundError):
            services.plan_changes.cancel_request(321)
