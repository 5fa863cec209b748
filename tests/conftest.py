"""
Shared fixtures for the billing tests.

Every test gets its own in-memory SQLite database, a fake payment gateway,
a recording notification client and a clock it can move.
"""

import json
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlmodel import Session

# The global settings object is built on import and requires a signing key
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from core.config import Settings
from core.database import create_db_and_tables, make_engine
from core.errors import InvalidWebhookError
from models.models import (
    Box,
    BoxMembership,
    MemberRole,
    PlanTier,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from services.container import BillingServices


class FakeGateway:
    """In-memory stand-in for the payment gateway."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self._counter = 0

    def _record(self, name: str, *args, **kwargs) -> None:
        self.calls.append((name, args, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def create_checkout_session(self, box, plan, interval, success_url, cancel_url):
        self._record("create_checkout_session", box.id, plan.id, interval)
        self._counter += 1
        session_id = f"cs_test_{self._counter}"
        return {"id": session_id, "url": f"https://checkout.test/{session_id}"}

    def sync_customer(self, box):
        self._record("sync_customer", box.id)
        return box.external_customer_id or f"cus_{box.id}"

    def update_subscription(self, external_subscription_id, price_id=None, cancel_at_period_end=None, prorate=True):
        self._record(
            "update_subscription",
            external_subscription_id,
            price_id=price_id,
            cancel_at_period_end=cancel_at_period_end,
            prorate=prorate,
        )
        return {"id": external_subscription_id, "status": "active"}

    def cancel_subscription(self, external_subscription_id):
        self._record("cancel_subscription", external_subscription_id)
        return {"id": external_subscription_id, "status": "active"}

    def revoke_subscription(self, external_subscription_id):
        self._record("revoke_subscription", external_subscription_id)
        return {"id": external_subscription_id, "status": "canceled"}

    def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id)
        return {"id": invoice_id, "status": "paid"}

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise InvalidWebhookError("Invalid signature")
        return json.loads(payload)


class RecordingNotificationClient:
    """Keeps every delivered notification; can be told to fail."""

    def __init__(self):
        self.sent: List[Any] = []
        self.fail = False

    def create_notification(self, payload):
        if self.fail:
            raise RuntimeError("notification service unavailable")
        self.sent.append(payload)
        return True

    def types(self) -> List[str]:
        return [payload.type for payload in self.sent]


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    test_engine = make_engine("sqlite://")
    create_db_and_tables(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as db_session:
        yield db_session


@pytest.fixture
def settings():
    return Settings(
        SECRET_KEY="test-secret-key",
        BATCH_DELAY_SECONDS=0,
        BATCH_SIZE=1,
        STRIPE_WEBHOOK_SECRET="whsec_test",
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 15, 12, 0, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notification_client():
    return RecordingNotificationClient()


@pytest.fixture
def services(session, gateway, notification_client, settings, clock):
    return BillingServices(
        session,
        gateway=gateway,
        notification_client=notification_client,
        settings=settings,
        clock=clock,
    )


# ============================================================
# Factories
# ============================================================
@pytest.fixture
def make_plan(session):
    def _make_plan(
        tier: str = PlanTier.SEED.value,
        athlete_limit: int = 75,
        coach_limit: int = 3,
        monthly_price: int = 3000,
        athlete_overage_price: int = 100,
        coach_overage_price: int = 100,
        **overrides,
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            name=overrides.pop("name", tier.title()),
            tier=tier,
            athlete_limit=athlete_limit,
            coach_limit=coach_limit,
            monthly_price=monthly_price,
            annual_price=monthly_price * 10,
            athlete_overage_price=athlete_overage_price,
            coach_overage_price=coach_overage_price,
            external_monthly_price_id=overrides.pop("external_monthly_price_id", f"price_{tier}_monthly"),
            external_annual_price_id=overrides.pop("external_annual_price_id", f"price_{tier}_annual"),
            **overrides,
        )
        session.add(plan)
        session.commit()
        session.refresh(plan)
        return plan

    return _make_plan


@pytest.fixture
def make_box(session):
    def _make_box(
        name: str = "Test Box",
        overage: bool = False,
        athlete_limit: int = 75,
        coach_limit: int = 3,
        tier: str = PlanTier.SEED.value,
        **overrides,
    ) -> Box:
        box = Box(
            name=name,
            billing_email=overrides.pop("billing_email", "billing@testbox.com"),
            subscription_tier=tier,
            current_athlete_limit=athlete_limit,
            current_coach_limit=coach_limit,
            is_overage_enabled=overage,
            **overrides,
        )
        session.add(box)
        session.commit()
        session.refresh(box)
        session.add(
            BoxMembership(
                box_id=box.id,
                user_id=f"owner-{box.id}",
                email=f"owner{box.id}@testbox.com",
                role=MemberRole.OWNER.value,
            )
        )
        session.commit()
        return box

    return _make_box


@pytest.fixture
def add_members(session):
    def _add_members(box: Box, role: str, count: int, start: int = 0) -> List[BoxMembership]:
        members = [
            BoxMembership(
                box_id=box.id,
                user_id=f"{role}-{box.id}-{i}",
                email=f"{role}{i}@box{box.id}.com",
                role=role,
            )
            for i in range(start, start + count)
        ]
        session.add_all(members)
        session.commit()
        return members

    return _add_members


@pytest.fixture
def make_subscription(session, clock):
    def _make_subscription(
        box: Box,
        plan: Optional[SubscriptionPlan] = None,
        status: str = SubscriptionStatus.ACTIVE.value,
        days_used: int = 20,
        days_left: int = 10,
        **overrides,
    ) -> Subscription:
        subscription = Subscription(
            box_id=box.id,
            plan_id=plan.id if plan else None,
            plan_version=plan.version if plan else 1,
            status=status,
            amount=plan.monthly_price if plan else 0,
            current_period_start=clock.now - timedelta(days=days_used),
            current_period_end=clock.now + timedelta(days=days_left),
            created_at=clock.now - timedelta(days=days_used),
            **overrides,
        )
        session.add(subscription)
        box.subscription_status = status
        box.next_billing_date = subscription.current_period_end
        session.add(box)
        session.commit()
        session.refresh(subscription)
        return subscription

    return _make_subscription


def gateway_event(event_id: str, event_type: str, obj: Dict[str, Any], tenant_id: Optional[int] = None) -> Dict[str, Any]:
    """Raw webhook body in the gateway's shape."""
    body: Dict[str, Any] = {"id": event_id, "type": event_type, "data": {"object": obj}}
    if tenant_id is not None:
        body["metadata"] = {"tenant_id": str(tenant_id)}
    return body
