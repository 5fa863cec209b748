# boxbilling/models.py
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import UniqueConstraint, Index, Column, JSON, text

from core.billing_utils import utcnow
from core.config import settings


# ============================================================
# ENUMS
# ============================================================
class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    PAUSED = "paused"
    CHURNED = "churned"


# Statuses that still represent the box's live subscription row
LIVE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.PAUSED.value,
)


class BoxStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TRIAL_EXPIRED = "trial_expired"
    OVER_LIMIT = "over_limit"
    PAYMENT_FAILED = "payment_failed"


class PlanTier(str, Enum):
    SEED = "seed"
    GROW = "grow"
    SCALE = "scale"


class MemberRole(str, Enum):
    OWNER = "owner"
    HEAD_COACH = "head_coach"
    COACH = "coach"
    ATHLETE = "athlete"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class BillingEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class GracePeriodReason(str, Enum):
    ATHLETE_LIMIT_EXCEEDED = "athlete_limit_exceeded"
    COACH_LIMIT_EXCEEDED = "coach_limit_exceeded"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    BILLING_ISSUE = "billing_issue"


LIMIT_GRACE_REASONS = (
    GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value,
    GracePeriodReason.COACH_LIMIT_EXCEEDED.value,
)


class GracePeriodSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKING = "blocking"


class UsageEventType(str, Enum):
    ATHLETE_ADDED = "athlete_added"
    ATHLETE_REMOVED = "athlete_removed"
    COACH_ADDED = "coach_added"
    COACH_REMOVED = "coach_removed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    PLAN_UPGRADED = "plan_upgraded"
    PLAN_DOWNGRADED = "plan_downgraded"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_EXPIRED = "trial_expired"
    OVERAGE_BILLED = "overage_billed"


class OverageBillingStatus(str, Enum):
    CALCULATED = "calculated"
    PAID = "paid"
    FAILED = "failed"


class OrderKind(str, Enum):
    SUBSCRIPTION = "subscription"
    OVERAGE = "overage"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class CheckoutStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PlanChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class ProrationType(str, Enum):
    IMMEDIATE = "immediate"
    NEXT_CYCLE = "next_cycle"
    NONE = "none"


class PlanChangeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELED = "canceled"


class SubscriptionChangeType(str, Enum):
    PLAN_CHANGE = "plan_change"
    CANCELLATION = "cancellation"
    REACTIVATION = "reactivation"
    STATUS_CHANGE = "status_change"


# ============================================================
# BOX (tenant)
# ============================================================
class Box(SQLModel, table=True):
    __tablename__ = "box"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    slug: Optional[str] = Field(default=None, max_length=50, unique=True, index=True)
    billing_email: Optional[str] = Field(default=None, max_length=255)

    # Mirror of the live subscription status + coarser tenant-visible status
    subscription_status: str = Field(default=SubscriptionStatus.TRIAL.value, max_length=20)
    status: str = Field(default=BoxStatus.ACTIVE.value, max_length=20, index=True)
    subscription_tier: str = Field(default=PlanTier.SEED.value, max_length=20)

    # Limits and cached usage (authoritative counts come from memberships)
    current_athlete_limit: int = Field(default_factory=lambda: settings.DEFAULT_ATHLETE_LIMIT)
    current_coach_limit: int = Field(default_factory=lambda: settings.DEFAULT_COACH_LIMIT)
    current_athlete_count: int = Field(default=0)
    current_coach_count: int = Field(default=0)
    current_athlete_overage: int = Field(default=0)
    current_coach_overage: int = Field(default=0)
    is_overage_enabled: bool = Field(default=False)

    trial_starts_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    subscription_started_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None

    external_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    external_subscription_id: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    memberships: List["BoxMembership"] = Relationship(back_populates="box")
    subscriptions: List["Subscription"] = Relationship(back_populates="box")


# ============================================================
# BOX MEMBERSHIP
# ============================================================
class BoxMembership(SQLModel, table=True):
    __tablename__ = "box_membership"
    __table_args__ = (UniqueConstraint("box_id", "user_id", name="uq_box_member"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    user_id: str = Field(max_length=64, index=True)
    email: Optional[str] = Field(default=None, max_length=255)
    full_name: Optional[str] = Field(default=None, max_length=100)
    role: str = Field(default=MemberRole.ATHLETE.value, max_length=20, index=True)
    is_active: bool = Field(default=True, index=True)
    joined_at: datetime = Field(default_factory=utcnow)
    left_at: Optional[datetime] = None

    box: Optional["Box"] = Relationship(back_populates="memberships")


# ============================================================
# SUBSCRIPTION PLAN (versioned per tier)
# ============================================================
class SubscriptionPlan(SQLModel, table=True):
    __tablename__ = "subscription_plan"
    __table_args__ = (
        UniqueConstraint("tier", "version", name="uq_plan_tier_version"),
        Index(
            "uq_plan_current_version",
            "tier",
            unique=True,
            sqlite_where=text("is_current_version = 1"),
            postgresql_where=text("is_current_version"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=50)
    tier: str = Field(max_length=20, index=True)
    version: int = Field(default=1)
    is_current_version: bool = Field(default=True)

    athlete_limit: int = Field(default=75)
    coach_limit: int = Field(default=3)

    # Prices are stored in cents
    monthly_price: int = Field(default=0)
    annual_price: int = Field(default=0)
    athlete_overage_price: int = Field(default=100)
    coach_overage_price: int = Field(default=100)
    currency: str = Field(default="USD", max_length=3)
    trial_days: int = Field(default=14)

    external_product_id: Optional[str] = Field(default=None, max_length=255, index=True)
    external_monthly_price_id: Optional[str] = Field(default=None, max_length=255, index=True)
    external_annual_price_id: Optional[str] = Field(default=None, max_length=255, index=True)

    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    subscriptions: List["Subscription"] = Relationship(back_populates="plan")


# ============================================================
# SUBSCRIPTION
# ============================================================
class Subscription(SQLModel, table=True):
    __tablename__ = "subscription"
    __table_args__ = (
        # At most one active subscription per box
        Index(
            "uq_subscription_one_active_per_box",
            "box_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    plan_id: Optional[int] = Field(default=None, foreign_key="subscription_plan.id", index=True)
    plan_version: int = Field(default=1)

    status: str = Field(default=SubscriptionStatus.TRIAL.value, max_length=20, index=True)
    interval: str = Field(default=BillingInterval.MONTH.value, max_length=10)
    currency: str = Field(default="USD", max_length=3)
    amount: int = Field(default=0)

    current_period_start: datetime = Field(default_factory=utcnow)
    current_period_end: datetime = Field(default_factory=utcnow)
    cancel_at_period_end: bool = Field(default=False)
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = Field(default=None, max_length=500)
    canceled_by: Optional[str] = Field(default=None, max_length=64)
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    external_subscription_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    external_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    last_synced_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    box: Optional["Box"] = Relationship(back_populates="subscriptions")
    plan: Optional["SubscriptionPlan"] = Relationship(back_populates="subscriptions")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES


# ============================================================
# BILLING EVENT LOG
# ============================================================
class BillingEvent(SQLModel, table=True):
    __tablename__ = "billing_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(unique=True, index=True, max_length=255)
    type: str = Field(max_length=100, index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    status: str = Field(default=BillingEventStatus.PENDING.value, max_length=20, index=True)
    processed: bool = Field(default=False)
    processed_at: Optional[datetime] = None
    handled: Optional[bool] = None

    # retry_count counts failed attempts, delivery_count counts deliveries
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    delivery_count: int = Field(default=1)
    last_attempt_at: Optional[datetime] = None
    error: Optional[str] = None
    stack_trace: Optional[str] = None

    box_id: Optional[int] = Field(default=None, foreign_key="box.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# GRACE PERIOD
# ============================================================
class GracePeriod(SQLModel, table=True):
    __tablename__ = "grace_period"
    __table_args__ = (
        # At most one unresolved grace period per (box, reason)
        Index(
            "uq_grace_period_open_reason",
            "box_id",
            "reason",
            unique=True,
            sqlite_where=text("resolved = 0"),
            postgresql_where=text("NOT resolved"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    reason: str = Field(max_length=40, index=True)
    severity: str = Field(default=GracePeriodSeverity.WARNING.value, max_length=20)
    started_at: datetime = Field(default_factory=utcnow)
    ends_at: datetime = Field(default_factory=utcnow, index=True)

    resolved: bool = Field(default=False, index=True)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = Field(default=None, max_length=255)
    resolved_by: Optional[str] = Field(default=None, max_length=64)
    auto_resolved: bool = Field(default=False)
    auto_resolve: bool = Field(default=True)

    custom_message: Optional[str] = Field(default=None, max_length=500)
    context_snapshot: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# USAGE EVENT (append-only)
# ============================================================
class UsageEvent(SQLModel, table=True):
    __tablename__ = "usage_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    event_type: str = Field(max_length=40, index=True)
    quantity: int = Field(default=1)
    is_billable: bool = Field(default=False)
    billing_period_start: datetime
    billing_period_end: datetime
    user_id: Optional[str] = Field(default=None, max_length=64)
    entity_id: Optional[str] = Field(default=None, max_length=64)
    entity_type: Optional[str] = Field(default=None, max_length=40)
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)


# ============================================================
# OVERAGE BILLING
# ============================================================
class OverageBilling(SQLModel, table=True):
    __tablename__ = "overage_billing"
    __table_args__ = (
        UniqueConstraint("box_id", "billing_period_start", "billing_period_end", name="uq_overage_box_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    billing_period_start: datetime
    billing_period_end: datetime

    athlete_limit: int = Field(default=0)
    athlete_count: int = Field(default=0)
    athlete_overage: int = Field(default=0)
    athlete_overage_rate: int = Field(default=0)
    athlete_overage_amount: int = Field(default=0)

    coach_limit: int = Field(default=0)
    coach_count: int = Field(default=0)
    coach_overage: int = Field(default=0)
    coach_overage_rate: int = Field(default=0)
    coach_overage_amount: int = Field(default=0)

    total_overage_amount: int = Field(default=0)
    currency: str = Field(default="USD", max_length=3)
    status: str = Field(default=OverageBillingStatus.CALCULATED.value, max_length=20, index=True)
    order_id: Optional[int] = Field(default=None, foreign_key="billing_order.id")
    calculated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = Field(default=None, max_length=500)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# ORDER (payable charge)
# ============================================================
class Order(SQLModel, table=True):
    __tablename__ = "billing_order"

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    subscription_id: Optional[int] = Field(default=None, foreign_key="subscription.id", index=True)
    external_order_id: str = Field(unique=True, index=True, max_length=255)
    kind: str = Field(default=OrderKind.SUBSCRIPTION.value, max_length=20)
    status: str = Field(default=OrderStatus.PENDING.value, max_length=20)
    amount: int = Field(default=0)
    currency: str = Field(default="USD", max_length=3)
    billing_reason: Optional[str] = Field(default=None, max_length=100)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# CHECKOUT SESSION
# ============================================================
class CheckoutSession(SQLModel, table=True):
    __tablename__ = "checkout_session"

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    plan_id: int = Field(foreign_key="subscription_plan.id")
    interval: str = Field(default=BillingInterval.MONTH.value, max_length=10)
    external_session_id: str = Field(unique=True, index=True, max_length=255)
    url: Optional[str] = None
    status: str = Field(default=CheckoutStatus.OPEN.value, max_length=20)
    created_by: Optional[str] = Field(default=None, max_length=64)
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# PLAN CHANGE REQUEST
# ============================================================
class PlanChangeRequest(SQLModel, table=True):
    __tablename__ = "plan_change_request"

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    from_plan_id: Optional[int] = Field(default=None, foreign_key="subscription_plan.id")
    to_plan_id: int = Field(foreign_key="subscription_plan.id")
    change_type: str = Field(max_length=20)
    proration_type: str = Field(default=ProrationType.IMMEDIATE.value, max_length=20)
    prorated_amount: int = Field(default=0)
    status: str = Field(default=PlanChangeStatus.PENDING.value, max_length=20, index=True)

    requested_at: datetime = Field(default_factory=utcnow)
    requested_by: Optional[str] = Field(default=None, max_length=64)
    effective_date: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = Field(default=None, max_length=64)
    canceled_at: Optional[datetime] = None
    canceled_by: Optional[str] = Field(default=None, max_length=64)
    canceled_reason: Optional[str] = Field(default=None, max_length=500)
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# SUBSCRIPTION CHANGE (immutable audit)
# ============================================================
class SubscriptionChange(SQLModel, table=True):
    __tablename__ = "subscription_change"

    id: Optional[int] = Field(default=None, primary_key=True)
    box_id: int = Field(foreign_key="box.id", index=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    change_type: str = Field(max_length=20)
    from_plan_id: Optional[int] = None
    to_plan_id: Optional[int] = None
    from_status: Optional[str] = Field(default=None, max_length=20)
    to_status: Optional[str] = Field(default=None, max_length=20)
    effective_date: datetime = Field(default_factory=utcnow)
    prorated_amount: int = Field(default=0)
    proration_type: Optional[str] = Field(default=None, max_length=20)
    reason: Optional[str] = Field(default=None, max_length=500)
    changed_by: Optional[str] = Field(default=None, max_length=64)
    plan_change_request_id: Optional[int] = Field(default=None, foreign_key="plan_change_request.id")
    created_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "SubscriptionStatus", "LIVE_SUBSCRIPTION_STATUSES", "BoxStatus", "PlanTier", "MemberRole",
    "BillingInterval", "BillingEventStatus", "GracePeriodReason", "LIMIT_GRACE_REASONS",
    "GracePeriodSeverity", "UsageEventType", "OverageBillingStatus", "OrderKind", "OrderStatus",
    "CheckoutStatus", "PlanChangeType", "ProrationType", "PlanChangeStatus", "SubscriptionChangeType",
    "Box", "BoxMembership", "SubscriptionPlan", "Subscription", "BillingEvent", "GracePeriod",
    "UsageEvent", "OverageBilling", "Order", "CheckoutSession", "PlanChangeRequest",
    "SubscriptionChange",
]
