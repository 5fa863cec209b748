# billing_schema.py
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from models.models import (
    BillingInterval,
    GracePeriod,
    Order,
    OverageBilling,
    PlanChangeRequest,
    ProrationType,
    Subscription,
    SubscriptionChange,
)


# ---------------------------
# Inbound events
# ---------------------------
class EventMetadata(BaseModel):
    """Known keys are typed, anything else is preserved as-is."""

    tenant_id: Optional[str] = Field(default=None, alias="tenantId")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class InboundEvent(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=100)
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def object(self) -> Dict[str, Any]:
        """Gateway events wrap the resource in data.object; internal ones are flat."""
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else self.data


class UsageEventInput(BaseModel):
    event_type: str = Field(..., max_length=40)
    quantity: int = Field(default=1)
    is_billable: bool = False
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------
# Grace period context (tagged by kind)
# ---------------------------
class _ContextBase(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LimitExceededContext(_ContextBase):
    kind: Literal["limit_exceeded"] = "limit_exceeded"
    role: str
    count: int
    limit: int
    overage: int
    plan_tier: Optional[str] = None
    overage_enabled: bool = False


class PaymentFailedContext(_ContextBase):
    kind: Literal["payment_failed"] = "payment_failed"
    invoice_id: Optional[str] = None
    amount_due: int = 0
    attempt_count: int = 1


class CancellationContext(_ContextBase):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    subscription_id: Optional[int] = None
    reason: Optional[str] = None
    canceled_at: Optional[datetime] = None
    access_ends_at: Optional[datetime] = None


class TrialEndingContext(_ContextBase):
    kind: Literal["trial_ending"] = "trial_ending"
    subscription_id: Optional[int] = None
    trial_ended_at: Optional[datetime] = None


class BillingIssueContext(_ContextBase):
    kind: Literal["billing_issue"] = "billing_issue"
    note: Optional[str] = None


GracePeriodContext = Annotated[
    Union[
        LimitExceededContext,
        PaymentFailedContext,
        CancellationContext,
        TrialEndingContext,
        BillingIssueContext,
    ],
    Field(discriminator="kind"),
]

_grace_context_adapter = TypeAdapter(GracePeriodContext)


def parse_grace_context(raw: Optional[Dict[str, Any]]) -> Optional[GracePeriodContext]:
    """Rebuild the typed context stored on a grace period row."""
    if not raw or "kind" not in raw:
        return None
    return _grace_context_adapter.validate_python(raw)


# ---------------------------
# Request bodies
# ---------------------------
class CancelSubscriptionRequest(BaseModel):
    cancel_at_period_end: bool = True
    reason: Optional[str] = Field(default=None, max_length=500)


class PlanChangeCreate(BaseModel):
    to_plan_id: int
    proration_type: ProrationType = ProrationType.IMMEDIATE
    effective_date: Optional[datetime] = None


class PlanChangeCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class OverageToggle(BaseModel):
    enabled: bool


class CheckoutCreate(BaseModel):
    plan_id: int
    interval: BillingInterval = BillingInterval.MONTH


# ---------------------------
# Read models
# ---------------------------
class GracePeriodRead(BaseModel):
    id: int
    box_id: int
    reason: str
    severity: str
    started_at: datetime
    ends_at: datetime
    resolved: bool
    resolution: Optional[str]
    auto_resolved: bool
    context_snapshot: Optional[Dict[str, Any]]

    model_config = ConfigDict(from_attributes=True)


class SubscriptionRead(BaseModel):
    id: int
    box_id: int
    plan_id: Optional[int]
    status: str
    amount: int
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class PlanChangeRequestRead(BaseModel):
    id: int
    box_id: int
    subscription_id: int
    from_plan_id: Optional[int]
    to_plan_id: int
    change_type: str
    proration_type: str
    prorated_amount: int
    status: str
    requested_at: datetime
    approved_at: Optional[datetime]
    canceled_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class CheckoutSessionRead(BaseModel):
    checkout_url: Optional[str]
    session_id: str


# ---------------------------
# Service results
# ---------------------------
class IngestStatus(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"


@dataclass
class IngestResult:
    event_id: str
    status: IngestStatus
    handled: bool = False
    box_id: Optional[int] = None


@dataclass
class RouteOutcome:
    handled: bool
    box_id: Optional[int] = None


@dataclass
class RetryResult:
    event_id: str
    success: bool
    status: str
    error: Optional[str] = None


class TransitionOutcome(str, Enum):
    TRANSITIONED = "transitioned"
    UNCHANGED = "unchanged"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"


@dataclass
class TransitionResult:
    outcome: TransitionOutcome
    subscription: Optional[Subscription] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    box_status: Optional[str] = None


@dataclass
class GracePeriodOpenResult:
    grace_period: GracePeriod
    was_existing: bool


@dataclass
class UsageSnapshot:
    box_id: int
    plan_tier: Optional[str]
    athlete_count: int
    coach_count: int
    athlete_limit: int
    coach_limit: int
    athlete_percentage: int
    coach_percentage: int
    is_athlete_over_limit: bool
    is_coach_over_limit: bool
    athlete_overage: int
    coach_overage: int
    athlete_overage_rate: int
    coach_overage_rate: int
    estimated_overage_amount: int
    is_overage_enabled: bool

    @property
    def is_over_limit(self) -> bool:
        return self.is_athlete_over_limit or self.is_coach_over_limit


@dataclass
class LimitCheckResult:
    usage: UsageSnapshot
    grace_periods: List[GracePeriodOpenResult] = field(default_factory=list)
    notifications: List[str] = field(default_factory=list)
    resolved_count: int = 0


@dataclass(frozen=True)
class OverageCalculation:
    box_id: int
    subscription_id: int
    period_start: datetime
    period_end: datetime
    athlete_limit: int
    athlete_count: int
    athlete_overage: int
    athlete_overage_rate: int
    athlete_overage_amount: int
    coach_limit: int
    coach_count: int
    coach_overage: int
    coach_overage_rate: int
    coach_overage_amount: int
    total_overage_amount: int


@dataclass
class OverageBillingResult:
    box_id: int
    subscription_id: Optional[int]
    success: bool
    amount: int = 0
    billing_id: Optional[int] = None
    order_id: Optional[int] = None
    was_existing: bool = False
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class OverageBatchSummary:
    period_start: datetime
    period_end: datetime
    results: List[OverageBillingResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def total_amount(self) -> int:
        return sum(r.amount for r in self.results if r.success)


@dataclass
class CancellationResult:
    subscription: Subscription
    change: SubscriptionChange
    immediate: bool
    effective_date: datetime


@dataclass
class ReactivationResult:
    subscription: Subscription
    change: SubscriptionChange
    resolved_grace_periods: int = 0


@dataclass(frozen=True)
class ProrationQuote:
    total_days: int
    remaining_days: int
    current_daily_rate: Decimal
    new_daily_rate: Decimal
    prorated_amount: int


@dataclass
class PlanChangeResult:
    request: PlanChangeRequest
    change: SubscriptionChange
    subscription: Subscription
    quote: ProrationQuote


@dataclass
class OverageOrderResult:
    billing: OverageBilling
    order: Order
    was_existing: bool
