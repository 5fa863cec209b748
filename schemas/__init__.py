from .billing_schema import (
    EventMetadata, InboundEvent, UsageEventInput,
    LimitExceededContext, PaymentFailedContext, CancellationContext, TrialEndingContext,
    BillingIssueContext, GracePeriodContext, parse_grace_context,
    CancelSubscriptionRequest, PlanChangeCreate, PlanChangeCancel, OverageToggle, CheckoutCreate,
    GracePeriodRead, SubscriptionRead, PlanChangeRequestRead, CheckoutSessionRead,
    IngestStatus, IngestResult, RouteOutcome, RetryResult,
    TransitionOutcome, TransitionResult, GracePeriodOpenResult,
    UsageSnapshot, LimitCheckResult,
    OverageCalculation, OverageBillingResult, OverageBatchSummary, OverageOrderResult,
    CancellationResult, ReactivationResult, ProrationQuote, PlanChangeResult,
)

__all__ = [
    # Inbound events
    "EventMetadata", "InboundEvent", "UsageEventInput",

    # Grace period context
    "LimitExceededContext", "PaymentFailedContext", "CancellationContext", "TrialEndingContext",
    "BillingIssueContext", "GracePeriodContext", "parse_grace_context",

    # Requests
    "CancelSubscriptionRequest", "PlanChangeCreate", "PlanChangeCancel", "OverageToggle", "CheckoutCreate",

    # Read models
    "GracePeriodRead", "SubscriptionRead", "PlanChangeRequestRead", "CheckoutSessionRead",

    # Results
    "IngestStatus", "IngestResult", "RouteOutcome", "RetryResult",
    "TransitionOutcome", "TransitionResult", "GracePeriodOpenResult",
    "UsageSnapshot", "LimitCheckResult",
    "OverageCalculation", "OverageBillingResult", "OverageBatchSummary", "OverageOrderResult",
    "CancellationResult", "ReactivationResult", "ProrationQuote", "PlanChangeResult",
]
