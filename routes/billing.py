# routes/billing.py
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
import logging

from core.errors import BillingError, InvalidWebhookError
from core.security import Actor, get_current_actor, require_box_owner
from models.models import Box, PlanChangeRequest
from schemas.billing_schema import (
    CancelSubscriptionRequest,
    CheckoutCreate,
    CheckoutSessionRead,
    GracePeriodRead,
    InboundEvent,
    OverageToggle,
    PlanChangeCancel,
    PlanChangeCreate,
    PlanChangeRequestRead,
    SubscriptionRead,
)
from services.container import BillingServices, get_billing_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


# -------------------------
# Helper Functions
# -------------------------
def _fail(services: BillingServices, error: BillingError) -> HTTPException:
    """Roll back the unit of work and turn a billing error into an HTTP error."""
    services.rollback()
    logger.warning(f"⚠️ Billing request rejected: {error.code} {error.message}")
    return HTTPException(status_code=error.status_code, detail=error.message)


def _owned_box(box_id: int, actor: Actor, services: BillingServices) -> Box:
    require_box_owner(box_id, actor)
    box = services.session.get(Box, box_id)
    if not box:
        raise HTTPException(status_code=404, detail="Box not found")
    return box


def _owned_request(request_id: int, actor: Actor, services: BillingServices) -> PlanChangeRequest:
    request = services.session.get(PlanChangeRequest, request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Plan change request not found")
    require_box_owner(request.box_id, actor)
    return request


# -------------------------
# Webhook
# -------------------------
@router.post("/webhook")
async def gateway_webhook(request: Request, services: BillingServices = Depends(get_billing_services)):
    """Verify and ingest a payment gateway event."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        raw = services.gateway.construct_event(payload, signature)
        event = InboundEvent(
            id=raw.get("id", ""),
            type=raw.get("type", ""),
            data=raw.get("data") or {},
            metadata=raw.get("metadata") or {},
        )
    except InvalidWebhookError as e:
        logger.warning(f"❌ Webhook rejected: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})
    except ValueError as e:
        logger.warning(f"❌ Webhook payload invalid: {e}")
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    try:
        result = services.events.ingest(event)
        services.commit()
    except Exception as e:
        # Keep the failed event row so it can be retried
        services.commit()
        logger.error(f"❌ Error processing webhook event {event.type}: {e}")
        return JSONResponse(status_code=500, content={"error": f"Error processing event: {str(e)}"})

    return JSONResponse(
        status_code=200,
        content={"status": result.status.value, "event": event.type, "handled": result.handled},
    )


# -------------------------
# Checkout / cancel / reactivate
# -------------------------
@router.post("/boxes/{box_id}/checkout", response_model=CheckoutSessionRead)
def create_checkout(
    box_id: int,
    body: CheckoutCreate,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
):
    _owned_box(box_id, actor, services)
    try:
        checkout = services.lifecycle.start_checkout(box_id, body.plan_id, body.interval.value, actor=actor.user_id)
        response = CheckoutSessionRead(checkout_url=checkout.url, session_id=checkout.external_session_id)
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return response


@router.post("/boxes/{box_id}/cancel")
def cancel_subscription(
    box_id: int,
    body: Optional[CancelSubscriptionRequest] = None,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
) -> Dict[str, Any]:
    _owned_box(box_id, actor, services)
    body = body or CancelSubscriptionRequest()
    try:
        result = services.lifecycle.cancel(
            box_id, cancel_at_period_end=body.cancel_at_period_end, reason=body.reason, actor=actor.user_id
        )
        response = {
            "subscription": SubscriptionRead.model_validate(result.subscription).model_dump(mode="json"),
            "immediate": result.immediate,
            "effective_date": result.effective_date.isoformat(),
        }
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return response


@router.post("/boxes/{box_id}/reactivate")
def reactivate_subscription(
    box_id: int,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
) -> Dict[str, Any]:
    _owned_box(box_id, actor, services)
    try:
        result = services.lifecycle.reactivate(box_id, actor=actor.user_id)
        response = {
            "subscription": SubscriptionRead.model_validate(result.subscription).model_dump(mode="json"),
            "resolved_grace_periods": result.resolved_grace_periods,
        }
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return response


# -------------------------
# Usage / grace periods / overage
# -------------------------
@router.get("/boxes/{box_id}/usage")
def get_usage(
    box_id: int,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
) -> Dict[str, Any]:
    _owned_box(box_id, actor, services)
    try:
        usage = services.usage.compute_usage(box_id)
        current_overage = services.overage.current_month_overage(box_id)
    except BillingError as e:
        raise _fail(services, e)
    return {
        **asdict(usage),
        "is_over_limit": usage.is_over_limit,
        "current_month_overage": current_overage.total_overage_amount if current_overage else 0,
    }


@router.get("/boxes/{box_id}/grace-periods", response_model=List[GracePeriodRead])
def list_grace_periods(
    box_id: int,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
):
    _owned_box(box_id, actor, services)
    return [GracePeriodRead.model_validate(gp) for gp in services.grace_periods.active_for_box(box_id)]


@router.post("/boxes/{box_id}/overage")
def toggle_overage(
    box_id: int,
    body: OverageToggle,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
) -> Dict[str, Any]:
    _owned_box(box_id, actor, services)
    try:
        resolved = 0
        if body.enabled:
            resolved = services.overage.enable_overage_billing(box_id, actor=actor.user_id)
        else:
            services.overage.disable_overage_billing(box_id)
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return {"box_id": box_id, "is_overage_enabled": body.enabled, "resolved_grace_periods": resolved}


# -------------------------
# Plan changes
# -------------------------
@router.post(
    "/boxes/{box_id}/plan-changes",
    response_model=PlanChangeRequestRead,
    status_code=status.HTTP_201_CREATED,
)
def request_plan_change(
    box_id: int,
    body: PlanChangeCreate,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
):
    _owned_box(box_id, actor, services)
    try:
        request = services.plan_changes.request_change(
            box_id,
            body.to_plan_id,
            actor=actor.user_id,
            effective_date=body.effective_date,
            proration_type=body.proration_type.value,
        )
        response = PlanChangeRequestRead.model_validate(request)
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return response


@router.post("/plan-changes/{request_id}/approve")
def approve_plan_change(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
) -> Dict[str, Any]:
    _owned_request(request_id, actor, services)
    try:
        result = services.plan_changes.process_request(request_id, approver=actor.user_id)
        response = {
            "request": PlanChangeRequestRead.model_validate(result.request).model_dump(mode="json"),
            "subscription": SubscriptionRead.model_validate(result.subscription).model_dump(mode="json"),
            "prorated_amount": result.quote.prorated_amount,
            "remaining_days": result.quote.remaining_days,
        }
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return response


@router.post("/plan-changes/{request_id}/cancel", response_model=PlanChangeRequestRead)
def cancel_plan_change(
    request_id: int,
    body: Optional[PlanChangeCancel] = None,
    actor: Actor = Depends(get_current_actor),
    services: BillingServices = Depends(get_billing_services),
):
    _owned_request(request_id, actor, services)
    try:
        request = services.plan_changes.cancel_request(
            request_id, actor=actor.user_id, reason=body.reason if body else None
        )
        response = PlanChangeRequestRead.model_validate(request)
        services.commit()
    except BillingError as e:
        raise _fail(services, e)
    return response
