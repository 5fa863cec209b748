import json
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional, Protocol

import stripe

from core.errors import ExternalServiceError, InvalidWebhookError
from models.models import BillingInterval, Box, SubscriptionPlan

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="billing-gateway")


class PaymentGateway(Protocol):
    """The slice of the payment provider the billing services depend on."""

    def create_checkout_session(
        self,
        box: Box,
        plan: SubscriptionPlan,
        interval: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        ...

    def sync_customer(self, box: Box) -> str:
        ...

    def update_subscription(
        self,
        external_subscription_id: str,
        price_id: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        prorate: bool = True,
    ) -> Dict[str, Any]:
        ...

    def cancel_subscription(self, external_subscription_id: str) -> Dict[str, Any]:
        ...

    def revoke_subscription(self, external_subscription_id: str) -> Dict[str, Any]:
        ...

    def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        ...


# ============================================================
# 💳 Stripe implementation
# ============================================================
class StripeGateway:
    """
    Stripe-backed gateway. Every SDK call runs with a bounded timeout and
    Stripe failures surface as ExternalServiceError.
    """

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str], timeout: float = 10.0):
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        stripe.api_key = api_key
        if not api_key:
            logger.warning("⚠️ STRIPE_SECRET_KEY not configured — gateway calls will fail.")

    def _call(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        future = _executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            logger.error(f"⏱️ Stripe call timed out: {description}")
            raise ExternalServiceError(f"Payment provider timed out during {description}") from e
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe error during {description}: {e}")
            raise ExternalServiceError(
                f"Payment provider error during {description}: {e.user_message or str(e)}"
            ) from e

    @staticmethod
    def _price_for(plan: SubscriptionPlan, interval: str) -> Optional[str]:
        if interval == BillingInterval.YEAR.value:
            return plan.external_annual_price_id
        return plan.external_monthly_price_id

    def create_checkout_session(self, box, plan, interval, success_url, cancel_url):
        price_id = self._price_for(plan, interval)
        if not price_id:
            raise ExternalServiceError(f"Plan {plan.name} has no price configured for {interval} billing")

        metadata = {"box_id": str(box.id), "plan_id": str(plan.id)}
        checkout_session = self._call(
            "checkout session creation",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=box.external_customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=str(box.id),
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        logger.info(f"✅ Checkout session {checkout_session.id} created for box {box.id}")
        return {"id": checkout_session.id, "url": checkout_session.url}

    def sync_customer(self, box):
        metadata = {"box_id": str(box.id)}
        if box.external_customer_id:
            customer = self._call(
                "customer update",
                stripe.Customer.modify,
                box.external_customer_id,
                email=box.billing_email,
                name=box.name,
                metadata=metadata,
            )
        else:
            customer = self._call(
                "customer creation",
                stripe.Customer.create,
                email=box.billing_email,
                name=box.name,
                metadata=metadata,
            )
        return customer.id

    def update_subscription(self, external_subscription_id, price_id=None, cancel_at_period_end=None, prorate=True):
        params: Dict[str, Any] = {}
        if price_id:
            current = self._call("subscription lookup", stripe.Subscription.retrieve, external_subscription_id)
            item_id = current["items"]["data"][0]["id"]
            params["items"] = [{"id": item_id, "price": price_id}]
            params["proration_behavior"] = "create_prorations" if prorate else "none"
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        subscription = self._call(
            "subscription update", stripe.Subscription.modify, external_subscription_id, **params
        )
        return {"id": subscription.id, "status": subscription.status}

    def cancel_subscription(self, external_subscription_id):
        subscription = self._call(
            "subscription cancel",
            stripe.Subscription.modify,
            external_subscription_id,
            cancel_at_period_end=True,
        )
        return {"id": subscription.id, "status": subscription.status}

    def revoke_subscription(self, external_subscription_id):
        subscription = self._call("subscription revoke", stripe.Subscription.cancel, external_subscription_id)
        return {"id": subscription.id, "status": subscription.status}

    def retrieve_invoice(self, invoice_id):
        invoice = self._call("invoice retrieval", stripe.Invoice.retrieve, invoice_id)
        return {
            "id": invoice.id,
            "status": invoice.status,
            "amount_due": invoice.amount_due,
            "amount_paid": invoice.amount_paid,
            "hosted_invoice_url": invoice.hosted_invoice_url,
        }

    def construct_event(self, payload, signature):
        if not self.webhook_secret:
            raise InvalidWebhookError("Webhook secret not configured")
        if not signature:
            raise InvalidWebhookError("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self.webhook_secret)
        except ValueError as e:
            raise InvalidWebhookError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookError("Invalid signature") from e
        # Signature verified, work with the plain JSON body
        return json.loads(payload)
