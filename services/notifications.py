import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from cachetools import TTLCache
from pydantic import BaseModel, Field
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from sqlmodel import Session, select

from core.billing_utils import Clock, format_cents, to_unix, utcnow
from core.config import Settings
from models.models import (
    Box,
    BoxMembership,
    GracePeriod,
    MemberRole,
    OverageBilling,
    PlanChangeRequest,
    Subscription,
    SubscriptionChange,
)

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="billing-notify")


# ============================================================
# 📨 Notification payload + client interface
# ============================================================
class NotificationPayload(BaseModel):
    box_id: int
    user_id: Optional[str] = None
    recipient_email: Optional[str] = None
    type: str
    category: str = "billing"
    priority: str = "normal"
    title: str
    message: str
    action_url: Optional[str] = None
    channels: List[str] = Field(default_factory=lambda: ["in_app", "email"])
    data: Dict[str, Any] = Field(default_factory=dict)
    deduplication_key: str


class NotificationClient(Protocol):
    def create_notification(self, payload: NotificationPayload) -> Any:
        ...


class EmailNotificationClient:
    """
    Delivers billing notifications by email through SendGrid.
    Falls back to logging when SendGrid is not configured.
    """

    def __init__(
        self,
        api_key: Optional[str],
        sender_email: Optional[str],
        dedup_ttl_seconds: float = 86400,
        dedup_max_keys: int = 10000,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.sendgrid_api_key = api_key
        self.sender_email = sender_email
        # Recently delivered keys only; older repeats are sent again
        self._recent = TTLCache(maxsize=dedup_max_keys, ttl=dedup_ttl_seconds, timer=timer)
        self._lock = threading.Lock()

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email notifications not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email notifications ready. Sender: {self.sender_email}")

    def _remember(self, sent_key: tuple) -> None:
        with self._lock:
            self._recent[sent_key] = True

    def create_notification(self, payload: NotificationPayload) -> bool:
        sent_key = (payload.deduplication_key, payload.user_id, payload.recipient_email)
        with self._lock:
            seen = sent_key in self._recent
        if seen:
            logger.info(f"🔁 Skipping duplicate notification {payload.deduplication_key}")
            return True

        if not self.enabled or not payload.recipient_email:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Notification] To: {payload.recipient_email or payload.user_id}")
            logger.info(f"Type: {payload.type} | Priority: {payload.priority} | {payload.title}")
            self._remember(sent_key)
            return True

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>{payload.title}</h2>
            <p>{payload.message}</p>
            {f'<p><a href="{payload.action_url}">Manage billing</a></p>' if payload.action_url else ""}
        </div>
        """

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=payload.recipient_email,
                subject=payload.title,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            self._remember(sent_key)
            logger.info(f"✅ Billing notification sent to {payload.recipient_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send billing notification to %s: %s", payload.recipient_email, e)
            return False


# ============================================================
# 🔔 Billing notifier (queued, delivered after commit)
# ============================================================
class BillingNotifier:
    """
    Builds billing notifications and delivers them once the surrounding
    unit of work has committed.

    Nothing here may fail the billing operation that triggered it: building
    and delivery errors are logged and dropped.
    """

    def __init__(
        self,
        session: Session,
        client: NotificationClient,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.client = client
        self.settings = settings
        self.clock = clock
        self._pending: List[NotificationPayload] = []

    # ------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------
    @property
    def pending(self) -> List[NotificationPayload]:
        return list(self._pending)

    def savepoint(self) -> int:
        return len(self._pending)

    def rollback_to(self, mark: int) -> None:
        del self._pending[mark:]

    def discard(self) -> None:
        self._pending.clear()

    def flush(self) -> int:
        """Deliver queued notifications. Returns how many were accepted."""
        payloads, self._pending = self._pending, []
        delivered = 0
        for payload in payloads:
            future = _executor.submit(self.client.create_notification, payload)
            try:
                future.result(timeout=self.settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
                delivered += 1
            except FutureTimeout:
                logger.error(f"⏱️ Notification {payload.deduplication_key} timed out")
            except Exception as e:
                logger.exception("❌ Notification %s failed: %s", payload.deduplication_key, e)
        return delivered

    def _recipients(self, box: Box, include_head_coaches: bool = False) -> List[Dict[str, Optional[str]]]:
        roles = [MemberRole.OWNER.value]
        if include_head_coaches:
            roles.append(MemberRole.HEAD_COACH.value)
        members = self.session.exec(
            select(BoxMembership).where(
                BoxMembership.box_id == box.id,
                BoxMembership.is_active == True,  # noqa: E712
                BoxMembership.role.in_(roles),
            )
        ).all()
        recipients = [{"user_id": m.user_id, "email": m.email} for m in members]
        if not recipients and box.billing_email:
            recipients.append({"user_id": None, "email": box.billing_email})
        return recipients

    def _queue(
        self,
        box: Box,
        type: str,
        title: str,
        message: str,
        deduplication_key: str,
        priority: str = "normal",
        data: Optional[Dict[str, Any]] = None,
        include_head_coaches: bool = False,
    ) -> None:
        try:
            queued_keys = {(p.deduplication_key, p.user_id, p.recipient_email) for p in self._pending}
            for recipient in self._recipients(box, include_head_coaches):
                key = (deduplication_key, recipient["user_id"], recipient["email"])
                if key in queued_keys:
                    continue
                self._pending.append(
                    NotificationPayload(
                        box_id=box.id,
                        user_id=recipient["user_id"],
                        recipient_email=recipient["email"],
                        type=type,
                        priority=priority,
                        title=title,
                        message=message,
                        action_url=self.settings.BILLING_URL,
                        data=data or {},
                        deduplication_key=deduplication_key,
                    )
                )
        except Exception as e:
            logger.exception("❌ Could not queue %s notification for box %s: %s", type, box.id, e)

    # ------------------------------------------------------------
    # Usage limits
    # ------------------------------------------------------------
    def limit_approaching(self, box: Box, role: str, count: int, limit: int, percentage: int) -> None:
        bucket = (percentage // 5) * 5
        self._queue(
            box,
            type="limit_approaching",
            title=f"You're approaching your {role} limit",
            message=f"{box.name} is using {count} of {limit} {role} seats ({percentage}%).",
            deduplication_key=f"limit_approaching_{box.id}_{role}_{bucket}",
            data={"role": role, "count": count, "limit": limit, "percentage": percentage},
            include_head_coaches=True,
        )

    def limit_exceeded(self, box: Box, role: str, count: int, limit: int, overage: int, overage_enabled: bool) -> None:
        if overage_enabled:
            message = f"{box.name} has {overage} {role}(s) over the plan limit. Overage will be billed at month end."
        else:
            message = f"{box.name} has {overage} {role}(s) over the plan limit. Upgrade or enable overage billing."
        self._queue(
            box,
            type="limit_exceeded",
            title=f"{role.title()} limit exceeded",
            message=message,
            deduplication_key=f"limit_exceeded_{box.id}_{role}_{overage}",
            priority="high",
            data={"role": role, "count": count, "limit": limit, "overage": overage, "overage_enabled": overage_enabled},
            include_head_coaches=True,
        )

    # ------------------------------------------------------------
    # Grace periods
    # ------------------------------------------------------------
    def grace_period_started(self, box: Box, grace_period: GracePeriod) -> None:
        priority = "critical" if grace_period.severity in ("critical", "blocking") else "high"
        self._queue(
            box,
            type="grace_period_started",
            title="Action needed on your billing",
            message=grace_period.custom_message
            or f"A {grace_period.reason.replace('_', ' ')} grace period is open until {grace_period.ends_at:%Y-%m-%d}.",
            deduplication_key=f"grace_period_{grace_period.id}",
            priority=priority,
            data={"grace_period_id": grace_period.id, "reason": grace_period.reason, "severity": grace_period.severity},
        )

    def grace_period_resolved(self, box: Box, grace_period: GracePeriod) -> None:
        self._queue(
            box,
            type="grace_period_resolved",
            title="Billing issue resolved",
            message=f"The {grace_period.reason.replace('_', ' ')} issue was resolved ({grace_period.resolution}).",
            deduplication_key=f"grace_period_resolved_{grace_period.id}",
            data={"grace_period_id": grace_period.id, "resolution": grace_period.resolution},
        )

    def grace_period_expiring(self, box: Box, grace_period: GracePeriod, days_left: int) -> None:
        self._queue(
            box,
            type="grace_period_expiring",
            title="Grace period ending soon",
            message=f"Your {grace_period.reason.replace('_', ' ')} grace period ends in {days_left} day(s).",
            deduplication_key=f"grace_period_expiring_{grace_period.id}_{days_left}",
            priority="high",
            data={"grace_period_id": grace_period.id, "days_left": days_left},
        )

    # ------------------------------------------------------------
    # Payments & lifecycle
    # ------------------------------------------------------------
    def payment_failed(self, box: Box, invoice_id: Optional[str], attempt_count: int, amount_due: int) -> None:
        self._queue(
            box,
            type="payment_failed",
            title="Payment failed",
            message=f"We couldn't collect {format_cents(amount_due)} for {box.name}. Please update your payment method.",
            deduplication_key=f"payment_failed_{box.id}_{invoice_id}_{attempt_count}",
            priority="critical",
            data={"invoice_id": invoice_id, "attempt_count": attempt_count, "amount_due": amount_due},
        )

    def payment_succeeded(self, box: Box, invoice_id: str, amount: int) -> None:
        self._queue(
            box,
            type="payment_succeeded",
            title="Payment received",
            message=f"Thanks! We received {format_cents(amount)} for {box.name}.",
            deduplication_key=f"payment_success_{box.id}_{invoice_id}",
            data={"invoice_id": invoice_id, "amount": amount},
        )

    def subscription_canceled(self, box: Box, subscription: Subscription, effective_date: datetime, immediate: bool) -> None:
        when = "now" if immediate else f"on {effective_date:%Y-%m-%d}"
        self._queue(
            box,
            type="subscription_canceled",
            title="Subscription canceled",
            message=f"The subscription for {box.name} ends {when}.",
            deduplication_key=f"subscription_canceled_{box.id}_{subscription.id}_{to_unix(effective_date)}",
            priority="high",
            data={"subscription_id": subscription.id, "immediate": immediate},
        )

    def subscription_reactivated(self, box: Box, subscription: Subscription, change: SubscriptionChange) -> None:
        self._queue(
            box,
            type="subscription_reactivated",
            title="Subscription reactivated",
            message=f"Welcome back! The subscription for {box.name} is active again.",
            deduplication_key=f"subscription_reactivated_{box.id}_{change.id}",
            data={"subscription_id": subscription.id, "change_id": change.id},
        )

    def trial_expired(self, box: Box, subscription: Subscription) -> None:
        self._queue(
            box,
            type="trial_expired",
            title="Your trial has ended",
            message=f"The trial for {box.name} has ended. Choose a plan to keep access.",
            deduplication_key=f"trial_expired_{box.id}_{subscription.id}",
            priority="critical",
            data={"subscription_id": subscription.id},
        )

    def overage_charged(self, box: Box, billing: OverageBilling) -> None:
        self._queue(
            box,
            type="overage_charges",
            title="Overage charges for this period",
            message=f"{box.name} was charged {format_cents(billing.total_overage_amount, billing.currency)} in overage fees.",
            deduplication_key=f"overage_charges_{box.id}_{to_unix(billing.billing_period_start)}",
            data={
                "overage_billing_id": billing.id,
                "athlete_overage": billing.athlete_overage,
                "coach_overage": billing.coach_overage,
                "amount": billing.total_overage_amount,
            },
        )

    def plan_change_confirmed(self, box: Box, request: PlanChangeRequest) -> None:
        self._queue(
            box,
            type="plan_change_confirmed",
            title="Plan change confirmed",
            message=f"Your {request.change_type} was applied. Prorated amount: {format_cents(request.prorated_amount)}.",
            deduplication_key=f"plan_change_confirmed_{box.id}_{request.id}",
            data={"request_id": request.id, "to_plan_id": request.to_plan_id, "prorated_amount": request.prorated_amount},
        )
