import logging
from typing import Optional

from fastapi import Depends
from sqlmodel import Session

from core.billing_utils import Clock, utcnow
from core.config import Settings, settings as default_settings
from core.database import get_session
from services.event_router import EventRouter
from services.event_store import EventStore
from services.grace_periods import GracePeriodManager
from services.notifications import BillingNotifier, EmailNotificationClient, NotificationClient
from services.overage_billing import OverageBillingEngine
from services.payment_gateway import PaymentGateway, StripeGateway
from services.plan_changes import PlanChangeWorkflow, ProrationEngine
from services.subscription_lifecycle import SubscriptionStateMachine
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

_default_gateway: Optional[StripeGateway] = None
_default_notification_client: Optional[EmailNotificationClient] = None


def default_gateway(config: Settings = default_settings) -> StripeGateway:
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = StripeGateway(
            config.STRIPE_SECRET_KEY,
            config.STRIPE_WEBHOOK_SECRET,
            timeout=config.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
    return _default_gateway


def default_notification_client(config: Settings = default_settings) -> EmailNotificationClient:
    global _default_notification_client
    if _default_notification_client is None:
        _default_notification_client = EmailNotificationClient(
            config.SENDGRID_API_KEY,
            config.MAIL_FROM,
            dedup_ttl_seconds=config.NOTIFICATION_DEDUP_TTL_SECONDS,
            dedup_max_keys=config.NOTIFICATION_DEDUP_MAX_KEYS,
        )
    return _default_notification_client


class BillingServices:
    """
    Wires the billing components around one session.

    Components never commit. ``commit`` ends the unit of work and only then
    delivers queued notifications; ``rollback`` drops them.
    """

    def __init__(
        self,
        session: Session,
        gateway: Optional[PaymentGateway] = None,
        notification_client: Optional[NotificationClient] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.settings = settings or default_settings
        self.clock = clock
        self.gateway = gateway or default_gateway(self.settings)

        self.notifier = BillingNotifier(
            session, notification_client or default_notification_client(self.settings), self.settings, clock
        )
        self.grace_periods = GracePeriodManager(session, self.notifier, clock)
        self.usage = UsageLedger(session, self.grace_periods, self.notifier, self.settings, clock)
        self.lifecycle = SubscriptionStateMachine(
            session, self.grace_periods, self.usage, self.notifier, self.gateway, self.settings, clock
        )
        self.overage = OverageBillingEngine(
            session, self.usage, self.grace_periods, self.notifier, self.settings, clock, commit=self.commit
        )
        self.proration = ProrationEngine()
        self.plan_changes = PlanChangeWorkflow(
            session, self.proration, self.grace_periods, self.usage, self.notifier, self.gateway, clock
        )
        self.router = EventRouter(
            session, self.lifecycle, self.usage, self.grace_periods, self.overage, self.notifier, clock
        )
        self.events = EventStore(session, self.router, self.notifier, self.settings, clock)

    def commit(self) -> None:
        self.session.commit()
        self.notifier.flush()

    def rollback(self) -> None:
        self.session.rollback()
        self.notifier.discard()


def get_billing_services(session: Session = Depends(get_session)) -> BillingServices:
    return BillingServices(session)
