import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from core.billing_utils import Clock, utcnow
from core.database import insert_or_get_existing
from core.errors import NotFoundError
from models.models import Box, GracePeriod, GracePeriodReason, GracePeriodSeverity
from schemas.billing_schema import GracePeriodContext, GracePeriodOpenResult
from services.notifications import BillingNotifier

logger = logging.getLogger(__name__)


# reason -> (duration in days, severity)
GRACE_PERIOD_POLICIES: Dict[str, Tuple[int, str]] = {
    GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value: (14, GracePeriodSeverity.WARNING.value),
    GracePeriodReason.COACH_LIMIT_EXCEEDED.value: (14, GracePeriodSeverity.WARNING.value),
    GracePeriodReason.TRIAL_ENDING.value: (7, GracePeriodSeverity.CRITICAL.value),
    GracePeriodReason.PAYMENT_FAILED.value: (3, GracePeriodSeverity.CRITICAL.value),
    GracePeriodReason.SUBSCRIPTION_CANCELED.value: (0, GracePeriodSeverity.BLOCKING.value),
    GracePeriodReason.BILLING_ISSUE.value: (7, GracePeriodSeverity.WARNING.value),
}
DEFAULT_POLICY: Tuple[int, str] = (7, GracePeriodSeverity.WARNING.value)


def policy_for(reason: str) -> Tuple[int, str]:
    return GRACE_PERIOD_POLICIES.get(reason, DEFAULT_POLICY)


class GracePeriodManager:
    """
    Opens and resolves remediation windows keyed by (box, reason).

    At most one unresolved grace period exists per key; a partial unique
    index enforces it so concurrent opens converge on one row. Blocking
    periods never lapse on their own and stay open until remediated.
    """

    def __init__(self, session: Session, notifier: BillingNotifier, clock: Clock = utcnow):
        self.session = session
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------
    def _unresolved(self, box_id: int, reason: str) -> Optional[GracePeriod]:
        return self.session.exec(
            select(GracePeriod).where(
                GracePeriod.box_id == box_id,
                GracePeriod.reason == reason,
                GracePeriod.resolved == False,  # noqa: E712
            )
        ).first()

    def _is_lapsed(self, grace_period: GracePeriod) -> bool:
        if grace_period.severity == GracePeriodSeverity.BLOCKING.value:
            return False
        return grace_period.ends_at <= self.clock()

    def has_open(self, box_id: int, reason: str) -> bool:
        grace_period = self._unresolved(box_id, reason)
        return grace_period is not None and not self._is_lapsed(grace_period)

    def active_for_box(self, box_id: int) -> List[GracePeriod]:
        return list(
            self.session.exec(
                select(GracePeriod)
                .where(GracePeriod.box_id == box_id, GracePeriod.resolved == False)  # noqa: E712
                .order_by(GracePeriod.ends_at)
            ).all()
        )

    def sweep_expiring(self, days_ahead: int = 7) -> List[GracePeriod]:
        """Open periods ending within the window. Read-only."""
        now = self.clock()
        return list(
            self.session.exec(
                select(GracePeriod)
                .where(
                    GracePeriod.resolved == False,  # noqa: E712
                    GracePeriod.ends_at > now,
                    GracePeriod.ends_at <= now + timedelta(days=days_ahead),
                )
                .order_by(GracePeriod.ends_at)
            ).all()
        )

    # ------------------------------------------------------------
    # Open
    # ------------------------------------------------------------
    def open(
        self,
        box_id: int,
        reason: str,
        severity: Optional[str] = None,
        duration_days: Optional[int] = None,
        context: Optional[GracePeriodContext] = None,
        custom_message: Optional[str] = None,
    ) -> GracePeriodOpenResult:
        box = self.session.get(Box, box_id)
        if not box:
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})

        existing = self._unresolved(box_id, reason)
        if existing is not None:
            if not self._is_lapsed(existing):
                return GracePeriodOpenResult(grace_period=existing, was_existing=True)
            self._mark_resolved(existing, "expired", actor=None, auto_resolved=True)
            self.session.flush()
            logger.info(f"⌛ Grace period {existing.id} ({reason}) lapsed for box {box_id}")

        default_days, default_severity = policy_for(reason)
        now = self.clock()
        grace_period = GracePeriod(
            box_id=box_id,
            reason=reason,
            severity=severity or default_severity,
            started_at=now,
            ends_at=now + timedelta(days=default_days if duration_days is None else duration_days),
            custom_message=custom_message,
            context_snapshot=context.model_dump(mode="json") if context is not None else None,
            created_at=now,
            updated_at=now,
        )
        grace_period, was_existing = insert_or_get_existing(
            self.session, grace_period, lambda: self._unresolved(box_id, reason)
        )
        if not was_existing:
            logger.info(f"⚠️ Grace period {grace_period.id} opened for box {box_id}: {reason} until {grace_period.ends_at}")
            self.notifier.grace_period_started(box, grace_period)
        return GracePeriodOpenResult(grace_period=grace_period, was_existing=was_existing)

    # ------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------
    def _mark_resolved(self, grace_period: GracePeriod, resolution: str, actor: Optional[str], auto_resolved: bool) -> None:
        now = self.clock()
        grace_period.resolved = True
        grace_period.resolved_at = now
        grace_period.resolution = resolution
        grace_period.resolved_by = actor
        grace_period.auto_resolved = auto_resolved
        grace_period.updated_at = now
        self.session.add(grace_period)

    def resolve(
        self,
        grace_period_id: int,
        resolution: str,
        actor: Optional[str] = None,
        auto_resolved: bool = False,
    ) -> GracePeriod:
        grace_period = self.session.get(GracePeriod, grace_period_id)
        if not grace_period:
            raise NotFoundError(f"Grace period {grace_period_id} not found")
        if grace_period.resolved:
            return grace_period

        self._mark_resolved(grace_period, resolution, actor, auto_resolved)
        self.session.flush()
        logger.info(f"✅ Grace period {grace_period.id} resolved: {resolution}")

        box = self.session.get(Box, grace_period.box_id)
        if box:
            self.notifier.grace_period_resolved(box, grace_period)
        return grace_period

    def resolve_for_reasons(
        self,
        box_id: int,
        reasons: Sequence[str],
        resolution: str,
        actor: Optional[str] = None,
    ) -> int:
        """Resolve every open period for the box whose reason is listed."""
        open_periods = self.session.exec(
            select(GracePeriod).where(
                GracePeriod.box_id == box_id,
                GracePeriod.reason.in_(list(reasons)),
                GracePeriod.resolved == False,  # noqa: E712
            )
        ).all()
        for grace_period in open_periods:
            self.resolve(grace_period.id, resolution, actor=actor, auto_resolved=actor is None)
        return len(open_periods)
