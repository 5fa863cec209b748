import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from core.billing_utils import Clock, billing_window, round_cents, utcnow
from core.config import Settings
from core.errors import NotFoundError
from models.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    Box,
    BoxMembership,
    GracePeriodReason,
    MemberRole,
    Subscription,
    SubscriptionPlan,
    UsageEvent,
    UsageEventType,
)
from schemas.billing_schema import (
    LimitCheckResult,
    LimitExceededContext,
    UsageEventInput,
    UsageSnapshot,
)
from services.grace_periods import GracePeriodManager
from services.notifications import BillingNotifier

logger = logging.getLogger(__name__)

COACH_ROLES = (MemberRole.COACH.value, MemberRole.HEAD_COACH.value)


def usage_percentage(count: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return round_cents(Decimal(count * 100) / Decimal(limit))


class UsageLedger:
    """Seat counts per role against plan limits, plus the append-only usage log."""

    def __init__(
        self,
        session: Session,
        grace_periods: GracePeriodManager,
        notifier: BillingNotifier,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.grace_periods = grace_periods
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _get_box(self, box_id: int) -> Box:
        box = self.session.get(Box, box_id)
        if not box:
            raise NotFoundError(f"Box {box_id} not found", {"box_id": box_id})
        return box

    def current_plan(self, box: Box) -> Optional[SubscriptionPlan]:
        """Plan of the live subscription, else the current version of the box tier."""
        subscription = self.session.exec(
            select(Subscription)
            .where(Subscription.box_id == box.id, Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        ).first()
        if subscription and subscription.plan_id:
            plan = self.session.get(SubscriptionPlan, subscription.plan_id)
            if plan:
                return plan
        return self.session.exec(
            select(SubscriptionPlan).where(
                SubscriptionPlan.tier == box.subscription_tier,
                SubscriptionPlan.is_current_version == True,  # noqa: E712
            )
        ).first()

    def _active_counts(self, box_id: int) -> Dict[str, int]:
        rows = self.session.exec(
            select(BoxMembership.role, func.count(BoxMembership.id))
            .where(BoxMembership.box_id == box_id, BoxMembership.is_active == True)  # noqa: E712
            .group_by(BoxMembership.role)
        ).all()
        return {role: count for role, count in rows}

    # ------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------
    def compute_usage(self, box_id: int) -> UsageSnapshot:
        """Live counts from memberships. Never reads the cached box counters."""
        box = self._get_box(box_id)
        counts = self._active_counts(box_id)
        athlete_count = counts.get(MemberRole.ATHLETE.value, 0)
        coach_count = sum(counts.get(role, 0) for role in COACH_ROLES)

        plan = self.current_plan(box)
        if plan:
            athlete_limit, coach_limit = plan.athlete_limit, plan.coach_limit
            athlete_rate, coach_rate = plan.athlete_overage_price, plan.coach_overage_price
        else:
            athlete_limit, coach_limit = box.current_athlete_limit, box.current_coach_limit
            athlete_rate = coach_rate = self.settings.DEFAULT_OVERAGE_RATE_CENTS

        athlete_overage = max(0, athlete_count - athlete_limit)
        coach_overage = max(0, coach_count - coach_limit)

        return UsageSnapshot(
            box_id=box_id,
            plan_tier=plan.tier if plan else box.subscription_tier,
            athlete_count=athlete_count,
            coach_count=coach_count,
            athlete_limit=athlete_limit,
            coach_limit=coach_limit,
            athlete_percentage=usage_percentage(athlete_count, athlete_limit),
            coach_percentage=usage_percentage(coach_count, coach_limit),
            is_athlete_over_limit=athlete_count > athlete_limit,
            is_coach_over_limit=coach_count > coach_limit,
            athlete_overage=athlete_overage,
            coach_overage=coach_overage,
            athlete_overage_rate=athlete_rate,
            coach_overage_rate=coach_rate,
            estimated_overage_amount=athlete_overage * athlete_rate + coach_overage * coach_rate,
            is_overage_enabled=box.is_overage_enabled,
        )

    def refresh_usage_counts(self, box_id: int) -> UsageSnapshot:
        """Recompute usage and write the cached counters onto the box."""
        usage = self.compute_usage(box_id)
        box = self._get_box(box_id)
        box.current_athlete_count = usage.athlete_count
        box.current_coach_count = usage.coach_count
        box.current_athlete_overage = usage.athlete_overage
        box.current_coach_overage = usage.coach_overage
        box.current_athlete_limit = usage.athlete_limit
        box.current_coach_limit = usage.coach_limit
        box.updated_at = self.clock()
        self.session.add(box)
        return usage

    # ------------------------------------------------------------
    # Usage events
    # ------------------------------------------------------------
    def record_usage_events(self, box_id: int, events: Iterable[UsageEventInput]) -> List[UsageEvent]:
        """Append usage events tagged with the box's current billing period."""
        box = self._get_box(box_id)
        now = self.clock()
        period_start, period_end = billing_window(box.next_billing_date, now)

        rows = []
        for item in events:
            row = UsageEvent(
                box_id=box_id,
                event_type=item.event_type,
                quantity=item.quantity,
                is_billable=item.is_billable,
                billing_period_start=period_start,
                billing_period_end=period_end,
                user_id=item.user_id,
                entity_id=item.entity_id,
                entity_type=item.entity_type,
                details=item.details,
                created_at=now,
            )
            self.session.add(row)
            rows.append(row)
        if rows:
            self.session.flush()
        return rows

    def record(self, box_id: int, event_type: str, quantity: int = 1, **details) -> UsageEvent:
        return self.record_usage_events(
            box_id, [UsageEventInput(event_type=event_type, quantity=quantity, details=details)]
        )[0]

    def usage_trend(self, box_id: int, role: str = MemberRole.ATHLETE.value, days: int = 30) -> Dict[str, float]:
        """Recent additions and removals for a role, projected over a month."""
        added_type, removed_type = (
            (UsageEventType.ATHLETE_ADDED.value, UsageEventType.ATHLETE_REMOVED.value)
            if role == MemberRole.ATHLETE.value
            else (UsageEventType.COACH_ADDED.value, UsageEventType.COACH_REMOVED.value)
        )
        since = self.clock() - timedelta(days=days)
        rows = self.session.exec(
            select(UsageEvent.event_type, func.coalesce(func.sum(UsageEvent.quantity), 0))
            .where(
                UsageEvent.box_id == box_id,
                UsageEvent.created_at >= since,
                UsageEvent.event_type.in_([added_type, removed_type]),
            )
            .group_by(UsageEvent.event_type)
        ).all()
        totals = {event_type: int(total) for event_type, total in rows}
        added, removed = totals.get(added_type, 0), totals.get(removed_type, 0)
        net = added - removed
        daily_rate = net / days if days else 0.0
        return {
            "added": added,
            "removed": removed,
            "net_change": net,
            "daily_growth_rate": daily_rate,
            "projected_monthly_change": round(daily_rate * 30),
        }

    # ------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------
    def enforce_limits(self, box_id: int, triggering_event_types: Iterable[str]) -> LimitCheckResult:
        """
        Recompute usage after membership changes.

        Over-limit roles open a limit grace period (only when overage billing
        is off and an addition caused it). Roles within the warning threshold
        get an approaching-limit notice instead. At most one exceeded and one
        approaching notification go out per check.
        """
        triggers = set(triggering_event_types)
        usage = self.refresh_usage_counts(box_id)
        box = self._get_box(box_id)
        result = LimitCheckResult(usage=usage)

        roles: List[Tuple[str, int, int, int, int, str, str, str]] = [
            (
                MemberRole.ATHLETE.value, usage.athlete_count, usage.athlete_limit, usage.athlete_overage,
                usage.athlete_percentage, UsageEventType.ATHLETE_ADDED.value,
                UsageEventType.ATHLETE_REMOVED.value, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED.value,
            ),
            (
                MemberRole.COACH.value, usage.coach_count, usage.coach_limit, usage.coach_overage,
                usage.coach_percentage, UsageEventType.COACH_ADDED.value,
                UsageEventType.COACH_REMOVED.value, GracePeriodReason.COACH_LIMIT_EXCEEDED.value,
            ),
        ]
        growth_triggers = {UsageEventType.PLAN_DOWNGRADED.value}

        for role, count, limit, overage, percentage, added, removed, reason in roles:
            grew = added in triggers or bool(growth_triggers & triggers)
            if overage > 0:
                if not grew:
                    continue
                if not usage.is_overage_enabled:
                    opened = self.grace_periods.open(
                        box_id,
                        reason,
                        context=LimitExceededContext(
                            role=role,
                            count=count,
                            limit=limit,
                            overage=overage,
                            plan_tier=usage.plan_tier,
                            overage_enabled=False,
                        ),
                    )
                    result.grace_periods.append(opened)
                if "limit_exceeded" not in result.notifications:
                    self.notifier.limit_exceeded(box, role, count, limit, overage, usage.is_overage_enabled)
                    result.notifications.append("limit_exceeded")
            else:
                if removed in triggers:
                    result.resolved_count += self.grace_periods.resolve_for_reasons(
                        box_id, [reason], "usage_within_limit"
                    )
                if (
                    grew
                    and percentage >= self.settings.LIMIT_WARNING_PERCENT
                    and "limit_approaching" not in result.notifications
                ):
                    self.notifier.limit_approaching(box, role, count, limit, percentage)
                    result.notifications.append("limit_approaching")

        if result.grace_periods or result.notifications:
            logger.info(
                f"📊 Limits checked for box {box_id}: athletes {usage.athlete_count}/{usage.athlete_limit}, "
                f"coaches {usage.coach_count}/{usage.coach_limit}"
            )
        return result
