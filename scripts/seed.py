# scripts/seed.py

import os
import sys
import argparse
from datetime import timedelta

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.billing_utils import add_months, utcnow
from core.database import create_db_and_tables, engine
from models.models import (
    Box,
    BoxMembership,
    MemberRole,
    PlanTier,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)

# ✅ Load environment variables
load_dotenv()


# tier -> (name, athlete limit, coach limit, monthly price in cents)
PLAN_CATALOG = {
    PlanTier.SEED.value: ("Seed", 75, 3, 14900),
    PlanTier.GROW.value: ("Grow", 150, 6, 24900),
    PlanTier.SCALE.value: ("Scale", 500, 15, 39900),
}


def seed_plans(session: Session) -> dict:
    """Create the current version of every plan tier."""
    plans = {}
    for tier, (name, athlete_limit, coach_limit, monthly_price) in PLAN_CATALOG.items():
        plan = session.exec(
            select(SubscriptionPlan).where(
                SubscriptionPlan.tier == tier,
                SubscriptionPlan.is_current_version == True,  # noqa: E712
            )
        ).first()
        if not plan:
            plan = SubscriptionPlan(
                name=name,
                tier=tier,
                athlete_limit=athlete_limit,
                coach_limit=coach_limit,
                monthly_price=monthly_price,
                annual_price=monthly_price * 10,
                external_monthly_price_id=os.getenv(f"STRIPE_{tier.upper()}_MONTHLY_PRICE_ID"),
                external_annual_price_id=os.getenv(f"STRIPE_{tier.upper()}_ANNUAL_PRICE_ID"),
            )
            session.add(plan)
            print(f"✅ Added {name} plan")
        plans[tier] = plan
    session.commit()
    return plans


def seed_dev_data():
    """Seed development database with plans and a demo box."""
    print("🌱 Seeding development data...")
    create_db_and_tables()

    with Session(engine) as session:
        plans = seed_plans(session)

        # -----------------------------
        # 🏋️ Demo Box
        # -----------------------------
        box = session.exec(select(Box).where(Box.slug == "demo-box")).first()
        if not box:
            seed_plan = plans[PlanTier.SEED.value]
            now = utcnow()
            box = Box(
                name="Demo Box",
                slug="demo-box",
                billing_email="owner@demo-box.com",
                subscription_status=SubscriptionStatus.ACTIVE.value,
                current_athlete_limit=seed_plan.athlete_limit,
                current_coach_limit=seed_plan.coach_limit,
                trial_starts_at=now - timedelta(days=30),
                trial_ends_at=now - timedelta(days=16),
                subscription_started_at=now - timedelta(days=16),
                next_billing_date=add_months(now, 1),
            )
            session.add(box)
            session.commit()
            session.refresh(box)

            session.add(
                Subscription(
                    box_id=box.id,
                    plan_id=seed_plan.id,
                    plan_version=seed_plan.version,
                    status=SubscriptionStatus.ACTIVE.value,
                    amount=seed_plan.monthly_price,
                    current_period_start=now,
                    current_period_end=add_months(now, 1),
                )
            )
            print("✅ Created Demo Box with an active Seed subscription")

            # -----------------------------
            # 👥 Members
            # -----------------------------
            members = [("owner-1", "owner@demo-box.com", MemberRole.OWNER.value)]
            members += [("coach-1", "coach@demo-box.com", MemberRole.HEAD_COACH.value)]
            members += [(f"athlete-{i}", f"athlete{i}@demo-box.com", MemberRole.ATHLETE.value) for i in range(1, 61)]
            for user_id, email, role in members:
                session.add(BoxMembership(box_id=box.id, user_id=user_id, email=email, role=role))
            session.commit()
            print(f"✅ Added {len(members)} members")

        print("🌱 Development data seeding complete.")


def seed_staging_data():
    """Seed staging database with plans only."""
    print("🌱 Seeding staging data...")
    create_db_and_tables()
    with Session(engine) as session:
        seed_plans(session)
    print("🌱 Staging data seeding complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the box billing database.")
    parser.add_argument(
        "--env",
        choices=["dev", "staging"],
        default="dev",
        help="Select environment to seed (dev or staging)",
    )
    args = parser.parse_args()

    if args.env == "dev":
        seed_dev_data()
    elif args.env == "staging":
        seed_staging_data()
