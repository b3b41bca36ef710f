"""Seed the database with a demo student and an admin, and print access tokens.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import delete, select

from app.auth.jwt import create_access_token
from app.billing.plans import Tier, plan_label
from app.database import async_session_factory, engine
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User

DEMO_USERS = [
    {"email": "student@studybrain.dev", "username": "demo-student", "role": "student"},
    {"email": "admin@studybrain.dev", "username": "demo-admin", "role": "admin"},
]


async def seed() -> None:
    """Create the demo accounts, each with an inactive free subscription.

    Idempotent: existing demo accounts are deleted and re-created.
    """
    async with async_session_factory() as session:
        emails = [u["email"] for u in DEMO_USERS]
        result = await session.execute(select(User.id).where(User.email.in_(emails)))
        existing_ids = list(result.scalars())
        if existing_ids:
            print(f"⚠️  {len(existing_ids)} demo user(s) already exist. Deleting and re-seeding...")
            await session.execute(delete(Subscription).where(Subscription.user_id.in_(existing_ids)))
            await session.execute(delete(User).where(User.id.in_(existing_ids)))
            await session.flush()

        created: list[User] = []
        for data in DEMO_USERS:
            user = User(is_active=True, **data)
            session.add(user)
            await session.flush()
            session.add(
                Subscription(
                    user_id=user.id,
                    tier=Tier.FREE.value,
                    plan_label=plan_label(Tier.FREE),
                    status=SubscriptionStatus.INACTIVE.value,
                )
            )
            created.append(user)

        await session.commit()

    print("=" * 60)
    for user in created:
        token = create_access_token({"sub": str(user.id)})
        print(f"✅ {user.role:<8} {user.email} (id={user.id})")
        print(f"   Bearer {token}")
    print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
