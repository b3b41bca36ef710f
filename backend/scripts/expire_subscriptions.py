"""Cancel subscriptions whose scheduled cancellation has taken effect.

Stripe normally sends ``customer.subscription.deleted`` at period end; this
sweep covers deliveries that never arrived. Safe to run on a schedule:

    docker compose exec backend python -m scripts.expire_subscriptions
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.database import async_session_factory, engine
from app.services.subscription_service import expire_lapsed_subscriptions

logger = logging.getLogger("scripts.expire_subscriptions")


async def expire() -> int:
    async with async_session_factory() as session:
        count = await expire_lapsed_subscriptions(session)
        await session.commit()
    await engine.dispose()
    return count


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    expired = asyncio.run(expire())
    logger.info("Expired %d subscription(s)", expired)
