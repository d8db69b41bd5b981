from __future__ import annotations

import asyncio
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mediaforge.config import get_settings
from mediaforge.db.models import CreditPackage, Plan
from mediaforge.db.session import create_engine, create_sessionmaker


# name, credits per period, monthly price, yearly price
DEFAULT_PLANS = [
    ('Free', 10, None, None),
    ('Basic', 250, Decimal('9.99'), Decimal('99.00')),
    ('Pro', 600, Decimal('19.99'), Decimal('199.00')),
    ('Premium', 1500, Decimal('39.99'), Decimal('399.00')),
]

# price id, name, credits, price, order
DEFAULT_PACKAGES = [
    ('price_credits_250', '250 Credits', 250, Decimal('9.99'), 1),
    ('price_credits_500', '500 Credits', 500, Decimal('17.99'), 2),
]


async def seed_defaults(session: AsyncSession) -> None:
    """Upsert the default plans and credit packages; retire unknown packages."""
    for name, credits, monthly, yearly in DEFAULT_PLANS:
        result = await session.execute(select(Plan).where(Plan.name == name))
        existing = result.scalar_one_or_none()
        if existing:
            existing.credits = credits
            existing.monthly_price = monthly
            existing.yearly_price = yearly
            existing.active = True
            continue
        session.add(
            Plan(
                name=name,
                credits=credits,
                monthly_price=monthly,
                yearly_price=yearly,
                active=True,
            )
        )

    allowed = {price_id for price_id, _, _, _, _ in DEFAULT_PACKAGES}
    for price_id, name, credits, price, order in DEFAULT_PACKAGES:
        result = await session.execute(select(CreditPackage).where(CreditPackage.price_id == price_id))
        existing = result.scalar_one_or_none()
        if existing:
            existing.name = name
            existing.credits = credits
            existing.price_usd = price
            existing.active = True
            existing.sort_order = order
            continue
        session.add(
            CreditPackage(
                price_id=price_id,
                name=name,
                credits=credits,
                price_usd=price,
                active=True,
                sort_order=order,
            )
        )
    extra = await session.execute(select(CreditPackage).where(CreditPackage.price_id.not_in(allowed)))
    for row in extra.scalars().all():
        row.active = False


async def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    sessionmaker = create_sessionmaker(engine)
    async with sessionmaker() as session:
        await seed_defaults(session)
        await session.commit()
    await engine.dispose()


if __name__ == '__main__':
    asyncio.run(main())
