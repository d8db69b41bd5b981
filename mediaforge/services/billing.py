from __future__ import annotations

from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mediaforge.config import Settings, get_settings
from mediaforge.db.models import CreditPackage, Plan, User
from mediaforge.errors import InvalidInput, NotFound
from mediaforge.kinds import LedgerKind
from mediaforge.services.ledger import LedgerResult, LedgerService
from mediaforge.utils.logging import get_logger
from mediaforge.utils.time import utcnow


logger = get_logger('billing')


class BillingService:
    """Credit and plan effects of billing events.

    Webhook handlers call these after verifying the event; every grant is
    keyed by the external event id so redelivered events change nothing.
    Like the ledger, this service never commits.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = LedgerService(session)

    async def list_plans(self) -> List[Plan]:
        result = await self.session.execute(select(Plan).where(Plan.active.is_(True)).order_by(Plan.id))
        return list(result.scalars().all())

    async def list_packages(self) -> List[CreditPackage]:
        result = await self.session.execute(
            select(CreditPackage).where(CreditPackage.active.is_(True)).order_by(CreditPackage.sort_order)
        )
        return list(result.scalars().all())

    async def get_plan(self, plan_id: int) -> Optional[Plan]:
        return await self.session.get(Plan, plan_id)

    async def get_plan_by_price(self, price_id: str) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(
                or_(Plan.stripe_monthly_price_id == price_id, Plan.stripe_yearly_price_id == price_id)
            )
        )
        return result.scalar_one_or_none()

    async def get_package(self, price_id: str) -> Optional[CreditPackage]:
        result = await self.session.execute(select(CreditPackage).where(CreditPackage.price_id == price_id))
        return result.scalar_one_or_none()

    async def _require_user(self, user_id: int) -> User:
        user = await self.ledger.get_user(user_id)
        if not user:
            raise NotFound(f'User {user_id} not found')
        return user

    async def _require_plan(self, plan_id: int) -> Plan:
        plan = await self.get_plan(plan_id)
        if not plan:
            raise NotFound(f'Plan {plan_id} not found')
        return plan

    def _set_plan(self, user: User, plan: Plan) -> None:
        user.plan_id = plan.id
        user.updated_at = utcnow()

    async def _grant(self, user: User, amount: int, kind: LedgerKind, description: str, key: str, meta: dict) -> Optional[LedgerResult]:
        if amount <= 0:
            return None
        result = await self.ledger.credit(
            user.id,
            amount,
            description,
            kind=kind,
            meta=meta,
            idempotency_key=key,
        )
        return result

    async def activate_subscription(self, user_id: int, plan_id: int, subscription_id: str) -> Optional[LedgerResult]:
        user = await self._require_user(user_id)
        plan = await self._require_plan(plan_id)
        self._set_plan(user, plan)
        result = await self._grant(
            user,
            plan.credits,
            LedgerKind.CREDIT,
            f'{plan.name} plan subscription',
            f'sub:{subscription_id}',
            {'plan_id': plan.id, 'subscription_id': subscription_id},
        )
        logger.info('subscription_activated', user_id=user.id, plan=plan.name, credits=plan.credits)
        return result

    async def renew_subscription(self, user_id: int, invoice_id: str) -> Optional[LedgerResult]:
        user = await self._require_user(user_id)
        if user.plan_id is None:
            raise InvalidInput(f'User {user_id} has no active plan to renew')
        plan = await self._require_plan(user.plan_id)
        result = await self._grant(
            user,
            plan.credits,
            LedgerKind.CREDIT,
            f'{plan.name} plan renewal',
            f'invoice:{invoice_id}',
            {'plan_id': plan.id, 'invoice_id': invoice_id},
        )
        logger.info('subscription_renewed', user_id=user.id, plan=plan.name, invoice_id=invoice_id)
        return result

    async def change_plan(self, user_id: int, plan_id: int) -> Plan:
        # Credits for the new plan arrive with its next invoice.
        user = await self._require_user(user_id)
        plan = await self._require_plan(plan_id)
        self._set_plan(user, plan)
        logger.info('plan_changed', user_id=user.id, plan=plan.name)
        return plan

    async def cancel_subscription(self, user_id: int) -> Optional[Plan]:
        user = await self._require_user(user_id)
        result = await self.session.execute(select(Plan).where(Plan.name == self.settings.free_plan_name))
        free_plan = result.scalar_one_or_none()
        user.plan_id = free_plan.id if free_plan else None
        user.updated_at = utcnow()
        logger.info('subscription_cancelled', user_id=user.id, free_plan=bool(free_plan))
        return free_plan

    async def purchase_credit_package(self, user_id: int, price_id: str, session_id: str) -> LedgerResult:
        user = await self._require_user(user_id)
        package = await self.get_package(price_id)
        if not package or not package.active:
            raise InvalidInput(f'Unknown credit package: {price_id}')
        result = await self.ledger.credit(
            user.id,
            package.credits,
            f'Purchased {package.name}',
            kind=LedgerKind.PURCHASE,
            meta={'price_id': price_id, 'session_id': session_id},
            idempotency_key=f'checkout:{session_id}',
        )
        if result.applied:
            logger.info('credits_purchased', user_id=user.id, package=package.name, credits=package.credits)
        return result

    async def grant_signup_bonus(self, user_id: int) -> Optional[LedgerResult]:
        user = await self._require_user(user_id)
        return await self._grant(
            user,
            self.settings.signup_bonus_credits,
            LedgerKind.CREDIT,
            'Signup bonus',
            f'signup:{user.id}',
            {'bonus': self.settings.signup_bonus_credits},
        )
