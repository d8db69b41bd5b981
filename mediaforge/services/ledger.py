from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mediaforge.db.models import CreditLedger, User
from mediaforge.errors import InsufficientCredits, InvalidInput, NotFound
from mediaforge.kinds import LedgerKind
from mediaforge.utils.logging import get_logger
from mediaforge.utils.time import utcnow


logger = get_logger('ledger')


@dataclass
class LedgerResult:
    entry: CreditLedger
    new_balance: int
    applied: bool = True


@dataclass
class LedgerAudit:
    user_id: int
    balance: int
    ledger_sum: int
    consistent: bool
    first_bad_entry_id: Optional[int] = None


@dataclass
class LedgerPage:
    items: List[CreditLedger]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.limit + len(self.items) < self.total


class LedgerService:
    """Credit movements against ``users.balance_credits``.

    Every mutation updates the balance with a single conditional UPDATE and
    appends the matching entry in the same session. Nothing here commits; the
    caller's commit makes both visible together or not at all.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.external_id == external_id))
        return result.scalar_one_or_none()

    async def ensure_user(self, external_id: str, email: Optional[str] = None) -> User:
        user = await self.get_user_by_external_id(external_id)
        now = utcnow()
        if user:
            if email:
                user.email = email
            user.updated_at = now
            return user

        user = User(
            external_id=external_id,
            email=email,
            balance_credits=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_balance(self, user_id: int) -> int:
        result = await self.session.execute(select(User.balance_credits).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise NotFound(f'User {user_id} not found')
        return int(balance)

    async def _find_by_key(self, idempotency_key: str | None) -> Optional[CreditLedger]:
        if not idempotency_key:
            return None
        result = await self.session.execute(
            select(CreditLedger).where(CreditLedger.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    def _append(
        self,
        user_id: int,
        amount: int,
        balance_after: int,
        kind: LedgerKind,
        description: str,
        generation_kind: str | None,
        generation_id: int | None,
        meta: dict | None,
        idempotency_key: str | None,
    ) -> CreditLedger:
        entry = CreditLedger(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            kind=LedgerKind(kind).value,
            generation_kind=generation_kind,
            generation_id=generation_id,
            description=description[:255],
            meta=meta or {},
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.session.add(entry)
        return entry

    async def deduct(
        self,
        user_id: int,
        amount: int,
        description: str,
        generation_kind: str | None = None,
        meta: dict | None = None,
        generation_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise InvalidInput('Debit amount must be positive')
        existing = await self._find_by_key(idempotency_key)
        if existing:
            return LedgerResult(existing, await self.get_balance(user_id), applied=False)

        stmt = (
            update(User)
            .where(User.id == user_id, User.balance_credits >= amount)
            .values(balance_credits=User.balance_credits - amount, updated_at=utcnow())
            .returning(User.balance_credits)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            available = await self.get_balance(user_id)
            logger.info('insufficient_credits', user_id=user_id, required=amount, available=available)
            raise InsufficientCredits(amount, available)

        entry = self._append(
            user_id,
            -amount,
            int(new_balance),
            LedgerKind.DEBIT,
            description,
            generation_kind,
            generation_id,
            meta,
            idempotency_key,
        )
        await self.session.flush()
        logger.info('credits_deducted', user_id=user_id, amount=amount, balance=int(new_balance))
        return LedgerResult(entry, int(new_balance))

    async def credit(
        self,
        user_id: int,
        amount: int,
        description: str,
        kind: LedgerKind = LedgerKind.CREDIT,
        generation_kind: str | None = None,
        meta: dict | None = None,
        generation_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise InvalidInput('Credit amount must be positive')
        if LedgerKind(kind) == LedgerKind.DEBIT:
            raise InvalidInput('Use deduct() for debits')
        existing = await self._find_by_key(idempotency_key)
        if existing:
            logger.info('ledger_duplicate_skipped', user_id=user_id, idempotency_key=idempotency_key)
            return LedgerResult(existing, await self.get_balance(user_id), applied=False)

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(balance_credits=User.balance_credits + amount, updated_at=utcnow())
            .returning(User.balance_credits)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise NotFound(f'User {user_id} not found')

        entry = self._append(
            user_id,
            amount,
            int(new_balance),
            kind,
            description,
            generation_kind,
            generation_id,
            meta,
            idempotency_key,
        )
        await self.session.flush()
        logger.info('credits_added', user_id=user_id, amount=amount, kind=LedgerKind(kind).value, balance=int(new_balance))
        return LedgerResult(entry, int(new_balance))

    async def refund(
        self,
        user_id: int,
        amount: int,
        description: str,
        generation_kind: str | None = None,
        meta: dict | None = None,
        generation_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        return await self.credit(
            user_id,
            amount,
            description,
            kind=LedgerKind.REFUND,
            generation_kind=generation_kind,
            meta=meta,
            generation_id=generation_id,
            idempotency_key=idempotency_key,
        )

    async def history(self, user_id: int, page: int = 1, limit: int = 50) -> LedgerPage:
        page = max(page, 1)
        limit = max(min(limit, 200), 1)
        total = await self.session.execute(
            select(func.count(CreditLedger.id)).where(CreditLedger.user_id == user_id)
        )
        rows = await self.session.execute(
            select(CreditLedger)
            .where(CreditLedger.user_id == user_id)
            .order_by(CreditLedger.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return LedgerPage(list(rows.scalars().all()), int(total.scalar_one() or 0), page, limit)

    async def audit(self, user_id: int) -> LedgerAudit:
        balance = await self.get_balance(user_id)
        rows = await self.session.execute(
            select(CreditLedger.id, CreditLedger.amount, CreditLedger.balance_after)
            .where(CreditLedger.user_id == user_id)
            .order_by(CreditLedger.id)
        )
        running = 0
        first_bad: Optional[int] = None
        for entry_id, amount, balance_after in rows.all():
            running += int(amount)
            if first_bad is None and running != int(balance_after):
                first_bad = entry_id
        consistent = first_bad is None and running == balance
        if not consistent:
            logger.warning('ledger_inconsistent', user_id=user_id, balance=balance, ledger_sum=running, entry_id=first_bad)
        return LedgerAudit(user_id, balance, running, consistent, first_bad)
