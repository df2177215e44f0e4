"""
Credit Ledger: per-user balance plus an append-only transaction log.

Every mutation writes a CreditTransaction; when a reference is given the
(user_id, reference) unique constraint makes the mutation idempotent. The
balance itself is only changed through single SQL UPDATE statements so
concurrent writers can never lose an update or overdraw.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CreditBalance, CreditTransaction, utcnow

logger = logging.getLogger(__name__)


class CreditReason:
    MONTHLY_ALLOWANCE = "monthly_allowance"
    TOPUP = "topup"
    MESSAGE = "message"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


@dataclass
class DebitResult:
    ok: bool
    balance: int
    duplicate: bool = False  # reference already recorded, nothing charged


class CreditLedger:
    """Ledger operations bound to one session. Each public call commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Helpers ────────────────────────────────────────────────

    def _insert(self):
        if self.db.get_bind().dialect.name == "postgresql":
            return pg_insert(CreditBalance)
        return sqlite_insert(CreditBalance)

    async def _ensure_balance_row(self, user_id: str) -> None:
        stmt = (
            self._insert()
            .values(user_id=user_id, balance=0, updated_at=utcnow())
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self.db.execute(stmt)

    async def _read_balance(self, user_id: str) -> int:
        result = await self.db.execute(
            select(CreditBalance.balance).where(CreditBalance.user_id == user_id)
        )
        return result.scalar_one_or_none() or 0

    async def _reference_exists(self, user_id: str, reference: Optional[str]) -> bool:
        if reference is None:
            return False
        existing = await self.db.execute(
            select(CreditTransaction.id).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.reference == reference,
            )
        )
        return existing.first() is not None

    async def _write(self, balance_update, transaction: CreditTransaction) -> bool:
        """
        Run a balance UPDATE and insert its transaction row under one SAVEPOINT.

        False when the UPDATE matched no row; nothing is recorded then. An
        IntegrityError (reference committed concurrently) propagates after
        the SAVEPOINT has undone the UPDATE. Objects the caller holds in the
        session are left untouched either way.
        """
        async with self.db.begin_nested():
            result = await self.db.execute(balance_update)
            if result.rowcount == 0:
                return False
            self.db.add(transaction)
        return True

    # ── Public API ─────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> int:
        """Current balance, creating a zero row on first access."""
        await self._ensure_balance_row(user_id)
        balance = await self._read_balance(user_id)
        await self.db.commit()
        return balance

    async def apply_transaction(
        self,
        user_id: str,
        delta: int,
        reason: str,
        reference: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """
        Apply a signed credit change.

        Returns False (and changes nothing) when ``reference`` was already
        applied for this user. The resulting balance is clamped at zero.
        """
        await self._ensure_balance_row(user_id)
        applied = False
        if not await self._reference_exists(user_id, reference):
            new_balance = CreditBalance.balance + delta
            try:
                applied = await self._write(
                    update(CreditBalance)
                    .where(CreditBalance.user_id == user_id)
                    .values(balance=case((new_balance < 0, 0), else_=new_balance), updated_at=utcnow()),
                    CreditTransaction(
                        user_id=user_id, delta=delta, reason=reason, reference=reference, metadata_json=metadata
                    ),
                )
            except IntegrityError:
                # Same reference committed concurrently
                applied = False
        await self.db.commit()

        if applied:
            logger.info(f"Applied {delta:+d} credits ({reason}) to user {user_id}")
        else:
            logger.info(f"Credit transaction {reference!r} already applied for user {user_id}")
        return applied

    async def debit_credits(
        self,
        user_id: str,
        amount: int,
        reason: str = CreditReason.MESSAGE,
        reference: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> DebitResult:
        """
        Atomically debit ``amount`` credits.

        The transaction row and a conditional
        ``UPDATE ... SET balance = balance - amount WHERE balance >= amount``
        commit together; zero affected rows means insufficient credits and
        nothing is written.
        """
        if amount <= 0:
            return DebitResult(ok=True, balance=await self.get_balance(user_id))

        await self._ensure_balance_row(user_id)

        duplicate = await self._reference_exists(user_id, reference)
        ok = duplicate
        if not duplicate:
            try:
                ok = await self._write(
                    update(CreditBalance)
                    .where(CreditBalance.user_id == user_id, CreditBalance.balance >= amount)
                    .values(balance=CreditBalance.balance - amount, updated_at=utcnow()),
                    CreditTransaction(
                        user_id=user_id, delta=-amount, reason=reason, reference=reference, metadata_json=metadata
                    ),
                )
            except IntegrityError:
                duplicate = ok = True

        balance = await self._read_balance(user_id)
        await self.db.commit()
        if duplicate:
            logger.info(f"Debit {reference!r} already applied for user {user_id}")
        return DebitResult(ok=ok, balance=balance, duplicate=duplicate)

    async def list_transactions(self, user_id: str, limit: int = 50) -> list:
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
