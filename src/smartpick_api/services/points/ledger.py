"""Points ledger with customer escrow and idempotent reason-coded movements.

Every method works inside the caller's transaction: balances are changed with
single conditional ``UPDATE`` statements, each change writes an immutable
``PointsHistory`` row, and each reservation-scoped movement records a
``PointsOperation`` keyed by ``{reservation_id}:{reason_code}`` so a replay
returns the recorded result without touching balances again. Callers commit.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import (
    InsufficientBalance,
    InsufficientPoints,
    InvalidState,
    ReservationNotFound,
)
from smartpick_api.models.points import (
    PointsAccount,
    PointsAccountOwnerEnum,
    PointsHistory,
    PointsOperation,
    PointsReasonCode,
)
from smartpick_api.models.reservation import Reservation


@dataclass(slots=True)
class LedgerResult:
    """Outcome of a ledger movement, identical for the first call and its replays."""

    reason_code: PointsReasonCode
    amount: int
    customer_balance: int | None = None
    customer_escrow: int | None = None
    partner_balance: int | None = None
    replayed: bool = False


@dataclass(slots=True)
class PointsBalance:
    owner_type: PointsAccountOwnerEnum
    owner_id: UUID
    balance: int
    escrow_held: int

    @property
    def available(self) -> int:
        return self.balance - self.escrow_held


def points_for_amount(total_price: Decimal | float | int) -> int:
    """Convert a currency amount into the whole number of points held in escrow."""

    value = Decimal(str(total_price)) * Decimal(settings.points_per_currency_unit)
    return int(math.ceil(value))


def idempotency_key(reference: UUID | str, reason_code: PointsReasonCode) -> str:
    return f"{reference}:{reason_code.value}"


class PointsLedgerService:
    """Owns customer/partner balances and the customer escrow sub-ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure_account(self, owner_type: PointsAccountOwnerEnum, owner_id: UUID) -> PointsAccount:
        account = await self._get_account(owner_type, owner_id)
        if account is not None:
            return account
        account = PointsAccount(owner_type=owner_type, owner_id=owner_id, balance=0, escrow_held=0)
        self._session.add(account)
        await self._session.flush()
        return account

    async def get_balance(self, owner_type: PointsAccountOwnerEnum, owner_id: UUID) -> PointsBalance:
        account = await self._get_account(owner_type, owner_id)
        if account is None:
            return PointsBalance(owner_type=owner_type, owner_id=owner_id, balance=0, escrow_held=0)
        return PointsBalance(
            owner_type=owner_type,
            owner_id=owner_id,
            balance=int(account.balance),
            escrow_held=int(account.escrow_held),
        )

    async def list_history(
        self,
        owner_type: PointsAccountOwnerEnum,
        owner_id: UUID,
        *,
        limit: int = 50,
    ) -> Sequence[PointsHistory]:
        """Return the newest history rows for an owner's account."""

        stmt = (
            select(PointsHistory)
            .join(PointsAccount, PointsAccount.id == PointsHistory.account_id)
            .where(PointsAccount.owner_type == owner_type, PointsAccount.owner_id == owner_id)
            .order_by(PointsHistory.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def hold(self, customer_id: UUID, amount: int, reservation_id: UUID) -> LedgerResult:
        """Reserve ``amount`` points against the customer's available balance."""

        key = idempotency_key(reservation_id, PointsReasonCode.ESCROW_HOLD)
        previous = await self._find_operation(key)
        if previous is not None:
            return self._replay(previous)

        account = await self.ensure_account(PointsAccountOwnerEnum.CUSTOMER, customer_id)
        stmt = (
            update(PointsAccount)
            .where(
                PointsAccount.id == account.id,
                (PointsAccount.balance - PointsAccount.escrow_held) >= amount,
            )
            .values(escrow_held=PointsAccount.escrow_held + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            await self._session.refresh(account)
            raise InsufficientBalance(
                f"Available balance {account.available} cannot cover a hold of {amount} points"
            )

        await self._session.refresh(account)
        self._append_history(
            account,
            delta=0,
            reason_code=PointsReasonCode.ESCROW_HOLD,
            reservation_id=reservation_id,
            metadata={"escrowDelta": amount},
        )
        ledger_result = LedgerResult(
            reason_code=PointsReasonCode.ESCROW_HOLD,
            amount=amount,
            customer_balance=int(account.balance),
            customer_escrow=int(account.escrow_held),
        )
        await self._record_operation(key, ledger_result, reservation_id)
        logger.info(
            "Escrow hold placed",
            reservation_id=str(reservation_id),
            customer_id=str(customer_id),
            amount=amount,
        )
        return ledger_result

    async def release_to_customer(self, reservation_id: UUID) -> LedgerResult:
        """Return a cancelled reservation's hold to the customer's available balance."""

        key = idempotency_key(reservation_id, PointsReasonCode.ESCROW_RELEASE)
        previous = await self._find_operation(key)
        if previous is not None:
            return self._replay(previous)

        reservation = await self._get_reservation(reservation_id)
        amount = int(reservation.points_held or 0)
        account = await self.ensure_account(PointsAccountOwnerEnum.CUSTOMER, reservation.customer_id)
        stmt = (
            update(PointsAccount)
            .where(PointsAccount.id == account.id, PointsAccount.escrow_held >= amount)
            .values(escrow_held=PointsAccount.escrow_held - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            raise InvalidState(f"Escrow for reservation {reservation_id} is smaller than {amount} points")

        await self._session.refresh(account)
        self._append_history(
            account,
            delta=0,
            reason_code=PointsReasonCode.ESCROW_RELEASE,
            reservation_id=reservation_id,
            metadata={"escrowDelta": -amount},
        )
        ledger_result = LedgerResult(
            reason_code=PointsReasonCode.ESCROW_RELEASE,
            amount=amount,
            customer_balance=int(account.balance),
            customer_escrow=int(account.escrow_held),
        )
        await self._record_operation(key, ledger_result, reservation_id)
        logger.info("Escrow hold released to customer", reservation_id=str(reservation_id), amount=amount)
        return ledger_result

    async def release_to_partner(self, reservation_id: UUID, amount: int | None = None) -> LedgerResult:
        """Settle a picked-up reservation: customer escrow and balance move to the partner."""

        return await self._transfer_to_partner(reservation_id, PointsReasonCode.PICKUP_REWARD, amount)

    async def forfeit_to_partner(self, reservation_id: UUID) -> LedgerResult:
        """Pay the partner no-show compensation out of an expired reservation's escrow."""

        return await self._transfer_to_partner(reservation_id, PointsReasonCode.NO_SHOW_COMPENSATION, None)

    async def debit(
        self,
        owner_type: PointsAccountOwnerEnum,
        owner_id: UUID,
        amount: int,
        *,
        reason_code: PointsReasonCode,
        key: str,
        penalty_id: UUID | None = None,
    ) -> LedgerResult:
        """Spend available (non-escrowed) points, e.g. to lift a penalty."""

        previous = await self._find_operation(key)
        if previous is not None:
            return self._replay(previous)

        account = await self.ensure_account(owner_type, owner_id)
        stmt = (
            update(PointsAccount)
            .where(
                PointsAccount.id == account.id,
                (PointsAccount.balance - PointsAccount.escrow_held) >= amount,
            )
            .values(balance=PointsAccount.balance - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            await self._session.refresh(account)
            raise InsufficientPoints(f"{amount} points required, {account.available} available")

        await self._session.refresh(account)
        self._append_history(account, delta=-amount, reason_code=reason_code, penalty_id=penalty_id)
        ledger_result = self._single_account_result(owner_type, account, reason_code, amount)
        await self._record_operation(key, ledger_result, None)
        logger.info(
            "Points debited",
            owner_type=owner_type.value,
            owner_id=str(owner_id),
            amount=amount,
            reason_code=reason_code.value,
        )
        return ledger_result

    async def credit(
        self,
        owner_type: PointsAccountOwnerEnum,
        owner_id: UUID,
        amount: int,
        *,
        reason_code: PointsReasonCode = PointsReasonCode.ADJUSTMENT,
        key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        """Add points to an account; keyed credits are applied at most once."""

        if key is not None:
            previous = await self._find_operation(key)
            if previous is not None:
                return self._replay(previous)

        account = await self.ensure_account(owner_type, owner_id)
        stmt = (
            update(PointsAccount)
            .where(PointsAccount.id == account.id)
            .values(balance=PointsAccount.balance + amount)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.refresh(account)
        self._append_history(account, delta=amount, reason_code=reason_code, metadata=metadata)
        ledger_result = self._single_account_result(owner_type, account, reason_code, amount)
        if key is not None:
            await self._record_operation(key, ledger_result, None)
        else:
            await self._session.flush()
        return ledger_result

    async def grant(self, customer_id: UUID, amount: int, *, note: str | None = None) -> LedgerResult:
        """Administrative top-up of a customer balance."""

        metadata = {"note": note} if note else None
        return await self.credit(PointsAccountOwnerEnum.CUSTOMER, customer_id, amount, metadata=metadata)

    async def _transfer_to_partner(
        self,
        reservation_id: UUID,
        reason_code: PointsReasonCode,
        amount: int | None,
    ) -> LedgerResult:
        key = idempotency_key(reservation_id, reason_code)
        previous = await self._find_operation(key)
        if previous is not None:
            return self._replay(previous)

        reservation = await self._get_reservation(reservation_id)
        value = int(reservation.points_held or 0) if amount is None else amount
        customer = await self.ensure_account(PointsAccountOwnerEnum.CUSTOMER, reservation.customer_id)
        partner = await self.ensure_account(PointsAccountOwnerEnum.PARTNER, reservation.partner_id)

        debit_stmt = (
            update(PointsAccount)
            .where(
                PointsAccount.id == customer.id,
                PointsAccount.escrow_held >= value,
                PointsAccount.balance >= value,
            )
            .values(
                escrow_held=PointsAccount.escrow_held - value,
                balance=PointsAccount.balance - value,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(debit_stmt)
        if result.rowcount != 1:
            raise InvalidState(f"Escrow for reservation {reservation_id} cannot cover {value} points")

        credit_stmt = (
            update(PointsAccount)
            .where(PointsAccount.id == partner.id)
            .values(balance=PointsAccount.balance + value)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(credit_stmt)

        await self._session.refresh(customer)
        await self._session.refresh(partner)
        self._append_history(customer, delta=-value, reason_code=reason_code, reservation_id=reservation_id)
        self._append_history(partner, delta=value, reason_code=reason_code, reservation_id=reservation_id)
        ledger_result = LedgerResult(
            reason_code=reason_code,
            amount=value,
            customer_balance=int(customer.balance),
            customer_escrow=int(customer.escrow_held),
            partner_balance=int(partner.balance),
        )
        await self._record_operation(key, ledger_result, reservation_id)
        logger.info(
            "Escrow transferred to partner",
            reservation_id=str(reservation_id),
            partner_id=str(reservation.partner_id),
            amount=value,
            reason_code=reason_code.value,
        )
        return ledger_result

    async def _get_account(self, owner_type: PointsAccountOwnerEnum, owner_id: UUID) -> PointsAccount | None:
        stmt = select(PointsAccount).where(
            PointsAccount.owner_type == owner_type,
            PointsAccount.owner_id == owner_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_reservation(self, reservation_id: UUID) -> Reservation:
        reservation = await self._session.get(Reservation, reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        return reservation

    async def _find_operation(self, key: str) -> PointsOperation | None:
        stmt = select(PointsOperation).where(PointsOperation.idempotency_key == key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _record_operation(self, key: str, ledger_result: LedgerResult, reservation_id: UUID | None) -> None:
        self._session.add(
            PointsOperation(
                idempotency_key=key,
                reason_code=ledger_result.reason_code,
                amount=ledger_result.amount,
                customer_balance_after=ledger_result.customer_balance,
                customer_escrow_after=ledger_result.customer_escrow,
                partner_balance_after=ledger_result.partner_balance,
                related_reservation_id=reservation_id,
            )
        )
        await self._session.flush()

    def _append_history(
        self,
        account: PointsAccount,
        *,
        delta: int,
        reason_code: PointsReasonCode,
        reservation_id: UUID | None = None,
        penalty_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._session.add(
            PointsHistory(
                account_id=account.id,
                delta=delta,
                reason_code=reason_code,
                balance_after=int(account.balance),
                related_reservation_id=reservation_id,
                related_penalty_id=penalty_id,
                metadata_json=metadata,
            )
        )

    @staticmethod
    def _single_account_result(
        owner_type: PointsAccountOwnerEnum,
        account: PointsAccount,
        reason_code: PointsReasonCode,
        amount: int,
    ) -> LedgerResult:
        if owner_type == PointsAccountOwnerEnum.PARTNER:
            return LedgerResult(reason_code=reason_code, amount=amount, partner_balance=int(account.balance))
        return LedgerResult(
            reason_code=reason_code,
            amount=amount,
            customer_balance=int(account.balance),
            customer_escrow=int(account.escrow_held),
        )

    @staticmethod
    def _replay(operation: PointsOperation) -> LedgerResult:
        logger.debug("Ledger operation replayed", idempotency_key=operation.idempotency_key)
        return LedgerResult(
            reason_code=operation.reason_code,
            amount=int(operation.amount),
            customer_balance=operation.customer_balance_after,
            customer_escrow=operation.customer_escrow_after,
            partner_balance=operation.partner_balance_after,
            replayed=True,
        )
