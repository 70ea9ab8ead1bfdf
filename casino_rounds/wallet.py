import logging
from typing import Optional

from sqlalchemy import select, func, update as sa_update
from sqlalchemy.orm import Session

from casino_rounds.errors import InsufficientBalanceError, InvalidAmountError, WalletNotFoundError
from casino_rounds.models import Direction, Wallet, WalletLedgerEntry, now_utc

logger = logging.getLogger(__name__)


class WalletService:
    """Point balances with an append-only ledger.

    Every method works inside the caller's session and never commits, so a
    debit or credit is atomic with whatever else the caller writes. Balance
    changes are single conditional UPDATEs; a debit that would take the
    balance below zero matches no row.
    """

    def open_wallet(self, session: Session, user_id: str) -> Wallet:
        wallet = session.get(Wallet, user_id)
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=0, updated_at=now_utc())
            session.add(wallet)
            session.flush()
        return wallet

    def balance(self, session: Session, user_id: str) -> int:
        value = session.execute(select(Wallet.balance).where(Wallet.user_id == user_id)).scalar_one_or_none()
        if value is None:
            raise WalletNotFoundError(f"No wallet for {user_id}", user_id=user_id)
        return int(value)

    def debit(self, session: Session, user_id: str, amount: int, reason: str, reference: Optional[str]) -> int:
        self._check_amount(amount)
        new_balance = session.execute(
            sa_update(Wallet)
            .where(Wallet.user_id == user_id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount, updated_at=now_utc())
            .returning(Wallet.balance)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if new_balance is None:
            if session.get(Wallet, user_id) is None:
                raise WalletNotFoundError(f"No wallet for {user_id}", user_id=user_id)
            raise InsufficientBalanceError("Insufficient balance", user_id=user_id, amount=amount)
        self._record(session, user_id, amount, Direction.DEBIT, reason, reference, new_balance)
        return int(new_balance)

    def credit(self, session: Session, user_id: str, amount: int, reason: str, reference: Optional[str]) -> int:
        self._check_amount(amount)
        new_balance = session.execute(
            sa_update(Wallet)
            .where(Wallet.user_id == user_id)
            .values(balance=Wallet.balance + amount, updated_at=now_utc())
            .returning(Wallet.balance)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if new_balance is None:
            raise WalletNotFoundError(f"No wallet for {user_id}", user_id=user_id)
        self._record(session, user_id, amount, Direction.CREDIT, reason, reference, new_balance)
        return int(new_balance)

    def has_debit(self, session: Session, user_id: str, reference: str, amount: int) -> bool:
        debited = session.execute(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount), 0)).where(
                WalletLedgerEntry.user_id == user_id,
                WalletLedgerEntry.reference == reference,
                WalletLedgerEntry.direction == Direction.DEBIT,
            )
        ).scalar_one()
        return int(debited) == amount

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError("Amount must be a positive whole number", amount=amount)

    @staticmethod
    def _record(session: Session, user_id: str, amount: int, direction: str, reason: str,
                reference: Optional[str], resulting_balance: int) -> None:
        session.add(WalletLedgerEntry(
            user_id=user_id,
            amount=amount,
            direction=direction,
            reason_code=reason,
            reference=reference,
            resulting_balance=int(resulting_balance),
            created_at=now_utc(),
        ))
        logger.debug("wallet %s %s %s -> %s (%s %s)", user_id, direction, amount, resulting_balance, reason, reference)
