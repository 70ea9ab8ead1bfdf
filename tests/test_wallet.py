import pytest
from sqlalchemy import select

from casino_rounds.errors import (
    DuplicateRequestError, InsufficientBalanceError, InvalidAmountError, ValidationError, WalletNotFoundError,
)
from casino_rounds.models import WalletLedgerEntry


def test_transfer_points_opens_wallet(engine):
    assert engine.transfer_points("admin", "alice", 500, "t-1") == 500
    assert engine.balance("alice") == 500

def test_transfer_points_is_idempotent(engine):
    engine.transfer_points("admin", "alice", 500, "t-1")
    assert engine.transfer_points("admin", "alice", 500, "t-1") == 500
    assert engine.balance("alice") == 500
    with pytest.raises(DuplicateRequestError):
        engine.transfer_points("admin", "alice", 700, "t-1")

def test_transfer_points_debit(engine):
    engine.transfer_points("admin", "alice", 500, "t-1")
    assert engine.transfer_points("admin", "alice", 200, "t-2", direction="debit") == 300
    with pytest.raises(InsufficientBalanceError):
        engine.transfer_points("admin", "alice", 301, "t-3", direction="debit")
    assert engine.balance("alice") == 300

def test_transfer_points_validation(engine):
    with pytest.raises(ValidationError):
        engine.transfer_points("admin", "alice", 100, "t-1", direction="sideways")
    with pytest.raises(ValidationError):
        engine.transfer_points("admin", "alice", 100, "")
    with pytest.raises(InvalidAmountError):
        engine.transfer_points("admin", "alice", -5, "t-2")

def test_balance_of_unknown_user(engine):
    with pytest.raises(WalletNotFoundError):
        engine.balance("ghost")

def test_open_wallet_starts_empty(engine):
    assert engine.open_wallet("alice") == 0
    assert engine.open_wallet("alice") == 0

def test_debit_never_goes_negative(engine):
    engine.transfer_points("admin", "alice", 100, "t-1")
    with engine.sessions() as session:
        with pytest.raises(InsufficientBalanceError):
            engine.wallet.debit(session, "alice", 101, "bet_placed", "ref-1")
        assert engine.wallet.debit(session, "alice", 100, "bet_placed", "ref-2") == 0
        session.commit()
    assert engine.balance("alice") == 0

def test_credit_unknown_wallet(engine):
    with engine.sessions() as session:
        with pytest.raises(WalletNotFoundError):
            engine.wallet.credit(session, "ghost", 10, "payout", "ref")

def test_every_mutation_writes_one_ledger_row(engine):
    engine.transfer_points("admin", "alice", 300, "t-1")
    with engine.sessions() as session:
        engine.wallet.debit(session, "alice", 120, "bet_placed", "bet-1")
        engine.wallet.credit(session, "alice", 50, "payout", "bet-1")
        session.commit()
        entries = session.execute(
            select(WalletLedgerEntry).where(WalletLedgerEntry.user_id == "alice").order_by(WalletLedgerEntry.id)
        ).scalars().all()
        assert [(e.direction, e.amount, e.resulting_balance) for e in entries] == [
            ("credit", 300, 300), ("debit", 120, 180), ("credit", 50, 230)]
        assert engine.wallet.has_debit(session, "alice", "bet-1", 120)
        assert not engine.wallet.has_debit(session, "alice", "bet-1", 100)
        assert not engine.wallet.has_debit(session, "alice", "bet-2", 120)
