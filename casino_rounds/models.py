from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String,
    UniqueConstraint, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class RoundStatus:
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    RESOLVING = "RESOLVING"
    SETTLED = "SETTLED"

    ACTIVE = (OPEN, LOCKED, RESOLVING)


class BetStatus:
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"
    CASHED_OUT = "CASHED_OUT"
    VOID = "VOID"

    TERMINAL = (WON, LOST, CASHED_OUT, VOID)


class Direction:
    CREDIT = "credit"
    DEBIT = "debit"


class MatchStatus:
    IN_PROGRESS = "IN_PROGRESS"
    WON = "WON"
    LOST = "LOST"


# ---------------------------------------------------------------------
# DATABASE MODELS
# ---------------------------------------------------------------------

class Base(DeclarativeBase):
    pass

class Round(Base):
    __tablename__ = "rounds"
    __table_args__ = (
        UniqueConstraint("game_type", "sequence_number", name="uq_rounds_game_sequence"),
        # At most one OPEN/LOCKED/RESOLVING round per game type.
        Index(
            "uq_rounds_one_active", "game_type", unique=True,
            sqlite_where=text("status IN ('OPEN', 'LOCKED', 'RESOLVING')"),
            postgresql_where=text("status IN ('OPEN', 'LOCKED', 'RESOLVING')"),
        ),
    )
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    game_type: Mapped[str] = mapped_column(String(32), index=True)
    sequence_number: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default=RoundStatus.OPEN, index=True)
    seed: Mapped[str] = mapped_column(String(128))
    seed_hash: Mapped[str] = mapped_column(String(64))
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime())
    betting_closes_at: Mapped[datetime] = mapped_column(UTCDateTime())
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    outcome: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    resolution_context: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    total_bets: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cashouts: Mapped[int] = mapped_column(Integer, default=0)

    def __repr__(self) -> str:
        return f"<Round {self.game_type}#{self.sequence_number} {self.status}>"

class Bet(Base):
    __tablename__ = "bets"
    __table_args__ = (
        Index("ix_bets_round_status", "round_id", "status"),
    )
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    round_id: Mapped[str] = mapped_column(ForeignKey("rounds.id"))
    game_type: Mapped[str] = mapped_column(String(32), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    selection: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default=BetStatus.PENDING)
    payout: Mapped[Optional[int]] = mapped_column(BigInteger)
    cashout_multiplier: Mapped[Optional[str]] = mapped_column(String(16))
    idempotency_key: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return f"<Bet {self.id[:8]} {self.user_id} {self.amount} {self.status}>"

class Wallet(Base):
    __tablename__ = "wallets"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)

class WalletLedgerEntry(Base):
    __tablename__ = "wallet_ledger"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    direction: Mapped[str] = mapped_column(String(8))
    reason_code: Mapped[str] = mapped_column(String(64))
    reference: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    resulting_balance: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)

class IdempotencyRecord(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("user_id", "key", name="uq_idempotency_user_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64))
    key: Mapped[str] = mapped_column(String(128))
    action: Mapped[str] = mapped_column(String(32))
    fingerprint: Mapped[str] = mapped_column(String(64))
    resource_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)

class GameControl(Base):
    __tablename__ = "game_controls"
    game_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    paused: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)

class LudoMatch(Base):
    """One human seat (P1) against seeded bots. ``board`` maps each seat to
    the progress of its four tokens; ``version`` guards every state write."""
    __tablename__ = "ludo_matches"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    mode: Mapped[str] = mapped_column(String(8))
    entry_fee: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(16), default=MatchStatus.IN_PROGRESS)
    seed: Mapped[str] = mapped_column(String(128))
    seed_hash: Mapped[str] = mapped_column(String(64))
    board: Mapped[Dict[str, Any]] = mapped_column(JSON)
    current_player: Mapped[str] = mapped_column(String(4))
    phase: Mapped[str] = mapped_column(String(8))
    last_roll: Mapped[Optional[int]] = mapped_column(Integer)
    consecutive_sixes: Mapped[int] = mapped_column(Integer, default=0)
    dice_history: Mapped[List[int]] = mapped_column(JSON, default=list)
    version: Mapped[int] = mapped_column(Integer, default=0)
    winner: Mapped[Optional[str]] = mapped_column(String(4))
    payout: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return f"<LudoMatch {self.id[:8]} {self.user_id} {self.status}>"

class LudoMatchLog(Base):
    __tablename__ = "ludo_match_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    match_id: Mapped[str] = mapped_column(ForeignKey("ludo_matches.id"), index=True)
    actor: Mapped[str] = mapped_column(String(4))
    action: Mapped[str] = mapped_column(String(16))
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=now_utc)
