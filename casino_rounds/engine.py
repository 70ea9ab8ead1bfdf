import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from casino_rounds import audit
from casino_rounds.bets import BetService
from casino_rounds.config import Config, GameSettings, load_game_settings, load_ludo_settings
from casino_rounds.db import create_db_engine, create_session_factory, init_db
from casino_rounds.errors import ValidationError
from casino_rounds.events import EventBus
from casino_rounds.games import build_registry
from casino_rounds.idempotency import find_prior, remember, request_fingerprint
from casino_rounds.ludo import LudoService
from casino_rounds.models import Bet, Direction, LudoMatch, Round, WalletLedgerEntry, now_utc
from casino_rounds.rounds import RoundService
from casino_rounds.scheduler import RoundDriver, TickReport
from casino_rounds.settlement import SettlementProcessor, SettlementReport
from casino_rounds.wallet import WalletService

logger = logging.getLogger(__name__)

TRANSFER_POINTS = "transfer_points"


class RoundEngine:
    """Entry point for controllers and the runner.

    Wires the round, bet, settlement and driver services, plus Ludo
    matches, over one session factory and one set of per-game settings.
    """

    def __init__(self, sessions: sessionmaker, settings_map: Dict[str, GameSettings],
                 clock: Callable[[], datetime] = now_utc, wallet: Optional[WalletService] = None,
                 events: Optional[EventBus] = None, ludo_settings: Optional[GameSettings] = None):
        self.sessions = sessions
        self.clock = clock
        self.games = build_registry(settings_map)
        self.events = events or EventBus()
        self.wallet = wallet or WalletService()
        self.rounds = RoundService(sessions, self.games, self.events, clock)
        self.bets = BetService(sessions, self.games, self.rounds, self.wallet, self.events, clock)
        self.settlement = SettlementProcessor(sessions, self.games, self.rounds, self.wallet, self.events, clock)
        self.driver = RoundDriver(self.games, self.rounds, self.settlement, clock)
        self.ludo = LudoService(sessions, self.wallet, self.events, clock, ludo_settings)
        self.db_engine: Optional[Engine] = None

    @classmethod
    def create(cls, db_url: Optional[str] = None, overrides: Optional[Dict[str, Dict[str, Any]]] = None,
               settings_path: Optional[str] = None, enabled: Optional[List[str]] = None,
               clock: Callable[[], datetime] = now_utc, wallet: Optional[WalletService] = None,
               create_tables: bool = True, ludo_overrides: Optional[Dict[str, Any]] = None) -> "RoundEngine":
        db_engine = create_db_engine(db_url)
        if create_tables:
            init_db(db_engine)
        settings_map = load_game_settings(overrides, settings_path, enabled)
        engine = cls(create_session_factory(db_engine), settings_map, clock=clock, wallet=wallet,
                     ludo_settings=load_ludo_settings(ludo_overrides))
        engine.db_engine = db_engine
        return engine

    @classmethod
    def from_config(cls) -> "RoundEngine":
        return cls.create(Config.DB_URL, enabled=Config.ENABLED_GAMES)

    # ------------------------------------------------------------------
    # players
    # ------------------------------------------------------------------

    def place_bet(self, round_id: str, user_id: str, amount: int, selection: Dict[str, Any],
                  idempotency_key: str) -> Bet:
        return self.bets.place_bet(round_id, user_id, amount, selection, idempotency_key)

    def cash_out(self, bet_id: str, user_id: str, current_multiplier: Any, idempotency_key: str) -> Bet:
        return self.bets.cash_out(bet_id, user_id, current_multiplier, idempotency_key)

    def get_current_round(self, game_type: str) -> Optional[Round]:
        return self.rounds.get_current_round(game_type)

    def get_round_history(self, game_type: str, limit: int = 20) -> List[Round]:
        return self.rounds.get_round_history(game_type, limit)

    def get_user_bets(self, user_id: str, game_type: Optional[str] = None, limit: int = 20) -> List[Bet]:
        return self.bets.get_user_bets(user_id, game_type, limit)

    def balance(self, user_id: str) -> int:
        with self.sessions() as session:
            return self.wallet.balance(session, user_id)

    def open_wallet(self, user_id: str) -> int:
        with self.sessions() as session:
            wallet = self.wallet.open_wallet(session, user_id)
            session.commit()
            return wallet.balance

    # ------------------------------------------------------------------
    # ludo
    # ------------------------------------------------------------------

    def start_ludo_match(self, user_id: str, entry_fee: int, mode: str, idempotency_key: str,
                         seed: Optional[str] = None) -> LudoMatch:
        return self.ludo.start_match(user_id, entry_fee, mode, idempotency_key, seed=seed)

    def roll_dice(self, match_id: str, user_id: str, idempotency_key: str) -> Dict[str, Any]:
        return self.ludo.roll_dice(match_id, user_id, idempotency_key)

    def make_move(self, match_id: str, user_id: str, token: int, state_hash: str,
                  idempotency_key: str) -> Dict[str, Any]:
        return self.ludo.make_move(match_id, user_id, token, state_hash, idempotency_key)

    def get_ludo_match(self, match_id: str, user_id: Optional[str] = None) -> LudoMatch:
        return self.ludo.get_match(match_id, user_id)

    # ------------------------------------------------------------------
    # driver / operators
    # ------------------------------------------------------------------

    def tick(self, game_type: str) -> TickReport:
        return self.driver.tick(game_type)

    def tick_all(self) -> List[TickReport]:
        return [self.driver.tick(game_type) for game_type in self.games.names()]

    def settle(self, round_id: str) -> SettlementReport:
        return self.settlement.settle(round_id)

    def set_paused(self, game_type: str, paused: bool) -> None:
        self.rounds.set_paused(game_type, paused)

    def transfer_points(self, admin_id: str, user_id: str, amount: int, idempotency_key: str,
                        direction: str = Direction.CREDIT) -> int:
        """Move points into (or out of) a user's wallet. Returns the resulting balance.

        Replaying ``(admin_id, idempotency_key)`` returns the balance the
        first call produced without moving points again.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        if direction not in (Direction.CREDIT, Direction.DEBIT):
            raise ValidationError(f"Unknown direction: {direction}", direction=direction)
        fingerprint = request_fingerprint(
            TRANSFER_POINTS, {"user_id": user_id, "amount": amount, "direction": direction})
        reference = f"admin:{admin_id}:{idempotency_key}"[:64]

        with self.sessions() as session:
            if find_prior(session, admin_id, idempotency_key, TRANSFER_POINTS, fingerprint) is not None:
                return self._transfer_result(session, user_id, reference)
            self.wallet.open_wallet(session, user_id)
            if direction == Direction.CREDIT:
                new_balance = self.wallet.credit(session, user_id, amount, "admin_transfer", reference)
            else:
                new_balance = self.wallet.debit(session, user_id, amount, "admin_transfer", reference)
            remember(session, admin_id, idempotency_key, TRANSFER_POINTS, fingerprint, reference)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if find_prior(session, admin_id, idempotency_key, TRANSFER_POINTS, fingerprint) is None:
                    raise
                return self._transfer_result(session, user_id, reference)

        logger.info("admin %s %s %s points for %s (balance %s)", admin_id, direction, amount, user_id, new_balance)
        return new_balance

    @staticmethod
    def _transfer_result(session, user_id: str, reference: str) -> int:
        return int(session.execute(
            select(WalletLedgerEntry.resulting_balance)
            .where(WalletLedgerEntry.user_id == user_id, WalletLedgerEntry.reference == reference)
            .order_by(WalletLedgerEntry.id.desc()).limit(1)
        ).scalar_one())

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def verify_round(self, round_id: str) -> Dict[str, Any]:
        with self.sessions() as session:
            return audit.verify_round(session, self.games, round_id)

    def rtp_report(self, days: int = 30) -> Dict[str, Any]:
        with self.sessions() as session:
            return audit.compute_rtp_report(session, days, now=self.clock())

    def verify_match(self, match_id: str) -> Dict[str, Any]:
        with self.sessions() as session:
            return audit.verify_match(session, self.ludo.dice, match_id)
