import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, func, update as sa_update
from sqlalchemy.orm import sessionmaker

from casino_rounds.errors import IncompleteSettlementError, InvalidTransitionError, InvariantViolation
from casino_rounds.events import BET_RESOLVED, EventBus, bet_payload
from casino_rounds.games import AbstractGame, GameRegistry
from casino_rounds.models import Bet, BetStatus, Round, RoundStatus, now_utc
from casino_rounds.rounds import RoundService
from casino_rounds.wallet import WalletService

logger = logging.getLogger(__name__)


@dataclass
class SettlementReport:
    round_id: str
    sequence_number: int
    status: str
    total_bets: int = 0
    winners: int = 0
    losers: int = 0
    cashed_out: int = 0
    voided: int = 0
    pending: int = 0
    total_wagered: int = 0
    total_paid: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SettlementProcessor:
    """Pays out a resolved round.

    Each PENDING bet is settled in its own transaction, so a failure on one
    bet leaves the others paid and the round RESOLVING. Running ``settle``
    again picks up only the bets that are still PENDING.
    """

    def __init__(self, sessions: sessionmaker, games: GameRegistry, rounds: RoundService,
                 wallet: WalletService, events: EventBus, clock: Callable[[], datetime] = now_utc):
        self.sessions = sessions
        self.games = games
        self.rounds = rounds
        self.wallet = wallet
        self.events = events
        self.clock = clock

    def settle(self, round_id: str) -> SettlementReport:
        rnd = self.rounds.get_round(round_id)
        if rnd.outcome is None:
            raise InvalidTransitionError(
                f"Round {round_id} is {rnd.status} and has no outcome yet", round_id=round_id, status=rnd.status)
        if rnd.status == RoundStatus.SETTLED:
            return self.report(round_id)

        game = self.games.get(rnd.game_type)
        with self.sessions() as session:
            pending_ids = list(session.execute(
                select(Bet.id)
                .where(Bet.round_id == round_id, Bet.status == BetStatus.PENDING)
                .order_by(Bet.created_at, Bet.id)
            ).scalars())

        failures = 0
        for bet_id in pending_ids:
            try:
                self._settle_bet(game, rnd, bet_id)
            except InvariantViolation as exc:
                failures += 1
                logger.critical("[%s] round #%s held: %s", rnd.game_type, rnd.sequence_number, exc)
            except Exception:
                failures += 1
                logger.exception("[%s] settling bet %s failed, will retry", rnd.game_type, bet_id)

        if failures:
            logger.warning("[%s] round #%s: %s bets unsettled, round stays %s",
                           rnd.game_type, rnd.sequence_number, failures, RoundStatus.RESOLVING)
        else:
            try:
                self.rounds.settle_round(round_id)
            except IncompleteSettlementError:
                logger.warning("[%s] round #%s still has pending bets", rnd.game_type, rnd.sequence_number)
        return self.report(round_id)

    def _settle_bet(self, game: AbstractGame, rnd: Round, bet_id: str) -> Optional[Bet]:
        with self.sessions() as session:
            bet = session.execute(
                select(Bet).where(Bet.id == bet_id).execution_options(populate_existing=True)
            ).scalar_one()
            if bet.status != BetStatus.PENDING:
                return None
            if not self.wallet.has_debit(session, bet.user_id, bet.id, bet.amount):
                raise InvariantViolation(
                    f"Bet {bet.id} has no matching debit of {bet.amount}", bet_id=bet.id, round_id=rnd.id)
            payout = game.payout(bet.selection, rnd.outcome, bet.amount, bet_id=bet.id)
            if payout < 0:
                raise InvariantViolation(f"Negative payout {payout} for bet {bet.id}", bet_id=bet.id)
            status = BetStatus.WON if payout > 0 else BetStatus.LOST

            result = session.execute(
                sa_update(Bet)
                .where(Bet.id == bet.id, Bet.status == BetStatus.PENDING)
                .values(status=status, payout=payout, settled_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                return None
            if payout > 0:
                self.wallet.credit(session, bet.user_id, payout, "payout", bet.id)
            session.commit()
            bet = session.execute(
                select(Bet).where(Bet.id == bet_id).execution_options(populate_existing=True)
            ).scalar_one()

        self.events.publish(BET_RESOLVED, bet_payload(rnd, bet))
        return bet

    def report(self, round_id: str) -> SettlementReport:
        rnd = self.rounds.get_round(round_id)
        with self.sessions() as session:
            rows = session.execute(
                select(
                    Bet.status,
                    func.count(Bet.id),
                    func.coalesce(func.sum(Bet.amount), 0),
                    func.coalesce(func.sum(Bet.payout), 0),
                )
                .where(Bet.round_id == round_id)
                .group_by(Bet.status)
            ).all()

        report = SettlementReport(round_id=rnd.id, sequence_number=rnd.sequence_number, status=rnd.status)
        counters = {
            BetStatus.WON: "winners",
            BetStatus.LOST: "losers",
            BetStatus.CASHED_OUT: "cashed_out",
            BetStatus.VOID: "voided",
            BetStatus.PENDING: "pending",
        }
        for status, count, wagered, paid in rows:
            setattr(report, counters[status], int(count))
            report.total_bets += int(count)
            report.total_wagered += int(wagered)
            report.total_paid += int(paid)
        return report
