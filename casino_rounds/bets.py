import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from casino_rounds.errors import (
    AlreadyResolvedError, BetNotFoundError, DuplicateBetError, GamePausedError, RoundClosedError,
    RoundNotFoundError, TooLateError, ValidationError,
)
from casino_rounds.events import BET_RESOLVED, EventBus, bet_payload
from casino_rounds.games import GameRegistry, floor_2dp, floor_amount
from casino_rounds.idempotency import find_prior, remember, request_fingerprint
from casino_rounds.models import Bet, BetStatus, Round, RoundStatus, now_utc
from casino_rounds.rounds import RoundService
from casino_rounds.wallet import WalletService

logger = logging.getLogger(__name__)

PLACE_BET = "place_bet"
CASH_OUT = "cash_out"


class BetService:
    def __init__(self, sessions: sessionmaker, games: GameRegistry, rounds: RoundService,
                 wallet: WalletService, events: EventBus, clock: Callable[[], datetime] = now_utc):
        self.sessions = sessions
        self.games = games
        self.rounds = rounds
        self.wallet = wallet
        self.events = events
        self.clock = clock

    def place_bet(self, round_id: str, user_id: str, amount: int, selection: Dict[str, Any],
                  idempotency_key: str) -> Bet:
        """Record a stake against an OPEN round and debit the wallet.

        The round counters, the bet row, the debit and the idempotency
        record commit together or not at all.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        fingerprint = request_fingerprint(
            PLACE_BET, {"round_id": round_id, "amount": amount, "selection": selection})

        with self.sessions() as session:
            prior = find_prior(session, user_id, idempotency_key, PLACE_BET, fingerprint)
            if prior is not None:
                return self._get(session, prior)

            rnd = session.get(Round, round_id)
            if rnd is None:
                raise RoundNotFoundError(f"Round {round_id} not found", round_id=round_id)
            game = self.games.get(rnd.game_type)
            amount = game.validate_amount(amount)
            selection = game.validate_selection(selection)
            if self.rounds.is_paused(rnd.game_type, session):
                raise GamePausedError(f"{rnd.game_type} is paused", game_type=rnd.game_type)

            now = self.clock()
            # Takes the round row lock; bets on one round serialise from here.
            result = session.execute(
                sa_update(Round)
                .where(
                    Round.id == round_id,
                    Round.status == RoundStatus.OPEN,
                    Round.betting_closes_at > now,
                )
                .values(total_bets=Round.total_bets + 1, total_amount=Round.total_amount + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise RoundClosedError("Betting is closed for this round", round_id=round_id)

            if game.settings.one_bet_per_user:
                existing = session.execute(
                    select(Bet.id).where(
                        Bet.round_id == round_id, Bet.user_id == user_id, Bet.status != BetStatus.VOID
                    ).limit(1)
                ).scalar_one_or_none()
                if existing is not None:
                    raise DuplicateBetError("Already joined this round", round_id=round_id, bet_id=existing)

            bet = Bet(
                id=uuid.uuid4().hex,
                round_id=round_id,
                game_type=rnd.game_type,
                user_id=user_id,
                amount=amount,
                selection=selection,
                status=BetStatus.PENDING,
                idempotency_key=idempotency_key,
                created_at=now,
            )
            session.add(bet)
            session.flush()
            self.wallet.debit(session, user_id, amount, "bet_placed", bet.id)
            remember(session, user_id, idempotency_key, PLACE_BET, fingerprint, bet.id)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent request with the same key won.
                session.rollback()
                prior = find_prior(session, user_id, idempotency_key, PLACE_BET, fingerprint)
                if prior is None:
                    raise
                return self._get(session, prior)

        logger.info("[%s] bet %s by %s: %s on %s", bet.game_type, bet.id, user_id, amount, selection)
        return bet

    def cash_out(self, bet_id: str, user_id: str, current_multiplier: Any, idempotency_key: str) -> Bet:
        """Take a crash bet off the table at ``current_multiplier``.

        The claimed multiplier may not exceed the live flight multiplier and
        the flight must not have reached the crash point. Once the flight
        has passed a bet's ``auto_cashout`` the bet is taken at that
        threshold whatever was claimed.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        fingerprint = request_fingerprint(CASH_OUT, {"bet_id": bet_id, "multiplier": str(current_multiplier)})
        with self.sessions() as session:
            prior = find_prior(session, user_id, idempotency_key, CASH_OUT, fingerprint)
            if prior is not None:
                return self._get(session, prior)

            bet = session.get(Bet, bet_id)
            if bet is None or bet.user_id != user_id:
                raise BetNotFoundError(f"Bet {bet_id} not found", bet_id=bet_id)
            game = self.games.get(bet.game_type)
            if not game.supports_cashout:
                raise ValidationError(f"{bet.game_type} does not support cash-out", bet_id=bet_id)
            if bet.status != BetStatus.PENDING:
                raise AlreadyResolvedError(f"Bet {bet_id} is {bet.status}", bet_id=bet_id)
            try:
                claimed = floor_2dp(current_multiplier)
                valid = claimed >= Decimal("1.00")
            except ArithmeticError:
                valid = False
            if isinstance(current_multiplier, bool) or not valid:
                raise ValidationError("Multiplier must be at least 1.00", multiplier=current_multiplier)

            rnd = RoundService.load_round(session, bet.round_id)
            now = self.clock()
            if rnd.status not in game.cashout_statuses:
                raise TooLateError("Round already crashed", round_id=rnd.id)
            live = game.flight_multiplier(rnd, now)
            crash = game.crash_point(rnd.seed)
            auto = bet.selection.get("auto_cashout")
            if auto is not None and Decimal(auto) < crash and live >= Decimal(auto):
                claimed = Decimal(auto)
            elif live >= crash:
                raise TooLateError("Round already crashed", round_id=rnd.id)
            elif claimed > live:
                raise ValidationError(
                    f"Multiplier {claimed} is ahead of the flight ({live})", multiplier=str(claimed))

            result = session.execute(
                sa_update(Round)
                .where(Round.id == rnd.id, Round.status.in_(game.cashout_statuses))
                .values(total_cashouts=Round.total_cashouts + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise TooLateError("Round already crashed", round_id=rnd.id)

            payout = floor_amount(bet.amount, claimed)
            result = session.execute(
                sa_update(Bet)
                .where(Bet.id == bet_id, Bet.status == BetStatus.PENDING)
                .values(status=BetStatus.CASHED_OUT, payout=payout,
                        cashout_multiplier=str(claimed), settled_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                # A concurrent retry with the same key may have taken it.
                prior = find_prior(session, user_id, idempotency_key, CASH_OUT, fingerprint)
                if prior is not None:
                    return self._get(session, prior)
                raise AlreadyResolvedError(f"Bet {bet_id} already resolved", bet_id=bet_id)
            self.wallet.credit(session, user_id, payout, "cashout", bet_id)
            remember(session, user_id, idempotency_key, CASH_OUT, fingerprint, bet_id)
            session.commit()
            bet = self._get(session, bet_id)

        logger.info("[%s] bet %s cashed out at %sx for %s", bet.game_type, bet_id, claimed, payout)
        self.events.publish(BET_RESOLVED, bet_payload(rnd, bet))
        return bet

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_pending_by_round(self, round_id: str) -> List[Bet]:
        with self.sessions() as session:
            return list(session.execute(
                select(Bet)
                .where(Bet.round_id == round_id, Bet.status == BetStatus.PENDING)
                .order_by(Bet.created_at, Bet.id)
            ).scalars())

    def list_by_round(self, round_id: str) -> List[Bet]:
        with self.sessions() as session:
            return list(session.execute(
                select(Bet).where(Bet.round_id == round_id).order_by(Bet.created_at, Bet.id)
            ).scalars())

    def get_bet(self, bet_id: str) -> Bet:
        with self.sessions() as session:
            return self._get(session, bet_id)

    def get_user_bets(self, user_id: str, game_type: Optional[str] = None, limit: int = 20) -> List[Bet]:
        stmt = select(Bet).where(Bet.user_id == user_id)
        if game_type is not None:
            self.games.get(game_type)
            stmt = stmt.where(Bet.game_type == game_type)
        with self.sessions() as session:
            return list(session.execute(
                stmt.order_by(Bet.created_at.desc(), Bet.id.desc()).limit(limit)
            ).scalars())

    @staticmethod
    def _get(session: Session, bet_id: str) -> Bet:
        bet = session.execute(
            select(Bet).where(Bet.id == bet_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if bet is None:
            raise BetNotFoundError(f"Bet {bet_id} not found", bet_id=bet_id)
        return bet
