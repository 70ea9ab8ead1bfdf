import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, func, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, defer, sessionmaker

from casino_rounds.errors import (
    AlreadyResolvedError, ConflictError, IncompleteSettlementError, InvalidTransitionError,
    RoundNotFoundError,
)
from casino_rounds.events import ROUND_LOCKED, ROUND_OPENED, ROUND_SETTLED, EventBus, round_payload
from casino_rounds.fairness import hash_seed, random_seed
from casino_rounds.games import Entry, GameContext, GameRegistry
from casino_rounds.models import Bet, BetStatus, GameControl, Round, RoundStatus, now_utc

logger = logging.getLogger(__name__)


class RoundService:
    """Round lifecycle: OPEN -> LOCKED -> RESOLVING -> SETTLED.

    Every edge is a conditional UPDATE on the current status, so each one is
    taken exactly once no matter how many workers race for it. The loser of
    a race sees rowcount 0 and gets ``InvalidTransitionError``.
    """

    def __init__(self, sessions: sessionmaker, games: GameRegistry, events: EventBus,
                 clock: Callable[[], datetime] = now_utc):
        self.sessions = sessions
        self.games = games
        self.events = events
        self.clock = clock

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def open_round(self, game_type: str, seed: Optional[str] = None) -> Round:
        game = self.games.get(game_type)
        now = self.clock()
        seed = seed or random_seed()
        with self.sessions() as session:
            active = self._active(session, game_type)
            if active is not None:
                raise ConflictError(f"{game_type} already has an active round", round_id=active.id)
            last = session.execute(
                select(func.max(Round.sequence_number)).where(Round.game_type == game_type)
            ).scalar()
            rnd = Round(
                id=uuid.uuid4().hex,
                game_type=game_type,
                sequence_number=(last or 0) + 1,
                status=RoundStatus.OPEN,
                seed=seed,
                seed_hash=hash_seed(seed),
                opened_at=now,
                betting_closes_at=now + timedelta(seconds=game.settings.betting_seconds),
                total_bets=0,
                total_amount=0,
                total_cashouts=0,
            )
            session.add(rnd)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(f"{game_type} already has an active round") from None
        logger.info("[%s] round #%s opened (%s), betting closes %s",
                    game_type, rnd.sequence_number, rnd.id, rnd.betting_closes_at.isoformat())
        self.events.publish(ROUND_OPENED, round_payload(rnd, seedHash=rnd.seed_hash))
        return rnd

    def lock_round(self, round_id: str) -> Round:
        now = self.clock()
        with self.sessions() as session:
            result = session.execute(
                sa_update(Round)
                .where(Round.id == round_id, Round.status == RoundStatus.OPEN)
                .values(status=RoundStatus.LOCKED, locked_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                raise self._transition_error(session, round_id, RoundStatus.LOCKED)
            session.commit()
            rnd = self.load_round(session, round_id)
        logger.info("[%s] round #%s locked with %s bets", rnd.game_type, rnd.sequence_number, rnd.total_bets)
        self.events.publish(ROUND_LOCKED, round_payload(rnd))
        return rnd

    def resolve_round(self, round_id: str, strict: bool = False) -> Dict[str, Any]:
        """Fix the outcome of a LOCKED round and move it to RESOLVING.

        The outcome is written once. A repeated call returns the stored
        outcome, or raises AlreadyResolvedError when ``strict`` is set.
        """
        now = self.clock()
        with self.sessions() as session:
            rnd = self.load_round(session, round_id)
            if rnd is None:
                raise RoundNotFoundError(f"Round {round_id} not found", round_id=round_id)
            if rnd.outcome is not None:
                return self._cached_outcome(rnd, strict)
            if rnd.status != RoundStatus.LOCKED:
                raise InvalidTransitionError(
                    f"Round {round_id} is {rnd.status}, cannot resolve", round_id=round_id, status=rnd.status)

            game = self.games.get(rnd.game_type)
            rows = session.execute(
                select(Bet.id, Bet.user_id, Bet.amount)
                .where(Bet.round_id == round_id, Bet.status != BetStatus.VOID)
                .order_by(Bet.created_at, Bet.id)
            ).all()
            context = GameContext(
                game_type=rnd.game_type,
                round_id=rnd.id,
                sequence_number=rnd.sequence_number,
                entries=tuple(Entry(bet_id, user_id, int(amount)) for bet_id, user_id, amount in rows),
            )
            outcome = game.generate(rnd.seed, context)

            result = session.execute(
                sa_update(Round)
                .where(Round.id == round_id, Round.status == RoundStatus.LOCKED)
                .values(
                    status=RoundStatus.RESOLVING,
                    outcome=outcome,
                    resolution_context=context.to_dict(),
                    resolved_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                rnd = self.load_round(session, round_id)
                if rnd.outcome is not None:
                    return self._cached_outcome(rnd, strict)
                raise InvalidTransitionError(
                    f"Round {round_id} is {rnd.status}, cannot resolve", round_id=round_id, status=rnd.status)
            session.commit()
        logger.info("[%s] round #%s resolved: %s", rnd.game_type, rnd.sequence_number, outcome)
        return outcome

    def settle_round(self, round_id: str) -> Round:
        now = self.clock()
        with self.sessions() as session:
            rnd = self.load_round(session, round_id)
            if rnd is None:
                raise RoundNotFoundError(f"Round {round_id} not found", round_id=round_id)
            if rnd.status == RoundStatus.SETTLED:
                return rnd
            if rnd.status != RoundStatus.RESOLVING:
                raise InvalidTransitionError(
                    f"Round {round_id} is {rnd.status}, cannot settle", round_id=round_id, status=rnd.status)
            pending = self._pending_count(session, round_id)
            if pending:
                raise IncompleteSettlementError(
                    f"Round {round_id} still has {pending} pending bets", round_id=round_id, pending=pending)
            result = session.execute(
                sa_update(Round)
                .where(Round.id == round_id, Round.status == RoundStatus.RESOLVING)
                .values(status=RoundStatus.SETTLED, settled_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                return self.load_round(session, round_id)
            session.commit()
            rnd = self.load_round(session, round_id)
        logger.info("[%s] round #%s settled", rnd.game_type, rnd.sequence_number)
        self.events.publish(ROUND_SETTLED, round_payload(rnd))
        return rnd

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_round(self, round_id: str) -> Round:
        with self.sessions() as session:
            rnd = self.load_round(session, round_id)
        if rnd is None:
            raise RoundNotFoundError(f"Round {round_id} not found", round_id=round_id)
        return rnd

    def get_active_round(self, game_type: str, include_seed: bool = False) -> Optional[Round]:
        """The OPEN/LOCKED/RESOLVING round, if any.

        The seed is left unloaded unless asked for; reading ``seed`` on the
        returned row then raises. Only the driver needs it before settlement.
        """
        self.games.get(game_type)
        with self.sessions() as session:
            return self._active(session, game_type, include_seed)

    def get_current_round(self, game_type: str) -> Optional[Round]:
        """The active round, or the most recent one between rounds. Never carries the seed."""
        self.games.get(game_type)
        with self.sessions() as session:
            rnd = self._active(session, game_type, include_seed=False)
            if rnd is None:
                rnd = session.execute(
                    select(Round).where(Round.game_type == game_type)
                    .options(defer(Round.seed, raiseload=True))
                    .order_by(Round.sequence_number.desc()).limit(1)
                ).scalar_one_or_none()
            return rnd

    def get_round_history(self, game_type: str, limit: int = 20) -> List[Round]:
        self.games.get(game_type)
        with self.sessions() as session:
            return list(session.execute(
                select(Round)
                .where(Round.game_type == game_type, Round.status == RoundStatus.SETTLED)
                .order_by(Round.sequence_number.desc())
                .limit(limit)
            ).scalars())

    def pending_count(self, round_id: str) -> int:
        with self.sessions() as session:
            return self._pending_count(session, round_id)

    # ------------------------------------------------------------------
    # game controls
    # ------------------------------------------------------------------

    def set_paused(self, game_type: str, paused: bool) -> None:
        self.games.get(game_type)
        with self.sessions() as session:
            control = session.get(GameControl, game_type)
            if control is None:
                control = GameControl(game_type=game_type)
                session.add(control)
            control.paused = paused
            control.updated_at = now_utc()
            session.commit()
        logger.info("[%s] %s", game_type, "paused" if paused else "resumed")

    def is_paused(self, game_type: str, session: Optional[Session] = None) -> bool:
        if session is None:
            with self.sessions() as own:
                return self.is_paused(game_type, own)
        control = session.get(GameControl, game_type)
        if control is None:
            return self.games.get(game_type).settings.paused
        return bool(control.paused)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def load_round(session: Session, round_id: str) -> Optional[Round]:
        return session.execute(
            select(Round).where(Round.id == round_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _active(session: Session, game_type: str, include_seed: bool = True) -> Optional[Round]:
        stmt = select(Round).where(Round.game_type == game_type, Round.status.in_(RoundStatus.ACTIVE))
        if not include_seed:
            stmt = stmt.options(defer(Round.seed, raiseload=True))
        return session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    @staticmethod
    def _pending_count(session: Session, round_id: str) -> int:
        return session.execute(
            select(func.count(Bet.id)).where(Bet.round_id == round_id, Bet.status == BetStatus.PENDING)
        ).scalar_one()

    @staticmethod
    def _cached_outcome(rnd: Round, strict: bool) -> Dict[str, Any]:
        if strict:
            raise AlreadyResolvedError(
                f"Round {rnd.id} already resolved", outcome=rnd.outcome, round_id=rnd.id)
        return rnd.outcome

    def _transition_error(self, session: Session, round_id: str, target: str) -> Exception:
        rnd = self.load_round(session, round_id)
        if rnd is None:
            return RoundNotFoundError(f"Round {round_id} not found", round_id=round_id)
        return InvalidTransitionError(
            f"Round {round_id} is {rnd.status}, cannot move to {target}", round_id=round_id, status=rnd.status)
