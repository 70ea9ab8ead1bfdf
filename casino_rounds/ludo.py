"""Ludo matches: one player (seat P1) against seeded bots.

Every die comes from ``DiceGenerator.roll(seed, index)`` where the index is
the roll's position in the match's dice history, so a finished match can be
replayed from its seed. Bots always take their best-scoring move, which
keeps the replay free of any other randomness.

Token progress is counted from the seat's start square: -1 is base, 0..50
is the shared track, 51..55 the home column and 56 home. Home needs an
exact roll.
"""

import copy
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, defer, sessionmaker

from casino_rounds.config import GameSettings, load_ludo_settings
from casino_rounds.errors import (
    InvalidAmountError, InvalidSelectionError, InvalidTransitionError, MatchNotFoundError, StaleStateError,
    ValidationError,
)
from casino_rounds.events import MATCH_COMPLETED, EventBus, match_payload
from casino_rounds.fairness import hash_seed, random_seed
from casino_rounds.games import DiceGenerator, floor_amount
from casino_rounds.idempotency import find_prior, remember, request_fingerprint
from casino_rounds.models import LudoMatch, LudoMatchLog, MatchStatus, now_utc
from casino_rounds.wallet import WalletService

logger = logging.getLogger(__name__)

BASE = -1
LAST_TRACK = 50
HOME = 56
TOKENS = 4
TRACK_SQUARES = 52
START_SQUARES = {"P1": 1, "P2": 14, "P3": 27, "P4": 40}
SAFE_SQUARES = frozenset({1, 9, 14, 22, 27, 35, 40, 48})
HUMAN = "P1"
MAX_SIXES = 3

ROLLING = "rolling"
MOVING = "moving"
FINISHED = "finished"

START_MATCH = "ludo_start"
ROLL_DICE = "ludo_roll"
MAKE_MOVE = "ludo_move"


class Move(NamedTuple):
    token: int
    from_progress: int
    to_progress: int
    captures: bool
    finishes: bool


# ---------------------------------------------------------------------
# BOARD RULES
# ---------------------------------------------------------------------

def new_board(seats: Sequence[str]) -> Dict[str, List[int]]:
    return {seat: [BASE] * TOKENS for seat in seats}

def square(seat: str, progress: int) -> Optional[int]:
    """Shared-track square of a token, or None while in base or the home column."""
    if progress == BASE or progress > LAST_TRACK:
        return None
    return (START_SQUARES[seat] + progress) % TRACK_SQUARES

def _opponents_on(board: Dict[str, List[int]], seat: str, target: int) -> List[Tuple[str, int]]:
    return [
        (other, i)
        for other, tokens in board.items() if other != seat
        for i, progress in enumerate(tokens) if square(other, progress) == target
    ]

def legal_moves(board: Dict[str, List[int]], seat: str, dice: int) -> List[Move]:
    moves = []
    for i, progress in enumerate(board[seat]):
        if progress == BASE:
            if dice != 6:
                continue
            to = 0
        elif progress == HOME:
            continue
        else:
            to = progress + dice
            if to > HOME:
                continue
        target = square(seat, to)
        captures = (target is not None and target not in SAFE_SQUARES
                    and bool(_opponents_on(board, seat, target)))
        moves.append(Move(i, progress, to, captures, to == HOME))
    return moves

def apply_move(board: Dict[str, List[int]], seat: str, move: Move) -> Tuple[Dict[str, List[int]], List[Tuple[str, int]]]:
    """New board after ``move`` plus the opponent tokens it sent back to base."""
    board = copy.deepcopy(board)
    board[seat][move.token] = move.to_progress
    captured = []
    if move.captures:
        captured = _opponents_on(board, seat, square(seat, move.to_progress))
        for other, i in captured:
            board[other][i] = BASE
    return board, captured

def has_won(board: Dict[str, List[int]], seat: str) -> bool:
    return all(progress == HOME for progress in board[seat])

def bot_move(moves: List[Move]) -> Move:
    """Finish first, then capture, then the longest step; the lowest token breaks ties."""
    def score(m: Move) -> int:
        step = 1 if m.from_progress == BASE else m.to_progress - m.from_progress
        return (100 if m.finishes else 0) + (50 if m.captures else 0) + step
    return max(moves, key=lambda m: (score(m), -m.token))

def state_hash(state) -> str:
    canonical = json.dumps({
        "board": state.board,
        "current_player": state.current_player,
        "phase": state.phase,
        "last_roll": state.last_roll,
        "rolls": len(state.dice_history),
    }, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class MatchState:
    """Working copy of a match while one request plays it forward."""
    board: Dict[str, List[int]]
    current_player: str
    phase: str
    last_roll: Optional[int]
    consecutive_sixes: int
    dice_history: List[int]
    winner: Optional[str] = None

    @classmethod
    def from_match(cls, match: LudoMatch) -> "MatchState":
        return cls(
            board=copy.deepcopy(match.board),
            current_player=match.current_player,
            phase=match.phase,
            last_roll=match.last_roll,
            consecutive_sixes=match.consecutive_sixes,
            dice_history=list(match.dice_history),
            winner=match.winner,
        )

    def values(self) -> Dict[str, Any]:
        return {
            "board": self.board,
            "current_player": self.current_player,
            "phase": self.phase,
            "last_roll": self.last_roll,
            "consecutive_sixes": self.consecutive_sixes,
            "dice_history": self.dice_history,
            "winner": self.winner,
        }


# ---------------------------------------------------------------------
# MATCH SERVICE
# ---------------------------------------------------------------------

class LudoService:
    def __init__(self, sessions: sessionmaker, wallet: WalletService, events: EventBus,
                 clock: Callable[[], datetime] = now_utc, settings: Optional[GameSettings] = None,
                 dice: Optional[DiceGenerator] = None):
        self.sessions = sessions
        self.wallet = wallet
        self.events = events
        self.clock = clock
        self.settings = settings or load_ludo_settings()
        self.dice = dice or DiceGenerator()

    def start_match(self, user_id: str, entry_fee: int, mode: str, idempotency_key: str,
                    seed: Optional[str] = None) -> LudoMatch:
        """Debit the entry fee and seat the player against bots."""
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        seats = self._seats(mode)
        entry_fee = self._validate_fee(entry_fee)
        fingerprint = request_fingerprint(START_MATCH, {"entry_fee": entry_fee, "mode": mode})

        with self.sessions() as session:
            prior = find_prior(session, user_id, idempotency_key, START_MATCH, fingerprint)
            if prior is not None:
                return self._load(session, prior, user_id)
            seed = seed or random_seed()
            match = LudoMatch(
                id=uuid.uuid4().hex,
                user_id=user_id,
                mode=mode,
                entry_fee=entry_fee,
                status=MatchStatus.IN_PROGRESS,
                seed=seed,
                seed_hash=hash_seed(seed),
                board=new_board(seats),
                current_player=HUMAN,
                phase=ROLLING,
                last_roll=None,
                consecutive_sixes=0,
                dice_history=[],
                version=0,
                created_at=self.clock(),
            )
            session.add(match)
            session.flush()
            self.wallet.debit(session, user_id, entry_fee, "ludo_entry", match.id)
            remember(session, user_id, idempotency_key, START_MATCH, fingerprint, match.id)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                prior = find_prior(session, user_id, idempotency_key, START_MATCH, fingerprint)
                if prior is None:
                    raise
                return self._load(session, prior, user_id)

        logger.info("[ludo] match %s started by %s (%s, fee %s)", match.id, user_id, mode, entry_fee)
        return match

    def roll_dice(self, match_id: str, user_id: str, idempotency_key: str) -> Dict[str, Any]:
        """Roll for the player. With no legal move the turn passes and the bots play on."""
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        fingerprint = request_fingerprint(ROLL_DICE, {"match_id": match_id})

        with self.sessions() as session:
            prior = find_prior(session, user_id, idempotency_key, ROLL_DICE, fingerprint)
            if prior is not None:
                return self._logged_result(session, prior)
            match = self._load(session, match_id, user_id)
            self._require_turn(match, ROLLING)
            seats = self._seats(match.mode)
            state = MatchState.from_match(match)

            value = self._roll(state, match.seed)
            moves = [] if state.consecutive_sixes >= MAX_SIXES else legal_moves(state.board, HUMAN, value)
            if moves:
                state.phase = MOVING
                state.last_roll = value
            else:
                self._pass_turn(state, seats)
            result = {
                "match_id": match.id,
                "dice": value,
                "legal_moves": [m._asdict() for m in moves],
                "bot_turns": self._bot_turns(state, match.seed, seats),
            }
            return self._commit(session, match, state, idempotency_key, ROLL_DICE, fingerprint, "roll", result)

    def make_move(self, match_id: str, user_id: str, token: int, expected_hash: str,
                  idempotency_key: str) -> Dict[str, Any]:
        """Move one of the player's tokens by the last roll.

        ``expected_hash`` is the ``state_hash`` the client last saw; a
        mismatch raises StaleStateError.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        fingerprint = request_fingerprint(
            MAKE_MOVE, {"match_id": match_id, "token": token, "state_hash": expected_hash})

        with self.sessions() as session:
            prior = find_prior(session, user_id, idempotency_key, MAKE_MOVE, fingerprint)
            if prior is not None:
                return self._logged_result(session, prior)
            match = self._load(session, match_id, user_id)
            self._require_turn(match, MOVING)
            if state_hash(match) != expected_hash:
                raise StaleStateError("Board has changed, refresh and retry", match_id=match_id)
            seats = self._seats(match.mode)
            state = MatchState.from_match(match)

            moves = {m.token: m for m in legal_moves(state.board, HUMAN, state.last_roll)}
            if isinstance(token, bool) or not isinstance(token, int) or token not in moves:
                raise InvalidSelectionError(f"Token {token} cannot move {state.last_roll}", token=token)
            move = moves[token]
            captured = self._play(state, seats, HUMAN, state.last_roll, move)
            bot_turns = self._bot_turns(state, match.seed, seats)
            result = {
                "match_id": match.id,
                "move": move._asdict(),
                "captured": [list(c) for c in captured],
                "bot_turns": bot_turns,
            }
            return self._commit(session, match, state, idempotency_key, MAKE_MOVE, fingerprint, "move", result)

    def get_match(self, match_id: str, user_id: Optional[str] = None) -> LudoMatch:
        """The match without its seed, which would predict the remaining dice."""
        with self.sessions() as session:
            match = session.execute(
                select(LudoMatch).where(LudoMatch.id == match_id).options(defer(LudoMatch.seed, raiseload=True))
            ).scalar_one_or_none()
        if match is None or (user_id is not None and match.user_id != user_id):
            raise MatchNotFoundError(f"Match {match_id} not found", match_id=match_id)
        return match

    # ------------------------------------------------------------------
    # turn mechanics
    # ------------------------------------------------------------------

    def _roll(self, state: MatchState, seed: str) -> int:
        value = self.dice.roll(seed, len(state.dice_history))
        state.dice_history.append(value)
        state.consecutive_sixes = state.consecutive_sixes + 1 if value == 6 else 0
        return value

    @staticmethod
    def _pass_turn(state: MatchState, seats: List[str]) -> None:
        state.current_player = seats[(seats.index(state.current_player) + 1) % len(seats)]
        state.phase = ROLLING
        state.last_roll = None
        state.consecutive_sixes = 0

    def _play(self, state: MatchState, seats: List[str], seat: str, dice: int, move: Move) -> List[Tuple[str, int]]:
        state.board, captured = apply_move(state.board, seat, move)
        if has_won(state.board, seat):
            state.winner = seat
            state.phase = FINISHED
            state.last_roll = None
        elif dice == 6 or captured or move.finishes:
            # Same seat rolls again.
            state.phase = ROLLING
            state.last_roll = None
        else:
            self._pass_turn(state, seats)
        return captured

    def _bot_turns(self, state: MatchState, seed: str, seats: List[str]) -> List[Dict[str, Any]]:
        turns = []
        while state.winner is None and state.current_player != HUMAN:
            seat = state.current_player
            value = self._roll(state, seed)
            turn = {"seat": seat, "dice": value, "move": None, "captured": []}
            if state.consecutive_sixes >= MAX_SIXES:
                turn["action"] = "forfeit"
                self._pass_turn(state, seats)
            else:
                moves = legal_moves(state.board, seat, value)
                if not moves:
                    turn["action"] = "roll"
                    self._pass_turn(state, seats)
                else:
                    move = bot_move(moves)
                    turn["action"] = "move"
                    turn["move"] = move._asdict()
                    turn["captured"] = [list(c) for c in self._play(state, seats, seat, value, move)]
            turns.append(turn)
        return turns

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _commit(self, session: Session, match: LudoMatch, state: MatchState, idempotency_key: str,
                action: str, fingerprint: str, log_action: str, result: Dict[str, Any]) -> Dict[str, Any]:
        """Write ``state`` if the match is unchanged since it was read, with
        the log rows, any prize and the idempotency record."""
        now = self.clock()
        values = state.values()
        status, payout = MatchStatus.IN_PROGRESS, None
        if state.winner is not None:
            won = state.winner == HUMAN
            status = MatchStatus.WON if won else MatchStatus.LOST
            payout = floor_amount(match.entry_fee, self.settings.options["win_multiplier"]) if won else 0
            values.update(status=status, payout=payout, completed_at=now)

        updated = session.execute(
            sa_update(LudoMatch)
            .where(LudoMatch.id == match.id, LudoMatch.version == match.version,
                   LudoMatch.status == MatchStatus.IN_PROGRESS)
            .values(version=LudoMatch.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 0:
            session.rollback()
            prior = find_prior(session, match.user_id, idempotency_key, action, fingerprint)
            if prior is not None:
                return self._logged_result(session, prior)
            raise StaleStateError("Match changed while the move was played", match_id=match.id)

        result.update(
            status=status,
            current_player=state.current_player,
            phase=state.phase,
            winner=state.winner,
            payout=payout,
            state_hash=state_hash(state),
        )
        entry = LudoMatchLog(match_id=match.id, actor=HUMAN, action=log_action, payload=result, created_at=now)
        session.add(entry)
        for turn in result["bot_turns"]:
            session.add(LudoMatchLog(
                match_id=match.id, actor=turn["seat"], action=turn["action"], payload=turn, created_at=now))
        session.flush()
        if payout:
            self.wallet.credit(session, match.user_id, payout, "ludo_win", match.id)
        remember(session, match.user_id, idempotency_key, action, fingerprint, str(entry.id))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            prior = find_prior(session, match.user_id, idempotency_key, action, fingerprint)
            if prior is None:
                raise
            return self._logged_result(session, prior)

        if state.winner is not None:
            match = self._load(session, match.id, match.user_id)
            logger.info("[ludo] match %s over: %s won, payout %s", match.id, state.winner, payout)
            self.events.publish(MATCH_COMPLETED, match_payload(match))
        return result

    @staticmethod
    def _load(session: Session, match_id: str, user_id: str) -> LudoMatch:
        match = session.execute(
            select(LudoMatch).where(LudoMatch.id == match_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if match is None or match.user_id != user_id:
            raise MatchNotFoundError(f"Match {match_id} not found", match_id=match_id)
        return match

    @staticmethod
    def _logged_result(session: Session, log_id: str) -> Dict[str, Any]:
        return session.execute(
            select(LudoMatchLog.payload).where(LudoMatchLog.id == int(log_id))
        ).scalar_one()

    @staticmethod
    def _require_turn(match: LudoMatch, phase: str) -> None:
        if match.status != MatchStatus.IN_PROGRESS:
            raise InvalidTransitionError(f"Match {match.id} is {match.status}", match_id=match.id)
        if match.current_player != HUMAN or match.phase != phase:
            raise InvalidTransitionError(
                f"Match {match.id} is waiting for {match.phase}, not {phase}", match_id=match.id)

    def _seats(self, mode: str) -> List[str]:
        modes = self.settings.options["modes"]
        if mode not in modes:
            raise ValidationError(f"Unknown mode: {mode}", mode=mode)
        return list(modes[mode])

    def _validate_fee(self, entry_fee: Any) -> int:
        if isinstance(entry_fee, bool) or not isinstance(entry_fee, int) or entry_fee <= 0:
            raise InvalidAmountError("Entry fee must be a positive whole number", amount=entry_fee)
        if not self.settings.min_bet <= entry_fee <= self.settings.max_bet:
            raise InvalidAmountError(
                f"Entry fee must be between {self.settings.min_bet} and {self.settings.max_bet}", amount=entry_fee)
        return entry_fee
