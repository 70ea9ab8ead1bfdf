from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from casino_rounds.errors import MatchNotFoundError, RoundNotFoundError
from casino_rounds.fairness import hash_seed
from casino_rounds.games import DiceGenerator, GameContext, GameRegistry
from casino_rounds.models import Bet, BetStatus, LudoMatch, MatchStatus, Round, RoundStatus, now_utc

# ---------------------------------------------------------------------
# ANALYTICS / AUDIT
# ---------------------------------------------------------------------

def verify_round(session: Session, games: GameRegistry, round_id: str) -> Dict[str, Any]:
    rnd = session.get(Round, round_id)
    if rnd is None:
        raise RoundNotFoundError(f"Round {round_id} not found", round_id=round_id)
    base = {
        "round_id": rnd.id,
        "game_type": rnd.game_type,
        "sequence_number": rnd.sequence_number,
        "seed_hash": rnd.seed_hash,
    }
    if rnd.status != RoundStatus.SETTLED:
        return {**base, "status": "seed_not_revealed_yet"}

    context = GameContext.from_dict(rnd.resolution_context)
    recomputed = games.get(rnd.game_type).generate(rnd.seed, context)
    return {
        **base,
        "status": "verifiable",
        "seed": rnd.seed,
        "hash_matches": hash_seed(rnd.seed) == rnd.seed_hash,
        "context": rnd.resolution_context,
        "outcome": rnd.outcome,
        "recomputed_outcome": recomputed,
        "outcome_matches": recomputed == rnd.outcome,
    }


def verify_match(session: Session, dice: DiceGenerator, match_id: str) -> Dict[str, Any]:
    match = session.get(LudoMatch, match_id)
    if match is None:
        raise MatchNotFoundError(f"Match {match_id} not found", match_id=match_id)
    base = {"match_id": match.id, "seed_hash": match.seed_hash, "rolls": len(match.dice_history)}
    if match.status == MatchStatus.IN_PROGRESS:
        return {**base, "status": "seed_not_revealed_yet"}

    recomputed = [dice.roll(match.seed, i) for i in range(len(match.dice_history))]
    return {
        **base,
        "status": "verifiable",
        "seed": match.seed,
        "hash_matches": hash_seed(match.seed) == match.seed_hash,
        "dice_history": match.dice_history,
        "dice_match": recomputed == match.dice_history,
        "winner": match.winner,
    }


def compute_rtp_report(session: Session, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    cutoff = (now or now_utc()) - timedelta(days=days)
    rows = session.execute(
        select(Bet.game_type, func.count(Bet.id), func.coalesce(func.sum(Bet.amount), 0),
               func.coalesce(func.sum(Bet.payout), 0))
        .where(Bet.created_at >= cutoff, Bet.status.in_((BetStatus.WON, BetStatus.LOST, BetStatus.CASHED_OUT)))
        .group_by(Bet.game_type)
    ).all()
    report = {}
    for game_type, cnt, wagered, paid in rows:
        wagered = int(wagered); paid = int(paid)
        rtp = paid / wagered if wagered > 0 else 0
        report[game_type] = {"bets": int(cnt), "wagered": wagered, "paid": paid, "rtp": round(rtp, 5)}
    return report
