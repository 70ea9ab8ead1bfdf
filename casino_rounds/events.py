import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

ROUND_OPENED = "round_opened"
ROUND_LOCKED = "round_locked"
ROUND_SETTLED = "round_settled"
BET_RESOLVED = "bet_resolved"
MATCH_COMPLETED = "match_completed"

EVENT_KINDS = (ROUND_OPENED, ROUND_LOCKED, ROUND_SETTLED, BET_RESOLVED, MATCH_COMPLETED)

Subscriber = Callable[[str, Dict[str, Any]], None]


def round_payload(rnd, **extra) -> Dict[str, Any]:
    payload = {
        "roundId": rnd.id,
        "gameType": rnd.game_type,
        "sequenceNumber": rnd.sequence_number,
        "status": rnd.status,
        "outcome": rnd.outcome,
    }
    payload.update(extra)
    return payload

def bet_payload(rnd, bet) -> Dict[str, Any]:
    return round_payload(rnd, status=bet.status, betId=bet.id, userId=bet.user_id, payout=bet.payout)

def match_payload(match) -> Dict[str, Any]:
    return {
        "matchId": match.id,
        "gameType": "ludo",
        "userId": match.user_id,
        "status": match.status,
        "winner": match.winner,
        "payout": match.payout,
    }


class EventBus:
    """In-process fan-out. Callers publish only after their transaction has
    committed; a subscriber that raises is logged and skipped."""

    def __init__(self):
        self._subscribers: List[Tuple[Subscriber, Optional[Set[str]]]] = []

    def subscribe(self, callback: Subscriber, kinds: Optional[Iterable[str]] = None) -> None:
        self._subscribers.append((callback, set(kinds) if kinds is not None else None))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(cb, k) for cb, k in self._subscribers if cb is not callback]

    def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        for callback, kinds in list(self._subscribers):
            if kinds is not None and kind not in kinds:
                continue
            try:
                callback(kind, payload)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, kind)
