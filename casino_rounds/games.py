"""Outcome generators and payout tables, one class per game type.

``generate(seed, context)`` is a pure function: the same seed and context
always give the same outcome. Everything a generator needs beyond the seed
travels in ``GameContext`` and is stored on the round, so a settled round
can be replayed from what is in the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from casino_rounds.cards import card_rank, evaluate_teen_patti, new_deck
from casino_rounds.config import GameSettings
from casino_rounds.errors import InvalidAmountError, InvalidSelectionError, UnknownGameError
from casino_rounds.fairness import SeededStream
from casino_rounds.models import Round, RoundStatus

CENT = Decimal("0.01")


def floor_amount(amount: int, multiplier: Any) -> int:
    """Integer payout for ``amount`` at ``multiplier``, rounded down."""
    value = Decimal(amount) * Decimal(str(multiplier))
    return int(value.to_integral_value(rounding=ROUND_DOWN))

def floor_2dp(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_DOWN)


class Entry(NamedTuple):
    bet_id: str
    user_id: str
    amount: int


@dataclass(frozen=True)
class GameContext:
    game_type: str
    round_id: str = ""
    sequence_number: int = 0
    entries: Tuple[Entry, ...] = ()
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_type": self.game_type,
            "round_id": self.round_id,
            "sequence_number": self.sequence_number,
            "entries": [e._asdict() for e in self.entries],
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameContext":
        return cls(
            game_type=data["game_type"],
            round_id=data.get("round_id", ""),
            sequence_number=int(data.get("sequence_number", 0)),
            entries=tuple(
                Entry(e["bet_id"], e["user_id"], int(e["amount"])) for e in data.get("entries", [])
            ),
            extra=dict(data.get("extra") or {}),
        )


# ---------------------------------------------------------------------
# GAME INFRASTRUCTURE
# ---------------------------------------------------------------------

class AbstractGame:
    name: str = "abstract"
    supports_cashout: bool = False
    cashout_statuses: Tuple[str, ...] = ()

    def __init__(self, settings: GameSettings):
        self.settings = settings
        self.options = settings.options

    def generate(self, seed: str, context: GameContext) -> Dict[str, Any]:
        raise NotImplementedError

    def validate_selection(self, selection: Dict[str, Any]) -> Dict[str, Any]:
        """Return the normalised selection or raise InvalidSelectionError."""
        raise NotImplementedError

    def payout(self, selection: Dict[str, Any], outcome: Dict[str, Any], amount: int,
               bet_id: Optional[str] = None) -> int:
        raise NotImplementedError

    def validate_amount(self, amount: Any) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmountError("Amount must be a whole number", amount=amount)
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive", amount=amount)
        if amount < self.settings.min_bet:
            raise InvalidAmountError(f"Minimum bet is {self.settings.min_bet}", amount=amount)
        if amount > self.settings.max_bet:
            raise InvalidAmountError(f"Maximum bet is {self.settings.max_bet}", amount=amount)
        return amount

    def ready_to_resolve(self, rnd: Round, now: datetime) -> bool:
        return True

    def stream(self, seed: str) -> SeededStream:
        return SeededStream(seed, self.name)

    @staticmethod
    def _require_dict(selection: Any) -> Dict[str, Any]:
        if not isinstance(selection, dict):
            raise InvalidSelectionError("Selection must be an object")
        return selection


class ColorPredictionGame(AbstractGame):
    name = "color_prediction"

    def generate(self, seed, context):
        weights = self.options["weights"]
        colors = list(weights.keys())
        idx = self.stream(seed).weighted_index([int(weights[c]) for c in colors])
        return {"color": colors[idx]}

    def validate_selection(self, selection):
        color = self._require_dict(selection).get("color")
        if color not in self.options["multipliers"]:
            raise InvalidSelectionError(f"Unknown colour: {color}", selection=selection)
        return {"color": color}

    def payout(self, selection, outcome, amount, bet_id=None):
        if selection["color"] != outcome["color"]:
            return 0
        return floor_amount(amount, self.options["multipliers"][selection["color"]])


RED_NUMBERS = frozenset({1, 3, 5, 7, 9, 12, 14, 16, 18, 19, 21, 23, 25, 27, 30, 32, 34, 36})
ROULETTE_OUTSIDE = {"red", "black", "odd", "even", "low", "high"}
ROULETTE_GROUPS = {"dozen_1", "dozen_2", "dozen_3", "column_1", "column_2", "column_3"}


def roulette_color(number: int) -> str:
    if number == 0:
        return "green"
    return "red" if number in RED_NUMBERS else "black"


class RouletteGame(AbstractGame):
    name = "roulette"

    def generate(self, seed, context):
        number = self.stream(seed).randbelow(37)
        return {"number": number, "color": roulette_color(number)}

    def validate_selection(self, selection):
        bet_type = self._require_dict(selection).get("type")
        if bet_type == "straight":
            number = selection.get("number")
            if isinstance(number, bool) or not isinstance(number, int) or not 0 <= number <= 36:
                raise InvalidSelectionError("Straight bets need a number from 0 to 36", selection=selection)
            return {"type": "straight", "number": number}
        if bet_type in ROULETTE_OUTSIDE or bet_type in ROULETTE_GROUPS:
            return {"type": bet_type}
        raise InvalidSelectionError(f"Unknown bet type: {bet_type}", selection=selection)

    def _wins(self, selection: Dict[str, Any], number: int) -> bool:
        bet_type = selection["type"]
        if bet_type == "straight":
            return selection["number"] == number
        if number == 0:
            return False
        if bet_type in ("red", "black"):
            return roulette_color(number) == bet_type
        if bet_type == "odd":
            return number % 2 == 1
        if bet_type == "even":
            return number % 2 == 0
        if bet_type == "low":
            return number <= 18
        if bet_type == "high":
            return number >= 19
        kind, index = bet_type.split("_")
        index = int(index)
        if kind == "dozen":
            return (number - 1) // 12 + 1 == index
        return (number - 1) % 3 + 1 == index

    def payout(self, selection, outcome, amount, bet_id=None):
        if not self._wins(selection, outcome["number"]):
            return 0
        payouts = self.options["payouts"]
        bet_type = selection["type"]
        if bet_type == "straight":
            ratio = payouts["straight"]
        elif bet_type in ROULETTE_OUTSIDE:
            ratio = payouts["even_money"]
        else:
            ratio = payouts[bet_type.split("_")[0]]
        return floor_amount(amount, ratio)


class CrashGame(AbstractGame):
    """Aviator. The crash point depends on the seed only, so the driver can
    watch the live flight against it before the round is resolved."""
    name = "aviator"
    supports_cashout = True
    cashout_statuses = (RoundStatus.OPEN, RoundStatus.LOCKED)

    @property
    def max_multiplier(self) -> Decimal:
        return Decimal(str(self.options.get("max_multiplier", "50")))

    def crash_point(self, seed: str) -> Decimal:
        stream = self.stream(seed)
        u = stream.uniform()
        if self.options.get("distribution") == "bands":
            point = self._banded_point(u, stream.uniform())
        else:
            point = self.house_edge_point(u)
        return self._clamp(point)

    def house_edge_point(self, u: float) -> Decimal:
        """Crash point for a uniform draw ``u`` in [0, 1); non-decreasing in ``u``."""
        edge = Decimal(str(self.options.get("house_edge", "0.03")))
        return self._clamp(floor_2dp((Decimal(1) - edge) / (Decimal(1) - Decimal(repr(u)))))

    def _clamp(self, point: Decimal) -> Decimal:
        return min(max(Decimal("1.00"), point), self.max_multiplier).quantize(CENT)

    def _banded_point(self, u: float, v: float) -> Decimal:
        for threshold, low, high in self.options["bands"]:
            if u < float(threshold):
                low, high = Decimal(str(low)), Decimal(str(high))
                return floor_2dp(low + (high - low) * Decimal(repr(v)))
        return self.max_multiplier

    def generate(self, seed, context):
        return {"crash_point": str(self.crash_point(seed))}

    def flight_multiplier(self, rnd: Round, now: datetime) -> Decimal:
        if rnd.status == RoundStatus.OPEN or rnd.locked_at is None:
            return Decimal("1.00")
        seconds = max(0.0, (now - rnd.locked_at).total_seconds())
        growth = Decimal(str(self.options.get("growth_per_second", "0.25")))
        return floor_2dp(Decimal(1) + growth * Decimal(repr(seconds)))

    def ready_to_resolve(self, rnd, now):
        return self.flight_multiplier(rnd, now) >= self.crash_point(rnd.seed)

    def validate_selection(self, selection):
        selection = self._require_dict(selection)
        auto = selection.get("auto_cashout")
        if auto is None:
            return {}
        try:
            auto = floor_2dp(auto)
            in_range = Decimal("1.01") <= auto <= self.max_multiplier
        except ArithmeticError:
            raise InvalidSelectionError("auto_cashout must be a number", selection=selection) from None
        if isinstance(selection["auto_cashout"], bool) or not in_range:
            raise InvalidSelectionError(
                f"auto_cashout must be between 1.01 and {self.max_multiplier}", selection=selection)
        return {"auto_cashout": str(auto)}

    def payout(self, selection, outcome, amount, bet_id=None):
        auto = selection.get("auto_cashout")
        if auto is None:
            return 0
        # The plane is gone at the crash point itself.
        if Decimal(auto) >= Decimal(outcome["crash_point"]):
            return 0
        return floor_amount(amount, auto)


class AndarBaharGame(AbstractGame):
    name = "andar_bahar"

    def generate(self, seed, context):
        deck = self.stream(seed).shuffle(new_deck())
        joker = deck[0]
        piles = {"andar": [], "bahar": []}
        side = "andar"
        for card in deck[1:]:
            piles[side].append(card)
            if card_rank(card) == card_rank(joker):
                return {
                    "joker": joker,
                    "andar_cards": piles["andar"],
                    "bahar_cards": piles["bahar"],
                    "winning_side": side,
                    "winning_card": card,
                }
            side = "bahar" if side == "andar" else "andar"
        raise RuntimeError("deck exhausted without a match")

    def validate_selection(self, selection):
        side = self._require_dict(selection).get("side")
        if side not in self.options["multipliers"]:
            raise InvalidSelectionError("Pick andar or bahar", selection=selection)
        return {"side": side}

    def payout(self, selection, outcome, amount, bet_id=None):
        if selection["side"] != outcome["winning_side"]:
            return 0
        return floor_amount(amount, self.options["multipliers"][selection["side"]])


class TeenPattiGame(AbstractGame):
    """One shared three-card hand per round; every stake is paid at the
    multiplier of the hand's category."""
    name = "teen_patti"

    def generate(self, seed, context):
        cards = self.stream(seed).shuffle(new_deck())[:3]
        hand = evaluate_teen_patti(cards)
        return {"cards": cards, "hand_rank": hand.rank, "hand_name": hand.name, "strength": hand.strength}

    def validate_selection(self, selection):
        self._require_dict(selection)
        return {}

    def payout(self, selection, outcome, amount, bet_id=None):
        return floor_amount(amount, self.options["hand_multipliers"][outcome["hand_rank"]])


class JackpotGame(AbstractGame):
    """Stake-weighted draw over the pot. The winner takes the pot less commission."""
    name = "jackpot"

    def generate(self, seed, context):
        pot = sum(e.amount for e in context.entries)
        if pot <= 0:
            return {"winner_bet_id": None, "winner_user_id": None, "pot": 0, "commission": 0, "prize": 0}
        ticket = self.stream(seed).randbelow(pot)
        cumulative = 0
        winner = context.entries[-1]
        for entry in context.entries:
            cumulative += entry.amount
            if ticket < cumulative:
                winner = entry
                break
        commission = floor_amount(pot, self.options["commission_rate"])
        return {
            "winner_bet_id": winner.bet_id,
            "winner_user_id": winner.user_id,
            "ticket": ticket,
            "pot": pot,
            "commission": commission,
            "prize": pot - commission,
        }

    def validate_selection(self, selection):
        self._require_dict(selection)
        return {}

    def payout(self, selection, outcome, amount, bet_id=None):
        if bet_id is None or bet_id != outcome["winner_bet_id"]:
            return 0
        return int(outcome["prize"])


class DiceGenerator:
    """Seeded dice for Ludo. Each roll index is an independent draw."""
    name = "dice"

    def roll(self, seed: str, roll_index: int = 0) -> int:
        return SeededStream(seed, f"{self.name}:{roll_index}").randbelow(6) + 1


GAME_CLASSES: Dict[str, type] = {
    cls.name: cls
    for cls in (ColorPredictionGame, RouletteGame, CrashGame, AndarBaharGame, TeenPattiGame, JackpotGame)
}


class GameRegistry:
    def __init__(self, games: Dict[str, AbstractGame]):
        self._games = games

    def get(self, game_type: str) -> AbstractGame:
        try:
            return self._games[game_type]
        except KeyError:
            raise UnknownGameError(f"Game unsupported: {game_type}", game_type=game_type) from None

    def names(self) -> List[str]:
        return list(self._games.keys())

    def __contains__(self, game_type: str) -> bool:
        return game_type in self._games


def build_registry(settings_map: Dict[str, GameSettings]) -> GameRegistry:
    games = {}
    for game_type, settings in settings_map.items():
        if game_type not in GAME_CLASSES:
            raise UnknownGameError(f"No generator for {game_type}", game_type=game_type)
        games[game_type] = GAME_CLASSES[game_type](settings)
    return GameRegistry(games)
