from typing import List, NamedTuple, Sequence

RANKS = ["A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K"]
SUITS = ["S", "H", "D", "C"]

RANK_VALUES = {"A": 14, "K": 13, "Q": 12, "J": 11, "10": 10, "9": 9, "8": 8,
               "7": 7, "6": 6, "5": 5, "4": 4, "3": 3, "2": 2}

# Teen Patti hand categories, best first
TRAIL = "TRAIL"
PURE_SEQUENCE = "PURE_SEQUENCE"
SEQUENCE = "SEQUENCE"
COLOR = "COLOR"
PAIR = "PAIR"
HIGH_CARD = "HIGH_CARD"

HAND_ORDER = {HIGH_CARD: 1, PAIR: 2, COLOR: 3, SEQUENCE: 4, PURE_SEQUENCE: 5, TRAIL: 6}
HAND_NAMES = {
    TRAIL: "Trail",
    PURE_SEQUENCE: "Pure Sequence",
    SEQUENCE: "Sequence",
    COLOR: "Color",
    PAIR: "Pair",
    HIGH_CARD: "High Card",
}


class HandRank(NamedTuple):
    rank: str
    name: str
    strength: int


def new_deck() -> List[str]:
    return [f"{r}{s}" for s in SUITS for r in RANKS]

def card_rank(card: str) -> str:
    return card[:-1]

def card_suit(card: str) -> str:
    return card[-1]

def card_value(card: str) -> int:
    return RANK_VALUES[card_rank(card)]


def evaluate_teen_patti(cards: Sequence[str]) -> HandRank:
    if len(cards) != 3:
        raise ValueError("Teen Patti hands have exactly three cards")
    values = sorted((card_value(c) for c in cards), reverse=True)
    suits = {card_suit(c) for c in cards}
    flush = len(suits) == 1
    # A-3-2 counts as a sequence
    sequence = (values[0] == values[1] + 1 == values[2] + 2) or values == [14, 3, 2]

    if values[0] == values[1] == values[2]:
        rank, strength = TRAIL, values[0]
    elif sequence and flush:
        rank, strength = PURE_SEQUENCE, values[0]
    elif sequence:
        rank, strength = SEQUENCE, values[0]
    elif flush:
        rank, strength = COLOR, values[0] * 100 + values[1] * 10 + values[2]
    elif values[0] == values[1] or values[1] == values[2]:
        pair = values[1]
        kicker = values[2] if values[0] == values[1] else values[0]
        rank, strength = PAIR, pair * 10 + kicker
    else:
        rank, strength = HIGH_CARD, values[0] * 100 + values[1] * 10 + values[2]
    return HandRank(rank, HAND_NAMES[rank], HAND_ORDER[rank] * 10000 + strength)
