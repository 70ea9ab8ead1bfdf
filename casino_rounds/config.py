import copy
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------

class Config:
    DB_URL: str = os.getenv("DB_URL", "sqlite:///casino_rounds.db")
    ENV: str = os.getenv("ENV", "dev")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "casino_rounds.log")
    LOG_MAX_BYTES: int = int(os.getenv("LOG_MAX_BYTES", "10485760"))
    LOG_BACKUP_COUNT: int = int(os.getenv("LOG_BACKUP_COUNT", "5"))

    TICK_INTERVAL: float = float(os.getenv("TICK_INTERVAL", "1.0"))
    ENABLED_GAMES: List[str] = json.loads(os.getenv(
        "ENABLED_GAMES",
        '["color_prediction","roulette","aviator","andar_bahar","teen_patti","jackpot"]'
    ))
    GAME_SETTINGS_FILE: Optional[str] = os.getenv("GAME_SETTINGS_FILE")


# ---------------------------------------------------------------------
# PER-GAME SETTINGS (single source of truth for odds and payout tables)
# ---------------------------------------------------------------------

DEFAULT_GAME_SETTINGS: Dict[str, Dict[str, Any]] = {
    "color_prediction": {
        "betting_seconds": 30,
        "min_bet": 10,
        "max_bet": 100000,
        "options": {
            # Draw order matters: the stream index maps onto this order.
            "weights": {"red": 45, "green": 45, "violet": 10},
            "multipliers": {"red": "2", "green": "2", "violet": "4.5"},
        },
    },
    "roulette": {
        "betting_seconds": 30,
        "min_bet": 10,
        "max_bet": 100000,
        "options": {
            # Total return per unit staked (35:1 straight returns 36).
            "payouts": {"straight": "36", "dozen": "3", "column": "3", "even_money": "2"},
        },
    },
    "aviator": {
        "betting_seconds": 7,
        "min_bet": 10,
        "max_bet": 100000,
        "options": {
            "distribution": "house_edge",
            "house_edge": "0.03",
            "max_multiplier": "50",
            "growth_per_second": "0.25",
            "bands": [[0.5, "1.01", "2.5"], [0.8, "2.5", "10"], [1.0, "10", "50"]],
        },
    },
    "andar_bahar": {
        "betting_seconds": 15,
        "min_bet": 10,
        "max_bet": 100000,
        "options": {
            "multipliers": {"andar": "1.9", "bahar": "1.9"},
        },
    },
    "teen_patti": {
        "betting_seconds": 60,
        "min_bet": 10,
        "max_bet": 10000,
        "one_bet_per_user": True,
        "options": {
            "hand_multipliers": {
                "TRAIL": "50",
                "PURE_SEQUENCE": "40",
                "SEQUENCE": "30",
                "COLOR": "20",
                "PAIR": "10",
                "HIGH_CARD": "2",
            },
        },
    },
    "jackpot": {
        "betting_seconds": 60,
        "min_bet": 1,
        "max_bet": 1000000,
        "one_bet_per_user": True,
        "options": {
            "commission_rate": "0.05",
        },
    },
}


# Ludo is a match, not a round: the fee buys a seat against seeded bots.
DEFAULT_LUDO_SETTINGS: Dict[str, Any] = {
    "min_bet": 10,
    "max_bet": 100000,
    "options": {
        "win_multiplier": "2",
        "modes": {"2p": ["P1", "P2"], "4p": ["P1", "P2", "P3", "P4"]},
    },
}


@dataclass
class GameSettings:
    game_type: str
    betting_seconds: int = 30
    min_bet: int = 1
    max_bet: int = 100000
    auto_run: bool = True
    one_bet_per_user: bool = False
    paused: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, game_type: str, data: Dict[str, Any]) -> "GameSettings":
        return cls(
            game_type=game_type,
            betting_seconds=int(data.get("betting_seconds", 30)),
            min_bet=int(data.get("min_bet", 1)),
            max_bet=int(data.get("max_bet", 100000)),
            auto_run=bool(data.get("auto_run", True)),
            one_bet_per_user=bool(data.get("one_bet_per_user", False)),
            paused=bool(data.get("paused", False)),
            options=copy.deepcopy(data.get("options", {})),
        )


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_game_settings(
    overrides: Optional[Dict[str, Dict[str, Any]]] = None,
    path: Optional[str] = None,
    enabled: Optional[List[str]] = None,
) -> Dict[str, GameSettings]:
    """Build per-game settings from the defaults, a JSON file and explicit overrides.

    Override dictionaries are merged key by key. A ``weights`` or
    ``multipliers`` mapping given in an override replaces keys in the
    default mapping but keeps the default's key order for keys it shares.
    """
    raw = copy.deepcopy(DEFAULT_GAME_SETTINGS)
    path = path if path is not None else Config.GAME_SETTINGS_FILE
    if path:
        with open(path, "r", encoding="utf-8") as fh:
            raw = _merge(raw, json.load(fh))
    if overrides:
        raw = _merge(raw, overrides)
    enabled = enabled if enabled is not None else list(raw.keys())
    return {name: GameSettings.from_dict(name, raw[name]) for name in enabled if name in raw}


def load_ludo_settings(overrides: Optional[Dict[str, Any]] = None) -> GameSettings:
    raw = _merge(DEFAULT_LUDO_SETTINGS, overrides or {})
    return GameSettings.from_dict("ludo", raw)
