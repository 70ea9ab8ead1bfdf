from casino_rounds.engine import RoundEngine
from casino_rounds.settlement import SettlementReport

__all__ = ["RoundEngine", "SettlementReport"]
