import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from casino_rounds.errors import ConflictError, InvalidTransitionError
from casino_rounds.games import GameRegistry
from casino_rounds.models import RoundStatus, now_utc
from casino_rounds.rounds import RoundService
from casino_rounds.settlement import SettlementProcessor

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    game_type: str
    round_id: Optional[str] = None
    actions: List[str] = field(default_factory=list)
    error: Optional[str] = None


class RoundDriver:
    """Advances each game's current round as far as the clock allows.

    ``tick`` reads everything it needs from the database, so any number of
    ticks (from one loop or several processes) can run against the same
    game. A step another tick already took shows up as
    InvalidTransitionError and is skipped.
    """

    def __init__(self, games: GameRegistry, rounds: RoundService, settlement: SettlementProcessor,
                 clock: Callable[[], datetime] = now_utc):
        self.games = games
        self.rounds = rounds
        self.settlement = settlement
        self.clock = clock

    def tick(self, game_type: str) -> TickReport:
        report = TickReport(game_type=game_type)
        try:
            self._advance(game_type, report)
        except Exception as exc:
            report.error = f"{type(exc).__name__}: {exc}"
            logger.exception("[%s] tick failed, round left for the next tick", game_type)
        return report

    def _advance(self, game_type: str, report: TickReport) -> None:
        game = self.games.get(game_type)
        rnd = self.rounds.get_active_round(game_type, include_seed=True)

        if rnd is not None:
            report.round_id = rnd.id
            now = self.clock()
            if rnd.status == RoundStatus.OPEN:
                if now < rnd.betting_closes_at:
                    return
                if self._step(self.rounds.lock_round, rnd.id):
                    report.actions.append("locked")
                rnd = self.rounds.get_round(rnd.id)

            if rnd.status == RoundStatus.LOCKED:
                if not game.ready_to_resolve(rnd, self.clock()):
                    return
                if self._step(self.rounds.resolve_round, rnd.id):
                    report.actions.append("resolved")
                rnd = self.rounds.get_round(rnd.id)

            if rnd.status == RoundStatus.RESOLVING:
                settled = self.settlement.settle(rnd.id)
                if settled.status != RoundStatus.SETTLED:
                    return
                report.actions.append("settled")

        if not game.settings.auto_run or self.rounds.is_paused(game_type):
            return
        try:
            opened = self.rounds.open_round(game_type)
        except ConflictError:
            logger.debug("[%s] another tick opened the next round", game_type)
            return
        report.round_id = opened.id
        report.actions.append("opened")

    @staticmethod
    def _step(transition, round_id: str) -> bool:
        try:
            transition(round_id)
        except InvalidTransitionError:
            logger.debug("round %s already advanced by another tick", round_id)
            return False
        return True


async def run_driver(driver: RoundDriver, game_types: Iterable[str], interval: float = 1.0) -> None:
    """One timer loop per game type, each ticking in a worker thread."""
    await asyncio.gather(*(_game_loop(driver, game_type, interval) for game_type in game_types))


async def _game_loop(driver: RoundDriver, game_type: str, interval: float) -> None:
    logger.info("[%s] driver started, tick every %ss", game_type, interval)
    while True:
        try:
            report = await asyncio.to_thread(driver.tick, game_type)
            if report.actions:
                logger.debug("[%s] %s", game_type, ", ".join(report.actions))
        except Exception:
            logger.exception("[%s] driver loop error", game_type)
        await asyncio.sleep(interval)
