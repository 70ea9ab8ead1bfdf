import asyncio
import logging

from casino_rounds.config import Config
from casino_rounds.engine import RoundEngine
from casino_rounds.log import configure_logging
from casino_rounds.scheduler import run_driver

logger = logging.getLogger(__name__)


def main():
    configure_logging()
    engine = RoundEngine.from_config()
    game_types = engine.games.names()
    if not game_types:
        logger.error("No games enabled. Set ENABLED_GAMES before running.")
        return
    logger.info("Starting round driver for %s (db=%s)", ", ".join(game_types), engine.db_engine.url)
    try:
        asyncio.run(run_driver(engine.driver, game_types, Config.TICK_INTERVAL))
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down gracefully.")
    finally:
        engine.db_engine.dispose()


if __name__ == "__main__":
    main()
