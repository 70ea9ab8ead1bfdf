import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from casino_rounds.engine import RoundEngine
from casino_rounds.errors import WalletUnavailableError
from casino_rounds.games import GameContext
from casino_rounds.wallet import WalletService


class FlakyWallet(WalletService):
    """Fails credits for chosen references a set number of times."""

    def __init__(self):
        self.failures = {}

    def credit(self, session, user_id, amount, reason, reference):
        if self.failures.get(reference, 0) > 0:
            self.failures[reference] -= 1
            raise WalletUnavailableError("wallet timed out")
        return super().credit(session, user_id, amount, reason, reference)


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_engine(tmp_path, clock):
    created = []

    def _make(overrides=None, wallet=None, enabled=None):
        db_url = f"sqlite:///{tmp_path / f'rounds-{len(created)}.db'}"
        engine = RoundEngine.create(db_url, overrides=overrides, settings_path="", enabled=enabled,
                                    clock=clock, wallet=wallet)
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        engine.db_engine.dispose()


@pytest.fixture
def flaky_wallet():
    return FlakyWallet()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def fund():
    def _fund(engine, user_id, amount):
        return engine.transfer_points("admin", user_id, amount, f"fund-{uuid.uuid4().hex}")
    return _fund


@pytest.fixture
def seed_for():
    """First seed whose generated outcome satisfies ``predicate``."""
    def _seed_for(engine, game_type, predicate, context=None):
        game = engine.games.get(game_type)
        context = context or GameContext(game_type)
        for i in range(20000):
            seed = f"test-seed-{i}"
            if predicate(game.generate(seed, context)):
                return seed
        raise AssertionError(f"no seed found for {game_type}")
    return _seed_for


@pytest.fixture
def key():
    return lambda: uuid.uuid4().hex


@pytest.fixture
def run_together():
    """Start every call at the same instant, one thread each. Exceptions are returned, not raised."""
    def _run(*calls):
        barrier = threading.Barrier(len(calls))

        def go(call):
            barrier.wait()
            try:
                return call()
            except Exception as exc:
                return exc

        with ThreadPoolExecutor(max_workers=len(calls)) as pool:
            return list(pool.map(go, calls))
    return _run
