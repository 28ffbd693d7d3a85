"""Pytest configuration and fixtures."""

import asyncio
from pathlib import Path

import pytest

from utils.battle_engine import BattleEngine
from utils.errors import PriceUnavailable
from utils.ledger import Ledger
from utils.prediction_engine import PredictionEngine
from utils.scheduler import DelayScheduler
from utils.worker import JobRouter

SOL = 'So11111111111111111111111111111111111111112'
ETH = '7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs'
FART = '9BB6NFEcjBCtnNLFko2FqVQBq8HHM13kCyYcdQbgpump'

T0 = 1_700_000_000.0


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeOracle:
    """Price oracle serving prices from a dict."""

    def __init__(self, prices=None):
        self.prices = dict(prices or {})
        self.failing = set()
        self.calls = []

    async def get_price(self, token_id: str) -> float:
        self.calls.append(token_id)
        # Yield so concurrent callers interleave like real I/O
        await asyncio.sleep(0)
        if token_id in self.failing or token_id not in self.prices:
            raise PriceUnavailable(token_id, "fake outage")
        return self.prices[token_id]


class FakeNotifier:
    """Records everything the engines try to post."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.results = []
        self.deleted = []

    async def post_result(self, channel_ref, result):
        if self.fail:
            raise RuntimeError("discord is down")
        self.results.append((channel_ref, result))

    async def delete_message(self, channel_ref, message_id):
        if self.fail:
            raise RuntimeError("discord is down")
        self.deleted.append((channel_ref, message_id))


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Provide a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle({SOL: 100.0, ETH: 10.0, FART: 5.0})


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
async def ledger(tmp_db_path) -> Ledger:
    ledger = Ledger(tmp_db_path)
    await ledger.init()
    return ledger


@pytest.fixture
async def scheduler(tmp_db_path, clock) -> DelayScheduler:
    scheduler = DelayScheduler(tmp_db_path, clock=clock)
    await scheduler.init()
    return scheduler


@pytest.fixture
def prediction_engine(ledger, oracle, scheduler, notifier, clock) -> PredictionEngine:
    return PredictionEngine(ledger, oracle, scheduler, notifier, feed_channel_ref="555", clock=clock)


@pytest.fixture
def battle_engine(ledger, oracle, scheduler, notifier, clock) -> BattleEngine:
    return BattleEngine(ledger, oracle, scheduler, notifier, clock=clock)


@pytest.fixture
def router(prediction_engine, battle_engine, scheduler) -> JobRouter:
    router = JobRouter(prediction_engine, battle_engine)
    scheduler.on_fire(router.handle)
    return router
