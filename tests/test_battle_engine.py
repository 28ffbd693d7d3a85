"""Tests for battle creation, joining and settlement."""

import asyncio

import pytest

from utils.battle_engine import check_job_id, expire_job_id, performance
from utils.errors import (
    AlreadyJoined, BattleNotFound, InsufficientPoints, InsufficientStake, InsufficientWager,
    InvalidTimeframe, PriceUnavailable, SameToken, SelfJoin, SettlementNotDue,
)
from utils.models import BattleStatus
from utils.scheduler import JobKind, JobPayload, JobState

from conftest import ETH, FART, SOL


async def open_battle(engine, ledger, points=30, battle_id="b1", timeframe="5m"):
    await ledger.increment_balance("alice", points)
    return await engine.create_battle(battle_id, "777", "alice", SOL, timeframe, points)


class TestPerformance:
    def test_percentage_change(self):
        assert performance(10.0, 11.0) == pytest.approx(10.0)
        assert performance(5.0, 5.2) == pytest.approx(4.0)
        assert performance(100.0, 50.0) == pytest.approx(-50.0)

    def test_zero_start_rejected(self):
        with pytest.raises(ValueError):
            performance(0.0, 1.0)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_debits_creator_and_schedules_expiry(self, battle_engine, ledger,
                                                              scheduler, clock):
        battle = await open_battle(battle_engine, ledger)

        assert battle.status == BattleStatus.OPEN
        assert battle.end_time == clock() + 300
        assert await ledger.get_balance("alice") == 0

        job = await scheduler.get_job(expire_job_id("b1"))
        assert job.not_before == pytest.approx(clock() + 60)

    @pytest.mark.asyncio
    async def test_end_time_follows_timeframe(self, battle_engine, ledger, clock):
        battle = await open_battle(battle_engine, ledger, timeframe="4h")
        assert battle.end_time - battle.start_time == 4 * 3600

    @pytest.mark.asyncio
    async def test_invalid_input(self, battle_engine, ledger):
        await ledger.increment_balance("alice", 100)
        with pytest.raises(InvalidTimeframe):
            await battle_engine.create_battle("b", "777", "alice", SOL, "2h", 10)
        with pytest.raises(InsufficientWager):
            await battle_engine.create_battle("b", "777", "alice", SOL, "5m", 0)
        with pytest.raises(InsufficientPoints):
            await battle_engine.create_battle("b", "777", "alice", SOL, "5m", 101)
        assert await ledger.get_balance("alice") == 100

    @pytest.mark.asyncio
    async def test_low_stake_message_mentions_stake(self, battle_engine, ledger):
        await ledger.increment_balance("alice", 100)
        with pytest.raises(InsufficientStake) as exc:
            await battle_engine.create_battle("b", "777", "alice", SOL, "5m", 0)
        assert str(exc.value) == "Minimum stake is 1 points (got 0)"


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_snapshots_prices_and_schedules_check(self, battle_engine, ledger,
                                                             scheduler, clock):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        clock.advance(10)

        battle = await battle_engine.join_battle("b1", "bob", ETH)

        assert battle.joined and battle.status == BattleStatus.JOINED
        assert battle.creator_token_price == 100.0
        assert battle.joiner_token_price == 10.0
        assert battle.joined_at == clock()
        assert await ledger.get_balance("bob") == 0

        job = await scheduler.get_job(check_job_id("b1"))
        assert job.not_before == pytest.approx(battle.end_time)

    @pytest.mark.asyncio
    async def test_cannot_join_own_battle(self, battle_engine, ledger):
        await open_battle(battle_engine, ledger)
        with pytest.raises(SelfJoin):
            await battle_engine.join_battle("b1", "alice", ETH)

    @pytest.mark.asyncio
    async def test_cannot_join_with_creator_token(self, battle_engine, ledger, scheduler):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)

        with pytest.raises(SameToken):
            await battle_engine.join_battle("b1", "bob", SOL)

        assert await ledger.get_balance("bob") == 30
        assert not (await ledger.get_battle("b1")).joined
        assert await scheduler.get_job(check_job_id("b1")) is None

    @pytest.mark.asyncio
    async def test_unknown_battle(self, battle_engine):
        with pytest.raises(BattleNotFound):
            await battle_engine.join_battle("missing", "bob", ETH)

    @pytest.mark.asyncio
    async def test_joiner_needs_points(self, battle_engine, ledger):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 29)
        with pytest.raises(InsufficientPoints):
            await battle_engine.join_battle("b1", "bob", ETH)
        assert await ledger.get_balance("bob") == 29

    @pytest.mark.asyncio
    async def test_second_join_rejected(self, battle_engine, ledger):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        await ledger.increment_balance("carol", 30)
        await battle_engine.join_battle("b1", "bob", ETH)

        with pytest.raises(AlreadyJoined):
            await battle_engine.join_battle("b1", "carol", FART)
        assert await ledger.get_balance("carol") == 30

    @pytest.mark.asyncio
    async def test_concurrent_joins_exactly_one_wins(self, battle_engine, ledger):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        await ledger.increment_balance("carol", 30)

        results = await asyncio.gather(
            battle_engine.join_battle("b1", "bob", ETH),
            battle_engine.join_battle("b1", "carol", FART),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], AlreadyJoined)

        battle = await ledger.get_battle("b1")
        assert battle.joiner_id == winners[0].joiner_id
        balances = {u: await ledger.get_balance(u) for u in ("bob", "carol")}
        assert sorted(balances.values()) == [0, 30]
        assert balances[battle.joiner_id] == 0

    @pytest.mark.asyncio
    async def test_price_failure_on_join_refunds_joiner(self, battle_engine, ledger, oracle):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        oracle.failing.add(ETH)

        with pytest.raises(PriceUnavailable):
            await battle_engine.join_battle("b1", "bob", ETH)

        assert await ledger.get_balance("bob") == 30
        assert not (await ledger.get_battle("b1")).joined


class TestCheckResult:
    async def joined_battle(self, engine, ledger, clock, points=30):
        await open_battle(engine, ledger, points=points)
        await ledger.increment_balance("bob", points)
        await engine.join_battle("b1", "bob", ETH)
        clock.advance(300)

    @pytest.mark.asyncio
    async def test_better_performer_takes_pot(self, battle_engine, ledger, oracle, clock, notifier):
        oracle.prices.update({SOL: 10.0, ETH: 5.0})
        await self.joined_battle(battle_engine, ledger, clock)
        oracle.prices.update({SOL: 11.0, ETH: 5.2})

        outcome = await battle_engine.check_result("b1")

        assert outcome.status == BattleStatus.RESOLVED
        assert outcome.winner_id == "alice"
        assert outcome.loser_id == "bob"
        assert outcome.payout == 60
        assert outcome.creator_performance == pytest.approx(10.0)
        assert outcome.joiner_performance == pytest.approx(4.0)
        assert await ledger.get_balance("alice") == 60
        assert await ledger.get_balance("bob") == 0

        battle = await ledger.get_battle("b1")
        assert battle.status == BattleStatus.RESOLVED
        assert battle.creator_end_price == 11.0
        assert notifier.results == [("777", outcome)]

    @pytest.mark.asyncio
    async def test_joiner_can_win(self, battle_engine, ledger, oracle, clock):
        await self.joined_battle(battle_engine, ledger, clock)
        oracle.prices.update({SOL: 90.0, ETH: 10.5})

        outcome = await battle_engine.check_result("b1")
        assert outcome.winner_id == "bob"
        assert await ledger.get_balance("bob") == 60

    @pytest.mark.asyncio
    async def test_exact_tie_is_a_draw_without_payout(self, battle_engine, ledger, oracle, clock):
        await self.joined_battle(battle_engine, ledger, clock)
        oracle.prices.update({SOL: 110.0, ETH: 11.0})

        outcome = await battle_engine.check_result("b1")

        assert outcome.status == BattleStatus.DRAW
        assert outcome.winner_id is None
        assert outcome.payout == 0
        assert await ledger.get_balance("alice") == 0
        assert await ledger.get_balance("bob") == 0

    @pytest.mark.asyncio
    async def test_oracle_failure_refunds_both(self, battle_engine, ledger, oracle, clock, notifier):
        await self.joined_battle(battle_engine, ledger, clock)
        oracle.failing.add(ETH)

        outcome = await battle_engine.check_result("b1")

        assert outcome.status == BattleStatus.REFUNDED
        assert "fake outage" in outcome.error
        assert await ledger.get_balance("alice") == 30
        assert await ledger.get_balance("bob") == 30
        assert (await ledger.get_battle("b1")).status == BattleStatus.REFUNDED
        assert notifier.results[-1][1].status == BattleStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_early_check_raises_not_due(self, battle_engine, ledger, clock):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        await battle_engine.join_battle("b1", "bob", ETH)
        clock.advance(299)

        with pytest.raises(SettlementNotDue):
            await battle_engine.check_result("b1")
        assert (await ledger.get_battle("b1")).status == BattleStatus.JOINED

    @pytest.mark.asyncio
    async def test_check_job_never_due_before_end_time(self, battle_engine, ledger, scheduler, clock):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        clock.advance(10.0004)

        battle = await battle_engine.join_battle("b1", "bob", ETH)

        job = await scheduler.get_job(check_job_id("b1"))
        assert job.not_before >= battle.end_time - 1e-6

    @pytest.mark.asyncio
    async def test_early_fired_check_is_retried_until_settled(self, battle_engine, ledger, oracle,
                                                             scheduler, clock, router):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        clock.advance(10.0004)
        battle = await battle_engine.join_battle("b1", "bob", ETH)

        # A check delivered a fraction of a millisecond before end_time
        clock.now = battle.end_time - 0.0005
        await scheduler.schedule("early-check", JobPayload(JobKind.BATTLE_CHECK, "b1"), 0)
        await scheduler.run_due()

        job = await scheduler.get_job("early-check")
        assert job.state == JobState.WAITING
        assert "SettlementNotDue" in job.last_error
        assert (await ledger.get_battle("b1")).status == BattleStatus.JOINED

        oracle.prices.update({SOL: 120.0, ETH: 11.0})
        clock.advance(5)
        await scheduler.run_due()

        assert (await ledger.get_battle("b1")).status == BattleStatus.RESOLVED
        assert await ledger.get_balance("alice") == 60
        assert await ledger.get_balance("bob") == 0

    @pytest.mark.asyncio
    async def test_settled_only_once(self, battle_engine, ledger, oracle, clock):
        await self.joined_battle(battle_engine, ledger, clock)
        oracle.prices.update({SOL: 150.0})

        assert await battle_engine.check_result("b1") is not None
        assert await battle_engine.check_result("b1") is None
        assert await ledger.get_balance("alice") == 60

    @pytest.mark.asyncio
    async def test_unjoined_or_missing_battle_ignored(self, battle_engine, ledger, clock):
        await open_battle(battle_engine, ledger)
        clock.advance(600)
        assert await battle_engine.check_result("b1") is None
        assert await battle_engine.check_result("missing") is None


class TestExpiry:
    @pytest.mark.asyncio
    async def test_unjoined_battle_expires_with_refund(self, battle_engine, ledger, scheduler,
                                                      clock, notifier, router):
        await open_battle(battle_engine, ledger, points=30)
        assert await ledger.get_balance("alice") == 0

        clock.advance(60)
        assert await scheduler.run_due() == 1

        assert await ledger.get_battle("b1") is None
        assert await ledger.get_balance("alice") == 30
        assert notifier.deleted == [("777", "b1")]
        assert (await scheduler.get_job(expire_job_id("b1"))).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_joined_battle_survives_expiry(self, battle_engine, ledger, clock):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        await battle_engine.join_battle("b1", "bob", ETH)
        clock.advance(60)

        assert await battle_engine.expire_unjoined("b1") is False
        assert (await ledger.get_battle("b1")).joined

    @pytest.mark.asyncio
    async def test_join_after_expiry_fails(self, battle_engine, ledger, clock):
        await open_battle(battle_engine, ledger)
        clock.advance(60)
        await battle_engine.expire_unjoined("b1")

        await ledger.increment_balance("bob", 30)
        with pytest.raises(BattleNotFound):
            await battle_engine.join_battle("b1", "bob", ETH)
        assert await ledger.get_balance("bob") == 30

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_block_expiry(self, battle_engine, ledger, notifier):
        notifier.fail = True
        await open_battle(battle_engine, ledger)

        assert await battle_engine.expire_unjoined("b1")
        assert await ledger.get_balance("alice") == 30


class TestFullLifecycle:
    @pytest.mark.asyncio
    async def test_scheduler_drives_battle_to_resolution(self, battle_engine, ledger, oracle,
                                                         scheduler, clock, router):
        await open_battle(battle_engine, ledger)
        await ledger.increment_balance("bob", 30)
        clock.advance(5)
        await battle_engine.join_battle("b1", "bob", ETH)

        # Expiry fires but the battle is already joined
        clock.advance(55)
        await scheduler.run_due()
        assert (await ledger.get_battle("b1")).status == BattleStatus.JOINED

        oracle.prices.update({SOL: 120.0, ETH: 11.0})
        clock.advance(245)
        await scheduler.run_due()

        battle = await ledger.get_battle("b1")
        assert battle.status == BattleStatus.RESOLVED
        assert battle.winner_id == "alice"
        assert await ledger.get_balance("alice") == 60
