"""
Battle Settlement Engine
Two users each pick a token; whoever's token performs better over the
timeframe takes the pot.

    open --join--> joined --check after end_time--> resolved | draw | refunded
    open --join window elapses--> (deleted, creator refunded)

Stakes are debited up front (creator on create, joiner on join). The winner is
credited stake * PAYOUT_MULTIPLIER. An exact tie pays nobody and refunds
nobody. If prices can't be fetched at check time both stakes are refunded.
"""
import asyncio
import logging
import math
import time
from typing import Callable, Optional

from utils.errors import (
    AlreadyJoined, BattleNotFound, InsufficientPoints, InsufficientStake,
    InvalidTimeframe, PriceUnavailable, SameToken, SelfJoin, SettlementNotDue,
)
from utils.models import Battle, BattleOutcome, BattleStatus
from utils.scheduler import JobKind, JobPayload
from utils.timeframes import BATTLE_TIMEFRAMES, timeframe_seconds

logger = logging.getLogger('TokenArena.Battles')

JOIN_TIMEOUT_SECONDS = 60
PAYOUT_MULTIPLIER = 2
MIN_STAKE = 1


def check_job_id(battle_id: str) -> str:
    return f"battle-check:{battle_id}"


def expire_job_id(battle_id: str) -> str:
    return f"battle-expire:{battle_id}"


def performance(start_price: float, end_price: float) -> float:
    """Percentage change from start_price to end_price."""
    if start_price <= 0:
        raise ValueError(f"start price must be positive, got {start_price}")
    return (end_price - start_price) / start_price * 100


class BattleEngine:
    """Creates, joins, checks and expires battles."""

    def __init__(self, ledger, oracle, scheduler, notifier=None,
                 clock: Callable[[], float] = time.time,
                 join_timeout: float = JOIN_TIMEOUT_SECONDS):
        self.ledger = ledger
        self.oracle = oracle
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock
        self.join_timeout = join_timeout

    async def create_battle(self, battle_id: str, channel_ref: str, creator_id: str,
                            token: str, timeframe: str, points: int) -> Battle:
        """Open a battle and debit the creator. It expires unless joined within the join window."""
        if timeframe not in BATTLE_TIMEFRAMES:
            raise InvalidTimeframe(timeframe, BATTLE_TIMEFRAMES)
        if points < MIN_STAKE:
            raise InsufficientStake(points, MIN_STAKE)

        now = self.clock()
        battle = Battle(
            id=battle_id,
            channel_ref=channel_ref,
            creator_id=creator_id,
            creator_token=token,
            timeframe=timeframe,
            points=points,
            start_time=now,
            end_time=now + timeframe_seconds(timeframe),
        )
        await self.ledger.place_battle(battle)

        try:
            await self.scheduler.schedule(
                expire_job_id(battle_id),
                JobPayload(JobKind.BATTLE_EXPIRE, battle_id),
                int(self.join_timeout * 1000),
            )
        except Exception as e:
            logger.error(f"Could not schedule expiry for battle {battle_id}, rolling back: {e}")
            await self.ledger.void_battle(battle_id)
            raise

        logger.info(f"Battle {battle_id} created by {creator_id}: {points} points over {timeframe}")
        return battle

    async def join_battle(self, battle_id: str, joiner_id: str, token: str) -> Battle:
        """
        Join an open battle.

        The joined flag is flipped with a compare-and-set, so of two racing
        joiners exactly one wins; the other gets AlreadyJoined and its stake back.
        """
        battle = await self.ledger.get_battle(battle_id)
        if battle is None:
            raise BattleNotFound(battle_id)
        if battle.joined:
            raise AlreadyJoined(battle_id)
        if joiner_id == battle.creator_id:
            raise SelfJoin(battle_id)
        if token == battle.creator_token:
            raise SameToken(battle_id, token)

        balance = await self.ledger.get_balance(joiner_id)
        if balance < battle.points:
            raise InsufficientPoints(battle.points, balance)

        await self.ledger.debit(joiner_id, battle.points)

        try:
            creator_price, joiner_price = await asyncio.gather(
                self.oracle.get_price(battle.creator_token),
                self.oracle.get_price(token),
            )
            joined = await self.ledger.mark_battle_joined(
                battle_id, joiner_id, token, creator_price, joiner_price, self.clock()
            )
        except Exception as e:
            logger.error(f"Join of battle {battle_id} by {joiner_id} failed, refunding: {e}")
            await self.ledger.increment_balance(joiner_id, battle.points)
            raise

        if not joined:
            await self.ledger.increment_balance(joiner_id, battle.points)
            if await self.ledger.get_battle(battle_id) is None:
                logger.info(f"Battle {battle_id} expired before {joiner_id} could join")
                raise BattleNotFound(battle_id)
            logger.info(f"{joiner_id} lost the race to join battle {battle_id}")
            raise AlreadyJoined(battle_id)

        try:
            delay_ms = math.ceil((battle.end_time - self.clock()) * 1000)
            await self.scheduler.schedule(
                check_job_id(battle_id),
                JobPayload(JobKind.BATTLE_CHECK, battle_id),
                max(delay_ms, 0),
            )
        except Exception as e:
            logger.error(f"Could not schedule check for battle {battle_id}, refunding both sides: {e}")
            await self.ledger.refund_battle(battle_id)
            raise

        logger.info(
            f"Battle {battle_id} joined by {joiner_id} "
            f"(snapshot {creator_price} / {joiner_price})"
        )
        return await self.ledger.get_battle(battle_id)

    async def check_result(self, battle_id: str) -> Optional[BattleOutcome]:
        """
        Settle a joined battle once its end time has passed.

        Returns None when there is nothing to do (missing, not joined or
        already settled). Raises SettlementNotDue when called before end_time
        so the scheduler keeps the check job alive and retries it.
        """
        battle = await self.ledger.get_battle(battle_id)
        if battle is None:
            logger.warning(f"Battle {battle_id} not found at check time")
            return None
        if not battle.joined or battle.status != BattleStatus.JOINED:
            return None
        now = self.clock()
        if now < battle.end_time:
            logger.info(f"Battle {battle_id} checked {battle.end_time - now:.3f}s before its end time")
            raise SettlementNotDue(battle_id, battle.end_time - now)

        try:
            creator_end, joiner_end = await asyncio.gather(
                self.oracle.get_price(battle.creator_token),
                self.oracle.get_price(battle.joiner_token),
            )
        except PriceUnavailable as e:
            return await self._refund(battle, str(e))

        creator_perf = performance(battle.creator_token_price, creator_end)
        joiner_perf = performance(battle.joiner_token_price, joiner_end)

        outcome = BattleOutcome(
            battle_id=battle.id,
            channel_ref=battle.channel_ref,
            status=BattleStatus.DRAW,
            creator_id=battle.creator_id,
            joiner_id=battle.joiner_id,
            points=battle.points,
            creator_performance=creator_perf,
            joiner_performance=joiner_perf,
        )
        if creator_perf > joiner_perf:
            outcome.winner_id, outcome.loser_id = battle.creator_id, battle.joiner_id
        elif joiner_perf > creator_perf:
            outcome.winner_id, outcome.loser_id = battle.joiner_id, battle.creator_id

        if outcome.winner_id:
            outcome.status = BattleStatus.RESOLVED
            outcome.payout = battle.points * PAYOUT_MULTIPLIER

        applied = await self.ledger.settle_battle(
            battle_id, outcome.status, outcome.winner_id, outcome.payout, creator_end, joiner_end
        )
        if not applied:
            logger.info(f"Battle {battle_id} was settled concurrently, skipping")
            return None

        if outcome.winner_id:
            logger.info(
                f"Battle {battle_id}: {outcome.winner_id} beats {outcome.loser_id} "
                f"({creator_perf:.2f}% vs {joiner_perf:.2f}%), paid {outcome.payout}"
            )
        else:
            logger.info(f"Battle {battle_id} ended in a draw at {creator_perf:.2f}%")

        await self._notify_result(outcome)
        return outcome

    async def _refund(self, battle: Battle, reason: str) -> Optional[BattleOutcome]:
        logger.error(f"Could not price battle {battle.id} at check time: {reason}")
        refunded = await self.ledger.refund_battle(battle.id)
        if not refunded:
            return None

        outcome = BattleOutcome(
            battle_id=battle.id,
            channel_ref=battle.channel_ref,
            status=BattleStatus.REFUNDED,
            creator_id=battle.creator_id,
            joiner_id=battle.joiner_id,
            points=battle.points,
            error=reason,
        )
        await self._notify_result(outcome)
        return outcome

    async def expire_unjoined(self, battle_id: str) -> bool:
        """Delete a battle nobody joined and refund its creator. No-op once joined."""
        battle = await self.ledger.get_battle(battle_id)
        if battle is None:
            return False
        if battle.joined:
            logger.info(f"Battle {battle_id} was joined, expiry is a no-op")
            return False

        removed = await self.ledger.void_battle(battle_id)
        if not removed:
            logger.info(f"Battle {battle_id} was joined just before expiry")
            return False

        if self.notifier is not None:
            try:
                await self.notifier.delete_message(battle.channel_ref, battle.id)
            except Exception as e:
                logger.error(f"Failed to delete announcement for battle {battle_id}: {e}")
        return True

    async def _notify_result(self, outcome: BattleOutcome):
        if self.notifier is None:
            return
        try:
            await self.notifier.post_result(outcome.channel_ref, outcome)
        except Exception as e:
            logger.error(f"Failed to post result for battle {outcome.battle_id}: {e}")
