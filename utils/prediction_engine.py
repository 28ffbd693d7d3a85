"""
Prediction Settlement Engine
A single user bets that a token goes UP or DOWN over a timeframe.

created -> pending (resolve job queued) -> resolved, nothing after that.
The wager is debited when the bet is placed; a win credits twice the wager,
a loss credits nothing. An unchanged price is a loss.
"""
import logging
import math
import time
import uuid
from typing import Callable, Optional

from utils.errors import InsufficientPoints, InsufficientWager, InvalidTimeframe, PredictionNotFound, WagerTooHigh
from utils.models import Direction, Prediction
from utils.scheduler import JobKind, JobPayload
from utils.timeframes import MAX_WAGER_BY_TIMEFRAME, PREDICTION_TIMEFRAMES, timeframe_seconds
from utils.tokens import token_name

logger = logging.getLogger('TokenArena.Predictions')

MIN_WAGER = 1
WIN_PAYOUT_MULTIPLIER = 2


def prediction_job_id(prediction_id: str) -> str:
    return f"prediction:{prediction_id}"


def is_winning(direction: Direction, price_at_start: float, price_at_end: float) -> bool:
    if direction == Direction.UP:
        return price_at_end > price_at_start
    return price_at_end < price_at_start


def prediction_payout(prediction: Prediction) -> int:
    """Points credited back at resolution."""
    return prediction.points_wagered * WIN_PAYOUT_MULTIPLIER if prediction.is_won else 0


class PredictionEngine:
    """Creates, schedules and resolves single-party predictions."""

    def __init__(self, ledger, oracle, scheduler, notifier=None,
                 feed_channel_ref: Optional[str] = None, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.oracle = oracle
        self.scheduler = scheduler
        self.notifier = notifier
        self.feed_channel_ref = feed_channel_ref
        self.clock = clock

    def validate_wager(self, timeframe: str, points_wagered: int):
        if timeframe not in PREDICTION_TIMEFRAMES:
            raise InvalidTimeframe(timeframe, PREDICTION_TIMEFRAMES)
        if points_wagered < MIN_WAGER:
            raise InsufficientWager(points_wagered, MIN_WAGER)
        maximum = MAX_WAGER_BY_TIMEFRAME[timeframe]
        if points_wagered > maximum:
            raise WagerTooHigh(points_wagered, maximum, timeframe)

    async def create(self, user_id: str, token_id: str, timeframe: str,
                     direction, points_wagered: int) -> Prediction:
        """
        Place a prediction.

        The start price is fetched before anything is debited, so an oracle
        failure leaves no trace. If the resolve job can't be queued the
        prediction is removed again and the wager refunded.
        """
        self.validate_wager(timeframe, points_wagered)
        direction = Direction(direction.upper() if isinstance(direction, str) else direction)

        balance = await self.ledger.get_balance(user_id)
        if balance < points_wagered:
            raise InsufficientPoints(points_wagered, balance)

        price_at_start = await self.oracle.get_price(token_id)

        now = self.clock()
        prediction = Prediction(
            id=uuid.uuid4().hex,
            user_id=user_id,
            token_id=token_id,
            token_name=token_name(token_id),
            timeframe=timeframe,
            direction=direction,
            points_wagered=points_wagered,
            price_at_start=price_at_start,
            expires_at=now + timeframe_seconds(timeframe),
            created_at=now,
            channel_ref=self.feed_channel_ref,
        )
        await self.ledger.place_prediction(prediction)

        try:
            delay_ms = math.ceil((prediction.expires_at - self.clock()) * 1000)
            await self.scheduler.schedule(
                prediction_job_id(prediction.id),
                JobPayload(JobKind.PREDICTION_RESOLVE, prediction.id),
                max(delay_ms, 0),
            )
        except Exception as e:
            logger.error(f"Could not schedule prediction {prediction.id}, rolling back: {e}")
            await self.ledger.void_prediction(prediction.id)
            raise

        logger.info(
            f"Prediction {prediction.id}: {user_id} bets {points_wagered} on "
            f"{prediction.token_name} {direction.value} over {timeframe} (start {price_at_start})"
        )
        return prediction

    async def resolve(self, prediction_id: str, price_at_end: float,
                      price_at_start: Optional[float] = None) -> Prediction:
        """
        Settle a prediction against price_at_end.

        Safe to call repeatedly: once resolved, the stored record is returned
        unchanged and nothing is credited again.
        """
        prediction = await self.ledger.get_prediction(prediction_id)
        if prediction is None:
            raise PredictionNotFound(prediction_id)
        if prediction.is_resolved:
            logger.info(f"Prediction {prediction_id} already resolved, skipping")
            return prediction

        if price_at_start is None:
            price_at_start = prediction.price_at_start
        won = is_winning(prediction.direction, price_at_start, price_at_end)
        payout = prediction.points_wagered * WIN_PAYOUT_MULTIPLIER if won else 0

        applied = await self.ledger.resolve_prediction(prediction_id, price_at_end, won, payout)
        resolved = await self.ledger.get_prediction(prediction_id)
        if not applied:
            logger.info(f"Prediction {prediction_id} was resolved concurrently, skipping")
            return resolved

        logger.info(
            f"Resolved prediction {prediction_id}: {price_at_start} -> {price_at_end}, "
            f"{'WON' if won else 'LOST'}, credited {payout}"
        )
        await self._notify(resolved)
        return resolved

    async def settle(self, prediction_id: str) -> Prediction:
        """Resolve a due prediction at the current price. PriceUnavailable propagates for retry."""
        prediction = await self.ledger.get_prediction(prediction_id)
        if prediction is None:
            raise PredictionNotFound(prediction_id)
        if prediction.is_resolved:
            return prediction

        price_at_end = await self.oracle.get_price(prediction.token_id)
        return await self.resolve(prediction_id, price_at_end, prediction.price_at_start)

    async def _notify(self, prediction: Prediction):
        if self.notifier is None or not prediction.channel_ref:
            return
        try:
            await self.notifier.post_result(prediction.channel_ref, prediction)
        except Exception as e:
            logger.error(f"Failed to post result for prediction {prediction.id}: {e}")
