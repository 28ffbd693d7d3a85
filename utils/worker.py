"""
Routes due scheduler jobs to the settlement engine that owns them.
"""
import logging

from utils.scheduler import JobKind, JobPayload

logger = logging.getLogger('TokenArena.Worker')


class JobRouter:
    """The scheduler's single handler."""

    def __init__(self, prediction_engine, battle_engine):
        self.prediction_engine = prediction_engine
        self.battle_engine = battle_engine

    async def handle(self, payload: JobPayload):
        logger.info(f"Running {payload.kind.value} for {payload.record_id}")

        if payload.kind == JobKind.PREDICTION_RESOLVE:
            await self.prediction_engine.settle(payload.record_id)
        elif payload.kind == JobKind.BATTLE_CHECK:
            await self.battle_engine.check_result(payload.record_id)
        elif payload.kind == JobKind.BATTLE_EXPIRE:
            await self.battle_engine.expire_unjoined(payload.record_id)
        else:
            raise ValueError(f"Unknown job kind: {payload.kind}")
