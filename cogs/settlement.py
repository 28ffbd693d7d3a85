"""
Settlement Cog - drives the delay scheduler.
Polls for due jobs and hands them to the job router, which resolves
predictions, checks battles and expires unjoined ones.
"""
from discord.ext import commands, tasks
import logging
import os

logger = logging.getLogger('TokenArena.Settlement')

SCHEDULER_POLL_SECONDS = float(os.getenv('SCHEDULER_POLL_SECONDS', '1'))


class SettlementCog(commands.Cog):
    """Cog that runs due scheduler jobs."""

    def __init__(self, bot):
        self.bot = bot
        self.scheduler = bot.scheduler

    async def cog_load(self):
        """Called when the cog is loaded."""
        self.scheduler.on_fire(self.bot.job_router.handle)
        self.run_due_jobs.start()
        logger.info("Settlement worker started")

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        self.run_due_jobs.cancel()
        logger.info("Settlement worker stopped")

    @tasks.loop(seconds=SCHEDULER_POLL_SECONDS)
    async def run_due_jobs(self):
        try:
            ran = await self.scheduler.run_due()
            if ran:
                logger.info(f"Ran {ran} due job(s)")
        except Exception as e:
            logger.error(f"Error running due jobs: {e}")

    @run_due_jobs.before_loop
    async def before_run_due_jobs(self):
        """Wait for the bot to be ready before starting the task."""
        await self.bot.wait_until_ready()


async def setup(bot):
    await bot.add_cog(SettlementCog(bot))
