"""
Queue Admin Cog - administrator tools for the settlement job queue.
"""
import discord
from discord.ext import commands
from discord import app_commands
import logging
from datetime import datetime

logger = logging.getLogger('TokenArena.QueueAdmin')

STATE_EMOJI = {
    'waiting': '⏳',
    'active': '⚙️',
    'completed': '✅',
    'failed': '❌',
}


class QueueAdminCog(commands.Cog):
    """Cog for inspecting and repairing the job queue."""

    def __init__(self, bot):
        self.bot = bot
        self.scheduler = bot.scheduler

    @app_commands.command(name="queuestats", description="[Admin] Show settlement queue statistics")
    @app_commands.default_permissions(administrator=True)
    async def queuestats(self, interaction: discord.Interaction):
        stats = await self.scheduler.get_stats()

        embed = discord.Embed(
            title="📊 Settlement Queue",
            color=discord.Color.blue()
        )
        for state, count in stats.items():
            embed.add_field(name=f"{STATE_EMOJI.get(state, '')} {state.title()}", value=str(count), inline=True)
        embed.timestamp = datetime.utcnow()

        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="failedjobs", description="[Admin] List jobs that exhausted their retries")
    @app_commands.default_permissions(administrator=True)
    async def failedjobs(self, interaction: discord.Interaction):
        jobs = await self.scheduler.get_failed_jobs(limit=10)

        if not jobs:
            await interaction.response.send_message("✅ No failed jobs!", ephemeral=True)
            return

        embed = discord.Embed(
            title="❌ Failed Jobs",
            description="Use `/retryjob` with a job ID to run it again.",
            color=discord.Color.red()
        )
        for job in jobs:
            embed.add_field(
                name=job.job_id,
                value=(
                    f"{job.payload.kind.value} · {job.attempt} attempt(s) · "
                    f"<t:{int(job.updated_at)}:R>\n`{(job.last_error or 'unknown error')[:200]}`"
                ),
                inline=False
            )

        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="retryjob", description="[Admin] Re-queue a failed job")
    @app_commands.describe(job_id="The failed job's ID")
    @app_commands.default_permissions(administrator=True)
    async def retryjob(self, interaction: discord.Interaction, job_id: str):
        if not await self.scheduler.retry_failed_job(job_id):
            await interaction.response.send_message(
                f"❌ No failed job with ID `{job_id}`.",
                ephemeral=True
            )
            return

        logger.info(f"{interaction.user} re-queued job {job_id}")
        await interaction.response.send_message(f"✅ Job `{job_id}` re-queued.", ephemeral=True)

    @app_commands.command(name="cleanqueue", description="[Admin] Remove every job from the settlement queue")
    @app_commands.default_permissions(administrator=True)
    async def cleanqueue(self, interaction: discord.Interaction):
        removed = await self.scheduler.purge_all()
        logger.warning(f"{interaction.user} purged the settlement queue ({removed} jobs)")
        await interaction.response.send_message(
            f"🧹 Removed **{removed}** job(s) from the queue. Pending settlements will not run.",
            ephemeral=True
        )


async def setup(bot):
    await bot.add_cog(QueueAdminCog(bot))
