"""
Points Cog - daily point claims, balance lookups and quick rewards.
"""
import discord
from discord.ext import commands
from discord import app_commands
import logging
import time
from datetime import datetime

from utils.models import QuickReward, QuickRewardClaim

logger = logging.getLogger('TokenArena.Points')

DAILY_CLAIM_AMOUNT = 20
DAILY_CLAIM_COOLDOWN = 24 * 60 * 60

QUICK_REWARD_SECONDS = 5 * 60
QUICK_REWARD_MAX_WINNERS = 10


def quick_reward_embed(reward: QuickReward, remaining: int) -> discord.Embed:
    embed = discord.Embed(
        title="🎁 Quick Reward",
        description=(
            f"Be one of the first {reward.max_winners} to click the button below "
            f"to claim {reward.points} points!\n\nRemaining spots: {remaining}"
        ),
        color=discord.Color.green()
    )
    embed.add_field(name="Points to Win", value=str(reward.points), inline=True)
    embed.add_field(name="Number of Winners", value=str(reward.max_winners), inline=True)
    embed.add_field(name="Ends", value=f"<t:{int(reward.expires_at)}:R>", inline=True)
    embed.timestamp = datetime.utcnow()
    return embed


def quick_reward_ended_embed(reward: QuickReward, winners: int) -> discord.Embed:
    embed = discord.Embed(
        title="🎁 Quick Reward Ended",
        description=f"This reward has ended. {winners} member(s) won {reward.points} points each!",
        color=discord.Color.dark_grey()
    )
    embed.add_field(name="Points Awarded", value=str(reward.points), inline=True)
    embed.add_field(name="Number of Winners", value=str(winners), inline=True)
    embed.timestamp = datetime.utcnow()
    return embed


class QuickRewardView(discord.ui.View):
    """Persistent Claim button attached to every quick reward message."""

    def __init__(self, cog):
        super().__init__(timeout=None)
        self.cog = cog

    @discord.ui.button(label="Claim Reward", style=discord.ButtonStyle.primary, emoji="🎁", custom_id="quick_reward_claim")
    async def claim(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.cog.claim_quick_reward(interaction)


class PointsCog(commands.Cog):
    """Cog for claiming and checking points."""

    def __init__(self, bot):
        self.bot = bot
        self.ledger = bot.ledger

    async def cog_load(self):
        self.bot.add_view(QuickRewardView(self))

    @app_commands.command(name="claim", description="Claim your daily points")
    async def claim(self, interaction: discord.Interaction):
        """Credit the daily reward once per cooldown."""
        user_id = str(interaction.user.id)
        await self.ledger.ensure_user(user_id, interaction.user.name)

        claimed, balance, next_claim_at = await self.ledger.claim_daily(
            user_id, DAILY_CLAIM_AMOUNT, DAILY_CLAIM_COOLDOWN
        )

        if not claimed:
            await interaction.response.send_message(
                f"⏳ You've already claimed today. Come back <t:{int(next_claim_at)}:R>.",
                ephemeral=True
            )
            return

        logger.info(f"{interaction.user} claimed {DAILY_CLAIM_AMOUNT} daily points")

        embed = discord.Embed(
            title="💰 Daily Points Claimed",
            description=f"You received **{DAILY_CLAIM_AMOUNT}** points!",
            color=discord.Color.gold()
        )
        embed.add_field(name="Balance", value=f"{balance} points", inline=True)
        embed.add_field(name="Next Claim", value=f"<t:{int(next_claim_at)}:R>", inline=True)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="points", description="Check your points balance")
    async def points(self, interaction: discord.Interaction):
        balance = await self.ledger.ensure_user(str(interaction.user.id), interaction.user.name)
        await interaction.response.send_message(
            f"💰 You have **{balance}** points.",
            ephemeral=True
        )

    @app_commands.command(name="quickreward", description="[Admin] Post a reward the first members to click can claim")
    @app_commands.describe(
        points="Points each winner receives",
        winners="How many members can claim it"
    )
    @app_commands.default_permissions(administrator=True)
    async def quickreward(
        self,
        interaction: discord.Interaction,
        points: app_commands.Range[int, 1, None],
        winners: app_commands.Range[int, 1, QUICK_REWARD_MAX_WINNERS]
    ):
        """Post a quick reward to the feed channel."""
        await interaction.response.defer(ephemeral=True)

        channel = interaction.channel
        if self.bot.feed_channel_id:
            channel = self.bot.get_channel(self.bot.feed_channel_id) or channel

        now = time.time()
        reward = QuickReward(
            id='',
            channel_ref=str(channel.id),
            points=points,
            max_winners=winners,
            created_by=str(interaction.user.id),
            created_at=now,
            expires_at=now + QUICK_REWARD_SECONDS,
        )

        message = await channel.send(embed=quick_reward_embed(reward, winners), view=QuickRewardView(self))
        reward.id = str(message.id)

        try:
            await self.ledger.create_quick_reward(reward)
        except Exception as e:
            logger.error(f"Quick reward by {interaction.user} failed: {e}")
            try:
                await message.delete()
            except discord.HTTPException:
                logger.warning(f"Could not delete quick reward message {message.id}")
            await interaction.followup.send("❌ Couldn't create the quick reward. Please try again.", ephemeral=True)
            return

        logger.info(f"{interaction.user} posted quick reward {reward.id}: {points} points x {winners}")
        await interaction.followup.send(f"✅ Quick reward posted in {channel.mention}!", ephemeral=True)

    async def claim_quick_reward(self, interaction: discord.Interaction):
        """Handle a click on a quick reward's Claim button."""
        reward_id = str(interaction.message.id)
        try:
            outcome, remaining = await self.ledger.claim_quick_reward(reward_id, str(interaction.user.id))
        except Exception as e:
            logger.error(f"Error claiming quick reward {reward_id} for {interaction.user}: {e}")
            await interaction.response.send_message(
                "❌ An error occurred while processing your claim. Please try again.",
                ephemeral=True
            )
            return

        if outcome == QuickRewardClaim.NOT_FOUND:
            await interaction.response.send_message("❌ This reward no longer exists.", ephemeral=True)
            return
        if outcome == QuickRewardClaim.ALREADY_CLAIMED:
            await interaction.response.send_message("❌ You've already claimed this reward!", ephemeral=True)
            return
        if outcome in (QuickRewardClaim.FULL, QuickRewardClaim.EXPIRED):
            await interaction.response.send_message("❌ This reward has ended.", ephemeral=True)
            await self._update_reward_message(interaction, reward_id, 0)
            return

        reward = await self.ledger.get_quick_reward(reward_id)
        await interaction.response.send_message(
            f"🎉 Congratulations! You've won {reward.points} points!",
            ephemeral=True
        )
        await self._update_reward_message(interaction, reward_id, remaining)

    async def _update_reward_message(self, interaction: discord.Interaction, reward_id: str, remaining: int):
        reward = await self.ledger.get_quick_reward(reward_id)
        try:
            if remaining > 0:
                await interaction.message.edit(embed=quick_reward_embed(reward, remaining))
            else:
                winners = await self.ledger.count_quick_reward_winners(reward_id)
                await interaction.message.edit(embed=quick_reward_ended_embed(reward, winners), view=None)
        except discord.HTTPException as e:
            logger.warning(f"Could not update quick reward message {reward_id}: {e}")


async def setup(bot):
    await bot.add_cog(PointsCog(bot))
