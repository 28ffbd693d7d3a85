"""
Discord notifier - posts settlement results back to Discord.
Best effort: every Discord failure is logged and swallowed so that a missing
channel or a deleted message never affects settlement.
"""
import discord
import logging
from datetime import datetime
from typing import Optional

from utils.models import BattleOutcome, BattleStatus, Prediction
from utils.prediction_engine import prediction_payout

logger = logging.getLogger('TokenArena.Notifier')


def prediction_result_embed(prediction: Prediction) -> discord.Embed:
    """Embed announcing a resolved prediction."""
    if prediction.is_won:
        embed = discord.Embed(
            title="🎉 Prediction Won!",
            description=f"<@{prediction.user_id}> called it on **{prediction.token_name}**!",
            color=discord.Color.green()
        )
        result = f"+{prediction_payout(prediction)} points"
    else:
        embed = discord.Embed(
            title="📉 Prediction Lost",
            description=f"<@{prediction.user_id}> missed on **{prediction.token_name}**.",
            color=discord.Color.red()
        )
        result = f"-{prediction.points_wagered} points"

    embed.add_field(name="Direction", value=prediction.direction.value, inline=True)
    embed.add_field(name="Timeframe", value=prediction.timeframe, inline=True)
    embed.add_field(name="Wagered", value=str(prediction.points_wagered), inline=True)
    embed.add_field(name="Start Price", value=f"${prediction.price_at_start:,.6g}", inline=True)
    embed.add_field(name="End Price", value=f"${prediction.price_at_end:,.6g}", inline=True)
    embed.add_field(name="Result", value=result, inline=True)
    embed.timestamp = datetime.utcnow()
    return embed


def battle_result_embed(outcome: BattleOutcome) -> discord.Embed:
    """Embed announcing a settled battle."""
    if outcome.status == BattleStatus.REFUNDED:
        embed = discord.Embed(
            title="⚠️ Battle Cancelled",
            description=(
                f"Prices couldn't be fetched to settle the battle between <@{outcome.creator_id}> "
                f"and <@{outcome.joiner_id}>. Both stakes have been refunded."
            ),
            color=discord.Color.orange()
        )
        embed.add_field(name="Refunded", value=f"{outcome.points} points each", inline=True)
    elif outcome.status == BattleStatus.DRAW:
        embed = discord.Embed(
            title="🤝 Battle Draw",
            description=f"<@{outcome.creator_id}> and <@{outcome.joiner_id}> finished dead even. No payout.",
            color=discord.Color.light_grey()
        )
    else:
        embed = discord.Embed(
            title="⚔️ Battle Result",
            description=f"Winner: <@{outcome.winner_id}>",
            color=discord.Color.green()
        )
        embed.add_field(name="Points Won", value=str(outcome.payout), inline=True)
        embed.add_field(name="Loser", value=f"<@{outcome.loser_id}>", inline=True)

    if outcome.creator_performance is not None:
        embed.add_field(
            name="Performance",
            value=(
                f"<@{outcome.creator_id}>: {outcome.creator_performance:+.2f}%\n"
                f"<@{outcome.joiner_id}>: {outcome.joiner_performance:+.2f}%"
            ),
            inline=False
        )
    embed.timestamp = datetime.utcnow()
    return embed


class DiscordNotifier:
    """Presentation side of settlement."""

    def __init__(self, bot):
        self.bot = bot

    async def _get_channel(self, channel_ref: str):
        channel_id = int(channel_ref)
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(channel_id)
        return channel

    async def _fetch_message(self, channel, message_id: str) -> Optional[discord.Message]:
        try:
            return await channel.fetch_message(int(message_id))
        except discord.NotFound:
            return None

    async def post_result(self, channel_ref: str, result):
        """Post a prediction result, or update a battle announcement with its outcome."""
        try:
            channel = await self._get_channel(channel_ref)

            if isinstance(result, BattleOutcome):
                embed = battle_result_embed(result)
                message = await self._fetch_message(channel, result.battle_id)
                if message is not None:
                    await message.edit(embed=embed, view=None)
                else:
                    await channel.send(embed=embed)
            elif isinstance(result, Prediction):
                await channel.send(embed=prediction_result_embed(result))
            else:
                logger.warning(f"Don't know how to post result of type {type(result).__name__}")
        except Exception as e:
            logger.error(f"Error posting result to channel {channel_ref}: {e}")

    async def delete_message(self, channel_ref: str, message_id: str):
        """Delete a message, ignoring it if it's already gone."""
        try:
            channel = await self._get_channel(channel_ref)
            message = await self._fetch_message(channel, message_id)
            if message is not None:
                await message.delete()
                logger.info(f"Deleted message {message_id} in channel {channel_ref}")
        except Exception as e:
            logger.error(f"Error deleting message {message_id} in channel {channel_ref}: {e}")
