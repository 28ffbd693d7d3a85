"""
Predictions Cog - bet on whether a token goes up or down.
Wagers are debited immediately; the settlement loop resolves each prediction
when its timeframe ends and posts the result to the feed channel.
"""
import discord
from discord.ext import commands
from discord import app_commands
import logging
from datetime import datetime

from utils.errors import PriceUnavailable, UserInputError
from utils.timeframes import MAX_WAGER_BY_TIMEFRAME, PREDICTION_TIMEFRAMES, timeframe_label
from utils.tokens import TOKENS

logger = logging.getLogger('TokenArena.Predictions')

TOKEN_CHOICES = [app_commands.Choice(name=name, value=address) for address, name in TOKENS.items()]
TIMEFRAME_CHOICES = [
    app_commands.Choice(name=f"{timeframe_label(tf)} (max {MAX_WAGER_BY_TIMEFRAME[tf]})", value=tf)
    for tf in PREDICTION_TIMEFRAMES
]
DIRECTION_CHOICES = [
    app_commands.Choice(name="📈 Up", value="UP"),
    app_commands.Choice(name="📉 Down", value="DOWN"),
]


class PredictionsCog(commands.Cog):
    """Cog for single-player token predictions."""

    def __init__(self, bot):
        self.bot = bot
        self.ledger = bot.ledger
        self.engine = bot.prediction_engine

    @app_commands.command(name="predict", description="Predict whether a token goes up or down")
    @app_commands.describe(
        token="Token to predict on",
        timeframe="How long until the prediction resolves",
        direction="Up or down",
        points="Points to wager"
    )
    @app_commands.choices(token=TOKEN_CHOICES, timeframe=TIMEFRAME_CHOICES, direction=DIRECTION_CHOICES)
    async def predict(
        self,
        interaction: discord.Interaction,
        token: app_commands.Choice[str],
        timeframe: app_commands.Choice[str],
        direction: app_commands.Choice[str],
        points: app_commands.Range[int, 1, None]
    ):
        """Place a prediction."""
        await interaction.response.defer(ephemeral=True)
        user_id = str(interaction.user.id)

        try:
            await self.ledger.ensure_user(user_id, interaction.user.name)
            prediction = await self.engine.create(
                user_id, token.value, timeframe.value, direction.value, points
            )
        except UserInputError as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
            return
        except PriceUnavailable as e:
            logger.error(f"Prediction by {interaction.user} failed: {e}")
            await interaction.followup.send(
                f"❌ Couldn't fetch the current price of {token.name}. Please try again later.",
                ephemeral=True
            )
            return
        except Exception as e:
            logger.error(f"Unexpected error placing prediction for {interaction.user}: {e}")
            await interaction.followup.send("❌ Something went wrong placing your prediction. Please try again.", ephemeral=True)
            return

        arrow = "📈" if prediction.direction.value == "UP" else "📉"
        embed = discord.Embed(
            title=f"{arrow} New Prediction",
            description=(
                f"{interaction.user.mention} predicts **{prediction.token_name}** goes "
                f"**{prediction.direction.value}** in the next {timeframe_label(prediction.timeframe)}"
            ),
            color=discord.Color.blue()
        )
        embed.add_field(name="Wager", value=f"{prediction.points_wagered} points", inline=True)
        embed.add_field(name="Start Price", value=f"${prediction.price_at_start:,.6g}", inline=True)
        embed.add_field(name="Resolves", value=f"<t:{int(prediction.expires_at)}:R>", inline=True)
        embed.set_footer(text=f"Prediction ID: {prediction.id}")
        embed.timestamp = datetime.utcnow()

        await interaction.followup.send(embed=embed, ephemeral=True)

        if self.bot.feed_channel_id:
            channel = self.bot.get_channel(self.bot.feed_channel_id)
            if channel:
                try:
                    await channel.send(embed=embed)
                except discord.HTTPException as e:
                    logger.warning(f"Could not post prediction to feed channel: {e}")

    @app_commands.command(name="mypredictions", description="View your recent predictions")
    async def mypredictions(self, interaction: discord.Interaction):
        predictions = await self.ledger.list_predictions(str(interaction.user.id), limit=10)

        if not predictions:
            await interaction.response.send_message(
                "You haven't made any predictions yet. Use `/predict` to get started!",
                ephemeral=True
            )
            return

        embed = discord.Embed(
            title="🔮 Your Predictions",
            color=discord.Color.blue()
        )
        for p in predictions:
            if not p.is_resolved:
                status = f"⏳ resolves <t:{int(p.expires_at)}:R>"
            elif p.is_won:
                status = f"✅ won (${p.price_at_start:,.6g} → ${p.price_at_end:,.6g})"
            else:
                status = f"❌ lost (${p.price_at_start:,.6g} → ${p.price_at_end:,.6g})"
            embed.add_field(
                name=f"{p.token_name} {p.direction.value} · {p.timeframe} · {p.points_wagered} pts",
                value=status,
                inline=False
            )

        await interaction.response.send_message(embed=embed, ephemeral=True)


async def setup(bot):
    await bot.add_cog(PredictionsCog(bot))
