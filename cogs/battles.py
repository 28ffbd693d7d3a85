"""
Battles Cog - head-to-head token battles.
The creator stakes points on a token and posts an announcement; the first
member to join with a different token stakes the same amount. When the
timeframe ends the token that performed better wins the pot.
The announcement's message ID is the battle ID.
"""
import discord
from discord.ext import commands
from discord import app_commands
import logging
from datetime import datetime
from typing import Optional

from utils.battle_engine import JOIN_TIMEOUT_SECONDS, PAYOUT_MULTIPLIER
from utils.errors import PriceUnavailable, UserInputError
from utils.models import Battle
from utils.timeframes import BATTLE_TIMEFRAMES, timeframe_label
from utils.tokens import TOKENS, available_tokens, token_name

logger = logging.getLogger('TokenArena.Battles')

TOKEN_CHOICES = [app_commands.Choice(name=name, value=address) for address, name in TOKENS.items()]
TIMEFRAME_CHOICES = [app_commands.Choice(name=timeframe_label(tf), value=tf) for tf in BATTLE_TIMEFRAMES]


def open_battle_embed(creator: discord.abc.User, token: str, timeframe: str, points: int) -> discord.Embed:
    embed = discord.Embed(
        title="⚔️ Token Battle",
        description=(
            f"{creator.mention} is battling with **{token_name(token)}** over "
            f"{timeframe_label(timeframe)}!\nPick a different token to take them on."
        ),
        color=discord.Color.purple()
    )
    embed.add_field(name="Stake", value=f"{points} points", inline=True)
    embed.add_field(name="Winner Takes", value=f"{points * PAYOUT_MULTIPLIER} points", inline=True)
    embed.set_footer(text=f"Expires if nobody joins within {JOIN_TIMEOUT_SECONDS} seconds")
    embed.timestamp = datetime.utcnow()
    return embed


def joined_battle_embed(battle: Battle) -> discord.Embed:
    embed = discord.Embed(
        title="⚔️ Token Battle - In Progress",
        description=(
            f"<@{battle.creator_id}> (**{token_name(battle.creator_token)}**) vs "
            f"<@{battle.joiner_id}> (**{token_name(battle.joiner_token)}**)"
        ),
        color=discord.Color.blue()
    )
    embed.add_field(name="Stake", value=f"{battle.points} points each", inline=True)
    embed.add_field(name="Ends", value=f"<t:{int(battle.end_time)}:R>", inline=True)
    embed.add_field(
        name="Start Prices",
        value=(
            f"{token_name(battle.creator_token)}: ${battle.creator_token_price:,.6g}\n"
            f"{token_name(battle.joiner_token)}: ${battle.joiner_token_price:,.6g}"
        ),
        inline=False
    )
    return embed


class JoinBattleView(discord.ui.View):
    """Persistent Join button attached to every battle announcement."""

    def __init__(self, cog):
        super().__init__(timeout=None)
        self.cog = cog

    @discord.ui.button(label="Join Battle", style=discord.ButtonStyle.success, emoji="⚔️", custom_id="join_battle")
    async def join(self, interaction: discord.Interaction, button: discord.ui.Button):
        battle = await self.cog.ledger.get_battle(str(interaction.message.id))
        if battle is None:
            await interaction.response.send_message("❌ This battle has expired.", ephemeral=True)
            return
        if battle.joined:
            await interaction.response.send_message("❌ This battle already has a participant.", ephemeral=True)
            return
        if str(interaction.user.id) == battle.creator_id:
            await interaction.response.send_message("❌ You cannot join your own battle.", ephemeral=True)
            return

        await interaction.response.send_message(
            f"Pick your token to battle **{token_name(battle.creator_token)}** "
            f"for {battle.points} points:",
            view=TokenSelectView(self.cog, battle),
            ephemeral=True
        )


class TokenSelect(discord.ui.Select):
    def __init__(self, cog, battle: Battle):
        options = [
            discord.SelectOption(label=t['name'], value=t['value'])
            for t in available_tokens(exclude=battle.creator_token)
        ]
        super().__init__(placeholder="Choose a token...", options=options)
        self.cog = cog
        self.battle = battle

    async def callback(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        error = await self.cog.join(interaction, self.battle.id, self.values[0])
        if error:
            await interaction.edit_original_response(content=f"❌ {error}", view=None)
        else:
            await interaction.edit_original_response(
                content=f"✅ You joined the battle with **{token_name(self.values[0])}**!",
                view=None
            )
        self.view.stop()


class TokenSelectView(discord.ui.View):
    """Ephemeral token picker shown to someone joining a battle."""

    def __init__(self, cog, battle: Battle):
        super().__init__(timeout=JOIN_TIMEOUT_SECONDS)
        self.add_item(TokenSelect(cog, battle))


class BattlesCog(commands.Cog):
    """Cog for creating and joining token battles."""

    def __init__(self, bot):
        self.bot = bot
        self.ledger = bot.ledger
        self.engine = bot.battle_engine

    async def cog_load(self):
        # Buttons on announcements posted before a restart keep working
        self.bot.add_view(JoinBattleView(self))

    async def _battle_channel(self, interaction: discord.Interaction):
        if self.bot.battle_channel_id:
            channel = self.bot.get_channel(self.bot.battle_channel_id)
            if channel is None:
                channel = await self.bot.fetch_channel(self.bot.battle_channel_id)
            return channel
        return interaction.channel

    async def join(self, interaction: discord.Interaction, battle_id: str, token: str) -> Optional[str]:
        """Join a battle and update its announcement. Returns an error message on failure."""
        user_id = str(interaction.user.id)
        try:
            await self.ledger.ensure_user(user_id, interaction.user.name)
            battle = await self.engine.join_battle(battle_id, user_id, token)
        except UserInputError as e:
            return str(e)
        except PriceUnavailable as e:
            logger.error(f"Join of battle {battle_id} by {interaction.user} failed: {e}")
            return "Couldn't fetch token prices right now. Your points were not taken."
        except Exception as e:
            logger.error(f"Unexpected error joining battle {battle_id} for {interaction.user}: {e}")
            return "Something went wrong joining the battle. Please try again."

        logger.info(f"{interaction.user} joined battle {battle_id} with {token_name(token)}")

        try:
            channel = self.bot.get_channel(int(battle.channel_ref)) or await self.bot.fetch_channel(int(battle.channel_ref))
            message = await channel.fetch_message(int(battle.id))
            await message.edit(embed=joined_battle_embed(battle), view=None)
        except discord.HTTPException as e:
            logger.warning(f"Could not update announcement for battle {battle_id}: {e}")
        return None

    @app_commands.command(name="tokenbattle", description="Challenge the server to a token battle")
    @app_commands.describe(
        token="Your token",
        timeframe="How long the battle lasts",
        points="Points each side stakes"
    )
    @app_commands.choices(token=TOKEN_CHOICES, timeframe=TIMEFRAME_CHOICES)
    async def tokenbattle(
        self,
        interaction: discord.Interaction,
        token: app_commands.Choice[str],
        timeframe: app_commands.Choice[str],
        points: app_commands.Range[int, 1, None]
    ):
        """Create a battle."""
        user_id = str(interaction.user.id)
        balance = await self.ledger.ensure_user(user_id, interaction.user.name)
        if balance < points:
            await interaction.response.send_message(
                f"❌ You don't have enough points! Required: {points}, you have: {balance}",
                ephemeral=True
            )
            return

        await interaction.response.defer(ephemeral=True)

        channel = await self._battle_channel(interaction)
        message = await channel.send(
            embed=open_battle_embed(interaction.user, token.value, timeframe.value, points),
            view=JoinBattleView(self)
        )

        try:
            await self.engine.create_battle(
                str(message.id), str(channel.id), user_id, token.value, timeframe.value, points
            )
        except Exception as e:
            logger.error(f"Battle creation by {interaction.user} failed: {e}")
            try:
                await message.delete()
            except discord.HTTPException:
                logger.warning(f"Could not delete announcement {message.id} after failed creation")
            if isinstance(e, UserInputError):
                await interaction.followup.send(f"❌ {e}", ephemeral=True)
                return
            await interaction.followup.send("❌ Couldn't create the battle. Please try again.", ephemeral=True)
            return

        await interaction.followup.send(
            f"✅ Battle posted in {channel.mention}! {points} points staked on **{token.name}**.",
            ephemeral=True
        )

    @app_commands.command(name="joinbattle", description="Join an open token battle")
    @app_commands.describe(
        battle_id="The battle ID (the announcement's message ID)",
        token="Your token (must differ from the creator's)"
    )
    @app_commands.choices(token=TOKEN_CHOICES)
    async def joinbattle(self, interaction: discord.Interaction, battle_id: str, token: app_commands.Choice[str]):
        await interaction.response.defer(ephemeral=True)

        error = await self.join(interaction, battle_id, token.value)
        if error:
            await interaction.followup.send(f"❌ {error}", ephemeral=True)
            return
        await interaction.followup.send(f"✅ You joined the battle with **{token.name}**!", ephemeral=True)


async def setup(bot):
    await bot.add_cog(BattlesCog(bot))
