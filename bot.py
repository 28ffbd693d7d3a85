#!/usr/bin/env python3
"""
Token Arena Discord Bot
A points game for crypto communities: claim daily points, predict whether a
token goes up or down, and challenge other members to token battles settled
by real price movement.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

import discord
from discord.ext import commands
import logging

from utils.battle_engine import BattleEngine
from utils.ledger import Ledger
from utils.notifier import DiscordNotifier
from utils.prediction_engine import PredictionEngine
from utils.price_oracle import CoinGeckoPriceOracle
from utils.scheduler import DelayScheduler
from utils.worker import JobRouter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('bot.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger('TokenArena')

DATABASE_PATH = os.getenv('DATABASE_PATH', 'data/token_arena.db')

EXTENSIONS = (
    'cogs.points',
    'cogs.predictions',
    'cogs.battles',
    'cogs.settlement',
    'cogs.queue_admin',
)


def _optional_int(name: str):
    value = os.getenv(name)
    return int(value) if value else None


# Bot configuration
class TokenArenaBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.guilds = True

        super().__init__(
            command_prefix='!',
            intents=intents,
            description='Token Arena prediction game'
        )

        self.db_path = DATABASE_PATH
        self.guild_id = _optional_int('GUILD_ID')
        self.battle_channel_id = _optional_int('BATTLE_CHANNEL_ID')
        self.feed_channel_id = _optional_int('FEED_CHANNEL_ID')

        # One instance of each collaborator for the whole process, handed to the engines
        self.ledger = Ledger(self.db_path)
        self.scheduler = DelayScheduler(self.db_path)
        self.price_oracle = CoinGeckoPriceOracle(api_key=os.getenv('COINGECKO_API_KEY'))
        self.notifier = DiscordNotifier(self)
        self.prediction_engine = PredictionEngine(
            self.ledger, self.price_oracle, self.scheduler, self.notifier,
            feed_channel_ref=str(self.feed_channel_id) if self.feed_channel_id else None,
        )
        self.battle_engine = BattleEngine(
            self.ledger, self.price_oracle, self.scheduler, self.notifier
        )
        self.job_router = JobRouter(self.prediction_engine, self.battle_engine)

    async def setup_hook(self):
        """Called when the bot is starting up."""
        # Initialize database
        os.makedirs(os.path.dirname(self.db_path) or '.', exist_ok=True)
        await self.ledger.init()
        await self.scheduler.init()

        # Load cogs
        for extension in EXTENSIONS:
            await self.load_extension(extension)

        # Sync slash commands
        if self.guild_id:
            guild = discord.Object(id=self.guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info(f"Synced {len(synced)} commands to guild {self.guild_id}")
        else:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} global commands")
        for cmd in synced:
            logger.info(f"  - /{cmd.name}")

        logger.info("Bot setup complete!")

    async def on_ready(self):
        """Called when the bot is fully connected and ready."""
        logger.info(f'{self.user} has connected to Discord!')
        logger.info(f'Bot is in {len(self.guilds)} guild(s)')

        activity = discord.Activity(
            type=discord.ActivityType.watching,
            name="token prices | /predict"
        )
        await self.change_presence(activity=activity)

    async def close(self):
        await self.price_oracle.close()
        await super().close()


def main():
    """Main entry point for the bot."""
    token = os.getenv('DISCORD_TOKEN')

    if not token:
        logger.error("DISCORD_TOKEN environment variable not set!")
        logger.info("Please set the token: export DISCORD_TOKEN='your_token_here'")
        return

    bot = TokenArenaBot()
    bot.run(token)


if __name__ == '__main__':
    main()
