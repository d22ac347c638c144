"""RankWarden Discord Bot Client"""

import discord
from discord import app_commands
from discord.ext import commands
import logging
import redis.asyncio as redis
from typing import Optional, Dict, Any, Tuple, List
import ssl
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncEngine

from rankwarden.utils.constants import (
    APP_VERSION,
    BOT_DESCRIPTION,
    BOT_REQUIRED_PERMISSIONS,
    CACHE_SETTINGS,
    LOGGER_NAME
)
from rankwarden.db.database import create_session_factory, init_schema
from rankwarden.ranks.catalog import get_catalog
from rankwarden.services.archive import PromotionArchiveService
from rankwarden.services.discord_sync import (
    DiscordAnnouncementSink,
    DiscordSyncFacade,
    RedisNotificationSink
)
from rankwarden.services.locks import LockManager
from rankwarden.services.transitions import RankTransitionEngine
from rankwarden.services.uprank_requests import UprankRequestWorkflow

logger = logging.getLogger(LOGGER_NAME)

class RankWardenBot(commands.Bot):
    def __init__(self,
                 engine: AsyncEngine,
                 redis_pool: redis.Redis,
                 settings: Any,
                 ssl_context: Optional[ssl.SSLContext] = None,
                 *args, **kwargs):
        """Initialize the bot and wire the rank services"""
        # Set up intents
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True

        # Initialize base bot
        super().__init__(
            command_prefix=settings.command_prefix,
            intents=intents,
            description=BOT_DESCRIPTION,
            *args,
            **kwargs
        )

        # Store connections and settings
        self.db_engine = engine
        self.session_factory = create_session_factory(engine)
        self.redis = redis_pool
        self.ssl_context = ssl_context
        self.settings = settings

        # Internal state
        self._ready = False
        self._cogs_loaded = False

        # Channel IDs storage, settings win over stored values
        self.promotion_channel_id: Optional[int] = settings.promotion_channel_id
        self.demotion_channel_id: Optional[int] = settings.demotion_channel_id

        # Rank services
        self.catalog = get_catalog(settings.rank_catalog_path)
        self.lock_manager = LockManager(self.session_factory)
        self.archive = PromotionArchiveService(self.session_factory)
        self.announcer = DiscordAnnouncementSink(self)
        self.rank_engine = RankTransitionEngine(
            self.session_factory,
            self.catalog,
            lock_manager=self.lock_manager,
            archive=self.archive,
            sync=DiscordSyncFacade(self, settings.guild_id, self.session_factory),
            notifier=RedisNotificationSink(
                redis_pool,
                settings.guild_id,
                feed_size=settings.rank_feed_size,
                list_size=settings.notification_list_size
            ),
            announcer=self.announcer,
            badge_conflict_retries=settings.badge_conflict_retries
        )
        self.uprank_workflow = UprankRequestWorkflow(self.session_factory, self.rank_engine)

        # Startup timestamp
        self.start_time = datetime.now(timezone.utc)

        logger.info("Bot initialized")

    async def setup_hook(self):
        """Initial setup when bot starts"""
        logger.info("Setup hook starting...")
        try:
            await init_schema(self.db_engine)

            # Load stored channel IDs first
            await self._load_channel_ids()

            cogs = [
                'rankwarden.cogs.ranks',            # Promote, demote, locks, history
                'rankwarden.cogs.uprank_requests',  # Request and approval workflow
            ]

            # Load each cog
            for cog in cogs:
                try:
                    if cog not in self.extensions:
                        await self.load_extension(cog)
                        logger.info(f"Loaded {cog}")
                    else:
                        logger.info(f"Skipped loading {cog} (already loaded)")
                except Exception as e:
                    logger.error(f"Failed to load {cog}: {e}")
                    raise

            self._cogs_loaded = True
            logger.info("All cogs loaded")

            self.tree.on_error = self.on_app_command_error

            # Sync command tree
            if self.settings.guild_id:
                guild = discord.Object(id=self.settings.guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
            else:
                await self.tree.sync()
            logger.info("Command tree synced")

        except Exception as e:
            logger.error(f"Error in setup_hook: {e}")
            raise

    async def _load_channel_ids(self):
        """Fill channel IDs not given in settings from Redis"""
        try:
            channel_ids = await self.redis.hgetall('channel_ids')
            if channel_ids:
                self.promotion_channel_id = self.promotion_channel_id or int(channel_ids.get('promotion', 0)) or None
                self.demotion_channel_id = self.demotion_channel_id or int(channel_ids.get('demotion', 0)) or None
                logger.info("Loaded channel IDs from Redis")
        except Exception as e:
            logger.error(f"Error loading channel IDs: {e}")

        self.announcer.promotion_channel_id = self.promotion_channel_id
        self.announcer.demotion_channel_id = self.demotion_channel_id

    async def _save_channel_ids(self):
        """Save channel IDs to Redis"""
        try:
            channel_data = {
                'promotion': str(self.promotion_channel_id or 0),
                'demotion': str(self.demotion_channel_id or 0)
            }
            await self.redis.hset('channel_ids', mapping=channel_data)
            logger.info("Saved channel IDs to Redis")
        except Exception as e:
            logger.error(f"Error saving channel IDs: {e}")

    async def close(self):
        """Cleanup when bot shuts down"""
        logger.info("Bot shutting down, cleaning up...")
        try:
            # Save current state
            await self._save_channel_ids()

            # Record shutdown time
            await self.redis.set(
                'last_shutdown',
                datetime.now(timezone.utc).isoformat(),
                ex=CACHE_SETTINGS['STATUS_TTL']
            )

            # Save bot statistics
            stats = await self.get_bot_stats()
            if stats:
                await self.redis.hset('bot_stats', mapping={k: str(v) for k, v in stats.items()})

            await super().close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
            raise

    async def on_ready(self):
        """Handle bot ready event"""
        if self._ready:
            return

        logger.info(f'RankWarden v{APP_VERSION} has connected to Discord!')

        activity = discord.CustomActivity(name=BOT_DESCRIPTION)
        await self.change_presence(activity=activity)

        logger.info(f"Connected to {len(self.guilds)} guilds")
        logger.info(f"Rank catalog v{self.catalog.version}: {len(self.catalog.ranks)} ranks, "
                    f"{len(self.catalog.teams)} teams")

        for guild in self.guilds:
            has_perms, missing = await self.verify_permissions(guild)
            if not has_perms:
                logger.warning(f"Missing permissions in {guild.name}: {', '.join(missing)}")

        self._ready = True

    async def verify_permissions(self, guild: discord.Guild) -> Tuple[bool, List[str]]:
        """Verify bot has required permissions in guild"""
        missing_perms = []
        for perm in BOT_REQUIRED_PERMISSIONS:
            if not getattr(guild.me.guild_permissions, perm):
                missing_perms.append(perm)

        return not bool(missing_perms), missing_perms

    async def get_bot_stats(self) -> Dict[str, Any]:
        """Get current bot statistics"""
        try:
            locks = await self.lock_manager.lock_stats()
            requests = await self.uprank_workflow.stats()
            return {
                'version': APP_VERSION,
                'uptime': (datetime.now(timezone.utc) - self.start_time).total_seconds(),
                'guilds': len(self.guilds),
                'active_locks': locks['active'],
                'pending_requests': requests['pending'],
                'cogs_loaded': len(self.cogs),
                'latency': self.latency
            }
        except Exception as e:
            logger.error(f"Error getting bot stats: {e}")
            return {}

    async def on_app_command_error(self,
                                 interaction: discord.Interaction,
                                 error: app_commands.AppCommandError):
        """Global error handler for application commands"""
        try:
            if isinstance(error, (app_commands.MissingRole, app_commands.MissingAnyRole)):
                message = "❌ You don't have permission to use this command."
            else:
                logger.error(f"Application command error: {error}")
                message = "❌ An error occurred while processing the command."

            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except Exception as e:
            logger.error(f"Error handling app command error: {e}")
