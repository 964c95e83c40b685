"""
conduit.bot.core — Bot Instance & Cog Loader
=============================================

Defines :class:`ConduitBot`, a ``commands.Bot`` subclass that:

1. Stores the shared config (``bot.cfg``), DB engine (``bot.engine``) and
   command lookup cache (``bot.lookup_cache``) so every Cog can reach them.
2. Loads every Cog listed in :data:`EXTENSIONS`.
3. Syncs the static slash-command tree on startup (guild-scoped for dev,
   global otherwise, controlled by ``DEV_GUILD_ID``).
4. Syncs each guild's workflow commands, then keeps them current by
   listening for ``workflow_changed`` events from the dashboard API.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING

import discord
from discord.ext import commands
from sqlalchemy import Engine

from conduit.config import ConduitConfig
from conduit.constants import EVENT_WORKFLOW_CHANGED, LOOKUP_CACHE_MAX_ENTRIES
from conduit.database.models import CommandType
from conduit.engine.cache import TTLCache
from conduit.engine.listener import EventListener

if TYPE_CHECKING:
    from conduit.bot.cogs.workflows import Workflows

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "conduit.bot.cogs.workflows",
]

LookupKey = tuple[int, CommandType, str]


class ConduitBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`ConduitConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    listener:
        The PG LISTEN thread delivering dashboard events.
    """

    def __init__(self, cfg: ConduitConfig, engine: Engine, listener: EventListener) -> None:
        intents = discord.Intents.default()
        intents.message_content = True    # Privileged: prefix workflow commands
        intents.members = True            # Privileged: role/permission conditions
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.community_name} — custom workflow commands",
        )

        self.cfg = cfg
        self.engine = engine
        self.listener = listener
        self.lookup_cache: TTLCache[LookupKey, int | None] = TTLCache(
            cfg.lookup_cache_ttl_seconds,
            max_entries=LOOKUP_CACHE_MAX_ENTRIES,
        )

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load Cog extensions.  A broken Cog is logged and skipped."""
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        # --- Static slash-command sync --------------------------------------
        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

        # --- Workflow commands per guild ------------------------------------
        cog = self._workflows_cog()
        if cog is not None:
            for guild in self.guilds:
                await cog.sync_guild(guild.id)

        # --- Cross-process notifications ------------------------------------
        self.listener.register_event_callback(
            EVENT_WORKFLOW_CHANGED, self._on_workflow_changed, loop=asyncio.get_running_loop(),
        )

    async def close(self) -> None:
        """Graceful shutdown — stop the listener thread."""
        logger.info("Bot shutting down…")
        self.listener.stop()
        await super().close()

    # -----------------------------------------------------------------------
    # Cross-service event callbacks (PG NOTIFY → bot actions)
    # -----------------------------------------------------------------------
    def _workflows_cog(self) -> Workflows | None:
        return self.get_cog("Workflows")  # type: ignore[return-value]

    async def _on_workflow_changed(self, data: dict) -> None:
        """Re-sync one guild's workflow commands after a dashboard write."""
        guild_id = int(data["guild_id"])
        if self.get_guild(guild_id) is None:
            logger.debug("Ignoring workflow_changed for unknown guild %s", guild_id)
            return
        cog = self._workflows_cog()
        if cog is None:
            logger.warning("Workflows cog not loaded; cannot sync guild %s", guild_id)
            return
        await cog.sync_guild(guild_id)
