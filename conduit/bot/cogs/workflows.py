"""
conduit.bot.cogs.workflows — Workflow Commands in Discord
===========================================================

Turns stored workflows into live commands:

- **slash** workflows become guild-scoped ``app_commands.Command`` objects,
  re-registered and synced whenever the dashboard changes a workflow.
- **prefix** workflows are matched in ``on_message`` against the
  configured prefix; lookups go through ``bot.lookup_cache``.

Either way the invocation is handed to :class:`WorkflowExecutor`, whose
:class:`ResponsePlan` is sent back to the invoking user.  Discord side
effects requested by action nodes go through
:class:`DiscordActionPerformer`, which bounds each call with
``cfg.action_timeout_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

import discord
from discord import app_commands
from discord.ext import commands

from conduit.database.engine import run_db
from conduit.database.models import CommandType
from conduit.engine.executor import (
    ExecutionResult,
    ExecutionStatus,
    InvocationContext,
    ResponsePlan,
    WorkflowExecutor,
)
from conduit.services.command_sync import load_command_surface
from conduit.services.workflow_service import find_enabled_workflow_id

if TYPE_CHECKING:
    from conduit.bot.core import ConduitBot

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACTION_FAILED_MESSAGE = "⚠️ This command could not finish. Please tell a server admin."

# Answer directly if the walk finishes within this; defer otherwise.
SLASH_ACK_DEADLINE_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Action performer
# ---------------------------------------------------------------------------
class DiscordActionPerformer:
    """Executes action-node side effects against the Discord API."""

    def __init__(self, bot: commands.Bot, timeout_seconds: float) -> None:
        self._bot = bot
        self._timeout = timeout_seconds

    async def _bounded(self, coro: Awaitable[T]) -> T:
        return await asyncio.wait_for(coro, timeout=self._timeout)

    def _guild(self, ctx: InvocationContext) -> discord.Guild:
        guild = self._bot.get_guild(ctx.guild_id)
        if guild is None:
            raise LookupError(f"Guild {ctx.guild_id} is not available")
        return guild

    async def _member(self, ctx: InvocationContext) -> discord.Member:
        guild = self._guild(ctx)
        member = guild.get_member(ctx.user_id)
        if member is None:
            member = await self._bounded(guild.fetch_member(ctx.user_id))
        return member

    def _role(self, ctx: InvocationContext, role_id: int) -> discord.Role:
        role = self._guild(ctx).get_role(role_id)
        if role is None:
            raise LookupError(f"Role {role_id} not found in guild {ctx.guild_id}")
        return role

    async def send_message(self, ctx: InvocationContext, channel_id: int, content: str) -> None:
        channel = self._bot.get_channel(channel_id)
        if channel is None:
            channel = await self._bounded(self._bot.fetch_channel(channel_id))
        if not isinstance(channel, discord.abc.Messageable):
            raise TypeError(f"Channel {channel_id} cannot receive messages")
        await self._bounded(channel.send(content))

    async def add_role(self, ctx: InvocationContext, role_id: int) -> None:
        member = await self._member(ctx)
        await self._bounded(member.add_roles(self._role(ctx, role_id), reason="Workflow action"))

    async def remove_role(self, ctx: InvocationContext, role_id: int) -> None:
        member = await self._member(ctx)
        await self._bounded(member.remove_roles(self._role(ctx, role_id), reason="Workflow action"))

    async def ban(self, ctx: InvocationContext, reason: str | None) -> None:
        guild = self._guild(ctx)
        await self._bounded(guild.ban(discord.Object(id=ctx.user_id), reason=reason))

    async def kick(self, ctx: InvocationContext, reason: str | None) -> None:
        guild = self._guild(ctx)
        await self._bounded(guild.kick(discord.Object(id=ctx.user_id), reason=reason))

    async def timeout(self, ctx: InvocationContext, seconds: int, reason: str | None) -> None:
        member = await self._member(ctx)
        await self._bounded(member.timeout(timedelta(seconds=seconds), reason=reason))


# ---------------------------------------------------------------------------
# Context & response helpers
# ---------------------------------------------------------------------------
def context_for_member(
    member: discord.Member | discord.User,
    guild_id: int,
    channel_id: int,
    args: dict[str, str] | None = None,
) -> InvocationContext:
    roles = getattr(member, "roles", [])
    perms = getattr(member, "guild_permissions", None)
    return InvocationContext(
        guild_id=guild_id,
        channel_id=channel_id,
        user_id=member.id,
        user_name=member.display_name,
        role_ids=frozenset(r.id for r in roles),
        permissions=frozenset(name for name, value in perms) if perms else frozenset(),
        args=args or {},
    )


def parse_prefix_args(rest: str) -> dict[str, str]:
    """``"a b c"`` → ``{"args": "a b c", "arg1": "a", "arg2": "b", "arg3": "c"}``."""
    args = {"args": rest}
    for i, word in enumerate(rest.split(), start=1):
        args[f"arg{i}"] = word
    return args


def _parse_color(raw: str | None) -> discord.Colour | None:
    if not raw:
        return None
    try:
        return discord.Colour(int(raw.lstrip("#"), 16))
    except ValueError:
        logger.debug("Ignoring invalid embed colour %r", raw)
        return None


def build_embed(plan: ResponsePlan) -> discord.Embed:
    return discord.Embed(
        title=plan.embed_title,
        description=plan.content,
        colour=_parse_color(plan.embed_color) or discord.Colour.blurple(),
    )


def _reply_text(result: ExecutionResult) -> str | None:
    if result.status is ExecutionStatus.ACTION_FAILED:
        return _ACTION_FAILED_MESSAGE
    return None


# ---------------------------------------------------------------------------
# Cog
# ---------------------------------------------------------------------------
class Workflows(commands.Cog, name="Workflows"):
    """Dispatches slash and prefix invocations to stored workflows."""

    def __init__(self, bot: ConduitBot) -> None:
        self.bot = bot
        self.executor = WorkflowExecutor(
            bot.engine,
            DiscordActionPerformer(bot, bot.cfg.action_timeout_seconds),
        )
        # guild id → slash names this cog registered there
        self._registered: dict[int, set[str]] = {}
        self._sync_lock = asyncio.Lock()
        self.ack_deadline_seconds = SLASH_ACK_DEADLINE_SECONDS

    # -------------------------------------------------------------------
    # Command surface sync
    # -------------------------------------------------------------------
    async def sync_guild(self, guild_id: int) -> None:
        """Rebuild and push the guild's workflow slash commands.

        Idempotent: an unchanged guild re-registers the same commands.
        """
        dropped = self.bot.lookup_cache.invalidate_where(lambda key: key[0] == guild_id)
        logger.debug("Dropped %d cached lookups for guild %s", dropped, guild_id)

        async with self._sync_lock:
            surface = await run_db(load_command_surface, self.bot.engine, guild_id)
            target = discord.Object(id=guild_id)
            tree = self.bot.tree

            for name in self._registered.pop(guild_id, set()):
                tree.remove_command(name, guild=target)

            names: set[str] = set()
            for spec in surface.slash:
                tree.add_command(
                    app_commands.Command(
                        name=spec.name,
                        description=spec.description,
                        callback=self._slash_callback(spec.workflow_id),
                    ),
                    guild=target,
                    override=True,
                )
                names.add(spec.name)
            self._registered[guild_id] = names

            try:
                synced = await tree.sync(guild=target)
            except discord.HTTPException:
                logger.exception("Slash command sync failed for guild %s", guild_id)
                return
            logger.info(
                "Synced %d slash commands to guild %s (%d workflow, %d prefix)",
                len(synced), guild_id, len(surface.slash), len(surface.prefix),
            )

    def _slash_callback(self, workflow_id: int):
        async def callback(interaction: discord.Interaction) -> None:
            await self.run_slash(interaction, workflow_id)
        return callback

    # -------------------------------------------------------------------
    # Slash invocations
    # -------------------------------------------------------------------
    async def run_slash(self, interaction: discord.Interaction, workflow_id: int) -> None:
        """Run a slash workflow and answer the interaction.

        Discord drops an interaction that is not acknowledged within three
        seconds.  A walk still running after ``ack_deadline_seconds`` is
        deferred (privately) and answered through the followup webhook.
        """
        if interaction.guild_id is None:
            await interaction.response.send_message("Workflows only run in servers.", ephemeral=True)
            return
        ctx = context_for_member(
            interaction.user, interaction.guild_id, interaction.channel_id or 0,
        )
        deferred = False
        run = asyncio.ensure_future(self.executor.execute(workflow_id, ctx))
        try:
            try:
                result = await asyncio.wait_for(
                    asyncio.shield(run), timeout=self.ack_deadline_seconds,
                )
            except asyncio.TimeoutError:
                await interaction.response.defer(ephemeral=True, thinking=True)
                deferred = True
                result = await run
        except Exception:
            logger.exception("Workflow %s crashed for user %s", workflow_id, ctx.user_id)
            await self._answer(interaction, deferred, _ACTION_FAILED_MESSAGE, ephemeral=True)
            return

        plan = result.response
        if plan is None:
            text = _reply_text(result) or "✅ Done."
            await self._answer(interaction, deferred, text, ephemeral=True)
        elif plan.embed:
            await self._answer(interaction, deferred, embed=build_embed(plan), ephemeral=plan.ephemeral)
        else:
            await self._answer(interaction, deferred, plan.content, ephemeral=plan.ephemeral)

    @staticmethod
    async def _answer(
        interaction: discord.Interaction,
        deferred: bool,
        content: str | None = None,
        **kwargs,
    ) -> None:
        if deferred:
            await interaction.followup.send(content, **kwargs)
        else:
            await interaction.response.send_message(content, **kwargs)

    # -------------------------------------------------------------------
    # Prefix invocations
    # -------------------------------------------------------------------
    def _lookup_prefix(self, guild_id: int, name: str) -> int | None:
        return self.bot.lookup_cache.get_or_load(
            (guild_id, CommandType.PREFIX, name),
            lambda: find_enabled_workflow_id(self.bot.engine, guild_id, CommandType.PREFIX, name),
        )

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        prefix = self.bot.cfg.bot_prefix
        if not message.content.startswith(prefix):
            return
        head, _, rest = message.content[len(prefix):].strip().partition(" ")
        if not head:
            return

        name = head.lower()
        try:
            workflow_id = await run_db(self._lookup_prefix, message.guild.id, name)
            if workflow_id is None:
                return
            ctx = context_for_member(
                message.author, message.guild.id, message.channel.id, parse_prefix_args(rest),
            )
            result = await self.executor.execute(workflow_id, ctx)
            await self._reply(message, result)
        except Exception:
            logger.exception(
                "Error running prefix workflow '%s' for user %s",
                name, message.author.id,
            )

    async def _reply(self, message: discord.Message, result: ExecutionResult) -> None:
        plan = result.response
        if plan is None:
            text = _reply_text(result)
            if text:
                await message.reply(text, mention_author=False)
            return
        if plan.embed:
            await message.reply(embed=build_embed(plan), mention_author=False)
        else:
            await message.reply(plan.content, mention_author=False)

    @commands.Cog.listener()
    async def on_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        # Prefix workflows share the bot prefix with discord.py's command parser.
        if isinstance(error, commands.CommandNotFound):
            return
        logger.error("Command %s failed", ctx.command, exc_info=error)


async def setup(bot: ConduitBot) -> None:
    await bot.add_cog(Workflows(bot))
