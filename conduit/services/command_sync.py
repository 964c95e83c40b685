"""
conduit.services.command_sync — Workflow → Discord Command Surface
====================================================================

Every successful workflow write ends with exactly one call to
``registrar.on_workflow_changed(guild_id)``.  The dashboard API and the
bot are different processes, so the API-side registrar
(:class:`NotifyCommandRegistrar`) just publishes a ``workflow_changed``
event over PG NOTIFY; the bot's workflows cog picks it up, rebuilds the
guild's surface with :func:`build_command_surface` and syncs its app
command tree.

The registrar contract is idempotent: calling it when nothing changed
re-derives the same surface.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, assert_never

from conduit.constants import EVENT_WORKFLOW_CHANGED, clip_description, is_valid_slash_name
from conduit.database.models import CommandType, Workflow
from conduit.engine.listener import send_event_notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class CommandRegistrar(Protocol):
    def on_workflow_changed(self, guild_id: int) -> None: ...


class NotifyCommandRegistrar:
    """Publishes ``workflow_changed`` for the bot process to act on."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def on_workflow_changed(self, guild_id: int) -> None:
        # Snowflakes exceed JS number precision; keep them as strings on the wire.
        send_event_notify(self._engine, {
            "type": EVENT_WORKFLOW_CHANGED,
            "guild_id": str(guild_id),
        })
        logger.debug("Published %s for guild %s", EVENT_WORKFLOW_CHANGED, guild_id)


class NullCommandRegistrar:
    """Registrar that does nothing.  For tests and offline tooling."""

    def on_workflow_changed(self, guild_id: int) -> None:
        return None


# ---------------------------------------------------------------------------
# Surface derivation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SlashCommandSpec:
    name: str
    description: str
    workflow_id: int


@dataclass(frozen=True, slots=True)
class PrefixCommandSpec:
    name: str
    workflow_id: int


@dataclass(frozen=True, slots=True)
class CommandSurface:
    """Everything a guild's enabled workflows expose, sorted by name."""

    slash: tuple[SlashCommandSpec, ...] = ()
    prefix: tuple[PrefixCommandSpec, ...] = ()

    def prefix_names(self) -> list[str]:
        return [p.name for p in self.prefix]


def build_command_surface(workflows: Iterable[Workflow]) -> CommandSurface:
    """Derive the command surface from *workflows*.

    Disabled workflows are ignored.  A slash workflow whose name breaks
    Discord's naming rule is skipped with a warning rather than failing
    the whole sync.
    """
    slash: list[SlashCommandSpec] = []
    prefix: list[PrefixCommandSpec] = []

    for wf in sorted(workflows, key=lambda w: w.command_name):
        if not wf.enabled:
            continue
        kind = CommandType(wf.command_type)
        match kind:
            case CommandType.SLASH:
                if not is_valid_slash_name(wf.command_name):
                    logger.warning(
                        "Skipping workflow %s: '%s' is not a valid slash command name",
                        wf.id, wf.command_name,
                    )
                    continue
                slash.append(SlashCommandSpec(
                    name=wf.command_name,
                    description=clip_description(wf.description),
                    workflow_id=wf.id,
                ))
            case CommandType.PREFIX:
                prefix.append(PrefixCommandSpec(name=wf.command_name, workflow_id=wf.id))
            case _:
                assert_never(kind)

    return CommandSurface(slash=tuple(slash), prefix=tuple(prefix))


def load_command_surface(engine: Engine, guild_id: int) -> CommandSurface:
    """Read the guild's enabled workflows and derive its surface."""
    from conduit.services.workflow_service import list_enabled_workflows

    return build_command_surface(list_enabled_workflows(engine, guild_id))
