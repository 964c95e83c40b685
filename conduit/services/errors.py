"""
conduit.services.errors — Workflow Domain Exceptions
=====================================================

Only *unexpected* or caller-actionable failures are exceptions.  Graph
validation problems and version conflicts are ordinary outcomes and are
returned as data (see :class:`~conduit.services.workflow_service.WriteOutcome`).
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for workflow service errors."""


class DuplicateCommandError(WorkflowError):
    """Another workflow in the guild already owns this command name + type."""

    def __init__(self, command_type: str, command_name: str) -> None:
        self.command_type = command_type
        self.command_name = command_name
        super().__init__(
            f"A {command_type} command named '{command_name}' already exists in this guild"
        )


class PersistenceError(WorkflowError):
    """The database failed for a reason other than a version conflict."""

    def __init__(self, message: str, *, workflow_id: int | None, guild_id: int) -> None:
        self.workflow_id = workflow_id
        self.guild_id = guild_id
        super().__init__(message)
