"""
conduit.constants — Shared Constants & Helpers
================================================

Single source of truth for command naming rules and workflow node
identity conventions.  Import from here instead of duplicating in cogs,
services, and routes.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Node identity
# ---------------------------------------------------------------------------
# Positional id given to a submitted node that carries no clientId.
NODE_ID_FALLBACK_PREFIX = "node-"

# Output port ids a condition node branches on.
CONDITION_TRUE_PORT = "true"
CONDITION_FALSE_PORT = "false"

# ---------------------------------------------------------------------------
# Discord command naming
# ---------------------------------------------------------------------------
SLASH_COMMAND_NAME_RE = re.compile(r"^[-_a-z0-9]{1,32}$")
SLASH_DESCRIPTION_MAX = 100
DEFAULT_COMMAND_DESCRIPTION = "Custom workflow command"

# ---------------------------------------------------------------------------
# Cross-process event types (PG NOTIFY payload ``type`` key)
# ---------------------------------------------------------------------------
EVENT_WORKFLOW_CHANGED = "workflow_changed"

# Upper bound on cached prefix lookups; keys come from member messages.
LOOKUP_CACHE_MAX_ENTRIES = 4096


def is_valid_slash_name(name: str) -> bool:
    """Return True if *name* satisfies Discord's chat-input command rule."""
    return bool(SLASH_COMMAND_NAME_RE.match(name))


def clip_description(text: str | None) -> str:
    """Trim a command description to Discord's 100-character limit."""
    if not text:
        return DEFAULT_COMMAND_DESCRIPTION
    text = text.strip()
    if len(text) <= SLASH_DESCRIPTION_MAX:
        return text
    return text[: SLASH_DESCRIPTION_MAX - 1] + "…"


# ---------------------------------------------------------------------------
# Workflow Service Allow Lists
# ---------------------------------------------------------------------------
ALLOWED_WORKFLOW_FIELDS: set[str] = {
    "name", "description", "command_name", "command_type", "enabled",
}

# Warning codes attached to a successful write
WARNING_COMMAND_SYNC_FAILED = "COMMAND_SYNC_FAILED"
