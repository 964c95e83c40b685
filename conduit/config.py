"""
conduit.config — YAML Configuration Loader
===========================================

Reads ``config.yaml`` for the bot's **non-secret** settings.  Secrets
(bot token, database URL, JWT secret) stay in ``.env`` and are read
where they are needed.

Usage::

    from conduit.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.bot_prefix)            # "!"
    print(cfg.action_timeout_seconds)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass(frozen=True, slots=True)
class ConduitConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    community_name: str
    bot_prefix: str  # Prefix for prefix-type workflow commands

    # Upper bound for one Discord side effect of an action node
    action_timeout_seconds: float = 10.0
    # (guild, command type, command name) → workflow id lookups
    lookup_cache_ttl_seconds: float = 300.0


def load_config(path: str | Path = "config.yaml") -> ConduitConfig:
    """Read *path* and return a :class:`ConduitConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If a runtime bound is not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    cfg = ConduitConfig(
        community_name=raw["community_name"],
        bot_prefix=str(raw["bot_prefix"]),
        action_timeout_seconds=float(raw.get("action_timeout_seconds", 10.0)),
        lookup_cache_ttl_seconds=float(raw.get("lookup_cache_ttl_seconds", 300.0)),
    )
    if cfg.action_timeout_seconds <= 0 or cfg.lookup_cache_ttl_seconds <= 0:
        raise ValueError("action_timeout_seconds and lookup_cache_ttl_seconds must be positive")
    return cfg
