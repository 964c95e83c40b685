"""
tests/test_config.py — config.yaml Loader Tests
=================================================
"""

from __future__ import annotations

import pytest

from conduit.config import load_config

_REQUIRED = """\
community_name: Test Guild
bot_prefix: "?"
"""


def _write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_loads_required_keys_with_runtime_defaults(tmp_path):
    cfg = load_config(_write(tmp_path, _REQUIRED))
    assert cfg.community_name == "Test Guild"
    assert cfg.bot_prefix == "?"
    assert cfg.action_timeout_seconds == 10.0
    assert cfg.lookup_cache_ttl_seconds == 300.0


def test_runtime_overrides(tmp_path):
    cfg = load_config(_write(
        tmp_path, _REQUIRED + "action_timeout_seconds: 2.5\nlookup_cache_ttl_seconds: 30\n",
    ))
    assert cfg.action_timeout_seconds == 2.5
    assert cfg.lookup_cache_ttl_seconds == 30.0


def test_non_positive_timeout_rejected(tmp_path):
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, _REQUIRED + "action_timeout_seconds: 0\n"))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError, match="config.yaml.example"):
        load_config(tmp_path / "nope.yaml")


def test_missing_required_key(tmp_path):
    with pytest.raises(KeyError):
        load_config(_write(tmp_path, "bot_prefix: '!'\n"))
