"""
tests/test_db_engine.py — Session Helper & Async Bridge Tests
===============================================================
"""

from __future__ import annotations

import threading

import pytest
from conftest import run_async
from sqlalchemy import func, select

from conduit.database.engine import create_db_engine, get_session, run_db
from conduit.database.models import Workflow


def _workflow(name: str) -> Workflow:
    return Workflow(guild_id=1, name=name, command_name=name)


def test_create_engine_requires_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_db_engine()


def test_get_session_commits_on_success(db_engine):
    with get_session(db_engine) as session:
        session.add(_workflow("kept"))
    with get_session(db_engine) as session:
        assert session.scalar(select(func.count(Workflow.id))) == 1


def test_get_session_rolls_back_on_error(db_engine):
    with pytest.raises(RuntimeError):
        with get_session(db_engine) as session:
            session.add(_workflow("lost"))
            session.flush()
            raise RuntimeError("abort")
    with get_session(db_engine) as session:
        assert session.scalar(select(func.count(Workflow.id))) == 0


def test_run_db_uses_a_worker_thread():
    caller = threading.get_ident()
    worker = run_async(run_db(threading.get_ident))
    assert worker != caller
