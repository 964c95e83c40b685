"""
conduit.engine.listener — Cross-Process Events via PG LISTEN/NOTIFY
=====================================================================

The dashboard API and the bot are separate processes sharing one
PostgreSQL database.  When the API commits a workflow change it sends a
``NOTIFY conduit_events, '<json>'``; the bot runs a background LISTEN
thread and dispatches each payload, by its ``type`` key, to an async
callback on the bot's event loop.

Usage (bot side)::

    listener = EventListener(engine)
    listener.register_event_callback("workflow_changed", on_changed, loop=loop)
    listener.start()

Usage (API side)::

    send_event_notify(engine, {"type": "workflow_changed", "guild_id": 123})
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import select as _select
import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# PG channel for cross-service event notifications
EVENT_NOTIFY_CHANNEL = "conduit_events"

EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


class EventListener:
    """Background LISTEN thread with reconnect backoff and a circuit breaker."""

    def __init__(
        self,
        engine: Engine,
        *,
        max_reconnect_attempts: int = 10,
        base_backoff: float = 1.0,
        max_backoff: float = 60.0,
    ) -> None:
        self._engine = engine
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

        # event type → async callable
        self._event_callbacks: dict[str, EventCallback] = {}
        self._event_loop: asyncio.AbstractEventLoop | None = None

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self) -> None:
        """Run :meth:`_run` on a daemon thread."""
        thread = threading.Thread(target=self._run, daemon=True, name="pg-notify-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("PG NOTIFY listener thread started")

    def stop(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG NOTIFY listener thread stopped")

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect *attempt* (1-based), jitter included."""
        backoff = min(self._base_backoff * (2 ** (attempt - 1)), self._max_backoff)
        return backoff + random.uniform(0, backoff * 0.5)

    def _dsn(self) -> str:
        # str(engine.url) masks the password; psycopg2 needs it.
        raw_url = self._engine.url.render_as_string(hide_password=False)
        return raw_url.replace("postgresql+psycopg2://", "postgresql://")

    def _run(self) -> None:
        """Reconnect loop.  Gives up after ``max_reconnect_attempts`` failures in a row."""
        import psycopg2

        attempt = 0
        while not self._shutdown_event.is_set():
            conn = None
            try:
                conn = psycopg2.connect(self._dsn())
                attempt = 0
                self._listen(conn)
            except Exception:
                self._listener_healthy = False
                attempt += 1
                if attempt >= self._max_reconnect_attempts:
                    logger.critical(
                        "PG LISTEN exhausted %d retries. "
                        "Workflow command sync events disabled.",
                        self._max_reconnect_attempts,
                    )
                    self._listener_failed = True
                    return
                wait = self.backoff_delay(attempt)
                logger.exception(
                    "PG LISTEN connection lost (attempt %d/%d). Reconnecting in %.1fs…",
                    attempt, self._max_reconnect_attempts, wait,
                )
                if self._shutdown_event.wait(timeout=wait):
                    return
            finally:
                if conn is not None:
                    try:
                        conn.close()
                    except Exception:
                        logger.debug("Error closing LISTEN connection", exc_info=True)

    def _listen(self, conn) -> None:
        """Block on *conn* (via ``select()``) and dispatch notifications until shutdown."""
        conn.set_isolation_level(0)  # autocommit
        conn.cursor().execute(f"LISTEN {EVENT_NOTIFY_CHANNEL};")
        self._listener_healthy = True
        logger.info("PG LISTEN started on channel '%s'", EVENT_NOTIFY_CHANNEL)

        while not self._shutdown_event.is_set():
            if _select.select([conn], [], [], 5.0) == ([], [], []):
                continue
            conn.poll()
            while conn.notifies:
                payload = conn.notifies.pop(0).payload or ""
                logger.debug("NOTIFY received: %s", payload)
                try:
                    self.dispatch_event(payload)
                except Exception:
                    logger.exception("Error handling NOTIFY payload: %s", payload)

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    def register_event_callback(
        self,
        event_type: str,
        callback: EventCallback,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Register an async *callback* for payloads whose ``type`` is *event_type*.

        *loop* is the event loop callbacks are scheduled on; stored once.
        """
        self._event_callbacks[event_type] = callback
        if loop is not None:
            self._event_loop = loop
        logger.info("Registered event callback for '%s'", event_type)

    def dispatch_event(self, raw_payload: str) -> bool:
        """Parse a JSON payload and schedule its callback.

        Returns True if a callback was scheduled.
        """
        try:
            data = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid event payload (not JSON): %s", raw_payload)
            return False

        event_type = data.get("type") if isinstance(data, dict) else None
        if not event_type:
            logger.warning("Event payload missing 'type' key: %s", raw_payload)
            return False

        callback = self._event_callbacks.get(event_type)
        if callback is None:
            logger.debug("No callback registered for event type '%s'", event_type)
            return False

        loop = self._event_loop
        if loop is None or loop.is_closed():
            logger.warning("Cannot dispatch event '%s': no event loop available", event_type)
            return False

        asyncio.run_coroutine_threadsafe(callback(data), loop)
        return True


def send_event_notify(engine: Engine, payload: dict[str, Any]) -> None:
    """Send a NOTIFY on the ``conduit_events`` channel with a JSON payload.

    *payload* must include a ``"type"`` key.
    """
    if "type" not in payload:
        raise ValueError("Event payload must include a 'type' key")
    raw = json.dumps(payload, default=str)
    escaped = raw.replace("'", "''")
    with engine.connect() as conn:
        conn.execute(text(f"NOTIFY {EVENT_NOTIFY_CHANNEL}, '{escaped}'"))
        conn.commit()
