"""
conduit.bot.__main__ — Entry point for ``python -m conduit.bot``
================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Start the PG LISTEN/NOTIFY background listener.
5. Create the ConduitBot and hand it config + engine + listener.
6. Start the bot (blocking — runs the asyncio event loop).

Run with::

    python -m conduit.bot
"""

from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv

from conduit.bot.core import ConduitBot
from conduit.config import load_config
from conduit.database.engine import create_db_engine, init_db
from conduit.engine.listener import EventListener

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("conduit")


def main() -> None:
    """Bootstrap and run the Conduit bot."""

    # 1. Environment variables (secrets).
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. PG LISTEN/NOTIFY background thread.
    listener = EventListener(engine)
    listener.start()

    # 5. Bot.
    bot = ConduitBot(cfg=cfg, engine=engine, listener=listener)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Conduit bot…")
    try:
        bot.run(token, log_handler=None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
