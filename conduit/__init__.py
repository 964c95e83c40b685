"""
Conduit — Discord Community Bot with a Visual Command Builder
==============================================================
Lets server admins define custom bot commands as node graphs
(trigger → conditions / actions / variables → response) from the
dashboard, without writing code.  The bot validates, stores and runs
those graphs.

Package layout::

    conduit/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared constants (command naming rules, ids)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Workflow, WorkflowNode, AdminLog
    ├── engine/
    │   ├── graph.py       # Node / port / edge data model
    │   ├── validator.py   # Structural graph validation
    │   ├── executor.py    # Graph walker run on command invocation
    │   ├── cache.py       # TTL cache with an injectable clock
    │   └── listener.py    # PG LISTEN/NOTIFY cross-process events
    ├── services/
    │   ├── errors.py          # Domain exceptions
    │   ├── workflow_service.py  # Transactional persistence + save flow
    │   └── command_sync.py    # Command surface + registration trigger
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader
    │   └── cogs/
    │       └── workflows.py  # Dynamic slash/prefix workflow commands
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, registrar and JWT dependencies
        └── routes/        # Workflow REST endpoints
"""

__version__ = "0.1.0"
