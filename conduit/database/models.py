"""
conduit.database.models — SQLAlchemy 2.0 Data Models
=====================================================

Tables:
- workflows       — One custom command per row, versioned for optimistic
                    concurrency
- workflow_nodes  — Graph nodes of a workflow (ports + edges in JSONB)
- admin_log       — Append-only audit trail of dashboard mutations
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Conduit ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class CommandType(enum.StrEnum):
    """How a workflow's command is invoked in Discord."""
    SLASH = "slash"
    PREFIX = "prefix"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    TOGGLE = "TOGGLE"


# ---------------------------------------------------------------------------
# Workflow — one user-authored custom command
# ---------------------------------------------------------------------------
class Workflow(Base):
    """A guild-scoped custom command expressed as a node graph.

    ``version`` starts at 1 and is bumped on every successful write.  Node
    sets are never patched in place: an update replaces all of them.
    """
    __tablename__ = "workflows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    command_name: Mapped[str] = mapped_column(String(32), nullable=False)
    command_type: Mapped[str] = mapped_column(
        String(10), nullable=False, default=CommandType.SLASH.value,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    nodes: Mapped[list[WorkflowNode]] = relationship(
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowNode.position",
    )

    __table_args__ = (
        UniqueConstraint(
            "guild_id", "command_type", "command_name",
            name="uq_workflows_guild_type_command",
        ),
        Index("ix_workflows_guild_id", "guild_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Workflow id={self.id} command={self.command_name!r} "
            f"type={self.command_type} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# WorkflowNode — one step of a workflow graph
# ---------------------------------------------------------------------------
class WorkflowNode(Base):
    """A node of a workflow graph.

    ``client_id`` is the logical identity used by edge references inside
    ``node_data``; the integer ``id`` is storage identity only and never
    appears in an edge.
    """
    __tablename__ = "workflow_nodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_type: Mapped[str] = mapped_column(String(20), nullable=False)
    node_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position_x: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    position_y: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    workflow: Mapped[Workflow] = relationship(back_populates="nodes")

    __table_args__ = (
        Index("ix_workflow_nodes_workflow", "workflow_id", "position"),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowNode id={self.id} client_id={self.client_id!r} "
            f"type={self.node_type}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
