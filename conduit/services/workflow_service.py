"""
conduit.services.workflow_service — Workflow Persistence & Save Flow
======================================================================

Two layers live here:

**Persistence gateway** (synchronous, one transaction per call):

- :func:`create_with_nodes` — insert the workflow and every node, or
  nothing.
- :func:`update_with_nodes` — ``UPDATE … SET version = version + 1 WHERE
  version = :expected``; on a match, delete all nodes and insert the new
  set.  Returns ``None`` on a version mismatch, leaving rows untouched.

**Save orchestration** (:func:`save_workflow`, :func:`toggle_workflow`,
:func:`delete_workflow_and_sync`):

  1. Validate the graph — before any transaction opens
  2. Persist atomically (version-checked for updates)
  3. Write admin_log in the same transaction
  4. Tell the :class:`CommandRegistrar` exactly once, after commit

A registrar failure never undoes a committed save; it comes back as a
``COMMAND_SYNC_FAILED`` warning on the outcome.

Call these from async code through ``run_db``.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError
from sqlalchemy.orm import Session

from conduit.constants import ALLOWED_WORKFLOW_FIELDS, WARNING_COMMAND_SYNC_FAILED
from conduit.database.engine import get_session
from conduit.database.models import (
    AdminActionType,
    AdminLog,
    CommandType,
    Workflow,
    WorkflowNode,
)
from conduit.engine.graph import NodeKind, NodeView, WorkflowGraph, node_id_for
from conduit.engine.validator import ValidationError, ValidationResult, validate
from conduit.services.errors import DuplicateCommandError, PersistenceError

if TYPE_CHECKING:
    from conduit.services.command_sync import CommandRegistrar

logger = logging.getLogger(__name__)

_TABLE = "workflows"


# ---------------------------------------------------------------------------
# Submitted node shape
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NodeSpec:
    """One submitted node, already shape-checked, with its logical id resolved."""

    client_id: str
    node_type: NodeKind
    node_data: dict[str, Any]
    position_x: float = 0.0
    position_y: float = 0.0

    def view(self) -> NodeView:
        return NodeView.from_payload(self.client_id, self.node_type, self.node_data)


def node_specs_from_payload(raw_nodes: Sequence[Mapping[str, Any]]) -> list[NodeSpec]:
    """Build :class:`NodeSpec` objects from dashboard JSON (camelCase keys).

    A node's id is its ``clientId``, else ``node-<index>``.

    Raises
    ------
    ValueError
        Two nodes resolve to the same id.
    """
    specs: list[NodeSpec] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_nodes):
        client_id = node_id_for(raw.get("clientId"), index)
        if client_id in seen:
            raise ValueError(f"Duplicate node id '{client_id}'")
        seen.add(client_id)
        specs.append(NodeSpec(
            client_id=client_id,
            node_type=NodeKind(raw["nodeType"]),
            node_data=dict(raw["nodeData"]),
            position_x=float(raw.get("positionX", 0.0)),
            position_y=float(raw.get("positionY", 0.0)),
        ))
    return specs


def validate_specs(nodes: Sequence[NodeSpec]) -> ValidationResult:
    return validate([spec.view() for spec in nodes])


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def workflow_to_dict(wf: Workflow) -> dict[str, Any]:
    return {
        "id": wf.id,
        "guildId": str(wf.guild_id),
        "name": wf.name,
        "description": wf.description,
        "commandName": wf.command_name,
        "commandType": wf.command_type,
        "enabled": wf.enabled,
        "version": wf.version,
        "createdAt": _iso(wf.created_at),
        "updatedAt": _iso(wf.updated_at),
    }


def node_to_dict(node: WorkflowNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "clientId": node.client_id,
        "nodeType": node.node_type,
        "nodeData": node.node_data,
        "positionX": node.position_x,
        "positionY": node.position_y,
    }


def _snapshot(wf: Workflow, node_count: int) -> dict[str, Any]:
    snap = workflow_to_dict(wf)
    snap.pop("createdAt")
    snap.pop("updatedAt")
    snap["nodeCount"] = node_count
    return snap


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------
def _clean_values(values: Mapping[str, Any]) -> dict[str, Any]:
    cleaned = {k: v for k, v in values.items() if k in ALLOWED_WORKFLOW_FIELDS}
    if "command_type" in cleaned:
        cleaned["command_type"] = CommandType(cleaned["command_type"]).value
    return cleaned


def _normalise_command_name(values: dict[str, Any], command_type: str) -> None:
    # Prefix invocations are matched lowercased in the bot.
    if command_type == CommandType.PREFIX and "command_name" in values:
        values["command_name"] = values["command_name"].lower()


def _log_admin_action(
    session: Session,
    *,
    actor_id: int | None,
    action_type: AdminActionType,
    target_id: int,
    before: dict | None,
    after: dict | None,
) -> None:
    if actor_id is None:
        return
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type.value,
        target_table=_TABLE,
        target_id=str(target_id),
        before_snapshot=before,
        after_snapshot=after,
    ))


def _ensure_command_free(
    session: Session,
    guild_id: int,
    command_type: str,
    command_name: str,
    *,
    exclude_id: int | None = None,
) -> None:
    query = select(Workflow.id).where(
        Workflow.guild_id == guild_id,
        Workflow.command_type == command_type,
        Workflow.command_name == command_name,
    )
    if exclude_id is not None:
        query = query.where(Workflow.id != exclude_id)
    if session.scalar(query) is not None:
        raise DuplicateCommandError(command_type, command_name)


def _insert_nodes(
    session: Session, workflow_id: int, nodes: Sequence[NodeSpec]
) -> None:
    for position, spec in enumerate(nodes):
        session.add(WorkflowNode(
            workflow_id=workflow_id,
            client_id=spec.client_id,
            node_type=spec.node_type.value,
            node_data=spec.node_data,
            position=position,
            position_x=spec.position_x,
            position_y=spec.position_y,
        ))
    session.flush()


def _count_nodes(session: Session, workflow_id: int) -> int:
    return session.scalar(
        select(func.count(WorkflowNode.id)).where(WorkflowNode.workflow_id == workflow_id)
    ) or 0


def _select_nodes(session: Session, workflow_id: int) -> list[WorkflowNode]:
    return list(session.scalars(
        select(WorkflowNode)
        .where(WorkflowNode.workflow_id == workflow_id)
        .order_by(WorkflowNode.position)
        .execution_options(populate_existing=True)
    ).all())


def _reload(session: Session, workflow_id: int) -> tuple[Workflow, list[WorkflowNode]]:
    """Re-read the committed rows so server-side defaults are populated."""
    wf = session.get(Workflow, workflow_id, populate_existing=True)
    if wf is None:
        raise NoResultFound(f"Workflow {workflow_id} disappeared during save")
    return wf, _select_nodes(session, workflow_id)


def _get_scoped(session: Session, guild_id: int, workflow_id: int) -> Workflow | None:
    wf = session.get(Workflow, workflow_id)
    if wf is None or wf.guild_id != guild_id:
        return None
    return wf


def _versioned_update(
    session: Session,
    guild_id: int,
    workflow_id: int,
    values: dict[str, Any],
    expected_version: int,
) -> bool:
    """Apply *values* and bump the version iff it still equals *expected_version*."""
    result = session.execute(
        update(Workflow)
        .where(
            Workflow.id == workflow_id,
            Workflow.guild_id == guild_id,
            Workflow.version == expected_version,
        )
        .values(**values, version=Workflow.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Persistence gateway — reads
# ---------------------------------------------------------------------------
def get_workflow(engine: Engine, guild_id: int, workflow_id: int) -> Workflow | None:
    with Session(engine, expire_on_commit=False) as session:
        return _get_scoped(session, guild_id, workflow_id)


def get_workflow_nodes(engine: Engine, workflow_id: int) -> list[WorkflowNode]:
    with Session(engine, expire_on_commit=False) as session:
        return _select_nodes(session, workflow_id)


def list_workflows(engine: Engine, guild_id: int) -> list[Workflow]:
    with Session(engine, expire_on_commit=False) as session:
        return list(session.scalars(
            select(Workflow).where(Workflow.guild_id == guild_id).order_by(Workflow.name)
        ).all())


def list_enabled_workflows(engine: Engine, guild_id: int) -> list[Workflow]:
    with Session(engine, expire_on_commit=False) as session:
        return list(session.scalars(
            select(Workflow)
            .where(Workflow.guild_id == guild_id, Workflow.enabled.is_(True))
            .order_by(Workflow.command_name)
        ).all())


def find_enabled_workflow_id(
    engine: Engine, guild_id: int, command_type: CommandType, command_name: str
) -> int | None:
    """Id of the enabled workflow bound to this command, if any."""
    with Session(engine) as session:
        return session.scalar(
            select(Workflow.id).where(
                Workflow.guild_id == guild_id,
                Workflow.command_type == command_type.value,
                Workflow.command_name == command_name,
                Workflow.enabled.is_(True),
            )
        )


def load_graph(
    engine: Engine, workflow_id: int, guild_id: int | None = None
) -> WorkflowGraph | None:
    """Rebuild the stored graph of *workflow_id* for execution."""
    with Session(engine) as session:
        wf = session.get(Workflow, workflow_id)
        if wf is None or (guild_id is not None and wf.guild_id != guild_id):
            return None
        rows = _select_nodes(session, workflow_id)
        return WorkflowGraph([
            NodeView.from_payload(row.client_id, row.node_type, row.node_data)
            for row in rows
        ])


# ---------------------------------------------------------------------------
# Persistence gateway — writes
# ---------------------------------------------------------------------------
def create_with_nodes(
    engine: Engine,
    meta: Mapping[str, Any],
    nodes: Sequence[NodeSpec],
    *,
    guild_id: int,
    actor_id: int | None = None,
) -> tuple[Workflow, list[WorkflowNode]]:
    """Insert a workflow and all of its nodes in one transaction.

    Raises
    ------
    DuplicateCommandError
        If the guild already has a command with the same name and type.
    """
    values = _clean_values(meta)
    values.setdefault("command_type", CommandType.SLASH.value)
    _normalise_command_name(values, values["command_type"])
    try:
        with Session(engine, expire_on_commit=False) as session:
            _ensure_command_free(
                session, guild_id, values["command_type"], values["command_name"],
            )
            wf = Workflow(guild_id=guild_id, **values)
            session.add(wf)
            session.flush()
            _insert_nodes(session, wf.id, nodes)
            _log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.CREATE,
                target_id=wf.id,
                before=None,
                after=_snapshot(wf, len(nodes)),
            )
            session.commit()
            return _reload(session, wf.id)
    except IntegrityError as exc:
        # Lost a race against a concurrent create of the same command.
        raise DuplicateCommandError(values["command_type"], values["command_name"]) from exc


def update_with_nodes(
    engine: Engine,
    guild_id: int,
    workflow_id: int,
    patch: Mapping[str, Any],
    nodes: Sequence[NodeSpec],
    expected_version: int,
    *,
    actor_id: int | None = None,
) -> tuple[Workflow, list[WorkflowNode]] | None:
    """Replace a workflow's node set if its version is still *expected_version*.

    Returns ``None`` when the workflow is missing or its version has moved
    on; nothing is written in that case.
    """
    return _update(
        engine, guild_id, workflow_id, patch, nodes, expected_version,
        actor_id=actor_id,
    )


def update_metadata(
    engine: Engine,
    guild_id: int,
    workflow_id: int,
    patch: Mapping[str, Any],
    expected_version: int,
    *,
    actor_id: int | None = None,
) -> tuple[Workflow, list[WorkflowNode]] | None:
    """Version-checked update of the workflow row only; nodes are kept."""
    return _update(
        engine, guild_id, workflow_id, patch, None, expected_version,
        actor_id=actor_id,
    )


def _update(
    engine: Engine,
    guild_id: int,
    workflow_id: int,
    patch: Mapping[str, Any],
    nodes: Sequence[NodeSpec] | None,
    expected_version: int,
    *,
    actor_id: int | None,
    action_type: AdminActionType = AdminActionType.UPDATE,
) -> tuple[Workflow, list[WorkflowNode]] | None:
    values = _clean_values(patch)
    renames_command = "command_name" in values or "command_type" in values
    command: tuple[str, str] = ("", "")
    try:
        with Session(engine, expire_on_commit=False) as session:
            current = _get_scoped(session, guild_id, workflow_id)
            if current is None or current.version != expected_version:
                return None
            before = _snapshot(current, _count_nodes(session, workflow_id))

            if renames_command:
                command_type = values.get("command_type", current.command_type)
                _normalise_command_name(values, command_type)
                command = (command_type, values.get("command_name", current.command_name))
                _ensure_command_free(session, guild_id, *command, exclude_id=workflow_id)

            if not _versioned_update(session, guild_id, workflow_id, values, expected_version):
                session.rollback()
                return None

            if nodes is not None:
                session.execute(
                    delete(WorkflowNode)
                    .where(WorkflowNode.workflow_id == workflow_id)
                    .execution_options(synchronize_session=False)
                )
                _insert_nodes(session, workflow_id, nodes)

            wf, rows = _reload(session, workflow_id)
            _log_admin_action(
                session,
                actor_id=actor_id,
                action_type=action_type,
                target_id=workflow_id,
                before=before,
                after=_snapshot(wf, len(rows)),
            )
            session.commit()
            return _reload(session, workflow_id)
    except IntegrityError as exc:
        if not renames_command:
            raise
        raise DuplicateCommandError(*command) from exc


def set_enabled(
    engine: Engine,
    guild_id: int,
    workflow_id: int,
    enabled: bool,
    *,
    expected_version: int | None = None,
    actor_id: int | None = None,
) -> Workflow | None:
    """Turn a workflow's command on or off.  Bumps the version.

    Returns ``None`` when the workflow is missing or no longer at
    *expected_version* (default: the version stored right now).
    """
    if expected_version is None:
        current = get_workflow(engine, guild_id, workflow_id)
        if current is None:
            return None
        expected_version = current.version
    result = _update(
        engine, guild_id, workflow_id, {"enabled": enabled}, None, expected_version,
        actor_id=actor_id,
        action_type=AdminActionType.TOGGLE,
    )
    return result[0] if result else None


def delete_workflow(
    engine: Engine, guild_id: int, workflow_id: int, *, actor_id: int | None = None
) -> bool:
    """Delete a workflow and (by cascade) its nodes.  False if not found."""
    with get_session(engine) as session:
        wf = _get_scoped(session, guild_id, workflow_id)
        if wf is None:
            return False
        before = _snapshot(wf, _count_nodes(session, workflow_id))
        session.delete(wf)
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DELETE,
            target_id=workflow_id,
            before=before,
            after=None,
        )
        return True


# ---------------------------------------------------------------------------
# Save orchestration
# ---------------------------------------------------------------------------
class WriteStatus(enum.StrEnum):
    OK = "ok"
    INVALID = "invalid"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class WriteOutcome:
    """Result of a dashboard write.  Only ``OK`` means something was committed."""

    status: WriteStatus
    workflow: Workflow | None = None
    nodes: list[WorkflowNode] = field(default_factory=list)
    errors: tuple[ValidationError, ...] = ()
    current_version: int | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is WriteStatus.OK


def _sync_commands(registrar: CommandRegistrar, guild_id: int) -> list[str]:
    try:
        registrar.on_workflow_changed(guild_id)
    except Exception:
        logger.warning(
            "Command sync failed for guild %s; live commands may be stale",
            guild_id, exc_info=True,
        )
        return [WARNING_COMMAND_SYNC_FAILED]
    return []


def _rejected_write(
    engine: Engine, guild_id: int, workflow_id: int, expected_version: int
) -> WriteOutcome:
    """Tell a vanished workflow apart from one whose version moved on."""
    latest = get_workflow(engine, guild_id, workflow_id)
    if latest is None:
        return WriteOutcome(status=WriteStatus.NOT_FOUND)
    logger.info(
        "Version conflict on workflow %s in guild %s (expected v%s, stored v%s)",
        workflow_id, guild_id, expected_version, latest.version,
    )
    return WriteOutcome(status=WriteStatus.CONFLICT, current_version=latest.version)


def save_workflow(
    engine: Engine,
    registrar: CommandRegistrar,
    *,
    guild_id: int,
    meta: Mapping[str, Any],
    nodes: Sequence[NodeSpec] | None,
    workflow_id: int | None = None,
    expected_version: int | None = None,
    actor_id: int | None = None,
) -> WriteOutcome:
    """Validate, persist and publish a workflow.

    Without *workflow_id* this creates; with it, it updates.  On update,
    ``nodes=None`` leaves the node set alone and *expected_version*
    defaults to the version currently stored.

    Raises
    ------
    DuplicateCommandError
        The command name/type is taken by another workflow in the guild.
    PersistenceError
        The database failed; already logged with workflow/guild context.
    """
    if nodes is not None:
        result = validate_specs(nodes)
        if not result.valid:
            logger.debug(
                "Workflow %s in guild %s rejected: %s",
                workflow_id, guild_id, [e.code.value for e in result.errors],
            )
            return WriteOutcome(status=WriteStatus.INVALID, errors=result.errors)

    try:
        if workflow_id is None:
            wf, rows = create_with_nodes(
                engine, meta, nodes or [], guild_id=guild_id, actor_id=actor_id,
            )
        else:
            current = get_workflow(engine, guild_id, workflow_id)
            if current is None:
                return WriteOutcome(status=WriteStatus.NOT_FOUND)
            version = current.version if expected_version is None else expected_version
            if nodes is None:
                saved = update_metadata(
                    engine, guild_id, workflow_id, meta, version, actor_id=actor_id,
                )
            else:
                saved = update_with_nodes(
                    engine, guild_id, workflow_id, meta, nodes, version, actor_id=actor_id,
                )
            if saved is None:
                return _rejected_write(engine, guild_id, workflow_id, version)
            wf, rows = saved
    except SQLAlchemyError as exc:
        logger.exception(
            "Failed to persist workflow %s for guild %s", workflow_id, guild_id,
        )
        raise PersistenceError(
            "Failed to save workflow", workflow_id=workflow_id, guild_id=guild_id,
        ) from exc

    logger.info(
        "Saved workflow %s (%s/%s v%s, %d nodes) for guild %s",
        wf.id, wf.command_type, wf.command_name, wf.version, len(rows), guild_id,
    )
    return WriteOutcome(
        status=WriteStatus.OK,
        workflow=wf,
        nodes=rows,
        warnings=_sync_commands(registrar, guild_id),
    )


def toggle_workflow(
    engine: Engine,
    registrar: CommandRegistrar,
    *,
    guild_id: int,
    workflow_id: int,
    enabled: bool,
    actor_id: int | None = None,
) -> WriteOutcome:
    """Enable or disable a workflow, then re-sync the guild's commands.

    A save landing between the read and the write yields ``CONFLICT``.
    """
    try:
        current = get_workflow(engine, guild_id, workflow_id)
        if current is None:
            return WriteOutcome(status=WriteStatus.NOT_FOUND)
        wf = set_enabled(
            engine, guild_id, workflow_id, enabled,
            expected_version=current.version, actor_id=actor_id,
        )
        if wf is None:
            return _rejected_write(engine, guild_id, workflow_id, current.version)
    except SQLAlchemyError as exc:
        logger.exception("Failed to toggle workflow %s for guild %s", workflow_id, guild_id)
        raise PersistenceError(
            "Failed to toggle workflow", workflow_id=workflow_id, guild_id=guild_id,
        ) from exc
    logger.info("Workflow %s %s in guild %s", workflow_id,
                "enabled" if enabled else "disabled", guild_id)
    return WriteOutcome(
        status=WriteStatus.OK,
        workflow=wf,
        warnings=_sync_commands(registrar, guild_id),
    )


def delete_workflow_and_sync(
    engine: Engine,
    registrar: CommandRegistrar,
    *,
    guild_id: int,
    workflow_id: int,
    actor_id: int | None = None,
) -> WriteOutcome:
    """Delete a workflow, then re-sync the guild's commands."""
    try:
        deleted = delete_workflow(engine, guild_id, workflow_id, actor_id=actor_id)
    except SQLAlchemyError as exc:
        logger.exception("Failed to delete workflow %s for guild %s", workflow_id, guild_id)
        raise PersistenceError(
            "Failed to delete workflow", workflow_id=workflow_id, guild_id=guild_id,
        ) from exc
    if not deleted:
        return WriteOutcome(status=WriteStatus.NOT_FOUND)
    logger.info("Deleted workflow %s from guild %s", workflow_id, guild_id)
    return WriteOutcome(status=WriteStatus.OK, warnings=_sync_commands(registrar, guild_id))
