"""
conduit.api.routes.workflows — Workflow builder endpoints
===========================================================

All endpoints require an admin JWT.

    GET    /guilds/{guild_id}/workflows                 — List workflows
    GET    /guilds/{guild_id}/workflows/{id}            — Workflow + nodes
    POST   /guilds/{guild_id}/workflows/validate        — Dry-run graph check
    POST   /guilds/{guild_id}/workflows/save            — Create atomically
    PATCH  /guilds/{guild_id}/workflows/{id}/save       — Version-checked update
    POST   /guilds/{guild_id}/workflows/{id}/toggle     — Enable / disable
    DELETE /guilds/{guild_id}/workflows/{id}            — Delete (cascades)

Node shapes are checked by the pydantic models below (422 on failure)
before the graph validator ever sees them.  Graph errors come back as a
400 carrying *every* violation.  Duplicate commands (409) and database
failures (500) are mapped by the exception handlers in
:mod:`conduit.api.main`.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import Engine

from conduit.api.deps import actor_id_of, get_current_admin, get_engine, get_registrar
from conduit.constants import is_valid_slash_name
from conduit.database.models import CommandType
from conduit.engine.graph import NodeKind, node_id_for
from conduit.services import workflow_service
from conduit.services.command_sync import CommandRegistrar
from conduit.services.workflow_service import WriteOutcome, WriteStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


# ---------------------------------------------------------------------------
# Pydantic schemas (camelCase on the wire)
# ---------------------------------------------------------------------------
class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PortModel(_CamelModel):
    id: str = Field(min_length=1)
    type: Literal["default", "condition"] = "default"
    accepts: list[str] | None = None


class PortsModel(_CamelModel):
    inputs: list[PortModel] = Field(default_factory=list)
    outputs: list[PortModel] = Field(default_factory=list)


class EdgeModel(_CamelModel):
    target_node_id: str
    target_port_id: str
    condition_meta: Any = None


class NodeDataModel(_CamelModel):
    label: str
    ports: PortsModel
    edges: dict[str, list[EdgeModel]] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)


class NodeModel(_CamelModel):
    client_id: str | None = Field(default=None, max_length=64)
    node_type: NodeKind
    node_data: NodeDataModel
    position_x: float = 0.0
    position_y: float = 0.0


class WorkflowMeta(_CamelModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    command_name: str = Field(min_length=1, max_length=32)
    command_type: CommandType = CommandType.SLASH
    enabled: bool = True


class WorkflowPatch(_CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    command_name: str | None = Field(default=None, min_length=1, max_length=32)
    command_type: CommandType | None = None
    enabled: bool | None = None


class _NodesBody(_CamelModel):
    nodes: list[NodeModel] | None = None

    @model_validator(mode="after")
    def _unique_node_ids(self) -> _NodesBody:
        seen: set[str] = set()
        for index, node in enumerate(self.nodes or []):
            node_id = node_id_for(node.client_id, index)
            if node_id in seen:
                raise ValueError(f"Duplicate node id '{node_id}'")
            seen.add(node_id)
        return self


class CreateBody(_NodesBody):
    workflow: WorkflowMeta


class UpdateBody(_NodesBody):
    workflow: WorkflowPatch = Field(default_factory=WorkflowPatch)
    expected_version: int | None = Field(default=None, ge=1)


class ValidateBody(_NodesBody):
    nodes: list[NodeModel]


class ToggleBody(_CamelModel):
    enabled: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _specs(nodes: list[NodeModel] | None) -> list[workflow_service.NodeSpec] | None:
    if nodes is None:
        return None
    return workflow_service.node_specs_from_payload(
        [n.model_dump(mode="json", by_alias=True, exclude_none=True) for n in nodes]
    )


def _check_slash_name(command_type: str, command_name: str) -> None:
    if command_type == CommandType.SLASH and not is_valid_slash_name(command_name):
        raise HTTPException(
            422,
            "Slash command names must be 1-32 characters of lowercase letters, "
            "digits, '-' or '_'",
        )


def _workflow_dict(outcome: WriteOutcome) -> dict:
    if outcome.workflow is None:
        raise RuntimeError(f"{outcome.status} write outcome carries no workflow")
    return workflow_service.workflow_to_dict(outcome.workflow)


def _conflict_response(outcome: WriteOutcome) -> JSONResponse:
    return JSONResponse(status_code=409, content={
        "error": "Workflow has been modified by another user",
        "code": "VERSION_CONFLICT",
        "currentVersion": outcome.current_version,
    })


def _workflow_payload(outcome: WriteOutcome) -> dict:
    return {
        "workflow": _workflow_dict(outcome),
        "nodes": [workflow_service.node_to_dict(n) for n in outcome.nodes],
        "warnings": outcome.warnings,
    }


def _write_response(outcome: WriteOutcome, *, success_status: int = 200):
    match outcome.status:
        case WriteStatus.OK:
            return JSONResponse(status_code=success_status, content=_workflow_payload(outcome))
        case WriteStatus.INVALID:
            return JSONResponse(status_code=400, content={
                "error": "Invalid workflow graph",
                "code": "GRAPH_VALIDATION_ERROR",
                "details": [e.to_dict() for e in outcome.errors],
            })
        case WriteStatus.CONFLICT:
            return _conflict_response(outcome)
        case WriteStatus.NOT_FOUND:
            raise HTTPException(404, "Workflow not found")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/workflows")
def list_workflows(
    guild_id: int,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    """All workflows of a guild, ordered by name."""
    return [
        workflow_service.workflow_to_dict(wf)
        for wf in workflow_service.list_workflows(engine, guild_id)
    ]


@router.get("/guilds/{guild_id}/workflows/{workflow_id}")
def get_workflow(
    guild_id: int,
    workflow_id: int,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    wf = workflow_service.get_workflow(engine, guild_id, workflow_id)
    if wf is None:
        raise HTTPException(404, "Workflow not found")
    nodes = workflow_service.get_workflow_nodes(engine, workflow_id)
    return {
        **workflow_service.workflow_to_dict(wf),
        "nodes": [workflow_service.node_to_dict(n) for n in nodes],
    }


@router.post("/guilds/{guild_id}/workflows/validate")
def validate_workflow(
    guild_id: int,
    body: ValidateBody,
    admin: dict = Depends(get_current_admin),
):
    """Run the graph validator without saving anything."""
    result = workflow_service.validate_specs(_specs(body.nodes) or [])
    logger.debug("Dry-run validation for guild %s: %d error(s)", guild_id, len(result.errors))
    return result.to_dict()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
@router.post("/guilds/{guild_id}/workflows/save")
def create_workflow(
    guild_id: int,
    body: CreateBody,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    registrar: CommandRegistrar = Depends(get_registrar),
):
    """Create a workflow and its nodes in one transaction."""
    meta = body.workflow
    _check_slash_name(meta.command_type, meta.command_name)
    outcome = workflow_service.save_workflow(
        engine,
        registrar,
        guild_id=guild_id,
        meta=meta.model_dump(mode="json"),
        nodes=_specs(body.nodes),
        actor_id=actor_id_of(admin),
    )
    return _write_response(outcome, success_status=201)


@router.patch("/guilds/{guild_id}/workflows/{workflow_id}/save")
def update_workflow(
    guild_id: int,
    workflow_id: int,
    body: UpdateBody,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    registrar: CommandRegistrar = Depends(get_registrar),
):
    """Update metadata and (optionally) replace the node set.

    ``expectedVersion`` is the version the editor loaded; a stale value
    yields 409 ``VERSION_CONFLICT`` with the stored version.
    """
    patch = body.workflow.model_dump(mode="json", exclude_unset=True)
    if "command_name" in patch or "command_type" in patch:
        current = workflow_service.get_workflow(engine, guild_id, workflow_id)
        if current is None:
            raise HTTPException(404, "Workflow not found")
        _check_slash_name(
            patch.get("command_type") or current.command_type,
            patch.get("command_name") or current.command_name,
        )
    patch = {k: v for k, v in patch.items() if v is not None or k == "description"}
    outcome = workflow_service.save_workflow(
        engine,
        registrar,
        guild_id=guild_id,
        meta=patch,
        nodes=_specs(body.nodes),
        workflow_id=workflow_id,
        expected_version=body.expected_version,
        actor_id=actor_id_of(admin),
    )
    return _write_response(outcome)


@router.post("/guilds/{guild_id}/workflows/{workflow_id}/toggle")
def toggle_workflow(
    guild_id: int,
    workflow_id: int,
    body: ToggleBody,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    registrar: CommandRegistrar = Depends(get_registrar),
):
    outcome = workflow_service.toggle_workflow(
        engine,
        registrar,
        guild_id=guild_id,
        workflow_id=workflow_id,
        enabled=body.enabled,
        actor_id=actor_id_of(admin),
    )
    if outcome.status is WriteStatus.NOT_FOUND:
        raise HTTPException(404, "Workflow not found")
    if outcome.status is WriteStatus.CONFLICT:
        return _conflict_response(outcome)
    return {
        "workflow": _workflow_dict(outcome),
        "warnings": outcome.warnings,
    }


@router.delete("/guilds/{guild_id}/workflows/{workflow_id}")
def delete_workflow(
    guild_id: int,
    workflow_id: int,
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    registrar: CommandRegistrar = Depends(get_registrar),
):
    outcome = workflow_service.delete_workflow_and_sync(
        engine,
        registrar,
        guild_id=guild_id,
        workflow_id=workflow_id,
        actor_id=actor_id_of(admin),
    )
    if outcome.status is WriteStatus.NOT_FOUND:
        raise HTTPException(404, "Workflow not found")
    return {"success": True, "warnings": outcome.warnings}
