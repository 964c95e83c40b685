"""
conduit.engine.graph — Workflow Graph Data Model
==================================================

The shapes a workflow graph is made of.  A node carries its ports and its
own outgoing edges::

    node_data = {
        "label": "Check role",
        "ports": {"inputs": [{"id": "in"}], "outputs": [{"id": "true"}, {"id": "false"}]},
        "edges": {"true": [{"targetNodeId": "reply", "targetPortId": "in"}]},
        "config": {"conditionType": "has_role", "roleId": "123"},
    }

``edges`` maps an output port id to the ordered list of edges leaving it.
Edges reference nodes by their *logical* id (the builder's ``clientId``
or the positional ``node-<index>`` fallback), never by a database row id.

Everything here is plain data; validation lives in
:mod:`conduit.engine.validator` and execution in
:mod:`conduit.engine.executor`.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from conduit.constants import NODE_ID_FALLBACK_PREFIX

__all__ = [
    "NodeKind",
    "NodePort",
    "NodeEdge",
    "NodePorts",
    "NodeData",
    "NodeView",
    "WorkflowGraph",
    "node_id_for",
]


class NodeKind(enum.StrEnum):
    """Closed set of node kinds.

    Adding a kind means updating every ``match`` over it (validator,
    executor, API schema) — the exhaustive matches make that visible.
    """
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    VARIABLE = "variable"
    RESPONSE = "response"


@dataclass(frozen=True, slots=True)
class NodePort:
    id: str
    type: str = "default"  # "default" | "condition"


@dataclass(frozen=True, slots=True)
class NodeEdge:
    target_node_id: str
    target_port_id: str
    condition_meta: Any = None


@dataclass(frozen=True, slots=True)
class NodePorts:
    inputs: tuple[NodePort, ...] = ()
    outputs: tuple[NodePort, ...] = ()

    def has_input(self, port_id: str) -> bool:
        return any(p.id == port_id for p in self.inputs)

    def has_output(self, port_id: str) -> bool:
        return any(p.id == port_id for p in self.outputs)


@dataclass(frozen=True, slots=True)
class NodeData:
    """Ports, outgoing edges and type-specific config of one node."""

    label: str
    ports: NodePorts = field(default_factory=NodePorts)
    edges: Mapping[str, tuple[NodeEdge, ...]] = field(default_factory=dict)
    config: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> NodeData:
        """Build from the camelCase JSON blob stored in ``node_data``.

        Raises ``TypeError`` if *raw* is not a mapping — a caller bug, not
        an authoring mistake.
        """
        if not isinstance(raw, Mapping):
            raise TypeError(f"node_data must be a mapping, got {type(raw).__name__}")

        ports_raw = raw.get("ports") or {}
        ports = NodePorts(
            inputs=tuple(_port(p) for p in ports_raw.get("inputs") or ()),
            outputs=tuple(_port(p) for p in ports_raw.get("outputs") or ()),
        )
        edges = {
            str(port_id): tuple(
                NodeEdge(
                    target_node_id=str(e["targetNodeId"]),
                    target_port_id=str(e["targetPortId"]),
                    condition_meta=e.get("conditionMeta"),
                )
                for e in edge_list
            )
            for port_id, edge_list in (raw.get("edges") or {}).items()
        }
        return cls(
            label=str(raw.get("label", "")),
            ports=ports,
            edges=edges,
            config=dict(raw.get("config") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        edges: dict[str, list[dict[str, Any]]] = {}
        for port_id, edge_list in self.edges.items():
            edges[port_id] = []
            for e in edge_list:
                item: dict[str, Any] = {
                    "targetNodeId": e.target_node_id,
                    "targetPortId": e.target_port_id,
                }
                if e.condition_meta is not None:
                    item["conditionMeta"] = e.condition_meta
                edges[port_id].append(item)
        return {
            "label": self.label,
            "ports": {
                "inputs": [{"id": p.id, "type": p.type} for p in self.ports.inputs],
                "outputs": [{"id": p.id, "type": p.type} for p in self.ports.outputs],
            },
            "edges": edges,
            "config": dict(self.config),
        }


def _port(raw: Mapping[str, Any]) -> NodePort:
    return NodePort(id=str(raw["id"]), type=str(raw.get("type", "default")))


@dataclass(frozen=True, slots=True)
class NodeView:
    """A node as seen by the validator and the executor."""

    id: str
    node_type: NodeKind
    node_data: NodeData

    @classmethod
    def from_payload(
        cls, node_id: str, node_type: str | NodeKind, payload: Mapping[str, Any]
    ) -> NodeView:
        return cls(
            id=node_id,
            node_type=NodeKind(node_type),
            node_data=NodeData.from_dict(payload),
        )

    def outgoing(self) -> Iterator[tuple[str, NodeEdge]]:
        """Yield ``(output_port_id, edge)`` pairs in declaration order."""
        for port_id, edge_list in self.node_data.edges.items():
            for edge in edge_list:
                yield port_id, edge


def node_id_for(client_id: str | None, index: int) -> str:
    """Logical id of the *index*-th submitted node.

    Uses the builder-assigned ``clientId`` when present, else the
    positional fallback ``node-<index>``.  Must be computed the same way on
    every save so edge references survive repeated edits.
    """
    if client_id:
        return client_id
    return f"{NODE_ID_FALLBACK_PREFIX}{index}"


class WorkflowGraph:
    """Indexed, read-only view over a list of :class:`NodeView`."""

    def __init__(self, nodes: Sequence[NodeView]) -> None:
        self._nodes: tuple[NodeView, ...] = tuple(nodes)
        self._by_id: dict[str, NodeView] = {n.id: n for n in self._nodes}

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeView]:
        return iter(self._nodes)

    @property
    def nodes(self) -> tuple[NodeView, ...]:
        return self._nodes

    def node(self, node_id: str) -> NodeView | None:
        return self._by_id.get(node_id)

    def triggers(self) -> list[NodeView]:
        return [n for n in self._nodes if n.node_type is NodeKind.TRIGGER]

    def trigger(self) -> NodeView | None:
        """The single trigger, or ``None`` if there isn't exactly one."""
        found = self.triggers()
        return found[0] if len(found) == 1 else None

    def successors(self, node_id: str, port_id: str | None = None) -> list[NodeView]:
        """Existing target nodes of *node_id*'s edges, optionally from one port."""
        node = self._by_id.get(node_id)
        if node is None:
            return []
        result: list[NodeView] = []
        for source_port, edge in node.outgoing():
            if port_id is not None and source_port != port_id:
                continue
            target = self._by_id.get(edge.target_node_id)
            if target is not None:
                result.append(target)
        return result
