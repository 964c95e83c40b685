"""
conduit.engine.validator — Structural Workflow Graph Validation
================================================================

Checks a candidate node list before it is persisted.  Every check runs
and every violation is collected, so the dashboard can highlight all the
offending nodes at once::

    result = validate(nodes)
    if not result.valid:
        return [e.to_dict() for e in result.errors]

Checks, in emission order:

1. Trigger cardinality       — MISSING_TRIGGER / MULTIPLE_TRIGGERS
2. Edge referential integrity — INVALID_OUTPUT_PORT / INVALID_TARGET_NODE /
                                INVALID_TARGET_PORT
3. Acyclicity                — CYCLE_DETECTED (reported once)
4. Reachability from trigger — DISCONNECTED_NODE (one per node; skipped
                                when there is no trigger)
5. Terminal response          — NO_RESPONSE (only for graphs of 2+ nodes)

The function is pure: no I/O, inputs untouched, same input → same
result in the same order.  Authoring mistakes are reported, never
raised.  Only a broken type contract (``node_data is None``) raises.

Fan-in (several edges into the same input port) is allowed.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, assert_never

from conduit.engine.graph import NodeKind, NodeView

__all__ = ["ErrorCode", "ValidationError", "ValidationResult", "validate"]


class ErrorCode(enum.StrEnum):
    """Machine-readable violation codes.  Dashboard clients branch on these,
    so a new structural rule gets a new code."""
    MISSING_TRIGGER = "MISSING_TRIGGER"
    MULTIPLE_TRIGGERS = "MULTIPLE_TRIGGERS"
    INVALID_OUTPUT_PORT = "INVALID_OUTPUT_PORT"
    INVALID_TARGET_NODE = "INVALID_TARGET_NODE"
    INVALID_TARGET_PORT = "INVALID_TARGET_PORT"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    DISCONNECTED_NODE = "DISCONNECTED_NODE"
    NO_RESPONSE = "NO_RESPONSE"


@dataclass(frozen=True, slots=True)
class ValidationError:
    code: ErrorCode
    message: str
    node_id: str | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.node_id is not None:
            out["nodeId"] = self.node_id
        if self.field is not None:
            out["field"] = self.field
        return out


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: tuple[ValidationError, ...] = ()

    def codes(self) -> list[ErrorCode]:
        return [e.code for e in self.errors]

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": [e.to_dict() for e in self.errors]}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def validate(nodes: Sequence[NodeView]) -> ValidationResult:
    """Check *nodes* against every structural invariant of a workflow."""
    for node in nodes:
        if node.node_data is None:
            raise TypeError(f"Node {node.id!r} has no node_data")

    # Later duplicates win the lookup; ids keep first-seen order.
    by_id: dict[str, NodeView] = {}
    for node in nodes:
        by_id[node.id] = node
    ids = list(by_id)

    triggers = [n for n in nodes if _is_entry(n.node_type)]

    errors: list[ValidationError] = []
    errors.extend(_check_trigger_cardinality(triggers))
    errors.extend(_check_edges(nodes, by_id))
    if _has_cycle(ids, by_id):
        errors.append(ValidationError(
            code=ErrorCode.CYCLE_DETECTED,
            message="Workflow contains a cycle, which would cause infinite loops",
        ))
    if triggers:
        errors.extend(_check_reachability(ids, by_id, [t.id for t in triggers]))
    if len(nodes) > 1 and not any(_is_terminal(n.node_type) for n in nodes):
        errors.append(ValidationError(
            code=ErrorCode.NO_RESPONSE,
            message="Workflow must have at least one response node to send output",
        ))

    return ValidationResult(valid=not errors, errors=tuple(errors))


# ---------------------------------------------------------------------------
# Node roles
# ---------------------------------------------------------------------------
def _is_entry(kind: NodeKind) -> bool:
    match kind:
        case NodeKind.TRIGGER:
            return True
        case NodeKind.CONDITION | NodeKind.ACTION | NodeKind.VARIABLE | NodeKind.RESPONSE:
            return False
        case _:
            assert_never(kind)


def _is_terminal(kind: NodeKind) -> bool:
    match kind:
        case NodeKind.RESPONSE:
            return True
        case NodeKind.TRIGGER | NodeKind.CONDITION | NodeKind.ACTION | NodeKind.VARIABLE:
            return False
        case _:
            assert_never(kind)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------
def _check_trigger_cardinality(triggers: list[NodeView]) -> list[ValidationError]:
    if not triggers:
        return [ValidationError(
            code=ErrorCode.MISSING_TRIGGER,
            message="Workflow must have exactly one trigger node",
        )]
    if len(triggers) > 1:
        return [ValidationError(
            code=ErrorCode.MULTIPLE_TRIGGERS,
            message=f"Workflow can only have one trigger node (found {len(triggers)})",
        )]
    return []


def _check_edges(
    nodes: Sequence[NodeView], by_id: dict[str, NodeView]
) -> list[ValidationError]:
    errors: list[ValidationError] = []
    for node in nodes:
        ports = node.node_data.ports
        for port_id, edge_list in node.node_data.edges.items():
            if not ports.has_output(port_id):
                errors.append(ValidationError(
                    code=ErrorCode.INVALID_OUTPUT_PORT,
                    message=f"Output port '{port_id}' does not exist on node",
                    node_id=node.id,
                    field="edges",
                ))
            for index, edge in enumerate(edge_list):
                field_path = f"edges.{port_id}[{index}]"
                target = by_id.get(edge.target_node_id)
                if target is None:
                    errors.append(ValidationError(
                        code=ErrorCode.INVALID_TARGET_NODE,
                        message=f"Edge references non-existent node '{edge.target_node_id}'",
                        node_id=node.id,
                        field=field_path,
                    ))
                    continue
                if not target.node_data.ports.has_input(edge.target_port_id):
                    errors.append(ValidationError(
                        code=ErrorCode.INVALID_TARGET_PORT,
                        message=(
                            f"Target port '{edge.target_port_id}' does not exist "
                            f"on node '{target.id}'"
                        ),
                        node_id=node.id,
                        field=field_path,
                    ))
    return errors


def _targets(node: NodeView) -> Iterator[str]:
    for _, edge in node.outgoing():
        yield edge.target_node_id


_WHITE, _GREY, _BLACK = 0, 1, 2


def _has_cycle(ids: list[str], by_id: dict[str, NodeView]) -> bool:
    """Iterative three-colour DFS; True on the first back edge found."""
    colour = dict.fromkeys(ids, _WHITE)
    for start in ids:
        if colour[start] != _WHITE:
            continue
        colour[start] = _GREY
        stack: list[tuple[str, Iterator[str]]] = [(start, _targets(by_id[start]))]
        while stack:
            node_id, pending = stack[-1]
            target_id = next(pending, None)
            if target_id is None:
                colour[node_id] = _BLACK
                stack.pop()
                continue
            state = colour.get(target_id)
            if state is None:
                continue  # dangling edge, already reported
            if state == _GREY:
                return True
            if state == _WHITE:
                colour[target_id] = _GREY
                stack.append((target_id, _targets(by_id[target_id])))
    return False


def _check_reachability(
    ids: list[str], by_id: dict[str, NodeView], seeds: list[str]
) -> list[ValidationError]:
    reached: set[str] = set()
    stack = list(seeds)
    while stack:
        node_id = stack.pop()
        if node_id in reached or node_id not in by_id:
            continue
        reached.add(node_id)
        stack.extend(_targets(by_id[node_id]))

    return [
        ValidationError(
            code=ErrorCode.DISCONNECTED_NODE,
            message="Node is not connected to the workflow execution path",
            node_id=node_id,
        )
        for node_id in ids
        if node_id not in reached and not _is_entry(by_id[node_id].node_type)
    ]
