"""
tests/test_validator.py — Workflow Graph Validator Tests
==========================================================
Pure-function tests, no database.
"""

from __future__ import annotations

import pytest
from conftest import edge, node_payload

from conduit.engine.graph import NodeData, NodeKind, NodeView, node_id_for
from conduit.engine.validator import ErrorCode, ValidationError, validate


def _views(payloads: list[dict]) -> list[NodeView]:
    return [
        NodeView.from_payload(node_id_for(p.get("clientId"), i), p["nodeType"], p["nodeData"])
        for i, p in enumerate(payloads)
    ]


def _codes(payloads: list[dict]) -> list[ErrorCode]:
    return validate(_views(payloads)).codes()


def _diamond() -> list[dict]:
    return [
        node_payload("t", "trigger", edges={"out": [edge("c")]}),
        node_payload(
            "c", "condition", outputs=("true", "false"),
            edges={"true": [edge("a1")], "false": [edge("a2")]},
            config={"conditionType": "has_role", "roleId": "1"},
        ),
        node_payload("a1", "action", edges={"out": [edge("r")]}),
        node_payload("a2", "action", edges={"out": [edge("r")]}),
        node_payload("r", "response", outputs=(), config={"message": "done"}),
    ]


# ===========================================================================
# Valid graphs
# ===========================================================================
class TestValidGraphs:
    def test_diamond_is_valid(self):
        result = validate(_views(_diamond()))
        assert result.valid is True
        assert result.errors == ()

    def test_single_trigger_is_valid(self):
        assert _codes([node_payload("t", "trigger")]) == []

    def test_variable_node_on_path_is_valid(self):
        nodes = [
            node_payload("t", "trigger", edges={"out": [edge("v")]}),
            node_payload("v", "variable", edges={"out": [edge("r")]},
                         config={"operation": "increment", "variableName": "count"}),
            node_payload("r", "response", outputs=(), config={"message": "{{count}}"}),
        ]
        assert validate(_views(nodes)).valid

    def test_fan_in_is_allowed(self):
        nodes = _diamond()
        assert ErrorCode.INVALID_TARGET_PORT not in _codes(nodes)
        assert validate(_views(nodes)).valid


# ===========================================================================
# Trigger cardinality
# ===========================================================================
class TestTriggerCardinality:
    def test_zero_triggers(self):
        codes = _codes([
            node_payload("a", "action", edges={"out": [edge("r")]}),
            node_payload("r", "response", outputs=()),
        ])
        assert ErrorCode.MISSING_TRIGGER in codes
        assert ErrorCode.MULTIPLE_TRIGGERS not in codes

    def test_two_triggers(self):
        codes = _codes([
            node_payload("t1", "trigger", edges={"out": [edge("r")]}),
            node_payload("t2", "trigger", edges={"out": [edge("r")]}),
            node_payload("r", "response", outputs=()),
        ])
        assert codes.count(ErrorCode.MULTIPLE_TRIGGERS) == 1
        assert ErrorCode.MISSING_TRIGGER not in codes

    def test_missing_trigger_suppresses_reachability(self):
        codes = _codes([
            node_payload("a", "action"),
            node_payload("r", "response", outputs=()),
        ])
        assert codes == [ErrorCode.MISSING_TRIGGER]

    def test_empty_graph_reports_missing_trigger_only(self):
        assert _codes([]) == [ErrorCode.MISSING_TRIGGER]


# ===========================================================================
# Edge integrity
# ===========================================================================
class TestEdgeIntegrity:
    def test_unknown_output_port(self):
        result = validate(_views([
            node_payload("t", "trigger", edges={"nope": [edge("r")]}),
            node_payload("r", "response", outputs=()),
        ]))
        errors = [e for e in result.errors if e.code is ErrorCode.INVALID_OUTPUT_PORT]
        assert len(errors) == 1
        assert errors[0].node_id == "t"
        assert errors[0].field == "edges"

    def test_dangling_target_skips_port_check(self):
        result = validate(_views([
            node_payload("t", "trigger", edges={"out": [edge("ghost", "missing-port")]}),
        ]))
        assert result.codes() == [ErrorCode.INVALID_TARGET_NODE]
        assert result.errors[0].field == "edges.out[0]"

    def test_unknown_target_port(self):
        result = validate(_views([
            node_payload("t", "trigger", edges={"out": [edge("r", "side")]}),
            node_payload("r", "response", outputs=()),
        ]))
        assert result.codes() == [ErrorCode.INVALID_TARGET_PORT]
        assert result.errors[0].node_id == "t"

    def test_edge_errors_are_per_edge(self):
        result = validate(_views([
            node_payload("t", "trigger", edges={"out": [edge("r"), edge("x"), edge("y")]}),
            node_payload("r", "response", outputs=()),
        ]))
        fields = [e.field for e in result.errors if e.code is ErrorCode.INVALID_TARGET_NODE]
        assert fields == ["edges.out[1]", "edges.out[2]"]


# ===========================================================================
# Cycles
# ===========================================================================
class TestCycles:
    def test_self_loop(self):
        codes = _codes([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "action", edges={"out": [edge("a"), edge("r")]}),
            node_payload("r", "response", outputs=()),
        ])
        assert codes.count(ErrorCode.CYCLE_DETECTED) == 1

    def test_many_cycles_reported_once(self):
        codes = _codes([
            node_payload("t", "trigger", edges={"out": [edge("a"), edge("c")]}),
            node_payload("a", "action", edges={"out": [edge("b")]}),
            node_payload("b", "action", edges={"out": [edge("a")]}),
            node_payload("c", "action", edges={"out": [edge("d")]}),
            node_payload("d", "action", edges={"out": [edge("c"), edge("r")]}),
            node_payload("r", "response", outputs=()),
        ])
        assert codes.count(ErrorCode.CYCLE_DETECTED) == 1

    def test_long_chain_does_not_hit_recursion_limit(self):
        length = 5000
        nodes = [node_payload("n0", "trigger", edges={"out": [edge("n1")]})]
        for i in range(1, length):
            nodes.append(node_payload(f"n{i}", "action", edges={"out": [edge(f"n{i + 1}")]}))
        nodes.append(node_payload(f"n{length}", "response", outputs=()))
        assert validate(_views(nodes)).valid

    def test_cycle_through_dangling_edge_is_not_invented(self):
        codes = _codes([
            node_payload("t", "trigger", edges={"out": [edge("r"), edge("ghost")]}),
            node_payload("r", "response", outputs=()),
        ])
        assert ErrorCode.CYCLE_DETECTED not in codes


# ===========================================================================
# Reachability & response
# ===========================================================================
class TestReachability:
    def test_orphan_reported_once_by_id(self):
        result = validate(_views([
            node_payload("t", "trigger", edges={"out": [edge("r")]}),
            node_payload("r", "response", outputs=()),
            node_payload("orphan", "action"),
        ]))
        errors = [e for e in result.errors if e.code is ErrorCode.DISCONNECTED_NODE]
        assert [e.node_id for e in errors] == ["orphan"]

    def test_trigger_is_never_disconnected(self):
        codes = _codes([
            node_payload("t1", "trigger", edges={"out": [edge("r")]}),
            node_payload("t2", "trigger"),
            node_payload("r", "response", outputs=()),
        ])
        assert ErrorCode.DISCONNECTED_NODE not in codes


class TestNoResponse:
    def test_two_nodes_without_response(self):
        assert _codes([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "action"),
        ]) == [ErrorCode.NO_RESPONSE]


# ===========================================================================
# Contract
# ===========================================================================
class TestContract:
    def test_error_order_follows_check_order(self):
        codes = _codes([
            node_payload("t1", "trigger", edges={"out": [edge("a")]}),
            node_payload("t2", "trigger", edges={"out": [edge("ghost")]}),
            node_payload("a", "action", edges={"out": [edge("a")]}),
            node_payload("lost", "action"),
        ])
        assert codes == [
            ErrorCode.MULTIPLE_TRIGGERS,
            ErrorCode.INVALID_TARGET_NODE,
            ErrorCode.CYCLE_DETECTED,
            ErrorCode.DISCONNECTED_NODE,
            ErrorCode.NO_RESPONSE,
        ]

    def test_validation_is_idempotent(self):
        views = _views([
            node_payload("t", "trigger", edges={"out": [edge("x"), edge("a")]}),
            node_payload("a", "action", edges={"out": [edge("a")]}),
            node_payload("z", "response", outputs=()),
        ])
        assert validate(views) == validate(views)

    def test_positional_ids_resolve_edges(self):
        nodes = [
            node_payload(None, "trigger", edges={"out": [edge("node-1")]}),
            node_payload(None, "response", outputs=()),
        ]
        assert validate(_views(nodes)).valid

    def test_missing_node_data_raises(self):
        broken = NodeView(id="t", node_type=NodeKind.TRIGGER, node_data=None)  # type: ignore[arg-type]
        with pytest.raises(TypeError):
            validate([broken])

    def test_non_mapping_payload_raises(self):
        with pytest.raises(TypeError):
            NodeData.from_dict(["not", "a", "mapping"])  # type: ignore[arg-type]

    def test_error_to_dict_uses_camel_case(self):
        err = ValidationError(ErrorCode.DISCONNECTED_NODE, "msg", node_id="n1")
        assert err.to_dict() == {"code": "DISCONNECTED_NODE", "message": "msg", "nodeId": "n1"}
