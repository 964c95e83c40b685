"""
tests/test_executor.py — Workflow Execution Tests
===================================================
The Discord side is an AsyncMock performer; no network, no bot.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from conftest import edge, node_payload, run_async, simple_graph

from conduit.engine.executor import (
    ExecutionStatus,
    InvocationContext,
    WorkflowExecutor,
    apply_variable,
    evaluate_condition,
    render_template,
    run_graph,
)
from conduit.engine.graph import NodeView, WorkflowGraph, node_id_for
from conduit.services import workflow_service as svc

GUILD = 1001
ROLE_ADMIN = 42


def _graph(payloads: list[dict]) -> WorkflowGraph:
    return WorkflowGraph([
        NodeView.from_payload(node_id_for(p.get("clientId"), i), p["nodeType"], p["nodeData"])
        for i, p in enumerate(payloads)
    ])


def _ctx(**overrides) -> InvocationContext:
    values = dict(guild_id=GUILD, channel_id=10, user_id=7, user_name="Ada")
    values.update(overrides)
    return InvocationContext(**values)


def _performer() -> AsyncMock:
    return AsyncMock()


def _role_check_graph() -> list[dict]:
    return [
        node_payload("t", "trigger", edges={"out": [edge("c")]}),
        node_payload(
            "c", "condition", outputs=("true", "false"),
            edges={"true": [edge("yes")], "false": [edge("no")]},
            config={"conditionType": "has_role", "roleId": str(ROLE_ADMIN)},
        ),
        node_payload("yes", "response", outputs=(), config={"message": "Admin {{user}}"}),
        node_payload("no", "response", outputs=(), config={"message": "Member", "ephemeral": True}),
    ]


# ===========================================================================
# Walk
# ===========================================================================
class TestRunGraph:
    def test_simple_response(self):
        result = run_async(run_graph(_graph(simple_graph("Hi {{user}}")), _ctx(), _performer()))
        assert result.status is ExecutionStatus.RESPONDED
        assert result.response.content == "Hi Ada"
        assert result.path == ("t", "r")

    def test_condition_true_branch(self):
        ctx = _ctx(role_ids=frozenset({ROLE_ADMIN}))
        result = run_async(run_graph(_graph(_role_check_graph()), ctx, _performer()))
        assert result.response.content == "Admin Ada"
        assert result.path == ("t", "c", "yes")

    def test_condition_false_branch(self):
        result = run_async(run_graph(_graph(_role_check_graph()), _ctx(), _performer()))
        assert result.response.content == "Member"
        assert result.response.ephemeral is True

    def test_gate_condition_without_branch_ports_stops_when_false(self):
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("c")]}),
            node_payload("c", "condition", edges={"out": [edge("r")]},
                         config={"conditionType": "has_permission", "permission": "ban_members"}),
            node_payload("r", "response", outputs=(), config={"message": "ok"}),
        ])
        assert run_async(run_graph(graph, _ctx(), _performer())).status is ExecutionStatus.NO_RESPONSE
        allowed = _ctx(permissions=frozenset({"ban_members"}))
        assert run_async(run_graph(graph, allowed, _performer())).status is ExecutionStatus.RESPONDED

    def test_action_then_response(self):
        performer = _performer()
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "action", edges={"out": [edge("r")]},
                         config={"actionType": "add_role", "roleId": "99"}),
            node_payload("r", "response", outputs=(), config={"message": "Role added"}),
        ])
        ctx = _ctx()
        result = run_async(run_graph(graph, ctx, performer))
        assert result.status is ExecutionStatus.RESPONDED
        performer.add_role.assert_awaited_once_with(ctx, 99)
        assert [a.ok for a in result.actions] == [True]

    def test_failing_action_stops_walk(self):
        performer = _performer()
        performer.send_message.side_effect = asyncio.TimeoutError()
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "action", edges={"out": [edge("r")]},
                         config={"actionType": "send_message", "message": "hey"}),
            node_payload("r", "response", outputs=(), config={"message": "never"}),
        ])
        result = run_async(run_graph(graph, _ctx(), performer))
        assert result.status is ExecutionStatus.ACTION_FAILED
        assert result.response is None
        assert result.path == ("t", "a")
        assert result.actions[0].error == "TimeoutError"

    def test_send_message_defaults_to_invoking_channel(self):
        performer = _performer()
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "action", edges={"out": [edge("r")]},
                         config={"actionType": "send_message", "message": "Hello {{user_mention}}"}),
            node_payload("r", "response", outputs=(), config={"message": "sent"}),
        ])
        ctx = _ctx()
        run_async(run_graph(graph, ctx, performer))
        performer.send_message.assert_awaited_once_with(ctx, 10, "Hello <@7>")

    def test_add_role_without_role_id_fails(self):
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "action", edges={"out": [edge("r")]}, config={"actionType": "add_role"}),
            node_payload("r", "response", outputs=()),
        ])
        result = run_async(run_graph(graph, _ctx(), _performer()))
        assert result.status is ExecutionStatus.ACTION_FAILED

    def test_counter_template(self):
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("v")]}),
            node_payload("v", "variable", edges={"out": [edge("r")]},
                         config={"operation": "increment", "variableName": "count", "value": "1"}),
            node_payload("r", "response", outputs=(), config={"message": "Counter: {{count}}"}),
        ])
        result = run_async(run_graph(graph, _ctx(variables={"count": 4}), _performer()))
        assert result.response.content == "Counter: 5"

    def test_no_trigger_is_no_response(self):
        graph = _graph([node_payload("r", "response", outputs=())])
        result = run_async(run_graph(graph, _ctx(), _performer()))
        assert result.status is ExecutionStatus.NO_RESPONSE
        assert result.path == ()

    def test_step_cap_bounds_a_cyclic_graph(self):
        graph = _graph([
            node_payload("t", "trigger", edges={"out": [edge("a")]}),
            node_payload("a", "variable", edges={"out": [edge("a")]},
                         config={"operation": "increment", "variableName": "n"}),
        ])
        result = run_async(run_graph(graph, _ctx(), _performer()))
        assert result.status is ExecutionStatus.NO_RESPONSE
        assert len(result.path) == 2


# ===========================================================================
# Conditions, variables, templates
# ===========================================================================
class TestConditions:
    def test_variable_equals(self):
        ctx = _ctx(variables={"mode": "on"})
        assert evaluate_condition(
            {"conditionType": "variable_equals", "variableName": "mode", "compareValue": "on"}, ctx,
        )
        assert not evaluate_condition(
            {"conditionType": "variable_equals", "variableName": "other", "compareValue": "on"}, ctx,
        )

    def test_custom_numeric_comparison(self):
        ctx = _ctx(variables={"count": 10})
        assert evaluate_condition({"conditionType": "custom", "customExpression": "count >= 10"}, ctx)
        assert not evaluate_condition({"conditionType": "custom", "customExpression": "count < 3"}, ctx)

    def test_custom_string_comparison_uses_args(self):
        ctx = _ctx(args={"arg1": "yes"})
        assert evaluate_condition({"conditionType": "custom", "customExpression": "arg1 == 'yes'"}, ctx)

    def test_custom_rejects_code(self):
        ctx = _ctx()
        assert not evaluate_condition(
            {"conditionType": "custom", "customExpression": "__import__('os').system('x')"}, ctx,
        )

    def test_unknown_condition_type_is_false(self):
        assert not evaluate_condition({"conditionType": "moon_phase"}, _ctx())


class TestVariables:
    def test_set_renders_template(self):
        ctx = _ctx()
        apply_variable({"operation": "set", "variableName": "greeting", "value": "hi {{user}}"}, ctx)
        assert ctx.variables["greeting"] == "hi Ada"

    def test_decrement_from_missing(self):
        ctx = _ctx()
        apply_variable({"operation": "decrement", "variableName": "lives", "value": 2}, ctx)
        assert ctx.variables["lives"] == -2

    def test_get_reads_argument(self):
        ctx = _ctx(args={"target": "bob"})
        apply_variable({"operation": "get", "variableName": "target"}, ctx)
        assert ctx.variables["target"] == "bob"


class TestTemplates:
    def test_unknown_placeholders_are_kept(self):
        assert render_template("{{nope}} {{user}}", _ctx()) == "{{nope}} Ada"


# ===========================================================================
# WorkflowExecutor (DB-backed)
# ===========================================================================
class TestWorkflowExecutor:
    def test_executes_stored_workflow(self, db_engine):
        wf, _ = svc.create_with_nodes(
            db_engine,
            {"name": "hi", "command_name": "hi", "command_type": "slash"},
            svc.node_specs_from_payload(simple_graph("Stored {{user}}")),
            guild_id=GUILD,
        )
        executor = WorkflowExecutor(db_engine, _performer())
        result = run_async(executor.execute(wf.id, _ctx()))
        assert result.status is ExecutionStatus.RESPONDED
        assert result.response.content == "Stored Ada"

    def test_other_guild_is_not_found(self, db_engine):
        wf, _ = svc.create_with_nodes(
            db_engine,
            {"name": "hi", "command_name": "hi"},
            svc.node_specs_from_payload(simple_graph()),
            guild_id=GUILD,
        )
        executor = WorkflowExecutor(db_engine, _performer())
        result = run_async(executor.execute(wf.id, _ctx(guild_id=999)))
        assert result.status is ExecutionStatus.NOT_FOUND

    def test_custom_loader(self):
        loader = MagicMock(return_value=None)
        executor = WorkflowExecutor(MagicMock(), _performer(), loader=loader)
        result = run_async(executor.execute(5, _ctx()))
        assert result.status is ExecutionStatus.NOT_FOUND
        loader.assert_called_once()
