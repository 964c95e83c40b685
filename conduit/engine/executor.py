"""
conduit.engine.executor — Workflow Graph Execution
====================================================

Walks a stored workflow graph when its command is invoked::

    trigger → (condition | action | variable)* → response

- **condition** nodes evaluate a predicate against the invocation and
  follow their ``true`` / ``false`` output port.
- **action** nodes perform one Discord side effect through an
  :class:`ActionPerformer`, then follow their first edge.  A failed
  action ends the walk.
- **variable** nodes read or update per-invocation variables.
- the first **response** node reached ends the walk and yields a
  :class:`ResponsePlan` for the caller to send.

Only graphs that passed :func:`conduit.engine.validator.validate` are
ever stored, so every walk terminates.  A step cap equal to the node
count still bounds the walk in case stored data was edited by hand.

Placeholders in messages use ``{{name}}`` and resolve against the
invoking user, the command arguments and the variables; a variable
shadows an argument of the same name, which shadows a user field.
"""

from __future__ import annotations

import enum
import logging
import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, assert_never

from conduit.constants import CONDITION_FALSE_PORT, CONDITION_TRUE_PORT
from conduit.database.engine import run_db
from conduit.engine.graph import NodeKind, NodeView, WorkflowGraph
from conduit.services.workflow_service import load_graph

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60


# ---------------------------------------------------------------------------
# Node configuration vocabularies
# ---------------------------------------------------------------------------
class ConditionType(enum.StrEnum):
    HAS_ROLE = "has_role"
    HAS_PERMISSION = "has_permission"
    VARIABLE_EQUALS = "variable_equals"
    CUSTOM = "custom"


class ActionType(enum.StrEnum):
    SEND_MESSAGE = "send_message"
    ADD_ROLE = "add_role"
    REMOVE_ROLE = "remove_role"
    BAN = "ban"
    KICK = "kick"
    TIMEOUT = "timeout"


class VariableOp(enum.StrEnum):
    SET = "set"
    GET = "get"
    INCREMENT = "increment"
    DECREMENT = "decrement"


class ExecutionStatus(enum.StrEnum):
    RESPONDED = "responded"
    NO_RESPONSE = "no_response"
    ACTION_FAILED = "action_failed"
    NOT_FOUND = "not_found"


# ---------------------------------------------------------------------------
# Data shapes
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class InvocationContext:
    """Who invoked the command, where, and with what."""

    guild_id: int
    channel_id: int
    user_id: int
    user_name: str = ""
    role_ids: frozenset[int] = frozenset()
    permissions: frozenset[str] = frozenset()
    args: Mapping[str, str] = field(default_factory=dict)
    # Mutated by variable nodes during one walk.
    variables: dict[str, Any] = field(default_factory=dict)


class ActionPerformer(Protocol):
    """Side effects an action node can request.  Implementations bound
    each call with their own timeout."""

    async def send_message(self, ctx: InvocationContext, channel_id: int, content: str) -> None: ...

    async def add_role(self, ctx: InvocationContext, role_id: int) -> None: ...

    async def remove_role(self, ctx: InvocationContext, role_id: int) -> None: ...

    async def ban(self, ctx: InvocationContext, reason: str | None) -> None: ...

    async def kick(self, ctx: InvocationContext, reason: str | None) -> None: ...

    async def timeout(self, ctx: InvocationContext, seconds: int, reason: str | None) -> None: ...


@dataclass(frozen=True, slots=True)
class ResponsePlan:
    content: str
    ephemeral: bool = False
    embed: bool = False
    embed_title: str | None = None
    embed_color: str | None = None


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    node_id: str
    action_type: str
    ok: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    status: ExecutionStatus
    response: ResponsePlan | None = None
    path: tuple[str, ...] = ()
    actions: tuple[ActionOutcome, ...] = ()


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


def render_template(text: str, ctx: InvocationContext) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names are left as-is."""
    values: dict[str, Any] = {
        "user": ctx.user_name,
        "user_id": ctx.user_id,
        "user_mention": f"<@{ctx.user_id}>",
        "channel_id": ctx.channel_id,
        "guild_id": ctx.guild_id,
    }
    values.update(ctx.args)
    values.update(ctx.variables)

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        return str(values[name]) if name in values else match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, text)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------
_CUSTOM_RE = re.compile(r"^\s*([A-Za-z_]\w*)\s*(==|!=|>=|<=|>|<)\s*(.+?)\s*$")

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    try:
        return int(str(value))
    except ValueError:
        pass
    try:
        return float(str(value))
    except ValueError:
        return None


def _evaluate_custom(expression: str, ctx: InvocationContext) -> bool:
    """``<name> <op> <literal>``; numeric when both sides are numbers."""
    match = _CUSTOM_RE.match(expression or "")
    if match is None:
        logger.warning("Unsupported custom condition expression: %r", expression)
        return False
    name, op, literal = match.groups()
    literal = literal.strip("\"'")

    if name in ctx.variables:
        left: Any = ctx.variables[name]
    elif name in ctx.args:
        left = ctx.args[name]
    else:
        return False

    compare = _COMPARATORS[op]
    left_num, right_num = _as_number(left), _as_number(literal)
    if left_num is not None and right_num is not None:
        return compare(left_num, right_num)
    if op in ("==", "!="):
        return compare(str(left), literal)
    return False


def evaluate_condition(config: Mapping[str, Any], ctx: InvocationContext) -> bool:
    raw_type = config.get("conditionType", ConditionType.HAS_ROLE)
    try:
        kind = ConditionType(raw_type)
    except ValueError:
        logger.warning("Unknown condition type %r; treating as false", raw_type)
        return False

    match kind:
        case ConditionType.HAS_ROLE:
            role_id = _as_number(config.get("roleId"))
            return role_id is not None and int(role_id) in ctx.role_ids
        case ConditionType.HAS_PERMISSION:
            permission = config.get("permission")
            return bool(permission) and permission in ctx.permissions
        case ConditionType.VARIABLE_EQUALS:
            name = config.get("variableName")
            if not name or name not in ctx.variables:
                return False
            return str(ctx.variables[name]) == str(config.get("compareValue", ""))
        case ConditionType.CUSTOM:
            return _evaluate_custom(config.get("customExpression", ""), ctx)
        case _:
            assert_never(kind)


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------
def apply_variable(config: Mapping[str, Any], ctx: InvocationContext) -> None:
    name = config.get("variableName")
    if not name:
        logger.warning("Variable node without variableName; skipped")
        return
    raw_op = config.get("operation", VariableOp.SET)
    try:
        op = VariableOp(raw_op)
    except ValueError:
        logger.warning("Unknown variable operation %r; skipped", raw_op)
        return

    value = config.get("value")
    match op:
        case VariableOp.SET:
            ctx.variables[name] = render_template(value, ctx) if isinstance(value, str) else value
        case VariableOp.GET:
            # Pull a command argument into the variable scope.
            if name not in ctx.variables:
                ctx.variables[name] = ctx.args.get(name, value)
        case VariableOp.INCREMENT | VariableOp.DECREMENT:
            step = _as_number(value if value not in (None, "") else 1) or 0
            current = _as_number(ctx.variables.get(name, 0)) or 0
            if op is VariableOp.DECREMENT:
                step = -step
            ctx.variables[name] = current + step
        case _:
            assert_never(op)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------
async def perform_action(
    node: NodeView, ctx: InvocationContext, performer: ActionPerformer
) -> ActionOutcome:
    config = node.node_data.config
    raw_type = config.get("actionType", ActionType.SEND_MESSAGE)
    try:
        kind = ActionType(raw_type)
    except ValueError:
        return ActionOutcome(node.id, str(raw_type), ok=False, error="unknown action type")

    reason = config.get("reason")
    try:
        match kind:
            case ActionType.SEND_MESSAGE:
                channel_id = _as_number(config.get("channelId"))
                await performer.send_message(
                    ctx,
                    int(channel_id) if channel_id is not None else ctx.channel_id,
                    render_template(config.get("message", ""), ctx),
                )
            case ActionType.ADD_ROLE | ActionType.REMOVE_ROLE:
                role_id = _as_number(config.get("roleId"))
                if role_id is None:
                    return ActionOutcome(node.id, kind.value, ok=False, error="missing roleId")
                if kind is ActionType.ADD_ROLE:
                    await performer.add_role(ctx, int(role_id))
                else:
                    await performer.remove_role(ctx, int(role_id))
            case ActionType.BAN:
                await performer.ban(ctx, reason)
            case ActionType.KICK:
                await performer.kick(ctx, reason)
            case ActionType.TIMEOUT:
                seconds = _as_number(config.get("duration")) or DEFAULT_TIMEOUT_SECONDS
                await performer.timeout(ctx, int(seconds), reason)
            case _:
                assert_never(kind)
    except Exception as exc:
        logger.warning(
            "Action %s on node %s failed in guild %s",
            kind.value, node.id, ctx.guild_id, exc_info=True,
        )
        return ActionOutcome(node.id, kind.value, ok=False, error=str(exc) or type(exc).__name__)

    return ActionOutcome(node.id, kind.value, ok=True)


# ---------------------------------------------------------------------------
# Walk
# ---------------------------------------------------------------------------
def _first_successor(graph: WorkflowGraph, node: NodeView) -> NodeView | None:
    successors = graph.successors(node.id)
    return successors[0] if successors else None


def _branch(graph: WorkflowGraph, node: NodeView, outcome: bool) -> NodeView | None:
    ports = node.node_data.ports
    if ports.has_output(CONDITION_TRUE_PORT) or ports.has_output(CONDITION_FALSE_PORT):
        port_id = CONDITION_TRUE_PORT if outcome else CONDITION_FALSE_PORT
        successors = graph.successors(node.id, port_id)
        return successors[0] if successors else None
    # Single-output condition acts as a gate.
    return _first_successor(graph, node) if outcome else None


def _response_plan(config: Mapping[str, Any], ctx: InvocationContext) -> ResponsePlan:
    return ResponsePlan(
        content=render_template(str(config.get("message", "")), ctx),
        ephemeral=bool(config.get("ephemeral", False)),
        embed=bool(config.get("embed", False)),
        embed_title=config.get("embedTitle"),
        embed_color=config.get("embedColor"),
    )


async def run_graph(
    graph: WorkflowGraph, ctx: InvocationContext, performer: ActionPerformer
) -> ExecutionResult:
    """Walk *graph* from its trigger.  Never raises for graph content."""
    path: list[str] = []
    actions: list[ActionOutcome] = []
    current = graph.trigger()

    for _ in range(len(graph)):
        if current is None:
            break
        path.append(current.id)
        config = current.node_data.config

        match current.node_type:
            case NodeKind.TRIGGER:
                current = _first_successor(graph, current)
            case NodeKind.CONDITION:
                current = _branch(graph, current, evaluate_condition(config, ctx))
            case NodeKind.ACTION:
                outcome = await perform_action(current, ctx, performer)
                actions.append(outcome)
                if not outcome.ok:
                    return ExecutionResult(
                        status=ExecutionStatus.ACTION_FAILED,
                        path=tuple(path),
                        actions=tuple(actions),
                    )
                current = _first_successor(graph, current)
            case NodeKind.VARIABLE:
                apply_variable(config, ctx)
                current = _first_successor(graph, current)
            case NodeKind.RESPONSE:
                return ExecutionResult(
                    status=ExecutionStatus.RESPONDED,
                    response=_response_plan(config, ctx),
                    path=tuple(path),
                    actions=tuple(actions),
                )
            case _:
                assert_never(current.node_type)
    else:
        if current is not None:
            logger.warning("Workflow walk hit the step cap after %d nodes", len(path))

    return ExecutionResult(
        status=ExecutionStatus.NO_RESPONSE, path=tuple(path), actions=tuple(actions),
    )


class WorkflowExecutor:
    """Loads a stored workflow and runs it for one invocation."""

    def __init__(
        self,
        engine: Engine,
        performer: ActionPerformer,
        *,
        loader: Callable[..., WorkflowGraph | None] = load_graph,
    ) -> None:
        self._engine = engine
        self._performer = performer
        self._loader = loader

    async def execute(self, workflow_id: int, ctx: InvocationContext) -> ExecutionResult:
        graph = await run_db(self._loader, self._engine, workflow_id, ctx.guild_id)
        if graph is None:
            logger.info("Workflow %s not found for guild %s", workflow_id, ctx.guild_id)
            return ExecutionResult(status=ExecutionStatus.NOT_FOUND)

        result = await run_graph(graph, ctx, self._performer)
        logger.info(
            "Workflow %s ran for user %s in guild %s: %s via %s",
            workflow_id, ctx.user_id, ctx.guild_id, result.status.value,
            " → ".join(result.path) or "-",
        )
        return result
