"""
Node behaviors: every node in a compiled workflow is bound to one Behavior
with a single contract: `await behavior.ainvoke(state, context)` returns a
partial state (a dict of fields to merge).

Variants:
  - GeneratedBehavior: Python source produced by the generation service.
  - AgentTemplateBehavior: a LangChain agent over the node's tool nodes.
  - EndpointToolBehavior: a tool node that forwards its inputs to an HTTP endpoint.
  - RouterBehavior: picks the next node among its conditional targets, either
    from rules declared on the node or from a generated selector.

Behaviors round-trip through BehaviorDefinition so a CompiledWorkflow can be
persisted and rehydrated in another process.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import inspect
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Mapping, Optional, Type

import httpx
from langchain.agents import create_agent
from langchain_core.messages import AIMessageChunk, HumanMessage
from langchain_core.tools import StructuredTool
from pydantic import Field, create_model

from shared.llm import get_llm, message_text
from workflow_compiler.errors import CompileError, ExecutionError, SynthesisError
from workflow_compiler.schema.models import FieldType, JSONValue, StrictModel
from workflow_compiler.schema.state import INTERNAL_STATE_PREFIX

ROUTE_KEY = f"{INTERNAL_STATE_PREFIX}next__"

TokenSink = Callable[[str, str], Awaitable[None]]


class BehaviorKind(str, Enum):
    generated = "generated"
    agent_template = "agent_template"
    endpoint_tool = "endpoint_tool"
    router = "router"


class BehaviorDefinition(StrictModel):
    """Serializable description of a behavior."""

    kind: BehaviorKind
    node_id: str
    function_name: str
    source_code: Optional[str] = None
    input_fields: Dict[str, FieldType] = Field(default_factory=dict)
    output_fields: Dict[str, FieldType] = Field(default_factory=dict)
    # router
    targets: List[str] = Field(default_factory=list)
    route_field: Optional[str] = None
    routes: Dict[str, str] = Field(default_factory=dict)
    default_route: Optional[str] = None
    # templates
    config: Dict[str, JSONValue] = Field(default_factory=dict)
    tool_node_ids: List[str] = Field(default_factory=list)


@dataclass(frozen=True)
class NodeContext:
    """Per-invocation context handed to a behavior by the execution engine."""

    node_id: str
    execution_id: Optional[str] = None
    token_sink: Optional[TokenSink] = None

    async def emit_token(self, content: str) -> None:
        if self.token_sink is not None and content:
            await self.token_sink(self.node_id, content)


class Behavior(ABC):
    kind: ClassVar[BehaviorKind]

    def __init__(self, definition: BehaviorDefinition) -> None:
        self.definition = definition

    @property
    def node_id(self) -> str:
        return self.definition.node_id

    @property
    def input_fields(self) -> Dict[str, FieldType]:
        return dict(self.definition.input_fields)

    @property
    def output_fields(self) -> Dict[str, FieldType]:
        return dict(self.definition.output_fields)

    @abstractmethod
    async def ainvoke(self, state: Mapping[str, Any], context: NodeContext) -> Dict[str, Any]:
        """Run the behavior against `state` and return the fields it writes."""

    def to_definition(self) -> BehaviorDefinition:
        return self.definition

    def bind(self, registry: Mapping[str, "Behavior"]) -> "Behavior":
        """Return the behavior bound to the workflow's other behaviors. Most behaviors need none."""
        return self

    def __repr__(self) -> str:
        return f"{type(self).__name__}<{self.definition.node_id}:{self.definition.function_name}>"


# ----------------------------------------------------------------------
# Generated Python functions
# ----------------------------------------------------------------------
_ALLOWED_IMPORTS = frozenset(
    {
        "collections",
        "datetime",
        "functools",
        "itertools",
        "json",
        "math",
        "random",
        "re",
        "statistics",
        "string",
        "textwrap",
        "time",
        "typing",
    }
)

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "format", "frozenset", "getattr", "hasattr", "int", "isinstance", "len", "list",
    "map", "max", "min", "print", "range", "repr", "reversed", "round", "set",
    "sorted", "str", "sum", "tuple", "type", "zip", "Exception", "ValueError",
    "KeyError", "TypeError", "RuntimeError", "None", "True", "False",
)


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in _ALLOWED_IMPORTS:
        raise ImportError(f"Import of '{name}' is not allowed in generated node code")
    return builtins.__import__(name, globals, locals, fromlist, level)


def _safe_builtins() -> Dict[str, Any]:
    safe = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES if hasattr(builtins, name)}
    safe["__import__"] = _restricted_import
    return safe


def compile_generated_function(source_code: str, function_name: str, *, node_id: str) -> Callable[..., Any]:
    """
    Validate and load generated code. The module must define `function_name`
    taking exactly one positional parameter (the state) and nothing else required.
    """
    try:
        tree = ast.parse(source_code)
    except SyntaxError as exc:
        raise SynthesisError(f"Generated code for node '{node_id}' is not valid Python: {exc}", node_id=node_id) from exc

    definition = next(
        (
            stmt for stmt in tree.body
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == function_name
        ),
        None,
    )
    if definition is None:
        raise SynthesisError(
            f"Generated code for node '{node_id}' does not define function '{function_name}'",
            node_id=node_id,
        )
    args = definition.args
    positional = args.posonlyargs + args.args
    required_kwonly = [arg for arg, default in zip(args.kwonlyargs, args.kw_defaults) if default is None]
    if len(positional) != 1 or args.vararg or required_kwonly:
        raise SynthesisError(
            f"Function '{function_name}' for node '{node_id}' must take exactly one argument (state)",
            node_id=node_id,
        )

    namespace: Dict[str, Any] = {"__builtins__": _safe_builtins(), "__name__": f"__node_{function_name}__"}
    try:
        exec(compile(tree, f"<node:{node_id}>", "exec"), namespace)
    except Exception as exc:
        raise SynthesisError(f"Generated code for node '{node_id}' failed to load: {exc}", node_id=node_id) from exc
    return namespace[function_name]


async def _call_generated(fn: Callable[..., Any], state: Dict[str, Any]) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(state)
    return await asyncio.to_thread(fn, state)


def _visible_state(state: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in state.items() if not key.startswith(INTERNAL_STATE_PREFIX)}


class GeneratedBehavior(Behavior):
    kind = BehaviorKind.generated

    def __init__(self, definition: BehaviorDefinition) -> None:
        super().__init__(definition)
        if not definition.source_code:
            raise SynthesisError(f"Node '{definition.node_id}' has no generated source", node_id=definition.node_id)
        self._fn = compile_generated_function(
            definition.source_code, definition.function_name, node_id=definition.node_id
        )

    async def ainvoke(self, state: Mapping[str, Any], context: NodeContext) -> Dict[str, Any]:
        result = await _call_generated(self._fn, _visible_state(state))
        if result is None:
            return {}
        if not isinstance(result, Mapping):
            raise ExecutionError(
                f"Node '{self.node_id}' returned {type(result).__name__}; expected a dict of state fields",
                node_id=self.node_id,
            )
        return dict(result)


# ----------------------------------------------------------------------
# Routers
# ----------------------------------------------------------------------
class RouterBehavior(Behavior):
    """Returns `{ROUTE_KEY: <target node id>}`; the engine gates conditional edges on it."""

    kind = BehaviorKind.router

    def __init__(self, definition: BehaviorDefinition) -> None:
        super().__init__(definition)
        self._selector: Optional[Callable[..., Any]] = None
        if definition.source_code:
            self._selector = compile_generated_function(
                definition.source_code, definition.function_name, node_id=definition.node_id
            )
        elif not definition.route_field:
            raise SynthesisError(
                f"Router node '{definition.node_id}' needs either generated selector code or a route_field",
                node_id=definition.node_id,
            )

    async def ainvoke(self, state: Mapping[str, Any], context: NodeContext) -> Dict[str, Any]:
        if self._selector is not None:
            choice = await _call_generated(self._selector, _visible_state(state))
        else:
            value = state.get(self.definition.route_field)
            choice = self.definition.routes.get(str(value), self.definition.default_route)
        target = self._resolve(choice)
        return {ROUTE_KEY: target}

    def _resolve(self, choice: Any) -> str:
        if isinstance(choice, Mapping):
            choice = choice.get("next")
        if choice is None:
            raise ExecutionError(f"Router '{self.node_id}' did not select a next node", node_id=self.node_id)
        choice = str(choice)
        if choice in self.definition.targets:
            return choice
        aliases = self.definition.config.get("target_aliases") or {}
        if choice in aliases:
            return aliases[choice]
        raise ExecutionError(
            f"Router '{self.node_id}' selected '{choice}', which is not one of its conditional targets "
            f"{self.definition.targets}",
            node_id=self.node_id,
        )


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------
class EndpointToolBehavior(Behavior):
    """Tool node that POSTs its visible inputs to a configured endpoint and returns the JSON reply."""

    kind = BehaviorKind.endpoint_tool

    async def ainvoke(self, state: Mapping[str, Any], context: NodeContext) -> Dict[str, Any]:
        config = self.definition.config
        endpoint = str(config["endpoint"])
        payload = _visible_state(state)
        if self.definition.input_fields:
            payload = {name: payload.get(name) for name in self.definition.input_fields}
        try:
            async with httpx.AsyncClient(timeout=float(config.get("timeout_seconds") or 30)) as client:
                response = await client.request(str(config.get("method") or "POST"), endpoint, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExecutionError(f"Endpoint call for node '{self.node_id}' failed: {exc}", node_id=self.node_id) from exc
        body = response.json() if response.content else None
        if isinstance(body, Mapping):
            return dict(body)
        output_field = str(config.get("output_field") or f"{self.definition.function_name}_result")
        return {output_field: body}


class AgentTemplateBehavior(Behavior):
    """
    LangChain agent built from the node's properties (model, system prompt) whose
    tools are the behaviors of the nodes it owns through tool edges.
    """

    kind = BehaviorKind.agent_template

    def __init__(
        self,
        definition: BehaviorDefinition,
        *,
        registry: Optional[Mapping[str, Behavior]] = None,
        llm_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        super().__init__(definition)
        self._registry: Mapping[str, Behavior] = registry if registry is not None else {}
        self._llm_factory = llm_factory

    def bind(self, registry: Mapping[str, Behavior]) -> Behavior:
        return AgentTemplateBehavior(self.definition, registry=registry, llm_factory=self._llm_factory)

    def _tools(self) -> List[Any]:
        tools = []
        for tool_node_id in self.definition.tool_node_ids:
            behavior = self._registry.get(tool_node_id)
            if behavior is None:
                raise ExecutionError(
                    f"Agent '{self.node_id}' references tool node '{tool_node_id}' without a behavior",
                    node_id=self.node_id,
                )
            tools.append(
                StructuredTool.from_function(
                    coroutine=_tool_runner(behavior),
                    name=behavior.definition.function_name,
                    description=str(behavior.definition.config.get("description") or behavior.definition.function_name),
                    args_schema=_tool_args_model(behavior),
                )
            )
        return tools

    async def ainvoke(self, state: Mapping[str, Any], context: NodeContext) -> Dict[str, Any]:
        config = self.definition.config
        llm_factory = self._llm_factory or get_llm
        agent = create_agent(
            model=llm_factory(model=config.get("model") or None),
            tools=self._tools(),
            system_prompt=str(config.get("system_prompt") or ""),
        )
        input_field = str(config["input_field"])
        output_field = str(config["output_field"])
        message = state.get(input_field)
        if message is None:
            message = json.dumps(_visible_state(state), default=str)

        final_state: Dict[str, Any] = {}
        async for mode, payload in agent.astream(
            {"messages": [HumanMessage(content=str(message))]},
            stream_mode=["messages", "values"],
        ):
            if mode == "messages":
                chunk, _metadata = payload
                if isinstance(chunk, AIMessageChunk):
                    await context.emit_token(message_text(chunk))
            else:
                final_state = payload

        messages = final_state.get("messages") or []
        answer = message_text(messages[-1]) if messages else ""
        return {output_field: answer}


def _tool_runner(behavior: Behavior):
    async def run_tool(**kwargs: Any) -> str:
        result = await behavior.ainvoke(kwargs, NodeContext(node_id=behavior.node_id))
        return json.dumps(result, default=str)

    run_tool.__name__ = behavior.definition.function_name
    return run_tool


_PY_TYPES: Dict[FieldType, Any] = {
    FieldType.string: str,
    FieldType.integer: int,
    FieldType.number: float,
    FieldType.boolean: bool,
    FieldType.object: dict,
    FieldType.array: list,
    FieldType.any: Any,
}


def _tool_args_model(behavior: Behavior):
    field_definitions = {
        name: (Optional[_PY_TYPES[field_type]], None) for name, field_type in behavior.input_fields.items()
    }
    model_name = f"{behavior.definition.function_name.title().replace('_', '')}Input"
    return create_model(model_name, **field_definitions)


# ----------------------------------------------------------------------
# Rehydration
# ----------------------------------------------------------------------
_SIMPLE_BEHAVIORS: Dict[BehaviorKind, Type[Behavior]] = {
    BehaviorKind.generated: GeneratedBehavior,
    BehaviorKind.router: RouterBehavior,
    BehaviorKind.endpoint_tool: EndpointToolBehavior,
}


def behavior_from_definition(
    definition: BehaviorDefinition,
    *,
    llm_factory: Optional[Callable[..., Any]] = None,
) -> Behavior:
    if definition.kind == BehaviorKind.agent_template:
        return AgentTemplateBehavior(definition, llm_factory=llm_factory)
    behavior_cls = _SIMPLE_BEHAVIORS.get(definition.kind)
    if behavior_cls is None:
        raise CompileError(f"Unsupported behavior kind '{definition.kind}'")
    return behavior_cls(definition)


def load_behaviors(
    definitions: Mapping[str, BehaviorDefinition],
    *,
    llm_factory: Optional[Callable[..., Any]] = None,
) -> Dict[str, Behavior]:
    """Rehydrate persisted definitions into live (unbound) behaviors."""
    behaviors: Dict[str, Behavior] = {}
    for node_id, definition in definitions.items():
        try:
            behaviors[node_id] = behavior_from_definition(definition, llm_factory=llm_factory)
        except SynthesisError as exc:
            raise CompileError(f"Stored behavior for node '{node_id}' is invalid: {exc}") from exc
    return behaviors


__all__ = [
    "AgentTemplateBehavior",
    "Behavior",
    "BehaviorDefinition",
    "BehaviorKind",
    "EndpointToolBehavior",
    "GeneratedBehavior",
    "NodeContext",
    "ROUTE_KEY",
    "RouterBehavior",
    "behavior_from_definition",
    "compile_generated_function",
    "load_behaviors",
]
