"""
CodeSynthesizer: role dispatch, generated code loading and templates.
"""
import pytest

from tests.shared_data import LINEAR_EXPORT, ROUTER_EXPORT, FakeGenerationService, code, edge, export, node
from workflow_compiler.compiler.compile import compile_workflow
from workflow_compiler.compiler.parse import parse_graph
from workflow_compiler.errors import ExecutionError, SynthesisError
from workflow_compiler.schema.models import FieldType
from workflow_compiler.schema.state import StateSchema
from workflow_compiler.synthesis.behaviors import (
    ROUTE_KEY,
    AgentTemplateBehavior,
    BehaviorKind,
    EndpointToolBehavior,
    GeneratedBehavior,
    NodeContext,
    RouterBehavior,
)
from workflow_compiler.synthesis.service import GeneratedCode
from workflow_compiler.synthesis.synthesizer import CodeSynthesizer


AGENT_EXPORT = export(
    [
        node("1", "planner", prompt="Plan the trip"),
        node("2", "search", endpoint="http://tools.local/search", inputs="query: string"),
    ],
    [edge("1", "2", "HAS_TOOL")],
)


async def _synthesize(synthesizer, payload, node_id):
    graph = parse_graph(payload)
    return await synthesizer.synthesize(graph.node(node_id), StateSchema(), graph)


class TestRegularNodes:
    @pytest.mark.asyncio
    async def test_generated_behavior_runs_over_state(self, generation_service):
        synthesizer = CodeSynthesizer(generation_service)
        behavior = await _synthesize(synthesizer, LINEAR_EXPORT, "2")

        assert isinstance(behavior, GeneratedBehavior)
        assert behavior.kind == BehaviorKind.generated
        assert behavior.input_fields == {"raw_data": FieldType.string}
        assert behavior.output_fields == {"result": FieldType.string}
        assert await behavior.ainvoke({"raw_data": "abc"}, NodeContext(node_id="2")) == {"result": "ABC"}

        request = generation_service.calls[0]
        assert request.function_name == "process"
        assert request.node_id == "2"

    @pytest.mark.asyncio
    async def test_node_declarations_reach_the_generation_service(self, generation_service):
        synthesizer = CodeSynthesizer(generation_service)
        await _synthesize(synthesizer, LINEAR_EXPORT, "1")
        assert generation_service.calls[0].declared_outputs == {"raw_data": "string"}

    @pytest.mark.asyncio
    async def test_wrong_function_name(self):
        service = FakeGenerationService({"fetch_data": code("fetch_it", "return {}")})
        with pytest.raises(SynthesisError) as exc_info:
            await _synthesize(CodeSynthesizer(service), LINEAR_EXPORT, "1")
        assert exc_info.value.node_id == "1"

    @pytest.mark.asyncio
    async def test_function_must_take_exactly_state(self):
        service = FakeGenerationService(
            {
                "fetch_data": GeneratedCode(
                    function_name="fetch_data",
                    source_code="def fetch_data(state, extra):\n    return {}\n",
                )
            }
        )
        with pytest.raises(SynthesisError):
            await _synthesize(CodeSynthesizer(service), LINEAR_EXPORT, "1")

    @pytest.mark.asyncio
    async def test_disallowed_import_fails_to_load(self):
        service = FakeGenerationService(
            {
                "fetch_data": GeneratedCode(
                    function_name="fetch_data",
                    source_code="import os\n\ndef fetch_data(state):\n    return {}\n",
                )
            }
        )
        with pytest.raises(SynthesisError) as exc_info:
            await _synthesize(CodeSynthesizer(service), LINEAR_EXPORT, "1")
        assert "failed to load" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_allowed_import_loads(self):
        service = FakeGenerationService(
            {
                "fetch_data": GeneratedCode(
                    function_name="fetch_data",
                    source_code="import math\n\ndef fetch_data(state):\n    return {'raw_data': str(math.floor(2.5))}\n",
                )
            }
        )
        behavior = await _synthesize(CodeSynthesizer(service), LINEAR_EXPORT, "1")
        assert await behavior.ainvoke({}, NodeContext(node_id="1")) == {"raw_data": "2"}

    @pytest.mark.asyncio
    async def test_generated_types_must_agree_with_declarations(self):
        service = FakeGenerationService(
            {"fetch_data": code("fetch_data", "return {}", outputs={"raw_data": "boolean"})}
        )
        with pytest.raises(SynthesisError):
            await _synthesize(CodeSynthesizer(service), LINEAR_EXPORT, "1")

    @pytest.mark.asyncio
    async def test_non_dict_result_is_an_execution_error(self):
        service = FakeGenerationService({"fetch_data": code("fetch_data", "return 42")})
        behavior = await _synthesize(CodeSynthesizer(service), LINEAR_EXPORT, "1")
        with pytest.raises(ExecutionError):
            await behavior.ainvoke({}, NodeContext(node_id="1"))


class TestAgentNodes:
    @pytest.mark.asyncio
    async def test_agent_templates_disabled(self, generation_service):
        with pytest.raises(SynthesisError) as exc_info:
            await _synthesize(CodeSynthesizer(generation_service), AGENT_EXPORT, "1")
        assert "agent templates are disabled" in str(exc_info.value)
        assert generation_service.calls == []

    @pytest.mark.asyncio
    async def test_agent_template_binds_tool_nodes(self, generation_service):
        synthesizer = CodeSynthesizer(generation_service, agent_templates_enabled=True, agent_model="gpt-5-mini")
        graph = parse_graph(AGENT_EXPORT)
        behaviors = {
            node_id: await synthesizer.synthesize(graph.node(node_id), StateSchema(), graph)
            for node_id in graph.node_ids()
        }
        agent, tool = behaviors["1"], behaviors["2"]

        assert isinstance(agent, AgentTemplateBehavior)
        assert isinstance(tool, EndpointToolBehavior)
        assert agent.definition.tool_node_ids == ["2"]
        assert agent.definition.config["system_prompt"] == "Plan the trip"
        assert agent.output_fields == {"planner_response": FieldType.string}
        assert tool.definition.config["endpoint"] == "http://tools.local/search"
        assert generation_service.calls == []

        compiled = compile_workflow(graph, behaviors)
        tools = compiled.behaviors["1"]._tools()
        assert [t.name for t in tools] == ["search"]
        assert "query" in tools[0].args


class TestRouterNodes:
    @pytest.mark.asyncio
    async def test_rule_based_router(self, generation_service):
        behavior = await _synthesize(CodeSynthesizer(generation_service), ROUTER_EXPORT, "c")

        assert isinstance(behavior, RouterBehavior)
        assert behavior.definition.routes == {"x": "a", "y": "b"}
        assert await behavior.ainvoke({"kind": "y"}, NodeContext(node_id="c")) == {ROUTE_KEY: "b"}
        with pytest.raises(ExecutionError):
            await behavior.ainvoke({"kind": "z"}, NodeContext(node_id="c"))
        assert generation_service.calls == []

    @pytest.mark.asyncio
    async def test_default_route(self, generation_service):
        payload = export(
            [
                node("c", "classify", route_field="kind", routes={"x": "a"}, default_route="handler_b"),
                node("a", "handler_a"),
                node("b", "handler_b"),
            ],
            [edge("c", "a", "CONDITIONAL"), edge("c", "b", "CONDITIONAL")],
        )
        behavior = await _synthesize(CodeSynthesizer(generation_service), payload, "c")
        assert await behavior.ainvoke({"kind": "other"}, NodeContext(node_id="c")) == {ROUTE_KEY: "b"}

    @pytest.mark.asyncio
    async def test_routes_must_point_at_conditional_targets(self, generation_service):
        payload = export(
            [
                node("c", "classify", route_field="kind", routes={"x": "elsewhere"}),
                node("a", "handler_a"),
                node("b", "handler_b"),
            ],
            [edge("c", "a", "CONDITIONAL"), edge("c", "b", "CONDITIONAL")],
        )
        with pytest.raises(SynthesisError):
            await _synthesize(CodeSynthesizer(generation_service), payload, "c")

    @pytest.mark.asyncio
    async def test_generated_router_selects_by_caption(self):
        payload = export(
            [node("c", "triage"), node("a", "handler_a"), node("b", "handler_b")],
            [edge("c", "a", "CONDITIONAL"), edge("c", "b", "CONDITIONAL")],
        )
        service = FakeGenerationService(
            {"triage": code("triage", 'return "handler_b" if state.get("urgent") else "handler_a"')}
        )
        behavior = await _synthesize(CodeSynthesizer(service), payload, "c")

        assert behavior.definition.targets == ["a", "b"]
        assert await behavior.ainvoke({"urgent": True}, NodeContext(node_id="c")) == {ROUTE_KEY: "b"}
        assert await behavior.ainvoke({}, NodeContext(node_id="c")) == {ROUTE_KEY: "a"}
        assert [target.node_id for target in service.calls[0].route_targets] == ["a", "b"]
