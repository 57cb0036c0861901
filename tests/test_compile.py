"""
WorkflowCompiler: behavior binding, transition lowering and the persisted document.
"""
import pytest

from tests.shared_data import LINEAR_EXPORT, ROUTER_EXPORT, edge, export, node
from workflow_compiler.compiler.compile import compile_workflow, load_compiled_workflow
from workflow_compiler.compiler.lower_control_flow import lower_transitions
from workflow_compiler.compiler.parse import parse_graph
from workflow_compiler.errors import CompileError
from workflow_compiler.schema.models import EdgeKind
from workflow_compiler.schema.state import StateSchema
from workflow_compiler.synthesis.behaviors import NodeContext
from workflow_compiler.synthesis.synthesizer import CodeSynthesizer


async def _behaviors(generation_service, graph):
    synthesizer = CodeSynthesizer(generation_service)
    return {
        node_id: await synthesizer.synthesize(graph.node(node_id), StateSchema(), graph)
        for node_id in graph.node_ids()
    }


class TestCompileWorkflow:
    @pytest.mark.asyncio
    async def test_compile_is_deterministic(self, generation_service):
        graph = parse_graph(LINEAR_EXPORT)
        behaviors = await _behaviors(generation_service, graph)

        first = compile_workflow(graph, behaviors, workflow_id="wf_test")
        second = compile_workflow(graph, behaviors, workflow_id="wf_test")

        assert first.state_schema == second.state_schema
        assert first.transitions == second.transitions
        assert first.to_document() == second.to_document()

    @pytest.mark.asyncio
    async def test_state_schema_and_chat_fields(self, generation_service):
        graph = parse_graph(LINEAR_EXPORT)
        compiled = compile_workflow(graph, await _behaviors(generation_service, graph))

        assert compiled.state_schema.describe() == {"raw_data": "string", "result": "string"}
        assert compiled.chat_input_field is None
        assert compiled.chat_output_field == "result"
        assert [(rule.source, rule.target) for rule in compiled.incoming("2")] == [("1", "2")]
        assert compiled.incoming("1") == ()

    @pytest.mark.asyncio
    async def test_missing_behavior(self, generation_service):
        graph = parse_graph(LINEAR_EXPORT)
        behaviors = await _behaviors(generation_service, graph)
        del behaviors["2"]
        with pytest.raises(CompileError) as exc_info:
            compile_workflow(graph, behaviors)
        assert "2" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_behavior_for_wrong_node(self, generation_service):
        graph = parse_graph(LINEAR_EXPORT)
        behaviors = await _behaviors(generation_service, graph)
        behaviors["1"], behaviors["2"] = behaviors["2"], behaviors["1"]
        with pytest.raises(CompileError):
            compile_workflow(graph, behaviors)

    @pytest.mark.asyncio
    async def test_document_round_trip(self, generation_service):
        graph = parse_graph(ROUTER_EXPORT)
        compiled = compile_workflow(graph, await _behaviors(generation_service, graph), workflow_id="wf_router")

        document = compiled.to_document()
        restored = load_compiled_workflow(document)

        assert restored.workflow_id == "wf_router"
        assert restored.transitions == compiled.transitions
        assert restored.state_schema == compiled.state_schema
        assert restored.chat_input_field == "kind"
        result = await restored.behaviors["a"].ainvoke({}, NodeContext(node_id="a"))
        assert result == {"handled_by": "a"}

    def test_unsupported_document_version(self):
        with pytest.raises(CompileError):
            load_compiled_workflow({"version": 99})


class TestTransitions:
    def test_router_conditional_edges_are_gated(self):
        rules = lower_transitions(parse_graph(ROUTER_EXPORT))
        assert [(rule.target, rule.kind, rule.gated) for rule in rules] == [
            ("a", EdgeKind.conditional, True),
            ("b", EdgeKind.conditional, True),
        ]

    def test_router_decisions_disabled(self):
        rules = lower_transitions(parse_graph(ROUTER_EXPORT), router_decisions=False)
        assert not any(rule.gated for rule in rules)

    def test_dependency_edges_are_isolated_and_tool_edges_dropped(self):
        graph = parse_graph(
            export(
                [node("1", "a"), node("2", "b"), node("3", "agent"), node("4", "tool")],
                [edge("1", "2", "DEPENDENCY"), edge("2", "3"), edge("3", "4", "HAS_TOOL")],
            )
        )
        rules = lower_transitions(graph)
        assert [(rule.source, rule.target, rule.isolated) for rule in rules] == [
            ("1", "2", True),
            ("2", "3", False),
        ]

    def test_single_conditional_edge_from_regular_node_is_not_gated(self):
        graph = parse_graph(export([node("1", "a"), node("2", "b")], [edge("1", "2", "CONDITIONAL")]))
        (rule,) = lower_transitions(graph)
        assert rule.kind == EdgeKind.conditional
        assert rule.gated is False
