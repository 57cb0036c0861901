from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from workflow_compiler.build.store import InMemoryBuildStore
from workflow_compiler.runtime.records import ExecutionRecord, ExecutionStatus
from workflow_compiler.synthesis.service import GeneratedCode, GenerationRequest


def configure_test_logging(level: int = logging.WARNING) -> None:
    """Keep builder/engine chatter out of pytest output unless a test fails."""
    prefixes = ("workflow_compiler", "api", "shared", "worker")
    for name in prefixes:
        logging.getLogger(name).setLevel(level)
    # get_logger() pins a level on each module logger, so parents alone are not enough
    for name, existing in list(logging.root.manager.loggerDict.items()):
        if isinstance(existing, logging.Logger) and name.startswith(prefixes):
            existing.setLevel(level)


# ----------------------------------------------------------------------
# Graph exports
# ----------------------------------------------------------------------
def node(node_id: str, caption: str, **properties: Any) -> Dict[str, Any]:
    return {
        "id": node_id,
        "caption": caption,
        "labels": [],
        "position": {"x": 0, "y": 0},
        "style": {},
        "properties": properties,
    }


def edge(source: str, target: str, kind: str = "") -> Dict[str, Any]:
    return {"id": f"r{source}{target}", "fromId": source, "toId": target, "type": kind, "style": {}}


def export(nodes: Iterable[Dict[str, Any]], relationships: Iterable[Dict[str, Any]] = ()) -> Dict[str, Any]:
    return {"nodes": list(nodes), "relationships": list(relationships)}


LINEAR_EXPORT = export(
    [
        node("1", "fetch_data", outputs="raw_data: string"),
        node("2", "process"),
    ],
    [edge("1", "2")],
)

ROUTER_EXPORT = export(
    [
        node("c", "classify", route_field="kind", routes='{"x": "handler_a", "y": "handler_b"}'),
        node("a", "handler_a"),
        node("b", "handler_b"),
    ],
    [edge("c", "a", "CONDITIONAL"), edge("c", "b", "CONDITIONAL")],
)


# ----------------------------------------------------------------------
# Generated code
# ----------------------------------------------------------------------
def code(function_name: str, body: str, *, inputs: Optional[Dict[str, str]] = None,
         outputs: Optional[Dict[str, str]] = None) -> GeneratedCode:
    source = f"def {function_name}(state):\n" + "\n".join(f"    {line}" for line in body.strip().splitlines()) + "\n"
    return GeneratedCode(
        function_name=function_name,
        source_code=source,
        input_fields=inputs or {},
        output_fields=outputs or {},
    )


DEFAULT_CODE: Dict[str, GeneratedCode] = {
    "fetch_data": code("fetch_data", 'return {"raw_data": "hello"}', outputs={"raw_data": "string"}),
    "process": code(
        "process",
        'return {"result": state["raw_data"].upper()}',
        inputs={"raw_data": "string"},
        outputs={"result": "string"},
    ),
    "handler_a": code("handler_a", 'return {"handled_by": "a"}', outputs={"handled_by": "string"}),
    "handler_b": code("handler_b", 'return {"handled_by": "b"}', outputs={"handled_by": "string"}),
}


class FakeGenerationService:
    """
    Generation service answering from a table keyed by function name.

    `gate` (when set) holds every call until released, `delays` makes chosen
    functions slow enough to hit the synthesis timeout.
    """

    def __init__(
        self,
        answers: Optional[Dict[str, GeneratedCode]] = None,
        *,
        gate: Optional[asyncio.Event] = None,
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.answers = dict(DEFAULT_CODE)
        self.answers.update(answers or {})
        self.gate = gate
        self.delays = delays or {}
        self.calls: List[GenerationRequest] = []

    def calls_for(self, function_name: str) -> int:
        return sum(1 for request in self.calls if request.function_name == function_name)

    async def generate(self, request: GenerationRequest) -> GeneratedCode:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        delay = self.delays.get(request.function_name)
        if delay:
            await asyncio.sleep(delay)
        answer = self.answers.get(request.function_name)
        if answer is None:
            raise RuntimeError(f"no canned answer for {request.function_name}")
        return answer


class FinalSaveFailingStore(InMemoryBuildStore):
    """Accepts the running execution record, then fails to store the finished one."""

    async def save_execution(self, record: ExecutionRecord) -> None:
        if record.status != ExecutionStatus.running:
            raise RuntimeError("execution store unavailable")
        await super().save_execution(record)
