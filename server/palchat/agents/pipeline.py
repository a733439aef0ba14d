from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from langgraph.graph import END, START, StateGraph

from palchat.agents.events import PipelineEventBroker
from palchat.agents.llm import GatewayError, LanguageModelGateway
from palchat.agents.prompts import EXTRACTION_PROMPT, FORMATTING_PROMPT
from palchat.agents.state import PipelineGraphState, complete_stage, fail_stage, start_stage
from palchat.core.langfuse import trace_metadata
from palchat.models.evaluation import EvaluationFailure, EvaluationSuccess
from palchat.models.pipeline import PipelineRun, PipelineStage, StageStatus
from palchat.services.evaluator import NumericEvaluator, sanitize_expression

logger = logging.getLogger(__name__)

EXTRACT_STAGE = (1, "LLM: Extract Math Expression")
EVALUATE_STAGE = (2, "PAL: Execute Math")
FORMAT_STAGE = (3, "LLM: Format Response")

_NODE_EXTRACT = "extract_expression"
_NODE_EVALUATE = "evaluate_expression"
_NODE_FORMAT = "format_response"


@dataclass
class PipelineContext:
    gateway: LanguageModelGateway
    evaluator: NumericEvaluator
    extraction_temperature: float = 0.1
    formatting_temperature: float = 0.5
    events: PipelineEventBroker | None = None
    callbacks: tuple[Any, ...] | None = None


class MathPipeline:
    """Extract → evaluate → format, as a three-node graph with a stage trace."""

    def __init__(self, context: PipelineContext) -> None:
        self._context = context
        self._graph = self._build_graph()

    @property
    def gateway(self) -> LanguageModelGateway:
        return self._context.gateway

    def _build_graph(self):
        graph = StateGraph(PipelineGraphState)
        graph.add_node(_NODE_EXTRACT, self._node_extract)
        graph.add_node(_NODE_EVALUATE, self._node_evaluate)
        graph.add_node(_NODE_FORMAT, self._node_format)

        graph.add_edge(START, _NODE_EXTRACT)
        graph.add_edge(_NODE_EXTRACT, _NODE_EVALUATE)
        graph.add_conditional_edges(
            _NODE_EVALUATE,
            self._route_after_evaluation,
            {
                "format": _NODE_FORMAT,
                "stop": END,
            },
        )
        graph.add_edge(_NODE_FORMAT, END)

        compiled = graph.compile()
        if self._context.callbacks:
            compiled = compiled.with_config({"callbacks": list(self._context.callbacks)})
        return compiled

    async def solve_async(self, user_query: str, *, session_id: Optional[str] = None) -> PipelineRun:
        initial_state: PipelineGraphState = {
            "session_id": session_id,
            "question": user_query,
            "stages": [],
        }
        invoke_config: dict[str, Any] | None = None
        if self._context.callbacks:
            invoke_config = {"metadata": trace_metadata(session_id)}

        start = time.perf_counter()
        result_state = await self._graph.ainvoke(initial_state, config=invoke_config)
        run = self._build_run(result_state)

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "pipeline.finished",
            extra={"success": run.success, "stages": len(run.stages), "latency_ms": latency_ms},
        )
        self._emit(session_id, "pipeline", "pipeline", {"success": run.success, "latencyMs": latency_ms})
        return run

    def solve(self, user_query: str, *, session_id: Optional[str] = None) -> PipelineRun:
        return asyncio.run(self.solve_async(user_query, session_id=session_id))

    # Node implementations -------------------------------------------------

    async def _node_extract(self, state: PipelineGraphState) -> dict[str, Any]:
        stage = start_stage(*EXTRACT_STAGE)
        self._emit_stage(state, _NODE_EXTRACT, stage)

        prompt = EXTRACTION_PROMPT.render({"question": state["question"]})
        try:
            raw_expression = await self._context.gateway.generate_async(
                prompt,
                temperature=self._context.extraction_temperature,
            )
        except GatewayError as exc:
            self._emit_stage(state, _NODE_EXTRACT, fail_stage(stage, exc.message))
            raise

        # Malformed or empty output is left for the evaluation stage to reject.
        expression = sanitize_expression(raw_expression)
        stage = complete_stage(stage, expression)
        self._emit_stage(state, _NODE_EXTRACT, stage)
        return {"expression": expression, "stages": [stage]}

    async def _node_evaluate(self, state: PipelineGraphState) -> dict[str, Any]:
        expression = state.get("expression", "")
        stage = start_stage(*EVALUATE_STAGE, expression)
        self._emit_stage(state, _NODE_EVALUATE, stage)

        evaluation = await asyncio.to_thread(self._context.evaluator.evaluate, expression)
        if isinstance(evaluation, EvaluationFailure):
            stage = fail_stage(stage, evaluation.message)
        else:
            stage = complete_stage(stage, evaluation.formatted)

        self._emit_stage(state, _NODE_EVALUATE, stage)
        return {"evaluation": evaluation, "stages": [stage]}

    async def _node_format(self, state: PipelineGraphState) -> dict[str, Any]:
        evaluation: EvaluationSuccess = state["evaluation"]
        stage_input = {
            "question": state["question"],
            "expression": state.get("expression", ""),
            "result": evaluation.formatted,
        }
        stage = start_stage(*FORMAT_STAGE, stage_input)
        self._emit_stage(state, _NODE_FORMAT, stage)

        prompt = FORMATTING_PROMPT.render(stage_input)
        try:
            response = await self._context.gateway.generate_async(
                prompt,
                temperature=self._context.formatting_temperature,
            )
        except GatewayError as exc:
            self._emit_stage(state, _NODE_FORMAT, fail_stage(stage, exc.message))
            raise

        final_answer = response.strip()
        stage = complete_stage(stage, final_answer)
        self._emit_stage(state, _NODE_FORMAT, stage)
        return {"final_answer": final_answer, "stages": [stage]}

    @staticmethod
    def _route_after_evaluation(state: PipelineGraphState) -> str:
        evaluation = state.get("evaluation")
        if isinstance(evaluation, EvaluationSuccess):
            return "format"
        return "stop"

    @staticmethod
    def _build_run(state: PipelineGraphState) -> PipelineRun:
        stages = list(state.get("stages") or [])
        success = len(stages) == 3 and all(stage.status == StageStatus.complete for stage in stages)
        return PipelineRun(
            stages=stages,
            success=success,
            finalAnswer=state.get("final_answer") if success else None,
        )

    def _emit_stage(self, state: PipelineGraphState, node: str, stage: PipelineStage) -> None:
        logger.info(
            "pipeline.stage",
            extra={"stage": stage.stage, "stage_name": stage.name, "status": stage.status.value},
        )
        self._emit(state.get("session_id"), "stage", node, stage.model_dump(mode="json"))

    def _emit(self, session_id: Optional[str], event_type: str, node: str, data: dict[str, Any]) -> None:
        if not session_id or self._context.events is None:
            return
        self._context.events.emit(session_id, event_type, node=node, data=data)


def create_pipeline(
    *,
    gateway: LanguageModelGateway,
    evaluator: NumericEvaluator | None = None,
    extraction_temperature: float = 0.1,
    formatting_temperature: float = 0.5,
    events: PipelineEventBroker | None = None,
    callbacks: tuple[Any, ...] | None = None,
) -> MathPipeline:
    context = PipelineContext(
        gateway=gateway,
        evaluator=evaluator or NumericEvaluator(),
        extraction_temperature=extraction_temperature,
        formatting_temperature=formatting_temperature,
        events=events,
        callbacks=callbacks,
    )
    return MathPipeline(context)
