from __future__ import annotations

import pytest

from palchat.agents.events import PipelineEventBroker
from palchat.agents.llm import FakeGateway, GatewayHttpError, clear_fake_completions, queue_fake_completion
from palchat.agents.pipeline import create_pipeline
from palchat.models.pipeline import StageStatus


@pytest.fixture()
def gateway() -> FakeGateway:
    clear_fake_completions()
    yield FakeGateway(model="llama3", temperature=0.7)
    clear_fake_completions()


@pytest.fixture()
def broker() -> PipelineEventBroker:
    return PipelineEventBroker()


@pytest.mark.asyncio
async def test_pipeline_answers_math_question(gateway: FakeGateway, broker: PipelineEventBroker) -> None:
    queue_fake_completion(' "100-37" ')
    queue_fake_completion("  100 minus 37 is 63.  ")
    pipeline = create_pipeline(gateway=gateway, events=broker)

    run = await pipeline.solve_async("calculate 100 minus 37", session_id="s-math")

    assert run.success is True
    assert [stage.stage for stage in run.stages] == [1, 2, 3]
    assert all(stage.status == StageStatus.complete for stage in run.stages)
    assert run.stages[0].output == "100-37"
    assert run.stages[1].input == "100-37"
    assert run.stages[1].output == "63"
    assert run.stages[2].input == {
        "question": "calculate 100 minus 37",
        "expression": "100-37",
        "result": "63",
    }
    assert run.stages[2].output == "100 minus 37 is 63."
    assert run.finalAnswer == "100 minus 37 is 63."
    assert "63" in run.finalAnswer


@pytest.mark.asyncio
async def test_pipeline_uses_stage_temperatures_and_prompts(gateway: FakeGateway) -> None:
    queue_fake_completion("480*0.25")
    queue_fake_completion("25% of 480 is 120.")
    pipeline = create_pipeline(gateway=gateway, extraction_temperature=0.1, formatting_temperature=0.5)

    run = await pipeline.solve_async("what is 25% of 480?")

    assert run.stages[1].output == "120"
    assert [request.temperature for request in gateway.requests] == [0.1, 0.5]
    extraction_prompt, formatting_prompt = (request.prompt for request in gateway.requests)
    assert 'Question: "what is 25% of 480?"' in extraction_prompt
    assert "Return ONLY the math expression" in extraction_prompt
    assert "Expression: 480*0.25" in formatting_prompt
    assert "Result: 120" in formatting_prompt


@pytest.mark.asyncio
async def test_pipeline_uses_exact_path_for_large_numbers(gateway: FakeGateway) -> None:
    queue_fake_completion("42987429742+43434343")
    queue_fake_completion("The sum is 43030864085.")
    pipeline = create_pipeline(gateway=gateway)

    run = await pipeline.solve_async("how much is 42987429742+43434343?")

    assert run.success
    assert run.stages[1].output == "43030864085"


@pytest.mark.asyncio
async def test_pipeline_stops_after_evaluation_failure(gateway: FakeGateway) -> None:
    queue_fake_completion("I am not sure what you mean")
    pipeline = create_pipeline(gateway=gateway)

    run = await pipeline.solve_async("solve the meaning of life")

    assert run.success is False
    assert run.finalAnswer is None
    assert len(run.stages) == 2
    assert [stage.status for stage in run.stages] == [StageStatus.complete, StageStatus.error]
    assert run.stages[0].output == ""
    assert run.stages[1].error == "Expression cannot be empty."
    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_pipeline_rejects_multi_operator_large_expression(gateway: FakeGateway) -> None:
    queue_fake_completion("1234567890+1+1")
    pipeline = create_pipeline(gateway=gateway)

    run = await pipeline.solve_async("calculate 1234567890+1+1")

    assert run.success is False
    assert run.failed_stage is not None
    assert run.failed_stage.error == "Complex expression not supported"


@pytest.mark.asyncio
async def test_pipeline_propagates_gateway_failure_during_extraction(
    gateway: FakeGateway, broker: PipelineEventBroker
) -> None:
    queue_fake_completion(GatewayHttpError(500))
    pipeline = create_pipeline(gateway=gateway, events=broker)

    with pytest.raises(GatewayHttpError):
        await pipeline.solve_async("what is 2+2", session_id="s-down")

    stage_events = [event for event in broker.drain("s-down") if event["type"] == "stage"]
    assert [event["data"]["status"] for event in stage_events] == ["running", "error"]
    assert stage_events[-1]["data"]["error"] == "HTTP error! status: 500"


@pytest.mark.asyncio
async def test_pipeline_propagates_gateway_failure_during_formatting(gateway: FakeGateway) -> None:
    queue_fake_completion("2+2")
    queue_fake_completion(GatewayHttpError(503))
    pipeline = create_pipeline(gateway=gateway)

    with pytest.raises(GatewayHttpError):
        await pipeline.solve_async("what is 2+2")


@pytest.mark.asyncio
async def test_pipeline_publishes_stage_transitions(gateway: FakeGateway, broker: PipelineEventBroker) -> None:
    queue_fake_completion("6*7")
    queue_fake_completion("That makes 42.")
    pipeline = create_pipeline(gateway=gateway, events=broker)

    await pipeline.solve_async("what is 6 times 7", session_id="s-events")

    events = broker.drain("s-events")
    stage_events = [event for event in events if event["type"] == "stage"]
    assert [(event["data"]["stage"], event["data"]["status"]) for event in stage_events] == [
        (1, "running"),
        (1, "complete"),
        (2, "running"),
        (2, "complete"),
        (3, "running"),
        (3, "complete"),
    ]
    assert events[-1]["type"] == "pipeline"
    assert events[-1]["data"]["success"] is True
    assert [event["sequence"] for event in events] == list(range(1, len(events) + 1))


def test_pipeline_sync_wrapper(gateway: FakeGateway) -> None:
    queue_fake_completion("9/3")
    queue_fake_completion("Nine divided by three is 3.")
    pipeline = create_pipeline(gateway=gateway)

    run = pipeline.solve("compute 9/3")

    assert run.success
    assert run.stages[1].output == "3"
