import asyncio
import json
import logging

import pytest

from research_agent.agents import SYNTHESIS_INSTRUCTION
from research_agent.llm import LLMError
from research_agent.orchestrator import BUDGET_EXHAUSTED_MESSAGE, TurnState, run_agent_turn
from research_agent.schemas import AgentRequest
from tests.fakes import PLAN_ARGS, FakeLLMClient, reply, seed_project, tool_call


def make_request(text="How did revenue change in Q3?", depth="general", **extra):
    payload = {
        "messages": [{"role": "user", "content": text}],
        "projectId": "p1",
        "sessionId": "s1",
        "analysisDepth": depth,
    }
    payload.update(extra)
    return AgentRequest.model_validate(payload)


def plan_call():
    return reply(calls=[tool_call("planQuery", PLAN_ARGS)])


def search_call(query="revenue"):
    return reply(calls=[tool_call("searchProjectData", {"query": query})])


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of(self, type):
        return [e for e in self.events if e.type == type]


async def run_turn(services_factory, script, request=None, **factory_kwargs):
    fake_llm = FakeLLMClient(script=script)
    services = await services_factory(fake_llm=fake_llm, **factory_kwargs)
    await seed_project(services.db)
    recorder = Recorder()
    outcome = await run_agent_turn(request or make_request(), services, recorder)
    return outcome, services, fake_llm, recorder


@pytest.mark.asyncio
async def test_plan_search_answer_turn(services_factory):
    script = [plan_call(), search_call(), reply("Revenue rose 15% [Source: revenue.png, Score: 1.00]")]
    outcome, services, fake_llm, recorder = await run_turn(services_factory, script)

    assert outcome.state == TurnState.DONE
    assert [e.tool for e in outcome.trace] == ["planQuery", "searchProjectData"]
    assert [(r.type, r.data_id, r.used_in_step) for r in outcome.references] == [
        ("projectData", "chart-1", 2),
        ("projectData", "costs-1", 2),
    ]
    assert outcome.plan.rationale == PLAN_ARGS["rationale"]

    records = await services.db.list_session_messages("p1", "s1")
    assert [r["role"] for r in records] == ["user", "assistant"]
    assistant = records[1]
    assert assistant["content"].startswith("Revenue rose 15%")
    assert len(assistant["toolExecutions"]) == 2
    assert len(assistant["references"]) == 2
    assert assistant["plan"]["estimatedToolCalls"] == 2

    frames = [e.frame() for e in recorder.events]
    assert frames[0].startswith("9:")
    assert json.loads(frames[0][2:])["toolName"] == "planQuery"
    assert frames[1].startswith("a:")
    assert frames[-1] == '0:"Revenue rose 15% [Source: revenue.png, Score: 1.00]"\n'
    assert fake_llm.calls[0]["tools"][0] == "planQuery"
    assert "searchWeb" not in fake_llm.calls[0]["tools"]


@pytest.mark.asyncio
async def test_back_references_point_at_assistant_record(services_factory):
    script = [plan_call(), search_call(), reply("Answer.")]
    outcome, services, _, _ = await run_turn(services_factory, script)
    refs = await services.db.get_data_references("chart-1")
    assert [r["conversation_id"] for r in refs] == [outcome.record_id]
    assert refs[0]["context"] == "How did revenue change in Q3?"


@pytest.mark.asyncio
async def test_sixth_search_is_not_issued_in_general_mode(services_factory):
    script = [plan_call()] + [search_call() for _ in range(5)] + [reply("Final synthesis.")]
    outcome, _, fake_llm, _ = await run_turn(services_factory, script)

    assert [e.tool for e in outcome.trace] == ["planQuery"] + ["searchProjectData"] * 5
    assert [e.step for e in outcome.trace] == [1, 2, 3, 4, 5, 6]
    assert len(fake_llm.calls) == 7
    synthesis = fake_llm.calls[-1]
    assert synthesis["tools"] is None
    assert synthesis["messages"][-1] == {"role": "system", "content": SYNTHESIS_INSTRUCTION}
    assert outcome.text == "Final synthesis."


@pytest.mark.asyncio
async def test_calls_past_budget_in_one_round_are_refused(services_factory):
    six = reply(calls=[tool_call("searchProjectData", {"query": f"q{i}"}, f"c{i}") for i in range(6)])
    script = [plan_call(), six, reply("Done.")]
    outcome, _, fake_llm, recorder = await run_turn(services_factory, script)

    assert len(outcome.trace) == 6
    assert outcome.trace[-1].input["query"] == "q4"
    assert len(recorder.of("tool_call")) == 6
    refused = [m for m in fake_llm.calls[-1]["messages"] if m.get("tool_call_id") == "c5"]
    assert refused == [{"role": "tool", "tool_call_id": "c5", "content": BUDGET_EXHAUSTED_MESSAGE}]
    assert fake_llm.calls[-1]["tools"] is None


@pytest.mark.asyncio
async def test_deep_mode_allows_eleven_tool_steps(services_factory):
    script = [plan_call()] + [search_call() for _ in range(12)]
    outcome, _, fake_llm, _ = await run_turn(services_factory, script, request=make_request(depth="deep"))
    assert [e.step for e in outcome.trace] == list(range(1, 12))
    assert fake_llm.calls[11]["tools"] is None


@pytest.mark.asyncio
async def test_empty_synthesis_falls_back_to_trace_summary(services_factory):
    script = [plan_call()] + [search_call() for _ in range(5)] + [reply("")]
    outcome, services, _, recorder = await run_turn(services_factory, script)

    assert outcome.text.startswith("I could not finish a written answer (step budget reached)")
    assert "- Step 6: searchProjectData (ok)" in outcome.text
    assert recorder.of("text")[-1].data == outcome.text
    records = await services.db.list_session_messages("p1", "s1")
    assert records[-1]["content"] == outcome.text


@pytest.mark.asyncio
async def test_empty_synthesis_keeps_partial_text(services_factory):
    script = [reply("Let me check the files.", [tool_call("planQuery", PLAN_ARGS)])]
    script += [search_call() for _ in range(5)] + [reply("   ")]
    outcome, _, _, _ = await run_turn(services_factory, script)
    assert outcome.text == "Let me check the files."


@pytest.mark.asyncio
async def test_silent_reply_without_tools_moves_to_synthesis(services_factory):
    script = [plan_call(), reply(""), reply("Written answer.")]
    outcome, _, fake_llm, _ = await run_turn(services_factory, script)
    assert outcome.text == "Written answer."
    assert len(fake_llm.calls) == 3
    assert fake_llm.calls[-1]["tools"] is None


@pytest.mark.asyncio
async def test_tool_errors_do_not_end_the_turn(services_factory):
    script = [
        plan_call(),
        reply(calls=[tool_call("analyzeImage", {"dataId": "ghost-1"})]),
        reply(calls=[tool_call("planQuery", PLAN_ARGS)]),
        reply("The image is missing."),
    ]
    outcome, _, _, recorder = await run_turn(services_factory, script)
    assert outcome.state == TurnState.DONE
    assert [e.is_error for e in outcome.trace] == [False, True, True]
    assert outcome.references == []
    results = recorder.of("tool_result")
    assert json.loads(results[1].data["result"])["error"] == "Image not found or invalid"


@pytest.mark.asyncio
async def test_llm_failure_emits_error_and_persists_partial_trace(services_factory):
    script = [plan_call(), LLMError("LLM request failed (503): busy", status_code=503)]
    outcome, services, _, recorder = await run_turn(services_factory, script)

    assert outcome.state == TurnState.FAILED
    assert recorder.of("error")[0].frame() == 'e:"LLM request failed (503): busy"\n'
    records = await services.db.list_session_messages("p1", "s1")
    assistant = records[-1]
    assert assistant["role"] == "assistant"
    assert len(assistant["toolExecutions"]) == 1
    assert "language model is unavailable" in assistant["content"]


@pytest.mark.asyncio
async def test_unexpected_error_still_persists_plan_and_trace(services_factory, caplog):
    script = [plan_call(), RuntimeError("upstream exploded")]
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        outcome, services, _, recorder = await run_turn(services_factory, script)

    assert outcome.state == TurnState.FAILED
    assert outcome.error == "RuntimeError: upstream exploded"
    assert recorder.of("error")[0].frame() == 'e:"RuntimeError: upstream exploded"\n'
    assert "failed unexpectedly" in caplog.text
    records = await services.db.list_session_messages("p1", "s1")
    assert [r["role"] for r in records] == ["user", "assistant"]
    assistant = records[-1]
    assert assistant["plan"]["estimatedToolCalls"] == 2
    assert [e["tool"] for e in assistant["toolExecutions"]] == ["planQuery"]
    assert "internal error" in assistant["content"]


@pytest.mark.asyncio
async def test_stop_event_cancels_before_next_tool(services_factory):
    fake_llm = FakeLLMClient(
        script=[reply(calls=[tool_call("planQuery", PLAN_ARGS), tool_call("searchProjectData", {"query": "x"})])]
    )
    services = await services_factory(fake_llm=fake_llm)
    await seed_project(services.db)
    stop = asyncio.Event()
    events = []

    async def emit(event):
        events.append(event)
        if event.type == "tool_result":
            stop.set()

    outcome = await run_agent_turn(make_request(), services, emit, stop_event=stop)
    assert outcome.state == TurnState.CANCELLED
    assert [e.tool for e in outcome.trace] == ["planQuery"]
    records = await services.db.list_session_messages("p1", "s1")
    assert len(records[-1]["toolExecutions"]) == 1


@pytest.mark.asyncio
async def test_tool_before_plan_is_logged(services_factory, caplog):
    caplog.set_level(logging.WARNING, logger="uvicorn.error")
    script = [search_call(), reply("Answer.")]
    outcome, _, _, _ = await run_turn(services_factory, script)
    assert outcome.trace[0].tool == "searchProjectData"
    assert any("before planQuery" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_prompt_and_history_window(services_factory):
    history = []
    for i in range(12):
        history.append({"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"})
    history.append({"role": "user", "content": "latest question"})
    request = AgentRequest.model_validate(
        {"messages": history, "projectId": "p1", "sessionId": "s1", "selectedDataIds": ["chart-1"]}
    )
    outcome, _, fake_llm, _ = await run_turn(services_factory, [reply("Hi.")], request=request)
    sent = fake_llm.calls[0]["messages"]
    assert len(sent) == 11
    assert sent[-1] == {"role": "user", "content": "latest question"}
    system = sent[0]["content"]
    assert "**Project**: Quarterly review" in system
    assert "General Mode: 7 total steps (6 for tools" in system
    assert "1. Data ID: chart-1" in system
    assert outcome.trace == []
