import json
from pathlib import Path

import pytest

from research_agent.db import Database
from research_agent.persistence import PLACEHOLDER, message_text, save_message, scrub_content
from research_agent.schemas import AgentPlan, ChatMessage, ToolExecution


def test_data_uri_is_replaced_entirely():
    content = "data:image/png;base64," + "A" * 200
    clean, changed = scrub_content(content)
    assert clean == PLACEHOLDER
    assert changed is True


def test_json_and_inline_base64_are_replaced():
    blob = "B" * 150
    clean, changed = scrub_content(f'{{"base64": "{blob}", "name": "x"}} and base64: {blob}==')
    assert blob not in clean
    assert f'"base64":"{PLACEHOLDER}"' in clean
    assert f"base64: {PLACEHOLDER}" in clean
    assert changed is True


def test_short_payloads_and_plain_text_are_untouched():
    text = 'Revenue grew 15%. "base64": "abc" base64: short'
    clean, changed = scrub_content(text)
    assert clean == text
    assert changed is False


def test_message_text_keeps_text_parts_only():
    parts = [
        {"type": "text", "text": "What is in this chart?"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64," + "C" * 300}},
        {"type": "text", "text": "Be brief."},
    ]
    assert message_text(parts) == "What is in this chart?\nBe brief."
    assert message_text(None) == ""
    assert ChatMessage(role="user", content=parts).text() == message_text(parts)


@pytest.mark.asyncio
async def test_dropped_image_parts_mark_content_cleaned(tmp_path: Path):
    db = Database(str(tmp_path / "p.db"))
    await db.init()
    parts = [
        {"type": "text", "text": "what is in this chart"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64," + "A" * 300}},
    ]
    record = await db.get_conversation_record(await save_message(db, "p1", "s1", "user", parts))
    assert record["content"] == "what is in this chart"
    assert record["contentCleaned"] is True

    text_only = [{"type": "text", "text": "plain question"}]
    record = await db.get_conversation_record(await save_message(db, "p1", "s1", "user", text_only))
    assert record["contentCleaned"] is False


@pytest.mark.asyncio
async def test_save_message_persists_scrubbed_content(tmp_path: Path):
    db = Database(str(tmp_path / "p.db"))
    await db.init()
    record_id = await save_message(db, "p1", "s1", "user", "look: data:image/jpeg;base64," + "D" * 400)
    record = await db.get_conversation_record(record_id)
    assert record["content"] == f"look: {PLACEHOLDER}"
    assert record["contentCleaned"] is True
    assert "toolExecutions" not in record


@pytest.mark.asyncio
async def test_assistant_message_stores_trace_and_back_references(tmp_path: Path):
    db = Database(str(tmp_path / "p.db"))
    await db.init()
    await db.add_project_data("p1", "image", "a.png", data_id="a")
    plan = AgentPlan(
        steps=["search"], tools_to_use=["searchProjectData"], estimated_tool_calls=1, rationale="r", needs_external_data=False
    )
    trace = [
        ToolExecution(
            step=1,
            tool="searchProjectData",
            input={"query": "revenue", "maxResults": 2},
            output=json.dumps({"results": [{"id": "a", "filename": "a.png", "score": 0.9}]}),
            duration=5,
            timestamp="2024-01-01T00:00:00Z",
        )
    ]
    question = "What happened to revenue? " * 20
    record_id = await save_message(
        db, "p1", "s1", "assistant", "Revenue rose.", plan=plan, tool_executions=trace, context=question
    )
    record = await db.get_conversation_record(record_id)
    assert record["contentCleaned"] is False
    assert record["plan"]["toolsToUse"] == ["searchProjectData"]
    assert record["toolExecutions"][0]["input"] == {"query": "revenue", "maxResults": 2}
    assert record["references"] == [
        {
            "type": "projectData",
            "dataId": "a",
            "title": "a.png",
            "usedInStep": 1,
            "toolCall": "searchProjectData",
            "score": 0.9,
        }
    ]
    backrefs = await db.get_data_references("a")
    assert len(backrefs) == 1
    assert backrefs[0]["conversation_id"] == record_id
    assert backrefs[0]["context"] == question[:200]
    assert backrefs[0]["tool_call"] == "searchProjectData"


class BrokenDatabase(Database):
    async def add_conversation_record(self, *args, **kwargs):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_save_failure_is_reported_not_raised(tmp_path: Path):
    db = BrokenDatabase(str(tmp_path / "p.db"))
    await db.init()
    assert await save_message(db, "p1", "s1", "assistant", "answer") is None
