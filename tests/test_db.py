from pathlib import Path

import pytest

from research_agent.db import Database


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    expected = {
        "projects",
        "project_data",
        "conversations",
        "project_data_references",
        "agent_memories",
        "configs",
    }
    assert expected.issubset(tables)


@pytest.mark.asyncio
async def test_project_data_hides_content_unless_asked(tmp_path: Path):
    db = Database(str(tmp_path / "data.db"))
    await db.init()
    item_id = await db.add_project_data(
        "p1", "image", "a.png", mime_type="image/png", size=10, content_base64="QUJD", embedding=[1.0, 0.0]
    )
    plain = await db.get_project_data(item_id)
    assert "content_base64" not in plain
    assert plain["embedding"] == [1.0, 0.0]
    full = await db.get_project_data(item_id, project_id="p1", type="image", include_content=True)
    assert full["content_base64"] == "QUJD"
    assert await db.get_project_data(item_id, project_id="other") is None
    assert await db.get_project_data(item_id, type="document") is None


@pytest.mark.asyncio
async def test_list_embedded_project_data_filters(tmp_path: Path):
    db = Database(str(tmp_path / "data.db"))
    await db.init()
    await db.add_project_data("p1", "image", "a.png", embedding=[1.0], data_id="a")
    await db.add_project_data("p1", "document", "b.txt", embedding=[1.0], data_id="b")
    await db.add_project_data("p1", "document", "c.txt", data_id="c")
    await db.add_project_data("p2", "image", "d.png", embedding=[1.0], data_id="d")
    assert {i["id"] for i in await db.list_embedded_project_data("p1")} == {"a", "b"}
    assert [i["id"] for i in await db.list_embedded_project_data("p1", "document")] == ["b"]


@pytest.mark.asyncio
async def test_sessions_are_grouped_newest_first(tmp_path: Path):
    db = Database(str(tmp_path / "conv.db"))
    await db.init()
    await db.add_conversation_record("p1", "old", "user", "first question", "2024-01-01T00:00:00Z", False)
    await db.add_conversation_record("p1", "old", "assistant", "answer", "2024-01-01T00:00:05Z", False)
    await db.add_conversation_record("p1", "new", "user", "second question", "2024-02-01T00:00:00Z", False)
    await db.add_conversation_record("p2", "other", "user", "elsewhere", "2024-03-01T00:00:00Z", False)
    sessions = await db.list_sessions("p1")
    assert [s["sessionId"] for s in sessions] == ["new", "old"]
    assert sessions[1]["messageCount"] == 2
    assert sessions[1]["firstMessage"] == "first question"
    assert sessions[1]["lastMessage"] == "2024-01-01T00:00:05Z"


@pytest.mark.asyncio
async def test_traced_records_filter_by_date(tmp_path: Path):
    db = Database(str(tmp_path / "conv.db"))
    await db.init()
    trace = [{"step": 1, "tool": "planQuery", "input": {}, "output": "{}", "duration": 1, "timestamp": "t"}]
    await db.add_conversation_record("p1", "s", "user", "q", "2024-01-01T00:00:00Z", False)
    await db.add_conversation_record("p1", "s", "assistant", "a", "2024-01-01T00:00:01Z", False, tool_executions=trace)
    await db.add_conversation_record("p1", "s", "assistant", "b", "2024-03-01T00:00:01Z", False, tool_executions=trace)
    assert len(await db.list_traced_records(project_id="p1")) == 2
    recent = await db.list_traced_records(project_id="p1", start="2024-02-01T00:00:00Z")
    assert [r["content"] for r in recent] == ["b"]


@pytest.mark.asyncio
async def test_expired_memories_are_hidden(tmp_path: Path):
    db = Database(str(tmp_path / "mem.db"))
    await db.init()
    await db.add_memory("p1", "s", "fact", "stale", [1.0], expires_at="2000-01-01T00:00:00Z")
    keep = await db.add_memory("p1", "s", "fact", "fresh", [1.0])
    memories = await db.list_memories("p1")
    assert [m["id"] for m in memories] == [keep]
    await db.touch_memories([keep])
    assert (await db.list_memories("p1", type="fact"))[0]["access_count"] == 1
