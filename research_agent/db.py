import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS projects(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS project_data(
                    id TEXT PRIMARY KEY,
                    project_id TEXT,
                    type TEXT,
                    filename TEXT,
                    mime_type TEXT,
                    size INTEGER,
                    content_base64 TEXT,
                    content_text TEXT,
                    embedding_json TEXT,
                    analysis_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_project_data_project ON project_data(project_id, type);
                CREATE TABLE IF NOT EXISTS conversations(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT,
                    session_id TEXT,
                    role TEXT,
                    content TEXT,
                    timestamp TEXT,
                    content_cleaned INTEGER DEFAULT 0,
                    plan_json TEXT,
                    tool_executions_json TEXT,
                    references_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations(project_id, session_id);
                CREATE TABLE IF NOT EXISTS project_data_references(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    data_id TEXT,
                    conversation_id INTEGER,
                    session_id TEXT,
                    context TEXT,
                    tool_call TEXT,
                    timestamp TEXT
                );
                CREATE TABLE IF NOT EXISTS agent_memories(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT,
                    session_id TEXT,
                    type TEXT,
                    content TEXT,
                    embedding_json TEXT,
                    source TEXT,
                    confidence REAL,
                    access_count INTEGER DEFAULT 0,
                    last_accessed TEXT,
                    tags_json TEXT,
                    created_at TEXT,
                    expires_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def insert(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.lastrowid

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )

    # Projects and project data

    async def add_project(self, name: str, description: str = "", project_id: Optional[str] = None) -> dict:
        pid = project_id or uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO projects(id, name, description, created_at) VALUES (?,?,?,?)",
            (pid, name, description, created_at),
        )
        return {"id": pid, "name": name, "description": description, "created_at": created_at}

    async def get_project(self, project_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, name, description, created_at FROM projects WHERE id=?", (project_id,)
        )
        return dict(row) if row else None

    async def add_project_data(
        self,
        project_id: str,
        type: str,
        filename: str,
        mime_type: str = "",
        size: int = 0,
        content_base64: Optional[str] = None,
        content_text: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        analysis: Optional[dict] = None,
        data_id: Optional[str] = None,
    ) -> str:
        item_id = data_id or uuid.uuid4().hex
        stamp = utc_now()
        await self.execute(
            "INSERT INTO project_data(id, project_id, type, filename, mime_type, size, content_base64, content_text, "
            "embedding_json, analysis_json, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                item_id,
                project_id,
                type,
                filename,
                mime_type,
                size,
                content_base64,
                content_text,
                json.dumps(embedding) if embedding is not None else None,
                json.dumps(analysis) if analysis is not None else None,
                stamp,
                stamp,
            ),
        )
        return item_id

    def _project_data_row(self, row: aiosqlite.Row, include_content: bool) -> dict:
        item = {
            "id": row["id"],
            "project_id": row["project_id"],
            "type": row["type"],
            "filename": row["filename"],
            "mime_type": row["mime_type"],
            "size": row["size"] or 0,
            "analysis": _loads(row["analysis_json"], None),
            "embedding": _loads(row["embedding_json"], None),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
        if include_content:
            item["content_base64"] = row["content_base64"]
            item["content_text"] = row["content_text"]
        return item

    async def get_project_data(
        self,
        data_id: str,
        project_id: Optional[str] = None,
        type: Optional[str] = None,
        include_content: bool = False,
    ) -> Optional[dict]:
        clauses = ["id=?"]
        params: List[Any] = [data_id]
        if project_id:
            clauses.append("project_id=?")
            params.append(project_id)
        if type:
            clauses.append("type=?")
            params.append(type)
        row = await self.fetchone(f"SELECT * FROM project_data WHERE {' AND '.join(clauses)}", tuple(params))
        if not row:
            return None
        return self._project_data_row(row, include_content)

    async def list_embedded_project_data(self, project_id: Optional[str], content_type: str = "all") -> List[dict]:
        clauses = ["embedding_json IS NOT NULL"]
        params: List[Any] = []
        if project_id:
            clauses.append("project_id=?")
            params.append(project_id)
        if content_type and content_type != "all":
            clauses.append("type=?")
            params.append(content_type)
        rows = await self.fetchall(
            "SELECT id, project_id, type, filename, mime_type, size, embedding_json, analysis_json, created_at, updated_at, "
            "NULL AS content_base64, NULL AS content_text "
            f"FROM project_data WHERE {' AND '.join(clauses)} ORDER BY created_at ASC",
            tuple(params),
        )
        return [self._project_data_row(row, include_content=False) for row in rows]

    # Conversation records

    async def add_conversation_record(
        self,
        project_id: str,
        session_id: str,
        role: str,
        content: str,
        timestamp: str,
        content_cleaned: bool,
        plan: Optional[dict] = None,
        tool_executions: Optional[List[dict]] = None,
        references: Optional[List[dict]] = None,
    ) -> int:
        return await self.insert(
            "INSERT INTO conversations(project_id, session_id, role, content, timestamp, content_cleaned, plan_json, "
            "tool_executions_json, references_json) VALUES (?,?,?,?,?,?,?,?,?)",
            (
                project_id,
                session_id,
                role,
                content,
                timestamp,
                1 if content_cleaned else 0,
                json.dumps(plan) if plan is not None else None,
                json.dumps(tool_executions) if tool_executions else None,
                json.dumps(references) if references else None,
            ),
        )

    def _conversation_row(self, row: aiosqlite.Row) -> dict:
        record = {
            "id": row["id"],
            "projectId": row["project_id"],
            "sessionId": row["session_id"],
            "role": row["role"],
            "content": row["content"],
            "timestamp": row["timestamp"],
            "contentCleaned": bool(row["content_cleaned"]),
        }
        plan = _loads(row["plan_json"], None)
        if plan is not None:
            record["plan"] = plan
        executions = _loads(row["tool_executions_json"], None)
        if executions:
            record["toolExecutions"] = executions
        references = _loads(row["references_json"], None)
        if references:
            record["references"] = references
        return record

    async def get_conversation_record(self, record_id: int) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM conversations WHERE id=?", (record_id,))
        return self._conversation_row(row) if row else None

    async def list_session_messages(self, project_id: str, session_id: str, limit: int = 500) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM conversations WHERE project_id=? AND session_id=? ORDER BY timestamp ASC, id ASC LIMIT ?",
            (project_id, session_id, limit),
        )
        return [self._conversation_row(row) for row in rows]

    async def list_sessions(self, project_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT session_id, MAX(timestamp) AS last_message, COUNT(*) AS message_count, "
            "(SELECT content FROM conversations c2 WHERE c2.project_id=conversations.project_id "
            "AND c2.session_id=conversations.session_id ORDER BY timestamp ASC, id ASC LIMIT 1) AS first_message "
            "FROM conversations WHERE project_id=? GROUP BY session_id ORDER BY last_message DESC",
            (project_id,),
        )
        return [
            {
                "_id": r["session_id"],
                "sessionId": r["session_id"],
                "lastMessage": r["last_message"],
                "messageCount": r["message_count"],
                "firstMessage": r["first_message"],
            }
            for r in rows
        ]

    async def list_traced_records(
        self,
        project_id: Optional[str] = None,
        session_id: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[dict]:
        clauses = ["tool_executions_json IS NOT NULL"]
        params: List[Any] = []
        if project_id:
            clauses.append("project_id=?")
            params.append(project_id)
        if session_id:
            clauses.append("session_id=?")
            params.append(session_id)
        if start:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end:
            clauses.append("timestamp <= ?")
            params.append(end)
        rows = await self.fetchall(
            f"SELECT * FROM conversations WHERE {' AND '.join(clauses)} ORDER BY timestamp ASC, id ASC",
            tuple(params),
        )
        return [self._conversation_row(row) for row in rows]

    # Back-references from project data to the conversations that cited it

    async def add_data_references(self, refs: Iterable[Dict[str, Any]]) -> None:
        stamp = utc_now()
        rows = [
            (ref["data_id"], ref["conversation_id"], ref["session_id"], ref.get("context", ""), ref["tool_call"], stamp)
            for ref in refs
        ]
        if not rows:
            return
        async with aiosqlite.connect(self.path) as db:
            await db.executemany(
                "INSERT INTO project_data_references(data_id, conversation_id, session_id, context, tool_call, timestamp) "
                "VALUES (?,?,?,?,?,?)",
                rows,
            )
            await db.execute(
                f"UPDATE project_data SET updated_at=? WHERE id IN ({','.join('?' for _ in rows)})",
                (stamp, *[r[0] for r in rows]),
            )
            await db.commit()

    async def get_data_references(self, data_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT r.conversation_id, r.session_id, r.context, r.tool_call, r.timestamp, "
            "c.role AS conversation_role, c.content AS conversation_content, c.timestamp AS conversation_timestamp "
            "FROM project_data_references r LEFT JOIN conversations c ON c.id = r.conversation_id "
            "WHERE r.data_id=? ORDER BY r.timestamp DESC, r.id DESC",
            (data_id,),
        )
        return [dict(r) for r in rows]

    # Agent memories

    async def add_memory(
        self,
        project_id: str,
        session_id: str,
        type: str,
        content: str,
        embedding: List[float],
        source: str = "agent",
        confidence: float = 0.8,
        tags: Optional[List[str]] = None,
        expires_at: Optional[str] = None,
    ) -> int:
        stamp = utc_now()
        return await self.insert(
            "INSERT INTO agent_memories(project_id, session_id, type, content, embedding_json, source, confidence, "
            "access_count, last_accessed, tags_json, created_at, expires_at) VALUES (?,?,?,?,?,?,?,0,?,?,?,?)",
            (
                project_id,
                session_id,
                type,
                content,
                json.dumps(embedding),
                source,
                confidence,
                stamp,
                json.dumps(tags or []),
                stamp,
                expires_at,
            ),
        )

    async def list_memories(self, project_id: str, type: Optional[str] = None) -> List[dict]:
        clauses = ["project_id=?", "(expires_at IS NULL OR expires_at > ?)"]
        params: List[Any] = [project_id, utc_now()]
        if type:
            clauses.append("type=?")
            params.append(type)
        rows = await self.fetchall(
            f"SELECT * FROM agent_memories WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
            tuple(params),
        )
        return [
            {
                "id": r["id"],
                "project_id": r["project_id"],
                "session_id": r["session_id"],
                "type": r["type"],
                "content": r["content"],
                "embedding": _loads(r["embedding_json"], []),
                "source": r["source"],
                "confidence": r["confidence"],
                "access_count": r["access_count"],
                "last_accessed": r["last_accessed"],
                "tags": _loads(r["tags_json"], []),
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    async def touch_memories(self, memory_ids: List[int]) -> None:
        if not memory_ids:
            return
        await self.execute(
            "UPDATE agent_memories SET access_count=access_count+1, last_accessed=? "
            f"WHERE id IN ({','.join('?' for _ in memory_ids)})",
            (utc_now(), *memory_ids),
        )
