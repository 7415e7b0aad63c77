import logging
import re
from typing import Any, List, Optional, Sequence, Tuple

from .db import Database, utc_now
from .references import extract_references
from .schemas import (
    AgentPlan,
    ConversationRecord,
    Reference,
    ToolExecution,
    has_non_text_parts,
    message_text,
)

logger = logging.getLogger("uvicorn.error")

PLACEHOLDER = "[IMAGE_DATA_REMOVED]"
DATA_URI_RE = re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/]+=*")
JSON_BASE64_RE = re.compile(r'"base64"\s*:\s*"[A-Za-z0-9+/]{100,}={0,2}"')
INLINE_BASE64_RE = re.compile(r"base64:\s*[A-Za-z0-9+/]{100,}={0,2}")
REFERENCE_CONTEXT_CHARS = 200


def scrub_content(text: str) -> Tuple[str, bool]:
    """Replace inline base64 image payloads with a placeholder. Returns (clean, changed)."""
    clean = DATA_URI_RE.sub(PLACEHOLDER, text)
    clean = JSON_BASE64_RE.sub(f'"base64":"{PLACEHOLDER}"', clean)
    clean = INLINE_BASE64_RE.sub(f"base64: {PLACEHOLDER}", clean)
    return clean, clean != text


async def save_message(
    db: Database,
    project_id: str,
    session_id: str,
    role: str,
    content: Any,
    plan: Optional[AgentPlan] = None,
    tool_executions: Optional[Sequence[ToolExecution]] = None,
    context: str = "",
) -> Optional[int]:
    """Insert one conversation record. Failures are logged and reported as ``None``."""
    clean, changed = scrub_content(message_text(content))
    # Image parts of a multimodal message are never stored.
    changed = changed or has_non_text_parts(content)
    references: List[Reference] = []
    executions = list(tool_executions or [])
    if executions:
        references = extract_references(executions, project_id)
    try:
        record = ConversationRecord(
            project_id=project_id,
            session_id=session_id,
            role=role,
            content=clean,
            timestamp=utc_now(),
            content_cleaned=changed,
            plan=plan,
            tool_executions=executions or None,
            references=references or None,
        )
        record_id = await db.add_conversation_record(
            project_id=record.project_id,
            session_id=record.session_id,
            role=record.role,
            content=record.content,
            timestamp=record.timestamp,
            content_cleaned=record.content_cleaned,
            plan=plan.to_wire() if plan else None,
            tool_executions=[e.to_wire() for e in executions],
            references=[r.to_wire() for r in references],
        )
    except Exception as exc:
        logger.warning("Saving %s message for session %s failed: %s", role, session_id, exc)
        return None
    if role == "assistant" and references:
        await link_references(db, record_id, session_id, references, context)
    return record_id


async def link_references(
    db: Database, conversation_id: int, session_id: str, references: Sequence[Reference], context: str
) -> None:
    """Record on each cited project item which conversation used it."""
    rows = [
        {
            "data_id": ref.data_id,
            "conversation_id": conversation_id,
            "session_id": session_id,
            "context": (context or "")[:REFERENCE_CONTEXT_CHARS],
            "tool_call": ref.tool_call,
        }
        for ref in references
        if ref.type == "projectData" and ref.data_id
    ]
    try:
        await db.add_data_references(rows)
    except Exception as exc:
        logger.warning("Linking references for conversation %s failed: %s", conversation_id, exc)
