from typing import Any, Dict, List, Optional

import numpy as np

from .db import Database
from .vector_search import Embedder, cosine_scores

DEFAULT_RECALL_LIMIT = 5
DEFAULT_MIN_CONFIDENCE = 0.6


class MemoryStore:
    """Per-project agent memories with embedding recall."""

    def __init__(self, db: Database, embed: Embedder, min_confidence: float = DEFAULT_MIN_CONFIDENCE):
        self.db = db
        self.embed = embed
        self.min_confidence = min_confidence

    async def store(
        self,
        project_id: str,
        session_id: str,
        content: str,
        type: str,
        tags: Optional[List[str]] = None,
        source: str = "agent",
        confidence: float = 0.9,
    ) -> int:
        embedding = await self.embed(content)
        return await self.db.add_memory(
            project_id=project_id,
            session_id=session_id,
            type=type,
            content=content,
            embedding=embedding,
            source=source,
            confidence=confidence,
            tags=tags,
        )

    async def recall(
        self,
        project_id: str,
        query: str,
        limit: int = DEFAULT_RECALL_LIMIT,
        type: Optional[str] = None,
        min_confidence: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        floor = self.min_confidence if min_confidence is None else min_confidence
        query_vector = await self.embed(query)
        memories = [
            m for m in await self.db.list_memories(project_id, type=type) if (m.get("confidence") or 0) >= floor
        ]
        scores = cosine_scores(query_vector, [m.get("embedding") or [] for m in memories])
        found = []
        for i in np.argsort(-scores, kind="stable"):
            if scores[i] < floor or len(found) >= max(1, limit):
                break
            memory = {k: v for k, v in memories[i].items() if k != "embedding"}
            memory["score"] = float(scores[i])
            found.append(memory)
        await self.db.touch_memories([m["id"] for m in found])
        return found
