import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import numpy as np

from .db import Database

Embedder = Callable[[str], Awaitable[List[float]]]

# Minimum cosine similarity for a paginated query match.
SIMILARITY_THRESHOLD = 0.3


def cosine_scores(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``vectors``.

    Rows whose dimension differs from the query, and zero vectors, score 0.
    """
    scores = np.zeros(len(vectors), dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    if q.size == 0:
        return scores
    rows = [i for i, vector in enumerate(vectors) if vector is not None and len(vector) == q.size]
    if not rows:
        return scores
    matrix = np.asarray([vectors[i] for i in rows], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores[rows] = np.where(norms > 0, (matrix @ q) / norms, 0.0)
    return scores


def _public_item(item: Dict[str, Any], score: float) -> Dict[str, Any]:
    return {
        "id": item["id"],
        "type": item["type"],
        "filename": item["filename"],
        "mime_type": item["mime_type"],
        "size": item["size"],
        "analysis": item.get("analysis") or {},
        "created_at": item["created_at"],
        "score": score,
    }


class VectorSearch:
    """Cosine search over project items that carry a stored embedding."""

    def __init__(self, db: Database, embed: Embedder, threshold: float = SIMILARITY_THRESHOLD):
        self.db = db
        self.embed = embed
        self.threshold = threshold

    async def search(
        self,
        project_id: str,
        query: str,
        content_type: str = "all",
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        page = max(1, page)
        limit = max(1, limit)
        query_vector = await self.embed(query)
        items = await self.db.list_embedded_project_data(project_id, content_type)
        scores = cosine_scores(query_vector, [item.get("embedding") or [] for item in items])
        order = np.argsort(-scores, kind="stable")
        scored = [_public_item(items[i], float(scores[i])) for i in order if scores[i] >= self.threshold]
        total = len(scored)
        start = (page - 1) * limit
        return {
            "results": scored[start : start + limit],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
            "timeTaken": int((time.monotonic() - started) * 1000),
        }

    async def find_similar(self, data_id: str, project_id: str, limit: int = 3) -> Optional[Dict[str, Any]]:
        """Items nearest to ``data_id``'s own embedding. None when the item or its embedding is missing."""
        source = await self.db.get_project_data(data_id)
        if not source or not source.get("embedding"):
            return None
        candidates = [item for item in await self.db.list_embedded_project_data(project_id) if item["id"] != data_id]
        scores = cosine_scores(source["embedding"], [item["embedding"] for item in candidates])
        order = np.argsort(-scores, kind="stable")[:limit]
        return {
            "original": _public_item(source, 1.0),
            "similar": [_public_item(candidates[i], float(scores[i])) for i in order],
        }
