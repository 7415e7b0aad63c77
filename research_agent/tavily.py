from typing import Any, Dict, List, Optional

import httpx


class TavilyClient:
    def __init__(self, api_key: Optional[str], timeout: float = 30.0):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "advanced",
        max_results: int = 5,
        include_answer: bool = True,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
        }
        return await self._post("https://api.tavily.com/search", payload)

    async def web_search(self, query: str) -> Dict[str, Any]:
        """Search with a synthesized answer; returns ``{answer, citations}`` or ``{error, detail}``."""
        data = await self.search(query)
        if data.get("error"):
            return data
        citations: List[str] = []
        for item in data.get("results") or []:
            url = item.get("url") if isinstance(item, dict) else None
            if url and url not in citations:
                citations.append(url)
        answer = data.get("answer")
        if not answer:
            snippets = [
                str(item.get("content") or "").strip()
                for item in (data.get("results") or [])[:3]
                if isinstance(item, dict)
            ]
            answer = "\n\n".join(s for s in snippets if s)
        return {"answer": answer or "", "citations": citations}

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            payload = {**payload, "api_key": self.api_key}
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
