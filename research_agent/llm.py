import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


class LLMError(RuntimeError):
    """The upstream model could not produce a response after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMClient:
    """Thin OpenAI-compatible client: chat completions with tools, vision, embeddings."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_attempts: int = 2,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_attempts = max(1, max_attempts)
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            tool_calls = msg.get("tool_calls") if role == "assistant" else None
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=True)
                sanitized.append({"role": "tool", "tool_call_id": msg["tool_call_id"], "content": text})
                continue
            cleaned_content: Any
            if isinstance(content, str):
                cleaned_content = content if content.strip() else None
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                cleaned_content = cleaned_items or None
            elif content is None:
                cleaned_content = None
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            if cleaned_content is None and not tool_calls:
                continue
            entry: Dict[str, Any] = {"role": role, "content": cleaned_content}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            sanitized.append(entry)
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                error = data.get("error")
                if isinstance(error, dict) and error.get("message"):
                    return str(error["message"])
                if isinstance(error, str) and error.strip():
                    return error
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self.client.post(url, json=payload, headers=self._headers())
                resp.raise_for_status()
                return resp.json()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                detail = self._extract_error_detail(exc.response)
                error = LLMError(f"LLM request failed ({status}): {detail}", status_code=status)
                if status not in RETRYABLE_STATUS:
                    raise error from exc
            except httpx.RequestError as exc:
                error = LLMError(f"LLM request failed: {exc.__class__.__name__}: {exc}")
            except ValueError as exc:
                raise LLMError("LLM returned a non-JSON response") from exc
            if attempt == self.max_attempts:
                raise error
            logger.warning("LLM call to %s failed (attempt %s/%s): %s", url, attempt, self.max_attempts, error)
            await asyncio.sleep(0.5 * attempt)
        raise LLMError(f"LLM request to {url} was not attempted")

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return the first choice's message as ``{"content": str, "tool_calls": [...]}``."""
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        url = f"{(base_url or self.base_url).rstrip('/')}/chat/completions"
        data = await self._post_json(url, payload)
        choices = (data.get("choices") if isinstance(data, dict) else None) or []
        message = (choices[0].get("message") if choices else None) or {}
        content = message.get("content")
        if isinstance(content, list):
            content = "".join(
                str(part.get("text") or "") for part in content if isinstance(part, dict)
            )
        return {
            "content": content or "",
            "tool_calls": message.get("tool_calls") or [],
            "finish_reason": choices[0].get("finish_reason") if choices else None,
        }

    async def describe_image(
        self,
        model: str,
        prompt: str,
        image_data_url: str,
        max_tokens: int = 4096,
        base_url: Optional[str] = None,
    ) -> str:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_data_url}},
                ],
            }
        ]
        result = await self.chat_completion(
            model=model, messages=messages, temperature=0.2, max_tokens=max_tokens, base_url=base_url
        )
        return result["content"]

    async def embed(self, text: str, model: str, base_url: Optional[str] = None) -> List[float]:
        url = f"{(base_url or self.base_url).rstrip('/')}/embeddings"
        data = await self._post_json(url, {"model": model, "input": text})
        items = data.get("data") if isinstance(data, dict) else None
        if not items or not isinstance(items[0], dict) or not items[0].get("embedding"):
            raise LLMError("Embedding response did not include a vector")
        return [float(v) for v in items[0]["embedding"]]

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
