import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from .config import AppSettings
from .db import Database
from .image_utils import compress_image, estimate_image_tokens, to_data_url
from .mailer import Mailer
from .memory import DEFAULT_RECALL_LIMIT, MemoryStore
from .schemas import (
    AgentPlan,
    DataIdInput,
    PlanQueryInput,
    RecallMemoryInput,
    RememberContextInput,
    SearchProjectDataInput,
    SearchSimilarItemsInput,
    SearchWebInput,
    SendEmailInput,
    ToolExecution,
)
from .tavily import TavilyClient
from .trace import TurnContext
from .vector_search import VectorSearch

logger = logging.getLogger("uvicorn.error")

NO_DESCRIPTION = "No description available"
EMPTY_ANALYSIS = {"description": "", "tags": [], "insights": [], "facets": {}}

CAP_MEMORY = "memory"
CAP_WEB_SEARCH = "web_search"
CAP_EMAIL = "email"


@dataclass
class ToolOk:
    output: str


@dataclass
class ToolError:
    kind: str
    output: str


ToolResult = Union[ToolOk, ToolError]


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


def _error(kind: str, payload: Any) -> ToolError:
    return ToolError(kind=kind, output=payload if isinstance(payload, str) else _dump(payload))


@dataclass
class ToolServices:
    """Collaborators the executors call. One instance is shared by all turns."""

    settings: AppSettings
    db: Database
    llm: Any
    vector_search: VectorSearch
    memory: MemoryStore
    tavily: Optional[TavilyClient] = None
    mailer: Optional[Mailer] = None


Executor = Callable[[TurnContext, ToolServices, Any], Awaitable[ToolResult]]


@dataclass
class ToolSpec:
    kind: str
    name: str
    description: str
    input_model: Type[BaseModel]
    execute: Executor
    record_input: Optional[Callable[[Any], Dict[str, Any]]] = None

    def recorded(self, args: BaseModel) -> Dict[str, Any]:
        if self.record_input is not None:
            return self.record_input(args)
        return args.model_dump(exclude_none=True)

    def openai_schema(self) -> Dict[str, Any]:
        params = self.input_model.model_json_schema()
        params.pop("title", None)
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": params},
        }


# Executors


async def plan_query(ctx: TurnContext, services: ToolServices, args: PlanQueryInput) -> ToolResult:
    if ctx.plan is not None:
        return _error(
            "validation",
            {"error": "A plan already exists for this turn. Continue with the existing plan instead of re-planning."},
        )
    plan = AgentPlan(
        steps=args.steps,
        tools_to_use=args.toolsToUse,
        estimated_tool_calls=args.estimatedToolCalls,
        rationale=args.rationale,
        needs_external_data=args.needsExternalData,
    )
    ctx.plan = plan
    data_note = "External data will be needed." if args.needsExternalData else "Will use project data only."
    return ToolOk(
        _dump(
            {
                "success": True,
                "plan": plan.to_wire(),
                "message": (
                    f"Plan created with {len(args.steps)} steps. "
                    f"Estimated {args.estimatedToolCalls} tool calls. {data_note}"
                ),
            }
        )
    )


def _has_description(result: Dict[str, Any]) -> bool:
    description = result.get("description")
    return bool(description) and description != NO_DESCRIPTION


def _summarize_hit(hit: Dict[str, Any], with_size: bool = True) -> Dict[str, Any]:
    analysis = hit.get("analysis") or {}
    summary = {
        "id": hit["id"],
        "filename": hit.get("filename") or "Unknown",
        "type": hit.get("type"),
        "score": hit.get("score"),
        "description": analysis.get("description") or NO_DESCRIPTION,
        "tags": analysis.get("tags") or [],
    }
    if with_size:
        summary["size"] = hit.get("size") or 0
    return summary


async def search_project_data(
    ctx: TurnContext, services: ToolServices, args: SearchProjectDataInput
) -> ToolResult:
    limit = args.maxResults
    try:
        found = await services.vector_search.search(ctx.project_id, args.query, "all", 1, limit)
    except Exception as exc:
        logger.warning("searchProjectData failed for project %s: %s", ctx.project_id, exc)
        return _error("collaborator", "Search failed. Please try again.")
    results = [_summarize_hit(hit) for hit in (found.get("results") or [])[:limit]]
    if not results:
        return ToolOk("No results found for your query.")
    if args.useAnalysis:
        results.sort(key=lambda r: not _has_description(r))
    return ToolOk(_dump({"total": found.get("total", len(results)), "showing": len(results), "results": results}))


async def search_similar_items(
    ctx: TurnContext, services: ToolServices, args: SearchSimilarItemsInput
) -> ToolResult:
    try:
        found = await services.vector_search.find_similar(args.dataId, ctx.project_id, args.maxResults)
    except Exception as exc:
        logger.warning("searchSimilarItems failed for %s: %s", args.dataId, exc)
        return _error("collaborator", {"error": "Failed to find similar items"})
    if found is None:
        return _error("not_found", {"error": "Item not found or has no embedding"})
    original = found["original"]
    return ToolOk(
        _dump(
            {
                "originalItem": original.get("filename") or args.dataId,
                "similarItems": [_summarize_hit(hit, with_size=False) for hit in found["similar"]],
            }
        )
    )


def build_image_prompt(filename: str, user_query: str, project: Dict[str, Any]) -> str:
    prompt = f'Analyze this image "{filename}"'
    name, description = project.get("name"), project.get("description")
    if name or description:
        prompt += "\n\n**Project Context:**"
        if name:
            prompt += f"\n- Project: {name}"
        if description:
            prompt += f"\n- Description: {description}"
    if user_query.strip():
        prompt += f'\n\n**User Query Context:** "{user_query}"'
        prompt += "\nFocus your analysis specifically on elements that relate to this query."
    prompt += (
        "\n\n**Analysis Instructions:**"
        "\n- Extract key insights directly relevant to the user's query and project context"
        "\n- Focus on actionable information, data points, and important findings"
        "\n- Identify specific technical details, measurements, or specifications if visible"
        "\n- Highlight any issues, recommendations, or notable observations"
        "\n- Be concise and avoid describing basic visual elements"
        "\n- If the image contains text, extract and summarize key information"
    )
    return prompt


async def _find_item(
    services: ToolServices, data_id: str, project_id: str, type: Optional[str] = None, include_content: bool = False
) -> Optional[Dict[str, Any]]:
    item = await services.db.get_project_data(data_id, project_id=project_id, type=type, include_content=include_content)
    if item is None:
        item = await services.db.get_project_data(data_id, type=type, include_content=include_content)
    return item


async def analyze_image(ctx: TurnContext, services: ToolServices, args: DataIdInput) -> ToolResult:
    if ctx.images_analyzed >= ctx.max_image_analyses:
        return _error(
            "limit",
            {
                "error": f"Image analysis limit reached ({ctx.max_image_analyses} per query in {ctx.depth} mode)",
                "dataId": args.dataId,
            },
        )
    settings = services.settings
    try:
        item = await _find_item(services, args.dataId, ctx.project_id, type="image", include_content=True)
        if not item or not item.get("content_base64"):
            return _error(
                "not_found",
                {
                    "error": "Image not found or invalid",
                    "suggestion": f'Try searching for "{args.dataId}" or similar filenames in the project data',
                    "dataId": args.dataId,
                },
            )
        ctx.images_analyzed += 1
        compressed = await asyncio.to_thread(
            compress_image,
            item["content_base64"],
            item.get("mime_type") or "image/jpeg",
            settings.image_max_width,
            settings.image_quality,
        )
        prompt = build_image_prompt(item.get("filename") or "Unknown", ctx.user_query, ctx.project)
        analysis = await services.llm.describe_image(
            model=settings.vision_endpoint.model_id,
            prompt=prompt,
            image_data_url=to_data_url(compressed["base64"], compressed["mime_type"]),
            max_tokens=settings.vision_max_tokens,
            base_url=settings.vision_endpoint.base_url,
        )
    except Exception as exc:
        logger.warning("analyzeImage failed for %s: %s", args.dataId, exc)
        return _error("collaborator", {"error": "Failed to analyze image"})
    return ToolOk(
        _dump(
            {
                "dataId": args.dataId,
                "filename": item.get("filename"),
                "originalSizeKB": compressed["original_size_kb"],
                "compressedSizeKB": compressed["size_kb"],
                "estimatedTokens": estimate_image_tokens(compressed["base64"]),
                "analysis": analysis or "Analysis failed",
                "existingAnalysis": item.get("analysis"),
            }
        )
    )


async def project_data_analysis(ctx: TurnContext, services: ToolServices, args: DataIdInput) -> ToolResult:
    try:
        item = await _find_item(services, args.dataId, ctx.project_id)
    except Exception as exc:
        logger.warning("projectDataAnalysis failed for %s: %s", args.dataId, exc)
        return _error("collaborator", {"error": "Failed to fetch analysis"})
    if item is None:
        return _error("not_found", {"error": "Item not found", "dataId": args.dataId})
    return ToolOk(
        _dump(
            {
                "id": item["id"],
                "type": item.get("type"),
                "filename": item.get("filename"),
                "metadata": {"mimeType": item.get("mime_type"), "size": item.get("size")},
                "analysis": item.get("analysis") or dict(EMPTY_ANALYSIS),
                "createdAt": item.get("created_at"),
                "updatedAt": item.get("updated_at"),
            }
        )
    )


async def remember_context(ctx: TurnContext, services: ToolServices, args: RememberContextInput) -> ToolResult:
    try:
        memory_id = await services.memory.store(
            project_id=ctx.project_id,
            session_id=ctx.session_id,
            content=args.content,
            type=args.type,
            tags=args.tags or [],
            source="agent",
            confidence=0.9,
        )
    except Exception as exc:
        logger.warning("rememberContext failed: %s", exc)
        return _error("collaborator", {"success": False, "error": str(exc) or "Failed to store memory"})
    return ToolOk(_dump({"success": True, "memoryId": str(memory_id), "message": "Memory stored successfully"}))


async def recall_memory(ctx: TurnContext, services: ToolServices, args: RecallMemoryInput) -> ToolResult:
    try:
        memories = await services.memory.recall(
            project_id=ctx.project_id,
            query=args.query,
            limit=args.limit or DEFAULT_RECALL_LIMIT,
            type=args.type,
        )
    except Exception as exc:
        logger.warning("recallMemory failed: %s", exc)
        return _error("collaborator", {"found": 0, "memories": [], "error": str(exc) or "Failed to recall memories"})
    return ToolOk(
        _dump(
            {
                "found": len(memories),
                "memories": [
                    {
                        "content": m["content"],
                        "type": m["type"],
                        "confidence": m["confidence"],
                        "score": m["score"],
                        "tags": m["tags"],
                        "source": m["source"],
                    }
                    for m in memories
                ],
            }
        )
    )


async def search_web(ctx: TurnContext, services: ToolServices, args: SearchWebInput) -> ToolResult:
    if services.tavily is None:
        return _error("disabled", {"error": "Web search is not configured"})
    try:
        found = await services.tavily.web_search(args.query)
    except Exception as exc:
        logger.warning("searchWeb failed: %s", exc)
        return _error("collaborator", {"error": str(exc) or "Web search failed"})
    if found.get("error"):
        logger.warning("searchWeb failed: %s %s", found.get("error"), found.get("detail"))
        return _error("collaborator", {"error": f"Web search failed: {found.get('error')}"})
    return ToolOk(_dump({"answer": found.get("answer", ""), "citations": found.get("citations", []), "source": "web"}))


async def send_email(ctx: TurnContext, services: ToolServices, args: SendEmailInput) -> ToolResult:
    if not args.confirmed:
        return _error(
            "refused",
            {
                "success": False,
                "error": "Email not sent: the user has not confirmed it.",
                "note": "Show the recipient, subject and body to the user and call sendEmail with confirmed=true "
                "only after they approve.",
            },
        )
    if services.mailer is None:
        return _error("disabled", {"success": False, "error": "Email is not configured"})
    try:
        sent = await services.mailer.send(
            to=args.to,
            subject=args.subject,
            body=args.body,
            context={"project_name": ctx.project.get("name"), "project_description": ctx.project.get("description")},
        )
    except Exception as exc:
        logger.warning("sendEmail failed: %s", exc)
        return _error("collaborator", {"success": False, "error": str(exc) or "Email sending failed"})
    payload = {
        "success": bool(sent.get("success")),
        "messageId": sent.get("message_id"),
        "error": sent.get("error"),
        "note": "Email sent successfully"
        if sent.get("success")
        else "Email sending failed - user confirmation may be needed",
    }
    payload = {k: v for k, v in payload.items() if v is not None}
    if not payload["success"]:
        return _error("collaborator", payload)
    return ToolOk(_dump(payload))


def _email_record(args: SendEmailInput) -> Dict[str, Any]:
    return {"to": args.to, "subject": args.subject, "body": args.body[:200] + "...", "confirmed": args.confirmed}


def _memory_record(args: RememberContextInput) -> Dict[str, Any]:
    recorded: Dict[str, Any] = {"content": args.content[:200], "type": args.type}
    if args.tags:
        recorded["tags"] = args.tags
    return recorded


BASE_TOOLS: List[ToolSpec] = [
    ToolSpec(
        kind="plan",
        name="planQuery",
        description="Create a detailed plan for answering the user query. MUST be called first before any other tools.",
        input_model=PlanQueryInput,
        execute=plan_query,
    ),
    ToolSpec(
        kind="retrieval",
        name="searchProjectData",
        description=(
            "Search for information within the current project documents and images. "
            "Returns top results with similarity scores."
        ),
        input_model=SearchProjectDataInput,
        execute=search_project_data,
    ),
    ToolSpec(
        kind="retrieval",
        name="searchSimilarItems",
        description=(
            "Find items similar to a specific data item using vector similarity. Useful for exploring related content."
        ),
        input_model=SearchSimilarItemsInput,
        execute=search_similar_items,
    ),
    ToolSpec(
        kind="analysis",
        name="analyzeImage",
        description=(
            "Extract key insights and actionable data from a single image. "
            "Focus on content relevant to the user query, not visual descriptions."
        ),
        input_model=DataIdInput,
        execute=analyze_image,
    ),
    ToolSpec(
        kind="analysis",
        name="projectDataAnalysis",
        description="Fetch stored analysis for a specific projectData item (no base64 returned).",
        input_model=DataIdInput,
        execute=project_data_analysis,
    ),
]

MEMORY_TOOLS: List[ToolSpec] = [
    ToolSpec(
        kind="memory",
        name="rememberContext",
        description=(
            "Store important information, facts, preferences, or insights for future reference. "
            "Use when you learn something valuable that should be remembered."
        ),
        input_model=RememberContextInput,
        execute=remember_context,
        record_input=_memory_record,
    ),
    ToolSpec(
        kind="memory",
        name="recallMemory",
        description=(
            "Search and retrieve relevant memories from past conversations. Use to find previously learned information."
        ),
        input_model=RecallMemoryInput,
        execute=recall_memory,
    ),
]

WEB_TOOL = ToolSpec(
    kind="external",
    name="searchWeb",
    description=(
        "Search the web for external information and real-time data. Returns an answer with source citations. "
        "Use when the user requests web info, project data is insufficient, or you need current events/benchmarks."
    ),
    input_model=SearchWebInput,
    execute=search_web,
)

EMAIL_TOOL = ToolSpec(
    kind="external",
    name="sendEmail",
    description=(
        "Send an email with analysis results or summaries. Use when the user asks to share information via email. "
        "Requires explicit user confirmation: set confirmed=true only after the user approved the exact message."
    ),
    input_model=SendEmailInput,
    execute=send_email,
    record_input=_email_record,
)


def capabilities_for(
    settings: AppSettings,
    enable_web_search: bool = False,
    enable_email: bool = False,
    enable_memory: bool = True,
) -> FrozenSet[str]:
    """Optional tool groups this turn may use: requested by the client and available in settings."""
    caps = set()
    if enable_memory and settings.memory_enabled:
        caps.add(CAP_MEMORY)
    if enable_web_search and settings.web_search_available:
        caps.add(CAP_WEB_SEARCH)
    if enable_email and settings.email_available:
        caps.add(CAP_EMAIL)
    return frozenset(caps)


def build_registry(capabilities: FrozenSet[str]) -> Dict[str, ToolSpec]:
    tools = list(BASE_TOOLS)
    if CAP_MEMORY in capabilities:
        tools.extend(MEMORY_TOOLS)
    if CAP_WEB_SEARCH in capabilities:
        tools.append(WEB_TOOL)
    if CAP_EMAIL in capabilities:
        tools.append(EMAIL_TOOL)
    return {spec.name: spec for spec in tools}


def _validation_details(exc: ValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err.get("loc", ())) or "(root)", "message": err.get("msg", "")}
        for err in exc.errors()
    ]


def _parse_arguments(raw: Any) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    if isinstance(raw, dict):
        return raw, None
    if raw in (None, ""):
        return {}, None
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None, "Tool arguments are not valid JSON"
    if not isinstance(parsed, dict):
        return None, "Tool arguments must be a JSON object"
    return parsed, None


async def invoke_tool(
    registry: Dict[str, ToolSpec],
    ctx: TurnContext,
    services: ToolServices,
    name: str,
    raw_arguments: Any,
) -> Tuple[ToolExecution, ToolResult]:
    """Validate, run and record one tool call. Charges exactly one step.

    Executor failures come back as ``ToolError`` results; only cancellation propagates.
    """
    pending = ctx.begin_step(name)
    arguments, parse_error = _parse_arguments(raw_arguments)
    recorded: Dict[str, Any] = arguments if arguments is not None else {"raw": str(raw_arguments)[:500]}
    spec = registry.get(name)
    result: ToolResult
    if spec is None:
        result = _error("validation", {"error": f"Unknown or unavailable tool: {name}", "available": sorted(registry)})
    elif parse_error:
        result = _error("validation", {"error": parse_error, "tool": name})
    else:
        try:
            args = spec.input_model.model_validate(arguments)
        except ValidationError as exc:
            result = _error(
                "validation", {"error": f"Invalid arguments for {name}", "details": _validation_details(exc)}
            )
        else:
            recorded = spec.recorded(args)
            try:
                result = await spec.execute(ctx, services, args)
            except Exception as exc:
                logger.exception("Tool %s raised at step %s", name, pending.step)
                result = _error("collaborator", {"error": f"{name} failed: {exc}"})
    execution = ctx.record(pending, recorded, result.output, is_error=isinstance(result, ToolError))
    logger.info(
        "Tool %s step=%s duration_ms=%s%s",
        name,
        execution.step,
        execution.duration,
        f" error={result.kind}" if isinstance(result, ToolError) else "",
    )
    return execution, result
