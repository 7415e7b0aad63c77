import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .schemas import Reference, ToolExecution

logger = logging.getLogger("uvicorn.error")


def _parse_output(output: Any) -> Optional[Any]:
    if isinstance(output, (dict, list)):
        return output
    if not isinstance(output, str):
        return None
    try:
        return json.loads(output)
    except ValueError:
        return None


def _project_ref(data_id: Any, title: Any, step: int, tool: str, score: Any = None) -> Reference:
    return Reference(
        type="projectData",
        data_id=str(data_id),
        title=str(title or "Unknown"),
        used_in_step=step,
        tool_call=tool,
        score=float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else None,
    )


def _refs_for(execution: ToolExecution) -> List[Reference]:
    if execution.is_error:
        return []
    output = _parse_output(execution.output)
    if not isinstance(output, dict):
        return []
    step, tool = execution.step, execution.tool
    refs: List[Reference] = []
    if tool == "searchProjectData":
        for result in output.get("results") or []:
            if isinstance(result, dict) and result.get("id"):
                refs.append(_project_ref(result["id"], result.get("filename"), step, tool, result.get("score")))
    elif tool == "searchSimilarItems":
        for item in output.get("similarItems") or []:
            if isinstance(item, dict) and item.get("id"):
                refs.append(_project_ref(item["id"], item.get("filename"), step, tool, item.get("score")))
    elif tool == "analyzeImage":
        if output.get("dataId") and not output.get("error"):
            refs.append(_project_ref(output["dataId"], output.get("filename"), step, tool))
    elif tool == "projectDataAnalysis":
        if output.get("id") and not output.get("error"):
            refs.append(_project_ref(output["id"], output.get("filename"), step, tool))
    elif tool == "searchWeb":
        urls: List[str] = []
        if isinstance(output.get("url"), str):
            urls.append(output["url"])
        urls.extend(c for c in output.get("citations") or [] if isinstance(c, str))
        for url in urls:
            refs.append(Reference(type="web", url=url, title=url, used_in_step=step, tool_call=tool))
    elif tool == "sendEmail":
        to = execution.input.get("to") if isinstance(execution.input, dict) else None
        if output.get("success") and to:
            refs.append(Reference(type="email", title=f"Email to {to}", used_in_step=step, tool_call=tool))
    return refs


def extract_references(
    tool_executions: Iterable[Union[ToolExecution, Dict[str, Any]]], project_id: Optional[str] = None
) -> List[Reference]:
    """Citable sources behind a turn, in first-seen order.

    Duplicates (same item, URL or title) collapse onto the first position and keep
    the highest score seen. Entries whose output is not JSON are skipped.
    """
    unique: Dict[str, Reference] = {}
    for raw in tool_executions:
        try:
            execution = raw if isinstance(raw, ToolExecution) else ToolExecution.model_validate(raw)
            refs = _refs_for(execution)
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping unreadable tool execution while extracting references: %s", exc)
            continue
        for ref in refs:
            key = ref.data_id or ref.url or ref.title
            current = unique.get(key)
            if current is None:
                unique[key] = ref
            elif ref.score is not None and (current.score is None or ref.score > current.score):
                unique[key] = ref
    return list(unique.values())
