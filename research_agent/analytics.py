from collections import Counter
from typing import Any, Dict, List, Optional

from .db import Database

TOP_REFERENCED_LIMIT = 10


def summarize_records(records: List[Dict[str, Any]], max_tool_steps: int) -> Dict[str, Any]:
    """Aggregate tool usage, step counts, plan accuracy and references over traced records.

    A record exceeds the budget when it ran more than ``max_tool_steps`` tools.
    """
    tool_usage: Dict[str, Dict[str, float]] = {}
    step_counts: List[int] = []
    total_plans = 0
    plans_with_external = 0
    estimate_error = 0.0
    by_type: Counter = Counter()
    per_item: Counter = Counter()
    total_refs = 0
    with_plans = 0

    for record in records:
        executions = record.get("toolExecutions") or []
        step_counts.append(len(executions))
        for execution in executions:
            usage = tool_usage.setdefault(execution.get("tool") or "unknown", {"count": 0, "totalDuration": 0})
            usage["count"] += 1
            usage["totalDuration"] += execution.get("duration") or 0
        plan = record.get("plan")
        if plan:
            with_plans += 1
            total_plans += 1
            if plan.get("needsExternalData"):
                plans_with_external += 1
            estimated = plan.get("estimatedToolCalls") or 0
            if estimated > 0:
                estimate_error += abs(len(executions) - estimated) / estimated
        refs = record.get("references") or []
        total_refs += len(refs)
        for ref in refs:
            by_type[ref.get("type")] += 1
            if ref.get("dataId"):
                per_item[ref["dataId"]] += 1

    for usage in tool_usage.values():
        usage["avgDuration"] = usage["totalDuration"] / usage["count"] if usage["count"] else 0

    count = len(records)
    analytics = {
        "totalConversations": count,
        "conversationsWithPlans": with_plans,
        "toolUsage": tool_usage,
        "stepBudget": {
            "avgStepsPerConversation": sum(step_counts) / count if count else 0,
            "maxSteps": max(step_counts) if step_counts else 0,
            "minSteps": min(step_counts) if step_counts else 0,
            "conversationsExceedingBudget": sum(1 for n in step_counts if n > max_tool_steps),
        },
        "planAccuracy": {
            "totalPlans": total_plans,
            "avgEstimatedVsActual": 1 - estimate_error / total_plans if total_plans else 0,
            "plansWithExternalData": plans_with_external,
        },
        "references": {
            "totalReferences": total_refs,
            "avgReferencesPerConversation": total_refs / count if count else 0,
            "byType": dict(by_type),
        },
        "topReferencedItems": [
            {"dataId": data_id, "count": n} for data_id, n in per_item.most_common(TOP_REFERENCED_LIMIT)
        ],
    }
    insights = {
        "mostUsedTool": max(tool_usage, key=lambda t: tool_usage[t]["count"]) if tool_usage else "none",
        "slowestTool": max(tool_usage, key=lambda t: tool_usage[t]["avgDuration"]) if tool_usage else "none",
        "planningAdoptionRate": with_plans / count if count else 0,
        "externalDataUsageRate": plans_with_external / total_plans if total_plans else 0,
    }
    return {"analytics": analytics, "insights": insights}


async def agent_analytics(
    db: Database,
    max_tool_steps: int,
    project_id: Optional[str] = None,
    session_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Dict[str, Any]:
    records = await db.list_traced_records(project_id=project_id, session_id=session_id, start=start, end=end)
    report = summarize_records(records, max_tool_steps)
    for item in report["analytics"]["topReferencedItems"]:
        found = await db.get_project_data(item["dataId"])
        item["filename"] = (found or {}).get("filename") or "Unknown"
    report["dateRange"] = {"start": start or "all time", "end": end or "present"}
    report["filters"] = {"projectId": project_id or "all projects", "sessionId": session_id or "all sessions"}
    return report
