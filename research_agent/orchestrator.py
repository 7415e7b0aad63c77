import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .agents import SYNTHESIS_INSTRUCTION, build_system_prompt
from .budget import StepBudget
from .llm import LLMError
from .persistence import save_message
from .references import extract_references
from .schemas import AgentPlan, AgentRequest, Reference, ToolExecution
from .tools import ToolServices, ToolSpec, build_registry, capabilities_for, invoke_tool
from .trace import TurnContext

logger = logging.getLogger("uvicorn.error")

BUDGET_EXHAUSTED_MESSAGE = json.dumps(
    {"error": "Step budget exhausted: this tool call was not executed. Answer now with the information gathered."}
)


class TurnState(str, Enum):
    AWAITING_PLAN = "awaiting_plan"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TurnCancelled(Exception):
    """Raised inside the loop when the turn's stop event is set."""


# Line prefixes of the data stream the chat UI consumes.
FRAME_PREFIXES = {"text": "0", "tool_call": "9", "tool_result": "a", "error": "e"}


@dataclass
class TurnEvent:
    type: str
    data: Any

    def frame(self) -> str:
        return f"{FRAME_PREFIXES[self.type]}:{json.dumps(self.data, ensure_ascii=False)}\n"


Emit = Callable[[TurnEvent], Awaitable[None]]


@dataclass
class TurnOutcome:
    turn_id: str
    session_id: str
    state: TurnState
    text: str = ""
    plan: Optional[AgentPlan] = None
    trace: List[ToolExecution] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)
    record_id: Optional[int] = None
    error: Optional[str] = None


def new_turn_id() -> str:
    return str(uuid.uuid4())


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:12]}"


def summarize_trace(trace: List[ToolExecution], reason: str) -> str:
    """Plain-text stand-in answer for a turn that produced no text of its own."""
    if not trace:
        return f"I could not produce an answer for this request ({reason})."
    lines = [f"I could not finish a written answer ({reason}). Steps completed:"]
    for execution in trace:
        status = "failed" if execution.is_error else "ok"
        lines.append(f"- Step {execution.step}: {execution.tool} ({status})")
    return "\n".join(lines)


def _history(request: AgentRequest, window: int) -> List[Dict[str, Any]]:
    history = []
    for msg in request.messages[-window:]:
        if msg.role not in ("user", "assistant"):
            continue
        history.append({"role": msg.role, "content": msg.content})
    return history


def _tool_call_args(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw else {}
        except ValueError:
            return raw
    return raw or {}


class AgentLoop:
    """Drives one turn: plan, bounded tool execution, then a written answer."""

    def __init__(
        self,
        ctx: TurnContext,
        services: ToolServices,
        registry: Dict[str, ToolSpec],
        emit: Emit,
    ):
        self.ctx = ctx
        self.services = services
        self.registry = registry
        self.emit = emit
        self.settings = services.settings
        self.state = TurnState.AWAITING_PLAN
        self.partial_text: List[str] = []
        self.rounds = 0
        self.max_rounds = ctx.budget.limit + 2

    def _check_cancelled(self) -> None:
        if self.ctx.cancelled:
            raise TurnCancelled()

    async def _complete(self, messages: List[Dict[str, Any]], with_tools: bool) -> Dict[str, Any]:
        self._check_cancelled()
        self.rounds += 1
        endpoint = self.settings.chat_endpoint
        tools = [spec.openai_schema() for spec in self.registry.values()] if with_tools else None
        reply = await self.services.llm.chat_completion(
            model=endpoint.model_id,
            messages=messages,
            tools=tools,
            tool_choice="auto" if tools else None,
            max_tokens=self.settings.max_output_tokens,
            base_url=endpoint.base_url,
        )
        content = reply.get("content") or ""
        if content:
            self.partial_text.append(content)
            await self.emit(TurnEvent("text", content))
        return reply

    async def _run_call(self, messages: List[Dict[str, Any]], call: Dict[str, Any]) -> None:
        call_id = call.get("id") or f"call_{uuid.uuid4().hex[:12]}"
        fn = call.get("function") or {}
        name = fn.get("name") or ""
        raw_args = fn.get("arguments")
        if not self.ctx.budget.can_call_tool():
            logger.info(
                "Turn budget exhausted; skipping %s (used %s of %s)", name, self.ctx.budget.used, self.ctx.budget.limit
            )
            messages.append({"role": "tool", "tool_call_id": call_id, "content": BUDGET_EXHAUSTED_MESSAGE})
            return
        self._check_cancelled()
        if self.ctx.plan is None and name != "planQuery" and not self.ctx.trace:
            logger.warning("Model called %s before planQuery (session %s)", name, self.ctx.session_id)
        await self.emit(
            TurnEvent("tool_call", {"toolCallId": call_id, "toolName": name, "args": _tool_call_args(raw_args)})
        )
        _, result = await invoke_tool(self.registry, self.ctx, self.services, name, raw_args)
        await self.emit(TurnEvent("tool_result", {"toolCallId": call_id, "toolName": name, "result": result.output}))
        messages.append({"role": "tool", "tool_call_id": call_id, "content": result.output})
        self.state = TurnState.EXECUTING

    async def run(self, messages: List[Dict[str, Any]]) -> str:
        """Return the final answer text. Raises ``TurnCancelled`` or ``LLMError``."""
        final_text = ""
        while self.state in (TurnState.AWAITING_PLAN, TurnState.EXECUTING):
            if not self.ctx.budget.can_call_tool() or self.rounds >= self.max_rounds:
                self.state = TurnState.SYNTHESIZING
                break
            reply = await self._complete(messages, with_tools=True)
            content = reply.get("content") or ""
            calls = [c for c in reply.get("tool_calls") or [] if isinstance(c, dict)]
            if not calls:
                if content.strip():
                    final_text = content
                    self.state = TurnState.DONE
                else:
                    self.state = TurnState.SYNTHESIZING
                break
            messages.append({"role": "assistant", "content": content or None, "tool_calls": calls})
            for call in calls:
                await self._run_call(messages, call)

        if self.state == TurnState.SYNTHESIZING:
            messages.append({"role": "system", "content": SYNTHESIS_INSTRUCTION})
            reply = await self._complete(messages, with_tools=False)
            final_text = reply.get("content") or ""
            if not final_text.strip():
                final_text = "\n\n".join(t for t in self.partial_text if t.strip())
            if not final_text.strip():
                final_text = summarize_trace(self.ctx.trace, "step budget reached")
                await self.emit(TurnEvent("text", final_text))
            self.state = TurnState.DONE
        return final_text


async def run_agent_turn(
    request: AgentRequest,
    services: ToolServices,
    emit: Emit,
    turn_id: Optional[str] = None,
    session_id: Optional[str] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> TurnOutcome:
    """Run one conversational turn end to end and persist both sides of it."""
    settings = services.settings
    db = services.db
    turn_id = turn_id or new_turn_id()
    session_id = session_id or request.session_id or new_session_id()
    project_id = request.project_id or ""
    depth = settings.depth(request.analysis_depth)
    last = request.messages[-1] if request.messages else None
    user_query = last.text() if last else ""

    if last is not None:
        await save_message(db, project_id, session_id, last.role, last.content)

    project = await db.get_project(project_id) or {}
    capabilities = capabilities_for(
        settings,
        enable_web_search=request.enable_web_search,
        enable_email=request.enable_email,
        enable_memory=request.enable_memory,
    )
    registry = build_registry(capabilities)
    ctx = TurnContext(
        project_id=project_id,
        session_id=session_id,
        budget=StepBudget(limit=depth.step_limit),
        user_query=user_query,
        project=project,
        depth=request.analysis_depth,
        max_image_analyses=depth.max_image_analyses,
        stop_event=stop_event or asyncio.Event(),
    )
    system_prompt = build_system_prompt(
        project,
        depth=request.analysis_depth,
        step_limit=depth.step_limit,
        max_image_analyses=depth.max_image_analyses,
        capabilities=capabilities,
        selected_data_ids=request.selected_data_ids,
    )
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    messages.extend(_history(request, settings.history_window))

    logger.info(
        "Turn %s started project=%s session=%s depth=%s tools=%s",
        turn_id,
        project_id,
        session_id,
        request.analysis_depth,
        ",".join(registry),
    )
    loop = AgentLoop(ctx, services, registry, emit)
    outcome = TurnOutcome(turn_id=turn_id, session_id=session_id, state=TurnState.DONE)
    try:
        outcome.text = await loop.run(messages)
        outcome.state = TurnState.DONE
    except TurnCancelled:
        outcome.state = TurnState.CANCELLED
        outcome.text = "\n\n".join(t for t in loop.partial_text if t.strip()) or summarize_trace(
            ctx.trace, "stopped by the user"
        )
        logger.info("Turn %s cancelled after %s tool steps", turn_id, len(ctx.trace))
    except LLMError as exc:
        outcome.state = TurnState.FAILED
        outcome.error = str(exc)
        outcome.text = "\n\n".join(t for t in loop.partial_text if t.strip()) or summarize_trace(
            ctx.trace, "the language model is unavailable"
        )
        logger.warning("Turn %s failed: %s", turn_id, exc)
        await emit(TurnEvent("error", str(exc)))
    except Exception as exc:
        outcome.state = TurnState.FAILED
        outcome.error = f"{exc.__class__.__name__}: {exc}"
        outcome.text = "\n\n".join(t for t in loop.partial_text if t.strip()) or summarize_trace(
            ctx.trace, "an internal error occurred"
        )
        logger.exception("Turn %s failed unexpectedly", turn_id)
        await emit(TurnEvent("error", outcome.error))

    outcome.plan = ctx.plan
    outcome.trace = list(ctx.trace)
    outcome.references = extract_references(ctx.trace, project_id)
    outcome.record_id = await save_message(
        db,
        project_id,
        session_id,
        "assistant",
        outcome.text,
        plan=ctx.plan,
        tool_executions=ctx.trace,
        context=user_query,
    )
    logger.info(
        "Turn %s finished state=%s steps=%s/%s references=%s",
        turn_id,
        outcome.state.value,
        ctx.budget.used,
        ctx.budget.limit,
        len(outcome.references),
    )
    return outcome
