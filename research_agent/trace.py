import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .budget import StepBudget
from .db import utc_now
from .schemas import AgentPlan, ToolExecution


@dataclass
class PendingStep:
    step: int
    tool: str
    timestamp: str
    started: float


@dataclass
class TurnContext:
    """Everything one turn owns: budget, plan, trace and cancellation flag."""

    project_id: str
    session_id: str
    budget: StepBudget
    user_query: str = ""
    project: Dict[str, Any] = field(default_factory=dict)
    depth: str = "general"
    max_image_analyses: int = 3
    plan: Optional[AgentPlan] = None
    trace: List[ToolExecution] = field(default_factory=list)
    images_analyzed: int = 0
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    def begin_step(self, tool: str) -> PendingStep:
        """Charge one step for ``tool`` and stamp its start time."""
        step = self.budget.consume()
        return PendingStep(step=step, tool=tool, timestamp=utc_now(), started=time.monotonic())

    def record(
        self,
        pending: PendingStep,
        input: Dict[str, Any],
        output: str,
        is_error: bool = False,
    ) -> ToolExecution:
        execution = ToolExecution(
            step=pending.step,
            tool=pending.tool,
            input=input,
            output=output,
            duration=int((time.monotonic() - pending.started) * 1000),
            timestamp=pending.timestamp,
            is_error=is_error,
        )
        self.trace.append(execution)
        return execution
