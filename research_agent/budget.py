from dataclasses import dataclass

# The last step of every turn is kept for the written answer.
SYNTHESIS_RESERVE = 1


@dataclass
class StepBudget:
    """Tool-step allowance for one turn.

    ``used`` counts executed tool calls. A call is allowed only while more than one
    step remains, so a turn never runs more than ``limit - 1`` tools.
    """

    limit: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return self.limit - self.used

    @property
    def max_tool_calls(self) -> int:
        return max(0, self.limit - SYNTHESIS_RESERVE)

    def can_call_tool(self) -> bool:
        return self.remaining > SYNTHESIS_RESERVE

    def consume(self) -> int:
        if not self.can_call_tool():
            raise RuntimeError("step budget exhausted")
        self.used += 1
        return self.used
