import pytest

from research_agent.budget import StepBudget
from research_agent.config import AppSettings, DepthConfig


def test_depth_limits_come_from_settings():
    settings = AppSettings()
    assert settings.depth("general").step_limit == 7
    assert settings.depth("deep").step_limit == 12
    assert settings.depth(None).step_limit == 7
    assert settings.depth("unknown").step_limit == 7
    assert settings.max_step_limit == 12
    narrow = AppSettings(depths={"general": DepthConfig(step_limit=4, max_image_analyses=1)})
    assert narrow.max_step_limit == 4


@pytest.mark.parametrize("depth,expected_tools", [("general", 6), ("deep", 11)])
def test_budget_keeps_last_step_for_synthesis(depth, expected_tools):
    budget = StepBudget(limit=AppSettings().depth(depth).step_limit)
    steps = []
    while budget.can_call_tool():
        steps.append(budget.consume())
    assert steps == list(range(1, expected_tools + 1))
    assert budget.max_tool_calls == expected_tools
    assert budget.remaining == 1


def test_consume_past_limit_raises():
    budget = StepBudget(limit=2)
    assert budget.consume() == 1
    assert not budget.can_call_tool()
    with pytest.raises(RuntimeError):
        budget.consume()
    assert budget.used == 1
