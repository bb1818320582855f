"""
Property-based tests for the per-turn tool-call budget.
"""

import allure
from hypothesis import given, settings, strategies as st

from llm_toolloop.iteration_controller import IterationController


@allure.feature("Iteration Controller")
@allure.story("Bounded loop")
@allure.severity(allure.severity_level.CRITICAL)
@settings(max_examples=100)
@given(max_calls=st.integers(min_value=-5, max_value=30))
def test_loop_runs_exactly_the_budget(max_calls):
    """
    A loop that records a call while should_continue() holds performs
    max(1, max_calls) calls, then reports the bound-exceeded warning.
    """
    controller = IterationController(max_calls)
    performed = 0
    while controller.should_continue():
        controller.on_tool_call()
        performed += 1

    state = controller.get_state()
    assert performed == max(1, max_calls)
    assert not state.should_continue
    assert state.tool_calls == state.max_tool_calls == performed
    assert str(performed) in state.warning_message


@allure.feature("Iteration Controller")
@allure.story("State")
@allure.severity(allure.severity_level.NORMAL)
@settings(max_examples=50)
@given(max_calls=st.integers(min_value=2, max_value=20), used=st.integers(min_value=0, max_value=20))
def test_state_before_the_limit_has_no_warning(max_calls, used):
    """Below the limit the state allows continuing and carries no warning."""
    controller = IterationController(max_calls)
    used = min(used, max_calls - 1)
    for _ in range(used):
        controller.on_tool_call()

    state = controller.get_state()
    assert state.should_continue
    assert state.warning_message is None
    assert not controller.is_at_max_iterations()


@allure.feature("Iteration Controller")
@allure.story("Reset")
@allure.severity(allure.severity_level.MINOR)
def test_reset_restores_budget():
    controller = IterationController(1)
    controller.on_tool_call()
    assert not controller.should_continue()

    controller.reset()

    assert controller.should_continue()
    assert controller.tool_calls == 0
