"""
Iteration controller for the tool-call loop.

Tracks how many tool round-trips a single turn has made and decides when
the turn has to stop asking the model for more.
"""
from dataclasses import dataclass
from typing import Optional

from .constants import BOUND_EXCEEDED_MESSAGE, DEFAULT_MAX_TOOL_CALLS_PER_TURN


@dataclass
class IterationState:
    """Snapshot of a turn's tool-call budget.

    Attributes:
        tool_calls: Tool calls executed so far in the turn.
        max_tool_calls: The maximum allowed per turn.
        should_continue: Whether another generation may be started.
        warning_message: Bound-exceeded text once the limit is hit.
    """
    tool_calls: int
    max_tool_calls: int
    should_continue: bool
    warning_message: Optional[str] = None


class IterationController:
    """Bounds the number of tool calls per turn.

    One controller is created per turn. Every tool call that settles
    (successfully, with an error, or after failing validation) counts
    against the budget.
    """

    def __init__(self, max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS_PER_TURN) -> None:
        """Initialize the iteration controller.

        Args:
            max_tool_calls: Maximum number of tool calls in one turn.
                            Values below 1 are raised to 1.
        """
        self.max_tool_calls = max(1, max_tool_calls)
        self.tool_calls = 0

    def should_continue(self) -> bool:
        """Whether the loop may start another generation."""
        return self.tool_calls < self.max_tool_calls

    def on_tool_call(self) -> None:
        """Record one settled tool call."""
        self.tool_calls += 1

    def is_at_max_iterations(self) -> bool:
        return self.tool_calls >= self.max_tool_calls

    def on_max_iterations_reached(self) -> str:
        """Return the assistant-visible message for an exhausted budget."""
        return BOUND_EXCEEDED_MESSAGE.format(limit=self.max_tool_calls)

    def reset(self) -> None:
        self.tool_calls = 0

    def get_state(self) -> IterationState:
        warning = None
        if self.is_at_max_iterations():
            warning = self.on_max_iterations_reached()

        return IterationState(
            tool_calls=self.tool_calls,
            max_tool_calls=self.max_tool_calls,
            should_continue=not self.is_at_max_iterations(),
            warning_message=warning,
        )
