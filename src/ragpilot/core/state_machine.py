"""
Small asynchronous finite state machine.

States return the name of the next state; the machine only follows
transitions that were registered, optionally guarded. An exception raised by
a state moves the machine to its error state (if one is registered) with the
message stored in the context. Machines are cheap and meant to be built per
run, so a StateContext is never shared between runs.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)


class StateType(Enum):
    """Types of states in the state machine."""

    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    ERROR = "error"


@dataclass
class StateContext:
    """Context data passed between states."""

    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def update(self, data: dict[str, Any]) -> None:
        self.data.update(data)


class State(ABC):
    """Abstract base class for state machine states."""

    def __init__(self, name: str, state_type: StateType = StateType.INTERMEDIATE):
        self.name = name
        self.state_type = state_type
        self.entry_time: float | None = None

    @abstractmethod
    async def execute(self, context: StateContext) -> str:
        """
        Execute the state logic.
        Returns the name of the next state to transition to.
        """
        ...

    async def on_entry(self, context: StateContext) -> None:
        self.entry_time = time.perf_counter()
        logger.debug(f"Entering state: {self.name}")

    async def on_exit(self, context: StateContext) -> None:
        if self.entry_time is not None:
            duration_ms = (time.perf_counter() - self.entry_time) * 1000
            logger.debug(f"Exiting state: {self.name}", ms=duration_ms)

    def __str__(self) -> str:
        return f"State({self.name})"


class TerminalState(State):
    """A final or error state that does nothing."""

    def __init__(self, name: str, state_type: StateType = StateType.FINAL):
        super().__init__(name, state_type)

    async def execute(self, context: StateContext) -> str:
        return self.name


@dataclass
class Transition:
    """State transition with optional guard condition."""

    from_state: str
    to_state: str
    guard: Callable[[StateContext], bool] | None = None

    def can_transition(self, context: StateContext) -> bool:
        if self.guard:
            return self.guard(context)
        return True


class StateMachine:
    """Finite state machine driving one run of a multi-step workflow."""

    def __init__(self, name: str, initial_state: str):
        self.name = name
        self.initial_state = initial_state
        self.current_state: str | None = None
        self.states: dict[str, State] = {}
        self.transitions: list[Transition] = []
        self.state_history: list[str] = []
        self.context = StateContext()
        self.is_running = False

    def add_state(self, state: State) -> None:
        self.states[state.name] = state

    def add_transition(self, transition: Transition) -> None:
        self.transitions.append(transition)

    def get_valid_transitions(self, from_state: str) -> list[Transition]:
        return [
            t
            for t in self.transitions
            if t.from_state == from_state and t.can_transition(self.context)
        ]

    async def start(self, initial_context: dict[str, Any] | None = None) -> None:
        if self.is_running:
            raise RuntimeError("State machine is already running")

        if self.initial_state not in self.states:
            raise ValueError(f"Initial state '{self.initial_state}' not found")

        self.is_running = True
        self.current_state = self.initial_state
        self.state_history = [self.initial_state]

        if initial_context:
            self.context.update(initial_context)

        logger.debug(f"Starting state machine '{self.name}' in state '{self.initial_state}'")
        await self.states[self.current_state].on_entry(self.context)

    async def step(self) -> bool:
        """
        Execute one step of the state machine.
        Returns True if the machine should continue, False if finished.
        """
        if not self.is_running or not self.current_state:
            return False

        current_state_obj = self.states[self.current_state]

        if current_state_obj.state_type in (StateType.FINAL, StateType.ERROR):
            await self.stop()
            return False

        try:
            next_state_name = await current_state_obj.execute(self.context)
        except Exception as e:
            logger.error(f"Error executing state '{self.current_state}': {e}")
            await self._transition_to_error(e)
            return False

        if next_state_name != self.current_state:
            if not await self.transition_to(next_state_name):
                await self._transition_to_error(
                    RuntimeError(f"Invalid transition {self.current_state} -> {next_state_name}")
                )
                return False

        return True

    async def transition_to(self, state_name: str) -> bool:
        if not self.current_state:
            raise RuntimeError("State machine not started")

        if state_name not in self.states:
            raise ValueError(f"State '{state_name}' not found")

        valid = [
            t for t in self.get_valid_transitions(self.current_state) if t.to_state == state_name
        ]
        if not valid:
            logger.warning(f"No valid transition from '{self.current_state}' to '{state_name}'")
            return False

        await self._enter(state_name)
        return True

    async def _enter(self, new_state: str) -> None:
        old_state = self.current_state
        if old_state and old_state in self.states:
            await self.states[old_state].on_exit(self.context)

        self.current_state = new_state
        self.state_history.append(new_state)
        await self.states[new_state].on_entry(self.context)

    async def _transition_to_error(self, error: Exception) -> None:
        self.context.set("error", error)
        self.context.set("error_message", str(error))

        error_states = [
            name for name, state in self.states.items() if state.state_type == StateType.ERROR
        ]
        if error_states:
            await self._enter(error_states[0])
        await self.stop()

    async def run_to_completion(self, max_steps: int = 100) -> StateContext:
        """Run the state machine until a final/error state or max steps."""
        step_count = 0
        while self.is_running and step_count < max_steps:
            if not await self.step():
                break
            step_count += 1

        if self.is_running:
            logger.warning(f"State machine '{self.name}' stopped after {max_steps} steps")
            await self.stop()

        return self.context

    async def stop(self) -> None:
        if not self.is_running:
            return

        if self.current_state and self.current_state in self.states:
            await self.states[self.current_state].on_exit(self.context)

        self.is_running = False

    def get_state_history(self) -> list[str]:
        return self.state_history.copy()
