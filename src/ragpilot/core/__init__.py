"""
Pipeline building blocks: per-run state machines, fallback strategy chains
and cancellation plumbing. The orchestrator itself lives in
`ragpilot.core.orchestrator`.
"""

from .cancellation import CancellationToken, call_scope, guarded
from .state_machine import State, StateContext, StateMachine, Transition
from .strategies import FunctionStrategy, StrategyChain, StrategyOutcome

__all__ = [
    "CancellationToken",
    "call_scope",
    "guarded",
    "StateMachine",
    "State",
    "StateContext",
    "Transition",
    "StrategyChain",
    "StrategyOutcome",
    "FunctionStrategy",
]
