"""
Generic finite state machine driven by a transition table.

The engine is domain-agnostic: orders, payments and refunds each build a
StateMachineConfig (a transition table plus optional hooks) and drive it
through the same FiniteStateMachine. Transition tables may be extended by
external configuration; merged tables are validated once at startup.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from orderflow.core.configurable import call_operation
from orderflow.core.errors import (
    ConfigurationError,
    IllegalTransitionError,
    TransitionVetoedError,
)
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

GuardResult = Union[bool, str, None]
TransitionStartHook = Callable[
    [str, str, Any], Union[GuardResult, Awaitable[GuardResult]]
]
TransitionEndHook = Callable[[str, str, Any], Union[None, Awaitable[None]]]
TransitionErrorHook = Callable[[str, str, Optional[str]], Union[None, Awaitable[None]]]

Transitions = dict[str, tuple[str, ...]]


def state_value(state: Any) -> str:
    """Plain string name of a state given as a str or an Enum member."""
    return state.value if isinstance(state, Enum) else state


def normalize_transitions(table: Mapping[Any, Iterable[Any]]) -> Transitions:
    """Copy a transition table into ordered, de-duplicated tuples of plain names."""
    return {
        state_value(state): tuple(dict.fromkeys(state_value(t) for t in targets))
        for state, targets in table.items()
    }


@dataclass(frozen=True)
class StateMachineConfig:
    """
    Transition table and hook set for one state machine domain.

    Attributes:
        transitions: State name to the ordered states reachable from it
        on_transition_start: Guard invoked before a permitted transition.
            Returning False or a message string, or raising, vetoes it.
        on_transition_end: Observer invoked after the transition succeeds.
            Failures are logged and never propagated.
        on_transition_error: Invoked with the veto message before the
            TransitionVetoedError is raised.
    """

    transitions: Mapping[str, tuple[str, ...]]
    on_transition_start: Optional[TransitionStartHook] = None
    on_transition_end: Optional[TransitionEndHook] = None
    on_transition_error: Optional[TransitionErrorHook] = None
    name: str = field(default="state machine")


class FiniteStateMachine:
    """
    Transition-table executor with guarded, async-capable hooks.

    The machine holds no current state of its own; callers pass the state
    read from their entity and assign the returned state back to it.
    """

    def __init__(self, config: StateMachineConfig):
        self.config = config
        self._transitions = normalize_transitions(config.transitions)

    @property
    def states(self) -> list[str]:
        return list(self._transitions)

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Return True iff to_state is directly reachable from from_state."""
        return state_value(to_state) in self._transitions.get(state_value(from_state), ())

    def get_next_states(self, from_state: str) -> list[str]:
        """Return the states directly reachable from from_state, in table order."""
        return list(self._transitions.get(state_value(from_state), ()))

    async def transition(
        self,
        from_state: str,
        to_state: str,
        data: Any = None,
    ) -> str:
        """
        Execute a transition from from_state to to_state.

        Args:
            from_state: Current state of the entity
            to_state: Requested state
            data: Context passed to every hook (usually the entity)

        Returns:
            The new state

        Raises:
            IllegalTransitionError: If the table does not permit the transition
            TransitionVetoedError: If the start guard rejects the transition
        """
        from_state, to_state = state_value(from_state), state_value(to_state)
        if not self.can_transition(from_state, to_state):
            raise IllegalTransitionError(
                f'Cannot transition from "{from_state}" to "{to_state}"',
                from_state=from_state,
                to_state=to_state,
                machine=self.config.name,
            )

        veto_message = await self._run_start_guard(from_state, to_state, data)
        if veto_message is not None:
            await self._run_error_hook(from_state, to_state, veto_message)
            raise TransitionVetoedError(
                veto_message,
                from_state=from_state,
                to_state=to_state,
                machine=self.config.name,
            )

        await self._run_end_hook(from_state, to_state, data)

        logger.debug(
            "State transition completed",
            machine=self.config.name,
            from_state=from_state,
            to_state=to_state,
        )
        return to_state

    async def _run_start_guard(
        self, from_state: str, to_state: str, data: Any
    ) -> Optional[str]:
        guard = self.config.on_transition_start
        if guard is None:
            return None

        try:
            result = await call_operation(guard, from_state, to_state, data)
        except Exception as e:
            logger.info(
                "Transition guard rejected transition",
                machine=self.config.name,
                from_state=from_state,
                to_state=to_state,
                error=str(e),
            )
            return str(e) or f'Transition from "{from_state}" to "{to_state}" was rejected'

        if result is False:
            return f'Transition from "{from_state}" to "{to_state}" was rejected'
        if isinstance(result, str):
            return result
        return None

    async def _run_end_hook(self, from_state: str, to_state: str, data: Any) -> None:
        hook = self.config.on_transition_end
        if hook is None:
            return
        try:
            await call_operation(hook, from_state, to_state, data)
        except Exception:
            logger.error(
                "Transition end hook failed",
                machine=self.config.name,
                from_state=from_state,
                to_state=to_state,
                exc_info=True,
            )

    async def _run_error_hook(
        self, from_state: str, to_state: str, message: Optional[str]
    ) -> None:
        hook = self.config.on_transition_error
        if hook is None:
            return
        try:
            await call_operation(hook, from_state, to_state, message)
        except Exception:
            logger.error(
                "Transition error hook failed",
                machine=self.config.name,
                from_state=from_state,
                to_state=to_state,
                exc_info=True,
            )


def merge_transitions(
    base: Mapping[str, Iterable[str]],
    custom: Optional[Mapping[str, Iterable[str]]],
) -> Transitions:
    """
    Merge custom states and edges into a base transition table.

    Edges are only ever added; every base edge survives the merge.
    """
    merged = normalize_transitions(base)
    for state, targets in normalize_transitions(custom or {}).items():
        existing = merged.get(state, ())
        merged[state] = tuple(dict.fromkeys((*existing, *targets)))
    return merged


def validate_transitions(
    transitions: Mapping[str, Iterable[str]],
    base: Mapping[str, Iterable[str]],
    name: str = "state machine",
) -> None:
    """
    Validate a merged transition table against its base table.

    Raises:
        ConfigurationError: If a base edge is missing, a target state is not
            declared, or a custom state is orphaned (unreachable from the
            default states, or unable to reach back into them).
    """
    table = normalize_transitions(transitions)
    base_table = normalize_transitions(base)

    for state, targets in base_table.items():
        missing = [t for t in targets if t not in table.get(state, ())]
        if state not in table or missing:
            raise ConfigurationError(
                f"The {name} transition table must keep the default edges of \"{state}\"",
                machine=name,
                state=state,
                missing=missing,
            )

    for state, targets in table.items():
        undeclared = [t for t in targets if t not in table]
        if undeclared:
            raise ConfigurationError(
                f"The {name} state \"{state}\" targets undeclared states",
                machine=name,
                state=state,
                undeclared=undeclared,
            )

    reachable = _successors(table, base_table)
    for state in table:
        if state in base_table:
            continue
        if state not in reachable:
            raise ConfigurationError(
                f"The custom {name} state \"{state}\" is not reachable from any default state",
                machine=name,
                state=state,
            )
        if not _successors(table, [state]) & set(base_table):
            raise ConfigurationError(
                f"The custom {name} state \"{state}\" has no path back to a default state",
                machine=name,
                state=state,
            )


def _successors(table: Transitions, starts: Iterable[str]) -> set[str]:
    """States reachable in one or more steps from any of ``starts``."""
    found: set[str] = set()
    queue = deque(starts)
    while queue:
        for target in table.get(queue.popleft(), ()):
            if target not in found:
                found.add(target)
                queue.append(target)
    return found
