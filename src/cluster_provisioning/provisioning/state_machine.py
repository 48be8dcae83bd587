"""Orchestration state machines and poll bookkeeping.

Search index flow:
  submit -> poll -> converged
  poll -> stalled -> rollback -> submit      (self-healing, unbounded)
  poll -> timed_out                          (fatal)

Sample bucket flow:
  install -> locate_service -> create_index -> poll -> converged
  locate_service -> locate_timed_out -> rollback_install -> install
  poll -> stalled -> rollback -> install
  poll -> timed_out                          (fatal)

Snapshots are immutable; every transition returns a new one and rejects
moves the table does not allow.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping

from ..errors import InvalidStateTransition
from ..observability.logging import get_logger

logger = get_logger(__name__)

SEARCH_INDEX = 'search_index'
SAMPLE_BUCKET = 'sample_bucket'

TERMINAL_STATES = frozenset({'converged', 'timed_out'})
ROLLBACK_STATES = frozenset({'rollback', 'rollback_install'})

INITIAL_STATES: Mapping[str, str] = MappingProxyType(
    {
        SEARCH_INDEX: 'submit',
        SAMPLE_BUCKET: 'install',
    }
)

ALLOWED_TRANSITIONS: Mapping[str, Mapping[str, frozenset[str]]] = MappingProxyType(
    {
        SEARCH_INDEX: MappingProxyType(
            {
                'submit': frozenset({'poll'}),
                'poll': frozenset({'converged', 'stalled', 'timed_out'}),
                'stalled': frozenset({'rollback'}),
                'rollback': frozenset({'submit'}),
                'converged': frozenset(),
                'timed_out': frozenset(),
            }
        ),
        SAMPLE_BUCKET: MappingProxyType(
            {
                'install': frozenset({'locate_service'}),
                'locate_service': frozenset({'create_index', 'locate_timed_out'}),
                'locate_timed_out': frozenset({'rollback_install'}),
                'rollback_install': frozenset({'install'}),
                'create_index': frozenset({'poll'}),
                'poll': frozenset({'converged', 'stalled', 'timed_out'}),
                'stalled': frozenset({'rollback'}),
                'rollback': frozenset({'install'}),
                'converged': frozenset(),
                'timed_out': frozenset(),
            }
        ),
    }
)


@dataclass(frozen=True, slots=True)
class OrchestrationState:
    """State snapshot for one orchestration run."""

    kind: str
    resource: str
    state: str
    attempt: int = 1
    rollbacks: int = 0


@dataclass(frozen=True, slots=True)
class PollState:
    """Progress seen during one convergence attempt."""

    observed_count: int = 0
    zero_streak: int = 0
    polls: int = 0


def start_run(kind: str, resource: str) -> OrchestrationState:
    """Create the first snapshot of a run."""
    try:
        initial = INITIAL_STATES[kind]
    except KeyError:
        raise ValueError(f'unknown orchestration kind: {kind!r}') from None
    return OrchestrationState(kind=kind, resource=resource, state=initial)


def transition(run: OrchestrationState, to_state: str) -> OrchestrationState:
    """Move ``run`` to ``to_state`` if the table allows it."""
    allowed = ALLOWED_TRANSITIONS[run.kind].get(run.state, frozenset())
    if to_state not in allowed:
        raise InvalidStateTransition(run.state, to_state)

    attempt = run.attempt
    rollbacks = run.rollbacks
    if to_state in ROLLBACK_STATES:
        rollbacks += 1
    if to_state == INITIAL_STATES[run.kind]:
        attempt += 1
    return replace(run, state=to_state, attempt=attempt, rollbacks=rollbacks)


def is_terminal(run: OrchestrationState) -> bool:
    return run.state in TERMINAL_STATES


StateHandler = Callable[[], Awaitable[str]]


async def drive(
    run: OrchestrationState,
    handlers: Mapping[str, StateHandler],
) -> OrchestrationState:
    """Run state handlers until a terminal state is reached.

    Each handler performs the work of its state and returns the name of the
    next state.
    """
    while not is_terminal(run):
        handler = handlers.get(run.state)
        if handler is None:
            raise InvalidStateTransition(run.state, '<no handler>')
        next_state = await handler()
        logger.debug(
            'state_transition',
            from_state=run.state,
            to_state=next_state,
            attempt=run.attempt,
        )
        run = transition(run, next_state)
    return run


def observe(poll: PollState, count: int) -> PollState:
    """Fold one observed count into the poll state.

    The zero streak resets as soon as any progress is seen.
    """
    return PollState(
        observed_count=count,
        zero_streak=poll.zero_streak + 1 if count == 0 else 0,
        polls=poll.polls + 1,
    )


def is_converged(poll: PollState, expected: int) -> bool:
    return poll.observed_count >= expected


def is_stalled(poll: PollState, stall_threshold: int) -> bool:
    return poll.zero_streak >= stall_threshold
