"""Allowed server status transitions."""

from shared.dal.models import ServerStatus

_OCCUPANCY = frozenset({ServerStatus.IDLE, ServerStatus.RUNNING, ServerStatus.UNKNOWN})

ALLOWED_TRANSITIONS: dict[ServerStatus, frozenset[ServerStatus]] = {
    ServerStatus.INIT: frozenset({ServerStatus.ALLOCATING}),
    ServerStatus.ALLOCATING: frozenset({ServerStatus.WAITING, ServerStatus.FAILED}),
    ServerStatus.WAITING: frozenset({ServerStatus.SETTING_UP, ServerStatus.CLOSING}),
    ServerStatus.SETTING_UP: frozenset({ServerStatus.IDLE, ServerStatus.CLOSING}),
    ServerStatus.IDLE: _OCCUPANCY | {ServerStatus.CLOSING},
    ServerStatus.RUNNING: _OCCUPANCY | {ServerStatus.CLOSING},
    ServerStatus.UNKNOWN: _OCCUPANCY | {ServerStatus.CLOSING},
    ServerStatus.CLOSING: frozenset({ServerStatus.DEALLOCATING, ServerStatus.FAILED}),
    ServerStatus.DEALLOCATING: frozenset({ServerStatus.CLOSED, ServerStatus.FAILED}),
    ServerStatus.CLOSED: frozenset(),
    ServerStatus.FAILED: frozenset(),
}


class TransitionError(Exception):
    """A status change that is not an edge of the lifecycle graph."""

    def __init__(self, current: ServerStatus, target: ServerStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid server transition {current} -> {target}")


def can_transition(current: ServerStatus, target: ServerStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: ServerStatus, target: ServerStatus) -> None:
    if not can_transition(current, target):
        raise TransitionError(current, target)
