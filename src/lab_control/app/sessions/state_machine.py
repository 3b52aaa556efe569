"""Lab-session status state machine.

Implements the monotonic lifecycle:
  PENDING -> ACTIVE -> ENDED
  PENDING -> FAILED -> ENDED
  ACTIVE  -> FAILED -> ENDED
  PENDING -> ENDED            (ended before provisioning finished)

No transition ever moves backward. ``ENDED`` is terminal; ``FAILED`` only
accepts the cleanup transition to ``ENDED``.
"""

from __future__ import annotations

from types import MappingProxyType

PENDING = 'PENDING'
ACTIVE = 'ACTIVE'
FAILED = 'FAILED'
ENDED = 'ENDED'

ALL_STATUSES = (PENDING, ACTIVE, FAILED, ENDED)

# Statuses that hold an account claim and count against pool capacity.
LIVE_STATUSES = frozenset({PENDING, ACTIVE})
TERMINAL_STATUSES = frozenset({ENDED})
# Sessions in these statuses still need an End to finalize.
ENDABLE_STATUSES = frozenset({PENDING, ACTIVE, FAILED})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        PENDING: frozenset({ACTIVE, FAILED, ENDED}),
        ACTIVE: frozenset({FAILED, ENDED}),
        FAILED: frozenset({ENDED}),
        ENDED: frozenset(),
    }
)

# Error codes persisted in ``last_error_code``.
PROVISION_ERROR_CODE = 'provisioning_failed'
PROVISION_TIMEOUT_CODE = 'provisioning_timeout'
STALE_PENDING_CODE = 'stale_pending'

_ORDER = {PENDING: 0, ACTIVE: 1, FAILED: 2, ENDED: 3}


class InvalidStateTransition(ValueError):
    """Raised for invalid lab-session status transitions."""

    code = 'invalid_state_transition'

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f'invalid status transition: {from_status!r} -> {to_status!r}'
        )


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def require_transition(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidStateTransition(from_status, to_status)


def sources_for(to_status: str) -> frozenset[str]:
    """All statuses from which ``to_status`` is reachable in one step."""
    return frozenset(
        src for src, targets in ALLOWED_TRANSITIONS.items()
        if to_status in targets
    )


def is_monotonic(history: list[str]) -> bool:
    """Return True if ``history`` is a valid prefix of some lifecycle path.

    Used by tests and the audit trail to verify that an observed status
    sequence never regressed.
    """
    if not history:
        return True
    if history[0] != PENDING:
        return False
    for prev, nxt in zip(history, history[1:]):
        if prev == nxt:
            continue
        if not can_transition(prev, nxt) or _ORDER[nxt] < _ORDER[prev]:
            return False
    return True
