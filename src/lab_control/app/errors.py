"""Lab-session error taxonomy.

Every error carries a stable ``code``, a ``retryable`` flag and the HTTP
status the route layer maps it to. The flag lets the UI distinguish
"try again shortly" (capacity, exhaustion, in-progress) from "this lab
cannot be started" (provisioning failed).

Admission errors (``AlreadyInProgress``, ``PoolAtCapacity``,
``AccountPoolExhausted``) are raised before any persisted state changes.
``ProvisioningFailed`` is raised only after the session was moved to
``FAILED``. ``DestroyPartialFailure`` and ``FederationFailed`` never abort
a lifecycle transition.
"""

from __future__ import annotations


class LabControlError(Exception):
    """Base error for the lab control plane."""

    code: str = 'lab_control_error'
    retryable: bool = False
    http_status: int = 500

    def __init__(self, detail: str = '') -> None:
        self.detail = detail or self.code
        super().__init__(self.detail)

    def to_payload(self) -> dict:
        return {
            'error': self.code,
            'code': self.code,
            'detail': self.detail,
            'retryable': self.retryable,
        }


# ── Admission ────────────────────────────────────────────────────────


class AlreadyInProgress(LabControlError):
    """Another start/end for the same user is in flight."""

    code = 'already_in_progress'
    retryable = True
    http_status = 429

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(
            f'another lab request for user {user_id!r} is already being processed'
        )


class PoolAtCapacity(LabControlError):
    """Live sessions already equal the configured pool size."""

    code = 'pool_at_capacity'
    retryable = True
    http_status = 503

    def __init__(self, live: int, capacity: int) -> None:
        self.live = live
        self.capacity = capacity
        super().__init__(
            f'all {capacity} lab accounts are in use ({live} live sessions); '
            'please try again later'
        )


class AccountPoolExhausted(LabControlError):
    """Every configured account is claimed by a PENDING/ACTIVE session."""

    code = 'account_pool_exhausted'
    retryable = True
    http_status = 503

    def __init__(self, detail: str = '') -> None:
        super().__init__(
            detail or 'no cloud accounts available; please try again later'
        )


# ── Provisioning / teardown ──────────────────────────────────────────


class ProvisioningFailed(LabControlError):
    """The infrastructure driver could not create the sandbox."""

    code = 'provisioning_failed'
    http_status = 502

    def __init__(self, detail: str, *, session_id: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(detail)


class ProvisioningTimeout(ProvisioningFailed):
    """The external IaC tool exceeded its hard timeout."""

    code = 'provisioning_timeout'


class DestroyPartialFailure(LabControlError):
    """Some cleanup steps failed; cloud resources may have leaked.

    Surfaced as a warning for operator follow-up, never raised to the
    caller of ``end``.
    """

    code = 'destroy_partial_failure'
    http_status = 200

    def __init__(self, session_id: str, warnings: list[str]) -> None:
        self.session_id = session_id
        self.warnings = list(warnings)
        super().__init__(
            f'cleanup for session {session_id!r} incomplete: '
            + '; '.join(self.warnings)
        )


class FederationFailed(LabControlError):
    """Console sign-in URL could not be generated."""

    code = 'federation_failed'
    retryable = True
    http_status = 502


# ── Lookup / ownership ───────────────────────────────────────────────


class SessionNotFound(LabControlError):
    code = 'session_not_found'
    http_status = 404

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f'lab session {session_id!r} not found')


class Unauthorized(LabControlError):
    """Caller does not own the session."""

    code = 'unauthorized'
    http_status = 403

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f'caller does not own lab session {session_id!r}')


class SessionNotActive(LabControlError):
    """Operation requires an ACTIVE session (e.g. console URL)."""

    code = 'session_not_active'
    http_status = 409

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(
            f'lab session {session_id!r} is {status}, not ACTIVE'
        )
