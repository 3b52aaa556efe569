"""Infrastructure driver contract and result types.

A driver turns (account, user, lab, session, variables) into a live
sandbox and back. It never reads or writes session state; the
orchestrator owns that.

Naming is deterministic so identifiers can be re-derived at destroy time
even when no IaC state survives:

  principal  lab-<user_id[:8]>-<session_id[:8]>
  bucket     lab-<session_id>            (lowercased)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable

from ..pool.accounts import CloudAccount

# Declarative tier outcomes.
DESTROYED = 'destroyed'
NOTHING_TO_DESTROY = 'nothing_to_destroy'
DECLARATIVE_FAILED = 'failed'
TIMED_OUT = 'timed_out'
UNAVAILABLE = 'unavailable'
SKIPPED = 'skipped'

# Fallback step outcomes.
STEP_DELETED = 'deleted'
STEP_ALREADY_GONE = 'already_gone'
STEP_FAILED = 'failed'


def principal_name_for(user_id: str, session_id: str) -> str:
    return f'lab-{user_id[:8]}-{session_id[:8]}'.lower()


def bucket_name_for(session_id: str) -> str:
    return f'lab-{session_id}'.lower()


# Capability toggles the sandbox template declares as enable_<name> variables.
CAPABILITIES = frozenset({'bucket', 'console'})


def build_template_vars(
    account: CloudAccount,
    user_id: str,
    lab_id: str,
    session_id: str,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Variable set handed to the IaC template.

    Caller-supplied ``extra`` values may override capability flags but
    never the identity or credential variables.
    """
    creds = account.admin_credentials
    variables: dict[str, Any] = {f'enable_{name}': True for name in sorted(CAPABILITIES)}
    variables.update(dict(extra or {}))
    variables.update({
        'region': account.region,
        'access_key': creds.access_key_id,
        'secret_key': creds.secret_access_key,
        'account_id': account.id,
        'user_id': user_id[:8],
        'lab_id': lab_id,
        'session_id': session_id,
        'principal_name': principal_name_for(user_id, session_id),
        'bucket_name': bucket_name_for(session_id),
    })
    return variables


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Transient output of a successful provision. Never persisted as-is."""

    username: str
    access_key_id: str
    secret_access_key: str = field(repr=False)
    region: str
    password: str | None = field(default=None, repr=False)
    session_token: str | None = field(default=None, repr=False)
    resource_ids: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CleanupStep:
    """One direct-API cleanup action and its outcome."""

    resource: str
    action: str
    outcome: str
    detail: str = ''


@dataclass(slots=True)
class DestroyReport:
    """Structured outcome of a two-tier destroy."""

    declarative: str = SKIPPED
    declarative_detail: str = ''
    fallback_invoked: bool = False
    steps: list[CleanupStep] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[CleanupStep]:
        return [s for s in self.steps if s.outcome == STEP_FAILED]

    @property
    def clean(self) -> bool:
        if self.fallback_invoked:
            return not self.failed_steps
        return self.declarative in (DESTROYED, NOTHING_TO_DESTROY)

    @property
    def warnings(self) -> list[str]:
        warnings = [
            f'{s.action} {s.resource}: {s.detail or s.outcome}'
            for s in self.failed_steps
        ]
        if not self.fallback_invoked and not self.clean:
            warnings.append(
                f'declarative destroy {self.declarative}: '
                f'{self.declarative_detail or "no detail"}'
            )
        return warnings


@runtime_checkable
class InfrastructureDriver(Protocol):
    """Create and tear down the sandbox for one session."""

    async def provision(
        self,
        account: CloudAccount,
        user_id: str,
        lab_id: str,
        session_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> ProvisionResult: ...

    async def destroy(
        self,
        account: CloudAccount,
        user_id: str,
        lab_id: str,
        session_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> DestroyReport: ...
