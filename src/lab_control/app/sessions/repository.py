"""Lab-session store protocol and in-memory implementation.

The store is the single source of truth for session state and for pool
availability. Two guarantees matter to the orchestrator:

  1. ``create`` refuses a second PENDING/ACTIVE claim on the same account
     (``AccountClaimConflict``). Production mirrors this with the unique
     partial index ``ux_lab_sessions_live_account``.
  2. ``transition`` is a compare-and-set on ``status``: the update is
     applied only if the current status is one of ``from_statuses``,
     otherwise ``None`` is returned and nothing changes.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from typing import Any, Iterable, Protocol, runtime_checkable

from .model import LabSession, utcnow
from .state_machine import LIVE_STATUSES, require_transition


class AccountClaimConflict(Exception):
    """Raised when an account already backs a PENDING/ACTIVE session."""

    def __init__(self, account_id: str, holder_session_id: str | None = None) -> None:
        self.account_id = account_id
        self.holder_session_id = holder_session_id
        super().__init__(
            f'account {account_id!r} is already claimed'
            + (f' by session {holder_session_id!r}' if holder_session_id else '')
        )


@runtime_checkable
class LabSessionRepository(Protocol):
    """CRUD and lifecycle queries for lab sessions."""

    async def create(self, session: LabSession) -> LabSession: ...

    async def get(self, session_id: str) -> LabSession | None: ...

    async def transition(
        self,
        session_id: str,
        from_statuses: Iterable[str],
        data: dict[str, Any],
    ) -> LabSession | None: ...

    async def find_for_user(
        self,
        user_id: str,
        statuses: Iterable[str],
        *,
        lab_id: str | None = None,
    ) -> list[LabSession]: ...

    async def find_for_account(
        self, account_id: str, statuses: Iterable[str],
    ) -> list[LabSession]: ...

    async def list_by_status(self, statuses: Iterable[str]) -> list[LabSession]: ...

    async def history(
        self, user_id: str, lab_id: str, *, limit: int = 50,
    ) -> list[LabSession]: ...


class InMemoryLabSessionRepository:
    """Dict-backed store for local development and tests.

    Returns copies so callers never mutate stored rows in place.
    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, LabSession] = {}
        # session_id -> ordered statuses observed, for monotonicity checks.
        self.status_history: dict[str, list[str]] = {}

    async def create(self, session: LabSession) -> LabSession:
        if session.id in self._sessions:
            raise ValueError(f'duplicate session id {session.id!r}')
        if session.status in LIVE_STATUSES:
            for existing in self._sessions.values():
                if (
                    existing.account_id == session.account_id
                    and existing.status in LIVE_STATUSES
                ):
                    raise AccountClaimConflict(session.account_id, existing.id)
        stored = copy.deepcopy(session)
        self._sessions[stored.id] = stored
        self.status_history[stored.id] = [stored.status]
        return copy.deepcopy(stored)

    async def get(self, session_id: str) -> LabSession | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def transition(
        self,
        session_id: str,
        from_statuses: Iterable[str],
        data: dict[str, Any],
    ) -> LabSession | None:
        current = self._sessions.get(session_id)
        if current is None or current.status not in set(from_statuses):
            return None
        new_status = data.get('status', current.status)
        if new_status != current.status:
            require_transition(current.status, new_status)
        updated = replace(current, **data, updated_at=utcnow())
        self._sessions[session_id] = updated
        if new_status != current.status:
            self.status_history[session_id].append(new_status)
        return copy.deepcopy(updated)

    async def find_for_user(
        self,
        user_id: str,
        statuses: Iterable[str],
        *,
        lab_id: str | None = None,
    ) -> list[LabSession]:
        wanted = set(statuses)
        return [
            copy.deepcopy(s) for s in self._sessions.values()
            if s.user_id == user_id
            and s.status in wanted
            and (lab_id is None or s.lab_id == lab_id)
        ]

    async def find_for_account(
        self, account_id: str, statuses: Iterable[str],
    ) -> list[LabSession]:
        wanted = set(statuses)
        return [
            copy.deepcopy(s) for s in self._sessions.values()
            if s.account_id == account_id and s.status in wanted
        ]

    async def list_by_status(self, statuses: Iterable[str]) -> list[LabSession]:
        wanted = set(statuses)
        return [
            copy.deepcopy(s) for s in self._sessions.values()
            if s.status in wanted
        ]

    async def history(
        self, user_id: str, lab_id: str, *, limit: int = 50,
    ) -> list[LabSession]:
        matches = [
            s for s in self._sessions.values()
            if s.user_id == user_id and s.lab_id == lab_id
        ]
        matches.sort(key=lambda s: s.started_at, reverse=True)
        return [copy.deepcopy(s) for s in matches[:limit]]
