"""Supabase-backed lab-session repository.

Implements the LabSessionRepository protocol against lab.lab_sessions.

Account exclusivity is enforced by the unique partial index
``ux_lab_sessions_live_account`` (account_id WHERE status IN
('PENDING','ACTIVE')); a 409 on insert maps to AccountClaimConflict.
Status changes are compare-and-set PATCHes filtered on the current
status, so a lost race returns no rows.
"""

from __future__ import annotations

from typing import Any, Iterable

from ..sessions.model import LabSession, utcnow
from ..sessions.repository import AccountClaimConflict
from ..sessions.state_machine import sources_for
from .errors import StoreConflictError
from .supabase_client import SupabaseClient

TABLE = 'lab.lab_sessions'


def _serialize(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        out[key] = value.isoformat() if hasattr(value, 'isoformat') else value
    return out


class SupabaseLabSessionRepository:
    """Lab-session CRUD backed by Supabase PostgREST."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def create(self, session: LabSession) -> LabSession:
        try:
            rows = await self._client.insert(TABLE, session.to_row())
        except StoreConflictError as exc:
            raise AccountClaimConflict(session.account_id) from exc
        return LabSession.from_row(rows[0])

    async def get(self, session_id: str) -> LabSession | None:
        rows = await self._client.select(
            TABLE, filters={'id': ('eq', session_id)}, limit=1,
        )
        return LabSession.from_row(rows[0]) if rows else None

    async def transition(
        self,
        session_id: str,
        from_statuses: Iterable[str],
        data: dict[str, Any],
    ) -> LabSession | None:
        allowed = set(from_statuses)
        new_status = data.get('status')
        if new_status is not None:
            # Never ask the store for a transition the state machine forbids.
            allowed &= sources_for(new_status) | {new_status}
        if not allowed:
            return None
        rows = await self._client.update(
            TABLE,
            filters={'id': ('eq', session_id), 'status': ('in', sorted(allowed))},
            data=_serialize({**data, 'updated_at': utcnow()}),
        )
        return LabSession.from_row(rows[0]) if rows else None

    async def find_for_user(
        self,
        user_id: str,
        statuses: Iterable[str],
        *,
        lab_id: str | None = None,
    ) -> list[LabSession]:
        filters: dict[str, Any] = {
            'user_id': ('eq', user_id),
            'status': ('in', sorted(set(statuses))),
        }
        if lab_id is not None:
            filters['lab_id'] = ('eq', lab_id)
        rows = await self._client.select(TABLE, filters=filters, order='started_at.desc')
        return [LabSession.from_row(r) for r in rows]

    async def find_for_account(
        self, account_id: str, statuses: Iterable[str],
    ) -> list[LabSession]:
        rows = await self._client.select(
            TABLE,
            filters={
                'account_id': ('eq', account_id),
                'status': ('in', sorted(set(statuses))),
            },
        )
        return [LabSession.from_row(r) for r in rows]

    async def list_by_status(self, statuses: Iterable[str]) -> list[LabSession]:
        rows = await self._client.select(
            TABLE, filters={'status': ('in', sorted(set(statuses)))},
        )
        return [LabSession.from_row(r) for r in rows]

    async def history(
        self, user_id: str, lab_id: str, *, limit: int = 50,
    ) -> list[LabSession]:
        rows = await self._client.select(
            TABLE,
            filters={'user_id': ('eq', user_id), 'lab_id': ('eq', lab_id)},
            order='started_at.desc',
            limit=limit,
        )
        return [LabSession.from_row(r) for r in rows]
