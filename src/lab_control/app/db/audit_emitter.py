"""Supabase-backed AuditEmitter.

Writes lifecycle events to lab.audit_events via PostgREST. Emit is
fire-and-forget: store errors are logged but never propagate, so an
audit outage cannot block a session transition.
"""

from __future__ import annotations

from typing import Any

from lab_control.observability import get_logger
from lab_control.observability.metrics import AUDIT_EVENTS_EMITTED

from ..audit import AuditEvent
from .errors import StoreError
from .supabase_client import SupabaseClient

logger = get_logger(__name__)

TABLE = 'lab.audit_events'

# Keys that must never appear in audit payloads.
_SENSITIVE_KEYS = frozenset({
    'authorization',
    'apikey',
    'password',
    'secret_access_key',
    'secret_key',
    'session_token',
    'access_key',
    'token',
    'secret',
})


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy payload with sensitive keys redacted."""
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            sanitized[key] = '[REDACTED]'
        elif isinstance(value, dict):
            sanitized[key] = sanitize_payload(value)
        else:
            sanitized[key] = value
    return sanitized


def _event_from_row(row: dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        id=row.get('id'),
        session_id=row['session_id'],
        user_id=row['user_id'],
        action=row['action'],
        lab_id=row.get('lab_id'),
        request_id=row.get('request_id'),
        payload=row.get('payload') or {},
    )


class SupabaseAuditEmitter:
    """AuditEmitter backed by lab.audit_events."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def emit(self, event: AuditEvent) -> AuditEvent:
        row = {
            'session_id': event.session_id,
            'user_id': event.user_id,
            'lab_id': event.lab_id,
            'action': event.action,
            'request_id': event.request_id,
            'payload': sanitize_payload(event.payload),
            'created_at': event.created_at.isoformat(),
        }
        try:
            rows = await self._client.insert(TABLE, row)
        except StoreError as exc:
            logger.error(
                'audit_emit_failed',
                action=event.action,
                session_id=event.session_id,
                status=exc.status_code,
            )
            return event
        AUDIT_EVENTS_EMITTED.labels(action=event.action).inc()
        return _event_from_row(rows[0]) if rows else event

    async def list_for_session(
        self, session_id: str, limit: int = 50,
    ) -> list[AuditEvent]:
        rows = await self._client.select(
            TABLE,
            filters={'session_id': ('eq', session_id)},
            order='created_at.desc',
            limit=limit,
        )
        return [_event_from_row(r) for r in rows]
