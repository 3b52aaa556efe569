"""Audit events for lab-session lifecycle transitions.

Each event captures the acting user, the session, the action, the
request correlation ID and a small payload (never credentials).

Actions:
  lab_session.started       PENDING record written
  lab_session.activated     provisioning succeeded
  lab_session.failed        provisioning failed or timed out
  lab_session.ended         session reached ENDED
  lab_session.cleanup_leak  destroy finished with warnings
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from lab_control.observability.logging import request_id_ctx
from lab_control.observability.metrics import AUDIT_EVENTS_EMITTED

STARTED = 'lab_session.started'
ACTIVATED = 'lab_session.activated'
FAILED = 'lab_session.failed'
ENDED = 'lab_session.ended'
CLEANUP_LEAK = 'lab_session.cleanup_leak'


@dataclass(frozen=True)
class AuditEvent:
    """Immutable audit event matching lab.audit_events schema."""

    session_id: str
    user_id: str
    action: str
    lab_id: str | None = None
    request_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    id: int | None = None


def make_event(
    action: str,
    *,
    session_id: str,
    user_id: str,
    lab_id: str | None = None,
    **payload: Any,
) -> AuditEvent:
    """Build an event, picking up the current request id if any."""
    return AuditEvent(
        session_id=session_id,
        user_id=user_id,
        action=action,
        lab_id=lab_id,
        request_id=request_id_ctx.get(),
        payload=payload,
    )


# ── Emitter protocol ─────────────────────────────────────────────────


class AuditEmitter(Protocol):
    """Abstract audit event emitter."""

    async def emit(self, event: AuditEvent) -> AuditEvent: ...
    async def list_for_session(
        self, session_id: str, limit: int = 50,
    ) -> list[AuditEvent]: ...


# ── In-memory implementation ──────────────────────────────────────────


class InMemoryAuditEmitter:
    """Simple in-memory audit store for local mode and tests."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._next_id = 1

    async def emit(self, event: AuditEvent) -> AuditEvent:
        stored = AuditEvent(
            id=self._next_id,
            session_id=event.session_id,
            user_id=event.user_id,
            action=event.action,
            lab_id=event.lab_id,
            request_id=event.request_id,
            payload=event.payload,
            created_at=event.created_at,
        )
        self._next_id += 1
        self._events.append(stored)
        AUDIT_EVENTS_EMITTED.labels(action=event.action).inc()
        return stored

    async def list_for_session(
        self, session_id: str, limit: int = 50,
    ) -> list[AuditEvent]:
        matching = [e for e in self._events if e.session_id == session_id]
        # Most recent first; id breaks timestamp ties.
        matching.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
        return matching[:limit]

    @property
    def events(self) -> list[AuditEvent]:
        """Access all events (for testing assertions)."""
        return list(self._events)

    def actions_for(self, session_id: str) -> list[str]:
        return [e.action for e in self._events if e.session_id == session_id]
