"""Lab session API.

  POST /api/v1/labs/{lab_id}/start              start (or return) a session
  GET  /api/v1/labs/{lab_id}/sessions           caller's history for a lab
  GET  /api/v1/sessions/{session_id}            authoritative status
  POST /api/v1/sessions/{session_id}/end        end (idempotent)
  POST /api/v1/sessions/{session_id}/console    fresh console sign-in URL

Errors use one payload shape::

    {"error": code, "code": code, "detail": str, "retryable": bool,
     "request_id": str | null}

All endpoints require a verified caller via ``get_auth_identity``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from lab_control.observability import request_id_ctx

from ..drivers.base import CAPABILITIES
from ..errors import LabControlError
from ..security.auth_guard import get_auth_identity
from ..security.token_verify import AuthIdentity
from ..sessions.orchestrator import LabSessionOrchestrator
from ..sessions.state_machine import InvalidStateTransition

MAX_HISTORY = 100


class StartLabRequest(BaseModel):
    capabilities: dict[str, bool] = Field(
        default_factory=dict,
        description=(
            'Optional capability toggles, e.g. {"bucket": false}. '
            'Each maps to an enable_<name> template variable.'
        ),
    )

    @field_validator('capabilities')
    @classmethod
    def _known_capabilities(cls, value: dict[str, bool]) -> dict[str, bool]:
        unknown = sorted(set(value) - CAPABILITIES)
        if unknown:
            raise ValueError(
                f'unknown capabilities: {", ".join(unknown)}; '
                f'expected one of: {", ".join(sorted(CAPABILITIES))}'
            )
        return value

    def template_vars(self) -> dict[str, bool]:
        return {f'enable_{name}': bool(on) for name, on in self.capabilities.items()}


def error_response(exc: LabControlError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={**exc.to_payload(), 'request_id': request_id_ctx.get()},
    )


def transition_error_response(exc: InvalidStateTransition) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            'error': exc.code,
            'code': exc.code,
            'detail': str(exc),
            'retryable': False,
            'request_id': request_id_ctx.get(),
        },
    )


def create_labs_router(orchestrator: LabSessionOrchestrator) -> APIRouter:
    """Create the lab session router bound to one orchestrator."""
    router = APIRouter(tags=['labs'])

    @router.post('/api/v1/labs/{lab_id}/start')
    async def start_lab(
        lab_id: str,
        body: StartLabRequest | None = None,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Start a lab session, or return the caller's live one.

        Responds 201 when a session was created and 200 when an existing
        PENDING/ACTIVE session is returned unchanged.
        """
        template_vars = body.template_vars() if body else None
        try:
            result = await orchestrator.start(
                identity.user_id, lab_id, template_vars=template_vars,
            )
        except LabControlError as exc:
            return error_response(exc)
        return JSONResponse(
            status_code=201 if result.created else 200,
            content=result.to_public(),
        )

    @router.get('/api/v1/labs/{lab_id}/sessions')
    async def list_lab_sessions(
        lab_id: str,
        limit: int = 50,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        sessions = await orchestrator.history(
            identity.user_id, lab_id, limit=max(1, min(limit, MAX_HISTORY)),
        )
        entries = []
        for session in sessions:
            entry = session.to_public()
            entry.pop('credentials', None)
            entry['end_reason'] = session.end_reason
            entries.append(entry)
        return {'sessions': entries}

    @router.get('/api/v1/sessions/{session_id}')
    async def get_session(
        session_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            session = await orchestrator.status(session_id, identity.user_id)
        except LabControlError as exc:
            return error_response(exc)
        return session.to_public()

    @router.post('/api/v1/sessions/{session_id}/end')
    async def end_session(
        session_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """End a session. Unknown or already-ended sessions return ENDED."""
        try:
            result = await orchestrator.end(session_id, identity.user_id)
        except LabControlError as exc:
            return error_response(exc)
        except InvalidStateTransition as exc:
            return transition_error_response(exc)
        return result.to_public()

    @router.post('/api/v1/sessions/{session_id}/console')
    async def console_url(
        session_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            access = await orchestrator.console_access(session_id, identity.user_id)
        except LabControlError as exc:
            return error_response(exc)
        return {
            'console_url': access.url,
            'expires_at': access.expires_at.isoformat(),
        }

    return router
