"""Authentication middleware and route dependency.

``AuthGuardMiddleware`` verifies the bearer token on every non-exempt
request and stores the identity on ``request.state.auth_identity``.
Routes depend on ``get_auth_identity`` so tests can override it.

Exempt paths: ``/health``, ``/metrics``, ``/docs``, ``/openapi.json``.
"""

from __future__ import annotations

from fastapi import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from lab_control.observability import get_logger, request_id_ctx

from .token_verify import (
    AuthIdentity,
    TokenVerificationError,
    TokenVerifier,
    extract_bearer_token,
)

logger = get_logger(__name__)

DEFAULT_EXEMPT_PREFIXES: tuple[str, ...] = (
    '/health',
    '/metrics',
    '/docs',
    '/openapi.json',
)


def _unauthenticated(code: str, detail: str) -> dict:
    return {
        'error': 'unauthenticated',
        'code': code,
        'detail': detail,
        'retryable': False,
        'request_id': request_id_ctx.get(),
    }


class AuthGuardMiddleware(BaseHTTPMiddleware):
    """Reject requests without a valid bearer token with 401.

    Args:
        app: The ASGI application.
        token_verifier: Verifier for bearer JWTs.
        exempt_prefixes: Path prefixes that skip auth.
    """

    def __init__(
        self,
        app,
        token_verifier: TokenVerifier,
        exempt_prefixes: tuple[str, ...] = DEFAULT_EXEMPT_PREFIXES,
    ) -> None:
        super().__init__(app)
        self._verifier = token_verifier
        self._exempt_prefixes = exempt_prefixes

    def _is_exempt(self, path: str) -> bool:
        return any(path == p or path.startswith(p) for p in self._exempt_prefixes)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        request.state.auth_identity = None
        if self._is_exempt(request.url.path):
            return await call_next(request)

        token = extract_bearer_token(request)
        if not token:
            return JSONResponse(
                status_code=401,
                content=_unauthenticated('no_credentials', 'Authentication required'),
                headers={'WWW-Authenticate': 'Bearer'},
            )
        try:
            request.state.auth_identity = self._verifier.verify(token)
        except TokenVerificationError as exc:
            logger.info('token_rejected', code=exc.code)
            return JSONResponse(
                status_code=401,
                content=_unauthenticated(exc.code, exc.detail),
                headers={'WWW-Authenticate': 'Bearer'},
            )
        return await call_next(request)


def get_auth_identity(request: Request) -> AuthIdentity:
    """FastAPI dependency returning the verified caller.

    Raises:
        HTTPException: 401 when no identity is on the request.
    """
    identity: AuthIdentity | None = getattr(request.state, 'auth_identity', None)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail=_unauthenticated('no_credentials', 'Authentication required'),
            headers={'WWW-Authenticate': 'Bearer'},
        )
    return identity
