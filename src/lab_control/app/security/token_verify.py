"""Bearer JWT verification for lab API callers.

Identity is issued elsewhere (the platform's auth service); this module
only verifies the token and extracts the learner id from ``sub``.

Key sources:
  - JWKS endpoint (RS256/ES256), cached by PyJWKClient.
  - Shared secret (HS256), for local development and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient, PyJWKClientError
from starlette.requests import Request

DEFAULT_AUDIENCE = 'authenticated'
JWKS_CACHE_TTL_SECONDS = 300
BEARER_PREFIX = 'bearer '


@dataclass(frozen=True, slots=True)
class AuthIdentity:
    """Verified caller identity.

    Attributes:
        user_id: Learner id (``sub`` claim); owns lab sessions.
        email: Lower-cased email, empty when the token has none.
        role: Role claim (``authenticated`` by default).
    """

    user_id: str
    email: str = ''
    role: str = 'authenticated'
    raw_claims: dict[str, Any] = field(default_factory=dict)


class TokenVerificationError(Exception):
    def __init__(self, code: str, detail: str = '') -> None:
        self.code = code
        self.detail = detail
        super().__init__(f'{code}: {detail}' if detail else code)


class KeyProvider(Protocol):
    def get_signing_key(self, token: str) -> Any: ...


class JWKSKeyProvider:
    """Signing keys from a JWKS endpoint, matched on the token's ``kid``."""

    def __init__(self, jwks_url: str, cache_ttl: int = JWKS_CACHE_TTL_SECONDS) -> None:
        self._client = PyJWKClient(jwks_url, cache_jwk_set=True, lifespan=cache_ttl)

    def get_signing_key(self, token: str) -> Any:
        try:
            return self._client.get_signing_key_from_jwt(token).key
        except PyJWKClientError as exc:
            raise TokenVerificationError('jwks_fetch_error', str(exc)) from exc


class StaticKeyProvider:
    """Shared HS256 secret."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def get_signing_key(self, token: str) -> str:
        return self._secret


class TokenVerifier:
    """Verify signature, audience and expiry; return an AuthIdentity."""

    def __init__(
        self,
        key_provider: KeyProvider,
        *,
        audience: str = DEFAULT_AUDIENCE,
        algorithms: list[str] | None = None,
    ) -> None:
        self._key_provider = key_provider
        self._audience = audience
        self._algorithms = algorithms or ['RS256']

    def verify(self, token: str) -> AuthIdentity:
        """Raises TokenVerificationError on any failure."""
        if not token or not token.strip():
            raise TokenVerificationError('empty_token')

        key = self._key_provider.get_signing_key(token)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._audience,
                options={'require': ['sub', 'exp', 'aud']},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenVerificationError('token_expired') from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenVerificationError('invalid_audience', f'expected {self._audience}') from exc
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError('invalid_token', str(exc)) from exc

        user_id = str(claims.get('sub') or '')
        if not user_id:
            raise TokenVerificationError('missing_sub_claim')
        email = claims.get('email') or ''
        return AuthIdentity(
            user_id=user_id,
            email=email.lower(),
            role=claims.get('role', 'authenticated'),
            raw_claims=claims,
        )


def extract_bearer_token(request: Request) -> str | None:
    """Return the bearer token from ``Authorization``, if any."""
    header = request.headers.get('authorization', '')
    if header[:len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        return header[len(BEARER_PREFIX):].strip() or None
    return None


def create_token_verifier(
    *,
    jwks_url: str = '',
    jwt_secret: str = '',
    audience: str = DEFAULT_AUDIENCE,
) -> TokenVerifier:
    """JWKS wins when both sources are configured.

    Raises:
        ValueError: neither source configured.
    """
    if jwks_url:
        return TokenVerifier(
            JWKSKeyProvider(jwks_url), audience=audience, algorithms=['RS256', 'ES256'],
        )
    if jwt_secret:
        return TokenVerifier(
            StaticKeyProvider(jwt_secret), audience=audience, algorithms=['HS256'],
        )
    raise ValueError('either jwks_url or jwt_secret is required')
