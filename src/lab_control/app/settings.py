"""Lab control-plane configuration settings.

LabControlSettings is the single configuration object accepted by
create_app(). It is a plain frozen dataclass so tests can inject config
without touching os.environ; ``from_env()`` is the production factory.
Configuration is read once at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

SESSION_SCOPES = ('user', 'user_lab')


def _env_bool(raw: str | None, default: bool) -> bool:
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(env: dict[str, str], key: str, default: float) -> float:
    raw = env.get(key, '')
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f'{key} must be a number, got {raw!r}') from exc


@dataclass(frozen=True, slots=True)
class LabControlSettings:
    """Configuration for the lab control-plane FastAPI application.

    All fields have sensible defaults for local development.
    Non-local environments must supply a record store, a token
    verification source and an account pool.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = 'local'
    """One of: local, dev, staging, production."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ''
    supabase_service_role_key: str = ''
    """Service-role key for PostgREST calls. Never log this."""

    # ── Auth ───────────────────────────────────────────────────────
    auth_jwt_secret: str = ''
    """HS256 shared secret for bearer tokens."""

    auth_jwks_url: str = ''
    """JWKS endpoint for RS256/ES256 bearer tokens."""

    auth_audience: str = 'authenticated'

    # ── Account pool ───────────────────────────────────────────────
    account_pool_file: str = ''
    account_pool_json: str = ''

    # ── Infrastructure driver ──────────────────────────────────────
    terraform_bin: str = 'terraform'
    work_root: str = '/tmp/lab-control/work'
    provision_timeout_seconds: float = 300.0
    destroy_timeout_seconds: float = 300.0

    # ── Session policy ─────────────────────────────────────────────
    session_duration_seconds: int = 3600
    session_scope: str = 'user'
    """``user``: one live session per user; ``user_lab``: per (user, lab)."""

    async_provisioning: bool = False
    expiry_sweep_interval_seconds: float = 60.0
    """0 disables the background sweeper (on-access expiry still applies)."""

    # ── Console federation ─────────────────────────────────────────
    federation_endpoint: str = 'https://signin.aws.amazon.com/federation'
    console_session_seconds: int = 3600

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = (
        'http://localhost:5173',
        'http://localhost:3000',
    )

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = 'INFO'
    log_format: str = 'json'

    @property
    def is_local(self) -> bool:
        return self.environment == 'local'

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.session_scope not in SESSION_SCOPES:
            errors.append(
                f'session_scope must be one of {SESSION_SCOPES}, '
                f'got {self.session_scope!r}'
            )
        if self.provision_timeout_seconds <= 0:
            errors.append('provision_timeout_seconds must be > 0')
        if self.destroy_timeout_seconds <= 0:
            errors.append('destroy_timeout_seconds must be > 0')
        if self.session_duration_seconds <= 0:
            errors.append('session_duration_seconds must be > 0')
        if self.expiry_sweep_interval_seconds < 0:
            errors.append('expiry_sweep_interval_seconds must be >= 0')
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f'{self.environment}: supabase_url is required')
            if not self.supabase_service_role_key:
                errors.append(
                    f'{self.environment}: supabase_service_role_key is required'
                )
            if not self.auth_jwt_secret and not self.auth_jwks_url:
                errors.append(
                    f'{self.environment}: auth_jwt_secret or auth_jwks_url is required'
                )
            if not self.account_pool_file and not self.account_pool_json:
                errors.append(
                    f'{self.environment}: an account pool '
                    '(LAB_ACCOUNT_POOL_FILE or LAB_ACCOUNT_POOL_JSON) is required'
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> LabControlSettings:
        """Build settings from environment variables.

        Tests should construct LabControlSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get('CORS_ORIGINS', '')
        cors = (
            tuple(o.strip() for o in cors_raw.split(',') if o.strip())
            if cors_raw else cls.cors_origins
        )

        return cls(
            environment=env.get('ENVIRONMENT', 'local'),
            supabase_url=env.get('SUPABASE_URL', ''),
            supabase_service_role_key=env.get('SUPABASE_SERVICE_ROLE_KEY', ''),
            auth_jwt_secret=env.get('AUTH_JWT_SECRET', ''),
            auth_jwks_url=env.get('AUTH_JWKS_URL', ''),
            auth_audience=env.get('AUTH_AUDIENCE', 'authenticated'),
            account_pool_file=env.get('LAB_ACCOUNT_POOL_FILE', ''),
            account_pool_json=env.get('LAB_ACCOUNT_POOL_JSON', ''),
            terraform_bin=env.get('TERRAFORM_BIN', 'terraform'),
            work_root=env.get('LAB_WORK_ROOT', '/tmp/lab-control/work'),
            provision_timeout_seconds=_env_float(env, 'PROVISION_TIMEOUT_SECONDS', 300.0),
            destroy_timeout_seconds=_env_float(env, 'DESTROY_TIMEOUT_SECONDS', 300.0),
            session_duration_seconds=int(
                _env_float(env, 'LAB_SESSION_DURATION_SECONDS', 3600)
            ),
            session_scope=env.get('SESSION_SCOPE', 'user'),
            async_provisioning=_env_bool(env.get('ASYNC_PROVISIONING'), False),
            expiry_sweep_interval_seconds=_env_float(
                env, 'EXPIRY_SWEEP_INTERVAL_SECONDS', 60.0,
            ),
            federation_endpoint=env.get(
                'FEDERATION_ENDPOINT', 'https://signin.aws.amazon.com/federation',
            ),
            console_session_seconds=int(
                _env_float(env, 'CONSOLE_SESSION_SECONDS', 3600)
            ),
            cors_origins=cors,
            log_level=env.get('LOG_LEVEL', 'INFO'),
            log_format=env.get('LOG_FORMAT', 'json'),
        )
