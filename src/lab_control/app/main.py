"""Lab control-plane FastAPI application factory.

create_app() is the single entry point for building the ASGI app. It
wires observability and auth middleware, the lab router, and the
session orchestrator with either in-memory (local) or production
(Supabase store, Terraform driver, console federation) collaborators.

Usage:
    # Local development
    from lab_control.app import create_app, LabControlSettings
    app = create_app(LabControlSettings())

    # Production
    app = create_app(LabControlSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, repo=repo, pool=pool, driver=driver)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from lab_control.observability import configure_logging, get_logger, metrics_text
from lab_control.observability.middleware import (
    MetricsMiddleware,
    RequestIdMiddleware,
    RequestLoggingMiddleware,
)

from .audit import AuditEmitter, InMemoryAuditEmitter
from .console.federation import ConsoleFederation
from .drivers.base import InfrastructureDriver
from .drivers.driver import TerraformInfrastructureDriver
from .drivers.inmemory import InMemoryInfrastructureDriver
from .drivers.terraform import TerraformRunner
from .errors import LabControlError
from .operations.expiry_sweeper import ExpirySweeper
from .pool.accounts import (
    DEFAULT_TEMPLATE_DIR,
    AccountPool,
    AdminCredentials,
    CloudAccount,
    load_account_pool,
)
from .pool.guard import ConcurrencyGuard
from .routes.labs import create_labs_router, error_response, transition_error_response
from .security.auth_guard import AuthGuardMiddleware
from .security.token_verify import TokenVerifier, create_token_verifier
from .sessions.orchestrator import LabSessionOrchestrator
from .sessions.repository import InMemoryLabSessionRepository, LabSessionRepository
from .sessions.state_machine import InvalidStateTransition
from .settings import LabControlSettings

logger = get_logger(__name__)

# Local mode only; never accepted outside ENVIRONMENT=local.
LOCAL_DEV_JWT_SECRET = 'lab-control-local-dev-secret'


@dataclass(frozen=True)
class AppDependencies:
    """Injected collaborators, stored on ``app.state.deps``."""

    repo: LabSessionRepository
    pool: AccountPool
    guard: ConcurrencyGuard
    driver: InfrastructureDriver
    audit_emitter: AuditEmitter
    console: ConsoleFederation | None
    orchestrator: LabSessionOrchestrator
    sweeper: ExpirySweeper


def _local_pool(repo: LabSessionRepository) -> AccountPool:
    """Two fake accounts so local starts work without any config."""
    accounts = [
        CloudAccount(
            id=f'local-{n}',
            region='us-east-1',
            admin_credentials=AdminCredentials('local-access-key', 'local-secret-key'),
            template_dir=Path(DEFAULT_TEMPLATE_DIR),
            name=f'local pool account {n}',
        )
        for n in (1, 2)
    ]
    return AccountPool(accounts, repo)


def _build_production_store(settings: LabControlSettings) -> tuple[LabSessionRepository, AuditEmitter]:
    from .db import SupabaseAuditEmitter, SupabaseClient, SupabaseLabSessionRepository

    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        default_schema='lab',
    )
    return SupabaseLabSessionRepository(client), SupabaseAuditEmitter(client)


def _build_token_verifier(settings: LabControlSettings) -> TokenVerifier:
    if settings.auth_jwks_url or settings.auth_jwt_secret:
        return create_token_verifier(
            jwks_url=settings.auth_jwks_url,
            jwt_secret=settings.auth_jwt_secret,
            audience=settings.auth_audience,
        )
    logger.warning('local_dev_jwt_secret_in_use')
    return create_token_verifier(jwt_secret=LOCAL_DEV_JWT_SECRET, audience=settings.auth_audience)


def build_dependencies(
    settings: LabControlSettings,
    *,
    repo: LabSessionRepository | None = None,
    pool: AccountPool | None = None,
    driver: InfrastructureDriver | None = None,
    audit_emitter: AuditEmitter | None = None,
    console: ConsoleFederation | None = None,
) -> AppDependencies:
    """Fill unspecified collaborators for the configured environment."""
    if settings.is_local:
        repo = repo or InMemoryLabSessionRepository()
        audit_emitter = audit_emitter or InMemoryAuditEmitter()
        driver = driver or InMemoryInfrastructureDriver(
            provision_timeout_seconds=settings.provision_timeout_seconds,
        )
    else:
        if repo is None or audit_emitter is None:
            store_repo, store_audit = _build_production_store(settings)
            repo = repo or store_repo
            audit_emitter = audit_emitter or store_audit
        driver = driver or TerraformInfrastructureDriver(
            work_root=settings.work_root,
            runner=TerraformRunner(settings.terraform_bin),
            provision_timeout_seconds=settings.provision_timeout_seconds,
            destroy_timeout_seconds=settings.destroy_timeout_seconds,
        )
        console = console or ConsoleFederation(
            endpoint=settings.federation_endpoint,
            session_seconds=settings.console_session_seconds,
        )

    if pool is None:
        if settings.account_pool_file or settings.account_pool_json:
            pool = load_account_pool(
                repo=repo,
                pool_file=settings.account_pool_file,
                pool_json=settings.account_pool_json,
            )
        else:
            pool = _local_pool(repo)

    guard = ConcurrencyGuard()
    orchestrator = LabSessionOrchestrator(
        repo=repo,
        pool=pool,
        guard=guard,
        driver=driver,
        console=console,
        audit_emitter=audit_emitter,
        session_duration_seconds=settings.session_duration_seconds,
        provision_timeout_seconds=settings.provision_timeout_seconds,
        session_scope=settings.session_scope,
        async_provisioning=settings.async_provisioning,
    )
    sweeper = ExpirySweeper(
        orchestrator, interval_seconds=settings.expiry_sweep_interval_seconds,
    )
    return AppDependencies(
        repo=repo,
        pool=pool,
        guard=guard,
        driver=driver,
        audit_emitter=audit_emitter,
        console=console,
        orchestrator=orchestrator,
        sweeper=sweeper,
    )


def create_app(
    settings: LabControlSettings | None = None,
    *,
    repo: LabSessionRepository | None = None,
    pool: AccountPool | None = None,
    driver: InfrastructureDriver | None = None,
    audit_emitter: AuditEmitter | None = None,
    console: ConsoleFederation | None = None,
    token_verifier: TokenVerifier | None = None,
) -> FastAPI:
    """Create a configured lab control-plane application.

    Raises:
        ValueError: settings validation failed.
        AccountPoolConfigError: the configured pool is invalid.
    """
    if settings is None:
        settings = LabControlSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            'Lab control settings validation failed:\n'
            + '\n'.join(f'  - {e}' for e in errors)
        )

    deps = build_dependencies(
        settings,
        repo=repo,
        pool=pool,
        driver=driver,
        audit_emitter=audit_emitter,
        console=console,
    )
    verifier = token_verifier or _build_token_verifier(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            level=settings.log_level, json_output=settings.log_format == 'json',
        )
        logger.info(
            'lab_control_startup',
            environment=settings.environment,
            pool_size=deps.pool.size,
            async_provisioning=settings.async_provisioning,
        )
        deps.sweeper.start()
        try:
            yield
        finally:
            await deps.sweeper.stop()
            await deps.orchestrator.shutdown()
            logger.info('lab_control_shutdown')

    app = FastAPI(
        title='Lab Control Plane',
        description='Provisioning and lifecycle API for ephemeral lab sandboxes',
        version='0.1.0',
        lifespan=lifespan,
    )
    app.state.deps = deps
    app.state.settings = settings

    # ── Middleware stack (applied in reverse order) ──────────────
    # Execution: RequestId -> Metrics -> RequestLogging -> CORS -> AuthGuard -> route
    app.add_middleware(AuthGuardMiddleware, token_verifier=verifier)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(LabControlError)
    async def lab_error_handler(request: Request, exc: LabControlError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(InvalidStateTransition)
    async def transition_handler(request: Request, exc: InvalidStateTransition) -> JSONResponse:
        return transition_error_response(exc)

    @app.get('/health')
    async def health():
        return {
            'status': 'ok',
            'environment': settings.environment,
            'pool_size': deps.pool.size,
            'sweeper_running': deps.sweeper.running,
        }

    @app.get('/metrics')
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_labs_router(deps.orchestrator))
    return app


# For uvicorn, use --factory:
#   uvicorn lab_control.app.main:create_app --factory
