"""Lab-session lifecycle orchestrator.

Coordinates the guard, account pool, session store, infrastructure
driver and console federation for the two lifecycle operations:

Start(user, lab)
  lease -> existing live session? -> capacity -> allocate account ->
  persist PENDING -> provision (inline or background task) ->
  CAS PENDING->ACTIVE (or PENDING->FAILED) -> console URL.

End(session, user)
  lookup (missing/ENDED is success) -> lease -> stop in-flight
  provisioning -> two-tier destroy -> CAS ->ENDED with credentials
  cleared, whatever the destroy outcome.

Every status change is a compare-and-set through the repository, so a
lost race never overwrites a newer status. Concurrent Ends for the same
session inside one process share a single in-flight result.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping

from lab_control.observability import bound_lab_context, get_logger
from lab_control.observability.metrics import (
    LAB_CONSOLE_URLS_TOTAL,
    LAB_DESTROYS_TOTAL,
    LAB_LIVE_SESSIONS,
    LAB_PROVISION_DURATION_SECONDS,
    LAB_SESSIONS_ENDED_TOTAL,
    LAB_STARTS_TOTAL,
)

from .. import audit
from ..audit import AuditEmitter, InMemoryAuditEmitter, make_event
from ..console.federation import ConsoleAccess, ConsoleFederation
from ..drivers.base import (
    DECLARATIVE_FAILED,
    UNAVAILABLE,
    DestroyReport,
    InfrastructureDriver,
    principal_name_for,
)
from ..errors import (
    AccountPoolExhausted,
    AlreadyInProgress,
    DestroyPartialFailure,
    FederationFailed,
    LabControlError,
    ProvisioningFailed,
    ProvisioningTimeout,
    SessionNotActive,
    SessionNotFound,
    Unauthorized,
)
from ..pool.accounts import AccountPool, CloudAccount
from ..pool.guard import ConcurrencyGuard
from .model import CREDENTIAL_FIELDS, LabSession, utcnow
from .repository import AccountClaimConflict, LabSessionRepository
from .state_machine import (
    ACTIVE,
    ENDABLE_STATUSES,
    ENDED,
    FAILED,
    LIVE_STATUSES,
    PENDING,
    STALE_PENDING_CODE,
)

logger = get_logger(__name__)

END_REASON_USER = 'user'
END_REASON_EXPIRED = 'expired'

# Slack on top of the driver timeout before the orchestrator gives up.
PROVISION_GRACE_SECONDS = 30.0
_MAX_ERROR_DETAIL = 2000


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, slots=True)
class StartResult:
    session: LabSession
    created: bool
    console: ConsoleAccess | None = None
    console_error: str | None = None

    def to_public(self) -> dict[str, Any]:
        payload = self.session.to_public()
        payload['created'] = self.created
        if self.console is not None:
            payload['console_url'] = self.console.url
            payload['console_expires_at'] = self.console.expires_at.isoformat()
        if self.console_error:
            payload['console_error'] = self.console_error
        return payload


@dataclass(frozen=True, slots=True)
class EndResult:
    session_id: str
    session: LabSession | None
    warnings: list[str] = field(default_factory=list)
    report: DestroyReport | None = None
    already_ended: bool = False

    @property
    def status(self) -> str:
        return ENDED

    def to_public(self) -> dict[str, Any]:
        return {
            'session_id': self.session_id,
            'status': ENDED,
            'cleanup_warnings': list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class ExpirySweepReport:
    """Outcome of one ``end_expired`` pass."""

    ended: tuple[str, ...]
    failed_stale: tuple[str, ...]
    skipped: tuple[str, ...]
    errors: tuple[str, ...]
    sweep_ts: datetime

    @property
    def total_actions(self) -> int:
        return len(self.ended) + len(self.failed_stale)


class LabSessionOrchestrator:
    """Start/End/status for lab sessions.

    Args:
        repo: Session store (single source of truth).
        pool: Account pool registry.
        guard: Per-user lease and capacity gate.
        driver: Infrastructure driver.
        console: Console URL generator; console URLs are skipped if None.
        audit_emitter: Lifecycle audit sink.
        session_duration_seconds: Lifetime granted on admission and
            refreshed on activation.
        provision_timeout_seconds: Driver timeout; also defines when a
            PENDING session is considered stale.
        session_scope: ``user`` or ``user_lab``.
        async_provisioning: Provision in a tracked background task and
            return the PENDING session immediately.
        allocation_attempts: Retries when the store rejects a claim.
    """

    def __init__(
        self,
        *,
        repo: LabSessionRepository,
        pool: AccountPool,
        guard: ConcurrencyGuard,
        driver: InfrastructureDriver,
        console: ConsoleFederation | None = None,
        audit_emitter: AuditEmitter | None = None,
        session_duration_seconds: int = 3600,
        provision_timeout_seconds: float = 300.0,
        session_scope: str = 'user',
        async_provisioning: bool = False,
        allocation_attempts: int = 3,
    ) -> None:
        self._repo = repo
        self._pool = pool
        self._guard = guard
        self._driver = driver
        self._console = console
        self._audit = audit_emitter or InMemoryAuditEmitter()
        self._duration = timedelta(seconds=session_duration_seconds)
        self._provision_timeout = provision_timeout_seconds
        self._scope = session_scope
        self._async_provisioning = async_provisioning
        self._allocation_attempts = max(1, allocation_attempts)
        self._tasks: dict[str, asyncio.Task] = {}
        self._ending: dict[str, asyncio.Future] = {}

    @property
    def repo(self) -> LabSessionRepository:
        return self._repo

    @property
    def pool(self) -> AccountPool:
        return self._pool

    @property
    def pending_tasks(self) -> dict[str, asyncio.Task]:
        return dict(self._tasks)

    @property
    def stale_pending_seconds(self) -> float:
        return self._provision_timeout + PROVISION_GRACE_SECONDS

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        user_id: str,
        lab_id: str,
        *,
        template_vars: Mapping[str, Any] | None = None,
    ) -> StartResult:
        """Start (or return) the caller's lab session.

        Raises:
            AlreadyInProgress: another start/end for this user is running.
            PoolAtCapacity: live sessions already fill the pool.
            AccountPoolExhausted: no account is free.
            ProvisioningFailed: provisioning failed; the session is FAILED.
        """
        with bound_lab_context(user_id=user_id, lab_id=lab_id):
            try:
                lease = self._guard.try_acquire(user_id)
            except AlreadyInProgress:
                LAB_STARTS_TOTAL.labels(outcome=AlreadyInProgress.code).inc()
                raise

            try:
                async with lease:
                    existing = await self._find_live(user_id, lab_id)
                    if existing is not None and existing.is_expired():
                        await self._finalize(existing, END_REASON_EXPIRED)
                        existing = None
                    if existing is None:
                        session, account = await self._admit(user_id, lab_id, template_vars)
                        if self._async_provisioning:
                            self._spawn_provision(session, account)
                        else:
                            session = await self._provision(session, account)
                        created = True
                    else:
                        logger.info('lab_session_reused', session_id=existing.id)
                        session, created = existing, False
            except LabControlError as exc:
                LAB_STARTS_TOTAL.labels(outcome=exc.code).inc()
                raise

            LAB_STARTS_TOTAL.labels(outcome='created' if created else 'existing').inc()
            console, console_error = await self._try_console(session)
            return StartResult(session, created, console, console_error)

    async def _find_live(self, user_id: str, lab_id: str) -> LabSession | None:
        scope_lab = lab_id if self._scope == 'user_lab' else None
        live = await self._repo.find_for_user(user_id, LIVE_STATUSES, lab_id=scope_lab)
        if not live:
            return None
        live.sort(key=lambda s: s.started_at, reverse=True)
        return live[0]

    async def _admit(
        self,
        user_id: str,
        lab_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> tuple[LabSession, CloudAccount]:
        async with self._guard.allocation_lock():
            live = await self._guard.check_capacity(self._repo, self._pool.size)
            LAB_LIVE_SESSIONS.set(live)

            rejected: set[str] = set()
            for _ in range(self._allocation_attempts):
                account = await self._pool.find_available_account(exclude=frozenset(rejected))
                now = utcnow()
                session_id = new_session_id()
                candidate = LabSession(
                    id=session_id,
                    lab_id=lab_id,
                    user_id=user_id,
                    account_id=account.id,
                    status=PENDING,
                    region=account.region,
                    principal_name=principal_name_for(user_id, session_id),
                    expires_at=now + self._duration,
                    started_at=now,
                    template_vars=dict(template_vars or {}),
                )
                try:
                    session = await self._repo.create(candidate)
                except AccountClaimConflict:
                    logger.warning('account_claim_conflict', account_id=account.id)
                    rejected.add(account.id)
                    continue
                break
            else:
                raise AccountPoolExhausted(
                    'all candidate accounts were claimed concurrently; please try again'
                )

        logger.info('lab_session_pending', session_id=session.id, account_id=account.id)
        await self._emit(audit.STARTED, session, account_id=account.id)
        return session, account

    def _spawn_provision(self, session: LabSession, account: CloudAccount) -> None:
        task = asyncio.create_task(
            self._provision_in_background(session, account),
            name=f'provision-{session.id}',
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._tasks.pop(sid, None))

    async def _provision_in_background(
        self, session: LabSession, account: CloudAccount,
    ) -> None:
        with bound_lab_context(user_id=session.user_id, lab_id=session.lab_id):
            try:
                await self._provision(session, account)
            except ProvisioningFailed as exc:
                # FAILED is already persisted; status queries report it.
                logger.info('background_provision_failed', session_id=session.id, code=exc.code)

    async def _provision(self, session: LabSession, account: CloudAccount) -> LabSession:
        log = logger.bind(session_id=session.id, account_id=account.id)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._driver.provision(
                    account, session.user_id, session.lab_id, session.id,
                    session.template_vars or None,
                ),
                timeout=self.stale_pending_seconds,
            )
        except asyncio.TimeoutError as exc:
            error: ProvisioningFailed = ProvisioningTimeout(
                f'provisioning exceeded {self.stale_pending_seconds:.0f}s',
                session_id=session.id,
            )
            await self._record_provision_failure(session, account, error, started)
            raise error from exc
        except ProvisioningFailed as exc:
            exc.session_id = session.id
            await self._record_provision_failure(session, account, exc, started)
            raise
        except asyncio.CancelledError:
            # End took over this session.
            log.info('provision_cancelled')
            raise
        except Exception as exc:
            log.exception('provision_unexpected_error')
            error = ProvisioningFailed(f'unexpected driver error: {exc}', session_id=session.id)
            await self._record_provision_failure(session, account, error, started)
            raise error from exc

        LAB_PROVISION_DURATION_SECONDS.labels(outcome='success').observe(
            time.perf_counter() - started,
        )
        activated = await self._repo.transition(
            session.id,
            {PENDING},
            {
                'status': ACTIVE,
                'principal_name': result.username,
                'password': result.password,
                'access_key_id': result.access_key_id,
                'secret_access_key': result.secret_access_key,
                'session_token': result.session_token,
                'region': result.region,
                'resource_ids': dict(result.resource_ids),
                'expires_at': utcnow() + self._duration,
            },
        )
        if activated is None:
            log.warning('provisioned_session_no_longer_pending')
            await self._destroy(account, session)
            current = await self._repo.get(session.id)
            return current or session

        log.info('lab_session_active', principal=result.username)
        await self._emit(audit.ACTIVATED, activated)
        return activated

    async def _record_provision_failure(
        self,
        session: LabSession,
        account: CloudAccount,
        error: ProvisioningFailed,
        started: float,
    ) -> None:
        LAB_PROVISION_DURATION_SECONDS.labels(outcome=error.code).observe(
            time.perf_counter() - started,
        )
        failed = await self._repo.transition(
            session.id,
            {PENDING},
            {
                'status': FAILED,
                'last_error_code': error.code,
                'last_error_detail': error.detail[:_MAX_ERROR_DETAIL],
            },
        )
        logger.warning(
            'lab_session_failed',
            session_id=session.id,
            code=error.code,
            detail=error.detail[:500],
        )
        if failed is None:
            return
        await self._emit(audit.FAILED, failed, code=error.code)
        if isinstance(error, ProvisioningTimeout):
            await self._destroy_partial(account, failed)

    async def _destroy_partial(
        self, account: CloudAccount | None, failed: LabSession,
    ) -> None:
        """Best-effort destroy of whatever an interrupted apply left behind.

        FAILED releases the account, so leftovers cannot wait for End.
        """
        if account is None:
            logger.warning(
                'partial_destroy_unavailable',
                session_id=failed.id,
                account_id=failed.account_id,
            )
            return
        report = await self._destroy(account, failed)
        await self._repo.transition(
            failed.id, {FAILED}, {'cleanup_warnings': report.warnings},
        )

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end(
        self,
        session_id: str,
        user_id: str,
        *,
        reason: str = END_REASON_USER,
    ) -> EndResult:
        """End a session; idempotent.

        Unknown and already-ENDED sessions succeed without side effects.

        Raises:
            Unauthorized: the caller does not own the session.
            AlreadyInProgress: a start for this user is running.
        """
        while True:
            inflight = self._ending.get(session_id)
            if inflight is None:
                break
            try:
                result = await asyncio.shield(inflight)
            except LabControlError:
                # The other caller's failure is its own; try on our own terms.
                continue
            if result.session is not None and result.session.user_id != user_id:
                raise Unauthorized(session_id)
            return result

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._ending[session_id] = future
        try:
            result = await self._end_once(session_id, user_id, reason)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Waiters are optional; mark the exception as retrieved.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._ending.pop(session_id, None)

    async def _end_once(self, session_id: str, user_id: str, reason: str) -> EndResult:
        session = await self._repo.get(session_id)
        if session is None:
            logger.info('end_unknown_session', session_id=session_id)
            return EndResult(session_id=session_id, session=None, already_ended=True)
        if session.user_id != user_id:
            raise Unauthorized(session_id)
        if session.is_ended:
            return EndResult(
                session_id=session_id,
                session=session,
                warnings=list(session.cleanup_warnings),
                already_ended=True,
            )

        with bound_lab_context(user_id=user_id, lab_id=session.lab_id):
            async with self._guard.try_acquire(user_id):
                return await self._finalize(session, reason)

    async def _finalize(self, session: LabSession, reason: str) -> EndResult:
        """Destroy and move to ENDED. Caller holds the user's lease."""
        log = logger.bind(session_id=session.id, account_id=session.account_id)

        task = self._tasks.get(session.id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        account = self._pool.get(session.account_id)
        if account is None:
            report = DestroyReport(
                declarative=UNAVAILABLE,
                declarative_detail=f'account {session.account_id!r} is not configured',
            )
        else:
            report = await self._destroy(account, session)

        warnings = report.warnings
        data: dict[str, Any] = {
            'status': ENDED,
            'ended_at': utcnow(),
            'end_reason': reason,
            'cleanup_warnings': warnings,
        }
        data.update({name: None for name in CREDENTIAL_FIELDS})
        ended = await self._repo.transition(session.id, ENDABLE_STATUSES, data)
        if ended is None:
            # Ended elsewhere between our read and the CAS.
            ended = await self._repo.get(session.id)

        LAB_SESSIONS_ENDED_TOTAL.labels(reason=reason).inc()
        log.info('lab_session_ended', reason=reason, clean=report.clean)
        if ended is not None:
            await self._emit(audit.ENDED, ended, reason=reason)
        if warnings:
            leak = DestroyPartialFailure(session.id, warnings)
            log.warning(leak.code, detail=leak.detail)
            if ended is not None:
                await self._emit(audit.CLEANUP_LEAK, ended, warnings=warnings)

        return EndResult(
            session_id=session.id,
            session=ended,
            warnings=warnings,
            report=report,
        )

    async def _destroy(self, account: CloudAccount, session: LabSession) -> DestroyReport:
        try:
            report = await self._driver.destroy(
                account, session.user_id, session.lab_id, session.id,
                session.template_vars or None,
            )
        except Exception as exc:
            logger.exception('destroy_unexpected_error', session_id=session.id)
            report = DestroyReport(
                declarative=DECLARATIVE_FAILED,
                declarative_detail=f'unexpected driver error: {exc}',
            )
        LAB_DESTROYS_TOTAL.labels(
            declarative=report.declarative,
            fallback=str(report.fallback_invoked).lower(),
            clean=str(report.clean).lower(),
        ).inc()
        return report

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _owned(self, session_id: str, user_id: str) -> LabSession:
        session = await self._repo.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.user_id != user_id:
            raise Unauthorized(session_id)
        return session

    async def status(self, session_id: str, user_id: str) -> LabSession:
        """Authoritative session status; expired live sessions are ended.

        Raises:
            SessionNotFound, Unauthorized
        """
        session = await self._owned(session_id, user_id)
        if session.is_live and session.is_expired():
            try:
                result = await self.end(session_id, user_id, reason=END_REASON_EXPIRED)
            except AlreadyInProgress:
                return session
            return result.session or session
        return session

    async def console_access(self, session_id: str, user_id: str) -> ConsoleAccess:
        """Generate a fresh console URL for an ACTIVE session.

        Raises:
            SessionNotFound, Unauthorized, SessionNotActive, FederationFailed
        """
        session = await self.status(session_id, user_id)
        if session.status != ACTIVE:
            raise SessionNotActive(session_id, session.status)
        if self._console is None:
            raise FederationFailed('console federation is not configured')
        try:
            access = await self._console.generate_console_url(
                session.region or '', session.credentials(),
            )
        except FederationFailed:
            LAB_CONSOLE_URLS_TOTAL.labels(outcome='failed').inc()
            raise
        LAB_CONSOLE_URLS_TOTAL.labels(outcome='success').inc()
        return access

    async def _try_console(
        self, session: LabSession,
    ) -> tuple[ConsoleAccess | None, str | None]:
        bundle = session.credentials()
        if self._console is None or bundle is None:
            return None, None
        try:
            access = await self._console.generate_console_url(session.region or '', bundle)
        except FederationFailed as exc:
            LAB_CONSOLE_URLS_TOTAL.labels(outcome='failed').inc()
            logger.warning('console_url_failed', session_id=session.id, detail=exc.detail)
            return None, exc.detail
        LAB_CONSOLE_URLS_TOTAL.labels(outcome='success').inc()
        return access, None

    async def history(
        self, user_id: str, lab_id: str, *, limit: int = 50,
    ) -> list[LabSession]:
        return await self._repo.history(user_id, lab_id, limit=limit)

    # ------------------------------------------------------------------
    # Expiry and shutdown
    # ------------------------------------------------------------------

    async def end_expired(self, now: datetime | None = None) -> ExpirySweepReport:
        """End sessions past expiry; fail PENDING sessions stuck too long."""
        now = now or utcnow()
        ended: list[str] = []
        failed_stale: list[str] = []
        skipped: list[str] = []
        errors: list[str] = []

        candidates = await self._repo.list_by_status(ENDABLE_STATUSES)
        LAB_LIVE_SESSIONS.set(sum(1 for s in candidates if s.is_live))
        for session in candidates:
            if self._is_stale_pending(session, now):
                failed = await self._repo.transition(
                    session.id,
                    {PENDING},
                    {
                        'status': FAILED,
                        'last_error_code': STALE_PENDING_CODE,
                        'last_error_detail': (
                            f'no provisioning outcome after {self.stale_pending_seconds:.0f}s'
                        ),
                    },
                )
                if failed is not None:
                    failed_stale.append(session.id)
                    await self._emit(audit.FAILED, failed, code=STALE_PENDING_CODE)
                    # The worker that owned this apply is gone; resources may be live.
                    await self._destroy_partial(self._pool.get(failed.account_id), failed)
                    session = await self._repo.get(failed.id) or failed
            if not session.is_expired(now):
                continue
            try:
                await self.end(session.id, session.user_id, reason=END_REASON_EXPIRED)
            except AlreadyInProgress:
                skipped.append(session.id)
            except LabControlError as exc:
                errors.append(f'{session.id}: {exc.code}')
            else:
                ended.append(session.id)

        report = ExpirySweepReport(
            ended=tuple(ended),
            failed_stale=tuple(failed_stale),
            skipped=tuple(skipped),
            errors=tuple(errors),
            sweep_ts=now,
        )
        if report.total_actions or errors:
            logger.info(
                'expiry_sweep_completed',
                ended=len(ended),
                failed_stale=len(failed_stale),
                skipped=len(skipped),
                errors=len(errors),
            )
        return report

    def _is_stale_pending(self, session: LabSession, now: datetime) -> bool:
        if session.status != PENDING or session.id in self._tasks:
            return False
        age = (now - session.started_at).total_seconds()
        return age > self.stale_pending_seconds

    async def shutdown(self) -> None:
        """Cancel background provisioning; the sweeper recovers the rows."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _emit(self, action: str, session: LabSession, **payload: Any) -> None:
        await self._audit.emit(make_event(
            action,
            session_id=session.id,
            user_id=session.user_id,
            lab_id=session.lab_id,
            **payload,
        ))
