"""Lifecycle tests for LabSessionOrchestrator.

Covers:
  1. Start creates PENDING then ACTIVE with credentials and audit trail
  2. Idempotent start (live session returned unchanged, no second provision)
  3. Idempotent end (unknown / already-ended sessions succeed)
  4. Pool exclusivity and capacity ceiling (N+1th start fails, no record)
  5. Concurrent starts across users against a small pool
  6. Provision failure / timeout -> FAILED, then End -> ENDED
  7. Declarative nothing-to-destroy -> fallback cleanup, session ENDED
  8. Concurrent Ends share one destroy
  9. Ownership, on-access expiry, async provisioning, stale PENDING sweep
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from lab_control.app import audit
from lab_control.app.console.federation import ConsoleAccess
from lab_control.app.drivers.base import NOTHING_TO_DESTROY, TIMED_OUT
from lab_control.app.errors import (
    AccountPoolExhausted,
    AlreadyInProgress,
    FederationFailed,
    PoolAtCapacity,
    ProvisioningFailed,
    ProvisioningTimeout,
    SessionNotActive,
    SessionNotFound,
    Unauthorized,
)
from lab_control.app.sessions.model import utcnow
from lab_control.app.sessions.orchestrator import END_REASON_EXPIRED, END_REASON_USER
from lab_control.app.sessions.state_machine import (
    ACTIVE,
    ENDED,
    FAILED,
    LIVE_STATUSES,
    PENDING,
    STALE_PENDING_CODE,
    is_monotonic,
)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_activates_session(self, orchestrator, repo, driver, audit_emitter):
        result = await orchestrator.start('user-1', 'lab-a')

        session = result.session
        assert result.created
        assert session.status == ACTIVE
        assert session.access_key_id.startswith('AKIA')
        assert session.account_id == 'acct-1'
        assert session.expires_at > utcnow()
        assert repo.status_history[session.id] == [PENDING, ACTIVE]
        assert driver.calls_for('provision') == [session.id]
        assert audit_emitter.actions_for(session.id) == [audit.STARTED, audit.ACTIVATED]

    @pytest.mark.asyncio
    async def test_public_payload(self, orchestrator):
        payload = (await orchestrator.start('user-1', 'lab-a')).to_public()
        assert payload['created'] is True
        assert payload['status'] == ACTIVE
        assert payload['credentials']['s3_bucket_name'].startswith('lab-')
        assert 'console_url' not in payload

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, orchestrator, driver):
        first = await orchestrator.start('user-1', 'lab-a')
        second = await orchestrator.start('user-1', 'lab-a')

        assert not second.created
        assert second.session.id == first.session.id
        assert second.session.access_key_id == first.session.access_key_id
        assert len(driver.calls_for('provision')) == 1

    @pytest.mark.asyncio
    async def test_user_scope_returns_session_for_other_lab(self, orchestrator):
        first = await orchestrator.start('user-1', 'lab-a')
        second = await orchestrator.start('user-1', 'lab-b')
        assert second.session.id == first.session.id
        assert second.session.lab_id == 'lab-a'

    @pytest.mark.asyncio
    async def test_user_lab_scope_allows_parallel_labs(self, build_orchestrator):
        orchestrator = build_orchestrator(session_scope='user_lab')
        first = await orchestrator.start('user-1', 'lab-a')
        second = await orchestrator.start('user-1', 'lab-b')
        assert second.created
        assert {first.session.account_id, second.session.account_id} == {'acct-1', 'acct-2'}

    @pytest.mark.asyncio
    async def test_template_vars_forwarded(self, orchestrator, driver, monkeypatch):
        seen = {}
        original = driver.provision

        async def spy(account, user_id, lab_id, session_id, template_vars=None):
            seen['vars'] = template_vars
            return await original(account, user_id, lab_id, session_id, template_vars)

        monkeypatch.setattr(driver, 'provision', spy)
        await orchestrator.start('user-1', 'lab-a', template_vars={'enable_bucket': False})
        assert seen['vars'] == {'enable_bucket': False}

    @pytest.mark.asyncio
    async def test_destroy_reuses_provisioned_template_vars(self, orchestrator, driver, repo, monkeypatch):
        seen = {}
        original = driver.destroy

        async def spy(account, user_id, lab_id, session_id, template_vars=None):
            seen['vars'] = template_vars
            return await original(account, user_id, lab_id, session_id, template_vars)

        monkeypatch.setattr(driver, 'destroy', spy)
        started = await orchestrator.start(
            'user-1', 'lab-a', template_vars={'enable_bucket': False},
        )
        stored = await repo.get(started.session.id)
        assert stored.template_vars == {'enable_bucket': False}

        await orchestrator.end(started.session.id, 'user-1')

        assert seen['vars'] == {'enable_bucket': False}

    @pytest.mark.asyncio
    async def test_concurrent_start_same_user_rejected(self, orchestrator, driver):
        driver.provision_delay = 0.05
        results = await asyncio.gather(
            orchestrator.start('user-1', 'lab-a'),
            orchestrator.start('user-1', 'lab-a'),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyInProgress)
        assert len(driver.calls_for('provision')) == 1

    @pytest.mark.asyncio
    async def test_guard_released_after_start(self, orchestrator):
        await orchestrator.start('user-1', 'lab-a')
        result = await orchestrator.start('user-1', 'lab-a')
        assert not result.created


class TestPoolExclusivity:
    @pytest.mark.asyncio
    async def test_capacity_ceiling_creates_no_record(self, build_orchestrator, repo):
        orchestrator = build_orchestrator(pool_size=2)
        await orchestrator.start('user-1', 'lab-a')
        await orchestrator.start('user-2', 'lab-a')

        with pytest.raises(PoolAtCapacity) as exc_info:
            await orchestrator.start('user-3', 'lab-a')

        assert exc_info.value.retryable
        assert await repo.find_for_user('user-3', LIVE_STATUSES) == []
        live = await repo.list_by_status(LIVE_STATUSES)
        assert len({s.account_id for s in live}) == len(live) == 2

    @pytest.mark.asyncio
    async def test_three_concurrent_starts_two_accounts(self, build_orchestrator, driver, repo):
        orchestrator = build_orchestrator(pool_size=2)
        driver.provision_delay = 0.02

        results = await asyncio.gather(
            *(orchestrator.start(f'user-{i}', 'lab-a') for i in range(3)),
            return_exceptions=True,
        )

        ok = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(ok) == 2
        assert len(rejected) == 1
        assert isinstance(rejected[0], (PoolAtCapacity, AccountPoolExhausted))
        assert {r.session.account_id for r in ok} == {'acct-1', 'acct-2'}

    @pytest.mark.asyncio
    async def test_ended_session_frees_account(self, build_orchestrator):
        orchestrator = build_orchestrator(pool_size=1)
        first = await orchestrator.start('user-1', 'lab-a')
        await orchestrator.end(first.session.id, 'user-1')
        second = await orchestrator.start('user-2', 'lab-a')
        assert second.session.account_id == first.session.account_id

    @pytest.mark.asyncio
    async def test_failed_session_releases_account(self, build_orchestrator, driver, repo):
        orchestrator = build_orchestrator(pool_size=1)
        driver.fail_provision = True
        with pytest.raises(ProvisioningFailed) as exc_info:
            await orchestrator.start('user-1', 'lab-a')
        failed_id = exc_info.value.session_id

        # FAILED sessions are not live; the account is free again.
        driver.fail_provision = False
        result = await orchestrator.start('user-2', 'lab-a')
        assert result.session.account_id == 'acct-1'
        assert (await repo.get(failed_id)).status == FAILED


class TestProvisionFailure:
    @pytest.mark.asyncio
    async def test_failure_persists_failed_record(self, orchestrator, driver, repo, audit_emitter):
        driver.fail_provision = True
        with pytest.raises(ProvisioningFailed) as exc_info:
            await orchestrator.start('user-1', 'lab-a')

        session = await repo.get(exc_info.value.session_id)
        assert session.status == FAILED
        assert session.last_error_code == 'provisioning_failed'
        assert 'injected' in session.last_error_detail
        assert audit_emitter.actions_for(session.id) == [audit.STARTED, audit.FAILED]
        # Plain failures do not trigger a destroy.
        assert driver.calls_for('destroy') == []

    @pytest.mark.asyncio
    async def test_end_after_failure(self, orchestrator, driver, repo):
        driver.fail_provision = True
        with pytest.raises(ProvisioningFailed) as exc_info:
            await orchestrator.start('user-1', 'lab-a')

        result = await orchestrator.end(exc_info.value.session_id, 'user-1')

        assert result.status == ENDED
        assert result.session.status == ENDED
        assert driver.calls_for('destroy') == [exc_info.value.session_id]
        assert repo.status_history[exc_info.value.session_id] == [PENDING, FAILED, ENDED]

    @pytest.mark.asyncio
    async def test_timeout_fails_then_end_reaches_ended(self, repo, audit_emitter, build_orchestrator):
        from lab_control.app.drivers.inmemory import InMemoryInfrastructureDriver
        from lab_control.app.pool.guard import ConcurrencyGuard
        from lab_control.app.sessions.orchestrator import LabSessionOrchestrator

        slow = InMemoryInfrastructureDriver(provision_delay=5, provision_timeout_seconds=0.05)
        orchestrator = LabSessionOrchestrator(
            repo=repo,
            pool=build_orchestrator().pool,
            guard=ConcurrencyGuard(),
            driver=slow,
            audit_emitter=audit_emitter,
            provision_timeout_seconds=0.05,
        )

        with pytest.raises(ProvisioningTimeout) as exc_info:
            await orchestrator.start('user-1', 'lab-a')
        session_id = exc_info.value.session_id

        failed = await repo.get(session_id)
        assert failed.status == FAILED
        assert failed.last_error_code == 'provisioning_timeout'
        # Best-effort teardown of the partial apply already ran.
        assert slow.calls_for('destroy') == [session_id]
        assert session_id not in slow.resources

        result = await orchestrator.end(session_id, 'user-1')
        assert result.session.status == ENDED
        assert is_monotonic(repo.status_history[session_id])

    @pytest.mark.asyncio
    async def test_unexpected_driver_error_becomes_failed(self, orchestrator, driver, repo):
        driver.provision = AsyncMock(side_effect=RuntimeError('kaboom'))
        with pytest.raises(ProvisioningFailed, match='kaboom') as exc_info:
            await orchestrator.start('user-1', 'lab-a')
        assert (await repo.get(exc_info.value.session_id)).status == FAILED


class TestEnd:
    @pytest.mark.asyncio
    async def test_end_clears_credentials(self, orchestrator, repo, driver, audit_emitter):
        started = await orchestrator.start('user-1', 'lab-a')
        result = await orchestrator.end(started.session.id, 'user-1')

        ended = await repo.get(started.session.id)
        assert ended.status == ENDED
        assert ended.end_reason == END_REASON_USER
        assert ended.ended_at is not None
        assert ended.access_key_id is None
        assert ended.secret_access_key is None
        assert ended.password is None
        assert result.warnings == []
        assert result.to_public() == {
            'session_id': started.session.id,
            'status': ENDED,
            'cleanup_warnings': [],
        }
        assert driver.resources == {}
        assert audit_emitter.actions_for(ended.id)[-1] == audit.ENDED

    @pytest.mark.asyncio
    async def test_end_is_idempotent(self, orchestrator, driver):
        started = await orchestrator.start('user-1', 'lab-a')
        first = await orchestrator.end(started.session.id, 'user-1')
        second = await orchestrator.end(started.session.id, 'user-1')

        assert first.status == second.status == ENDED
        assert second.already_ended
        assert len(driver.calls_for('destroy')) == 1

    @pytest.mark.asyncio
    async def test_end_unknown_session(self, orchestrator, driver):
        result = await orchestrator.end('does-not-exist', 'user-1')
        assert result.status == ENDED
        assert result.already_ended
        assert driver.calls_for('destroy') == []

    @pytest.mark.asyncio
    async def test_end_requires_ownership(self, orchestrator, repo, driver):
        started = await orchestrator.start('user-1', 'lab-a')
        with pytest.raises(Unauthorized):
            await orchestrator.end(started.session.id, 'intruder')
        assert (await repo.get(started.session.id)).status == ACTIVE
        assert driver.calls_for('destroy') == []

    @pytest.mark.asyncio
    async def test_nothing_to_destroy_runs_fallback(self, orchestrator, driver, repo):
        started = await orchestrator.start('user-1', 'lab-a')
        driver.declarative_outcome = NOTHING_TO_DESTROY

        result = await orchestrator.end(started.session.id, 'user-1')

        assert result.report.declarative == NOTHING_TO_DESTROY
        assert result.report.fallback_invoked
        assert result.report.clean
        assert (await repo.get(started.session.id)).status == ENDED
        assert started.session.id not in driver.resources

    @pytest.mark.asyncio
    async def test_leaked_resources_still_end(self, orchestrator, driver, repo, audit_emitter):
        started = await orchestrator.start('user-1', 'lab-a')
        driver.declarative_outcome = TIMED_OUT
        driver.fail_fallback = True

        result = await orchestrator.end(started.session.id, 'user-1')

        ended = await repo.get(started.session.id)
        assert ended.status == ENDED
        assert ended.cleanup_warnings == result.warnings
        assert result.warnings and 'injected' in result.warnings[0]
        assert audit.CLEANUP_LEAK in audit_emitter.actions_for(ended.id)

    @pytest.mark.asyncio
    async def test_destroy_exception_does_not_block_end(self, orchestrator, driver, repo):
        started = await orchestrator.start('user-1', 'lab-a')
        driver.destroy = AsyncMock(side_effect=RuntimeError('driver crashed'))

        result = await orchestrator.end(started.session.id, 'user-1')

        assert (await repo.get(started.session.id)).status == ENDED
        assert any('driver crashed' in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_concurrent_ends_share_one_destroy(self, orchestrator, driver, repo):
        started = await orchestrator.start('user-1', 'lab-a')
        driver.destroy_delay = 0.05

        first, second = await asyncio.gather(
            orchestrator.end(started.session.id, 'user-1'),
            orchestrator.end(started.session.id, 'user-1'),
        )

        assert first.status == second.status == ENDED
        assert len(driver.calls_for('destroy')) == 1
        assert (await repo.get(started.session.id)).status == ENDED

    @pytest.mark.asyncio
    async def test_concurrent_end_by_non_owner_rejected(self, orchestrator, driver):
        started = await orchestrator.start('user-1', 'lab-a')
        driver.destroy_delay = 0.05
        owner, intruder = await asyncio.gather(
            orchestrator.end(started.session.id, 'user-1'),
            orchestrator.end(started.session.id, 'intruder'),
            return_exceptions=True,
        )
        assert owner.status == ENDED
        assert isinstance(intruder, Unauthorized)

    @pytest.mark.asyncio
    async def test_terminal_state_never_regresses(self, orchestrator, repo):
        started = await orchestrator.start('user-1', 'lab-a')
        await orchestrator.end(started.session.id, 'user-1')
        assert await repo.transition(started.session.id, {PENDING, ACTIVE}, {'status': ACTIVE}) is None
        assert is_monotonic(repo.status_history[started.session.id])


class TestAsyncProvisioning:
    @pytest.mark.asyncio
    async def test_returns_pending_then_activates(self, build_orchestrator, driver, repo):
        orchestrator = build_orchestrator(async_provisioning=True)
        driver.provision_delay = 0.02

        result = await orchestrator.start('user-1', 'lab-a')
        assert result.created
        assert result.session.status == PENDING
        assert 'credentials' not in result.to_public()

        await asyncio.gather(*orchestrator.pending_tasks.values())
        assert (await repo.get(result.session.id)).status == ACTIVE

    @pytest.mark.asyncio
    async def test_repeat_start_does_not_duplicate_provisioning(self, build_orchestrator, driver):
        orchestrator = build_orchestrator(async_provisioning=True)
        driver.provision_delay = 0.05
        first = await orchestrator.start('user-1', 'lab-a')
        await asyncio.sleep(0.01)
        second = await orchestrator.start('user-1', 'lab-a')
        assert second.session.id == first.session.id
        await orchestrator.shutdown()
        assert len(driver.calls_for('provision')) == 1

    @pytest.mark.asyncio
    async def test_end_during_provisioning(self, build_orchestrator, driver, repo):
        orchestrator = build_orchestrator(async_provisioning=True)
        driver.provision_delay = 5

        result = await orchestrator.start('user-1', 'lab-a')
        ended = await orchestrator.end(result.session.id, 'user-1')

        assert ended.session.status == ENDED
        assert orchestrator.pending_tasks == {}
        assert driver.calls_for('destroy') == [result.session.id]
        assert repo.status_history[result.session.id] == [PENDING, ENDED]

    @pytest.mark.asyncio
    async def test_background_failure_visible_via_status(self, build_orchestrator, driver):
        orchestrator = build_orchestrator(async_provisioning=True)
        driver.fail_provision = True
        result = await orchestrator.start('user-1', 'lab-a')
        await asyncio.gather(*orchestrator.pending_tasks.values())
        session = await orchestrator.status(result.session.id, 'user-1')
        assert session.status == FAILED


class TestStatusAndConsole:
    @pytest.mark.asyncio
    async def test_status_unknown(self, orchestrator):
        with pytest.raises(SessionNotFound):
            await orchestrator.status('nope', 'user-1')

    @pytest.mark.asyncio
    async def test_status_other_user(self, orchestrator):
        started = await orchestrator.start('user-1', 'lab-a')
        with pytest.raises(Unauthorized):
            await orchestrator.status(started.session.id, 'user-2')

    @pytest.mark.asyncio
    async def test_expired_session_ended_on_access(self, orchestrator, repo, driver):
        started = await orchestrator.start('user-1', 'lab-a')
        await repo.transition(
            started.session.id, {ACTIVE}, {'expires_at': utcnow() - timedelta(seconds=1)},
        )

        session = await orchestrator.status(started.session.id, 'user-1')

        assert session.status == ENDED
        assert session.end_reason == END_REASON_EXPIRED
        assert driver.calls_for('destroy') == [started.session.id]

    @pytest.mark.asyncio
    async def test_expired_session_replaced_on_start(self, orchestrator, repo):
        started = await orchestrator.start('user-1', 'lab-a')
        await repo.transition(
            started.session.id, {ACTIVE}, {'expires_at': utcnow() - timedelta(seconds=1)},
        )
        fresh = await orchestrator.start('user-1', 'lab-a')
        assert fresh.created
        assert fresh.session.id != started.session.id
        assert (await repo.get(started.session.id)).status == ENDED

    @pytest.mark.asyncio
    async def test_console_url_returned_with_start(self, build_orchestrator):
        console = AsyncMock()
        expires = utcnow() + timedelta(hours=1)
        console.generate_console_url.return_value = ConsoleAccess('https://console/login', expires)
        orchestrator = build_orchestrator(console=console)

        payload = (await orchestrator.start('user-1', 'lab-a')).to_public()

        assert payload['console_url'] == 'https://console/login'
        region, bundle = console.generate_console_url.call_args.args
        assert region == 'us-east-1'
        assert bundle.access_key_id == payload['credentials']['access_key_id']

    @pytest.mark.asyncio
    async def test_console_failure_is_not_fatal(self, build_orchestrator, repo):
        console = AsyncMock()
        console.generate_console_url.side_effect = FederationFailed('endpoint down')
        orchestrator = build_orchestrator(console=console)

        result = await orchestrator.start('user-1', 'lab-a')

        assert result.session.status == ACTIVE
        assert result.to_public()['console_error'] == 'endpoint down'
        assert (await repo.get(result.session.id)).status == ACTIVE

    @pytest.mark.asyncio
    async def test_console_retry_requires_active(self, build_orchestrator, driver):
        console = AsyncMock()
        orchestrator = build_orchestrator(console=console)
        driver.fail_provision = True
        with pytest.raises(ProvisioningFailed) as exc_info:
            await orchestrator.start('user-1', 'lab-a')
        with pytest.raises(SessionNotActive):
            await orchestrator.console_access(exc_info.value.session_id, 'user-1')

    @pytest.mark.asyncio
    async def test_console_retry_without_federation(self, orchestrator):
        started = await orchestrator.start('user-1', 'lab-a')
        with pytest.raises(FederationFailed):
            await orchestrator.console_access(started.session.id, 'user-1')

    @pytest.mark.asyncio
    async def test_history_newest_first(self, orchestrator):
        first = await orchestrator.start('user-1', 'lab-a')
        await orchestrator.end(first.session.id, 'user-1')
        second = await orchestrator.start('user-1', 'lab-a')
        history = await orchestrator.history('user-1', 'lab-a')
        assert [s.id for s in history] == [second.session.id, first.session.id]


class TestEndExpired:
    @pytest.mark.asyncio
    async def test_sweep_ends_expired_sessions(self, orchestrator, repo):
        keep = await orchestrator.start('user-1', 'lab-a')
        expire = await orchestrator.start('user-2', 'lab-a')
        await repo.transition(
            expire.session.id, {ACTIVE}, {'expires_at': utcnow() - timedelta(minutes=1)},
        )

        report = await orchestrator.end_expired()

        assert report.ended == (expire.session.id,)
        assert (await repo.get(expire.session.id)).end_reason == END_REASON_EXPIRED
        assert (await repo.get(keep.session.id)).status == ACTIVE

    @pytest.mark.asyncio
    async def test_stale_pending_failed(self, orchestrator, repo, driver):
        from lab_control.app.sessions.model import LabSession

        old = utcnow() - timedelta(seconds=orchestrator.stale_pending_seconds + 60)
        await repo.create(LabSession(
            id='orphan', lab_id='lab-a', user_id='user-9', account_id='acct-1',
            started_at=old, expires_at=utcnow() + timedelta(hours=1),
        ))
        # Apply finished on a worker that died before recording the outcome.
        driver.resources['orphan'] = driver._result(
            orchestrator.pool.get('acct-1'), 'user-9', 'orphan',
        )

        report = await orchestrator.end_expired()

        assert report.failed_stale == ('orphan',)
        assert report.ended == ()
        orphan = await repo.get('orphan')
        assert orphan.status == FAILED
        assert orphan.last_error_code == STALE_PENDING_CODE
        assert driver.calls_for('destroy') == ['orphan']
        assert 'orphan' not in driver.resources

    @pytest.mark.asyncio
    async def test_stale_pending_account_reused_only_after_cleanup(
        self, orchestrator, repo, driver,
    ):
        from lab_control.app.sessions.model import LabSession

        old = utcnow() - timedelta(seconds=orchestrator.stale_pending_seconds + 60)
        await repo.create(LabSession(
            id='orphan', lab_id='lab-a', user_id='user-9', account_id='acct-1',
            started_at=old, expires_at=utcnow() + timedelta(hours=1),
        ))
        driver.resources['orphan'] = driver._result(
            orchestrator.pool.get('acct-1'), 'user-9', 'orphan',
        )

        await orchestrator.end_expired()
        first = await orchestrator.start('user-1', 'lab-a')
        second = await orchestrator.start('user-2', 'lab-a')

        assert {first.session.account_id, second.session.account_id} == {'acct-1', 'acct-2'}
        assert 'orphan' not in driver.resources

    @pytest.mark.asyncio
    async def test_stale_pending_destroy_warnings_recorded(self, orchestrator, repo, driver):
        from lab_control.app.drivers.base import DECLARATIVE_FAILED
        from lab_control.app.sessions.model import LabSession

        old = utcnow() - timedelta(seconds=orchestrator.stale_pending_seconds + 60)
        await repo.create(LabSession(
            id='orphan', lab_id='lab-a', user_id='user-9', account_id='acct-1',
            started_at=old, expires_at=utcnow() + timedelta(hours=1),
        ))
        driver.declarative_outcome = DECLARATIVE_FAILED
        driver.fail_fallback = True

        await orchestrator.end_expired()

        orphan = await repo.get('orphan')
        assert orphan.status == FAILED
        assert orphan.cleanup_warnings

    @pytest.mark.asyncio
    async def test_busy_user_skipped(self, orchestrator, repo):
        started = await orchestrator.start('user-1', 'lab-a')
        await repo.transition(
            started.session.id, {ACTIVE}, {'expires_at': utcnow() - timedelta(minutes=1)},
        )
        orchestrator._guard.try_acquire('user-1')
        report = await orchestrator.end_expired()
        assert report.skipped == (started.session.id,)
        assert (await repo.get(started.session.id)).status == ACTIVE

    @pytest.mark.asyncio
    async def test_expiry_covers_failed_sessions(self, orchestrator, driver, repo):
        driver.fail_provision = True
        with pytest.raises(ProvisioningFailed) as exc_info:
            await orchestrator.start('user-1', 'lab-a')
        sid = exc_info.value.session_id
        await repo.transition(sid, {FAILED}, {'expires_at': utcnow() - timedelta(minutes=1)})

        report = await orchestrator.end_expired()

        assert report.ended == (sid,)
        assert (await repo.get(sid)).status == ENDED
