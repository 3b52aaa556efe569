"""Shared fixtures for lab control-plane unit tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from lab_control.app.audit import InMemoryAuditEmitter
from lab_control.app.drivers.inmemory import InMemoryInfrastructureDriver
from lab_control.app.pool.accounts import AccountPool, AdminCredentials, CloudAccount
from lab_control.app.pool.guard import ConcurrencyGuard
from lab_control.app.sessions.orchestrator import LabSessionOrchestrator
from lab_control.app.sessions.repository import InMemoryLabSessionRepository


def make_account(account_id: str, region: str = 'us-east-1', template_dir: Path | None = None) -> CloudAccount:
    return CloudAccount(
        id=account_id,
        region=region,
        admin_credentials=AdminCredentials('AKIAADMIN', 'admin-secret'),
        template_dir=template_dir or Path('/nonexistent/template'),
        name=f'pool {account_id}',
    )


def make_pool(repo, size: int = 2) -> AccountPool:
    return AccountPool([make_account(f'acct-{n}') for n in range(1, size + 1)], repo)


@pytest.fixture
def repo():
    return InMemoryLabSessionRepository()


@pytest.fixture
def driver():
    return InMemoryInfrastructureDriver()


@pytest.fixture
def audit_emitter():
    return InMemoryAuditEmitter()


@pytest.fixture
def build_orchestrator(repo, driver, audit_emitter):
    """Factory so tests can vary pool size and policy flags."""

    def _build(pool_size: int = 2, **kwargs) -> LabSessionOrchestrator:
        kwargs.setdefault('console', None)
        return LabSessionOrchestrator(
            repo=repo,
            pool=make_pool(repo, pool_size),
            guard=ConcurrencyGuard(),
            driver=driver,
            audit_emitter=audit_emitter,
            **kwargs,
        )

    return _build


@pytest.fixture
def orchestrator(build_orchestrator):
    return build_orchestrator()


@pytest.fixture
def account_factory():
    return make_account


@pytest.fixture
def pool_factory():
    return make_pool
