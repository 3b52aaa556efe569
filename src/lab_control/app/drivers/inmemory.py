"""In-memory infrastructure driver for local development and tests.

Tracks "live" resources per session in a dict and records every call.
Failure and latency are injectable through plain attributes.
"""

from __future__ import annotations

import asyncio
import secrets
from typing import Any, Mapping

from ..errors import ProvisioningFailed, ProvisioningTimeout
from ..pool.accounts import CloudAccount
from .base import (
    DESTROYED,
    STEP_ALREADY_GONE,
    STEP_DELETED,
    STEP_FAILED,
    CleanupStep,
    DestroyReport,
    ProvisionResult,
    bucket_name_for,
    principal_name_for,
)


class InMemoryInfrastructureDriver:
    """Fake driver with injectable failures.

    Attributes:
        fail_provision: raise ``ProvisioningFailed`` from provision.
        provision_delay: seconds provision sleeps before returning.
        provision_timeout_seconds: provision raises ``ProvisioningTimeout``
            when ``provision_delay`` exceeds it.
        destroy_delay: seconds destroy sleeps before acting.
        declarative_outcome: outcome reported by the first destroy tier.
        fail_fallback: fallback steps report ``failed``.
    """

    def __init__(
        self,
        *,
        provision_delay: float = 0.0,
        provision_timeout_seconds: float = 300.0,
        destroy_delay: float = 0.0,
    ) -> None:
        self.fail_provision = False
        self.provision_delay = provision_delay
        self.provision_timeout_seconds = provision_timeout_seconds
        self.destroy_delay = destroy_delay
        self.declarative_outcome = DESTROYED
        self.fail_fallback = False
        self.resources: dict[str, ProvisionResult] = {}
        self.calls: list[tuple[str, str]] = []

    def calls_for(self, operation: str) -> list[str]:
        return [sid for op, sid in self.calls if op == operation]

    async def provision(
        self,
        account: CloudAccount,
        user_id: str,
        lab_id: str,
        session_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> ProvisionResult:
        self.calls.append(('provision', session_id))
        if self.provision_delay:
            try:
                await asyncio.wait_for(
                    asyncio.sleep(self.provision_delay),
                    timeout=self.provision_timeout_seconds,
                )
            except asyncio.TimeoutError:
                # Partial resources exist after a timed-out apply.
                self.resources[session_id] = self._result(account, user_id, session_id)
                raise ProvisioningTimeout(
                    f'provision timed out after {self.provision_timeout_seconds}s',
                    session_id=session_id,
                ) from None
        if self.fail_provision:
            raise ProvisioningFailed('injected provisioning failure', session_id=session_id)
        result = self._result(account, user_id, session_id)
        self.resources[session_id] = result
        return result

    async def destroy(
        self,
        account: CloudAccount,
        user_id: str,
        lab_id: str,
        session_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> DestroyReport:
        self.calls.append(('destroy', session_id))
        if self.destroy_delay:
            await asyncio.sleep(self.destroy_delay)

        existed = session_id in self.resources
        report = DestroyReport(declarative=self.declarative_outcome)
        if self.declarative_outcome == DESTROYED:
            self.resources.pop(session_id, None)
            return report

        report.fallback_invoked = True
        principal = principal_name_for(user_id, session_id)
        if self.fail_fallback:
            report.steps = [
                CleanupStep(f'iam_user/{principal}', 'delete_user', STEP_FAILED, 'injected'),
            ]
            return report
        outcome = STEP_DELETED if existed else STEP_ALREADY_GONE
        report.steps = [
            CleanupStep(f'iam_user/{principal}', 'delete_user', outcome),
            CleanupStep(f's3_bucket/{bucket_name_for(session_id)}', 'delete_bucket', outcome),
        ]
        self.resources.pop(session_id, None)
        return report

    @staticmethod
    def _result(account: CloudAccount, user_id: str, session_id: str) -> ProvisionResult:
        return ProvisionResult(
            username=principal_name_for(user_id, session_id),
            access_key_id='AKIA' + secrets.token_hex(8).upper(),
            secret_access_key=secrets.token_urlsafe(30),
            region=account.region,
            password=secrets.token_urlsafe(12),
            resource_ids={'s3_bucket_name': bucket_name_for(session_id)},
        )
