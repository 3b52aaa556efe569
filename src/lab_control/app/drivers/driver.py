"""Terraform-backed infrastructure driver with direct-API fallback.

Each session gets an isolated working directory
``<work_root>/<session_id>`` holding a copy of the account's template and
a ``terraform.tfvars.json``. Provision runs ``init``, ``apply`` and
``output -json`` under one overall deadline. Destroy runs ``init`` and
``destroy``; anything short of a confirmed destroy falls through to
``DirectApiCleaner``.

The working directory is removed only after a clean destroy so failed
teardowns stay inspectable.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from pathlib import Path
from typing import Any, Mapping

from lab_control.observability import get_logger

from ..errors import ProvisioningFailed, ProvisioningTimeout
from ..pool.accounts import CloudAccount
from .aws_cleanup import DirectApiCleaner
from .base import (
    DECLARATIVE_FAILED,
    DESTROYED,
    NOTHING_TO_DESTROY,
    TIMED_OUT,
    UNAVAILABLE,
    DestroyReport,
    ProvisionResult,
    build_template_vars,
)
from .terraform import (
    TerraformError,
    TerraformNotFoundError,
    TerraformRunner,
    TerraformTimeout,
    parse_destroyed_count,
)

logger = get_logger(__name__)

TFVARS_FILENAME = 'terraform.tfvars.json'

# Outputs copied into the credential bundle rather than resource_ids.
_CREDENTIAL_OUTPUTS = frozenset({
    'username',
    'password',
    'access_key_id',
    'secret_access_key',
    'session_token',
    'region',
    'account_id',
})

_TEMPLATE_IGNORE = shutil.ignore_patterns(
    '.terraform', '*.tfstate', '*.tfstate.backup', 'terraform.tfvars*',
)


class _Deadline:
    def __init__(self, seconds: float) -> None:
        self._loop = asyncio.get_running_loop()
        self._ends_at = self._loop.time() + seconds

    def remaining(self) -> float:
        return self._ends_at - self._loop.time()


def parse_provision_outputs(
    outputs: Mapping[str, Any], *, default_region: str,
) -> ProvisionResult:
    """Map ``terraform output -json`` values onto a ProvisionResult.

    Raises:
        ProvisioningFailed: a required output is missing.
    """
    missing = [
        key for key in ('username', 'access_key_id', 'secret_access_key')
        if not outputs.get(key)
    ]
    if missing:
        raise ProvisioningFailed(f'terraform outputs missing: {", ".join(missing)}')
    resource_ids = {
        key: str(value) for key, value in outputs.items()
        if key not in _CREDENTIAL_OUTPUTS and isinstance(value, (str, int))
    }
    return ProvisionResult(
        username=str(outputs['username']),
        access_key_id=str(outputs['access_key_id']),
        secret_access_key=str(outputs['secret_access_key']),
        region=str(outputs.get('region') or default_region),
        password=outputs.get('password') or None,
        session_token=outputs.get('session_token') or None,
        resource_ids=resource_ids,
    )


class TerraformInfrastructureDriver:
    """Provision/destroy lab sandboxes through the Terraform CLI."""

    def __init__(
        self,
        *,
        work_root: str | Path,
        runner: TerraformRunner | None = None,
        cleaner: DirectApiCleaner | None = None,
        provision_timeout_seconds: float = 300.0,
        destroy_timeout_seconds: float = 300.0,
    ) -> None:
        self._work_root = Path(work_root)
        self._runner = runner or TerraformRunner()
        self._cleaner = cleaner or DirectApiCleaner()
        self._provision_timeout = provision_timeout_seconds
        self._destroy_timeout = destroy_timeout_seconds

    def workdir_for(self, session_id: str) -> Path:
        return self._work_root / session_id

    def _materialize(
        self, account: CloudAccount, session_id: str, variables: dict[str, Any],
    ) -> Path:
        workdir = self.workdir_for(session_id)
        workdir.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            account.template_dir, workdir, dirs_exist_ok=True, ignore=_TEMPLATE_IGNORE,
        )
        tfvars = workdir / TFVARS_FILENAME
        # Contains admin credentials.
        fd = os.open(tfvars, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            json.dump(variables, fh, indent=2, sort_keys=True)
        return workdir

    async def provision(
        self,
        account: CloudAccount,
        user_id: str,
        lab_id: str,
        session_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> ProvisionResult:
        variables = build_template_vars(account, user_id, lab_id, session_id, template_vars)
        try:
            workdir = await asyncio.to_thread(self._materialize, account, session_id, variables)
        except OSError as exc:
            raise ProvisioningFailed(
                f'cannot prepare working directory: {exc}', session_id=session_id,
            ) from exc

        deadline = _Deadline(self._provision_timeout)
        log = logger.bind(session_id=session_id, account_id=account.id, lab_id=lab_id)
        log.info('terraform_provision_started', workdir=str(workdir))
        try:
            await self._runner.init(workdir, timeout=deadline.remaining())
            await self._runner.apply(workdir, timeout=deadline.remaining())
            outputs = await self._runner.output_json(workdir, timeout=deadline.remaining())
        except TerraformTimeout as exc:
            log.warning('terraform_provision_timeout', command=exc.command)
            raise ProvisioningTimeout(str(exc), session_id=session_id) from exc
        except TerraformError as exc:
            log.warning('terraform_provision_failed', error=str(exc))
            raise ProvisioningFailed(str(exc), session_id=session_id) from exc

        result = parse_provision_outputs(outputs, default_region=account.region)
        log.info('terraform_provision_completed', principal=result.username)
        return result

    async def destroy(
        self,
        account: CloudAccount,
        user_id: str,
        lab_id: str,
        session_id: str,
        template_vars: Mapping[str, Any] | None = None,
    ) -> DestroyReport:
        variables = build_template_vars(account, user_id, lab_id, session_id, template_vars)
        log = logger.bind(session_id=session_id, account_id=account.id, lab_id=lab_id)
        report = DestroyReport()

        workdir = self.workdir_for(session_id)
        try:
            if not (workdir / TFVARS_FILENAME).exists():
                workdir = await asyncio.to_thread(
                    self._materialize, account, session_id, variables,
                )
        except OSError as exc:
            report.declarative = UNAVAILABLE
            report.declarative_detail = f'cannot prepare working directory: {exc}'
        else:
            await self._declarative_destroy(workdir, report)

        if report.declarative != DESTROYED:
            log.warning(
                'declarative_destroy_incomplete',
                outcome=report.declarative,
                detail=report.declarative_detail,
            )
            report.fallback_invoked = True
            report.steps = await self._cleaner.cleanup(
                account,
                principal_name=variables['principal_name'],
                bucket_name=variables['bucket_name'] if variables.get('enable_bucket') else None,
            )

        if report.clean:
            await asyncio.to_thread(self._remove_workdir, workdir)
        log.info(
            'destroy_completed',
            declarative=report.declarative,
            fallback=report.fallback_invoked,
            clean=report.clean,
        )
        return report

    async def _declarative_destroy(self, workdir: Path, report: DestroyReport) -> None:
        deadline = _Deadline(self._destroy_timeout)
        try:
            await self._runner.init(workdir, timeout=deadline.remaining())
            result = await self._runner.destroy(workdir, timeout=deadline.remaining())
        except TerraformTimeout as exc:
            report.declarative = TIMED_OUT
            report.declarative_detail = str(exc)
        except TerraformNotFoundError as exc:
            report.declarative = UNAVAILABLE
            report.declarative_detail = str(exc)
        except TerraformError as exc:
            report.declarative = DECLARATIVE_FAILED
            report.declarative_detail = str(exc)
        else:
            count = parse_destroyed_count(result.stdout)
            report.declarative = NOTHING_TO_DESTROY if count == 0 else DESTROYED
            report.declarative_detail = f'{count} destroyed' if count is not None else ''

    @staticmethod
    def _remove_workdir(workdir: Path) -> None:
        try:
            shutil.rmtree(workdir)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning('workdir_remove_failed', workdir=str(workdir), error=str(exc))
