"""Direct-API fallback cleanup for lab resources.

Used when the declarative destroy could not prove the sandbox is gone.
Every step is idempotent: a resource that no longer exists counts as
success (``already_gone``). Failures are recorded as steps, never raised.

boto3 is synchronous, so the whole cleanup runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from lab_control.observability import get_logger

from ..pool.accounts import CloudAccount
from .base import STEP_ALREADY_GONE, STEP_DELETED, STEP_FAILED, CleanupStep

logger = get_logger(__name__)

ClientFactory = Callable[[str, CloudAccount], Any]

_NOT_FOUND_CODES = frozenset({
    'NoSuchEntity',
    'NoSuchBucket',
    'NotFound',
    '404',
})

# S3 delete_objects accepts at most 1000 keys per call.
_DELETE_BATCH = 1000


def default_client_factory(service: str, account: CloudAccount) -> Any:
    creds = account.admin_credentials
    session = boto3.session.Session(
        aws_access_key_id=creds.access_key_id,
        aws_secret_access_key=creds.secret_access_key,
        aws_session_token=creds.session_token,
        region_name=account.region,
    )
    return session.client(service)


def _error_code(exc: ClientError) -> str:
    return exc.response.get('Error', {}).get('Code', '')


def _is_not_found(exc: ClientError) -> bool:
    return _error_code(exc) in _NOT_FOUND_CODES


class DirectApiCleaner:
    """Idempotent IAM principal and S3 bucket removal."""

    def __init__(self, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or default_client_factory

    async def cleanup(
        self,
        account: CloudAccount,
        *,
        principal_name: str | None,
        bucket_name: str | None,
    ) -> list[CleanupStep]:
        return await asyncio.to_thread(
            self.cleanup_sync,
            account,
            principal_name=principal_name,
            bucket_name=bucket_name,
        )

    def cleanup_sync(
        self,
        account: CloudAccount,
        *,
        principal_name: str | None,
        bucket_name: str | None,
    ) -> list[CleanupStep]:
        steps: list[CleanupStep] = []
        if principal_name:
            steps.extend(self._cleanup_principal(account, principal_name))
        if bucket_name:
            steps.extend(self._cleanup_bucket(account, bucket_name))
        failed = [s for s in steps if s.outcome == STEP_FAILED]
        logger.info(
            'fallback_cleanup_completed',
            account_id=account.id,
            principal=principal_name,
            bucket=bucket_name,
            steps=len(steps),
            failed=len(failed),
        )
        return steps

    # ── helpers ───────────────────────────────────────────────────

    @staticmethod
    def _step(resource: str, action: str, fn: Callable[[], Any]) -> CleanupStep:
        try:
            fn()
        except ClientError as exc:
            if _is_not_found(exc):
                return CleanupStep(resource, action, STEP_ALREADY_GONE)
            logger.warning(
                'fallback_step_failed', resource=resource, action=action,
                error_code=_error_code(exc),
            )
            return CleanupStep(resource, action, STEP_FAILED, str(exc))
        except BotoCoreError as exc:
            logger.warning('fallback_step_failed', resource=resource, action=action)
            return CleanupStep(resource, action, STEP_FAILED, str(exc))
        return CleanupStep(resource, action, STEP_DELETED)

    # ── IAM principal ─────────────────────────────────────────────

    def _cleanup_principal(self, account: CloudAccount, user_name: str) -> list[CleanupStep]:
        resource = f'iam_user/{user_name}'
        try:
            iam = self._client_factory('iam', account)
            attached = iam.list_attached_user_policies(UserName=user_name).get(
                'AttachedPolicies', [],
            )
        except ClientError as exc:
            if _is_not_found(exc):
                return [CleanupStep(resource, 'delete_user', STEP_ALREADY_GONE)]
            return [CleanupStep(resource, 'inspect_user', STEP_FAILED, str(exc))]
        except BotoCoreError as exc:
            return [CleanupStep(resource, 'inspect_user', STEP_FAILED, str(exc))]

        steps: list[CleanupStep] = []
        for policy in attached:
            arn = policy['PolicyArn']
            steps.append(self._step(
                f'{resource}/policy/{arn}', 'detach_policy',
                lambda arn=arn: iam.detach_user_policy(UserName=user_name, PolicyArn=arn),
            ))

        steps.extend(self._for_each(
            resource, 'delete_inline_policy',
            lambda: iam.list_user_policies(UserName=user_name).get('PolicyNames', []),
            lambda name: iam.delete_user_policy(UserName=user_name, PolicyName=name),
        ))
        steps.extend(self._for_each(
            resource, 'delete_access_key',
            lambda: [
                k['AccessKeyId']
                for k in iam.list_access_keys(UserName=user_name).get('AccessKeyMetadata', [])
            ],
            lambda key_id: iam.delete_access_key(UserName=user_name, AccessKeyId=key_id),
        ))
        steps.append(self._step(
            f'{resource}/login_profile', 'delete_login_profile',
            lambda: iam.delete_login_profile(UserName=user_name),
        ))
        steps.extend(self._for_each(
            resource, 'remove_from_group',
            lambda: [
                g['GroupName']
                for g in iam.list_groups_for_user(UserName=user_name).get('Groups', [])
            ],
            lambda group: iam.remove_user_from_group(GroupName=group, UserName=user_name),
        ))
        steps.append(self._step(
            resource, 'delete_user', lambda: iam.delete_user(UserName=user_name),
        ))
        return steps

    def _for_each(
        self,
        resource: str,
        action: str,
        lister: Callable[[], list[str]],
        deleter: Callable[[str], Any],
    ) -> list[CleanupStep]:
        try:
            names = lister()
        except ClientError as exc:
            if _is_not_found(exc):
                return []
            return [CleanupStep(resource, action, STEP_FAILED, f'list failed: {exc}')]
        except BotoCoreError as exc:
            return [CleanupStep(resource, action, STEP_FAILED, f'list failed: {exc}')]
        return [
            self._step(f'{resource}/{name}', action, lambda name=name: deleter(name))
            for name in names
        ]

    # ── S3 bucket ─────────────────────────────────────────────────

    def _cleanup_bucket(self, account: CloudAccount, bucket: str) -> list[CleanupStep]:
        resource = f's3_bucket/{bucket}'
        try:
            s3 = self._client_factory('s3', account)
        except BotoCoreError as exc:
            return [CleanupStep(resource, 'delete_bucket', STEP_FAILED, str(exc))]
        empty = self._step(resource, 'empty_bucket', lambda: self._empty_bucket(s3, bucket))
        if empty.outcome == STEP_ALREADY_GONE:
            return [CleanupStep(resource, 'delete_bucket', STEP_ALREADY_GONE)]
        steps = [empty]
        steps.append(self._step(resource, 'delete_bucket', lambda: s3.delete_bucket(Bucket=bucket)))
        return steps

    @staticmethod
    def _empty_bucket(s3: Any, bucket: str) -> None:
        paginator = s3.get_paginator('list_object_versions')
        batch: list[dict[str, str]] = []
        for page in paginator.paginate(Bucket=bucket):
            for entry in page.get('Versions', []) + page.get('DeleteMarkers', []):
                batch.append({'Key': entry['Key'], 'VersionId': entry['VersionId']})
                if len(batch) == _DELETE_BATCH:
                    s3.delete_objects(Bucket=bucket, Delete={'Objects': batch, 'Quiet': True})
                    batch = []
        if batch:
            s3.delete_objects(Bucket=bucket, Delete={'Objects': batch, 'Quiet': True})
