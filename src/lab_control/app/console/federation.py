"""Console sign-in URL generation via the cloud federation endpoint.

Flow:
  1. If the bundle carries no session token (long-lived principal keys),
     exchange it for temporary credentials with STS ``GetFederationToken``.
  2. ``GET <endpoint>?Action=getSigninToken&Session=<json>&SessionDuration=N``
  3. Build ``<endpoint>?Action=login&Destination=<console>&SigninToken=<t>``.

Any failure raises ``FederationFailed``; callers treat it as non-fatal.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import urlencode

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from lab_control.observability import get_logger

from ..errors import FederationFailed
from ..sessions.model import CredentialBundle, utcnow

logger = get_logger(__name__)

DEFAULT_FEDERATION_ENDPOINT = 'https://signin.aws.amazon.com/federation'
MIN_SESSION_SECONDS = 900
MAX_SESSION_SECONDS = 43200
# GetFederationToken rejects longer names.
MAX_FEDERATION_NAME = 32

# Session policy for GetFederationToken. Effective permissions are the
# intersection with the principal's own policies.
PASSTHROUGH_POLICY = json.dumps({
    'Version': '2012-10-17',
    'Statement': [{'Effect': 'Allow', 'Action': '*', 'Resource': '*'}],
})

StsClientFactory = Callable[[str, CredentialBundle], Any]

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


@dataclass(frozen=True, slots=True)
class ConsoleAccess:
    url: str
    expires_at: datetime


def clamp_session_seconds(
    requested: int,
    *,
    now: datetime,
    valid_until: datetime | None,
) -> int:
    """Clamp to the federation limits and to the bundle's remaining life.

    Raises:
        FederationFailed: fewer than MIN_SESSION_SECONDS remain.
    """
    seconds = max(MIN_SESSION_SECONDS, min(int(requested), MAX_SESSION_SECONDS))
    if valid_until is not None:
        remaining = int((valid_until - now).total_seconds())
        if remaining < MIN_SESSION_SECONDS:
            raise FederationFailed(
                f'credentials expire in {max(remaining, 0)}s; '
                f'console sessions need at least {MIN_SESSION_SECONDS}s'
            )
        seconds = min(seconds, remaining)
    return seconds


def _default_sts_factory(region: str, bundle: CredentialBundle) -> Any:
    session = boto3.session.Session(
        aws_access_key_id=bundle.access_key_id,
        aws_secret_access_key=bundle.secret_access_key,
        region_name=region,
    )
    return session.client('sts')


class StsTokenExchanger:
    """Exchange long-lived principal keys for federation credentials."""

    def __init__(self, client_factory: StsClientFactory | None = None) -> None:
        self._client_factory = client_factory or _default_sts_factory

    def exchange_sync(
        self, region: str, bundle: CredentialBundle, *, name: str, duration_seconds: int,
    ) -> CredentialBundle:
        client = self._client_factory(region, bundle)
        response = client.get_federation_token(
            Name=name[:MAX_FEDERATION_NAME],
            DurationSeconds=duration_seconds,
            Policy=PASSTHROUGH_POLICY,
        )
        creds = response.get('Credentials')
        if not creds:
            raise FederationFailed('GetFederationToken returned no credentials')
        return CredentialBundle(
            access_key_id=creds['AccessKeyId'],
            secret_access_key=creds['SecretAccessKey'],
            session_token=creds['SessionToken'],
            username=bundle.username,
            expires_at=creds.get('Expiration'),
        )

    async def exchange(
        self, region: str, bundle: CredentialBundle, *, name: str, duration_seconds: int,
    ) -> CredentialBundle:
        try:
            return await asyncio.to_thread(
                self.exchange_sync,
                region,
                bundle,
                name=name,
                duration_seconds=duration_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise FederationFailed(f'temporary credential exchange failed: {exc}') from exc


class ConsoleFederation:
    """Builds console sign-in URLs for a credential bundle.

    Args:
        endpoint: Federation endpoint base URL.
        session_seconds: Requested console session length before clamping.
        http_client: Shared httpx client (one is created lazily if omitted).
        sts: Token exchanger for bundles without a session token.
    """

    def __init__(
        self,
        *,
        endpoint: str = DEFAULT_FEDERATION_ENDPOINT,
        session_seconds: int = 3600,
        http_client: httpx.AsyncClient | None = None,
        sts: StsTokenExchanger | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._endpoint = endpoint.rstrip('?')
        self._session_seconds = session_seconds
        self._client = http_client or _get_shared_async_client()
        self._sts = sts or StsTokenExchanger()
        self._timeout = timeout_seconds

    async def generate_console_url(
        self,
        region: str,
        bundle: CredentialBundle,
        *,
        now: datetime | None = None,
    ) -> ConsoleAccess:
        now = now or utcnow()
        duration = clamp_session_seconds(
            self._session_seconds, now=now, valid_until=bundle.expires_at,
        )

        if not bundle.session_token:
            bundle = await self._sts.exchange(
                region,
                bundle,
                name=bundle.username or 'lab-console',
                duration_seconds=duration,
            )

        token = await self._get_signin_token(bundle, duration)
        destination = f'https://{region}.console.aws.amazon.com/'
        url = f'{self._endpoint}?' + urlencode({
            'Action': 'login',
            'Destination': destination,
            'SigninToken': token,
        })
        return ConsoleAccess(url=url, expires_at=now + timedelta(seconds=duration))

    async def _get_signin_token(self, bundle: CredentialBundle, duration: int) -> str:
        session = json.dumps({
            'sessionId': bundle.access_key_id,
            'sessionKey': bundle.secret_access_key,
            'sessionToken': bundle.session_token,
        })
        try:
            resp = await self._client.get(
                self._endpoint,
                params={
                    'Action': 'getSigninToken',
                    'Session': session,
                    'SessionDuration': str(duration),
                },
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning('federation_request_failed', error=type(exc).__name__)
            raise FederationFailed(f'federation endpoint unreachable: {exc}') from exc

        if resp.status_code >= 400:
            logger.warning('federation_rejected', status=resp.status_code)
            raise FederationFailed(
                f'federation endpoint returned {resp.status_code}'
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise FederationFailed('federation endpoint returned invalid JSON') from exc
        token = payload.get('SigninToken') if isinstance(payload, dict) else None
        if not token:
            raise FederationFailed('no SigninToken in federation response')
        return token
