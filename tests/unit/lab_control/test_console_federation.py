"""Tests for console sign-in URL generation."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from botocore.exceptions import ClientError

from lab_control.app.console.federation import (
    MAX_SESSION_SECONDS,
    MIN_SESSION_SECONDS,
    ConsoleFederation,
    StsTokenExchanger,
    clamp_session_seconds,
)
from lab_control.app.errors import FederationFailed
from lab_control.app.sessions.model import CredentialBundle

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
ENDPOINT = 'https://signin.example.com/federation'


def _bundle(**kw) -> CredentialBundle:
    defaults = dict(
        access_key_id='ASIATEMP',
        secret_access_key='temp-secret',
        session_token='temp-token',
        username='lab-user-abc',
        expires_at=NOW + timedelta(hours=1),
    )
    defaults.update(kw)
    return CredentialBundle(**defaults)


def _federation(handler, *, sts=None, session_seconds=3600) -> ConsoleFederation:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ConsoleFederation(
        endpoint=ENDPOINT,
        session_seconds=session_seconds,
        http_client=client,
        sts=sts or StsTokenExchanger(lambda region, bundle: MagicMock()),
    )


class TestClamp:
    def test_bounds(self):
        assert clamp_session_seconds(60, now=NOW, valid_until=None) == MIN_SESSION_SECONDS
        assert clamp_session_seconds(10**6, now=NOW, valid_until=None) == MAX_SESSION_SECONDS

    def test_never_outlives_credentials(self):
        valid_until = NOW + timedelta(minutes=20)
        assert clamp_session_seconds(3600, now=NOW, valid_until=valid_until) == 1200

    def test_too_little_time_left(self):
        with pytest.raises(FederationFailed):
            clamp_session_seconds(3600, now=NOW, valid_until=NOW + timedelta(minutes=5))


class TestGenerateConsoleUrl:
    @pytest.mark.asyncio
    async def test_builds_login_url(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen['params'] = dict(request.url.params)
            return httpx.Response(200, json={'SigninToken': 'tok-123'})

        access = await _federation(handler).generate_console_url('eu-west-1', _bundle(), now=NOW)

        assert seen['params']['Action'] == 'getSigninToken'
        assert seen['params']['SessionDuration'] == '3600'
        assert json.loads(seen['params']['Session']) == {
            'sessionId': 'ASIATEMP',
            'sessionKey': 'temp-secret',
            'sessionToken': 'temp-token',
        }
        parts = urlsplit(access.url)
        query = parse_qs(parts.query)
        assert f'{parts.scheme}://{parts.netloc}{parts.path}' == ENDPOINT
        assert query['Action'] == ['login']
        assert query['SigninToken'] == ['tok-123']
        assert query['Destination'] == ['https://eu-west-1.console.aws.amazon.com/']
        assert access.expires_at == NOW + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_expiry_bounded_by_bundle(self):
        async def handler(request):
            return httpx.Response(200, json={'SigninToken': 't'})

        bundle = _bundle(expires_at=NOW + timedelta(minutes=30))
        access = await _federation(handler).generate_console_url('us-east-1', bundle, now=NOW)
        assert access.expires_at <= bundle.expires_at

    @pytest.mark.asyncio
    async def test_long_lived_keys_exchanged_first(self):
        sts_client = MagicMock()
        sts_client.get_federation_token.return_value = {'Credentials': {
            'AccessKeyId': 'ASIAFED',
            'SecretAccessKey': 'fed-secret',
            'SessionToken': 'fed-token',
            'Expiration': NOW + timedelta(hours=1),
        }}
        seen = {}

        async def handler(request):
            seen['session'] = json.loads(request.url.params['Session'])
            return httpx.Response(200, json={'SigninToken': 't'})

        federation = _federation(
            handler, sts=StsTokenExchanger(lambda region, bundle: sts_client),
        )
        bundle = _bundle(
            access_key_id='AKIALONG', session_token=None,
            username='lab-a-very-long-principal-name-over-32',
        )
        await federation.generate_console_url('us-east-1', bundle, now=NOW)

        kwargs = sts_client.get_federation_token.call_args.kwargs
        assert len(kwargs['Name']) <= 32
        assert kwargs['DurationSeconds'] == 3600
        assert 'Policy' in kwargs
        assert seen['session']['sessionId'] == 'ASIAFED'

    @pytest.mark.asyncio
    async def test_sts_error_is_federation_failure(self):
        sts_client = MagicMock()
        sts_client.get_federation_token.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'no'}}, 'GetFederationToken',
        )

        async def handler(request):
            raise AssertionError('federation endpoint must not be called')

        federation = _federation(handler, sts=StsTokenExchanger(lambda r, b: sts_client))
        with pytest.raises(FederationFailed, match='exchange'):
            await federation.generate_console_url('us-east-1', _bundle(session_token=None), now=NOW)

    @pytest.mark.asyncio
    @pytest.mark.parametrize('response', [
        httpx.Response(500, text='oops'),
        httpx.Response(200, json={}),
        httpx.Response(200, json=['SigninToken']),
        httpx.Response(200, text='<html>'),
    ])
    async def test_bad_responses(self, response):
        async def handler(request):
            return response

        with pytest.raises(FederationFailed):
            await _federation(handler).generate_console_url('us-east-1', _bundle(), now=NOW)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        async def handler(request):
            raise httpx.ConnectError('down', request=request)

        with pytest.raises(FederationFailed, match='unreachable') as exc_info:
            await _federation(handler).generate_console_url('us-east-1', _bundle(), now=NOW)
        assert exc_info.value.retryable
