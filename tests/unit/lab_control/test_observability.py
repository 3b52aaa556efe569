"""Tests for logging processors, path normalization and request ids."""

import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient

from lab_control.observability import bound_lab_context, request_id_ctx
from lab_control.observability.logging import REDACTED, redact_secrets
from lab_control.observability.middleware import RequestIdMiddleware, normalize_path


class TestRedactSecrets:
    def test_masks_credential_keys(self):
        event = redact_secrets(None, 'info', {
            'event': 'lab_session_active',
            'password': 'pw',
            'Secret_Access_Key': 'sk',
            'session_token': None,
            'account_id': '111',
        })
        assert event['password'] == REDACTED
        assert event['Secret_Access_Key'] == REDACTED
        assert event['session_token'] is None
        assert event['account_id'] == '111'


class TestBoundLabContext:
    def test_binds_and_resets(self):
        structlog.contextvars.clear_contextvars()
        with bound_lab_context(session_id='s1', lab_id='lab-a'):
            assert structlog.contextvars.get_contextvars() == {
                'session_id': 's1', 'lab_id': 'lab-a',
            }
        assert structlog.contextvars.get_contextvars() == {}


class TestNormalizePath:
    def test_collapses_ids(self):
        assert normalize_path('/api/v1/sessions/abc-123/end') == '/api/v1/sessions/{session_id}/end'
        assert normalize_path('/api/v1/labs/intro-s3/start') == '/api/v1/labs/{lab_id}/start'
        assert normalize_path('/health') == '/health'


def _echo_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get('/rid')
    async def rid():
        return {'request_id': request_id_ctx.get()}

    return app


class TestRequestIdMiddleware:
    def test_keeps_valid_incoming_id(self):
        with TestClient(_echo_app()) as client:
            resp = client.get('/rid', headers={'X-Request-ID': 'abcdef12-3456'})
        assert resp.headers['X-Request-ID'] == 'abcdef12-3456'
        assert resp.json()['request_id'] == 'abcdef12-3456'

    def test_replaces_malformed_id(self):
        with TestClient(_echo_app()) as client:
            resp = client.get('/rid', headers={'X-Request-ID': 'bad id; drop table'})
        rid = resp.headers['X-Request-ID']
        assert rid != 'bad id; drop table'
        assert resp.json()['request_id'] == rid
        assert len(rid) == 36
