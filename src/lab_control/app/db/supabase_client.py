"""Async PostgREST client for the Supabase-hosted session store.

The only place that speaks HTTP to the record store. Filters use the
PostgREST operator syntax (``eq.``, ``in.(...)``); the ``lab`` schema is
selected through ``Accept-Profile``/``Content-Profile`` headers.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

import httpx

from .errors import StoreAuthError, StoreConflictError, StoreError

Filters = Mapping[str, tuple[str, Any] | Any]

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _split_schema_table(table: str, default_schema: str) -> tuple[str, str]:
    if '.' in table:
        schema, name = table.split('.', 1)
        return schema.strip(), name.strip()
    return default_schema, table.strip()


def encode_filter_value(op: str, value: Any) -> str:
    if op == 'is':
        if value is None:
            return 'null'
        return 'true' if value is True else 'false' if value is False else str(value)
    if op == 'in':
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError('in operator requires an iterable of values')
        items = [json.dumps(v) if isinstance(v, str) else str(v) for v in sorted(value, key=str)]
        return f"({','.join(items)})"
    if value is None:
        raise ValueError(f"{op} does not support None; use op='is'")
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def filters_to_params(filters: Filters | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for column, spec in (filters or {}).items():
        if isinstance(spec, tuple) and len(spec) == 2:
            op, value = spec
        else:
            op, value = 'eq', spec
        params[str(column)] = f'{op}.{encode_filter_value(str(op), value)}'
    return params


class SupabaseClient:
    """Minimal service-role PostgREST client returning row dicts."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        default_schema: str = 'public',
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        if not supabase_url:
            raise ValueError('supabase_url is required')
        if not service_role_key:
            raise ValueError('service_role_key is required')
        self._base = supabase_url.rstrip('/') + '/rest/v1'
        self._key = service_role_key
        self._default_schema = default_schema
        self._timeout = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    def _headers(self, schema: str, method: str, *, represent: bool) -> dict[str, str]:
        # Never log these headers.
        headers = {
            'apikey': self._key,
            'Authorization': f'Bearer {self._key}',
            'Accept-Profile': schema,
        }
        if method != 'GET':
            headers['Content-Profile'] = schema
        if represent:
            headers['Prefer'] = 'return=representation'
        return headers

    @staticmethod
    def _raise_for_error(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        message, code, details = resp.text, None, None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get('message') or message
                code = payload.get('code')
                details = payload.get('details')
        except ValueError:
            pass
        if resp.status_code in (401, 403):
            err_cls: type[StoreError] = StoreAuthError
        elif resp.status_code == 409:
            err_cls = StoreConflictError
        else:
            err_cls = StoreError
        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
        )

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> list[dict[str, Any]]:
        schema, name = _split_schema_table(table, self._default_schema)
        resp = await self._client.request(
            method,
            f'{self._base}/{name}',
            params=params,
            json=json_body,
            headers=self._headers(schema, method, represent=method != 'GET'),
            timeout=self._timeout,
        )
        self._raise_for_error(resp)
        payload = resp.json()
        if not isinstance(payload, list):
            raise StoreError(status_code=500, message=f'expected list response from {method}')
        return payload

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = filters_to_params(filters)
        params['select'] = '*'
        if limit is not None:
            params['limit'] = str(int(limit))
        if order:
            params['order'] = order
        return await self._send('GET', table, params=params)

    async def insert(self, table: str, row: Mapping[str, Any]) -> list[dict[str, Any]]:
        return await self._send('POST', table, json_body=dict(row))

    async def update(
        self, table: str, filters: Filters, data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        return await self._send(
            'PATCH', table, params=filters_to_params(filters), json_body=dict(data),
        )
