"""Account pool registry.

The pool is a fixed list of backing cloud accounts configured at process
start. Availability is never stored on the account objects; it is derived
on demand from the session store (an account is busy while any
PENDING/ACTIVE session references it).

Pool config format (``LAB_ACCOUNT_POOL_FILE`` or ``LAB_ACCOUNT_POOL_JSON``)::

    {
      "accounts": [
        {
          "id": "111111111111",
          "region": "us-east-1",
          "name": "lab-pool-1",
          "access_key_env": "LAB_POOL_1_ACCESS_KEY_ID",
          "secret_key_env": "LAB_POOL_1_SECRET_ACCESS_KEY",
          "template_dir": "deploy/terraform/lab-user"
        }
      ]
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

from lab_control.observability import get_logger

from ..errors import AccountPoolExhausted
from ..sessions.repository import LabSessionRepository
from ..sessions.state_machine import LIVE_STATUSES

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = 'deploy/terraform/lab-user'


class AccountPoolConfigError(ValueError):
    """Raised for malformed or empty account pool configuration."""


@dataclass(frozen=True, slots=True)
class AdminCredentials:
    """Administrative credentials for one backing account."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class CloudAccount:
    """One pre-provisioned backing account. Immutable."""

    id: str
    region: str
    admin_credentials: AdminCredentials
    template_dir: Path
    name: str = ''


class AccountPool:
    """Immutable registry of backing accounts plus availability queries."""

    def __init__(
        self,
        accounts: list[CloudAccount],
        repo: LabSessionRepository,
    ) -> None:
        if not accounts:
            raise AccountPoolConfigError('account pool is empty')
        ids = [a.id for a in accounts]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise AccountPoolConfigError(f'duplicate account ids: {dupes}')
        self._accounts = tuple(accounts)
        self._by_id = {a.id: a for a in accounts}
        self._repo = repo

    @property
    def size(self) -> int:
        return len(self._accounts)

    def __iter__(self) -> Iterator[CloudAccount]:
        return iter(self._accounts)

    def __len__(self) -> int:
        return len(self._accounts)

    def get(self, account_id: str) -> CloudAccount | None:
        return self._by_id.get(account_id)

    async def busy_account_ids(self) -> set[str]:
        live = await self._repo.list_by_status(LIVE_STATUSES)
        return {s.account_id for s in live}

    async def find_available_account(
        self, *, exclude: frozenset[str] = frozenset(),
    ) -> CloudAccount:
        """Return the first account not referenced by a live session.

        Raises:
            AccountPoolExhausted: every account is busy (retryable).
        """
        busy = await self.busy_account_ids() | set(exclude)
        for account in self._accounts:
            if account.id not in busy:
                return account
        logger.warning(
            'account_pool_exhausted', pool_size=self.size, busy=len(busy),
        )
        raise AccountPoolExhausted(
            'No cloud accounts available. Please try again later.'
        )


# ── Loading ─────────────────────────────────────────────────────────


def _resolve_secret(entry: Mapping[str, Any], key: str, env: Mapping[str, str]) -> str:
    env_name = entry.get(f'{key}_env')
    if env_name:
        value = env.get(str(env_name), '')
        if not value:
            raise AccountPoolConfigError(
                f'account {entry.get("id")!r}: environment variable '
                f'{env_name!r} is not set'
            )
        return value
    value = entry.get(key)
    if not value:
        raise AccountPoolConfigError(
            f'account {entry.get("id")!r}: {key} or {key}_env is required'
        )
    return str(value)


def parse_account(
    entry: Mapping[str, Any],
    *,
    env: Mapping[str, str],
    base_dir: Path | None = None,
) -> CloudAccount:
    account_id = str(entry.get('id') or '').strip()
    if not account_id:
        raise AccountPoolConfigError('account entry is missing "id"')
    region = str(entry.get('region') or '').strip()
    if not region:
        raise AccountPoolConfigError(f'account {account_id!r} is missing "region"')

    token_env = entry.get('session_token_env')
    credentials = AdminCredentials(
        access_key_id=_resolve_secret(entry, 'access_key', env),
        secret_access_key=_resolve_secret(entry, 'secret_key', env),
        session_token=env.get(str(token_env)) if token_env else None,
    )

    template_dir = Path(str(entry.get('template_dir') or DEFAULT_TEMPLATE_DIR))
    if not template_dir.is_absolute() and base_dir is not None:
        template_dir = base_dir / template_dir

    return CloudAccount(
        id=account_id,
        region=region,
        admin_credentials=credentials,
        template_dir=template_dir,
        name=str(entry.get('name') or ''),
    )


def load_account_pool(
    *,
    repo: LabSessionRepository,
    pool_file: str = '',
    pool_json: str = '',
    env: Mapping[str, str] | None = None,
) -> AccountPool:
    """Parse pool config and resolve credentials from the environment.

    ``pool_json`` wins over ``pool_file`` when both are set. Relative
    template directories resolve against the pool file's directory.
    """
    if env is None:
        env = dict(os.environ)

    base_dir: Path | None = None
    if pool_json:
        raw = pool_json
    elif pool_file:
        path = Path(pool_file)
        try:
            raw = path.read_text(encoding='utf-8')
        except OSError as exc:
            raise AccountPoolConfigError(
                f'cannot read account pool file {pool_file!r}: {exc}'
            ) from exc
        base_dir = path.resolve().parent
    else:
        raise AccountPoolConfigError('no account pool configured')

    try:
        doc = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AccountPoolConfigError(f'account pool is not valid JSON: {exc}') from exc

    entries = doc.get('accounts') if isinstance(doc, dict) else None
    if not isinstance(entries, list):
        raise AccountPoolConfigError('account pool must contain an "accounts" list')

    accounts = [parse_account(e, env=env, base_dir=base_dir) for e in entries]
    pool = AccountPool(accounts, repo)
    logger.info('account_pool_loaded', size=pool.size)
    return pool
