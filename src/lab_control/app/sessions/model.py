"""Lab-session domain records.

``LabSession`` is the row-level representation of ``lab.lab_sessions``.
``CredentialBundle`` groups the secrets issued to a learner; it is only
populated once a session reaches ``ACTIVE`` and is cleared on ``ENDED``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from .state_machine import ACTIVE, ENDED, LIVE_STATUSES, PENDING

_DATETIME_FIELDS = ('expires_at', 'started_at', 'ended_at', 'updated_at')

# Columns wiped when a session ends.
CREDENTIAL_FIELDS = (
    'password',
    'access_key_id',
    'secret_access_key',
    'session_token',
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CredentialBundle:
    """Secrets granting access to the provisioned principal."""

    access_key_id: str
    secret_access_key: str
    session_token: str | None = None
    username: str | None = None
    password: str | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f'CredentialBundle(access_key_id={self.access_key_id!r}, '
            f'username={self.username!r}, secret_access_key=***)'
        )


@dataclass
class LabSession:
    """One learner's time-boxed claim on a provisioned sandbox."""

    id: str
    lab_id: str
    user_id: str
    account_id: str
    status: str = PENDING
    region: str | None = None
    principal_name: str | None = None
    password: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None
    resource_ids: dict[str, str] = field(default_factory=dict)
    # Capability flags the sandbox was provisioned with; destroy reuses them.
    template_vars: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    end_reason: str | None = None
    last_error_code: str | None = None
    last_error_detail: str | None = None
    cleanup_warnings: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_ended(self) -> bool:
        return self.status == ENDED

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def credentials(self) -> CredentialBundle | None:
        """Return the credential bundle, or None before ``ACTIVE``."""
        if self.status != ACTIVE or not self.access_key_id:
            return None
        return CredentialBundle(
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key or '',
            session_token=self.session_token,
            username=self.principal_name,
            password=self.password,
            expires_at=self.expires_at,
        )

    # ── Serialization ────────────────────────────────────────────

    def to_row(self) -> dict[str, Any]:
        """Serialize for the record store (datetimes as ISO strings)."""
        row: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, (dict, list)):
                value = type(value)(value)
            row[f.name] = value
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> LabSession:
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        for name in _DATETIME_FIELDS:
            value = data.get(name)
            if isinstance(value, str):
                data[name] = datetime.fromisoformat(value)
        if data.get('resource_ids') is None:
            data['resource_ids'] = {}
        if data.get('template_vars') is None:
            data['template_vars'] = {}
        if data.get('cleanup_warnings') is None:
            data['cleanup_warnings'] = []
        return cls(**data)

    def to_public(self) -> dict[str, Any]:
        """Caller-facing payload; credentials only while ``ACTIVE``."""
        payload: dict[str, Any] = {
            'session_id': self.id,
            'lab_id': self.lab_id,
            'status': self.status,
            'account_id': self.account_id,
            'region': self.region,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'last_error_code': self.last_error_code,
            'last_error_detail': self.last_error_detail,
        }
        creds = self.credentials()
        if creds is not None:
            payload['credentials'] = {
                'account_id': self.account_id,
                'username': creds.username,
                'password': creds.password,
                'access_key_id': creds.access_key_id,
                'secret_access_key': creds.secret_access_key,
                'session_token': creds.session_token,
                'region': self.region,
                **self.resource_ids,
            }
        return payload
