"""PostgREST error hierarchy for the session store.

Kept small and free of httpx types so repositories can raise and catch
them without leaking responses (or service keys) into logs.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False, slots=True)
class StoreError(Exception):
    """Base error for record-store requests."""

    status_code: int
    message: str
    code: str | None = None
    details: str | None = None

    def __str__(self) -> str:
        bits: list[str] = [f'StoreError(status={self.status_code})', self.message]
        if self.code:
            bits.append(f'code={self.code}')
        if self.details:
            bits.append(f'details={self.details}')
        return ' '.join(bits)


class StoreAuthError(StoreError):
    """401/403 (bad service key, row-level security)."""


class StoreConflictError(StoreError):
    """409 (unique violations such as the live-account index)."""
