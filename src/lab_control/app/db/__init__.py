"""Supabase (PostgREST) persistence for lab sessions and audit events."""

from .audit_emitter import SupabaseAuditEmitter
from .errors import StoreAuthError, StoreConflictError, StoreError
from .session_repo import SupabaseLabSessionRepository
from .supabase_client import SupabaseClient

__all__ = [
    'StoreAuthError',
    'StoreConflictError',
    'StoreError',
    'SupabaseAuditEmitter',
    'SupabaseClient',
    'SupabaseLabSessionRepository',
]
