"""Lab-session records, state machine and store."""

from .model import CredentialBundle, LabSession
from .repository import AccountClaimConflict, InMemoryLabSessionRepository, LabSessionRepository
from .state_machine import ACTIVE, ENDED, FAILED, PENDING, InvalidStateTransition

__all__ = [
    'ACTIVE',
    'AccountClaimConflict',
    'CredentialBundle',
    'ENDED',
    'FAILED',
    'InMemoryLabSessionRepository',
    'InvalidStateTransition',
    'LabSession',
    'LabSessionRepository',
    'PENDING',
]
