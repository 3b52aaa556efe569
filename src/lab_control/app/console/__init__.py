from .federation import (
    ConsoleAccess,
    ConsoleFederation,
    StsTokenExchanger,
    clamp_session_seconds,
)

__all__ = [
    'ConsoleAccess',
    'ConsoleFederation',
    'StsTokenExchanger',
    'clamp_session_seconds',
]
