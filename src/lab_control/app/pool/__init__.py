from .accounts import (
    AccountPool,
    AccountPoolConfigError,
    AdminCredentials,
    CloudAccount,
    load_account_pool,
)
from .guard import ConcurrencyGuard, Lease

__all__ = [
    'AccountPool',
    'AccountPoolConfigError',
    'AdminCredentials',
    'CloudAccount',
    'ConcurrencyGuard',
    'Lease',
    'load_account_pool',
]
