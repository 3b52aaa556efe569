"""Infrastructure drivers: Terraform with direct-API fallback, and a fake."""

from .aws_cleanup import DirectApiCleaner
from .base import (
    CAPABILITIES,
    CleanupStep,
    DestroyReport,
    InfrastructureDriver,
    ProvisionResult,
    build_template_vars,
    bucket_name_for,
    principal_name_for,
)
from .driver import TerraformInfrastructureDriver
from .inmemory import InMemoryInfrastructureDriver
from .terraform import (
    TerraformCommandError,
    TerraformError,
    TerraformNotFoundError,
    TerraformRunner,
    TerraformTimeout,
)

__all__ = [
    'CAPABILITIES',
    'CleanupStep',
    'DestroyReport',
    'DirectApiCleaner',
    'InMemoryInfrastructureDriver',
    'InfrastructureDriver',
    'ProvisionResult',
    'TerraformCommandError',
    'TerraformError',
    'TerraformInfrastructureDriver',
    'TerraformNotFoundError',
    'TerraformRunner',
    'TerraformTimeout',
    'build_template_vars',
    'bucket_name_for',
    'principal_name_for',
]
