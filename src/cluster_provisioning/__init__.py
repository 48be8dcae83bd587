"""Provision a database cluster over its HTTP management API."""

from .errors import (
    ConfigurationError,
    ConvergenceTimeoutError,
    InvalidStateTransition,
    ProvisioningError,
    ServiceNotFoundError,
)
from .settings import ConnectionOptions

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ConnectionOptions",
    "ConvergenceTimeoutError",
    "InvalidStateTransition",
    "ProvisioningError",
    "ServiceNotFoundError",
]
