"""Provisioning error hierarchy.

Transport failures never show up here: the API client absorbs them by
retrying. What remains are the conditions an operator has to act on.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base class for cluster provisioning errors."""


class ConfigurationError(ProvisioningError, ValueError):
    """Raised when connection options are missing or invalid."""


class ConvergenceTimeoutError(ProvisioningError):
    """Progress never reached the expected count before the poll deadline.

    This is fatal: the cluster is not healthy and retrying would loop forever.
    """

    def __init__(
        self,
        resource: str,
        *,
        elapsed_seconds: float,
        observed_count: int,
        expected_count: int,
    ) -> None:
        self.resource = resource
        self.elapsed_seconds = elapsed_seconds
        self.observed_count = observed_count
        self.expected_count = expected_count
        super().__init__(
            f'{resource} did not converge within {elapsed_seconds:.0f}s '
            f'({observed_count}/{expected_count} documents)'
        )


class InvalidStateTransition(ProvisioningError):
    """Raised for transitions not allowed by an orchestration state machine."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


class ServiceNotFoundError(ProvisioningError):
    """No node advertised ``service`` for ``bucket`` before the locate deadline."""

    def __init__(self, service: str, bucket: str, *, elapsed_seconds: float) -> None:
        self.service = service
        self.bucket = bucket
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f'no {service} service found for bucket {bucket!r} '
            f'within {elapsed_seconds:.0f}s'
        )
