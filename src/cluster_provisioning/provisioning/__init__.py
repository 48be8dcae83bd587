"""Provisioning orchestrators and their building blocks."""

from .convergence import (
    DEFAULT_POLICY,
    ConvergencePolicy,
    ConvergencePoller,
    coerce_count,
)
from .sample_bucket import SampleBucketOrchestrator
from .search_index import SearchIndexOrchestrator, load_index_definition
from .service_locator import (
    ServiceAddress,
    find_service_address,
    locate_service,
    service_port_key,
)
from .state_machine import (
    ALLOWED_TRANSITIONS,
    SAMPLE_BUCKET,
    SEARCH_INDEX,
    OrchestrationState,
    PollState,
    drive,
    observe,
    start_run,
    transition,
)

__all__ = [
    'ALLOWED_TRANSITIONS',
    'ConvergencePolicy',
    'ConvergencePoller',
    'DEFAULT_POLICY',
    'OrchestrationState',
    'PollState',
    'SAMPLE_BUCKET',
    'SEARCH_INDEX',
    'SampleBucketOrchestrator',
    'SearchIndexOrchestrator',
    'ServiceAddress',
    'coerce_count',
    'drive',
    'find_service_address',
    'load_index_definition',
    'locate_service',
    'observe',
    'service_port_key',
    'start_run',
    'transition',
]
