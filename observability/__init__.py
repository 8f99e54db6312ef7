"""Observability package for Pathfinder."""

from .logging import (
    setup_logging,
    setup_logging_from_settings,
    new_request_id,
    current_request_id,
    JSONFormatter,
    ColoredFormatter,
)
from .metrics import (
    setup_prometheus_metrics,
    record_query,
    PrometheusMiddleware,
    pathfinder_registry,
)

__all__ = [
    'setup_logging',
    'setup_logging_from_settings',
    'new_request_id',
    'current_request_id',
    'JSONFormatter',
    'ColoredFormatter',
    'setup_prometheus_metrics',
    'record_query',
    'PrometheusMiddleware',
    'pathfinder_registry',
]
