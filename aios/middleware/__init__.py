"""AIOS Middleware Package"""

from .correlation import (
    CorrelationIdMiddleware,
    CorrelationIdFilter,
    correlation_scope,
    get_correlation_id,
    correlation_id_var,
)

__all__ = [
    "CorrelationIdMiddleware",
    "CorrelationIdFilter",
    "correlation_scope",
    "get_correlation_id",
    "correlation_id_var",
]
