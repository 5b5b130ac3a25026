"""
Observability for the knowledge service.

Provides:
- Structured JSON logging with request correlation
- Prometheus metrics for HTTP and knowledge pipelines
"""
from ravenloom.observability.logging import (
    CorrelatedJsonFormatter,
    clear_request_context,
    get_json_logger,
    get_request_id,
    set_request_context,
    setup_logging,
)

__all__ = [
    "CorrelatedJsonFormatter",
    "clear_request_context",
    "get_json_logger",
    "get_request_id",
    "set_request_context",
    "setup_logging",
]
