"""Logging, metrics and request correlation for the lab control plane.

Quick start::

    from lab_control.observability import configure_logging, get_logger
    from lab_control.observability.metrics import metrics_text

    configure_logging()
"""

from .logging import bound_lab_context, configure_logging, get_logger, request_id_ctx
from .metrics import metrics_text

__all__ = [
    "bound_lab_context",
    "configure_logging",
    "get_logger",
    "metrics_text",
    "request_id_ctx",
]
