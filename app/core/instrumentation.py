"""Session Router – Instrumentation.

structlog configuration (with PII masking) and Prometheus metrics,
labelled by tenant.
"""

import logging

import structlog
from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    generate_latest,
)

from app.integrations.pii_filter import filter_log_record

router = APIRouter(tags=["monitoring"])

DISPATCH_COUNT = Counter(
    "router_outbound_dispatch_total",
    "Outbound dispatch results by outcome and tenant",
    ["outcome", "tenant_id"],
)

CASCADE_COUNT = Counter(
    "router_outbound_cascade_total",
    "Channel send failures that cascaded to the next candidate",
    ["tenant_id"],
)

INBOUND_COUNT = Counter(
    "router_inbound_events_total",
    "Inbound transport events by outcome",
    ["outcome"],
)

CONNECTED_SESSIONS = Gauge(
    "router_connected_sessions",
    "Number of WhatsApp sessions currently connected",
)


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(level: str = "info") -> None:
    """Configure structlog with PII masking."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_log_record,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName((level or "info").upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
