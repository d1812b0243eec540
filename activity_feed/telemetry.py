"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for the paged query, the cache, the transform
    pipeline and the live channels

Both are initialised once at startup and injected into FastAPI via middleware.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from prometheus_client import Counter, Gauge, Histogram

from activity_feed.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FEED_LATENCY = Histogram(
    "feed_latency_seconds",
    "Latency of a paged activity feed read (cache hits included)",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

FEED_CACHE_LOOKUPS = Counter(
    "feed_cache_lookups_total",
    "Query cache lookups in front of the aggregation backend",
    ["result"],  # 'hit' or 'miss'
)

FEED_BACKEND_ERRORS_TOTAL = Counter(
    "feed_backend_errors_total",
    "Aggregation backend calls that failed and returned an error page",
)

ACTIVITY_TRANSFORM_TOTAL = Counter(
    "activity_transform_total",
    "Raw mutation events run through the transform pipeline",
    ["kind", "outcome"],  # outcome: emitted | filtered | not_found | lookup_error | malformed
)

ACTIVE_SUBSCRIPTIONS = Gauge(
    "realtime_active_subscriptions",
    "Live activity channels currently registered",
)

REALTIME_RECONNECTS_TOTAL = Counter(
    "realtime_reconnects_total",
    "Reconnect attempts after a live channel dropped",
    ["result"],  # 'ok' or 'failed'
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Entity lookups and RPCs go through httpx; the shared cache may be Redis
    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
