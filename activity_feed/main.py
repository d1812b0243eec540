"""
Activity Feed API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Start async HTTP clients (entity gateway, aggregation RPC)
  3. Build the query cache (in-process, or Redis when configured)
  4. Build the transform pipeline and the live subscription manager (Kafka)
  5. Assemble the ActivityFeedService and hang it on app.state
  6. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
import redis.asyncio as aioredis
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from activity_feed.cache import create_cache
from activity_feed.clients.aggregation_client import AggregationClient
from activity_feed.clients.entity_gateway import HttpEntityGateway
from activity_feed.clients.event_source import KafkaEventSource
from activity_feed.config import settings
from activity_feed.pipeline import TransformPipeline
from activity_feed.routers import feed
from activity_feed.service import ActivityFeedService
from activity_feed.subscriptions import SubscriptionManager
from activity_feed.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Activity Feed API (env=%s)", settings.environment)
    setup_tracing()

    gateway = HttpEntityGateway()
    aggregation = AggregationClient()
    await gateway.start()
    await aggregation.start()

    redis = None
    if settings.feed_cache_backend == "redis":
        redis = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            decode_responses=True,
        )
        await redis.ping()
        logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)

    subscriptions = SubscriptionManager(
        source=KafkaEventSource(),
        pipeline=TransformPipeline(gateway),
    )
    service = ActivityFeedService(
        backend=aggregation,
        cache=create_cache(redis),
        subscriptions=subscriptions,
    )
    app.state.feed_service = service

    logger.info(
        "Feed cache: %s (ttl=%ss). API ready.",
        settings.feed_cache_backend, settings.feed_cache_ttl_seconds,
    )
    yield

    logger.info("Shutting down...")
    try:
        await service.cleanup()
    finally:
        await aggregation.stop()
        await gateway.stop()
        if redis is not None:
            await redis.aclose()


app = FastAPI(
    title="Activity Feed API",
    description=(
        "Privacy-filtered activity feed: paged aggregation with a short-TTL "
        "cache, plus live pushes from six mutation sources."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(feed.router, prefix="/feed", tags=["Feed"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
