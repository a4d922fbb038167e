"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for ingestion, caches, snapshots and remote latency

Both are initialised once at startup; the metric objects are module-level so
engine components can import and update them without a handle to the app.
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

from starfield.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
INGESTION_PAGES_TOTAL = Counter(
    "starfield_ingestion_pages_total",
    "Remote pages merged into the entity store",
    ["outcome"],  # 'merged' | 'empty' | 'error' | 'fallback'
)

INGESTION_MEMBERS_TOTAL = Counter(
    "starfield_ingestion_members_total",
    "Members newly discovered by ingestion",
)

CACHE_LOOKUPS_TOTAL = Counter(
    "starfield_cache_lookups_total",
    "Cache lookups by cache name and outcome",
    ["cache", "outcome"],  # outcome: 'hit' | 'miss' | 'expired' | 'version'
)

STALE_RESULTS_TOTAL = Counter(
    "starfield_stale_results_discarded_total",
    "Async results dropped because their generation was superseded",
    ["scope"],
)

SNAPSHOT_SAVES_TOTAL = Counter(
    "starfield_snapshot_saves_total",
    "Snapshot save attempts by outcome",
    ["outcome"],  # 'full' | 'reduced' | 'skipped'
)

SNAPSHOT_BYTES = Gauge(
    "starfield_snapshot_bytes",
    "Size of the last persisted snapshot document",
)

STORE_SLOTS = Gauge(
    "starfield_entity_store_slots",
    "Render slots currently assigned in the entity store",
)

REMOTE_LATENCY = Histogram(
    "starfield_remote_request_seconds",
    "Latency of remote data service requests",
    ["resource"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
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

    if settings.tracing_enabled:
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

    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
