"""Monitoring and observability setup.

Tracing and metrics are exported over OTLP when OTEL_ENABLED is set.
Otherwise the OpenTelemetry API hands out no-op tracers and instruments,
so business code can record spans and metrics unconditionally.

Exemplars are attached automatically to histogram metrics recorded
inside an active trace context (checkout amount, payment duration).
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

from config import API_VERSION, OTEL_ENABLED, OTEL_EXPORTER_OTLP_ENDPOINT, PYROSCOPE_SERVER, SERVICE_NAME

logger = logging.getLogger(__name__)


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": API_VERSION
    })


def init_tracing() -> trace.Tracer:
    """
    Route spans to the collector over OTLP gRPC.

    Returns:
        Tracer instance
    """
    tracer_provider = TracerProvider(resource=_resource())
    otlp_span_exporter = OTLPSpanExporter(
        endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
        insecure=True
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
    trace.set_tracer_provider(tracer_provider)

    logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Export metrics to the collector every 5 seconds.

    Returns:
        Meter instance
    """
    otlp_metric_exporter = OTLPMetricExporter(
        endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
        insecure=True
    )
    otlp_metric_reader = PeriodicExportingMetricReader(
        otlp_metric_exporter,
        export_interval_millis=5000
    )

    meter_provider = MeterProvider(
        resource=_resource(),
        metric_readers=[otlp_metric_reader]
    )
    metrics.set_meter_provider(meter_provider)

    logger.info("Metrics initialized with OTLP exporter")

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Initialize Pyroscope profiling."""
    import pyroscope

    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": "demo"}
        )
        logger.info(f"Profiling initialized with server: {PYROSCOPE_SERVER}")
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


# Initialize tracer and meter
if OTEL_ENABLED:
    tracer = init_tracing()
    meter = init_metrics()
else:
    tracer = trace.get_tracer(__name__)
    meter = metrics.get_meter(__name__)

# Business metrics using OpenTelemetry

# Cart metrics
cart_additions_counter = meter.create_counter(
    "storefront.cart.additions",
    description="Total number of items added to cart",
    unit="1"
)

cart_count_cache_counter = meter.create_counter(
    "storefront.cart.count_cache",
    description="Cart badge count lookups by cache result (hit, miss, error)",
    unit="1"
)

# Checkout metrics
checkout_counter = meter.create_counter(
    "storefront.checkouts",
    description="Total number of checkout attempts by outcome",
    unit="1"
)

checkout_amount_histogram = meter.create_histogram(
    "storefront.checkout.amount",
    description="Checkout total including tax",
    unit="1"
)

payment_duration_histogram = meter.create_histogram(
    "storefront.payment.duration",
    description="Payment processing duration",
    unit="s"
)

cart_validation_issues_counter = meter.create_counter(
    "storefront.checkout.validation_issues",
    description="Cart lines rejected during checkout validation, by issue kind",
    unit="1"
)

# Order ledger metrics
order_status_transitions_counter = meter.create_counter(
    "storefront.orders.status_transitions",
    description="Order status changes by target status and mode (single, bulk)",
    unit="1"
)

stock_restocked_counter = meter.create_counter(
    "storefront.inventory.restocked",
    description="Units returned to stock by order cancellations",
    unit="1"
)

lock_timeouts_counter = meter.create_counter(
    "storefront.db.lock_timeouts",
    description="Transactions aborted waiting for a row lock",
    unit="1"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "storefront.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "storefront.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

rate_limit_exceeded_counter = meter.create_counter(
    "storefront.rate_limit.exceeded",
    description="Total number of rate limit violations",
    unit="1"
)

suspicious_activity_counter = meter.create_counter(
    "storefront.security.suspicious_activity",
    description="Total number of suspicious activity detections",
    unit="1"
)
