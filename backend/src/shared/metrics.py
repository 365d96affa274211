from opentelemetry import metrics
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource


def setup_metrics(app_name: str, app_env: str = "development") -> MeterProvider:
    """Configure OpenTelemetry metrics for the provisioning service."""

    resource = Resource.create({"service.name": app_name, "deployment.environment": app_env})

    # Reader 1: Prometheus (pull model)
    prometheus_reader = PrometheusMetricReader()

    # Reader 2: Console, exported once a minute during provisioning runs
    console_reader = PeriodicExportingMetricReader(
        ConsoleMetricExporter(), export_interval_millis=60_000
    )

    provider = MeterProvider(resource=resource, metric_readers=[prometheus_reader, console_reader])

    metrics.set_meter_provider(provider)
    return provider
