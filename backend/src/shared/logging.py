import logging
import sys

from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, ConsoleLogRecordExporter
from opentelemetry.sdk.resources import Resource

from .config import settings

STREAM_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | None = None) -> LoggerProvider:
    """Route stdlib logging through OpenTelemetry and echo it to stdout.

    Safe to call more than once: handlers installed by an earlier call are
    replaced rather than duplicated.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    root = logging.getLogger()

    resource = Resource.create(
        {"service.name": settings.APP_NAME, "deployment.environment": settings.APP_ENV}
    )
    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(ConsoleLogRecordExporter()))
    set_logger_provider(logger_provider)

    for existing in [h for h in root.handlers if getattr(h, "_provisioning", False)]:
        root.removeHandler(existing)

    otel_handler = LoggingHandler(level=getattr(logging, level_name), logger_provider=logger_provider)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter(STREAM_FORMAT))
    for handler in (otel_handler, stream_handler):
        handler._provisioning = True
        root.addHandler(handler)
    root.setLevel(level_name)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logger_provider


logger = logging.getLogger("device_provisioning")
