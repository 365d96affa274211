from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from provisioning.api import auth as auth_api
from provisioning.api import devices as devices_api
from provisioning.ca.artifact_store import FileArtifactStore
from provisioning.ca.authority_manager import AuthorityManager, AuthoritySubject
from provisioning.ca.issuance_engine import IssuanceEngine
from provisioning.services.bootstrap import bootstrap_operator_key_if_needed
from shared.config import Settings, settings
from shared.database import dispose_engine, engine
from shared.logging import logger, setup_logging
from shared.metrics import setup_metrics


# Setup OpenTelemetry Tracing
def setup_tracing() -> None:
    resource = Resource.create({"service.name": settings.APP_NAME})
    provider = TracerProvider(resource=resource)

    processor = BatchSpanProcessor(ConsoleSpanExporter())
    provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)


def build_components(config: Settings) -> tuple[AuthorityManager, IssuanceEngine]:
    """Wire the authority manager and issuance engine from settings."""
    subject = AuthoritySubject(
        country=config.CA_COUNTRY,
        state=config.CA_STATE,
        locality=config.CA_LOCALITY,
        organization=config.CA_ORGANIZATION,
        common_name=config.CA_COMMON_NAME,
    )
    authority = AuthorityManager(FileArtifactStore(config.CA_DIR), subject=subject)
    issuance = IssuanceEngine(
        authority,
        FileArtifactStore(config.DEVICE_CERTS_DIR),
        dns_suffix=config.DEVICE_DNS_SUFFIX,
        validity_days=config.CERT_VALIDITY_DAYS,
    )
    return authority, issuance


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    setup_logging()
    setup_tracing()
    setup_metrics(settings.APP_NAME, settings.APP_ENV)

    LoggingInstrumentor().instrument(set_logging_format=True)
    SQLAlchemyInstrumentor().instrument(
        engine=engine.sync_engine
    )  # Need sync engine for instrumentation usually

    # Initialize Certificate Authority components
    authority, issuance = build_components(settings)
    openssl_version = authority.validate_prerequisites()
    issuance.store.ensure_ready()
    logger.info("provisioning_ready", extra={"openssl_version": openssl_version})

    devices_api.set_provisioning_components(
        authority, issuance, timeout_seconds=settings.ISSUANCE_TIMEOUT_SECONDS
    )

    api_key_hash, _ = bootstrap_operator_key_if_needed(settings.OPERATOR_API_KEY_HASH)
    auth_api.set_operator_key_hash(api_key_hash)

    yield
    # Shutdown
    await dispose_engine()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# Instrument FastAPI
FastAPIInstrumentor.instrument_app(app)

app.include_router(devices_api.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok", "service": settings.APP_NAME}
