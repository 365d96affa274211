"""OpenTelemetry metrics for the provisioning module."""

from collections.abc import Iterator

from opentelemetry import metrics

# Get meter for provisioning module
meter = metrics.get_meter("provisioning")

# ============================================================================
# Certificate Authority Metrics
# ============================================================================

authorities_bootstrapped_total = meter.create_counter(
    name="provisioning_authorities_bootstrapped_total",
    description="Total root CAs created",
    unit="1",
)

# CA loaded gauge - use a callback to report current state
_authority_state: str | None = None


def _get_authority_loaded(
    options: metrics.CallbackOptions,
) -> Iterator[metrics.Observation]:
    """Callback to report whether a CA is available."""
    if _authority_state:
        yield metrics.Observation(1, {"source": _authority_state})
    else:
        yield metrics.Observation(0, {"source": "none"})


authority_loaded_gauge = meter.create_observable_gauge(
    name="provisioning_authority_loaded",
    description="Root CA available (1=yes, 0=no)",
    unit="1",
    callbacks=[_get_authority_loaded],
)

# ============================================================================
# Issuance Metrics
# ============================================================================

device_certificates_issued_total = meter.create_counter(
    name="provisioning_device_certificates_issued_total",
    description="Total device certificates signed by the CA",
    unit="1",
)

device_certificate_issuance_duration = meter.create_histogram(
    name="provisioning_device_certificate_issuance_duration_seconds",
    description="Device certificate issuance duration in seconds",
    unit="s",
)

issuance_failures_total = meter.create_counter(
    name="provisioning_issuance_failures_total",
    description="Total failed issuance calls",
    unit="1",
)

# ============================================================================
# Registration Metrics
# ============================================================================

trust_anchor_uploads_total = meter.create_counter(
    name="provisioning_trust_anchor_uploads_total",
    description="Total CA trust-anchor uploads",
    unit="1",
)

equipment_created_total = meter.create_counter(
    name="provisioning_equipment_created_total",
    description="Total equipment inventory records created",
    unit="1",
)

devices_registered_total = meter.create_counter(
    name="provisioning_devices_registered_total",
    description="Total devices pre-registered",
    unit="1",
)


class ProvisioningMetrics:
    """Facade for provisioning metrics with proper labels."""

    def record_authority_loaded(self, is_new: bool) -> None:
        """Record CA availability. Labels: source=generated|existing"""
        global _authority_state
        _authority_state = "generated" if is_new else "existing"
        if is_new:
            authorities_bootstrapped_total.add(1)

    def record_certificate_issued(self, duration_seconds: float) -> None:
        """Record device certificate issuance with duration."""
        device_certificates_issued_total.add(1)
        device_certificate_issuance_duration.record(duration_seconds)

    def record_issuance_failed(self, stage: str | None) -> None:
        """Record failed issuance. Labels: stage=<failing stage>"""
        issuance_failures_total.add(1, {"stage": stage or "unknown"})

    def record_trust_anchor_upload(self, outcome: str) -> None:
        """Record trust-anchor upload. Labels: outcome=created|already_exists"""
        trust_anchor_uploads_total.add(1, {"outcome": outcome})

    def record_equipment_created(self, equipment_type: str) -> None:
        """Record equipment creation. Labels: type=poem_booth|printer|other"""
        equipment_created_total.add(1, {"type": equipment_type})

    def record_device_registered(self) -> None:
        """Record device pre-registration."""
        devices_registered_total.add(1)


# Singleton instance
provisioning_metrics = ProvisioningMetrics()
