"""End-to-end provisioning run for one device.

Drives the authority, the issuance engine and the registration store in the
order an operator would: make sure the CA exists and is published as a trust
anchor, resolve the equipment record, issue the certificate, pre-register the
device.
"""

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from opentelemetry import trace

from provisioning.ca.authority_manager import AuthorityManager
from provisioning.ca.errors import ProvisioningError
from provisioning.ca.identity_claims import validate_asset_tag, validate_opaque_id
from provisioning.ca.issuance_engine import IssuanceEngine
from provisioning.domain.states import CAUploadOutcome
from provisioning.services.registration_service import DeviceSetupOptions, RegistrationService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


class OperationTimeoutError(ProvisioningError):
    """Raised when a blocking provisioning step exceeds its deadline."""

    pass


@dataclass
class ProvisioningResult:
    """Everything the operator needs after a successful run."""

    asset_tag: str
    hub_id: str
    device_id: str
    equipment_id: int
    fingerprint: str
    certificate_path: str
    private_key_path: str
    ca_certificate_path: str
    authority_created: bool
    trust_anchor: CAUploadOutcome


class ProvisioningService:
    """Orchestrates a provisioning run.

    Key generation and file I/O block, so each core call runs in a worker
    thread and is bounded by timeout_seconds. A timed-out thread is not
    cancelled; it finishes in the background and its result is discarded.
    """

    DEFAULT_TIMEOUT_SECONDS = 120.0

    def __init__(
        self,
        authority: AuthorityManager,
        engine: IssuanceEngine,
        registration: RegistrationService,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.authority = authority
        self.engine = engine
        self.registration = registration
        self.timeout_seconds = timeout_seconds

    async def _run_blocking(self, stage: str, func: Callable[..., T], *args, **kwargs) -> T:
        call = functools.partial(func, *args, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"{stage} did not finish within {self.timeout_seconds} seconds", stage=stage
            ) from None

    async def provision_device(
        self,
        options: DeviceSetupOptions,
        overwrite: bool = False,
    ) -> ProvisioningResult:
        """Provision one device end to end.

        Args:
            options: Operator input (asset tag, hub, serial, equipment type).
            overwrite: Replace existing credentials for the asset tag.

        Returns:
            ProvisioningResult with the device identity and artifact locations.

        Raises:
            ProvisioningError: From any core stage, with its failing stage.
            RegistrationError: If a registration record cannot be written.
            UnknownHubError: If the hub is not registered.
        """
        with tracer.start_as_current_span("ProvisioningService.provision_device") as span:
            span.set_attribute("asset_tag", options.asset_tag)
            span.set_attribute("hub_id", options.hub_id)

            # Reject bad identifiers and unknown hubs before any record is written.
            validate_asset_tag(options.asset_tag)
            validate_opaque_id(options.hub_id, "hub_id")
            await self.registration.require_hub(options.hub_id)

            bootstrap = await self._run_blocking("ensure_authority", self.authority.ensure_authority)
            if bootstrap.is_new:
                logger.warning(
                    "authority_created_backup_required",
                    extra={"cert_path": self.authority.get_authority_certificate_path()},
                )

            # Published on every run so a CA created by an interrupted run still lands.
            info = await self._run_blocking("authority_info", self.authority.get_authority_info)
            trust_anchor = await self.registration.upload_authority(bootstrap.certificate_pem, info)

            equipment_id = await self.registration.ensure_equipment_exists(options)

            issued = await self._run_blocking(
                "issue_device_certificate",
                self.engine.issue_device_certificate,
                options.asset_tag,
                options.hub_id,
                equipment_id,
                overwrite=overwrite,
            )

            await self.registration.pre_register_device(options, issued)

            span.set_attribute("device_id", issued.device_id)
            span.set_attribute("authority_created", bootstrap.is_new)
            logger.info(
                "device_provisioned",
                extra={
                    "asset_tag": options.asset_tag,
                    "device_id": issued.device_id,
                    "equipment_id": equipment_id,
                    "fingerprint": issued.fingerprint,
                },
            )

            return ProvisioningResult(
                asset_tag=options.asset_tag,
                hub_id=options.hub_id,
                device_id=issued.device_id,
                equipment_id=equipment_id,
                fingerprint=issued.fingerprint,
                certificate_path=issued.certificate_path,
                private_key_path=issued.private_key_path,
                ca_certificate_path=self.authority.get_authority_certificate_path(),
                authority_created=bootstrap.is_new,
                trust_anchor=trust_anchor,
            )
