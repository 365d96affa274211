"""Subject alternative name encoding of a device identity.

A device certificate carries exactly four SAN entries, in this order:

    URI  urn:device:<device_id>
    URI  urn:equipment:<equipment_id>
    URI  urn:hub:<hub_id>
    DNS  <asset_tag>.<dns_suffix>
"""

import re
from dataclasses import dataclass

from cryptography import x509

from provisioning.ca.errors import InvalidIdentityInputError

DEFAULT_DNS_SUFFIX = "booth.internal"

DEVICE_URN_PREFIX = "urn:device:"
EQUIPMENT_URN_PREFIX = "urn:equipment:"
HUB_URN_PREFIX = "urn:hub:"

# One DNS label: letters, digits and inner hyphens, 3-63 characters.
ASSET_TAG_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{1,61}[A-Za-z0-9])$")
# URI unreserved characters only, so the URN needs no escaping.
OPAQUE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._~-]{1,128}$")

MIN_ASSET_TAG_LENGTH = 3


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity tuple bound into a device certificate."""

    device_id: str
    equipment_id: str
    hub_id: str
    asset_tag: str


def validate_asset_tag(asset_tag: str) -> str:
    if not isinstance(asset_tag, str) or len(asset_tag) < MIN_ASSET_TAG_LENGTH:
        raise InvalidIdentityInputError(
            f"Asset tag must be at least {MIN_ASSET_TAG_LENGTH} characters",
            stage="validate_identity",
        )
    if not ASSET_TAG_PATTERN.match(asset_tag):
        raise InvalidIdentityInputError(
            f"Asset tag {asset_tag!r} must contain only letters, digits and inner hyphens "
            "and be at most 63 characters",
            stage="validate_identity",
        )
    return asset_tag


def validate_opaque_id(value: int | str, field: str) -> str:
    """Normalize an opaque identifier to the text embedded in its URN."""
    if isinstance(value, bool):
        raise InvalidIdentityInputError(f"{field} must not be a boolean", stage="validate_identity")
    text = str(value)
    if not OPAQUE_ID_PATTERN.match(text):
        raise InvalidIdentityInputError(
            f"{field} {text!r} must be 1-128 characters from [A-Za-z0-9._~-]",
            stage="validate_identity",
        )
    return text


def build_subject_alternative_name(
    identity: DeviceIdentity,
    dns_suffix: str = DEFAULT_DNS_SUFFIX,
) -> x509.SubjectAlternativeName:
    """Build the SAN extension value for a device identity."""
    return x509.SubjectAlternativeName(
        [
            x509.UniformResourceIdentifier(f"{DEVICE_URN_PREFIX}{identity.device_id}"),
            x509.UniformResourceIdentifier(f"{EQUIPMENT_URN_PREFIX}{identity.equipment_id}"),
            x509.UniformResourceIdentifier(f"{HUB_URN_PREFIX}{identity.hub_id}"),
            x509.DNSName(f"{identity.asset_tag}.{dns_suffix}"),
        ]
    )


def parse_identity_claims(
    certificate: x509.Certificate,
    dns_suffix: str = DEFAULT_DNS_SUFFIX,
) -> DeviceIdentity:
    """Read the identity tuple back out of a device certificate.

    Raises:
        InvalidIdentityInputError: If the SAN does not have the expected shape.
    """
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        raise InvalidIdentityInputError(
            "Certificate has no subject alternative name", stage="parse_identity"
        ) from None

    entries = list(san)
    expected_types = [
        x509.UniformResourceIdentifier,
        x509.UniformResourceIdentifier,
        x509.UniformResourceIdentifier,
        x509.DNSName,
    ]
    if [type(entry) for entry in entries] != expected_types:
        raise InvalidIdentityInputError(
            "Certificate SAN does not carry the device identity claims", stage="parse_identity"
        )

    device_uri, equipment_uri, hub_uri, dns_name = (entry.value for entry in entries)
    dns_tail = f".{dns_suffix}"
    prefixes = (
        (device_uri, DEVICE_URN_PREFIX),
        (equipment_uri, EQUIPMENT_URN_PREFIX),
        (hub_uri, HUB_URN_PREFIX),
    )
    if not all(value.startswith(prefix) for value, prefix in prefixes) or not dns_name.endswith(
        dns_tail
    ):
        raise InvalidIdentityInputError(
            "Certificate SAN claims are malformed", stage="parse_identity"
        )

    return DeviceIdentity(
        device_id=device_uri[len(DEVICE_URN_PREFIX) :],
        equipment_id=equipment_uri[len(EQUIPMENT_URN_PREFIX) :],
        hub_id=hub_uri[len(HUB_URN_PREFIX) :],
        asset_tag=dns_name[: -len(dns_tail)],
    )
