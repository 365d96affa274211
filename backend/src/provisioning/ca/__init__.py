"""Certificate Authority module for device provisioning.

This module provides:
- Root CA lifecycle (bootstrap once, load, metadata)
- Device certificate issuance with identity claims in the SAN
- Pluggable artifact storage for keys, certificates and the CA passphrase
"""

from provisioning.ca.artifact_store import ArtifactStore, FileArtifactStore, InMemoryArtifactStore
from provisioning.ca.authority_manager import AuthorityManager
from provisioning.ca.issuance_engine import IssuanceEngine

__all__ = [
    "ArtifactStore",
    "AuthorityManager",
    "FileArtifactStore",
    "InMemoryArtifactStore",
    "IssuanceEngine",
]
