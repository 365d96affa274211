"""Durable storage for CA and device trust material.

Supports multiple storage backends behind one interface:
- File-based, one directory per storage root (the default deployment)
- In-memory buffers

A stricter deployment can plug in a hardware-backed or encrypted store by
implementing ArtifactStore; the authority and issuance logic only talk to
this interface.
"""

import logging
import os
import stat
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from provisioning.ca.errors import StorageError

logger = logging.getLogger(__name__)

SECRET_FILE_MODE = 0o600
PUBLIC_FILE_MODE = 0o644


class ArtifactStore(ABC):
    """Named byte artifacts with owner-only protection for secrets."""

    @abstractmethod
    def ensure_ready(self) -> None:
        """Make sure the store can accept writes."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Return True if the artifact is present."""

    @abstractmethod
    def read_bytes(self, name: str) -> bytes:
        """Read an artifact. Raises StorageError if it is missing or unreadable."""

    @abstractmethod
    def write_bytes(self, name: str, data: bytes, *, secret: bool = False) -> None:
        """Write an artifact atomically, replacing any previous content."""

    @abstractmethod
    def delete(self, name: str) -> None:
        """Remove an artifact if present."""

    @abstractmethod
    def location(self, name: str) -> str:
        """Return a human-readable address for the artifact."""


class FileArtifactStore(ArtifactStore):
    """Stores artifacts as files under a root directory.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so a reader never observes a half-written file.
    Secrets are restricted to 0600 and the mode is verified after the move.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        return self.root / name

    def ensure_ready(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create storage directory {self.root}: {e}", stage="prepare_storage"
            ) from e
        if not os.access(self.root, os.W_OK | os.X_OK):
            raise StorageError(
                f"Storage directory {self.root} is not writable", stage="prepare_storage"
            )

    def exists(self, name: str) -> bool:
        return self._path(name).is_file()

    def read_bytes(self, name: str) -> bytes:
        path = self._path(name)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}", stage="read_artifact") from e

    def write_bytes(self, name: str, data: bytes, *, secret: bool = False) -> None:
        self.ensure_ready()
        target = self._path(name)
        mode = SECRET_FILE_MODE if secret else PUBLIC_FILE_MODE

        fd, temp_name = tempfile.mkstemp(dir=self.root, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_name, mode)
            os.replace(temp_name, target)
        except OSError as e:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise StorageError(f"Cannot write {target}: {e}", stage="write_artifact") from e

        if secret:
            self._verify_mode(target, mode)

        logger.debug("artifact_written", extra={"path": str(target), "secret": secret})

    def _verify_mode(self, path: Path, expected: int) -> None:
        try:
            actual = stat.S_IMODE(path.stat().st_mode)
        except OSError as e:
            raise StorageError(f"Cannot stat {path}: {e}", stage="protect_secret") from e
        if actual != expected:
            raise StorageError(
                f"{path} has mode {oct(actual)}, expected {oct(expected)}",
                stage="protect_secret",
            )

    def delete(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot remove {path}: {e}", stage="delete_artifact") from e

    def location(self, name: str) -> str:
        return str(self._path(name))


class InMemoryArtifactStore(ArtifactStore):
    """Keeps artifacts in process memory. Nothing survives the process."""

    def __init__(self, label: str = "memory") -> None:
        self.label = label
        self._artifacts: dict[str, bytes] = {}
        self._secrets: set[str] = set()

    def ensure_ready(self) -> None:
        return None

    def exists(self, name: str) -> bool:
        return name in self._artifacts

    def read_bytes(self, name: str) -> bytes:
        try:
            return self._artifacts[name]
        except KeyError:
            raise StorageError(
                f"Artifact {self.location(name)} not found", stage="read_artifact"
            ) from None

    def write_bytes(self, name: str, data: bytes, *, secret: bool = False) -> None:
        self._artifacts[name] = bytes(data)
        if secret:
            self._secrets.add(name)
        else:
            self._secrets.discard(name)

    def is_secret(self, name: str) -> bool:
        return name in self._secrets

    def delete(self, name: str) -> None:
        self._artifacts.pop(name, None)
        self._secrets.discard(name)

    def location(self, name: str) -> str:
        return f"{self.label}://{name}"
