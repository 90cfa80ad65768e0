"""Secure key storage.

The core only needs an opaque put/get-by-name store. `FileKeyStore` keeps each
secret in its own 0600 file under a private secrets directory that is separate
from the profile data directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from .storage import (
    atomic_write_bytes,
    ensure_private_dir,
    exclusive_lock,
    safe_child_path,
)


DEFAULT_KEYSTORE_DIR = Path.home() / ".tapwallet-secrets" / "keys"


class KeyStore(Protocol):
    def put(self, name: str, value: bytes) -> None: ...

    def get(self, name: str) -> Optional[bytes]: ...

    def has(self, name: str) -> bool: ...

    def delete(self, name: str) -> None: ...


class FileKeyStore:
    """File-backed secret store with lock-based concurrency control."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or DEFAULT_KEYSTORE_DIR
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"

    def _path(self, name: str) -> Path:
        return safe_child_path(self.base_dir, name, ".key")

    def put(self, name: str, value: bytes) -> None:
        with exclusive_lock(self._lock_path):
            atomic_write_bytes(self._path(name), bytes(value))

    def get(self, name: str) -> Optional[bytes]:
        with exclusive_lock(self._lock_path):
            path = self._path(name)
            if not path.exists():
                return None
            data = path.read_bytes()
            return data or None

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def delete(self, name: str) -> None:
        with exclusive_lock(self._lock_path):
            self._path(name).unlink(missing_ok=True)
