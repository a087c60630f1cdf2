"""
Content-addressed blob storage.

The real store is an external collaborator reached through a BlobBackend.
BlobStore is the thin adapter the pipelines use: it validates addresses,
maps backend failures onto the error taxonomy and knows the WrappedKeyBlob
wire format. There is no delete: published blobs are immutable.
"""

import base64
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

from cryptography.hazmat.primitives.hashes import Hash, SHA256

import config
from crypto.envelope import parse_wrapped_key, serialize_wrapped_key
from errors import InputError, NotFoundError, TransientError

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^[A-Za-z0-9]{8,128}$")


def compute_content_address(data: bytes) -> str:
    """'b' + lowercase unpadded base32 of SHA-256, the address the local backends hand out."""
    digest = Hash(SHA256())
    digest.update(data)
    encoded = base64.b32encode(digest.finalize()).decode("ascii").rstrip("=").lower()
    return "b" + encoded


class BlobBackend(ABC):
    @abstractmethod
    async def publish(self, data: bytes) -> str: ...
    @abstractmethod
    async def fetch(self, address: str) -> Optional[bytes]: ...


class MemoryBlobBackend(BlobBackend):
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    async def publish(self, data: bytes) -> str:
        address = compute_content_address(data)
        self.blobs.setdefault(address, bytes(data))
        return address

    async def fetch(self, address: str) -> Optional[bytes]:
        return self.blobs.get(address)


class DirectoryBlobBackend(BlobBackend):
    """One file per blob under `root`, named by its content address."""

    def __init__(self, root: Union[str, Path] = config.BLOB_DIR):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    async def publish(self, data: bytes) -> str:
        address = compute_content_address(data)
        path = self.root / address
        if path.exists():
            return address
        fd, tmp = tempfile.mkstemp(prefix="blob.", suffix=".tmp", dir=str(self.root))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            Path(tmp).replace(path)
        finally:
            Path(tmp).unlink(missing_ok=True)
        return address

    async def fetch(self, address: str) -> Optional[bytes]:
        path = self.root / address
        if not path.is_file():
            return None
        return path.read_bytes()


class BlobStore:
    def __init__(self, backend: BlobBackend):
        self.backend = backend

    @staticmethod
    def validate_address(address: str) -> str:
        if not isinstance(address, str) or not ADDRESS_PATTERN.match(address.strip()):
            raise InputError(f"malformed content address: {address!r}")
        return address.strip()

    async def publish(self, data: bytes) -> str:
        """Publish bytes and return their address. Same bytes, same address."""
        try:
            address = await self.backend.publish(data)
        except OSError as exc:
            raise TransientError(f"blob publish failed: {exc}") from exc
        address = self.validate_address(str(address))
        logger.debug("Published %d bytes as %s", len(data), address)
        return address

    async def fetch(self, address: str) -> bytes:
        address = self.validate_address(address)
        try:
            data = await self.backend.fetch(address)
        except OSError as exc:
            raise TransientError(f"blob fetch failed for {address}: {exc}") from exc
        if data is None:
            raise NotFoundError(f"no blob published at {address}")
        return data

    async def publish_wrapped_key(self, wrapped: bytes) -> str:
        return await self.publish(serialize_wrapped_key(wrapped))

    async def fetch_wrapped_key(self, address: str) -> bytes:
        return parse_wrapped_key(await self.fetch(address))
