"""
Metadata ledger adapter.

Records live at deterministic addresses derived from their kind and key
fields, so anyone who knows a content address or an identity can find the
matching record without an index:

    file_metadata  -> derive_address("file_metadata", content_address)
    user_rsa       -> derive_address("user_rsa", owner)
    shared_access  -> derive_address("shared_access", content_hash(content_address), grantee)
"""

import base64
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Type, Union

from cryptography.hazmat.primitives.hashes import Hash, SHA256

import config
from accounts.models import canon_identity
from errors import ConflictError, InputError, MalformedRecordError, NotAuthorizedError, NotFoundError, TransientError
from .models import (
    FILE_METADATA,
    SHARED_ACCESS,
    USER_RSA,
    FileRecord,
    PublicKeyRecord,
    ShareGrant,
)

logger = logging.getLogger(__name__)

ScanPredicate = Callable[[str, bytes], bool]


def _sha256(data: bytes) -> bytes:
    digest = Hash(SHA256())
    digest.update(data)
    return digest.finalize()


def content_hash(content_address: str) -> bytes:
    return _sha256(content_address.encode("utf-8"))


def derive_address(kind: str, *parts: Union[str, bytes]) -> str:
    """
    SHA-256 over the kind tag and parts, each prefixed with its 4-byte
    big-endian length, as 64 lowercase hex characters.
    """
    digest = Hash(SHA256())
    for part in (kind, *parts):
        raw = part.encode("utf-8") if isinstance(part, str) else bytes(part)
        digest.update(len(raw).to_bytes(4, "big"))
        digest.update(raw)
    return digest.finalize().hex()


def file_address(content_address: str) -> str:
    return derive_address(FILE_METADATA, content_address)


def public_key_address(identity: str) -> str:
    return derive_address(USER_RSA, canon_identity(identity))


def grant_address(content_address: str, grantee: str) -> str:
    return derive_address(SHARED_ACCESS, content_hash(content_address), canon_identity(grantee))


# ============================================================================
# Ledger collaborators
# ============================================================================

class LedgerBackend(ABC):
    @abstractmethod
    async def write(self, address: str, data: bytes) -> None: ...
    @abstractmethod
    async def read(self, address: str) -> Optional[bytes]: ...
    @abstractmethod
    async def scan(self, predicate: ScanPredicate) -> List[Tuple[str, bytes]]: ...
    @abstractmethod
    async def delete_at(self, address: str, auth_proof: str) -> None: ...


class MemoryLedgerBackend(LedgerBackend):
    def __init__(self):
        self.entries: Dict[str, bytes] = {}

    async def write(self, address: str, data: bytes) -> None:
        self.entries[address] = bytes(data)

    async def read(self, address: str) -> Optional[bytes]:
        return self.entries.get(address)

    async def scan(self, predicate: ScanPredicate) -> List[Tuple[str, bytes]]:
        return [(address, data) for address, data in list(self.entries.items()) if predicate(address, data)]

    async def delete_at(self, address: str, auth_proof: str) -> None:
        self.entries.pop(address, None)


class JSONLedgerBackend(LedgerBackend):
    """Whole ledger in one JSON file: {address: base64(record bytes)}."""

    def __init__(self, path: Union[str, Path] = config.LEDGER_PATH):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._save({})

    def _load(self) -> Dict[str, str]:
        with self.path.open("r", encoding="utf-8") as fh:
            return json.load(fh)

    def _save(self, entries: Dict[str, str]) -> None:
        fd, tmp = tempfile.mkstemp(prefix="ledger.", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entries, fh, indent=2)
            Path(tmp).replace(self.path)
        finally:
            Path(tmp).unlink(missing_ok=True)

    async def write(self, address: str, data: bytes) -> None:
        entries = self._load()
        entries[address] = base64.b64encode(data).decode("ascii")
        self._save(entries)

    async def read(self, address: str) -> Optional[bytes]:
        value = self._load().get(address)
        return None if value is None else base64.b64decode(value)

    async def scan(self, predicate: ScanPredicate) -> List[Tuple[str, bytes]]:
        found = []
        for address, value in self._load().items():
            data = base64.b64decode(value)
            if predicate(address, data):
                found.append((address, data))
        return found

    async def delete_at(self, address: str, auth_proof: str) -> None:
        entries = self._load()
        if entries.pop(address, None) is not None:
            self._save(entries)


# ============================================================================
# Adapter
# ============================================================================

def _kind_of(data: bytes) -> Optional[str]:
    try:
        kind = json.loads(data.decode("utf-8")).get("kind")
    except (UnicodeDecodeError, ValueError, AttributeError, RecursionError):
        return None
    return kind if isinstance(kind, str) else None


class MetadataLedger:
    def __init__(self, backend: LedgerBackend):
        self.backend = backend

    async def _read_raw(self, address: str) -> Optional[bytes]:
        try:
            return await self.backend.read(address)
        except OSError as exc:
            raise TransientError(f"ledger read failed at {address}: {exc}") from exc

    async def _write_raw(self, address: str, data: bytes) -> None:
        try:
            await self.backend.write(address, data)
        except OSError as exc:
            raise TransientError(f"ledger write failed at {address}: {exc}") from exc

    async def _scan(self, record_type: Type, address_of: Callable, keep: Callable) -> List:
        """
        Every well-formed record of one kind that passes `keep`. Entries that
        fail validation, or that sit at an address their contents do not
        derive to, are skipped.
        """
        try:
            raw_entries = await self.backend.scan(lambda _addr, data: _kind_of(data) == record_type.KIND)
        except OSError as exc:
            raise TransientError(f"ledger scan failed: {exc}") from exc

        records = []
        for address, data in raw_entries:
            try:
                record = record_type.from_bytes(data)
                foreign = address_of(record) != address
            except (MalformedRecordError, InputError) as exc:
                logger.warning("Skipping invalid %s entry %s: %s", record_type.KIND, address, exc)
                continue
            if foreign:
                logger.warning("Skipping %s entry %s stored at a foreign address", record_type.KIND, address)
                continue
            if keep(record):
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    # ---- FileRecord -------------------------------------------------------

    async def write_file_record(self, record: FileRecord) -> str:
        address = file_address(record.content_address)
        existing = await self._read_raw(address)
        if existing is not None:
            try:
                current = FileRecord.from_bytes(existing)
            except MalformedRecordError:
                current = None
            if current is not None and current.owner != record.owner:
                raise NotAuthorizedError(f"file {record.content_address} belongs to another owner")
        await self._write_raw(address, record.to_bytes())
        logger.debug("Indexed file %s at %s", record.content_address, address)
        return address

    async def read_file_record(self, address: str) -> FileRecord:
        data = await self._read_raw(address)
        if data is None:
            raise NotFoundError(f"no file record at {address}")
        record = FileRecord.from_bytes(data)
        if file_address(record.content_address) != address:
            raise MalformedRecordError(f"file record at {address} does not match its content address")
        return record

    async def find_file_record(self, content_address: str) -> FileRecord:
        return await self.read_file_record(file_address(content_address))

    async def delete_file_record(self, address: str, requestor: str) -> None:
        """Only the owner may delete. The blobs themselves stay published."""
        record = await self.read_file_record(address)
        if record.owner != canon_identity(requestor):
            raise NotAuthorizedError("Only the owner can delete a file")
        try:
            await self.backend.delete_at(address, canon_identity(requestor))
        except OSError as exc:
            raise TransientError(f"ledger delete failed at {address}: {exc}") from exc
        logger.info("Deleted file record %s for %s", record.content_address, record.owner)

    async def list_files_for(self, owner: str) -> List[FileRecord]:
        owner = canon_identity(owner)
        return await self._scan(
            FileRecord,
            lambda r: file_address(r.content_address),
            lambda r: r.owner == owner,
        )

    # ---- PublicKeyRecord ---------------------------------------------------

    async def write_public_key_record(self, record: PublicKeyRecord) -> str:
        address = public_key_address(record.owner)
        if await self._read_raw(address) is not None:
            raise ConflictError(f"an RSA public key is already registered for {record.owner}")
        await self._write_raw(address, record.to_bytes())
        logger.info("Registered public key for %s", record.owner)
        return address

    async def read_public_key_record(self, identity: str) -> Optional[PublicKeyRecord]:
        address = public_key_address(identity)
        data = await self._read_raw(address)
        if data is None:
            return None
        record = PublicKeyRecord.from_bytes(data)
        if public_key_address(record.owner) != address:
            raise MalformedRecordError(f"public key record at {address} names another owner")
        return record

    # ---- ShareGrant --------------------------------------------------------

    async def write_share_grant(self, grant: ShareGrant) -> str:
        address = grant_address(grant.content_address, grant.grantee)
        if await self._read_raw(address) is not None:
            raise ConflictError(f"file {grant.content_address} is already shared with {grant.grantee}")
        await self._write_raw(address, grant.to_bytes())
        logger.info("Granted %s access to %s", grant.grantee, grant.content_address)
        return address

    async def read_share_grant(self, content_address: str, grantee: str) -> Optional[ShareGrant]:
        address = grant_address(content_address, grantee)
        data = await self._read_raw(address)
        if data is None:
            return None
        grant = ShareGrant.from_bytes(data)
        if grant_address(grant.content_address, grant.grantee) != address:
            raise MalformedRecordError(f"share grant at {address} does not match its key fields")
        return grant

    async def list_grants_for(self, grantee: str) -> List[ShareGrant]:
        grantee = canon_identity(grantee)
        return await self._scan(
            ShareGrant,
            lambda g: grant_address(g.content_address, g.grantee),
            lambda g: g.grantee == grantee,
        )
