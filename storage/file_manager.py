from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union
import asyncio
import logging

from accounts.models import canon_identity
from accounts.session import Session
from crypto.envelope import generate_aes_key, encrypt_file, decrypt_file, wrap_key, unwrap_key
from crypto.keys import generate_keypair
from errors import ConflictError, InputError, NotAuthorizedError, NotFoundError, VaultError

from .models import (
    BatchResult,
    DecryptedFile,
    FileRecord,
    PublicKeyRecord,
    ShareGrant,
    SORT_KEYS,
    SORT_ORDERS,
    within_time_range,
)
from .ledger import file_address

logger = logging.getLogger(__name__)

REGISTER_PROMPT = "Set a password to protect your private key (DO NOT forget it!)"


# ============================================================================
# Helper methods
# ============================================================================

@contextmanager
def _step(operation: str, name: str):
    """Tag any VaultError raised inside with the step name and re-raise it."""
    logger.debug("%s: %s", operation, name)
    try:
        yield
    except VaultError as exc:
        if exc.step is None:
            exc.step = name
        logger.warning("%s failed at %s: %s", operation, name, exc)
        raise


def _extension_of(path: Path) -> str:
    return path.suffix.lstrip(".").lower()


def _default_download_dir(identity: str) -> Path:
    return Path.home() / "Downloads" / identity


# ============================================================================
# Key registration
# ============================================================================

async def register_public_key(session: Session, *, overwrite: bool = False) -> PublicKeyRecord:
    """
    Generate a key pair for the session identity, lock the private key under
    a new password on this device and publish the public key to the ledger.

    A public key that is already on the ledger is never replaced. A private
    key already on this device is only replaced with `overwrite=True`.
    """
    identity = session.identity
    with _step("register", "check-existing"):
        if await session.ledger.read_public_key_record(identity) is not None:
            raise ConflictError(f"an RSA public key is already registered for {identity}")
        if session.vault.exists(identity) and not overwrite:
            raise ConflictError("RSA private key already exists on this device")

    with _step("register", "generate-key"):
        loop = asyncio.get_running_loop()
        keypair = await loop.run_in_executor(None, generate_keypair)
        password = await session.request_password(REGISTER_PROMPT)
        blob = await loop.run_in_executor(None, session.vault.lock_private_key, keypair.private_key, password)
        session.vault.persist(identity, blob, overwrite=overwrite)

    with _step("register", "publish-key"):
        record = PublicKeyRecord(owner=identity, public_key_pem=keypair.public_key_pem)
        await session.ledger.write_public_key_record(record)

    logger.info("Registered RSA key for %s", identity)
    return record


# ============================================================================
# Upload
# ============================================================================

async def upload_bytes(
    session: Session,
    data: bytes,
    *,
    extension: str = "",
    is_public: bool = True,
) -> FileRecord:
    """
    Encrypt and publish `data` for the session identity.

    Steps run strictly in order: fetch-key, encrypt-upload, wrap-upload,
    index-write. Nothing is rolled back on failure; a ciphertext blob with
    no FileRecord is unreadable and harmless.
    """
    owner = session.identity

    with _step("upload", "fetch-key"):
        key_record = await session.ledger.read_public_key_record(owner)
        if key_record is None:
            raise NotFoundError("no public key registered. Please register your RSA key first.")

    with _step("upload", "encrypt-upload"):
        file_key = generate_aes_key()
        content_address = await session.blobs.publish(encrypt_file(data, file_key))

    with _step("upload", "wrap-upload"):
        wrapped = wrap_key(file_key, key_record.public_key_pem)
        key_blob_address = await session.blobs.publish_wrapped_key(wrapped)

    with _step("upload", "index-write"):
        record = FileRecord.new(
            content_address,
            key_blob_address,
            owner,
            is_public=is_public,
            extension=extension.lstrip(".").lower(),
        )
        await session.ledger.write_file_record(record)

    logger.info("Uploaded %d bytes as %s for %s", len(data), content_address, owner)
    return record


async def upload_file(session: Session, filepath: Union[str, Path], *, is_public: bool = True) -> FileRecord:
    src = Path(filepath).expanduser()
    if not src.is_file():
        raise InputError(f"{filepath} is not a file")
    try:
        data = src.read_bytes()
    except OSError as exc:
        raise InputError(f"cannot read {filepath}: {exc}") from exc
    return await upload_bytes(
        session,
        data,
        extension=_extension_of(src),
        is_public=is_public,
    )


# ============================================================================
# Retrieval
# ============================================================================

async def _resolve(session: Session, content_address: str):
    """
    Find the record and the key blob this identity should unwrap.
    Returns (record or None, key_blob_address).
    """
    content_address = session.blobs.validate_address(content_address)
    try:
        record = await session.ledger.find_file_record(content_address)
    except NotFoundError:
        record = None

    if record is not None and record.owner == session.identity:
        return record, record.key_blob_address

    grant = await session.ledger.read_share_grant(content_address, session.identity)
    if grant is not None:
        return record, grant.key_blob_address

    if record is None:
        raise NotFoundError(f"no file record for {content_address}")
    if not record.is_public:
        raise NotAuthorizedError("this file is private and has not been shared with you")
    return record, record.key_blob_address


async def recover_file_key(session: Session, content_address: str, operation: str = "retrieve"):
    """Lookup and unwrap only. Returns (record or None, raw AES key)."""
    with _step(operation, "lookup"):
        record, key_blob_address = await _resolve(session, content_address)

    with _step(operation, "fetch-key-blob"):
        wrapped = await session.blobs.fetch_wrapped_key(key_blob_address)

    with _step(operation, "unlock-key"):
        private_key = await session.unlock_private_key()

    with _step(operation, "unwrap-key"):
        file_key = unwrap_key(wrapped, private_key)

    return record, file_key


async def retrieve_file(session: Session, content_address: str) -> DecryptedFile:
    """
    Fetch, unwrap and decrypt a file.

    A wrong password fails at "unlock-key" (BadCredentialError), a key
    mismatch at "unwrap-key" (UnwrapError) and tampered ciphertext at
    "decrypt" (IntegrityError).
    """
    record, file_key = await recover_file_key(session, content_address)

    with _step("retrieve", "fetch-ciphertext"):
        ciphertext = await session.blobs.fetch(content_address)

    with _step("retrieve", "decrypt"):
        plaintext = decrypt_file(ciphertext, file_key)

    extension = record.extension if record is not None and record.extension else "bin"
    logger.info("Decrypted %s for %s", content_address, session.identity)
    return DecryptedFile(data=plaintext, extension=extension, content_address=content_address.strip())


async def download_file(
    session: Session,
    content_address: str,
    dest_dir: Optional[Union[str, Path]] = None,
) -> Path:
    """Decrypt a file and write it to `dest_dir` (default: ~/Downloads/<identity>)."""
    decrypted = await retrieve_file(session, content_address)
    target_dir = Path(dest_dir).expanduser() if dest_dir else _default_download_dir(session.identity)
    target_dir.mkdir(parents=True, exist_ok=True)
    target_path = target_dir / decrypted.filename
    target_path.write_bytes(decrypted.data)
    return target_path


# ============================================================================
# Sharing
# ============================================================================

async def share_file(session: Session, content_address: str, recipient: str) -> ShareGrant:
    """
    Give `recipient` their own wrapped copy of a file key and record a ShareGrant.

    The grantor must be able to unwrap the key themselves. The recipient's
    copy is always a new blob; the owner's key blob is never reused.
    """
    recipient = canon_identity(recipient)
    if recipient == session.identity:
        raise InputError("cannot share a file with yourself")
    content_address = session.blobs.validate_address(content_address)

    with _step("share", "check-existing"):
        if await session.ledger.read_share_grant(content_address, recipient) is not None:
            raise ConflictError(f"File already shared with {recipient}")

    _, file_key = await recover_file_key(session, content_address, operation="share")

    with _step("share", "fetch-recipient-key"):
        recipient_key = await session.ledger.read_public_key_record(recipient)
        if recipient_key is None:
            raise NotFoundError(f"recipient {recipient} has no key registered")

    with _step("share", "wrap-upload"):
        wrapped = wrap_key(file_key, recipient_key.public_key_pem)
        key_blob_address = await session.blobs.publish_wrapped_key(wrapped)

    with _step("share", "grant-write"):
        grant = ShareGrant.new(content_address, key_blob_address, session.identity, recipient)
        await session.ledger.write_share_grant(grant)

    logger.info("Shared %s with %s", content_address, recipient)
    return grant


# ============================================================================
# Listing and deletion
# ============================================================================

async def list_files(
    session: Session,
    *,
    time_filter: str = "all",
    sort_key: str = "timestamp",
    sort_order: str = "desc",
    now: Optional[datetime] = None,
) -> List[FileRecord]:
    """
    Files uploaded by the session identity inside `time_filter`, ordered by
    upload time ("timestamp") or content address ("cid"). Newest first by default.
    """
    if sort_key not in SORT_KEYS:
        raise InputError(f"sort key must be one of {', '.join(SORT_KEYS)}")
    if sort_order not in SORT_ORDERS:
        raise InputError(f"sort order must be one of {', '.join(SORT_ORDERS)}")

    records = await session.ledger.list_files_for(session.identity)
    records = [r for r in records if within_time_range(r.created_at, time_filter, now)]
    if sort_key == "cid":
        return sorted(records, key=lambda r: r.content_address, reverse=sort_order == "desc")
    return sorted(records, key=lambda r: r.created_at, reverse=sort_order == "desc")


async def list_shared_files(session: Session) -> List[ShareGrant]:
    """Grants addressed to the session identity, newest first."""
    return await session.ledger.list_grants_for(session.identity)


async def delete_file(session: Session, content_address: str) -> None:
    """
    Forget a file's metadata. Only the owner can delete. The ciphertext stays
    in the blob store, which has no delete.
    """
    content_address = session.blobs.validate_address(content_address)
    with _step("delete", "index-delete"):
        await session.ledger.delete_file_record(file_address(content_address), session.identity)


async def delete_files(session: Session, content_addresses: Iterable[str]) -> BatchResult:
    """Delete one by one; a failure is recorded and the batch continues."""
    result = BatchResult()
    for content_address in content_addresses:
        try:
            await delete_file(session, content_address)
        except VaultError as exc:
            result.failed.append((content_address, exc))
        else:
            result.succeeded.append(content_address)
    if result.failed:
        logger.warning("Deleted %d files, %d failed", len(result.succeeded), len(result.failed))
    return result
