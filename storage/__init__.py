"""Storage module: blob store, metadata ledger and the file pipelines."""

from .blobstore import BlobStore, BlobBackend, MemoryBlobBackend, DirectoryBlobBackend
from .file_manager import (
    register_public_key,
    upload_bytes,
    upload_file,
    retrieve_file,
    download_file,
    share_file,
    list_files,
    list_shared_files,
    delete_file,
    delete_files,
)
from .ledger import (
    MetadataLedger,
    LedgerBackend,
    MemoryLedgerBackend,
    JSONLedgerBackend,
    derive_address,
)
from .models import FileRecord, PublicKeyRecord, ShareGrant, DecryptedFile, BatchResult

__all__ = [
    "BlobStore",
    "BlobBackend",
    "MemoryBlobBackend",
    "DirectoryBlobBackend",
    "register_public_key",
    "upload_bytes",
    "upload_file",
    "retrieve_file",
    "download_file",
    "share_file",
    "list_files",
    "list_shared_files",
    "delete_file",
    "delete_files",
    "MetadataLedger",
    "LedgerBackend",
    "MemoryLedgerBackend",
    "JSONLedgerBackend",
    "derive_address",
    "FileRecord",
    "PublicKeyRecord",
    "ShareGrant",
    "DecryptedFile",
    "BatchResult",
]
