from __future__ import annotations

from dataclasses import dataclass, asdict, field, fields
from datetime import datetime, timedelta, timezone
import json
import time
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from errors import MalformedRecordError, VaultError

FILE_METADATA = "file_metadata"
USER_RSA = "user_rsa"
SHARED_ACCESS = "shared_access"

TIME_FILTERS = ("all", "today", "last7days", "last30days")
SORT_KEYS = ("timestamp", "cid")
SORT_ORDERS = ("asc", "desc")

R = TypeVar("R", bound="_Record")


def _now_ts() -> int:
    """Ledger clock: whole UNIX seconds."""
    return int(time.time())


class _Record:
    """
    Closed schema shared by the three ledger record kinds.

    Serialized form is a JSON object with a `kind` tag plus exactly the
    dataclass fields. Anything else is rejected, nothing is defaulted.
    """

    KIND = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.KIND
        return d

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def from_dict(cls: Type[R], data: Dict[str, Any]) -> R:
        if not isinstance(data, dict):
            raise MalformedRecordError(f"{cls.KIND} record must be a JSON object")
        if data.get("kind") != cls.KIND:
            raise MalformedRecordError(f"expected a {cls.KIND} record, got kind={data.get('kind')!r}")
        expected = {f.name: f.type for f in fields(cls)}
        given = set(data) - {"kind"}
        missing = set(expected) - given
        unknown = given - set(expected)
        if missing:
            raise MalformedRecordError(f"{cls.KIND} record is missing {sorted(missing)}")
        if unknown:
            raise MalformedRecordError(f"{cls.KIND} record has unknown fields {sorted(unknown)}")
        values = {name: data[name] for name in expected}
        for name, type_name in expected.items():
            _check_type(cls.KIND, name, type_name, values[name])
        return cls(**values)

    @classmethod
    def from_bytes(cls: Type[R], raw: bytes) -> R:
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError, RecursionError) as exc:
            raise MalformedRecordError(f"{cls.KIND} record is not UTF-8 JSON") from exc
        return cls.from_dict(data)


_TYPES = {"str": str, "int": int, "bool": bool}


def _check_type(kind: str, name: str, type_name: str, value: Any) -> None:
    # annotations are strings because of `from __future__ import annotations`
    expected = _TYPES[type_name]
    if expected is int and isinstance(value, bool):
        raise MalformedRecordError(f"{kind}.{name} must be an integer")
    if not isinstance(value, expected):
        raise MalformedRecordError(f"{kind}.{name} must be {type_name}, got {type(value).__name__}")


@dataclass(frozen=True)
class FileRecord(_Record):
    """
    Ledger entry for one published file.

    `content_address` is the blob store address of iv || ciphertext || tag,
    `key_blob_address` the address of the owner's WrappedKeyBlob.
    """

    KIND = FILE_METADATA

    content_address: str
    key_blob_address: str
    owner: str
    created_at: int
    is_public: bool
    extension: str

    @staticmethod
    def new(
        content_address: str,
        key_blob_address: str,
        owner: str,
        *,
        is_public: bool = True,
        extension: str = "",
    ) -> "FileRecord":
        return FileRecord(
            content_address=content_address,
            key_blob_address=key_blob_address,
            owner=owner,
            created_at=_now_ts(),
            is_public=is_public,
            extension=extension,
        )


@dataclass(frozen=True)
class PublicKeyRecord(_Record):
    KIND = USER_RSA

    owner: str
    public_key_pem: str


@dataclass(frozen=True)
class ShareGrant(_Record):
    """A key blob wrapped for `grantee`, never the owner's own blob."""

    KIND = SHARED_ACCESS

    content_address: str
    key_blob_address: str
    grantor: str
    grantee: str
    created_at: int

    @staticmethod
    def new(content_address: str, key_blob_address: str, grantor: str, grantee: str) -> "ShareGrant":
        return ShareGrant(
            content_address=content_address,
            key_blob_address=key_blob_address,
            grantor=grantor,
            grantee=grantee,
            created_at=_now_ts(),
        )


RECORD_TYPES: Dict[str, Type[_Record]] = {
    FILE_METADATA: FileRecord,
    USER_RSA: PublicKeyRecord,
    SHARED_ACCESS: ShareGrant,
}


@dataclass(frozen=True)
class DecryptedFile:
    data: bytes
    extension: str
    content_address: str

    @property
    def filename(self) -> str:
        return f"decrypted-{self.content_address[:8]}.{self.extension or 'bin'}"


@dataclass
class BatchResult:
    """Outcome of a bulk operation that keeps going past failures."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[Tuple[str, VaultError]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def within_time_range(timestamp: int, time_filter: str, now: Optional[datetime] = None) -> bool:
    """
    True if `timestamp` (UNIX seconds) falls in the named window.
    Windows are measured from the start of today; unknown names mean "all".
    """
    now = now or datetime.now(timezone.utc)
    file_date = datetime.fromtimestamp(timestamp, tz=now.tzinfo)
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if time_filter == "today":
        return file_date.date() == now.date()
    if time_filter == "last7days":
        return start_of_today - timedelta(days=7) <= file_date <= now
    if time_filter == "last30days":
        return start_of_today - timedelta(days=30) <= file_date <= now
    return True
