"""
Tests for the upload, retrieval, sharing and deletion pipelines.

Every identity has its own device (key store); blob store and ledger are
shared, see conftest.World.
"""
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from crypto.envelope import IV_BYTES
from errors import (
    AuthError,
    BadCredentialError,
    ConflictError,
    InputError,
    IntegrityError,
    NotAuthorizedError,
    NotFoundError,
    UnwrapError,
)
from storage.file_manager import (
    delete_file,
    delete_files,
    download_file,
    list_files,
    list_shared_files,
    recover_file_key,
    register_public_key,
    retrieve_file,
    share_file,
    upload_bytes,
    upload_file,
)
from storage import file_manager
from storage import models as storage_models
from storage.ledger import file_address


def _registered(world, *identities):
    sessions = [world.session(identity) for identity in identities]
    for session in sessions:
        asyncio.run(register_public_key(session))
    return sessions if len(sessions) > 1 else sessions[0]


def test_end_to_end_scenario(world):
    """Upload as A, read back, share with B, B reads, only A may delete."""
    alice, bob = _registered(world, "alice", "bob")

    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD", extension="txt"))
    stored = asyncio.run(world.ledger.find_file_record(record.content_address))
    assert stored == record
    assert stored.is_public is True
    assert stored.extension == "txt"
    assert stored.owner == "alice"

    decrypted = asyncio.run(retrieve_file(alice, record.content_address))
    assert decrypted.data == b"HELLOWRLD"
    assert decrypted.extension == "txt"

    grant = asyncio.run(share_file(alice, record.content_address, "bob"))
    assert grant.grantor == "alice" and grant.grantee == "bob"
    assert asyncio.run(retrieve_file(bob, record.content_address)).data == b"HELLOWRLD"

    with pytest.raises(AuthError):
        asyncio.run(delete_file(bob, record.content_address))

    asyncio.run(delete_file(alice, record.content_address))
    with pytest.raises(NotFoundError):
        asyncio.run(world.ledger.read_file_record(file_address(record.content_address)))

    ciphertext = asyncio.run(world.blobs.fetch(record.content_address))
    assert len(ciphertext) == IV_BYTES + len(b"HELLOWRLD") + 16


def test_upload_requires_registered_key(world):
    with pytest.raises(NotFoundError) as exc_info:
        asyncio.run(upload_bytes(world.session("alice"), b"data"))
    assert exc_info.value.step == "fetch-key"
    assert world.blob_backend.blobs == {}


def test_upload_publishes_ciphertext_and_wrapped_key(world):
    alice = _registered(world, "alice")
    record = asyncio.run(upload_bytes(alice, b"plain text", extension=".TXT", is_public=False))
    assert record.extension == "txt"
    assert record.is_public is False

    ciphertext = world.blob_backend.blobs[record.content_address]
    assert b"plain text" not in ciphertext
    key_blob = world.blob_backend.blobs[record.key_blob_address]
    assert key_blob.startswith(b'{"encrypted_aes_key": ')


def test_concurrent_uploads_get_separate_records(world):
    alice = _registered(world, "alice")

    async def both():
        return await asyncio.gather(
            upload_bytes(alice, b"first", extension="a"),
            upload_bytes(alice, b"second", extension="b"),
        )

    first, second = asyncio.run(both())
    assert first.content_address != second.content_address
    assert len(asyncio.run(list_files(alice))) == 2


def test_upload_file_reads_path_and_extension(world, tmp_path):
    alice = _registered(world, "alice")
    source = tmp_path / "report.PDF"
    source.write_bytes(b"%PDF-1.7 fake")
    record = asyncio.run(upload_file(alice, source))
    assert record.extension == "pdf"

    target = asyncio.run(download_file(alice, record.content_address, tmp_path / "out"))
    assert target.name == f"decrypted-{record.content_address[:8]}.pdf"
    assert target.read_bytes() == b"%PDF-1.7 fake"

    with pytest.raises(InputError):
        asyncio.run(upload_file(alice, tmp_path / "missing.txt"))


def test_wrong_password_is_reported_at_unlock(world):
    _registered(world, "alice")
    record = asyncio.run(upload_bytes(world.session("alice"), b"HELLOWRLD"))

    with pytest.raises(BadCredentialError) as exc_info:
        asyncio.run(retrieve_file(world.session("alice", password="wrong"), record.content_address))
    assert exc_info.value.step == "unlock-key"


def test_tampered_ciphertext_is_reported_at_decrypt(world):
    alice = _registered(world, "alice")
    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD"))
    blob = bytearray(world.blob_backend.blobs[record.content_address])
    blob[-1] ^= 0x01
    world.blob_backend.blobs[record.content_address] = bytes(blob)

    with pytest.raises(IntegrityError) as exc_info:
        asyncio.run(retrieve_file(alice, record.content_address))
    assert exc_info.value.step == "decrypt"
    assert not isinstance(exc_info.value, AuthError)


def test_cancelled_password_prompt(world):
    _registered(world, "alice")
    record = asyncio.run(upload_bytes(world.session("alice"), b"x"))
    with pytest.raises(InputError) as exc_info:
        asyncio.run(retrieve_file(world.session("alice", password=None), record.content_address))
    assert exc_info.value.step == "unlock-key"


def test_third_party_cannot_unwrap_public_file(world):
    alice, carol = _registered(world, "alice", "carol")
    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD"))

    with pytest.raises(UnwrapError) as exc_info:
        asyncio.run(retrieve_file(carol, record.content_address))
    assert exc_info.value.step == "unwrap-key"


def test_private_file_is_not_offered_to_strangers(world):
    alice, carol = _registered(world, "alice", "carol")
    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD", is_public=False))
    with pytest.raises(NotAuthorizedError) as exc_info:
        asyncio.run(retrieve_file(carol, record.content_address))
    assert exc_info.value.step == "lookup"


def test_share_wraps_a_new_key_blob(world):
    alice, bob, carol = _registered(world, "alice", "bob", "carol")
    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD", is_public=False))

    to_bob = asyncio.run(share_file(alice, record.content_address, "bob"))
    to_carol = asyncio.run(share_file(alice, record.content_address, "carol"))
    assert to_bob.key_blob_address != record.key_blob_address
    assert to_carol.key_blob_address not in (record.key_blob_address, to_bob.key_blob_address)

    _, bob_key = asyncio.run(recover_file_key(bob, record.content_address))
    _, alice_key = asyncio.run(recover_file_key(alice, record.content_address))
    assert bob_key == alice_key
    assert asyncio.run(retrieve_file(carol, record.content_address)).data == b"HELLOWRLD"

    assert [g.content_address for g in asyncio.run(list_shared_files(bob))] == [record.content_address]
    assert asyncio.run(list_shared_files(alice)) == []


def test_share_twice_is_a_conflict(world):
    alice, _ = _registered(world, "alice", "bob")
    record = asyncio.run(upload_bytes(alice, b"x"))
    asyncio.run(share_file(alice, record.content_address, "bob"))
    with pytest.raises(ConflictError):
        asyncio.run(share_file(alice, record.content_address, "bob"))


def test_share_with_recipient_without_key(world):
    alice = _registered(world, "alice")
    record = asyncio.run(upload_bytes(alice, b"x"))
    with pytest.raises(NotFoundError) as exc_info:
        asyncio.run(share_file(alice, record.content_address, "nobody"))
    assert exc_info.value.step == "fetch-recipient-key"
    assert asyncio.run(world.ledger.read_share_grant(record.content_address, "nobody")) is None


def test_share_with_self_is_refused(world):
    alice = _registered(world, "alice")
    record = asyncio.run(upload_bytes(alice, b"x"))
    with pytest.raises(InputError):
        asyncio.run(share_file(alice, record.content_address, " alice "))


def test_grantee_can_still_read_after_owner_forgets_file(world):
    alice, bob = _registered(world, "alice", "bob")
    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD", extension="txt"))
    asyncio.run(share_file(alice, record.content_address, "bob"))
    asyncio.run(delete_file(alice, record.content_address))

    decrypted = asyncio.run(retrieve_file(bob, record.content_address))
    assert decrypted.data == b"HELLOWRLD"
    assert decrypted.extension == "bin"


def test_register_twice_is_a_conflict(world):
    alice = _registered(world, "alice")
    original = asyncio.run(world.ledger.read_public_key_record("alice"))
    with pytest.raises(ConflictError):
        asyncio.run(register_public_key(alice))
    with pytest.raises(ConflictError):
        asyncio.run(register_public_key(alice, overwrite=True))
    assert asyncio.run(world.ledger.read_public_key_record("alice")) == original


def test_register_refuses_existing_local_key(world, keypair):
    session = world.session("alice")
    session.vault.persist("alice", session.vault.lock_private_key(keypair.private_key, "correct horse"))
    with pytest.raises(ConflictError) as exc_info:
        asyncio.run(register_public_key(session))
    assert exc_info.value.step == "check-existing"
    assert asyncio.run(world.ledger.read_public_key_record("alice")) is None

    asyncio.run(register_public_key(session, overwrite=True))
    assert asyncio.run(world.ledger.read_public_key_record("alice")) is not None


def test_batch_delete_continues_past_failures(world):
    alice, bob = _registered(world, "alice", "bob")
    mine = [asyncio.run(upload_bytes(alice, bytes([i]) * 4)).content_address for i in range(3)]
    theirs = asyncio.run(upload_bytes(bob, b"bob's")).content_address

    result = asyncio.run(delete_files(alice, [mine[0], theirs, "bnotindexedanywhere", mine[1], "??"]))
    assert result.succeeded == [mine[0], mine[1]]
    assert [address for address, _ in result.failed] == [theirs, "bnotindexedanywhere", "??"]
    assert isinstance(result.failed[0][1], NotAuthorizedError)
    assert isinstance(result.failed[1][1], NotFoundError)
    assert isinstance(result.failed[2][1], InputError)
    assert not result.ok

    assert [r.content_address for r in asyncio.run(list_files(alice))] == [mine[2]]
    assert asyncio.run(world.ledger.find_file_record(theirs)).owner == "bob"


def test_list_files_time_filter(world):
    alice = _registered(world, "alice")
    record = asyncio.run(upload_bytes(alice, b"today"))

    now = datetime.now(timezone.utc)
    assert asyncio.run(list_files(alice, time_filter="today", now=now)) == [record]
    later = now + timedelta(days=45)
    assert asyncio.run(list_files(alice, time_filter="last30days", now=later)) == []
    assert asyncio.run(list_files(alice, time_filter="all", now=later)) == [record]


def test_session_key_cache(world):
    _registered(world, "alice")
    record = asyncio.run(upload_bytes(world.session("alice"), b"x"))

    uncached = world.session("alice")
    asyncio.run(retrieve_file(uncached, record.content_address))
    asyncio.run(retrieve_file(uncached, record.content_address))
    assert len(uncached.passwords.prompts) == 2

    cached = world.session("alice", key_cache_seconds=300)
    asyncio.run(retrieve_file(cached, record.content_address))
    asyncio.run(retrieve_file(cached, record.content_address))
    assert len(cached.passwords.prompts) == 1

    cached.close()
    with pytest.raises(InputError):
        asyncio.run(retrieve_file(cached, record.content_address))


def test_list_files_sorting(world, monkeypatch):
    alice = _registered(world, "alice")
    clock = iter([1_700_000_300, 1_700_000_100, 1_700_000_200])
    monkeypatch.setattr(storage_models, "_now_ts", lambda: next(clock))
    records = [asyncio.run(upload_bytes(alice, payload)) for payload in (b"one", b"two", b"three")]

    def listed(**options):
        return [r.created_at for r in asyncio.run(list_files(alice, **options))]

    assert listed() == [1_700_000_300, 1_700_000_200, 1_700_000_100]
    assert listed(sort_order="asc") == [1_700_000_100, 1_700_000_200, 1_700_000_300]

    by_address = sorted(r.content_address for r in records)
    assert [r.content_address for r in asyncio.run(list_files(alice, sort_key="cid", sort_order="asc"))] == by_address
    assert [r.content_address for r in asyncio.run(list_files(alice, sort_key="cid"))] == by_address[::-1]

    with pytest.raises(InputError):
        asyncio.run(list_files(alice, sort_key="name"))
    with pytest.raises(InputError):
        asyncio.run(list_files(alice, sort_order="sideways"))


def test_key_derivation_runs_off_the_event_loop(world, monkeypatch):
    loop_thread = threading.get_ident()
    seen = {}

    real_generate = file_manager.generate_keypair
    def generate():
        seen["generate"] = threading.get_ident()
        return real_generate()
    monkeypatch.setattr(file_manager, "generate_keypair", generate)

    alice = world.session("alice")
    real_unlock = alice.vault.unlock
    def unlock(identity, password):
        seen["unlock"] = threading.get_ident()
        return real_unlock(identity, password)
    monkeypatch.setattr(alice.vault, "unlock", unlock)

    asyncio.run(register_public_key(alice))
    record = asyncio.run(upload_bytes(alice, b"HELLOWRLD"))
    assert asyncio.run(retrieve_file(alice, record.content_address)).data == b"HELLOWRLD"
    assert seen["generate"] != loop_thread
    assert seen["unlock"] != loop_thread


def test_upload_file_read_failure_is_input_error(world, tmp_path, monkeypatch):
    alice = _registered(world, "alice")
    source = tmp_path / "locked.txt"
    source.write_bytes(b"secret")

    def refuse(self):
        raise PermissionError(13, "Permission denied", str(self))
    monkeypatch.setattr(Path, "read_bytes", refuse)

    with pytest.raises(InputError):
        asyncio.run(upload_file(alice, source))
    assert asyncio.run(list_files(alice)) == []
