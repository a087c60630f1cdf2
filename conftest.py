"""
Shared fixtures.

A `World` is one blob store and one ledger shared by everybody, plus a
separate local key store per identity (each user has their own device).
"""

import pytest

from accounts.password import FixedPasswordProvider
from accounts.session import Session
from accounts.storage import MemorySecureStore
from accounts.vault import KeyVault
from crypto.keys import generate_keypair
from storage.blobstore import BlobStore, MemoryBlobBackend
from storage.ledger import MemoryLedgerBackend, MetadataLedger

TEST_ITERATIONS = 100_000


class World:
    def __init__(self):
        self.blob_backend = MemoryBlobBackend()
        self.ledger_backend = MemoryLedgerBackend()
        self.blobs = BlobStore(self.blob_backend)
        self.ledger = MetadataLedger(self.ledger_backend)
        self.devices = {}

    def vault(self, identity: str) -> KeyVault:
        if identity not in self.devices:
            self.devices[identity] = KeyVault(MemorySecureStore(), iterations=TEST_ITERATIONS)
        return self.devices[identity]

    def session(self, identity: str, password="correct horse", key_cache_seconds: int = 0) -> Session:
        return Session(
            identity,
            vault=self.vault(identity),
            blobs=self.blobs,
            ledger=self.ledger,
            passwords=FixedPasswordProvider(password),
            key_cache_seconds=key_cache_seconds,
        )


@pytest.fixture
def world():
    return World()


@pytest.fixture
def vault():
    return KeyVault(MemorySecureStore(), iterations=TEST_ITERATIONS)


@pytest.fixture(scope="session")
def keypair():
    return generate_keypair()


@pytest.fixture(scope="session")
def other_keypair():
    return generate_keypair()
