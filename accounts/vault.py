import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

import config
from crypto.keys import (
    Keypair,
    generate_keypair,
    export_private_key_pkcs8,
    load_private_key_pkcs8,
    load_private_key_pem,
)
from errors import BadCredentialError, ConflictError, InputError
from .models import EncryptedPrivateKeyBlob, IV_BYTES, SALT_BYTES, canon_identity
from .storage import ISecureStore

logger = logging.getLogger(__name__)

BAD_CREDENTIAL_MESSAGE = "invalid password or no private key stored for this identity"
STORAGE_KEY_PREFIX = "rsa-private-key-"


class KeyVault:
    """
    Keeps one password-locked RSA private key per identity on this device.

    Unlocking never tells the caller whether the key was missing or the
    password was wrong.
    """

    def __init__(self, storage: ISecureStore, iterations: int = config.PBKDF2_ITERATIONS):
        if iterations < config.MIN_PBKDF2_ITERATIONS:
            raise InputError(f"PBKDF2 needs at least {config.MIN_PBKDF2_ITERATIONS} iterations")
        self.storage = storage
        self.iterations = iterations

    @staticmethod
    def _storage_key(identity: str) -> str:
        return STORAGE_KEY_PREFIX + canon_identity(identity)

    def _derive_key(self, password: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    @staticmethod
    def generate_keypair() -> Keypair:
        return generate_keypair()

    def lock_private_key(self, private_key: rsa.RSAPrivateKey, password: str) -> EncryptedPrivateKeyBlob:
        """Encrypt the PKCS#8 private key under a password. Fresh salt and IV every call."""
        if not password:
            raise InputError("password cannot be empty")
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        aes_key = self._derive_key(password, salt, self.iterations)
        cipher_text = AESGCM(aes_key).encrypt(iv, export_private_key_pkcs8(private_key), None)
        return EncryptedPrivateKeyBlob(cipher_text=cipher_text, iv=iv, salt=salt, iterations=self.iterations)

    def exists(self, identity: str) -> bool:
        return self.storage.get(self._storage_key(identity)) is not None

    def persist(self, identity: str, blob: EncryptedPrivateKeyBlob, *, overwrite: bool = False) -> None:
        key = self._storage_key(identity)
        if not overwrite and self.storage.get(key) is not None:
            raise ConflictError(f"a private key is already stored for {canon_identity(identity)}")
        self.storage.put(key, blob.to_bytes())
        logger.info("Stored encrypted private key for %s", canon_identity(identity))

    def _load_blob(self, identity: str):
        data = self.storage.get(self._storage_key(identity))
        if data is None:
            return None
        try:
            return EncryptedPrivateKeyBlob.from_bytes(data)
        except InputError:
            logger.warning("Stored private key for %s is unreadable", canon_identity(identity))
            return None

    def _decrypt_blob(self, blob: EncryptedPrivateKeyBlob, password: str) -> rsa.RSAPrivateKey:
        aes_key = self._derive_key(password, blob.salt, blob.iterations)
        try:
            der = AESGCM(aes_key).decrypt(blob.iv, blob.cipher_text, None)
        except InvalidTag:
            raise BadCredentialError(BAD_CREDENTIAL_MESSAGE) from None
        return load_private_key_pkcs8(der)

    def unlock(self, identity: str, password: str) -> rsa.RSAPrivateKey:
        """
        Decrypt and return the identity's private key.
        Raises BadCredentialError for a missing key and a wrong password alike.
        """
        blob = self._load_blob(identity)
        if blob is None:
            # same KDF cost as a real attempt
            self._derive_key(password or "", bytes(SALT_BYTES), self.iterations)
            raise BadCredentialError(BAD_CREDENTIAL_MESSAGE)
        return self._decrypt_blob(blob, password or "")

    def clear(self, identity: str) -> None:
        self.storage.delete(self._storage_key(identity))
        logger.info("Cleared private key for %s", canon_identity(identity))

    def export_pem(self, identity: str) -> str:
        """Encrypted backup of the stored key; still locked under the user's password."""
        blob = self._load_blob(identity)
        if blob is None:
            raise BadCredentialError(BAD_CREDENTIAL_MESSAGE)
        return blob.to_pem()

    def import_pem(self, identity: str, pem: str, password: str, *, overwrite: bool = False) -> rsa.RSAPrivateKey:
        """Restore an encrypted backup after checking the password opens it."""
        blob = EncryptedPrivateKeyBlob.from_pem(pem)
        private_key = self._decrypt_blob(blob, password)
        self.persist(identity, blob, overwrite=overwrite)
        return private_key

    def import_private_key(self, identity: str, pem: str, password: str, *, overwrite: bool = False) -> rsa.RSAPrivateKey:
        """Lock a plain PKCS#8 PEM under a password and store it."""
        private_key = load_private_key_pem(pem)
        self.persist(identity, self.lock_private_key(private_key, password), overwrite=overwrite)
        return private_key
