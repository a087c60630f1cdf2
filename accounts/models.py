from dataclasses import dataclass
import base64
import json

import config
from crypto.keys import (
    LEGACY_PBKDF2_ITERATIONS,
    encode_encrypted_private_key_pem,
    decode_encrypted_private_key_pem,
)
from errors import InputError

IV_BYTES = 12
SALT_BYTES = 16


@dataclass(frozen=True)
class EncryptedPrivateKeyBlob:
    # private key (PKCS#8 DER) under AES-256-GCM, key from PBKDF2(password, salt, iterations)
    cipher_text: bytes
    iv: bytes      # 12 bytes
    salt: bytes    # 16 bytes
    iterations: int = LEGACY_PBKDF2_ITERATIONS

    def __post_init__(self):
        if len(self.iv) != IV_BYTES:
            raise InputError(f"private key IV must be {IV_BYTES} bytes")
        if len(self.salt) != SALT_BYTES:
            raise InputError(f"private key salt must be {SALT_BYTES} bytes")
        if not isinstance(self.iterations, int) or isinstance(self.iterations, bool):
            raise InputError("PBKDF2 iteration count must be an integer")
        if self.iterations < config.MIN_PBKDF2_ITERATIONS:
            raise InputError(f"private key was locked with only {self.iterations} PBKDF2 iterations")

    def to_bytes(self) -> bytes:
        """Storage encoding used by the local secure store."""
        return json.dumps({
            "cipher_text": base64.b64encode(self.cipher_text).decode("ascii"),
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "iterations": self.iterations,
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedPrivateKeyBlob":
        try:
            fields = json.loads(data.decode("utf-8"))
            return cls(
                cipher_text=base64.b64decode(fields["cipher_text"]),
                iv=base64.b64decode(fields["iv"]),
                salt=base64.b64decode(fields["salt"]),
                iterations=fields.get("iterations", LEGACY_PBKDF2_ITERATIONS),
            )
        except (ValueError, KeyError, TypeError, AttributeError, RecursionError) as exc:
            raise InputError(f"stored private key is unreadable: {exc}") from exc

    def to_pem(self) -> str:
        return encode_encrypted_private_key_pem(self.cipher_text, self.iv, self.salt, self.iterations)

    @classmethod
    def from_pem(cls, pem: str) -> "EncryptedPrivateKeyBlob":
        cipher_text, iv, salt, iterations = decode_encrypted_private_key_pem(pem)
        return cls(cipher_text=cipher_text, iv=iv, salt=salt, iterations=iterations)


def canon_identity(identity: str) -> str:
    """Identities are case-sensitive account strings; only surrounding whitespace is dropped."""
    if not isinstance(identity, str) or not identity.strip():
        raise InputError("identity cannot be empty")
    return identity.strip()
