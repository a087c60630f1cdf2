import base64
import binascii
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import InputError, IntegrityError, MalformedRecordError, UnwrapError
from .keys import load_public_key_pem

AES_KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
OAEP_HASH_BYTES = 32
WRAPPED_KEY_FIELD = "encrypted_aes_key"


# ============================================================================
# File encryption (AES-256-GCM)
# ============================================================================

def generate_aes_key() -> bytes:
    """Fresh 256-bit file key. Lives in memory for one upload only."""
    return AESGCM.generate_key(bit_length=AES_KEY_BYTES * 8)


def _check_aes_key(key: bytes) -> None:
    if len(key) != AES_KEY_BYTES:
        raise InputError("AES-GCM file key must be 256 bits")


def encrypt_file(plaintext: bytes, aes_key: bytes) -> bytes:
    """
    Encrypt plaintext with AES-256-GCM under a fresh random IV.
    Returns iv || ciphertext || tag, the layout published to the blob store.
    """
    _check_aes_key(aes_key)
    iv = os.urandom(IV_BYTES)
    return iv + AESGCM(aes_key).encrypt(iv, plaintext, None)


def decrypt_file(blob: bytes, aes_key: bytes) -> bytes:
    """
    Split off the 12-byte IV and decrypt the rest.
    Raises IntegrityError if the tag does not verify.
    """
    _check_aes_key(aes_key)
    if len(blob) < IV_BYTES + TAG_BYTES:
        raise IntegrityError("ciphertext is truncated")
    iv, body = blob[:IV_BYTES], blob[IV_BYTES:]
    try:
        return AESGCM(aes_key).decrypt(iv, body, None)
    except InvalidTag:
        raise IntegrityError("authentication failed: ciphertext was tampered with or the key is wrong") from None


# ============================================================================
# Key wrapping (RSA-OAEP, SHA-256)
# ============================================================================

def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def max_wrappable_bytes(public_key: rsa.RSAPublicKey) -> int:
    return public_key.key_size // 8 - 2 * OAEP_HASH_BYTES - 2


def wrap_key(aes_key: bytes, recipient_public_key_pem: str) -> bytes:
    """Wrap (encrypt) a raw AES key for the holder of the given public key."""
    public_key = load_public_key_pem(recipient_public_key_pem)
    if len(aes_key) > max_wrappable_bytes(public_key):
        raise InputError(f"a {public_key.key_size}-bit RSA key cannot wrap {len(aes_key)} bytes")
    return public_key.encrypt(aes_key, _oaep())


def unwrap_key(wrapped: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """Unwrap a raw AES key. Raises UnwrapError when the key pair does not match."""
    try:
        return private_key.decrypt(wrapped, _oaep())
    except ValueError:
        raise UnwrapError("could not unwrap the file key with this private key") from None


# ============================================================================
# WrappedKeyBlob wire format
# ============================================================================

def serialize_wrapped_key(wrapped: bytes) -> bytes:
    payload = {WRAPPED_KEY_FIELD: base64.b64encode(wrapped).decode("ascii")}
    return json.dumps(payload).encode("utf-8")


def parse_wrapped_key(data: bytes) -> bytes:
    """Accepts exactly {"encrypted_aes_key": <standard base64>}."""
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise MalformedRecordError(f"wrapped key blob is not UTF-8 JSON: {exc}") from exc
    if not isinstance(payload, dict) or set(payload) != {WRAPPED_KEY_FIELD}:
        raise MalformedRecordError(f"wrapped key blob must contain exactly '{WRAPPED_KEY_FIELD}'")
    value = payload[WRAPPED_KEY_FIELD]
    if not isinstance(value, str):
        raise MalformedRecordError(f"'{WRAPPED_KEY_FIELD}' must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise MalformedRecordError(f"'{WRAPPED_KEY_FIELD}' is not valid base64") from exc
