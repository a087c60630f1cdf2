"""Cryptography utilities for envelope encryption."""

from .envelope import (
    generate_aes_key,
    encrypt_file,
    decrypt_file,
    wrap_key,
    unwrap_key,
    serialize_wrapped_key,
    parse_wrapped_key,
)

from .keys import (
    Keypair,
    generate_keypair,
    export_public_key_pem,
    load_public_key_pem,
    export_private_key_pkcs8,
    load_private_key_pkcs8,
    export_private_key_pem,
    load_private_key_pem,
    is_valid_private_key_pem,
    encode_encrypted_private_key_pem,
    decode_encrypted_private_key_pem,
)

__all__ = [
    # Envelope
    "generate_aes_key",
    "encrypt_file",
    "decrypt_file",
    "wrap_key",
    "unwrap_key",
    "serialize_wrapped_key",
    "parse_wrapped_key",
    # Keys
    "Keypair",
    "generate_keypair",
    "export_public_key_pem",
    "load_public_key_pem",
    "export_private_key_pkcs8",
    "load_private_key_pkcs8",
    "export_private_key_pem",
    "load_private_key_pem",
    "is_valid_private_key_pem",
    "encode_encrypted_private_key_pem",
    "decode_encrypted_private_key_pem",
]
