"""Local key custody: the password-locked private key and the login session."""

from .models import EncryptedPrivateKeyBlob, canon_identity
from .password import PasswordProvider, FixedPasswordProvider, GetpassPasswordProvider
from .session import Session
from .storage import ISecureStore, JSONSecureStore, MemorySecureStore
from .vault import KeyVault

__all__ = [
    "EncryptedPrivateKeyBlob",
    "canon_identity",
    "PasswordProvider",
    "FixedPasswordProvider",
    "GetpassPasswordProvider",
    "Session",
    "ISecureStore",
    "JSONSecureStore",
    "MemorySecureStore",
    "KeyVault",
]
