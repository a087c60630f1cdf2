"""
Error taxonomy shared by the vault, the adapters and the pipelines.

Every error carries an optional `step` that pipelines fill in with the
name of the step that failed (e.g. "unlock-key"), so a caller can catch
by type and still report where things went wrong.
"""

from typing import Optional


class VaultError(Exception):
    """Base class for every recoverable error raised by this project."""

    step: Optional[str] = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.step:
            return f"[{self.step}] {message}"
        return message


class InputError(VaultError, ValueError):
    """Bad caller input: missing file, empty identity, malformed address."""


class AuthError(VaultError):
    """Credential or key mismatch. Never confused with an integrity failure."""


class BadCredentialError(AuthError):
    """No stored private key, or the password does not decrypt it."""


class UnwrapError(AuthError):
    """RSA-OAEP unwrap failed: the private key does not match."""


class NotAuthorizedError(AuthError):
    """The requestor does not own the record it tries to change."""


class IntegrityError(VaultError):
    """AES-GCM authentication failed (tampered data or wrong key)."""


class NotFoundError(VaultError, LookupError):
    """A ledger record or a blob does not exist."""


class ConflictError(VaultError):
    """Something that must be unique already exists."""


class TransientError(VaultError):
    """Network or I/O failure in a collaborator. Safe to retry."""


class MalformedRecordError(VaultError, ValueError):
    """A ledger record or wrapped-key blob does not match its schema."""
