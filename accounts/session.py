"""
Per-login context passed to every pipeline.

A Session owns the adapter handles and the only place an unlocked private
key may live. It is created at login and closed at logout; nothing in this
project keeps module-level session state.
"""

import asyncio
import logging
import time
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import rsa

import config
from errors import InputError
from .models import canon_identity
from .password import PasswordProvider
from .vault import KeyVault

logger = logging.getLogger(__name__)

UNLOCK_PROMPT = "Enter the password to unlock your private RSA key"


class Session:
    def __init__(
        self,
        identity: str,
        *,
        vault: KeyVault,
        blobs,
        ledger,
        passwords: PasswordProvider,
        key_cache_seconds: int = config.KEY_CACHE_SECONDS,
    ):
        self.identity = canon_identity(identity)
        self.vault = vault
        self.blobs = blobs
        self.ledger = ledger
        self.passwords = passwords
        self.key_cache_seconds = key_cache_seconds
        self._cached_key: Optional[rsa.RSAPrivateKey] = None
        self._cached_until = 0.0
        self.closed = False

    async def request_password(self, prompt: str) -> str:
        password = await self.passwords.request(prompt)
        if not password:
            raise InputError("Password is required to continue.")
        return password

    async def unlock_private_key(self) -> rsa.RSAPrivateKey:
        """
        Unlock this identity's private key, prompting for the password unless
        a key unlocked within the last `key_cache_seconds` is still cached.
        """
        if self.closed:
            raise InputError("session is closed")
        if self._cached_key is not None and time.monotonic() < self._cached_until:
            return self._cached_key
        self.forget_key()

        password = await self.request_password(UNLOCK_PROMPT)
        loop = asyncio.get_running_loop()
        private_key = await loop.run_in_executor(None, self.vault.unlock, self.identity, password)
        if self.key_cache_seconds > 0:
            self._cached_key = private_key
            self._cached_until = time.monotonic() + self.key_cache_seconds
            logger.debug("Caching private key for %s for %ss", self.identity, self.key_cache_seconds)
        return private_key

    def forget_key(self) -> None:
        self._cached_key = None
        self._cached_until = 0.0

    def close(self) -> None:
        self.forget_key()
        self.closed = True
        logger.info("Session for %s closed", self.identity)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
