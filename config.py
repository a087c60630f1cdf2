"""Runtime settings. Every value can be overridden from the environment."""

import logging
import os
from pathlib import Path
from typing import Optional

from errors import InputError

ENV_PREFIX = "ENVELOPE_VAULT_"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_int(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InputError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise InputError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
    return value


DATA_ROOT = Path(os.environ.get(ENV_PREFIX + "HOME", "vault"))
BLOB_DIR = DATA_ROOT / "blobs"
LEDGER_PATH = DATA_ROOT / "ledger.json"
KEYSTORE_PATH = DATA_ROOT / "keystore.json"

MIN_PBKDF2_ITERATIONS = 100_000
MIN_RSA_KEY_SIZE = 2048

PBKDF2_ITERATIONS = load_int("PBKDF2_ITERATIONS", 200_000, MIN_PBKDF2_ITERATIONS)
RSA_KEY_SIZE = load_int("RSA_KEY_SIZE", 2048, MIN_RSA_KEY_SIZE)
KEY_CACHE_SECONDS = load_int("KEY_CACHE_SECONDS", 0, 0)
LOG_LEVEL = os.environ.get(ENV_PREFIX + "LOG_LEVEL", "WARNING").upper()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
