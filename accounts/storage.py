from __future__ import annotations
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Union
import base64, json, os, tempfile


class ISecureStore(ABC):
    """Local key/value storage for secrets that never leave the device."""
    @abstractmethod
    def put(self, key: str, data: bytes) -> None: ...
    @abstractmethod
    def get(self, key: str) -> Optional[bytes]: ...
    @abstractmethod
    def delete(self, key: str) -> None: ...


class MemorySecureStore(ISecureStore):
    def __init__(self):
        self._items: Dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> None:
        self._items[key] = bytes(data)

    def get(self, key: str) -> Optional[bytes]:
        return self._items.get(key)

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


class JSONSecureStore(ISecureStore):
    def __init__(self, path: Union[str, Path] = "keystore.json"):
        self.path = str(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            self._save({})

    def _load(self) -> Dict[str, str]:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: Dict[str, str]) -> None:
        # atomic-ish write to avoid corruption
        fd, tmp = tempfile.mkstemp(prefix="keystore.", suffix=".tmp", dir=os.path.dirname(self.path) or ".")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def put(self, key: str, data: bytes) -> None:
        items = self._load()
        items[key] = base64.b64encode(data).decode("ascii")
        self._save(items)

    def get(self, key: str) -> Optional[bytes]:
        value = self._load().get(key)
        if value is None:
            return None
        return base64.b64decode(value)

    def delete(self, key: str) -> None:
        items = self._load()
        if items.pop(key, None) is not None:
            self._save(items)
