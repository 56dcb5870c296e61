from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "token"
IDENTITY_KEY = "user"
ACTIVE_TENANT_KEY = "activeBrandId"


class PreferenceStore(Protocol):
    """Durable key/value storage for the signed-in client."""

    def get(self, key: str) -> Optional[Any]:  # pragma: no cover - interface
        ...

    def set(self, key: str, value: Any) -> None:  # pragma: no cover - interface
        ...

    def delete(self, *keys: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class MemoryPreferenceStore:
    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Optional[Any]:
        return self.values.get(key)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def delete(self, *keys: str) -> None:
        for key in keys:
            self.values.pop(key, None)


class JsonFilePreferenceStore:
    """Preferences persisted as a single JSON document on disk."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._values = self._load()

    def get(self, key: str) -> Optional[Any]:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._flush()

    def delete(self, *keys: str) -> None:
        removed = [key for key in keys if self._values.pop(key, None) is not None]
        if removed:
            self._flush()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable preference file %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._values, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
