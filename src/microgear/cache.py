"""File-backed credential cache, one record per device key."""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def cache_filename(device_key: str) -> str:
    """Default cache file name for *device_key*."""
    return f"microgear-{device_key}.cache"


class CredentialCache:
    """Durable key/value store scoped to one device identity.

    The file holds a single JSON record ``{"_": {...}}``.  A missing or
    unreadable file is treated as an empty cache.  Every write replaces the
    whole record.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, object] | None:
        try:
            record = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache %s: %s", self.path, e)
            return None
        if not isinstance(record, dict):
            return None
        payload = record.get("_")
        return payload if isinstance(payload, dict) else None

    def _store(self, payload: dict[str, object] | None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"_": payload}))
        self.path.chmod(0o600)

    def get(self, key: str) -> object | None:
        """Return the cached value for *key*, or ``None``."""
        payload = self._load()
        if payload is None:
            return None
        return payload.get(key)

    def set(self, key: str, value: object) -> None:
        """Store *value* under *key*, keeping the other keys."""
        payload = self._load() or {}
        payload[key] = value
        self._store(payload)

    def clear(self, key: str | None = None) -> None:
        """Clear one key, or the whole record when *key* is ``None``."""
        payload = self._load()
        if payload is None:
            return
        if key is not None:
            payload[key] = None
            self._store(payload)
        else:
            self._store(None)
