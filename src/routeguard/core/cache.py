from __future__ import annotations

import json
import time
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import Any

"""
Simple on-disk JSON storage.

- `FileCache` stores JSON-serializable values under `.cache/routeguard/` by default,
  keyed by SHA-256 of (namespace, key), with TTL enforced on read. The place-search
  client uses it to avoid repeated keyword queries and to serve stale results when
  the provider is down.
- `write_json_atomic` / `read_json` are the primitives behind it, also used for the
  hazard dataset file and its sidecar metadata.
"""


def read_json(path: Path, default: Any = None) -> Any:
    """Decode a JSON file; return `default` when it is missing or malformed."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return default


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write via a temporary file + atomic replace so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


@dataclass(frozen=True)
class CacheEntry:
    """Serialized cache envelope stored on disk."""

    created_at_unix: int
    ttl_seconds: int
    value: Any


class FileCache:
    """A filesystem-backed cache keyed by (namespace, key)."""

    def __init__(
        self, base_dir: Path, enabled: bool = True, default_ttl_seconds: int = 86400
    ):
        self._base_dir = base_dir
        self._enabled = enabled
        self._default_ttl_seconds = default_ttl_seconds

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _key_path(self, namespace: str, key: str) -> Path:
        """Return the file path for a cache entry (hash-based)."""
        digest = sha256(f"{namespace}:{key}".encode("utf-8")).hexdigest()
        return self._base_dir / namespace / f"{digest}.json"

    def _read_entry(self, namespace: str, key: str) -> CacheEntry | None:
        raw = read_json(self._key_path(namespace, key))
        if not isinstance(raw, dict):
            return None
        try:
            return CacheEntry(
                created_at_unix=int(raw["created_at_unix"]),
                ttl_seconds=int(raw["ttl_seconds"]),
                value=raw["value"],
            )
        except (KeyError, TypeError, ValueError):
            return None

    def get(
        self, namespace: str, key: str, ttl_seconds: int | None = None
    ) -> Any | None:
        """Read a cached value if present and not expired; otherwise return None."""
        if not self._enabled:
            return None

        entry = self._read_entry(namespace, key)
        if entry is None:
            return None

        now = int(time.time())
        effective_ttl = ttl_seconds if ttl_seconds is not None else entry.ttl_seconds
        if now - entry.created_at_unix > effective_ttl:
            return None
        return entry.value

    def get_stale(self, namespace: str, key: str) -> Any | None:
        """Read a cached value even if expired; otherwise return None.

        This is useful for "stale-if-error" behavior where an upstream API is down
        or rate-limiting and we prefer to serve slightly old data rather than fail.
        """
        if not self._enabled:
            return None
        entry = self._read_entry(namespace, key)
        return entry.value if entry is not None else None

    def set(
        self, namespace: str, key: str, value: Any, ttl_seconds: int | None = None
    ) -> None:
        """Write a JSON-serializable value to disk."""
        if not self._enabled:
            return None

        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl_seconds
        payload = {
            "created_at_unix": int(time.time()),
            "ttl_seconds": int(ttl),
            "value": value,
        }
        write_json_atomic(self._key_path(namespace, key), payload)
