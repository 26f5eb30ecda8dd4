"""Persistent store of image tags per repository."""

from __future__ import annotations

import json
import sqlite3
import threading
import zlib
from collections.abc import Iterable
from pathlib import Path

TAGS_PREFIX = "tags"
_FILE_NAME = "tags.sqlite"

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class NoRewriteError(Exception):
    """Raised when a garbage collection pass finds nothing worth reclaiming."""


def _key_for_repo(prefix: str, repo: str) -> str:
    return f"{prefix}:{repo}"


def _marshal(tags: Iterable[str]) -> bytes:
    text = json.dumps(list(tags), ensure_ascii=False, separators=(",", ":"))
    for char, escape in _JSON_ESCAPES.items():
        text = text.replace(char, escape)
    return text.encode("utf-8")


def _unmarshal(data: bytes) -> list[str]:
    decoded = json.loads(data.decode("utf-8"))
    if decoded is None:
        return []
    if not isinstance(decoded, list) or not all(isinstance(t, str) for t in decoded):
        raise ValueError("stored tags are not a list of strings")
    return decoded


class TagDatabase:
    """Key-value store of tag lists, kept in a directory on disk."""

    def __init__(self, path):
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            str(self.path / _FILE_NAME),
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS entries (key TEXT PRIMARY KEY, value BLOB NOT NULL)"
        )

    def tags(self, repo: str) -> list[str]:
        """Return the tags stored for ``repo``, or an empty list if there are none."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM entries WHERE key = ?",
                (_key_for_repo(TAGS_PREFIX, repo),),
            ).fetchone()
        if row is None:
            return []
        return _unmarshal(bytes(row[0]))

    def set_tags(self, repo: str, tags: Iterable[str]) -> str:
        """Replace the tags stored for ``repo`` and return their checksum."""
        data = _marshal(tags)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO entries (key, value) VALUES (?, ?)",
                (_key_for_repo(TAGS_PREFIX, repo), data),
            )
        return str(zlib.adler32(data))

    def run_value_log_gc(self, discard_ratio: float) -> None:
        """Reclaim unused space if at least ``discard_ratio`` of it is free.

        Raises ``ValueError`` unless ``0 < discard_ratio < 1`` and
        ``NoRewriteError`` when there is not enough to reclaim.
        """
        if not 0.0 < discard_ratio < 1.0:
            raise ValueError(f"discard ratio must be between 0 and 1, got {discard_ratio}")
        with self._lock:
            (page_count,) = self._conn.execute("PRAGMA page_count").fetchone()
            (free_pages,) = self._conn.execute("PRAGMA freelist_count").fetchone()
            if page_count == 0 or free_pages / page_count < discard_ratio:
                raise NoRewriteError("no garbage to discard")
            self._conn.execute("VACUUM")

    def close(self) -> None:
        """Close the underlying store."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> TagDatabase:
        return self

    def __exit__(self, *args) -> None:
        self.close()