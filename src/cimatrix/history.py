# history.py
"""
History stores: job equivalence key -> fingerprint of its last successful run.

Writes happen when a job *completes* successfully, never when it starts,
so concurrent runs resolve last-writer-wins per key.

Backends:
- In-memory (tests, single process)
- JSON file (local runs; survives between invocations)
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .errors import SkipHistoryUnavailable

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DIR = ".cimatrix/history"


class HistoryStore(ABC):
    """Persistent record of the last successful fingerprint per job key."""

    @abstractmethod
    def lookup(self, key: str) -> Optional[str]:
        """
        Return the fingerprint of the most recent successful run, or None.

        Raises:
            SkipHistoryUnavailable: the backing store cannot be read
        """

    @abstractmethod
    def record(self, key: str, fingerprint: str) -> None:
        """
        Record a successful completion. Overwrites any previous entry.

        Raises:
            SkipHistoryUnavailable: the backing store cannot be written
        """


class InMemoryHistoryStore(HistoryStore):
    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = dict(entries or {})
        self._lock = threading.Lock()

    def lookup(self, key: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(key)

    def record(self, key: str, fingerprint: str) -> None:
        with self._lock:
            self._entries[key] = fingerprint

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileHistoryStore(HistoryStore):
    """
    File-based history:
      root/
        history.json   {key: {"fingerprint": ..., "recorded_at_unix": ...}}
    """

    FILENAME = "history.json"

    def __init__(self, root: str | Path = DEFAULT_HISTORY_DIR):
        self.root = Path(root).resolve()
        self.path = self.root / self.FILENAME
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SkipHistoryUnavailable(f"cannot read history {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise SkipHistoryUnavailable(f"history {self.path} is not a JSON object")
        return data

    def lookup(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._read().get(key)
        if entry is None:
            return None
        if not isinstance(entry, dict) or not isinstance(entry.get("fingerprint"), str):
            raise SkipHistoryUnavailable(f"history entry for {key[:12]}... is malformed")
        return entry["fingerprint"]

    def record(self, key: str, fingerprint: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = {"fingerprint": fingerprint, "recorded_at_unix": int(time.time())}

            tmp = self.path.with_suffix(".json.tmp")
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                # write tmp, then atomic rename
                tmp.write_text(json.dumps(data, sort_keys=True, indent=2), encoding="utf-8")
                os.replace(tmp, self.path)
            except OSError as e:
                raise SkipHistoryUnavailable(f"cannot write history {self.path}: {e}") from e
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
        logger.debug("history: recorded %s... -> %s...", key[:12], fingerprint[:12])

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
