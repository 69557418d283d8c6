"""File persistence for the local backend.

Both classes keep their data in memory when constructed without a path,
which is what the tests use.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from certichain.errors import BackendUnavailable

logger = logging.getLogger(__name__)


class JsonDocumentStore:
    """A list of JSON objects rewritten as a whole on every save."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path else None
        self._records: list = []
        self._lock = threading.Lock()
        if self._path and self._path.exists():
            self._records = self._read()

    @property
    def records(self) -> list:
        return self._records

    def save(self, records: list) -> None:
        with self._lock:
            if self._path:
                self._write_file(records)
            self._records = records

    def _write_file(self, records: list) -> None:
        tmp = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=self._path.parent,
                                             prefix=self._path.name, suffix=".tmp",
                                             delete=False) as f:
                tmp = f.name
                json.dump(records, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self._path)
        except OSError as exc:
            if tmp and os.path.exists(tmp):
                os.remove(tmp)
            logger.error("Could not write %s: %s", self._path, exc)
            raise BackendUnavailable(f"Local store {self._path} is not writable") from exc

    def _read(self) -> list:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as exc:
            raise BackendUnavailable(f"Local store {self._path} is not readable") from exc
        if not isinstance(data, list):
            raise ValueError(f"{self._path} does not hold a JSON list")
        return data


class JsonLinesLog:
    """Append-only JSONL file: one JSON object per line, never rewritten."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path else None
        self._records: list = []
        self._lock = threading.Lock()
        if self._path and self._path.exists():
            self._load()

    @property
    def records(self) -> list:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: dict) -> None:
        with self._lock:
            if self._path:
                self._append_line(record)
            self._records.append(record)

    def _append_line(self, record: dict) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            logger.error("Could not append to %s: %s", self._path, exc)
            raise BackendUnavailable(f"Local log {self._path} is not writable") from exc

    def _load(self) -> None:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        self._records.append(json.loads(line))
                    except ValueError:
                        raise ValueError(f"Corrupt record in {self._path} (line {line_num})")
        except OSError as exc:
            raise BackendUnavailable(f"Local log {self._path} is not readable") from exc
