"""NDJSON diagnostic records.

Every record carries a ``record_type`` plus wall-clock time and is written as one
``orjson`` line to a text stream (stderr by default) and, when configured, appended
to a file.  A sink that fails is reported once on stderr and then disabled so that
diagnostics can never interrupt delivery.
"""

from __future__ import annotations

import sys
import time
from collections import deque
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, TextIO

import orjson


def _normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if is_dataclass(value) and not isinstance(value, type):
        return _normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, deque)):
        return [_normalize_orjson(item) for item in value]
    return str(value)


def error_fields(error: BaseException | None) -> dict[str, Any]:
    if error is None:
        return {}
    return {
        "error_type": type(error).__name__,
        "error_message": str(error),
    }


class Runlog:
    def __init__(
        self,
        *,
        stream: TextIO | None = None,
        path: str | Path | None = None,
        wall_ns_utc=None,
    ) -> None:
        self._stream = stream if stream is not None else sys.stderr
        self._path = Path(path) if path is not None else None
        self._wall_ns_utc = wall_ns_utc or time.time_ns
        self._stream_failed = False
        self._path_failed = False
        self.records = 0

    @property
    def path(self) -> Path | None:
        return self._path

    def emit(self, record_type: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "record_type": record_type,
            "ts_wall_ns_utc": self._wall_ns_utc(),
        }
        record.update(fields)
        normalized = _normalize_orjson(record)
        line = orjson.dumps(normalized)
        self._write_stream(line)
        self._write_path(line)
        self.records += 1
        return normalized

    def _write_stream(self, line: bytes) -> None:
        if self._stream_failed:
            return
        try:
            self._stream.write(line.decode("utf-8") + "\n")
            self._stream.flush()
        except (OSError, ValueError) as exc:
            self._stream_failed = True
            print(f"runlog failure: {type(exc).__name__}: {exc}", file=sys.stderr)

    def _write_path(self, line: bytes) -> None:
        if self._path is None or self._path_failed:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("ab") as handle:
                handle.write(line + b"\n")
        except OSError as exc:
            self._path_failed = True
            print(f"runlog failure: {type(exc).__name__}: {exc}", file=sys.stderr)
