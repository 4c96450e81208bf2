"""Append-only CSV report sink.

A header row is written only when the target file does not exist yet; every
call then appends one row per record. Byte offsets from ``size()`` serve as
checkpoints that ``truncate()`` rolls the file back to. Concurrent writers
targeting the same path are serialized by a per-path lock.
"""
from __future__ import annotations

import csv
import threading
from pathlib import Path
from typing import Sequence

from eod_reports.reports.records import header, row
from eod_reports.utils import get_logger

logger = get_logger(__name__)

_PATH_LOCKS: dict[Path, threading.Lock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(path)
        if lock is None:
            lock = _PATH_LOCKS[path] = threading.Lock()
        return lock


class CsvReportSink:
    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)

    def path_for(self, filename: str) -> Path:
        return self.output_dir / filename

    def write(self, filename: str, records: Sequence[object]) -> int:
        """Append ``records`` to ``filename``; returns the number of rows written."""
        if not records:
            return 0
        path = self.path_for(filename).resolve()
        record_type = type(records[0])
        with _lock_for(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            is_new = not path.exists()
            with path.open("a", newline="", encoding="utf-8") as fh:
                writer = csv.writer(fh)
                if is_new:
                    writer.writerow(header(record_type))
                for record in records:
                    writer.writerow(row(record))
        logger.debug("CSV rows appended", file=str(path), rows=len(records), new_file=is_new)
        return len(records)

    def size(self, filename: str) -> int:
        """Current byte length of ``filename``; 0 when it does not exist."""
        path = self.path_for(filename).resolve()
        with _lock_for(path):
            return path.stat().st_size if path.exists() else 0

    def truncate(self, filename: str, offset: int) -> bool:
        """Cut ``filename`` back to ``offset`` bytes; offset 0 removes the file.

        Returns True when anything was discarded.
        """
        path = self.path_for(filename).resolve()
        with _lock_for(path):
            if not path.exists() or path.stat().st_size <= offset:
                return False
            if offset <= 0:
                path.unlink()
            else:
                with path.open("r+b") as fh:
                    fh.truncate(offset)
        logger.info("CSV report truncated to last checkpoint", file=str(path), offset=offset)
        return True


__all__ = ["CsvReportSink"]
