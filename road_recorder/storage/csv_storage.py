"""
Road Recorder - CSV File Storage
Durable storage provider writing session files with the csv module

Session directory layout:
    <session_dir>/
    ├── sensors.csv          (header + one row per processed sample)
    ├── annotations.log      (<timestampMs>,<feedbackType> per line)
    └── clock_warnings.log   (clock synchronization warnings)

All methods are blocking; callers on the event loop run them through
asyncio.to_thread.
"""

import csv
import logging
import os
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class StorageProvider(Protocol):
    """Blocking storage operations used by the writer and the pipeline"""

    def create_directory(self, path: PathLike) -> None:
        ...

    def exists(self, path: PathLike) -> bool:
        ...

    def append_rows(self, path: PathLike, rows: Sequence[Sequence[str]],
                    header: Optional[Sequence[str]] = None) -> int:
        ...

    def append_log(self, path: PathLike, line: str) -> None:
        ...

    def read_rows(self, path: PathLike) -> List[List[str]]:
        ...

    def write_rows(self, path: PathLike, rows: Sequence[Sequence[str]],
                   header: Optional[Sequence[str]] = None) -> int:
        ...


class CsvFileStorage:
    """
    StorageProvider backed by local files

    Appends are flushed and fsync'ed before returning, so a row counted as
    written survives a crash. write_rows() replaces a file atomically via a
    temporary sibling.
    """

    def __init__(self, fsync: bool = True):
        self.fsync = fsync

    # ---------------------------------------------------------------------------
    # Directories
    # ---------------------------------------------------------------------------

    def create_directory(self, path: PathLike) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def exists(self, path: PathLike) -> bool:
        return Path(path).exists()

    # ---------------------------------------------------------------------------
    # Rows
    # ---------------------------------------------------------------------------

    def append_rows(self, path: PathLike, rows: Sequence[Sequence[str]],
                    header: Optional[Sequence[str]] = None) -> int:
        """
        Append rows to a CSV file, writing the header first if the file is new.

        Args:
            path:   Target CSV file.
            rows:   Rows of string values.
            header: Column names written when the file does not exist yet.

        A failed append is rolled back to the previous file size, so a retry
        never duplicates rows.

        Returns:
            Number of rows appended.
        """
        path = Path(path)
        existed = path.exists()
        size = path.stat().st_size if existed else 0
        try:
            with open(path, 'a', newline='') as f:
                writer = csv.writer(f)
                if size == 0 and header is not None:
                    writer.writerow(header)
                writer.writerows(rows)
                self._sync(f)
        except Exception:
            self._rollback(path, size, existed)
            raise
        return len(rows)

    def _rollback(self, path: Path, size: int, existed: bool):
        try:
            if existed:
                os.truncate(path, size)
            else:
                path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"✗ Could not roll back partial append to {path}: {e}")
        else:
            logger.warning(f"⚠ Partial append to {path} rolled back to {size} bytes")

    def read_rows(self, path: PathLike) -> List[List[str]]:
        """
        Read every data row of a CSV file.

        Returns:
            Rows without the header line; empty if the file does not exist.
        """
        path = Path(path)
        if not path.exists():
            return []
        with open(path, newline='') as f:
            reader = csv.reader(f)
            next(reader, None)
            return [row for row in reader]

    def write_rows(self, path: PathLike, rows: Sequence[Sequence[str]],
                   header: Optional[Sequence[str]] = None) -> int:
        """Replace a CSV file's contents with header + rows"""
        path = Path(path)
        tmp_path = path.with_name(path.name + '.tmp')
        with open(tmp_path, 'w', newline='') as f:
            writer = csv.writer(f)
            if header is not None:
                writer.writerow(header)
            writer.writerows(rows)
            self._sync(f)
        os.replace(tmp_path, path)
        logger.debug(f"Rewrote {path} ({len(rows)} rows)")
        return len(rows)

    # ---------------------------------------------------------------------------
    # Logs
    # ---------------------------------------------------------------------------

    def append_log(self, path: PathLike, line: str) -> None:
        with open(path, 'a') as f:
            f.write(line.rstrip('\n') + '\n')
            self._sync(f)

    def _sync(self, f):
        f.flush()
        if self.fsync:
            os.fsync(f.fileno())

    def __repr__(self):
        return f"<CsvFileStorage(fsync={self.fsync})>"
