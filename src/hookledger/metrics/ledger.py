"""Append-only CSV ledgers with bounded retry and header migration.

Each category has one ledger file `<data_dir>/<category>.csv`. Rows are only
ever appended. When a ledger's header no longer matches the expected
columns, the file is migrated: a backup copy is written next to it and the
rewritten file atomically replaces the original.
"""

from __future__ import annotations

import csv
import errno
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from hookledger.metrics.records import RECORD_TYPES, LedgerRecord, format_value

logger = logging.getLogger(__name__)

LEDGER_SCHEMAS: dict[str, tuple[str, ...]] = {
    record_type.category: record_type.columns() for record_type in RECORD_TYPES
}

# Leading characters that spreadsheets evaluate as formulas
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
QUOTE_TRIGGERS = (",", '"', "\n", "\r")

TRANSIENT_ERRNOS = frozenset({errno.EBUSY, errno.EAGAIN, errno.EINTR})

STATUS_CREATED = "created"
STATUS_MIGRATED = "migrated"
STATUS_OK = "ok"


class LedgerWriteError(OSError):
    """Raised when a ledger append cannot be completed."""


def quote_value(text: str) -> str:
    """Quote-wrap a cell if it contains a delimiter, quote or newline."""
    if any(ch in text for ch in QUOTE_TRIGGERS):
        return '"' + text.replace('"', '""') + '"'
    return text


def escape_value(value: Any) -> str:
    """Render a value as one safe CSV cell.

    Text beginning with a formula character is prefixed with `'`. Signed
    numbers such as "-12" or "-0.5000000000" are left as they are.
    """
    text = format_value(value)
    if text.startswith(FORMULA_PREFIXES) and not _is_signed_number(text):
        text = "'" + text
    return quote_value(text)


def _is_signed_number(text: str) -> bool:
    if text[0] not in "+-" or not text[1:2].isdigit():
        return False
    try:
        float(text)
    except ValueError:
        return False
    return True


def build_line(values: Sequence[Any]) -> str:
    """Join escaped values into one CSV line (without newline)."""
    return ",".join(escape_value(v) for v in values)


def read_header(path: Path) -> list[str] | None:
    """Read the header row of a ledger.

    Returns:
        Header columns, or None if the file is absent or empty.
    """
    try:
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            return next(reader, None)
    except FileNotFoundError:
        return None


def migrate_ledger(path: Path, columns: Sequence[str], now: datetime | None = None) -> Path:
    """Rewrite a ledger under a new header, mapping columns by name.

    Columns missing from the old header are left empty; columns no longer
    in the schema are dropped. The data-row count is preserved.

    Args:
        path: The ledger to migrate.
        columns: The expected header.
        now: Timestamp used for the backup file name.

    Returns:
        Path of the backup copy.
    """
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
    backup = path.with_name(f"{path.name}.bak-{stamp}")

    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        old_header = next(reader, [])
        rows = list(reader)

    shutil.copy2(path, backup)

    index = {name: i for i, name in enumerate(old_header)}
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as out:
            out.write(",".join(quote_value(c) for c in columns) + "\n")
            for row in rows:
                values = [
                    row[index[name]] if name in index and index[name] < len(row) else ""
                    for name in columns
                ]
                # Stored values were neutralized when first written
                out.write(",".join(quote_value(v) for v in values) + "\n")
            out.flush()
            os.fsync(out.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.info(f"Migrated ledger {path} ({len(rows)} rows), backup at {backup}")
    return backup


class LedgerWriter:
    """Writes records to per-category CSV ledgers."""

    def __init__(self, data_dir: Path, max_retries: int = 3, retry_delay: float = 0.1):
        """Initialize the writer.

        Args:
            data_dir: Directory holding the ledger files.
            max_retries: Attempts per append before giving up on a busy file.
            retry_delay: Seconds to sleep between attempts.
        """
        self.data_dir = Path(data_dir)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    def path_for(self, category: str) -> Path:
        """Get the ledger file for a category."""
        if category not in LEDGER_SCHEMAS:
            raise KeyError(f"Unknown ledger category: {category}")
        return self.data_dir / f"{category}.csv"

    def ensure_ledger(self, category: str) -> str:
        """Create or migrate one ledger so its header matches the schema.

        Returns:
            One of "created", "migrated" or "ok".
        """
        path = self.path_for(category)
        columns = LEDGER_SCHEMAS[category]
        header = read_header(path)

        if header is None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8", newline="") as f:
                if f.tell() == 0:
                    f.write(build_line(columns) + "\n")
                    return STATUS_CREATED
            # Another run wrote the header first.
            return STATUS_OK

        if tuple(header) != columns:
            migrate_ledger(path, columns)
            return STATUS_MIGRATED

        return STATUS_OK

    def initialize(self) -> dict[str, str]:
        """Ensure every category ledger exists with the expected header.

        Ledgers are independent files, so they are checked concurrently.

        Returns:
            Map of category to status ("created", "migrated" or "ok").
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        categories = list(LEDGER_SCHEMAS)
        with ThreadPoolExecutor(max_workers=len(categories)) as pool:
            statuses = list(pool.map(self.ensure_ledger, categories))
        return dict(zip(categories, statuses))

    def append(self, category: str, row: Mapping[str, Any] | Sequence[Any]) -> None:
        """Append one row to a category ledger.

        Args:
            category: Ledger category name.
            row: Values in column order, or a mapping keyed by column name
                (missing columns are left empty).

        Raises:
            LedgerWriteError: If the append keeps failing or fails with a
                non-transient error.
        """
        path = self.path_for(category)
        columns = LEDGER_SCHEMAS[category]
        if isinstance(row, Mapping):
            values = [row.get(name) for name in columns]
        else:
            values = list(row)
        line = build_line(values) + "\n"

        for attempt in range(1, self.max_retries + 1):
            try:
                self._append_line(path, columns, line)
                return
            except OSError as e:
                if e.errno in TRANSIENT_ERRNOS and attempt < self.max_retries:
                    logger.debug(
                        f"Ledger {path.name} busy (attempt {attempt}/{self.max_retries}), retrying"
                    )
                    time.sleep(self.retry_delay)
                    continue
                raise LedgerWriteError(
                    e.errno, f"Failed to append to {path} after {attempt} attempt(s): {e}"
                ) from e

    def write(self, record: LedgerRecord) -> None:
        """Append a record to its category ledger."""
        self.append(record.category, record.to_row())

    def _append_line(self, path: Path, columns: Sequence[str], line: str) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8", newline="") as f:
            if f.tell() == 0:
                f.write(build_line(columns) + "\n")
            f.write(line)
