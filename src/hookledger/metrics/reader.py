"""Read access to the CSV ledgers.

Session rows are append-only, so one session id may appear several times
(one row per stop event). Readers take the latest row per id.
"""

from __future__ import annotations

import csv
from collections.abc import Iterator
from pathlib import Path

from hookledger.metrics.ledger import LEDGER_SCHEMAS


class LedgerReader:
    """Reads rows back from the ledgers in a data directory."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def rows(self, category: str) -> Iterator[dict[str, str]]:
        """Yield rows of a ledger as dicts keyed by header column.

        Yields nothing if the ledger does not exist yet.

        Raises:
            KeyError: If the category is unknown.
        """
        if category not in LEDGER_SCHEMAS:
            raise KeyError(f"Unknown ledger category: {category}")
        path = self.data_dir / f"{category}.csv"
        if not path.exists():
            return
        with open(path, newline="", encoding="utf-8") as f:
            yield from csv.DictReader(f)

    def latest_sessions(self) -> list[dict[str, str]]:
        """Latest session row per session id, most recently ended first."""
        latest: dict[str, dict[str, str]] = {}
        for row in self.rows("sessions"):
            latest[row.get("session_id", "")] = row
        return sorted(latest.values(), key=lambda r: r.get("ended_at") or "", reverse=True)
