"""
Flat tabular form of collected evidence.

Every artifact that can be aggregated carries a table with a fixed column
order and one row per logical record. Tables are rendered as CSV with
``\\n`` line endings so that the same rows always produce the same bytes.

Cell encoding:
    - None becomes an empty cell
    - Booleans become "true" / "false"
    - Lists and dicts become compact JSON with sorted keys
    - Everything else is rendered with str()
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def encode_cell(value: Any) -> str:
    """Encode a single value as a CSV cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return str(value)


@dataclass
class TabularForm:
    """
    Flattened rows of an artifact.

    Attributes:
        columns: Column names in output order.
        rows: One dict per logical record, keyed by column name.
    """

    columns: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_records(
        cls,
        records: Iterable[dict[str, Any]],
        columns: Sequence[str],
        sort_key: Callable[[dict[str, Any]], Any] | None = None,
    ) -> TabularForm:
        """
        Project records onto a fixed column list.

        Args:
            records: Source records. Keys outside ``columns`` are dropped.
            columns: Output column order.
            sort_key: Optional key for a stable row order.

        Returns:
            New TabularForm.
        """
        rows = [{column: record.get(column) for column in columns} for record in records]
        if sort_key is not None:
            rows.sort(key=sort_key)
        return cls(columns=list(columns), rows=rows)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_csv(self) -> str:
        """Render the table as CSV text."""
        return render_csv(self.columns, self.rows)


def render_csv(columns: Sequence[str], rows: Iterable[dict[str, Any]]) -> str:
    """
    Render rows as CSV text with a header line.

    Missing columns are written as empty cells.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([encode_cell(row.get(column)) for column in columns])
    return buffer.getvalue()


def read_csv(path: Path) -> tuple[list[str], list[dict[str, str]]]:
    """
    Read a CSV file written by render_csv.

    Returns:
        Tuple of (columns, rows). Cell values stay as encoded strings.
    """
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        try:
            columns = next(reader)
        except StopIteration:
            return [], []
        rows = [dict(zip(columns, values)) for values in reader]
    return columns, rows
