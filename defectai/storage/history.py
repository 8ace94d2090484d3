from __future__ import annotations

import csv
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from defectai.models import InspectionRecord, InspectionStats

logger = logging.getLogger(__name__)

CSV_HEADERS = ["ID", "Timestamp", "Status", "Defect Type", "Confidence", "Duration (ms)"]


class InspectionHistory:
    """Append-only JSON-lines log of completed inspections.

    The last assigned id is read from disk once and then tracked in memory, so
    one process should own the file while it is appending.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._last_id: int | None = None

    def append(self, record: InspectionRecord) -> InspectionRecord:
        if self._last_id is None:
            self._last_id = max((row.id or 0 for row in self._read_all()), default=0)
        next_id = self._last_id + 1
        record.id = next_id

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")
        self._last_id = next_id

        logger.info(
            "Saved inspection %d: %s%s (%.1f%%)",
            next_id,
            record.status,
            f" / {record.defect_type}" if record.defect_type else "",
            record.confidence * 100,
        )
        return record

    def list_records(self, limit: int = 100) -> list[InspectionRecord]:
        """Most recent records first."""

        records = sorted(self._read_all(), key=lambda row: (row.timestamp, row.id or 0), reverse=True)
        return records[: max(limit, 0)]

    def stats(self) -> InspectionStats:
        stats = InspectionStats()
        for record in self._read_all():
            stats.record(record.status, record.defect_type)
        return stats

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
        self._last_id = 0
        logger.info("Cleared inspection history at %s", self.path)

    def export_csv(self, output_path: str | Path, limit: int = 10000) -> Path | None:
        """Write history as CSV; returns ``None`` when there is nothing to export."""

        records = self.list_records(limit=limit)
        if not records:
            return None

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(CSV_HEADERS)
            for record in records:
                writer.writerow(
                    [
                        record.id,
                        _iso_timestamp(record.timestamp),
                        record.status,
                        record.defect_type or "",
                        f"{record.confidence * 100:.1f}%" if record.confidence else "",
                        record.duration_ms or "",
                    ]
                )
        return path

    def _read_all(self) -> list[InspectionRecord]:
        if not self.path.exists():
            return []

        records: list[InspectionRecord] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(InspectionRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed history line %d in %s (%s)", line_number, self.path, exc)
        return records


def _iso_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
