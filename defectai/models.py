from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

OK_LABEL = "ok"

VerdictStatus = Literal["ok", "defective"]


@dataclass(slots=True, frozen=True)
class PresenceSignal:
    """Per-frame presence state with enter/leave edges."""

    present: bool = False
    just_entered: bool = False
    just_left: bool = False

    @classmethod
    def absent(cls) -> PresenceSignal:
        return cls()


@dataclass(slots=True, frozen=True)
class ClassifierSample:
    """One classifier guess for one frame."""

    label: str
    confidence: float
    per_class_confidence: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AggregatedVerdict:
    """Stable verdict derived from one or more classifier samples."""

    label: str
    confidence: float
    is_defective: bool
    defect_type: str | None
    status: VerdictStatus


@dataclass(slots=True)
class Inspection:
    """Lifetime of one object in front of the camera."""

    started_at: float
    sample_count: int = 0
    ended_at: float | None = None

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return max(self.ended_at - self.started_at, 0.0)


@dataclass(slots=True)
class FrameOutcome:
    """What changed for the caller after one processed frame."""

    state_changed: bool = False
    inspection_complete: bool = False
    current_result: AggregatedVerdict | None = None
    final_result: AggregatedVerdict | None = None
    completed_inspection: Inspection | None = None


@dataclass(slots=True)
class InspectionRecord:
    """A finished inspection as appended to the history log."""

    timestamp: float
    status: VerdictStatus
    defect_type: str | None
    confidence: float
    duration_ms: int
    thumbnail: str | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "status": self.status,
            "defect_type": self.defect_type,
            "confidence": self.confidence,
            "duration_ms": self.duration_ms,
            "thumbnail": self.thumbnail,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> InspectionRecord:
        return cls(
            id=int(row["id"]) if row.get("id") is not None else None,
            timestamp=float(row["timestamp"]),
            status=row["status"],
            defect_type=str(row["defect_type"]) if row.get("defect_type") is not None else None,
            confidence=float(row.get("confidence", 0.0)),
            duration_ms=int(row.get("duration_ms", 0)),
            thumbnail=row.get("thumbnail"),
        )


@dataclass(slots=True)
class InspectionStats:
    """Running totals over completed inspections."""

    total: int = 0
    ok: int = 0
    defective: int = 0
    categories: dict[str, int] = field(default_factory=dict)

    @property
    def defect_rate(self) -> str:
        if self.total == 0:
            return "0.0"
        return f"{(self.defective / self.total) * 100:.1f}"

    def record(self, status: str, defect_type: str | None) -> None:
        self.total += 1
        if status == OK_LABEL:
            self.ok += 1
            return
        self.defective += 1
        category = defect_type or "unknown"
        self.categories[category] = self.categories.get(category, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "ok": self.ok,
            "defective": self.defective,
            "defect_rate": self.defect_rate,
            "categories": dict(self.categories),
        }
