"""
Domain entities for toll-record ingestion and reconciliation.

These are plain dataclasses shared by the import coordinator, the mapping
engine and every storage backend. The ORM rows in ``tollsync.db.models`` are
converted to and from these types at the storage boundary.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from tollsync.core.errors import ValidationError


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class ImportStatus(str, Enum):
    UNSPECIFIED = "unspecified"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_IMPORT_STATUSES


TERMINAL_IMPORT_STATUSES = frozenset(
    {ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED}
)

# Forward-only lifecycle; terminal states have no outgoing edges.
_ALLOWED_TRANSITIONS = {
    ImportStatus.PENDING: {ImportStatus.PROCESSING, ImportStatus.CANCELLED},
    ImportStatus.PROCESSING: {
        ImportStatus.COMPLETED,
        ImportStatus.FAILED,
        ImportStatus.CANCELLED,
    },
}


class MappingStatus(str, Enum):
    UNSPECIFIED = "unspecified"
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass
class RowError:
    """One entry of a session's error log."""
    row_number: int  # 1-based index among data rows
    error_type: str
    error_message: str
    raw_data: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "raw_data": self.raw_data,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RowError":
        return cls(
            row_number=int(payload["row_number"]),
            error_type=payload["error_type"],
            error_message=payload["error_message"],
            raw_data=payload.get("raw_data"),
        )


@dataclass
class ImportSession:
    id: str
    account_type: str
    account_id: str
    file_name: str
    file_size: int = 0
    status: ImportStatus = ImportStatus.PENDING
    total_rows: int = 0
    processed_rows: int = 0
    success_rows: int = 0
    error_rows: int = 0
    duplicate_rows: int = 0
    error_log: List[RowError] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    # -- state machine -------------------------------------------------

    def can_transition_to(self, target: ImportStatus) -> bool:
        return target in _ALLOWED_TRANSITIONS.get(self.status, set())

    def _transition(self, target: ImportStatus) -> None:
        if not self.can_transition_to(target):
            raise ValidationError(
                f"Import session {self.id} cannot move from "
                f"{self.status.value} to {target.value}",
                details={"session_id": self.id, "status": self.status.value},
            )
        self.status = target
        if target.is_terminal:
            self.completed_at = utcnow()

    def start_processing(self) -> None:
        self._transition(ImportStatus.PROCESSING)
        if self.started_at is None:
            self.started_at = utcnow()

    def complete(self) -> None:
        self._transition(ImportStatus.COMPLETED)

    def fail(self) -> None:
        self._transition(ImportStatus.FAILED)

    def cancel(self) -> None:
        self._transition(ImportStatus.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    # -- counters ------------------------------------------------------

    def record_success(self, count: int = 1) -> None:
        self.success_rows += count
        self.processed_rows += count

    def record_duplicate(self, count: int = 1) -> None:
        self.duplicate_rows += count
        self.processed_rows += count

    def record_error(self, error: RowError) -> None:
        self.error_log.append(error)
        self.error_rows += 1
        self.processed_rows += 1

    @property
    def progress_percentage(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return self.processed_rows / self.total_rows * 100.0

    @property
    def success_rate(self) -> float:
        if self.processed_rows == 0:
            return 0.0
        return self.success_rows / self.processed_rows * 100.0

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()


@dataclass
class TollRecord:
    hash: str
    date: date
    time: str  # HH:MM:SS, zero padded
    entry_point: str
    exit_point: str
    amount: int
    vehicle_id: str
    card_id: str
    external_ref: Optional[str] = None
    external_row_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def occurred_at(self) -> datetime:
        """Naive local timestamp of the toll event."""
        return datetime.combine(self.date, time.fromisoformat(self.time))

    def masked_card_id(self) -> str:
        if len(self.card_id) <= 4:
            return "****"
        return "****-" + self.card_id[-4:]


@dataclass
class Mapping:
    toll_record_id: int
    mapping_type: str
    mapped_entity_id: int
    mapped_entity_type: str
    confidence: float
    status: MappingStatus
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CandidateEntity:
    """A row from an external operational system that a toll record may link to."""
    entity_id: int
    entity_type: str
    occurred_at: datetime
    vehicle_id: Optional[str] = None
    card_id: Optional[str] = None
    amount: Optional[int] = None


@dataclass
class PotentialMatch:
    entity_id: int
    entity_type: str
    confidence: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class ProgressUpdate:
    session_id: str
    percentage: float
    processed_rows: int
    success_rows: int
    error_rows: int
    duplicate_rows: int
    status: ImportStatus


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total_count == 0:
            return 0
        return math.ceil(self.total_count / self.page_size)
