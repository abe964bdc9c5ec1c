"""
Pagination, sorting and filter parameters shared by the list operations.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from tollsync.core.config import settings
from tollsync.core.errors import ValidationError
from tollsync.domain.models import ImportStatus, MappingStatus

SORT_ORDERS = ("asc", "desc")

SESSION_SORT_FIELDS = ("created_at", "started_at", "file_name", "status", "total_rows")
MAPPING_SORT_FIELDS = ("created_at", "updated_at", "confidence", "toll_record_id", "id")
RECORD_SORT_FIELDS = ("date", "amount", "created_at", "id")


@dataclass
class PageRequest:
    page: int = 1
    page_size: int = 50
    sort_by: str = "created_at"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def validate(self, allowed_sort_fields: Iterable[str]) -> "PageRequest":
        if self.page < 1:
            raise ValidationError("page must be >= 1")
        if self.page_size < 1 or self.page_size > settings.max_page_size:
            raise ValidationError(
                f"page_size must be between 1 and {settings.max_page_size}"
            )
        allowed = tuple(allowed_sort_fields)
        if self.sort_by not in allowed:
            raise ValidationError(
                f"sort_by must be one of: {', '.join(allowed)}"
            )
        order = (self.sort_order or "").lower()
        if order not in SORT_ORDERS:
            raise ValidationError("sort_order must be 'asc' or 'desc'")
        self.sort_order = order
        return self


@dataclass
class SessionFilter:
    account_type: Optional[str] = None
    account_id: Optional[str] = None  # substring match
    status: Optional[ImportStatus] = None
    created_by: Optional[str] = None

    def validate(self) -> "SessionFilter":
        if self.status == ImportStatus.UNSPECIFIED:
            raise ValidationError("status filter cannot be 'unspecified'")
        return self


@dataclass
class MappingFilter:
    toll_record_id: Optional[int] = None
    mapping_type: Optional[str] = None
    mapped_entity_type: Optional[str] = None
    mapped_entity_id: Optional[int] = None
    status: Optional[MappingStatus] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None

    def validate(self) -> "MappingFilter":
        if self.status == MappingStatus.UNSPECIFIED:
            raise ValidationError("status filter cannot be 'unspecified'")
        for label, bound in (("min_confidence", self.min_confidence), ("max_confidence", self.max_confidence)):
            if bound is not None and not 0.0 <= bound <= 1.0:
                raise ValidationError(f"{label} must be between 0.0 and 1.0")
        if (
            self.min_confidence is not None
            and self.max_confidence is not None
            and self.min_confidence > self.max_confidence
        ):
            raise ValidationError("min_confidence cannot be greater than max_confidence")
        return self


@dataclass
class RecordFilter:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    vehicle_id: Optional[str] = None  # substring match
    card_id: Optional[str] = None  # substring match
    entry_point: Optional[str] = None
    exit_point: Optional[str] = None

    def validate(self) -> "RecordFilter":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("date_from cannot be after date_to")
        return self
