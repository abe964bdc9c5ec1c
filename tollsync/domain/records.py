"""
Direct CRUD over stored toll records.

Records normally arrive through imports; these operations back the remote
record surface. The content hash is always derived here, never accepted from
callers.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from datetime import date
from typing import Any, Dict, Optional, Union

from tollsync.core.config import settings
from tollsync.core.errors import NotFoundError, ValidationError
from tollsync.db.repository import StorageBackend
from tollsync.domain.imports.hashing import calculate_record_hash, normalize_field
from tollsync.domain.imports.parser import parse_date, parse_time
from tollsync.domain.matching.policy import resolve_missing_on_delete
from tollsync.domain.models import Page, TollRecord
from tollsync.domain.queries import RECORD_SORT_FIELDS, PageRequest, RecordFilter

logger = logging.getLogger(__name__)

SEMANTIC_FIELDS = ("date", "time", "entry_point", "exit_point", "amount", "vehicle_id", "card_id")


@dataclass
class RecordInput:
    date: Union[date, str, None] = None
    time: Optional[str] = None
    entry_point: Optional[str] = None
    exit_point: Optional[str] = None
    amount: Optional[int] = None
    vehicle_id: Optional[str] = None
    card_id: Optional[str] = None
    external_ref: Optional[str] = None
    external_row_id: Optional[int] = None

    def supplied(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


def _clean_value(name: str, value: Any) -> Any:
    if name == "date":
        if isinstance(value, date):
            return value
        parsed = parse_date(normalize_field(value))
        if parsed is None:
            raise ValidationError(f"Invalid date '{value}' (expected YYYY-MM-DD or YYYY/MM/DD)")
        return parsed
    if name == "time":
        parsed = parse_time(normalize_field(value))
        if parsed is None:
            raise ValidationError(f"Invalid time '{value}' (expected HH:MM:SS, 24h)")
        return parsed
    if name == "amount":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("amount must be a non-negative integer")
        return value
    if name == "external_row_id":
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError("external_row_id must be a positive integer")
        return value
    if name == "external_ref":
        # Blank means "no reference"
        return normalize_field(value) or None
    text = normalize_field(value)
    if not text:
        raise ValidationError(f"{name} cannot be empty")
    return text


def _rehash(record: TollRecord) -> TollRecord:
    record.hash = calculate_record_hash(
        record.date,
        record.time,
        record.entry_point,
        record.exit_point,
        record.amount,
        record.vehicle_id,
        record.card_id,
    )
    return record


class RecordService:
    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def get_record(self, record_id: int) -> TollRecord:
        if isinstance(record_id, bool) or not isinstance(record_id, int) or record_id <= 0:
            raise ValidationError("record_id must be a positive integer")
        record = self.storage.get_record(record_id)
        if record is None:
            raise NotFoundError(f"Toll record {record_id} not found")
        return record

    def list_records(
        self,
        filters: Optional[RecordFilter] = None,
        page: Optional[PageRequest] = None,
    ) -> Page[TollRecord]:
        filters = (filters or RecordFilter()).validate()
        page = (page or PageRequest(page_size=settings.default_page_size, sort_by="date")).validate(RECORD_SORT_FIELDS)
        items, total = self.storage.list_records(filters, page)
        return Page(items=items, total_count=total, page=page.page, page_size=page.page_size)

    def create_record(self, data: RecordInput) -> TollRecord:
        """
        Store a single record.

        Raises:
            ValidationError: A required field is missing or malformed
            ConflictError: A record with the same content already exists
        """
        supplied = data.supplied()
        missing = [name for name in SEMANTIC_FIELDS if name not in supplied]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )
        values = {name: _clean_value(name, value) for name, value in supplied.items()}
        record = _rehash(TollRecord(hash="", **values))
        created = self.storage.create_record(record)
        logger.info("Created toll record %s (card %s)", created.id, created.masked_card_id())
        return created

    def update_record(self, record_id: int, changes: RecordInput) -> TollRecord:
        """Partial update; changing any semantic field re-derives the hash."""
        supplied = changes.supplied()
        if not supplied:
            raise ValidationError("nothing to update")
        current = self.get_record(record_id)
        values = {name: _clean_value(name, value) for name, value in supplied.items()}
        updated = replace(current, **values)
        if any(name in values for name in SEMANTIC_FIELDS):
            _rehash(updated)
        stored = self.storage.update_record(updated)
        if stored is None:
            raise NotFoundError(f"Toll record {record_id} not found")
        logger.info("Updated toll record %s fields: %s", record_id, ", ".join(sorted(values)))
        return stored

    def delete_record(self, record_id: int) -> None:
        if isinstance(record_id, bool) or not isinstance(record_id, int) or record_id <= 0:
            raise ValidationError("record_id must be a positive integer")
        if self.storage.delete_record(record_id):
            logger.info("Deleted toll record %s", record_id)
            return
        resolve_missing_on_delete("Toll record", record_id)
