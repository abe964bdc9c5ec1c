"""
Storage capability interface and its two implementations.

The import coordinator, the record service and the mapping engine only talk
to a ``StorageBackend``. ``SqlAlchemyStorage`` is used by the service;
``InMemoryStorage`` backs tests and embedded use. Lookups return ``None`` for
unknown ids and the calling service decides whether that is a NotFound.
"""
from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import asc, desc, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tollsync.core.errors import ConflictError, StorageError
from tollsync.db.models import ImportSessionRow, TollMappingRow, TollRecordRow
from tollsync.domain.models import (
    ImportSession,
    ImportStatus,
    Mapping,
    MappingStatus,
    RowError,
    TollRecord,
    utcnow,
)
from tollsync.domain.queries import MappingFilter, PageRequest, RecordFilter, SessionFilter

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Persistence operations consumed by the services."""

    # -- toll records --------------------------------------------------

    @abstractmethod
    def create_record(self, record: TollRecord) -> TollRecord:
        """Insert a record. Raises ConflictError if its hash already exists."""

    @abstractmethod
    def get_record(self, record_id: int) -> Optional[TollRecord]:
        ...

    @abstractmethod
    def list_records(self, filters: RecordFilter, page: PageRequest) -> Tuple[List[TollRecord], int]:
        ...

    @abstractmethod
    def update_record(self, record: TollRecord) -> Optional[TollRecord]:
        """Overwrite a stored record. Raises ConflictError if the new hash is taken."""

    @abstractmethod
    def delete_record(self, record_id: int) -> bool:
        ...

    @abstractmethod
    def batch_check_hashes_exist(self, hashes: Iterable[str]) -> Dict[str, bool]:
        ...

    # -- mappings ------------------------------------------------------

    @abstractmethod
    def create_mapping(self, mapping: Mapping) -> Mapping:
        ...

    @abstractmethod
    def get_mapping(self, mapping_id: int) -> Optional[Mapping]:
        ...

    @abstractmethod
    def update_mapping(self, mapping: Mapping) -> Optional[Mapping]:
        ...

    @abstractmethod
    def delete_mapping(self, mapping_id: int) -> bool:
        ...

    @abstractmethod
    def list_mappings(self, filters: MappingFilter, page: PageRequest) -> Tuple[List[Mapping], int]:
        ...

    @abstractmethod
    def find_active_mappings(self, toll_record_id: int) -> List[Mapping]:
        ...

    # -- import sessions -----------------------------------------------

    @abstractmethod
    def persist_session(self, session: ImportSession) -> ImportSession:
        """Insert a new session. Raises ConflictError if the id is taken."""

    @abstractmethod
    def update_session(self, session: ImportSession) -> ImportSession:
        """
        Write counters, error log and status, returning the stored state.

        A stored terminal status is never replaced by a different one; in that
        case the counters are still written and the returned session carries
        the stored status, which is how a worker notices a cancellation.
        """

    @abstractmethod
    def cancel_session(self, session_id: str) -> Optional[ImportSession]:
        """
        Mark a PENDING or PROCESSING session CANCELLED without touching its counters.

        Returns the stored session (still terminal with its own status when it
        had already finished), or None for an unknown id.
        """

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[ImportSession]:
        ...

    @abstractmethod
    def list_sessions(self, filters: SessionFilter, page: PageRequest) -> Tuple[List[ImportSession], int]:
        ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _keeps_stored_status(stored_status: ImportStatus, incoming_status: ImportStatus) -> bool:
    return stored_status.is_terminal and incoming_status != stored_status


class SqlAlchemyStorage(StorageBackend):
    """StorageBackend over the ORM tables in ``tollsync.db.models``."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.info("Unique constraint rejected %s: %s", operation, exc.orig)
            raise ConflictError(f"{operation} conflicts with an existing row")
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Storage failure during %s", operation)
            raise StorageError(original_error=exc)
        finally:
            db.close()

    # -- conversions ---------------------------------------------------

    @staticmethod
    def _to_record(row: TollRecordRow) -> TollRecord:
        return TollRecord(
            id=row.id,
            hash=row.hash,
            date=row.date,
            time=row.time,
            entry_point=row.entry_point,
            exit_point=row.exit_point,
            amount=row.amount,
            vehicle_id=row.vehicle_id,
            card_id=row.card_id,
            external_ref=row.external_ref,
            external_row_id=row.external_row_id,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _apply_record(row: TollRecordRow, record: TollRecord) -> None:
        row.hash = record.hash
        row.date = record.date
        row.time = record.time
        row.entry_point = record.entry_point
        row.exit_point = record.exit_point
        row.amount = record.amount
        row.vehicle_id = record.vehicle_id
        row.card_id = record.card_id
        row.external_ref = record.external_ref
        row.external_row_id = record.external_row_id

    @staticmethod
    def _to_mapping(row: TollMappingRow) -> Mapping:
        return Mapping(
            id=row.id,
            toll_record_id=row.toll_record_id,
            mapping_type=row.mapping_type,
            mapped_entity_id=row.mapped_entity_id,
            mapped_entity_type=row.mapped_entity_type,
            confidence=row.confidence,
            status=MappingStatus(row.status),
            metadata=dict(row.metadata_ or {}),
            created_by=row.created_by,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _apply_mapping(row: TollMappingRow, mapping: Mapping) -> None:
        row.toll_record_id = mapping.toll_record_id
        row.mapping_type = mapping.mapping_type
        row.mapped_entity_id = mapping.mapped_entity_id
        row.mapped_entity_type = mapping.mapped_entity_type
        row.confidence = mapping.confidence
        row.status = mapping.status.value
        row.metadata_ = dict(mapping.metadata or {})
        row.created_by = mapping.created_by

    @staticmethod
    def _to_session(row: ImportSessionRow) -> ImportSession:
        return ImportSession(
            id=row.id,
            account_type=row.account_type,
            account_id=row.account_id,
            file_name=row.file_name,
            file_size=row.file_size,
            status=ImportStatus(row.status),
            total_rows=row.total_rows,
            processed_rows=row.processed_rows,
            success_rows=row.success_rows,
            error_rows=row.error_rows,
            duplicate_rows=row.duplicate_rows,
            error_log=[RowError.from_dict(entry) for entry in (row.error_log or [])],
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            created_by=row.created_by,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _apply_progress(row: ImportSessionRow, session: ImportSession) -> None:
        row.file_size = session.file_size
        row.total_rows = session.total_rows
        row.processed_rows = session.processed_rows
        row.success_rows = session.success_rows
        row.error_rows = session.error_rows
        row.duplicate_rows = session.duplicate_rows
        row.error_log = [entry.to_dict() for entry in session.error_log]

    @staticmethod
    def _order(query, column, page: PageRequest, tiebreak):
        direction = desc if page.sort_order == "desc" else asc
        return query.order_by(direction(column), direction(tiebreak))

    def _paginate(self, db: Session, query, page: PageRequest):
        total = db.execute(select(func.count()).select_from(query.order_by(None).subquery())).scalar_one()
        rows = db.execute(query.offset(page.offset).limit(page.page_size)).scalars().all()
        return rows, total

    # -- toll records --------------------------------------------------

    def create_record(self, record: TollRecord) -> TollRecord:
        with self._session("create_record") as db:
            row = TollRecordRow()
            self._apply_record(row, record)
            db.add(row)
            db.flush()
            db.refresh(row)
            return self._to_record(row)

    def get_record(self, record_id: int) -> Optional[TollRecord]:
        with self._session("get_record") as db:
            row = db.get(TollRecordRow, record_id)
            return self._to_record(row) if row else None

    def list_records(self, filters: RecordFilter, page: PageRequest) -> Tuple[List[TollRecord], int]:
        with self._session("list_records") as db:
            query = select(TollRecordRow)
            if filters.date_from:
                query = query.where(TollRecordRow.date >= filters.date_from)
            if filters.date_to:
                query = query.where(TollRecordRow.date <= filters.date_to)
            if filters.vehicle_id:
                query = query.where(TollRecordRow.vehicle_id.contains(filters.vehicle_id))
            if filters.card_id:
                query = query.where(TollRecordRow.card_id.contains(filters.card_id))
            if filters.entry_point:
                query = query.where(TollRecordRow.entry_point == filters.entry_point)
            if filters.exit_point:
                query = query.where(TollRecordRow.exit_point == filters.exit_point)
            query = self._order(query, getattr(TollRecordRow, page.sort_by), page, TollRecordRow.id)
            rows, total = self._paginate(db, query, page)
            return [self._to_record(row) for row in rows], total

    def update_record(self, record: TollRecord) -> Optional[TollRecord]:
        with self._session("update_record") as db:
            row = db.get(TollRecordRow, record.id)
            if row is None:
                return None
            self._apply_record(row, record)
            row.updated_at = utcnow()
            db.flush()
            db.refresh(row)
            return self._to_record(row)

    def delete_record(self, record_id: int) -> bool:
        with self._session("delete_record") as db:
            row = db.get(TollRecordRow, record_id)
            if row is None:
                return False
            db.delete(row)
            return True

    def batch_check_hashes_exist(self, hashes: Iterable[str]) -> Dict[str, bool]:
        wanted = list(dict.fromkeys(hashes))
        if not wanted:
            return {}
        with self._session("batch_check_hashes_exist") as db:
            found = set(
                db.execute(select(TollRecordRow.hash).where(TollRecordRow.hash.in_(wanted))).scalars().all()
            )
        return {value: value in found for value in wanted}

    # -- mappings ------------------------------------------------------

    def create_mapping(self, mapping: Mapping) -> Mapping:
        with self._session("create_mapping") as db:
            row = TollMappingRow()
            self._apply_mapping(row, mapping)
            db.add(row)
            db.flush()
            db.refresh(row)
            return self._to_mapping(row)

    def get_mapping(self, mapping_id: int) -> Optional[Mapping]:
        with self._session("get_mapping") as db:
            row = db.get(TollMappingRow, mapping_id)
            return self._to_mapping(row) if row else None

    def update_mapping(self, mapping: Mapping) -> Optional[Mapping]:
        with self._session("update_mapping") as db:
            row = db.get(TollMappingRow, mapping.id)
            if row is None:
                return None
            self._apply_mapping(row, mapping)
            row.updated_at = utcnow()
            db.flush()
            db.refresh(row)
            return self._to_mapping(row)

    def delete_mapping(self, mapping_id: int) -> bool:
        with self._session("delete_mapping") as db:
            row = db.get(TollMappingRow, mapping_id)
            if row is None:
                return False
            db.delete(row)
            return True

    def list_mappings(self, filters: MappingFilter, page: PageRequest) -> Tuple[List[Mapping], int]:
        with self._session("list_mappings") as db:
            query = select(TollMappingRow)
            if filters.toll_record_id is not None:
                query = query.where(TollMappingRow.toll_record_id == filters.toll_record_id)
            if filters.mapping_type:
                query = query.where(TollMappingRow.mapping_type == filters.mapping_type)
            if filters.mapped_entity_type:
                query = query.where(TollMappingRow.mapped_entity_type == filters.mapped_entity_type)
            if filters.mapped_entity_id is not None:
                query = query.where(TollMappingRow.mapped_entity_id == filters.mapped_entity_id)
            if filters.status is not None:
                query = query.where(TollMappingRow.status == filters.status.value)
            if filters.min_confidence is not None:
                query = query.where(TollMappingRow.confidence >= filters.min_confidence)
            if filters.max_confidence is not None:
                query = query.where(TollMappingRow.confidence <= filters.max_confidence)
            query = self._order(query, getattr(TollMappingRow, page.sort_by), page, TollMappingRow.id)
            rows, total = self._paginate(db, query, page)
            return [self._to_mapping(row) for row in rows], total

    def find_active_mappings(self, toll_record_id: int) -> List[Mapping]:
        with self._session("find_active_mappings") as db:
            rows = db.execute(
                select(TollMappingRow)
                .where(TollMappingRow.toll_record_id == toll_record_id)
                .where(TollMappingRow.status == MappingStatus.ACTIVE.value)
                .order_by(TollMappingRow.id)
            ).scalars().all()
            return [self._to_mapping(row) for row in rows]

    # -- import sessions -----------------------------------------------

    def persist_session(self, session: ImportSession) -> ImportSession:
        with self._session("persist_session") as db:
            if db.get(ImportSessionRow, session.id) is not None:
                raise ConflictError(f"Import session {session.id} already exists")
            row = ImportSessionRow(
                id=session.id,
                account_type=session.account_type,
                account_id=session.account_id,
                file_name=session.file_name,
                status=session.status.value,
                started_at=session.started_at,
                completed_at=session.completed_at,
                created_by=session.created_by,
                created_at=session.created_at,
            )
            self._apply_progress(row, session)
            db.add(row)
            db.flush()
            return self._to_session(row)

    def update_session(self, session: ImportSession) -> ImportSession:
        with self._session("update_session") as db:
            # Row lock where the dialect supports it; SQLite serialises writers anyway.
            row = db.execute(
                select(ImportSessionRow).where(ImportSessionRow.id == session.id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise StorageError(f"Import session {session.id} was never persisted")
            self._apply_progress(row, session)
            if _keeps_stored_status(ImportStatus(row.status), session.status):
                logger.info(
                    "Session %s is already %s; keeping stored status over %s",
                    session.id,
                    row.status,
                    session.status.value,
                )
            else:
                row.status = session.status.value
                row.started_at = session.started_at
                row.completed_at = session.completed_at
            db.flush()
            return self._to_session(row)

    def cancel_session(self, session_id: str) -> Optional[ImportSession]:
        with self._session("cancel_session") as db:
            row = db.execute(
                select(ImportSessionRow).where(ImportSessionRow.id == session_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                return None
            if not ImportStatus(row.status).is_terminal:
                row.status = ImportStatus.CANCELLED.value
                row.completed_at = utcnow()
                db.flush()
            return self._to_session(row)

    def get_session(self, session_id: str) -> Optional[ImportSession]:
        with self._session("get_session") as db:
            row = db.get(ImportSessionRow, session_id)
            return self._to_session(row) if row else None

    def list_sessions(self, filters: SessionFilter, page: PageRequest) -> Tuple[List[ImportSession], int]:
        with self._session("list_sessions") as db:
            query = select(ImportSessionRow)
            if filters.account_type:
                query = query.where(ImportSessionRow.account_type == filters.account_type)
            if filters.account_id:
                query = query.where(ImportSessionRow.account_id.contains(filters.account_id))
            if filters.status is not None:
                query = query.where(ImportSessionRow.status == filters.status.value)
            if filters.created_by:
                query = query.where(ImportSessionRow.created_by == filters.created_by)
            query = self._order(query, getattr(ImportSessionRow, page.sort_by), page, ImportSessionRow.id)
            rows, total = self._paginate(db, query, page)
            return [self._to_session(row) for row in rows], total


def _sort_and_page(items: list, page: PageRequest, tiebreak: str) -> Tuple[list, int]:
    def sort_key(item):
        value = getattr(item, page.sort_by)
        # None sorts last in ascending order
        return (value is None, value if value is not None else 0)

    reverse = page.sort_order == "desc"
    ordered = sorted(items, key=lambda item: getattr(item, tiebreak), reverse=reverse)
    ordered.sort(key=sort_key, reverse=reverse)
    return ordered[page.offset: page.offset + page.page_size], len(ordered)


class InMemoryStorage(StorageBackend):
    """
    Dictionary-backed StorageBackend.

    Every value crossing the boundary is copied, so callers never share
    mutable state with the store. A single lock serialises all operations.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[int, TollRecord] = {}
        self._hash_index: Dict[str, int] = {}
        self._mappings: Dict[int, Mapping] = {}
        self._sessions: Dict[str, ImportSession] = {}
        self._next_record_id = 1
        self._next_mapping_id = 1

    # -- toll records --------------------------------------------------

    def create_record(self, record: TollRecord) -> TollRecord:
        with self._lock:
            if record.hash in self._hash_index:
                raise ConflictError(f"Toll record with hash {record.hash} already exists")
            stored = copy.deepcopy(record)
            stored.id = self._next_record_id
            self._next_record_id += 1
            stored.created_at = stored.updated_at = utcnow()
            self._records[stored.id] = stored
            self._hash_index[stored.hash] = stored.id
            return copy.deepcopy(stored)

    def get_record(self, record_id: int) -> Optional[TollRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def list_records(self, filters: RecordFilter, page: PageRequest) -> Tuple[List[TollRecord], int]:
        def matches(record: TollRecord) -> bool:
            if filters.date_from and record.date < filters.date_from:
                return False
            if filters.date_to and record.date > filters.date_to:
                return False
            if filters.vehicle_id and filters.vehicle_id not in record.vehicle_id:
                return False
            if filters.card_id and filters.card_id not in record.card_id:
                return False
            if filters.entry_point and record.entry_point != filters.entry_point:
                return False
            if filters.exit_point and record.exit_point != filters.exit_point:
                return False
            return True

        with self._lock:
            selected = [copy.deepcopy(r) for r in self._records.values() if matches(r)]
        return _sort_and_page(selected, page, "id")

    def update_record(self, record: TollRecord) -> Optional[TollRecord]:
        with self._lock:
            current = self._records.get(record.id)
            if current is None:
                return None
            owner = self._hash_index.get(record.hash)
            if owner is not None and owner != record.id:
                raise ConflictError(f"Toll record with hash {record.hash} already exists")
            stored = copy.deepcopy(record)
            stored.created_at = current.created_at
            stored.updated_at = utcnow()
            del self._hash_index[current.hash]
            self._hash_index[stored.hash] = stored.id
            self._records[stored.id] = stored
            return copy.deepcopy(stored)

    def delete_record(self, record_id: int) -> bool:
        with self._lock:
            record = self._records.pop(record_id, None)
            if record is None:
                return False
            self._hash_index.pop(record.hash, None)
            for mapping_id in [m.id for m in self._mappings.values() if m.toll_record_id == record_id]:
                del self._mappings[mapping_id]
            return True

    def batch_check_hashes_exist(self, hashes: Iterable[str]) -> Dict[str, bool]:
        with self._lock:
            return {value: value in self._hash_index for value in hashes}

    # -- mappings ------------------------------------------------------

    def create_mapping(self, mapping: Mapping) -> Mapping:
        with self._lock:
            stored = copy.deepcopy(mapping)
            stored.id = self._next_mapping_id
            self._next_mapping_id += 1
            stored.created_at = stored.updated_at = utcnow()
            self._mappings[stored.id] = stored
            return copy.deepcopy(stored)

    def get_mapping(self, mapping_id: int) -> Optional[Mapping]:
        with self._lock:
            mapping = self._mappings.get(mapping_id)
            return copy.deepcopy(mapping) if mapping else None

    def update_mapping(self, mapping: Mapping) -> Optional[Mapping]:
        with self._lock:
            current = self._mappings.get(mapping.id)
            if current is None:
                return None
            stored = copy.deepcopy(mapping)
            stored.created_at = current.created_at
            stored.updated_at = utcnow()
            self._mappings[stored.id] = stored
            return copy.deepcopy(stored)

    def delete_mapping(self, mapping_id: int) -> bool:
        with self._lock:
            return self._mappings.pop(mapping_id, None) is not None

    def list_mappings(self, filters: MappingFilter, page: PageRequest) -> Tuple[List[Mapping], int]:
        def matches(mapping: Mapping) -> bool:
            if filters.toll_record_id is not None and mapping.toll_record_id != filters.toll_record_id:
                return False
            if filters.mapping_type and mapping.mapping_type != filters.mapping_type:
                return False
            if filters.mapped_entity_type and mapping.mapped_entity_type != filters.mapped_entity_type:
                return False
            if filters.mapped_entity_id is not None and mapping.mapped_entity_id != filters.mapped_entity_id:
                return False
            if filters.status is not None and mapping.status != filters.status:
                return False
            if filters.min_confidence is not None and mapping.confidence < filters.min_confidence:
                return False
            if filters.max_confidence is not None and mapping.confidence > filters.max_confidence:
                return False
            return True

        with self._lock:
            selected = [copy.deepcopy(m) for m in self._mappings.values() if matches(m)]
        return _sort_and_page(selected, page, "id")

    def find_active_mappings(self, toll_record_id: int) -> List[Mapping]:
        with self._lock:
            return [
                copy.deepcopy(m)
                for m in sorted(self._mappings.values(), key=lambda m: m.id)
                if m.toll_record_id == toll_record_id and m.status == MappingStatus.ACTIVE
            ]

    # -- import sessions -----------------------------------------------

    def persist_session(self, session: ImportSession) -> ImportSession:
        with self._lock:
            if session.id in self._sessions:
                raise ConflictError(f"Import session {session.id} already exists")
            self._sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def update_session(self, session: ImportSession) -> ImportSession:
        with self._lock:
            current = self._sessions.get(session.id)
            if current is None:
                raise StorageError(f"Import session {session.id} was never persisted")
            stored = copy.deepcopy(session)
            if _keeps_stored_status(current.status, session.status):
                logger.info(
                    "Session %s is already %s; keeping stored status over %s",
                    session.id,
                    current.status.value,
                    session.status.value,
                )
                stored.status = current.status
                stored.started_at = current.started_at
                stored.completed_at = current.completed_at
            stored.created_at = current.created_at
            self._sessions[session.id] = stored
            return copy.deepcopy(stored)

    def cancel_session(self, session_id: str) -> Optional[ImportSession]:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return None
            if not current.is_terminal:
                current.status = ImportStatus.CANCELLED
                current.completed_at = utcnow()
            return copy.deepcopy(current)

    def get_session(self, session_id: str) -> Optional[ImportSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def list_sessions(self, filters: SessionFilter, page: PageRequest) -> Tuple[List[ImportSession], int]:
        def matches(session: ImportSession) -> bool:
            if filters.account_type and session.account_type != filters.account_type:
                return False
            if filters.account_id and filters.account_id not in session.account_id:
                return False
            if filters.status is not None and session.status != filters.status:
                return False
            if filters.created_by and session.created_by != filters.created_by:
                return False
            return True

        with self._lock:
            selected = [copy.deepcopy(s) for s in self._sessions.values() if matches(s)]
        return _sort_and_page(selected, page, "id")
