"""
Row processing shared by the bulk and streamed import paths.

A ``SessionWriter`` owns one import session while it is being filled: it
resolves the header, runs each batch of rows through parse -> hash ->
duplicate check -> persist, and writes the session back to storage after
every batch. Rows are handled strictly in order so error_log row numbers are
reproducible.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from tollsync.core.config import settings
from tollsync.core.errors import ConflictError, TollSyncError, ValidationError
from tollsync.db.repository import StorageBackend
from tollsync.domain.imports.duplicates import DuplicateDetector
from tollsync.domain.imports.hashing import calculate_record_hash
from tollsync.domain.imports.parser import ColumnSchema, ParsedRow, parse_row, resolve_schema
from tollsync.domain.models import ImportSession, ImportStatus, RowError, TollRecord

logger = logging.getLogger(__name__)

CancelCheck = Callable[[str], bool]


def record_from_row(parsed: ParsedRow) -> TollRecord:
    return TollRecord(
        hash=calculate_record_hash(
            parsed.date,
            parsed.time,
            parsed.entry_point,
            parsed.exit_point,
            parsed.amount,
            parsed.vehicle_id,
            parsed.card_id,
        ),
        date=parsed.date,
        time=parsed.time,
        entry_point=parsed.entry_point,
        exit_point=parsed.exit_point,
        amount=parsed.amount,
        vehicle_id=parsed.vehicle_id,
        card_id=parsed.card_id,
        external_ref=parsed.external_ref,
        external_row_id=parsed.external_row_id,
    )


class SessionWriter:
    def __init__(
        self,
        storage: StorageBackend,
        session: ImportSession,
        cancel_requested: Optional[CancelCheck] = None,
        batch_size: Optional[int] = None,
    ):
        self.storage = storage
        self.session = session
        self.detector = DuplicateDetector(storage)
        self.schema: Optional[ColumnSchema] = None
        self.batch_size = batch_size or settings.import_batch_size
        self._cancel_requested = cancel_requested or (lambda _session_id: False)
        self._next_row_number = 1

    @classmethod
    def begin(
        cls,
        storage: StorageBackend,
        session: ImportSession,
        cancel_requested: Optional[CancelCheck] = None,
        batch_size: Optional[int] = None,
    ) -> "SessionWriter":
        """Persist a new PENDING session and move it to PROCESSING."""
        storage.persist_session(session)
        writer = cls(storage, session, cancel_requested=cancel_requested, batch_size=batch_size)
        writer.session.start_processing()
        writer.save()
        logger.info(
            "Import session %s started (account=%s/%s file=%s)",
            session.id,
            session.account_type,
            session.account_id,
            session.file_name,
        )
        return writer

    @property
    def stopped(self) -> bool:
        return self.session.is_terminal

    @property
    def has_header(self) -> bool:
        return self.schema is not None

    def save(self) -> ImportSession:
        """Write the session back; adopts a terminal status set elsewhere (cancellation)."""
        self.session = self.storage.update_session(self.session)
        return self.session

    def set_header(self, header: List[str]) -> None:
        try:
            self.schema = resolve_schema(header)
        except ValidationError as exc:
            self.fail_fatal(exc)

    def fail_fatal(self, exc: TollSyncError) -> None:
        """Mark the session FAILED and raise a ValidationError naming it."""
        if not self.session.is_terminal:
            self.session.fail()
            self.save()
        logger.warning("Import session %s failed: %s", self.session.id, exc.message)
        raise ValidationError(exc.message, details={**exc.details, "session_id": self.session.id})

    def fail_quietly(self) -> None:
        """Best-effort FAILED marker after an unexpected error; the caller re-raises the original."""
        if self.session.is_terminal:
            return
        try:
            self.session.fail()
            self.save()
        except Exception:
            logger.exception("Could not mark import session %s as failed", self.session.id)

    def process(self, rows: List[List[str]], count_total: bool = False) -> bool:
        """
        Run data rows through the pipeline in batches.

        Args:
            rows: Data rows in file order (header already consumed)
            count_total: Add the rows to total_rows first (streamed input, where
                the total is only known as rows arrive)

        Returns:
            False once the session has been stopped by a cancellation.
        """
        if count_total:
            self.session.total_rows += len(rows)
        for start in range(0, len(rows), self.batch_size):
            if self.check_cancelled():
                return False
            self._process_batch(rows[start:start + self.batch_size])
            self.save()
            if self.stopped:
                logger.info("Import session %s stopped as %s", self.session.id, self.session.status.value)
                return False
        return True

    def finish(self) -> ImportSession:
        """Complete the session, or fail it when no data row was ever seen."""
        if self.stopped:
            return self.session
        if self.check_cancelled():
            return self.session
        if self.session.total_rows == 0:
            self.session.fail()
            logger.warning("Import session %s contained no data rows", self.session.id)
        else:
            self.session.complete()
        self.save()
        logger.info(
            "Import session %s finished as %s: total=%d success=%d errors=%d duplicates=%d",
            self.session.id,
            self.session.status.value,
            self.session.total_rows,
            self.session.success_rows,
            self.session.error_rows,
            self.session.duplicate_rows,
        )
        return self.session

    def check_cancelled(self) -> bool:
        if self.stopped:
            return True
        if not self._cancel_requested(self.session.id):
            return False
        # The cancel call already stored CANCELLED; syncing counters adopts it.
        self.save()
        if self.session.status != ImportStatus.CANCELLED:
            logger.warning("Cancel requested for %s but stored status is %s", self.session.id, self.session.status.value)
            return False
        logger.info("Import session %s cancelled after %d rows", self.session.id, self.session.processed_rows)
        return True

    def _process_batch(self, batch: List[List[str]]) -> None:
        candidates: List[TollRecord] = []
        for row in batch:
            row_number = self._next_row_number
            self._next_row_number += 1
            result = parse_row(row, self.schema, row_number)
            if isinstance(result, RowError):
                self.session.record_error(result)
                continue
            candidates.append(record_from_row(result))

        partition = self.detector.partition(candidates)
        if partition.duplicates:
            self.session.record_duplicate(len(partition.duplicates))

        for record in partition.new:
            try:
                self.storage.create_record(record)
            except ConflictError:
                # Another import stored the same hash after our batch check.
                logger.info("Hash %s inserted concurrently; counted as duplicate", record.hash)
                self.session.record_duplicate()
                continue
            self.session.record_success()
