"""
Import session lifecycle: bulk and streamed ingestion, lookup, listing and
cooperative cancellation.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional, Set

from tollsync.core.config import settings
from tollsync.core.errors import NotFoundError, ValidationError
from tollsync.db.repository import StorageBackend
from tollsync.domain.imports.parser import decode_content, read_rows
from tollsync.domain.imports.pipeline import SessionWriter
from tollsync.domain.imports.stream import ImportStream
from tollsync.domain.models import ImportSession, ImportStatus, Page, ProgressUpdate
from tollsync.domain.queries import SESSION_SORT_FIELDS, PageRequest, SessionFilter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


def _require(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value).strip()


def _progress_from(session: ImportSession) -> ProgressUpdate:
    return ProgressUpdate(
        session_id=session.id,
        percentage=100.0 if session.status == ImportStatus.COMPLETED else round(session.progress_percentage, 2),
        processed_rows=session.processed_rows,
        success_rows=session.success_rows,
        error_rows=session.error_rows,
        duplicate_rows=session.duplicate_rows,
        status=session.status,
    )


class ImportCoordinator:
    """Owns every ImportSession from creation to a terminal status."""

    def __init__(self, storage: StorageBackend, batch_size: Optional[int] = None):
        self.storage = storage
        self.batch_size = batch_size or settings.import_batch_size
        self._cancelled: Set[str] = set()
        self._running: Set[str] = set()
        self._cancel_lock = threading.Lock()

    # -- cancellation flags --------------------------------------------

    def is_cancel_requested(self, session_id: str) -> bool:
        with self._cancel_lock:
            return session_id in self._cancelled

    def _worker_started(self, session_id: str) -> None:
        with self._cancel_lock:
            self._running.add(session_id)

    def _worker_finished(self, session_id: str) -> None:
        with self._cancel_lock:
            self._running.discard(session_id)
            self._cancelled.discard(session_id)

    def _request_cancel(self, session_id: str) -> None:
        # Only a live worker ever clears the flag, so sessions without one are not flagged.
        with self._cancel_lock:
            if session_id in self._running:
                self._cancelled.add(session_id)

    # -- bulk ----------------------------------------------------------

    def start_import(
        self,
        account_type: str,
        account_id: str,
        file_name: str,
        content: bytes,
        created_by: Optional[str] = None,
        session_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ImportSession:
        """
        Import a whole CSV payload and return the finished session.

        The session ends COMPLETED when data rows were processed (even if every
        row failed or was a duplicate), and FAILED for header-only input.

        Raises:
            ValidationError: Empty metadata or content (no session is created),
                or a fatal decoding/header problem (the session is FAILED and
                its id is in ``details["session_id"]``)
            ConflictError: ``session_id`` is already in use
        """
        account_type = _require(account_type, "account_type")
        account_id = _require(account_id, "account_id")
        file_name = _require(file_name, "file_name")
        if not content:
            raise ValidationError("content is required")
        limit = settings.max_file_size_mb * 1024 * 1024
        if len(content) > limit:
            raise ValidationError(f"File exceeds the {settings.max_file_size_mb} MB import limit")

        session = ImportSession(
            id=session_id or uuid.uuid4().hex,
            account_type=account_type,
            account_id=account_id,
            file_name=file_name,
            file_size=len(content),
            created_by=created_by,
        )
        writer = SessionWriter.begin(
            self.storage,
            session,
            cancel_requested=self.is_cancel_requested,
            batch_size=self.batch_size,
        )
        self._worker_started(writer.session.id)

        try:
            try:
                rows = read_rows(decode_content(content))
            except ValidationError as exc:
                writer.fail_fatal(exc)
            if not rows:
                writer.fail_fatal(ValidationError("File contains no header row"))

            writer.set_header(rows[0])
            data_rows = rows[1:]
            writer.session.total_rows = len(data_rows)

            if on_progress is None:
                writer.process(data_rows)
            else:
                for start in range(0, len(data_rows), writer.batch_size):
                    if not writer.process(data_rows[start:start + writer.batch_size]):
                        break
                    on_progress(_progress_from(writer.session))
            session = writer.finish()
        except ValidationError:
            raise
        except Exception:
            logger.exception("Import session %s aborted", writer.session.id)
            writer.fail_quietly()
            raise
        finally:
            self._worker_finished(writer.session.id)

        if on_progress is not None:
            on_progress(_progress_from(session))
        return session

    # -- streamed ------------------------------------------------------

    def open_stream(
        self,
        account_type: str,
        account_id: str,
        file_name: str,
        created_by: Optional[str] = None,
        expected_size: Optional[int] = None,
    ) -> ImportStream:
        """
        Open a chunked import channel. The session is created by the first chunk.

        Raises:
            ValidationError: Empty metadata or a negative expected size
        """
        if expected_size is not None and expected_size < 0:
            raise ValidationError("expected_size cannot be negative")
        return ImportStream(
            self.storage,
            account_type=_require(account_type, "account_type"),
            account_id=_require(account_id, "account_id"),
            file_name=_require(file_name, "file_name"),
            created_by=created_by,
            expected_size=expected_size,
            cancel_requested=self.is_cancel_requested,
            on_started=self._worker_started,
            on_finished=self._worker_finished,
        )

    # -- queries -------------------------------------------------------

    def get_session(self, session_id: str) -> ImportSession:
        if not session_id or not session_id.strip():
            raise ValidationError("session_id is required")
        session = self.storage.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Import session {session_id} not found")
        return session

    def list_sessions(
        self,
        filters: Optional[SessionFilter] = None,
        page: Optional[PageRequest] = None,
    ) -> Page[ImportSession]:
        filters = (filters or SessionFilter()).validate()
        page = (page or PageRequest(page_size=settings.default_page_size)).validate(SESSION_SORT_FIELDS)
        items, total = self.storage.list_sessions(filters, page)
        return Page(items=items, total_count=total, page=page.page, page_size=page.page_size)

    # -- cancellation --------------------------------------------------

    def cancel_session(self, session_id: str) -> ImportSession:
        """
        Move a PENDING or PROCESSING session to CANCELLED.

        Rows already stored stay stored; a running worker stops before its
        next batch or chunk.

        Raises:
            NotFoundError: Unknown session id
            ValidationError: The session is already terminal
        """
        session = self.get_session(session_id)
        session.cancel()
        self._request_cancel(session_id)
        # Status-only write; the worker owns the counters.
        stored = self.storage.cancel_session(session_id)
        if stored is None:
            raise NotFoundError(f"Import session {session_id} not found")
        if stored.status != ImportStatus.CANCELLED:
            # The worker reached a terminal status between our read and write.
            with self._cancel_lock:
                self._cancelled.discard(session_id)
            raise ValidationError(
                f"Import session {session_id} is already {stored.status.value}",
                details={"session_id": session_id, "status": stored.status.value},
            )
        logger.info("Import session %s cancelled (processed_rows=%d)", session_id, stored.processed_rows)
        return stored
