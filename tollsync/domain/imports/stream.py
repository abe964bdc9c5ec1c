"""
Chunked import channel.

An ``ImportStream`` pairs an inbound chunk queue with an outbound progress
queue. The inbound queue holds a single chunk, so ``send`` waits until the
worker has taken the previous one. ``run`` is the worker coroutine: it
processes one chunk fully, publishes a ``ProgressUpdate`` and only then takes
the next chunk.

Typical use::

    stream = coordinator.open_stream("corporate", "acct-1", "june.csv")
    worker = asyncio.create_task(stream.run())
    await stream.send(ImportChunk("sess-1", payload, 1, is_last=True))
    async for update in stream:
        ...
    session = await worker
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from tollsync.core.config import settings
from tollsync.core.errors import TollSyncError, ValidationError
from tollsync.db.repository import StorageBackend
from tollsync.domain.imports.chunks import ChunkAssembler, ImportChunk
from tollsync.domain.imports.parser import read_rows
from tollsync.domain.imports.pipeline import CancelCheck, SessionWriter
from tollsync.domain.models import ImportSession, ImportStatus, ProgressUpdate

logger = logging.getLogger(__name__)

_CLOSE = object()
_END = object()


class _Abort:
    def __init__(self, error: ValidationError):
        self.error = error


class ImportStream:
    def __init__(
        self,
        storage: StorageBackend,
        account_type: str,
        account_id: str,
        file_name: str,
        created_by: Optional[str] = None,
        expected_size: Optional[int] = None,
        cancel_requested: Optional[CancelCheck] = None,
        on_started: Optional[Callable[[str], None]] = None,
        on_finished: Optional[Callable[[str], None]] = None,
    ):
        self.storage = storage
        self.account_type = account_type
        self.account_id = account_id
        self.file_name = file_name
        self.created_by = created_by
        self.expected_size = expected_size
        self.assembler = ChunkAssembler()
        self.writer: Optional[SessionWriter] = None
        self.error: Optional[TollSyncError] = None
        self._cancel_requested = cancel_requested
        self._on_started = on_started
        self._on_finished = on_finished
        self._inbound: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._finished = False
        self._last_percentage = 0.0

    @property
    def session(self) -> Optional[ImportSession]:
        return self.writer.session if self.writer else None

    # -- inbound side --------------------------------------------------

    async def send(self, chunk: ImportChunk) -> None:
        """Queue a chunk; waits while the previous chunk is still being processed."""
        if self._closed or self._finished:
            raise ValidationError("Import stream is closed")
        await self._inbound.put(chunk)

    async def abort(self, error: ValidationError) -> None:
        """Fail the stream from the transport side, e.g. for an undecodable chunk message."""
        if self._closed or self._finished:
            raise ValidationError("Import stream is closed")
        await self._inbound.put(_Abort(error))

    async def close(self) -> None:
        """Signal that no more chunks will be sent."""
        if self._closed or self._finished:
            return
        self._closed = True
        await self._inbound.put(_CLOSE)

    # -- outbound side -------------------------------------------------

    async def receive(self) -> Optional[ProgressUpdate]:
        """
        Wait for the next progress message.

        Returns None once the channel has ended normally.

        Raises:
            TollSyncError: The error that terminated the stream
        """
        item = await self._outbound.get()
        if item is _END:
            # Keep the sentinel for any later receive call
            self._outbound.put_nowait(_END)
            if self.error is not None:
                raise self.error
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressUpdate:
        update = await self.receive()
        if update is None:
            raise StopAsyncIteration
        return update

    # -- worker --------------------------------------------------------

    async def run(self) -> Optional[ImportSession]:
        """Consume chunks until the last one, a close, an error or a cancellation."""
        loop = asyncio.get_running_loop()
        try:
            while True:
                item = await self._inbound.get()
                if item is _CLOSE:
                    self._handle_close()
                    break
                if isinstance(item, _Abort):
                    if self.writer is not None:
                        self.writer.fail_fatal(item.error)
                    raise item.error
                await loop.run_in_executor(None, self._handle_chunk, item)
                self._outbound.put_nowait(self._progress())
                if self.session is not None and self.session.is_terminal:
                    break
        except TollSyncError as exc:
            self.error = exc
            logger.warning("Import stream terminated: %s", exc.message)
        except Exception:
            logger.exception("Import stream crashed")
            if self.writer is not None:
                self.writer.fail_quietly()
            self.error = TollSyncError("Internal error")
            raise
        finally:
            self._finish()
        return self.session

    def _finish(self) -> None:
        self._finished = True
        while not self._inbound.empty():
            self._inbound.get_nowait()
        self._outbound.put_nowait(_END)
        if self.session is not None and self._on_finished is not None:
            self._on_finished(self.session.id)

    def _handle_close(self) -> None:
        if self.assembler.chunks_received == 0:
            raise ValidationError("Import stream closed before any chunk was sent")
        # Channel gone without a final chunk: leave the session PROCESSING for later inspection.
        logger.warning(
            "Import stream for session %s closed after %d chunks without a final chunk",
            self.assembler.session_id,
            self.assembler.chunks_received,
        )

    def _handle_chunk(self, chunk: ImportChunk) -> None:
        if self.writer is None:
            # Nothing is created for an invalid first chunk.
            self.assembler.validate(chunk)
            self.writer = SessionWriter.begin(
                self.storage,
                ImportSession(
                    id=chunk.session_id,
                    account_type=self.account_type,
                    account_id=self.account_id,
                    file_name=self.file_name,
                    file_size=self.expected_size or 0,
                    created_by=self.created_by,
                ),
                cancel_requested=self._cancel_requested,
            )
            if self._on_started is not None:
                self._on_started(chunk.session_id)

        writer = self.writer
        if writer.check_cancelled():
            return
        try:
            text = self.assembler.accept(chunk)
            if self.assembler.bytes_received > settings.max_file_size_mb * 1024 * 1024:
                raise ValidationError(f"Stream exceeds the {settings.max_file_size_mb} MB import limit")
            rows = read_rows(text)
        except ValidationError as exc:
            writer.fail_fatal(exc)

        if not self.expected_size:
            writer.session.file_size = self.assembler.bytes_received
        if rows and not writer.has_header:
            writer.set_header(rows[0])
            rows = rows[1:]
        if rows and not writer.process(rows, count_total=True):
            return
        if not chunk.is_last:
            writer.save()
            return
        if not writer.has_header:
            writer.fail_fatal(ValidationError("Import stream contained no header row"))
        writer.finish()

    def _progress(self) -> ProgressUpdate:
        session = self.session
        if session.status == ImportStatus.COMPLETED:
            percentage = 100.0
        elif session.is_terminal:
            percentage = self._last_percentage
        elif self.expected_size:
            percentage = min(99.0, self.assembler.bytes_received / self.expected_size * 100.0)
        else:
            percentage = 0.0
        self._last_percentage = percentage
        return ProgressUpdate(
            session_id=session.id,
            percentage=round(percentage, 2),
            processed_rows=session.processed_rows,
            success_rows=session.success_rows,
            error_rows=session.error_rows,
            duplicate_rows=session.duplicate_rows,
            status=session.status,
        )
