"""
CSV import endpoints: whole-file upload and chunked websocket streaming.
"""
import asyncio
import base64
import binascii
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadValidationError

from tollsync.api.dependencies import error_payload, get_import_coordinator, to_http_exception
from tollsync.api.schemas.shared import (
    ImportSessionResponse,
    ProgressMessage,
    StreamChunkMessage,
    StreamStartMessage,
)
from tollsync.core.errors import TollSyncError, ValidationError
from tollsync.domain.imports.chunks import ImportChunk
from tollsync.domain.imports.coordinator import ImportCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])

# Unsupported data: the client sent something the protocol does not allow
CLOSE_INVALID_DATA = 1003
CLOSE_INTERNAL_ERROR = 1011


@router.post("", response_model=ImportSessionResponse, status_code=201)
async def import_csv(
    file: UploadFile = File(...),
    account_type: str = Form(...),
    account_id: str = Form(...),
    created_by: Optional[str] = Form(None),
    session_id: Optional[str] = Form(None),
    coordinator: ImportCoordinator = Depends(get_import_coordinator),
):
    """
    Import a toll-usage CSV file in one request.

    Parameters:
    - file: CSV export (UTF-8 or Shift_JIS)
    - account_type / account_id: Account the toll records belong to
    - created_by: Optional user reference stored on the session
    - session_id: Optional caller-chosen session id
    """
    try:
        content = await file.read()
        loop = asyncio.get_running_loop()
        session = await loop.run_in_executor(
            None,
            lambda: coordinator.start_import(
                account_type=account_type,
                account_id=account_id,
                file_name=file.filename or "",
                content=content,
                created_by=created_by,
                session_id=session_id,
            ),
        )
        return ImportSessionResponse.from_domain(session)
    except Exception as e:
        raise to_http_exception(e)


def _decode_chunk(payload) -> ImportChunk:
    try:
        message = StreamChunkMessage.model_validate(payload)
    except PayloadValidationError as exc:
        raise ValidationError(f"Malformed chunk message: {exc.error_count()} invalid field(s)")
    try:
        data = base64.b64decode(message.data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Chunk data is not valid base64")
    return ImportChunk(
        session_id=message.session_id,
        data=data,
        sequence=message.sequence,
        is_last=message.is_last,
    )


async def _close_with_error(websocket: WebSocket, exc: TollSyncError) -> None:
    internal = exc.status_code >= 500
    payload = {"type": "error", **error_payload(exc)}
    if internal:
        payload.update(error="InternalError", message="Internal error", details={})
    await websocket.send_json(payload)
    await websocket.close(code=CLOSE_INTERNAL_ERROR if internal else CLOSE_INVALID_DATA)


@router.websocket("/stream")
async def import_csv_stream(
    websocket: WebSocket,
    coordinator: ImportCoordinator = Depends(get_import_coordinator),
):
    """
    Streamed import.

    The first message is a JSON object with account_type, account_id,
    file_name and optionally created_by and expected_size. Every following
    message is a chunk ``{session_id, data (base64), sequence, is_last}``;
    each one is answered with a progress message. Protocol violations end
    the socket with an error message and close code 1003.
    """
    await websocket.accept()
    try:
        start = StreamStartMessage.model_validate(await websocket.receive_json())
        stream = coordinator.open_stream(
            account_type=start.account_type,
            account_id=start.account_id,
            file_name=start.file_name,
            created_by=start.created_by,
            expected_size=start.expected_size,
        )
    except WebSocketDisconnect:
        return
    except (PayloadValidationError, ValueError):
        await _close_with_error(websocket, ValidationError("First message must be the import metadata object"))
        return
    except TollSyncError as exc:
        await _close_with_error(websocket, exc)
        return

    worker = asyncio.create_task(stream.run())
    disconnected = False
    try:
        while True:
            try:
                payload = await websocket.receive_json()
            except WebSocketDisconnect:
                disconnected = True
                await stream.close()
                break
            except ValueError:
                await stream.abort(ValidationError("Chunk message is not valid JSON"))
            else:
                try:
                    chunk = _decode_chunk(payload)
                except ValidationError as exc:
                    await stream.abort(exc)
                else:
                    await stream.send(chunk)

            update = await stream.receive()
            if update is None:
                break
            await websocket.send_json(ProgressMessage.from_domain(update).model_dump(mode="json"))
            if update.status.is_terminal:
                break
    except TollSyncError as exc:
        if not disconnected:
            await _close_with_error(websocket, exc)
            disconnected = True
    finally:
        try:
            await worker
        except Exception:
            logger.exception("Streamed import worker failed")
            if not disconnected:
                await _close_with_error(websocket, TollSyncError("Internal error"))
                disconnected = True

    if not disconnected:
        await websocket.close()
