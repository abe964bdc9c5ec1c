"""
Shared dependencies for the API routers.

Services are built per request around a storage backend kept on
``app.state``. Tests swap the backend through ``app.dependency_overrides``.
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.requests import HTTPConnection

from tollsync.core.errors import StorageError, TollSyncError
from tollsync.db.repository import SqlAlchemyStorage, StorageBackend
from tollsync.db.session import get_session_local
from tollsync.domain.imports.coordinator import ImportCoordinator
from tollsync.domain.matching.candidates import CandidateProvider
from tollsync.domain.matching.engine import MappingEngine
from tollsync.domain.records import RecordService

logger = logging.getLogger(__name__)


def get_storage(connection: HTTPConnection) -> StorageBackend:
    storage = getattr(connection.app.state, "storage", None)
    if storage is None:
        storage = SqlAlchemyStorage(get_session_local())
        connection.app.state.storage = storage
    return storage


def get_import_coordinator(
    connection: HTTPConnection,
    storage: StorageBackend = Depends(get_storage),
) -> ImportCoordinator:
    # One coordinator per backend so cancellation flags survive across requests.
    coordinator = getattr(connection.app.state, "import_coordinator", None)
    if coordinator is None or coordinator.storage is not storage:
        coordinator = ImportCoordinator(storage)
        connection.app.state.import_coordinator = coordinator
    return coordinator


def get_candidate_provider(connection: HTTPConnection) -> Optional[CandidateProvider]:
    return getattr(connection.app.state, "candidate_provider", None)


def get_mapping_engine(
    storage: StorageBackend = Depends(get_storage),
    candidates: Optional[CandidateProvider] = Depends(get_candidate_provider),
) -> MappingEngine:
    return MappingEngine(storage, candidates)


def get_record_service(storage: StorageBackend = Depends(get_storage)) -> RecordService:
    return RecordService(storage)


def error_payload(exc: TollSyncError) -> dict:
    return {
        "error": type(exc).__name__,
        "message": exc.message,
        "details": exc.details,
    }


def to_http_exception(exc: Exception) -> HTTPException:
    """
    Translate a service error into an HTTPException.

    Known errors keep their message; anything else becomes a generic 500.
    """
    if isinstance(exc, TollSyncError) and not isinstance(exc, StorageError) and exc.status_code < 500:
        return HTTPException(status_code=exc.status_code, detail=error_payload(exc))
    logger.error("Unhandled service error: %s", exc, exc_info=exc)
    return HTTPException(
        status_code=500,
        detail={"error": "InternalError", "message": "Internal error", "details": {}},
    )
