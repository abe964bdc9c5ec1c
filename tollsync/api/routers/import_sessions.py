"""
Import session tracking endpoints for monitoring and cancelling imports.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from tollsync.api.dependencies import get_import_coordinator, to_http_exception
from tollsync.api.schemas.shared import ImportSessionListResponse, ImportSessionResponse
from tollsync.core.config import settings
from tollsync.domain.imports.coordinator import ImportCoordinator
from tollsync.domain.models import ImportStatus
from tollsync.domain.queries import PageRequest, SessionFilter

router = APIRouter(prefix="/import-sessions", tags=["import-sessions"])


@router.get("", response_model=ImportSessionListResponse)
async def list_import_sessions(
    account_type: Optional[str] = None,
    account_id: Optional[str] = None,
    status: Optional[ImportStatus] = None,
    created_by: Optional[str] = None,
    page: int = 1,
    page_size: int = settings.default_page_size,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    coordinator: ImportCoordinator = Depends(get_import_coordinator),
):
    """
    List import sessions with optional filters.

    Parameters:
    - account_type: Exact account type
    - account_id: Partial match on the account id
    - status: Session status ('pending', 'processing', 'completed', 'failed', 'cancelled')
    - created_by: Exact creator reference
    - page / page_size: 1-based page, 1..1000 items per page
    - sort_by: created_at, started_at, file_name, status or total_rows
    - sort_order: asc or desc
    """
    try:
        result = coordinator.list_sessions(
            SessionFilter(
                account_type=account_type,
                account_id=account_id,
                status=status,
                created_by=created_by,
            ),
            PageRequest(page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order),
        )
        return ImportSessionListResponse(
            sessions=[ImportSessionResponse.from_domain(s) for s in result.items],
            total_count=result.total_count,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        )
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{session_id}", response_model=ImportSessionResponse)
async def get_import_session(
    session_id: str,
    coordinator: ImportCoordinator = Depends(get_import_coordinator),
):
    try:
        return ImportSessionResponse.from_domain(coordinator.get_session(session_id))
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{session_id}/cancel", response_model=ImportSessionResponse)
async def cancel_import_session(
    session_id: str,
    coordinator: ImportCoordinator = Depends(get_import_coordinator),
):
    """
    Cancel a pending or processing import.

    Rows stored before the cancellation are kept.
    """
    try:
        return ImportSessionResponse.from_domain(coordinator.cancel_session(session_id))
    except Exception as e:
        raise to_http_exception(e)
