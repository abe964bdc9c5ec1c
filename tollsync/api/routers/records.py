"""
Toll record endpoints, including candidate match search for one record.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from tollsync.api.dependencies import get_mapping_engine, get_record_service, to_http_exception
from tollsync.api.schemas.shared import (
    DeleteResponse,
    PotentialMatchListResponse,
    PotentialMatchResponse,
    TollRecordCreate,
    TollRecordListResponse,
    TollRecordResponse,
    TollRecordUpdate,
)
from tollsync.core.config import settings
from tollsync.domain.matching.engine import MappingEngine
from tollsync.domain.queries import PageRequest, RecordFilter
from tollsync.domain.records import RecordInput, RecordService

router = APIRouter(prefix="/records", tags=["records"])


@router.get("", response_model=TollRecordListResponse)
async def list_records(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    vehicle_id: Optional[str] = None,
    card_id: Optional[str] = None,
    entry_point: Optional[str] = None,
    exit_point: Optional[str] = None,
    page: int = 1,
    page_size: int = settings.default_page_size,
    sort_by: str = "date",
    sort_order: str = "desc",
    service: RecordService = Depends(get_record_service),
):
    """
    List toll records.

    Parameters:
    - date_from / date_to: Inclusive ISO date range
    - vehicle_id / card_id: Partial match
    - entry_point / exit_point: Exact match
    - page / page_size / sort_by / sort_order: Pagination and ordering
    """
    try:
        result = service.list_records(
            RecordFilter(
                date_from=date_from,
                date_to=date_to,
                vehicle_id=vehicle_id,
                card_id=card_id,
                entry_point=entry_point,
                exit_point=exit_point,
            ),
            PageRequest(page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order),
        )
        return TollRecordListResponse(
            records=[TollRecordResponse.from_domain(r) for r in result.items],
            total_count=result.total_count,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        )
    except Exception as e:
        raise to_http_exception(e)


@router.post("", response_model=TollRecordResponse, status_code=201)
async def create_record(
    payload: TollRecordCreate,
    service: RecordService = Depends(get_record_service),
):
    try:
        return TollRecordResponse.from_domain(service.create_record(RecordInput(**payload.model_dump())))
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{record_id}", response_model=TollRecordResponse)
async def get_record(
    record_id: int,
    service: RecordService = Depends(get_record_service),
):
    try:
        return TollRecordResponse.from_domain(service.get_record(record_id))
    except Exception as e:
        raise to_http_exception(e)


@router.patch("/{record_id}", response_model=TollRecordResponse)
async def update_record(
    record_id: int,
    payload: TollRecordUpdate,
    service: RecordService = Depends(get_record_service),
):
    """Partial update; only fields present in the body change."""
    try:
        changes = RecordInput(**payload.model_dump(exclude_unset=True))
        return TollRecordResponse.from_domain(service.update_record(record_id, changes))
    except Exception as e:
        raise to_http_exception(e)


@router.delete("/{record_id}", response_model=DeleteResponse)
async def delete_record(
    record_id: int,
    service: RecordService = Depends(get_record_service),
):
    try:
        service.delete_record(record_id)
        return DeleteResponse(id=record_id)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{record_id}/potential-matches", response_model=PotentialMatchListResponse)
async def find_potential_matches(
    record_id: int,
    threshold: float = 0.0,
    engine: MappingEngine = Depends(get_mapping_engine),
):
    """
    Score the loaded candidate entities against one toll record.

    Parameters:
    - threshold: Minimum confidence (0.0 - 1.0) of returned matches
    """
    try:
        matches = engine.find_potential_matches(record_id, threshold)
        return PotentialMatchListResponse(
            toll_record_id=record_id,
            threshold=threshold,
            matches=[PotentialMatchResponse.from_domain(m) for m in matches],
        )
    except Exception as e:
        raise to_http_exception(e)
