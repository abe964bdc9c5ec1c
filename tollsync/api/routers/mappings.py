"""
Mapping endpoints linking toll records to external entities.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from tollsync.api.dependencies import get_mapping_engine, to_http_exception
from tollsync.api.schemas.shared import (
    ConfidenceUpdate,
    DeleteResponse,
    MappingCreate,
    MappingListResponse,
    MappingPatch,
    MappingResponse,
)
from tollsync.core.config import settings
from tollsync.domain.matching.engine import MappingEngine, MappingUpdate
from tollsync.domain.models import MappingStatus
from tollsync.domain.queries import MappingFilter, PageRequest

router = APIRouter(prefix="/mappings", tags=["mappings"])


@router.post("", response_model=MappingResponse, status_code=201)
async def create_mapping(
    payload: MappingCreate,
    engine: MappingEngine = Depends(get_mapping_engine),
):
    try:
        mapping = engine.create_mapping(
            toll_record_id=payload.toll_record_id,
            mapping_type=payload.mapping_type,
            mapped_entity_id=payload.mapped_entity_id,
            mapped_entity_type=payload.mapped_entity_type,
            confidence=payload.confidence,
            status=payload.status,
            created_by=payload.created_by,
            metadata=payload.metadata,
        )
        return MappingResponse.from_domain(mapping)
    except Exception as e:
        raise to_http_exception(e)


@router.get("", response_model=MappingListResponse)
async def list_mappings(
    toll_record_id: Optional[int] = None,
    mapping_type: Optional[str] = None,
    mapped_entity_type: Optional[str] = None,
    mapped_entity_id: Optional[int] = None,
    status: Optional[MappingStatus] = None,
    min_confidence: Optional[float] = None,
    max_confidence: Optional[float] = None,
    page: int = 1,
    page_size: int = settings.default_page_size,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    engine: MappingEngine = Depends(get_mapping_engine),
):
    """
    List mappings.

    Parameters:
    - toll_record_id, mapping_type, mapped_entity_type, mapped_entity_id, status: Exact filters
    - min_confidence / max_confidence: Inclusive confidence range
    - page / page_size / sort_by / sort_order: Pagination and ordering
    """
    try:
        result = engine.list_mappings(
            MappingFilter(
                toll_record_id=toll_record_id,
                mapping_type=mapping_type,
                mapped_entity_type=mapped_entity_type,
                mapped_entity_id=mapped_entity_id,
                status=status,
                min_confidence=min_confidence,
                max_confidence=max_confidence,
            ),
            PageRequest(page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order),
        )
        return MappingListResponse(
            mappings=[MappingResponse.from_domain(m) for m in result.items],
            total_count=result.total_count,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        )
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{mapping_id}", response_model=MappingResponse)
async def get_mapping(
    mapping_id: int,
    engine: MappingEngine = Depends(get_mapping_engine),
):
    try:
        return MappingResponse.from_domain(engine.get_mapping(mapping_id))
    except Exception as e:
        raise to_http_exception(e)


@router.patch("/{mapping_id}", response_model=MappingResponse)
async def update_mapping(
    mapping_id: int,
    payload: MappingPatch,
    engine: MappingEngine = Depends(get_mapping_engine),
):
    """Partial update; an empty body is rejected."""
    try:
        changes = MappingUpdate(**payload.model_dump(exclude_unset=True))
        return MappingResponse.from_domain(engine.update_mapping(mapping_id, changes))
    except Exception as e:
        raise to_http_exception(e)


@router.patch("/{mapping_id}/confidence", response_model=MappingResponse)
async def update_confidence_score(
    mapping_id: int,
    payload: ConfidenceUpdate,
    engine: MappingEngine = Depends(get_mapping_engine),
):
    try:
        return MappingResponse.from_domain(engine.update_confidence_score(mapping_id, payload.confidence))
    except Exception as e:
        raise to_http_exception(e)


@router.delete("/{mapping_id}", response_model=DeleteResponse)
async def delete_mapping(
    mapping_id: int,
    engine: MappingEngine = Depends(get_mapping_engine),
):
    try:
        engine.delete_mapping(mapping_id)
        return DeleteResponse(id=mapping_id)
    except Exception as e:
        raise to_http_exception(e)
