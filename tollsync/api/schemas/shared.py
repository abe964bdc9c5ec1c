from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tollsync.domain.models import (
    ImportSession,
    ImportStatus,
    Mapping,
    MappingStatus,
    PotentialMatch,
    ProgressUpdate,
    TollRecord,
)


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx response produced by the service."""
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class DeleteResponse(BaseModel):
    success: bool = True
    id: int


# -- import sessions ---------------------------------------------------

class ImportErrorEntry(BaseModel):
    row_number: int
    error_type: str
    error_message: str
    raw_data: Optional[str] = None


class ImportSessionResponse(BaseModel):
    id: str
    account_type: str
    account_id: str
    file_name: str
    file_size: int
    status: ImportStatus
    total_rows: int
    processed_rows: int
    success_rows: int
    error_rows: int
    duplicate_rows: int
    error_log: List[ImportErrorEntry] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    progress_percentage: float
    success_rate: float
    duration_seconds: Optional[float] = None

    @classmethod
    def from_domain(cls, session: ImportSession) -> "ImportSessionResponse":
        return cls(
            id=session.id,
            account_type=session.account_type,
            account_id=session.account_id,
            file_name=session.file_name,
            file_size=session.file_size,
            status=session.status,
            total_rows=session.total_rows,
            processed_rows=session.processed_rows,
            success_rows=session.success_rows,
            error_rows=session.error_rows,
            duplicate_rows=session.duplicate_rows,
            error_log=[ImportErrorEntry(**entry.to_dict()) for entry in session.error_log],
            started_at=session.started_at,
            completed_at=session.completed_at,
            created_by=session.created_by,
            created_at=session.created_at,
            progress_percentage=round(session.progress_percentage, 2),
            success_rate=round(session.success_rate, 2),
            duration_seconds=session.duration_seconds,
        )


class ImportSessionListResponse(BaseModel):
    sessions: List[ImportSessionResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class ProgressMessage(BaseModel):
    type: str = "progress"
    session_id: str
    percentage: float
    processed_rows: int
    success_rows: int
    error_rows: int
    duplicate_rows: int
    status: ImportStatus

    @classmethod
    def from_domain(cls, update: ProgressUpdate) -> "ProgressMessage":
        return cls(
            session_id=update.session_id,
            percentage=update.percentage,
            processed_rows=update.processed_rows,
            success_rows=update.success_rows,
            error_rows=update.error_rows,
            duplicate_rows=update.duplicate_rows,
            status=update.status,
        )


class StreamStartMessage(BaseModel):
    """First websocket message of a streamed import."""
    account_type: str
    account_id: str
    file_name: str
    created_by: Optional[str] = None
    expected_size: Optional[int] = None


class StreamChunkMessage(BaseModel):
    session_id: str
    data: str  # base64
    sequence: int
    is_last: bool = False


# -- toll records --------------------------------------------------------

class TollRecordCreate(BaseModel):
    date: str
    time: str
    entry_point: str
    exit_point: str
    amount: int
    vehicle_id: str
    card_id: str
    external_ref: Optional[str] = None
    external_row_id: Optional[int] = None


class TollRecordUpdate(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
    entry_point: Optional[str] = None
    exit_point: Optional[str] = None
    amount: Optional[int] = None
    vehicle_id: Optional[str] = None
    card_id: Optional[str] = None
    external_ref: Optional[str] = None
    external_row_id: Optional[int] = None


class TollRecordResponse(BaseModel):
    id: int
    hash: str
    date: date
    time: str
    entry_point: str
    exit_point: str
    amount: int
    vehicle_id: str
    card_id: str
    external_ref: Optional[str] = None
    external_row_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, record: TollRecord) -> "TollRecordResponse":
        return cls(
            id=record.id,
            hash=record.hash,
            date=record.date,
            time=record.time,
            entry_point=record.entry_point,
            exit_point=record.exit_point,
            amount=record.amount,
            vehicle_id=record.vehicle_id,
            card_id=record.card_id,
            external_ref=record.external_ref,
            external_row_id=record.external_row_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class TollRecordListResponse(BaseModel):
    records: List[TollRecordResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int


# -- mappings ------------------------------------------------------------

class MappingCreate(BaseModel):
    toll_record_id: int
    mapping_type: str
    mapped_entity_id: int
    mapped_entity_type: str
    confidence: float
    status: MappingStatus
    created_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class MappingPatch(BaseModel):
    toll_record_id: Optional[int] = None
    mapping_type: Optional[str] = None
    mapped_entity_id: Optional[int] = None
    mapped_entity_type: Optional[str] = None
    confidence: Optional[float] = None
    status: Optional[MappingStatus] = None
    metadata: Optional[Dict[str, Any]] = None


class ConfidenceUpdate(BaseModel):
    confidence: float


class MappingResponse(BaseModel):
    id: int
    toll_record_id: int
    mapping_type: str
    mapped_entity_id: int
    mapped_entity_type: str
    confidence: float
    status: MappingStatus
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, mapping: Mapping) -> "MappingResponse":
        return cls(
            id=mapping.id,
            toll_record_id=mapping.toll_record_id,
            mapping_type=mapping.mapping_type,
            mapped_entity_id=mapping.mapped_entity_id,
            mapped_entity_type=mapping.mapped_entity_type,
            confidence=mapping.confidence,
            status=mapping.status,
            metadata=mapping.metadata,
            created_by=mapping.created_by,
            created_at=mapping.created_at,
            updated_at=mapping.updated_at,
        )


class MappingListResponse(BaseModel):
    mappings: List[MappingResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class PotentialMatchResponse(BaseModel):
    entity_id: int
    entity_type: str
    confidence: float
    reasons: List[str]

    @classmethod
    def from_domain(cls, match: PotentialMatch) -> "PotentialMatchResponse":
        return cls(
            entity_id=match.entity_id,
            entity_type=match.entity_type,
            confidence=match.confidence,
            reasons=list(match.reasons),
        )


class PotentialMatchListResponse(BaseModel):
    toll_record_id: int
    threshold: float
    matches: List[PotentialMatchResponse]


class CandidateUploadResponse(BaseModel):
    success: bool = True
    loaded: int
