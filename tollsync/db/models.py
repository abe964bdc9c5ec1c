"""
ORM tables backing the SQLAlchemy storage backend.
"""
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Index,
)

from tollsync.db.session import Base
from tollsync.domain.models import utcnow


class TollRecordRow(Base):
    __tablename__ = "toll_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    hash = Column(String(64), unique=True, nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    time = Column(String(8), nullable=False)
    entry_point = Column(String(255), nullable=False)
    exit_point = Column(String(255), nullable=False)
    amount = Column(BigInteger, nullable=False)
    vehicle_id = Column(String(100), nullable=False, index=True)
    card_id = Column(String(100), nullable=False, index=True)
    external_ref = Column(String(255), nullable=True)
    external_row_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ImportSessionRow(Base):
    __tablename__ = "import_sessions"

    id = Column(String(64), primary_key=True)
    account_type = Column(String(50), nullable=False)
    account_id = Column(String(255), nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)
    status = Column(String(20), nullable=False, index=True)
    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    success_rows = Column(Integer, nullable=False, default=0)
    error_rows = Column(Integer, nullable=False, default=0)
    duplicate_rows = Column(Integer, nullable=False, default=0)
    error_log = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class TollMappingRow(Base):
    __tablename__ = "toll_mappings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    toll_record_id = Column(Integer, ForeignKey("toll_records.id", ondelete="CASCADE"), nullable=False)
    mapping_type = Column(String(50), nullable=False)
    mapped_entity_id = Column(BigInteger, nullable=False)
    mapped_entity_type = Column(String(50), nullable=False)
    confidence = Column(Float, nullable=False)
    status = Column(String(20), nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_toll_mappings_record_status", "toll_record_id", "status"),
    )
