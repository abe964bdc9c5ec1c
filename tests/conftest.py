"""
Pytest configuration and fixtures for TollSync tests.

Every test builds its own storage backend; nothing is shared between tests
except the read-only settings object.
"""

import os

# Tests never bootstrap the configured database.
os.environ.setdefault("SKIP_DB_INIT", "1")

from datetime import date  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from tollsync.db.repository import InMemoryStorage, SqlAlchemyStorage  # noqa: E402
from tollsync.db.session import build_engine, init_db  # noqa: E402
from tollsync.domain.imports.coordinator import ImportCoordinator  # noqa: E402
from tollsync.domain.imports.hashing import calculate_record_hash  # noqa: E402
from tollsync.domain.models import TollRecord  # noqa: E402

HEADER = "date,time,entry_point,exit_point,amount,vehicle_id,card_id"

VALID_ROWS = [
    "2024-01-15,08:30:00,Tokyo IC,Yokohama IC,1200,V-100,1111222233334444",
    "2024-01-15,09:00:00,Yokohama IC,Tokyo IC,1200,V-100,1111222233334444",
    "2024-01-16,10:15:00,Tokyo IC,Chiba IC,800,V-200,5555666677778888",
    "2024-01-16,11:00:00,Chiba IC,Tokyo IC,800,V-200,5555666677778888",
]


def make_csv(*rows: str, header: str = HEADER) -> bytes:
    """Build a CSV payload from a header and data lines."""
    return ("\n".join([header, *rows]) + "\n").encode("utf-8")


def make_record(
    record_date: date = date(2024, 1, 15),
    record_time: str = "08:30:00",
    entry_point: str = "Tokyo IC",
    exit_point: str = "Yokohama IC",
    amount: int = 1200,
    vehicle_id: str = "V-100",
    card_id: str = "1111222233334444",
) -> TollRecord:
    return TollRecord(
        hash=calculate_record_hash(record_date, record_time, entry_point, exit_point, amount, vehicle_id, card_id),
        date=record_date,
        time=record_time,
        entry_point=entry_point,
        exit_point=exit_point,
        amount=amount,
        vehicle_id=vehicle_id,
        card_id=card_id,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def sql_storage():
    """SqlAlchemyStorage over a private in-memory SQLite database."""
    engine = build_engine("sqlite://")
    init_db(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield SqlAlchemyStorage(factory)
    engine.dispose()


@pytest.fixture
def coordinator(storage):
    return ImportCoordinator(storage, batch_size=2)


@pytest.fixture
def stored_record(storage):
    return storage.create_record(make_record())
