"""
Tests for the SQLAlchemy storage backend against in-memory SQLite.
"""

from datetime import date

import pytest
from conftest import VALID_ROWS, make_csv, make_record

from tollsync.core.errors import ConflictError
from tollsync.domain.imports.coordinator import ImportCoordinator
from tollsync.domain.matching.engine import MappingEngine, MappingUpdate
from tollsync.domain.models import ImportSession, ImportStatus, Mapping, MappingStatus, RowError
from tollsync.domain.queries import MappingFilter, PageRequest, RecordFilter, SessionFilter


def new_session(session_id="sess-1", **fields):
    params = {"account_type": "corporate", "account_id": "acct-1", "file_name": "june.csv"}
    params.update(fields)
    return ImportSession(id=session_id, **params)


class TestRecords:
    def test_round_trip(self, sql_storage):
        created = sql_storage.create_record(make_record())
        fetched = sql_storage.get_record(created.id)

        assert fetched.id == created.id
        assert fetched.date == date(2024, 1, 15)
        assert fetched.time == "08:30:00"
        assert fetched.amount == 1200
        assert fetched.created_at.tzinfo is not None

    def test_unknown_id_is_none(self, sql_storage):
        assert sql_storage.get_record(123) is None
        missing = make_record()
        missing.id = 123
        assert sql_storage.update_record(missing) is None
        assert sql_storage.delete_record(123) is False

    def test_unique_hash(self, sql_storage):
        sql_storage.create_record(make_record())
        with pytest.raises(ConflictError):
            sql_storage.create_record(make_record())

    def test_batch_check(self, sql_storage):
        stored = sql_storage.create_record(make_record())
        missing = make_record(record_time="23:59:59").hash
        assert sql_storage.batch_check_hashes_exist([stored.hash, missing, stored.hash]) == {
            stored.hash: True,
            missing: False,
        }
        assert sql_storage.batch_check_hashes_exist([]) == {}

    def test_list_filters(self, sql_storage):
        sql_storage.create_record(make_record())
        sql_storage.create_record(make_record(record_date=date(2024, 1, 20), vehicle_id="V-200"))
        items, total = sql_storage.list_records(
            RecordFilter(vehicle_id="200"), PageRequest(sort_by="date", sort_order="asc")
        )
        assert total == 1
        assert items[0].vehicle_id == "V-200"

    def test_delete_cascades_to_mappings(self, sql_storage):
        record = sql_storage.create_record(make_record())
        mapping = sql_storage.create_mapping(
            Mapping(
                toll_record_id=record.id,
                mapping_type="dtako",
                mapped_entity_id=5,
                mapped_entity_type="dtako_row",
                confidence=0.5,
                status=MappingStatus.PENDING,
            )
        )
        assert sql_storage.delete_record(record.id) is True
        assert sql_storage.get_mapping(mapping.id) is None


class TestMappings:
    def test_engine_over_sql_storage(self, sql_storage):
        record = sql_storage.create_record(make_record())
        engine = MappingEngine(sql_storage)

        mapping = engine.create_mapping(record.id, "dtako", 5, "dtako_row", 0.8, "active", metadata={"k": "v"})
        assert engine.get_mapping(mapping.id).metadata == {"k": "v"}
        with pytest.raises(ConflictError):
            engine.create_mapping(record.id, "dtako", 6, "dtako_row", 0.7, "active")

        updated = engine.update_mapping(mapping.id, MappingUpdate(status=MappingStatus.REJECTED))
        assert updated.status == MappingStatus.REJECTED
        assert sql_storage.find_active_mappings(record.id) == []

        page = engine.list_mappings(MappingFilter(status=MappingStatus.REJECTED))
        assert page.total_count == 1


class TestSessions:
    def test_persist_and_update(self, sql_storage):
        session = new_session()
        sql_storage.persist_session(session)
        session.start_processing()
        session.total_rows = 2
        session.record_success()
        session.record_error(RowError(row_number=2, error_type="invalid_time", error_message="bad", raw_data="x"))

        stored = sql_storage.update_session(session)
        assert stored.status == ImportStatus.PROCESSING
        assert stored.error_log == session.error_log
        assert stored.started_at is not None

    def test_persist_conflict(self, sql_storage):
        sql_storage.persist_session(new_session())
        with pytest.raises(ConflictError):
            sql_storage.persist_session(new_session())

    def test_terminal_status_is_kept(self, sql_storage):
        session = new_session()
        sql_storage.persist_session(session)
        session.start_processing()
        sql_storage.update_session(session)

        cancelled = sql_storage.get_session(session.id)
        cancelled.cancel()
        sql_storage.update_session(cancelled)

        session.record_success(3)
        stored = sql_storage.update_session(session)
        assert stored.status == ImportStatus.CANCELLED
        assert stored.success_rows == 3

    def test_cancel_is_status_only(self, sql_storage):
        session = new_session()
        sql_storage.persist_session(session)
        session.start_processing()
        session.total_rows = 4
        session.record_success(2)
        sql_storage.update_session(session)

        cancelled = sql_storage.cancel_session(session.id)
        assert cancelled.status == ImportStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert cancelled.success_rows == 2
        assert sql_storage.cancel_session("missing") is None

    def test_cancel_keeps_finished_session(self, sql_storage):
        session = new_session()
        sql_storage.persist_session(session)
        session.start_processing()
        session.record_success(4)
        session.complete()
        sql_storage.update_session(session)

        stored = sql_storage.cancel_session(session.id)
        assert stored.status == ImportStatus.COMPLETED
        assert stored.success_rows == 4

    def test_list_sessions(self, sql_storage):
        sql_storage.persist_session(new_session("a", account_id="fleet-1", file_name="a.csv"))
        sql_storage.persist_session(new_session("b", account_id="fleet-2", file_name="b.csv"))
        sql_storage.persist_session(new_session("c", account_id="other", file_name="c.csv"))
        items, total = sql_storage.list_sessions(
            SessionFilter(account_id="fleet"), PageRequest(page_size=1, sort_by="file_name", sort_order="desc")
        )
        assert total == 2
        assert [s.id for s in items] == ["b"]

    def test_import_through_coordinator(self, sql_storage):
        coordinator = ImportCoordinator(sql_storage, batch_size=3)
        first = coordinator.start_import("corporate", "acct-1", "june.csv", make_csv(*VALID_ROWS))
        second = coordinator.start_import("corporate", "acct-1", "june.csv", make_csv(*VALID_ROWS))

        assert first.status == ImportStatus.COMPLETED
        assert first.success_rows == 4
        assert second.duplicate_rows == 4
        assert coordinator.get_session(first.id).completed_at is not None
