"""
Tests for direct toll-record CRUD.
"""

from datetime import date

import pytest
from conftest import make_record

from tollsync.core.config import settings
from tollsync.core.errors import ConflictError, NotFoundError, ValidationError
from tollsync.domain.imports.hashing import calculate_record_hash
from tollsync.domain.queries import PageRequest, RecordFilter
from tollsync.domain.records import RecordInput, RecordService


@pytest.fixture
def service(storage):
    return RecordService(storage)


def full_input(**overrides):
    values = {
        "date": "2024-01-15",
        "time": "08:30:00",
        "entry_point": "Tokyo IC",
        "exit_point": "Yokohama IC",
        "amount": 1200,
        "vehicle_id": "V-100",
        "card_id": "1111222233334444",
    }
    values.update(overrides)
    return RecordInput(**values)


class TestCreate:
    def test_hash_is_derived(self, service):
        record = service.create_record(full_input(external_ref="REF-9"))
        assert record.id is not None
        assert record.date == date(2024, 1, 15)
        assert record.hash == make_record().hash
        assert record.external_ref == "REF-9"

    def test_missing_fields_listed(self, service):
        with pytest.raises(ValidationError) as excinfo:
            service.create_record(RecordInput(date="2024-01-15", amount=10))
        assert excinfo.value.details["missing_fields"] == ["time", "entry_point", "exit_point", "vehicle_id", "card_id"]

    @pytest.mark.parametrize(
        "overrides",
        [{"date": "2024-02-30"}, {"time": "25:00:00"}, {"amount": -1}, {"amount": 1.5}, {"vehicle_id": " "}],
    )
    def test_malformed_values(self, service, overrides):
        with pytest.raises(ValidationError):
            service.create_record(full_input(**overrides))

    def test_duplicate_content_conflicts(self, service):
        service.create_record(full_input())
        with pytest.raises(ConflictError):
            service.create_record(full_input(time="8:30:00", entry_point=" Tokyo IC "))


class TestUpdate:
    def test_semantic_change_rehashes(self, service, stored_record):
        updated = service.update_record(stored_record.id, RecordInput(amount=1300))
        assert updated.amount == 1300
        assert updated.hash == calculate_record_hash(
            date(2024, 1, 15), "08:30:00", "Tokyo IC", "Yokohama IC", 1300, "V-100", "1111222233334444"
        )
        assert updated.created_at == stored_record.created_at

    def test_reference_change_keeps_hash(self, service, stored_record):
        updated = service.update_record(stored_record.id, RecordInput(external_ref="REF-2"))
        assert updated.hash == stored_record.hash
        assert updated.external_ref == "REF-2"

    def test_update_into_existing_content_conflicts(self, service, storage, stored_record):
        other = storage.create_record(make_record(record_time="09:00:00"))
        with pytest.raises(ConflictError):
            service.update_record(other.id, RecordInput(time="08:30:00"))

    def test_empty_update_rejected(self, service, stored_record):
        with pytest.raises(ValidationError):
            service.update_record(stored_record.id, RecordInput())

    def test_unknown_record(self, service):
        with pytest.raises(NotFoundError):
            service.update_record(5, RecordInput(amount=1))


class TestReadAndDelete:
    def test_get_validates_id(self, service):
        with pytest.raises(ValidationError):
            service.get_record(0)
        with pytest.raises(NotFoundError):
            service.get_record(1)

    def test_list_filters_and_defaults(self, service, storage):
        storage.create_record(make_record())
        storage.create_record(make_record(record_date=date(2024, 1, 20), vehicle_id="V-200"))
        storage.create_record(make_record(record_date=date(2024, 2, 1), vehicle_id="V-300"))

        everything = service.list_records()
        assert [r.date for r in everything.items] == [date(2024, 2, 1), date(2024, 1, 20), date(2024, 1, 15)]
        assert service.list_records(RecordFilter(date_from=date(2024, 1, 16))).total_count == 2
        assert service.list_records(RecordFilter(vehicle_id="V-2")).total_count == 1
        page = service.list_records(page=PageRequest(page=2, page_size=2, sort_by="date", sort_order="asc"))
        assert [r.date for r in page.items] == [date(2024, 2, 1)]

    def test_inverted_date_range(self, service):
        with pytest.raises(ValidationError):
            service.list_records(RecordFilter(date_from=date(2024, 2, 1), date_to=date(2024, 1, 1)))

    def test_delete(self, service, stored_record):
        service.delete_record(stored_record.id)
        with pytest.raises(NotFoundError):
            service.get_record(stored_record.id)

    def test_delete_missing(self, service, monkeypatch):
        with pytest.raises(NotFoundError):
            service.delete_record(3)
        monkeypatch.setattr(settings, "delete_policy", "idempotent")
        service.delete_record(3)
