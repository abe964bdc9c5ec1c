"""
Tests for batch duplicate detection.
"""

from conftest import make_record

from tollsync.domain.imports.duplicates import DuplicateDetector


class CountingStorage:
    """Wraps a storage backend and records batch hash lookups."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def batch_check_hashes_exist(self, hashes):
        hashes = list(hashes)
        self.calls.append(hashes)
        return self.inner.batch_check_hashes_exist(hashes)


def test_one_lookup_per_batch(storage):
    storage.create_record(make_record())
    spy = CountingStorage(storage)
    detector = DuplicateDetector(spy)

    known = make_record()
    fresh = make_record(record_time="09:00:00")
    result = detector.partition([known, fresh])

    assert len(spy.calls) == 1
    assert sorted(spy.calls[0]) == sorted([known.hash, fresh.hash])
    assert result.duplicates == [known]
    assert result.new == [fresh]


def test_repeat_inside_one_file_is_a_duplicate(storage):
    detector = DuplicateDetector(storage)
    first = detector.partition([make_record(), make_record()])
    assert len(first.new) == 1
    assert len(first.duplicates) == 1

    # Later batches of the same session also see it.
    second = detector.partition([make_record()])
    assert second.new == []
    assert len(second.duplicates) == 1


def test_empty_batch_skips_storage(storage):
    spy = CountingStorage(storage)
    result = DuplicateDetector(spy).partition([])
    assert spy.calls == []
    assert result.new == [] and result.duplicates == []


def test_storage_batch_check_reports_every_hash(storage):
    stored = storage.create_record(make_record())
    result = storage.batch_check_hashes_exist([stored.hash, "0" * 64])
    assert result == {stored.hash: True, "0" * 64: False}
