"""
Batch duplicate detection for toll records.

Each batch costs one ``batch_check_hashes_exist`` round trip. Results are a
point-in-time snapshot: two concurrent imports of the same row can both see
"new", and the storage unique constraint has the final say. The coordinator
counts a unique-constraint rejection as a duplicate.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Set

from tollsync.db.repository import StorageBackend
from tollsync.domain.models import TollRecord

logger = logging.getLogger(__name__)


@dataclass
class DuplicatePartition:
    new: List[TollRecord] = field(default_factory=list)
    duplicates: List[TollRecord] = field(default_factory=list)


class DuplicateDetector:
    """Partitions candidate records into new and already-known, scoped to one import session."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage
        # Hashes accepted earlier in this session; covers repeats inside one file.
        self._seen: Set[str] = set()

    def partition(self, records: List[TollRecord]) -> DuplicatePartition:
        result = DuplicatePartition()
        if not records:
            return result

        to_check = sorted({record.hash for record in records} - self._seen)
        existing = self.storage.batch_check_hashes_exist(to_check) if to_check else {}

        for record in records:
            if record.hash in self._seen or existing.get(record.hash, False):
                result.duplicates.append(record)
            else:
                self._seen.add(record.hash)
                result.new.append(record)

        if result.duplicates:
            logger.info(
                "Duplicate check: %d new, %d duplicate out of %d candidates",
                len(result.new),
                len(result.duplicates),
                len(records),
            )
        return result
