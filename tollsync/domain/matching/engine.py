"""
Mapping engine: CRUD for toll-record mappings and confidence-scored
candidate search.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Union

from tollsync.core.config import settings
from tollsync.core.errors import NotFoundError, ValidationError
from tollsync.db.repository import StorageBackend
from tollsync.domain.matching.candidates import CandidateProvider
from tollsync.domain.matching.policy import (
    check_single_active_mapping,
    demote_mappings,
    requires_active_check,
    resolve_missing_on_delete,
)
from tollsync.domain.matching.scoring import MatchWeights, score_candidate
from tollsync.domain.models import Mapping, MappingStatus, Page, PotentialMatch, TollRecord
from tollsync.domain.queries import MAPPING_SORT_FIELDS, MappingFilter, PageRequest

logger = logging.getLogger(__name__)


def validate_confidence(value: Any, name: str = "confidence") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    value = float(value)
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be between 0.0 and 1.0")
    return value


def _require_text(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} cannot be empty")
    return str(value).strip()


def _require_positive(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def _parse_status(value: Union[MappingStatus, str]) -> MappingStatus:
    try:
        status = MappingStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown mapping status '{value}'")
    if status == MappingStatus.UNSPECIFIED:
        raise ValidationError("status must be specified")
    return status


@dataclass
class MappingUpdate:
    """Partial update; fields left as None are not changed."""
    toll_record_id: Optional[int] = None
    mapping_type: Optional[str] = None
    mapped_entity_id: Optional[int] = None
    mapped_entity_type: Optional[str] = None
    confidence: Optional[float] = None
    status: Optional[Union[MappingStatus, str]] = None
    metadata: Optional[Dict[str, Any]] = None

    def supplied(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


class MappingEngine:
    def __init__(self, storage: StorageBackend, candidates: Optional[CandidateProvider] = None):
        self.storage = storage
        self.candidates = candidates

    def _require_record(self, toll_record_id: int) -> TollRecord:
        record = self.storage.get_record(toll_record_id)
        if record is None:
            raise NotFoundError(f"Toll record {toll_record_id} not found")
        return record

    def create_mapping(
        self,
        toll_record_id: int,
        mapping_type: str,
        mapped_entity_id: int,
        mapped_entity_type: str,
        confidence: float,
        status: Union[MappingStatus, str],
        created_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Mapping:
        """
        Link a toll record to an external entity.

        Raises:
            ValidationError: Out-of-range confidence, empty type strings,
                non-positive ids, unspecified status or non-dict metadata
            NotFoundError: The toll record does not exist
            ConflictError: A second ACTIVE mapping under the ``conflict`` policy
        """
        mapping = Mapping(
            toll_record_id=_require_positive(toll_record_id, "toll_record_id"),
            mapping_type=_require_text(mapping_type, "mapping_type"),
            mapped_entity_id=_require_positive(mapped_entity_id, "mapped_entity_id"),
            mapped_entity_type=_require_text(mapped_entity_type, "mapped_entity_type"),
            confidence=validate_confidence(confidence),
            status=_parse_status(status),
            metadata=self._validate_metadata(metadata),
            created_by=created_by,
        )
        self._require_record(mapping.toll_record_id)
        superseded = []
        if requires_active_check(mapping):
            superseded = check_single_active_mapping(self.storage, mapping.toll_record_id)

        created = self.storage.create_mapping(mapping)
        demote_mappings(self.storage, superseded, created.toll_record_id)
        logger.info(
            "Created mapping %s: toll record %s -> %s %s (confidence=%.4f, status=%s)",
            created.id,
            created.toll_record_id,
            created.mapped_entity_type,
            created.mapped_entity_id,
            created.confidence,
            created.status.value,
        )
        return created

    def get_mapping(self, mapping_id: int) -> Mapping:
        _require_positive(mapping_id, "mapping_id")
        mapping = self.storage.get_mapping(mapping_id)
        if mapping is None:
            raise NotFoundError(f"Mapping {mapping_id} not found")
        return mapping

    def list_mappings(
        self,
        filters: Optional[MappingFilter] = None,
        page: Optional[PageRequest] = None,
    ) -> Page[Mapping]:
        filters = (filters or MappingFilter()).validate()
        page = (page or PageRequest(page_size=settings.default_page_size)).validate(MAPPING_SORT_FIELDS)
        items, total = self.storage.list_mappings(filters, page)
        return Page(items=items, total_count=total, page=page.page, page_size=page.page_size)

    def update_mapping(self, mapping_id: int, changes: MappingUpdate) -> Mapping:
        """
        Apply a partial update. Supplying no fields is a validation error.
        """
        _require_positive(mapping_id, "mapping_id")
        supplied = changes.supplied()
        if not supplied:
            raise ValidationError("nothing to update")

        mapping = self.get_mapping(mapping_id)
        if "toll_record_id" in supplied:
            mapping.toll_record_id = _require_positive(supplied["toll_record_id"], "toll_record_id")
            self._require_record(mapping.toll_record_id)
        if "mapping_type" in supplied:
            mapping.mapping_type = _require_text(supplied["mapping_type"], "mapping_type")
        if "mapped_entity_id" in supplied:
            mapping.mapped_entity_id = _require_positive(supplied["mapped_entity_id"], "mapped_entity_id")
        if "mapped_entity_type" in supplied:
            mapping.mapped_entity_type = _require_text(supplied["mapped_entity_type"], "mapped_entity_type")
        if "confidence" in supplied:
            mapping.confidence = validate_confidence(supplied["confidence"])
        if "status" in supplied:
            mapping.status = _parse_status(supplied["status"])
        if "metadata" in supplied:
            mapping.metadata = self._validate_metadata(supplied["metadata"])

        superseded = []
        if requires_active_check(mapping) and ("status" in supplied or "toll_record_id" in supplied):
            superseded = check_single_active_mapping(
                self.storage, mapping.toll_record_id, exclude_mapping_id=mapping.id
            )

        updated = self.storage.update_mapping(mapping)
        if updated is None:
            raise NotFoundError(f"Mapping {mapping_id} not found")
        demote_mappings(self.storage, superseded, updated.toll_record_id)
        logger.info("Updated mapping %s fields: %s", mapping_id, ", ".join(sorted(supplied)))
        return updated

    def delete_mapping(self, mapping_id: int) -> None:
        _require_positive(mapping_id, "mapping_id")
        if self.storage.delete_mapping(mapping_id):
            logger.info("Deleted mapping %s", mapping_id)
            return
        resolve_missing_on_delete("Mapping", mapping_id)

    def update_confidence_score(self, mapping_id: int, confidence: float) -> Mapping:
        """Change only the confidence; status is left as it is."""
        _require_positive(mapping_id, "mapping_id")
        value = validate_confidence(confidence)
        mapping = self.get_mapping(mapping_id)
        mapping.confidence = value
        updated = self.storage.update_mapping(mapping)
        if updated is None:
            raise NotFoundError(f"Mapping {mapping_id} not found")
        logger.info("Mapping %s confidence set to %.4f", mapping_id, value)
        return updated

    def find_potential_matches(
        self,
        toll_record_id: int,
        confidence_threshold: float = 0.0,
    ) -> List[PotentialMatch]:
        """
        Score candidates inside the record's time window.

        Results with confidence >= threshold, highest first; equal scores are
        ordered by entity id.
        """
        _require_positive(toll_record_id, "toll_record_id")
        threshold = validate_confidence(confidence_threshold, "confidence_threshold")
        record = self._require_record(toll_record_id)
        if self.candidates is None:
            logger.info("No candidate source loaded; no matches for toll record %s", toll_record_id)
            return []

        weights = MatchWeights.from_settings()
        occurred_at = record.occurred_at
        pool = self.candidates.candidates_between(occurred_at - weights.window, occurred_at + weights.window)

        matches = []
        for candidate in pool:
            match = score_candidate(record, candidate, weights)
            if match is not None and match.confidence >= threshold:
                matches.append(match)
        matches.sort(key=lambda m: (-m.confidence, m.entity_id))

        logger.info(
            "Match search for toll record %s (card %s): %d candidates, %d above %.2f",
            toll_record_id,
            record.masked_card_id(),
            len(pool),
            len(matches),
            threshold,
        )
        return matches

    @staticmethod
    def _validate_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if metadata is None:
            return {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        return dict(metadata)
