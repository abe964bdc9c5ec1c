"""
Configurable rules whose exact behaviour is still a product decision.

- ``active_mapping_policy``: what happens when a second ACTIVE mapping is
  written for a toll record. ``conflict`` rejects it, ``replace`` demotes the
  existing ACTIVE mappings to INACTIVE.
- ``delete_policy``: deleting an unknown id. ``strict`` raises NotFound,
  ``idempotent`` treats it as already done.
"""
import logging
from typing import List, Optional

from tollsync.core.config import settings
from tollsync.core.errors import ConflictError, NotFoundError
from tollsync.db.repository import StorageBackend
from tollsync.domain.models import Mapping, MappingStatus

logger = logging.getLogger(__name__)

ACTIVE_MAPPING_POLICIES = ("conflict", "replace")
DELETE_POLICIES = ("strict", "idempotent")


def check_single_active_mapping(
    storage: StorageBackend,
    toll_record_id: int,
    exclude_mapping_id: Optional[int] = None,
    policy: Optional[str] = None,
) -> List[Mapping]:
    """
    Apply the active-mapping policy before a mapping becomes ACTIVE.

    Returns the ACTIVE mappings to hand to ``demote_mappings`` after the new
    mapping has been written (empty under the ``conflict`` policy).

    This is a read-then-write check; two concurrent writers can both pass it.
    """
    policy = policy or settings.active_mapping_policy
    if policy not in ACTIVE_MAPPING_POLICIES:
        raise ValueError(f"Unknown active_mapping_policy '{policy}'")

    others = [m for m in storage.find_active_mappings(toll_record_id) if m.id != exclude_mapping_id]
    if not others:
        return []

    if policy == "conflict":
        raise ConflictError(
            f"Toll record {toll_record_id} already has an active mapping",
            details={"toll_record_id": toll_record_id, "mapping_id": others[0].id},
        )

    return others


def demote_mappings(storage: StorageBackend, mappings: List[Mapping], toll_record_id: int) -> None:
    for existing in mappings:
        existing.status = MappingStatus.INACTIVE
        storage.update_mapping(existing)
        logger.info(
            "Mapping %s for toll record %s demoted to inactive by a newer active mapping",
            existing.id,
            toll_record_id,
        )


def resolve_missing_on_delete(entity: str, entity_id: int, policy: Optional[str] = None) -> None:
    """Called when a delete targets an id that does not exist."""
    policy = policy or settings.delete_policy
    if policy not in DELETE_POLICIES:
        raise ValueError(f"Unknown delete_policy '{policy}'")
    if policy == "strict":
        raise NotFoundError(f"{entity} {entity_id} not found")
    logger.info("Delete of missing %s %s treated as done", entity, entity_id)


def requires_active_check(mapping: Mapping) -> bool:
    return mapping.status == MappingStatus.ACTIVE
