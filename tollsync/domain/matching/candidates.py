"""
Sources of external entities a toll record can be matched against.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from io import BytesIO
from typing import Iterable, List, Optional

import pandas as pd

from tollsync.core.errors import ValidationError
from tollsync.domain.models import CandidateEntity

logger = logging.getLogger(__name__)

CANDIDATE_COLUMNS = ("entity_id", "entity_type", "occurred_at", "vehicle_id", "card_id", "amount")
_REQUIRED_CANDIDATE_COLUMNS = ("entity_id", "entity_type", "occurred_at")


class CandidateProvider(ABC):
    @abstractmethod
    def candidates_between(self, start: datetime, end: datetime) -> List[CandidateEntity]:
        """Return entities whose ``occurred_at`` lies within [start, end]."""


class StaticCandidateProvider(CandidateProvider):
    """Candidates held in a plain list."""

    def __init__(self, candidates: Optional[Iterable[CandidateEntity]] = None):
        self._candidates = list(candidates or [])

    def candidates_between(self, start: datetime, end: datetime) -> List[CandidateEntity]:
        return [c for c in self._candidates if start <= c.occurred_at <= end]

    def __len__(self) -> int:
        return len(self._candidates)


def _optional_text(value) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def _optional_amount(value) -> Optional[int]:
    if value is None or pd.isna(value):
        return None
    number = float(value)
    # Yen amounts are whole; a fractional value can never be an exact match.
    if not number.is_integer():
        return None
    return int(number)


def _invalid_column(column: str, expected: str, exc: Exception) -> ValidationError:
    logger.warning("Candidate column %s could not be converted: %s", column, exc)
    return ValidationError(f"{column} contains a value that is not {expected}", details={"column": column})


class FrameCandidateProvider(CandidateProvider):
    """
    Candidates loaded from a fleet-system CSV export into a DataFrame.

    Expected columns: entity_id, entity_type, occurred_at (parseable
    timestamp, naive local time), and optionally vehicle_id, card_id, amount.
    """

    def __init__(self, frame: pd.DataFrame):
        missing = [column for column in _REQUIRED_CANDIDATE_COLUMNS if column not in frame.columns]
        if missing:
            raise ValidationError(
                f"Candidate export is missing required columns: {', '.join(missing)}",
                details={"missing_columns": missing},
            )
        frame = frame.copy()
        for column in CANDIDATE_COLUMNS:
            if column not in frame.columns:
                frame[column] = None

        try:
            frame["occurred_at"] = pd.to_datetime(frame["occurred_at"], errors="raise")
            if frame["occurred_at"].dt.tz is not None:
                # Toll timestamps are naive local time
                frame["occurred_at"] = frame["occurred_at"].dt.tz_localize(None)
        except (ValueError, TypeError) as exc:
            raise _invalid_column("occurred_at", "a timestamp", exc)
        try:
            frame["entity_id"] = pd.to_numeric(frame["entity_id"], errors="raise").astype("int64")
        except (ValueError, TypeError) as exc:
            raise _invalid_column("entity_id", "an integer", exc)
        frame["amount"] = pd.to_numeric(frame["amount"], errors="coerce")

        if (frame["entity_id"] <= 0).any():
            raise ValidationError("Candidate entity_id values must be positive")

        self.frame = frame.sort_values(["occurred_at", "entity_id"]).reset_index(drop=True)
        logger.info("Loaded %d candidate entities", len(self.frame))

    @classmethod
    def from_csv(cls, content: bytes, encoding: str = "utf-8-sig") -> "FrameCandidateProvider":
        try:
            frame = pd.read_csv(
                BytesIO(content),
                encoding=encoding,
                dtype={"vehicle_id": str, "card_id": str, "entity_type": str},
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
            logger.warning("Candidate export could not be read: %s", exc)
            raise ValidationError("Candidate export is not valid UTF-8 CSV with a header row")
        frame.columns = [str(column).strip().lower() for column in frame.columns]
        return cls(frame)

    def candidates_between(self, start: datetime, end: datetime) -> List[CandidateEntity]:
        window = self.frame[(self.frame["occurred_at"] >= start) & (self.frame["occurred_at"] <= end)]
        return [
            CandidateEntity(
                entity_id=int(row.entity_id),
                entity_type=str(row.entity_type),
                occurred_at=row.occurred_at.to_pydatetime(),
                vehicle_id=_optional_text(row.vehicle_id),
                card_id=_optional_text(row.card_id),
                amount=_optional_amount(row.amount),
            )
            for row in window.itertuples(index=False)
        ]

    def __len__(self) -> int:
        return len(self.frame)
