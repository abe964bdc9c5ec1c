import hashlib
import unicodedata
from datetime import date
from typing import Union


def normalize_field(value: str) -> str:
    """Trim surrounding whitespace and fold full-width characters to their ASCII forms."""
    if value is None:
        return ""
    return unicodedata.normalize("NFKC", str(value)).strip()


def calculate_record_hash(
    record_date: Union[date, str],
    record_time: str,
    entry_point: str,
    exit_point: str,
    amount: int,
    vehicle_id: str,
    card_id: str,
) -> str:
    """
    Calculate the deduplication key for a toll record.

    The digest covers only the semantic fields, joined in a fixed order, so two
    rows that parse to the same values always hash identically regardless of
    how they were formatted in the source file.

    Returns:
        64-character hex SHA-256 digest.
    """
    date_part = record_date.isoformat() if isinstance(record_date, date) else normalize_field(record_date)
    parts = [
        date_part,
        normalize_field(record_time),
        normalize_field(entry_point),
        normalize_field(exit_point),
        str(int(amount)),
        normalize_field(vehicle_id),
        normalize_field(card_id),
    ]
    content = "|".join(parts)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
