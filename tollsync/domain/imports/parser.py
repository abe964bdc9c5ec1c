"""
CSV parsing and per-row validation for toll usage exports.

Input convention: comma-delimited text, UTF-8 (a leading BOM is ignored) with
a Shift_JIS fallback for the legacy toll-site exports. The first non-blank row
is the header; every following non-blank row is one toll record.
"""
from __future__ import annotations

import csv
import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from io import StringIO
from typing import Dict, List, Optional, Sequence, Union

from tollsync.core.config import settings
from tollsync.core.errors import ValidationError
from tollsync.domain.imports.hashing import normalize_field
from tollsync.domain.models import RowError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "date",
    "time",
    "entry_point",
    "exit_point",
    "amount",
    "vehicle_id",
    "card_id",
)
OPTIONAL_COLUMNS = ("external_ref", "external_row_id")

# Canonical column -> accepted header spellings (compared after normalize_header)
COLUMN_ALIASES: Dict[str, Sequence[str]] = {
    "date": ("date", "usage_date", "利用年月日", "日付", "利用日"),
    "time": ("time", "usage_time", "時刻", "利用時刻"),
    "entry_point": ("entry_point", "entry", "entrance_ic", "entry_ic", "入口ic", "入口"),
    "exit_point": ("exit_point", "exit", "exit_ic", "出口ic", "出口"),
    "amount": ("amount", "toll_amount", "toll", "通行料金", "料金"),
    "vehicle_id": ("vehicle_id", "vehicle", "car_number", "vehicle_number", "車両番号"),
    "card_id": ("card_id", "card", "etc_card_number", "card_number", "カード番号"),
    "external_ref": ("external_ref", "external_reference", "etc_num", "reference", "参照番号"),
    "external_row_id": ("external_row_id", "dtako_row_id", "row_id"),
}

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d")
TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d):([0-5]\d)$")
AMOUNT_PATTERN = re.compile(r"^\d+$")
_AMOUNT_NOISE = (",", "円", "¥", " ")


@dataclass
class ColumnSchema:
    """Resolved positions of the recognised columns within a header row."""
    positions: Dict[str, int]
    header: List[str]

    @property
    def min_fields(self) -> int:
        return max(self.positions[name] for name in REQUIRED_COLUMNS) + 1

    def has(self, column: str) -> bool:
        return column in self.positions


@dataclass
class ParsedRow:
    """A data row that passed validation and is ready to be hashed."""
    row_number: int
    date: date
    time: str
    entry_point: str
    exit_point: str
    amount: int
    vehicle_id: str
    card_id: str
    external_ref: Optional[str] = None
    external_row_id: Optional[int] = None
    raw_data: Optional[str] = None


def decode_content(content: bytes, encoding: Optional[str] = None) -> str:
    """
    Decode raw file bytes into text.

    Args:
        content: Raw bytes of the CSV payload
        encoding: Explicit codec name, or "auto" to try UTF-8 then Shift_JIS

    Raises:
        ValidationError: If the bytes cannot be decoded
    """
    encoding = encoding or settings.csv_encoding
    if encoding != "auto":
        try:
            return content.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            raise ValidationError(f"File could not be decoded as {encoding}")

    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    try:
        text = content.decode("cp932")
        logger.info("Decoded CSV payload as Shift_JIS")
        return text
    except UnicodeDecodeError:
        raise ValidationError("File is not valid UTF-8 or Shift_JIS text")


def read_rows(text: str, delimiter: Optional[str] = None) -> List[List[str]]:
    """
    Split CSV text into rows, dropping blank lines.

    Raises:
        ValidationError: If the text is not well-formed CSV
    """
    reader = csv.reader(StringIO(text), delimiter=delimiter or settings.csv_delimiter)
    try:
        return [row for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        logger.warning("CSV reader stopped at line %d: %s", reader.line_num, exc)
        raise ValidationError(
            f"Input is not valid CSV near line {reader.line_num}", details={"line": reader.line_num}
        )


def normalize_header(name: str) -> str:
    """Lowercase, trim and unify separators of a header cell."""
    cleaned = unicodedata.normalize("NFKC", name or "").replace("\ufeff", "").strip().lower()
    return re.sub(r"[\s\-]+", "_", cleaned)


_ALIAS_LOOKUP = {
    normalize_header(alias): column
    for column, aliases in COLUMN_ALIASES.items()
    for alias in aliases
}


def resolve_schema(header: List[str]) -> ColumnSchema:
    """
    Map header cells onto the recognised columns.

    Raises:
        ValidationError: If any required column is missing
    """
    positions: Dict[str, int] = {}
    for index, cell in enumerate(header):
        column = _ALIAS_LOOKUP.get(normalize_header(cell))
        if column and column not in positions:
            positions[column] = index

    missing = [name for name in REQUIRED_COLUMNS if name not in positions]
    if missing:
        raise ValidationError(
            f"Header is missing required columns: {', '.join(missing)}",
            details={"missing_columns": missing},
        )
    return ColumnSchema(positions=positions, header=list(header))


def _raw_snippet(row: List[str], delimiter: str) -> str:
    return delimiter.join(row)[: settings.error_log_raw_limit]


def parse_date(value: str) -> Optional[date]:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_time(value: str) -> Optional[str]:
    match = TIME_PATTERN.match(value)
    if not match:
        return None
    hour, minute, second = match.groups()
    return f"{int(hour):02d}:{minute}:{second}"


def parse_amount(value: str) -> Optional[int]:
    cleaned = value
    for noise in _AMOUNT_NOISE:
        cleaned = cleaned.replace(noise, "")
    if not AMOUNT_PATTERN.match(cleaned):
        return None
    return int(cleaned)


def parse_row(
    row: List[str],
    schema: ColumnSchema,
    row_number: int,
    delimiter: Optional[str] = None,
) -> Union[ParsedRow, RowError]:
    """
    Validate one data row.

    Returns a ``ParsedRow`` on success, otherwise a ``RowError`` describing the
    first problem found. Never raises for bad row content.
    """
    delimiter = delimiter or settings.csv_delimiter
    raw = _raw_snippet(row, delimiter)

    def error(error_type: str, message: str) -> RowError:
        return RowError(row_number=row_number, error_type=error_type, error_message=message, raw_data=raw)

    if len(row) < schema.min_fields:
        return error(
            "insufficient_fields",
            f"Row has {len(row)} fields, expected at least {schema.min_fields}",
        )

    values = {name: normalize_field(row[schema.positions[name]]) for name in REQUIRED_COLUMNS}
    for name in REQUIRED_COLUMNS:
        if not values[name]:
            return error("missing_field", f"{name} is required")

    parsed_date = parse_date(values["date"])
    if parsed_date is None:
        return error("invalid_date", f"Invalid date '{values['date']}' (expected YYYY-MM-DD or YYYY/MM/DD)")

    parsed_time = parse_time(values["time"])
    if parsed_time is None:
        return error("invalid_time", f"Invalid time '{values['time']}' (expected HH:MM:SS, 24h)")

    amount = parse_amount(values["amount"])
    if amount is None:
        return error("invalid_amount", f"Invalid amount '{values['amount']}' (must be a non-negative integer)")

    external_ref = None
    if schema.has("external_ref"):
        position = schema.positions["external_ref"]
        if position < len(row):
            external_ref = normalize_field(row[position]) or None

    external_row_id = None
    if schema.has("external_row_id"):
        position = schema.positions["external_row_id"]
        cell = normalize_field(row[position]) if position < len(row) else ""
        if cell:
            if not cell.isdigit() or int(cell) <= 0:
                return error("invalid_external_row_id", f"Invalid external_row_id '{cell}' (must be a positive integer)")
            external_row_id = int(cell)

    return ParsedRow(
        row_number=row_number,
        date=parsed_date,
        time=parsed_time,
        entry_point=values["entry_point"],
        exit_point=values["exit_point"],
        amount=amount,
        vehicle_id=values["vehicle_id"],
        card_id=values["card_id"],
        external_ref=external_ref,
        external_row_id=external_row_id,
        raw_data=raw,
    )
