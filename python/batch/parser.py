"""
CSV parser for batch screening uploads

Turns uploaded CSV text into validated EntityRecord objects. Pure and
synchronous: no network access, no shared state.

Expected header row (case-insensitive, any order):
    name (required), address, country, type, identifier
"""

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from batch.types import EntityRecord, EntityType

REQUIRED_COLUMNS = ("name",)
OPTIONAL_COLUMNS = ("address", "country", "type", "identifier")
VALID_TYPES = tuple(t.value for t in EntityType)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


@dataclass
class ParseError:
    """A problem found in one row (row 1 is the header)"""
    row: int
    message: str
    column: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"row": self.row, "message": self.message}
        if self.column:
            data["column"] = self.column
        return data


@dataclass
class ParseResult:
    """Either records (no errors) or errors (no records)"""
    records: List[EntityRecord] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def parse_entities(csv_content: str) -> ParseResult:
    """Parse CSV text into entity records.

    Blank lines are skipped. When any row has an error, no records are
    returned so a partially valid file never becomes a job.
    """
    if not csv_content or not csv_content.strip():
        return ParseResult(errors=[ParseError(row=0, message="CSV file is empty")])

    try:
        rows = list(csv.reader(io.StringIO(csv_content.strip())))
    except csv.Error as e:
        return ParseResult(errors=[ParseError(row=0, message=f"Failed to parse CSV: {e}")])

    headers = [h.strip().lower() for h in rows[0]]
    errors: List[ParseError] = []
    columns = _map_headers(headers, errors)
    if errors:
        return ParseResult(errors=errors)

    records: List[EntityRecord] = []
    for row_number, values in enumerate(rows[1:], start=2):
        if not any(v.strip() for v in values):
            continue
        record = _parse_row(values, columns, row_number, errors)
        if record is not None:
            records.append(record)

    if not records and not errors:
        errors.append(ParseError(row=0, message="No valid data rows found"))

    if errors:
        return ParseResult(errors=errors)
    return ParseResult(records=records)


def generate_template() -> str:
    """Sample CSV showing every supported column."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(["name", "address", "country", "type", "identifier"])
    writer.writerow(["Acme Corporation", "123 Main St, New York, NY", "USA", "company", "EIN123456789"])
    writer.writerow(["John Doe", "456 Oak Ave, London", "GBR", "person", "PASSPORT123"])
    writer.writerow(["Global Trading Co", "Dubai Business Park", "ARE", "company", "LEI1234567890"])
    return buffer.getvalue().rstrip("\n")


def _map_headers(headers: List[str], errors: List[ParseError]) -> Dict[str, int]:
    columns: Dict[str, int] = {}
    for required in REQUIRED_COLUMNS:
        if required not in headers:
            errors.append(ParseError(row=1, column=required,
                                     message=f"Missing required column: {required}"))
        else:
            columns[required] = headers.index(required)

    for optional in OPTIONAL_COLUMNS:
        if optional in headers:
            columns[optional] = headers.index(optional)
    return columns


def _cell(values: List[str], columns: Dict[str, int], name: str) -> Optional[str]:
    index = columns.get(name)
    if index is None or index >= len(values):
        return None
    value = values[index].strip()
    return value or None


def _parse_row(
    values: List[str],
    columns: Dict[str, int],
    row_number: int,
    errors: List[ParseError]
) -> Optional[EntityRecord]:
    name = _cell(values, columns, "name")
    if name is None:
        errors.append(ParseError(row=row_number, column="name", message="Name is required"))
        return None

    row_errors: List[ParseError] = []

    country = _cell(values, columns, "country")
    if country is not None:
        country = country.upper()
        if len(country) not in (2, 3) or not country.isalpha():
            row_errors.append(ParseError(
                row=row_number, column="country",
                message="Invalid country code (use 2 or 3 letter ISO codes)",
            ))

    entity_type = None
    raw_type = _cell(values, columns, "type")
    if raw_type is not None:
        if raw_type.lower() in VALID_TYPES:
            entity_type = EntityType(raw_type.lower())
        else:
            row_errors.append(ParseError(
                row=row_number, column="type",
                message=f"Invalid type. Must be one of: {', '.join(VALID_TYPES)}",
            ))

    address = _cell(values, columns, "address")
    identifier = _cell(values, columns, "identifier")

    for column, value in (("name", name), ("address", address), ("identifier", identifier)):
        if value and _CONTROL_CHARS.search(value):
            row_errors.append(ParseError(row=row_number, column=column,
                                         message="Contains invalid control characters"))

    if row_errors:
        errors.extend(row_errors)
        return None

    return EntityRecord(
        name=name,
        address=address,
        country=country,
        type=entity_type,
        identifier=identifier,
    )
