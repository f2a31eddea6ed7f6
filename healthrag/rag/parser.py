"""Health export parsing and record formatting.

This module turns the text of an exported health file (Apple Health
``export.xml``, or the JSON/CSV variants accepted by the import flow)
into validated ``Record`` values, and renders records as the text lines
that are embedded and shown to the chat model.
"""

import csv
import io
import json
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any

from pydantic import ValidationError as SchemaError

from healthrag.exceptions import ParseError, ValidationError
from healthrag.models import Record

logger = logging.getLogger(__name__)

ROOT_TAG = "HealthData"
RECORD_TAG = "Record"

_TYPE_PREFIX_RE = re.compile(
    r"^(?:HKQuantity|HKCategory|HKCorrelation|HKWorkout)TypeIdentifier"
)
_CAPITAL_RE = re.compile(r"([A-Z])")

# Export attribute / column name -> Record field
_FIELD_ALIASES = {
    "type": "type",
    "value": "value",
    "unit": "unit",
    "startDate": "start_date",
    "start_date": "start_date",
    "endDate": "end_date",
    "end_date": "end_date",
    "sourceName": "source_name",
    "source_name": "source_name",
    "sourceVersion": "source_version",
    "source_version": "source_version",
    "device": "device",
    "creationDate": "creation_date",
    "creation_date": "creation_date",
}


def format_health_type(type_identifier: str) -> str:
    """Convert an Apple Health type identifier to readable words.

    Examples:
        HKQuantityTypeIdentifierHeartRate -> heart rate
        HKCategoryTypeIdentifierSleepAnalysis -> sleep analysis
        HKQuantityTypeIdentifierDistanceWalkingRunning -> distance walking running
    """
    name = _TYPE_PREFIX_RE.sub("", type_identifier)
    return _CAPITAL_RE.sub(r" \1", name).strip().lower()


def format_record(record: Record, include_device: bool = True) -> str:
    """Render a record as one line of embedding input.

    Args:
        record: Record to render.
        include_device: Append the ``on <device>`` clause.

    Returns:
        ``"<type>: <value> <unit> recorded from <start> to <end> via <source>
        on <device>"``.
    """
    health_type = format_health_type(record.type)
    unit = record.unit or ""
    end_date = record.end_date or record.start_date
    source = record.source_name or "Unknown Source"
    line = (
        f"{health_type}: {record.value} {unit} recorded from "
        f"{record.start_date} to {end_date} via {source}"
    )
    if include_device:
        line += f" on {record.device or 'Unknown Device'}"
    return line


def _normalize_fields(raw: dict[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in raw.items():
        if key is None:
            continue
        field = _FIELD_ALIASES.get(key.lstrip("@_"))
        if field is None or value is None:
            continue
        data[field] = value.strip() if isinstance(value, str) else value
    return data


def _build_record(raw: dict[str, Any], position: int, strict: bool) -> Record | None:
    """Validate one raw record.

    Returns None for an invalid record unless ``strict`` is set, in which
    case the whole parse fails.
    """
    data = _normalize_fields(raw)
    try:
        return Record.model_validate(data)
    except SchemaError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
            for err in e.errors()
        ]
        message = f"Invalid record at position {position}: {'; '.join(problems)}"
        if strict:
            raise ValidationError(message, errors=problems) from e
        logger.warning(f"Skipping {message}")
        return None


def _collect(raw_records: list[dict[str, Any]], strict: bool) -> list[Record]:
    records: list[Record] = []
    for position, raw in enumerate(raw_records):
        record = _build_record(raw, position, strict)
        if record is not None:
            records.append(record)
    if raw_records and not records:
        raise ParseError(
            f"No valid records found: all {len(raw_records)} records were invalid"
        )
    skipped = len(raw_records) - len(records)
    if skipped:
        logger.warning(f"Skipped {skipped} of {len(raw_records)} invalid records")
    return records


def _require_content(text: str, kind: str) -> None:
    if not text or not text.strip():
        raise ParseError(f"Empty {kind} content provided")


def decode_export(data: bytes, source: str, encoding: str = "utf-8") -> str:
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as e:
        raise ParseError(f"{source} is not valid {encoding} text: {e}") from e


def parse_health_xml(xml_content: str, strict: bool = False) -> list[Record]:
    """Parse an Apple Health XML export.

    Only ``Record`` elements directly under the ``HealthData`` root are
    read; correlations and workouts are ignored.

    Args:
        xml_content: Raw XML text.
        strict: Fail on the first invalid record instead of skipping it.

    Returns:
        Records in document order.

    Raises:
        ParseError: Empty input, malformed XML or missing
            ``HealthData``/``Record`` structure.
        ValidationError: ``strict`` is set and a record is invalid.
    """
    _require_content(xml_content, "XML")
    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise ParseError(f"XML parsing failed: {e}") from e

    elements = root.findall(RECORD_TAG) if root.tag == ROOT_TAG else []
    if not elements:
        raise ParseError(
            "Invalid Apple Health XML: Missing HealthData.Record structure"
        )
    return _collect([dict(el.attrib) for el in elements], strict)


def parse_health_json(json_content: str, strict: bool = False) -> list[Record]:
    """Parse a JSON export: an array of record objects.

    A single record object, or an object wrapping the array under
    ``records``/``Record``, is accepted as well.
    """
    _require_content(json_content, "JSON")
    try:
        data = json.loads(json_content)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON format: {e}") from e

    if isinstance(data, dict):
        wrapped = data.get("records", data.get(RECORD_TAG))
        if isinstance(wrapped, list):
            data = wrapped
        elif "type" in data:
            data = [data]
    if not isinstance(data, list) or not data:
        raise ParseError("Invalid JSON export: expected a non-empty list of records")
    if not all(isinstance(item, dict) for item in data):
        raise ParseError("Invalid JSON export: every record must be an object")
    return _collect(data, strict)


def parse_health_csv(csv_content: str, strict: bool = False) -> list[Record]:
    """Parse a CSV export with a header row.

    Rows whose column count differs from the header are skipped.
    """
    _require_content(csv_content, "CSV")
    lines = [line for line in csv_content.splitlines() if line.strip()]
    if len(lines) < 2:
        raise ParseError("CSV file must have headers and at least one data row")

    reader = csv.DictReader(io.StringIO("\n".join(lines)), skipinitialspace=True)
    if "type" not in (reader.fieldnames or []):
        raise ParseError("CSV header must contain a 'type' column")

    rows: list[dict[str, Any]] = []
    for line_no, row in enumerate(reader, start=2):
        if None in row or any(v is None for v in row.values()):
            logger.warning(f"Skipping malformed CSV row {line_no}")
            continue
        rows.append(row)
    if not rows:
        raise ParseError("CSV file has no well-formed data rows")
    return _collect(rows, strict)


_PARSERS = {
    ".xml": parse_health_xml,
    ".json": parse_health_json,
    ".csv": parse_health_csv,
}


def parse_export(content: str, filename: str = "export.xml", strict: bool = False) -> list[Record]:
    """Parse an export, choosing the format from the file extension.

    Raises:
        ParseError: Unsupported extension or invalid content.
    """
    extension = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    parser = _PARSERS.get(extension)
    if parser is None:
        raise ParseError(f"Unsupported file format: {extension or filename}")
    records = parser(content, strict=strict)
    logger.info(f"Parsed {len(records)} health records from {filename}")
    return records
