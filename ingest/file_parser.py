"""Format detection and parsing of uploaded calendar files."""
import csv
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from icalendar import Calendar, Event as ICalEvent

from processor.errors import FormatError

logger = logging.getLogger(__name__)

JSON_FORMAT = 'json'
CSV_FORMAT = 'csv'
ICS_FORMAT = 'ics'

SUPPORTED_FORMATS = (JSON_FORMAT, CSV_FORMAT, ICS_FORMAT)

EXTENSION_MAP = {
    'json': JSON_FORMAT,
    'csv': CSV_FORMAT,
    'txt': CSV_FORMAT,
    'ics': ICS_FORMAT,
    'ical': ICS_FORMAT,
}

SNIFF_BYTES = 1024

# Canonical field name -> accepted CSV header names (lowercase)
HEADER_SYNONYMS = {
    'title': ['title', 'name', 'subject', 'event'],
    'start': ['start', 'start_date', 'start_datetime', 'begin'],
    'end': ['end', 'end_date', 'end_datetime', 'finish'],
    'user_name': ['user', 'user_name', 'owner', 'created_by'],
    'description': ['description', 'notes', 'details'],
    'color': ['color', 'colour'],
}

_HEADER_LOOKUP = {
    synonym: field_name
    for field_name, synonyms in HEADER_SYNONYMS.items()
    for synonym in synonyms
}

ICS_CALENDAR_MARKER = 'BEGIN:VCALENDAR'


def detect_format(filename: str, content: bytes) -> str:
    """
    Detect the file format from its extension, falling back to content sniffing.

    Args:
        filename: Original file name (may be empty)
        content: Raw file bytes

    Returns:
        One of 'json', 'csv' or 'ics'
    """
    extension = os.path.splitext((filename or '').lower())[1].lstrip('.')
    if extension in EXTENSION_MAP:
        return EXTENSION_MAP[extension]

    head = content[:SNIFF_BYTES]
    if ICS_CALENDAR_MARKER.encode('ascii') in head:
        return ICS_FORMAT

    stripped = head.lstrip(b'\xef\xbb\xbf \t\r\n')
    if stripped[:1] in (b'{', b'['):
        return JSON_FORMAT

    return CSV_FORMAT


def parse_file_content(content: bytes, file_format: str) -> List[Dict[str, Any]]:
    """
    Parse raw file content into loosely-typed event records.

    Args:
        content: Raw file bytes
        file_format: Format returned by detect_format

    Returns:
        List of raw record dictionaries (not validated)

    Raises:
        FormatError: If the content cannot be parsed or holds no events
    """
    parsers = {
        JSON_FORMAT: parse_json_content,
        CSV_FORMAT: parse_csv_content,
        ICS_FORMAT: parse_ics_content,
    }
    if file_format not in parsers:
        raise FormatError(f"Unsupported file format: {file_format}")

    text = _decode(content)
    records = parsers[file_format](text)
    logger.info(f"Parsed {len(records)} records from {file_format} content")
    return records


def _decode(content: bytes) -> str:
    try:
        return content.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        raise FormatError(f"File is not valid UTF-8 text: {e}") from e


def parse_json_content(text: str) -> List[Dict[str, Any]]:
    """Parse a single event object or an array of event objects."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise FormatError(f"Invalid JSON format: {e.msg}") from e

    if isinstance(data, dict):
        if 'title' in data and 'start' in data:
            return [data]
        raise FormatError('JSON does not contain valid event data')

    if isinstance(data, list):
        if not data:
            raise FormatError('No valid events found in JSON file')
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                raise FormatError(
                    f"JSON array element {index} is not an event object"
                )
        return data

    raise FormatError('JSON does not contain valid event data')


def parse_csv_content(text: str) -> List[Dict[str, Any]]:
    """Parse delimited text with a header row mapped through HEADER_SYNONYMS."""
    lines = text.strip().splitlines()
    if not lines:
        raise FormatError('CSV file is empty')

    rows = csv.reader(lines)
    headers = next(rows)

    field_map = {}
    for index, header in enumerate(headers):
        field_name = _HEADER_LOOKUP.get(header.strip().lower())
        if field_name:
            field_map[index] = field_name

    records = []
    for row in rows:
        if not any(value.strip() for value in row):
            continue

        record = {}
        for index, value in enumerate(row):
            if index in field_map:
                record[field_map[index]] = value.strip()

        if record:
            records.append(record)

    if not records:
        raise FormatError('No valid events found in CSV file')

    return records


def parse_ics_content(text: str) -> List[Dict[str, Any]]:
    """
    Parse the VEVENT components of an iCalendar file.

    Properties of nested components such as VALARM belong to those
    components and never leak into the event record.
    """
    if ICS_CALENDAR_MARKER not in text:
        raise FormatError('Invalid ICS file format')

    try:
        calendar = Calendar.from_ical(text)
    except ValueError as e:
        raise FormatError(f"Invalid ICS file format: {e}") from e

    records = [_ics_to_record(component) for component in calendar.walk('VEVENT')]

    if not records:
        raise FormatError('No valid events found in ICS file')

    return records


def _ics_text(component: ICalEvent, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    return str(value)


def _ics_datetime(component: ICalEvent, name: str) -> Optional[str]:
    # Decode the wire value so zone markers are dropped, not converted
    prop = component.get(name)
    if prop is None:
        return None
    return decode_ics_datetime(prop.to_ical().decode('utf-8'))


def _ics_organizer_name(component: ICalEvent) -> str:
    organizer = component.get('ORGANIZER')
    if organizer is None:
        return 'Unknown'

    params = getattr(organizer, 'params', {})
    if params.get('CN'):
        return str(params['CN'])

    address = str(organizer)
    if address.lower().startswith('mailto:'):
        address = address[len('mailto:'):]
    return address or 'Unknown'


def _ics_to_record(component: ICalEvent) -> Dict[str, Any]:
    record = {
        'title': _ics_text(component, 'SUMMARY') or 'Imported Event',
        'start': _ics_datetime(component, 'DTSTART'),
        'end': _ics_datetime(component, 'DTEND'),
        'description': _ics_text(component, 'DESCRIPTION'),
        'user_name': _ics_organizer_name(component),
    }
    color = _ics_text(component, 'COLOR')
    if color:
        record['color'] = color
    return record


def decode_ics_datetime(value: str) -> Optional[str]:
    """
    Decode an iCalendar date/time into canonical form.

    Timezone markers are discarded rather than converted.

    Args:
        value: ICS value such as 20250615T100000Z or 20250615

    Returns:
        'YYYY-MM-DD HH:MM:SS' string, or None if the value is too short
    """
    digits = re.sub(r'[TZ]', '', value.strip().upper())

    if len(digits) >= 14:
        return (
            f"{digits[0:4]}-{digits[4:6]}-{digits[6:8]} "
            f"{digits[8:10]}:{digits[10:12]}:{digits[12:14]}"
        )

    if len(digits) == 8:
        return f"{digits[0:4]}-{digits[4:6]}-{digits[6:8]} 00:00:00"

    return None
