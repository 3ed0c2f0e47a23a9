"""Unit tests for format detection and the JSON, CSV and ICS parsers."""
import pytest

from ingest.file_parser import (
    CSV_FORMAT, ICS_FORMAT, JSON_FORMAT, decode_ics_datetime, detect_format,
    parse_csv_content, parse_file_content, parse_ics_content, parse_json_content
)
from processor.errors import FormatError

SAMPLE_ICS = "\r\n".join([
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "PRODID:-//Example//Calendar//EN",
    "BEGIN:VEVENT",
    "UID:1@example.com",
    "SUMMARY:Team Meeting",
    "DTSTART;TZID=America/New_York:20300615T100000",
    "DTEND;TZID=America/New_York:20300615T110000",
    "DESCRIPTION:Bring water\\, snacks",
    "  and chairs",
    "ORGANIZER;CN=Alice:mailto:alice@example.com",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "DTSTART;VALUE=DATE:20300620",
    "ORGANIZER:mailto:bob@example.com",
    "END:VEVENT",
    "END:VCALENDAR",
    ""
])


class TestDetectFormat:
    """Test cases for detect_format."""

    @pytest.mark.parametrize('filename,expected', [
        ('events.json', JSON_FORMAT),
        ('EVENTS.JSON', JSON_FORMAT),
        ('events.csv', CSV_FORMAT),
        ('events.txt', CSV_FORMAT),
        ('calendar.ics', ICS_FORMAT),
        ('calendar.ical', ICS_FORMAT),
    ])
    def test_extension_wins(self, filename, expected):
        """Test that a known extension decides the format."""
        assert detect_format(filename, b'whatever') == expected

    def test_sniffs_ics_marker(self):
        """Test that the calendar marker selects ICS without an extension."""
        assert detect_format('upload', b'BEGIN:VCALENDAR\r\nEND:VCALENDAR') == ICS_FORMAT

    def test_sniffs_json_after_whitespace_and_bom(self):
        """Test JSON detection past a BOM and leading whitespace."""
        assert detect_format('', b'\xef\xbb\xbf  \n[{"title": "x"}]') == JSON_FORMAT
        assert detect_format('data.bin', b'{"title": "x"}') == JSON_FORMAT

    def test_falls_back_to_csv(self):
        """Test that unrecognised content is treated as CSV."""
        assert detect_format('data.bin', b'title,start\nParty,2030-01-01') == CSV_FORMAT


class TestParseJson:
    """Test cases for the JSON parser."""

    def test_single_object(self):
        """Test parsing a single JSON event object."""
        records = parse_json_content('{"title": "Party", "start": "2030-01-01 10:00:00"}')
        assert records == [{'title': 'Party', 'start': '2030-01-01 10:00:00'}]

    def test_array_of_objects(self):
        """Test parsing a JSON array of event objects."""
        records = parse_json_content('[{"title": "A"}, {"title": "B", "extra": 1}]')
        assert len(records) == 2
        assert records[1]['extra'] == 1

    def test_invalid_json(self):
        """Test that malformed JSON is a format error."""
        with pytest.raises(FormatError, match='Invalid JSON format'):
            parse_json_content('{"title": ')

    def test_object_without_event_fields(self):
        """Test that an object without title and start is rejected."""
        with pytest.raises(FormatError, match='does not contain valid event data'):
            parse_json_content('{"name": "not an event"}')

    def test_scalar_document(self):
        """Test that a scalar JSON document is rejected."""
        with pytest.raises(FormatError):
            parse_json_content('42')

    def test_empty_array(self):
        """Test that an empty JSON array is rejected."""
        with pytest.raises(FormatError, match='No valid events'):
            parse_json_content('[]')

    def test_array_with_non_object(self):
        """Test that a non-object array element is rejected."""
        with pytest.raises(FormatError, match='element 1'):
            parse_json_content('[{"title": "A"}, "B"]')


class TestParseCsv:
    """Test cases for the CSV parser."""

    def test_header_synonyms_are_mapped(self):
        """Test that header synonyms map to canonical field names."""
        text = (
            "Subject,Begin,Finish,Owner,Notes,Location\n"
            "Practice,2030-01-01 10:00:00,2030-01-01 11:00:00,Alice,Bring cones,Field 2\n"
        )
        records = parse_csv_content(text)

        assert records == [{
            'title': 'Practice',
            'start': '2030-01-01 10:00:00',
            'end': '2030-01-01 11:00:00',
            'user_name': 'Alice',
            'description': 'Bring cones',
        }]

    def test_blank_rows_skipped_and_quotes_honored(self):
        """Test that blank rows are skipped and quoted commas kept."""
        text = (
            "title,start,user_name,description\n"
            "\n"
            ' , , , \n'
            'Dinner,2030-02-01 19:00,Bob,"Pasta, salad and wine"\n'
        )
        records = parse_csv_content(text)

        assert len(records) == 1
        assert records[0]['description'] == 'Pasta, salad and wine'

    def test_values_are_trimmed(self):
        """Test that headers and values are trimmed."""
        records = parse_csv_content("title , start\n  Party  , 2030-01-01 \n")
        assert records == [{'title': 'Party', 'start': '2030-01-01'}]

    def test_empty_file(self):
        """Test that an empty CSV file is rejected."""
        with pytest.raises(FormatError, match='CSV file is empty'):
            parse_csv_content('   \n')

    def test_header_only(self):
        """Test that a header with no rows is rejected."""
        with pytest.raises(FormatError, match='No valid events'):
            parse_csv_content('title,start,user_name\n')

    def test_unknown_columns_only(self):
        """Test that a file with no recognised columns is rejected."""
        with pytest.raises(FormatError):
            parse_csv_content('foo,bar\n1,2\n')


class TestParseIcs:
    """Test cases for the ICS parser."""

    def test_parses_vevents(self):
        """Test parsing two VEVENTs with folding, escapes and parameters."""
        records = parse_ics_content(SAMPLE_ICS)

        assert len(records) == 2
        first, second = records

        assert first['title'] == 'Team Meeting'
        assert first['start'] == '2030-06-15 10:00:00'
        assert first['end'] == '2030-06-15 11:00:00'
        assert first['description'] == 'Bring water, snacks and chairs'
        assert first['user_name'] == 'Alice'

        assert second['title'] == 'Imported Event'
        assert second['start'] == '2030-06-20 00:00:00'
        assert second['end'] is None
        assert second['user_name'] == 'bob@example.com'

    def test_missing_organizer_defaults_to_unknown(self):
        """Test that an event without an organizer belongs to Unknown."""
        text = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nSUMMARY:X\nDTSTART:20300101T090000Z\nEND:VEVENT\nEND:VCALENDAR\n"
        records = parse_ics_content(text)
        assert records[0]['user_name'] == 'Unknown'
        assert records[0]['start'] == '2030-01-01 09:00:00'

    def test_requires_calendar_marker(self):
        """Test that content without a VCALENDAR is rejected."""
        with pytest.raises(FormatError, match='Invalid ICS file format'):
            parse_ics_content("BEGIN:VEVENT\nSUMMARY:X\nEND:VEVENT\n")

    def test_nested_alarm_does_not_override_event_fields(self):
        """Test that VALARM properties stay out of the event record."""
        text = "\r\n".join([
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "BEGIN:VEVENT",
            "SUMMARY:Club Night",
            "DESCRIPTION:Bring shoes",
            "DTSTART:20300701T190000",
            "BEGIN:VALARM",
            "ACTION:EMAIL",
            "TRIGGER:-PT15M",
            "SUMMARY:Reminder",
            "DESCRIPTION:Alarm text",
            "END:VALARM",
            "END:VEVENT",
            "END:VCALENDAR",
            "",
        ])

        records = parse_ics_content(text)

        assert len(records) == 1
        assert records[0]['title'] == 'Club Night'
        assert records[0]['description'] == 'Bring shoes'
        assert records[0]['start'] == '2030-07-01 19:00:00'

    def test_unterminated_calendar(self):
        """Test that a calendar the parser cannot close is a format error."""
        with pytest.raises(FormatError, match='Invalid ICS file format'):
            parse_ics_content("BEGIN:VCALENDAR\nBEGIN:VEVENT\nSUMMARY:X\n")

    def test_requires_an_event(self):
        """Test that a calendar with no events is rejected."""
        with pytest.raises(FormatError, match='No valid events'):
            parse_ics_content("BEGIN:VCALENDAR\nVERSION:2.0\nEND:VCALENDAR\n")

    @pytest.mark.parametrize('value,expected', [
        ('20300615T100000Z', '2030-06-15 10:00:00'),
        ('20300615T100000', '2030-06-15 10:00:00'),
        ('20300615', '2030-06-15 00:00:00'),
        ('2030', None),
    ])
    def test_decode_ics_datetime(self, value, expected):
        """Test ICS date/time decoding with and without zone markers."""
        assert decode_ics_datetime(value) == expected


class TestParseFileContent:
    """Test cases for parse_file_content dispatch and decoding."""

    def test_strips_utf8_bom(self):
        """Test that a UTF-8 BOM is removed before parsing."""
        content = '\ufefftitle,start\nParty,2030-01-01\n'.encode('utf-8')
        records = parse_file_content(content, CSV_FORMAT)
        assert records[0]['title'] == 'Party'

    def test_rejects_non_utf8(self):
        """Test that non-UTF-8 content is a format error."""
        with pytest.raises(FormatError, match='not valid UTF-8'):
            parse_file_content(b'\xff\xfe\xfa', CSV_FORMAT)

    def test_rejects_unknown_format(self):
        """Test that an unknown format name is rejected."""
        with pytest.raises(FormatError, match='Unsupported file format'):
            parse_file_content(b'x', 'xml')
