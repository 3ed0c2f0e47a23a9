"""Extraction of multipart file uploads from API Gateway events."""
import base64
import logging
from dataclasses import dataclass, field
from email import policy
from email.parser import BytesParser
from typing import Any, Dict, Optional

from processor.errors import FileTooLargeError, UploadError

logger = logging.getLogger(__name__)


@dataclass
class UploadedFile:
    """A file taken from a multipart form."""
    filename: str
    content: bytes


@dataclass
class UploadForm:
    """Text fields and files of a multipart form."""
    fields: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, UploadedFile] = field(default_factory=dict)


def get_headers(event: Dict[str, Any]) -> Dict[str, str]:
    """Return request headers with lowercase names."""
    headers = event.get('headers') or {}
    return {name.lower(): value for name, value in headers.items()}


def read_body(event: Dict[str, Any]) -> bytes:
    """Return the raw request body, undoing API Gateway base64 encoding."""
    body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        return base64.b64decode(body)
    if isinstance(body, bytes):
        return body
    return body.encode('utf-8')


def parse_multipart(content_type: str, body: bytes) -> UploadForm:
    """
    Split a multipart/form-data body into fields and files.

    Args:
        content_type: Content-Type header including the boundary
        body: Raw request body

    Returns:
        UploadForm

    Raises:
        UploadError: If the body is not a multipart message
    """
    message = BytesParser(policy=policy.HTTP).parsebytes(
        b'Content-Type: ' + content_type.encode('latin-1') + b'\r\n\r\n' + body
    )
    if not message.is_multipart():
        raise UploadError('Malformed multipart form data')

    form = UploadForm()
    for part in message.iter_parts():
        name = part.get_param('name', header='content-disposition')
        if not name:
            continue

        payload = part.get_payload(decode=True) or b''
        filename = part.get_filename()

        if filename is not None:
            form.files[name] = UploadedFile(filename=filename, content=payload)
        else:
            form.fields[name] = payload.decode('utf-8', errors='replace').strip()

    return form


def parse_upload_event(event: Dict[str, Any], max_size: int) -> UploadForm:
    """
    Validate and parse a multipart upload request.

    The declared Content-Length is checked before the body is touched, and
    the decoded body size is checked again afterwards.

    Args:
        event: API Gateway proxy event
        max_size: Maximum accepted payload in bytes

    Returns:
        UploadForm

    Raises:
        UploadError: Wrong content type or malformed body
        FileTooLargeError: Payload exceeds ``max_size``
    """
    headers = get_headers(event)
    content_type = headers.get('content-type', '')
    size_mb = max_size // (1024 * 1024)

    if 'multipart/form-data' not in content_type:
        raise UploadError('Invalid content type. File upload required.')

    declared = headers.get('content-length')
    if declared and declared.isdigit() and int(declared) > max_size:
        raise FileTooLargeError(
            f"File size exceeds maximum allowed size of {size_mb}MB"
        )

    body = read_body(event)
    if len(body) > max_size:
        raise FileTooLargeError(
            f"File size exceeds maximum allowed size of {size_mb}MB"
        )

    form = parse_multipart(content_type, body)
    logger.info(
        f"Parsed upload with fields {sorted(form.fields)} and files {sorted(form.files)}"
    )
    return form


def get_uploaded_file(form: UploadForm, field_name: str = 'import_file') -> Optional[UploadedFile]:
    """Return the named file, treating an empty file input as missing."""
    uploaded = form.files.get(field_name)
    if uploaded is None or (not uploaded.filename and not uploaded.content):
        return None
    return uploaded
