"""Fetches calendar files published at a URL."""
import logging
import os
import time
from urllib.parse import urlparse

import requests

from ingest.file_parser import EXTENSION_MAP
from ingest.upload import UploadedFile
from processor.errors import FileTooLargeError, UploadError

logger = logging.getLogger(__name__)


class RemoteCalendarFetcher:
    """Downloads an importable file (ICS feed, CSV or JSON export) over HTTP."""

    CONTENT_TYPE_EXTENSIONS = {
        'text/calendar': 'ics',
        'application/json': 'json',
        'text/csv': 'csv',
    }
    CHUNK_SIZE = 64 * 1024

    def __init__(self, timeout: int = 30, max_size: int = 5 * 1024 * 1024,
                 max_retries: int = 3, base_delay: float = 1):
        """
        Initialize the fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_size: Maximum accepted download size in bytes
            max_retries: Attempts before giving up
            base_delay: First backoff delay in seconds
        """
        self.timeout = timeout
        self.max_size = max_size
        self.max_retries = max_retries
        self.base_delay = base_delay

    def fetch(self, url: str) -> UploadedFile:
        """
        Download a calendar file with retry logic.

        Args:
            url: http(s) URL of the file

        Returns:
            UploadedFile named after the URL path

        Raises:
            UploadError: If the URL is not http(s)
            FileTooLargeError: If the file exceeds max_size
            requests.RequestException: If all retry attempts fail
        """
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise UploadError(f"Unsupported calendar URL: {url}")

        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Fetching calendar file (attempt {attempt + 1}/{self.max_retries})"
                )
                response = requests.get(url, timeout=self.timeout, stream=True)
                response.raise_for_status()
                content = self._read_limited(response)
                return UploadedFile(
                    filename=self._filename(parsed.path, response.headers.get('Content-Type', '')),
                    content=content
                )

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    # Calculate exponential backoff delay
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise

    def _read_limited(self, response: requests.Response) -> bytes:
        size_mb = self.max_size // (1024 * 1024)
        declared = response.headers.get('Content-Length')
        if declared and declared.isdigit() and int(declared) > self.max_size:
            raise FileTooLargeError(
                f"File size exceeds maximum allowed size of {size_mb}MB"
            )

        chunks = []
        total = 0
        for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
            total += len(chunk)
            if total > self.max_size:
                response.close()
                raise FileTooLargeError(
                    f"File size exceeds maximum allowed size of {size_mb}MB"
                )
            chunks.append(chunk)
        return b''.join(chunks)

    def _filename(self, path: str, content_type: str) -> str:
        filename = os.path.basename(path) or 'calendar'
        extension = os.path.splitext(filename.lower())[1].lstrip('.')
        if extension in EXTENSION_MAP:
            return filename

        mime = content_type.split(';')[0].strip().lower()
        if mime in self.CONTENT_TYPE_EXTENSIONS:
            return f"{filename}.{self.CONTENT_TYPE_EXTENSIONS[mime]}"
        return filename
