"""
CSV record sources.

Two source modes feed the planner:

- buffered: the whole object is loaded into memory, then split into records
- streamed: bytes arrive in chunks (local file or HTTP body) and records are
  emitted as soon as they are complete

Both run the same RecordAssembler so they yield the same record sequence
for the same bytes. A record is the text of one logical CSV row; quoted
fields may span physical lines.

Vendor exports carry a preamble above the header. `skip_lines` drops that
many physical lines (blank ones included) before any record is assembled,
so the first record a source yields is the header.

Bytes that are not valid UTF-8 are decoded to U+FFFD and the record that
contains them is rejected by parse_record(), so one bad row never aborts
the file.
"""

from __future__ import annotations

import codecs
import csv
import io
import logging
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Optional

import httpx

from catalog_sync.core.errors import MalformedRowError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

REPLACEMENT_CHAR = "\ufffd"


class RecordAssembler:
    """
    Incremental text -> CSV record splitter.

    Lines are accumulated until the number of double quotes seen is even,
    i.e. the record is not inside a quoted field. The first `skip_lines`
    physical lines are discarded unparsed.
    """

    def __init__(self, skip_lines: int = 0) -> None:
        self._pending_line = ""
        self._record_lines: list[str] = []
        self._quotes = 0
        self._skip_lines = max(0, skip_lines)

    def feed(self, text: str) -> list[str]:
        records: list[str] = []
        if not text:
            return records
        parts = (self._pending_line + text).split("\n")
        # The last part has no terminator yet and may continue in the next chunk
        self._pending_line = parts.pop()
        for line in (p + "\n" for p in parts):
            record = self._push(line)
            if record is not None:
                records.append(record)
        return records

    def close(self) -> list[str]:
        records: list[str] = []
        if self._pending_line:
            record = self._push(self._pending_line)
            self._pending_line = ""
            if record is not None:
                records.append(record)
        if self._record_lines:
            # Unbalanced quotes at EOF; hand it to the parser to reject
            records.append("".join(self._record_lines))
            self._record_lines = []
            self._quotes = 0
        return records

    def _push(self, line: str) -> Optional[str]:
        if self._skip_lines:
            self._skip_lines -= 1
            return None
        self._record_lines.append(line)
        self._quotes += line.count('"')
        if self._quotes % 2:
            return None
        record = "".join(self._record_lines)
        self._record_lines = []
        self._quotes = 0
        return record


def _is_blank(record: str) -> bool:
    return not record.strip()


def iter_buffered_records(
    content: bytes,
    skip_lines: int = 0,
    encoding: str = "utf-8-sig",
) -> Iterator[str]:
    """Split an in-memory CSV object into non-blank records."""
    assembler = RecordAssembler(skip_lines)
    text = content.decode(encoding, errors="replace")
    for record in assembler.feed(text) + assembler.close():
        if not _is_blank(record):
            yield record


async def aiter_streamed_records(
    chunks: AsyncIterable[bytes],
    skip_lines: int = 0,
    encoding: str = "utf-8-sig",
) -> AsyncIterator[str]:
    """Split a stream of byte chunks into non-blank records as they complete."""
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    assembler = RecordAssembler(skip_lines)
    async for chunk in chunks:
        for record in assembler.feed(decoder.decode(chunk)):
            if not _is_blank(record):
                yield record
    for record in assembler.feed(decoder.decode(b"", final=True)) + assembler.close():
        if not _is_blank(record):
            yield record


async def aiter_records(records: Iterable[str]) -> AsyncIterator[str]:
    """Adapt a synchronous record iterator to the async planner interface."""
    for record in records:
        yield record


# =============================================================================
# Record parsing
# =============================================================================


def parse_fields(record: str) -> list[str]:
    """Parse one record's text into its fields."""
    reader = csv.reader(io.StringIO(record), strict=True)
    try:
        return next(reader)
    except StopIteration:
        return []


def parse_header(record: str) -> list[str]:
    header = parse_fields(record)
    if not any(h.strip() for h in header):
        raise ValueError("CSV header row is empty")
    return header


def parse_record(header: list[str], record: str, index: int) -> dict[str, str]:
    """
    Parse a data record against the header.

    Short rows are padded with empty strings.

    Raises:
        MalformedRowError: invalid UTF-8, unparseable text, or more fields than headers
    """
    if REPLACEMENT_CHAR in record:
        raise MalformedRowError(index, "invalid UTF-8 byte sequence")
    try:
        fields = parse_fields(record)
    except csv.Error as e:
        raise MalformedRowError(index, str(e)) from e

    if len(fields) > len(header):
        extras = fields[len(header):]
        if any(f.strip() for f in extras):
            raise MalformedRowError(
                index, f"{len(fields)} fields for {len(header)} columns"
            )
        fields = fields[: len(header)]

    fields = fields + [""] * (len(header) - len(fields))
    return dict(zip(header, fields))


# =============================================================================
# Row counting
# =============================================================================


def count_data_rows(records: Iterable[str]) -> int:
    """Count data records; the first record is the header."""
    total = -1
    for _ in records:
        total += 1
    return max(0, total)


async def acount_data_rows(records: AsyncIterable[str]) -> int:
    total = -1
    async for _ in records:
        total += 1
    return max(0, total)


# =============================================================================
# Byte sources
# =============================================================================


def is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


async def local_file_chunks(path: Path | str, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk


async def http_stream_chunks(client: httpx.AsyncClient, url: str) -> AsyncIterator[bytes]:
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        async for chunk in response.aiter_bytes():
            yield chunk


async def load_source_bytes(source: str, client: Optional[httpx.AsyncClient] = None) -> bytes:
    """Read a whole source (local path or URL) into memory."""
    if is_url(source):
        if client is None:
            async with httpx.AsyncClient(timeout=120.0, follow_redirects=True) as own_client:
                response = await own_client.get(source)
        else:
            response = await client.get(source)
        response.raise_for_status()
        logger.info("Loaded %d bytes from %s", len(response.content), source)
        return response.content
    content = Path(source).read_bytes()
    logger.info("Loaded %d bytes from %s", len(content), source)
    return content


def stream_source_chunks(source: str, client: Optional[httpx.AsyncClient] = None) -> AsyncIterator[bytes]:
    """Chunk iterator for a local path or URL."""
    if is_url(source):
        if client is None:
            raise ValueError("Streaming a URL requires an httpx.AsyncClient")
        return http_stream_chunks(client, source)
    return local_file_chunks(source)
