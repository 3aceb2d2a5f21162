"""
Byte-range streaming of stored objects with conditional-GET support.

Malformed or unsatisfiable ``Range`` headers fall back to the full object
with status 200 instead of answering 416.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Iterator, Mapping, Optional

from fastapi import Response
from fastapi.responses import StreamingResponse

from keepsake.blobs import BlobStore, ObjectRecord
from keepsake.errors import ObjectNotFound, ReadError

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"

# Only the first range of a multi-range header is honoured.
_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*(?:,.*)?$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteWindow:
    start: int
    end: int  # inclusive
    partial: bool

    @property
    def length(self) -> int:
        return max(self.end - self.start + 1, 0)


def parse_range(header: Optional[str], length: int) -> ByteWindow:
    full = ByteWindow(0, length - 1, False)
    if not header or length <= 0:
        return full
    match = _RANGE_PATTERN.match(header)
    if not match:
        return full
    first, last = match.groups()
    if not first and not last:
        return full
    try:
        if not first:
            suffix = int(last)
            if suffix == 0:
                return full
            return ByteWindow(max(length - suffix, 0), length - 1, True)
        start = int(first)
        end = int(last) if last else length - 1
    except ValueError:
        # Digit runs past the int conversion limit.
        return full
    if start > end or start >= length:
        return full
    return ByteWindow(start, min(end, length - 1), True)


def build_etag(record: ObjectRecord) -> str:
    stamp = int(record.upload_date.timestamp() * 1000)
    return f'"{record.object_id}-{record.length}-{stamp}"'


def last_modified(record: ObjectRecord) -> str:
    return format_datetime(record.upload_date.astimezone(timezone.utc), usegmt=True)


def is_not_modified(headers: Mapping[str, str], record: ObjectRecord, etag: str) -> bool:
    if_none_match = headers.get("if-none-match")
    # RFC 7232: If-Modified-Since is ignored when If-None-Match is present.
    if if_none_match is not None:
        tags = [tag.strip() for tag in if_none_match.split(",")]
        return "*" in tags or etag in tags or f"W/{etag}" in tags
    since = headers.get("if-modified-since")
    if not since:
        return False
    try:
        since_at = parsedate_to_datetime(since)
    except (TypeError, ValueError):
        return False
    if since_at.tzinfo is None:
        since_at = since_at.replace(tzinfo=timezone.utc)
    # HTTP dates have whole-second resolution.
    return record.upload_date.replace(microsecond=0) <= since_at


def _relay(first: bytes, rest: Iterator[bytes], record: ObjectRecord) -> Iterator[bytes]:
    try:
        if first:
            yield first
        yield from rest
    except ReadError:
        # Headers are out already; re-raising makes the server drop the
        # connection instead of finishing a short 200/206 body.
        logger.exception(
            "Stream of %s/%s failed mid-body", record.bucket, record.object_id
        )
        raise


def stream_object(
    store: BlobStore, bucket: str, object_id: str, headers: Mapping[str, str]
) -> Response:
    """Answer a GET for a stored object: 200, 206, 304, 404 or 500."""
    record = store.find_metadata(bucket, object_id)
    if record is None:
        return Response(status_code=404)

    etag = build_etag(record)
    validators = {
        "ETag": etag,
        "Last-Modified": last_modified(record),
        "Cache-Control": CACHE_CONTROL,
    }
    if is_not_modified(headers, record, etag):
        return Response(status_code=304, headers=validators)

    window = parse_range(headers.get("range"), record.length)
    response_headers = {
        **validators,
        "Content-Type": record.resolved_content_type(),
        "Accept-Ranges": "bytes",
        "Content-Length": str(window.length),
    }
    if window.partial:
        response_headers["Content-Range"] = (
            f"bytes {window.start}-{window.end}/{record.length}"
        )

    # Pull the first chunk before committing to a status line.
    try:
        body = store.open_range_read(bucket, object_id, window.start, window.end + 1)
        first = next(body, b"")
    except ObjectNotFound:
        return Response(status_code=404)
    except ReadError:
        logger.exception("Cannot start stream of %s/%s", bucket, object_id)
        return Response(status_code=500)

    return StreamingResponse(
        _relay(first, body, record),
        status_code=206 if window.partial else 200,
        headers=response_headers,
    )
