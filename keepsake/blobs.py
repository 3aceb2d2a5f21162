"""
Chunked blob storage: named buckets of immutable objects split into chunks.

An object is written chunk by chunk and only becomes visible once its
metadata entry is written after the last chunk. Range reads fetch just the
chunks covering the requested window, a few at a time.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Dict, Iterator, Optional, Protocol

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from keepsake.config import DEFAULT_CHUNK_SIZE
from keepsake.db import BlobChunkRow, BlobFileRow
from keepsake.errors import (
    BlobStoreError,
    ObjectNotFound,
    ReadError,
    StorageWriteError,
    StoreUnavailable,
)
from keepsake.models import as_utc, new_id

logger = logging.getLogger(__name__)

IMAGES_BUCKET = "images"
MOMENT_VIDEOS_BUCKET = "mVideos"
VIDEOS_BUCKET = "videos"
FILES_BUCKET = "files"

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def guess_content_type(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    guessed, _ = mimetypes.guess_type(filename)
    return guessed


@dataclass(frozen=True)
class ObjectRecord:
    """Metadata entry of a stored object. Never includes the bytes."""

    object_id: str
    bucket: str
    filename: Optional[str]
    content_type: Optional[str]
    length: int
    chunk_size: int
    upload_date: datetime
    metadata: dict = field(default_factory=dict)

    @property
    def chunk_count(self) -> int:
        return -(-self.length // self.chunk_size)

    def resolved_content_type(self) -> str:
        return (
            self.content_type
            or (self.metadata or {}).get("contentType")
            or guess_content_type(self.filename)
            or DEFAULT_CONTENT_TYPE
        )

    def as_dict(self) -> dict:
        return {
            "id": self.object_id,
            "filename": self.filename,
            "length": self.length,
            "uploadDate": self.upload_date.isoformat(),
            "contentType": self.content_type,
            "metadata": dict(self.metadata or {}),
        }


class BucketHandle(Protocol):
    """Storage primitives for a single bucket."""

    name: str

    def put_chunk(self, file_id: str, n: int, data: bytes) -> None:
        ...

    def get_chunks(self, file_id: str, first: int, last: int) -> Dict[int, bytes]:
        ...

    def count_chunks(self, file_id: str) -> int:
        ...

    def discard_chunks(self, file_id: str) -> None:
        ...

    def put_file(self, record: ObjectRecord) -> None:
        ...

    def get_file(self, file_id: str) -> Optional[ObjectRecord]:
        ...

    def update_file(self, record: ObjectRecord) -> None:
        ...

    def delete_object(self, file_id: str) -> bool:
        ...

    def list_files(
        self, *, skip: int = 0, limit: Optional[int] = None, newest_first: bool = True
    ) -> list[ObjectRecord]:
        ...

    def count_files(self) -> int:
        ...

    def find_file(self, metadata_key: str, value: str) -> Optional[ObjectRecord]:
        ...

    def files_missing_content_type(self) -> list[ObjectRecord]:
        ...


class InMemoryBucket:
    """Dict-backed bucket for development and tests."""

    def __init__(self, name: str):
        self.name = name
        self.files: Dict[str, ObjectRecord] = {}
        self.chunks: Dict[tuple[str, int], bytes] = {}
        self._lock = threading.Lock()

    def put_chunk(self, file_id: str, n: int, data: bytes) -> None:
        with self._lock:
            self.chunks[(file_id, n)] = bytes(data)

    def get_chunks(self, file_id: str, first: int, last: int) -> Dict[int, bytes]:
        with self._lock:
            return {
                n: self.chunks[(file_id, n)]
                for n in range(first, last + 1)
                if (file_id, n) in self.chunks
            }

    def count_chunks(self, file_id: str) -> int:
        with self._lock:
            return sum(1 for fid, _ in self.chunks if fid == file_id)

    def discard_chunks(self, file_id: str) -> None:
        with self._lock:
            for key in [k for k in self.chunks if k[0] == file_id]:
                del self.chunks[key]

    def put_file(self, record: ObjectRecord) -> None:
        with self._lock:
            self.files[record.object_id] = record

    def get_file(self, file_id: str) -> Optional[ObjectRecord]:
        return self.files.get(file_id)

    def update_file(self, record: ObjectRecord) -> None:
        with self._lock:
            if record.object_id in self.files:
                self.files[record.object_id] = record

    def delete_object(self, file_id: str) -> bool:
        with self._lock:
            existed = self.files.pop(file_id, None) is not None
            for key in [k for k in self.chunks if k[0] == file_id]:
                del self.chunks[key]
            return existed

    def list_files(
        self, *, skip: int = 0, limit: Optional[int] = None, newest_first: bool = True
    ) -> list[ObjectRecord]:
        records = sorted(
            self.files.values(),
            key=lambda r: (r.upload_date, r.object_id),
            reverse=newest_first,
        )
        end = None if limit is None else skip + limit
        return records[skip:end]

    def count_files(self) -> int:
        return len(self.files)

    def find_file(self, metadata_key: str, value: str) -> Optional[ObjectRecord]:
        for record in self.files.values():
            if (record.metadata or {}).get(metadata_key) == value:
                return record
        return None

    def files_missing_content_type(self) -> list[ObjectRecord]:
        return [r for r in self.files.values() if not r.content_type]


class SqlBucket:
    """Bucket stored in the ``blob_files``/``blob_chunks`` tables."""

    def __init__(self, session_factory: sessionmaker, name: str):
        self.Session = session_factory
        self.name = name

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.Session() as session:
                yield session
        except SQLAlchemyError as exc:
            raise BlobStoreError(f"Bucket '{self.name}': {exc}", cause=exc) from exc

    def _to_record(self, row: BlobFileRow) -> ObjectRecord:
        return ObjectRecord(
            object_id=row.id,
            bucket=row.bucket,
            filename=row.filename,
            content_type=row.content_type,
            length=row.length,
            chunk_size=row.chunk_size,
            upload_date=as_utc(row.upload_date),
            metadata=dict(row.data or {}),
        )

    def _file_row(self, session: Session, file_id: str) -> Optional[BlobFileRow]:
        row = session.get(BlobFileRow, file_id)
        if row is None or row.bucket != self.name:
            return None
        return row

    def put_chunk(self, file_id: str, n: int, data: bytes) -> None:
        with self._session() as session:
            session.add(BlobChunkRow(file_id=file_id, n=n, data=data))
            session.commit()

    def get_chunks(self, file_id: str, first: int, last: int) -> Dict[int, bytes]:
        stmt = select(BlobChunkRow.n, BlobChunkRow.data).where(
            BlobChunkRow.file_id == file_id,
            BlobChunkRow.n >= first,
            BlobChunkRow.n <= last,
        )
        with self._session() as session:
            return {n: bytes(data) for n, data in session.execute(stmt)}

    def count_chunks(self, file_id: str) -> int:
        stmt = select(func.count()).select_from(BlobChunkRow).where(
            BlobChunkRow.file_id == file_id
        )
        with self._session() as session:
            return session.execute(stmt).scalar_one()

    def discard_chunks(self, file_id: str) -> None:
        with self._session() as session:
            session.execute(delete(BlobChunkRow).where(BlobChunkRow.file_id == file_id))
            session.commit()

    def put_file(self, record: ObjectRecord) -> None:
        with self._session() as session:
            session.add(
                BlobFileRow(
                    id=record.object_id,
                    bucket=self.name,
                    filename=record.filename,
                    content_type=record.content_type,
                    length=record.length,
                    chunk_size=record.chunk_size,
                    upload_date=record.upload_date,
                    data=dict(record.metadata or {}),
                )
            )
            session.commit()

    def get_file(self, file_id: str) -> Optional[ObjectRecord]:
        with self._session() as session:
            row = self._file_row(session, file_id)
            return self._to_record(row) if row else None

    def update_file(self, record: ObjectRecord) -> None:
        with self._session() as session:
            row = self._file_row(session, record.object_id)
            if row is None:
                return
            row.filename = record.filename
            row.content_type = record.content_type
            row.data = dict(record.metadata or {})
            session.commit()

    def delete_object(self, file_id: str) -> bool:
        # Metadata and chunks go in the same transaction.
        with self._session() as session:
            row = self._file_row(session, file_id)
            if row is None:
                return False
            session.delete(row)
            session.execute(delete(BlobChunkRow).where(BlobChunkRow.file_id == file_id))
            session.commit()
            return True

    def list_files(
        self, *, skip: int = 0, limit: Optional[int] = None, newest_first: bool = True
    ) -> list[ObjectRecord]:
        stmt = select(BlobFileRow).where(BlobFileRow.bucket == self.name)
        if newest_first:
            stmt = stmt.order_by(BlobFileRow.upload_date.desc(), BlobFileRow.id.desc())
        else:
            stmt = stmt.order_by(BlobFileRow.upload_date.asc(), BlobFileRow.id.asc())
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [self._to_record(row) for row in session.execute(stmt).scalars()]

    def count_files(self) -> int:
        stmt = select(func.count()).select_from(BlobFileRow).where(
            BlobFileRow.bucket == self.name
        )
        with self._session() as session:
            return session.execute(stmt).scalar_one()

    def find_file(self, metadata_key: str, value: str) -> Optional[ObjectRecord]:
        stmt = (
            select(BlobFileRow)
            .where(
                BlobFileRow.bucket == self.name,
                BlobFileRow.data[metadata_key].as_string() == value,
            )
            .limit(1)
        )
        with self._session() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_record(row) if row else None

    def files_missing_content_type(self) -> list[ObjectRecord]:
        stmt = select(BlobFileRow).where(
            BlobFileRow.bucket == self.name,
            or_(BlobFileRow.content_type.is_(None), BlobFileRow.content_type == ""),
        )
        with self._session() as session:
            return [self._to_record(row) for row in session.execute(stmt).scalars()]


class BucketRegistry:
    """
    Bucket name -> handle map owned by the composition root.

    A registry built without an opener stands for a store that was never
    connected: every lookup raises StoreUnavailable.
    """

    def __init__(self, opener: Optional[Callable[[str], BucketHandle]] = None):
        self._opener = opener
        self._handles: Dict[str, BucketHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def in_memory(cls) -> "BucketRegistry":
        return cls(InMemoryBucket)

    @classmethod
    def sql(cls, session_factory: sessionmaker) -> "BucketRegistry":
        return cls(lambda name: SqlBucket(session_factory, name))

    def get(self, name: str) -> BucketHandle:
        if not name:
            raise ValueError("Bucket name is required")
        if self._opener is None:
            raise StoreUnavailable("Blob store is not connected")
        with self._lock:
            handle = self._handles.get(name)
            if handle is None:
                handle = self._opener(name)
                self._handles[name] = handle
            return handle

    def names(self) -> list[str]:
        return sorted(self._handles)

    def clear(self) -> None:
        """Forget cached handles, e.g. after the connection was reset."""
        with self._lock:
            self._handles.clear()


class UploadSink:
    """
    Write side of a single upload.

    Bytes are buffered until a full chunk is available, so at most one chunk
    is held in memory. ``close`` writes the trailing chunk and then the
    metadata entry; ``abort`` removes whatever chunks were written. Used as a
    context manager, an exception inside the block aborts the upload.
    """

    def __init__(
        self,
        handle: BucketHandle,
        *,
        filename: Optional[str],
        content_type: Optional[str],
        metadata: Optional[dict],
        chunk_size: int,
    ):
        self._handle = handle
        self.object_id = new_id()
        self.filename = filename
        self.content_type = content_type
        self.metadata = dict(metadata or {})
        self.chunk_size = chunk_size
        self.record: Optional[ObjectRecord] = None
        self._buffer = bytearray()
        self._next_n = 0
        self._length = 0
        self._state = "open"

    def _fail(self, exc: Exception) -> StorageWriteError:
        logger.error(
            "Upload of %s to bucket %s failed", self.filename, self._handle.name,
            exc_info=exc,
        )
        self.abort()
        return StorageWriteError(self._handle.name, self.filename, exc)

    def _flush(self, data: bytes) -> None:
        try:
            self._handle.put_chunk(self.object_id, self._next_n, data)
        except Exception as exc:
            raise self._fail(exc) from exc
        self._next_n += 1

    def write(self, data: bytes) -> int:
        if self._state != "open":
            raise StorageWriteError(self._handle.name, self.filename)
        self._buffer.extend(data)
        self._length += len(data)
        while len(self._buffer) >= self.chunk_size:
            self._flush(bytes(self._buffer[: self.chunk_size]))
            del self._buffer[: self.chunk_size]
        return len(data)

    def close(self) -> ObjectRecord:
        if self._state == "closed":
            return self.record
        if self._state != "open":
            raise StorageWriteError(self._handle.name, self.filename)
        if self._buffer:
            self._flush(bytes(self._buffer))
            self._buffer.clear()
        record = ObjectRecord(
            object_id=self.object_id,
            bucket=self._handle.name,
            filename=self.filename,
            content_type=self.content_type,
            length=self._length,
            chunk_size=self.chunk_size,
            upload_date=datetime.now(timezone.utc),
            metadata=self.metadata,
        )
        try:
            self._handle.put_file(record)
        except Exception as exc:
            raise self._fail(exc) from exc
        self._state = "closed"
        self.record = record
        return record

    def abort(self) -> None:
        if self._state != "open":
            return
        self._state = "aborted"
        self._buffer.clear()
        try:
            self._handle.discard_chunks(self.object_id)
        except Exception:
            logger.warning(
                "Could not discard chunks of aborted upload %s", self.object_id,
                exc_info=True,
            )

    def __enter__(self) -> "UploadSink":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.abort()
        else:
            self.close()
        return False


class BlobStore:
    """Upload, read, list and delete objects across the registry's buckets."""

    def __init__(
        self,
        registry: BucketRegistry,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        read_batch: int = 4,
    ):
        if chunk_size <= 0 or read_batch <= 0:
            raise ValueError("chunk_size and read_batch must be positive")
        self.registry = registry
        self.chunk_size = chunk_size
        self.read_batch = read_batch

    def open_upload(
        self,
        bucket: str,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> UploadSink:
        return UploadSink(
            self.registry.get(bucket),
            filename=filename,
            content_type=content_type,
            metadata=metadata,
            chunk_size=self.chunk_size,
        )

    def upload(
        self,
        bucket: str,
        stream: BinaryIO,
        *,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ObjectRecord:
        """Pump a binary stream into a new object and return its record."""
        with self.open_upload(bucket, filename, content_type, metadata) as sink:
            while True:
                try:
                    data = stream.read(self.chunk_size)
                except OSError as exc:
                    raise StorageWriteError(bucket, filename, exc) from exc
                if not data:
                    break
                sink.write(data)
        return sink.record

    def upload_bytes(self, bucket: str, data: bytes, **kwargs) -> ObjectRecord:
        return self.upload(bucket, io.BytesIO(data), **kwargs)

    def find_metadata(self, bucket: str, object_id: str) -> Optional[ObjectRecord]:
        return self.registry.get(bucket).get_file(object_id)

    def require_metadata(self, bucket: str, object_id: str) -> ObjectRecord:
        record = self.find_metadata(bucket, object_id)
        if record is None:
            raise ObjectNotFound(bucket, object_id)
        return record

    def open_range_read(
        self,
        bucket: str,
        object_id: str,
        start: int = 0,
        end: Optional[int] = None,
    ) -> Iterator[bytes]:
        """
        Return an iterator over bytes ``[start, end)`` of the object.

        The metadata lookup happens immediately, so a missing object raises
        ObjectNotFound here rather than on first iteration. Missing or
        wrongly sized chunks raise ReadError from the iterator.
        """
        handle = self.registry.get(bucket)
        record = handle.get_file(object_id)
        if record is None:
            raise ObjectNotFound(bucket, object_id)
        if end is None:
            end = record.length
        if start < 0 or end > record.length or start > end:
            raise ValueError(
                f"Invalid window [{start}, {end}) for object of length {record.length}"
            )
        return self._iter_window(handle, record, start, end)

    def _iter_window(
        self, handle: BucketHandle, record: ObjectRecord, start: int, end: int
    ) -> Iterator[bytes]:
        if start == end:
            return
        size = record.chunk_size
        first = start // size
        last = (end - 1) // size
        n = first
        while n <= last:
            batch_last = min(last, n + self.read_batch - 1)
            try:
                chunks = handle.get_chunks(record.object_id, n, batch_last)
            except BlobStoreError as exc:
                raise ReadError(record.bucket, record.object_id, str(exc)) from exc
            for i in range(n, batch_last + 1):
                data = chunks.get(i)
                if data is None:
                    raise ReadError(record.bucket, record.object_id, f"chunk {i} is missing")
                expected = min(size, record.length - i * size)
                if len(data) != expected:
                    raise ReadError(
                        record.bucket,
                        record.object_id,
                        f"chunk {i} holds {len(data)} bytes, expected {expected}",
                    )
                offset = i * size
                yield data[max(start - offset, 0) : min(end - offset, expected)]
            n = batch_last + 1

    def read_bytes(self, bucket: str, object_id: str) -> bytes:
        return b"".join(self.open_range_read(bucket, object_id))

    def delete(self, bucket: str, object_id: str) -> None:
        if not self.registry.get(bucket).delete_object(object_id):
            raise ObjectNotFound(bucket, object_id)

    def list_metadata(
        self,
        bucket: str,
        *,
        skip: int = 0,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> tuple[list[ObjectRecord], int]:
        handle = self.registry.get(bucket)
        records = handle.list_files(skip=skip, limit=limit, newest_first=newest_first)
        return records, handle.count_files()

    def count(self, bucket: str) -> int:
        return self.registry.get(bucket).count_files()

    def update_metadata(
        self,
        bucket: str,
        object_id: str,
        *,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ObjectRecord:
        """Change descriptive fields only; the bytes are never touched."""
        handle = self.registry.get(bucket)
        record = handle.get_file(object_id)
        if record is None:
            raise ObjectNotFound(bucket, object_id)
        updated = replace(
            record,
            filename=filename or record.filename,
            content_type=content_type or record.content_type,
            metadata={**(record.metadata or {}), **(metadata or {})},
        )
        handle.update_file(updated)
        return updated

    def find_by_metadata(self, bucket: str, key: str, value: str) -> Optional[ObjectRecord]:
        return self.registry.get(bucket).find_file(key, value)

    def find_missing_content_type(self, bucket: str) -> list[ObjectRecord]:
        return self.registry.get(bucket).files_missing_content_type()

    def count_chunks(self, bucket: str, object_id: str) -> int:
        return self.registry.get(bucket).count_chunks(object_id)
