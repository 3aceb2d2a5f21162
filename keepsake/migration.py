"""
Move videos stored inline in the ``legacy_videos`` table into the chunked
"videos" bucket.

Each migrated object carries ``metadata.legacyId`` so reruns can find and
skip it. Objects left without chunks by an interrupted run are deleted and
migrated again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from keepsake.blobs import VIDEOS_BUCKET, BlobStore, ObjectRecord, guess_content_type
from keepsake.db import LegacyVideoRow
from keepsake.errors import KeepsakeError, ObjectNotFound

logger = logging.getLogger(__name__)

FALLBACK_CONTENT_TYPE = "video/mp4"
LEGACY_ID_KEY = "legacyId"


@dataclass(frozen=True)
class LegacyVideo:
    id: str
    filename: Optional[str]
    data: Optional[bytes]
    content_type: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def target_filename(self) -> str:
        return self.filename or f"video-{self.id}.mp4"

    def target_content_type(self) -> str:
        return (
            self.content_type
            or guess_content_type(self.target_filename)
            or FALLBACK_CONTENT_TYPE
        )


@dataclass
class MigrationReport:
    processed: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


class LegacySource(Protocol):
    def count(self) -> int:
        ...

    def iter_videos(self) -> Iterator[LegacyVideo]:
        ...


class InMemoryLegacySource:
    def __init__(self, videos: Iterable[LegacyVideo] = ()):
        self.videos = list(videos)

    def count(self) -> int:
        return len(self.videos)

    def iter_videos(self) -> Iterator[LegacyVideo]:
        return iter(list(self.videos))


class SqlLegacySource:
    """Reads ``legacy_videos`` in batches so only one batch of bytes is held."""

    def __init__(self, session_factory: sessionmaker, *, batch_size: int = 20):
        self.Session = session_factory
        self.batch_size = batch_size

    def count(self) -> int:
        with self.Session() as session:
            return session.execute(
                select(func.count()).select_from(LegacyVideoRow)
            ).scalar_one()

    def iter_videos(self) -> Iterator[LegacyVideo]:
        offset = 0
        while True:
            with self.Session() as session:
                rows = (
                    session.execute(
                        select(LegacyVideoRow)
                        .order_by(LegacyVideoRow.id)
                        .offset(offset)
                        .limit(self.batch_size)
                    )
                    .scalars()
                    .all()
                )
                batch = [
                    LegacyVideo(
                        id=str(row.id),
                        filename=row.filename,
                        data=bytes(row.data) if row.data is not None else None,
                        content_type=row.content_type,
                        created_at=row.created_at,
                        updated_at=row.updated_at,
                    )
                    for row in rows
                ]
            if not batch:
                return
            yield from batch
            offset += len(batch)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def smoke_test(store: BlobStore, bucket: str) -> None:
    """Write and remove a tiny object to prove the bucket is writable."""
    record = store.upload_bytes(
        bucket,
        b"ok",
        filename=f"__smoke__{datetime.now().timestamp():.0f}.txt",
        content_type="text/plain",
        metadata={"smoke": True},
    )
    try:
        store.delete(bucket, record.object_id)
    except ObjectNotFound:
        pass
    logger.info("Smoke test against bucket %s passed", bucket)


def _repair_content_type(store: BlobStore, record: ObjectRecord, content_type: str) -> None:
    if not record.content_type:
        store.update_metadata(record.bucket, record.object_id, content_type=content_type)


def migrate_one(
    store: BlobStore,
    bucket: str,
    video: LegacyVideo,
    *,
    dry_run: bool,
    skip_existing: bool,
) -> str:
    """Migrate a single record; returns "migrated" or "skipped"."""
    if not video.data:
        logger.warning("Skipping legacy video %s: no data", video.id)
        return "skipped"

    content_type = video.target_content_type()
    if skip_existing:
        existing = store.find_by_metadata(bucket, LEGACY_ID_KEY, video.id)
        if existing is not None:
            if existing.length == 0 or store.count_chunks(bucket, existing.object_id) > 0:
                if not dry_run:
                    _repair_content_type(store, existing, content_type)
                return "skipped"
            logger.warning(
                "Object %s for legacy video %s has no chunks; migrating again",
                existing.object_id,
                video.id,
            )
            if not dry_run:
                store.delete(bucket, existing.object_id)

    if dry_run:
        return "migrated"

    record = store.upload_bytes(
        bucket,
        video.data,
        filename=video.target_filename,
        content_type=content_type,
        metadata={
            "migratedFrom": "legacy_videos",
            LEGACY_ID_KEY: video.id,
            "legacyFilename": video.filename,
            "legacyCreatedAt": _iso(video.created_at),
            "legacyUpdatedAt": _iso(video.updated_at),
        },
    )
    if store.count_chunks(bucket, record.object_id) < 1:
        raise KeepsakeError(f"Uploaded object {record.object_id} has no chunks")
    return "migrated"


def migrate_legacy_videos(
    source: LegacySource,
    store: BlobStore,
    *,
    bucket: str = VIDEOS_BUCKET,
    dry_run: bool = False,
    skip_existing: bool = True,
    log_every: int = 25,
) -> MigrationReport:
    log_every = max(1, log_every)
    total = source.count()
    logger.info(
        "Found %d legacy videos to migrate into bucket %s%s",
        total,
        bucket,
        " (dry run)" if dry_run else "",
    )
    report = MigrationReport()
    if total == 0:
        return report
    if not dry_run:
        smoke_test(store, bucket)

    for video in source.iter_videos():
        report.processed += 1
        try:
            outcome = migrate_one(
                store, bucket, video, dry_run=dry_run, skip_existing=skip_existing
            )
        except Exception:
            report.failed += 1
            logger.exception("Failed to migrate legacy video %s", video.id)
            continue
        if outcome == "migrated":
            report.migrated += 1
        else:
            report.skipped += 1
        if report.processed % log_every == 0:
            logger.info(
                "Processed %d/%d (migrated=%d, skipped=%d, failed=%d)",
                report.processed,
                total,
                report.migrated,
                report.skipped,
                report.failed,
            )

    logger.info(
        "Done. Migrated: %d, Skipped: %d, Failed: %d",
        report.migrated,
        report.skipped,
        report.failed,
    )
    return report


def fix_content_types(
    store: BlobStore, bucket: str = VIDEOS_BUCKET, *, log_every: int = 25
) -> tuple[int, int]:
    """Fill in missing content types on existing objects. Returns (scanned, fixed)."""
    scanned = fixed = 0
    for record in store.find_missing_content_type(bucket):
        scanned += 1
        guess = (
            (record.metadata or {}).get("contentType")
            or guess_content_type(record.filename)
            or FALLBACK_CONTENT_TYPE
        )
        store.update_metadata(bucket, record.object_id, content_type=guess)
        fixed += 1
        if fixed % max(1, log_every) == 0:
            logger.info("Fixed %d so far", fixed)
    logger.info("Done. Scanned: %d, Fixed: %d", scanned, fixed)
    return scanned, fixed
