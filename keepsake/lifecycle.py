"""
Keep moments and videos consistent with the blobs they point at.

Records are the source of truth. New blobs are uploaded before a record
refers to them; old blobs are released only after the record stops referring
to them, and a failed release is reported as a CleanupOutcome, never raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, BinaryIO, Iterable, Optional

from keepsake.blobs import (
    IMAGES_BUCKET,
    MOMENT_VIDEOS_BUCKET,
    VIDEOS_BUCKET,
    BlobStore,
    ObjectRecord,
)
from keepsake.db import DbClient
from keepsake.errors import NotFound, ObjectNotFound, UnsupportedMediaType, ValidationError
from keepsake.models import (
    MediaReference,
    Moment,
    MomentQuery,
    MomentType,
    parse_datetime,
    parse_id,
)

logger = logging.getLogger(__name__)

MEDIA_BUCKETS = {
    MomentType.IMAGE: IMAGES_BUCKET,
    MomentType.VIDEO: MOMENT_VIDEOS_BUCKET,
}

MAX_PAGE = 10**9


@dataclass(frozen=True)
class IncomingFile:
    """An uploaded file as handed over by the HTTP layer."""

    stream: BinaryIO
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class CleanupOutcome:
    bucket: str
    object_id: str
    deleted: bool
    error: Optional[str] = None


@dataclass
class DeleteResult:
    requested: int
    deleted: list = field(default_factory=list)
    cleanup: list[CleanupOutcome] = field(default_factory=list)


@dataclass
class Page:
    page: int
    page_size: Optional[int]
    total: int
    has_next: bool
    items: list


def classify_media(content_type: Optional[str]) -> MomentType:
    """Map an upload's MIME type to the moment type it can back."""
    kind = (content_type or "").lower()
    if kind.startswith("video/"):
        return MomentType.VIDEO
    if kind.startswith("image/"):
        return MomentType.IMAGE
    raise UnsupportedMediaType(content_type)


def release_blob(store: BlobStore, bucket: str, object_id: str) -> CleanupOutcome:
    """Best-effort delete of a blob that no record refers to any more."""
    try:
        store.delete(bucket, object_id)
    except ObjectNotFound:
        logger.info("Blob %s/%s was already gone", bucket, object_id)
        return CleanupOutcome(bucket, object_id, deleted=False, error="not found")
    except Exception as exc:
        logger.warning(
            "Could not delete blob %s/%s: %s", bucket, object_id, exc, exc_info=True
        )
        return CleanupOutcome(bucket, object_id, deleted=False, error=str(exc))
    return CleanupOutcome(bucket, object_id, deleted=True)


def parse_page(value: Any) -> int:
    try:
        page = int(value)
    except (TypeError, ValueError, OverflowError):
        return 1
    # Keeps the row offset bindable by the database.
    return min(max(page, 1), MAX_PAGE)


def parse_limit(value: Any, *, default: int, maximum: int) -> Optional[int]:
    """
    Page size for a listing, or None for "everything".

    Absent, blank and "all" mean no pagination; anything else that is not a
    positive integer falls back to ``default``. Results are capped at
    ``maximum``.
    """
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", "all"):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError, OverflowError):
        parsed = default
    if parsed <= 0:
        parsed = default
    return min(parsed, maximum)


@dataclass
class MomentInput:
    type: Optional[str] = None
    title: Optional[str] = None
    date: Optional[Any] = None
    body: Optional[str] = None
    tags: Optional[list[str]] = None
    meta: Optional[dict] = None


class MomentLifecycle:
    def __init__(
        self,
        db: DbClient,
        store: BlobStore,
        *,
        default_page_size: int = 12,
        max_page_size: int = 100,
    ):
        self.db = db
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _upload(self, file: IncomingFile, kind: MomentType) -> MediaReference:
        bucket = MEDIA_BUCKETS[kind]
        record = self.store.upload(
            bucket,
            file.stream,
            filename=file.filename,
            content_type=file.content_type,
            metadata={"kind": bucket},
        )
        return MediaReference.from_object(record)

    def release(self, media: Optional[MediaReference]) -> Optional[CleanupOutcome]:
        if media is None:
            return None
        return release_blob(self.store, media.bucket, media.object_id)

    def _save(self, moment: Moment, new_media: Optional[MediaReference]) -> None:
        try:
            self.db.save_moment(moment)
        except Exception:
            # The record never pointed at the new blob; don't leave it behind.
            self.release(new_media)
            raise

    def create(self, fields: MomentInput, file: Optional[IncomingFile] = None) -> Moment:
        title = (fields.title or "").strip()
        if not fields.type or not title or not fields.date:
            raise ValidationError("type, title, date are required")
        moment_type = MomentType.parse(fields.type)
        if moment_type is None:
            raise ValidationError(f"Unknown moment type: {fields.type}")
        date = parse_datetime(fields.date)
        tags = list(fields.tags or [])
        meta = fields.meta if isinstance(fields.meta, dict) else None

        if not moment_type.is_media:
            # Files sent along with text moments are ignored.
            moment = Moment(
                type=moment_type,
                title=title,
                date=date,
                tags=tags,
                meta=meta,
                body=fields.body if isinstance(fields.body, str) else "",
            )
            self.db.save_moment(moment)
            return moment

        if file is None:
            raise ValidationError("No media file uploaded")
        kind = classify_media(file.content_type)
        if kind != moment_type:
            raise ValidationError(
                f"A {moment_type.value} moment needs a {moment_type.value} file"
            )
        media = self._upload(file, kind)
        moment = Moment(
            type=moment_type, title=title, date=date, tags=tags, meta=meta, media=media
        )
        self._save(moment, media)
        logger.info("Created %s moment %s with blob %s", kind.value, moment.id, media.object_id)
        return moment

    def update(
        self, moment_id: Any, fields: MomentInput, file: Optional[IncomingFile] = None
    ) -> Moment:
        moment_id = parse_id(moment_id)
        existing = self.db.get_moment(moment_id)
        if existing is None:
            raise NotFound("Moment not found")

        changes: dict = {"updated_at": time.time()}
        if fields.title and fields.title.strip():
            changes["title"] = fields.title.strip()
        if fields.date:
            changes["date"] = parse_datetime(fields.date)
        if fields.tags is not None:
            changes["tags"] = list(fields.tags)
        if isinstance(fields.meta, dict):
            changes["meta"] = {**(existing.meta or {}), **fields.meta}

        requested = MomentType.parse(fields.type)
        target = requested or existing.type
        new_media: Optional[MediaReference] = None

        if file is not None and (requested is None or requested.is_media):
            kind = classify_media(file.content_type)
            if requested is not None and requested != kind:
                raise ValidationError(
                    f"A {requested.value} moment needs a {requested.value} file"
                )
            new_media = self._upload(file, kind)
            changes.update(type=kind, media=new_media, body=None)
        elif not target.is_media:
            if isinstance(fields.body, str):
                body = fields.body
            else:
                body = existing.body or ""
            changes.update(type=target, media=None, body=body)
        else:
            if existing.media is None:
                raise ValidationError("No media file uploaded")
            if existing.media.bucket != MEDIA_BUCKETS[target]:
                raise ValidationError(
                    f"Changing a moment to {target.value} requires a new file"
                )
            changes.update(type=target)

        try:
            updated = replace(existing, **changes)
        except ValidationError:
            self.release(new_media)
            raise
        self._save(updated, new_media)

        if existing.media is not None and existing.media != updated.media:
            self.release(existing.media)
        return updated

    def delete(self, moment_id: Any) -> DeleteResult:
        moment_id = parse_id(moment_id)
        moment = self.db.delete_moment(moment_id)
        if moment is None:
            raise NotFound("Moment not found")
        result = DeleteResult(requested=1, deleted=[moment])
        outcome = self.release(moment.media)
        if outcome is not None:
            result.cleanup.append(outcome)
        return result

    def delete_many(self, moment_ids: Any) -> DeleteResult:
        if not isinstance(moment_ids, list) or not moment_ids:
            raise ValidationError("Provide an array of ids")
        ids = []
        for value in moment_ids:
            try:
                ids.append(parse_id(value))
            except ValidationError:
                logger.info("Skipping invalid moment id %r", value)
        result = DeleteResult(requested=len(ids))
        result.deleted = self.db.delete_moments(ids)
        for moment in result.deleted:
            outcome = self.release(moment.media)
            if outcome is not None:
                result.cleanup.append(outcome)
        return result

    def list(
        self,
        *,
        page: Any = 1,
        limit: Any = None,
        type: Any = None,
        date_from: Any = None,
        date_to: Any = None,
        sort: Any = "desc",
    ) -> Page:
        page = parse_page(page)
        page_size = parse_limit(
            limit, default=self.default_page_size, maximum=self.max_page_size
        )
        query = MomentQuery(
            type=MomentType.parse(type),
            date_from=parse_datetime(date_from, "from") if date_from else None,
            date_to=parse_datetime(date_to, "to") if date_to else None,
            newest_first=str(sort or "desc").lower() != "asc",
        )
        total = self.db.count_moments(query)
        if page_size is None:
            items = self.db.find_moments(query)
            return Page(page=1, page_size=None, total=total, has_next=False, items=items)
        items = self.db.find_moments(query, skip=(page - 1) * page_size, limit=page_size)
        return Page(
            page=page,
            page_size=page_size,
            total=total,
            has_next=page * page_size < total,
            items=items,
        )


class VideoLibrary:
    """Videos stored directly in their own bucket; the object is the record."""

    bucket = VIDEOS_BUCKET

    def __init__(
        self, store: BlobStore, *, default_page_size: int = 12, max_page_size: int = 100
    ):
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def create(self, file: Optional[IncomingFile], filename: Optional[str] = None) -> ObjectRecord:
        if file is None:
            raise ValidationError("No video file uploaded")
        return self.store.upload(
            self.bucket,
            file.stream,
            filename=filename or file.filename,
            content_type=file.content_type,
            metadata={"contentType": file.content_type},
        )

    def get(self, video_id: Any) -> ObjectRecord:
        record = self.store.find_metadata(self.bucket, parse_id(video_id))
        if record is None:
            raise NotFound("Video not found")
        return record

    def list(self, *, page: Any = 1, limit: Any = None, sort: Any = "desc") -> Page:
        page = parse_page(page)
        page_size = parse_limit(
            limit, default=self.default_page_size, maximum=self.max_page_size
        ) or self.default_page_size
        skip = (page - 1) * page_size
        records, total = self.store.list_metadata(
            self.bucket,
            skip=skip,
            limit=page_size,
            newest_first=str(sort or "desc").lower() != "asc",
        )
        return Page(
            page=page,
            page_size=page_size,
            total=total,
            has_next=skip + len(records) < total,
            items=records,
        )

    def update(
        self,
        video_id: Any,
        *,
        filename: Optional[str] = None,
        metadata: Optional[dict] = None,
        file: Optional[IncomingFile] = None,
    ) -> tuple[ObjectRecord, Optional[CleanupOutcome]]:
        existing = self.get(video_id)
        if file is not None:
            replacement = self.create(file, filename=filename)
            outcome = release_blob(self.store, self.bucket, existing.object_id)
            return replacement, outcome
        if not filename and not (isinstance(metadata, dict) and metadata):
            raise ValidationError("Nothing to update")
        updated = self.store.update_metadata(
            self.bucket,
            existing.object_id,
            filename=filename,
            metadata=metadata if isinstance(metadata, dict) else None,
        )
        return updated, None

    def delete(self, video_id: Any) -> None:
        try:
            self.store.delete(self.bucket, parse_id(video_id))
        except ObjectNotFound as exc:
            raise NotFound("Video not found") from exc

    def delete_many(self, video_ids: Any) -> list[CleanupOutcome]:
        if not isinstance(video_ids, list) or not video_ids:
            raise ValidationError("Please provide an array of ids")
        outcomes = []
        for value in video_ids:
            try:
                object_id = parse_id(value)
            except ValidationError:
                continue
            outcomes.append(release_blob(self.store, self.bucket, object_id))
        return outcomes


def moment_media_url(moment: Moment) -> Optional[str]:
    if moment.media is None:
        return None
    return f"/moments/media/{moment.media.bucket}/{moment.media.object_id}"


def present_moment(moment: Moment, base_url: str = "") -> dict:
    """Moment as listed: media items get stream URLs and never a body."""
    data = moment.as_dict()
    url = moment_media_url(moment)
    if url is not None:
        data.pop("body", None)
        data["mediaUrl"] = url
        data["mediaUrlAbsolute"] = f"{base_url.rstrip('/')}{url}"
    return data


def coerce_tags(values: Optional[Iterable[str]]) -> Optional[list[str]]:
    if values is None:
        return None
    return [str(v).strip() for v in values if str(v).strip()]
