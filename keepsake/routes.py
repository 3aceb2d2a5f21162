"""
HTTP routes: moments, videos, poems, gallery, home cards and counts.

All mutating endpoints are POST, as the existing clients expect. Handlers are
plain ``def`` functions so storage I/O runs in the threadpool.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile

from keepsake.blobs import FILES_BUCKET, IMAGES_BUCKET, MOMENT_VIDEOS_BUCKET, BlobStore
from keepsake.config import Settings
from keepsake.db import DbClient
from keepsake.dependencies import (
    get_blob_store,
    get_db_client,
    get_moments,
    get_settings_for_request,
    get_videos,
)
from keepsake.errors import NotFound, ValidationError
from keepsake.lifecycle import (
    IncomingFile,
    MomentInput,
    MomentLifecycle,
    VideoLibrary,
    coerce_tags,
    present_moment,
)
from keepsake.models import GalleryImage, HomeCard, MomentQuery, Poem, parse_id
from keepsake.schemas import (
    CountsResponse,
    DataResponse,
    GalleryCreateRequest,
    GalleryListRequest,
    GalleryListResponse,
    GalleryUpdateRequest,
    HomeCardCreateRequest,
    IdRequest,
    IdsRequest,
    MessageResponse,
    MomentListRequest,
    PageResponse,
    PoemCreateRequest,
    PoemUpdateRequest,
    VideoFileResponse,
    VideoListRequest,
)
from keepsake.streaming import stream_object

logger = logging.getLogger(__name__)

router = APIRouter()

STREAMABLE_BUCKETS = {IMAGES_BUCKET, MOMENT_VIDEOS_BUCKET, FILES_BUCKET}


def _incoming(upload: Optional[UploadFile]) -> Optional[IncomingFile]:
    # Browsers send an empty part with no filename when nothing was chosen.
    if upload is None or not upload.filename:
        return None
    return IncomingFile(
        stream=upload.file, filename=upload.filename, content_type=upload.content_type
    )


def _form_tags(values: Optional[list[str]]) -> Optional[list[str]]:
    """Accept repeated ``tags`` fields or a single JSON array."""
    if values is None:
        return None
    if len(values) == 1 and values[0].strip().startswith("["):
        try:
            parsed = json.loads(values[0])
        except json.JSONDecodeError as exc:
            raise ValidationError("tags must be a JSON array", cause=exc) from exc
        if not isinstance(parsed, list):
            raise ValidationError("tags must be a JSON array")
        return coerce_tags(parsed)
    return coerce_tags(values)


def _form_meta(value: Optional[str]) -> Optional[dict]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError("meta must be a JSON object", cause=exc) from exc
    return parsed if isinstance(parsed, dict) else None


def _base_url(request: Request, settings: Settings) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("host") or request.url.netloc
    return f"{proto.split(',')[0].strip()}://{host}{settings.api_prefix}"


# Moments


@router.post("/moments/create", response_model=DataResponse, status_code=201)
def create_moment(
    request: Request,
    type: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    date: Optional[str] = Form(None),
    body: Optional[str] = Form(None),
    tags: Optional[list[str]] = Form(None),
    meta: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    moments: MomentLifecycle = Depends(get_moments),
    settings: Settings = Depends(get_settings_for_request),
):
    fields = MomentInput(
        type=type,
        title=title,
        date=date,
        body=body,
        tags=_form_tags(tags),
        meta=_form_meta(meta),
    )
    moment = moments.create(fields, _incoming(file))
    return DataResponse(data=present_moment(moment, _base_url(request, settings)))


@router.post("/moments/list", response_model=PageResponse)
def list_moments(
    request: Request,
    payload: Optional[MomentListRequest] = None,
    moments: MomentLifecycle = Depends(get_moments),
    settings: Settings = Depends(get_settings_for_request),
):
    payload = payload or MomentListRequest()
    page = moments.list(
        page=payload.page,
        limit=payload.limit,
        type=payload.type,
        date_from=payload.date_from,
        date_to=payload.date_to,
        sort=payload.sort,
    )
    base = _base_url(request, settings)
    return PageResponse(
        page=page.page,
        pageSize=len(page.items),
        total=page.total,
        hasNext=page.has_next,
        data=[present_moment(m, base) for m in page.items],
    )


@router.post("/moments/update", response_model=DataResponse)
def update_moment(
    request: Request,
    id: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    date: Optional[str] = Form(None),
    body: Optional[str] = Form(None),
    tags: Optional[list[str]] = Form(None),
    meta: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    moments: MomentLifecycle = Depends(get_moments),
    settings: Settings = Depends(get_settings_for_request),
):
    fields = MomentInput(
        type=type,
        title=title,
        date=date,
        body=body,
        tags=_form_tags(tags),
        meta=_form_meta(meta),
    )
    moment = moments.update(id, fields, _incoming(file))
    return DataResponse(data=present_moment(moment, _base_url(request, settings)))


@router.post("/moments/delete", response_model=MessageResponse)
def delete_moment(payload: IdRequest, moments: MomentLifecycle = Depends(get_moments)):
    moments.delete(payload.id)
    return MessageResponse(message="Moment deleted")


@router.post("/moments/deleteMany", response_model=MessageResponse)
def delete_many_moments(
    payload: IdsRequest, moments: MomentLifecycle = Depends(get_moments)
):
    result = moments.delete_many(payload.ids)
    return MessageResponse(message="Moments deleted", count=result.requested)


@router.get("/moments/media/{bucket}/{object_id}")
def stream_moment_media(
    bucket: str,
    object_id: str,
    request: Request,
    blobs: BlobStore = Depends(get_blob_store),
):
    if bucket not in STREAMABLE_BUCKETS:
        return Response(status_code=400)
    try:
        object_id = parse_id(object_id, "file id")
    except ValidationError:
        return Response(status_code=400)
    return stream_object(blobs, bucket, object_id, request.headers)


# Videos


@router.post("/videos/create", response_model=VideoFileResponse, status_code=201)
def create_video(
    video: Optional[UploadFile] = File(None),
    filename: Optional[str] = Form(None),
    videos: VideoLibrary = Depends(get_videos),
):
    record = videos.create(_incoming(video), filename=filename)
    return VideoFileResponse(message="Video uploaded successfully", file=record.as_dict())


@router.post("/videos/list", response_model=PageResponse)
def list_videos(
    payload: Optional[VideoListRequest] = None,
    videos: VideoLibrary = Depends(get_videos),
):
    payload = payload or VideoListRequest()
    page = videos.list(page=payload.page, limit=payload.limit, sort=payload.sort)
    return PageResponse(
        page=page.page,
        pageSize=len(page.items),
        total=page.total,
        hasNext=page.has_next,
        data=[record.as_dict() for record in page.items],
    )


@router.get("/videos/stream/{video_id}")
def stream_video(
    video_id: str,
    request: Request,
    blobs: BlobStore = Depends(get_blob_store),
    videos: VideoLibrary = Depends(get_videos),
):
    try:
        video_id = parse_id(video_id)
    except ValidationError:
        return Response(status_code=400)
    return stream_object(blobs, videos.bucket, video_id, request.headers)


@router.post("/videos/update", response_model=VideoFileResponse)
def update_video(
    id: Optional[str] = Form(None),
    filename: Optional[str] = Form(None),
    metadata: Optional[str] = Form(None),
    video: Optional[UploadFile] = File(None),
    videos: VideoLibrary = Depends(get_videos),
):
    incoming = _incoming(video)
    record, _ = videos.update(
        id, filename=filename, metadata=_form_meta(metadata), file=incoming
    )
    message = (
        "Video content replaced successfully" if incoming else "Video updated successfully"
    )
    return VideoFileResponse(message=message, file=record.as_dict())


@router.post("/videos/delete", response_model=MessageResponse)
def delete_video(payload: IdRequest, videos: VideoLibrary = Depends(get_videos)):
    videos.delete(payload.id)
    return MessageResponse(message="Video deleted successfully")


@router.post("/videos/deleteMany", response_model=MessageResponse)
def delete_many_videos(payload: IdsRequest, videos: VideoLibrary = Depends(get_videos)):
    outcomes = videos.delete_many(payload.ids)
    return MessageResponse(
        message="Videos deleted successfully",
        count=sum(1 for outcome in outcomes if outcome.deleted),
    )


# Poems


@router.post("/poems/list", response_model=DataResponse)
def list_poems(db: DbClient = Depends(get_db_client)):
    return DataResponse(
        message="Poems fetched successfully",
        data=[poem.as_dict() for poem in db.list_poems()],
    )


@router.post("/poems/create", response_model=DataResponse, status_code=201)
def create_poem(payload: PoemCreateRequest, db: DbClient = Depends(get_db_client)):
    poem = Poem(title=payload.title or "", lines=payload.lines or [])
    db.save_poem(poem)
    return DataResponse(message="Poem created successfully", data=poem.as_dict())


@router.post("/poems/update", response_model=DataResponse)
def update_poem(payload: PoemUpdateRequest, db: DbClient = Depends(get_db_client)):
    if not payload.id:
        raise ValidationError("Poem ID required")
    existing = db.get_poem(parse_id(payload.id))
    if existing is None:
        raise NotFound("Poem not found")
    poem = Poem(
        id=existing.id,
        created_at=existing.created_at,
        title=payload.title if payload.title is not None else existing.title,
        lines=payload.lines if payload.lines is not None else existing.lines,
    )
    db.save_poem(poem)
    return DataResponse(message="Poem updated successfully", data=poem.as_dict())


@router.post("/poems/delete", response_model=MessageResponse)
def delete_poem(payload: IdRequest, db: DbClient = Depends(get_db_client)):
    if not payload.id:
        raise ValidationError("Poem ID required")
    if db.delete_poem(parse_id(payload.id)) is None:
        raise NotFound("Poem not found")
    return MessageResponse(message="Poem deleted successfully")


@router.post("/poems/deleteMany", response_model=MessageResponse)
def delete_many_poems(payload: IdsRequest, db: DbClient = Depends(get_db_client)):
    if not payload.ids:
        raise ValidationError("IDs array required")
    count = db.delete_poems(_valid_ids(payload.ids))
    return MessageResponse(message="Poems deleted successfully", count=count)


def _valid_ids(values: list[Any]) -> list[str]:
    ids = []
    for value in values:
        try:
            ids.append(parse_id(value))
        except ValidationError:
            continue
    return ids


# Gallery


@router.post("/gallery/list", response_model=GalleryListResponse)
def list_gallery(
    payload: Optional[GalleryListRequest] = None, db: DbClient = Depends(get_db_client)
):
    limit = None
    if payload is not None and payload.limit is not None:
        try:
            limit = int(payload.limit)
        except (TypeError, ValueError):
            limit = None
    images = db.list_gallery(limit if limit and limit > 0 else None)
    return GalleryListResponse(count=len(images), data=[i.as_dict() for i in images])


@router.post("/gallery/create", response_model=DataResponse)
def create_gallery_image(
    payload: GalleryCreateRequest, db: DbClient = Depends(get_db_client)
):
    image = GalleryImage(
        src=payload.src or "", title=payload.title or "", caption=payload.caption or ""
    )
    db.save_gallery_image(image)
    return DataResponse(data=image.as_dict())


@router.post("/gallery/update", response_model=DataResponse)
def update_gallery_image(
    payload: GalleryUpdateRequest, db: DbClient = Depends(get_db_client)
):
    existing = db.get_gallery_image(parse_id(payload.id))
    if existing is None:
        raise NotFound("Image not found")
    image = GalleryImage(
        id=existing.id,
        created_at=existing.created_at,
        src=payload.src or existing.src,
        title=payload.title or existing.title,
        caption=payload.caption or existing.caption,
    )
    db.save_gallery_image(image)
    return DataResponse(data=image.as_dict())


@router.post("/gallery/delete", response_model=DataResponse)
def delete_gallery_image(payload: IdRequest, db: DbClient = Depends(get_db_client)):
    deleted = db.delete_gallery_image(parse_id(payload.id))
    if deleted is None:
        raise NotFound("Image not found")
    return DataResponse(message="Image deleted", data=deleted.as_dict())


@router.post("/gallery/delete-many", response_model=MessageResponse)
def delete_many_gallery_images(
    payload: IdsRequest, db: DbClient = Depends(get_db_client)
):
    count = db.delete_gallery_images(_valid_ids(payload.ids or []))
    return MessageResponse(message=f"{count} images deleted", count=count)


# Home cards


@router.post("/home-cards/list")
def list_home_cards(db: DbClient = Depends(get_db_client)):
    return [card.as_dict() for card in db.list_home_cards()]


@router.post("/home-cards/create")
def create_home_card(payload: HomeCardCreateRequest, db: DbClient = Depends(get_db_client)):
    card = HomeCard(
        href=payload.href or "",
        title=payload.title or "",
        desc=payload.desc or "",
        icon=payload.icon or "",
    )
    db.save_home_card(card)
    return card.as_dict()


# Counts


@router.post("/counts/list", response_model=CountsResponse)
def list_counts(
    db: DbClient = Depends(get_db_client),
    videos: VideoLibrary = Depends(get_videos),
    settings: Settings = Depends(get_settings_for_request),
):
    hero = db.find_gallery_image_by_title(settings.hero_gallery_title)
    return CountsResponse(
        poems=db.count_poems(),
        galleries=db.count_gallery(),
        moments=db.count_moments(MomentQuery()),
        videos=videos.store.count(videos.bucket),
        heroImg=hero.src if hero else None,
    )
