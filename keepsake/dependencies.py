"""
Dependency wiring for the FastAPI app.

``build_services`` is the composition root: it opens the record database and
the bucket registry once, and ``create_app`` keeps the result on
``app.state``. Route dependencies read from there, so every app instance
(one per test, one in production) has its own stores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from keepsake.blobs import BlobStore, BucketRegistry
from keepsake.config import Settings
from keepsake.db import DbClient, InMemoryDbClient, SqlDbClient, connect
from keepsake.lifecycle import MomentLifecycle, VideoLibrary

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: DbClient
    blobs: BlobStore
    moments: MomentLifecycle
    videos: VideoLibrary


def build_services(settings: Settings) -> Services:
    if settings.use_in_memory_backends or not settings.database_url:
        logger.info("Using in-memory record and blob stores")
        db: DbClient = InMemoryDbClient()
        registry = BucketRegistry.in_memory()
    else:
        session_factory = connect(settings.database_url)
        db = SqlDbClient(session_factory)
        registry = BucketRegistry.sql(session_factory)

    blobs = BlobStore(
        registry,
        chunk_size=settings.blob_chunk_size,
        read_batch=settings.blob_read_batch,
    )
    paging = {
        "default_page_size": settings.default_page_size,
        "max_page_size": settings.max_page_size,
    }
    return Services(
        settings=settings,
        db=db,
        blobs=blobs,
        moments=MomentLifecycle(db, blobs, **paging),
        videos=VideoLibrary(blobs, **paging),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings_for_request(request: Request) -> Settings:
    return get_services(request).settings


def get_db_client(request: Request) -> DbClient:
    return get_services(request).db


def get_blob_store(request: Request) -> BlobStore:
    return get_services(request).blobs


def get_moments(request: Request) -> MomentLifecycle:
    return get_services(request).moments


def get_videos(request: Request) -> VideoLibrary:
    return get_services(request).videos
