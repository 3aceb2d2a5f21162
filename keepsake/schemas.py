"""
Pydantic schemas for the JSON endpoints.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class IdRequest(BaseModel):
    id: Optional[str] = None


class IdsRequest(BaseModel):
    ids: Optional[list[Any]] = None


class MomentListRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: Any = 1
    limit: Any = None
    type: Optional[str] = None
    date_from: Optional[str] = Field(default=None, alias="from")
    date_to: Optional[str] = Field(default=None, alias="to")
    sort: Optional[str] = "desc"


class VideoListRequest(BaseModel):
    page: Any = 1
    limit: Any = 12
    sort: Optional[str] = "desc"


class PageResponse(BaseModel):
    success: bool = True
    page: int
    pageSize: int
    total: int
    hasNext: bool
    data: list[dict]


class MessageResponse(BaseModel):
    success: bool = True
    message: str
    count: Optional[int] = None


class DataResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Any = None


class VideoFileResponse(BaseModel):
    success: bool = True
    message: str
    file: dict


class PoemCreateRequest(BaseModel):
    title: Optional[str] = None
    lines: Optional[list[str]] = None


class PoemUpdateRequest(PoemCreateRequest):
    id: Optional[str] = None


class GalleryListRequest(BaseModel):
    limit: Any = None


class GalleryCreateRequest(BaseModel):
    src: Optional[str] = None
    title: Optional[str] = None
    caption: Optional[str] = None


class GalleryUpdateRequest(GalleryCreateRequest):
    id: Optional[str] = None


class GalleryListResponse(BaseModel):
    success: bool = True
    count: int
    data: list[dict]


class HomeCardCreateRequest(BaseModel):
    href: Optional[str] = None
    title: Optional[str] = None
    desc: Optional[str] = None
    icon: Optional[str] = None


class CountsResponse(BaseModel):
    poems: int
    galleries: int
    moments: int
    videos: int
    heroImg: Optional[str] = None
