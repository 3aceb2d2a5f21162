"""
Record types for moments, poems, gallery images and home cards.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from keepsake.errors import ValidationError

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def new_id() -> str:
    return uuid.uuid4().hex


def parse_id(value: Any, what: str = "id") -> str:
    """Normalize a client-supplied id, raising ValidationError if malformed."""
    text = str(value or "").strip().lower()
    if not _ID_PATTERN.match(text):
        raise ValidationError(f"Invalid {what}")
    return text


def as_utc(value: datetime) -> datetime:
    # Naive datetimes (SQLite, date-only input) are taken to be UTC already.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any, field_name: str = "date") -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}: {value!r}", cause=exc) from exc


class MomentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    POEM = "poem"
    NOTE = "note"

    @property
    def is_media(self) -> bool:
        return self in (MomentType.IMAGE, MomentType.VIDEO)

    @classmethod
    def parse(cls, value: Any) -> Optional["MomentType"]:
        """Return the matching type, or None for blank/unknown values."""
        try:
            return cls(str(value).strip().lower()) if value else None
        except ValueError:
            return None


@dataclass(frozen=True)
class MediaReference:
    """Pointer from a moment to exactly one stored object."""

    bucket: str
    object_id: str
    filename: Optional[str] = None
    content_type: Optional[str] = None
    length: int = 0

    @classmethod
    def from_object(cls, record: Any) -> "MediaReference":
        return cls(
            bucket=record.bucket,
            object_id=record.object_id,
            filename=record.filename,
            content_type=record.content_type,
            length=record.length,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "MediaReference":
        return cls(
            bucket=data["bucket"],
            object_id=data["objectId"],
            filename=data.get("filename"),
            content_type=data.get("contentType"),
            length=int(data.get("length") or 0),
        )

    def as_dict(self) -> dict:
        return {
            "bucket": self.bucket,
            "objectId": self.object_id,
            "filename": self.filename,
            "contentType": self.content_type,
            "length": self.length,
        }


@dataclass
class Moment:
    """
    A dated entry that is either media (image/video) or text (poem/note).

    Media moments carry exactly one MediaReference and no body; text moments
    carry a body and no media. Construction enforces this, so every update
    goes through ``dataclasses.replace`` to re-run the check.
    """

    type: MomentType
    title: str
    date: datetime
    tags: list[str] = field(default_factory=list)
    meta: Optional[dict] = None
    body: Optional[str] = None
    media: Optional[MediaReference] = None
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not isinstance(self.type, MomentType):
            parsed = MomentType.parse(self.type)
            if parsed is None:
                raise ValidationError(f"Unknown moment type: {self.type!r}")
            self.type = parsed
        if not (self.title or "").strip():
            raise ValidationError("type, title, date are required")
        self.date = as_utc(self.date)
        if self.type.is_media:
            if self.media is None:
                raise ValidationError("No media file uploaded")
            if self.body is not None:
                raise ValidationError("Media moments cannot have a body")
        else:
            if self.media is not None:
                raise ValidationError("Text moments cannot carry media")
            if self.body is None:
                self.body = ""

    def as_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "date": self.date.isoformat(),
            "tags": list(self.tags),
            "meta": self.meta,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.media is not None:
            data["media"] = self.media.as_dict()
        else:
            data["body"] = self.body
        return data


@dataclass
class MomentQuery:
    """Filter and ordering for moment listings."""

    type: Optional[MomentType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    newest_first: bool = True

    def matches(self, moment: Moment) -> bool:
        if self.type is not None and moment.type != self.type:
            return False
        if self.date_from is not None and moment.date < self.date_from:
            return False
        if self.date_to is not None and moment.date > self.date_to:
            return False
        return True


@dataclass
class Poem:
    title: str
    lines: list[str]
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.title = (self.title or "").strip()
        self.lines = [str(line).strip() for line in self.lines or [] if str(line).strip()]
        if not self.title or not self.lines:
            raise ValidationError("Title and at least one line are required")

    def as_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "lines": list(self.lines)}


@dataclass
class GalleryImage:
    src: str
    title: str
    caption: str
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        missing = [
            name
            for name in ("src", "title", "caption")
            if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "src": self.src,
            "title": self.title,
            "caption": self.caption,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class HomeCard:
    href: str
    title: str
    desc: str
    icon: str
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        missing = [
            name
            for name in ("href", "title", "desc", "icon")
            if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "href": self.href,
            "title": self.title,
            "desc": self.desc,
            "icon": self.icon,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
