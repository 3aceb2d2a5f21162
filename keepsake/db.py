"""
Record database abstraction: SQLAlchemy (Postgres/SQLite) and in-memory.

The same SQLAlchemy metadata also holds the chunked blob tables used by
``keepsake.blobs.SqlBucket`` and the legacy inline-video table read by the
migration utility, so one ``connect`` call prepares everything.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional, Protocol

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from keepsake.errors import RecordStoreError, StoreUnavailable
from keepsake.models import (
    GalleryImage,
    HomeCard,
    MediaReference,
    Moment,
    MomentQuery,
    MomentType,
    Poem,
    as_utc,
)

logger = logging.getLogger(__name__)


def connect(database_url: str) -> sessionmaker:
    """
    Create the engine, make sure all tables exist and return a session factory.

    Raises StoreUnavailable when the database cannot be reached, so the app
    never starts serving without its stores.
    """
    if not database_url:
        raise StoreUnavailable("DATABASE_URL is required for the SQL stores")
    engine_kwargs: dict = {"future": True, "pool_pre_ping": True, "pool_recycle": 1800}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection, otherwise every worker thread sees an empty db.
        engine_kwargs.update(
            poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    try:
        engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(engine)
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"Cannot connect to database: {exc}", cause=exc) from exc
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, future=True)


class DbClient(Protocol):
    """Interface for record access."""

    def get_moment(self, moment_id: str) -> Optional[Moment]:
        ...

    def save_moment(self, moment: Moment) -> None:
        ...

    def delete_moment(self, moment_id: str) -> Optional[Moment]:
        ...

    def delete_moments(self, moment_ids: Iterable[str]) -> list[Moment]:
        ...

    def find_moments(
        self, query: MomentQuery, *, skip: int = 0, limit: Optional[int] = None
    ) -> list[Moment]:
        ...

    def count_moments(self, query: MomentQuery) -> int:
        ...

    def list_poems(self) -> list[Poem]:
        ...

    def get_poem(self, poem_id: str) -> Optional[Poem]:
        ...

    def save_poem(self, poem: Poem) -> None:
        ...

    def delete_poem(self, poem_id: str) -> Optional[Poem]:
        ...

    def delete_poems(self, poem_ids: Iterable[str]) -> int:
        ...

    def count_poems(self) -> int:
        ...

    def list_gallery(self, limit: Optional[int] = None) -> list[GalleryImage]:
        ...

    def get_gallery_image(self, image_id: str) -> Optional[GalleryImage]:
        ...

    def find_gallery_image_by_title(self, title: str) -> Optional[GalleryImage]:
        ...

    def save_gallery_image(self, image: GalleryImage) -> None:
        ...

    def delete_gallery_image(self, image_id: str) -> Optional[GalleryImage]:
        ...

    def delete_gallery_images(self, image_ids: Iterable[str]) -> int:
        ...

    def count_gallery(self) -> int:
        ...

    def list_home_cards(self) -> list[HomeCard]:
        ...

    def save_home_card(self, card: HomeCard) -> None:
        ...


def _sorted_moments(moments: Iterable[Moment], newest_first: bool) -> list[Moment]:
    return sorted(
        moments, key=lambda m: (m.date, m.created_at), reverse=newest_first
    )


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.moments: Dict[str, Moment] = {}
        self.poems: Dict[str, Poem] = {}
        self.gallery: Dict[str, GalleryImage] = {}
        self.home_cards: Dict[str, HomeCard] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.moments.clear()
        self.poems.clear()
        self.gallery.clear()
        self.home_cards.clear()

    def get_moment(self, moment_id: str) -> Optional[Moment]:
        return self.moments.get(moment_id)

    def save_moment(self, moment: Moment) -> None:
        self.moments[moment.id] = moment

    def delete_moment(self, moment_id: str) -> Optional[Moment]:
        return self.moments.pop(moment_id, None)

    def delete_moments(self, moment_ids: Iterable[str]) -> list[Moment]:
        removed = [self.moments.pop(i, None) for i in set(moment_ids)]
        return [m for m in removed if m is not None]

    def find_moments(
        self, query: MomentQuery, *, skip: int = 0, limit: Optional[int] = None
    ) -> list[Moment]:
        matched = _sorted_moments(
            (m for m in self.moments.values() if query.matches(m)), query.newest_first
        )
        end = None if limit is None else skip + limit
        return matched[skip:end]

    def count_moments(self, query: MomentQuery) -> int:
        return sum(1 for m in self.moments.values() if query.matches(m))

    def list_poems(self) -> list[Poem]:
        return list(self.poems.values())

    def get_poem(self, poem_id: str) -> Optional[Poem]:
        return self.poems.get(poem_id)

    def save_poem(self, poem: Poem) -> None:
        self.poems[poem.id] = poem

    def delete_poem(self, poem_id: str) -> Optional[Poem]:
        return self.poems.pop(poem_id, None)

    def delete_poems(self, poem_ids: Iterable[str]) -> int:
        return sum(1 for i in set(poem_ids) if self.poems.pop(i, None) is not None)

    def count_poems(self) -> int:
        return len(self.poems)

    def list_gallery(self, limit: Optional[int] = None) -> list[GalleryImage]:
        images = list(self.gallery.values())
        return images[:limit] if limit else images

    def get_gallery_image(self, image_id: str) -> Optional[GalleryImage]:
        return self.gallery.get(image_id)

    def find_gallery_image_by_title(self, title: str) -> Optional[GalleryImage]:
        for image in self.gallery.values():
            if image.title == title:
                return image
        return None

    def save_gallery_image(self, image: GalleryImage) -> None:
        self.gallery[image.id] = image

    def delete_gallery_image(self, image_id: str) -> Optional[GalleryImage]:
        return self.gallery.pop(image_id, None)

    def delete_gallery_images(self, image_ids: Iterable[str]) -> int:
        return sum(1 for i in set(image_ids) if self.gallery.pop(i, None) is not None)

    def count_gallery(self) -> int:
        return len(self.gallery)

    def list_home_cards(self) -> list[HomeCard]:
        return list(self.home_cards.values())

    def save_home_card(self, card: HomeCard) -> None:
        self.home_cards[card.id] = card


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts a session factory from
    ``connect`` (Postgres in production, SQLite for tests).
    """

    def __init__(self, session_factory: Optional[sessionmaker]):
        if session_factory is None:
            raise StoreUnavailable("Record database is not connected")
        self.Session = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.Session() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Record database operation failed")
            raise RecordStoreError(str(exc), cause=exc) from exc

    # Moments

    def _to_moment(self, row: "MomentRow") -> Moment:
        media = MediaReference.from_dict(row.media) if row.media else None
        return Moment(
            id=row.id,
            type=MomentType(row.type),
            title=row.title,
            date=as_utc(row.date),
            tags=list(row.tags or []),
            meta=row.meta,
            body=None if media else row.body,
            media=media,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _moment_filter(self, stmt, query: MomentQuery):
        if query.type is not None:
            stmt = stmt.where(MomentRow.type == query.type.value)
        if query.date_from is not None:
            stmt = stmt.where(MomentRow.date >= query.date_from)
        if query.date_to is not None:
            stmt = stmt.where(MomentRow.date <= query.date_to)
        return stmt

    def get_moment(self, moment_id: str) -> Optional[Moment]:
        with self._session() as session:
            row = session.get(MomentRow, moment_id)
            return self._to_moment(row) if row else None

    def save_moment(self, moment: Moment) -> None:
        with self._session() as session:
            row = session.get(MomentRow, moment.id)
            if row is None:
                row = MomentRow(id=moment.id, created_at=moment.created_at)
                session.add(row)
            row.type = moment.type.value
            row.title = moment.title
            row.date = moment.date
            row.tags = list(moment.tags)
            row.meta = moment.meta
            row.body = moment.body
            row.media = moment.media.as_dict() if moment.media else None
            row.updated_at = moment.updated_at
            session.commit()

    def delete_moment(self, moment_id: str) -> Optional[Moment]:
        with self._session() as session:
            row = session.get(MomentRow, moment_id)
            if not row:
                return None
            moment = self._to_moment(row)
            session.delete(row)
            session.commit()
            return moment

    def delete_moments(self, moment_ids: Iterable[str]) -> list[Moment]:
        ids = list(set(moment_ids))
        if not ids:
            return []
        with self._session() as session:
            rows = session.execute(
                select(MomentRow).where(MomentRow.id.in_(ids))
            ).scalars().all()
            moments = [self._to_moment(row) for row in rows]
            session.execute(delete(MomentRow).where(MomentRow.id.in_(ids)))
            session.commit()
            return moments

    def find_moments(
        self, query: MomentQuery, *, skip: int = 0, limit: Optional[int] = None
    ) -> list[Moment]:
        stmt = self._moment_filter(select(MomentRow), query)
        if query.newest_first:
            stmt = stmt.order_by(MomentRow.date.desc(), MomentRow.created_at.desc())
        else:
            stmt = stmt.order_by(MomentRow.date.asc(), MomentRow.created_at.asc())
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [self._to_moment(row) for row in session.execute(stmt).scalars()]

    def count_moments(self, query: MomentQuery) -> int:
        stmt = self._moment_filter(select(func.count()).select_from(MomentRow), query)
        with self._session() as session:
            return session.execute(stmt).scalar_one()

    # Poems

    def _to_poem(self, row: "PoemRow") -> Poem:
        return Poem(id=row.id, title=row.title, lines=list(row.lines or []), created_at=row.created_at)

    def list_poems(self) -> list[Poem]:
        with self._session() as session:
            rows = session.execute(select(PoemRow).order_by(PoemRow.created_at.asc())).scalars()
            return [self._to_poem(row) for row in rows]

    def get_poem(self, poem_id: str) -> Optional[Poem]:
        with self._session() as session:
            row = session.get(PoemRow, poem_id)
            return self._to_poem(row) if row else None

    def save_poem(self, poem: Poem) -> None:
        with self._session() as session:
            row = session.get(PoemRow, poem.id)
            if row is None:
                row = PoemRow(id=poem.id, created_at=poem.created_at)
                session.add(row)
            row.title = poem.title
            row.lines = list(poem.lines)
            session.commit()

    def delete_poem(self, poem_id: str) -> Optional[Poem]:
        with self._session() as session:
            row = session.get(PoemRow, poem_id)
            if not row:
                return None
            poem = self._to_poem(row)
            session.delete(row)
            session.commit()
            return poem

    def delete_poems(self, poem_ids: Iterable[str]) -> int:
        ids = list(set(poem_ids))
        with self._session() as session:
            result = session.execute(delete(PoemRow).where(PoemRow.id.in_(ids)))
            session.commit()
            return result.rowcount or 0

    def count_poems(self) -> int:
        with self._session() as session:
            return session.execute(select(func.count()).select_from(PoemRow)).scalar_one()

    # Gallery

    def _to_gallery_image(self, row: "GalleryRow") -> GalleryImage:
        return GalleryImage(
            id=row.id,
            src=row.src,
            title=row.title,
            caption=row.caption,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def list_gallery(self, limit: Optional[int] = None) -> list[GalleryImage]:
        stmt = select(GalleryRow).order_by(GalleryRow.created_at.asc())
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [self._to_gallery_image(row) for row in session.execute(stmt).scalars()]

    def get_gallery_image(self, image_id: str) -> Optional[GalleryImage]:
        with self._session() as session:
            row = session.get(GalleryRow, image_id)
            return self._to_gallery_image(row) if row else None

    def find_gallery_image_by_title(self, title: str) -> Optional[GalleryImage]:
        stmt = select(GalleryRow).where(GalleryRow.title == title).limit(1)
        with self._session() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_gallery_image(row) if row else None

    def save_gallery_image(self, image: GalleryImage) -> None:
        with self._session() as session:
            row = session.get(GalleryRow, image.id)
            if row is None:
                row = GalleryRow(id=image.id, created_at=image.created_at)
                session.add(row)
            row.src = image.src
            row.title = image.title
            row.caption = image.caption
            row.updated_at = image.updated_at
            session.commit()

    def delete_gallery_image(self, image_id: str) -> Optional[GalleryImage]:
        with self._session() as session:
            row = session.get(GalleryRow, image_id)
            if not row:
                return None
            image = self._to_gallery_image(row)
            session.delete(row)
            session.commit()
            return image

    def delete_gallery_images(self, image_ids: Iterable[str]) -> int:
        ids = list(set(image_ids))
        with self._session() as session:
            result = session.execute(delete(GalleryRow).where(GalleryRow.id.in_(ids)))
            session.commit()
            return result.rowcount or 0

    def count_gallery(self) -> int:
        with self._session() as session:
            return session.execute(select(func.count()).select_from(GalleryRow)).scalar_one()

    # Home cards

    def list_home_cards(self) -> list[HomeCard]:
        with self._session() as session:
            rows = session.execute(
                select(HomeCardRow).order_by(HomeCardRow.created_at.asc())
            ).scalars()
            return [
                HomeCard(
                    id=row.id,
                    href=row.href,
                    title=row.title,
                    desc=row.desc,
                    icon=row.icon,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
                for row in rows
            ]

    def save_home_card(self, card: HomeCard) -> None:
        with self._session() as session:
            row = session.get(HomeCardRow, card.id)
            if row is None:
                row = HomeCardRow(id=card.id, created_at=card.created_at)
                session.add(row)
            row.href = card.href
            row.title = card.title
            row.desc = card.desc
            row.icon = card.icon
            row.updated_at = card.updated_at
            session.commit()


Base = declarative_base()


class MomentRow(Base):
    __tablename__ = "moments"
    __table_args__ = (Index("ix_moments_type_date", "type", "date"),)

    id = Column(String(32), primary_key=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    date = Column(DateTime(timezone=True), nullable=False, index=True)
    body = Column(Text, nullable=True)
    media = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    meta = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PoemRow(Base):
    __tablename__ = "poems"

    id = Column(String(32), primary_key=True)
    title = Column(String, nullable=False)
    lines = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)


class GalleryRow(Base):
    __tablename__ = "gallery"

    id = Column(String(32), primary_key=True)
    src = Column(Text, nullable=False)
    title = Column(String, nullable=False, index=True)
    caption = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class HomeCardRow(Base):
    __tablename__ = "home_cards"

    id = Column(String(32), primary_key=True)
    href = Column(String, nullable=False)
    title = Column(String, nullable=False)
    desc = Column(String, nullable=False)
    icon = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class BlobFileRow(Base):
    """Metadata entry of a stored object; written only after all its chunks."""

    __tablename__ = "blob_files"
    __table_args__ = (Index("ix_blob_files_bucket_upload", "bucket", "upload_date"),)

    id = Column(String(32), primary_key=True)
    bucket = Column(String, nullable=False)
    filename = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    length = Column(BigInteger, nullable=False)
    chunk_size = Column(Integer, nullable=False)
    upload_date = Column(DateTime(timezone=True), nullable=False)
    data = Column("metadata", JSON, nullable=False, default=dict)


class BlobChunkRow(Base):
    __tablename__ = "blob_chunks"

    file_id = Column(String(32), primary_key=True)
    n = Column(Integer, primary_key=True)
    data = Column(LargeBinary, nullable=False)


class LegacyVideoRow(Base):
    """Deprecated inline-bytes video record; only read by the migration script."""

    __tablename__ = "legacy_videos"

    id = Column(String, primary_key=True)
    filename = Column(String, nullable=True)
    data = Column(LargeBinary, nullable=True)
    content_type = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
