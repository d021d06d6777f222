"""
Blog storage (SQLAlchemy Core) implementing ``PersistenceAPI``.

Tables:
    posts           one row per published article
    faq             question/answer pairs of a post
    chapter_images  image chosen for each chapter of a post

Engine calls are blocking, so every public method runs its work in a worker
thread and returns ``Ok``/``Err``; ``SQLAlchemyError`` never escapes.

Usage:
    store = SqlPersistenceStore()                       # sqlite under DATA_DIR
    store = SqlPersistenceStore("postgresql://...")      # any SQLAlchemy URL
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, TypeVar

import sqlalchemy as sa
from sqlalchemy import Column, Integer, MetaData, Table, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError

from iris_workflow.collaborators import Err, ErrorRecord, Ok, Result
from iris_workflow.config import config
from iris_workflow.state import FaqItem, InternalImage, RecentPost
from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.clients.sql")

T = TypeVar("T")

metadata = MetaData()

# ---------------------------------------------------------------------------
# Table Definitions
# ---------------------------------------------------------------------------

posts = Table(
    "posts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("title", Text),
    Column("weather_blurb", Text),
    Column("hook", Text),
    Column("article", Text, nullable=False),
    Column("slug", Text),
    Column("citation", Text),
    Column("source_link", Text),
    Column("category", Text),
    Column("image_url", Text),
    Column("video_url", Text),
    Column("created_at", Text, nullable=False),
)

faq = Table(
    "faq",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("post_id", Integer, nullable=False),
    Column("question", Text, nullable=False),
    Column("answer", Text, server_default=""),
)

sa.Index("idx_faq_post", faq.c.post_id)

chapter_images = Table(
    "chapter_images",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("post_id", Integer, nullable=False),
    Column("chapter_id", Integer, nullable=False),
    Column("keyword", Text, nullable=False),
    Column("image_url", Text, nullable=False),
    Column("explanation", Text, server_default=""),
    sa.UniqueConstraint("post_id", "chapter_id"),
)

_POST_COLUMNS = tuple(column.name for column in posts.columns)


def default_database_url() -> str:
    if config.api.DATABASE_URL:
        return config.api.DATABASE_URL
    return f"sqlite:///{config.paths.DATA_DIR / 'iris_blog.db'}"


class SqlPersistenceStore:
    """Persistence collaborator over a SQLAlchemy engine."""

    def __init__(self, url: Optional[str] = None, engine: Optional[sa.engine.Engine] = None):
        self.engine = engine if engine is not None else create_engine(url or default_database_url(), pool_pre_ping=True)
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    async def _run(self, operation: str, work: Callable[[], T]) -> Result[T]:
        try:
            value = await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error("persistence_failed", operation=operation, error=str(e), exc_type=type(e).__name__)
            return Err(ErrorRecord.from_exception(e))
        return Ok(value)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_next_id(self) -> Result[int]:
        def work() -> int:
            with self.engine.connect() as conn:
                current = conn.execute(sa.select(sa.func.max(posts.c.id))).scalar()
            return (current or 0) + 1

        return await self._run("fetch_next_id", work)

    async def fetch_recent_titles(self, limit: int) -> Result[List[RecentPost]]:
        def work() -> List[RecentPost]:
            query = (
                sa.select(posts.c.id, posts.c.title, posts.c.slug)
                .order_by(posts.c.id.desc())
                .limit(limit)
            )
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
            return [RecentPost(id=row.id, title=row.title or "", slug=row.slug or "") for row in rows]

        return await self._run("fetch_recent_titles", work)

    def fetch_post(self, post_id: int) -> Optional[Dict[str, Any]]:
        """Stored article row as a dict, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(posts).where(posts.c.id == post_id)).fetchone()
        return dict(row._mapping) if row else None

    def fetch_faq(self, post_id: int) -> List[FaqItem]:
        query = sa.select(faq.c.question, faq.c.answer).where(faq.c.post_id == post_id).order_by(faq.c.id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [FaqItem(question=row.question, answer=row.answer or "") for row in rows]

    def fetch_internal_images(self, post_id: int) -> List[InternalImage]:
        query = (
            sa.select(chapter_images)
            .where(chapter_images.c.post_id == post_id)
            .order_by(chapter_images.c.chapter_id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            InternalImage(
                chapter_id=row.chapter_id,
                keyword=row.keyword,
                image_url=row.image_url,
                explanation=row.explanation or "",
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def persist_article(self, record: Dict[str, Any]) -> Result[bool]:
        """Insert the article, or update it when its id already exists."""
        values = {key: record.get(key) for key in _POST_COLUMNS if key in record}

        def work() -> bool:
            with self.engine.begin() as conn:
                exists = conn.execute(
                    sa.select(posts.c.id).where(posts.c.id == values["id"])
                ).fetchone()
                if exists:
                    conn.execute(posts.update().where(posts.c.id == values["id"]).values(**values))
                else:
                    conn.execute(posts.insert().values(**values))
            return True

        result = await self._run("persist_article", work)
        if isinstance(result, Ok):
            logger.info("article_saved", post_id=values.get("id"), slug=values.get("slug"))
        return result

    async def persist_faq(self, post_id: int, items: List[FaqItem]) -> Result[bool]:
        """Replace the post's FAQ with ``items``."""
        def work() -> bool:
            with self.engine.begin() as conn:
                conn.execute(faq.delete().where(faq.c.post_id == post_id))
                if items:
                    conn.execute(
                        faq.insert(),
                        [{"post_id": post_id, "question": item.question, "answer": item.answer} for item in items],
                    )
            return True

        return await self._run("persist_faq", work)

    async def persist_internal_images(self, post_id: int, images: List[InternalImage]) -> Result[bool]:
        """Replace the post's chapter images with ``images``."""
        def work() -> bool:
            with self.engine.begin() as conn:
                conn.execute(chapter_images.delete().where(chapter_images.c.post_id == post_id))
                if images:
                    conn.execute(
                        chapter_images.insert(),
                        [
                            {
                                "post_id": post_id,
                                "chapter_id": image.chapter_id,
                                "keyword": image.keyword,
                                "image_url": image.image_url,
                                "explanation": image.explanation,
                            }
                            for image in images
                        ],
                    )
            return True

        return await self._run("persist_internal_images", work)
