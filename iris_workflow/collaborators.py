"""
Collaborator contracts consumed by the workflow core.

Every external call (generation API, media search, persistence) is an async
method returning either ``Ok(value)`` or ``Err(ErrorRecord)``. Callers
branch on the result type instead of sniffing dict keys, and a failure is
never raised across this boundary.

Media searches are the exception to the Ok/Err convention: they return plain
lists and an empty list on no match.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Protocol, TypeVar, Union, runtime_checkable

from pydantic import BaseModel

from iris_workflow.exceptions import CollaboratorError
from iris_workflow.state import FaqItem, InternalImage, RecentPost

T = TypeVar("T")


class ErrorRecord(BaseModel):
    """Uniform error shape returned (not raised) by collaborators."""
    message: str
    details: Optional[str] = None
    hint: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, code: Optional[str] = None) -> "ErrorRecord":
        """Build a record from a library exception at a client boundary."""
        raw_code = code if code is not None else getattr(exc, "code", None)
        details = getattr(exc, "details", None)
        hint = getattr(exc, "hint", None)
        return cls(
            message=str(exc) or type(exc).__name__,
            details=str(details) if details is not None else None,
            hint=hint if isinstance(hint, str) else None,
            code=str(raw_code) if raw_code is not None else None,
            name=type(exc).__name__,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: ErrorRecord

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise CollaboratorError(self.error)


Result = Union[Ok[T], Err]


def err(message: str, **fields: Any) -> Err:
    """Shorthand for ``Err(ErrorRecord(message=..., ...))``."""
    return Err(ErrorRecord(message=message, **fields))


# ---------------------------------------------------------------------------
# Media search payloads
# ---------------------------------------------------------------------------

class VideoInfo(BaseModel):
    """One video search hit."""
    title: str = ""
    url: str
    description: str = ""


class ImageResult(BaseModel):
    """One image search hit."""
    url: str
    thumbnail_url: Optional[str] = None
    alt: str = ""


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class GenerationAPI(Protocol):
    """Text generation calls. Values are raw model text or parsed JSON."""

    async def produce_draft(self, topic: str) -> Result[Union[str, Dict[str, Any]]]: ...

    async def produce_faq(self, article: str) -> Result[Union[str, List[Any]]]: ...

    async def produce_internal_links(self, article: str, recent_posts: List[RecentPost]) -> Result[str]: ...

    async def produce_botanical_enrichment(self, article: str) -> Result[str]: ...

    async def produce_cta(self, article: str) -> Result[Union[str, Dict[str, Any]]]: ...

    async def produce_video_keywords(self, hook: str) -> Result[Union[str, Dict[str, Any]]]: ...

    async def produce_image_keyword(
        self, chapter_title: str, used_keywords: List[str]
    ) -> Result[Union[str, Dict[str, Any]]]: ...


@runtime_checkable
class MediaSearchAPI(Protocol):
    """Video, stock image and plant photo search."""

    async def search_video(self, keywords: str) -> List[VideoInfo]: ...

    async def search_images(self, keyword: str, count: int) -> List[ImageResult]: ...

    async def search_taxon_photos(self, taxon: str) -> List[str]:
        """Photo URLs of observations of ``taxon`` (iNaturalist), best first."""
        ...


@runtime_checkable
class PersistenceAPI(Protocol):
    """Blog storage. The persisted record shape belongs to the implementation."""

    async def fetch_next_id(self) -> Result[int]: ...

    async def fetch_recent_titles(self, limit: int) -> Result[List[RecentPost]]: ...

    async def persist_article(self, record: Dict[str, Any]) -> Result[bool]: ...

    async def persist_faq(self, post_id: int, items: List[FaqItem]) -> Result[bool]: ...

    async def persist_internal_images(self, post_id: int, images: List[InternalImage]) -> Result[bool]: ...
