"""
Generation State - the single source of truth for one article cycle.

``GenerationState`` is an immutable pydantic model; ``StateStore`` holds the
current instance and swaps it for a new validated one on every update, so a
reader sees either the state before a patch or the state after it. Each
change is announced to subscribers as a ``(previous, current)`` pair.

Usage:
    from iris_workflow.state import StateStore

    store = StateStore()
    store.patch(title="Tomates cerises", stage=1)
    snapshot = store.snapshot()
"""

from typing import Any, Callable, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.state")

STAGE_IDLE = 0
STAGE_DRAFT_READY = 1
STAGE_MEDIA_READY = 2
STAGE_LINKS_READY = 3
STAGE_BOTANICAL_READY = 4
STAGE_TERMINAL = 5


class RecentPost(BaseModel):
    """Reference to an already published post, used for internal links."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str = Field(validation_alias=AliasChoices("title", "titre"))
    id: int
    slug: str = Field(default="", validation_alias=AliasChoices("slug", "new_href"))


class FaqItem(BaseModel):
    """One question/answer pair. The original payloads call the answer "response"."""
    model_config = ConfigDict(frozen=True)

    question: str = ""
    answer: str = Field(default="", validation_alias=AliasChoices("answer", "response"))


class InternalImage(BaseModel):
    """Image chosen for one chapter of the article."""
    model_config = ConfigDict(frozen=True)

    chapter_id: int = Field(validation_alias=AliasChoices("chapter_id", "chapitre_id"))
    keyword: str = Field(validation_alias=AliasChoices("keyword", "chapitre_key_word"))
    image_url: str = Field(validation_alias=AliasChoices("image_url", "url_Image"))
    explanation: str = Field(default="", validation_alias=AliasChoices("explanation", "explanation_word"))


class DraftArticle(BaseModel):
    """Draft payload produced for a topic.

    Accepts the English field names as well as the French keys used by the
    blog's generation prompts.
    """
    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = Field(default=None, validation_alias=AliasChoices("title", "titre"))
    weather_blurb: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("weather_blurb", "weatherBlurb", "description_meteo")
    )
    hook: Optional[str] = Field(default=None, validation_alias=AliasChoices("hook", "phrase_accroche"))
    article: str = ""
    slug: Optional[str] = Field(default=None, validation_alias=AliasChoices("slug", "new_href"))
    citation: Optional[str] = None
    source_link: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source_link", "sourceLink", "lien_url_article")
    )
    category: Optional[str] = Field(default=None, validation_alias=AliasChoices("category", "categorie"))
    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))

    def content_fields(self) -> Dict[str, Any]:
        """Fields to patch into the generation state."""
        return self.model_dump()


class GenerationState(BaseModel):
    """
    State of one generation cycle, from idle (stage 0) to ready-to-persist
    (stage 5).

    ``post_id`` correlates this in-memory state with the record that
    ``finalize`` eventually persists.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Workflow Control
    stage: int = Field(default=STAGE_IDLE, ge=STAGE_IDLE, le=STAGE_TERMINAL)
    post_id: Optional[int] = None
    is_busy: bool = False
    errors: List[str] = Field(default_factory=list)

    # Core Content
    title: Optional[str] = None
    weather_blurb: Optional[str] = None
    hook: Optional[str] = None
    article: Optional[str] = None
    slug: Optional[str] = None
    citation: Optional[str] = None
    source_link: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None

    # Reference data and owned collections
    recent_posts: List[RecentPost] = Field(default_factory=list)
    faq_items: List[FaqItem] = Field(default_factory=list)
    internal_images: List[InternalImage] = Field(default_factory=list)


def create_initial_state() -> GenerationState:
    """The fixed value the store starts from and returns to on reset."""
    return GenerationState()


Listener = Callable[[GenerationState, GenerationState], None]


class StateStore:
    """Holds the current ``GenerationState`` and routes every mutation."""

    def __init__(self, initial: Optional[GenerationState] = None):
        self._initial = initial if initial is not None else create_initial_state()
        self._state = self._initial.model_copy(deep=True)
        self._listeners: List[Listener] = []
        self._resets = 0

    # -- Reading ---------------------------------------------------------------

    def snapshot(self) -> GenerationState:
        """Deep copy of the current state."""
        return self._state.model_copy(deep=True)

    @property
    def stage(self) -> int:
        return self._state.stage

    @property
    def resets(self) -> int:
        """Number of reset() calls so far; identifies the current cycle."""
        return self._resets

    # -- Subscriptions ---------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -- Mutation --------------------------------------------------------------

    def patch(self, changes: Optional[Dict[str, Any]] = None, **fields: Any) -> GenerationState:
        """Merge fields into the state in one step and return the new snapshot.

        Raises:
            pydantic.ValidationError: Unknown field or wrongly typed value.
        """
        updates = dict(changes or {})
        updates.update(fields)
        if not updates:
            return self.snapshot()

        previous = self._state
        merged = previous.model_dump()
        merged.update(updates)
        self._replace(previous, GenerationState.model_validate(merged))
        return self.snapshot()

    def reset(self, **fields: Any) -> GenerationState:
        """Restore the initial value: stage, errors, content and collections.

        ``fields`` are applied on top of the initial value in the same change
        (the dispatcher keeps ``is_busy`` this way while calls are in flight).
        """
        previous = self._state
        initial = self._initial.model_copy(deep=True)
        if fields:
            initial = GenerationState.model_validate({**initial.model_dump(), **fields})
        self._resets += 1
        self._replace(previous, initial)
        logger.info("state_reset", previous_stage=previous.stage, post_id=previous.post_id)
        return self.snapshot()

    def advance_stage(self, stage: int) -> GenerationState:
        """Move the stage forward. Never moves it back; use reset() for that."""
        current = self._state.stage
        if stage <= current:
            logger.debug("stage_advance_ignored", current=current, requested=stage)
            return self.snapshot()
        logger.info("stage_advanced", previous=current, stage=stage, post_id=self._state.post_id)
        return self.patch(stage=stage)

    # -- Errors ----------------------------------------------------------------

    def append_error(self, message: str) -> GenerationState:
        return self.patch(errors=[*self._state.errors, message])

    def replace_errors(self, messages: List[str]) -> GenerationState:
        return self.patch(errors=list(messages))

    def clear_errors(self) -> GenerationState:
        return self.patch(errors=[])

    # -- FAQ items -------------------------------------------------------------

    def add_faq_item(self, question: str = "", answer: str = "") -> GenerationState:
        items = [*self._state.faq_items, FaqItem(question=question, answer=answer)]
        return self.patch(faq_items=items)

    def update_faq_item(
        self, index: int, question: Optional[str] = None, answer: Optional[str] = None
    ) -> GenerationState:
        items = list(self._state.faq_items)
        if not self._in_range(items, index, "faq_items"):
            return self.snapshot()
        current = items[index]
        items[index] = FaqItem(
            question=current.question if question is None else question,
            answer=current.answer if answer is None else answer,
        )
        return self.patch(faq_items=items)

    def delete_faq_item(self, index: int) -> GenerationState:
        items = list(self._state.faq_items)
        if not self._in_range(items, index, "faq_items"):
            return self.snapshot()
        del items[index]
        return self.patch(faq_items=items)

    # -- Internal images -------------------------------------------------------

    def update_internal_image(self, index: int, **fields: Any) -> GenerationState:
        images = list(self._state.internal_images)
        if not self._in_range(images, index, "internal_images"):
            return self.snapshot()
        images[index] = InternalImage.model_validate({**images[index].model_dump(), **fields})
        return self.patch(internal_images=images)

    def delete_internal_image(self, index: int) -> GenerationState:
        images = list(self._state.internal_images)
        if not self._in_range(images, index, "internal_images"):
            return self.snapshot()
        del images[index]
        return self.patch(internal_images=images)

    # -- Internal helpers ------------------------------------------------------

    @staticmethod
    def _in_range(items: list, index: int, collection: str) -> bool:
        if 0 <= index < len(items):
            return True
        logger.warning("collection_index_out_of_range", collection=collection, index=index, size=len(items))
        return False

    def _replace(self, previous: GenerationState, current: GenerationState) -> None:
        self._state = current
        if current == previous:
            return
        before = previous.model_copy(deep=True)
        after = current.model_copy(deep=True)
        for listener in list(self._listeners):
            listener(before, after)
