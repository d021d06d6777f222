"""
Stage Orchestrator - drives an article from a topic idea to a finished post.

Stages:
0. IDLE: nothing generated yet
1. DRAFT_READY: draft written; video, FAQ and chapter images run in parallel
2. MEDIA_READY: media done and recent posts known; internal links inserted
3. LINKS_READY: botanical names added
4. BOTANICAL_READY: service call-to-action inserted
5. TERMINAL: ready to persist, waits for an explicit finalize()

The orchestrator subscribes to the state store and re-evaluates on every
change. Evaluation is idempotent: a ``(stage, channel)`` pair is dispatched
at most once per cycle, so repeated or unrelated change events never
re-fire work. A failed stage keeps its stage number and is only dispatched
again through ``retry_stage()``.

Stage operations read the state once their channel is free, and a result
that lands after its stage has been passed, or after a reset, is dropped.

Usage:
    orchestrator = StageOrchestrator(generation, media, persistence)
    state = await orchestrator.run("tomates cerises")
    await orchestrator.finalize()
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from iris_workflow.collaborators import Err, GenerationAPI, MediaSearchAPI, Ok, PersistenceAPI
from iris_workflow.config import IrisConfig, config
from iris_workflow.dispatcher import TaskDispatcher
from iris_workflow.enrichment import (
    apply_botanical_names,
    apply_call_to_action,
    apply_internal_links,
    build_faq,
    find_internal_images,
    find_video_url,
    produce_draft_article,
)
from iris_workflow.state import (
    STAGE_BOTANICAL_READY,
    STAGE_DRAFT_READY,
    STAGE_IDLE,
    STAGE_LINKS_READY,
    STAGE_MEDIA_READY,
    STAGE_TERMINAL,
    GenerationState,
    StateStore,
)
from iris_workflow.utils.datetime_utils import utc_iso
from iris_workflow.utils.logging import get_logger
from iris_workflow.validation import (
    PreconditionRule,
    PreconditionValidator,
    is_non_empty,
    is_post_id,
    is_present,
)

logger = get_logger("iris_workflow.orchestrator")

# Dispatcher channels
CHANNEL_POST_ID = "post_id"
CHANNEL_RECENT_POSTS = "recent_posts"
CHANNEL_DRAFT = "draft"
CHANNEL_VIDEO = "video"
CHANNEL_FAQ = "faq"
CHANNEL_IMAGES = "images"
CHANNEL_LINKS = "links"
CHANNEL_BOTANICAL = "botanical"
CHANNEL_CTA = "cta"
CHANNEL_PERSIST = "persist"

MEDIA_CHANNELS = (CHANNEL_VIDEO, CHANNEL_FAQ, CHANNEL_IMAGES)

Outcome = Optional[Union[Ok, Err]]


class StageOrchestrator:
    """State machine over a ``StateStore``.

    Stage operations return the dispatcher outcome, or None when their
    preconditions failed and nothing was dispatched (the reason is then the
    only entry of the state's error list).
    """

    def __init__(
        self,
        generation: GenerationAPI,
        media: MediaSearchAPI,
        persistence: PersistenceAPI,
        store: Optional[StateStore] = None,
        dispatcher: Optional[TaskDispatcher] = None,
        settings: Optional[IrisConfig] = None,
    ):
        self.generation = generation
        self.media = media
        self.persistence = persistence
        self.store = store if store is not None else StateStore()
        self.dispatcher = dispatcher if dispatcher is not None else TaskDispatcher(self.store)
        self.validator = PreconditionValidator(self.store)
        self.workflow = (settings or config).workflow

        self._fired: Set[Tuple[int, str]] = set()
        self._completed: Set[Tuple[int, str]] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._generating = False
        self._cycle = self.store.resets

        self.store.subscribe(self._on_change)

    def close(self) -> None:
        """Stop reacting to state changes."""
        self.store.unsubscribe(self._on_change)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def generate(self, topic: str) -> Outcome:
        """Fetch the next post id and recent posts, and draft the article.

        The three calls run concurrently. Id, recent posts and draft content
        are committed together with ``stage = 1`` once the draft succeeds; a
        failed draft leaves the state at stage 0 with the error recorded.
        """
        state = self.store.snapshot()
        blocked = self.validator.validate([
            PreconditionRule(
                state.stage,
                "A generation cycle is already under way; reset before starting a new one",
                predicate=lambda stage: stage == STAGE_IDLE,
            ),
            PreconditionRule(
                self._generating,
                "A draft is already being generated",
                predicate=lambda flag: not flag,
            ),
        ])
        if blocked:
            return None

        self._sync_cycle()
        self._generating = True
        cycle = self.store.resets
        fetched: Dict[str, Any] = {}
        logger.info("generation_started", topic=topic, cycle=cycle)

        def keep(key: str) -> Callable[[Any], None]:
            def handle(value: Any) -> None:
                fetched[key] = value
            return handle

        try:
            _, _, draft_outcome = await asyncio.gather(
                self.dispatcher.run(CHANNEL_POST_ID, self.persistence.fetch_next_id, on_success=keep("post_id")),
                self.dispatcher.run(
                    CHANNEL_RECENT_POSTS,
                    lambda: self.persistence.fetch_recent_titles(self.workflow.RECENT_POSTS_LIMIT),
                    on_success=keep("recent_posts"),
                ),
                self.dispatcher.run(
                    CHANNEL_DRAFT,
                    lambda: produce_draft_article(topic, self.generation),
                    on_success=keep("draft"),
                ),
            )
        finally:
            self._generating = False

        if "draft" not in fetched:
            logger.warning("generation_failed", topic=topic)
            return draft_outcome
        if cycle != self.store.resets:
            logger.info("stale_result_discarded", channel=CHANNEL_DRAFT)
            return draft_outcome

        fields = fetched["draft"].content_fields()
        if "post_id" in fetched:
            fields["post_id"] = fetched["post_id"]
        if "recent_posts" in fetched:
            fields["recent_posts"] = list(fetched["recent_posts"])
        fields["stage"] = STAGE_DRAFT_READY
        self._completed.add((STAGE_IDLE, CHANNEL_DRAFT))
        logger.info("stage_advanced", previous=STAGE_IDLE, stage=STAGE_DRAFT_READY, post_id=fields.get("post_id"))
        self.store.patch(fields)
        return draft_outcome

    async def run(self, topic: str) -> GenerationState:
        """Generate and let every automatic stage settle; returns the final snapshot."""
        await self.generate(topic)
        await self.wait_idle()
        return self.store.snapshot()

    async def wait_idle(self) -> None:
        """Wait for every dispatched stage task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def reset(self) -> GenerationState:
        """Start a new cycle: results still in flight are discarded on arrival.

        ``is_busy`` keeps reflecting the channels still running.
        """
        return self.store.reset(is_busy=bool(self.dispatcher.active_channels()))

    def retry_stage(self) -> None:
        """Re-arm the current stage's operations that did not complete.

        At stage 1 a missing post id or empty recent posts list is fetched
        again as well.
        """
        self._sync_cycle()
        state = self.store.snapshot()
        stage = state.stage
        self._fired = {key for key in self._fired if key[0] != stage or key in self._completed}
        logger.info("stage_retry", stage=stage, post_id=state.post_id)

        if stage == STAGE_DRAFT_READY:
            if not is_post_id(state.post_id):
                self._fire(stage, CHANNEL_POST_ID, self._refetch_post_id)
            if not state.recent_posts:
                self._fire(stage, CHANNEL_RECENT_POSTS, self._refetch_recent_posts)
        self.evaluate(state)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, state: Optional[GenerationState] = None) -> None:
        """Dispatch whatever the current state calls for. Safe to call repeatedly."""
        self._sync_cycle()
        state = state if state is not None else self.store.snapshot()
        stage = state.stage
        has_article = is_present(state.article)

        if stage == STAGE_DRAFT_READY:
            if is_post_id(state.post_id) and has_article:
                self._fire(stage, CHANNEL_VIDEO, self.enrich_video)
                self._fire(stage, CHANNEL_FAQ, self.enrich_faq)
                self._fire(stage, CHANNEL_IMAGES, self.enrich_internal_images)
            media_done = all((stage, channel) in self._completed for channel in MEDIA_CHANNELS)
            if media_done and state.recent_posts:
                self.store.advance_stage(STAGE_MEDIA_READY)
        elif stage == STAGE_MEDIA_READY:
            if has_article and state.recent_posts:
                self._fire(stage, CHANNEL_LINKS, self.insert_internal_links)
        elif stage == STAGE_LINKS_READY:
            if has_article:
                self._fire(stage, CHANNEL_BOTANICAL, self.enrich_botanical_names)
        elif stage == STAGE_BOTANICAL_READY:
            if has_article:
                self._fire(stage, CHANNEL_CTA, self.insert_call_to_action)
        elif stage == STAGE_TERMINAL:
            if (stage, "ready") not in self._fired:
                self._fired.add((stage, "ready"))
                logger.info("article_ready_for_finalize", post_id=state.post_id)

    def _on_change(self, previous: GenerationState, current: GenerationState) -> None:
        self.evaluate(current)

    def _fire(self, stage: int, channel: str, operation: Callable[[], Any]) -> None:
        key = (stage, channel)
        if key in self._fired:
            return
        self._fired.add(key)
        logger.info("stage_dispatch", stage=stage, channel=channel)
        task = asyncio.get_running_loop().create_task(operation())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _sync_cycle(self) -> None:
        """Forget fired and completed work once the store has been reset."""
        if self._cycle != self.store.resets:
            self._cycle = self.store.resets
            self._fired.clear()
            self._completed.clear()

    def _continuation(
        self,
        stage: int,
        channel: str,
        to_fields: Callable[[Any], Dict[str, Any]],
        advance_to: Optional[int] = None,
    ) -> Callable[[Any], None]:
        cycle = self.store.resets

        def handle(value: Any) -> None:
            if cycle != self.store.resets or self.store.stage != stage:
                logger.info(
                    "stale_result_discarded", channel=channel, stage=stage, current=self.store.stage
                )
                return
            self._completed.add((stage, channel))
            fields = to_fields(value)
            current = self.store.stage
            if advance_to is not None and advance_to > current:
                fields["stage"] = advance_to
                logger.info("stage_advanced", previous=current, stage=advance_to, channel=channel)
            self.store.patch(fields)
            self.evaluate()

        return handle

    def _staged(
        self, stage: int, channel: str, call: Callable[[GenerationState], Awaitable[Any]]
    ) -> Callable[[], Awaitable[Any]]:
        """Operation that reads the state once the channel lock is held.

        A call queued behind another on the same channel sees the state that
        call left behind; if the stage has moved on meanwhile, nothing is sent.
        """
        async def operation() -> Any:
            state = self.store.snapshot()
            if state.stage != stage:
                logger.info("stage_moved_on", channel=channel, stage=stage, current=state.stage)
                return Ok(None)
            return await call(state)

        return operation

    # ------------------------------------------------------------------
    # Stage 1: media enrichment
    # ------------------------------------------------------------------

    def _media_blocked(self, state: GenerationState) -> bool:
        return self.validator.validate([
            PreconditionRule(
                state.stage,
                "Media enrichment needs a generated draft (stage 1)",
                predicate=lambda stage: stage == STAGE_DRAFT_READY,
            ),
            PreconditionRule(state.post_id, "Post id is missing; fetch it before enriching", predicate=is_post_id),
            PreconditionRule(state.article, "Article is empty"),
        ]) is not None

    async def enrich_media(self) -> List[Outcome]:
        """Run video, FAQ and image enrichment concurrently."""
        if self._media_blocked(self.store.snapshot()):
            return [None] * len(MEDIA_CHANNELS)
        self._fired.update((STAGE_DRAFT_READY, channel) for channel in MEDIA_CHANNELS)
        return list(await asyncio.gather(
            self.enrich_video(),
            self.enrich_faq(),
            self.enrich_internal_images(),
        ))

    async def enrich_video(self) -> Outcome:
        state = self.store.snapshot()
        if self._media_blocked(state):
            return None
        return await self.dispatcher.run(
            CHANNEL_VIDEO,
            self._staged(
                STAGE_DRAFT_READY,
                CHANNEL_VIDEO,
                lambda current: find_video_url(current.hook or current.title, self.generation, self.media),
            ),
            on_success=self._continuation(
                STAGE_DRAFT_READY, CHANNEL_VIDEO, lambda url: {"video_url": url or None}
            ),
        )

    async def enrich_faq(self) -> Outcome:
        state = self.store.snapshot()
        if self._media_blocked(state):
            return None
        return await self.dispatcher.run(
            CHANNEL_FAQ,
            self._staged(STAGE_DRAFT_READY, CHANNEL_FAQ, lambda current: build_faq(current.article, self.generation)),
            on_success=self._continuation(
                STAGE_DRAFT_READY, CHANNEL_FAQ, lambda items: {"faq_items": list(items)}
            ),
        )

    async def enrich_internal_images(self) -> Outcome:
        state = self.store.snapshot()
        if self._media_blocked(state):
            return None

        def to_fields(value: Tuple[str, list]) -> Dict[str, Any]:
            content, images = value
            return {"article": content, "internal_images": list(images)}

        return await self.dispatcher.run(
            CHANNEL_IMAGES,
            self._staged(
                STAGE_DRAFT_READY,
                CHANNEL_IMAGES,
                lambda current: find_internal_images(
                    current.article,
                    self.generation,
                    self.media,
                    chapter_count=self.workflow.CHAPTER_COUNT,
                    per_keyword=self.workflow.IMAGES_PER_KEYWORD,
                ),
            ),
            on_success=self._continuation(STAGE_DRAFT_READY, CHANNEL_IMAGES, to_fields),
        )

    async def _refetch_post_id(self) -> Outcome:
        return await self.dispatcher.run(
            CHANNEL_POST_ID,
            self.persistence.fetch_next_id,
            on_success=self._continuation(STAGE_DRAFT_READY, CHANNEL_POST_ID, lambda pid: {"post_id": pid}),
        )

    async def _refetch_recent_posts(self) -> Outcome:
        return await self.dispatcher.run(
            CHANNEL_RECENT_POSTS,
            lambda: self.persistence.fetch_recent_titles(self.workflow.RECENT_POSTS_LIMIT),
            on_success=self._continuation(
                STAGE_DRAFT_READY, CHANNEL_RECENT_POSTS, lambda posts: {"recent_posts": list(posts)}
            ),
        )

    # ------------------------------------------------------------------
    # Stages 2-4: article rewrites
    # ------------------------------------------------------------------

    def _rewrite_blocked(self, state: GenerationState, stage: int, label: str) -> bool:
        return self.validator.validate([
            PreconditionRule(
                state.stage,
                f"{label} runs at stage {stage}, current stage is {state.stage}",
                predicate=lambda current: current == stage,
            ),
            PreconditionRule(state.post_id, "Post id is missing; fetch it before enriching", predicate=is_post_id),
            PreconditionRule(state.article, "Article is empty"),
        ]) is not None

    async def insert_internal_links(self) -> Outcome:
        state = self.store.snapshot()
        if self._rewrite_blocked(state, STAGE_MEDIA_READY, "Internal linking"):
            return None
        if self.validator.validate([
            PreconditionRule(state.recent_posts, "No recent posts available for internal linking", predicate=is_non_empty),
        ]):
            return None
        return await self.dispatcher.run(
            CHANNEL_LINKS,
            self._staged(
                STAGE_MEDIA_READY,
                CHANNEL_LINKS,
                lambda current: apply_internal_links(current.article, current.recent_posts, self.generation),
            ),
            on_success=self._continuation(
                STAGE_MEDIA_READY, CHANNEL_LINKS, lambda article: {"article": article}, advance_to=STAGE_LINKS_READY
            ),
        )

    async def enrich_botanical_names(self) -> Outcome:
        state = self.store.snapshot()
        if self._rewrite_blocked(state, STAGE_LINKS_READY, "Botanical enrichment"):
            return None
        return await self.dispatcher.run(
            CHANNEL_BOTANICAL,
            self._staged(
                STAGE_LINKS_READY,
                CHANNEL_BOTANICAL,
                lambda current: apply_botanical_names(current.article, self.generation, self.media),
            ),
            on_success=self._continuation(
                STAGE_LINKS_READY, CHANNEL_BOTANICAL, lambda article: {"article": article},
                advance_to=STAGE_BOTANICAL_READY,
            ),
        )

    async def insert_call_to_action(self) -> Outcome:
        state = self.store.snapshot()
        if self._rewrite_blocked(state, STAGE_BOTANICAL_READY, "Call-to-action insertion"):
            return None
        return await self.dispatcher.run(
            CHANNEL_CTA,
            self._staged(
                STAGE_BOTANICAL_READY,
                CHANNEL_CTA,
                lambda current: apply_call_to_action(current.article, self.generation, self.workflow),
            ),
            on_success=self._continuation(
                STAGE_BOTANICAL_READY, CHANNEL_CTA, lambda article: {"article": article},
                advance_to=STAGE_TERMINAL,
            ),
        )

    # ------------------------------------------------------------------
    # Stage 5: persistence
    # ------------------------------------------------------------------

    @staticmethod
    def article_record(state: GenerationState) -> Dict[str, Any]:
        """Record handed to ``persist_article``."""
        return {
            "id": state.post_id,
            "title": state.title,
            "weather_blurb": state.weather_blurb,
            "hook": state.hook,
            "article": state.article,
            "slug": state.slug,
            "citation": state.citation,
            "source_link": state.source_link,
            "category": state.category,
            "image_url": state.image_url,
            "video_url": state.video_url,
            "created_at": utc_iso(),
        }

    async def finalize(self) -> Outcome:
        """Persist the finished article, its FAQ and its images, then reset."""
        state = self.store.snapshot()
        blocked = self.validator.validate([
            PreconditionRule(
                state.stage,
                "The article is not ready to be saved yet (stage 5 required)",
                predicate=lambda stage: stage == STAGE_TERMINAL,
            ),
            PreconditionRule(state.post_id, "Post id is missing", predicate=is_post_id),
            PreconditionRule(state.article, "Article is empty"),
        ])
        if blocked:
            return None

        async def persist() -> Union[Ok, Err]:
            saved = await self.persistence.persist_article(self.article_record(state))
            if isinstance(saved, Err):
                return saved
            if state.faq_items:
                saved = await self.persistence.persist_faq(state.post_id, state.faq_items)
                if isinstance(saved, Err):
                    return saved
            if state.internal_images:
                saved = await self.persistence.persist_internal_images(state.post_id, state.internal_images)
                if isinstance(saved, Err):
                    return saved
            return Ok(True)

        def on_saved(_: Any) -> None:
            logger.info("article_persisted", post_id=state.post_id, faq=len(state.faq_items),
                        images=len(state.internal_images))
            self.reset()

        return await self.dispatcher.run(CHANNEL_PERSIST, persist, on_success=on_saved)
