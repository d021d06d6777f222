"""
Tests for the stage orchestrator, end to end against fake collaborators.

Run with: pytest tests/test_orchestrator.py -v
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from iris_workflow.article_html import count_injected_images
from iris_workflow.collaborators import Err, Ok
from iris_workflow.orchestrator import StageOrchestrator
from iris_workflow.state import RecentPost, create_initial_state
from tests.conftest import POTAGER_URL, FakeGeneration, FakeMedia, FakePersistence


@pytest.fixture
def orchestrator(generation, media, persistence):
    return StageOrchestrator(generation, media, persistence)


def hold(generation, method):
    """Make ``method`` wait until the returned event is set."""
    release = asyncio.Event()
    answer = getattr(generation, method)

    async def held(*args):
        await release.wait()
        return await answer(*args)

    setattr(generation, method, held)
    return release


async def wait_for_stage(orchestrator, stage):
    async def reached():
        while orchestrator.store.stage < stage:
            await asyncio.sleep(0.001)
    await asyncio.wait_for(reached(), timeout=2)


class TestSuccessfulCycle:
    """Test a full run from topic to persisted article."""

    @pytest.mark.asyncio
    async def test_run_reaches_terminal_stage(self, orchestrator):
        state = await orchestrator.run("tomates cerises")

        assert state.stage == 5
        assert state.errors == []
        assert state.is_busy is False
        assert state.post_id == 42
        assert state.title == "Réussir ses tomates cerises"
        assert state.slug == "reussir-ses-tomates-cerises"
        assert state.video_url == "https://video.example/tomates-cerises"
        assert len(state.faq_items) == 2
        assert [image.chapter_id for image in state.internal_images] == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_article_carries_every_enrichment(self, orchestrator):
        state = await orchestrator.run("tomates cerises")
        article = state.article

        assert count_injected_images(article) == 6
        assert '<a href="/blog/7/semis-de-printemps">' in article
        assert "<em>Solanum lycopersicum</em>" in article
        assert 'class="service-cta"' in article
        assert POTAGER_URL in article

    @pytest.mark.asyncio
    async def test_stages_advance_in_order(self, orchestrator):
        stages = []
        orchestrator.store.subscribe(
            lambda previous, current: stages.append(current.stage) if current.stage != previous.stage else None
        )
        await orchestrator.run("tomates cerises")
        assert stages == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_finalize_persists_and_resets(self, orchestrator, persistence):
        state = await orchestrator.run("tomates cerises")
        result = await orchestrator.finalize()

        assert isinstance(result, Ok)
        saved = persistence.articles[42]
        assert saved["article"] == state.article
        assert saved["slug"] == "reussir-ses-tomates-cerises"
        assert saved["video_url"] == state.video_url
        assert persistence.faq[42] == state.faq_items
        assert persistence.images[42] == state.internal_images
        assert orchestrator.store.snapshot() == create_initial_state()

    @pytest.mark.asyncio
    async def test_new_cycle_after_finalize(self, orchestrator, generation):
        await orchestrator.run("tomates cerises")
        await orchestrator.finalize()
        state = await orchestrator.run("basilic")
        assert state.stage == 5
        assert generation.calls["produce_faq"] == 2


class TestFailedGeneration:
    """Test a draft failure at stage 0."""

    @pytest.mark.asyncio
    async def test_empty_topic_recorded(self, orchestrator):
        result = await orchestrator.generate("")
        state = orchestrator.store.snapshot()

        assert isinstance(result, Err)
        assert state.errors == ["empty topic"]
        assert state.stage == 0
        assert state.post_id is None
        assert state.is_busy is False

    @pytest.mark.asyncio
    async def test_unparseable_draft_keeps_stage(self, orchestrator, generation):
        generation.produce_draft = AsyncMock(return_value=Ok("Je ne sais pas."))
        await orchestrator.run("tomates")
        state = orchestrator.store.snapshot()
        assert state.stage == 0
        assert state.errors == ["Draft response could not be parsed"]

    @pytest.mark.asyncio
    async def test_generate_again_after_failure(self, orchestrator):
        await orchestrator.generate("")
        state = await orchestrator.run("tomates cerises")
        assert state.stage == 5

    @pytest.mark.asyncio
    async def test_generate_refused_past_stage_zero(self, orchestrator, generation):
        await orchestrator.run("tomates cerises")
        result = await orchestrator.generate("basilic")
        assert result is None
        assert orchestrator.store.snapshot().errors == [
            "A generation cycle is already under way; reset before starting a new one"
        ]
        assert generation.calls["produce_draft"] == 1


class TestIdempotentEvaluation:
    """Test that re-evaluation never re-dispatches."""

    @pytest.mark.asyncio
    async def test_repeated_evaluation_is_noop(self, orchestrator, generation):
        await orchestrator.run("tomates cerises")
        orchestrator.evaluate()
        orchestrator.evaluate()
        orchestrator.store.patch(citation="Une autre citation")
        await orchestrator.wait_idle()

        assert generation.calls["produce_faq"] == 1
        assert generation.calls["produce_video_keywords"] == 1
        assert generation.calls["produce_internal_links"] == 1
        assert generation.calls["produce_botanical_enrichment"] == 1
        assert generation.calls["produce_cta"] == 1
        assert generation.calls["produce_image_keyword"] == 6


class TestStageOneGating:
    """Test the explicit advance out of media enrichment."""

    @pytest.mark.asyncio
    async def test_waits_for_recent_posts(self, generation, media):
        orchestrator = StageOrchestrator(generation, media, FakePersistence(recent_posts=[]))
        state = await orchestrator.run("tomates cerises")

        assert state.stage == 1
        assert len(state.faq_items) == 2
        assert state.video_url is not None

        orchestrator.store.patch(recent_posts=[RecentPost(title="Semis", id=7, slug="semis")])
        await orchestrator.wait_idle()
        assert orchestrator.store.stage == 5

    @pytest.mark.asyncio
    async def test_failed_media_task_holds_stage(self, media, persistence):
        generation = FakeGeneration(failures={"produce_faq": "quota exceeded"})
        orchestrator = StageOrchestrator(generation, media, persistence)
        state = await orchestrator.run("tomates cerises")

        assert state.stage == 1
        assert state.errors == ["quota exceeded"]
        assert len(state.internal_images) == 6

    @pytest.mark.asyncio
    async def test_retry_stage_redispatches_only_failed_work(self, media, persistence):
        generation = FakeGeneration(failures={"produce_faq": "quota exceeded"})
        orchestrator = StageOrchestrator(generation, media, persistence)
        await orchestrator.run("tomates cerises")

        generation.failures.clear()
        orchestrator.retry_stage()
        await orchestrator.wait_idle()

        assert orchestrator.store.stage == 5
        assert generation.calls["produce_faq"] == 2
        assert generation.calls["produce_video_keywords"] == 1
        assert generation.calls["produce_image_keyword"] == 6

    @pytest.mark.asyncio
    async def test_retry_refetches_missing_post_id(self, generation, media):
        persistence = FakePersistence(failures={"fetch_next_id": "database unavailable"})
        orchestrator = StageOrchestrator(generation, media, persistence)
        state = await orchestrator.run("tomates cerises")

        assert state.stage == 1
        assert state.post_id is None
        assert generation.calls["produce_faq"] == 0

        persistence.failures.clear()
        orchestrator.retry_stage()
        await orchestrator.wait_idle()

        state = orchestrator.store.snapshot()
        assert state.post_id == 42
        assert state.stage == 5


class TestPublicStageOperations:
    """Test direct calls and their precondition gate."""

    @pytest.mark.asyncio
    async def test_links_refused_at_stage_zero(self, orchestrator, generation):
        assert await orchestrator.insert_internal_links() is None
        assert orchestrator.store.snapshot().errors == ["Internal linking runs at stage 2, current stage is 0"]
        assert generation.calls["produce_internal_links"] == 0

    @pytest.mark.asyncio
    async def test_media_refused_without_draft(self, orchestrator):
        results = await orchestrator.enrich_media()
        assert results == [None, None, None]
        assert orchestrator.store.snapshot().errors == ["Media enrichment needs a generated draft (stage 1)"]

    @pytest.mark.asyncio
    async def test_finalize_refused_before_terminal(self, orchestrator, persistence):
        assert await orchestrator.finalize() is None
        assert orchestrator.store.snapshot().errors == [
            "The article is not ready to be saved yet (stage 5 required)"
        ]
        assert persistence.articles == {}

    @pytest.mark.asyncio
    async def test_failed_persist_keeps_state(self, generation, media):
        persistence = FakePersistence(failures={"persist_article": "disk full"})
        orchestrator = StageOrchestrator(generation, media, persistence)
        await orchestrator.run("tomates cerises")
        result = await orchestrator.finalize()

        state = orchestrator.store.snapshot()
        assert isinstance(result, Err)
        assert state.stage == 5
        assert state.errors == ["disk full"]


class TestReset:
    """Test reset between cycles."""

    @pytest.mark.asyncio
    async def test_reset_restores_initial_state(self, orchestrator):
        await orchestrator.run("tomates cerises")
        orchestrator.reset()
        assert orchestrator.store.snapshot() == create_initial_state()

    @pytest.mark.asyncio
    async def test_result_arriving_after_reset_is_discarded(self, media, persistence):
        generation = FakeGeneration()
        release = asyncio.Event()
        produce_faq = generation.produce_faq

        async def slow_faq(article):
            await release.wait()
            return await produce_faq(article)

        generation.produce_faq = slow_faq
        orchestrator = StageOrchestrator(generation, media, persistence)
        await orchestrator.generate("tomates cerises")
        await asyncio.sleep(0.01)

        orchestrator.reset()
        release.set()
        await orchestrator.wait_idle()

        assert orchestrator.store.snapshot() == create_initial_state()

    @pytest.mark.asyncio
    async def test_reset_keeps_busy_flag_while_calls_run(self, media, persistence):
        generation = FakeGeneration()
        release = hold(generation, "produce_faq")
        orchestrator = StageOrchestrator(generation, media, persistence)
        await orchestrator.generate("tomates cerises")
        await asyncio.sleep(0.01)

        state = orchestrator.reset()
        assert orchestrator.dispatcher.active_channels() == {"faq"}
        assert state.is_busy is True
        assert state.stage == 0

        release.set()
        await orchestrator.wait_idle()
        assert orchestrator.store.snapshot().is_busy is False

    @pytest.mark.asyncio
    async def test_store_reset_during_generation_discards_draft(self, media, persistence):
        generation = FakeGeneration()
        release = hold(generation, "produce_draft")
        orchestrator = StageOrchestrator(generation, media, persistence)
        pending = asyncio.ensure_future(orchestrator.generate("tomates cerises"))
        await asyncio.sleep(0.01)

        orchestrator.store.reset()
        release.set()
        await pending
        await orchestrator.wait_idle()

        assert orchestrator.store.snapshot() == create_initial_state()
        assert generation.calls["produce_faq"] == 0


class TestLateStageResults:
    """Test results that arrive once their stage has been passed."""

    @pytest.mark.asyncio
    async def test_manual_links_call_behind_automatic_one(self, media, persistence):
        generation = FakeGeneration()
        release = hold(generation, "produce_internal_links")
        orchestrator = StageOrchestrator(generation, media, persistence)
        await orchestrator.generate("tomates cerises")
        await wait_for_stage(orchestrator, 2)

        manual = asyncio.ensure_future(orchestrator.insert_internal_links())
        await asyncio.sleep(0.01)
        release.set()
        await orchestrator.wait_idle()

        assert await manual == Ok(None)
        state = orchestrator.store.snapshot()
        assert state.stage == 5
        assert state.errors == []
        assert generation.calls["produce_internal_links"] == 1
        assert state.article.count('<a href="/blog/7/semis-de-printemps">') == 1
        assert "<em>Solanum lycopersicum</em>" in state.article
        assert 'class="service-cta"' in state.article

    @pytest.mark.asyncio
    async def test_rewrite_finishing_after_its_stage_is_dropped(self, media, persistence):
        generation = FakeGeneration()
        release = hold(generation, "produce_botanical_enrichment")
        orchestrator = StageOrchestrator(generation, media, persistence)
        await orchestrator.generate("tomates cerises")
        await wait_for_stage(orchestrator, 3)
        await asyncio.sleep(0.01)

        orchestrator.store.advance_stage(4)
        await wait_for_stage(orchestrator, 5)
        release.set()
        await orchestrator.wait_idle()

        state = orchestrator.store.snapshot()
        assert state.stage == 5
        assert generation.calls["produce_botanical_enrichment"] == 1
        assert "Solanum lycopersicum" not in state.article
        assert 'class="service-cta"' in state.article
