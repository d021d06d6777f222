"""
Shared fakes for the workflow tests.

The fake collaborators answer the way a well-behaved generation model and
blog database would. Individual calls can be made to fail through
``failures`` (method name -> error message).
"""

import json
import sys
from collections import defaultdict
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from iris_workflow.collaborators import ImageResult, Ok, VideoInfo, err
from iris_workflow.state import RecentPost

POTAGER_URL = "https://www.jardin-iris.be/jardinier-paysagiste-service/culture-potagere.html"


def make_article(chapters: int = 6, topic: str = "tomates cerises") -> str:
    body = "".join(
        f'<span id="paragraphe-{n}"><h4>Chapitre {n} : {topic}</h4><p>Conseils de culture {n}.</p></span>'
        for n in range(1, chapters + 1)
    )
    return f"<article>{body}</article>"


def taxon_tooltip(common: str, taxon: str, paragraph_id: str, src: str = "") -> str:
    return (
        f'<span class="inat-vegetal" data-taxon-name="{taxon}" data-paragraphe-id="{paragraph_id}">{common}'
        f'<div class="inat-vegetal-tooltip"><img src="{src}" alt="{taxon}"/></div></span>'
    )


def make_draft(topic: str = "tomates cerises") -> dict:
    return {
        "titre": "Réussir ses tomates cerises",
        "description_meteo": "Soleil et douceur cette semaine à Bruxelles.",
        "phrase_accroche": "Des tomates sucrées tout l'été sur votre balcon",
        "article": make_article(topic=topic),
        "new_href": "reussir-ses-tomates-cerises",
        "citation": "Qui sème en mars récolte en été.",
        "lien_url_article": "https://example.org/tomates",
        "categorie": "potager",
    }


class FakeGeneration:
    """GenerationAPI double; counts calls per method."""

    def __init__(self, failures=None):
        self.calls = defaultdict(int)
        self.failures = dict(failures or {})

    def _answer(self, method, value):
        self.calls[method] += 1
        if method in self.failures:
            return err(self.failures[method])
        return Ok(value)

    async def produce_draft(self, topic):
        if not topic.strip():
            self.calls["produce_draft"] += 1
            return err("empty topic")
        fenced = "```json\n" + json.dumps(make_draft(topic), ensure_ascii=False) + "\n```"
        return self._answer("produce_draft", fenced)

    async def produce_faq(self, article):
        return self._answer("produce_faq", json.dumps({"faq": [
            {"question": "Quand semer les tomates cerises ?", "response": "En mars, à l'abri."},
            {"question": "Faut-il les tailler ?", "response": "Oui, retirez les gourmands."},
        ]}, ensure_ascii=False))

    async def produce_internal_links(self, article, recent_posts):
        post = recent_posts[0]
        link = f'<p>À lire aussi : <a href="/blog/{post.id}/{post.slug}">{post.title}</a></p>'
        return self._answer("produce_internal_links", json.dumps(
            {"article": article.replace("</article>", link + "</article>")}, ensure_ascii=False
        ))

    async def produce_botanical_enrichment(self, article):
        tooltip = taxon_tooltip("tomates cerises", "Solanum lycopersicum", "1-1")
        upgraded = article.replace("tomates cerises", f"{tooltip} (<em>Solanum lycopersicum</em>)", 1)
        return self._answer("produce_botanical_enrichment", json.dumps({"upgraded": upgraded}, ensure_ascii=False))

    async def produce_cta(self, article):
        return self._answer("produce_cta", {"url": POTAGER_URL, "cta_text": "Envie d'un potager productif ?"})

    async def produce_video_keywords(self, hook):
        return self._answer("produce_video_keywords", '{"keywords": "tomates cerises culture balcon"}')

    async def produce_image_keyword(self, chapter_title, used_keywords):
        keyword = f"cherry tomato {len(used_keywords) + 1}"
        return self._answer("produce_image_keyword", json.dumps({"keyWord": keyword, "explanation": chapter_title}))


class FakeMedia:
    """MediaSearchAPI double."""

    def __init__(self, videos=True, images=True, taxon_failures=()):
        self.videos = videos
        self.images = images
        self.taxon_failures = set(taxon_failures)
        self.image_queries = []
        self.taxon_queries = []

    async def search_video(self, keywords):
        if not self.videos:
            return []
        return [VideoInfo(title="Cultiver des tomates cerises", url="https://video.example/tomates-cerises")]

    async def search_images(self, keyword, count):
        self.image_queries.append(keyword)
        if not self.images:
            return []
        slug = keyword.replace(" ", "-")
        return [ImageResult(url=f"https://images.example/{slug}-{i}.jpg") for i in range(count)]

    async def search_taxon_photos(self, taxon):
        self.taxon_queries.append(taxon)
        if taxon in self.taxon_failures:
            raise ConnectionError(f"iNaturalist unreachable for {taxon}")
        if taxon == "Planta ignota":
            return []
        slug = taxon.lower().replace(" ", "-")
        return [f"https://inat.example/{slug}/large.jpg", f"https://inat.example/{slug}/other.jpg"]


class FakePersistence:
    """PersistenceAPI double keeping everything in dicts."""

    def __init__(self, next_id=42, recent_posts=None, failures=None):
        self.next_id = next_id
        if recent_posts is None:
            recent_posts = [RecentPost(title="Semis de printemps", id=7, slug="semis-de-printemps")]
        self.recent_posts = list(recent_posts)
        self.failures = dict(failures or {})
        self.articles = {}
        self.faq = {}
        self.images = {}

    def _fail(self, method):
        return err(self.failures[method]) if method in self.failures else None

    async def fetch_next_id(self):
        return self._fail("fetch_next_id") or Ok(self.next_id)

    async def fetch_recent_titles(self, limit):
        return self._fail("fetch_recent_titles") or Ok(self.recent_posts[:limit])

    async def persist_article(self, record):
        failure = self._fail("persist_article")
        if failure:
            return failure
        self.articles[record["id"]] = dict(record)
        return Ok(True)

    async def persist_faq(self, post_id, items):
        self.faq[post_id] = list(items)
        return Ok(True)

    async def persist_internal_images(self, post_id, images):
        self.images[post_id] = list(images)
        return Ok(True)


@pytest.fixture
def generation():
    return FakeGeneration()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def persistence():
    return FakePersistence()
