"""
Enrichment steps run by the stage orchestrator.

Each step composes collaborator calls into one value for the state: the
parsed draft, the video URL, FAQ items, per-chapter images, or a rewritten
article. Collaborator errors are handed back as ``Err`` untouched. Model
output that cannot be used degrades to a neutral value (empty URL, empty
list, unchanged article) and is only logged.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from iris_workflow.article_html import (
    build_cta_html,
    chapter_ids,
    extract_chapter_title,
    inject_images,
    inject_taxon_photos,
    insert_before_article_end,
    taxon_entries,
)
from iris_workflow.collaborators import (
    Err,
    GenerationAPI,
    MediaSearchAPI,
    Ok,
    Result,
    err,
)
from iris_workflow.config import WorkflowConfig
from iris_workflow.state import DraftArticle, FaqItem, InternalImage, RecentPost
from iris_workflow.utils.json_parser import extract_html_block, extract_json_block, parse_json_lenient
from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.enrichment")

CTA_MARKER = 'class="service-cta"'


def as_json(value: Any) -> Any:
    """Structured value from a collaborator payload (already parsed or raw text)."""
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        return parse_json_lenient(extract_json_block(value))
    return None


def _article_from(value: Any, original: str, keys: Tuple[str, ...]) -> str:
    """New article text from a rewrite response, or the original one.

    The response is either JSON carrying the article under one of ``keys``
    or the HTML itself (possibly in a ```html fence).
    """
    data: Any = value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith(("{", "```json", "```JSON")):
            data = as_json(stripped)
        else:
            html_text = extract_html_block(stripped).strip()
            if html_text:
                return html_text

    if isinstance(data, dict):
        for key in keys:
            candidate = data.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()

    logger.warning("rewrite_unusable_response", keys=list(keys))
    return original


# ---------------------------------------------------------------------------
# Draft
# ---------------------------------------------------------------------------

def parse_draft(value: Any) -> Optional[DraftArticle]:
    data = as_json(value)
    if not isinstance(data, dict):
        return None
    try:
        draft = DraftArticle.model_validate(data)
    except ValidationError as exc:
        logger.warning("draft_invalid", errors=exc.error_count())
        return None
    if not draft.article.strip():
        return None
    return draft


async def produce_draft_article(topic: str, generation: GenerationAPI) -> Result[DraftArticle]:
    result = await generation.produce_draft(topic)
    if isinstance(result, Err):
        return result
    draft = parse_draft(result.value)
    if draft is None:
        return err(
            "Draft response could not be parsed",
            name="ParseError",
            hint="The generation output held no JSON object with an article field",
        )
    return Ok(draft)


# ---------------------------------------------------------------------------
# Stage 1: video, FAQ, internal images
# ---------------------------------------------------------------------------

def _keywords_from(value: Any) -> str:
    data = as_json(value)
    if isinstance(data, dict):
        data = data.get("keywords")
    if isinstance(data, list):
        data = " ".join(str(item) for item in data if item)
    return data.strip() if isinstance(data, str) else ""


async def find_video_url(hook: Optional[str], generation: GenerationAPI, media: MediaSearchAPI) -> Result[str]:
    """URL of the first video matching keywords derived from the hook."""
    if not hook or not hook.strip():
        logger.warning("video_skipped", reason="no hook")
        return Ok("")

    result = await generation.produce_video_keywords(hook)
    if isinstance(result, Err):
        return result

    keywords = _keywords_from(result.value)
    if not keywords:
        logger.warning("video_skipped", reason="no keywords")
        return Ok("")

    videos = await media.search_video(keywords)
    if not videos:
        logger.info("video_not_found", keywords=keywords)
        return Ok("")
    return Ok(videos[0].url)


async def build_faq(article: str, generation: GenerationAPI) -> Result[List[FaqItem]]:
    """FAQ items generated for the article; unusable output gives no items."""
    result = await generation.produce_faq(article)
    if isinstance(result, Err):
        return result

    data = as_json(result.value)
    if isinstance(data, dict):
        data = data.get("faq", data.get("items"))
    if not isinstance(data, list):
        logger.warning("faq_unusable_response")
        return Ok([])

    items = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        try:
            item = FaqItem.model_validate(entry)
        except ValidationError:
            continue
        if item.question.strip():
            items.append(item)
    return Ok(items)


def _image_keyword_from(value: Any) -> Tuple[str, str]:
    data = as_json(value)
    if not isinstance(data, dict):
        return "", ""
    keyword = data.get("keyWord") or data.get("keyword") or ""
    explanation = data.get("explanation") or ""
    return str(keyword).strip(), str(explanation).strip()


async def find_internal_images(
    article: str,
    generation: GenerationAPI,
    media: MediaSearchAPI,
    chapter_count: int = 6,
    per_keyword: int = 5,
) -> Result[Tuple[str, List[InternalImage]]]:
    """Pick one image per chapter and inject them into the article.

    Chapters are processed in order so each keyword request knows the
    keywords already used. A chapter without a title, keyword or search hit
    is skipped. If every keyword request failed, the first failure is
    returned.
    """
    used: List[str] = []
    images: List[InternalImage] = []
    failures: List[Err] = []
    attempts = 0

    for chapter_id in chapter_ids(article):
        if chapter_id > chapter_count:
            continue
        title = extract_chapter_title(article, chapter_id)
        if not title:
            logger.warning("chapter_without_title", chapter_id=chapter_id)
            continue

        attempts += 1
        result = await generation.produce_image_keyword(title, list(used))
        if isinstance(result, Err):
            logger.warning("image_keyword_failed", chapter_id=chapter_id, error=result.error.message)
            failures.append(result)
            continue

        keyword, explanation = _image_keyword_from(result.value)
        if not keyword or keyword.casefold() in (k.casefold() for k in used):
            logger.warning("image_keyword_rejected", chapter_id=chapter_id, keyword=keyword)
            continue
        used.append(keyword)

        hits = await media.search_images(keyword, per_keyword)
        if not hits:
            logger.warning("image_not_found", chapter_id=chapter_id, keyword=keyword)
            continue

        images.append(InternalImage(
            chapter_id=chapter_id,
            keyword=keyword,
            image_url=hits[0].url,
            explanation=explanation,
        ))

    if attempts and len(failures) == attempts:
        return failures[0]

    content, injected = inject_images(article, images)
    logger.info("internal_images_ready", found=len(images), injected=injected, chapters=attempts)
    return Ok((content, images))


# ---------------------------------------------------------------------------
# Stages 2-4: article rewrites
# ---------------------------------------------------------------------------

async def apply_internal_links(
    article: str, recent_posts: List[RecentPost], generation: GenerationAPI
) -> Result[str]:
    result = await generation.produce_internal_links(article, recent_posts)
    if isinstance(result, Err):
        return result
    return Ok(_article_from(result.value, article, keys=("article", "upgraded", "content")))


async def add_taxon_photos(article: str, media: MediaSearchAPI) -> str:
    """Give every botanical tooltip the first observation photo of its taxon.

    Each taxon is looked up once; a failed or empty lookup leaves that
    tooltip's image as it is.
    """
    entries = taxon_entries(article)
    if not entries:
        return article

    taxa = list(dict.fromkeys(taxon for taxon, _ in entries))
    found = await asyncio.gather(*(media.search_taxon_photos(taxon) for taxon in taxa), return_exceptions=True)

    first_photo: Dict[str, str] = {}
    for taxon, photos in zip(taxa, found):
        if isinstance(photos, BaseException):
            if not isinstance(photos, Exception):
                raise photos
            logger.warning("taxon_photo_failed", taxon=taxon, error=str(photos), exc_type=type(photos).__name__)
        elif photos:
            first_photo[taxon] = photos[0]
        else:
            logger.info("taxon_photo_not_found", taxon=taxon)

    by_paragraph = {paragraph: first_photo[taxon] for taxon, paragraph in entries if taxon in first_photo}
    content, filled = inject_taxon_photos(article, by_paragraph)
    logger.info("taxon_photos_ready", tooltips=len(entries), filled=filled)
    return content


async def apply_botanical_names(article: str, generation: GenerationAPI, media: MediaSearchAPI) -> Result[str]:
    """Add scientific names, then fill the botanical tooltips with photos.

    An unusable model answer keeps the article as it was; its tooltips are
    still filled.
    """
    result = await generation.produce_botanical_enrichment(article)
    if isinstance(result, Err):
        return result
    upgraded = _article_from(result.value, article, keys=("upgraded", "article", "content"))
    return Ok(await add_taxon_photos(upgraded, media))


async def apply_call_to_action(
    article: str, generation: GenerationAPI, workflow: WorkflowConfig
) -> Result[str]:
    """Insert the service call-to-action chosen by the model before ``</article>``."""
    if CTA_MARKER in article:
        logger.info("cta_already_present")
        return Ok(article)

    result = await generation.produce_cta(article)
    if isinstance(result, Err):
        return result

    data: Dict[str, Any] = as_json(result.value) or {}
    if not isinstance(data, dict):
        data = {}
    url = str(data.get("url") or "").strip()
    cta_text = str(data.get("cta_text") or "").strip()
    if not url or not cta_text:
        logger.warning("cta_unusable_response")
        return Ok(article)

    service = workflow.find_service(url)
    link_text = service.get("link_text", "Découvrir nos services") if service else "Découvrir nos services"
    logger.info("cta_added", url=url, service=service["key"] if service else None)
    return Ok(insert_before_article_end(article, build_cta_html(url, cta_text, link_text)))
