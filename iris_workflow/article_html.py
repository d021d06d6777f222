"""
Helpers for the article's chapter-tagged HTML.

A generated article is a sequence of chapters, each wrapped in
``<span id="paragraphe-N">`` and opening with an ``<h4>`` title. The helpers
here read chapters, inject one image per chapter, fill the photos of the
botanical tooltips and place the call-to-action block before the closing
``</article>``.
"""

import html
import re
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from iris_workflow.state import InternalImage
from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.article_html")

IMAGE_CLASS = "randomCropImage"

_CHAPTER_ID = re.compile(r"""<span[^>]*\bid=["']paragraphe-(\d+)["']""", re.IGNORECASE)
_H4 = re.compile(r"<h4[^>]*>(.*?)</h4>", re.IGNORECASE | re.DOTALL)
_ARTICLE_OPEN = re.compile(r"<article[^>]*>", re.IGNORECASE)
_INJECTED_IMAGE = re.compile(r"""<img[^>]*class=["']""" + IMAGE_CLASS + r"""["'][^>]*>""", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_INTERNAL_FILENAME = re.compile(r"^\d+_chapitre_\d+_(.+)\.webp$")

# Botanical tooltip spans: <span class="inat-vegetal" data-taxon-name=".." data-paragraphe-id="..">
TAXON_CLASS = "inat-vegetal"
_TAXON_SPAN = re.compile(r"<span\b([^>]*\binat-vegetal\b[^>]*)>([\s\S]*?)</span>", re.IGNORECASE)
_CLASS_ATTR = re.compile(r"""\bclass\s*=\s*["']([^"']*)["']""", re.IGNORECASE)
_TAXON_NAME_ATTR = re.compile(r"""\bdata-taxon-name\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
_PARAGRAPH_ATTR = re.compile(r"""\bdata-paragraphe-id\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
_EMPTY_IMG_SRC = re.compile(r"""(<img\b[^>]*?\bsrc\s*=\s*)(["'])\s*\2""", re.IGNORECASE)
_IMG_WITHOUT_SRC = re.compile(r"<img\b(?![^>]*\bsrc\s*=)", re.IGNORECASE)


def _chapter_pattern(chapter_id: int) -> "re.Pattern[str]":
    return re.compile(
        r"""<span[^>]*\bid=["']paragraphe-""" + str(chapter_id) + r"""["'][^>]*>(.*?)</span>""",
        re.IGNORECASE | re.DOTALL,
    )


def chapter_ids(article: Optional[str]) -> List[int]:
    """Chapter numbers present in the article, ascending."""
    if not article:
        return []
    return sorted({int(n) for n in _CHAPTER_ID.findall(article)})


def extract_chapter(article: Optional[str], chapter_id: int) -> str:
    """Inner HTML of chapter ``chapter_id``, trimmed; empty if absent."""
    if not article:
        return ""
    match = _chapter_pattern(chapter_id).search(article)
    return match.group(1).strip() if match else ""


def extract_chapter_title(article: Optional[str], chapter_id: int) -> str:
    """Plain text of the chapter's ``<h4>`` title; empty if absent."""
    chapter = extract_chapter(article, chapter_id)
    match = _H4.search(chapter)
    if not match:
        return ""
    return html.unescape(_TAG.sub("", match.group(1))).strip()


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def alt_from_image_url(image_url: str, fallback: str = "") -> str:
    """Alt text from ``{postId}_chapitre_{n}_{slug}.webp`` filenames.

    ``123_chapitre_1_jardin-vertical-bruxelles.webp`` gives
    ``Jardin Vertical Bruxelles``; other URLs give the fallback keyword.
    """
    if not image_url:
        return fallback or "Image"
    filename = PurePosixPath(urlparse(image_url).path).name
    match = _INTERNAL_FILENAME.match(filename)
    if match:
        return " ".join(word.capitalize() for word in match.group(1).split("-") if word)
    return fallback or "Image"


def build_image_tag(image: InternalImage) -> str:
    src = html.escape(image.image_url, quote=True)
    alt = html.escape(alt_from_image_url(image.image_url, image.keyword), quote=True)
    return (
        f'<img src="{src}" alt="{alt}" class="{IMAGE_CLASS}" '
        'style="width: 100%; height: 200px; object-fit: cover; margin: 0px 0px 30px;" '
        'loading="lazy" decoding="async">'
    )


def inject_images(article: str, images: Iterable[InternalImage]) -> Tuple[str, int]:
    """Insert one image per chapter.

    The image goes before an inner ``<article>`` tag when the chapter has
    one, otherwise at the end of the chapter. Chapters that already contain
    an ``<img>`` are left alone.

    Returns:
        (content, number of images injected)
    """
    content = article
    injected = 0

    for image in sorted(images, key=lambda img: img.chapter_id):
        match = _chapter_pattern(image.chapter_id).search(content)
        if not match:
            logger.warning("chapter_not_found", chapter_id=image.chapter_id)
            continue

        inner = match.group(1)
        if "<img" in inner:
            logger.info("chapter_already_has_image", chapter_id=image.chapter_id)
            continue

        tag = build_image_tag(image)
        article_tag = _ARTICLE_OPEN.search(inner)
        if article_tag:
            new_inner = inner[:article_tag.start()] + tag + inner[article_tag.start():]
        else:
            new_inner = inner + tag

        content = content[:match.start(1)] + new_inner + content[match.end(1):]
        injected += 1

    return content, injected


def count_injected_images(article: Optional[str]) -> int:
    if not article:
        return 0
    return len(_INJECTED_IMAGE.findall(article))


# ---------------------------------------------------------------------------
# Botanical tooltips
# ---------------------------------------------------------------------------

def _taxon_attributes(attributes: str) -> Optional[Tuple[str, str]]:
    classes = _CLASS_ATTR.search(attributes)
    if not classes or TAXON_CLASS not in classes.group(1).split():
        return None
    taxon = _TAXON_NAME_ATTR.search(attributes)
    paragraph = _PARAGRAPH_ATTR.search(attributes)
    if not taxon or not paragraph:
        return None
    return html.unescape(taxon.group(1)).strip(), paragraph.group(1)


def taxon_entries(article: Optional[str]) -> List[Tuple[str, str]]:
    """``(taxon name, paragraph id)`` of every botanical tooltip, in article order."""
    entries = []
    for match in _TAXON_SPAN.finditer(article or ""):
        entry = _taxon_attributes(match.group(1))
        if entry and entry[0]:
            entries.append(entry)
    return entries


def inject_taxon_photos(article: str, photos: Dict[str, str]) -> Tuple[str, int]:
    """Fill the first empty ``<img>`` of each botanical tooltip with its photo.

    ``photos`` maps paragraph ids to photo URLs. Tooltips without a photo, or
    whose image already has a source, are left as they are.

    Returns:
        (article, number of images filled)
    """
    filled = 0

    def fill(match: "re.Match[str]") -> str:
        nonlocal filled
        entry = _taxon_attributes(match.group(1))
        url = photos.get(entry[1]) if entry else None
        if not url:
            return match.group(0)

        src = html.escape(url, quote=True)
        inner, count = _EMPTY_IMG_SRC.subn(lambda img: f'{img.group(1)}"{src}"', match.group(2), count=1)
        if not count:
            inner, count = _IMG_WITHOUT_SRC.subn(lambda img: f'<img src="{src}"', match.group(2), count=1)
        filled += count
        return f"<span{match.group(1)}>{inner}</span>"

    content = _TAXON_SPAN.sub(fill, article)
    return content, filled


# ---------------------------------------------------------------------------
# Call to action
# ---------------------------------------------------------------------------

def build_cta_html(url: str, cta_text: str, link_text: str = "Découvrir nos services") -> str:
    href = html.escape(url, quote=True)
    return (
        '<div class="service-cta" style="margin:32px 0;border-radius:12px;background:#f8f9fa;'
        'border-left:4px solid #81c784;overflow:hidden;">'
        '<div style="padding:20px;">'
        '<h3 style="margin:0 0 10px 0;font-size:17px;color:#2e7d32;">Conseil d\'expert</h3>'
        f'<p style="margin:0 0 14px 0;font-size:15px;line-height:1.5;color:#495057;">{html.escape(cta_text)}</p>'
        f'<a href="{href}" target="_blank" rel="noopener noreferrer" '
        'style="display:inline-block;padding:10px 20px;background:#66bb6a;color:white;'
        f'text-decoration:none;border-radius:6px;">{html.escape(link_text)}</a>'
        '</div></div>'
    )


def insert_before_article_end(article: str, block: str) -> str:
    """Place ``block`` before the first ``</article>``, or append it."""
    index = article.find("</article>")
    if index < 0:
        return f"{article}\n{block}"
    return f"{article[:index]}{block}\n{article[index:]}"
