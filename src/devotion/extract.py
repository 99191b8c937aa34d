"""
extract.py

Pull today's passage out of a Duranno QT page.

The page markup is not stable, so nothing here relies on ids or classes.
The only anchor is the "오늘의 말씀" (today's word) label:

  1. find the container around the first element mentioning the label
     (falls back to <body>),
  2. title    = first "Book 12:3" style reference in a heading/emphasis/<p>,
  3. subtitle = first short heading that is not the label or the reference,
  4. verse    = <p>/<li>/<blockquote> text after the label, up to the next
     short <h1>-<h3>; if that finds nothing, the first 8 <p> of the root.

Example:
    from devotion.extract import extract
    qt = extract(html)
    print(qt.title, qt.subtitle)
    print(qt.verse)
"""

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, List, Optional

from bs4 import BeautifulSoup, Tag

MARKER = "오늘의 말씀"
# paragraphs carrying these belong to the reflection/summary blocks, not the passage
EXCLUDE_WORDS = ("묵상", "요약")

TITLE_SENTINEL = "본문 참조 미확인"
SUBTITLE_SENTINEL = "제목 미확인"

# '에스겔 21:1-17' -> ('에스겔', '21', '1'); the range end is accepted but dropped
REF_RE = re.compile(r"([가-힣A-Za-z.\s]+)\s+(\d+)\s*:\s*(\d+)(?:[-~]\s*\d+)?")

CONTAINER_TAGS = ["section", "article", "div"]
TITLE_TAGS = ["h1", "h2", "h3", "strong", "em", "p"]
SUBTITLE_TAGS = ["h1", "h2", "h3", "strong", "em"]
SECTION_HEADINGS = {"h1", "h2", "h3"}
BODY_TAGS = {"p", "li", "blockquote"}

MAX_HEADING_LEN = 60
FALLBACK_PARAGRAPHS = 8


class ExtractionEmpty(RuntimeError):
    """The page was fetched but no passage text could be recovered."""


@dataclass
class Devotional:
    title: str
    subtitle: str
    verse: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class _Walk(Enum):
    IDLE = "idle"
    COLLECTING = "collecting"


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _text(el: Tag) -> str:
    return normalize(el.get_text())


# ------------------------- stages -------------------------

def find_section_root(soup: BeautifulSoup) -> Tag:
    """Container of the first element (document order) whose text has the marker."""
    fallback = soup.body or soup
    for el in soup.find_all(True):
        if MARKER not in _text(el):
            continue
        if el.name in CONTAINER_TAGS:
            return el
        container = el.find_parent(CONTAINER_TAGS)
        return container if container is not None else fallback
    return fallback


def find_title(root: Tag) -> Optional[str]:
    for el in root.find_all(TITLE_TAGS):
        m = REF_RE.search(_text(el))
        if m:
            return f"{m.group(1).strip()} {m.group(2)}:{m.group(3)}"
    return None


def find_subtitle(root: Tag, title: Optional[str]) -> Optional[str]:
    for el in root.find_all(SUBTITLE_TAGS):
        t = _text(el)
        if not t or MARKER in t:
            continue
        if title and title in t:
            continue
        if len(t) <= MAX_HEADING_LEN:
            return t
    return None


def collect_verse_parts(root: Tag) -> List[str]:
    """
    Walk every descendant of `root` in document order.

    IDLE -> COLLECTING on any element whose text contains the marker;
    COLLECTING -> IDLE on a short <h1>-<h3> (start of an unrelated section).
    Nested elements are visited on their own, so a <p> inside an <li> can
    contribute alongside the <li>.
    """
    state = _Walk.IDLE
    parts: List[str] = []
    for el in root.find_all(True):
        t = _text(el)
        if MARKER in t:
            state = _Walk.COLLECTING
            continue
        if state is _Walk.IDLE:
            continue
        if el.name in SECTION_HEADINGS and len(t) <= MAX_HEADING_LEN:
            state = _Walk.IDLE
            continue
        if el.name in BODY_TAGS and t and not any(w in t for w in EXCLUDE_WORDS):
            parts.append(t)
    return parts


def fallback_verse_parts(root: Tag) -> List[str]:
    paragraphs = root.find_all("p", limit=FALLBACK_PARAGRAPHS)
    return [t for t in (_text(p) for p in paragraphs) if t]


def extract(markup: str) -> Devotional:
    """
    Parse a QT page into a Devotional.

    `title` and `subtitle` fall back to sentinels; an empty `verse` raises
    ExtractionEmpty instead.
    """
    soup = BeautifulSoup(markup, "html.parser")
    root = find_section_root(soup)

    title = find_title(root)
    subtitle = find_subtitle(root, title)

    parts = collect_verse_parts(root) or fallback_verse_parts(root)
    if not parts:
        raise ExtractionEmpty("No QT body text found on the page")

    return Devotional(
        title=title or TITLE_SENTINEL,
        subtitle=subtitle or SUBTITLE_SENTINEL,
        verse="\n\n".join(parts),
    )


__all__ = ["Devotional", "ExtractionEmpty", "extract"]
