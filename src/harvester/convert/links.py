from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from ..models import ExtractedLink, LinkKind
from ..urls import normalize_url

DEFAULT_MAX_LINKS = 5000

_SKIP_PREFIXES = ("#", "?", "javascript:")


@dataclass(frozen=True)
class LinkExtraction:
    links: tuple[ExtractedLink, ...]
    truncated: bool


def _link_text(tag: Tag) -> str | None:
    if tag.name == "img":
        text = str(tag.get("alt") or "").strip()
    else:
        text = tag.get_text(" ", strip=True)
    return text or None


def _classify(tag: Tag, href: str) -> LinkKind:
    if tag.name == "img":
        return LinkKind.IMAGE
    if href.lower().startswith("mailto:"):
        return LinkKind.EMAIL
    return LinkKind.HYPERLINK


def extract_links(
    soup: BeautifulSoup | Tag,
    *,
    base_url: str,
    max_links: int = DEFAULT_MAX_LINKS,
) -> LinkExtraction:
    """Collect `a[href]` and `img[src]` references in document order.

    Relative references resolve against `base_url`. Fragment-only, query-only
    and `javascript:` references are skipped. Duplicates (by normalized URL)
    keep their first occurrence. At most `max_links` are returned; `truncated`
    reports that more were found.
    """

    links: list[ExtractedLink] = []
    seen: set[str] = set()
    truncated = False

    for tag in soup.find_all(["a", "img"]):
        attr = "href" if tag.name == "a" else "src"
        raw = str(tag.get(attr) or "").strip()
        if not raw or raw.lower().startswith(_SKIP_PREFIXES):
            continue

        kind = _classify(tag, raw)
        if kind is LinkKind.EMAIL:
            url = raw
            key = raw.lower()
        else:
            url = urljoin(base_url, raw)
            if not url.lower().startswith(("http://", "https://")):
                continue
            key = normalize_url(url)
            url = key

        if key in seen:
            continue
        if len(links) >= max_links:
            truncated = True
            break
        seen.add(key)
        links.append(ExtractedLink(url=url, kind=kind, text=_link_text(tag)))

    return LinkExtraction(links=tuple(links), truncated=truncated)
