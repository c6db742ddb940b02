from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from markdownify import markdownify as md

DROP_TAGS: tuple[str, ...] = (
    "script",
    "style",
    "noscript",
    "iframe",
    "template",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
)

_MAIN_SELECTORS: tuple[str, ...] = (
    "main",
    "article",
    "[role='main']",
)

_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass
class SanitizedPage:
    """Output of the sanitize stage; input of convert.

    `document` keeps the whole cleaned tree so link extraction sees more than
    the main content block.
    """

    title: str | None
    base_url: str
    document: BeautifulSoup
    main: Tag


def _strip_boilerplate(soup: BeautifulSoup) -> None:
    for node in soup.find_all(list(DROP_TAGS)):
        # Nested matches go with their already-removed ancestor.
        if not node.decomposed:
            node.decompose()


def _main_content(soup: BeautifulSoup) -> Tag:
    for selector in _MAIN_SELECTORS:
        found = soup.select_one(selector)
        if found is not None and found.get_text(strip=True):
            return found

    divs = soup.find_all("div")
    if divs:
        densest = max(divs, key=lambda div: len(div.get_text(" ", strip=True)))
        if densest.get_text(strip=True):
            return densest
    return soup.body or soup


def extract_title(soup: BeautifulSoup) -> str | None:
    for node in (soup.title, soup.find("h1")):
        if node is None:
            continue
        text = " ".join(node.get_text(" ", strip=True).split())
        if text:
            return text
    return None


def resolve_base_url(soup: BeautifulSoup, page_url: str) -> str:
    base = soup.find("base", href=True)
    if base:
        href = str(base.get("href") or "").strip()
        if href:
            return urljoin(page_url, href)
    return page_url


def sanitize_html(html: str, *, page_url: str) -> SanitizedPage:
    soup = BeautifulSoup(html, "html.parser")
    # Title and <base> live in <head>, which survives cleaning, but read them
    # first anyway so a stray <header> around the <h1> does not hide it.
    title = extract_title(soup)
    base_url = resolve_base_url(soup, page_url)
    _strip_boilerplate(soup)
    return SanitizedPage(
        title=title,
        base_url=base_url,
        document=soup,
        main=_main_content(soup),
    )


def html_to_markdown(main: Tag | str) -> str:
    """Convert the main content block to Markdown.

    Headings use ATX (`#`) style and images are left out of the body; they are
    reported as links instead.
    """

    markdown = md(str(main), heading_style="ATX", strip=["img"])
    markdown = _BLANK_LINES.sub("\n\n", markdown.replace("\r\n", "\n"))
    return markdown.strip()
