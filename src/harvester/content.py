from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, Iterable

from bs4.dammit import EncodingDetector, UnicodeDammit

HTML_CONTENT_TYPES: Final[tuple[str, ...]] = ("text/html", "application/xhtml+xml")

_CHARSET_RE = re.compile(r"""charset\s*=\s*["']?([^"';\s]+)""", re.IGNORECASE)


class DecodeError(ValueError):
    pass


@dataclass(frozen=True)
class DecodedHtml:
    html: str
    encoding: str


def media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def charset_from_content_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    m = _CHARSET_RE.search(content_type)
    if not m:
        return None
    return m.group(1).strip().lower() or None


def looks_like_html(data: bytes) -> bool:
    head = data[:2048].lstrip()
    if head.startswith(b"\xef\xbb\xbf"):
        head = head[3:].lstrip()
    return head.startswith(b"<") and (
        b"<html" in head.lower()
        or b"<!doctype" in head.lower()
        or b"<head" in head.lower()
        or b"<body" in head.lower()
    )


def is_allowed_content_type(
    content_type: str | None,
    *,
    body_head: bytes = b"",
    allowed: Iterable[str] = HTML_CONTENT_TYPES,
) -> bool:
    """Only HTML proceeds through the pipeline.

    A missing Content-Type header falls back to sniffing the first bytes.
    """

    ct = media_type(content_type)
    if not ct:
        return looks_like_html(body_head)
    return ct in {a.lower() for a in allowed}


def decode_html(body: bytes, *, content_type: str | None = None) -> DecodedHtml:
    """Decode raw bytes to text.

    Order: byte-order mark, Content-Type charset, the document's own
    declaration, UTF-8, then statistical detection by UnicodeDammit.
    """

    _, bom_encoding = EncodingDetector.strip_byte_order_mark(body)
    known: list[str] = []
    if bom_encoding is None:
        header_charset = charset_from_content_type(content_type)
        if header_charset:
            known.append(header_charset)
        declared = EncodingDetector.find_declared_encoding(body, is_html=True)
        if declared and declared not in known:
            known.append(declared)
        if "utf-8" not in known:
            known.append("utf-8")

    dammit = UnicodeDammit(body, known_definite_encodings=known, is_html=True)
    if dammit.unicode_markup is None:
        raise DecodeError(f"Could not decode {len(body)} bytes as text")
    return DecodedHtml(
        html=dammit.unicode_markup,
        encoding=(dammit.original_encoding or "utf-8").lower(),
    )
