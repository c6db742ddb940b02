from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Final

from .urls import DEFAULT_NORMALIZER, UrlNormalizer

FALLBACK_STEM: Final = "document"
MAX_TITLE_CHARS: Final = 80
MAX_TITLE_BYTES: Final = 160
SHORT_HASH_LEN: Final = 12

_INVALID_FILENAME_CHARS = re.compile(r"[<>:\"/\\|?*\x00-\x1F\x7F]")
_WINDOWS_RESERVED: Final[frozenset[str]] = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)


def short_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:SHORT_HASH_LEN]


def _is_reserved(name: str) -> bool:
    # "CON.txt" is as reserved as "CON" on Windows.
    return name.split(".", 1)[0].upper() in _WINDOWS_RESERVED


def sanitize_title(title: str | None) -> str:
    """Make a title safe to embed in a filename on Windows, macOS and Linux.

    Returns an empty string when nothing usable is left.
    """

    text = unicodedata.normalize("NFC", title or "")
    text = _INVALID_FILENAME_CHARS.sub("_", text)
    # Non-printing format characters (zero-width joiners, variation selectors)
    # carry no meaning once stripped of their emoji neighbours.
    text = "".join(ch for ch in text if unicodedata.category(ch) not in {"Cf", "Cc"})
    text = re.sub(r"\s+", "-", text.strip())
    text = re.sub(r"_+", "_", text)
    text = re.sub(r"-+", "-", text)
    text = text.strip("._- ")
    if not text:
        return ""

    text = text[:MAX_TITLE_CHARS]
    # ext4/APFS cap names at 255 bytes; emoji-heavy titles hit that before
    # the character limit does.
    text = text.encode("utf-8")[:MAX_TITLE_BYTES].decode("utf-8", errors="ignore")
    text = text.rstrip("._- ")
    if not text:
        return ""
    if _is_reserved(text):
        text += "_"
    return text


def deterministic_filename(
    title: str | None,
    url: str,
    *,
    normalizer: UrlNormalizer = DEFAULT_NORMALIZER,
) -> str:
    """`{sanitized-title}--{short-hash(normalized-url)}.md`.

    The hash is derived from the normalized URL only, so the same page keeps
    its name across runs even when its content changes. Pass the session's
    `normalizer` so URLs it treats as one page also share a file name.
    """

    stem = sanitize_title(title) or FALLBACK_STEM
    return f"{stem}--{short_hash(normalizer.normalize(url))}.md"
