from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Final

DEFAULT_SCHEME: Final = "whitespace-v1"

_WORD_OR_PUNCT = re.compile(r"\w+|[^\w\s]", re.UNICODE)


@dataclass(frozen=True)
class TokenCounter:
    """A named, deterministic token counting scheme.

    The scheme id is recorded next to every count so that a later change of
    scheme is visible in documents and manifests.
    """

    scheme: str
    count_fn: Callable[[str], int]

    def count(self, text: str) -> int:
        return int(self.count_fn(text))


def _count_whitespace(text: str) -> int:
    return len(text.split())


def _count_words_and_punct(text: str) -> int:
    return len(_WORD_OR_PUNCT.findall(text))


_SCHEMES: dict[str, TokenCounter] = {
    "whitespace-v1": TokenCounter("whitespace-v1", _count_whitespace),
    "wordpunct-v1": TokenCounter("wordpunct-v1", _count_words_and_punct),
}


def available_schemes() -> list[str]:
    return sorted(_SCHEMES)


def get_token_counter(scheme: str = DEFAULT_SCHEME) -> TokenCounter:
    try:
        return _SCHEMES[scheme]
    except KeyError:
        raise ValueError(
            f"Unknown token scheme {scheme!r}; expected one of {available_schemes()}"
        ) from None
