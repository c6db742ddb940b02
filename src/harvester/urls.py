from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import ParseResult, parse_qsl, urlencode, urlparse, urlunparse

_DEFAULT_PORTS = {"http": "80", "https": "443"}
_ACCEPTED_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class UrlNormalizer:
    """Normalization policy used as the de-duplication key.

    Default policy:
    - Trims surrounding whitespace.
    - Lowercases scheme + hostname.
    - Strips fragments.
    - Drops the port when it is the scheme default.

    Optional knobs cover the cases that are site dependent (trailing slash,
    query ordering, known tracking parameters).
    """

    strip_trailing_slash: bool = False
    sort_query: bool = False
    drop_query_params: frozenset[str] = frozenset()

    def normalize(self, raw_url: str) -> str:
        parsed: ParseResult = urlparse(raw_url.strip())
        scheme = (parsed.scheme or "").lower()

        netloc = parsed.netloc
        host = (parsed.hostname or "").lower()
        if host:
            userinfo = ""
            if "@" in netloc:
                userinfo = netloc.rsplit("@", 1)[0] + "@"
            try:
                port = parsed.port
            except ValueError:
                port = None
            if ":" in host:
                host = f"[{host}]"
            netloc = userinfo + host
            if port is not None and _DEFAULT_PORTS.get(scheme) != str(port):
                netloc += f":{port}"
        else:
            netloc = netloc.lower()

        path = parsed.path
        if self.strip_trailing_slash and len(path) > 1:
            path = path.rstrip("/") or "/"

        query = parsed.query
        if query and (self.sort_query or self.drop_query_params):
            pairs = parse_qsl(query, keep_blank_values=True)
            if self.drop_query_params:
                pairs = [
                    (k, v) for k, v in pairs if k.lower() not in self.drop_query_params
                ]
            if self.sort_query:
                pairs = sorted(pairs)
            query = urlencode(pairs)

        parsed = parsed._replace(
            scheme=scheme,
            netloc=netloc,
            path=path,
            query=query,
            fragment="",
        )
        return urlunparse(parsed)


DEFAULT_NORMALIZER = UrlNormalizer()


def normalize_url(raw_url: str) -> str:
    """Normalize a URL with the default policy."""

    return DEFAULT_NORMALIZER.normalize(raw_url)


def is_fetchable_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme.lower() in _ACCEPTED_SCHEMES and bool(parsed.hostname)


@dataclass(frozen=True)
class ParsedSubmission:
    urls: tuple[str, ...]
    rejected: tuple[str, ...]


def parse_submitted_text(text: str) -> ParsedSubmission:
    """Split pasted text into candidate URLs.

    Rules:
    - One or more URLs per line, separated by whitespace.
    - Blank lines and lines starting with `#` are ignored.
    - Anything that is not an http(s) URL with a host is rejected.
    """

    urls: list[str] = []
    rejected: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        for token in line.split():
            if is_fetchable_url(token):
                urls.append(token)
            else:
                rejected.append(token)
    return ParsedSubmission(urls=tuple(urls), rejected=tuple(rejected))
