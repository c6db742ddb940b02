from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

JobId = int


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHING = "finishing"
    FINISHED = "finished"


class Stage(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    SANITIZING = "sanitizing"
    CONVERTING = "converting"
    TOKENIZING = "tokenizing"
    WRITING = "writing"
    DONE = "done"


class FailureKind(str, Enum):
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    TOO_LARGE = "too_large"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    PARSE_ERROR = "parse_error"
    IO_ERROR = "io_error"
    CANCELLED = "cancelled"
    OTHER = "other"


class LinkKind(str, Enum):
    HYPERLINK = "hyperlink"
    IMAGE = "image"
    EMAIL = "email"


@dataclass(frozen=True)
class ExtractedLink:
    url: str
    kind: LinkKind = LinkKind.HYPERLINK
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url, "kind": self.kind.value}
        if self.text:
            out["text"] = self.text
        return out

    @classmethod
    def from_obj(cls, obj: object) -> ExtractedLink | None:
        # Older snapshots stored bare URL strings.
        if isinstance(obj, str):
            url, kind, text = obj, None, None
        elif isinstance(obj, dict):
            url = str(obj.get("url") or "")
            kind = obj.get("kind")
            text = obj.get("text")
        else:
            return None
        if not url:
            return None
        try:
            link_kind = LinkKind(kind) if kind else _guess_link_kind(url)
        except ValueError:
            link_kind = _guess_link_kind(url)
        return cls(url=url, kind=link_kind, text=str(text) if text else None)


def _guess_link_kind(url: str) -> LinkKind:
    if url.lower().startswith("mailto:"):
        return LinkKind.EMAIL
    return LinkKind.HYPERLINK


@dataclass(frozen=True)
class Success:
    final_url: str
    tokens: int
    bytes: int
    token_scheme: str
    title: str | None = None
    links: tuple[ExtractedLink, ...] = ()
    links_truncated: bool = False
    filename: str | None = None
    fetched_utc: str = ""
    body: str = ""
    redirect_count: int = 0
    # False for restored jobs whose document is no longer on disk.
    exportable: bool = True


@dataclass(frozen=True)
class Failed:
    kind: FailureKind
    stage: Stage
    message: str = ""


@dataclass(frozen=True)
class Cancelled:
    stage: Stage = Stage.QUEUED


JobOutcome = Union[Success, Failed, Cancelled]


@dataclass
class Job:
    job_id: JobId
    url: str
    normalized_url: str
    stage: Stage = Stage.QUEUED
    outcome: JobOutcome | None = None
    final_url: str | None = None
    bytes: int | None = None
    tokens: int | None = None
    extracted_links: tuple[ExtractedLink, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None


@dataclass(frozen=True)
class CompletedJobSnapshot:
    """Restartable record of one finished job.

    `url`, `tokens`, `bytes` and `links` form the version 1 schema. Every other
    field is optional so older files keep loading. `body` is never written to
    the snapshot file; it is re-read from the persisted document on load.
    """

    url: str
    tokens: int | None = None
    bytes: int | None = None
    links: tuple[ExtractedLink, ...] = ()
    final_url: str | None = None
    title: str | None = None
    filename: str | None = None
    fetched_utc: str | None = None
    token_scheme: str | None = None
    body: str | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "url": self.url,
            "tokens": self.tokens,
            "bytes": self.bytes,
            "links": [link.to_dict() for link in self.links],
        }
        for key in ("final_url", "title", "filename", "fetched_utc", "token_scheme"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> CompletedJobSnapshot:
        url = str(obj.get("url") or "").strip()
        if not url:
            raise ValueError("Snapshot entry has no url")

        links: list[ExtractedLink] = []
        for raw in obj.get("links") or []:
            link = ExtractedLink.from_obj(raw)
            if link is not None:
                links.append(link)

        def _opt_int(key: str) -> int | None:
            value = obj.get(key)
            if value is None:
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                return None

        def _opt_str(key: str) -> str | None:
            value = obj.get(key)
            return str(value) if value not in (None, "") else None

        return cls(
            url=url,
            tokens=_opt_int("tokens"),
            bytes=_opt_int("bytes"),
            links=tuple(links),
            final_url=_opt_str("final_url"),
            title=_opt_str("title"),
            filename=_opt_str("filename"),
            fetched_utc=_opt_str("fetched_utc"),
            token_scheme=_opt_str("token_scheme"),
        )
