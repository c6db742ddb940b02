from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

FRONT_MATTER_FENCE = "---"


class PersistError(OSError):
    pass


@dataclass(frozen=True)
class DocumentHeader:
    url: str
    fetched_utc: str
    encoding: str
    token_scheme: str
    token_count: int
    title: str | None = None


@dataclass(frozen=True)
class MarkdownDocument:
    header: DocumentHeader
    body: str


def ensure_output_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PersistError(f"Cannot create output directory {path}: {e}") from e
    return path


def atomic_write_text(path: Path, text: str) -> int:
    """Write `text` to `path` through a temp file in the same directory.

    The final name only ever holds a complete file. Returns the number of
    bytes written.
    """

    data = text.encode("utf-8")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
    except OSError as e:
        raise PersistError(f"Failed to write {path}: {e}") from e
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise PersistError(f"Failed to write {path}: {e}") from e
    logger.debug("Wrote %s (%d bytes)", path, len(data))
    return len(data)


def _header_value(value: str) -> str:
    return " ".join(value.split())


def build_markdown_document(header: DocumentHeader, body: str) -> str:
    lines = [FRONT_MATTER_FENCE, f"url: {_header_value(header.url)}"]
    if header.title:
        lines.append(f"title: {_header_value(header.title)}")
    lines.append(f"fetched_utc: {header.fetched_utc}")
    lines.append(f"encoding: {header.encoding}")
    lines.append(f"token_scheme: {header.token_scheme}")
    lines.append(f"token_count: {header.token_count}")
    lines.append(FRONT_MATTER_FENCE)
    return "\n".join(lines) + "\n\n" + body + "\n"


def parse_markdown_document(text: str) -> MarkdownDocument:
    """Inverse of `build_markdown_document`. Raises ValueError on bad input."""

    lines = text.split("\n")
    if not lines or lines[0] != FRONT_MATTER_FENCE:
        raise ValueError("Document does not start with front matter")
    try:
        end = lines.index(FRONT_MATTER_FENCE, 1)
    except ValueError:
        raise ValueError("Unterminated front matter") from None

    fields: dict[str, str] = {}
    for line in lines[1:end]:
        key, sep, value = line.partition(": ")
        if sep:
            fields[key] = value

    try:
        token_count = int(fields.get("token_count", "0"))
    except ValueError:
        raise ValueError(f"Bad token_count {fields.get('token_count')!r}") from None

    body_lines = lines[end + 1 :]
    if body_lines and body_lines[0] == "":
        body_lines = body_lines[1:]
    body = "\n".join(body_lines)
    if body.endswith("\n"):
        body = body[:-1]

    header = DocumentHeader(
        url=fields.get("url", ""),
        title=fields.get("title") or None,
        fetched_utc=fields.get("fetched_utc", ""),
        encoding=fields.get("encoding", ""),
        token_scheme=fields.get("token_scheme", ""),
        token_count=token_count,
    )
    return MarkdownDocument(header=header, body=body)


def write_document(output_dir: Path, filename: str, header: DocumentHeader, body: str) -> int:
    return atomic_write_text(output_dir / filename, build_markdown_document(header, body))


def read_document(path: Path) -> MarkdownDocument:
    return parse_markdown_document(path.read_text(encoding="utf-8"))
