from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .models import Cancelled, Failed, Job, Success
from .urls import UrlNormalizer, normalize_url

DOC_START = "===== DOC START ====="
DOC_END = "===== DOC END ====="
MARKDOWN_MARKER = "----- MARKDOWN -----"


@dataclass(frozen=True)
class ExportEntry:
    url: str
    tokens: int
    fetched_utc: str
    body: str
    title: str | None = None
    filename: str | None = None


def _one_line(text: str) -> str:
    return " ".join(text.split())


def collect_documents(
    jobs: Iterable[Job],
    *,
    normalizer: UrlNormalizer | None = None,
) -> list[ExportEntry]:
    """Success jobs in arrival order, first occurrence of each final URL wins."""

    norm = normalizer.normalize if normalizer is not None else normalize_url
    seen: set[str] = set()
    out: list[ExportEntry] = []
    for job in jobs:
        outcome = job.outcome
        if not isinstance(outcome, Success) or not outcome.exportable:
            continue
        key = norm(outcome.final_url or job.url)
        if key in seen:
            continue
        seen.add(key)
        out.append(
            ExportEntry(
                url=outcome.final_url or job.url,
                tokens=outcome.tokens,
                fetched_utc=outcome.fetched_utc,
                body=outcome.body,
                title=_one_line(outcome.title) if outcome.title else None,
                filename=outcome.filename,
            )
        )
    return out


def render_block(entry: ExportEntry) -> str:
    lines = [DOC_START, f"url: {entry.url}"]
    if entry.title:
        lines.append(f"title: {entry.title}")
    lines.append(f"tokens: {entry.tokens}")
    lines.append(f"fetched_utc: {entry.fetched_utc}")
    lines.append(MARKDOWN_MARKER)
    lines.append(entry.body)
    lines.append(DOC_END)
    return "\n".join(lines)


def render_export(entries: Iterable[ExportEntry]) -> str:
    blocks = [render_block(e) for e in entries]
    if not blocks:
        return ""
    return "\n".join(blocks) + "\n"


def build_export(jobs: Iterable[Job], *, normalizer: UrlNormalizer | None = None) -> str:
    """Concatenate every exported document into one deterministic text file."""

    return render_export(collect_documents(jobs, normalizer=normalizer))


def build_manifest(
    jobs: Iterable[Job],
    *,
    token_scheme: str,
    normalizer: UrlNormalizer | None = None,
) -> str:
    jobs = list(jobs)
    entries = collect_documents(jobs, normalizer=normalizer)

    succeeded = sum(1 for j in jobs if isinstance(j.outcome, Success))
    cancelled = sum(1 for j in jobs if isinstance(j.outcome, Cancelled))
    failures = Counter(j.outcome.kind.value for j in jobs if isinstance(j.outcome, Failed))

    manifest: dict[str, Any] = {
        "doc_count": len(entries),
        "total_tokens": sum(e.tokens for e in entries),
        "token_scheme": token_scheme,
        "succeeded": succeeded,
        "failed": sum(failures.values()),
        "cancelled": cancelled,
        "failures": dict(failures),
        "documents": [
            {
                "url": e.url,
                "title": e.title,
                "tokens": e.tokens,
                "filename": e.filename,
                "fetched_utc": e.fetched_utc,
            }
            for e in entries
        ],
    }
    return json.dumps(manifest, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def parse_export(text: str) -> list[ExportEntry]:
    """Split an export file back into its documents.

    Raises ValueError when the delimiters are out of place.
    """

    if not text:
        return []
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    entries: list[ExportEntry] = []
    i = 0
    while i < len(lines):
        if lines[i] != DOC_START:
            raise ValueError(f"Line {i + 1}: expected {DOC_START!r}")
        i += 1

        header: dict[str, str] = {}
        while i < len(lines) and lines[i] != MARKDOWN_MARKER:
            key, sep, value = lines[i].partition(": ")
            if not sep:
                raise ValueError(f"Line {i + 1}: malformed header {lines[i]!r}")
            header[key] = value
            i += 1
        if i >= len(lines):
            raise ValueError("Unterminated document header")
        i += 1

        body_start = i
        while i < len(lines) and lines[i] != DOC_END:
            i += 1
        if i >= len(lines):
            raise ValueError("Missing document end marker")
        body = "\n".join(lines[body_start:i])
        i += 1

        try:
            tokens = int(header.get("tokens", ""))
        except ValueError:
            raise ValueError(f"Bad token count in block for {header.get('url')!r}") from None
        entries.append(
            ExportEntry(
                url=header.get("url", ""),
                tokens=tokens,
                fetched_utc=header.get("fetched_utc", ""),
                body=body,
                title=header.get("title"),
            )
        )
    return entries


@dataclass(frozen=True)
class ExportInspection:
    output_dir: Path
    doc_count: int
    total_tokens: int
    manifest_doc_count: int | None
    event_kinds: dict[str, int]
    referenced_files: int
    missing_files: int
    missing_paths_sample: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "output_dir": str(self.output_dir),
            "doc_count": self.doc_count,
            "total_tokens": self.total_tokens,
            "manifest_doc_count": self.manifest_doc_count,
            "event_kinds": dict(self.event_kinds),
            "referenced_files": self.referenced_files,
            "missing_files": self.missing_files,
            "missing_paths_sample": list(self.missing_paths_sample),
        }


def inspect_export(
    *,
    output_dir: Path,
    export_name: str = "export.txt",
    manifest_name: str = "manifest.json",
    max_missing_paths_sample: int = 25,
) -> ExportInspection:
    """Re-read a finished session's output and cross-check it."""

    output_dir = output_dir.resolve()
    export_path = output_dir / export_name
    if not export_path.exists():
        raise FileNotFoundError(f"Missing {export_name} in: {output_dir}")

    entries = parse_export(export_path.read_text(encoding="utf-8"))

    manifest_doc_count: int | None = None
    referenced_files = 0
    missing_files = 0
    missing_paths_sample: list[str] = []

    manifest_path = output_dir / manifest_name
    if manifest_path.exists():
        try:
            manifest_obj = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {manifest_name} in: {output_dir}") from e
        documents = manifest_obj.get("documents") or []
        manifest_doc_count = len(documents)
        for doc in documents:
            name = doc.get("filename") if isinstance(doc, dict) else None
            if not isinstance(name, str) or not name:
                continue
            referenced_files += 1
            candidate = (output_dir / name).resolve()
            # Keep validation local to output_dir.
            try:
                candidate.relative_to(output_dir)
                present = candidate.exists()
            except ValueError:
                present = False
            if not present:
                missing_files += 1
                if len(missing_paths_sample) < max_missing_paths_sample:
                    missing_paths_sample.append(name)

    event_kinds: Counter[str] = Counter()
    events_path = output_dir / "manifest.jsonl"
    if events_path.exists():
        with events_path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    evt = json.loads(line)
                except json.JSONDecodeError:
                    continue
                kind = str(evt.get("kind") or "")
                if kind:
                    event_kinds[kind] += 1

    return ExportInspection(
        output_dir=output_dir,
        doc_count=len(entries),
        total_tokens=sum(e.tokens for e in entries),
        manifest_doc_count=manifest_doc_count,
        event_kinds=dict(event_kinds),
        referenced_files=referenced_files,
        missing_files=missing_files,
        missing_paths_sample=missing_paths_sample,
    )
