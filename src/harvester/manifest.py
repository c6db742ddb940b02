from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Cancelled, Failed, JobId, JobOutcome, Success


def utc_iso() -> str:
    """Current UTC time, second precision, `Z` suffix."""

    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def outcome_event(job_id: JobId, url: str, outcome: JobOutcome) -> dict[str, Any]:
    if isinstance(outcome, Success):
        return {
            "kind": "fetched",
            "job_id": job_id,
            "url": url,
            "final_url": outcome.final_url,
            "title": outcome.title,
            "tokens": outcome.tokens,
            "token_scheme": outcome.token_scheme,
            "bytes": outcome.bytes,
            "links": len(outcome.links),
            "links_truncated": outcome.links_truncated,
            "redirects": outcome.redirect_count,
            "paths": {"page_md": outcome.filename},
        }
    if isinstance(outcome, Failed):
        return {
            "kind": "error",
            "job_id": job_id,
            "url": url,
            "failure": outcome.kind.value,
            "stage": outcome.stage.value,
            "error": outcome.message,
        }
    if isinstance(outcome, Cancelled):
        return {
            "kind": "cancelled",
            "job_id": job_id,
            "url": url,
            "stage": outcome.stage.value,
        }
    raise TypeError(f"Unsupported job outcome: {outcome!r}")


@dataclass
class ManifestWriter:
    """Append-only JSONL event log, one line per job outcome."""

    out_dir: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.jsonl_path = self.out_dir / "manifest.jsonl"

    def append(self, event: dict[str, Any]) -> None:
        """Write one event line; an `at` key already in `event` wins."""

        line = json.dumps({"at": utc_iso(), **event}, ensure_ascii=False)
        with self._lock:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8", newline="\n") as out:
                out.write(line + "\n")

    def record(self, job_id: JobId, url: str, outcome: JobOutcome) -> None:
        self.append(outcome_event(job_id, url, outcome))
