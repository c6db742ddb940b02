from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable

from .models import CompletedJobSnapshot
from .persist import atomic_write_text, read_document

logger = logging.getLogger(__name__)

STATE_FILENAME = ".harvester_state.json"
STATE_VERSION = 1


@dataclass
class HarvestState:
    """Completed jobs persisted between runs, stored beside the documents."""

    state_dir: Path

    def __post_init__(self) -> None:
        self.state_path = self.state_dir / STATE_FILENAME

    def load(self) -> list[CompletedJobSnapshot]:
        """Read the snapshot file; missing or corrupt files give an empty list.

        Entries whose document is still on disk get their Markdown body back
        so they can be exported again.
        """

        try:
            raw_text = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.state_path, e)
            return []
        try:
            obj = json.loads(raw_text)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring corrupt state file %s: %s", self.state_path, e)
            return []
        if not isinstance(obj, dict):
            logger.warning("Ignoring state file %s without a top-level object", self.state_path)
            return []
        version = obj.get("version")
        if version != STATE_VERSION:
            logger.warning(
                "Ignoring state file %s with unsupported version %r",
                self.state_path,
                version,
            )
            return []

        out: list[CompletedJobSnapshot] = []
        for raw in obj.get("completed") or []:
            if not isinstance(raw, dict):
                continue
            try:
                snap = CompletedJobSnapshot.from_dict(raw)
            except ValueError:
                continue
            out.append(self._with_body(snap))
        logger.info("Loaded %d completed jobs from %s", len(out), self.state_path)
        return out

    def _with_body(self, snap: CompletedJobSnapshot) -> CompletedJobSnapshot:
        if not snap.filename:
            return snap
        path = self.state_dir / snap.filename
        if not path.is_file():
            return snap
        try:
            doc = read_document(path)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            logger.warning("Could not re-read %s: %s", path, e)
            return snap
        header = doc.header
        return replace(
            snap,
            body=doc.body,
            title=snap.title or header.title,
            final_url=snap.final_url or header.url or None,
            fetched_utc=snap.fetched_utc or header.fetched_utc or None,
            token_scheme=snap.token_scheme or header.token_scheme or None,
        )

    def save(self, jobs: Iterable[CompletedJobSnapshot]) -> None:
        payload = {
            "version": STATE_VERSION,
            "completed": [snap.to_dict() for snap in jobs],
        }
        atomic_write_text(
            self.state_path,
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n",
        )
        logger.info("Saved %d completed jobs to %s", len(payload["completed"]), self.state_path)
