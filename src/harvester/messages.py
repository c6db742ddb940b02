"""Messages consumed by the session reducer and effects it asks the runner to perform."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

from .models import CompletedJobSnapshot, JobId, JobOutcome, Stage


class StopPolicy(str, Enum):
    FINISH_CURRENT_STAGE = "finish_current_stage"


# Messages


@dataclass(frozen=True)
class UrlsSubmitted:
    text: str


@dataclass(frozen=True)
class StopRequested:
    pass


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class JobProgress:
    job_id: JobId
    stage: Stage
    bytes: int | None = None
    tokens: int | None = None


@dataclass(frozen=True)
class JobDone:
    job_id: JobId
    outcome: JobOutcome


@dataclass(frozen=True)
class RestoreCompletedJobs:
    jobs: tuple[CompletedJobSnapshot, ...]


Msg = Union[
    UrlsSubmitted,
    StopRequested,
    Tick,
    JobProgress,
    JobDone,
    RestoreCompletedJobs,
]


# Effects


@dataclass(frozen=True)
class StartSession:
    pass


@dataclass(frozen=True)
class EnqueueJob:
    job_id: JobId
    url: str


@dataclass(frozen=True)
class CancelSession:
    policy: StopPolicy = StopPolicy.FINISH_CURRENT_STAGE


@dataclass(frozen=True)
class WriteExportFile:
    path: Path
    content: str


@dataclass(frozen=True)
class WriteManifest:
    path: Path
    content: str


@dataclass(frozen=True)
class PersistSnapshot:
    jobs: tuple[CompletedJobSnapshot, ...]


Effect = Union[
    StartSession,
    EnqueueJob,
    CancelSession,
    WriteExportFile,
    WriteManifest,
    PersistSnapshot,
]
