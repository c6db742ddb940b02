"""Session state machine.

`update(session, msg)` is the only way a `Session` changes. It performs no I/O
and reads no clock; everything that touches the outside world is returned as
an effect for the runner to execute. The caller hands the session in and gets
the same object back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .export import build_export, build_manifest
from .messages import (
    CancelSession,
    Effect,
    EnqueueJob,
    JobDone,
    JobProgress,
    Msg,
    PersistSnapshot,
    RestoreCompletedJobs,
    StartSession,
    StopPolicy,
    StopRequested,
    Tick,
    UrlsSubmitted,
    WriteExportFile,
    WriteManifest,
)
from .models import (
    Cancelled,
    CompletedJobSnapshot,
    Failed,
    FailureKind,
    Job,
    JobId,
    SessionState,
    Stage,
    Success,
)
from .tokens import DEFAULT_SCHEME
from .urls import DEFAULT_NORMALIZER, UrlNormalizer, parse_submitted_text

DEFAULT_TOKEN_LIMIT = 1_000_000


@dataclass(frozen=True)
class SessionConfig:
    output_dir: Path = Path("harvest")
    export_name: str = "export.txt"
    manifest_name: str = "manifest.json"
    write_manifest: bool = True
    resume_when_finished: bool = False
    token_limit: int = DEFAULT_TOKEN_LIMIT
    token_scheme: str = DEFAULT_SCHEME
    normalizer: UrlNormalizer = DEFAULT_NORMALIZER

    @property
    def export_path(self) -> Path:
        return self.output_dir / self.export_name

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / self.manifest_name


@dataclass(frozen=True)
class SubmissionStats:
    enqueued: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class JobRow:
    job_id: JobId
    url: str
    stage: Stage
    status: str
    bytes: int | None
    tokens: int | None
    links: int
    failure_kind: FailureKind | None = None
    message: str | None = None


@dataclass(frozen=True)
class SessionView:
    """Read-only snapshot handed to presentation code."""

    state: SessionState
    jobs: tuple[JobRow, ...]
    queued: int
    active: int
    succeeded: int
    failed: int
    cancelled: int
    total_tokens: int
    token_limit: int
    skipped_duplicates: int
    last_submission: SubmissionStats

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def done(self) -> int:
        return self.succeeded + self.failed + self.cancelled


@dataclass
class Session:
    config: SessionConfig = field(default_factory=SessionConfig)
    state: SessionState = SessionState.IDLE
    next_job_id: JobId = 1
    jobs: dict[JobId, Job] = field(default_factory=dict)
    seen_urls: set[str] = field(default_factory=set)
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped_duplicates: int = 0
    last_submission: SubmissionStats = field(default_factory=SubmissionStats)
    dirty: bool = False

    @property
    def total_tokens(self) -> int:
        return sum(job.tokens or 0 for job in self.jobs.values())

    def all_terminal(self) -> bool:
        return all(job.is_terminal for job in self.jobs.values())

    def view(self) -> SessionView:
        rows = tuple(_job_row(job) for job in self.jobs.values())
        queued = sum(
            1 for j in self.jobs.values() if not j.is_terminal and j.stage is Stage.QUEUED
        )
        active = sum(
            1 for j in self.jobs.values() if not j.is_terminal and j.stage is not Stage.QUEUED
        )
        return SessionView(
            state=self.state,
            jobs=rows,
            queued=queued,
            active=active,
            succeeded=self.succeeded,
            failed=self.failed,
            cancelled=self.cancelled,
            total_tokens=self.total_tokens,
            token_limit=self.config.token_limit,
            skipped_duplicates=self.skipped_duplicates,
            last_submission=self.last_submission,
        )

    def completed_jobs_snapshot(self) -> list[CompletedJobSnapshot]:
        out: list[CompletedJobSnapshot] = []
        for job in self.jobs.values():
            outcome = job.outcome
            if not isinstance(outcome, Success):
                continue
            out.append(
                CompletedJobSnapshot(
                    url=job.url,
                    tokens=outcome.tokens,
                    bytes=outcome.bytes,
                    links=outcome.links,
                    final_url=outcome.final_url,
                    title=outcome.title,
                    filename=outcome.filename,
                    fetched_utc=outcome.fetched_utc or None,
                    token_scheme=outcome.token_scheme,
                    body=outcome.body if outcome.exportable else None,
                )
            )
        return out


def _job_row(job: Job) -> JobRow:
    outcome = job.outcome
    failure_kind: FailureKind | None = None
    message: str | None = None
    if outcome is None:
        status = job.stage.value
    elif isinstance(outcome, Success):
        status = "ok"
    elif isinstance(outcome, Failed):
        status = "failed"
        failure_kind = outcome.kind
        message = outcome.message or None
    else:
        status = "cancelled"
    return JobRow(
        job_id=job.job_id,
        url=job.url,
        stage=job.stage,
        status=status,
        bytes=job.bytes,
        tokens=job.tokens,
        links=len(job.extracted_links),
        failure_kind=failure_kind,
        message=message,
    )


def update(session: Session, msg: Msg) -> tuple[Session, list[Effect]]:
    if isinstance(msg, UrlsSubmitted):
        effects = _on_urls_submitted(session, msg)
    elif isinstance(msg, StopRequested):
        effects = _on_stop_requested(session)
    elif isinstance(msg, Tick):
        session.dirty = False
        effects = []
    elif isinstance(msg, JobProgress):
        effects = _on_job_progress(session, msg)
    elif isinstance(msg, JobDone):
        effects = _on_job_done(session, msg)
    elif isinstance(msg, RestoreCompletedJobs):
        effects = _on_restore(session, msg)
    else:
        raise TypeError(f"Unsupported message: {msg!r}")
    return session, effects


def _on_urls_submitted(session: Session, msg: UrlsSubmitted) -> list[Effect]:
    state = session.state
    if state is SessionState.FINISHING:
        return []
    if state is SessionState.FINISHED and not session.config.resume_when_finished:
        return []

    parsed = parse_submitted_text(msg.text)
    if not parsed.urls and not parsed.rejected:
        return []

    normalize = session.config.normalizer.normalize
    enqueues: list[Effect] = []
    duplicates = 0
    for url in parsed.urls:
        key = normalize(url)
        if key in session.seen_urls:
            duplicates += 1
            continue
        session.seen_urls.add(key)
        job_id = session.next_job_id
        session.next_job_id += 1
        session.jobs[job_id] = Job(job_id=job_id, url=url, normalized_url=key)
        enqueues.append(EnqueueJob(job_id=job_id, url=url))

    session.skipped_duplicates += duplicates
    session.last_submission = SubmissionStats(
        enqueued=len(enqueues),
        skipped=duplicates + len(parsed.rejected),
    )
    session.dirty = True

    if not enqueues:
        return []
    if state in (SessionState.IDLE, SessionState.FINISHED):
        session.state = SessionState.RUNNING
        return [StartSession(), *enqueues]
    return enqueues


def _on_stop_requested(session: Session) -> list[Effect]:
    if session.state is not SessionState.RUNNING:
        return []
    session.state = SessionState.FINISHING
    session.dirty = True
    effects: list[Effect] = [CancelSession(policy=StopPolicy.FINISH_CURRENT_STAGE)]
    if session.all_terminal():
        effects.extend(_finish(session))
    return effects


def _on_job_progress(session: Session, msg: JobProgress) -> list[Effect]:
    job = session.jobs.get(msg.job_id)
    if job is None or job.is_terminal:
        return []
    job.stage = msg.stage
    if msg.bytes is not None:
        job.bytes = msg.bytes
    if msg.tokens is not None:
        job.tokens = msg.tokens
    session.dirty = True
    return []


def _on_job_done(session: Session, msg: JobDone) -> list[Effect]:
    job = session.jobs.get(msg.job_id)
    if job is None or job.is_terminal:
        return []

    outcome = msg.outcome
    job.outcome = outcome
    if isinstance(outcome, Success):
        job.stage = Stage.DONE
        job.final_url = outcome.final_url
        job.tokens = outcome.tokens
        job.bytes = outcome.bytes
        job.extracted_links = outcome.links
        session.succeeded += 1
    elif isinstance(outcome, Failed):
        job.stage = outcome.stage
        session.failed += 1
    elif isinstance(outcome, Cancelled):
        job.stage = outcome.stage
        session.cancelled += 1
    else:
        raise TypeError(f"Unsupported job outcome: {outcome!r}")
    session.dirty = True

    if session.state is SessionState.FINISHING and session.all_terminal():
        return _finish(session)
    return []


def _on_restore(session: Session, msg: RestoreCompletedJobs) -> list[Effect]:
    if session.state not in (SessionState.IDLE, SessionState.RUNNING):
        return []

    normalize = session.config.normalizer.normalize
    restored = 0
    for snap in msg.jobs:
        key = normalize(snap.url)
        if key in session.seen_urls:
            continue
        session.seen_urls.add(key)
        job_id = session.next_job_id
        session.next_job_id += 1
        outcome = Success(
            final_url=snap.final_url or snap.url,
            tokens=snap.tokens or 0,
            bytes=snap.bytes or 0,
            token_scheme=snap.token_scheme or session.config.token_scheme,
            title=snap.title,
            links=snap.links,
            filename=snap.filename,
            fetched_utc=snap.fetched_utc or "",
            body=snap.body or "",
            exportable=snap.body is not None,
        )
        session.jobs[job_id] = Job(
            job_id=job_id,
            url=snap.url,
            normalized_url=key,
            stage=Stage.DONE,
            outcome=outcome,
            final_url=outcome.final_url,
            bytes=outcome.bytes,
            tokens=outcome.tokens,
            extracted_links=outcome.links,
        )
        session.succeeded += 1
        restored += 1

    if restored:
        session.dirty = True
    return []


def _finish(session: Session) -> list[Effect]:
    config = session.config
    session.state = SessionState.FINISHED
    session.dirty = True

    jobs = list(session.jobs.values())
    effects: list[Effect] = [
        WriteExportFile(
            path=config.export_path,
            content=build_export(jobs, normalizer=config.normalizer),
        )
    ]
    if config.write_manifest:
        effects.append(
            WriteManifest(
                path=config.manifest_path,
                content=build_manifest(
                    jobs, token_scheme=config.token_scheme, normalizer=config.normalizer
                ),
            )
        )
    effects.append(PersistSnapshot(jobs=tuple(session.completed_jobs_snapshot())))
    return effects
