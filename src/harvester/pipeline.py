from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .content import DecodeError, decode_html
from .convert.html_to_md import SanitizedPage, html_to_markdown, sanitize_html
from .convert.links import DEFAULT_MAX_LINKS, LinkExtraction, extract_links
from .filename import deterministic_filename
from .http_client import FetchError, FetchResult, HttpClient
from .intake import CancellationToken
from .manifest import utc_iso
from .messages import JobProgress, Msg
from .models import Cancelled, Failed, FailureKind, JobId, JobOutcome, Stage, Success
from .persist import DocumentHeader, PersistError, write_document
from .tokens import DEFAULT_SCHEME, get_token_counter
from .urls import DEFAULT_NORMALIZER, UrlNormalizer

logger = logging.getLogger(__name__)

Emit = Callable[[Msg], None]


@dataclass(frozen=True)
class StageBudgets:
    """Wall-clock budget per stage, in seconds."""

    fetch_s: float = 60.0
    sanitize_s: float = 30.0
    convert_s: float = 15.0
    tokenize_s: float = 10.0
    write_s: float = 10.0

    def for_stage(self, stage: Stage) -> float:
        return {
            Stage.DOWNLOADING: self.fetch_s,
            Stage.SANITIZING: self.sanitize_s,
            Stage.CONVERTING: self.convert_s,
            Stage.TOKENIZING: self.tokenize_s,
            Stage.WRITING: self.write_s,
        }[stage]


@dataclass(frozen=True)
class PipelineConfig:
    output_dir: Path
    budgets: StageBudgets = field(default_factory=StageBudgets)
    max_links: int = DEFAULT_MAX_LINKS
    token_scheme: str = DEFAULT_SCHEME
    normalizer: UrlNormalizer = DEFAULT_NORMALIZER
    clock: Callable[[], str] = utc_iso


class StageTimeout(Exception):
    def __init__(
        self,
        stage: Stage,
        budget_s: float,
        worker: threading.Thread | None = None,
    ) -> None:
        super().__init__(f"{stage.value} exceeded {budget_s:g}s")
        self.stage = stage
        self.budget_s = budget_s
        self.worker = worker


class _StageThread(threading.Thread):
    """One stage call on its own daemon thread, joined with the stage budget."""

    def __init__(self, stage: Stage, fn: Callable[..., Any], args: tuple[Any, ...]) -> None:
        super().__init__(name=f"harvester-{stage.value}", daemon=True)
        self._call = fn
        self._call_args = args
        self._value: Any = None
        self._error: Exception | None = None

    def run(self) -> None:
        try:
            self._value = self._call(*self._call_args)
        except Exception as e:
            self._error = e

    def value(self) -> Any:
        if self._error is not None:
            raise self._error
        return self._value


class _StageFailed(Exception):
    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class _Converted:
    body: str
    links: LinkExtraction


class ItemPipeline:
    """Runs one job's stages in order, each under its own watchdog.

    Each stage call gets a fresh thread, so its budget starts when the stage
    does. An expired stage keeps running in the background until it returns;
    its result is discarded and its thread is handed to `on_abandoned`.
    """

    def __init__(self, config: PipelineConfig, client: HttpClient) -> None:
        self._config = config
        self._client = client
        self._counter = get_token_counter(config.token_scheme)

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def run(
        self,
        job_id: JobId,
        url: str,
        *,
        token: CancellationToken,
        emit: Emit,
        on_abandoned: Callable[[threading.Thread], None] | None = None,
    ) -> JobOutcome:
        stage = Stage.QUEUED
        try:
            stage = Stage.DOWNLOADING
            emit(JobProgress(job_id=job_id, stage=stage, bytes=0))
            fetched: FetchResult = self._run_stage(
                stage,
                self._fetch,
                url,
                lambda n: emit(JobProgress(job_id=job_id, stage=Stage.DOWNLOADING, bytes=n)),
            )
            fetched_utc = self._config.clock()

            if token.is_cancelled():
                return Cancelled(stage=stage)
            stage = Stage.SANITIZING
            emit(JobProgress(job_id=job_id, stage=stage))
            page, encoding = self._run_stage(stage, self._sanitize, fetched)

            if token.is_cancelled():
                return Cancelled(stage=stage)
            stage = Stage.CONVERTING
            emit(JobProgress(job_id=job_id, stage=stage))
            converted: _Converted = self._run_stage(stage, self._convert, page)

            if token.is_cancelled():
                return Cancelled(stage=stage)
            stage = Stage.TOKENIZING
            emit(JobProgress(job_id=job_id, stage=stage))
            tokens: int = self._run_stage(stage, self._counter.count, converted.body)
            emit(JobProgress(job_id=job_id, stage=stage, tokens=tokens))

            if token.is_cancelled():
                return Cancelled(stage=stage)
            stage = Stage.WRITING
            emit(JobProgress(job_id=job_id, stage=stage))
            filename = deterministic_filename(
                page.title, url, normalizer=self._config.normalizer
            )
            header = DocumentHeader(
                url=fetched.final_url,
                title=page.title,
                fetched_utc=fetched_utc,
                encoding=encoding,
                token_scheme=self._counter.scheme,
                token_count=tokens,
            )
            written: int = self._run_stage(stage, self._write, filename, header, converted.body)
        except StageTimeout as e:
            logger.warning("Job %d (%s): %s", job_id, url, e)
            if e.worker is not None and on_abandoned is not None:
                on_abandoned(e.worker)
            return Failed(kind=FailureKind.TIMEOUT, stage=e.stage, message=str(e))
        except _StageFailed as e:
            logger.warning("Job %d (%s) failed while %s: %s", job_id, url, stage.value, e.message)
            return Failed(kind=e.kind, stage=stage, message=e.message)
        except Exception as e:
            logger.exception("Job %d (%s) crashed while %s", job_id, url, stage.value)
            return Failed(kind=FailureKind.OTHER, stage=stage, message=f"{type(e).__name__}: {e}")

        logger.info("Job %d done: %s -> %s (%d tokens)", job_id, url, filename, tokens)
        return Success(
            final_url=fetched.final_url,
            title=page.title,
            tokens=tokens,
            token_scheme=self._counter.scheme,
            bytes=written,
            links=converted.links.links,
            links_truncated=converted.links.truncated,
            filename=filename,
            fetched_utc=fetched_utc,
            body=converted.body,
            redirect_count=fetched.redirect_count,
        )

    def _run_stage(self, stage: Stage, fn: Callable[..., Any], *args: Any) -> Any:
        budget = self._config.budgets.for_stage(stage)
        worker = _StageThread(stage, fn, args)
        worker.start()
        worker.join(budget)
        if worker.is_alive():
            raise StageTimeout(stage, budget, worker)
        return worker.value()

    def _fetch(self, url: str, on_progress: Callable[[int], None]) -> FetchResult:
        try:
            return self._client.get(url, on_progress=on_progress)
        except FetchError as e:
            raise _StageFailed(e.kind, e.message) from e

    def _sanitize(self, fetched: FetchResult) -> tuple[SanitizedPage, str]:
        try:
            decoded = decode_html(fetched.body, content_type=fetched.content_type)
        except DecodeError as e:
            raise _StageFailed(FailureKind.PARSE_ERROR, str(e)) from e
        return sanitize_html(decoded.html, page_url=fetched.final_url), decoded.encoding

    def _convert(self, page: SanitizedPage) -> _Converted:
        body = html_to_markdown(page.main)
        links = extract_links(
            page.document,
            base_url=page.base_url,
            max_links=self._config.max_links,
        )
        return _Converted(body=body, links=links)

    def _write(self, filename: str, header: DocumentHeader, body: str) -> int:
        try:
            return write_document(self._config.output_dir, filename, header, body)
        except PersistError as e:
            raise _StageFailed(FailureKind.IO_ERROR, str(e)) from e
