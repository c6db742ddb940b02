import threading
import time

import requests
import responses

from harvester.filename import deterministic_filename
from harvester.http_client import FetchError, FetchResult, FetchSettings, HttpClient
from harvester.intake import CancellationToken
from harvester.messages import JobProgress
from harvester.models import Cancelled, Failed, FailureKind, LinkKind, Stage, Success
from harvester.persist import read_document
from harvester.pipeline import ItemPipeline, PipelineConfig, StageBudgets
from harvester.urls import UrlNormalizer

PAGE = (
    "<html><head><title>Hello Page</title></head><body>"
    "<nav><a href='/skip'>menu</a></nav>"
    "<article><h1>Hello</h1><p>Some text with a <a href='/next'>link</a>.</p></article>"
    "</body></html>"
)
FIXED_UTC = "2024-01-01T00:00:00Z"


class StubClient:
    def __init__(self, fn):
        self._fn = fn

    def get(self, url, *, on_progress=None):
        return self._fn(url, on_progress)


def _result(url: str, html: str = PAGE) -> FetchResult:
    return FetchResult(
        url=url,
        final_url=url,
        status_code=200,
        headers={"Content-Type": "text/html; charset=utf-8"},
        body=html.encode("utf-8"),
    )


def _pipeline(tmp_path, client, **config) -> ItemPipeline:
    config.setdefault("clock", lambda: FIXED_UTC)
    return ItemPipeline(
        PipelineConfig(output_dir=tmp_path, **config),
        client,
    )


@responses.activate
def test_successful_job_writes_document_and_reports_stages(tmp_path):
    url = "https://example.com/hello"
    responses.add(responses.GET, url, body=PAGE, status=200, content_type="text/html")
    client = HttpClient(requests.Session(), settings=FetchSettings(retry_backoff_s=0))
    messages: list[JobProgress] = []

    outcome = _pipeline(tmp_path, client).run(
        7, url, token=CancellationToken(), emit=messages.append
    )

    assert isinstance(outcome, Success)
    assert outcome.title == "Hello Page"
    assert outcome.filename == deterministic_filename("Hello Page", url)
    assert outcome.fetched_utc == FIXED_UTC
    assert outcome.body.startswith("# Hello")
    assert outcome.tokens == len(outcome.body.split())
    assert [link.url for link in outcome.links] == ["https://example.com/next"]
    assert outcome.links[0].kind is LinkKind.HYPERLINK

    path = tmp_path / outcome.filename
    assert outcome.bytes == path.stat().st_size
    doc = read_document(path)
    assert doc.header.url == url
    assert doc.header.token_count == outcome.tokens
    assert doc.header.token_scheme == "whitespace-v1"
    assert doc.header.encoding == "utf-8"
    assert doc.body == outcome.body

    assert all(m.job_id == 7 for m in messages)
    stages = []
    for m in messages:
        if not stages or stages[-1] != m.stage:
            stages.append(m.stage)
    assert stages == [
        Stage.DOWNLOADING,
        Stage.SANITIZING,
        Stage.CONVERTING,
        Stage.TOKENIZING,
        Stage.WRITING,
    ]
    assert any(m.stage is Stage.DOWNLOADING and m.bytes == len(PAGE) for m in messages)
    assert any(m.stage is Stage.TOKENIZING and m.tokens == outcome.tokens for m in messages)


def test_fetch_failure_short_circuits(tmp_path):
    def _fail(url, on_progress):
        raise FetchError(FailureKind.HTTP_STATUS, f"HTTP 404 for {url}", status_code=404)

    outcome = _pipeline(tmp_path, StubClient(_fail)).run(
        1, "https://example.com/x", token=CancellationToken(), emit=lambda m: None
    )
    assert outcome == Failed(FailureKind.HTTP_STATUS, Stage.DOWNLOADING, "HTTP 404 for https://example.com/x")
    assert list(tmp_path.iterdir()) == []


def test_stage_watchdog_turns_slow_fetch_into_timeout(tmp_path):
    def _slow(url, on_progress):
        time.sleep(0.5)
        return _result(url)

    pipeline = _pipeline(
        tmp_path, StubClient(_slow), budgets=StageBudgets(fetch_s=0.05)
    )
    started = time.monotonic()
    outcome = pipeline.run(1, "https://example.com/x", token=CancellationToken(), emit=lambda m: None)
    assert time.monotonic() - started < 0.4
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.TIMEOUT
    assert outcome.stage is Stage.DOWNLOADING


def test_abandoned_stages_do_not_eat_later_budgets(tmp_path):
    release = threading.Event()

    def _fetch(url, on_progress):
        if "slow" in url:
            release.wait(5)
        return _result(url)

    pipeline = _pipeline(tmp_path, StubClient(_fetch), budgets=StageBudgets(fetch_s=0.2))
    abandoned: list[threading.Thread] = []
    try:
        slow = [
            pipeline.run(
                i,
                f"https://example.com/slow-{i}",
                token=CancellationToken(),
                emit=lambda m: None,
                on_abandoned=abandoned.append,
            )
            for i in (1, 2)
        ]
        fast = pipeline.run(
            3, "https://example.com/fast", token=CancellationToken(), emit=lambda m: None
        )
    finally:
        release.set()

    assert [o.kind for o in slow] == [FailureKind.TIMEOUT, FailureKind.TIMEOUT]
    assert isinstance(fast, Success)
    assert len(abandoned) == 2
    for worker in abandoned:
        worker.join(5)
        assert not worker.is_alive()


def test_filename_hash_follows_configured_normalizer(tmp_path):
    normalizer = UrlNormalizer(strip_trailing_slash=True, drop_query_params=frozenset({"utm_source"}))
    pipeline = _pipeline(
        tmp_path, StubClient(lambda url, cb: _result(url)), normalizer=normalizer
    )
    first = pipeline.run(
        1, "https://example.com/page/?utm_source=x", token=CancellationToken(), emit=lambda m: None
    )
    second = pipeline.run(
        2, "https://example.com/page", token=CancellationToken(), emit=lambda m: None
    )
    assert isinstance(first, Success) and isinstance(second, Success)
    assert first.filename == second.filename
    assert first.filename != deterministic_filename("Hello Page", "https://example.com/page/?utm_source=x")


def test_cancel_during_stage_finishes_it_then_stops(tmp_path):
    token = CancellationToken()

    def _fetch_then_cancel(url, on_progress):
        token.cancel()
        return _result(url)

    outcome = _pipeline(tmp_path, StubClient(_fetch_then_cancel)).run(
        1, "https://example.com/x", token=token, emit=lambda m: None
    )
    assert outcome == Cancelled(stage=Stage.DOWNLOADING)
    assert list(tmp_path.iterdir()) == []


def test_fragment_without_title_uses_fallback_name(tmp_path):
    def _fetch(url, on_progress):
        return _result(url, html="<p>bare fragment without html tag</p>")

    outcome = _pipeline(tmp_path, StubClient(_fetch)).run(
        1, "https://example.com/frag", token=CancellationToken(), emit=lambda m: None
    )
    assert isinstance(outcome, Success)
    assert outcome.title is None
    assert outcome.filename.startswith("document--")
    assert "bare fragment" in outcome.body


def test_write_failure_is_io_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    pipeline = ItemPipeline(
        PipelineConfig(output_dir=blocker, clock=lambda: FIXED_UTC),
        StubClient(lambda url, cb: _result(url)),
    )
    outcome = pipeline.run(1, "https://example.com/x", token=CancellationToken(), emit=lambda m: None)
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.IO_ERROR
    assert outcome.stage is Stage.WRITING


def test_unexpected_exception_becomes_other(tmp_path, monkeypatch):
    def _explode(main):
        raise RuntimeError("converter bug")

    monkeypatch.setattr("harvester.pipeline.html_to_markdown", _explode)
    outcome = _pipeline(tmp_path, StubClient(lambda url, cb: _result(url))).run(
        1, "https://example.com/x", token=CancellationToken(), emit=lambda m: None
    )
    assert isinstance(outcome, Failed)
    assert outcome.kind is FailureKind.OTHER
    assert outcome.stage is Stage.CONVERTING
    assert "converter bug" in outcome.message


def test_budgets_lookup():
    budgets = StageBudgets()
    assert budgets.for_stage(Stage.DOWNLOADING) == 60
    assert budgets.for_stage(Stage.SANITIZING) == 30
    assert budgets.for_stage(Stage.CONVERTING) == 15
    assert budgets.for_stage(Stage.TOKENIZING) == 10
    assert budgets.for_stage(Stage.WRITING) == 10
