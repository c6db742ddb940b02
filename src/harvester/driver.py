from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

import requests

from .http_client import FetchSettings, HttpClient
from .manifest import ManifestWriter
from .messages import Msg, RestoreCompletedJobs, StopRequested, Tick, UrlsSubmitted
from .models import SessionState
from .pipeline import ItemPipeline, PipelineConfig
from .runner import EffectRunner, RunnerConfig
from .session import Session, SessionConfig, SessionView, update
from .state import HarvestState

logger = logging.getLogger(__name__)

ViewCallback = Callable[[SessionView], None]


class _Barrier:
    # Driver-internal; never reaches the reducer.
    def __init__(self) -> None:
        self.done = threading.Event()


class SessionDriver:
    """Owns the session and is the only thread that calls `update`.

    Everything else (UI, CLI, worker threads) talks to it by posting messages.
    """

    def __init__(
        self,
        *,
        session_config: SessionConfig | None = None,
        fetch_settings: FetchSettings | None = None,
        pipeline_config: PipelineConfig | None = None,
        runner_config: RunnerConfig | None = None,
        http_session: requests.Session | None = None,
        on_view: ViewCallback | None = None,
        persist_state: bool = True,
        write_events: bool = True,
    ) -> None:
        session_config = session_config or SessionConfig()
        runner_config = runner_config or RunnerConfig()
        pipeline_config = pipeline_config or PipelineConfig(
            output_dir=session_config.output_dir,
            token_scheme=session_config.token_scheme,
            normalizer=session_config.normalizer,
        )

        self.session = Session(config=session_config)
        self._inbox: queue.Queue[Msg | None] = queue.Queue()
        self._on_view = on_view
        self._tick_interval_s = runner_config.tick_interval_s

        self._http_session = http_session or requests.Session()
        client = HttpClient(self._http_session, settings=fetch_settings)
        pipeline = ItemPipeline(pipeline_config, client)

        output_dir = session_config.output_dir
        self.state = HarvestState(output_dir) if persist_state else None
        self.runner = EffectRunner(
            pipeline,
            self.post,
            config=runner_config,
            state=self.state,
            manifest=ManifestWriter(output_dir) if write_events else None,
        )

        self._view_lock = threading.Lock()
        self._view = self.session.view()
        self._finished = threading.Event()
        self._stopping = threading.Event()
        self._loop_thread: threading.Thread | None = None
        self._ticker_thread: threading.Thread | None = None
        self.error: BaseException | None = None

    # Public API, safe from any thread

    def post(self, msg: Msg) -> None:
        self._inbox.put(msg)

    def submit(self, text: str) -> None:
        self.post(UrlsSubmitted(text=text))

    def stop(self) -> None:
        self.post(StopRequested())

    def restore(self) -> int:
        """Queue previously completed jobs from the state file; returns how many."""

        if self.state is None:
            return 0
        snapshots = self.state.load()
        if snapshots:
            self.post(RestoreCompletedJobs(jobs=tuple(snapshots)))
        return len(snapshots)

    @property
    def view(self) -> SessionView:
        with self._view_lock:
            return self._view

    def sync(self, timeout: float | None = None) -> SessionView:
        """Wait until every message posted so far has been applied.

        Returns a fresh view. Raises TimeoutError if the driver does not catch
        up within `timeout`.
        """

        barrier = _Barrier()
        self._inbox.put(barrier)
        if not barrier.done.wait(timeout):
            raise TimeoutError("Session driver did not catch up")
        return self.view

    def start(self) -> None:
        if self._loop_thread is not None:
            return
        self._loop_thread = threading.Thread(
            target=self._loop, name="harvester-driver", daemon=True
        )
        self._ticker_thread = threading.Thread(
            target=self._tick, name="harvester-ticker", daemon=True
        )
        self._loop_thread.start()
        self._ticker_thread.start()

    def wait_finished(self, timeout: float | None = None) -> bool:
        """Block until the session reaches FINISHED (or the driver loop died)."""

        return self._finished.wait(timeout)

    def close(self) -> None:
        self._stopping.set()
        self._inbox.put(None)
        if self._ticker_thread is not None:
            self._ticker_thread.join()
        if self._loop_thread is not None:
            self._loop_thread.join()
        self.runner.shutdown(wait=True)
        self._http_session.close()

    def __enter__(self) -> SessionDriver:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # Driver side

    def _publish(self) -> None:
        view = self.session.view()
        with self._view_lock:
            self._view = view
        if self._on_view is not None:
            self._on_view(view)

    def _tick(self) -> None:
        while not self._stopping.wait(self._tick_interval_s):
            self.post(Tick())

    def _loop(self) -> None:
        try:
            while True:
                msg = self._inbox.get()
                if msg is None:
                    return
                if isinstance(msg, _Barrier):
                    self._publish()
                    msg.done.set()
                    continue
                render = isinstance(msg, Tick) and self.session.dirty
                self.session, effects = update(self.session, msg)
                for effect in effects:
                    self.runner.execute(effect)

                if self.session.state is SessionState.FINISHED:
                    if not self._finished.is_set():
                        self._publish()
                        logger.info(
                            "Session finished: %d succeeded, %d failed, %d cancelled",
                            self.session.succeeded,
                            self.session.failed,
                            self.session.cancelled,
                        )
                        self._finished.set()
                elif self._finished.is_set():
                    self._finished.clear()

                if render:
                    self._publish()
        except Exception as e:
            logger.exception("Session driver stopped")
            self.error = e
            self._finished.set()
