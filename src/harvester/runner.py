from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .intake import (
    DEFAULT_INTAKE_CAPACITY,
    CancellationCoordinator,
    ConcurrencyLimiter,
    IntakeClosed,
    IntakeFull,
    IntakeQueue,
)
from .manifest import ManifestWriter
from .messages import (
    CancelSession,
    Effect,
    EnqueueJob,
    JobDone,
    Msg,
    PersistSnapshot,
    StartSession,
    WriteExportFile,
    WriteManifest,
)
from .models import Cancelled, Failed, FailureKind, JobId, JobOutcome, Stage
from .persist import PersistError, atomic_write_text, ensure_output_dir
from .pipeline import ItemPipeline
from .state import HarvestState

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_S = 0.075


@dataclass(frozen=True)
class RunnerConfig:
    intake_capacity: int = DEFAULT_INTAKE_CAPACITY
    max_in_flight: int | None = None
    tick_interval_s: float = DEFAULT_TICK_INTERVAL_S


@dataclass(frozen=True)
class _QueuedJob:
    job_id: JobId
    url: str


class _Run:
    """Per-session plumbing: one intake, one token, a feeder and a dispatcher.

    Jobs that do not fit in the intake wait in `backlog` until the feeder
    thread can push them in. `lock` guards `backlog` and `feeding`.
    """

    def __init__(self, capacity: int) -> None:
        self.coordinator = CancellationCoordinator()
        self.intake: IntakeQueue[_QueuedJob] = IntakeQueue(capacity)
        self.backlog: deque[_QueuedJob] = deque()
        self.feeding: _QueuedJob | None = None
        self.lock = threading.Condition()
        self.feeder: threading.Thread | None = None
        self.dispatcher: threading.Thread | None = None

    def close(self) -> None:
        with self.lock:
            self.intake.close()
            self.lock.notify_all()

    def threads(self) -> list[threading.Thread]:
        return [t for t in (self.feeder, self.dispatcher) if t is not None]


class EffectRunner:
    """Executes reducer effects and reports job outcomes back as messages."""

    def __init__(
        self,
        pipeline: ItemPipeline,
        post: Callable[[Msg], None],
        *,
        config: RunnerConfig | None = None,
        state: HarvestState | None = None,
        manifest: ManifestWriter | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._post = post
        self._config = config or RunnerConfig()
        self._state = state
        self._manifest = manifest
        self.limiter = ConcurrencyLimiter(self._config.max_in_flight)
        self._jobs = ThreadPoolExecutor(
            max_workers=self.limiter.capacity,
            thread_name_prefix="harvester-job",
        )
        self._run: _Run | None = None
        self.errors: list[str] = []

    @property
    def current(self) -> CancellationCoordinator | None:
        return self._run.coordinator if self._run is not None else None

    def execute(self, effect: Effect) -> None:
        if isinstance(effect, StartSession):
            self._start_session()
        elif isinstance(effect, EnqueueJob):
            self._enqueue(effect)
        elif isinstance(effect, CancelSession):
            self._cancel(effect)
        elif isinstance(effect, (WriteExportFile, WriteManifest)):
            self._write_file(effect.path, effect.content)
        elif isinstance(effect, PersistSnapshot):
            self._persist_snapshot(effect)
        else:
            raise TypeError(f"Unsupported effect: {effect!r}")

    def shutdown(self, *, wait: bool = True) -> None:
        run = self._run
        if run is not None:
            run.coordinator.token.cancel()
            run.close()
            if wait:
                for thread in run.threads():
                    thread.join()
        self._jobs.shutdown(wait=wait)

    # Effects

    def _start_session(self) -> None:
        previous = self._run
        if previous is not None:
            previous.close()

        output_dir = self._pipeline.config.output_dir
        try:
            ensure_output_dir(output_dir)
        except PersistError as e:
            # Jobs will fail individually with IO_ERROR at the write stage.
            logger.error("%s", e)
            self.errors.append(str(e))

        run = _Run(self._config.intake_capacity)
        run.feeder = threading.Thread(
            target=self._feed,
            args=(run,),
            name="harvester-feeder",
            daemon=True,
        )
        run.dispatcher = threading.Thread(
            target=self._dispatch,
            args=(run,),
            name="harvester-dispatcher",
            daemon=True,
        )
        self._run = run
        run.feeder.start()
        run.dispatcher.start()
        logger.info(
            "Session started (max in flight %d, intake capacity %d)",
            self.limiter.capacity,
            run.intake.capacity,
        )

    def _enqueue(self, effect: EnqueueJob) -> None:
        run = self._run
        if run is None or run.coordinator.is_cancelled():
            self._report(effect.job_id, effect.url, Cancelled(stage=Stage.QUEUED), run)
            return
        run.coordinator.track(effect.job_id)
        item = _QueuedJob(job_id=effect.job_id, url=effect.url)
        if not self._offer(run, item):
            self._report(item.job_id, item.url, Cancelled(stage=Stage.QUEUED), run)

    def _offer(self, run: _Run, item: _QueuedJob) -> bool:
        """Queue `item` without blocking the caller; False once intake is closed.

        Runs on the driver thread. A full intake parks the job in the backlog
        for the feeder, and so does a non-empty backlog, to keep FIFO order.
        """

        with run.lock:
            if run.intake.closed:
                return False
            if not run.backlog and run.feeding is None:
                try:
                    run.intake.put_nowait(item)
                    return True
                except IntakeFull:
                    pass
                except IntakeClosed:
                    return False
            run.backlog.append(item)
            run.lock.notify()
            return True

    def _cancel(self, effect: CancelSession) -> None:
        run = self._run
        if run is None:
            return
        logger.info("Stopping session (%s)", effect.policy.value)
        run.coordinator.token.cancel()
        with run.lock:
            run.intake.close()
            waiting = list(run.backlog)
            run.backlog.clear()
            run.lock.notify_all()
        drained = run.intake.drain() + waiting
        for item in drained:
            self._report(item.job_id, item.url, Cancelled(stage=Stage.QUEUED), run)
        if drained:
            logger.info("Cancelled %d queued jobs", len(drained))

    def _write_file(self, path: Path, content: str) -> None:
        try:
            atomic_write_text(path, content)
        except PersistError as e:
            logger.error("%s", e)
            self.errors.append(str(e))
            return
        logger.info("Wrote %s", path)

    def _persist_snapshot(self, effect: PersistSnapshot) -> None:
        if self._state is None:
            return
        try:
            self._state.save(effect.jobs)
        except PersistError as e:
            logger.error("%s", e)
            self.errors.append(str(e))

    # Worker side

    def _feed(self, run: _Run) -> None:
        token = run.coordinator.token
        while True:
            with run.lock:
                while not run.backlog and not run.intake.closed:
                    run.lock.wait()
                if not run.backlog:
                    return
                item = run.backlog.popleft()
                run.feeding = item
            try:
                run.intake.put(item, token=token)
            except IntakeClosed:
                self._report(item.job_id, item.url, Cancelled(stage=Stage.QUEUED), run)
            else:
                if token.is_cancelled():
                    # Landed after the stop drained the intake.
                    for late in run.intake.drain():
                        self._report(late.job_id, late.url, Cancelled(stage=Stage.QUEUED), run)
            finally:
                with run.lock:
                    run.feeding = None

    def _dispatch(self, run: _Run) -> None:
        token = run.coordinator.token
        while True:
            item = run.intake.get()
            if item is None:
                if run.intake.closed:
                    return
                continue
            if token.is_cancelled():
                self._report(item.job_id, item.url, Cancelled(stage=Stage.QUEUED), run)
                continue
            if not self.limiter.acquire_unless_cancelled(token):
                self._report(item.job_id, item.url, Cancelled(stage=Stage.QUEUED), run)
                continue
            try:
                self._jobs.submit(self._run_job, item, run)
            except RuntimeError:
                # Executor already shut down.
                self.limiter.release()
                self._report(item.job_id, item.url, Cancelled(stage=Stage.QUEUED), run)

    def _run_job(self, item: _QueuedJob, run: _Run) -> None:
        abandoned: list[threading.Thread] = []
        try:
            outcome = self._pipeline.run(
                item.job_id,
                item.url,
                token=run.coordinator.token,
                emit=self._post,
                on_abandoned=abandoned.append,
            )
        except Exception as e:
            logger.exception("Job %d (%s) crashed", item.job_id, item.url)
            outcome = Failed(kind=FailureKind.OTHER, stage=Stage.QUEUED, message=str(e))
        finally:
            if abandoned:
                self._release_after(abandoned)
            else:
                self.limiter.release()
        self._report(item.job_id, item.url, outcome, run)

    def _release_after(self, workers: list[threading.Thread]) -> None:
        # A timed-out stage still occupies its slot until its thread returns.
        def _wait() -> None:
            for worker in workers:
                worker.join()
            self.limiter.release()

        threading.Thread(target=_wait, name="harvester-slot-release", daemon=True).start()

    def _report(
        self,
        job_id: JobId,
        url: str,
        outcome: JobOutcome,
        run: _Run | None,
    ) -> None:
        if self._manifest is not None:
            try:
                self._manifest.record(job_id, url, outcome)
            except OSError as e:
                logger.warning("Could not append manifest event for job %d: %s", job_id, e)
        if run is not None:
            run.coordinator.finished(job_id)
        self._post(JobDone(job_id=job_id, outcome=outcome))
