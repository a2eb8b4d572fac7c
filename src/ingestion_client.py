"""
Caller-side API for ingestion runs.

    client = IngestionClient(settings)
    handle = client.submit("soh.xlsx", on_progress=print)
    result = handle.result()        # IngestionResult, or raises IngestionError

Messages produced by the worker thread are consumed on the caller's thread:
on_progress callbacks run inside messages()/result(), never on the worker.
"""

import queue
import threading
import time
from datetime import date
from pathlib import Path
from typing import Callable, Iterator, Optional

from app_config import IngestionSettings
from exceptions import IngestionBusyError, IngestionCancelledError
from ingestion_worker import (
    CompleteMessage,
    ErrorMessage,
    IngestionWorker,
    ProgressMessage,
    WorkerMessage,
)
from logger import get_logger
from models import IngestionProgress, IngestionResult
from workbook_reader import Source

logger = get_logger(__name__)

ProgressCallback = Callable[[IngestionProgress], None]


def default_source_label(source: Source, today: Optional[date] = None) -> str:
    """File name of the source, or SOH_<YYYY-MM-DD>.xlsx when it has none."""
    name = source if isinstance(source, (str, Path)) else getattr(source, 'name', None)
    if isinstance(name, (str, Path)) and Path(name).name:
        return Path(name).name
    return f"SOH_{(today or date.today()).isoformat()}.xlsx"


class IngestionHandle:
    """
    Handle to one submitted run.

    A handle is single-consumer: messages() and result() read from the same
    outbox, so use one or the other from one thread.
    """

    def __init__(self, worker: IngestionWorker, outbox: "queue.Queue[WorkerMessage]",
                 on_progress: Optional[ProgressCallback] = None,
                 on_finished: Optional[Callable[['IngestionHandle'], None]] = None):
        self._worker = worker
        self._outbox = outbox
        self._on_progress = on_progress
        self._on_finished = on_finished
        self._terminal: Optional[WorkerMessage] = None
        self._lock = threading.Lock()

        self.last_progress: Optional[IngestionProgress] = None

    @property
    def run_id(self) -> str:
        return self._worker.run_id

    @property
    def source_label(self) -> str:
        return self._worker.source_label

    @property
    def done(self) -> bool:
        """True once the terminal message was posted by the worker."""
        return self._terminal is not None or self._worker.finished

    def cancel(self) -> bool:
        """Request cancellation; False when the run already finished."""
        cancelled = self._worker.cancel()
        if cancelled:
            logger.info(f"Cancellation requested for run {self.run_id}")
        return cancelled

    def messages(self, timeout: Optional[float] = None) -> Iterator[WorkerMessage]:
        """
        Yield worker messages in order, ending with the terminal one.

        Args:
            timeout: Overall seconds to wait; queue.Empty is raised when it
                expires before the terminal message arrives
        """
        if self._terminal is not None:
            yield self._terminal
            return

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            message = self._outbox.get(timeout=remaining)

            if isinstance(message, ProgressMessage):
                self.last_progress = message.progress
                if self._on_progress is not None:
                    self._on_progress(message.progress)
                yield message
                continue

            self._finish(message)
            yield message
            return

    def result(self, timeout: Optional[float] = None) -> IngestionResult:
        """
        Wait for the run and return its result.

        Raises:
            IngestionError: The terminal error of the run
            IngestionCancelledError: Also raised when `timeout` expires; the
                run is cancelled in that case
        """
        if self._terminal is None:
            try:
                for _ in self.messages(timeout):
                    pass
            except queue.Empty:
                logger.warning(f"Run {self.run_id} timed out after {timeout}s, cancelling")
                self.cancel()
                self._drain()
                if not isinstance(self._terminal, CompleteMessage):
                    raise IngestionCancelledError(f"timed out after {timeout}s")

        if isinstance(self._terminal, ErrorMessage):
            raise self._terminal.error
        return self._terminal.result

    def _drain(self) -> None:
        # The worker notices cancellation at its next batch boundary
        for _ in self.messages():
            pass

    def _finish(self, message: WorkerMessage) -> None:
        with self._lock:
            if self._terminal is not None:
                return
            self._terminal = message
        self._worker.join()
        if self._on_finished is not None:
            self._on_finished(self)


class IngestionClient:
    """
    Submits ingestion runs, one at a time.

    Args:
        settings: Ingestion tunables shared by every run
    """

    def __init__(self, settings: Optional[IngestionSettings] = None):
        self.settings = settings or IngestionSettings()
        self._active: Optional[IngestionHandle] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> Optional[IngestionHandle]:
        with self._lock:
            return self._active

    def submit(self, source: Source, source_label: Optional[str] = None,
               on_progress: Optional[ProgressCallback] = None) -> IngestionHandle:
        """
        Start ingesting `source` in the background.

        Raises:
            IngestionBusyError: Another run has not delivered its terminal message yet
        """
        label = source_label or default_source_label(source)

        with self._lock:
            if self._active is not None and not self._active.done:
                raise IngestionBusyError(
                    f"An upload is already in progress ({self._active.source_label})"
                )

            outbox: "queue.Queue[WorkerMessage]" = queue.Queue()
            worker = IngestionWorker(source, outbox, self.settings, label)
            handle = IngestionHandle(worker, outbox, on_progress, self._release)
            self._active = handle
            worker.start()

        logger.info(f"Submitted run {handle.run_id} for {label}")
        return handle

    def run(self, source: Source, source_label: Optional[str] = None,
            on_progress: Optional[ProgressCallback] = None,
            timeout: Optional[float] = None) -> IngestionResult:
        """Submit and wait; see IngestionHandle.result()."""
        return self.submit(source, source_label, on_progress).result(timeout)

    def _release(self, handle: IngestionHandle) -> None:
        with self._lock:
            if self._active is handle:
                self._active = None

