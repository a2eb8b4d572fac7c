"""
Background ingestion worker.

Runs one spreadsheet through the pipeline on a daemon thread:

    WorkbookReader -> map_row -> ContainerAggregator -> IngestionResult

and talks to its caller only through a queue.Queue outbox:
- ProgressMessage: zero or more, at most one per ProgressIntervalMs
- CompleteMessage / ErrorMessage: exactly one, always last

Concurrency model:
- start() and cancel() are called from the caller's thread
- Records built by the worker are not visible to anyone until the terminal
  CompleteMessage hands them over
- cancel() and terminal posting share a lock, so once cancel() returned True
  the run can only end with IngestionCancelledError
"""

import queue
import threading
import time
import uuid
from dataclasses import dataclass
from itertools import islice
from typing import Callable, Dict, List, Optional, Union

from app_config import IngestionSettings
from container_aggregator import ContainerAggregator
from exceptions import (
    IngestionCancelledError,
    IngestionError,
    IngestionFailedError,
    IngestionStateError,
)
from logger import clear_logging_context, get_logger, set_run_context, set_source_context
from models import IngestionProgress, IngestionResult, InventoryRecord, PHASE_READING, RowRejection
from performance_utils import log_timing
from progress import ProgressTracker
from record_mapper import bind_columns, bind_container_columns, map_container_row, map_row
from workbook_reader import Source, WorkbookReader, open_workbook_reader

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressMessage:
    run_id: str
    progress: IngestionProgress


@dataclass(frozen=True)
class CompleteMessage:
    run_id: str
    result: IngestionResult


@dataclass(frozen=True)
class ErrorMessage:
    run_id: str
    error: IngestionError

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def reason(self) -> str:
        return str(self.error)


WorkerMessage = Union[ProgressMessage, CompleteMessage, ErrorMessage]


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class IngestionWorker:
    """
    One ingestion run on a background thread.

    Args:
        source: Path or binary handle; the worker takes ownership and closes it
        outbox: Queue receiving WorkerMessage objects
        settings: Ingestion tunables (defaults when None)
        source_label: Label recorded on the result and in logs
        run_id: Identifier stamped on every message (generated when None)
        clock: Monotonic time source for progress (injectable for tests)
    """

    def __init__(
        self,
        source: Source,
        outbox: "queue.Queue[WorkerMessage]",
        settings: Optional[IngestionSettings] = None,
        source_label: str = '',
        run_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.outbox = outbox
        self.settings = settings or IngestionSettings()
        self.source_label = source_label
        self.run_id = run_id or new_run_id()
        self._clock = clock

        self._cancel_event = threading.Event()
        self._terminal_lock = threading.Lock()
        self._terminal_sent = False
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the run. A worker can only be started once."""
        if self._thread is not None:
            raise IngestionStateError(f"Ingestion run {self.run_id} was already started")

        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"ingestion-{self.run_id}"
        )
        self._thread.start()

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns:
            True if the run will end with IngestionCancelledError, False if
            its terminal message had already been posted
        """
        with self._terminal_lock:
            if self._terminal_sent:
                return False
            self._cancel_event.set()
            return True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def finished(self) -> bool:
        return self._terminal_sent

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Message posting
    # ------------------------------------------------------------------

    def _post_progress(self, progress: Optional[IngestionProgress]) -> None:
        if progress is None:
            return
        with self._terminal_lock:
            if not self._terminal_sent:
                self.outbox.put(ProgressMessage(self.run_id, progress))

    def _post_terminal(self, result: Optional[IngestionResult] = None,
                       error: Optional[IngestionError] = None,
                       final_progress: Optional[IngestionProgress] = None) -> None:
        with self._terminal_lock:
            if self._terminal_sent:
                return
            if self._cancel_event.is_set() and not isinstance(error, IngestionCancelledError):
                error = IngestionCancelledError()

            self._terminal_sent = True
            if error is not None:
                self.outbox.put(ErrorMessage(self.run_id, error))
                return

            if final_progress is not None:
                self.outbox.put(ProgressMessage(self.run_id, final_progress))
            self.outbox.put(CompleteMessage(self.run_id, result))

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise IngestionCancelledError()

    # ------------------------------------------------------------------
    # Thread body
    # ------------------------------------------------------------------

    def _run(self) -> None:
        set_run_context(self.run_id)
        set_source_context(self.source_label or None)
        tracker = ProgressTracker(self.settings.progress_interval, self._clock)

        try:
            result = self._ingest(tracker)
        except IngestionCancelledError as e:
            logger.info("Ingestion cancelled")
            self._post_terminal(error=e)
        except IngestionError as e:
            logger.error(f"Ingestion failed ({e.kind}): {e}")
            self._post_terminal(error=e)
        except Exception as e:
            # Thread boundary: anything else still has to end the run
            logger.error(f"Unexpected ingestion failure: {e}", exc_info=True)
            self._post_terminal(error=IngestionFailedError(str(e) or type(e).__name__,
                                                           type(e).__name__))
        else:
            logger.info(
                f"Ingestion complete: {len(result.records)} records, "
                f"{len(result.containers)} containers, {result.rejected_count} rejected, "
                f"{result.duplicate_count} duplicates in {result.elapsed_seconds:.1f}s"
            )
            self._post_terminal(result=result, final_progress=tracker.finish())
        finally:
            clear_logging_context()

    def _release_source(self) -> None:
        close = getattr(self.source, 'close', None)
        if close is not None:
            close()

    def _ingest(self, tracker: ProgressTracker) -> IngestionResult:
        if self._cancel_event.is_set():
            # Never opened, but the handle is still ours to close
            self._release_source()
            raise IngestionCancelledError()
        logger.info(f"Ingestion started: {self.source_label or self.source}")

        def on_bytes(processed: int, total: int) -> None:
            tracker.update_bytes(processed, total)
            if tracker.phase == PHASE_READING:
                # Chunk boundary while the workbook is being opened
                self._check_cancelled()
                self._post_progress(tracker.poll())

        with log_timing(f"Ingest {self.source_label or 'upload'}", threshold_ms=1000,
                        unit="rows") as timer, \
                open_workbook_reader(self.source, self.settings, on_bytes) as reader:
            self._check_cancelled()
            binding = bind_columns(reader.header)

            tracker.start_mapping(reader.rows_total)
            self._post_progress(tracker.snapshot())

            records: Dict[str, InventoryRecord] = {}
            aggregator = ContainerAggregator(self.settings.default_container_location)
            rejections: List[RowRejection] = []
            rejected_count = 0
            duplicate_count = 0
            rows_read = 0

            rows = reader.rows()
            while True:
                batch = list(islice(rows, self.settings.row_batch_size))
                if not batch:
                    break

                for row_number, row in batch:
                    mapped = map_row(row, binding, row_number, reader.worksheet or '')
                    if mapped.rejection is not None:
                        rejected_count += 1
                        if len(rejections) < self.settings.max_rejections_kept:
                            rejections.append(mapped.rejection)
                        continue

                    record = mapped.record
                    if record.identifier in records:
                        duplicate_count += 1
                    records[record.identifier] = record
                    aggregator.add(record)

                rows_read += len(batch)
                timer.count(len(batch))
                tracker.add_rows(len(batch))
                del batch

                self._check_cancelled()
                self._post_progress(tracker.poll())

            self._read_containers(reader, aggregator)
            self._check_cancelled()

            if rejected_count:
                logger.warning(f"{rejected_count} row(s) rejected in '{reader.worksheet}'")

            return IngestionResult(
                records=list(records.values()),
                containers=aggregator.containers,
                rejections=rejections,
                rejected_count=rejected_count,
                duplicate_count=duplicate_count,
                blank_rows=reader.blank_rows,
                rows_read=rows_read,
                source_label=self.source_label,
                worksheet=reader.worksheet,
                elapsed_seconds=round(tracker.elapsed, 3),
            )

    def _read_containers(self, reader: WorkbookReader, aggregator: ContainerAggregator) -> None:
        """Seed container names and locations from the optional containers sheet."""
        binding = None
        seeded = 0
        sheet = getattr(reader, 'containers_sheet', None) or ''

        for row_number, row in reader.container_rows():
            if binding is None:
                binding = bind_container_columns(reader.container_header)
                if binding is None:
                    logger.warning(f"Sheet '{sheet}' has no box number column, ignored")
                    return

            mapped = map_container_row(row, binding, row_number, sheet,
                                       self.settings.default_container_location)
            if mapped.container is None:
                logger.debug(f"Skipping row {row_number} of '{sheet}': {mapped.rejection.reasons}")
                continue
            aggregator.seed(mapped.container)
            seeded += 1

        if seeded:
            logger.info(f"Seeded {seeded} container(s) from '{sheet}'")
