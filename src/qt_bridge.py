"""
Qt adapter for the ingestion message protocol.

Presentation layers built on PySide6 cannot block on IngestionHandle.result()
in the GUI thread. IngestionRunner pumps the handle's messages on a QThread
and re-emits them as queued signals, so slots run on the GUI thread.
"""

import threading
from typing import Optional

from PySide6.QtCore import QThread, Signal

from exceptions import IngestionBusyError
from ingestion_client import IngestionClient, IngestionHandle
from ingestion_worker import CompleteMessage, ErrorMessage, ProgressMessage
from logger import get_logger
from workbook_reader import Source

logger = get_logger(__name__)


class IngestionRunner(QThread):
    """
    Runs one upload through an IngestionClient.

    Signals:
        ingestion_started: Emitted once the run was accepted by the client
        ingestion_progress: IngestionProgress snapshot
        ingestion_complete: IngestionResult of a successful run
        ingestion_failed: (kind, message); kind is "busy" when the client
            refused the run, else the IngestionError kind
    """

    ingestion_started = Signal()
    ingestion_progress = Signal(object)  # IngestionProgress
    ingestion_complete = Signal(object)  # IngestionResult
    ingestion_failed = Signal(str, str)  # (kind, message)

    def __init__(self, client: IngestionClient, source: Source,
                 source_label: Optional[str] = None, parent=None):
        super().__init__(parent)
        self.client = client
        self.source = source
        self.source_label = source_label
        self._handle: Optional[IngestionHandle] = None
        self._abort = False
        self._lock = threading.Lock()

    def abort(self):
        """Request the running upload to stop; the runner ends with a "cancelled" failure."""
        with self._lock:
            self._abort = True
            handle = self._handle
        if handle is not None:
            handle.cancel()

    def run(self):
        try:
            handle = self.client.submit(self.source, self.source_label)
        except IngestionBusyError as e:
            logger.warning(f"Upload not started: {e}")
            self.ingestion_failed.emit("busy", str(e))
            return

        with self._lock:
            self._handle = handle
            aborted = self._abort
        if aborted:
            handle.cancel()

        self.ingestion_started.emit()
        for message in handle.messages():
            if isinstance(message, ProgressMessage):
                self.ingestion_progress.emit(message.progress)
            elif isinstance(message, CompleteMessage):
                self.ingestion_complete.emit(message.result)
            elif isinstance(message, ErrorMessage):
                self.ingestion_failed.emit(message.kind, message.error.get_display_message())
