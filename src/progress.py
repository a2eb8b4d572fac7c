"""
Progress telemetry for ingestion runs.

ProgressTracker turns raw counters (bytes consumed, rows mapped) into
IngestionProgress snapshots and decides when one is worth sending:
- at most one snapshot per `interval` seconds, so a fast run does not flood
  the caller's queue
- fraction_complete never decreases within a run
- throughput is measured over the window since the previous snapshot

Fraction layout:
    0-10    reading: opening the workbook, shared strings, sheet selection
    10-99   mapping: rows mapped, by row count when the sheet declares its
            size, otherwise by bytes consumed from the source
    100     only reported by finish()
"""

import time
from typing import Callable, Optional

from models import IngestionProgress, PHASE_MAPPING, PHASE_READING

READING_SHARE = 10.0
MAPPING_CEILING = 99.0


class ProgressTracker:
    """
    Rate-limited, monotonic progress snapshots for one ingestion run.

    Args:
        interval: Minimum seconds between two emitted snapshots
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, interval: float = 0.1, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock

        self.phase = PHASE_READING
        self.bytes_processed = 0
        self.bytes_total = 0
        self.rows_processed = 0
        self.rows_total: Optional[int] = None

        self._started_at = clock()
        self._last_emit_at: Optional[float] = None
        self._last_emit_rows = 0
        self._last_fraction = 0.0
        self._throughput = 0.0

    # ------------------------------------------------------------------
    # Counter updates
    # ------------------------------------------------------------------

    def update_bytes(self, processed: int, total: int) -> None:
        self.bytes_total = max(total, 0)
        self.bytes_processed = min(max(processed, self.bytes_processed), self.bytes_total or processed)

    def start_mapping(self, rows_total: Optional[int]) -> None:
        self.phase = PHASE_MAPPING
        self.rows_total = rows_total if rows_total and rows_total > 0 else None

    def add_rows(self, count: int) -> None:
        self.rows_processed += count

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _byte_fraction(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return min(self.bytes_processed / self.bytes_total, 1.0)

    def _raw_fraction(self) -> float:
        if self.phase == PHASE_READING:
            return READING_SHARE * self._byte_fraction()

        if self.rows_total:
            done = min(self.rows_processed / self.rows_total, 1.0)
        else:
            done = self._byte_fraction()
        return min(READING_SHARE + (100.0 - READING_SHARE) * done, MAPPING_CEILING)

    def _eta(self, now: float) -> Optional[float]:
        if self.phase != PHASE_MAPPING:
            return None

        if self.rows_total and self._throughput > 0:
            remaining = max(self.rows_total - self.rows_processed, 0)
            return remaining / self._throughput

        # No declared row count: extrapolate from bytes consumed so far
        elapsed = now - self._started_at
        fraction = self._byte_fraction()
        if fraction <= 0 or elapsed <= 0:
            return None
        return elapsed * (1.0 - fraction) / fraction

    def snapshot(self, fraction: Optional[float] = None) -> IngestionProgress:
        """Build a snapshot now, regardless of rate limiting."""
        now = self._clock()

        if self._last_emit_at is not None:
            window = now - self._last_emit_at
            if window > 0:
                self._throughput = (self.rows_processed - self._last_emit_rows) / window
        elif now > self._started_at:
            self._throughput = self.rows_processed / (now - self._started_at)

        value = self._raw_fraction() if fraction is None else fraction
        self._last_fraction = max(self._last_fraction, value)
        self._last_emit_at = now
        self._last_emit_rows = self.rows_processed

        return IngestionProgress(
            fraction_complete=round(self._last_fraction, 2),
            phase=self.phase,
            bytes_processed=self.bytes_processed,
            bytes_total=self.bytes_total,
            rows_processed=self.rows_processed,
            rows_total=self.rows_total,
            throughput_rows_per_second=round(self._throughput, 1),
            eta_seconds=self._eta(now),
        )

    def poll(self) -> Optional[IngestionProgress]:
        """Return a snapshot if the rate limit allows one, else None."""
        if self._last_emit_at is not None and self._clock() - self._last_emit_at < self.interval:
            return None
        return self.snapshot()

    def finish(self) -> IngestionProgress:
        """Final 100% snapshot, sent just before the completion message."""
        self.phase = PHASE_MAPPING
        if self.bytes_total:
            self.bytes_processed = self.bytes_total
        progress = self.snapshot(fraction=100.0)
        return IngestionProgress(
            fraction_complete=100.0,
            phase=progress.phase,
            bytes_processed=progress.bytes_processed,
            bytes_total=progress.bytes_total,
            rows_processed=progress.rows_processed,
            rows_total=progress.rows_total,
            throughput_rows_per_second=round(self.rows_processed / max(self.elapsed, 1e-9), 1),
            eta_seconds=0.0,
        )

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started_at
