"""
Timing for upload stages: ingesting a sheet, loading and persisting inventory.

log_timing() wraps one stage and logs its duration when it ends. The stage can
report how many items it handled (rows mapped, keys written) through the
yielded StageTimer, so the log line carries throughput as well:

    Ingest SOH_2026-10-19.xlsx: 1840.2ms, 52000 rows (28258/s)

Stages slower than the threshold are logged at INFO, the rest at DEBUG.
A stage that raised is still logged, marked as failed.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from logger import get_logger

logger = get_logger(__name__)


class StageTimer:
    """Item counter handed to the body of a log_timing() block."""

    def __init__(self, unit: str):
        self.unit = unit
        self.items = 0

    def count(self, n: int = 1) -> None:
        self.items += n

    def describe(self, duration_ms: float) -> str:
        text = f"{duration_ms:.1f}ms"
        if self.items:
            text += f", {self.items} {self.unit}"
            if duration_ms > 0:
                text += f" ({self.items / (duration_ms / 1000):.0f}/s)"
        return text


@contextmanager
def log_timing(operation_name: str, threshold_ms: float = 100,
               unit: str = "items") -> Iterator[StageTimer]:
    """
    Time one stage and log it when it ends.

    Usage:
        with log_timing("Ingest soh.xlsx", threshold_ms=1000, unit="rows") as timer:
            for batch in batches:
                timer.count(len(batch))

    Args:
        operation_name: Stage name as it should appear in the log
        threshold_ms: Stages at least this slow are logged at INFO
        unit: Name of the counted items in the log line
    """
    timer = StageTimer(unit)
    failed = False
    start_time = time.perf_counter()
    try:
        yield timer
    except BaseException:
        failed = True
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        message = f"{operation_name}: {timer.describe(duration_ms)}"
        if failed:
            message += " (failed)"

        if duration_ms >= threshold_ms:
            logger.info(message)
        else:
            logger.debug(message)
