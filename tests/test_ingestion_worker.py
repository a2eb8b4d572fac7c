"""
Unit tests for src/ingestion_worker.py: background run and message protocol.

Tests cover:
- Exactly one terminal message, always last
- Progress messages (monotonic, final 100%)
- Duplicate rows, rejected rows and containers in the result
- Cancellation (before start, mid-run, after completion)
- Error taxonomy (malformed source, unexpected failure)
- Single start
"""

import queue
import threading
from unittest.mock import MagicMock, patch

import pytest

from app_config import IngestionSettings
from exceptions import (
    IngestionCancelledError,
    IngestionFailedError,
    IngestionStateError,
    MalformedSourceError,
    NoWorksheetFoundError,
)
from ingestion_worker import CompleteMessage, ErrorMessage, IngestionWorker, ProgressMessage
import progress as progress_module
from models import CONTAINER

from conftest import PRODUCT_HEADER, product_row


def drain(outbox, timeout=10):
    """Collect messages up to and including the terminal one."""
    messages = []
    while True:
        message = outbox.get(timeout=timeout)
        messages.append(message)
        if isinstance(message, (CompleteMessage, ErrorMessage)):
            return messages


def run_worker(source, settings=None, label='test.xlsx'):
    outbox = queue.Queue()
    worker = IngestionWorker(source, outbox, settings or IngestionSettings(progress_interval=0.0),
                             source_label=label)
    worker.start()
    messages = drain(outbox)
    worker.join(timeout=10)
    return worker, messages, outbox


@pytest.fixture
def large_xlsx(xlsx_factory):
    rows = [PRODUCT_HEADER] + [product_row(f'SKU{i:05d}', i % 7) for i in range(300)]
    return xlsx_factory([('Products', rows)], name='large.xlsx')


class TestSuccessfulRun:

    def test_single_terminal_message_last(self, products_xlsx, fast_settings):
        worker, messages, outbox = run_worker(products_xlsx, fast_settings)

        terminal = [m for m in messages if isinstance(m, (CompleteMessage, ErrorMessage))]
        assert len(terminal) == 1
        assert isinstance(messages[-1], CompleteMessage)
        assert outbox.empty()
        assert not worker.is_alive()

    def test_messages_carry_run_id(self, products_xlsx, fast_settings):
        worker, messages, _ = run_worker(products_xlsx, fast_settings)
        assert {m.run_id for m in messages} == {worker.run_id}

    def test_result_contents(self, products_xlsx, fast_settings):
        _, messages, _ = run_worker(products_xlsx, fast_settings, label='SOH_2026-10-19.xlsx')
        result = messages[-1].result

        assert [r.identifier for r in result.records] == ['A', 'B', 'C']
        assert result.rows_read == 3
        assert result.worksheet == 'Products'
        assert result.source_label == 'SOH_2026-10-19.xlsx'
        assert result.rejected_count == 0

        containers = {c.container_id: c for c in result.containers}
        assert containers['BOX1'].member_ids == ['A', 'B']
        assert containers['BOX1'].name == 'Winter Collection'
        # Seeded from the Boxes sheet, no member rows
        assert containers['BOX2'].members == []
        assert containers['BOX2'].location == 'Warehouse'

    def test_progress_is_monotonic_and_ends_at_100(self, large_xlsx):
        settings = IngestionSettings(row_batch_size=50, progress_interval=0.0)
        _, messages, _ = run_worker(large_xlsx, settings)

        fractions = [m.progress.fraction_complete for m in messages if isinstance(m, ProgressMessage)]
        assert len(fractions) >= 2
        assert fractions == sorted(fractions)
        assert fractions[-1] == 100.0
        assert all(f < 100.0 for f in fractions[:-1])

    def test_progress_rate_limited(self, large_xlsx):
        settings = IngestionSettings(row_batch_size=1, progress_interval=3600.0)
        _, messages, _ = run_worker(large_xlsx, settings)

        progress = [m for m in messages if isinstance(m, ProgressMessage)]
        # First poll, mapping start and the final snapshot at most
        assert len(progress) <= 3

    def test_duplicates_last_row_wins(self, xlsx_factory, fast_settings):
        path = xlsx_factory([('Products', [
            PRODUCT_HEADER,
            product_row('A', 1, box='BOX1'),
            product_row('B', 2),
            product_row('A', 9, box='BOX2'),
        ])])
        _, messages, _ = run_worker(path, fast_settings)
        result = messages[-1].result

        records = {r.identifier: r for r in result.records}
        assert len(result.records) == 2
        assert records['A'].quantity == 9
        assert records['A'].container_id == 'BOX2'
        assert result.duplicate_count == 1

        containers = {c.container_id: c for c in result.containers}
        assert containers['BOX1'].member_ids == []
        assert containers['BOX2'].member_ids == ['A']

    def test_invalid_rows_collected(self, xlsx_factory, fast_settings):
        path = xlsx_factory([('Products', [
            PRODUCT_HEADER,
            product_row('A'),
            product_row(None),
            product_row('C', -3),
            product_row('D', location='Box'),
        ])])
        _, messages, _ = run_worker(path, fast_settings)
        result = messages[-1].result

        assert [r.identifier for r in result.records] == ['A']
        assert result.rejected_count == 3
        assert [r.row_number for r in result.rejections] == [3, 4, 5]
        assert result.has_rejections

    def test_rejection_detail_is_capped(self, xlsx_factory):
        rows = [PRODUCT_HEADER] + [product_row(None) for _ in range(5)] + [product_row('A')]
        path = xlsx_factory([('Products', rows)])
        settings = IngestionSettings(progress_interval=0.0, max_rejections_kept=2)
        _, messages, _ = run_worker(path, settings)
        result = messages[-1].result

        assert result.rejected_count == 5
        assert len(result.rejections) == 2

    def test_box_placement_in_records(self, products_xlsx, fast_settings):
        _, messages, _ = run_worker(products_xlsx, fast_settings)
        records = {r.identifier: r for r in messages[-1].result.records}
        assert records['A'].location == CONTAINER
        assert records['A'].placement_explicit
        assert records['C'].location == 'main-store'


class TestFailures:

    def test_malformed_source(self, tmp_path, fast_settings):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"not a workbook")
        _, messages, _ = run_worker(path, fast_settings)

        assert not any(isinstance(m, CompleteMessage) for m in messages)
        assert isinstance(messages[-1], ErrorMessage)
        assert isinstance(messages[-1].error, MalformedSourceError)
        assert messages[-1].kind == 'malformed_source'

    def test_missing_required_column(self, xlsx_factory, fast_settings):
        path = xlsx_factory([('Products', [['Barcode', 'Quantity'], ['A', 1]])])
        _, messages, _ = run_worker(path, fast_settings)
        assert isinstance(messages[-1].error, MalformedSourceError)

    def test_workbook_without_worksheets(self, products_xlsx, fast_settings):
        with patch('workbook_reader.openpyxl.load_workbook', return_value=MagicMock(worksheets=[])):
            _, messages, _ = run_worker(products_xlsx, fast_settings)

        assert not any(isinstance(m, CompleteMessage) for m in messages)
        assert isinstance(messages[-1].error, NoWorksheetFoundError)
        assert messages[-1].kind == 'no_worksheet'

    def test_unexpected_exception_becomes_failed(self, products_xlsx, fast_settings):
        with patch('ingestion_worker.map_row', side_effect=ZeroDivisionError("boom")):
            _, messages, _ = run_worker(products_xlsx, fast_settings)

        error = messages[-1].error
        assert isinstance(error, IngestionFailedError)
        assert error.cause_type == 'ZeroDivisionError'
        assert 'boom' in str(error)

    def test_start_twice(self, products_xlsx, fast_settings):
        worker, _, _ = run_worker(products_xlsx, fast_settings)
        with pytest.raises(IngestionStateError):
            worker.start()


class TestCancellation:

    def test_cancel_before_start(self, products_xlsx, fast_settings):
        outbox = queue.Queue()
        worker = IngestionWorker(products_xlsx, outbox, fast_settings)
        assert worker.cancel() is True
        worker.start()
        messages = drain(outbox)

        assert len(messages) == 1
        assert isinstance(messages[0].error, IngestionCancelledError)

    def test_cancel_mid_run_never_completes(self, large_xlsx):
        settings = IngestionSettings(row_batch_size=10, progress_interval=0.0)
        outbox = queue.Queue()
        worker = IngestionWorker(large_xlsx, outbox, settings)

        first_batch = threading.Event()
        release = threading.Event()
        original_add_rows = progress_module.ProgressTracker.add_rows

        def blocking_add_rows(tracker, count):
            original_add_rows(tracker, count)
            first_batch.set()
            release.wait(timeout=10)

        with patch.object(progress_module.ProgressTracker, 'add_rows', blocking_add_rows):
            worker.start()
            assert first_batch.wait(timeout=10)
            assert worker.cancel() is True
            assert worker.cancel_requested
            release.set()
            messages = drain(outbox)
        worker.join(timeout=10)

        assert not any(isinstance(m, CompleteMessage) for m in messages)
        assert isinstance(messages[-1].error, IngestionCancelledError)
        assert messages[-1].kind == 'cancelled'

    def test_cancel_after_completion_is_refused(self, products_xlsx, fast_settings):
        worker, messages, outbox = run_worker(products_xlsx, fast_settings)
        assert worker.cancel() is False
        assert isinstance(messages[-1], CompleteMessage)
        assert outbox.empty()

    def test_source_released_after_cancel(self, products_xlsx, fast_settings):
        handle = open(products_xlsx, 'rb')
        outbox = queue.Queue()
        worker = IngestionWorker(handle, outbox, fast_settings)
        worker.cancel()
        worker.start()
        drain(outbox)
        worker.join(timeout=10)
        assert handle.closed
