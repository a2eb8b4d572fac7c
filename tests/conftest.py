"""
Pytest configuration file for Stock Tracker tests.

This file sets up the Python path so tests can import the flat modules under
'src', points logging at a temporary directory, and provides fixtures that
write real spreadsheet files.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Get the repository root directory (parent of tests directory)
repo_root = Path(__file__).parent.parent

# Add src directory to sys.path (for src modules)
src_dir = repo_root / 'src'
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

# Logging is configured on first import of any module; keep test logs out of ~
_test_home = Path(tempfile.mkdtemp(prefix="stock_tracker_tests_"))
_test_config = _test_home / "config.ini"
_test_config.write_text(
    "[Logging]\n"
    f"LogDir = {_test_home / 'logs'}\n"
    "LogLevel = DEBUG\n",
    encoding='utf-8',
)
os.environ.setdefault('STOCK_TRACKER_CONFIG', str(_test_config))

# Headless test environments have no display for Qt
os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')

from openpyxl import Workbook  # noqa: E402

from app_config import IngestionSettings  # noqa: E402
from models import InventoryRecord  # noqa: E402


PRODUCT_HEADER = [
    'Barcode', 'Quantity', 'Size', 'Color', 'Age', 'StyleNumber',
    'Department', 'RetailPrice', 'Location', 'BoxNumber',
]


def product_row(barcode, quantity=1, size='M', color='Blue', style='STY001',
                location='', box='', price=9.99, department='Menswear', age='Adult'):
    """One Products row in template column order."""
    return [barcode, quantity, size, color, age, style, department, price, location, box]


def write_workbook(path: Path, sheets) -> Path:
    """
    Write an .xlsx file.

    Args:
        path: Output path
        sheets: Iterable of (sheet_name, rows); rows include the header row
    """
    workbook = Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets:
        worksheet = workbook.create_sheet(name)
        for row in rows:
            worksheet.append(list(row))
    workbook.save(path)
    return path


def make_record(identifier, quantity=1, location='main-store', container_id=None,
                explicit=False, **fields) -> InventoryRecord:
    return InventoryRecord(
        identifier=identifier,
        style_number=fields.pop('style_number', 'STY001'),
        quantity=quantity,
        location=location,
        container_id=container_id,
        placement_explicit=explicit,
        **fields,
    )


@pytest.fixture
def xlsx_factory(tmp_path):
    """Factory writing workbooks into tmp_path: xlsx_factory(sheets, name='soh.xlsx')."""
    def _factory(sheets, name='soh.xlsx'):
        return write_workbook(tmp_path / name, sheets)
    return _factory


@pytest.fixture
def products_xlsx(xlsx_factory):
    """Products sheet with three rows, two of them in BOX1, plus a Boxes sheet."""
    return xlsx_factory([
        ('Products', [
            PRODUCT_HEADER,
            product_row('A', 3, box='BOX1'),
            product_row('B', 5, box='BOX1', color='Red'),
            product_row('C', 2, location='Main Store'),
        ]),
        ('Boxes', [
            ['BoxNumber', 'BoxName', 'Location'],
            ['BOX1', 'Winter Collection', 'Back Store'],
            ['BOX2', 'Summer Collection', 'Warehouse'],
        ]),
    ])


@pytest.fixture
def fast_settings():
    """Small batches and no progress rate limit, so tiny files exercise every path."""
    return IngestionSettings(row_batch_size=2, progress_interval=0.0)


@pytest.fixture(autouse=True)
def _clear_logging_context():
    """Keep source_label/run_id context from leaking between tests."""
    from logger import clear_logging_context
    clear_logging_context()
    yield
    clear_logging_context()
