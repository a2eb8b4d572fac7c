"""
Fillable upload template.

Writes inventory_template.xlsx with the two sheets the uploader understands:
Products (one row per barcode) and Boxes (optional box names and locations).
"""

from pathlib import Path
from typing import Union

import pandas as pd
from openpyxl.styles import Font, PatternFill

from logger import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPLATE_NAME = 'inventory_template.xlsx'

PRODUCT_COLUMNS = [
    'Barcode', 'Quantity', 'Size', 'Color', 'Age', 'StyleNumber',
    'Department', 'RetailPrice', 'Location', 'BoxNumber',
]
BOX_COLUMNS = ['BoxNumber', 'BoxName', 'Location']

# Barcodes are written as text so spreadsheet programs keep every digit
EXAMPLE_PRODUCTS = [
    ['123456789012', 10, 'M', 'Blue', 'Adult', 'STY001', 'Menswear', 29.99, 'Box', 'BOX001'],
    ['223456789012', 5, 'S', 'Red', 'Adult', 'STY002', 'Womenswear', 39.99, 'Box', 'BOX001'],
    ['323456789012', 3, 'L', 'Black', 'Adult', 'STY003', 'Accessories', 19.99, 'Main Store', ''],
]
EXAMPLE_BOXES = [
    ['BOX001', 'Winter Collection', 'Back Store'],
    ['BOX002', 'Summer Collection', 'Warehouse'],
    ['BOX003', 'Accessories', 'Storage Room'],
]

_HEADER_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
_HEADER_FONT = Font(bold=True)


def write_template(path: Union[str, Path] = DEFAULT_TEMPLATE_NAME,
                   include_examples: bool = True) -> Path:
    """
    Write the upload template.

    Args:
        path: Output file (.xlsx)
        include_examples: Add example rows under the headers

    Returns:
        Path of the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    products = pd.DataFrame(EXAMPLE_PRODUCTS if include_examples else [], columns=PRODUCT_COLUMNS)
    boxes = pd.DataFrame(EXAMPLE_BOXES if include_examples else [], columns=BOX_COLUMNS)

    with pd.ExcelWriter(path, engine='openpyxl') as writer:
        products.to_excel(writer, index=False, sheet_name='Products')
        boxes.to_excel(writer, index=False, sheet_name='Boxes')

        for sheet_name, columns in (('Products', PRODUCT_COLUMNS), ('Boxes', BOX_COLUMNS)):
            worksheet = writer.sheets[sheet_name]
            for col_idx, title in enumerate(columns, start=1):
                cell = worksheet.cell(row=1, column=col_idx)
                cell.fill = _HEADER_FILL
                cell.font = _HEADER_FONT
                worksheet.column_dimensions[cell.column_letter].width = max(len(title) + 4, 14)
            worksheet.freeze_panes = 'A2'

    logger.info(f"Upload template written to {path}")
    return path
