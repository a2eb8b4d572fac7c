"""
Row-to-record mapping for stock-on-hand spreadsheets.

Spreadsheet templates changed over time, so every logical field accepts a few
header spellings ("Barcode" in the current template, "item code" in the
supplier export). Headers are bound to fields once per sheet with
bind_columns(); map_row() then turns each header -> value mapping into a
typed InventoryRecord, or a RowRejection when the row cannot be trusted.

Everything in this module is pure: no I/O, no logging in the per-row path.
"""

import re
from decimal import Decimal, InvalidOperation
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

import pandas as pd

from exceptions import MalformedSourceError
from models import (
    BACK_STORE, CONTAINER, MAIN_STORE,
    Container, InventoryRecord, RowRejection,
)


# Field -> accepted header spellings (already normalized, see normalize_header)
# The first alias is the canonical header written by the template generator.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    'identifier': ('barcode', 'item code', 'itemcode', 'sku barcode'),
    'quantity': ('quantity', 'qty', 'soh', 'stock on hand'),
    'size': ('size',),
    'color': ('color', 'colour'),
    'age': ('age', 'age group', 'variant'),
    'style_number': ('stylenumber', 'style number', 'style code', 'style'),
    'department': ('department', 'dept'),
    'retail_price': ('retailprice', 'retail price', 'price', 'rrp'),
    'location': ('location',),
    'container_id': ('boxnumber', 'box number', 'box', 'ctn', 'carton', 'container'),
}

REQUIRED_FIELDS = ('identifier', 'style_number')

CONTAINER_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    'container_id': ('boxnumber', 'box number', 'box', 'ctn', 'carton', 'container'),
    'name': ('boxname', 'box name', 'name', 'display name'),
    'location': ('location',),
}

_LOCATION_ALIASES = {
    'main store': MAIN_STORE,
    'mainstore': MAIN_STORE,
    'main': MAIN_STORE,
    'shop floor': MAIN_STORE,
    'back store': BACK_STORE,
    'backstore': BACK_STORE,
    'back': BACK_STORE,
    'stockroom': BACK_STORE,
    'stock room': BACK_STORE,
    'box': CONTAINER,
    'container': CONTAINER,
    'carton': CONTAINER,
    'ctn': CONTAINER,
}

_WHITESPACE_RE = re.compile(r'\s+')
_CURRENCY_CHARS = '$£€¥ '

# Largest magnitudes accepted from a cell; larger values are rejected and
# never reach int() or the JSON store.
MAX_QUANTITY = 999_999_999
MAX_RETAIL_PRICE = Decimal('999999999.99')


class ColumnBinding(NamedTuple):
    """Field name -> header key bound for one sheet (None when the column is absent)."""
    columns: Dict[str, Optional[str]]

    def header_for(self, field_name: str) -> Optional[str]:
        return self.columns.get(field_name)

    @property
    def unbound(self) -> List[str]:
        return [name for name, header in self.columns.items() if header is None]


class MappedRow(NamedTuple):
    """Outcome of mapping one row: exactly one of record / rejection is set."""
    record: Optional[InventoryRecord]
    rejection: Optional[RowRejection]


class MappedContainer(NamedTuple):
    container: Optional[Container]
    rejection: Optional[RowRejection]


def normalize_header(header: Any) -> str:
    """
    Normalize a header cell so binding ignores case and punctuation drift.

    "Item_Code " -> "item code", "StyleNumber" -> "stylenumber", None -> ""
    """
    if header is None or _is_missing(header):
        return ''
    text = str(header).strip().lower().replace('_', ' ').replace('-', ' ')
    return _WHITESPACE_RE.sub(' ', text)


def _bind(headers: Iterable[str], aliases: Dict[str, Tuple[str, ...]]) -> ColumnBinding:
    available = set(headers)
    columns: Dict[str, Optional[str]] = {}
    for field_name, names in aliases.items():
        columns[field_name] = next((name for name in names if name in available), None)
    return ColumnBinding(columns)


def bind_columns(headers: Iterable[str]) -> ColumnBinding:
    """
    Bind record fields to the (normalized) header names of a sheet.

    Raises:
        MalformedSourceError: If the barcode or style number column is missing,
            since no row of the sheet could then produce a valid record.
    """
    headers = [normalize_header(h) for h in headers]
    binding = _bind(headers, FIELD_ALIASES)

    missing = [name for name in REQUIRED_FIELDS if binding.header_for(name) is None]
    if missing:
        expected = ', '.join(f"'{FIELD_ALIASES[name][0]}'" for name in missing)
        raise MalformedSourceError(
            f"The file is missing required columns: {expected}. "
            f"Found headers: {', '.join(h for h in headers if h) or '(none)'}"
        )
    return binding


def bind_container_columns(headers: Iterable[str]) -> Optional[ColumnBinding]:
    """Bind containers-sheet columns; None when the sheet has no container id column."""
    binding = _bind([normalize_header(h) for h in headers], CONTAINER_FIELD_ALIASES)
    if binding.header_for('container_id') is None:
        return None
    return binding


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def coerce_text(value: Any) -> str:
    """
    Convert a cell value to trimmed text.

    Spreadsheet programs store long numeric barcodes as floats, so integral
    floats lose their ".0" ("123456789012.0" -> "123456789012").
    """
    if _is_missing(value):
        return ''
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, Decimal):
        return str(int(value)) if value == value.to_integral_value() else str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()

    text = str(value).strip()
    if re.fullmatch(r'\d+\.0+', text):
        text = text.split('.', 1)[0]
    return text


def _to_decimal(value: Any) -> Optional[Decimal]:
    if _is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, float):
        value = repr(value)
    text = str(value).strip().strip(_CURRENCY_CHARS).replace(',', '')
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def coerce_quantity(value: Any) -> int:
    """
    Quantity as int; missing or non-numeric -> 0, fractional values truncate.

    Raises:
        ValueError: Magnitude above MAX_QUANTITY
    """
    number = _to_decimal(value)
    if number is None:
        return 0
    if number.copy_abs() > MAX_QUANTITY:
        raise ValueError("quantity out of range")
    return int(number)


def coerce_price(value: Any) -> Decimal:
    """
    Price as Decimal; missing or non-numeric -> 0.

    Raises:
        ValueError: Magnitude above MAX_RETAIL_PRICE
    """
    number = _to_decimal(value)
    if number is None:
        return Decimal('0')
    if number.copy_abs() > MAX_RETAIL_PRICE:
        raise ValueError("retail price out of range")
    return number


def normalize_location(value: Any) -> Optional[str]:
    """Map a free-text location to a placement value, None when unknown."""
    text = normalize_header(value)
    if not text:
        return None
    if text in _LOCATION_ALIASES:
        return _LOCATION_ALIASES[text]
    return _LOCATION_ALIASES.get(text.replace(' ', ''))


def _cell(row: Dict[str, Any], binding: ColumnBinding, field_name: str) -> Any:
    header = binding.header_for(field_name)
    if header is None:
        return None
    return row.get(header)


def map_row(row: Dict[str, Any], binding: ColumnBinding,
            row_number: int = 0, sheet: str = '') -> MappedRow:
    """
    Map one header -> value row to an InventoryRecord.

    Args:
        row: Cell values keyed by normalized header
        binding: Result of bind_columns() for the sheet
        row_number: 1-based sheet row number, for rejection reporting
        sheet: Sheet name, for rejection reporting

    Returns:
        MappedRow with either a record or a rejection listing every reason
    """
    reasons: List[str] = []

    identifier = coerce_text(_cell(row, binding, 'identifier'))
    if not identifier:
        reasons.append("missing barcode")

    style_number = coerce_text(_cell(row, binding, 'style_number'))
    if not style_number:
        reasons.append("missing style number")

    try:
        quantity = coerce_quantity(_cell(row, binding, 'quantity'))
    except ValueError as e:
        reasons.append(str(e))
    else:
        if quantity < 0:
            reasons.append(f"negative quantity: {quantity}")

    try:
        retail_price = coerce_price(_cell(row, binding, 'retail_price'))
    except ValueError as e:
        reasons.append(str(e))
    else:
        if retail_price < 0:
            reasons.append(f"negative retail price: {retail_price}")

    container_id = coerce_text(_cell(row, binding, 'container_id')) or None
    location_text = coerce_text(_cell(row, binding, 'location'))

    if container_id:
        location = CONTAINER
        explicit = True
    elif location_text:
        location = normalize_location(location_text)
        explicit = True
        if location is None:
            reasons.append(f"unknown location: {location_text}")
        elif location == CONTAINER:
            reasons.append("location is a box but no box number is given")
    else:
        location = MAIN_STORE
        explicit = False

    if reasons:
        return MappedRow(None, RowRejection(row_number, sheet, tuple(reasons), dict(row)))

    record = InventoryRecord(
        identifier=identifier,
        style_number=style_number,
        quantity=quantity,
        size=coerce_text(_cell(row, binding, 'size')),
        color=coerce_text(_cell(row, binding, 'color')),
        age=coerce_text(_cell(row, binding, 'age')),
        department=coerce_text(_cell(row, binding, 'department')),
        retail_price=retail_price,
        location=location,
        container_id=container_id,
        placement_explicit=explicit,
    )
    return MappedRow(record, None)


def map_container_row(row: Dict[str, Any], binding: ColumnBinding,
                      row_number: int = 0, sheet: str = '',
                      default_location: str = BACK_STORE) -> MappedContainer:
    """Map one containers-sheet row to an empty Container."""
    container_id = coerce_text(_cell(row, binding, 'container_id'))
    if not container_id:
        return MappedContainer(
            None, RowRejection(row_number, sheet, ("missing box number",), dict(row))
        )

    location_text = coerce_text(_cell(row, binding, 'location'))
    placement = normalize_location(location_text)
    if placement in (MAIN_STORE, BACK_STORE):
        location = placement
    else:
        location = location_text or default_location

    return MappedContainer(
        Container(
            container_id=container_id,
            name=coerce_text(_cell(row, binding, 'name')) or f"Box {container_id}",
            location=location,
        ),
        None,
    )
