"""
Streaming spreadsheet reader for stock-on-hand uploads.

Stock-on-hand exports can be several gigabytes, so the reader never loads the
file or the decoded workbook as a whole:
- The source handle is wrapped in a ChunkedSource that pulls at most
  `chunk_size` bytes per underlying read and reports consumed bytes.
- .xlsx files are opened with openpyxl in read-only mode; sheet XML is parsed
  lazily while rows are pulled.
- .csv files are read with pandas in row batches (`chunksize`), one batch
  DataFrame alive at a time.

Usage:
    with open_workbook_reader("soh.xlsx", settings) as reader:
        binding = bind_columns(reader.header)
        for row_number, row in reader.rows():
            ...

The header row is read when the reader is opened, so an unreadable file
fails with MalformedSourceError before any row is produced. Rows are a
single forward pass and cannot be restarted.
"""

import io
import os
import zipfile
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple, Union
from xml.etree.ElementTree import ParseError

import openpyxl
import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from app_config import IngestionSettings
from exceptions import MalformedSourceError, NoWorksheetFoundError
from logger import get_logger
from record_mapper import normalize_header

logger = get_logger(__name__)

BytesCallback = Callable[[int, int], None]
Source = Union[str, os.PathLike, BinaryIO]

FORMAT_XLSX = 'xlsx'
FORMAT_CSV = 'csv'

_ZIP_MAGIC = b'PK\x03\x04'
_OLE_MAGIC = b'\xd0\xcf\x11\xe0'

# Errors openpyxl / zipfile / pandas raise for files they cannot decode
_DECODE_ERRORS = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    InvalidFileException,
    ParseError,
    KeyError,
    EOFError,
    UnicodeDecodeError,
    pd.errors.ParserError,
    pd.errors.EmptyDataError,
)


class ChunkedSource(io.RawIOBase):
    """
    Read-only, byte-counting view over a binary source handle.

    Every read against the underlying handle asks for at most `chunk_size`
    bytes; larger requests are served by several underlying reads. After
    each one, `on_bytes(bytes_processed, bytes_total)` is called.

    Closing the ChunkedSource closes the underlying handle.
    """

    def __init__(self, raw: BinaryIO, chunk_size: int, on_bytes: Optional[BytesCallback] = None):
        super().__init__()
        self._raw = raw
        self.chunk_size = chunk_size
        self._on_bytes = on_bytes
        self.bytes_read = 0
        self.bytes_total = self._measure(raw)

    @staticmethod
    def _measure(raw: BinaryIO) -> int:
        try:
            return os.fstat(raw.fileno()).st_size
        except (AttributeError, OSError, io.UnsupportedOperation):
            pass
        if raw.seekable():
            position = raw.tell()
            end = raw.seek(0, io.SEEK_END)
            raw.seek(position)
            return end
        return 0

    @property
    def bytes_processed(self) -> int:
        if self.bytes_total:
            return min(self.bytes_read, self.bytes_total)
        return self.bytes_read

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return self._raw.seekable()

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()

    def peek_head(self, size: int) -> bytes:
        """Return the first `size` bytes without moving or counting."""
        position = self._raw.tell()
        self._raw.seek(0)
        head = self._raw.read(size)
        self._raw.seek(position)
        return head

    def readinto(self, buffer) -> int:
        view = memoryview(buffer).cast('B')
        filled = 0
        while filled < len(view):
            data = self._raw.read(min(len(view) - filled, self.chunk_size))
            if not data:
                break
            view[filled:filled + len(data)] = data
            filled += len(data)
            self.bytes_read += len(data)
            if self._on_bytes is not None:
                self._on_bytes(self.bytes_processed, self.bytes_total)
        return filled

    def close(self) -> None:
        if not self.closed:
            try:
                self._raw.close()
            finally:
                super().close()


def _open_source(source: Source) -> Tuple[BinaryIO, Optional[str]]:
    """Open a path (or accept an already open binary handle); return it with its name."""
    if isinstance(source, (str, os.PathLike)):
        path = Path(source)
        try:
            return open(path, 'rb'), path.name
        except OSError as e:
            raise MalformedSourceError(f"Could not open the file {path}: {e}") from e

    if not hasattr(source, 'read'):
        raise TypeError(f"Unsupported source type: {type(source).__name__}")

    name = getattr(source, 'name', None)
    return source, Path(name).name if isinstance(name, str) else None


def detect_format(source: ChunkedSource, name: Optional[str]) -> str:
    """
    Decide between the xlsx and csv readers.

    The file extension wins; extension-less sources are sniffed for the zip
    magic number that every .xlsx starts with.
    """
    suffix = Path(name).suffix.lower() if name else ''
    if suffix in ('.xlsx', '.xlsm'):
        return FORMAT_XLSX
    if suffix in ('.csv', '.txt'):
        return FORMAT_CSV
    if suffix == '.xls':
        raise MalformedSourceError(
            "Legacy .xls files cannot be streamed. Please save the file as .xlsx and try again."
        )

    if not source.seekable():
        return FORMAT_CSV

    head = source.peek_head(4)
    if head == _ZIP_MAGIC:
        return FORMAT_XLSX
    if head == _OLE_MAGIC:
        raise MalformedSourceError(
            "Legacy .xls files cannot be streamed. Please save the file as .xlsx and try again."
        )
    return FORMAT_CSV


class WorkbookReader:
    """
    Common interface of the xlsx and csv readers.

    Attributes:
        worksheet: Name of the sheet being read
        header: Normalized header names, in column order
        raw_header: Header cells as they appear in the file
        rows_total: Declared number of data rows, None when unknown
        blank_rows: Blank data rows skipped so far
        container_header: Normalized header of the containers sheet (empty if none)
    """

    def __init__(self, source: ChunkedSource, settings: IngestionSettings, name: Optional[str]):
        self.source = source
        self.settings = settings
        self.name = name or '<stream>'
        self.worksheet: Optional[str] = None
        self.header: List[str] = []
        self.raw_header: List[Any] = []
        self.rows_total: Optional[int] = None
        self.blank_rows = 0
        self.container_header: List[str] = []
        self._columns: List[Tuple[int, str]] = []

    @property
    def bytes_processed(self) -> int:
        return self.source.bytes_processed

    @property
    def bytes_total(self) -> int:
        return self.source.bytes_total

    def _set_header(self, cells) -> None:
        self.raw_header = list(cells)
        self.header = [normalize_header(cell) for cell in self.raw_header]
        if not any(self.header):
            raise MalformedSourceError(f"The header row of '{self.worksheet}' is empty")
        self._columns = self._positions(self.header)

    @staticmethod
    def _positions(header: List[str]) -> List[Tuple[int, str]]:
        # First occurrence of a header name wins; blank header cells are ignored
        seen = set()
        positions = []
        for index, key in enumerate(header):
            if key and key not in seen:
                seen.add(key)
                positions.append((index, key))
        return positions

    @staticmethod
    def _to_mapping(values, columns: List[Tuple[int, str]]) -> Optional[Dict[str, Any]]:
        """Map a row tuple to {header: value}; None for a blank row."""
        row: Dict[str, Any] = {}
        blank = True
        width = len(values)
        for index, key in columns:
            value = values[index] if index < width else None
            if isinstance(value, str):
                value = value.strip()
                if value == '':
                    value = None
            elif isinstance(value, float) and value != value:
                # pandas fills short CSV rows with NaN
                value = None
            if value is not None:
                blank = False
            row[key] = value
        return None if blank else row

    def open(self) -> None:
        raise NotImplementedError

    def rows(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        raise NotImplementedError

    def container_rows(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        return iter(())

    def close(self) -> None:
        pass


class XlsxWorkbookReader(WorkbookReader):
    """Read-only openpyxl reader; rows are parsed lazily from the sheet XML."""

    def __init__(self, source: ChunkedSource, settings: IngestionSettings, name: Optional[str]):
        super().__init__(source, settings, name)
        self._workbook = None
        self._sheet = None
        self._row_iter = None
        self._containers_sheet = None
        self._declared_rows: Dict[str, Optional[int]] = {}

    def open(self) -> None:
        try:
            self._workbook = openpyxl.load_workbook(self.source, read_only=True, data_only=True)
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(f"Could not read the Excel file {self.name}: {e}") from e

        # Declared sizes come from the <dimension> tag, which some writers get
        # wrong; record them for progress, then read sheets unbounded.
        self._declared_rows = {}
        for sheet in self._workbook.worksheets:
            self._declared_rows[sheet.title] = getattr(sheet, 'max_row', None)
            sheet.reset_dimensions()

        self._sheet = self._select_sheet()
        self.worksheet = self._sheet.title
        self._containers_sheet = self._find_containers_sheet()

        max_row = self._declared_rows.get(self.worksheet)
        self.rows_total = max_row - 1 if max_row and max_row > 1 else None

        try:
            self._row_iter = self._sheet.iter_rows(values_only=True)
            header = next(self._row_iter, None)
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(
                f"Could not read the header row of '{self.worksheet}': {e}"
            ) from e

        if header is None:
            raise MalformedSourceError(f"Worksheet '{self.worksheet}' has no header row")
        self._set_header(header)

        logger.info(
            f"Opened {self.name}: worksheet '{self.worksheet}', {len(self._columns)} columns, "
            f"declared data rows: {self.rows_total if self.rows_total is not None else 'unknown'}"
        )

    def _select_sheet(self):
        """
        Pick the data worksheet.

        Priority: a known sheet name, else the first worksheet with at least
        one data row (the containers sheet is never a candidate here), else
        the first worksheet.
        """
        worksheets = list(self._workbook.worksheets)
        if not worksheets:
            raise NoWorksheetFoundError(
                f"No worksheet found in {self.name}. Please make sure the file contains data."
            )

        by_name = {ws.title.strip().lower(): ws for ws in worksheets}
        for wanted in self.settings.worksheet_names:
            sheet = by_name.get(wanted.strip().lower())
            if sheet is not None:
                logger.debug(f"Worksheet selected by name: '{sheet.title}'")
                return sheet

        containers_name = self.settings.containers_sheet_name.strip().lower()
        for sheet in worksheets:
            if sheet.title.strip().lower() == containers_name:
                continue
            if self._has_data_row(sheet):
                logger.debug(f"Worksheet selected as first with data: '{sheet.title}'")
                return sheet

        logger.debug(f"No worksheet with data rows, using first: '{worksheets[0].title}'")
        return worksheets[0]

    def _has_data_row(self, sheet) -> bool:
        try:
            for values in sheet.iter_rows(min_row=2, values_only=True):
                if any(v is not None and str(v).strip() != '' for v in values):
                    return True
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(f"Could not read worksheet '{sheet.title}': {e}") from e
        return False

    def _find_containers_sheet(self):
        wanted = self.settings.containers_sheet_name.strip().lower()
        for sheet in self._workbook.worksheets:
            if sheet is not self._sheet and sheet.title.strip().lower() == wanted:
                return sheet
        return None

    def rows(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        if self._row_iter is None:
            raise RuntimeError("Reader is not open")

        row_iter, self._row_iter = self._row_iter, iter(())
        row_number = 1
        try:
            for values in row_iter:
                row_number += 1
                row = self._to_mapping(values, self._columns)
                if row is None:
                    self.blank_rows += 1
                    continue
                yield row_number, row
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(
                f"Could not read row {row_number} of '{self.worksheet}': {e}"
            ) from e

    def container_rows(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        if self._containers_sheet is None:
            return

        try:
            row_iter = self._containers_sheet.iter_rows(values_only=True)
            header = next(row_iter, None)
            if header is None:
                return
            self.container_header = [normalize_header(cell) for cell in header]
            columns = self._positions(self.container_header)

            row_number = 1
            for values in row_iter:
                row_number += 1
                row = self._to_mapping(values, columns)
                if row is not None:
                    yield row_number, row
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(
                f"Could not read worksheet '{self._containers_sheet.title}': {e}"
            ) from e

    @property
    def containers_sheet(self) -> Optional[str]:
        return self._containers_sheet.title if self._containers_sheet is not None else None

    def close(self) -> None:
        self._row_iter = None
        if self._workbook is not None:
            self._workbook.close()
            self._workbook = None


class CsvWorkbookReader(WorkbookReader):
    """pandas-backed reader yielding one `row_batch_size` DataFrame at a time."""

    def __init__(self, source: ChunkedSource, settings: IngestionSettings, name: Optional[str]):
        super().__init__(source, settings, name)
        self._buffer = io.BufferedReader(source, buffer_size=min(settings.chunk_size, 1024 * 1024))
        self._chunks = None

    def open(self) -> None:
        self.worksheet = Path(self.name).stem or 'csv'

        try:
            start = self._buffer.tell() if self._buffer.seekable() else None
            header_frame = pd.read_csv(self._buffer, nrows=0, dtype=object,
                                       encoding='utf-8-sig', skipinitialspace=True)
            self._set_header(list(header_frame.columns))

            if start is None:
                raise MalformedSourceError(f"CSV source {self.name} must be seekable")
            self._buffer.seek(start)
            self._chunks = pd.read_csv(
                self._buffer,
                chunksize=self.settings.row_batch_size,
                dtype=object,
                keep_default_na=False,
                encoding='utf-8-sig',
                skipinitialspace=True,
            )
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(f"Could not read the CSV file {self.name}: {e}") from e

        logger.info(f"Opened {self.name}: CSV, {len(self._columns)} columns")

    def rows(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        if self._chunks is None:
            raise RuntimeError("Reader is not open")

        chunks, self._chunks = self._chunks, iter(())
        row_number = 1
        try:
            for frame in chunks:
                for values in frame.itertuples(index=False, name=None):
                    row_number += 1
                    row = self._to_mapping(values, self._columns)
                    if row is None:
                        self.blank_rows += 1
                        continue
                    yield row_number, row
                del frame
        except _DECODE_ERRORS as e:
            raise MalformedSourceError(f"Could not read row {row_number} of {self.name}: {e}") from e
        finally:
            close = getattr(chunks, 'close', None)
            if close is not None:
                close()

    @property
    def containers_sheet(self) -> Optional[str]:
        return None

    def close(self) -> None:
        close = getattr(self._chunks, 'close', None)
        if close is not None:
            close()
        self._chunks = None
        if not self._buffer.closed:
            self._buffer.close()


@contextmanager
def open_workbook_reader(source: Source, settings: Optional[IngestionSettings] = None,
                         on_bytes: Optional[BytesCallback] = None) -> Iterator[WorkbookReader]:
    """
    Open a spreadsheet source for streaming.

    The reader takes ownership of `source`: a path is opened here, a handle
    passed in is closed on exit. Everything opened is released on every exit
    path, including exceptions raised by the caller while iterating.

    Raises:
        MalformedSourceError: File cannot be opened or its header decoded
        NoWorksheetFoundError: The workbook has no worksheet
    """
    settings = settings or IngestionSettings()

    with ExitStack() as stack:
        raw, name = _open_source(source)
        stack.callback(raw.close)

        chunked = ChunkedSource(raw, settings.chunk_size, on_bytes)
        stack.callback(chunked.close)

        fmt = detect_format(chunked, name)
        reader_cls = XlsxWorkbookReader if fmt == FORMAT_XLSX else CsvWorkbookReader
        reader = reader_cls(chunked, settings, name)
        stack.callback(reader.close)

        reader.open()
        yield reader
