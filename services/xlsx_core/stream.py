"""Streaming row writer.

Writes a worksheet part row by row without building the cell grid in
memory. Output goes to a BufferedWriter that moves to a temporary file once
the in-memory buffer crosses the configured chunk size.

Usage:
    sw = doc.new_stream_writer("Sheet1")
    sw.set_col_width(1, 2, 20)
    sw.set_row("A1", ["Name", "Age"])
    sw.set_row("A2", ["Ada", 36])
    sw.add_table("A1", "B2")
    sw.flush()
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
from typing import IO, TYPE_CHECKING, Any, Dict, List, Optional, Union
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

from .config import MAX_COLUMN_WIDTH, MAX_COLUMNS, MAX_ROW_HEIGHT
from .coordinates import (
    cell_name_to_coordinates,
    cell_refs_to_coordinates,
    coordinates_to_cell_name,
    coordinates_to_range_ref,
    sort_coordinates,
)
from .errors import (
    ColumnOutOfRangeError,
    ColumnWidthAfterRowsWrittenError,
    ColumnWidthTooLargeError,
    RowHeightTooLargeError,
    StreamWriterClosedError,
    TableAlreadyAddedError,
    TableBeforeRowsError,
)
from .parser import NS
from .schemas import RichTextRun, RowOptions, SheetInfo, StreamCell, TableColumn, TableOptions, Worksheet
from .values import DEFAULT_DATE_NUM_FMT, T_SHARED, encode_value, format_float
from .writer import HEAD_ELEMENTS, TAIL_ELEMENTS, XML_HEADER, worksheet_elements_xml, worksheet_root_tag

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger(__name__)

TEMP_PREFIX = "xlsxcore-"


# =============================================================================
# BUFFERED WRITER
# =============================================================================

class BufferedWriter:
    """In-memory buffer that spills to a temporary file.

    Writes always go to memory. ``sync()`` moves the buffer to the temp
    file once it has grown past ``chunk_size``; if no temp file can be
    created the data simply stays in memory.
    """

    def __init__(self, chunk_size: int, tmp_dir: Optional[str] = None):
        self.chunk_size = chunk_size
        self.tmp_dir = tmp_dir
        self._buf = io.BytesIO()
        self._tmp: Optional[IO[bytes]] = None

    @property
    def path(self) -> Optional[str]:
        """Path of the spill file, or None while everything is in memory."""
        return self._tmp.name if self._tmp is not None else None

    def write(self, data: Union[str, bytes]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buf.write(data)

    def sync(self) -> None:
        if self._buf.tell() < self.chunk_size:
            return
        if self._tmp is None:
            try:
                self._tmp = tempfile.NamedTemporaryFile(
                    prefix=TEMP_PREFIX, suffix=".xml", dir=self.tmp_dir, delete=False,
                )
            except OSError as e:
                logger.warning(f"[STREAM] Cannot create temp file, keeping rows in memory: {e}")
                return
            logger.debug(f"[STREAM] Spilling to {self._tmp.name}")
        self.flush()

    def flush(self) -> None:
        """Move the whole in-memory buffer to the temp file, if one is in use."""
        if self._tmp is None:
            return
        self._tmp.write(self._buf.getvalue())
        self._tmp.flush()
        self._buf = io.BytesIO()

    def reader(self) -> IO[bytes]:
        """A fresh reader over everything written so far."""
        if self._tmp is None:
            return io.BytesIO(self._buf.getvalue())
        self.flush()
        return open(self._tmp.name, "rb")

    def getvalue(self) -> bytes:
        with self.reader() as f:
            return f.read()

    def detach(self) -> Optional[str]:
        """Close the temp file and hand its path to the caller, who then owns it."""
        if self._tmp is None:
            return None
        self.flush()
        path = self._tmp.name
        self._tmp.close()
        self._tmp = None
        return path

    def close(self) -> None:
        """Drop the buffer and delete the temp file."""
        self._buf = io.BytesIO()
        if self._tmp is None:
            return
        path = self._tmp.name
        self._tmp.close()
        self._tmp = None
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


# =============================================================================
# HELPERS
# =============================================================================

def _text(value: str) -> str:
    return escape(value)


def row_attrs(options: Optional[RowOptions]) -> str:
    if options is None:
        return ""
    if options.height > MAX_ROW_HEIGHT:
        raise RowHeightTooLargeError(options.height, MAX_ROW_HEIGHT)
    attrs = ""
    if options.style_id > 0:
        attrs += f' s="{options.style_id}" customFormat="true"'
    if options.height > 0:
        attrs += f' ht="{format_float(options.height)}" customHeight="true"'
    if options.hidden:
        attrs += ' hidden="true"'
    return attrs


def cell_xml(ref: str, style: int, t: str, value: str, xml_space: Optional[str] = None, formula: str = "") -> str:
    out = ["<c"]
    if xml_space:
        out.append(f' xml:space="{xml_space}"')
    out.append(f' r="{ref}"')
    if style:
        out.append(f' s="{style}"')
    if t:
        out.append(f' t="{t}"')
    out.append(">")
    if formula:
        out.append(f"<f>{_text(formula)}</f>")
    if value != "":
        out.append(f"<v>{_text(value)}</v>")
    out.append("</c>")
    return "".join(out)


def parse_table_options(options: Union[None, str, Dict[str, Any], TableOptions]) -> TableOptions:
    """Accept a TableOptions, a dict, a JSON string, or nothing."""
    if isinstance(options, TableOptions):
        return options
    if not options:
        return TableOptions()
    if isinstance(options, dict):
        return TableOptions.model_validate(options)
    return TableOptions.model_validate_json(options)


def _is_rich_text(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(r, RichTextRun) for r in value)


def unique_header_names(values: List[str]) -> List[str]:
    """Table column names: blanks become ColumnN, repeats get a numeric suffix."""
    names: List[str] = []
    seen = set()
    for idx, value in enumerate(values, start=1):
        name = value.strip() or f"Column{idx}"
        candidate, n = name, 2
        while candidate.lower() in seen:
            candidate = f"{name}{n}"
            n += 1
        seen.add(candidate.lower())
        names.append(candidate)
    return names


# =============================================================================
# STREAM WRITER
# =============================================================================

class StreamWriter:
    """Sequential writer for one worksheet. Obtain through Document.new_stream_writer."""

    def __init__(self, doc: "Document", sheet: SheetInfo, worksheet: Worksheet):
        self.doc = doc
        self.sheet = sheet
        self.worksheet = worksheet
        settings = doc.settings
        self.raw = BufferedWriter(settings.stream_chunk_size, settings.tmp_dir)
        self._cols: List[str] = []
        self._merges: List[str] = []
        self._table_rid: Optional[str] = None
        self._sheet_written = False
        self._rows_written = 0
        self._closed = False

        self.raw.write(XML_HEADER + b"\n")
        self.raw.write(worksheet_root_tag(worksheet))
        self.raw.write("".join(worksheet.anchored.get("", [])))
        self.raw.write(worksheet_elements_xml(worksheet, [n for n in HEAD_ELEMENTS if n != "dimension"]))
        logger.info(f"[STREAM] Opened writer for sheet {sheet.name!r}")

    def _check_open(self) -> None:
        if self._closed:
            raise StreamWriterClosedError(self.sheet.name)

    def _open_sheet_data(self) -> None:
        if self._sheet_written:
            return
        if self._cols:
            self.raw.write("<cols>" + "".join(self._cols) + "</cols>")
        self.raw.write("<sheetData>")
        self._sheet_written = True

    # -------------------------------------------------------------------------
    # Columns / rows
    # -------------------------------------------------------------------------

    def set_col_width(self, min_col: int, max_col: int, width: float) -> None:
        """Set the width of columns min_col..max_col. Must precede set_row."""
        self._check_open()
        if self._sheet_written:
            raise ColumnWidthAfterRowsWrittenError()
        for value in (min_col, max_col):
            if value < 1 or value > MAX_COLUMNS:
                raise ColumnOutOfRangeError(value, MAX_COLUMNS)
        if width > MAX_COLUMN_WIDTH:
            raise ColumnWidthTooLargeError(width, MAX_COLUMN_WIDTH)
        if min_col > max_col:
            min_col, max_col = max_col, min_col
        self._cols.append(f'<col min="{min_col}" max="{max_col}" width="{width:f}" customWidth="1"/>')

    def _encode_cell(self, ref: str, value: Any, style: int) -> str:
        formula = ""
        if isinstance(value, StreamCell):
            style = value.style_id
            formula = value.formula
            value = value.value
        if _is_rich_text(value):
            index = self.doc.shared_strings.append_rich_text(value)
            return cell_xml(ref, style, T_SHARED, str(index), formula=formula)
        (t, text, space), is_date_num = encode_value(value, self.doc.date1904)
        if is_date_num and style == 0:
            style = self.doc.register_style(DEFAULT_DATE_NUM_FMT)
        return cell_xml(ref, style, t, text, space, formula)

    def set_row(self, cell: str, values: List[Any], options: Optional[RowOptions] = None) -> None:
        """Write one row starting at ``cell``. None entries leave the position empty.

        Rows must be written in ascending order; this is not checked.
        """
        self._check_open()
        col, row = cell_name_to_coordinates(cell)
        attrs = row_attrs(options)
        default_style = options.style_id if options is not None else 0

        self._open_sheet_data()
        parts = [f'<row r="{row}"{attrs}>']
        for offset, value in enumerate(values):
            if value is None:
                continue
            ref = coordinates_to_cell_name(col + offset, row)
            parts.append(self._encode_cell(ref, value, default_style))
        parts.append("</row>")
        self.raw.write("".join(parts))
        self._rows_written += 1
        self.raw.sync()

    # -------------------------------------------------------------------------
    # Merge cells / tables
    # -------------------------------------------------------------------------

    def merge_cell(self, top_left: str, bottom_right: str) -> None:
        """Merge a range. Overlap with other merges is not checked."""
        self._check_open()
        cell_refs_to_coordinates(top_left, bottom_right)
        self._merges.append(f'<mergeCell ref="{top_left}:{bottom_right}"/>')

    def _row_values(self, row: int, first_col: int, last_col: int) -> List[str]:
        """Read the values of one written row back from the stream output."""
        result = [""] * (last_col - first_col + 1)
        ns = NS["main"]
        parser = ET.XMLPullParser(events=("end",))
        with self.raw.reader() as f:
            for chunk in iter(lambda: f.read(64 * 1024), b""):
                parser.feed(chunk)
                for _, el in parser.read_events():
                    if el.tag != f"{{{ns}}}row":
                        continue
                    if el.get("r") != str(row):
                        el.clear()
                        continue
                    for c in el.findall(f"{{{ns}}}c"):
                        col, _ = cell_name_to_coordinates(c.get("r", ""))
                        if col < first_col or col > last_col:
                            continue
                        result[col - first_col] = self._cell_text(c)
                    return result
        return result

    def _cell_text(self, c: ET.Element) -> str:
        ns = NS["main"]
        v = c.find(f"{{{ns}}}v")
        text = (v.text or "") if v is not None else ""
        if c.get("t") == T_SHARED and text:
            return self.doc.shared_strings.get(int(text))
        return text

    def add_table(
        self,
        top_left: str,
        bottom_right: str,
        options: Union[None, str, Dict[str, Any], TableOptions] = None,
    ) -> None:
        """Create a table over the given range using the written first row as headers.

        A one-row range is extended by one row. Must be called after rows
        have been written and before flush, at most once.
        """
        self._check_open()
        opts = parse_table_options(options)
        coords = sort_coordinates(cell_refs_to_coordinates(top_left, bottom_right))
        if self._rows_written == 0:
            raise TableBeforeRowsError()
        if self._table_rid is not None:
            raise TableAlreadyAddedError()
        if coords[1] == coords[3]:
            coords[3] += 1
        ref = coordinates_to_range_ref(coords)

        headers = unique_header_names(self._row_values(coords[1], coords[0], coords[2]))
        columns = [TableColumn(id=i, name=name) for i, name in enumerate(headers, start=1)]
        self._table_rid = self.doc._add_table_part(self.sheet, ref, columns, opts)
        logger.info(f"[STREAM] Added table {ref} with {len(columns)} columns to {self.sheet.name!r}")

    # -------------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------------

    def _tail_xml(self) -> str:
        out = []
        for name in TAIL_ELEMENTS:
            if name == "mergeCells":
                if self._merges:
                    out.append(f'<mergeCells count="{len(self._merges)}">' + "".join(self._merges) + "</mergeCells>")
                out.extend(self.worksheet.anchored.get(name, []))
            elif name == "tableParts":
                if self._table_rid is not None:
                    out.append(f'<tableParts count="1"><tablePart r:id="{self._table_rid}"></tablePart></tableParts>')
                out.extend(self.worksheet.anchored.get(name, []))
            else:
                out.append(worksheet_elements_xml(self.worksheet, [name]))
        return "".join(out)

    def flush(self) -> None:
        """End the stream. The sheet then reads back from the written XML."""
        self._check_open()
        self._open_sheet_data()
        self.raw.write("</sheetData>")
        self.raw.write("".join(self.worksheet.anchored.get("sheetData", [])))
        self.raw.write(self._tail_xml())
        self.raw.write("</worksheet>")
        self.raw.flush()
        self._closed = True
        self.doc._finish_stream(self)
        logger.info(f"[STREAM] Flushed {self._rows_written} rows to {self.sheet.path}")

    def close(self) -> None:
        """Discard an unflushed stream and release its temp file."""
        if not self._closed:
            self._closed = True
            self.doc._discard_stream(self)
        self.raw.close()
