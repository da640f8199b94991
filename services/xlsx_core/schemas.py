"""Pydantic schemas for the worksheet model.

These schemas model the parts of an XLSX package the core reads and
rewrites:
- Rows and cells of a worksheet (sparse as parsed, dense once normalized)
- Reference-bearing structures (merge cells, auto-filter, hyperlinks,
  column definitions, table parts, calc chain, defined names)
- Stream writer inputs (typed cells, row options, rich text, table options)

Worksheet elements the core does not model are carried as serialized XML
fragments so a round-trip keeps them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CellDataType(str, Enum):
    """Excel cell data types (the ``t`` attribute)."""
    SHARED_STRING = "s"
    NUMBER = "n"
    BOOLEAN = "b"
    ERROR = "e"
    INLINE_STRING = "inlineStr"
    FORMULA_STRING = "str"
    DATE = "d"


class Axis(str, Enum):
    """Direction of a structural edit."""
    ROW = "row"
    COLUMN = "column"


# =============================================================================
# CELLS AND ROWS
# =============================================================================

class CellFormula(BaseModel):
    """The ``<f>`` element of a cell."""
    content: str = ""
    type: Optional[str] = None  # "normal", "shared", "array", "dataTable"
    ref: Optional[str] = None  # Range of a shared/array formula master
    si: Optional[int] = None  # Shared formula index
    extra_attrs: Dict[str, str] = Field(default_factory=dict)


class Cell(BaseModel):
    """A single ``<c>`` element.

    ``ref`` is None for cells parsed without an ``r`` attribute; the grid
    normalizer assigns one from the cell's position.
    """
    ref: Optional[str] = None
    value: Optional[str] = None  # Raw <v> text
    data_type: Optional[str] = None
    formula: Optional[CellFormula] = None
    style: int = 0
    xml_space: Optional[str] = None
    inline_xml: Optional[str] = None  # Serialized <is> element, kept verbatim
    extra_attrs: Dict[str, str] = Field(default_factory=dict)

    def has_value(self) -> bool:
        return self.value is not None or self.formula is not None or self.data_type is not None

    def is_placeholder(self) -> bool:
        """True for gap-filling cells that carry nothing worth saving."""
        return not self.has_value() and self.style == 0 and not self.extra_attrs


class Row(BaseModel):
    """A ``<row>`` element. ``number`` 0 means the row had no ``r`` attribute."""
    number: int = 0
    cells: List[Cell] = Field(default_factory=list)
    height: Optional[float] = None
    hidden: bool = False
    custom_height: bool = False
    style: int = 0
    custom_format: bool = False
    spans: Optional[str] = None
    extra_attrs: Dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        """True when the row has no attributes and only placeholder cells."""
        if self.height is not None or self.hidden or self.style or self.custom_format:
            return False
        if self.extra_attrs:
            return False
        return all(c.is_placeholder() for c in self.cells)


# =============================================================================
# REFERENCE-BEARING STRUCTURES
# =============================================================================

class MergeCell(BaseModel):
    """A merged range such as ``A1:C3``."""
    ref: str


class AutoFilter(BaseModel):
    """Worksheet auto-filter. Child elements are kept as one XML fragment."""
    ref: str
    inner_xml: str = ""
    extra_attrs: Dict[str, str] = Field(default_factory=dict)


class Hyperlink(BaseModel):
    """A ``<hyperlink>`` element. External targets live in the sheet rels."""
    ref: str
    rid: Optional[str] = None
    location: Optional[str] = None
    display: Optional[str] = None
    tooltip: Optional[str] = None
    extra_attrs: Dict[str, str] = Field(default_factory=dict)


class ColumnDefinition(BaseModel):
    """A ``<col>`` element covering columns ``min``..``max``."""
    min: int
    max: int
    width: Optional[float] = None
    style: int = 0
    hidden: bool = False
    custom_width: bool = False
    extra_attrs: Dict[str, str] = Field(default_factory=dict)


class TablePart(BaseModel):
    """A ``<tablePart r:id>`` pointer from a worksheet to a table part."""
    rid: str


class CalcChainEntry(BaseModel):
    """A ``<c>`` element of xl/calcChain.xml."""
    ref: str
    sheet_id: int = 0  # Resolved ``i``; entries without ``i`` inherit the previous one
    explicit_sheet_id: bool = False
    extra_attrs: Dict[str, str] = Field(default_factory=dict)


class DefinedName(BaseModel):
    """A workbook-level named range or formula."""
    name: str
    refers_to: str
    local_sheet_id: Optional[int] = None
    hidden: bool = False
    comment: Optional[str] = None
    extra_attrs: Dict[str, str] = Field(default_factory=dict)


class Relationship(BaseModel):
    """A single entry of a ``.rels`` part."""
    id: str
    type: str
    target: str
    target_mode: Optional[str] = None


class TableColumn(BaseModel):
    id: int
    name: str


class TableDefinition(BaseModel):
    """Parsed view of an xl/tables/tableN.xml part."""
    path: str
    id: int
    name: str
    display_name: str
    ref: str
    auto_filter_ref: Optional[str] = None
    columns: List[TableColumn] = Field(default_factory=list)


# =============================================================================
# WORKSHEET / WORKBOOK
# =============================================================================

class Worksheet(BaseModel):
    """In-memory worksheet.

    ``rows`` holds the rows exactly as parsed until the grid normalizer runs;
    from then on it is the dense grid where ``rows[i].number == i + 1``.
    ``preserved`` maps unmodelled element names to their serialized
    fragments; ``anchored`` maps a schema slot to foreign elements (such as
    ``mc:AlternateContent``) that appeared right after it.
    """
    rows: List[Row] = Field(default_factory=list)
    cols: List[ColumnDefinition] = Field(default_factory=list)
    merge_cells: List[MergeCell] = Field(default_factory=list)
    auto_filter: Optional[AutoFilter] = None
    hyperlinks: List[Hyperlink] = Field(default_factory=list)
    table_parts: List[TablePart] = Field(default_factory=list)
    preserved: Dict[str, List[str]] = Field(default_factory=dict)
    anchored: Dict[str, List[str]] = Field(default_factory=dict)
    root_open_tag: Optional[str] = None  # Original <worksheet ...> tag with all xmlns

    normalized: bool = Field(default=False, exclude=True)


class SheetInfo(BaseModel):
    """A sheet registered in xl/workbook.xml."""
    name: str
    sheet_id: int
    rid: str
    path: str
    state: Optional[str] = None  # "hidden", "veryHidden"


# =============================================================================
# STREAM WRITER INPUTS
# =============================================================================

class RichTextRun(BaseModel):
    """A run of rich text appended to the shared string table."""
    text: str
    bold: bool = False
    italic: bool = False
    underline: bool = False
    strike: bool = False
    size: Optional[float] = None
    color: Optional[str] = None  # Hex ARGB/RGB e.g. "FF0000"
    font: Optional[str] = None


class StreamCell(BaseModel):
    """A stream writer value with an explicit style and/or formula."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Any = None
    style_id: int = 0
    formula: str = ""


class RowOptions(BaseModel):
    """Row level settings for StreamWriter.set_row."""
    height: float = 0
    hidden: bool = False
    style_id: int = 0


class TableOptions(BaseModel):
    """Table settings accepted by StreamWriter.add_table."""
    table_name: str = ""
    table_style: str = ""
    show_first_column: bool = False
    show_last_column: bool = False
    show_row_stripes: bool = True
    show_column_stripes: bool = False


# =============================================================================
# DOCUMENT OPTIONS
# =============================================================================

class DocumentOptions(BaseModel):
    """Per-document overrides of the engine settings.

    ``charset_transcoder(charset, data)`` converts a part that declares a
    non-UTF-8 encoding to UTF-8 bytes. The default uses Python codecs.
    """
    unzip_size_limit: Optional[int] = None
    unzip_xml_size_limit: Optional[int] = None
    stream_chunk_size: Optional[int] = None
    tmp_dir: Optional[str] = None
    charset_transcoder: Optional[Callable[[str, bytes], bytes]] = None
