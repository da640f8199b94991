"""XLSX Core - row/cell reconciliation, structural edits and streaming writes.

This module handles:
1. Coordinate conversion between "AK74" style references and (column, row)
2. Normalizing sparse, unordered or duplicated worksheet rows into a dense grid
3. Inserting/removing rows and columns while keeping every reference-bearing
   structure (merges, auto-filters, hyperlinks, tables, calc chain, defined
   names, formulas) consistent
4. Streaming large worksheets to disk row by row
"""

from .coordinates import (
    split_cell_name,
    join_cell_name,
    column_name_to_number,
    column_number_to_name,
    cell_name_to_coordinates,
    coordinates_to_cell_name,
    cell_refs_to_coordinates,
    range_ref_to_coordinates,
    sort_coordinates,
    coordinates_to_range_ref,
)
from .config import EngineSettings, get_engine_settings, reload_engine_settings
from .document import Document, SharedStringTable
from .errors import (
    XlsxCoreError,
    InvalidCellNameError,
    InvalidColumnNameError,
    InvalidCoordinatesError,
    InvalidRowNumberError,
    ColumnOutOfRangeError,
    RowOutOfRangeError,
    RowHeightTooLargeError,
    ColumnWidthTooLargeError,
    SheetNotFoundError,
    StreamWriterError,
    ColumnWidthAfterRowsWrittenError,
    TableBeforeRowsError,
    TableAlreadyAddedError,
    StreamWriterClosedError,
    StreamWriterActiveError,
    UnzipSizeLimitExceededError,
    PackageError,
)
from .schemas import (
    Axis,
    Cell,
    CellFormula,
    Row,
    Worksheet,
    MergeCell,
    AutoFilter,
    Hyperlink,
    DefinedName,
    RichTextRun,
    StreamCell,
    RowOptions,
    TableOptions,
    DocumentOptions,
)
from .stream import BufferedWriter, StreamWriter

__all__ = [
    # Coordinates
    "split_cell_name",
    "join_cell_name",
    "column_name_to_number",
    "column_number_to_name",
    "cell_name_to_coordinates",
    "coordinates_to_cell_name",
    "cell_refs_to_coordinates",
    "range_ref_to_coordinates",
    "sort_coordinates",
    "coordinates_to_range_ref",
    # Config
    "EngineSettings",
    "get_engine_settings",
    "reload_engine_settings",
    # Document
    "Document",
    "SharedStringTable",
    "BufferedWriter",
    "StreamWriter",
    # Errors
    "XlsxCoreError",
    "InvalidCellNameError",
    "InvalidColumnNameError",
    "InvalidCoordinatesError",
    "InvalidRowNumberError",
    "ColumnOutOfRangeError",
    "RowOutOfRangeError",
    "RowHeightTooLargeError",
    "ColumnWidthTooLargeError",
    "SheetNotFoundError",
    "StreamWriterError",
    "ColumnWidthAfterRowsWrittenError",
    "TableBeforeRowsError",
    "TableAlreadyAddedError",
    "StreamWriterClosedError",
    "StreamWriterActiveError",
    "UnzipSizeLimitExceededError",
    "PackageError",
    # Schemas
    "Axis",
    "Cell",
    "CellFormula",
    "Row",
    "Worksheet",
    "MergeCell",
    "AutoFilter",
    "Hyperlink",
    "DefinedName",
    "RichTextRun",
    "StreamCell",
    "RowOptions",
    "TableOptions",
    "DocumentOptions",
]
