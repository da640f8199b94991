"""Sheet grid normalization.

Rows parsed from a worksheet part can be unsorted, sparse, duplicated, or
lack an ``r`` attribute entirely. The functions here turn them into the
dense grid the rest of the package works on:

    rows[i].number == i + 1
    rows[i].cells[j].ref == coordinates_to_cell_name(j + 1, i + 1)

Gaps are filled with placeholder rows and cells. When the first parsed row
has no number it is set aside as the row-zero overlay: its cells carry their
own references and act as fallback values for positions left empty.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .config import TOTAL_ROWS
from .coordinates import cell_name_to_coordinates, coordinates_to_cell_name
from .errors import RowOutOfRangeError, XlsxCoreError
from .schemas import Cell, Row, Worksheet

logger = logging.getLogger(__name__)


# =============================================================================
# NORMALIZER
# =============================================================================

def densify_cells(row: Row) -> None:
    """Place each cell of ``row`` at its column and fill the gaps.

    Cells with a reference keep their column; cells without one take the
    column after the previous cell. A later cell for the same column
    replaces the earlier one. References are rewritten to the canonical
    form of their final position.
    """
    placed: Dict[int, Cell] = {}
    col = 0
    for cell in row.cells:
        if cell.ref:
            col, _ = cell_name_to_coordinates(cell.ref)
        else:
            col += 1
        placed[col] = cell

    cells: List[Cell] = []
    for c in range(1, max(placed, default=0) + 1):
        ref = coordinates_to_cell_name(c, row.number)
        cell = placed.get(c)
        if cell is None:
            cell = Cell(ref=ref)
        else:
            cell.ref = ref
        cells.append(cell)
    row.cells = cells


def normalize_rows(rows: List[Row]) -> Tuple[List[Row], Optional[Row]]:
    """Build the dense row list. Returns (rows, row-zero overlay or None)."""
    working = list(rows)
    overlay: Optional[Row] = None
    if working and working[0].number == 0:
        overlay = working.pop(0)

    placed: Dict[int, Row] = {}
    current = 0
    for row in working:
        if row.number > 0:
            current = row.number
        else:
            current += 1
        if current > TOTAL_ROWS:
            raise RowOutOfRangeError(current, TOTAL_ROWS)

        existing = placed.get(current)
        if existing is None:
            row.number = current
            placed[current] = row
        else:
            # Duplicate row number: keep the first row, append the cells
            existing.cells.extend(row.cells)

    dense: List[Row] = []
    for number in range(1, max(placed, default=0) + 1):
        row = placed.get(number)
        if row is None:
            row = Row(number=number)
        dense.append(row)
        densify_cells(row)

    return dense, overlay


# =============================================================================
# ROW-ZERO OVERLAY
# =============================================================================

def ensure_cell(rows: List[Row], col: int, row: int) -> Cell:
    """Grow the dense grid so (col, row) exists and return that cell."""
    while len(rows) < row:
        rows.append(Row(number=len(rows) + 1))
    target = rows[row - 1]
    while len(target.cells) < col:
        target.cells.append(Cell(ref=coordinates_to_cell_name(len(target.cells) + 1, row)))
    return target.cells[col - 1]


def apply_row_zero_overlay(rows: List[Row], overlay: Optional[Row]) -> List[Row]:
    """Fill empty grid positions from the overlay. Valued cells always win."""
    if overlay is None:
        return rows
    applied = 0
    for cell in overlay.cells:
        if not cell.ref:
            logger.warning("[PARSE] Skipping row-zero cell without a reference")
            continue
        try:
            col, row = cell_name_to_coordinates(cell.ref)
        except XlsxCoreError as e:
            logger.warning(f"[PARSE] Skipping row-zero cell {cell.ref!r}: {e}")
            continue
        target = ensure_cell(rows, col, row)
        if target.has_value():
            continue
        rows[row - 1].cells[col - 1] = cell.model_copy(update={"ref": target.ref}, deep=True)
        applied += 1
    logger.debug(f"[PARSE] Row-zero overlay filled {applied} of {len(overlay.cells)} cells")
    return rows


# =============================================================================
# ENTRY POINTS
# =============================================================================

def normalize_worksheet(ws: Worksheet) -> Worksheet:
    """Normalize ``ws.rows`` in place, once. Later calls are no-ops."""
    if ws.normalized:
        return ws
    rows, overlay = normalize_rows(ws.rows)
    ws.rows = apply_row_zero_overlay(rows, overlay)
    ws.normalized = True
    logger.debug(f"[PARSE] Normalized grid: {len(ws.rows)} rows")
    return ws


def get_cell(ws: Worksheet, col: int, row: int) -> Optional[Cell]:
    """Cell at (col, row) of a normalized sheet, or None outside the grid."""
    if row > len(ws.rows):
        return None
    cells = ws.rows[row - 1].cells
    if col > len(cells):
        return None
    return cells[col - 1]


def used_range(ws: Worksheet) -> Optional[Tuple[int, int, int, int]]:
    """Bounding box (c1, r1, c2, r2) of non-placeholder cells, or None."""
    min_col = min_row = None
    max_col = max_row = 0
    for row in ws.rows:
        for idx, cell in enumerate(row.cells, start=1):
            if cell.is_placeholder():
                continue
            min_col = idx if min_col is None else min(min_col, idx)
            max_col = max(max_col, idx)
            if min_row is None:
                min_row = row.number
            max_row = row.number
    if min_col is None:
        return None
    return min_col, min_row, max_col, max_row
