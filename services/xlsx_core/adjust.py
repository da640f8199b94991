"""Structural adjuster - insert/remove one row or column.

An edit ``(axis, position, delta)`` with delta +1 (insert) or -1 (remove)
rewrites every reference-bearing structure of the document so cells on the
far side of the edit keep pointing at the same content.

The work happens in two phases:
1. ``plan_adjustment`` parses and shifts every reference without touching
   the document. Any malformed reference raises here.
2. ``commit_adjustment`` applies the plan to the worksheet. Workbook-level
   parts (calc chain, defined names, table parts, relationships) are
   written back by the Document from the same plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import MAX_COLUMNS, TOTAL_ROWS
from .coordinates import (
    cell_name_to_coordinates,
    coordinates_to_cell_name,
    coordinates_to_range_ref,
    range_ref_to_coordinates,
    sort_coordinates,
)
from .errors import ColumnOutOfRangeError, RowOutOfRangeError
from .formula import shift_formula, shift_point, shift_span
from .schemas import (
    AutoFilter,
    Axis,
    CalcChainEntry,
    Cell,
    CellFormula,
    ColumnDefinition,
    DefinedName,
    Hyperlink,
    MergeCell,
    Row,
    TableColumn,
    TableDefinition,
    Worksheet,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PLAN
# =============================================================================

@dataclass
class AdjustmentContext:
    """Everything an edit on ``sheet_name`` can reach."""
    sheet_name: str
    sheet_id: int
    worksheet: Worksheet
    other_worksheets: Dict[str, Worksheet] = field(default_factory=dict)
    calc_chain: Optional[List[CalcChainEntry]] = None
    defined_names: List[DefinedName] = field(default_factory=list)
    tables: List[TableDefinition] = field(default_factory=list)


@dataclass
class TableAdjustment:
    table: TableDefinition
    updated: Optional[TableDefinition]  # None: the table range was consumed


@dataclass
class AdjustmentPlan:
    axis: Axis
    position: int
    delta: int
    merge_cells: List[MergeCell] = field(default_factory=list)
    auto_filter: Optional[AutoFilter] = None
    unhide_rows: List[Row] = field(default_factory=list)
    hyperlinks: List[Hyperlink] = field(default_factory=list)
    dropped_hyperlink_rids: List[str] = field(default_factory=list)
    cols: List[ColumnDefinition] = field(default_factory=list)
    formulas: List[Tuple[Cell, CellFormula]] = field(default_factory=list)
    calc_chain: Optional[List[CalcChainEntry]] = None
    defined_names: List[DefinedName] = field(default_factory=list)
    tables: List[TableAdjustment] = field(default_factory=list)


def _ceiling(axis: Axis) -> int:
    return TOTAL_ROWS if axis == Axis.ROW else MAX_COLUMNS


def shift_range(ref: str, axis: Axis, position: int, delta: int) -> Optional[List[int]]:
    """Shift a range reference. Returns sorted [c1, r1, c2, r2] or None when consumed.

    The reference is parsed with the coordinate codec so malformed text raises.
    A range pushed past the sheet edge is trimmed to it; one pushed entirely
    past it is treated as consumed.
    """
    coords = sort_coordinates(range_ref_to_coordinates(ref))
    first, last = (1, 3) if axis == Axis.ROW else (0, 2)
    span = shift_span(coords[first], coords[last], position, delta)
    if span is None:
        return None
    ceiling = _ceiling(axis)
    if span[0] > ceiling:
        return None
    coords[first], coords[last] = span[0], min(span[1], ceiling)
    return coords


def _range_text(coords: List[int], original: str) -> str:
    if ":" not in original and coords[0] == coords[2] and coords[1] == coords[3]:
        return coordinates_to_cell_name(coords[0], coords[1])
    return coordinates_to_range_ref(coords)


def _plan_merge_cells(ws: Worksheet, plan: AdjustmentPlan) -> None:
    for merge in ws.merge_cells:
        coords = shift_range(merge.ref, plan.axis, plan.position, plan.delta)
        if coords is None or (coords[0] == coords[2] and coords[1] == coords[3]):
            logger.debug(f"[ADJUST] Dropping merge {merge.ref}")
            continue
        plan.merge_cells.append(MergeCell(ref=coordinates_to_range_ref(coords)))


def _plan_auto_filter(ws: Worksheet, plan: AdjustmentPlan) -> None:
    af = ws.auto_filter
    if af is None:
        return
    original = sort_coordinates(range_ref_to_coordinates(af.ref))
    coords = shift_range(af.ref, plan.axis, plan.position, plan.delta)
    header_removed = plan.axis == Axis.ROW and plan.delta < 0 and original[1] == plan.position
    if coords is None or header_removed:
        logger.debug(f"[ADJUST] Dropping auto-filter {af.ref}")
        # Rows hidden by the filter become visible again
        for number in range(original[1] + 1, min(original[3], len(ws.rows)) + 1):
            row = ws.rows[number - 1]
            if row.hidden:
                plan.unhide_rows.append(row)
        return
    plan.auto_filter = af.model_copy(update={"ref": coordinates_to_range_ref(coords)})


def _plan_hyperlinks(ws: Worksheet, plan: AdjustmentPlan) -> None:
    for link in ws.hyperlinks:
        coords = shift_range(link.ref, plan.axis, plan.position, plan.delta)
        if coords is None:
            logger.debug(f"[ADJUST] Dropping hyperlink at {link.ref}")
            if link.rid:
                plan.dropped_hyperlink_rids.append(link.rid)
            continue
        plan.hyperlinks.append(link.model_copy(update={"ref": _range_text(coords, link.ref)}))


def _plan_cols(ws: Worksheet, plan: AdjustmentPlan) -> None:
    if plan.axis != Axis.COLUMN:
        plan.cols = list(ws.cols)
        return
    for col in ws.cols:
        span = shift_span(col.min, col.max, plan.position, plan.delta)
        if span is None or span[0] > MAX_COLUMNS:
            continue
        plan.cols.append(col.model_copy(update={"min": span[0], "max": min(span[1], MAX_COLUMNS)}))


def _plan_formulas(ctx: AdjustmentContext, plan: AdjustmentPlan) -> None:
    sheets = [(ctx.sheet_name, ctx.worksheet)] + [
        (name, ws) for name, ws in ctx.other_worksheets.items()
        if name.lower() != ctx.sheet_name.lower()
    ]
    for host, ws in sheets:
        own = ws is ctx.worksheet
        for row in ws.rows:
            for cell in row.cells:
                f = cell.formula
                if f is None:
                    continue
                content = shift_formula(
                    f.content, ctx.sheet_name, plan.axis, plan.position, plan.delta, host_sheet=host,
                )
                ref = f.ref
                if own and ref:
                    coords = shift_range(ref, plan.axis, plan.position, plan.delta)
                    ref = None if coords is None else _range_text(coords, ref)
                if content != f.content or ref != f.ref:
                    plan.formulas.append((cell, f.model_copy(update={"content": content, "ref": ref})))


def _plan_calc_chain(ctx: AdjustmentContext, plan: AdjustmentPlan) -> None:
    if ctx.calc_chain is None:
        return
    entries: List[CalcChainEntry] = []
    for entry in ctx.calc_chain:
        col, row = cell_name_to_coordinates(entry.ref)
        if entry.sheet_id != ctx.sheet_id:
            entries.append(entry)
            continue
        if plan.axis == Axis.ROW:
            row = shift_point(row, plan.position, plan.delta)
        else:
            col = shift_point(col, plan.position, plan.delta)
        if row is None or col is None or row > TOTAL_ROWS or col > MAX_COLUMNS:
            continue
        entries.append(entry.model_copy(update={"ref": coordinates_to_cell_name(col, row)}))
    plan.calc_chain = entries


def _plan_defined_names(ctx: AdjustmentContext, plan: AdjustmentPlan) -> None:
    for dn in ctx.defined_names:
        refers_to = shift_formula(dn.refers_to, ctx.sheet_name, plan.axis, plan.position, plan.delta)
        if refers_to != dn.refers_to:
            dn = dn.model_copy(update={"refers_to": refers_to})
        plan.defined_names.append(dn)


def _unique_column_name(columns: List[TableColumn]) -> str:
    names = {c.name.lower() for c in columns}
    n = len(columns) + 1
    while f"column{n}" in names:
        n += 1
    return f"Column{n}"


def _plan_tables(ctx: AdjustmentContext, plan: AdjustmentPlan) -> None:
    for table in ctx.tables:
        original = sort_coordinates(range_ref_to_coordinates(table.ref))
        coords = shift_range(table.ref, plan.axis, plan.position, plan.delta)
        if coords is None:
            logger.info(f"[ADJUST] Table {table.name} removed with its range {table.ref}")
            plan.tables.append(TableAdjustment(table=table, updated=None))
            continue

        af_ref = table.auto_filter_ref
        if af_ref:
            af_coords = shift_range(af_ref, plan.axis, plan.position, plan.delta)
            af_ref = None if af_coords is None else coordinates_to_range_ref(af_coords)

        columns = [c.model_copy() for c in table.columns]
        if plan.axis == Axis.COLUMN:
            c1, c2 = original[0], original[2]
            if plan.delta > 0 and c1 < plan.position <= c2:
                columns.insert(plan.position - c1, TableColumn(id=0, name=_unique_column_name(columns)))
            elif plan.delta < 0 and c1 <= plan.position <= c2 and plan.position - c1 < len(columns):
                columns.pop(plan.position - c1)
            next_id = max((c.id for c in columns), default=0) + 1
            for col in columns:
                if col.id == 0:
                    col.id = next_id
                    next_id += 1

        updated = table.model_copy(update={
            "ref": coordinates_to_range_ref(coords),
            "auto_filter_ref": af_ref,
            "columns": columns,
        })
        plan.tables.append(TableAdjustment(table=table, updated=updated))


def _check_grid_capacity(ws: Worksheet, axis: Axis, position: int, delta: int) -> None:
    if delta < 0:
        return
    if axis == Axis.ROW:
        if position <= len(ws.rows) and len(ws.rows) >= TOTAL_ROWS:
            raise RowOutOfRangeError(len(ws.rows) + 1, TOTAL_ROWS)
        return
    for row in ws.rows:
        if position <= len(row.cells) and len(row.cells) >= MAX_COLUMNS:
            raise ColumnOutOfRangeError(len(row.cells) + 1, MAX_COLUMNS)


def plan_adjustment(ctx: AdjustmentContext, axis: Axis, position: int, delta: int) -> AdjustmentPlan:
    """Compute every rewrite of an edit. Nothing in ``ctx`` is modified.

    Raises:
        InvalidCellNameError, InvalidCoordinatesError: a stored reference
            cannot be parsed
        RowOutOfRangeError, ColumnOutOfRangeError: the grid is already full
    """
    ws = ctx.worksheet
    _check_grid_capacity(ws, axis, position, delta)

    plan = AdjustmentPlan(axis=axis, position=position, delta=delta)
    _plan_merge_cells(ws, plan)
    _plan_auto_filter(ws, plan)
    _plan_hyperlinks(ws, plan)
    _plan_cols(ws, plan)
    _plan_calc_chain(ctx, plan)
    _plan_defined_names(ctx, plan)
    _plan_tables(ctx, plan)
    _plan_formulas(ctx, plan)
    return plan


# =============================================================================
# COMMIT
# =============================================================================

def _renumber(row: Row, number: int) -> None:
    row.number = number
    for idx, cell in enumerate(row.cells, start=1):
        cell.ref = coordinates_to_cell_name(idx, number)


def shift_grid(ws: Worksheet, axis: Axis, position: int, delta: int) -> None:
    """Insert or remove one row/column of the dense grid in place."""
    rows = ws.rows
    if axis == Axis.ROW:
        if position > len(rows):
            return
        if delta > 0:
            rows.insert(position - 1, Row(number=position))
        else:
            rows.pop(position - 1)
        for idx in range(position - 1, len(rows)):
            _renumber(rows[idx], idx + 1)
        return

    for row in rows:
        if position > len(row.cells):
            continue
        if delta > 0:
            row.cells.insert(position - 1, Cell())
        else:
            row.cells.pop(position - 1)
        # The spans hint no longer matches the cells
        row.spans = None
        for idx in range(position - 1, len(row.cells)):
            row.cells[idx].ref = coordinates_to_cell_name(idx + 1, row.number)


def commit_adjustment(ws: Worksheet, plan: AdjustmentPlan) -> None:
    """Apply the worksheet side of ``plan`` to ``ws`` and to formula cells."""
    for row in plan.unhide_rows:
        row.hidden = False
    for cell, formula in plan.formulas:
        cell.formula = formula

    shift_grid(ws, plan.axis, plan.position, plan.delta)

    ws.merge_cells = plan.merge_cells
    ws.auto_filter = plan.auto_filter
    ws.hyperlinks = plan.hyperlinks
    ws.cols = plan.cols
    logger.debug(
        f"[ADJUST] Committed {plan.axis.value} {'insert' if plan.delta > 0 else 'remove'} "
        f"at {plan.position}: {len(plan.merge_cells)} merges, {len(plan.formulas)} formulas"
    )
