"""API routes for XLSX spreadsheets.

- Upload XLSX -> open a Document
- Read sheets and rows
- Edit cells, merge ranges, insert/remove rows and columns
- Export back to XLSX
"""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Literal, NoReturn, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel

from services.xlsx_core import (
    Document,
    SheetNotFoundError,
    XlsxCoreError,
    coordinates_to_range_ref,
)
from services.xlsx_core.grid import used_range


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/spreadsheets", tags=["spreadsheets"])

# In-memory storage for open spreadsheets
_active_spreadsheets: dict[str, Document] = {}
_spreadsheet_names: dict[str, str] = {}

OUTPUT_DIR = Path(__file__).parent.parent.parent / "data" / "outputs"
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)


# =============================================================================
# MODELS
# =============================================================================

class CellEditRequest(BaseModel):
    """Request to edit a cell value or formula."""
    sheet: str
    cell: str  # Cell reference e.g. "A1"
    value: str | int | float | bool | None = None
    formula: Optional[str] = None  # Takes precedence over value when set


class StructureEditRequest(BaseModel):
    """Insert or remove one row or column."""
    sheet: str
    action: Literal["insert_row", "remove_row", "insert_col", "remove_col"]
    row: Optional[int] = None  # For row actions
    column: Optional[str] = None  # Column letters for column actions


class MergeRequest(BaseModel):
    sheet: str
    top_left: str
    bottom_right: str


class DefinedNameRequest(BaseModel):
    name: str
    refers_to: str  # e.g. "Sheet1!$A$1:$B$4"
    scope: Optional[str] = None  # Sheet name; None for workbook scope


# =============================================================================
# HELPERS
# =============================================================================

def _get_document(spreadsheet_id: str) -> Document:
    doc = _active_spreadsheets.get(spreadsheet_id)
    if doc is None:
        raise HTTPException(404, "Spreadsheet not found")
    return doc


def _raise_http(spreadsheet_id: str, e: XlsxCoreError) -> NoReturn:
    """Map library errors to HTTP errors: not found -> 404, everything else -> 400."""
    logger.error(f"[API] {spreadsheet_id}: {type(e).__name__}: {e}")
    if isinstance(e, SheetNotFoundError):
        raise HTTPException(404, str(e)) from e
    raise HTTPException(400, str(e)) from e


def _document_summary(doc: Document, spreadsheet_id: str) -> dict:
    """Convert a document to a UI-friendly summary structure."""
    sheets = []
    for index, name in enumerate(doc.get_sheet_list()):
        ws = doc.worksheet(name)
        box = used_range(ws)
        sheets.append({
            "index": index,
            "name": name,
            "dimension": coordinates_to_range_ref(box) if box else None,
            "row_count": len(ws.rows),
            "merge_cells": [m.ref for m in ws.merge_cells],
            "auto_filter": ws.auto_filter.ref if ws.auto_filter else None,
        })
    return {
        "id": spreadsheet_id,
        "filename": _spreadsheet_names.get(spreadsheet_id),
        "sheets": sheets,
        "defined_names": [
            {"name": dn.name, "refers_to": dn.refers_to, "local_sheet_id": dn.local_sheet_id}
            for dn in doc.get_defined_names()
        ],
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/", response_model=dict)
async def upload_spreadsheet(file: UploadFile = File(...)):
    """Upload an XLSX file and open it for editing."""
    if not file.filename:
        raise HTTPException(400, "No filename provided")

    if not file.filename.lower().endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")

    spreadsheet_id = uuid.uuid4().hex[:8]
    content = await file.read()

    try:
        doc = Document.open_bytes(content)
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)

    _active_spreadsheets[spreadsheet_id] = doc
    _spreadsheet_names[spreadsheet_id] = file.filename
    logger.info(f"[API] Opened {file.filename} as {spreadsheet_id}")
    return _document_summary(doc, spreadsheet_id)


@router.get("/{spreadsheet_id}")
async def get_spreadsheet(spreadsheet_id: str):
    """Get the current state of a spreadsheet."""
    doc = _get_document(spreadsheet_id)
    try:
        return _document_summary(doc, spreadsheet_id)
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)


@router.get("/{spreadsheet_id}/sheets/{sheet}/rows")
async def get_rows(spreadsheet_id: str, sheet: str):
    """All rows of a sheet as text."""
    doc = _get_document(spreadsheet_id)
    try:
        return {"sheet": sheet, "rows": doc.get_rows(sheet)}
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)


@router.post("/{spreadsheet_id}/cell")
async def edit_cell(spreadsheet_id: str, edit: CellEditRequest):
    """Edit a single cell. A formula replaces any value; a value clears any formula."""
    doc = _get_document(spreadsheet_id)
    try:
        if edit.formula:
            doc.set_cell_formula(edit.sheet, edit.cell, edit.formula)
        else:
            doc.set_cell_value(edit.sheet, edit.cell, edit.value)
        return {"sheet": edit.sheet, "cell": edit.cell, "value": doc.get_cell_value(edit.sheet, edit.cell)}
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)


@router.post("/{spreadsheet_id}/structure")
async def edit_structure(spreadsheet_id: str, edit: StructureEditRequest):
    """Insert or remove a row or column, shifting every dependent reference."""
    doc = _get_document(spreadsheet_id)
    if edit.action.endswith("_row") and edit.row is None:
        raise HTTPException(400, f"{edit.action} requires 'row'")
    if edit.action.endswith("_col") and not edit.column:
        raise HTTPException(400, f"{edit.action} requires 'column'")

    try:
        if edit.action == "insert_row":
            doc.insert_row(edit.sheet, edit.row)
        elif edit.action == "remove_row":
            doc.remove_row(edit.sheet, edit.row)
        elif edit.action == "insert_col":
            doc.insert_col(edit.sheet, edit.column)
        else:
            doc.remove_col(edit.sheet, edit.column)
        logger.info(f"[API] {spreadsheet_id}: {edit.action} on {edit.sheet!r}")
        return _document_summary(doc, spreadsheet_id)
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)


@router.post("/{spreadsheet_id}/merge")
async def merge_cells(spreadsheet_id: str, payload: MergeRequest):
    doc = _get_document(spreadsheet_id)
    try:
        doc.merge_cell(payload.sheet, payload.top_left, payload.bottom_right)
        return {"sheet": payload.sheet, "merge_cells": doc.get_merge_cells(payload.sheet)}
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)


@router.post("/{spreadsheet_id}/defined-names")
async def set_defined_name(spreadsheet_id: str, payload: DefinedNameRequest):
    doc = _get_document(spreadsheet_id)
    try:
        doc.set_defined_name(payload.name, payload.refers_to, scope=payload.scope)
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    return _document_summary(doc, spreadsheet_id)


@router.post("/{spreadsheet_id}/export/file")
async def export_spreadsheet(spreadsheet_id: str):
    """Export spreadsheet back to an XLSX file."""
    doc = _get_document(spreadsheet_id)

    original = _spreadsheet_names.get(spreadsheet_id, "spreadsheet.xlsx")
    output_filename = f"{spreadsheet_id}_{Path(original).stem}_copy.xlsx"
    output_path = OUTPUT_DIR / output_filename

    try:
        doc.save_as(output_path)
    except XlsxCoreError as e:
        _raise_http(spreadsheet_id, e)

    logger.info(f"[API] Exported {spreadsheet_id} to {output_path}")
    return FileResponse(
        path=str(output_path),
        filename=output_filename,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@router.delete("/{spreadsheet_id}")
async def close_spreadsheet(spreadsheet_id: str):
    """Close a spreadsheet and release its temp files."""
    doc = _get_document(spreadsheet_id)
    doc.close()
    del _active_spreadsheets[spreadsheet_id]
    _spreadsheet_names.pop(spreadsheet_id, None)
    return {"status": "closed"}
