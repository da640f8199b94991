"""XLSX document - the package layer and public API of the core.

A Document owns every cache for one open workbook:
- raw package parts (in memory, or in temp files for oversized worksheets
  and shared strings)
- parsed worksheets (parse once, normalized, write-through)
- relationships, content types, the workbook sheet registry, shared
  strings, styles, calc chain, defined names and table definitions

Usage:
    doc = Document.open_file("report.xlsx")
    doc.insert_row("Sheet1", 2)
    doc.set_cell_value("Sheet1", "A2", "inserted")
    doc.save_as("report-edited.xlsx")
    doc.close()
"""

from __future__ import annotations

import dataclasses
import logging
import os
import posixpath
import re
import shutil
import tempfile
import threading
import zipfile
from contextlib import contextmanager
from io import BytesIO
from typing import IO, Any, Dict, Iterator, List, Optional, Union
from xml.etree import ElementTree as ET

from .adjust import AdjustmentContext, AdjustmentPlan, commit_adjustment, plan_adjustment
from .config import EngineSettings, get_engine_settings
from .coordinates import (
    cell_name_to_coordinates,
    cell_refs_to_coordinates,
    column_name_to_number,
    coordinates_to_range_ref,
    range_ref_to_coordinates,
    sort_coordinates,
)
from .errors import (
    InvalidRowNumberError,
    PackageError,
    SheetNotFoundError,
    StreamWriterActiveError,
    UnzipSizeLimitExceededError,
)
from .grid import ensure_cell, get_cell, normalize_worksheet
from .parser import (
    NS,
    REL_TYPE_CALC_CHAIN,
    REL_TYPE_OFFICE_DOCUMENT,
    REL_TYPE_SHARED_STRINGS,
    REL_TYPE_STYLES,
    REL_TYPE_TABLE,
    REL_TYPE_WORKSHEET,
    XML_SPACE,
    decode_xml,
    parse_calc_chain,
    parse_date1904,
    parse_defined_names,
    parse_relationships,
    parse_sheet_registry,
    parse_table,
    parse_worksheet,
    parse_xml,
    rels_path_for,
    resolve_target,
)
from .schemas import (
    Axis,
    CalcChainEntry,
    CellFormula,
    DefinedName,
    DocumentOptions,
    MergeCell,
    Relationship,
    RichTextRun,
    SheetInfo,
    TableColumn,
    TableDefinition,
    TableOptions,
    Worksheet,
)
from .stream import StreamWriter
from .templates import (
    CONTENT_TYPE_SHARED_STRINGS,
    CONTENT_TYPE_TABLE,
    CONTENT_TYPE_WORKSHEET,
    STYLES,
    blank_shared_strings,
    blank_workbook_parts,
    blank_worksheet,
)
from .values import DEFAULT_DATE_NUM_FMT, T_BOOL, T_SHARED, T_STR, encode_value
from .writer import (
    XML_HEADER,
    apply_defined_names,
    serialize_calc_chain,
    serialize_relationships,
    serialize_table,
    serialize_with_root,
    serialize_worksheet,
    update_table_part,
)

logger = logging.getLogger(__name__)

CONTENT_TYPES_PART = "[Content_Types].xml"
ROOT_RELS_PART = "_rels/.rels"
CONTENT_TYPE_STYLES = "application/vnd.openxmlformats-officedocument.spreadsheetml.styles+xml"

# Characters Excel rejects in sheet names
_INVALID_SHEET_CHARS = re.compile(r"[\\/?*\[\]:]")
MAX_SHEET_NAME_LENGTH = 31


def _is_spillable(name: str) -> bool:
    return name.startswith("xl/worksheets/sheet") or name.endswith("sharedStrings.xml")


def _rich_text_content(el: ET.Element) -> str:
    """Plain text of an ``<si>`` or ``<is>`` element (phonetic runs excluded)."""
    ns = NS["main"]
    t_el = el.find(f"{{{ns}}}t")
    if t_el is not None:
        return t_el.text or ""
    parts = []
    for r in el.findall(f"{{{ns}}}r"):
        t = r.find(f"{{{ns}}}t")
        if t is not None and t.text:
            parts.append(t.text)
    return "".join(parts)


# =============================================================================
# SHARED STRINGS
# =============================================================================

class SharedStringTable:
    """The workbook's shared string pool (xl/sharedStrings.xml)."""

    def __init__(self, data: Optional[bytes] = None):
        self.original = data
        ns = NS["main"]
        self.root = parse_xml(data) if data else ET.Element(f"{{{ns}}}sst")
        self.items: List[ET.Element] = self.root.findall(f"{{{ns}}}si")
        self._index: Dict[str, int] = {}
        for i, si in enumerate(self.items):
            if si.find(f"{{{ns}}}t") is not None:
                self._index.setdefault(_rich_text_content(si), i)
        self.dirty = False

    def __len__(self) -> int:
        return len(self.items)

    def get(self, index: int) -> str:
        if index < 0 or index >= len(self.items):
            logger.warning(f"[PARSE] Shared string index {index} out of range ({len(self.items)} items)")
            return ""
        return _rich_text_content(self.items[index])

    def _append(self, si: ET.Element) -> int:
        self.root.append(si)
        self.items.append(si)
        self.dirty = True
        return len(self.items) - 1

    def append_text(self, text: str) -> int:
        """Index of ``text`` in the pool, adding it when missing."""
        if text in self._index:
            return self._index[text]
        ns = NS["main"]
        si = ET.Element(f"{{{ns}}}si")
        t = ET.SubElement(si, f"{{{ns}}}t")
        t.text = text
        if text and (text[0].isspace() or text[-1].isspace()):
            t.set(XML_SPACE, "preserve")
        index = self._append(si)
        self._index[text] = index
        return index

    def append_rich_text(self, runs: List[RichTextRun]) -> int:
        """Add a rich text item. Rich items are never deduplicated."""
        ns = NS["main"]
        si = ET.Element(f"{{{ns}}}si")
        for run in runs:
            r = ET.SubElement(si, f"{{{ns}}}r")
            props = []
            if run.font:
                props.append(("rFont", run.font))
            if run.bold:
                props.append(("b", None))
            if run.italic:
                props.append(("i", None))
            if run.strike:
                props.append(("strike", None))
            if run.color:
                props.append(("color", run.color))
            if run.size:
                props.append(("sz", run.size))
            if run.underline:
                props.append(("u", None))
            if props:
                rpr = ET.SubElement(r, f"{{{ns}}}rPr")
                for tag, value in props:
                    prop = ET.SubElement(rpr, f"{{{ns}}}{tag}")
                    if tag == "color":
                        prop.set("rgb", str(value).lstrip("#").upper())
                    elif value is not None:
                        prop.set("val", str(value))
            t = ET.SubElement(r, f"{{{ns}}}t")
            t.text = run.text
            if run.text and (run.text[0].isspace() or run.text[-1].isspace()):
                t.set(XML_SPACE, "preserve")
        return self._append(si)

    def serialize(self) -> bytes:
        count = max(len(self.items), int(self.root.get("count", 0) or 0))
        self.root.set("count", str(count))
        self.root.set("uniqueCount", str(len(self.items)))
        return serialize_with_root(self.original, self.root)


# =============================================================================
# DOCUMENT
# =============================================================================

class Document:
    """An open XLSX workbook. Thread-safe for concurrent callers."""

    def __init__(self, options: Optional[DocumentOptions] = None):
        self.options = options or DocumentOptions()
        overrides = {
            key: value
            for key, value in self.options.model_dump(exclude={"charset_transcoder"}).items()
            if value is not None
        }
        self.settings: EngineSettings = dataclasses.replace(get_engine_settings(), **overrides)
        if self.settings.unzip_xml_size_limit > self.settings.unzip_size_limit:
            self.settings.unzip_xml_size_limit = self.settings.unzip_size_limit
        self.path: Optional[str] = None

        self._lock = threading.RLock()
        self._order: List[str] = []
        self._parts: Dict[str, bytes] = {}
        self._spilled: Dict[str, str] = {}
        self._temp_files: List[str] = []

        self._worksheets: Dict[str, Worksheet] = {}
        self._sheet_locks: Dict[str, threading.Lock] = {}
        self._streams: Dict[str, StreamWriter] = {}
        self._rels: Dict[str, List[Relationship]] = {}
        self._dirty_rels: set = set()
        self._tables: Dict[str, TableDefinition] = {}

        self._content_types: Optional[ET.Element] = None
        self._content_types_dirty = False
        self._workbook_path = "xl/workbook.xml"
        self._workbook_root: Optional[ET.Element] = None
        self._workbook_dirty = False
        self._sheets: List[SheetInfo] = []
        self._defined_names: List[DefinedName] = []
        self.date1904 = False

        self._shared_strings: Optional[SharedStringTable] = None
        self._styles_root: Optional[ET.Element] = None
        self._styles_path: Optional[str] = None
        self._styles_dirty = False
        self._calc_chain: Optional[List[CalcChainEntry]] = None
        self._calc_chain_loaded = False
        self._calc_chain_dirty = False

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def new(cls, options: Optional[DocumentOptions] = None) -> "Document":
        """A blank workbook with one empty sheet named Sheet1."""
        doc = cls(options)
        for name, data in blank_workbook_parts().items():
            doc._set_part(name, data)
        doc._load_workbook()
        logger.info("[OPEN] Created blank workbook")
        return doc

    @classmethod
    def open_file(cls, path: str, options: Optional[DocumentOptions] = None) -> "Document":
        doc = cls(options)
        try:
            with zipfile.ZipFile(path) as zf:
                doc._load_zip(zf)
            doc._load_workbook()
        except zipfile.BadZipFile as e:
            doc.close()
            raise PackageError(f"not a valid XLSX package: {path}") from e
        except Exception:
            doc.close()
            raise
        doc.path = path
        logger.info(f"[OPEN] Opened {path} ({len(doc._sheets)} sheets)")
        return doc

    @classmethod
    def open_bytes(cls, data: bytes, options: Optional[DocumentOptions] = None) -> "Document":
        doc = cls(options)
        try:
            with zipfile.ZipFile(BytesIO(data)) as zf:
                doc._load_zip(zf)
            doc._load_workbook()
        except zipfile.BadZipFile as e:
            doc.close()
            raise PackageError("not a valid XLSX package") from e
        except Exception:
            doc.close()
            raise
        logger.info(f"[OPEN] Opened {len(data)} bytes ({len(doc._sheets)} sheets)")
        return doc

    def _load_zip(self, zf: zipfile.ZipFile) -> None:
        """Read every entry, enforcing the cumulative size ceiling."""
        limit = self.settings.unzip_size_limit
        xml_limit = self.settings.unzip_xml_size_limit
        total = 0
        for info in zf.infolist():
            if info.is_dir():
                continue
            total += info.file_size
            if total > limit:
                raise UnzipSizeLimitExceededError(limit)
            if _is_spillable(info.filename) and info.file_size > xml_limit:
                with tempfile.NamedTemporaryFile(
                    prefix="xlsxcore-", suffix=".xml", dir=self.settings.tmp_dir, delete=False,
                ) as tmp, zf.open(info) as src:
                    shutil.copyfileobj(src, tmp)
                self._temp_files.append(tmp.name)
                self._spilled[info.filename] = tmp.name
                self._order.append(info.filename)
                logger.debug(f"[OPEN] Spilled {info.filename} ({info.file_size} bytes) to {tmp.name}")
                continue
            self._set_part(info.filename, zf.read(info))

    def _load_workbook(self) -> None:
        ct_data = self._read_part(CONTENT_TYPES_PART)
        if ct_data is None:
            raise PackageError(f"missing {CONTENT_TYPES_PART}")
        self._content_types = parse_xml(ct_data)

        for rel in self._relationships(""):
            if rel.type == REL_TYPE_OFFICE_DOCUMENT:
                self._workbook_path = resolve_target("", rel.target)
                break
        wb_data = self._read_part(self._workbook_path)
        if wb_data is None:
            raise PackageError(f"missing workbook part {self._workbook_path}")
        self._workbook_root = parse_xml(self._decode(wb_data))
        self._sheets = parse_sheet_registry(
            self._workbook_root, self._relationships(self._workbook_path), self._workbook_path,
        )
        self._defined_names = parse_defined_names(self._workbook_root)
        self.date1904 = parse_date1904(self._workbook_root)

    # -------------------------------------------------------------------------
    # Parts
    # -------------------------------------------------------------------------

    def _decode(self, data: bytes) -> bytes:
        return decode_xml(data, self.options.charset_transcoder)

    def _read_part(self, name: str) -> Optional[bytes]:
        if name in self._parts:
            return self._parts[name]
        spilled = self._spilled.get(name)
        if spilled is not None:
            with open(spilled, "rb") as f:
                return f.read()
        return None

    def _set_part(self, name: str, data: bytes) -> None:
        if name not in self._parts and name not in self._spilled:
            self._order.append(name)
        self._spilled.pop(name, None)
        self._parts[name] = data

    def _remove_part(self, name: str) -> None:
        self._parts.pop(name, None)
        self._spilled.pop(name, None)
        if name in self._order:
            self._order.remove(name)
        self._remove_override(name)

    def _relationships(self, part: str) -> List[Relationship]:
        """Relationships owned by ``part`` ("" for the package root)."""
        rels_path = rels_path_for(part) if part else ROOT_RELS_PART
        if rels_path not in self._rels:
            self._rels[rels_path] = parse_relationships(self._read_part(rels_path))
        return self._rels[rels_path]

    def _add_relationship(self, part: str, rel_type: str, target: str, target_mode: Optional[str] = None) -> str:
        rels = self._relationships(part)
        ids = {r.id for r in rels}
        n = len(rels) + 1
        while f"rId{n}" in ids:
            n += 1
        rid = f"rId{n}"
        rels.append(Relationship(id=rid, type=rel_type, target=target, target_mode=target_mode))
        self._dirty_rels.add(rels_path_for(part))
        return rid

    def _remove_relationship(self, part: str, rid: str) -> None:
        rels = self._relationships(part)
        kept = [r for r in rels if r.id != rid]
        if len(kept) != len(rels):
            rels[:] = kept
            self._dirty_rels.add(rels_path_for(part))

    def _add_override(self, part: str, content_type: str) -> None:
        ct_ns = NS["ct"]
        part_name = "/" + part
        for el in self._content_types.findall(f"{{{ct_ns}}}Override"):
            if el.get("PartName") == part_name:
                return
        el = ET.SubElement(self._content_types, f"{{{ct_ns}}}Override")
        el.set("PartName", part_name)
        el.set("ContentType", content_type)
        self._content_types_dirty = True

    def _remove_override(self, part: str) -> None:
        if self._content_types is None:
            return
        ct_ns = NS["ct"]
        for el in self._content_types.findall(f"{{{ct_ns}}}Override"):
            if el.get("PartName") == "/" + part:
                self._content_types.remove(el)
                self._content_types_dirty = True

    def _workbook_part_of_type(self, rel_type: str) -> Optional[str]:
        for rel in self._relationships(self._workbook_path):
            if rel.type == rel_type:
                return resolve_target(self._workbook_path, rel.target)
        return None

    def _add_workbook_part(self, name: str, rel_type: str, content_type: str, data: bytes) -> None:
        self._set_part(name, data)
        target = posixpath.relpath(name, posixpath.dirname(self._workbook_path))
        self._add_relationship(self._workbook_path, rel_type, target)
        self._add_override(name, content_type)

    # -------------------------------------------------------------------------
    # Sheets
    # -------------------------------------------------------------------------

    def get_sheet_list(self) -> List[str]:
        return [s.name for s in self._sheets]

    def _sheet_info(self, sheet: str) -> SheetInfo:
        key = sheet.lower()
        for info in self._sheets:
            if info.name.lower() == key:
                return info
        raise SheetNotFoundError(sheet)

    def new_sheet(self, name: str) -> int:
        """Add an empty worksheet and return its index in the sheet list."""
        if not name or len(name) > MAX_SHEET_NAME_LENGTH or _INVALID_SHEET_CHARS.search(name):
            raise PackageError(f"invalid sheet name {name!r}")
        with self._lock:
            if any(s.name.lower() == name.lower() for s in self._sheets):
                raise PackageError(f"sheet {name} already exists")
            sheet_id = max((s.sheet_id for s in self._sheets), default=0) + 1
            n = sheet_id
            while f"xl/worksheets/sheet{n}.xml" in self._order:
                n += 1
            path = f"xl/worksheets/sheet{n}.xml"

            self._set_part(path, blank_worksheet())
            self._add_override(path, CONTENT_TYPE_WORKSHEET)
            target = posixpath.relpath(path, posixpath.dirname(self._workbook_path))
            rid = self._add_relationship(self._workbook_path, REL_TYPE_WORKSHEET, target)

            ns = NS["main"]
            sheets_el = self._workbook_root.find(f"{{{ns}}}sheets")
            if sheets_el is None:
                sheets_el = ET.SubElement(self._workbook_root, f"{{{ns}}}sheets")
            el = ET.SubElement(sheets_el, f"{{{ns}}}sheet")
            el.set("name", name)
            el.set("sheetId", str(sheet_id))
            el.set(f"{{{NS['r']}}}id", rid)
            self._workbook_dirty = True

            self._sheets.append(SheetInfo(name=name, sheet_id=sheet_id, rid=rid, path=path))
            logger.info(f"[OPEN] Added sheet {name!r} at {path}")
            return len(self._sheets) - 1

    def _load_worksheet(self, path: str) -> Worksheet:
        """Parse-once loader. Concurrent first reads of one sheet parse it once."""
        ws = self._worksheets.get(path)
        if ws is not None:
            return ws
        with self._lock:
            lock = self._sheet_locks.setdefault(path, threading.Lock())
        with lock:
            ws = self._worksheets.get(path)
            if ws is not None:
                return ws
            data = self._read_part(path)
            if data is None:
                logger.warning(f"[PARSE] Worksheet part {path} is missing; treating it as empty")
                data = blank_worksheet()
            ws = normalize_worksheet(parse_worksheet(self._decode(data)))
            self._worksheets[path] = ws
            return ws

    def worksheet(self, sheet: str) -> Worksheet:
        """The cached, normalized worksheet. Mutations write through to the document."""
        info = self._sheet_info(sheet)
        if info.path in self._streams:
            raise StreamWriterActiveError(info.name)
        return self._load_worksheet(info.path)

    @contextmanager
    def with_worksheet(self, sheet: str) -> Iterator[Worksheet]:
        """Scoped mutation: holds the document lock while the block runs."""
        with self._lock:
            yield self.worksheet(sheet)

    # -------------------------------------------------------------------------
    # Cells
    # -------------------------------------------------------------------------

    @property
    def shared_strings(self) -> SharedStringTable:
        with self._lock:
            if self._shared_strings is None:
                path = self._workbook_part_of_type(REL_TYPE_SHARED_STRINGS)
                data = self._read_part(path) if path else None
                self._shared_strings = SharedStringTable(self._decode(data) if data else None)
            return self._shared_strings

    def _cell_text(self, cell) -> str:
        if cell is None:
            return ""
        if cell.data_type == T_SHARED and cell.value:
            return self.shared_strings.get(int(cell.value))
        if cell.data_type == "inlineStr" and cell.inline_xml:
            wrapper = ET.fromstring(f'<wrap xmlns="{NS["main"]}">{cell.inline_xml}</wrap>')
            return "".join(_rich_text_content(el) for el in wrapper)
        if cell.data_type == T_BOOL:
            return "TRUE" if cell.value == "1" else "FALSE"
        return cell.value or ""

    def get_cell_value(self, sheet: str, cell: str) -> str:
        """Stored text of a cell; shared strings are resolved, no number formatting."""
        col, row = cell_name_to_coordinates(cell)
        return self._cell_text(get_cell(self.worksheet(sheet), col, row))

    def get_rows(self, sheet: str) -> List[List[str]]:
        """All rows as text; trailing empty cells and rows are trimmed."""
        result: List[List[str]] = []
        for row in self.worksheet(sheet).rows:
            values = [self._cell_text(c) for c in row.cells]
            while values and values[-1] == "":
                values.pop()
            result.append(values)
        while result and not result[-1]:
            result.pop()
        return result

    def set_cell_value(self, sheet: str, cell: str, value: Any) -> None:
        """Write a Python value to a cell. Strings go to the shared string table."""
        col, row = cell_name_to_coordinates(cell)
        with self._lock:
            target = ensure_cell(self.worksheet(sheet).rows, col, row)
            target.formula = None
            target.inline_xml = None
            target.xml_space = None
            if value is None:
                target.value = None
                target.data_type = None
                return
            if isinstance(value, list) and value and all(isinstance(r, RichTextRun) for r in value):
                target.data_type = T_SHARED
                target.value = str(self.shared_strings.append_rich_text(value))
                return
            (t, text, _), is_date_num = encode_value(value, self.date1904)
            if t == T_STR:
                target.data_type = T_SHARED
                target.value = str(self.shared_strings.append_text(text))
                return
            target.data_type = t or None
            target.value = text
            if is_date_num and target.style == 0:
                target.style = self.register_style(DEFAULT_DATE_NUM_FMT)

    def set_cell_formula(self, sheet: str, cell: str, formula: str) -> None:
        """Set a cell formula. The cached value is cleared; Excel recalculates it."""
        col, row = cell_name_to_coordinates(cell)
        with self._lock:
            target = ensure_cell(self.worksheet(sheet).rows, col, row)
            target.value = None
            target.data_type = None
            target.inline_xml = None
            if not formula:
                target.formula = None
                return
            target.formula = CellFormula(content=formula[1:] if formula.startswith("=") else formula)

    def merge_cell(self, sheet: str, top_left: str, bottom_right: str) -> None:
        """Merge a range. Existing merges that overlap it are replaced."""
        coords = sort_coordinates(cell_refs_to_coordinates(top_left, bottom_right))
        with self._lock:
            ws = self.worksheet(sheet)
            kept: List[MergeCell] = []
            for merge in ws.merge_cells:
                other = sort_coordinates(range_ref_to_coordinates(merge.ref))
                overlaps = not (
                    other[2] < coords[0] or other[0] > coords[2]
                    or other[3] < coords[1] or other[1] > coords[3]
                )
                if overlaps:
                    logger.warning(f"[ADJUST] Merge {merge.ref} replaced by overlapping merge")
                    continue
                kept.append(merge)
            kept.append(MergeCell(ref=coordinates_to_range_ref(coords)))
            ws.merge_cells = kept

    def get_merge_cells(self, sheet: str) -> List[str]:
        return [m.ref for m in self.worksheet(sheet).merge_cells]

    # -------------------------------------------------------------------------
    # Defined names
    # -------------------------------------------------------------------------

    def get_defined_names(self) -> List[DefinedName]:
        return [dn.model_copy() for dn in self._defined_names]

    def set_defined_name(
        self,
        name: str,
        refers_to: str,
        scope: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None:
        """Add or replace a defined name. ``scope`` is a sheet name (None: workbook)."""
        if not name or not refers_to:
            raise ValueError("defined name and its reference must not be empty")
        with self._lock:
            local_id = None
            if scope is not None:
                info = self._sheet_info(scope)
                local_id = self._sheets.index(info)
            dn = DefinedName(
                name=name,
                refers_to=refers_to[1:] if refers_to.startswith("=") else refers_to,
                local_sheet_id=local_id,
                comment=comment,
            )
            for i, existing in enumerate(self._defined_names):
                if existing.name.lower() == name.lower() and existing.local_sheet_id == local_id:
                    self._defined_names[i] = dn
                    break
            else:
                self._defined_names.append(dn)
            self._workbook_dirty = True

    # -------------------------------------------------------------------------
    # Styles
    # -------------------------------------------------------------------------

    def _load_styles(self) -> ET.Element:
        if self._styles_root is None:
            path = self._workbook_part_of_type(REL_TYPE_STYLES)
            data = self._read_part(path) if path else None
            if data is None:
                path = path or posixpath.join(posixpath.dirname(self._workbook_path), "styles.xml")
                data = XML_HEADER + b"\r\n" + STYLES.encode("utf-8")
                self._add_workbook_part(path, REL_TYPE_STYLES, CONTENT_TYPE_STYLES, data)
            self._styles_path = path
            self._styles_root = parse_xml(self._decode(data))
        return self._styles_root

    def register_style(self, num_fmt_id: int) -> int:
        """Index of a cell format using built-in number format ``num_fmt_id``."""
        with self._lock:
            root = self._load_styles()
            ns = NS["main"]
            cell_xfs = root.find(f"{{{ns}}}cellXfs")
            if cell_xfs is None:
                cell_xfs = ET.SubElement(root, f"{{{ns}}}cellXfs")
            xfs = cell_xfs.findall(f"{{{ns}}}xf")
            for i, xf in enumerate(xfs):
                if (xf.get("numFmtId") == str(num_fmt_id) and xf.get("fontId", "0") == "0"
                        and xf.get("fillId", "0") == "0" and xf.get("borderId", "0") == "0"):
                    return i
            xf = ET.SubElement(cell_xfs, f"{{{ns}}}xf")
            xf.set("numFmtId", str(num_fmt_id))
            xf.set("fontId", "0")
            xf.set("fillId", "0")
            xf.set("borderId", "0")
            xf.set("xfId", "0")
            xf.set("applyNumberFormat", "1")
            cell_xfs.set("count", str(len(xfs) + 1))
            self._styles_dirty = True
            return len(xfs)

    # -------------------------------------------------------------------------
    # Structural edits
    # -------------------------------------------------------------------------

    def _get_calc_chain(self) -> Optional[List[CalcChainEntry]]:
        if not self._calc_chain_loaded:
            path = self._workbook_part_of_type(REL_TYPE_CALC_CHAIN)
            data = self._read_part(path) if path else None
            self._calc_chain = parse_calc_chain(self._decode(data)) if data else None
            self._calc_chain_loaded = True
        return self._calc_chain

    def _sheet_tables(self, info: SheetInfo) -> List[TableDefinition]:
        tables = []
        for rel in self._relationships(info.path):
            if rel.type != REL_TYPE_TABLE:
                continue
            path = resolve_target(info.path, rel.target)
            if path not in self._tables:
                data = self._read_part(path)
                if data is None:
                    logger.warning(f"[PARSE] Table part {path} is missing")
                    continue
                self._tables[path] = parse_table(path, self._decode(data))
            tables.append(self._tables[path])
        return tables

    def _adjust(self, sheet: str, axis: Axis, position: int, delta: int) -> None:
        with self._lock:
            info = self._sheet_info(sheet)
            ws = self.worksheet(info.name)
            others: Dict[str, Worksheet] = {}
            for other in self._sheets:
                if other.path == info.path:
                    continue
                if other.path in self._streams:
                    logger.warning(f"[ADJUST] Skipping formulas of {other.name!r}: stream writer open")
                    continue
                others[other.name] = self._load_worksheet(other.path)

            ctx = AdjustmentContext(
                sheet_name=info.name,
                sheet_id=info.sheet_id,
                worksheet=ws,
                other_worksheets=others,
                calc_chain=self._get_calc_chain(),
                defined_names=self._defined_names,
                tables=self._sheet_tables(info),
            )
            plan = plan_adjustment(ctx, axis, position, delta)
            commit_adjustment(ws, plan)
            self._commit_workbook_adjustment(info, ws, plan)
            logger.info(
                f"[ADJUST] {'Inserted' if delta > 0 else 'Removed'} {axis.value} {position} on {info.name!r}"
            )

    def _commit_workbook_adjustment(self, info: SheetInfo, ws: Worksheet, plan: AdjustmentPlan) -> None:
        for rid in plan.dropped_hyperlink_rids:
            self._remove_relationship(info.path, rid)

        if plan.calc_chain is not None:
            if plan.calc_chain:
                self._calc_chain = plan.calc_chain
                self._calc_chain_dirty = True
            else:
                path = self._workbook_part_of_type(REL_TYPE_CALC_CHAIN)
                for rel in list(self._relationships(self._workbook_path)):
                    if rel.type == REL_TYPE_CALC_CHAIN:
                        self._remove_relationship(self._workbook_path, rel.id)
                if path:
                    self._remove_part(path)
                self._calc_chain = None
                self._calc_chain_dirty = False
                logger.info("[ADJUST] Calc chain is empty; removed")

        if any(a.refers_to != b.refers_to for a, b in zip(plan.defined_names, self._defined_names)):
            self._workbook_dirty = True
        self._defined_names = plan.defined_names

        for adjustment in plan.tables:
            path = adjustment.table.path
            if adjustment.updated is None:
                for rel in list(self._relationships(info.path)):
                    if rel.type == REL_TYPE_TABLE and resolve_target(info.path, rel.target) == path:
                        self._remove_relationship(info.path, rel.id)
                        ws.table_parts = [t for t in ws.table_parts if t.rid != rel.id]
                self._remove_part(path)
                self._tables.pop(path, None)
                continue
            data = self._read_part(path)
            if data is not None:
                self._set_part(path, update_table_part(self._decode(data), adjustment.updated))
            self._tables[path] = adjustment.updated

    def insert_row(self, sheet: str, row: int) -> None:
        """Insert one empty row before ``row``."""
        if row < 1:
            raise InvalidRowNumberError(row)
        self._adjust(sheet, Axis.ROW, row, 1)

    def remove_row(self, sheet: str, row: int) -> None:
        if row < 1:
            raise InvalidRowNumberError(row)
        self._adjust(sheet, Axis.ROW, row, -1)

    def insert_col(self, sheet: str, column: str) -> None:
        """Insert one empty column before ``column`` (letters, e.g. "C")."""
        self._adjust(sheet, Axis.COLUMN, column_name_to_number(column), 1)

    def remove_col(self, sheet: str, column: str) -> None:
        self._adjust(sheet, Axis.COLUMN, column_name_to_number(column), -1)

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    def new_stream_writer(self, sheet: str) -> StreamWriter:
        """Open a stream writer that replaces the sheet's data on flush."""
        with self._lock:
            info = self._sheet_info(sheet)
            if info.path in self._streams:
                raise StreamWriterActiveError(info.name)
            ws = self._load_worksheet(info.path)
            sw = StreamWriter(self, info, ws)
            self._streams[info.path] = sw
            return sw

    def _add_table_part(self, info: SheetInfo, ref: str, columns: List[TableColumn], options: TableOptions) -> str:
        """Create xl/tables/tableN.xml for a stream writer and link it to the sheet."""
        with self._lock:
            count = sum(1 for name in self._order if name.startswith("xl/tables/table") and name.endswith(".xml"))
            table_id = count + 1
            while f"xl/tables/table{table_id}.xml" in self._order:
                table_id += 1
            name = options.table_name or f"Table{table_id}"
            path = f"xl/tables/table{table_id}.xml"
            self._set_part(path, serialize_table(table_id, name, ref, columns, options))
            self._add_override(path, CONTENT_TYPE_TABLE)
            rid = self._add_relationship(info.path, REL_TYPE_TABLE, f"../tables/table{table_id}.xml")
            self._tables[path] = TableDefinition(
                path=path, id=table_id, name=name, display_name=name, ref=ref,
                auto_filter_ref=ref, columns=columns,
            )
            return rid

    def _finish_stream(self, sw: StreamWriter) -> None:
        with self._lock:
            path = sw.sheet.path
            self._streams.pop(path, None)
            self._worksheets.pop(path, None)
            spilled = sw.raw.detach()
            if spilled is not None:
                self._temp_files.append(spilled)
                self._parts.pop(path, None)
                if path not in self._order:
                    self._order.append(path)
                self._spilled[path] = spilled
            else:
                self._set_part(path, sw.raw.getvalue())

    def _discard_stream(self, sw: StreamWriter) -> None:
        with self._lock:
            self._streams.pop(sw.sheet.path, None)

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    def _commit_parts(self) -> None:
        """Serialize every cached model back into its package part."""
        if self._streams:
            raise StreamWriterActiveError(next(iter(self._streams.values())).sheet.name)

        for path, ws in self._worksheets.items():
            self._set_part(path, serialize_worksheet(ws))

        if self._shared_strings is not None and self._shared_strings.dirty:
            path = self._workbook_part_of_type(REL_TYPE_SHARED_STRINGS)
            if path is None:
                path = posixpath.join(posixpath.dirname(self._workbook_path), "sharedStrings.xml")
                self._add_workbook_part(path, REL_TYPE_SHARED_STRINGS, CONTENT_TYPE_SHARED_STRINGS,
                                        blank_shared_strings())
                self._shared_strings.original = blank_shared_strings()
            self._set_part(path, self._shared_strings.serialize())
            self._shared_strings.dirty = False

        if self._styles_dirty and self._styles_path:
            self._set_part(self._styles_path, serialize_with_root(self._decode(self._read_part(self._styles_path)), self._styles_root))
            self._styles_dirty = False

        if self._calc_chain_dirty and self._calc_chain:
            path = self._workbook_part_of_type(REL_TYPE_CALC_CHAIN)
            if path is not None:
                self._set_part(path, serialize_calc_chain(self._calc_chain))
            self._calc_chain_dirty = False

        if self._workbook_dirty:
            apply_defined_names(self._workbook_root, self._defined_names)
            self._set_part(
                self._workbook_path,
                serialize_with_root(self._decode(self._read_part(self._workbook_path)), self._workbook_root),
            )
            self._workbook_dirty = False

        for rels_path in sorted(self._dirty_rels):
            self._set_part(rels_path, serialize_relationships(self._rels[rels_path]))
        self._dirty_rels.clear()

        if self._content_types_dirty:
            self._set_part(
                CONTENT_TYPES_PART,
                serialize_with_root(self._decode(self._read_part(CONTENT_TYPES_PART)), self._content_types),
            )
            self._content_types_dirty = False

    def _write_zip(self, fileobj: IO[bytes]) -> None:
        with zipfile.ZipFile(fileobj, "w", zipfile.ZIP_DEFLATED) as zf:
            for name in self._order:
                spilled = self._spilled.get(name)
                if spilled is not None:
                    with open(spilled, "rb") as src, zf.open(name, "w", force_zip64=True) as dst:
                        shutil.copyfileobj(src, dst)
                else:
                    zf.writestr(name, self._parts[name])

    def write_to_bytes(self) -> bytes:
        with self._lock:
            self._commit_parts()
            buffer = BytesIO()
            self._write_zip(buffer)
            return buffer.getvalue()

    def save_as(self, path: Union[str, os.PathLike]) -> None:
        path = os.fspath(path)
        with self._lock:
            self._commit_parts()
            with open(path, "wb") as f:
                self._write_zip(f)
            self.path = path
        logger.info(f"[SAVE] Saved {len(self._order)} parts to {path}")

    def save(self) -> None:
        if not self.path:
            raise PackageError("document has no file path; use save_as")
        self.save_as(self.path)

    def close(self) -> None:
        """Release temp files and caches. The document cannot be used afterwards."""
        with self._lock:
            for sw in list(self._streams.values()):
                sw.raw.close()
            self._streams.clear()
            for path in self._temp_files:
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass
            self._temp_files.clear()
            self._spilled.clear()
            self._worksheets.clear()

    def __enter__(self) -> "Document":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
