"""XLSX part writer - serializes the worksheet model back to package parts.

Preserves structural fidelity by:
1. Reusing the original root tag of every rewritten part (ElementTree drops
   namespace declarations Excel needs, e.g. for mc:Ignorable)
2. Emitting worksheet children in schema order from an explicit list
3. Writing unmodelled elements back from their preserved fragments
"""

from __future__ import annotations

import re
from copy import deepcopy
from io import BytesIO
from typing import Dict, Iterable, List, Optional
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

from .coordinates import coordinates_to_range_ref
from .grid import used_range
from .parser import NS, WORKSHEET_ELEMENTS, XML_SPACE, extract_root_tag, fragment
from .schemas import (
    CalcChainEntry,
    Cell,
    ColumnDefinition,
    DefinedName,
    Relationship,
    Row,
    TableColumn,
    TableDefinition,
    TableOptions,
    Worksheet,
)
from .values import format_float

XML_HEADER = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'

# Root tag used for worksheets that were created here or whose original
# root does not declare SpreadsheetML as the default namespace
WORKSHEET_ROOT = (
    '<worksheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main"'
    ' xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships"'
    ' xmlns:mc="http://schemas.openxmlformats.org/markup-compatibility/2006"'
    ' xmlns:x14ac="http://schemas.microsoft.com/office/spreadsheetml/2009/9/ac"'
    ' xmlns:xr="http://schemas.microsoft.com/office/spreadsheetml/2014/revision"'
    ' mc:Ignorable="x14ac xr">'
)

# Element groups around sheetData, used by the stream writer
HEAD_ELEMENTS = WORKSHEET_ELEMENTS[:WORKSHEET_ELEMENTS.index("cols")]
TAIL_ELEMENTS = WORKSHEET_ELEMENTS[WORKSHEET_ELEMENTS.index("sheetData") + 1:]


def _attr(value: str) -> str:
    return escape(value, {'"': "&quot;", "\n": "&#10;", "\r": "&#13;", "\t": "&#9;"})


def _num(value: float) -> str:
    return format_float(float(value))


def _localize(element: ET.Element, ns: str) -> ET.Element:
    """Copy of ``element`` with tags in ``ns`` reduced to their local names."""
    clone = deepcopy(element)
    prefix = f"{{{ns}}}"
    for el in clone.iter():
        if isinstance(el.tag, str) and el.tag.startswith(prefix):
            el.tag = el.tag[len(prefix):]
    return clone


def _serialize_element_inner(element: ET.Element, ns: str) -> bytes:
    """Serialize an element's children only, without the root tag.

    Children are written with the root's namespace as their default; it is
    already declared on the original root element.
    """
    buffer = BytesIO()
    for child in element:
        child_str = ET.tostring(_localize(child, ns) if ns else child, encoding="unicode")
        buffer.write(child_str.encode("utf-8"))
    return buffer.getvalue()


def serialize_with_root(original_xml: Optional[bytes], root: ET.Element) -> bytes:
    """Serialize ``root`` reusing the root tag of ``original_xml`` when given."""
    ns = root.tag[1:].split("}", 1)[0] if root.tag.startswith("{") else ""
    if original_xml:
        xml_decl, root_open, root_close = extract_root_tag(original_xml)
        if root_open and root_close and _declares_default(root_open, ns):
            inner = _serialize_element_inner(root, ns)
            # Attributes may have changed (e.g. counts); refresh them in the tag
            root_open = _refresh_root_attrs(root_open, root)
            return xml_decl + b"\r\n" + root_open + inner + root_close
    clone = root
    if ns:
        clone = _localize(root, ns)
        clone.set("xmlns", ns)
    buffer = BytesIO()
    ET.ElementTree(clone).write(buffer, encoding="UTF-8", xml_declaration=False)
    return XML_HEADER + b"\r\n" + buffer.getvalue()


def _declares_default(root_open: bytes, ns: str) -> bool:
    if not ns:
        return True
    return f'xmlns="{ns}"'.encode() in root_open or f"xmlns='{ns}'".encode() in root_open


def _refresh_root_attrs(root_open: bytes, root: ET.Element) -> bytes:
    text = root_open.decode("utf-8")
    for key, value in root.attrib.items():
        if key.startswith("{"):
            continue
        pattern = re.compile(rf'(\s{re.escape(key)}=)"[^"]*"')
        if pattern.search(text):
            text = pattern.sub(lambda m: f'{m.group(1)}"{_attr(value)}"', text, count=1)
        else:
            text = text[:-1] + f' {key}="{_attr(value)}">'
    return text.encode("utf-8")


# =============================================================================
# WORKSHEET
# =============================================================================

def _q(local: str) -> str:
    return f"{{{NS['main']}}}{local}"


def _row_element(row: Row) -> ET.Element:
    el = ET.Element(_q("row"))
    el.set("r", str(row.number))
    if row.spans:
        el.set("spans", row.spans)
    if row.style:
        el.set("s", str(row.style))
    if row.custom_format:
        el.set("customFormat", "1")
    if row.height is not None:
        el.set("ht", _num(row.height))
    if row.hidden:
        el.set("hidden", "1")
    if row.custom_height:
        el.set("customHeight", "1")
    for key, value in row.extra_attrs.items():
        el.set(key, value)
    return el


def _cell_element(cell: Cell) -> ET.Element:
    el = ET.Element(_q("c"))
    el.set("r", cell.ref or "")
    if cell.style:
        el.set("s", str(cell.style))
    if cell.data_type:
        el.set("t", cell.data_type)
    for key, value in cell.extra_attrs.items():
        el.set(key, value)
    if cell.xml_space:
        el.set(XML_SPACE, cell.xml_space)
    if cell.formula is not None:
        f = cell.formula
        f_el = ET.SubElement(el, _q("f"))
        if f.type:
            f_el.set("t", f.type)
        if f.ref:
            f_el.set("ref", f.ref)
        if f.si is not None:
            f_el.set("si", str(f.si))
        for key, value in f.extra_attrs.items():
            f_el.set(key, value)
        if f.content:
            f_el.text = f.content
    if cell.value is not None:
        v_el = ET.SubElement(el, _q("v"))
        v_el.text = cell.value
    if cell.inline_xml:
        wrapper = ET.fromstring(f'<wrap xmlns="{NS["main"]}">{cell.inline_xml}</wrap>')
        for child in wrapper:
            el.append(child)
    return el


def _sheet_data_xml(rows: List[Row]) -> str:
    sheet_data = ET.Element(_q("sheetData"))
    for row in rows:
        if row.is_empty():
            continue
        row_el = _row_element(row)
        for cell in row.cells:
            if cell.is_placeholder():
                continue
            row_el.append(_cell_element(cell))
        sheet_data.append(row_el)
    return fragment(sheet_data)


def cols_xml(cols: Iterable[ColumnDefinition]) -> str:
    parts = []
    for col in cols:
        attrs = f' min="{col.min}" max="{col.max}"'
        if col.width is not None:
            attrs += f' width="{_num(col.width)}"'
        if col.style:
            attrs += f' style="{col.style}"'
        if col.hidden:
            attrs += ' hidden="1"'
        if col.custom_width:
            attrs += ' customWidth="1"'
        for key, value in col.extra_attrs.items():
            if not key.startswith("{"):
                attrs += f' {key}="{_attr(value)}"'
        parts.append(f"<col{attrs}/>")
    if not parts:
        return ""
    return "<cols>" + "".join(parts) + "</cols>"


def _extra_attrs_xml(extra: Dict[str, str]) -> str:
    return "".join(f' {k}="{_attr(v)}"' for k, v in extra.items() if not k.startswith("{"))


def merge_cells_xml(refs: List[str]) -> str:
    if not refs:
        return ""
    body = "".join(f'<mergeCell ref="{_attr(ref)}"/>' for ref in refs)
    return f'<mergeCells count="{len(refs)}">{body}</mergeCells>'


def _element_xml(ws: Worksheet, name: str) -> str:
    """XML for one worksheet slot (excluding sheetData)."""
    if name == "dimension":
        box = used_range(ws) if ws.normalized else None
        ref = coordinates_to_range_ref(box) if box else "A1"
        if box and box[0] == box[2] and box[1] == box[3]:
            ref = ref.split(":")[0]
        return f'<dimension ref="{ref}"/>'
    if name == "cols":
        return cols_xml(ws.cols)
    if name == "autoFilter":
        af = ws.auto_filter
        if af is None:
            return ""
        attrs = f' ref="{_attr(af.ref)}"' + _extra_attrs_xml(af.extra_attrs)
        if af.inner_xml:
            return f"<autoFilter{attrs}>{af.inner_xml}</autoFilter>"
        return f"<autoFilter{attrs}/>"
    if name == "mergeCells":
        return merge_cells_xml([m.ref for m in ws.merge_cells])
    if name == "hyperlinks":
        if not ws.hyperlinks:
            return ""
        parts = []
        for link in ws.hyperlinks:
            attrs = f' ref="{_attr(link.ref)}"'
            if link.rid:
                attrs += f' r:id="{_attr(link.rid)}"'
            for key in ("location", "display", "tooltip"):
                value = getattr(link, key)
                if value is not None:
                    attrs += f' {key}="{_attr(value)}"'
            attrs += _extra_attrs_xml(link.extra_attrs)
            parts.append(f"<hyperlink{attrs}/>")
        return "<hyperlinks>" + "".join(parts) + "</hyperlinks>"
    if name == "tableParts":
        if not ws.table_parts:
            return ""
        body = "".join(f'<tablePart r:id="{_attr(t.rid)}"/>' for t in ws.table_parts)
        return f'<tableParts count="{len(ws.table_parts)}">{body}</tableParts>'
    return "".join(ws.preserved.get(name, []))


def worksheet_elements_xml(ws: Worksheet, names: Iterable[str]) -> str:
    """Serialize the given slots, each followed by its anchored foreign elements."""
    out = []
    for name in names:
        out.append(_element_xml(ws, name))
        out.extend(ws.anchored.get(name, []))
    return "".join(out)


def worksheet_root_tag(ws: Worksheet) -> str:
    tag = ws.root_open_tag
    if not tag or not tag.startswith("<worksheet") or f'xmlns="{NS["main"]}"' not in tag:
        return WORKSHEET_ROOT
    if "xmlns:r=" not in tag:
        tag = tag[:-1] + f' xmlns:r="{NS["r"]}">'
    return tag


def serialize_worksheet(ws: Worksheet) -> bytes:
    """Serialize a worksheet model in schema order."""
    out = [worksheet_root_tag(ws)]
    out.extend(ws.anchored.get("", []))
    for name in WORKSHEET_ELEMENTS:
        if name == "sheetData":
            out.append(_sheet_data_xml(ws.rows))
            out.extend(ws.anchored.get(name, []))
            continue
        out.append(worksheet_elements_xml(ws, [name]))
    out.append("</worksheet>")
    return XML_HEADER + b"\r\n" + "".join(out).encode("utf-8")


# =============================================================================
# WORKBOOK PARTS
# =============================================================================

def serialize_relationships(rels: List[Relationship]) -> bytes:
    parts = []
    for rel in rels:
        attrs = f'Id="{_attr(rel.id)}" Type="{_attr(rel.type)}" Target="{_attr(rel.target)}"'
        if rel.target_mode:
            attrs += f' TargetMode="{_attr(rel.target_mode)}"'
        parts.append(f"<Relationship {attrs}/>")
    body = f'<Relationships xmlns="{NS["rel"]}">' + "".join(parts) + "</Relationships>"
    return XML_HEADER + b"\r\n" + body.encode("utf-8")


def serialize_calc_chain(entries: List[CalcChainEntry]) -> bytes:
    """Write the calc chain, emitting ``i`` whenever the sheet id changes."""
    parts = []
    previous = None
    for entry in entries:
        attrs = f'r="{_attr(entry.ref)}"'
        if entry.sheet_id != previous:
            attrs += f' i="{entry.sheet_id}"'
            previous = entry.sheet_id
        attrs += _extra_attrs_xml(entry.extra_attrs)
        parts.append(f"<c {attrs}/>")
    body = f'<calcChain xmlns="{NS["main"]}">' + "".join(parts) + "</calcChain>"
    return XML_HEADER + b"\r\n" + body.encode("utf-8")


def apply_defined_names(wb_root: ET.Element, names: List[DefinedName]) -> None:
    """Replace the definedNames element of a workbook root."""
    ns = NS["main"]
    existing = wb_root.find(f"{{{ns}}}definedNames")
    if existing is not None:
        index = list(wb_root).index(existing)
        wb_root.remove(existing)
    else:
        # definedNames follows sheets/functionGroups/externalReferences
        index = len(wb_root)
        for anchor in ("calcPr", "oleSize", "customWorkbookViews", "pivotCaches",
                       "smartTagPr", "smartTagTypes", "webPublishing", "fileRecoveryPr",
                       "webPublishObjects", "extLst"):
            el = wb_root.find(f"{{{ns}}}{anchor}")
            if el is not None:
                index = min(index, list(wb_root).index(el))
    if not names:
        return
    dn_el = ET.Element(f"{{{ns}}}definedNames")
    for dn in names:
        el = ET.SubElement(dn_el, f"{{{ns}}}definedName")
        el.set("name", dn.name)
        if dn.comment is not None:
            el.set("comment", dn.comment)
        if dn.local_sheet_id is not None:
            el.set("localSheetId", str(dn.local_sheet_id))
        if dn.hidden:
            el.set("hidden", "1")
        for key, value in dn.extra_attrs.items():
            el.set(key, value)
        el.text = dn.refers_to
    wb_root.insert(index, dn_el)


def serialize_table(
    table_id: int,
    name: str,
    ref: str,
    columns: List[TableColumn],
    options: TableOptions,
) -> bytes:
    """Write a new table part."""
    cols = "".join(
        f'<tableColumn id="{c.id}" name="{_attr(c.name)}"/>' for c in columns
    )
    style_attrs = ""
    if options.table_style:
        style_attrs += f' name="{_attr(options.table_style)}"'
    style_attrs += (
        f' showFirstColumn="{int(options.show_first_column)}"'
        f' showLastColumn="{int(options.show_last_column)}"'
        f' showRowStripes="{int(options.show_row_stripes)}"'
        f' showColumnStripes="{int(options.show_column_stripes)}"'
    )
    body = (
        f'<table xmlns="{NS["main"]}" id="{table_id}" name="{_attr(name)}"'
        f' displayName="{_attr(name)}" ref="{ref}">'
        f'<autoFilter ref="{ref}"/>'
        f'<tableColumns count="{len(columns)}">{cols}</tableColumns>'
        f"<tableStyleInfo{style_attrs}/>"
        "</table>"
    )
    return XML_HEADER + b"\r\n" + body.encode("utf-8")


def update_table_part(original_xml: bytes, table: TableDefinition) -> bytes:
    """Rewrite the ref, autoFilter and tableColumns of an existing table part.

    Columns that survive keep their original element (and its formulas);
    new columns get a bare tableColumn element.
    """
    ns = NS["main"]
    root = ET.fromstring(original_xml)
    root.set("ref", table.ref)

    af_el = root.find(f"{{{ns}}}autoFilter")
    if table.auto_filter_ref is None:
        if af_el is not None:
            root.remove(af_el)
    elif af_el is not None:
        af_el.set("ref", table.auto_filter_ref)

    cols_el = root.find(f"{{{ns}}}tableColumns")
    if cols_el is not None:
        existing = {el.get("id"): el for el in cols_el.findall(f"{{{ns}}}tableColumn")}
        for el in list(cols_el):
            cols_el.remove(el)
        for col in table.columns:
            el = existing.get(str(col.id))
            if el is None:
                el = ET.Element(f"{{{ns}}}tableColumn")
                el.set("id", str(col.id))
                el.set("name", col.name)
            cols_el.append(el)
        cols_el.set("count", str(len(table.columns)))
    return serialize_with_root(original_xml, root)
