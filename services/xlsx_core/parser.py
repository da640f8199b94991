"""XLSX part parser - converts package parts to the worksheet model.

Handles:
- Strict to Transitional namespace translation
- Legacy charset transcoding
- Worksheets (rows, cells, merge cells, auto-filter, hyperlinks, columns,
  table parts; everything else kept as XML fragments)
- Workbook sheet registry and defined names
- Relationships, calc chain and table parts
"""

from __future__ import annotations

import logging
import posixpath
import re
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from .errors import PackageError
from .schemas import (
    AutoFilter,
    CalcChainEntry,
    Cell,
    CellFormula,
    ColumnDefinition,
    DefinedName,
    Hyperlink,
    MergeCell,
    Relationship,
    Row,
    SheetInfo,
    TableColumn,
    TableDefinition,
    TablePart,
    Worksheet,
)

logger = logging.getLogger(__name__)


# =============================================================================
# NAMESPACES
# =============================================================================

NS = {
    "main": "http://schemas.openxmlformats.org/spreadsheetml/2006/main",
    "r": "http://schemas.openxmlformats.org/officeDocument/2006/relationships",
    "mc": "http://schemas.openxmlformats.org/markup-compatibility/2006",
    "x14": "http://schemas.microsoft.com/office/spreadsheetml/2009/9/main",
    "x14ac": "http://schemas.microsoft.com/office/spreadsheetml/2009/9/ac",
    "xr": "http://schemas.microsoft.com/office/spreadsheetml/2014/revision",
    "xr2": "http://schemas.microsoft.com/office/spreadsheetml/2015/revision2",
    "xr3": "http://schemas.microsoft.com/office/spreadsheetml/2016/revision3",
    "xdr": "http://schemas.openxmlformats.org/drawingml/2006/spreadsheetDrawing",
    "a": "http://schemas.openxmlformats.org/drawingml/2006/main",
    "rel": "http://schemas.openxmlformats.org/package/2006/relationships",
    "ct": "http://schemas.openxmlformats.org/package/2006/content-types",
}

XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

REL_TYPE_BASE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
REL_TYPE_OFFICE_DOCUMENT = f"{REL_TYPE_BASE}/officeDocument"
REL_TYPE_WORKSHEET = f"{REL_TYPE_BASE}/worksheet"
REL_TYPE_SHARED_STRINGS = f"{REL_TYPE_BASE}/sharedStrings"
REL_TYPE_STYLES = f"{REL_TYPE_BASE}/styles"
REL_TYPE_CALC_CHAIN = f"{REL_TYPE_BASE}/calcChain"
REL_TYPE_TABLE = f"{REL_TYPE_BASE}/table"
REL_TYPE_HYPERLINK = f"{REL_TYPE_BASE}/hyperlink"

# Register namespaces
for prefix, uri in NS.items():
    if prefix in ("rel", "ct"):
        continue
    ET.register_namespace(prefix if prefix != "main" else "", uri)

# Strict (ISO 29500) URIs and their Transitional equivalents
STRICT_TO_TRANSITIONAL = {
    b"http://purl.oclc.org/ooxml/spreadsheetml/main":
        b"http://schemas.openxmlformats.org/spreadsheetml/2006/main",
    b"http://purl.oclc.org/ooxml/officeDocument/relationships":
        b"http://schemas.openxmlformats.org/officeDocument/2006/relationships",
    b"http://purl.oclc.org/ooxml/drawingml/main":
        b"http://schemas.openxmlformats.org/drawingml/2006/main",
    b"http://purl.oclc.org/ooxml/drawingml/spreadsheetDrawing":
        b"http://schemas.openxmlformats.org/drawingml/2006/spreadsheetDrawing",
    b"http://purl.oclc.org/ooxml/officeDocument/extendedProperties":
        b"http://schemas.openxmlformats.org/officeDocument/2006/extended-properties",
    b"http://purl.oclc.org/ooxml/officeDocument/docPropsVTypes":
        b"http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes",
}

# Worksheet child elements in schema order
WORKSHEET_ELEMENTS = [
    "sheetPr", "dimension", "sheetViews", "sheetFormatPr", "cols", "sheetData",
    "sheetCalcPr", "sheetProtection", "protectedRanges", "scenarios", "autoFilter",
    "sortState", "dataConsolidate", "customSheetViews", "mergeCells", "phoneticPr",
    "conditionalFormatting", "dataValidations", "hyperlinks", "printOptions",
    "pageMargins", "pageSetup", "headerFooter", "rowBreaks", "colBreaks",
    "customProperties", "cellWatches", "ignoredErrors", "smartTags", "drawing",
    "legacyDrawing", "legacyDrawingHF", "drawingHF", "picture", "oleObjects",
    "controls", "webPublishItems", "tableParts", "extLst",
]


# =============================================================================
# UTILITIES
# =============================================================================

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _ns_of(tag: str) -> str:
    return tag[1:].split("}", 1)[0] if tag.startswith("{") else ""


def _bool(value: Optional[str]) -> bool:
    return value in ("1", "true")


def _int(value: Optional[str], default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


def fragment(element: ET.Element) -> str:
    """Serialize one element without the redundant default namespace declaration."""
    text = ET.tostring(element, encoding="unicode")
    ns = NS["main"]
    text = text.replace(f' xmlns="{ns}"', "")
    text = text.replace(f" xmlns='{ns}'", "")
    return text


def extract_root_tag(xml_bytes: bytes) -> Tuple[bytes, bytes, bytes]:
    """Extract the original root element opening/closing tags from XML.

    Returns:
        (xml_declaration, root_open_tag, root_close_tag)

    ElementTree drops unused namespace declarations, but Excel needs them
    (e.g. for mc:Ignorable), so writers reuse the original root tag.
    """
    xml_str = xml_bytes.decode("utf-8")

    decl_match = re.match(r"(<\?xml[^?]*\?>)\s*", xml_str)
    if decl_match:
        xml_decl = decl_match.group(1).encode("utf-8")
        rest = xml_str[decl_match.end():]
    else:
        xml_decl = b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        rest = xml_str

    root_match = re.match(r"(<[a-zA-Z][^>]*>)", rest)
    root_open = root_match.group(1).encode("utf-8") if root_match else b""
    if root_open.endswith(b"/>"):
        root_open = root_open[:-2].rstrip() + b">"

    close_match = re.search(r"(</[a-zA-Z][^>]*>)\s*$", xml_str)
    root_close = close_match.group(1).encode("utf-8") if close_match else b""

    return xml_decl, root_open, root_close


def rels_path_for(part: str) -> str:
    """xl/worksheets/sheet1.xml -> xl/worksheets/_rels/sheet1.xml.rels"""
    directory, name = posixpath.split(part)
    return posixpath.join(directory, "_rels", f"{name}.rels")


def resolve_target(source_part: str, target: str) -> str:
    """Resolve a relationship target relative to the part that owns the rels."""
    if target.startswith("/"):
        return target[1:]
    base = posixpath.dirname(source_part)
    return posixpath.normpath(posixpath.join(base, target))


# =============================================================================
# DECODING
# =============================================================================

def namespace_strict_to_transitional(content: bytes) -> bytes:
    """Replace Strict namespace URIs with their Transitional equivalents."""
    if b"purl.oclc.org" not in content:
        return content
    for strict, transitional in STRICT_TO_TRANSITIONAL.items():
        content = content.replace(strict, transitional)
    return content


def default_charset_transcoder(charset: str, data: bytes) -> bytes:
    try:
        return data.decode(charset).encode("utf-8")
    except LookupError as e:
        raise PackageError(f"unsupported charset {charset}") from e


_ENCODING_RE = re.compile(rb"""^(\s*<\?xml[^>]*?encoding\s*=\s*)(["'])([A-Za-z0-9._-]+)\2""")


def decode_xml(
    data: bytes,
    transcoder: Optional[Callable[[str, bytes], bytes]] = None,
) -> bytes:
    """Prepare raw part bytes for ElementTree.

    Strict namespaces are translated first; parts declaring a non-UTF-8
    encoding are then transcoded to UTF-8 and their declaration rewritten.
    """
    data = namespace_strict_to_transitional(data)
    match = _ENCODING_RE.match(data)
    if not match:
        return data
    charset = match.group(3).decode("ascii")
    if charset.lower().replace("_", "-") in ("utf-8", "utf8"):
        return data
    converted = (transcoder or default_charset_transcoder)(charset, data)
    logger.debug(f"[PARSE] Transcoded part from {charset}")
    return _ENCODING_RE.sub(lambda m: m.group(1) + m.group(2) + b"UTF-8" + m.group(2), converted, count=1)


def parse_xml(data: bytes) -> ET.Element:
    try:
        return ET.parse(BytesIO(data)).getroot()
    except ET.ParseError as e:
        raise PackageError(f"malformed XML: {e}") from e


# =============================================================================
# WORKSHEET
# =============================================================================

def _parse_cell(el: ET.Element) -> Cell:
    attrs = dict(el.attrib)
    cell = Cell(
        ref=attrs.pop("r", None) or None,
        data_type=attrs.pop("t", None),
        style=_int(attrs.pop("s", None)),
        xml_space=attrs.pop(XML_SPACE, None),
    )
    for child in el:
        local = _local(child.tag)
        if local == "v":
            cell.value = child.text or ""
        elif local == "f":
            f_attrs = dict(child.attrib)
            si = f_attrs.pop("si", None)
            cell.formula = CellFormula(
                content=child.text or "",
                type=f_attrs.pop("t", None),
                ref=f_attrs.pop("ref", None),
                si=int(si) if si is not None else None,
                extra_attrs=f_attrs,
            )
        elif local == "is":
            cell.inline_xml = fragment(child)
    cell.extra_attrs = attrs
    return cell


def _parse_row(el: ET.Element) -> Row:
    ns = NS["main"]
    attrs = dict(el.attrib)
    ht = attrs.pop("ht", None)
    return Row(
        number=_int(attrs.pop("r", None)),
        height=float(ht) if ht else None,
        hidden=_bool(attrs.pop("hidden", None)),
        custom_height=_bool(attrs.pop("customHeight", None)),
        style=_int(attrs.pop("s", None)),
        custom_format=_bool(attrs.pop("customFormat", None)),
        spans=attrs.pop("spans", None),
        cells=[_parse_cell(c) for c in el.findall(f"{{{ns}}}c")],
        extra_attrs=attrs,
    )


def _parse_columns(cols_el: ET.Element) -> List[ColumnDefinition]:
    """Parse column information from a worksheet."""
    ns = NS["main"]
    columns: List[ColumnDefinition] = []
    for col in cols_el.findall(f"{{{ns}}}col"):
        attrs = dict(col.attrib)
        width = attrs.pop("width", None)
        columns.append(ColumnDefinition(
            min=_int(attrs.pop("min", None), 1),
            max=_int(attrs.pop("max", None), 1),
            width=float(width) if width else None,
            style=_int(attrs.pop("style", None)),
            hidden=_bool(attrs.pop("hidden", None)),
            custom_width=_bool(attrs.pop("customWidth", None)),
            extra_attrs=attrs,
        ))
    return columns


def _parse_hyperlinks(el: ET.Element) -> List[Hyperlink]:
    ns = NS["main"]
    r_ns = NS["r"]
    links: List[Hyperlink] = []
    for link in el.findall(f"{{{ns}}}hyperlink"):
        attrs = dict(link.attrib)
        ref = attrs.pop("ref", None)
        if not ref:
            continue
        links.append(Hyperlink(
            ref=ref,
            rid=attrs.pop(f"{{{r_ns}}}id", None),
            location=attrs.pop("location", None),
            display=attrs.pop("display", None),
            tooltip=attrs.pop("tooltip", None),
            extra_attrs=attrs,
        ))
    return links


def parse_worksheet(data: bytes) -> Worksheet:
    """Parse a worksheet part into the (not yet normalized) model."""
    root = parse_xml(data)
    ns = NS["main"]
    r_ns = NS["r"]

    ws = Worksheet()
    _, root_open, _ = extract_root_tag(data)
    if root_open:
        ws.root_open_tag = root_open.decode("utf-8")

    last_slot = ""
    for child in root:
        local = _local(child.tag)
        if _ns_of(child.tag) != ns or local not in WORKSHEET_ELEMENTS:
            # Foreign element (e.g. mc:AlternateContent): keep next to its neighbour
            ws.anchored.setdefault(last_slot, []).append(fragment(child))
            continue
        last_slot = local

        if local == "sheetData":
            ws.rows = [_parse_row(r) for r in child.findall(f"{{{ns}}}row")]
        elif local == "dimension":
            continue  # Recomputed on save
        elif local == "cols":
            ws.cols = _parse_columns(child)
        elif local == "mergeCells":
            ws.merge_cells = [
                MergeCell(ref=m.get("ref"))
                for m in child.findall(f"{{{ns}}}mergeCell")
                if m.get("ref")
            ]
        elif local == "autoFilter":
            attrs = dict(child.attrib)
            ws.auto_filter = AutoFilter(
                ref=attrs.pop("ref", ""),
                inner_xml="".join(fragment(c) for c in child),
                extra_attrs=attrs,
            )
        elif local == "hyperlinks":
            ws.hyperlinks = _parse_hyperlinks(child)
        elif local == "tableParts":
            ws.table_parts = [
                TablePart(rid=t.get(f"{{{r_ns}}}id"))
                for t in child.findall(f"{{{ns}}}tablePart")
                if t.get(f"{{{r_ns}}}id")
            ]
        else:
            ws.preserved.setdefault(local, []).append(fragment(child))

    logger.debug(f"[PARSE] Worksheet with {len(ws.rows)} row records")
    return ws


# =============================================================================
# WORKBOOK
# =============================================================================

def parse_relationships(data: Optional[bytes]) -> List[Relationship]:
    """Parse a .rels part. Missing parts yield an empty list."""
    if not data:
        return []
    root = parse_xml(data)
    ns_rel = NS["rel"]
    rels: List[Relationship] = []
    for rel in root.findall(f"{{{ns_rel}}}Relationship"):
        rel_id = rel.get("Id")
        if not rel_id:
            continue
        rels.append(Relationship(
            id=rel_id,
            type=rel.get("Type", ""),
            target=rel.get("Target", ""),
            target_mode=rel.get("TargetMode"),
        ))
    return rels


def parse_sheet_registry(
    wb_root: ET.Element,
    rels: List[Relationship],
    workbook_path: str,
) -> List[SheetInfo]:
    """Sheets of workbook.xml with their part paths resolved through the rels."""
    ns = NS["main"]
    r_ns = NS["r"]
    id_to_target: Dict[str, str] = {r.id: r.target for r in rels}

    sheets: List[SheetInfo] = []
    sheets_el = wb_root.find(f"{{{ns}}}sheets")
    if sheets_el is None:
        return sheets
    for sheet in sheets_el.findall(f"{{{ns}}}sheet"):
        rid = sheet.get(f"{{{r_ns}}}id", "")
        target = id_to_target.get(rid)
        if target is None:
            logger.warning(f"[PARSE] Sheet {sheet.get('name')!r} has no relationship {rid!r}")
            continue
        sheets.append(SheetInfo(
            name=sheet.get("name", ""),
            sheet_id=_int(sheet.get("sheetId")),
            rid=rid,
            path=resolve_target(workbook_path, target),
            state=sheet.get("state"),
        ))
    return sheets


def parse_defined_names(wb_root: ET.Element) -> List[DefinedName]:
    """Parse defined names from workbook.xml."""
    names: List[DefinedName] = []
    ns = NS["main"]

    dn_el = wb_root.find(f"{{{ns}}}definedNames")
    if dn_el is None:
        return names

    for dn in dn_el.findall(f"{{{ns}}}definedName"):
        attrs = dict(dn.attrib)
        local_sheet = attrs.pop("localSheetId", None)
        names.append(DefinedName(
            name=attrs.pop("name", ""),
            refers_to=dn.text or "",
            local_sheet_id=int(local_sheet) if local_sheet else None,
            hidden=_bool(attrs.pop("hidden", None)),
            comment=attrs.pop("comment", None),
            extra_attrs=attrs,
        ))
    return names


def parse_date1904(wb_root: ET.Element) -> bool:
    ns = NS["main"]
    pr = wb_root.find(f"{{{ns}}}workbookPr")
    return pr is not None and _bool(pr.get("date1904"))


def parse_calc_chain(data: bytes) -> List[CalcChainEntry]:
    """Parse xl/calcChain.xml. Entries without ``i`` inherit the previous sheet id."""
    root = parse_xml(data)
    ns = NS["main"]
    entries: List[CalcChainEntry] = []
    current = 0
    for c in root.findall(f"{{{ns}}}c"):
        attrs = dict(c.attrib)
        ref = attrs.pop("r", "")
        sheet_id = attrs.pop("i", None)
        if sheet_id is not None:
            current = int(sheet_id)
        entries.append(CalcChainEntry(
            ref=ref,
            sheet_id=current,
            explicit_sheet_id=sheet_id is not None,
            extra_attrs=attrs,
        ))
    return entries


def parse_table(path: str, data: bytes) -> TableDefinition:
    """Parse a structured table part."""
    root = parse_xml(data)
    ns = NS["main"]
    columns: List[TableColumn] = []
    cols_el = root.find(f"{{{ns}}}tableColumns")
    if cols_el is not None:
        for col_el in cols_el.findall(f"{{{ns}}}tableColumn"):
            columns.append(TableColumn(id=_int(col_el.get("id")), name=col_el.get("name", "")))
    af_el = root.find(f"{{{ns}}}autoFilter")
    name = root.get("name", "")
    return TableDefinition(
        path=path,
        id=_int(root.get("id")),
        name=name,
        display_name=root.get("displayName", name),
        ref=root.get("ref", ""),
        auto_filter_ref=af_el.get("ref") if af_el is not None else None,
        columns=columns,
    )
