"""Tests for the Document package layer.

Covers opening and saving packages, the size ceilings, temp-file spill of
large parts, charset/Strict handling, cell access, sheets, styles, the
parse-once worksheet cache and engine settings.
"""

import io
import sys
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from pathlib import Path
from xml.etree import ElementTree as ET

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from services.xlsx_core import (
    Document,
    DocumentOptions,
    PackageError,
    SheetNotFoundError,
    UnzipSizeLimitExceededError,
    get_engine_settings,
    reload_engine_settings,
)
from services.xlsx_core.parser import NS
from services.xlsx_core.writer import serialize_with_root


ROWS = (
    '<sheetData>'
    '<row r="1"><c r="A1" t="s"><v>0</v></c><c r="B1"><v>42</v></c></row>'
    '<row r="2"><c r="A2" t="inlineStr"><is><t>inline</t></is></c><c r="B2" t="b"><v>1</v></c></row>'
    '</sheetData>'
)
SHARED_STRINGS = (
    '<sst xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main" count="1" uniqueCount="1">'
    '<si><t>shared</t></si></sst>'
)
WORKBOOK_RELS = (
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/worksheet" Target="worksheets/sheet1.xml"/>'
    '<Relationship Id="rId2" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/styles" Target="styles.xml"/>'
    '<Relationship Id="rId3" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/sharedStrings" Target="sharedStrings.xml"/>'
    '</Relationships>'
)


def _with_strings(make_document, **kwargs):
    return make_document(ROWS, parts={
        "xl/sharedStrings.xml": SHARED_STRINGS,
        "xl/_rels/workbook.xml.rels": WORKBOOK_RELS,
    }, **kwargs)


class TestOpen:
    """Opening packages."""

    def test_read_values(self, make_document):
        """Test shared, numeric, inline and boolean cells are read."""
        doc = _with_strings(make_document)
        assert doc.get_sheet_list() == ["Sheet1"]
        assert doc.get_rows("Sheet1") == [["shared", "42"], ["inline", "TRUE"]]

    def test_not_a_zip(self):
        with pytest.raises(PackageError):
            Document.open_bytes(b"definitely not a zip file")

    def test_missing_workbook(self):
        """Test a package without a workbook part is rejected."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("[Content_Types].xml", "<Types xmlns=\"http://schemas.openxmlformats.org/package/2006/content-types\"/>")
        with pytest.raises(PackageError):
            Document.open_bytes(buffer.getvalue())

    def test_unzip_size_limit(self, package):
        """Test a package whose extracted size crosses the ceiling does not open."""
        data = package.build(ROWS)
        with pytest.raises(UnzipSizeLimitExceededError) as exc:
            Document.open_bytes(data, DocumentOptions(unzip_size_limit=256))
        assert "256" in str(exc.value)

    def test_large_parts_spill_to_temp_files(self, make_document, tmp_path):
        """Test oversized worksheet parts are read from temp files and removed on close."""
        doc = _with_strings(make_document, options=DocumentOptions(unzip_xml_size_limit=64, tmp_dir=str(tmp_path)))
        assert any(tmp_path.iterdir())
        assert doc.get_cell_value("Sheet1", "B1") == "42"
        saved = doc.write_to_bytes()
        doc.close()
        assert not any(tmp_path.iterdir())
        assert Document.open_bytes(saved).get_cell_value("Sheet1", "A1") == "shared"

    def test_strict_namespaces(self, make_document, package):
        """Test Strict OOXML worksheets are read as Transitional."""
        strict = package.sheet(ROWS).replace(
            b"http://schemas.openxmlformats.org/spreadsheetml/2006/main",
            b"http://purl.oclc.org/ooxml/spreadsheetml/main",
        )
        doc = make_document(parts={"xl/worksheets/sheet1.xml": strict})
        assert doc.get_cell_value("Sheet1", "B1") == "42"

    def test_charset_transcoder(self, make_document, package):
        """Test parts declaring a legacy encoding go through the transcoder."""
        body = '<sheetData><row r="1"><c r="A1" t="inlineStr"><is><t>café</t></is></c></row></sheetData>'
        xml = package.sheet(body).decode("utf-8").replace('encoding="UTF-8"', 'encoding="ISO-8859-1"')
        seen = []

        def transcoder(charset, data):
            seen.append(charset)
            return data.decode(charset).encode("utf-8")

        doc = make_document(
            parts={"xl/worksheets/sheet1.xml": xml.encode("latin-1")},
            options=DocumentOptions(charset_transcoder=transcoder),
        )
        assert doc.get_cell_value("Sheet1", "A1") == "café"
        assert seen == ["ISO-8859-1"]


class TestSaveRoundTrip:
    """Writing packages back."""

    def test_round_trip_values(self, blank_document):
        """Test values survive save and reopen."""
        doc = blank_document
        doc.set_cell_value("Sheet1", "A1", "text")
        doc.set_cell_value("Sheet1", "B1", 3.25)
        doc.set_cell_value("Sheet1", "C1", False)
        doc.set_cell_value("Sheet1", "A3", " padded ")
        reopened = Document.open_bytes(doc.write_to_bytes())
        assert reopened.get_rows("Sheet1") == [["text", "3.25", "FALSE"], [], [" padded "]]
        reopened.close()

    def test_new_parts_are_registered(self, blank_document, package):
        """Test a first shared string and a new sheet land in the content types and rels."""
        doc = blank_document
        doc.set_cell_value("Sheet1", "A1", "hello")
        doc.new_sheet("Sheet2")
        data = doc.write_to_bytes()

        types = package.read(data, "[Content_Types].xml")
        assert '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">' in types
        assert 'PartName="/xl/sharedStrings.xml"' in types
        assert 'PartName="/xl/worksheets/sheet2.xml"' in types
        assert "ns0:" not in types
        assert "sharedStrings.xml" in package.read(data, "xl/_rels/workbook.xml.rels")
        assert "<si><t>hello</t></si>" in package.read(data, "xl/sharedStrings.xml")

        with Document.open_bytes(data) as reopened:
            assert reopened.get_sheet_list() == ["Sheet1", "Sheet2"]
            assert reopened.get_cell_value("Sheet1", "A1") == "hello"

    def test_serialize_part_without_original(self):
        """Test a part in a non-SpreadsheetML namespace serializes with plain attributes."""
        ct = NS["ct"]
        root = ET.Element(f"{{{ct}}}Types")
        override = ET.SubElement(root, f"{{{ct}}}Override")
        override.set("PartName", "/xl/styles.xml")
        xml = serialize_with_root(None, root).decode("utf-8")
        assert f'<Types xmlns="{ct}"><Override PartName="/xl/styles.xml" /></Types>' in xml

    def test_serialize_keeps_original_root(self):
        """Test children are written under the original root tag and its declarations."""
        rel = NS["rel"]
        original = (
            f'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\r\n'
            f'<Relationships xmlns="{rel}" xmlns:x="urn:extra"></Relationships>'
        ).encode("utf-8")
        root = ET.Element(f"{{{rel}}}Relationships")
        ET.SubElement(root, f"{{{rel}}}Relationship", {"Id": "rId1", "Target": "a.xml"})
        xml = serialize_with_root(original, root).decode("utf-8")
        assert f'<Relationships xmlns="{rel}" xmlns:x="urn:extra"><Relationship Id="rId1" Target="a.xml" /></Relationships>' in xml

    def test_save_as_and_open_file(self, blank_document, tmp_path):
        path = tmp_path / "out.xlsx"
        blank_document.set_cell_value("Sheet1", "A1", "saved")
        blank_document.save_as(path)
        with Document.open_file(str(path)) as doc:
            assert doc.get_cell_value("Sheet1", "A1") == "saved"
            doc.set_cell_value("Sheet1", "A2", "again")
            doc.save()
        with Document.open_file(str(path)) as doc:
            assert doc.get_rows("Sheet1") == [["saved"], ["again"]]

    def test_save_without_path(self, blank_document):
        with pytest.raises(PackageError):
            blank_document.save()

    def test_unmodelled_elements_preserved(self, make_document, package):
        """Test elements the model does not cover are written back in order."""
        body = (
            '<sheetViews><sheetView workbookViewId="0"/></sheetViews>'
            + ROWS
            + '<conditionalFormatting sqref="A1"><cfRule type="cellIs" priority="1" operator="equal"><formula>1</formula></cfRule></conditionalFormatting>'
            '<pageMargins left="0.7" right="0.7" top="0.75" bottom="0.75" header="0.3" footer="0.3"/>'
        )
        doc = make_document(body)
        doc.insert_row("Sheet1", 1)
        xml = package.read(doc.write_to_bytes(), "xl/worksheets/sheet1.xml")
        assert xml.index("<sheetViews>") < xml.index("<sheetData>") < xml.index("<conditionalFormatting")
        assert xml.index("<conditionalFormatting") < xml.index("<pageMargins")
        assert '<dimension ref="A2:B3"/>' in xml

    def test_dates_use_date_style(self, blank_document, package):
        """Test an unstyled date gets the built-in date format."""
        blank_document.set_cell_value("Sheet1", "A1", date(2024, 1, 1))
        assert blank_document.get_cell_value("Sheet1", "A1") == "45292"
        assert blank_document.worksheet("Sheet1").rows[0].cells[0].style == 1
        assert 'numFmtId="22"' in package.read(blank_document.write_to_bytes(), "xl/styles.xml")

    def test_register_style_deduplicates(self, blank_document):
        first = blank_document.register_style(22)
        assert blank_document.register_style(22) == first
        assert blank_document.register_style(14) == first + 1


class TestSheets:
    """Sheet registry."""

    def test_new_sheet(self, blank_document, package):
        assert blank_document.new_sheet("Data") == 1
        blank_document.set_cell_value("Data", "A1", "x")
        saved = blank_document.write_to_bytes()
        assert "xl/worksheets/sheet2.xml" in package.names(saved)
        assert 'name="Data"' in package.read(saved, "xl/workbook.xml")
        assert Document.open_bytes(saved).get_sheet_list() == ["Sheet1", "Data"]

    @pytest.mark.parametrize("name", ["sheet1", "", "a/b", "x" * 32])
    def test_bad_sheet_names(self, blank_document, name):
        """Test duplicate (case-insensitive) and invalid names are rejected."""
        with pytest.raises(PackageError):
            blank_document.new_sheet(name)

    def test_lookup_is_case_insensitive(self, blank_document):
        blank_document.set_cell_value("SHEET1", "A1", 1)
        assert blank_document.get_cell_value("sheet1", "A1") == "1"

    def test_missing_sheet(self, blank_document):
        with pytest.raises(SheetNotFoundError):
            blank_document.get_rows("Missing")


class TestCells:
    """Cell and merge access."""

    def test_formula_replaces_value(self, blank_document):
        blank_document.set_cell_value("Sheet1", "A1", 5)
        blank_document.set_cell_formula("Sheet1", "A1", "=1+1")
        cell = blank_document.worksheet("Sheet1").rows[0].cells[0]
        assert cell.value is None
        assert cell.formula.content == "1+1"

    def test_clear_value(self, blank_document):
        blank_document.set_cell_value("Sheet1", "B2", "x")
        blank_document.set_cell_value("Sheet1", "B2", None)
        assert blank_document.get_rows("Sheet1") == []

    def test_merge_replaces_overlap(self, blank_document):
        """Test a new merge replaces the merges it overlaps."""
        blank_document.merge_cell("Sheet1", "A1", "B2")
        blank_document.merge_cell("Sheet1", "D1", "E1")
        blank_document.merge_cell("Sheet1", "B2", "C3")
        assert blank_document.get_merge_cells("Sheet1") == ["D1:E1", "B2:C3"]

    def test_with_worksheet(self, blank_document):
        """Test scoped mutation writes through to the document."""
        with blank_document.with_worksheet("Sheet1") as ws:
            ws.rows.clear()
        blank_document.set_cell_value("Sheet1", "A1", "x")
        assert blank_document.worksheet("Sheet1") is blank_document.worksheet("sheet1")


class TestConcurrency:
    """Parse-once cache."""

    def test_parallel_first_reads_share_one_model(self, make_document):
        doc = _with_strings(make_document)
        barrier = threading.Barrier(8)

        def load(_):
            barrier.wait()
            return doc.worksheet("Sheet1")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(load, range(8)))
        assert all(ws is results[0] for ws in results)


class TestEngineSettings:
    """Environment configuration."""

    def test_defaults(self, clean_settings, monkeypatch):
        for name in ("XLSX_UNZIP_SIZE_LIMIT", "XLSX_UNZIP_XML_SIZE_LIMIT", "XLSX_STREAM_CHUNK_SIZE", "XLSX_TMP_DIR"):
            monkeypatch.delenv(name, raising=False)
        settings = reload_engine_settings()
        assert settings.unzip_size_limit == 16 << 30
        assert settings.unzip_xml_size_limit == 16 << 20
        assert settings.stream_chunk_size == 16 << 20

    def test_environment_overrides(self, clean_settings, monkeypatch, tmp_path):
        """Test variables are read and the XML limit is clamped to the total limit."""
        monkeypatch.setenv("XLSX_UNZIP_SIZE_LIMIT", "1000")
        monkeypatch.setenv("XLSX_UNZIP_XML_SIZE_LIMIT", "5000")
        monkeypatch.setenv("XLSX_STREAM_CHUNK_SIZE", "1234")
        monkeypatch.setenv("XLSX_TMP_DIR", str(tmp_path))
        settings = reload_engine_settings()
        assert get_engine_settings() is settings
        assert settings.unzip_size_limit == 1000
        assert settings.unzip_xml_size_limit == 1000
        assert settings.stream_chunk_size == 1234
        assert settings.tmp_dir == str(tmp_path)

    def test_document_options_override(self, clean_settings, monkeypatch):
        monkeypatch.setenv("XLSX_STREAM_CHUNK_SIZE", "1234")
        reload_engine_settings()
        doc = Document.new(DocumentOptions(stream_chunk_size=99))
        assert doc.settings.stream_chunk_size == 99
        assert get_engine_settings().stream_chunk_size == 1234
        doc.close()
