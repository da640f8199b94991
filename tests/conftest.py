"""Shared fixtures for the xlsx core tests.

Workbooks are assembled in memory from the blank template parts, so no
binary fixtures are checked in.
"""

import io
import sys
import zipfile
from pathlib import Path
from typing import Dict, Optional, Union

# Add project root to path (tests/ -> project root)
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from services.xlsx_core import Document, DocumentOptions, reload_engine_settings
from services.xlsx_core.templates import blank_workbook_parts
from services.xlsx_core.writer import WORKSHEET_ROOT, XML_HEADER


MAIN_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
REL_BASE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"


def sheet_xml(body: str) -> bytes:
    """A worksheet part whose children are ``body``."""
    return XML_HEADER + b"\r\n" + (WORKSHEET_ROOT + body + "</worksheet>").encode("utf-8")


def rels_xml(*relationships: str) -> str:
    return f'<Relationships xmlns="{REL_NS}">' + "".join(relationships) + "</Relationships>"


def build_package(
    sheet_body: Optional[str] = None,
    parts: Optional[Dict[str, Union[str, bytes]]] = None,
) -> bytes:
    """Zip the blank workbook, optionally replacing Sheet1 and adding parts."""
    files: Dict[str, bytes] = blank_workbook_parts()
    if sheet_body is not None:
        files["xl/worksheets/sheet1.xml"] = sheet_xml(sheet_body)
    for name, data in (parts or {}).items():
        files[name] = data.encode("utf-8") if isinstance(data, str) else data

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def read_part(package: bytes, name: str) -> str:
    with zipfile.ZipFile(io.BytesIO(package)) as zf:
        return zf.read(name).decode("utf-8")


def part_names(package: bytes):
    with zipfile.ZipFile(io.BytesIO(package)) as zf:
        return zf.namelist()


@pytest.fixture
def package():
    """Package helpers: build a zip, read one of its parts, list its parts."""

    class _Package:
        build = staticmethod(build_package)
        sheet = staticmethod(sheet_xml)
        rels = staticmethod(rels_xml)
        read = staticmethod(read_part)
        names = staticmethod(part_names)

    return _Package


@pytest.fixture
def make_document():
    """Factory opening an in-memory package; every document is closed afterwards."""
    opened = []

    def _make(
        sheet_body: Optional[str] = None,
        parts: Optional[Dict[str, Union[str, bytes]]] = None,
        options: Optional[DocumentOptions] = None,
    ) -> Document:
        doc = Document.open_bytes(build_package(sheet_body, parts), options)
        opened.append(doc)
        return doc

    yield _make
    for doc in opened:
        doc.close()


@pytest.fixture
def blank_document():
    doc = Document.new()
    yield doc
    doc.close()


@pytest.fixture
def clean_settings():
    """Reload engine settings after a test that changes the environment."""
    yield
    reload_engine_settings()
