"""End-to-end tests for the spreadsheet HTTP routes."""

import sys
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest
from fastapi.testclient import TestClient

from main import app
from services.xlsx_core import Document


XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

BODY = (
    '<sheetData>'
    '<row r="1"><c r="A1" t="str"><v>Name</v></c><c r="B1" t="str"><v>Age</v></c></row>'
    '<row r="2"><c r="A2" t="str"><v>Ada</v></c><c r="B2"><v>36</v></c></row>'
    '</sheetData>'
    '<mergeCells count="1"><mergeCell ref="A1:B1"/></mergeCells>'
)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def spreadsheet_id(client, package):
    files = {"file": ("people.xlsx", package.build(BODY), XLSX_MEDIA_TYPE)}
    response = client.post("/spreadsheets/", files=files)
    assert response.status_code == 200, response.text
    sid = response.json()["id"]
    yield sid
    client.delete(f"/spreadsheets/{sid}")


class TestUpload:
    """POST /spreadsheets/"""

    def test_health(self, client):
        assert client.get("/").json() == {"status": "ok"}

    def test_upload_summary(self, client, spreadsheet_id):
        """Test the summary lists sheets with their used range and merges."""
        data = client.get(f"/spreadsheets/{spreadsheet_id}").json()
        assert data["filename"] == "people.xlsx"
        sheet = data["sheets"][0]
        assert sheet["name"] == "Sheet1"
        assert sheet["dimension"] == "A1:B2"
        assert sheet["merge_cells"] == ["A1:B1"]

    def test_rejects_other_extensions(self, client):
        files = {"file": ("notes.txt", b"hello", "text/plain")}
        assert client.post("/spreadsheets/", files=files).status_code == 400

    def test_rejects_broken_package(self, client):
        files = {"file": ("broken.xlsx", b"not a zip", XLSX_MEDIA_TYPE)}
        response = client.post("/spreadsheets/", files=files)
        assert response.status_code == 400
        assert "not a valid XLSX package" in response.json()["detail"]

    def test_unknown_spreadsheet(self, client):
        assert client.get("/spreadsheets/doesnotexist").status_code == 404


class TestEdits:
    """Cell and structural edits."""

    def test_rows(self, client, spreadsheet_id):
        response = client.get(f"/spreadsheets/{spreadsheet_id}/sheets/Sheet1/rows")
        assert response.json()["rows"] == [["Name", "Age"], ["Ada", "36"]]

    def test_edit_cell(self, client, spreadsheet_id):
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/cell",
            json={"sheet": "Sheet1", "cell": "C2", "value": "London"},
        )
        assert response.status_code == 200
        assert response.json()["value"] == "London"

    def test_edit_formula(self, client, spreadsheet_id):
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/cell",
            json={"sheet": "Sheet1", "cell": "B3", "formula": "=SUM(B2:B2)"},
        )
        assert response.status_code == 200
        assert response.json()["value"] == ""

    def test_bad_cell_reference(self, client, spreadsheet_id):
        """Test a malformed reference maps to 400 with the literal in the detail."""
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/cell",
            json={"sheet": "Sheet1", "cell": "A", "value": 1},
        )
        assert response.status_code == 400
        assert '"A"' in response.json()["detail"]

    def test_unknown_sheet(self, client, spreadsheet_id):
        response = client.get(f"/spreadsheets/{spreadsheet_id}/sheets/Missing/rows")
        assert response.status_code == 404

    def test_insert_row(self, client, spreadsheet_id):
        """Test a structural edit shifts merges and data."""
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/structure",
            json={"sheet": "Sheet1", "action": "insert_row", "row": 1},
        )
        assert response.status_code == 200
        sheet = response.json()["sheets"][0]
        assert sheet["merge_cells"] == ["A2:B2"]
        assert sheet["dimension"] == "A2:B3"

    def test_remove_col(self, client, spreadsheet_id):
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/structure",
            json={"sheet": "Sheet1", "action": "remove_col", "column": "A"},
        )
        assert response.status_code == 200
        rows = client.get(f"/spreadsheets/{spreadsheet_id}/sheets/Sheet1/rows").json()["rows"]
        assert rows == [["Age"], ["36"]]

    def test_structure_requires_position(self, client, spreadsheet_id):
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/structure",
            json={"sheet": "Sheet1", "action": "remove_row"},
        )
        assert response.status_code == 400

    def test_merge_and_defined_name(self, client, spreadsheet_id):
        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/merge",
            json={"sheet": "Sheet1", "top_left": "A2", "bottom_right": "A3"},
        )
        assert response.json()["merge_cells"] == ["A1:B1", "A2:A3"]

        response = client.post(
            f"/spreadsheets/{spreadsheet_id}/defined-names",
            json={"name": "People", "refers_to": "Sheet1!$A$1:$B$2"},
        )
        assert response.json()["defined_names"] == [
            {"name": "People", "refers_to": "Sheet1!$A$1:$B$2", "local_sheet_id": None},
        ]


class TestExport:
    """POST /spreadsheets/{id}/export/file"""

    def test_export_round_trip(self, client, spreadsheet_id):
        """Test the exported file opens and carries the edits."""
        client.post(
            f"/spreadsheets/{spreadsheet_id}/structure",
            json={"sheet": "Sheet1", "action": "insert_row", "row": 2},
        )
        response = client.post(f"/spreadsheets/{spreadsheet_id}/export/file")
        assert response.status_code == 200
        assert response.headers["content-type"] == XLSX_MEDIA_TYPE

        with Document.open_bytes(response.content) as doc:
            assert doc.get_rows("Sheet1") == [["Name", "Age"], [], ["Ada", "36"]]
            assert doc.get_merge_cells("Sheet1") == ["A1:B1"]
