"""Tests for the cell reference codec."""

import sys
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from services.xlsx_core import (
    ColumnOutOfRangeError,
    InvalidCellNameError,
    InvalidColumnNameError,
    InvalidCoordinatesError,
    InvalidRowNumberError,
    RowOutOfRangeError,
    XlsxCoreError,
    cell_name_to_coordinates,
    cell_refs_to_coordinates,
    column_name_to_number,
    column_number_to_name,
    coordinates_to_cell_name,
    coordinates_to_range_ref,
    join_cell_name,
    range_ref_to_coordinates,
    sort_coordinates,
    split_cell_name,
)
from services.xlsx_core.config import MAX_COLUMNS, TOTAL_ROWS


class TestCellNames:
    """Splitting and joining "A1" style names."""

    def test_split_cell_name(self):
        """Test letters and row number are separated."""
        assert split_cell_name("AK74") == ("AK", 74)
        assert split_cell_name("a1") == ("a", 1)

    def test_split_strips_dollar_signs(self):
        """Test absolute markers are ignored."""
        assert split_cell_name("$B$3") == ("B", 3)
        assert split_cell_name("B$3") == ("B", 3)

    @pytest.mark.parametrize("bad", ["", "A", "1A", "A0", "A1B", "AB-1", "$1"])
    def test_split_rejects_malformed(self, bad):
        """Test malformed names raise with the literal in the message."""
        with pytest.raises(InvalidCellNameError) as exc:
            split_cell_name(bad)
        assert f'"{bad}"' in str(exc.value)

    @pytest.mark.parametrize("bad", ["A1B2", "A$1$B2", "$$A1", "A$$1"])
    def test_split_rejects_broken_letter_run(self, bad):
        """Test digits or doubled markers inside the column part are a bad cell name."""
        with pytest.raises(InvalidCellNameError) as exc:
            split_cell_name(bad)
        assert f'"{bad}"' in str(exc.value)
        with pytest.raises(InvalidCellNameError):
            cell_name_to_coordinates(bad)

    def test_join_cell_name(self):
        """Test joining upper-cases the letters."""
        assert join_cell_name("ak", 74) == "AK74"
        assert join_cell_name("B", 3, absolute=True) == "$B$3"

    def test_join_rejects_bad_parts(self):
        """Test empty letters and row 0 are rejected."""
        with pytest.raises(InvalidColumnNameError):
            join_cell_name("", 1)
        with pytest.raises(InvalidColumnNameError):
            join_cell_name("A1", 1)
        with pytest.raises(InvalidRowNumberError):
            join_cell_name("A", 0)


class TestColumns:
    """Column letters <-> numbers."""

    def test_known_columns(self):
        """Test well-known column letters."""
        assert column_number_to_name(1) == "A"
        assert column_number_to_name(26) == "Z"
        assert column_number_to_name(27) == "AA"
        assert column_number_to_name(37) == "AK"
        assert column_number_to_name(MAX_COLUMNS) == "XFD"

    def test_case_insensitive(self):
        """Test lower-case letters decode the same."""
        assert column_name_to_number("ak") == 37
        assert column_name_to_number("Ak") == 37

    @pytest.mark.parametrize("n", [1, 2, 25, 26, 27, 52, 53, 701, 702, 703, 16383, MAX_COLUMNS])
    def test_bijection(self, n):
        """Test number -> letters -> number is the identity."""
        assert column_name_to_number(column_number_to_name(n)) == n

    def test_out_of_range(self):
        """Test columns beyond XFD are rejected."""
        with pytest.raises(ColumnOutOfRangeError):
            column_name_to_number("XFE")
        with pytest.raises(ColumnOutOfRangeError):
            column_number_to_name(MAX_COLUMNS + 1)
        with pytest.raises(ColumnOutOfRangeError):
            column_number_to_name(0)

    def test_rejects_non_letters(self):
        """Test digits or symbols in column names raise."""
        with pytest.raises(InvalidColumnNameError):
            column_name_to_number("A1")
        with pytest.raises(InvalidColumnNameError):
            column_name_to_number("")


class TestCoordinates:
    """Cell names <-> (column, row)."""

    def test_literals(self):
        """Test the documented literal conversions."""
        assert coordinates_to_cell_name(1, 1) == "A1"
        assert coordinates_to_cell_name(37, 1) == "AK1"
        assert cell_name_to_coordinates("AK74") == (37, 74)
        assert cell_name_to_coordinates("Z3") == (26, 3)

    @pytest.mark.parametrize("col,row", [
        (1, 1), (26, 9), (27, 10), (37, 74), (MAX_COLUMNS, 1), (1, TOTAL_ROWS), (MAX_COLUMNS, TOTAL_ROWS),
    ])
    def test_round_trip(self, col, row):
        """Test coordinates survive a trip through the cell name."""
        assert cell_name_to_coordinates(coordinates_to_cell_name(col, row)) == (col, row)

    def test_absolute(self):
        """Test absolute names are produced and accepted."""
        assert coordinates_to_cell_name(1, 1, absolute=True) == "$A$1"
        assert cell_name_to_coordinates("$A$1") == (1, 1)

    def test_bad_name_message_names_fragment(self):
        """Test the error names the exact bad fragment."""
        with pytest.raises(InvalidCellNameError) as exc:
            cell_name_to_coordinates("A")
        assert str(exc.value) == 'cannot convert cell "A" to coordinates: invalid cell name "A"'

    def test_row_limit(self):
        """Test rows beyond the sheet limit are rejected."""
        with pytest.raises(RowOutOfRangeError):
            cell_name_to_coordinates(f"A{TOTAL_ROWS + 1}")
        with pytest.raises(RowOutOfRangeError):
            coordinates_to_cell_name(1, TOTAL_ROWS + 1)

    def test_non_positive_coordinates(self):
        """Test zero coordinates raise InvalidCoordinatesError."""
        with pytest.raises(InvalidCoordinatesError):
            coordinates_to_cell_name(0, 1)
        with pytest.raises(InvalidCoordinatesError):
            coordinates_to_cell_name(1, 0)

    def test_errors_are_value_errors(self):
        """Test malformed and out-of-range errors are ValueErrors."""
        for call in (
            lambda: cell_name_to_coordinates("1A"),
            lambda: column_name_to_number("XFE"),
            lambda: coordinates_to_cell_name(0, 0),
        ):
            with pytest.raises(ValueError) as exc:
                call()
            assert isinstance(exc.value, XlsxCoreError)


class TestRanges:
    """Range references."""

    def test_range_to_coordinates(self):
        """Test corners are returned as written."""
        assert range_ref_to_coordinates("B2:D5") == [2, 2, 4, 5]
        assert range_ref_to_coordinates("C1:B3") == [3, 1, 2, 3]
        assert range_ref_to_coordinates("$A$1:$B$2") == [1, 1, 2, 2]

    def test_single_cell_range(self):
        """Test a single cell reads as a one-cell range."""
        assert range_ref_to_coordinates("B2") == [2, 2, 2, 2]

    def test_sort_coordinates(self):
        """Test corners are swapped to top-left / bottom-right."""
        assert sort_coordinates([3, 1, 2, 3]) == [2, 1, 3, 3]
        assert sort_coordinates([1, 5, 2, 2]) == [1, 2, 2, 5]

    def test_sort_rejects_wrong_shape(self):
        """Test coordinate lists must have four entries."""
        with pytest.raises(InvalidCoordinatesError):
            sort_coordinates([1, 2, 3])

    def test_malformed_range(self):
        """Test a range with a bad corner or too many parts raises."""
        with pytest.raises(InvalidCellNameError) as exc:
            range_ref_to_coordinates("A:B1")
        assert 'cannot convert cell "A"' in str(exc.value)
        with pytest.raises(InvalidCellNameError):
            range_ref_to_coordinates("A1:B2:C3")

    def test_coordinates_to_range_ref(self):
        """Test coordinates render as a range."""
        assert coordinates_to_range_ref([1, 1, 2, 2]) == "A1:B2"
        assert coordinates_to_range_ref([1, 1, 2, 2], absolute=True) == "$A$1:$B$2"
        assert cell_refs_to_coordinates("A1", "C3") == [1, 1, 3, 3]
