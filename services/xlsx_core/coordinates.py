"""Cell reference codec.

Converts between "A1" style references and 1-indexed (column, row) pairs.
Every other module in the package parses references through these functions.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from .config import MAX_COLUMNS, TOTAL_ROWS
from .errors import (
    ColumnOutOfRangeError,
    InvalidCellNameError,
    InvalidColumnNameError,
    InvalidCoordinatesError,
    InvalidRowNumberError,
    RowOutOfRangeError,
)


def _is_ref_letter(ch: str) -> bool:
    return ("A" <= ch <= "Z") or ("a" <= ch <= "z") or ch == "$"


# =============================================================================
# CELL NAMES
# =============================================================================

def split_cell_name(cell: str) -> Tuple[str, int]:
    """Split a cell name into column letters and row number.

    split_cell_name("AK74") -> ("AK", 74)
    split_cell_name("$B$3") -> ("B", 3)
    """
    if cell and _is_ref_letter(cell[0]):
        last = max(i for i, ch in enumerate(cell) if _is_ref_letter(ch))
        if last < len(cell) - 1:
            # [$]Letters[$] with no digits inside the letter run
            letters = cell[: last + 1]
            if letters.startswith("$"):
                letters = letters[1:]
            if letters.endswith("$"):
                letters = letters[:-1]
            digits = cell[last + 1:]
            if letters.isascii() and letters.isalpha() and digits.isdigit() and digits.isascii():
                row = int(digits)
                if row > 0:
                    return letters, row
    raise InvalidCellNameError(cell)


def join_cell_name(col: str, row: int, absolute: bool = False) -> str:
    """Join column letters and a row number into a cell name (upper-cased)."""
    if not col or not all(("A" <= ch <= "Z") or ("a" <= ch <= "z") for ch in col):
        raise InvalidColumnNameError(col)
    if row < 1:
        raise InvalidRowNumberError(row)
    sign = "$" if absolute else ""
    return f"{sign}{col.upper()}{sign}{row}"


# =============================================================================
# COLUMNS
# =============================================================================

def column_name_to_number(name: str) -> int:
    """Convert column letter(s) to 1-indexed number. A=1, Z=26, AA=27 (case-insensitive)."""
    if not name:
        raise InvalidColumnNameError(name)
    col = 0
    for ch in name:
        if "A" <= ch <= "Z":
            col = col * 26 + (ord(ch) - ord("A") + 1)
        elif "a" <= ch <= "z":
            col = col * 26 + (ord(ch) - ord("a") + 1)
        else:
            raise InvalidColumnNameError(name)
    if col > MAX_COLUMNS:
        raise ColumnOutOfRangeError(name, MAX_COLUMNS)
    return col


def column_number_to_name(num: int) -> str:
    """Convert 1-indexed column number to letter(s). 1=A, 27=AA, 37=AK."""
    if num < 1 or num > MAX_COLUMNS:
        raise ColumnOutOfRangeError(num, MAX_COLUMNS)
    result = ""
    while num > 0:
        num -= 1
        result = chr(ord("A") + (num % 26)) + result
        num //= 26
    return result


# =============================================================================
# COORDINATES
# =============================================================================

def cell_name_to_coordinates(cell: str) -> Tuple[int, int]:
    """Convert a cell name to (column, row). "A1" -> (1, 1), "Z3" -> (26, 3)."""
    try:
        letters, row = split_cell_name(cell)
    except InvalidCellNameError as e:
        raise InvalidCellNameError(
            cell, f'cannot convert cell "{cell}" to coordinates: {e}'
        ) from e
    if row > TOTAL_ROWS:
        raise RowOutOfRangeError(row, TOTAL_ROWS)
    return column_name_to_number(letters), row


def coordinates_to_cell_name(col: int, row: int, absolute: bool = False) -> str:
    """Convert (column, row) to a cell name. (1, 1) -> "A1", or "$A$1" when absolute."""
    if col < 1 or row < 1:
        raise InvalidCoordinatesError(col, row)
    if row > TOTAL_ROWS:
        raise RowOutOfRangeError(row, TOTAL_ROWS)
    sign = "$" if absolute else ""
    return f"{sign}{column_number_to_name(col)}{sign}{row}"


# =============================================================================
# RANGES
# =============================================================================

def cell_refs_to_coordinates(first_cell: str, last_cell: str) -> List[int]:
    """Convert the two corners of a range to [c1, r1, c2, r2] (unsorted)."""
    c1, r1 = cell_name_to_coordinates(first_cell)
    c2, r2 = cell_name_to_coordinates(last_cell)
    return [c1, r1, c2, r2]


def range_ref_to_coordinates(ref: str) -> List[int]:
    """Convert a range like "B2:D5" to [c1, r1, c2, r2].

    Dollar signs are ignored. A single cell "B2" is read as "B2:B2". The
    corners are returned as written; use sort_coordinates to normalize them.
    """
    parts = ref.replace("$", "").split(":")
    if len(parts) == 1:
        parts = [parts[0], parts[0]]
    if len(parts) != 2:
        raise InvalidCellNameError(ref, f'invalid range reference "{ref}"')
    return cell_refs_to_coordinates(parts[0], parts[1])


def sort_coordinates(coordinates: List[int]) -> List[int]:
    """Swap corners in place so the first pair is top-left. "C1:B3" -> "B1:C3"."""
    if len(coordinates) != 4:
        raise InvalidCoordinatesError(message=f"invalid coordinates {list(coordinates)}")
    if coordinates[2] < coordinates[0]:
        coordinates[0], coordinates[2] = coordinates[2], coordinates[0]
    if coordinates[3] < coordinates[1]:
        coordinates[1], coordinates[3] = coordinates[3], coordinates[1]
    return coordinates


def coordinates_to_range_ref(coordinates: Sequence[int], absolute: bool = False) -> str:
    """Convert [c1, r1, c2, r2] back to "A1:B2"."""
    if len(coordinates) != 4:
        raise InvalidCoordinatesError(message=f"invalid coordinates {list(coordinates)}")
    first = coordinates_to_cell_name(coordinates[0], coordinates[1], absolute)
    last = coordinates_to_cell_name(coordinates[2], coordinates[3], absolute)
    return f"{first}:{last}"
