"""Formula reference shifter.

Rewrites the A1 references inside formula and defined-name text after a
row or column is inserted or removed. String literals and function names
are never touched; a reference whose whole extent is removed becomes
``#REF!``.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from .config import MAX_COLUMNS, TOTAL_ROWS
from .coordinates import column_name_to_number, column_number_to_name
from .errors import XlsxCoreError
from .schemas import Axis

REF_ERROR = "#REF!"


# =============================================================================
# SPAN ARITHMETIC
# =============================================================================

def shift_point(value: int, position: int, delta: int) -> Optional[int]:
    """Shift one coordinate. Returns None when the coordinate was deleted."""
    if delta > 0:
        return value + delta if value >= position else value
    if value == position:
        return None
    return value + delta if value > position else value


def shift_span(first: int, last: int, position: int, delta: int) -> Optional[Tuple[int, int]]:
    """Shift the [first, last] extent of a range along one axis.

    Insert: the whole span moves when the insertion is at or before its start,
    otherwise only the end grows. Delete: a span that covered only the
    deleted line is consumed (None); otherwise the far end shrinks, or the
    whole span moves back when it lies past the deleted line.
    """
    if first > last:
        first, last = last, first
    if delta > 0:
        if position <= first:
            return first + delta, last + delta
        if position <= last:
            return first, last + delta
        return first, last
    if first == last == position:
        return None
    if position < first:
        return first + delta, last + delta
    if position <= last:
        return first, last + delta
    return first, last


# =============================================================================
# TOKENIZER
# =============================================================================

_STRING = r'"(?:[^"]|"")*"'
_SHEET = r"(?:'(?:[^']|'')+'|[A-Za-z_À-￿][A-Za-z0-9_.À-￿]*)!"
_CELL = r"\$?[A-Za-z]{1,3}\$?[0-9]+"
_COLS = r"\$?[A-Za-z]{1,3}:\$?[A-Za-z]{1,3}"
_ROWS = r"\$?[0-9]+:\$?[0-9]+"

_TOKEN_RE = re.compile(
    rf"(?P<string>{_STRING})"
    rf"|(?<![A-Za-z0-9_.$!:'\]\[])"
    rf"(?P<sheet>{_SHEET})?"
    rf"(?P<ref>{_CELL}(?::{_CELL})?|{_COLS}|{_ROWS})"
    rf"(?![A-Za-z0-9_(!:$\[])"
)

_CELL_PARTS_RE = re.compile(r"^(\$?)([A-Za-z]+)(\$?)([0-9]+)$")
_LINE_PARTS_RE = re.compile(r"^(\$?)([A-Za-z]+|[0-9]+)$")


def unquote_sheet_name(prefix: str) -> str:
    """Turn a ``'My Sheet'!`` or ``Sheet1!`` prefix into the bare sheet name."""
    name = prefix[:-1] if prefix.endswith("!") else prefix
    if len(name) >= 2 and name[0] == "'" and name[-1] == "'":
        name = name[1:-1].replace("''", "'")
    return name


# =============================================================================
# SHIFTING
# =============================================================================

def _shift_cell(text: str, axis: Axis, position: int, delta: int) -> Optional[str]:
    m = _CELL_PARTS_RE.match(text)
    col_abs, letters, row_abs, digits = m.groups()
    col = column_name_to_number(letters)
    row = int(digits)
    if row < 1 or row > TOTAL_ROWS:
        raise ValueError(text)
    if axis == Axis.ROW:
        row = shift_point(row, position, delta)
        if row is None or row > TOTAL_ROWS:
            return None
    else:
        col = shift_point(col, position, delta)
        if col is None or col > MAX_COLUMNS:
            return None
    return f"{col_abs}{column_number_to_name(col)}{row_abs}{row}"


def _shift_area(text: str, axis: Axis, position: int, delta: int) -> Optional[str]:
    first, last = text.split(":")
    fm = _CELL_PARTS_RE.match(first)
    lm = _CELL_PARTS_RE.match(last)
    c1, r1 = column_name_to_number(fm.group(2)), int(fm.group(4))
    c2, r2 = column_name_to_number(lm.group(2)), int(lm.group(4))
    if min(r1, r2) < 1 or max(r1, r2) > TOTAL_ROWS:
        raise ValueError(text)
    if axis == Axis.ROW:
        span = shift_span(r1, r2, position, delta)
        if span is None or span[1] > TOTAL_ROWS:
            return None
        if r1 > r2:
            span = (span[1], span[0])
        r1, r2 = span
    else:
        span = shift_span(c1, c2, position, delta)
        if span is None or span[1] > MAX_COLUMNS:
            return None
        if c1 > c2:
            span = (span[1], span[0])
        c1, c2 = span
    return (
        f"{fm.group(1)}{column_number_to_name(c1)}{fm.group(3)}{r1}:"
        f"{lm.group(1)}{column_number_to_name(c2)}{lm.group(3)}{r2}"
    )


def _shift_lines(text: str, axis: Axis, position: int, delta: int) -> Optional[str]:
    """Shift a whole-column (``A:C``) or whole-row (``2:5``) reference."""
    first, last = text.split(":")
    fm = _LINE_PARTS_RE.match(first)
    lm = _LINE_PARTS_RE.match(last)
    is_rows = fm.group(2).isdigit()
    if (axis == Axis.ROW) != is_rows:
        return text
    if is_rows:
        a, b = int(fm.group(2)), int(lm.group(2))
        ceiling = TOTAL_ROWS
        if min(a, b) < 1 or max(a, b) > ceiling:
            raise ValueError(text)
    else:
        a, b = column_name_to_number(fm.group(2)), column_name_to_number(lm.group(2))
        ceiling = MAX_COLUMNS
    span = shift_span(a, b, position, delta)
    if span is None or span[1] > ceiling:
        return None
    if a > b:
        span = (span[1], span[0])
    a, b = span
    if is_rows:
        return f"{fm.group(1)}{a}:{lm.group(1)}{b}"
    return f"{fm.group(1)}{column_number_to_name(a)}:{lm.group(1)}{column_number_to_name(b)}"


def shift_reference(ref: str, axis: Axis, position: int, delta: int) -> Optional[str]:
    """Shift one reference token (no sheet prefix). None means it was deleted.

    Raises ValueError (or an XlsxCoreError subclass) when the token is not a
    valid reference, e.g. a column beyond XFD.
    """
    if ":" not in ref:
        return _shift_cell(ref, axis, position, delta)
    if _CELL_PARTS_RE.match(ref.split(":")[0]):
        return _shift_area(ref, axis, position, delta)
    return _shift_lines(ref, axis, position, delta)


def shift_formula(
    formula: str,
    sheet: str,
    axis: Axis,
    position: int,
    delta: int,
    host_sheet: Optional[str] = None,
) -> str:
    """Shift every reference in ``formula`` that points into ``sheet``.

    ``host_sheet`` is the sheet the formula lives on; its unqualified
    references are treated as references into that sheet. Defined names
    pass None so only qualified references move. Sheet names compare
    case-insensitively.
    """
    target = sheet.lower()
    unqualified_hits = host_sheet is not None and host_sheet.lower() == target

    def replace(match: re.Match) -> str:
        if match.group("string") is not None:
            return match.group(0)
        prefix = match.group("sheet")
        if prefix is None:
            if not unqualified_hits:
                return match.group(0)
        elif unquote_sheet_name(prefix).lower() != target:
            return match.group(0)
        try:
            shifted = shift_reference(match.group("ref"), axis, position, delta)
        except (ValueError, XlsxCoreError):
            # Not a reference after all (a name such as "LOG10" or "ABC99999999")
            return match.group(0)
        if shifted is None:
            return REF_ERROR
        return (prefix or "") + shifted

    return _TOKEN_RE.sub(replace, formula)
