"""Cell value encoders.

Turns Python values into the (``t`` attribute, ``<v>`` text, xml:space)
triple stored in a ``<c>`` element. Shared by the stream writer and
Document.set_cell_value.
"""

from __future__ import annotations

import math
import struct
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from .config import MAX_CELL_TEXT_LENGTH

# (type, value, xml:space)
EncodedValue = Tuple[str, str, Optional[str]]

EPOCH_1900 = datetime(1899, 12, 30)
EPOCH_1900_PRE_LEAP = datetime(1899, 12, 31)
LOTUS_LEAP_CUTOFF = datetime(1900, 3, 1)
EPOCH_1904 = datetime(1904, 1, 1)

# Cell type tags; numbers carry no t attribute
T_STR = "str"
T_BOOL = "b"
T_SHARED = "s"
T_NUMBER = ""

# Built-in number format used for unstyled date/time cells (m/d/yy h:mm)
DEFAULT_DATE_NUM_FMT = 22


def _fixed(text: str) -> str:
    """Render a repr()-style float string without exponent notation."""
    d = Decimal(text).normalize()
    out = format(d, "f")
    if out in ("-0", "-0.0"):
        return "0"
    return out


def format_float(value: float, bits: int = 64) -> str:
    """Shortest decimal text that round-trips ``value`` at the given precision."""
    if bits == 32:
        packed = struct.pack("f", value)
        for precision in range(1, 10):
            candidate = f"{value:.{precision}g}"
            if struct.pack("f", float(candidate)) == packed:
                return _fixed(candidate)
        return _fixed(repr(value))
    return _fixed(repr(value))


def encode_string(value: str) -> EncodedValue:
    if len(value) > MAX_CELL_TEXT_LENGTH:
        value = value[:MAX_CELL_TEXT_LENGTH]
    space = None
    if value and (value[0] in " \t\n\r" or value[-1] in " \t\n\r"):
        space = "preserve"
    return T_STR, value, space


def encode_bool(value: bool) -> EncodedValue:
    return T_BOOL, "1" if value else "0", None


def encode_int(value: int) -> EncodedValue:
    return T_NUMBER, str(value), None


def encode_float(value: float, bits: int = 64) -> EncodedValue:
    if math.isnan(value) or math.isinf(value):
        if math.isnan(value):
            return encode_string("NaN")
        return encode_string("+Inf" if value > 0 else "-Inf")
    return T_NUMBER, format_float(value, bits), None


def encode_decimal(value: Decimal) -> EncodedValue:
    if not value.is_finite():
        return encode_string(str(value))
    return T_NUMBER, _fixed(str(value)), None


def encode_duration(value: timedelta) -> EncodedValue:
    """Durations are stored as a fraction of a day."""
    return T_NUMBER, format_float(value.total_seconds() / 86400, 32), None


def datetime_to_serial(value: datetime, date1904: bool = False) -> float:
    """Convert a wall-clock datetime to an Excel serial number.

    Returns 0 for datetimes before the epoch. The 1900 system keeps Excel's
    phantom 1900-02-29, so dates from 1900-03-01 count one extra day.
    """
    value = value.replace(tzinfo=None)
    if date1904:
        epoch = EPOCH_1904
    elif value < LOTUS_LEAP_CUTOFF:
        epoch = EPOCH_1900_PRE_LEAP
    else:
        epoch = EPOCH_1900
    if value < epoch:
        return 0.0
    delta = value - epoch
    return delta.days + (delta.seconds + delta.microseconds / 1_000_000) / 86400


def encode_datetime(value: datetime, date1904: bool = False) -> Tuple[EncodedValue, bool]:
    """Encode a datetime; the flag says whether a numeric serial was written."""
    if not isinstance(value, datetime):
        value = datetime.combine(value, time())
    serial = datetime_to_serial(value, date1904)
    if serial > 0:
        return (T_NUMBER, format_float(serial), None), True
    return encode_string(value.isoformat()), False


def encode_value(value, date1904: bool = False) -> Tuple[EncodedValue, bool]:
    """Dispatch on the Python type of ``value``.

    Returns the encoded triple and whether the value is a date/time written
    as a serial number (callers attach a date style to unstyled cells).
    Rich text runs are not handled here; they need the shared string table.
    """
    if value is None:
        return encode_string(""), False
    if isinstance(value, bool):
        return encode_bool(value), False
    if isinstance(value, int):
        return encode_int(value), False
    if isinstance(value, float):
        return encode_float(value), False
    if isinstance(value, Decimal):
        return encode_decimal(value), False
    if isinstance(value, str):
        return encode_string(value), False
    if isinstance(value, (bytes, bytearray)):
        return encode_string(bytes(value).decode("utf-8", errors="replace")), False
    if isinstance(value, timedelta):
        return encode_duration(value), False
    if isinstance(value, (datetime, date)):
        return encode_datetime(value, date1904)
    return encode_string(str(value)), False
