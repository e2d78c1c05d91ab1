"""
Type coercion for staged values.

Converts heterogeneous Python values into the canonical text written to a
staged CSV record for a given ``ColumnKind``. ``None`` is returned for SQL
NULL; the encoder decides how NULL is represented in the file.

Timezone handling is resolved on every call, never cached, because the
process default timezone (``TZ`` + ``time.tzset()``) may change between
configuration and row submission.
"""

import json
import math
import numbers
import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from stream_loader.io.loader.models import CoercionError, ColumnKind

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_TRUE_LITERALS = frozenset({"true", "t", "yes", "y", "on", "1"})
_FALSE_LITERALS = frozenset({"false", "f", "no", "n", "off", "0"})
_EPOCH_DATE = date(1970, 1, 1)


def _preview(value: Any) -> str:
    try:
        text = str(value)
    except ValueError:
        # int -> str refuses values past sys.get_int_max_str_digits()
        return f"<{type(value).__name__}>"
    return text if len(text) <= 100 else text[:97] + "..."


def _not_recognized(label: str, value: Any, column: str, kind: ColumnKind) -> CoercionError:
    return CoercionError(
        f"{label} value '{_preview(value)}' is not recognized for column {column} ({kind.value})",
        value=value,
        column=column,
        kind=kind,
    )


class ValueCoercer:
    """Render values for staged files according to the loader's time flags."""

    def __init__(self, use_local_timezone: bool = False,
                 map_time_to_timestamp: bool = False):
        self.use_local_timezone = use_local_timezone
        self.map_time_to_timestamp = map_time_to_timestamp
        self._dispatch: Dict[ColumnKind, Callable[[Any, str, ColumnKind], str]] = {
            ColumnKind.INTEGER: self._integer,
            ColumnKind.NUMERIC: self._numeric,
            ColumnKind.STRING: self._string,
            ColumnKind.BOOLEAN: self._boolean,
            ColumnKind.DATE: self._date,
            ColumnKind.TIME: self._time,
            ColumnKind.TIMESTAMP: self._timestamp,
            ColumnKind.TIMESTAMP_TZ: self._timestamp_tz,
            ColumnKind.JSON: self._json,
        }

    def coerce(self, value: Any, column: str, kind: ColumnKind) -> Optional[str]:
        """Return the canonical text for ``value`` or ``None`` for NULL.

        Range and conversion failures of the underlying types (out-of-range
        epochs, oversized integers, unrepresentable instants) are reported
        the same way as unparseable text.

        Raises:
            CoercionError: If the value cannot be represented as ``kind``
        """
        if value is None:
            return None
        try:
            return self._dispatch[kind](value, column, kind)
        except CoercionError:
            raise
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise _not_recognized(kind.value.title(), value, column, kind) from exc

    # Numbers

    def _integer(self, value: Any, column: str, kind: ColumnKind) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, numbers.Integral):
            return str(int(value))
        if isinstance(value, float) and math.isfinite(value) and value.is_integer():
            return str(int(value))
        if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
            return str(int(value))
        if isinstance(value, str) and _INTEGER_RE.match(value.strip()):
            return str(int(value.strip()))
        raise _not_recognized("Numeric", value, column, kind)

    def _numeric(self, value: Any, column: str, kind: ColumnKind) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if math.isnan(value):
                return "NaN"
            if math.isinf(value):
                return "Infinity" if value > 0 else "-Infinity"
            # repr() is the shortest string that round-trips the double
            return repr(value)
        if isinstance(value, Decimal):
            return format(value, "f") if value.is_finite() else str(value)
        if isinstance(value, str):
            try:
                parsed = Decimal(value.strip())
            except InvalidOperation:
                raise _not_recognized("Numeric", value, column, kind) from None
            return format(parsed, "f") if parsed.is_finite() else str(parsed)
        raise _not_recognized("Numeric", value, column, kind)

    # Text

    def _string(self, value: Any, column: str, kind: ColumnKind) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, (bytes, bytearray)):
            try:
                return bytes(value).decode("utf-8")
            except UnicodeDecodeError:
                raise _not_recognized("Binary", value, column, kind) from None
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        if isinstance(value, datetime):
            return self._timestamp(value, column, kind)
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, float):
            return repr(value)
        return str(value)

    def _boolean(self, value: Any, column: str, kind: ColumnKind) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, int) and value in (0, 1):
            return "true" if value else "false"
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_LITERALS:
                return "true"
            if lowered in _FALSE_LITERALS:
                return "false"
        raise _not_recognized("Boolean", value, column, kind)

    def _json(self, value: Any, column: str, kind: ColumnKind) -> str:
        # JSON text is passed through verbatim
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            raise _not_recognized("JSON", value, column, kind) from None

    # Dates and times

    def _to_instant_zone(self, value: datetime) -> datetime:
        """Convert an aware datetime into the configured rendering zone."""
        if self.use_local_timezone:
            return value.astimezone()
        return value.astimezone(timezone.utc)

    def _from_epoch(self, seconds: float) -> datetime:
        if self.use_local_timezone:
            return datetime.fromtimestamp(seconds).astimezone()
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    def _as_datetime(self, value: Any, column: str, kind: ColumnKind) -> datetime:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime.combine(value, time())
        if isinstance(value, time):
            if not self.map_time_to_timestamp:
                raise CoercionError(
                    f"Time value '{value}' cannot be bound to timestamp column {column}; "
                    "enable map_time_to_timestamp to allow it",
                    value=value,
                    column=column,
                    kind=kind,
                )
            return datetime.combine(_EPOCH_DATE, value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if not math.isfinite(value):
                raise _not_recognized("Timestamp", value, column, kind)
            try:
                return self._from_epoch(value)
            except (ValueError, OverflowError, OSError):
                # Epoch seconds past the datetime range, e.g. micro or nanoseconds
                raise _not_recognized("Timestamp", value, column, kind) from None
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip())
            except ValueError:
                raise _not_recognized("Timestamp", value, column, kind) from None
        raise _not_recognized("Timestamp", value, column, kind)

    def _timestamp(self, value: Any, column: str, kind: ColumnKind) -> str:
        moment = self._as_datetime(value, column, kind)
        if moment.tzinfo is not None:
            moment = self._to_instant_zone(moment).replace(tzinfo=None)
        return moment.isoformat(sep=" ", timespec="microseconds")

    def _timestamp_tz(self, value: Any, column: str, kind: ColumnKind) -> str:
        moment = self._as_datetime(value, column, kind)
        if moment.tzinfo is None:
            # Wall-clock values belong to the rendering zone
            moment = moment.astimezone() if self.use_local_timezone else moment.replace(
                tzinfo=timezone.utc
            )
        else:
            moment = self._to_instant_zone(moment)
        return moment.isoformat(sep=" ", timespec="microseconds")

    def _date(self, value: Any, column: str, kind: ColumnKind) -> str:
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = self._to_instant_zone(value)
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, str):
            try:
                return date.fromisoformat(value.strip()).isoformat()
            except ValueError:
                raise _not_recognized("Date", value, column, kind) from None
        raise _not_recognized("Date", value, column, kind)

    def _time(self, value: Any, column: str, kind: ColumnKind) -> str:
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = self._to_instant_zone(value)
            return value.time().isoformat(timespec="microseconds")
        if isinstance(value, time):
            return value.replace(tzinfo=None).isoformat(timespec="microseconds")
        if isinstance(value, timedelta):
            if not timedelta(0) <= value < timedelta(days=1):
                raise _not_recognized("Time", value, column, kind)
            return (datetime.min + value).time().isoformat(timespec="microseconds")
        if isinstance(value, str):
            try:
                return time.fromisoformat(value.strip()).isoformat(timespec="microseconds")
            except ValueError:
                raise _not_recognized("Time", value, column, kind) from None
        raise _not_recognized("Time", value, column, kind)


# information_schema.columns.data_type -> ColumnKind
_PG_TYPE_KINDS = {
    "smallint": ColumnKind.INTEGER,
    "integer": ColumnKind.INTEGER,
    "bigint": ColumnKind.INTEGER,
    "numeric": ColumnKind.NUMERIC,
    "decimal": ColumnKind.NUMERIC,
    "real": ColumnKind.NUMERIC,
    "double precision": ColumnKind.NUMERIC,
    "boolean": ColumnKind.BOOLEAN,
    "date": ColumnKind.DATE,
    "time without time zone": ColumnKind.TIME,
    "time with time zone": ColumnKind.TIME,
    "timestamp without time zone": ColumnKind.TIMESTAMP,
    "timestamp with time zone": ColumnKind.TIMESTAMP_TZ,
    "json": ColumnKind.JSON,
    "jsonb": ColumnKind.JSON,
}


def kind_for_pg_type(data_type: str) -> ColumnKind:
    """Map a PostgreSQL ``data_type`` name onto a ``ColumnKind`` (default STRING)."""
    return _PG_TYPE_KINDS.get((data_type or "").strip().lower(), ColumnKind.STRING)
