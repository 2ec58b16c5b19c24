"""
Table payload validation: parse the extracted JSON, check the schema, coerce every cell to its column type.
Strict: one bad cell fails the whole table, nothing is dropped or defaulted.
"""
import json
import logging
import math
import re
from datetime import date, datetime

from errors import MalformedJsonError, SchemaError
from models import ColumnDef, ColumnType, Table, TEMPLATE_HEADERS

logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_STRIP_CURRENCY = str.maketrans("", "", "¥￥$€£")
_NUMBER_TYPES = (ColumnType.NUMBER, ColumnType.CURRENCY, ColumnType.PERCENTAGE)
_STRING_TYPES = (ColumnType.TEXT, ColumnType.EMAIL, ColumnType.PHONE)

_TRUE_TOKENS = frozenset({"true", "是", "1", "yes"})
_FALSE_TOKENS = frozenset({"false", "否", "0", "no"})

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d")
_CN_DATE = re.compile(r"^(\d{4})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日$")


class CoercionError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Per-type coercion
# ---------------------------------------------------------------------------

def _to_number(value, column_type):
    if isinstance(value, bool):
        raise CoercionError("boolean is not a number")
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        s = value.strip().replace(",", "").replace(" ", "")
        if column_type is ColumnType.CURRENCY:
            s = s.translate(_STRIP_CURRENCY)
        if column_type is ColumnType.PERCENTAGE and s.endswith("%"):
            s = s[:-1]
        if not s:
            raise CoercionError("empty value")
        try:
            number = int(s)
        except ValueError:
            try:
                number = float(s)
            except ValueError:
                raise CoercionError("not a number")
    else:
        raise CoercionError("not a number")
    if isinstance(number, float):
        if not math.isfinite(number):
            raise CoercionError("not a finite number")
        if number.is_integer() and isinstance(value, str) and "." not in value and "e" not in value.lower():
            number = int(number)
    return number


def _to_date(value):
    if not isinstance(value, str) or not value.strip():
        raise CoercionError("not a date")
    s = value.strip()
    m = _CN_DATE.match(s)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3))).isoformat()
        except ValueError:
            raise CoercionError("not a calendar date")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        raise CoercionError("not a calendar date")


def _to_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    raise CoercionError("not a boolean")


def _to_string(value):
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool) or value is None:
        raise CoercionError("not a string")
    if isinstance(value, (int, float)):
        return str(value)
    raise CoercionError("not a string")


def coerce_value(value, column_type):
    """Coerce one JSON value to column_type. Raises CoercionError."""
    if column_type in _NUMBER_TYPES:
        return _to_number(value, column_type)
    if column_type is ColumnType.DATE:
        return _to_date(value)
    if column_type is ColumnType.BOOLEAN:
        return _to_bool(value)
    return _to_string(value)


# ---------------------------------------------------------------------------
# Parsing and schema
# ---------------------------------------------------------------------------

def parse_payload(raw_json_text):
    """json.loads with one trailing-comma repair pass. Raises MalformedJsonError."""
    try:
        return json.loads(raw_json_text, strict=False)
    except (TypeError, ValueError) as first:
        repaired = _TRAILING_COMMA.sub(r"\1", raw_json_text or "")
        if repaired != raw_json_text:
            try:
                data = json.loads(repaired, strict=False)
                logger.info("validate: parsed after removing trailing commas")
                return data
            except ValueError:
                pass
        position = getattr(first, "pos", None)
        raise MalformedJsonError("Model response is not valid JSON: %s" % first, raw_text=raw_json_text, position=position)


def _parse_columns(raw_columns, raw_text):
    if not isinstance(raw_columns, list) or not raw_columns:
        raise SchemaError("'columns' must be a non-empty list", raw_text=raw_text)
    columns = []
    seen = set()
    for i, col in enumerate(raw_columns):
        if not isinstance(col, dict):
            raise SchemaError("Column %d must be an object with name and type" % i, raw_value=col, raw_text=raw_text)
        name = col.get("name")
        if not isinstance(name, str) or not name.strip():
            raise SchemaError("Column %d has no name" % i, raw_value=col, raw_text=raw_text)
        name = name.strip()
        column_type = ColumnType.parse(col.get("type"))
        if column_type is None:
            raise SchemaError(
                "Column '%s' has unsupported type %r" % (name, col.get("type")),
                column=name, raw_value=col.get("type"), raw_text=raw_text,
            )
        if name in seen:
            raise SchemaError("Duplicate column name '%s'" % name, column=name, raw_text=raw_text)
        seen.add(name)
        columns.append(ColumnDef(name, column_type))
    return columns


def _validate_row(index, row, columns, raw_text):
    if not isinstance(row, dict):
        raise SchemaError("Row %d is not an object" % index, row_index=index, raw_value=row, raw_text=raw_text)
    # Column names were stripped; match row keys the same way
    cells = {}
    for key, value in row.items():
        cells[key.strip() if isinstance(key, str) else key] = value
    names = {c.name for c in columns}
    for key in cells:
        if key not in names:
            raise SchemaError(
                "Row %d has undeclared column '%s'" % (index, key),
                row_index=index, column=key, raw_text=raw_text,
            )
    out = {}
    for col in columns:
        if col.name not in cells:
            raise SchemaError(
                "Row %d is missing column '%s'" % (index, col.name),
                row_index=index, column=col.name, raw_text=raw_text,
            )
        value = cells[col.name]
        try:
            out[col.name] = coerce_value(value, col.type)
        except CoercionError as e:
            raise SchemaError(
                "Row %d column '%s': %r is not a valid %s (%s)" % (index, col.name, value, col.type.value, e),
                row_index=index, column=col.name, raw_value=value, raw_text=raw_text,
            )
    return out


def validate_table(raw_json_text, expected_template=None):
    """
    Parse and validate a table payload {tableName, columns, rows}; return a Table.
    Raises MalformedJsonError or SchemaError (with row index and column name where applicable).
    """
    data = parse_payload(raw_json_text)
    if not isinstance(data, dict):
        raise SchemaError("Top-level JSON value must be an object", raw_text=raw_json_text)
    name = data.get("tableName")
    if not isinstance(name, str) or not name.strip():
        raise SchemaError("'tableName' must be a non-empty string", raw_value=name, raw_text=raw_json_text)
    columns = _parse_columns(data.get("columns"), raw_json_text)
    raw_rows = data.get("rows")
    if not isinstance(raw_rows, list):
        raise SchemaError("'rows' must be a list", raw_value=raw_rows, raw_text=raw_json_text)
    rows = [_validate_row(i, row, columns, raw_json_text) for i, row in enumerate(raw_rows)]

    table = Table(name=name.strip(), columns=columns, rows=rows)
    if expected_template is not None:
        missing = [h for h in TEMPLATE_HEADERS.get(expected_template, ()) if h not in table.column_names]
        if missing:
            logger.warning("validate: template %s headers missing: %s", expected_template.value, ", ".join(missing))
    logger.info("validate: table %r with %d columns, %d rows", table.name, len(columns), len(rows))
    return table
