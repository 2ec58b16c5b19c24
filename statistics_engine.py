"""
Attendance statistics from a validated Table.

Columns are recognized by name (Chinese or English aliases) and read according to their type:
numeric columns are summed (monthly summary tables), boolean columns count true values,
text columns are matched against status words (daily detail tables).
"""
import logging
import re

from errors import UnsupportedSchemaError
from models import AttendanceStatistics, ColumnType

logger = logging.getLogger(__name__)

ROLE_ALIASES = (
    ("date", ("日期", "考勤日期", "工作日期", "date", "day")),
    ("workday", ("是否工作日", "工作日", "应出勤", "应出勤天数", "workday", "work day", "scheduled", "total work days", "should attend")),
    ("attended", ("是否出勤", "出勤", "实出勤", "实际出勤", "出勤天数", "实出勤天数", "attended", "present", "actual work days", "actual attend")),
    ("status", ("状态", "考勤状态", "出勤状态", "status", "attendance status")),
    ("late", ("迟到", "是否迟到", "迟到次数", "late", "late count")),
    ("early_leave", ("早退", "是否早退", "早退次数", "early leave", "early leave count")),
    ("absent", ("缺勤", "是否缺勤", "缺勤次数", "旷工", "absent", "absent count")),
    ("leave", ("请假", "请假天数", "leave", "leave days")),
    ("overtime", ("加班", "加班时长", "加班小时", "overtime", "overtime hours")),
    ("work_hours", ("工作时长", "工时", "总工时", "工作小时", "work hours", "total work hours")),
    ("check_in", ("签到时间", "签到", "上班时间", "上班打卡", "check in", "check in time")),
)

STATUS_TOKENS = (
    ("normal", ("正常", "出勤", "normal", "present", "on time")),
    ("late", ("迟到", "late")),
    ("early_leave", ("早退", "early leave", "left early")),
    ("absent", ("缺勤", "旷工", "absent")),
    ("leave", ("请假", "事假", "病假", "年假", "调休", "leave")),
    ("overtime", ("加班", "overtime")),
    ("rest", ("休息", "节假日", "假日", "rest", "holiday", "weekend")),
)

_ATTENDED_KINDS = frozenset({"normal", "late", "early_leave", "overtime"})
_NOT_ATTENDED_KINDS = frozenset({"absent", "leave", "rest"})
_TRUE_WORDS = frozenset({"true", "yes", "y", "1", "是", "√", "✓"})
_EMPTY_WORDS = frozenset({"", "-", "—", "无", "none", "null", "n/a"})
_NUMERIC_TYPES = (ColumnType.NUMBER, ColumnType.CURRENCY, ColumnType.PERCENTAGE)
_WORD_TYPES = (ColumnType.TEXT,)
_NUMBER_IN_TEXT = re.compile(r"-?\d+(?:\.\d+)?")
_NEGATED_PRESENCE = re.compile(r"(?:未|没有?|无|不)\s*(?:出勤|签到|打卡|上班)|not\s+(?:present|checked\s*in)|no[\s-]?show")
_UNIT_SUFFIX = re.compile(r"[(（](h|小时|天|次|hours?|days?)[)）]$")


def _normalize(name):
    s = _UNIT_SUFFIX.sub("", name.strip().lower())
    return re.sub(r"[\s_\-]+", "", s)


_ALIAS_INDEX = tuple((role, frozenset(_normalize(a) for a in aliases)) for role, aliases in ROLE_ALIASES)


def resolve_roles(columns):
    """Map role -> ColumnDef. Each column takes at most one role; first match wins."""
    roles = {}
    used = set()
    for role, aliases in _ALIAS_INDEX:
        for col in columns:
            if col.name in used:
                continue
            if _normalize(col.name) in aliases:
                roles[role] = col
                used.add(col.name)
                break
    return roles


def status_kinds(text):
    """Set of status kinds mentioned in a status cell, e.g. '迟到,早退' -> {'late', 'early_leave'}."""
    s = str(text or "").strip().lower()
    kinds = set()
    # "未出勤" contains "出勤"; read negated presence as absent before token matching
    if _NEGATED_PRESENCE.search(s):
        kinds.add("absent")
        s = _NEGATED_PRESENCE.sub(" ", s)
    for kind, tokens in STATUS_TOKENS:
        haystack = s
        if kind == "leave":
            # "early leave" is not a leave day
            for token in dict(STATUS_TOKENS)["early_leave"]:
                haystack = haystack.replace(token, "")
        if any(token in haystack for token in tokens):
            kinds.add(kind)
    return kinds


def _amount(value, column_type):
    """Numeric contribution of a cell: the number itself for numeric columns, else 1/0 as a flag."""
    if column_type in _NUMERIC_TYPES:
        return float(value)
    return 1.0 if _flag(value) else 0.0


def _flag(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    return str(value).strip().lower() in _TRUE_WORDS


def _hours(value, column_type):
    if column_type in _NUMERIC_TYPES:
        return float(value)
    if isinstance(value, bool):
        return 0.0
    m = _NUMBER_IN_TEXT.search(str(value))
    return float(m.group(0)) if m else 0.0


def _has_value(value):
    return str(value).strip().lower() not in _EMPTY_WORDS


def compute_statistics(table):
    """
    Derive AttendanceStatistics from a table of attendance rows.
    Raises UnsupportedSchemaError when there is neither a date nor a work-day column.
    """
    roles = resolve_roles(table.columns)
    if "date" not in roles and "workday" not in roles:
        raise UnsupportedSchemaError(
            "Table '%s' has no date or work-day column; no statistics available" % table.name
        )
    logger.debug("stats: roles %s", {k: v.name for k, v in roles.items()})

    def cell(row, role):
        return row[roles[role].name]

    def amount(row, role):
        return _amount(cell(row, role), roles[role].type)

    total = actual = late = early = absent = leave = overtime = work_hours = 0.0
    # An "出勤" text column often holds status words (出勤/正常/缺勤) instead of yes/no
    attended_words = "attended" in roles and roles["attended"].type in _WORD_TYPES

    for row in table.rows:
        if "status" in roles:
            kinds = status_kinds(cell(row, "status"))
        elif attended_words:
            kinds = status_kinds(cell(row, "attended"))
        else:
            kinds = set()

        if "workday" in roles:
            scheduled = amount(row, "workday")
        else:
            scheduled = 0.0 if "rest" in kinds else 1.0
        total += scheduled

        if "attended" in roles:
            col = roles["attended"]
            if col.type in _NUMERIC_TYPES:
                actual += float(row[col.name])
            elif _flag(row[col.name]):
                actual += scheduled
            elif col.type in _WORD_TYPES:
                word_kinds = status_kinds(row[col.name])
                if word_kinds & _ATTENDED_KINDS and not word_kinds & _NOT_ATTENDED_KINDS:
                    actual += scheduled
        elif "status" in roles:
            if kinds & _ATTENDED_KINDS and not kinds & _NOT_ATTENDED_KINDS:
                actual += scheduled
        elif "check_in" in roles:
            if _has_value(cell(row, "check_in")):
                actual += scheduled
        else:
            actual += scheduled

        if "late" in roles:
            late += amount(row, "late")
        elif "late" in kinds:
            late += 1
        if "early_leave" in roles:
            early += amount(row, "early_leave")
        elif "early_leave" in kinds:
            early += 1
        if "absent" in roles:
            absent += amount(row, "absent")
        elif "absent" in kinds:
            absent += 1
        if "leave" in roles:
            leave += amount(row, "leave")
        elif "leave" in kinds:
            leave += 1

        if "overtime" in roles:
            overtime += _hours(cell(row, "overtime"), roles["overtime"].type)
        if "work_hours" in roles:
            work_hours += _hours(cell(row, "work_hours"), roles["work_hours"].type)

    total_days = max(0, int(round(total)))
    actual_days = min(total_days, max(0, int(round(actual))))
    rate = round(actual_days / total_days, 4) if total_days else 0.0
    average = round(work_hours / actual_days, 2) if actual_days else 0.0
    stats = AttendanceStatistics(
        attendance_rate=rate,
        total_work_days=total_days,
        actual_work_days=actual_days,
        late_count=max(0, int(round(late))),
        early_leave_count=max(0, int(round(early))),
        absent_count=max(0, int(round(absent))),
        leave_days=max(0.0, round(leave, 2)),
        overtime_hours=max(0.0, round(overtime, 2)),
        total_work_hours=max(0.0, round(work_hours, 2)),
        average_daily_hours=max(0.0, average),
    )
    logger.info("stats: %d/%d days, rate=%.4f", actual_days, total_days, rate)
    return stats
