"""
Table generation data model.
Plain frozen dataclasses and enums; values are JSON-friendly so they can go straight to the view layer.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from errors import InvalidInputError

VALID_ROLES = ("system", "user", "assistant")


class DeliveryMode(str, Enum):
    REAL_STREAM = "real-stream"
    FAKE_STREAM = "fake-stream"
    NON_STREAM = "non-stream"


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    EMAIL = "email"
    PHONE = "phone"
    BOOLEAN = "boolean"

    @classmethod
    def parse(cls, value):
        """Case-insensitive lookup; returns None for anything outside the enum."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class TemplateType(str, Enum):
    DAILY_SIMPLE = "DAILY_SIMPLE"
    DAILY_DETAILED = "DAILY_DETAILED"
    WEEKLY_SUMMARY = "WEEKLY_SUMMARY"
    MONTHLY_SUMMARY = "MONTHLY_SUMMARY"
    MONTHLY_DETAILED = "MONTHLY_DETAILED"
    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InvalidInputError("Unknown template: %s" % value)


# Header sets suggested to the model for each template. CUSTOM leaves columns to the user.
TEMPLATE_HEADERS = {
    TemplateType.DAILY_SIMPLE: ("序号", "姓名", "部门", "签到时间", "签退时间", "状态"),
    TemplateType.DAILY_DETAILED: (
        "序号", "工号", "姓名", "部门", "签到时间", "签退时间", "工作时长", "加班时长", "状态", "备注",
    ),
    TemplateType.WEEKLY_SUMMARY: (
        "序号", "姓名", "部门", "周一", "周二", "周三", "周四", "周五", "周六", "周日", "出勤天数", "出勤率",
    ),
    TemplateType.MONTHLY_SUMMARY: (
        "序号", "工号", "姓名", "部门", "应出勤", "实出勤", "出勤率", "迟到", "早退", "缺勤", "请假",
        "加班(h)", "总工时(h)",
    ),
    TemplateType.MONTHLY_DETAILED: (
        "序号", "姓名", "部门", "日期", "签到时间", "签退时间", "工作时长", "加班时长", "状态", "备注",
    ),
    TemplateType.CUSTOM: (),
}

TEMPLATE_NAMES = {
    TemplateType.DAILY_SIMPLE: "日考勤表(简单)",
    TemplateType.DAILY_DETAILED: "日考勤表(详细)",
    TemplateType.WEEKLY_SUMMARY: "周考勤汇总表",
    TemplateType.MONTHLY_SUMMARY: "月度考勤汇总表",
    TemplateType.MONTHLY_DETAILED: "月度考勤明细表",
    TemplateType.CUSTOM: "自定义模板",
}


# ---------------------------------------------------------------------------
# Chat request side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise InvalidInputError("Invalid message role: %s" % self.role)
        if not isinstance(self.content, str):
            raise InvalidInputError("Message content must be a string")

    def to_dict(self):
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise InvalidInputError("Each message must be an object")
        return cls(role=data.get("role"), content=data.get("content"))


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    messages: Tuple[ChatMessage, ...]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    json_mode: bool = False

    def __post_init__(self):
        # Freeze whatever sequence was passed in
        object.__setattr__(self, "messages", tuple(self.messages))
        if not self.messages:
            raise InvalidInputError("At least one message is required")
        if self.temperature is not None and (
            isinstance(self.temperature, bool)
            or not isinstance(self.temperature, (int, float))
            or not 0 <= self.temperature <= 2
        ):
            raise InvalidInputError("temperature must be between 0 and 2")
        if self.max_tokens is not None and (isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int) or self.max_tokens <= 0):
            raise InvalidInputError("max_tokens must be a positive integer")

    def to_payload(self):
        """OpenAI wire body."""
        body = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "stream": self.stream,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        if self.json_mode:
            body["response_format"] = {"type": "json_object"}
        return body


@dataclass(frozen=True)
class ModelRoute:
    upstream_model: str
    delivery_mode: DeliveryMode


@dataclass(frozen=True)
class CompletionResult:
    status_code: int
    text: str

    @property
    def ok(self):
        return 200 <= self.status_code < 300


# ---------------------------------------------------------------------------
# Table side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnDef:
    name: str
    type: ColumnType

    def to_dict(self):
        return {"name": self.name, "type": self.type.value}


@dataclass(frozen=True)
class Table:
    """Validated table. Rows are dicts keyed by exactly the column names, in display order."""

    name: str
    columns: Tuple[ColumnDef, ...]
    rows: Tuple[dict, ...]

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "rows", tuple(dict(r) for r in self.rows))

    @property
    def column_names(self):
        return [c.name for c in self.columns]

    def column(self, name):
        for c in self.columns:
            if c.name == name:
                return c
        return None

    def to_dict(self):
        return {
            "tableName": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "rows": [dict(r) for r in self.rows],
        }

    def to_json(self, indent=None):
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)


@dataclass(frozen=True)
class AttendanceStatistics:
    attendance_rate: float = 0.0
    total_work_days: int = 0
    actual_work_days: int = 0
    late_count: int = 0
    early_leave_count: int = 0
    absent_count: int = 0
    leave_days: float = 0.0
    overtime_hours: float = 0.0
    total_work_hours: float = 0.0
    average_daily_hours: float = 0.0

    def to_dict(self):
        return {
            "attendanceRate": self.attendance_rate,
            "totalWorkDays": self.total_work_days,
            "actualWorkDays": self.actual_work_days,
            "lateCount": self.late_count,
            "earlyLeaveCount": self.early_leave_count,
            "absentCount": self.absent_count,
            "leaveDays": self.leave_days,
            "overtimeHours": self.overtime_hours,
            "totalWorkHours": self.total_work_hours,
            "averageDailyHours": self.average_daily_hours,
        }
