"""
Shared fixtures: fast settings and a scripted completion client so no test touches the network.
"""
import json
import threading

import pytest

from config import GenerationSettings
from models import CompletionResult


EMPLOYEE_TABLE = {
    "tableName": "员工表",
    "columns": [
        {"name": "姓名", "type": "text"},
        {"name": "年龄", "type": "number"},
        {"name": "邮箱", "type": "email"},
    ],
    "rows": [
        {"姓名": "张三", "年龄": 28, "邮箱": "zhangsan@example.com"},
        {"姓名": "李四", "年龄": "32", "邮箱": "lisi@example.com"},
        {"姓名": "王五", "年龄": 45, "邮箱": "wangwu@example.com"},
    ],
}

ATTENDANCE_TABLE = {
    "tableName": "考勤表",
    "columns": [
        {"name": "日期", "type": "date"},
        {"name": "姓名", "type": "text"},
        {"name": "状态", "type": "text"},
    ],
    "rows": [
        {"日期": "2024-01-01", "姓名": "张三", "状态": "正常"},
        {"日期": "2024-01-02", "姓名": "张三", "状态": "迟到"},
        {"日期": "2024-01-03", "姓名": "张三", "状态": "缺勤"},
        {"日期": "2024-01-04", "姓名": "张三", "状态": "正常"},
    ],
}


def as_reply(payload, prefix="", suffix=""):
    return prefix + json.dumps(payload, ensure_ascii=False) + suffix


class ScriptedClient:
    """
    Stands in for CompletionClient. Each send() consumes the next scripted item:
    a CompletionResult, a str (200 with that text) or an exception instance (raised).
    """

    def __init__(self, *script, on_send=None):
        self.script = list(script)
        self.calls = []
        self.on_send = on_send
        self._lock = threading.Lock()

    def send(self, request, route, timeout_ms=None, cancel_event=None, on_chunk=None, api_key=None):
        with self._lock:
            self.calls.append({"request": request, "route": route, "api_key": api_key, "cancel_event": cancel_event})
            item = self.script.pop(0)
        if self.on_send is not None:
            self.on_send(cancel_event)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            item = CompletionResult(200, item)
        if on_chunk is not None and item.ok:
            for i in range(0, len(item.text), 8):
                on_chunk(item.text[i:i + 8])
        return item


@pytest.fixture
def settings():
    return GenerationSettings(
        api_key="test-key",
        base_url="http://upstream.test/v1",
        default_model="gpt-4o-mini",
        timeout_ms=2000,
        max_attempts=3,
        retry_backoff_seconds=0,
        model_aliases={"flash": "gemini-2.5-flash"},
        fake_stream_chunk_size=4,
        rate_limit_per_minute=1000,
        daily_cap=0,
    )
