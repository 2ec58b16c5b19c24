import threading
from dataclasses import replace

import pytest

from ai_service import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    GenerationSession,
    SessionRegistry,
    TableGenerationService,
)
from conftest import ATTENDANCE_TABLE, EMPLOYEE_TABLE, ScriptedClient, as_reply
from errors import (
    GenerationBusyError,
    GenerationCancelledError,
    InvalidInputError,
    NetworkError,
    NoJsonFoundError,
    SchemaError,
    UpstreamAuthError,
    UpstreamStatusError,
)
from models import CompletionResult, DeliveryMode


def _service(settings, *script, **kwargs):
    sleeps = []
    client = ScriptedClient(*script, **kwargs)
    service = TableGenerationService(settings, client=client, sleep=sleeps.append)
    return service, client, sleeps


def test_generate_employee_table(settings):
    service, client, _ = _service(settings, as_reply(EMPLOYEE_TABLE, prefix="好的：\n```json\n", suffix="\n```"))
    table = service.generate("生成一个员工信息表，包含姓名、年龄、邮箱", model="假流式/gemini-2.5-flash")

    assert table.name == "员工表"
    assert len(table.rows) == 3
    route = client.calls[0]["route"]
    assert route.upstream_model == "gemini-2.5-flash"
    assert route.delivery_mode is DeliveryMode.FAKE_STREAM
    request = client.calls[0]["request"]
    assert request.model == "gemini-2.5-flash"
    assert request.stream is False
    assert not request.json_mode


def test_json_mode_for_known_models(settings):
    service, client, _ = _service(settings, as_reply(EMPLOYEE_TABLE))
    service.generate("员工表", model="gpt-4o")
    assert client.calls[0]["request"].json_mode
    assert client.calls[0]["request"].to_payload()["response_format"] == {"type": "json_object"}


def test_retryable_status_backs_off_linearly(settings):
    settings = replace(settings, retry_backoff_seconds=2)
    service, client, sleeps = _service(
        settings,
        CompletionResult(503, "unavailable"),
        NetworkError("reset"),
        as_reply(EMPLOYEE_TABLE),
    )
    table = service.generate("员工表")
    assert table.name == "员工表"
    assert len(client.calls) == 3
    assert sleeps == [2, 4]


def test_gives_up_after_max_attempts(settings):
    service, client, _ = _service(settings, *[CompletionResult(429, "busy")] * 3)
    with pytest.raises(UpstreamStatusError) as info:
        service.generate("员工表")
    assert info.value.status_code == 429
    assert len(client.calls) == 3


def test_auth_failure_is_not_retried(settings):
    service, client, _ = _service(settings, CompletionResult(401, "bad key"))
    with pytest.raises(UpstreamAuthError):
        service.generate("员工表")
    assert len(client.calls) == 1


def test_client_error_status_is_not_retried(settings):
    service, client, _ = _service(settings, CompletionResult(400, "bad request"))
    with pytest.raises(UpstreamStatusError) as info:
        service.generate("员工表")
    assert info.value.status_code == 400
    assert len(client.calls) == 1


def test_unusable_answer_gets_one_stricter_retry(settings):
    service, client, _ = _service(settings, "抱歉，我无法生成表格", as_reply(EMPLOYEE_TABLE))
    table = service.generate("员工表")
    assert table.name == "员工表"
    retry_messages = client.calls[1]["request"].messages
    assert retry_messages[-2].role == "assistant"
    assert retry_messages[-2].content == "抱歉，我无法生成表格"
    assert retry_messages[-1].role == "user"


def test_second_unusable_answer_fails(settings):
    bad = dict(EMPLOYEE_TABLE, rows=[{"姓名": "张三", "年龄": 28}])
    service, client, _ = _service(settings, "no json here", as_reply(bad))
    with pytest.raises(SchemaError) as info:
        service.generate("员工表")
    assert info.value.column == "邮箱"
    assert len(client.calls) == 2


def test_invalid_input_never_calls_upstream(settings):
    service, client, _ = _service(settings)
    with pytest.raises(InvalidInputError):
        service.generate("   ")
    assert client.calls == []


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def test_session_success_computes_statistics(settings):
    service, _, _ = _service(settings, as_reply(ATTENDANCE_TABLE))
    session = GenerationSession(service)
    outcome = session.generate("一月考勤")
    assert outcome.status == STATUS_SUCCEEDED
    assert outcome.statistics.attendance_rate == 0.75
    body = outcome.to_dict()
    assert body["table"]["tableName"] == "考勤表"
    assert body["statistics"]["lateCount"] == 1


def test_session_without_attendance_columns_has_no_statistics(settings):
    service, _, _ = _service(settings, as_reply(EMPLOYEE_TABLE))
    session = GenerationSession(service)
    outcome = session.generate("员工表")
    assert outcome.status == STATUS_SUCCEEDED
    assert outcome.statistics is None
    assert outcome.statistics_error


def test_failure_keeps_previous_table(settings):
    service, _, _ = _service(settings, as_reply(ATTENDANCE_TABLE), "nope", "still nope")
    session = GenerationSession(service)
    session.generate("一月考勤")
    previous = session.table

    with pytest.raises(NoJsonFoundError):
        session.generate("再加一行", modify=True)
    assert session.status == STATUS_FAILED
    assert session.table is previous
    assert session.statistics.attendance_rate == 0.75
    assert session.outcome().to_dict()["code"] == "no_json"


def test_modify_sends_current_table_and_history(settings):
    service, client, _ = _service(settings, as_reply(EMPLOYEE_TABLE), as_reply(EMPLOYEE_TABLE))
    session = GenerationSession(service)
    session.generate("员工表")
    session.generate("把年龄加一", modify=True)
    messages = client.calls[1]["request"].messages
    assert "张三" in messages[0].content
    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    assert len(session.history) == 4


def test_modify_without_table_is_invalid(settings):
    service, _, _ = _service(settings)
    with pytest.raises(InvalidInputError):
        GenerationSession(service).generate("改一下", modify=True)


def test_cancelled_is_distinct_from_failed(settings):
    service, _, _ = _service(settings, as_reply(ATTENDANCE_TABLE), GenerationCancelledError("Generation was cancelled"))
    session = GenerationSession(service)
    session.generate("一月考勤")
    previous = session.table

    outcome = session.generate("再来一张")
    assert outcome.status == STATUS_CANCELLED
    assert outcome.to_dict()["code"] == "cancelled"
    assert session.table is previous
    assert not session.busy


def test_cancel_sets_running_event(settings):
    seen = {}

    def on_send(cancel_event):
        seen["event"] = cancel_event
        assert session.cancel() is True

    service, _, _ = _service(settings, as_reply(EMPLOYEE_TABLE), on_send=on_send)
    session = GenerationSession(service)
    session.generate("员工表")
    assert seen["event"].is_set()
    assert session.cancel() is False


def test_second_generation_while_running_is_busy(settings):
    entered = threading.Event()
    release = threading.Event()

    def on_send(cancel_event):
        entered.set()
        release.wait(5)

    service, _, _ = _service(settings, as_reply(EMPLOYEE_TABLE), on_send=on_send)
    session = GenerationSession(service)
    worker = threading.Thread(target=session.generate, args=("员工表",))
    worker.start()
    try:
        assert entered.wait(5)
        assert session.busy
        with pytest.raises(GenerationBusyError):
            session.generate("另一张表")
    finally:
        release.set()
        worker.join(5)
    assert session.status == STATUS_SUCCEEDED


def test_registry_isolates_sessions(settings):
    service, _, _ = _service(settings)
    registry = SessionRegistry(service)
    assert registry.get("a") is registry.get("a")
    assert registry.get("a") is not registry.get("b")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_registry_peek_never_creates(settings):
    service, _, _ = _service(settings)
    registry = SessionRegistry(service)
    assert registry.peek("a") is None
    assert len(registry) == 0
    created = registry.get("a")
    assert registry.peek("a") is created
    assert len(registry) == 1


def test_registry_expires_idle_sessions(settings):
    service, _, _ = _service(replace(settings, session_ttl_seconds=60))
    clock = FakeClock()
    registry = SessionRegistry(service, clock=clock)
    old = registry.get("a")
    clock.now += 30
    registry.get("b")
    clock.now += 45
    assert registry.peek("a") is None
    assert registry.peek("b") is not None
    assert registry.get("a") is not old


def test_registry_drops_least_recently_used_past_cap(settings):
    service, _, _ = _service(replace(settings, max_sessions=2))
    registry = SessionRegistry(service)
    registry.get("a")
    registry.get("b")
    registry.peek("a")
    registry.get("c")
    assert len(registry) == 2
    assert registry.peek("b") is None
    assert registry.peek("a") is not None


def test_registry_keeps_running_session(settings):
    entered = threading.Event()
    release = threading.Event()

    def on_send(cancel_event):
        entered.set()
        release.wait(5)

    service, _, _ = _service(replace(settings, max_sessions=1), as_reply(EMPLOYEE_TABLE), on_send=on_send)
    registry = SessionRegistry(service)
    running = registry.get("a")
    worker = threading.Thread(target=running.generate, args=("员工表",))
    worker.start()
    try:
        assert entered.wait(5)
        registry.get("b")
        assert registry.peek("a") is running
        assert registry.peek("b") is not None
    finally:
        release.set()
        worker.join(5)
