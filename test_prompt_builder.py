import pytest

from errors import InvalidInputError, NoJsonFoundError
from models import ChatMessage, ColumnDef, ColumnType, Table, TemplateType
from prompt_builder import PromptBuilder


@pytest.fixture
def builder(settings):
    return PromptBuilder(settings)


def test_create_prompt_is_system_then_user(builder):
    messages = builder.build("生成一个员工信息表，包含姓名、年龄、邮箱")
    assert [m.role for m in messages] == ["system", "user"]
    assert messages[1].content == "生成一个员工信息表，包含姓名、年龄、邮箱"
    system = messages[0].content
    assert '"tableName"' in system
    for t in ColumnType:
        assert t.value in system
    assert "当前表格" not in system


def test_template_headers_are_suggested(builder):
    messages = builder.build("三月考勤", template=TemplateType.DAILY_SIMPLE)
    user = messages[-1].content
    assert user.startswith("三月考勤")
    assert "签到时间" in user and "签退时间" in user


def test_custom_template_adds_no_hint(builder):
    messages = builder.build("三月考勤", template=TemplateType.CUSTOM)
    assert messages[-1].content == "三月考勤"


def test_modify_embeds_current_table_and_history(builder):
    table = Table("员工表", [ColumnDef("姓名", ColumnType.TEXT)], [{"姓名": "张三"}])
    history = [
        ChatMessage("system", "ignored"),
        ChatMessage("user", "生成员工表"),
        {"role": "assistant", "content": table.to_json()},
    ]
    messages = builder.build("增加一行", existing_table=table, history=history)
    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    assert "张三" in messages[0].content
    assert "当前表格" in messages[0].content
    assert messages[-1].content == "增加一行"


def test_history_ignored_without_existing_table(builder):
    messages = builder.build("生成员工表", history=[ChatMessage("user", "earlier")])
    assert len(messages) == 2


@pytest.mark.parametrize("description", ["", "   ", None])
def test_empty_description_rejected(builder, description):
    with pytest.raises(InvalidInputError):
        builder.build(description)


def test_overlong_description_rejected(builder, settings):
    with pytest.raises(InvalidInputError):
        builder.build("表" * (settings.max_prompt_length + 1))


def test_build_retry_appends_bad_answer_and_follow_up(builder):
    messages = builder.build("生成员工表")
    retry = builder.build_retry(messages, "抱歉，我无法生成", NoJsonFoundError("No JSON object found"))
    assert retry[:2] == messages
    assert retry[2] == ChatMessage("assistant", "抱歉，我无法生成")
    assert retry[3].role == "user"
    assert "No JSON object found" in retry[3].content
    # Original list untouched
    assert len(messages) == 2
