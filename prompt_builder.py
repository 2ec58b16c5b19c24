"""
Prompt construction for table generation.
System prompt fixes the output schema and rules; the user prompt carries the request and an optional template hint.
"""
import logging

from errors import InvalidInputError
from models import ChatMessage, ColumnType, TEMPLATE_HEADERS

logger = logging.getLogger(__name__)

_TYPE_VOCABULARY = "|".join(t.value for t in ColumnType)

SYSTEM_PROMPT = """你是一个严格的JSON生成引擎。你的唯一任务是根据用户的描述生成一张表格的JSON表示。

规则：
1. 只输出一个完整、语法正确的JSON对象，不要输出任何解释、注释、问候或Markdown代码块。
2. JSON对象必须严格使用以下结构：
{{
  "tableName": "表格名称",
  "columns": [{{"name": "列名", "type": "{types}"}}],
  "rows": [{{"列名": "值"}}]
}}
3. 列类型只能是：{types}。
4. 列名在同一张表内不能重复；每一行必须包含所有列名，且不能有多余的键。
5. 日期使用 YYYY-MM-DD 格式；boolean 列使用 true/false；number、currency、percentage 列使用数字（percentage 直接写百分数的数值，例如 95.5）。
6. 如果用户没有说明行数，生成 {rows} 行数据；如果用户明确给出了行数，以用户为准。
7. 数据要合理且符合实际情况。

你的输出必须从 {{ 开始，到 }} 结束。"""

MODIFY_SECTION = """

当前表格（JSON）：
{table_json}

用户会描述如何修改这张表格。请在当前表格的基础上修改，并返回修改后的完整表格JSON（结构同上），不要从头编造无关数据。"""

RETRY_PROMPT = """你上一次的回复无法被解析：{reason}
请重新输出，只包含一个符合要求结构的JSON对象，从 {{ 开始，到 }} 结束，不要包含任何其他文字。"""


class PromptBuilder:
    """Builds the chat message list for a create or modify request."""

    def __init__(self, settings):
        self.settings = settings

    def build(self, user_description, template=None, existing_table=None, history=None):
        """
        Return ordered ChatMessages: system, replayed history (modify only), user.
        Raises InvalidInputError for empty or overlong descriptions.
        """
        description = (user_description or "").strip() if isinstance(user_description, str) else ""
        if not description:
            raise InvalidInputError("Table description is required")
        if len(description) > self.settings.max_prompt_length:
            raise InvalidInputError(
                "Table description is too long (%d > %d characters)"
                % (len(description), self.settings.max_prompt_length)
            )

        system = SYSTEM_PROMPT.format(types=_TYPE_VOCABULARY, rows=self.settings.default_row_count)
        if existing_table is not None:
            system += MODIFY_SECTION.format(table_json=existing_table.to_json(indent=2))

        messages = [ChatMessage("system", system)]
        if existing_table is not None and history:
            for item in history:
                msg = item if isinstance(item, ChatMessage) else ChatMessage.from_dict(item)
                if msg.role == "system":
                    continue
                messages.append(msg)
        messages.append(ChatMessage("user", self._user_prompt(description, template)))
        logger.debug(
            "prompt: built %d messages (mode=%s, template=%s)",
            len(messages), "modify" if existing_table is not None else "create",
            template.value if template else None,
        )
        return messages

    def build_retry(self, messages, bad_response, error):
        """Append the unusable answer and a stricter follow-up request."""
        reason = getattr(error, "message", None) or str(error)
        return list(messages) + [
            ChatMessage("assistant", bad_response or ""),
            ChatMessage("user", RETRY_PROMPT.format(reason=reason)),
        ]

    def _user_prompt(self, description, template):
        headers = TEMPLATE_HEADERS.get(template) if template else None
        if not headers:
            return description
        return "%s\n\n请参考以下表头设计列：%s" % (description, "、".join(headers))
