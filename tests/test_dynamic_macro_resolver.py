# test_dynamic_macro_resolver.py
import asyncio

from script_variables.services.dynamic_macro_resolver import (
    ChatMessage,
    DynamicMacroResolver,
    HistoryProvider,
    InMemoryHistoryProvider,
    MessageRole,
    extract_plot_content,
)


class BrokenHistoryProvider(HistoryProvider):
    async def get_script_history(self, script_id):
        raise RuntimeError("history backend down")

    async def get_recent_messages(self, chat_id, count):
        raise RuntimeError("history backend down")


def test_script_history_content():
    provider = InMemoryHistoryProvider()
    provider.add_script_entry("s1", {"pages": [{"content": "第一幕"}]})
    provider.add_script_entry("s1", {"plotContent": "第二幕"})
    provider.add_script_entry("s1", "第三幕")
    resolver = DynamicMacroResolver(provider)

    text = asyncio.run(resolver.resolve_dynamic_macros("最近:\n[DYNAMIC:scriptHistory:s1:2]"))
    assert text == "最近:\n1. 第二幕\n2. 第三幕"


def test_chat_history_content():
    provider = InMemoryHistoryProvider()
    provider.add_message("c1", MessageRole.USER, "你好")
    provider.add_message("c1", MessageRole.ASSISTANT, "欢迎")
    resolver = DynamicMacroResolver(provider)

    text = asyncio.run(resolver.resolve_dynamic_macros("[DYNAMIC:chatHistory:c1:5]"))
    assert text == "1. 用户: 你好\n2. AI: 欢迎"


def test_repeated_placeholders_are_all_replaced():
    provider = InMemoryHistoryProvider()
    provider.add_message("c1", MessageRole.USER, "hi")
    resolver = DynamicMacroResolver(provider)

    text = asyncio.run(resolver.resolve_dynamic_macros("[DYNAMIC:chatHistory:c1:1]|[DYNAMIC:chatHistory:c1:1]"))
    assert text == "1. 用户: hi|1. 用户: hi"


def test_empty_history_and_unknown_kind():
    resolver = DynamicMacroResolver(InMemoryHistoryProvider())

    assert asyncio.run(resolver.resolve_dynamic_macros("[DYNAMIC:chatHistory:none:3]")) == "暂无聊天历史"
    assert asyncio.run(resolver.resolve_dynamic_macros("[DYNAMIC:scriptHistory:none:3]")) == "暂无剧本历史"
    assert asyncio.run(resolver.resolve_dynamic_macros("[DYNAMIC:weird:x:1]")) == "未知动态宏类型: weird"


def test_provider_failure_becomes_inline_marker():
    resolver = DynamicMacroResolver(BrokenHistoryProvider())
    text = asyncio.run(resolver.resolve_dynamic_macros("A [DYNAMIC:scriptHistory:s1:3] B"))
    assert text == "A [解析失败: scriptHistory] B"


def test_text_without_placeholders_is_unchanged():
    resolver = DynamicMacroResolver()
    assert asyncio.run(resolver.resolve_dynamic_macros("no placeholders")) == "no placeholders"


def test_chat_message_from_dict():
    message = ChatMessage.from_dict({"role": "user", "parts": [{"text": "hi"}]})
    assert message.role == MessageRole.USER
    assert message.content == "hi"

    message = ChatMessage.from_dict({"role": "narrator", "text": "..."})
    assert message.role == MessageRole.ASSISTANT
    assert message.to_dict()["content"] == "..."


def test_extract_plot_content():
    assert extract_plot_content({"pages": [{"content": "页面"}], "content": "其他"}) == "页面"
    assert extract_plot_content({"story": "故事"}) == "故事"
    assert extract_plot_content({"foo": "  ", "bar": "x"}) == "x"
    assert extract_plot_content(None) == ""
