#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
动态宏解析器

宏解析引擎把 ${scriptHistoryRecent} / ${characterChatRecent} 改写成
[DYNAMIC:<kind>:<id>:<count>] 占位符，这里再通过历史记录提供者异步取回实际内容：
- scriptHistory: 剧本最近 count 条剧情，编号列表
- chatHistory:   会话最近 count 条消息，编号的 "用户:" / "AI:" 列表

解析失败时替换为行内失败标记，不会抛出异常。
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from script_variables.services.macro_resolver import NO_CHAT_HISTORY, NO_SCRIPT_HISTORY
from script_variables.utils.logger_config import logger

DYNAMIC_PLACEHOLDER = re.compile(r"\[DYNAMIC:([^:\]]+):([^:\]]+):(\d+)\]")

# 剧情内容的候选字段，按优先级排列
PLOT_CONTENT_FIELDS = ("plotContent", "content", "story", "narrative", "text")


class MessageRole(Enum):
    """消息角色枚举"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatMessage:
    """聊天消息"""
    role: MessageRole
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        try:
            role = MessageRole(data.get("role", "assistant"))
        except ValueError:
            role = MessageRole.ASSISTANT
        content = data.get("content")
        if not isinstance(content, str):
            # 兼容 {"parts": [{"text": ...}]} 和 {"text": ...} 两种格式
            parts = data.get("parts") or []
            if parts and isinstance(parts[0], dict) and isinstance(parts[0].get("text"), str):
                content = parts[0]["text"]
            elif isinstance(data.get("text"), str):
                content = data["text"]
            else:
                content = ""
        return cls(role=role, content=content, metadata=dict(data.get("metadata") or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "content": self.content, "metadata": self.metadata}


def extract_plot_content(response: Any) -> str:
    """
    从一条剧本历史的AI响应中提取剧情文本：
    优先 pages[0].content，其次常见字段，最后是第一个非空字符串字段。
    """
    if isinstance(response, str):
        return response
    if not isinstance(response, dict):
        return ""

    pages = response.get("pages")
    if isinstance(pages, list) and pages:
        first_page = pages[0]
        if isinstance(first_page, dict) and isinstance(first_page.get("content"), str) and first_page["content"]:
            return first_page["content"]

    for field_name in PLOT_CONTENT_FIELDS:
        value = response.get(field_name)
        if isinstance(value, str) and value:
            return value

    for value in response.values():
        if isinstance(value, str) and value.strip():
            return value
    return ""


class HistoryProvider:
    """历史记录提供者接口（只读）"""

    async def get_script_history(self, script_id: str) -> List[Dict[str, Any]]:
        """返回剧本历史，按时间顺序排列；每条记录的 aiResponse 字段为AI响应"""
        raise NotImplementedError

    async def get_recent_messages(self, chat_id: str, count: int) -> List[ChatMessage]:
        """返回会话最近 count 条消息，按时间顺序排列"""
        raise NotImplementedError


class InMemoryHistoryProvider(HistoryProvider):
    """进程内的历史记录，供HTTP服务和测试使用"""

    def __init__(self):
        self._script_history: Dict[str, List[Dict[str, Any]]] = {}
        self._messages: Dict[str, List[ChatMessage]] = {}

    def add_script_entry(self, script_id: str, ai_response: Any) -> None:
        self._script_history.setdefault(script_id, []).append({"aiResponse": ai_response})

    def add_message(self, chat_id: str, role: MessageRole, content: str) -> None:
        self._messages.setdefault(chat_id, []).append(ChatMessage(role=role, content=content))

    def clear(self, history_id: Optional[str] = None) -> None:
        if history_id is None:
            self._script_history.clear()
            self._messages.clear()
        else:
            self._script_history.pop(history_id, None)
            self._messages.pop(history_id, None)

    async def get_script_history(self, script_id: str) -> List[Dict[str, Any]]:
        return list(self._script_history.get(script_id, []))

    async def get_recent_messages(self, chat_id: str, count: int) -> List[ChatMessage]:
        messages = self._messages.get(chat_id, [])
        return list(messages[-count:]) if count > 0 else []


class DynamicMacroResolver:
    """把 [DYNAMIC:kind:id:count] 占位符替换为历史记录文本"""

    def __init__(self, history_provider: Optional[HistoryProvider] = None):
        self.history_provider = history_provider or InMemoryHistoryProvider()

    async def resolve_dynamic_macros(self, text: str) -> str:
        if not text or not isinstance(text, str):
            return text

        matches = list(DYNAMIC_PLACEHOLDER.finditer(text))
        if not matches:
            return text

        # 相同占位符只解析一次
        unique = {}
        for match in matches:
            unique.setdefault(match.group(0), match)
        placeholders = list(unique.keys())
        contents = await asyncio.gather(*(self._resolve_one(unique[p]) for p in placeholders))
        replacements = dict(zip(placeholders, contents))

        return DYNAMIC_PLACEHOLDER.sub(lambda m: replacements[m.group(0)], text)

    async def _resolve_one(self, match: re.Match) -> str:
        kind, target_id, count_text = match.groups()
        count = int(count_text)
        try:
            if kind == "scriptHistory":
                return await self.get_script_history_content(target_id, count)
            if kind == "chatHistory":
                return await self.get_chat_history_content(target_id, count)
            return f"未知动态宏类型: {kind}"
        except Exception as e:
            logger.error(f"解析动态宏失败 {match.group(0)}: {e}", exc_info=True)
            return f"[解析失败: {kind}]"

    async def get_script_history_content(self, script_id: str, count: int) -> str:
        history = await self.history_provider.get_script_history(script_id)
        if not history:
            return NO_SCRIPT_HISTORY

        recent = history[-count:] if count > 0 else []
        lines = []
        for index, entry in enumerate(recent, start=1):
            response = entry.get("aiResponse", entry) if isinstance(entry, dict) else entry
            content = extract_plot_content(response).strip() or "无内容"
            lines.append(f"{index}. {content}")
        return "\n".join(lines) or NO_SCRIPT_HISTORY

    async def get_chat_history_content(self, chat_id: str, count: int) -> str:
        messages = await self.history_provider.get_recent_messages(chat_id, count)
        if not messages:
            return NO_CHAT_HISTORY

        lines = []
        for index, message in enumerate(messages, start=1):
            if isinstance(message, dict):
                message = ChatMessage.from_dict(message)
            role = "用户" if message.role == MessageRole.USER else "AI"
            content = (message.content or "").strip() or "无内容"
            lines.append(f"{index}. {role}: {content}")
        return "\n".join(lines)
