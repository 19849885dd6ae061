#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
AI响应变量处理器

处理一段AI响应：先执行注册类指令，再执行修改类指令，最后对清理后的文本做宏替换。
同时提供只替换宏、预览指令（不执行）和导出变量状态等辅助功能。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from script_variables.models.scope import scope_for
from script_variables.services.command_parser import CommandInterpreter
from script_variables.services.variable_prompt import describe_variables
from script_variables.utils.logger_config import logger

if TYPE_CHECKING:
    from script_variables.controllers.script_variable_service import ScriptVariableService


@dataclass
class VariableProcessingResult:
    """AI响应处理结果"""
    clean_text: str
    logs: List[str] = field(default_factory=list)
    has_variable_operations: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cleanText": self.clean_text,
            "logs": list(self.logs),
            "hasVariableOperations": self.has_variable_operations,
        }


class VariableProcessor:
    """基于剧本变量服务的AI响应处理器"""

    def __init__(self, service: "ScriptVariableService"):
        self.service = service
        # 仅用于识别/预览指令，不修改任何变量
        self.interpreter = CommandInterpreter(service.tag_config)

    async def process_ai_response(self, script_id: str, text: str,
                                  character_id: Optional[str] = None) -> VariableProcessingResult:
        """
        处理AI响应。

        注册类指令出错不会中断处理；修改类指令失败（如持久化失败）时返回原文本。
        """
        scope = scope_for(character_id)
        try:
            manager = await self.service.get_instance(script_id)

            # 使用该剧本自己的标签配置识别指令
            if not manager.interpreter.has_commands(text):
                replaced = await manager.replace_macros_async(text, scope)
                return VariableProcessingResult(clean_text=replaced)

            logs: List[str] = []
            remaining = text
            register_changed = False
            try:
                register_result = await manager.parse_register_commands(text, scope)
                remaining = register_result.clean_text
                logs.extend(register_result.logs)
                register_changed = register_result.changed
                if register_result.errors:
                    logger.warning(f"📊 剧本 {script_id} 注册命令中出现错误: {register_result.errors}")
                    logs.extend(f"❌ 注册错误: {error}" for error in register_result.errors)
            except Exception as e:
                logger.warning(f"剧本 {script_id} 处理注册命令失败: {e}")
                logs.append(f"⚠️ 处理注册命令失败: {e}")

            parse_result = await manager.parse_commands(remaining, scope)
            logs.extend(parse_result.logs)
            if parse_result.errors:
                logger.warning(f"📊 剧本 {script_id} 变量操作中出现错误: {parse_result.errors}")
                logs.extend(f"❌ 操作错误: {error}" for error in parse_result.errors)

            final_text = await manager.replace_macros_async(parse_result.clean_text, scope)
            return VariableProcessingResult(
                clean_text=final_text,
                logs=logs,
                has_variable_operations=True,
            )
        except Exception as e:
            logger.error(f"处理剧本 {script_id} 的AI响应失败: {e}", exc_info=True)
            return VariableProcessingResult(clean_text=text, logs=[f"❌ 变量处理出错: {e}"])

    async def replace_macros_only(self, script_id: str, text: str, character_id: Optional[str] = None) -> str:
        try:
            manager = await self.service.get_instance(script_id)
            return await manager.replace_macros_async(text, scope_for(character_id))
        except Exception as e:
            logger.error(f"为剧本 {script_id} 替换宏失败: {e}", exc_info=True)
            return text

    async def get_variable_state(self, script_id: str, character_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """返回作用域的变量状态（调试用），失败时返回 None"""
        try:
            manager = await self.service.get_instance(script_id)
            if character_id:
                system = await manager.get_character_variables(character_id)
                if system is None:
                    return None
            else:
                system = await manager.get_global_variables()
            state = system.to_dict()
            state["scriptId"] = script_id
            if character_id:
                state["characterId"] = character_id
            return state
        except Exception as e:
            logger.error(f"获取剧本 {script_id} 变量状态失败: {e}", exc_info=True)
            return None

    async def export_variable_config(self, script_id: str) -> Optional[str]:
        state = await self.get_variable_state(script_id)
        if state is None:
            return None
        return json.dumps(state, ensure_ascii=False, indent=2)

    async def describe_variables(self, script_id: str, character_id: Optional[str] = None) -> str:
        """作用域变量的 Markdown 摘要"""
        manager = await self.service.get_instance(script_id)
        if character_id:
            system = await manager.get_character_variables(character_id)
        else:
            system = await manager.get_global_variables()
        if system is None:
            return "#### 普通变量：\n暂无变量数据。\n"
        return describe_variables(system)

    async def preview_variable_operations(self, script_id: str, text: str) -> Dict[str, Any]:
        """列出将要执行的指令和移除指令后的文本，不修改任何变量"""
        if not self.has_variable_commands(text):
            return {
                "hasOperations": False,
                "operations": [],
                "cleanText": await self.replace_macros_only(script_id, text),
            }

        operations = self.extract_variable_operations(text)
        clean_text = self.remove_variable_command_tags(text)
        return {
            "hasOperations": True,
            "operations": operations,
            "cleanText": await self.replace_macros_only(script_id, clean_text),
        }

    def has_variable_commands(self, text: str) -> bool:
        return self.interpreter.has_commands(text)

    def extract_variable_operations(self, text: str) -> List[str]:
        return self.interpreter.extract_commands(text)

    def remove_variable_command_tags(self, text: str) -> str:
        return self.interpreter.strip_commands(text)
