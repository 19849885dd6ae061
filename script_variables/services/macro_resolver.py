#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
宏解析引擎

把文本中的 ${...} 替换为当前作用域中的值，支持嵌套（最多 MAX_MACRO_DEPTH 轮）。
单个宏按以下顺序解析：
1. table.column            -> 第0行对应列
2. table.column.row        -> row 为整数或数字变量名
3. var.path.to.value       -> 对象/数组路径
4. 隐变量                  -> 条件满足时可见，有期限的只显示一次
5. 动态宏                  -> [DYNAMIC:kind:id:count] 占位符，稍后异步解析
6. 条件变量                -> 第一个满足条件的分支
7. 普通变量
8. 其他                    -> 空字符串
"""

import math
import re
from typing import Any, Dict, List, Optional

from script_variables.models.variable_types import Variable, VariableSystem
from script_variables.services.condition_evaluator import evaluate_condition
from script_variables.services.value_parser import format_value, parse_number
from script_variables.utils import config

MACRO_PATTERN = re.compile(r"\$\{([^{}]+)\}")

# 动态宏名 -> 占位符类型
DYNAMIC_MACROS = {
    "scriptHistoryRecent": "scriptHistory",
    "characterChatRecent": "chatHistory",
}

NO_SCRIPT_HISTORY = "暂无剧本历史"
NO_CHAT_HISTORY = "暂无聊天历史"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def variable_values(system: VariableSystem) -> Dict[str, Any]:
    """条件求值时使用的 变量名 -> 值 映射"""
    return {name: variable.value for name, variable in system.variables.items()}


def is_dynamic_macro(body: str) -> bool:
    return body.split(":")[0] in DYNAMIC_MACROS


class MacroResolver:
    """
    单个作用域的宏解析器

    Args:
        system: 作用域的变量系统
        default_dynamic_id: 动态宏未指定ID时使用的ID（角色ID或剧本ID）
        max_depth: 嵌套解析的最大轮数
    """

    def __init__(self, system: VariableSystem, default_dynamic_id: Optional[str] = None,
                 max_depth: Optional[int] = None):
        self.system = system
        self.default_dynamic_id = default_dynamic_id
        self.max_depth = max_depth or config.MAX_MACRO_DEPTH
        # 本次解析中被标记为过期的隐变量，调用方据此决定是否需要持久化
        self.expired_hidden: List[str] = []

    def replace(self, text: str) -> str:
        """多轮替换，直到某一轮没有任何替换或达到最大轮数"""
        if not text:
            return text

        result = text
        for _ in range(self.max_depth):
            replaced = False

            def substitute(match: re.Match) -> str:
                nonlocal replaced
                replaced = True
                return format_value(self.resolve(match.group(1)))

            new_result = MACRO_PATTERN.sub(substitute, result)
            if not replaced:
                break
            result = new_result
        return result

    def resolve(self, body: str) -> Any:
        """解析单个宏的内容（不含 ${}）"""
        system = self.system
        parts = body.split(".")

        if len(parts) > 1:
            table = system.tables.get(parts[0])
            if table is not None and len(parts) == 2:
                return self._table_cell(parts[0], parts[1], 0)
            if table is not None and len(parts) == 3:
                return self._table_cell(parts[0], parts[1], self._row_index(parts[2]))

            root = system.variables.get(parts[0])
            if root is not None:
                return self._resolve_path(root.value, parts[1:])

        if body in system.hidden_variables:
            return self._resolve_hidden(body)

        if is_dynamic_macro(body):
            return self.resolve_dynamic(body)

        variable = system.variables.get(body)
        if variable is not None:
            if variable.is_conditional and variable.branches:
                return self.evaluate_conditional(variable)
            return variable.value

        return ""

    def check_condition(self, expr: str) -> bool:
        return evaluate_condition(expr, variable_values(self.system))

    def evaluate_conditional(self, variable: Variable) -> Any:
        """按顺序检查分支，第一个满足的分支胜出，都不满足时退回 value"""
        for branch in variable.branches or []:
            if not branch.condition or self.check_condition(branch.condition):
                return branch.value
        return variable.value

    def _row_index(self, segment: str) -> int:
        match = _LEADING_INT.match(segment)
        if match:
            return int(match.group(1))
        variable = self.system.variables.get(segment)
        if variable is None:
            return 0
        number = parse_number(format_value(variable.value))
        if isinstance(number, float) and not math.isfinite(number):
            return 0
        return int(number)

    def _table_cell(self, table_name: str, column_name: str, index: int) -> Any:
        rows = self.system.tables[table_name].rows
        if not 0 <= index < len(rows):
            return ""
        value = rows[index].get(column_name)
        return "" if value is None else value

    @staticmethod
    def _resolve_path(current: Any, path: List[str]) -> Any:
        for part in path:
            if isinstance(current, list):
                match = _LEADING_INT.match(part)
                if not match:
                    return ""
                index = int(match.group(1))
                if not 0 <= index < len(current):
                    return ""
                current = current[index]
            elif isinstance(current, dict):
                current = current.get(part)
            else:
                return ""
            if current is None:
                return ""
        return current

    def _resolve_hidden(self, name: str) -> Any:
        hidden = self.system.hidden_variables[name]
        if hidden.has_expiration and hidden.is_expired:
            return ""
        if not self.check_condition(hidden.condition):
            return ""
        if hidden.has_expiration:
            hidden.is_expired = True
            self.expired_hidden.append(name)
        return hidden.value

    def resolve_dynamic(self, body: str) -> str:
        """把动态宏改写成 [DYNAMIC:kind:id:count] 占位符"""
        name, *args = body.split(":")
        kind = DYNAMIC_MACROS[name]
        target_id = args[0] if args and args[0] else self.default_dynamic_id
        count = config.DEFAULT_DYNAMIC_COUNT
        if len(args) > 1 and args[1]:
            parsed = parse_number(args[1])
            if not (isinstance(parsed, float) and not math.isfinite(parsed)) and parsed > 0:
                count = int(parsed)

        if not target_id:
            return NO_SCRIPT_HISTORY if kind == "scriptHistory" else NO_CHAT_HISTORY
        return f"[DYNAMIC:{kind}:{target_id}:{count}]"
