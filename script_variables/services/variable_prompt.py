#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""变量状态摘要：把一个作用域的变量系统渲染成可以放进提示词的 Markdown 文本"""

from typing import List

from script_variables.models.variable_types import VariableSystem
from script_variables.services.value_parser import format_value


def describe_variables(system: VariableSystem) -> str:
    lines: List[str] = []

    lines.append("#### 普通变量：")
    plain = [(name, v) for name, v in system.variables.items() if not v.is_conditional]
    if plain:
        for name, variable in plain:
            lines.append(f"- {name}: {format_value(variable.value)} ({variable.type})")
    else:
        lines.append("暂无普通变量。")
    lines.append("")

    lines.append("#### 条件变量：")
    conditional = [(name, v) for name, v in system.variables.items() if v.is_conditional]
    if conditional:
        for name, variable in conditional:
            line = f"- {name}: {format_value(variable.value)}"
            if variable.branches:
                line += f" (条件分支: {len(variable.branches)}个)"
            lines.append(line)
    else:
        lines.append("暂无条件变量。")
    lines.append("")

    lines.append("#### 表格数据：")
    if system.tables:
        for table_name, table in system.tables.items():
            lines.append(f"**表格: {table_name}**")
            if table.rows:
                for index, row in enumerate(table.rows):
                    row_data = ", ".join(f"{key}={format_value(value)}" for key, value in row.items())
                    lines.append(f"  行{index}: {row_data}")
            else:
                lines.append("  无数据行")
    else:
        lines.append("暂无表格数据。")
    lines.append("")

    lines.append("#### 隐藏变量：")
    if system.hidden_variables:
        for name, hidden in system.hidden_variables.items():
            line = f"- {name}: [条件: {hidden.condition}]"
            if hidden.has_expiration:
                line += " (有期限)"
            lines.append(line)
    else:
        lines.append("暂无隐藏变量。")
    lines.append("")

    return "\n".join(lines)
