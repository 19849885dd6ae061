#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
值类型转换与推断

- parse_value: 按声明类型把字面量字符串转换为带类型的值
- infer_type: 为未声明的变量推断类型（只会推断 boolean / number / string）
- format_value: 把带类型的值还原为文本（用于宏替换和日志）
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_INT_RE = re.compile(r"^[+-]?\d+$")


def parse_number(literal: str) -> Any:
    """数字解析：空串为0，整数保持int，无法解析时返回nan"""
    text = str(literal).strip()
    if text == "":
        return 0
    if _INT_RE.match(text):
        return int(text)
    try:
        number = float(text)
    except ValueError:
        return math.nan
    return number


def parse_value(literal: Any, var_type: str) -> Any:
    """解析值类型，永远不会抛出异常"""
    if var_type == "number":
        if isinstance(literal, bool):
            return int(literal)
        if isinstance(literal, (int, float)):
            return literal
        return parse_number(literal)
    if var_type == "boolean":
        if isinstance(literal, bool):
            return literal
        return literal == "true"
    if var_type in ("object", "array"):
        if isinstance(literal, (dict, list)):
            return literal
        try:
            return json.loads(literal)
        except (TypeError, ValueError):
            return {} if var_type == "object" else []
    return literal


def infer_type(literal: str) -> str:
    """从字面量推断变量类型"""
    text = str(literal).strip()
    if text.lower() in ("true", "false"):
        return "boolean"
    if _NUMBER_RE.match(text):
        return "number"
    return "string"


def parse_inferred(literal: str) -> Any:
    """按推断类型解析，布尔值大小写不敏感"""
    var_type = infer_type(literal)
    if var_type == "boolean":
        return str(literal).strip().lower() == "true"
    if var_type == "number":
        return parse_number(literal)
    return literal


def format_value(value: Any) -> str:
    """把值渲染为文本；对象/数组使用JSON，序列化失败时退回 str()"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError):
            return str(value)
    return str(value)
