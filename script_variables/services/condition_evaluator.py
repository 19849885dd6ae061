#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
条件表达式求值

隐变量和条件变量分支使用的受限布尔表达式：
- 字面量：数字、带引号的字符串、true/false/null（也接受 True/False/None）
- 逻辑：and / or / not（也接受 && / || / !）
- 比较：== != < <= > >=（也接受 === / !==），in / not in
- 算术：+ - * / // %，括号
- 标识符：替换为当前作用域中同名变量的值

表达式先用 ast 解析并按白名单校验节点，然后在没有内置函数的环境中求值。
任何失败（语法错误、未知变量、类型错误）都返回 False，不会抛出异常。
"""

import ast
import re
from functools import lru_cache
from typing import Any, Dict, Mapping

from script_variables.utils.logger_config import logger


class ConditionError(Exception):
    """条件表达式不合法"""
    pass


# 允许出现的AST节点
ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp, ast.And, ast.Or,
    ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
    ast.Constant, ast.Name, ast.Load,
    ast.Tuple, ast.List,
)

# 字面量别名
LITERAL_ALIASES = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_STRING_LITERAL = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")


def _normalize_segment(segment: str) -> str:
    """转换字符串字面量之外的运算符写法"""
    segment = segment.replace("===", "==").replace("!==", "!=")
    segment = segment.replace("&&", " and ").replace("||", " or ")
    # 单独的 ! （不是 != ）视为 not
    segment = re.sub(r"!(?!=)", " not ", segment)
    return segment


def normalize_expression(expr: str) -> str:
    """把表达式统一为 Python 语法，字符串字面量保持原样"""
    parts = _STRING_LITERAL.split(expr.strip())
    normalized = []
    for index, part in enumerate(parts):
        # split 使用了捕获组，奇数位置是字符串字面量
        if index % 2 == 1:
            normalized.append(part)
        else:
            normalized.append(_normalize_segment(part))
    return "".join(normalized).strip()


@lru_cache(maxsize=512)
def compile_condition(expr: str):
    """解析并校验表达式，返回编译后的代码对象"""
    normalized = normalize_expression(expr)
    if not normalized:
        raise ConditionError("空表达式")
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"语法错误: {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise ConditionError(f"不允许的表达式元素: {type(node).__name__}")

    return compile(tree, "<condition>", "eval")


def build_namespace(values: Mapping[str, Any]) -> Dict[str, Any]:
    """变量名 -> 值；字面量别名优先，不会被同名变量覆盖"""
    namespace = dict(values)
    namespace.update(LITERAL_ALIASES)
    return namespace


def evaluate_condition(expr: str, values: Mapping[str, Any]) -> bool:
    """
    在给定变量值上求值条件表达式。

    Args:
        expr: 条件表达式，如 "level >= 5 and name == 'Alice'"
        values: 变量名到变量值的映射

    Returns:
        表达式结果的真值；任何错误都返回 False
    """
    if not expr or not expr.strip():
        return False
    try:
        code = compile_condition(expr)
        return bool(eval(code, {"__builtins__": {}}, build_namespace(values)))
    except Exception as e:
        logger.debug(f"条件表达式求值失败，按 false 处理: {expr!r} ({e})")
        return False
