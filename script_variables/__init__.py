#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables

剧本变量宏系统：按作用域保存变量、表格和隐变量，
解析AI响应中的变量指令，并在文本中替换 ${...} 宏。
"""

__version__ = "1.0.0"

from .controllers.script_variable_service import ScriptVariableService
from .controllers.variable_manager import VariableManager
from .services.variable_processor import VariableProcessor

__all__ = [
    "ScriptVariableService",
    "VariableManager",
    "VariableProcessor",
]
