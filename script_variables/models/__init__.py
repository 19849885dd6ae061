#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Models

变量系统的数据模型与作用域定义
"""

from .scope import GLOBAL_SCOPE, CharacterScope, GlobalScope, Scope, scope_for
from .variable_types import (
    ConditionBranch,
    HiddenVariable,
    Table,
    TableColumn,
    Variable,
    VariableSnapshot,
    VariableSystem,
)

__all__ = [
    "GLOBAL_SCOPE",
    "CharacterScope",
    "GlobalScope",
    "Scope",
    "scope_for",
    "ConditionBranch",
    "HiddenVariable",
    "Table",
    "TableColumn",
    "Variable",
    "VariableSnapshot",
    "VariableSystem",
]
