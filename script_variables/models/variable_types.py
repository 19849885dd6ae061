#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
变量系统数据模型

定义变量、条件分支、表格、隐变量以及单个作用域的变量系统。
序列化格式沿用驼峰命名 (isConditional / hiddenVariables / hasExpiration / isExpired)，
以便持久化文件和存档快照可以直接互相替换。
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

VARIABLE_TYPES = ("string", "number", "boolean", "object", "array")


@dataclass
class ConditionBranch:
    """条件分支：没有 condition 的分支即 else 分支"""
    value: Any
    condition: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.condition:
            result["condition"] = self.condition
        result["value"] = self.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConditionBranch":
        return cls(value=data.get("value"), condition=data.get("condition") or None)


@dataclass
class Variable:
    """变量（支持条件变量）"""
    type: str
    value: Any
    is_conditional: bool = False
    branches: Optional[List[ConditionBranch]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type,
            "value": self.value,
            "isConditional": self.is_conditional,
        }
        if self.branches is not None:
            result["branches"] = [branch.to_dict() for branch in self.branches]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variable":
        branches = data.get("branches")
        return cls(
            type=data.get("type", "string"),
            value=data.get("value"),
            is_conditional=bool(data.get("isConditional", False)),
            branches=[ConditionBranch.from_dict(b) for b in branches] if branches is not None else None,
        )


@dataclass
class TableColumn:
    """表格列定义"""
    name: str
    type: str = "string"
    required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "required": self.required}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableColumn":
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
        )


@dataclass
class Table:
    """表格：行只通过位置索引访问，删除/插入会使后续索引重新编号"""
    name: str
    columns: List[TableColumn] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)

    def get_column(self, column_name: str) -> Optional[TableColumn]:
        return next((c for c in self.columns if c.name == column_name), None)

    def required_columns(self) -> List[TableColumn]:
        return [c for c in self.columns if c.required]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "rows": [dict(row) for row in self.rows],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], name: Optional[str] = None) -> "Table":
        return cls(
            name=data.get("name") or name or "",
            columns=[TableColumn.from_dict(c) for c in data.get("columns", [])],
            rows=[dict(row) for row in data.get("rows", [])],
        )


@dataclass
class HiddenVariable:
    """隐变量：条件满足时才可见，有期限的隐变量只能被读取一次"""
    condition: str
    value: Any
    has_expiration: bool = False
    is_expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition": self.condition,
            "value": self.value,
            "hasExpiration": self.has_expiration,
            "isExpired": self.is_expired,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HiddenVariable":
        return cls(
            condition=data.get("condition", ""),
            value=data.get("value"),
            has_expiration=bool(data.get("hasExpiration", False)),
            is_expired=bool(data.get("isExpired", False)),
        )


@dataclass
class VariableSystem:
    """单个作用域（全局或某个角色）的变量系统"""
    variables: Dict[str, Variable] = field(default_factory=dict)
    tables: Dict[str, Table] = field(default_factory=dict)
    hidden_variables: Dict[str, HiddenVariable] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variables": {name: v.to_dict() for name, v in self.variables.items()},
            "tables": {name: t.to_dict() for name, t in self.tables.items()},
            "hiddenVariables": {name: h.to_dict() for name, h in self.hidden_variables.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VariableSystem":
        data = data or {}
        return cls(
            variables={
                name: Variable.from_dict(v) for name, v in (data.get("variables") or {}).items()
            },
            tables={
                name: Table.from_dict(t, name=name) for name, t in (data.get("tables") or {}).items()
            },
            hidden_variables={
                name: HiddenVariable.from_dict(h)
                for name, h in (data.get("hiddenVariables") or {}).items()
            },
        )

    def deep_copy(self) -> "VariableSystem":
        return copy.deepcopy(self)


@dataclass
class VariableSnapshot:
    """存档快照：全局 + 所有角色的变量系统"""
    global_system: VariableSystem = field(default_factory=VariableSystem)
    characters: Dict[str, VariableSystem] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global": self.global_system.to_dict(),
            "characters": {cid: sys.to_dict() for cid, sys in self.characters.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VariableSnapshot":
        data = data or {}
        return cls(
            global_system=VariableSystem.from_dict(data.get("global")),
            characters={
                cid: VariableSystem.from_dict(sys)
                for cid, sys in (data.get("characters") or {}).items()
            },
        )
