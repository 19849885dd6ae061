#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
作用域定义

变量系统有两类相互隔离的作用域：全局作用域（单例）和角色作用域（按角色ID区分）。
每个作用域自带锁名和存储键，调用方无需再根据 character_id 是否为空做分支判断。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class GlobalScope:
    """全局作用域"""

    @property
    def character_id(self) -> Optional[str]:
        return None

    @property
    def lock_name(self) -> str:
        return "parse_commands_global"

    @property
    def storage_key(self) -> str:
        return "global"

    def __str__(self) -> str:
        return "global"


@dataclass(frozen=True)
class CharacterScope:
    """角色作用域"""
    character_id: str

    @property
    def lock_name(self) -> str:
        return f"parse_commands_{self.character_id}"

    @property
    def storage_key(self) -> str:
        return f"character_{self.character_id}"

    def __str__(self) -> str:
        return f"character:{self.character_id}"


Scope = Union[GlobalScope, CharacterScope]

GLOBAL_SCOPE = GlobalScope()


def scope_for(character_id: Optional[str] = None) -> Scope:
    """根据可选的角色ID返回对应作用域"""
    if character_id:
        return CharacterScope(character_id)
    return GLOBAL_SCOPE
