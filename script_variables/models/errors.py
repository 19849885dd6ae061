#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""变量系统异常定义"""


class VariableSystemError(Exception):
    """变量系统异常基类"""
    pass


class StorageError(VariableSystemError):
    """持久化读写失败，会中断当前批次"""
    pass


class ScopeNotFoundError(VariableSystemError):
    """作用域（角色）不存在"""
    pass


class TableRowError(VariableSystemError):
    """表格行操作失败（缺少必填列、表格不存在等）"""
    pass
