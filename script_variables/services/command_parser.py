#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
变量指令解释器

识别文本中的XML风格标签指令，直接修改内存中的变量系统，并把标签从文本中移除。
解释器本身不做I/O也不加锁，持久化和并发控制由 VariableManager 负责。

两个入口：
- parse_register_commands: registerVar → registerVars → registerHiddenVar → registerTable
  → unregisterVar → unregisterVars → unregisterTable → unregisterHiddenVar
- parse_commands: setVar → setTable → addTableRow → removeTableRow → setHiddenVar

错误处理：
- 结构化字面量（条件分支、表格列定义）无法解析时，保留原标签并记录到 errors
- 其他无效操作（缺少必填列、索引越界、不支持的运算符）照常移除标签，只记录日志
"""

import json
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from script_variables.models.variable_types import (
    VARIABLE_TYPES,
    ConditionBranch,
    HiddenVariable,
    Table,
    TableColumn,
    Variable,
    VariableSystem,
)
from script_variables.services.value_parser import (
    format_value,
    infer_type,
    parse_inferred,
    parse_number,
    parse_value,
)
from script_variables.utils.logger_config import logger

# 点号路径自动注册时使用内置模板的根变量
TODO_LIST = "ToDoList"

_HTML_ENTITIES = (
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),  # 必须最后处理
)

_INDEX_RE = re.compile(r"^\d+$")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_STEP_RE = re.compile(r"^([A-Za-z_]\w*)\s*(\+\+|--)$")
_ASSIGN_RE = re.compile(r"^([A-Za-z_]\w*)\s*(\+=|-=|=)\s*(.*)$", re.DOTALL)


def todo_list_default_schema() -> Dict[str, Any]:
    """ToDoList 的默认结构"""
    return {
        "chapterList": [],
        "currentChapter": "",
        "currentToDoList": [],
        "completed": [],
        "in_progress": [],
        "pending": [],
    }


def decode_html_entities(text: str) -> str:
    for entity, char in _HTML_ENTITIES:
        text = text.replace(entity, char)
    return text


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class TagConfig:
    """指令标签名配置，标签名可以替换，但每类指令的属性/内容语法固定"""
    set_var: str = "setVar"
    register_var: str = "registerVar"
    register_vars: str = "registerVars"
    unregister_var: str = "unregisterVar"
    unregister_vars: str = "unregisterVars"
    register_table: str = "registerTable"
    unregister_table: str = "unregisterTable"
    register_hidden_var: str = "registerHiddenVar"
    unregister_hidden_var: str = "unregisterHiddenVar"
    set_table: str = "setTable"
    add_table_row: str = "addTableRow"
    remove_table_row: str = "removeTableRow"
    set_hidden_var: str = "setHiddenVar"

    def to_dict(self) -> Dict[str, str]:
        return {_camel_case(f.name): getattr(self, f.name) for f in fields(self)}

    def updated(self, overrides: Dict[str, str]) -> "TagConfig":
        """返回应用了覆盖项的新配置，键可以是 set_var 或 setVar 形式"""
        lookup = {}
        for f in fields(self):
            lookup[f.name] = f.name
            lookup[_camel_case(f.name)] = f.name
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, tag in (overrides or {}).items():
            if key not in lookup:
                logger.warning(f"忽略未知的标签配置项: {key}")
                continue
            if not tag or not isinstance(tag, str):
                logger.warning(f"忽略无效的标签名: {key}={tag!r}")
                continue
            values[lookup[key]] = tag
        return TagConfig(**values)


@dataclass
class CommandResult:
    """一次指令解析的结果"""
    clean_text: str
    logs: List[str] = field(default_factory=list)
    changed: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cleanText": self.clean_text,
            "logs": list(self.logs),
            "changed": self.changed,
            "errors": list(self.errors) if self.errors else None,
        }


class BranchError(ValueError):
    """条件分支或表格列定义不合法"""
    pass


def parse_branches(literal: str) -> List[ConditionBranch]:
    """
    解析条件分支列表，如 [{"condition": "a>0", "value": "pos"}, {"value": "default"}]。
    没有条件的分支（else 分支）只能出现在最后。
    """
    try:
        data = json.loads(literal)
    except ValueError as e:
        raise BranchError(f"JSON 解析失败: {e}") from e
    if not isinstance(data, list) or not data:
        raise BranchError("条件分支必须是非空数组")

    branches = []
    for index, item in enumerate(data):
        if not isinstance(item, dict) or "value" not in item:
            raise BranchError(f"第 {index} 个分支缺少 value")
        condition = item.get("condition")
        if condition is not None and not isinstance(condition, str):
            raise BranchError(f"第 {index} 个分支的 condition 必须是字符串")
        branches.append(ConditionBranch(value=item["value"], condition=condition or None))

    for branch in branches[:-1]:
        if branch.condition is None:
            raise BranchError("没有条件的分支必须放在最后")
    return branches


def parse_columns(literal: str) -> List[TableColumn]:
    """解析表格列定义 [{"name": "...", "type": "...", "required": true}]"""
    try:
        data = json.loads(literal)
    except ValueError as e:
        raise BranchError(f"JSON 解析失败: {e}") from e
    if not isinstance(data, list):
        raise BranchError("列定义必须是数组")

    columns = []
    for index, item in enumerate(data):
        if not isinstance(item, dict) or not isinstance(item.get("name"), str) or not item["name"]:
            raise BranchError(f"第 {index} 列缺少 name")
        column_type = item.get("type", "string")
        if column_type not in VARIABLE_TYPES:
            raise BranchError(f"列 {item['name']} 的类型 {column_type} 不受支持")
        columns.append(TableColumn.from_dict(item))
    return columns


def set_value_by_dotted_path(container: Any, path: str, value: Any) -> Tuple[bool, Optional[str]]:
    """
    按点号路径设置嵌套值，缺失的中间容器会自动创建：
    下一段是纯数字时创建数组，否则创建对象；已有容器类型不符时互相转换。

    Returns:
        (是否成功, 错误信息)
    """
    parts = path.split(".")
    current = container
    try:
        for part, next_part in zip(parts[:-1], parts[1:]):
            child = _get_child(current, part)
            wants_list = bool(_INDEX_RE.match(next_part))

            if child is None:
                child = [] if wants_list else {}
            elif wants_list and not isinstance(child, list):
                if isinstance(child, dict):
                    converted: List[Any] = []
                    for key, item in child.items():
                        if _INDEX_RE.match(str(key)):
                            _set_child(converted, str(key), item)
                    child = converted
                else:
                    child = []
            elif not wants_list and not isinstance(child, dict):
                if isinstance(child, list):
                    child = {str(i): item for i, item in enumerate(child)}
                else:
                    child = {}

            _set_child(current, part, child)
            current = child

        final_key = parts[-1]
        parsed_value = value
        if isinstance(value, str) and value.startswith(("{", "[")):
            try:
                parsed_value = json.loads(value)
            except ValueError:
                parsed_value = value

        if _INDEX_RE.match(final_key) and not isinstance(current, list):
            return False, f"路径 {path} 中的容器不是数组"
        _set_child(current, final_key, parsed_value)
        return True, None
    except (KeyError, IndexError, TypeError, ValueError) as e:
        return False, f"设置路径 {path} 失败: {e}"


def _get_child(container: Any, key: str) -> Any:
    if isinstance(container, list):
        if not _INDEX_RE.match(key):
            raise TypeError(f"数组不能使用键 {key}")
        index = int(key)
        return container[index] if index < len(container) else None
    if isinstance(container, dict):
        return container.get(key)
    raise TypeError(f"{type(container).__name__} 不是容器")


def _set_child(container: Any, key: str, value: Any) -> None:
    if isinstance(container, list):
        if not _INDEX_RE.match(key):
            raise TypeError(f"数组不能使用键 {key}")
        index = int(key)
        while len(container) <= index:
            container.append(None)
        container[index] = value
    elif isinstance(container, dict):
        container[key] = value
    else:
        raise TypeError(f"{type(container).__name__} 不是容器")


def _parse_index(text: str) -> Optional[int]:
    match = _LEADING_INT_RE.match(text or "")
    return int(match.group(1)) if match else None


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    return parse_number("" if value is None else str(value))


def _parse_assignments(content: str) -> List[Tuple[str, str]]:
    """把 "a=1; b=2" 拆成 [(a, 1), (b, 2)]"""
    pairs = []
    for assignment in content.split(";"):
        column, sep, value = assignment.partition("=")
        column = column.strip()
        if not sep or not column:
            continue
        pairs.append((column, value.strip()))
    return pairs


def _dump_row(row: Dict[str, Any]) -> str:
    try:
        return json.dumps(row, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(row)


class _Batch:
    """单次解析中累计的日志和错误"""

    def __init__(self):
        self.logs: List[str] = []
        self.errors: List[str] = []

    def log(self, message: str) -> None:
        self.logs.append(message)

    def error(self, message: str) -> None:
        logger.error(message)
        self.errors.append(message)

    def result(self, text: str) -> CommandResult:
        return CommandResult(
            clean_text=text,
            logs=self.logs,
            changed=len(self.logs) > 0,
            errors=self.errors,
        )


class CommandInterpreter:
    """变量指令解释器"""

    _VAR_ITEM = re.compile(
        r'<var\s+name="([^"]+)"\s+type="([^"]+)"\s+initVal="([^"]*)"'
        r'(?:\s+conditional=(?:"([^"]*)"|\'([^\']*)\'))?\s*/>',
        re.DOTALL,
    )
    _VAR_NAME_ITEM = re.compile(r'<var\s+name="([^"]+)"\s*/>')

    def __init__(self, tag_config: Optional[TagConfig] = None):
        self.tag_config = tag_config or TagConfig()
        self._compile_patterns()

    def update_tag_config(self, overrides: Dict[str, str]) -> TagConfig:
        self.tag_config = self.tag_config.updated(overrides)
        self._compile_patterns()
        return self.tag_config

    def _compile_patterns(self) -> None:
        t = {f.name: re.escape(getattr(self.tag_config, f.name)) for f in fields(self.tag_config)}
        flags = re.DOTALL
        hidden_body = r'\s+name="([^"]+)"\s+condition="([^"]+)"(?:\s+hasExpiration="(true|false)")?\s*>(.*?)'

        self.patterns: Dict[str, re.Pattern] = {
            # parse_commands
            "set_var_attr": re.compile(
                rf'<{t["set_var"]}\s+name="([^"]+)"\s+value="([^"]*)"[^>]*?(?:/>|>(.*?)</{t["set_var"]}>)', flags),
            "set_var_content": re.compile(rf'<{t["set_var"]}>(.*?)</{t["set_var"]}>', flags),
            "set_table": re.compile(
                rf'<{t["set_table"]}\s+table="([^"]+)"\s+row="([^"]+)"\s*>(.*?)</{t["set_table"]}>', flags),
            "add_table_row": re.compile(
                rf'<{t["add_table_row"]}\s+table="([^"]+)"\s*>(.*?)</{t["add_table_row"]}>', flags),
            "remove_table_row": re.compile(
                rf'<{t["remove_table_row"]}\s+table="([^"]+)"\s+row="([^"]+)"\s*'
                rf'(?:/>|>\s*</{t["remove_table_row"]}>)', flags),
            "set_hidden_var": re.compile(
                rf'<{t["set_hidden_var"]}{hidden_body}</{t["set_hidden_var"]}>', flags),
            # parse_register_commands
            "register_var": re.compile(
                rf'<{t["register_var"]}\s+name="([^"]+)"\s+type="([^"]+)"\s+initVal="([^"]*)"'
                r'(?:\s+conditional=(?:"([^"]*)"|\'([^\']*)\'))?\s*/>', flags),
            "register_vars": re.compile(rf'<{t["register_vars"]}>(.*?)</{t["register_vars"]}>', flags),
            "register_hidden_var": re.compile(
                rf'<{t["register_hidden_var"]}{hidden_body}</{t["register_hidden_var"]}>', flags),
            "register_table": re.compile(
                rf'<{t["register_table"]}\s+name="([^"]+)"\s+columns=(?:\'([^\']+)\'|"([^"]+)")\s*/>', flags),
            "unregister_var": re.compile(rf'<{t["unregister_var"]}\s+name="([^"]+)"\s*/>', flags),
            "unregister_vars": re.compile(rf'<{t["unregister_vars"]}>(.*?)</{t["unregister_vars"]}>', flags),
            "unregister_table": re.compile(rf'<{t["unregister_table"]}\s+name="([^"]+)"\s*/>', flags),
            "unregister_hidden_var": re.compile(rf'<{t["unregister_hidden_var"]}\s+name="([^"]+)"\s*/>', flags),
        }
        opening_tags = "|".join(sorted(t.values(), key=len, reverse=True))
        self._opening_tag = re.compile(rf"<(?:{opening_tags})[\s>/]")

    # ==================== 预览 / 清理 ====================

    def has_commands(self, text: str) -> bool:
        """文本中是否出现了任何指令的开始标签"""
        if not text:
            return False
        return bool(self._opening_tag.search(decode_html_entities(text)))

    def extract_commands(self, text: str) -> List[str]:
        """按出现顺序列出文本中的完整指令，不执行"""
        decoded = decode_html_entities(text or "")
        found = []
        for pattern in self.patterns.values():
            for match in pattern.finditer(decoded):
                found.append((match.start(), match.end(), match.group(0)))
        found.sort()

        commands = []
        last_end = -1
        for start, end, raw in found:
            # 跳过被其他指令包含的匹配
            if start < last_end:
                continue
            commands.append(raw)
            last_end = end
        return commands

    def strip_commands(self, text: str) -> str:
        """移除所有可识别的指令标签，不执行"""
        result = decode_html_entities(text or "")
        for pattern in self.patterns.values():
            result = pattern.sub("", result)
        return result

    # ==================== parse_commands ====================

    def parse_commands(self, text: str, system: VariableSystem) -> CommandResult:
        """执行 setVar / setTable / addTableRow / removeTableRow / setHiddenVar"""
        batch = _Batch()
        result = decode_html_entities(text or "")

        result = self.patterns["set_var_attr"].sub(
            lambda m: self._set_var_attribute(system, batch, m.group(1), m.group(2)), result)
        result = self.patterns["set_var_content"].sub(
            lambda m: self._set_var_content(system, batch, m.group(1)), result)
        result = self.patterns["set_table"].sub(
            lambda m: self._set_table(system, batch, m.group(1), m.group(2), m.group(3)), result)
        result = self.patterns["add_table_row"].sub(
            lambda m: self._add_table_row(system, batch, m.group(1), m.group(2)), result)
        result = self.patterns["remove_table_row"].sub(
            lambda m: self._remove_table_row(system, batch, m.group(1), m.group(2)), result)
        result = self.patterns["set_hidden_var"].sub(
            lambda m: self._set_hidden_var(system, batch, m.group(1), m.group(2), m.group(3), m.group(4)),
            result)

        return batch.result(result)

    def _set_var_attribute(self, system: VariableSystem, batch: _Batch, name: str, value: str) -> str:
        if "." in name:
            self._set_dotted_path(system, batch, name, value)
            return ""

        variable = system.variables.get(name)
        if variable is not None:
            old_value = variable.value
            variable.value = parse_value(value, variable.type)
            batch.log(f"🔄 变量 {name}: {format_value(old_value)} -> {format_value(variable.value)} (属性格式)")
        else:
            registered = self._auto_register(system, batch, name, value)
            if registered is not None:
                batch.log(f"✅ 自动注册变量: {name} (类型: {registered.type}, 值: {value}) (属性格式)")
        return ""

    def _set_dotted_path(self, system: VariableSystem, batch: _Batch, name: str, value: str) -> None:
        root_name, _, relative_path = name.partition(".")
        root = system.variables.get(root_name)

        if root is None:
            default = todo_list_default_schema() if root_name == TODO_LIST else {}
            root = Variable(type="object", value=default)
            system.variables[root_name] = root
            batch.log(f"✅ 自动注册根变量: {root_name} (类型: object, 使用默认模板)")

        if root.type not in ("object", "array"):
            batch.log(f"❌ 变量 {root_name} 不是对象或数组类型，无法使用点号路径")
            return

        if not isinstance(root.value, (dict, list)):
            root.value = todo_list_default_schema() if root_name == TODO_LIST else {}

        success, error = set_value_by_dotted_path(root.value, relative_path, value)
        if success:
            batch.log(f"🔄 点号路径设置: {name} -> {value} (属性格式)")
        else:
            batch.log(f"❌ 点号路径设置失败: {name} - {error}")

    def _auto_register(self, system: VariableSystem, batch: _Batch, name: str,
                       literal: str) -> Optional[Variable]:
        """为未声明的变量推断类型并注册，失败时记录日志并返回 None"""
        try:
            if name == TODO_LIST:
                var_type = "object"
                value = todo_list_default_schema()
                if literal not in ("", '""'):
                    try:
                        parsed = json.loads(literal)
                    except ValueError:
                        logger.warning(f"ToDoList 值无法解析为JSON，使用默认模板: {literal}")
                        parsed = None
                    if isinstance(parsed, dict):
                        value.update(parsed)
            else:
                var_type = infer_type(literal)
                value = parse_inferred(literal)
        except (TypeError, ValueError) as e:
            batch.log(f"❌ 自动注册变量失败: {name} - {e}")
            return None

        variable = Variable(type=var_type, value=value)
        system.variables[name] = variable
        logger.info(f"📝 自动注册变量宏: ${{{name}}} (类型: {var_type}, 初始值: {format_value(value)})")
        return variable

    def _set_var_content(self, system: VariableSystem, batch: _Batch, content: str) -> str:
        for assignment in (part.strip() for part in content.split(";")):
            if not assignment:
                continue

            step = _STEP_RE.match(assignment)
            if step:
                self._apply_step(system, batch, step.group(1), step.group(2))
                continue

            assign = _ASSIGN_RE.match(assignment)
            if assign:
                self._apply_assignment(system, batch, assignment, assign.group(1), assign.group(2),
                                       assign.group(3).strip())
                continue

            batch.log(f"⚠️ 忽略无法解析的赋值: {assignment}")
        return ""

    def _apply_step(self, system: VariableSystem, batch: _Batch, name: str, op: str) -> None:
        variable = system.variables.get(name)
        if variable is None:
            variable = self._auto_register(system, batch, name, "0")
            if variable is None:
                return
            batch.log(f"✅ 自动注册变量: {name} (类型: number, 初始值: 0)")

        if variable.type != "number":
            batch.log(f"⚠️ 忽略非数字变量的{op}操作: {name} (类型: {variable.type})")
            return

        old_value = _to_number(variable.value)
        new_value = old_value + 1 if op == "++" else old_value - 1
        variable.value = new_value
        batch.log(f"🔄 变量 {name}: {format_value(old_value)} -> {format_value(new_value)} ({op})")

    def _apply_assignment(self, system: VariableSystem, batch: _Batch, assignment: str,
                          name: str, op: str, raw_value: str) -> None:
        variable = system.variables.get(name)
        if variable is None:
            # 未声明的变量：右值即为初始值，+= / -= 不再叠加运算
            registered = self._auto_register(system, batch, name, raw_value)
            if registered is not None:
                batch.log(f"✅ 自动注册变量: {name} (类型: {registered.type}, 值: {raw_value}) (内容格式)")
            return

        rhs = parse_value(raw_value, variable.type)
        old_value = variable.value

        if op == "=":
            variable.value = rhs
            batch.log(f"🔄 变量 {name}: {format_value(old_value)} -> {format_value(rhs)} (内容格式)")
        elif variable.type == "number":
            delta = _to_number(rhs)
            base = _to_number(old_value)
            variable.value = base + delta if op == "+=" else base - delta
            batch.log(f"🔄 变量 {name}: {format_value(base)} -> {format_value(variable.value)} ({op})")
        elif variable.type == "string" and op == "+=":
            variable.value = format_value(old_value) + format_value(rhs)
            batch.log(f"🔄 变量 {name}: {format_value(old_value)} -> {variable.value} ({op})")
        else:
            batch.log(f"⚠️ 忽略不支持的赋值操作: {assignment} (变量类型: {variable.type}, 操作符: {op})")

    def _set_table(self, system: VariableSystem, batch: _Batch, table_name: str,
                   row: str, content: str) -> str:
        table = system.tables.get(table_name)
        if table is None:
            logger.warning(f"setTable 忽略不存在的表格: {table_name}")
            return ""

        index = _parse_index(row)
        if index is None or not 0 <= index < len(table.rows):
            logger.warning(f"setTable 忽略无效的行索引: {table_name}[{row}]")
            return ""

        target = table.rows[index]
        for column_name, value in _parse_assignments(content):
            column = table.get_column(column_name)
            if column is None:
                continue
            old_value = target.get(column_name)
            new_value = parse_value(value, column.type)
            target[column_name] = new_value
            batch.log(f"📊 表格 {table_name}[{index}].{column_name}: "
                      f"{format_value(old_value)} -> {format_value(new_value)}")
        return ""

    def _add_table_row(self, system: VariableSystem, batch: _Batch, table_name: str, content: str) -> str:
        table = system.tables.get(table_name)
        if table is None:
            logger.warning(f"addTableRow 忽略不存在的表格: {table_name}")
            return ""

        new_row: Dict[str, Any] = {}
        for column_name, value in _parse_assignments(content):
            column = table.get_column(column_name)
            if column is not None:
                new_row[column_name] = parse_value(value, column.type)

        missing = [c.name for c in table.required_columns() if c.name not in new_row]
        if missing:
            batch.log(f"❌ 表格 {table_name} 添加行失败: 缺少必填字段 ({', '.join(missing)})")
            return ""

        table.rows.append(new_row)
        batch.log(f"➕ 表格 {table_name} 添加新行[{len(table.rows) - 1}]: {_dump_row(new_row)}")
        return ""

    def _remove_table_row(self, system: VariableSystem, batch: _Batch, table_name: str, row: str) -> str:
        table = system.tables.get(table_name)
        if table is None:
            logger.warning(f"removeTableRow 忽略不存在的表格: {table_name}")
            return ""

        index = _parse_index(row)
        if index is not None and 0 <= index < len(table.rows):
            removed = table.rows.pop(index)
            batch.log(f"➖ 表格 {table_name} 删除行[{index}]: {_dump_row(removed)}")
        else:
            batch.log(f"❌ 表格 {table_name} 删除行失败: 索引 {row} 无效")
        return ""

    def _set_hidden_var(self, system: VariableSystem, batch: _Batch, name: str, condition: str,
                        has_expiration: Optional[str], value: str) -> str:
        previous = system.hidden_variables.get(name)
        new_value = value.strip()
        system.hidden_variables[name] = HiddenVariable(
            condition=condition,
            value=new_value,
            has_expiration=has_expiration == "true",
        )
        if previous is not None:
            batch.log(f"🔒 隐变量 {name}: {format_value(previous.value)} -> {new_value} (条件: {condition})")
        else:
            batch.log(f"🔒 隐变量 {name}: 新建 = {new_value} (条件: {condition})")
        return ""

    # ==================== parse_register_commands ====================

    def parse_register_commands(self, text: str, system: VariableSystem) -> CommandResult:
        """执行注册/注销类指令"""
        batch = _Batch()
        result = decode_html_entities(text or "")

        def register_var(match: re.Match) -> str:
            applied = self._register_var(system, batch, *self._var_groups(match))
            return "" if applied else match.group(0)

        def register_vars(match: re.Match) -> str:
            # 容器内单个变量出错只跳过该变量，容器本身照常移除
            for item in self._VAR_ITEM.finditer(match.group(1)):
                self._register_var(system, batch, *self._var_groups(item))
            return ""

        result = self.patterns["register_var"].sub(register_var, result)
        result = self.patterns["register_vars"].sub(register_vars, result)
        result = self.patterns["register_hidden_var"].sub(
            lambda m: self._register_hidden_var(system, batch, m.group(1), m.group(2), m.group(3), m.group(4)),
            result)
        result = self.patterns["register_table"].sub(
            lambda m: self._register_table(system, batch, m), result)
        result = self.patterns["unregister_var"].sub(
            lambda m: self._unregister(system.variables, batch, "变量", m.group(1)), result)
        result = self.patterns["unregister_vars"].sub(
            lambda m: self._unregister_many(system, batch, m.group(1)), result)
        result = self.patterns["unregister_table"].sub(
            lambda m: self._unregister(system.tables, batch, "表格", m.group(1)), result)
        result = self.patterns["unregister_hidden_var"].sub(
            lambda m: self._unregister(system.hidden_variables, batch, "隐变量", m.group(1)), result)

        return batch.result(result)

    @staticmethod
    def _var_groups(match: re.Match) -> Tuple[str, str, str, Optional[str]]:
        name, var_type, init_val, double_quoted, single_quoted = match.groups()
        conditional = double_quoted if double_quoted is not None else single_quoted
        return name, var_type, init_val, conditional

    def _register_var(self, system: VariableSystem, batch: _Batch, name: str, var_type: str,
                      init_val: str, conditional: Optional[str]) -> bool:
        """注册单个变量；条件分支无法解析时返回 False（标签应保留）"""
        branches = None
        if conditional:
            try:
                branches = parse_branches(conditional)
            except BranchError as e:
                batch.error(f"变量 {name} 的条件分支解析失败: {e}")
                return False

        if var_type not in VARIABLE_TYPES:
            batch.log(f"⚠️ 忽略未知类型的变量注册: {name} (类型: {var_type})")
            return True

        system.variables[name] = Variable(
            type=var_type,
            value=parse_value(init_val, var_type),
            is_conditional=branches is not None,
            branches=branches,
        )
        batch.log(f"📝 已注册变量宏: ${{{name}}}" + (" (条件变量)" if branches else ""))
        return True

    def _register_hidden_var(self, system: VariableSystem, batch: _Batch, name: str, condition: str,
                             has_expiration: Optional[str], value: str) -> str:
        expires = has_expiration == "true"
        system.hidden_variables[name] = HiddenVariable(
            condition=condition,
            value=value.strip(),
            has_expiration=expires,
        )
        batch.log(f"🔒 已注册隐变量宏: ${{{name}}} {'(有期限)' if expires else '(无期限)'}")
        batch.log(f"   - 条件: {condition}")
        return ""

    def _register_table(self, system: VariableSystem, batch: _Batch, match: re.Match) -> str:
        name, single_quoted, double_quoted = match.groups()
        literal = single_quoted if single_quoted is not None else double_quoted
        try:
            columns = parse_columns(literal)
        except BranchError as e:
            batch.error(f"表格 {name} 的列定义解析失败: {e}")
            return match.group(0)

        system.tables[name] = Table(name=name, columns=columns, rows=[])
        batch.log(f"📊 已注册表格宏: ${{{name}.columnName}} 或 ${{{name}.columnName.rowIndex}}")
        for column in columns:
            batch.log(f"   - 列: ${{{name}.{column.name}}}")
        return ""

    @staticmethod
    def _unregister(namespace: Dict[str, Any], batch: _Batch, kind: str, name: str) -> str:
        if namespace.pop(name, None) is not None:
            batch.log(f"🗑️ 已注销{kind}: {name}")
        return ""

    def _unregister_many(self, system: VariableSystem, batch: _Batch, content: str) -> str:
        for item in self._VAR_NAME_ITEM.finditer(content):
            self._unregister(system.variables, batch, "变量", item.group(1))
        return ""
