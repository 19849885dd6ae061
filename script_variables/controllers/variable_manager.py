# variable_manager.py
"""
变量管理器：一个剧本一个实例

把作用域（全局 / 角色）绑定到 变量系统 + 锁 + 持久化网关 上：
- 指令解析（注册类 / 修改类）在作用域锁内完成 "解析 -> 修改 -> 持久化"
- 宏解析只在作用域尚未加载时加锁（从持久化数据恢复）；有期限隐变量被读取后只在内存中标记，
  由下一次加锁写入或 replace_macros_async 结束时统一持久化
- 存档快照的导出与载入
"""
import json
from typing import Any, Dict, List, Optional, Set, Union

from script_variables.data.lock_manager import LockManager
from script_variables.data.storage import VariableStorage, create_storage
from script_variables.models.errors import ScopeNotFoundError, TableRowError
from script_variables.models.scope import GLOBAL_SCOPE, CharacterScope, Scope
from script_variables.models.variable_types import (
    ConditionBranch,
    HiddenVariable,
    Table,
    TableColumn,
    Variable,
    VariableSnapshot,
    VariableSystem,
)
from script_variables.services.command_parser import CommandInterpreter, CommandResult, TagConfig
from script_variables.services.dynamic_macro_resolver import DynamicMacroResolver
from script_variables.services.macro_resolver import MacroResolver
from script_variables.services.value_parser import parse_value
from script_variables.utils.logger_config import EVENT_COMMANDS, EVENT_REGISTER_COMMANDS, log_event, logger

VariableConfig = Union[str, Dict[str, Any], VariableSystem, None]


def _coerce_config(config: VariableConfig) -> VariableSystem:
    """把 JSON 字符串 / 字典 / VariableSystem 统一转换为新的 VariableSystem"""
    if isinstance(config, VariableSystem):
        return config.deep_copy()
    if isinstance(config, str):
        config = json.loads(config)
    if not isinstance(config, dict):
        raise ValueError("变量配置必须是对象")
    return VariableSystem.from_dict(config)


class VariableManager:
    """剧本级变量管理器"""

    def __init__(self, script_id: Optional[str] = None,
                 storage: Optional[VariableStorage] = None,
                 tag_config: Optional[TagConfig] = None,
                 lock_manager: Optional[LockManager] = None,
                 dynamic_resolver: Optional[DynamicMacroResolver] = None):
        self.script_id = script_id
        self.storage = storage if storage is not None else create_storage(script_id)
        self.lock_manager = lock_manager or LockManager()
        self.interpreter = CommandInterpreter(tag_config)
        self.dynamic_resolver = dynamic_resolver or DynamicMacroResolver()

        self.global_system = VariableSystem()
        self.characters: Dict[str, VariableSystem] = {}
        self._initialized: Set[Scope] = set()
        # 内存中已修改但尚未持久化的作用域（隐变量过期标记）
        self._dirty: Set[Scope] = set()

    # ==================== 作用域与持久化 ====================

    def _system_for(self, scope: Scope) -> Optional[VariableSystem]:
        if isinstance(scope, CharacterScope):
            return self.characters.get(scope.character_id)
        return self.global_system

    def _set_system(self, scope: Scope, system: VariableSystem) -> None:
        if isinstance(scope, CharacterScope):
            self.characters[scope.character_id] = system
        else:
            self.global_system = system
        self._initialized.add(scope)

    def get_scope_system(self, scope: Scope) -> VariableSystem:
        """返回已加载的作用域变量系统，角色未初始化时抛出 ScopeNotFoundError"""
        system = self._system_for(scope)
        if system is None:
            raise ScopeNotFoundError(f"角色 {scope.character_id} 的变量系统尚未初始化")
        return system

    def _dynamic_default_id(self, scope: Scope) -> Optional[str]:
        return scope.character_id or self.script_id

    async def _persist(self, scope: Scope, system: VariableSystem) -> None:
        """写入整个作用域的变量系统。调用方需持有该作用域的锁"""
        payload = json.dumps(system.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        await self.storage.save(scope.storage_key, payload)
        self._dirty.discard(scope)

    async def _load(self, scope: Scope) -> Optional[VariableSystem]:
        payload = await self.storage.load(scope.storage_key)
        if payload is None:
            return None
        try:
            return VariableSystem.from_dict(json.loads(payload.decode("utf-8")))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"[{self.script_id}] 持久化数据损坏，忽略 {scope.storage_key}: {e}")
            return None

    async def _initialize(self, scope: Scope, config: VariableConfig = None) -> VariableSystem:
        """
        初始化作用域：显式配置优先，其次是持久化数据，都没有时创建空系统。
        从配置或空系统创建时会立即持久化。调用方需持有该作用域的锁。
        """
        if config is not None:
            system = _coerce_config(config)
        else:
            loaded = await self._load(scope)
            if loaded is not None:
                self._set_system(scope, loaded)
                logger.info(f"[{self.script_id}] 已从持久化数据恢复 {scope}")
                return loaded
            system = VariableSystem()

        self._set_system(scope, system)
        await self._persist(scope, system)
        return system

    async def _ensure_loaded(self, scope: Scope) -> VariableSystem:
        """调用方需持有该作用域的锁"""
        system = self._system_for(scope)
        if system is not None and scope in self._initialized:
            return system
        return await self._initialize(scope)

    def _log_result(self, scope: Scope, action: str, result: CommandResult) -> None:
        for line in result.logs:
            logger.info(f"[{self.script_id}:{scope}] {line}")
        if result.changed or result.errors:
            log_event(action, {
                "changed": result.changed,
                "log_count": len(result.logs),
                "errors": result.errors,
            }, script_id=self.script_id, scope=scope)

    # ==================== 指令解析 ====================

    async def parse_commands(self, text: str, scope: Scope = GLOBAL_SCOPE) -> CommandResult:
        """执行修改类指令并持久化；持久化失败时抛出 StorageError"""
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            result = self.interpreter.parse_commands(text, system)
            if result.changed or scope in self._dirty:
                await self._persist(scope, system)
        self._log_result(scope, EVENT_COMMANDS, result)
        return result

    async def parse_register_commands(self, text: str, scope: Scope = GLOBAL_SCOPE) -> CommandResult:
        """执行注册/注销类指令并持久化；持久化失败时抛出 StorageError"""
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            result = self.interpreter.parse_register_commands(text, system)
            if result.changed or scope in self._dirty:
                await self._persist(scope, system)
        self._log_result(scope, EVENT_REGISTER_COMMANDS, result)
        return result

    # ==================== 宏解析 ====================

    def replace_macros(self, text: str, scope: Scope = GLOBAL_SCOPE) -> str:
        """同步宏替换，动态宏只会被改写成占位符"""
        system = self._system_for(scope)
        if system is None:
            return text
        resolver = MacroResolver(system, default_dynamic_id=self._dynamic_default_id(scope))
        result = resolver.replace(text)
        if resolver.expired_hidden:
            self._dirty.add(scope)
            logger.info(f"[{self.script_id}:{scope}] 有期限隐变量已失效: {', '.join(resolver.expired_hidden)}")
        return result

    async def replace_macros_async(self, text: str, scope: Scope = GLOBAL_SCOPE) -> str:
        """宏替换 + 动态宏解析，结束前持久化被标记为过期的隐变量"""
        if scope not in self._initialized:
            # 尚未加载的作用域先从持久化数据恢复（没有数据时创建空系统）
            async with self.lock_manager.acquire(scope.lock_name):
                await self._ensure_loaded(scope)
        result = self.replace_macros(text, scope)
        if scope in self._dirty:
            async with self.lock_manager.acquire(scope.lock_name):
                system = self._system_for(scope)
                if scope in self._dirty and system is not None:
                    await self._persist(scope, system)
        return await self.dynamic_resolver.resolve_dynamic_macros(result)

    async def flush(self) -> int:
        """持久化所有待写入的作用域，返回写入数量"""
        flushed = 0
        for scope in list(self._dirty):
            async with self.lock_manager.acquire(scope.lock_name):
                system = self._system_for(scope)
                if scope in self._dirty and system is not None:
                    await self._persist(scope, system)
                    flushed += 1
        return flushed

    # ==================== 作用域接口（失败时返回原文本 / False） ====================

    async def init_character(self, character_id: str, config: VariableConfig = None) -> bool:
        scope = CharacterScope(character_id)
        try:
            async with self.lock_manager.acquire(scope.lock_name):
                await self._initialize(scope, config)
            return True
        except Exception as e:
            logger.error(f"[{self.script_id}] 初始化角色 {character_id} 变量失败: {e}", exc_info=True)
            return False

    async def init_global(self, config: VariableConfig = None) -> bool:
        try:
            async with self.lock_manager.acquire(GLOBAL_SCOPE.lock_name):
                await self._initialize(GLOBAL_SCOPE, config)
            return True
        except Exception as e:
            logger.error(f"[{self.script_id}] 初始化全局变量失败: {e}", exc_info=True)
            return False

    async def get_character_variables(self, character_id: str) -> Optional[VariableSystem]:
        scope = CharacterScope(character_id)
        if character_id not in self.characters:
            await self.init_character(character_id)
        return self._system_for(scope)

    async def get_global_variables(self) -> VariableSystem:
        if GLOBAL_SCOPE not in self._initialized:
            await self.init_global()
        return self.global_system

    async def parse_character_commands(self, character_id: str, text: str) -> str:
        result = await self.parse_character_commands_with_logs(character_id, text)
        return result.clean_text

    async def parse_character_commands_with_logs(self, character_id: str, text: str) -> CommandResult:
        try:
            return await self.parse_commands(text, CharacterScope(character_id))
        except Exception as e:
            logger.error(f"[{self.script_id}] 解析角色 {character_id} 指令失败: {e}", exc_info=True)
            return CommandResult(clean_text=text)

    async def replace_character_macros(self, character_id: str, text: str) -> str:
        try:
            return await self.replace_macros_async(text, CharacterScope(character_id))
        except Exception as e:
            logger.error(f"[{self.script_id}] 替换角色 {character_id} 宏失败: {e}", exc_info=True)
            return text

    async def replace_global_macros(self, text: str) -> str:
        try:
            return await self.replace_macros_async(text, GLOBAL_SCOPE)
        except Exception as e:
            logger.error(f"[{self.script_id}] 替换全局宏失败: {e}", exc_info=True)
            return text

    async def _register_commands(self, scope: Scope, commands: str) -> bool:
        try:
            result = await self.parse_register_commands(commands, scope)
        except Exception as e:
            logger.error(f"[{self.script_id}] 处理 {scope} 的注册指令失败: {e}", exc_info=True)
            return False
        if result.errors:
            logger.error(f"[{self.script_id}] {scope} 部分变量注册失败: {result.errors}")
            return False
        return True

    async def register_character_variables(self, character_id: str, commands: str) -> bool:
        return await self._register_commands(CharacterScope(character_id), commands)

    async def unregister_character_variables(self, character_id: str, commands: str) -> bool:
        return await self._register_commands(CharacterScope(character_id), commands)

    async def register_global_variables(self, commands: str) -> bool:
        return await self._register_commands(GLOBAL_SCOPE, commands)

    async def unregister_global_variables(self, commands: str) -> bool:
        return await self._register_commands(GLOBAL_SCOPE, commands)

    # ==================== 直接操作（持久化后返回） ====================

    async def register_var(self, name: str, var_type: str, init_val: Any, scope: Scope = GLOBAL_SCOPE,
                           branches: Optional[List[ConditionBranch]] = None) -> None:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            system.variables[name] = Variable(
                type=var_type,
                value=parse_value(init_val, var_type),
                is_conditional=branches is not None,
                branches=branches,
            )
            await self._persist(scope, system)
        logger.info(f"📝 已注册变量宏: ${{{name}}} {'(条件变量)' if branches else ''}")

    async def unregister_var(self, name: str, scope: Scope = GLOBAL_SCOPE) -> None:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            system.variables.pop(name, None)
            await self._persist(scope, system)

    async def register_table(self, name: str, columns: List[TableColumn], scope: Scope = GLOBAL_SCOPE) -> None:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            system.tables[name] = Table(name=name, columns=list(columns), rows=[])
            await self._persist(scope, system)
        logger.info(f"📊 已注册表格宏: ${{{name}.columnName}} 或 ${{{name}.columnName.rowIndex}}")

    async def unregister_table(self, name: str, scope: Scope = GLOBAL_SCOPE) -> None:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            system.tables.pop(name, None)
            await self._persist(scope, system)

    async def register_hidden_var(self, name: str, condition: str, value: Any, scope: Scope = GLOBAL_SCOPE,
                                  has_expiration: bool = False) -> None:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            system.hidden_variables[name] = HiddenVariable(
                condition=condition,
                value=value,
                has_expiration=has_expiration,
            )
            await self._persist(scope, system)
        logger.info(f"🔒 已注册隐变量宏: ${{{name}}} {'(有期限)' if has_expiration else '(无期限)'}")

    async def unregister_hidden_var(self, name: str, scope: Scope = GLOBAL_SCOPE) -> None:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            system.hidden_variables.pop(name, None)
            await self._persist(scope, system)

    async def set_table_cell(self, table_name: str, row_index: int, column_name: str, value: Any,
                             scope: Scope = GLOBAL_SCOPE) -> bool:
        """设置单元格，行索引越界或列不存在时返回 False"""
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            table = system.tables.get(table_name)
            if table is None:
                raise TableRowError(f"表格 {table_name} 不存在")
            column = table.get_column(column_name)
            if column is None or not 0 <= row_index < len(table.rows):
                return False
            table.rows[row_index][column_name] = parse_value(value, column.type)
            await self._persist(scope, system)
            return True

    async def add_table_row(self, table_name: str, row_data: Dict[str, Any],
                            scope: Scope = GLOBAL_SCOPE) -> int:
        """追加一行并返回新行索引；缺少必填列时抛出 TableRowError 且不修改表格"""
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            table = system.tables.get(table_name)
            if table is None:
                raise TableRowError(f"表格 {table_name} 不存在")

            new_row: Dict[str, Any] = {}
            for column in table.columns:
                if column.name not in row_data or row_data[column.name] is None:
                    if column.required:
                        raise TableRowError(f"表格 {table_name} 缺少必填列 '{column.name}'")
                    continue
                new_row[column.name] = parse_value(row_data[column.name], column.type)

            table.rows.append(new_row)
            await self._persist(scope, system)
            return len(table.rows) - 1

    async def remove_table_row(self, table_name: str, row_index: int, scope: Scope = GLOBAL_SCOPE) -> bool:
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            table = system.tables.get(table_name)
            if table is None or not 0 <= row_index < len(table.rows):
                return False
            table.rows.pop(row_index)
            await self._persist(scope, system)
            return True

    async def set_variable_value(self, name: str, value: Any, scope: Scope = GLOBAL_SCOPE) -> bool:
        """按变量声明的类型设置值，变量不存在时返回 False"""
        async with self.lock_manager.acquire(scope.lock_name):
            system = await self._ensure_loaded(scope)
            variable = system.variables.get(name)
            if variable is None:
                return False
            variable.value = parse_value(value, variable.type)
            await self._persist(scope, system)
            return True

    # ==================== 读取 ====================

    def get_table_data(self, table_name: str, scope: Scope = GLOBAL_SCOPE) -> List[Dict[str, Any]]:
        system = self._system_for(scope)
        if system is None or table_name not in system.tables:
            return []
        return system.tables[table_name].rows

    def get_variable_value(self, name: str, scope: Scope = GLOBAL_SCOPE) -> Any:
        system = self._system_for(scope)
        if system is None or name not in system.variables:
            return None
        return system.variables[name].value

    def get_hidden_variable_value(self, name: str, scope: Scope = GLOBAL_SCOPE) -> Any:
        """条件满足时返回隐变量的值；只读，不会使有期限的隐变量过期"""
        system = self._system_for(scope)
        if system is None or name not in system.hidden_variables:
            return None
        hidden = system.hidden_variables[name]
        if hidden.has_expiration and hidden.is_expired:
            return None
        resolver = MacroResolver(system, default_dynamic_id=self._dynamic_default_id(scope))
        if resolver.check_condition(hidden.condition):
            return hidden.value
        return None

    def update_tag_config(self, overrides: Dict[str, str]) -> TagConfig:
        return self.interpreter.update_tag_config(overrides)

    # ==================== 存档快照 ====================

    def export_snapshots(self) -> VariableSnapshot:
        """导出全局和所有已加载角色的深拷贝"""
        return VariableSnapshot(
            global_system=self.global_system.deep_copy(),
            characters={cid: system.deep_copy() for cid, system in self.characters.items()},
        )

    async def export_snapshots_async(self) -> VariableSnapshot:
        """逐个持有作用域锁再拷贝，不会拷贝到执行了一半的指令批次"""
        async with self.lock_manager.acquire(GLOBAL_SCOPE.lock_name):
            global_system = self.global_system.deep_copy()

        characters: Dict[str, VariableSystem] = {}
        for character_id in list(self.characters):
            scope = CharacterScope(character_id)
            async with self.lock_manager.acquire(scope.lock_name):
                system = self.characters.get(character_id)
                if system is not None:
                    characters[character_id] = system.deep_copy()
        return VariableSnapshot(global_system=global_system, characters=characters)

    async def load_snapshots(self, snapshot: Union[VariableSnapshot, Dict[str, Any]]) -> None:
        """用快照替换所有作用域（不合并）并逐个持久化；持久化失败时抛出 StorageError"""
        if isinstance(snapshot, dict):
            snapshot = VariableSnapshot.from_dict(snapshot)

        async with self.lock_manager.acquire(GLOBAL_SCOPE.lock_name):
            system = snapshot.global_system.deep_copy()
            self._set_system(GLOBAL_SCOPE, system)
            await self._persist(GLOBAL_SCOPE, system)

        dropped = set(self.characters) - set(snapshot.characters)
        for character_id in dropped:
            scope = CharacterScope(character_id)
            self.characters.pop(character_id, None)
            self._initialized.discard(scope)
            self._dirty.discard(scope)

        for character_id, character_system in snapshot.characters.items():
            scope = CharacterScope(character_id)
            async with self.lock_manager.acquire(scope.lock_name):
                system = character_system.deep_copy()
                self._set_system(scope, system)
                await self._persist(scope, system)

        logger.info(f"[{self.script_id}] ✅ 变量快照已载入 (角色数: {len(snapshot.characters)})")
