# script_variable_service.py
"""
剧本变量服务：按剧本ID缓存 VariableManager 实例

- get_instance: 缓存未命中时创建实例，用剧本变量配置（或持久化数据）初始化全局作用域，
  然后通过 <registerVars> 注册系统宏
- clear_instance / clear_all_instances: 显式失效，下次访问时重新创建
- invalidate_instance: 失效前先写回内存中未持久化的修改
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional

from script_variables.controllers.variable_manager import VariableManager
from script_variables.data.lock_manager import LockManager
from script_variables.data.storage import VariableStorage, create_storage
from script_variables.services.command_parser import TagConfig
from script_variables.services.dynamic_macro_resolver import DynamicMacroResolver, HistoryProvider
from script_variables.utils import config
from script_variables.utils.logger_config import EVENT_MANAGER_CREATED, log_event, logger

# 每个剧本都会自动注册的系统宏
SYSTEM_MACROS = (
    ("scriptSummary", "剧本摘要待生成"),
    ("privateSummary", "私聊摘要待生成"),
    ("guidanceCurrentChat", "当前聊天指导待设置"),
    ("guidanceCurrentScript", "当前剧本指导待设置"),
    ("scriptHistoryRecent", "暂无剧本历史"),
    ("characterChatRecent", "暂无聊天历史"),
)


def build_system_macros_command() -> str:
    items = "\n".join(
        f'  <var name="{name}" type="string" initVal="{init_val}" />' for name, init_val in SYSTEM_MACROS
    )
    return f"<registerVars>\n{items}\n</registerVars>"


class ScriptVariableService:
    """VariableManager 注册表"""

    def __init__(self, storage_factory: Callable[[str], VariableStorage] = create_storage,
                 history_provider: Optional[HistoryProvider] = None,
                 tag_config: Optional[TagConfig] = None,
                 config_loader: Callable[[str], Optional[Dict[str, Any]]] = config.load_script_variable_config):
        self.storage_factory = storage_factory
        self.dynamic_resolver = DynamicMacroResolver(history_provider)
        self.tag_config = tag_config
        self.config_loader = config_loader
        self._instances: Dict[str, VariableManager] = {}
        # 防止同一剧本被并发创建两次
        self._creation_locks = LockManager()

    async def get_instance(self, script_id: str) -> VariableManager:
        """获取剧本的变量管理器，不存在时创建并初始化"""
        manager = self._instances.get(script_id)
        if manager is not None:
            return manager

        async with self._creation_locks.acquire(script_id):
            manager = self._instances.get(script_id)
            if manager is not None:
                return manager

            manager = VariableManager(
                script_id=script_id,
                storage=self.storage_factory(script_id),
                tag_config=self.tag_config,
                dynamic_resolver=self.dynamic_resolver,
            )

            loop = asyncio.get_running_loop()
            variable_config = await loop.run_in_executor(None, self.config_loader, script_id)
            if variable_config:
                await manager.init_global(variable_config)
                logger.info(f"📋 剧本 {script_id} 的变量系统已按配置初始化")
            else:
                await manager.init_global()
                logger.info(f"📋 剧本 {script_id} 使用默认变量系统配置")

            await self._register_system_macros(manager, script_id)

            self._instances[script_id] = manager
            log_event(EVENT_MANAGER_CREATED, {"from_config": bool(variable_config)}, script_id=script_id)
            return manager

    async def _register_system_macros(self, manager: VariableManager, script_id: str) -> None:
        success = await manager.register_global_variables(build_system_macros_command())
        if success:
            logger.info(f"✅ 剧本 {script_id} 的系统宏已自动注册: {', '.join(name for name, _ in SYSTEM_MACROS)}")
        else:
            logger.warning(f"⚠️ 剧本 {script_id} 的系统宏注册可能存在问题")

    def clear_instance(self, script_id: str) -> bool:
        removed = self._instances.pop(script_id, None) is not None
        if removed:
            logger.info(f"🗑️ 已清除剧本 {script_id} 的变量管理器实例")
        return removed

    async def invalidate_instance(self, script_id: str) -> bool:
        """先持久化待写入的作用域（隐变量过期标记），再清除实例"""
        manager = self._instances.get(script_id)
        if manager is None:
            return False
        try:
            await manager.flush()
        except Exception as e:
            logger.error(f"清除剧本 {script_id} 前持久化变量失败: {e}", exc_info=True)
        return self.clear_instance(script_id)

    def clear_all_instances(self) -> None:
        self._instances.clear()
        logger.info("🗑️ 已清除所有剧本的变量管理器实例")

    def get_initialized_script_ids(self) -> List[str]:
        return list(self._instances.keys())

    def is_initialized(self, script_id: str) -> bool:
        return script_id in self._instances

    def cached_managers(self) -> Dict[str, VariableManager]:
        """当前缓存的实例（浅拷贝，供后台任务遍历）"""
        return dict(self._instances)

    async def update_script_variable_config(self, script_id: str, variable_config: Dict[str, Any]) -> bool:
        """写入新的剧本变量配置，并用它重新创建变量管理器"""
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, config.save_script_variable_config, script_id, variable_config)
            await self.invalidate_instance(script_id)
            await self.get_instance(script_id)
            logger.info(f"✅ 剧本 {script_id} 的变量配置已更新")
            return True
        except Exception as e:
            logger.error(f"更新剧本 {script_id} 的变量配置失败: {e}", exc_info=True)
            return False

    async def init_character_for_script(self, script_id: str, character_id: str,
                                        character_config: Optional[Dict[str, Any]] = None) -> bool:
        manager = await self.get_instance(script_id)
        success = await manager.init_character(character_id, character_config)
        if success:
            logger.info(f"👤 为剧本 {script_id} 初始化角色 {character_id} 的变量系统")
        return success
