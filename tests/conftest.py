# conftest.py
import os
import sys

import pytest

# 让测试可以直接导入仓库根目录下的 script_variables 包
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from script_variables.controllers.script_variable_service import ScriptVariableService
from script_variables.controllers.variable_manager import VariableManager
from script_variables.data.storage import MemoryStorage
from script_variables.services.dynamic_macro_resolver import DynamicMacroResolver, InMemoryHistoryProvider


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def history_provider():
    return InMemoryHistoryProvider()


@pytest.fixture
def manager(storage, history_provider):
    """绑定到剧本 script1 的变量管理器，使用内存存储"""
    return VariableManager(
        script_id="script1",
        storage=storage,
        dynamic_resolver=DynamicMacroResolver(history_provider),
    )


@pytest.fixture
def service(history_provider):
    """不读取配置文件、使用内存存储的剧本变量服务；同一剧本重建实例时沿用原来的存储"""
    storages = {}
    return ScriptVariableService(
        storage_factory=lambda script_id: storages.setdefault(script_id, MemoryStorage()),
        history_provider=history_provider,
        config_loader=lambda script_id: None,
    )
