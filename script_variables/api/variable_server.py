# variable_server.py
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Optional, Dict, Any

# 导入核心模块
from script_variables.utils import config
from script_variables.utils.logger_config import EVENT_SERVER_STARTUP, EVENT_SNAPSHOT_LOADED, log_event, log_error, logger
from script_variables.controllers.script_variable_service import ScriptVariableService
from script_variables.models.errors import ScopeNotFoundError, VariableSystemError
from script_variables.models.scope import scope_for
from script_variables.models.variable_types import VariableSnapshot
from script_variables.services.dynamic_macro_resolver import InMemoryHistoryProvider, MessageRole
from script_variables.services.variable_processor import VariableProcessor
from script_variables.background import file_watcher
from script_variables.background import snapshot_backup

# 初始化FastAPI应用
app = FastAPI(title="剧本变量宏系统后端", version="1.0.0")

# CORS配置，允许所有来源（在生产环境中应更严格）
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 进程内共享的服务实例
history_provider = InMemoryHistoryProvider()
variable_service = ScriptVariableService(history_provider=history_provider)
processor = VariableProcessor(variable_service)

# 后台任务句柄，关闭时停止
_background = {}

# --- 服务器启动事件 ---
@app.on_event("startup")
async def startup_event():
    logger.info("服务器启动中，开始验证配置...")

    # 第一步：验证配置是否满足最低要求
    is_valid, errors = config.validate_configuration()
    if not is_valid:
        logger.critical("配置验证失败，系统无法启动:")
        for error in errors:
            logger.critical(f"  - {error}")
        log_error("配置验证失败", {"errors": errors})
        # 阻止服务器启动
        raise Exception(f"Server startup failed: Configuration validation errors: {'; '.join(errors)}")

    # 启动剧本配置热更新监控
    _background["observer"] = file_watcher.start_file_watcher(variable_service)

    # 启动变量快照定期备份任务
    _background["scheduler"] = snapshot_backup.start_backup_scheduler(variable_service)

    log_event(EVENT_SERVER_STARTUP, {
        "status": "success",
        "storage_backend": config.STORAGE_BACKEND,
        "script_configs": len(config.list_script_config_ids()),
    })
    logger.info(f"服务器启动成功！存储后端: {config.STORAGE_BACKEND}")

@app.on_event("shutdown")
async def shutdown_event():
    # 写回因隐变量过期而变化、尚未持久化的作用域
    for script_id, manager in variable_service.cached_managers().items():
        try:
            await manager.flush()
        except Exception as e:
            logger.error(f"关闭时持久化剧本 {script_id} 失败: {e}", exc_info=True)

    scheduler = _background.pop("scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    observer = _background.pop("observer", None)
    if observer is not None:
        observer.stop()
        observer.join(timeout=5)
    logger.info("服务器已关闭。")

# --- Pydantic模型定义（用于请求体验证和响应结构） ---

class TextRequest(BaseModel):
    # 待处理的文本（AI响应、提示词等）
    text: str
    # 为空时作用于全局作用域
    character_id: Optional[str] = None

class SnapshotRequest(BaseModel):
    # 与 GET /scripts/{script_id}/snapshot 的返回格式相同: {"global": ..., "characters": {...}}
    snapshot: Dict[str, Any]

class CharacterInitRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None

class ScriptConfigRequest(BaseModel):
    config: Dict[str, Any]

class TagConfigRequest(BaseModel):
    # 键可以是 setVar 或 set_var 形式
    overrides: Dict[str, str]

class ScriptHistoryRequest(BaseModel):
    ai_response: Any

class ChatMessageRequest(BaseModel):
    chat_id: str
    role: MessageRole
    content: str


def _raise_for(e: Exception, action: str):
    """把变量系统异常映射为HTTP错误"""
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, ScopeNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, VariableSystemError):
        raise HTTPException(status_code=400, detail=str(e))
    logger.exception(f"{action}时发生意外错误: {e}")
    raise HTTPException(status_code=500, detail="服务器内部错误。")


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "initialized_scripts": variable_service.get_initialized_script_ids(),
    }

@app.post("/scripts/{script_id}/process")
async def process_ai_response(script_id: str, request: TextRequest):
    """注册指令 -> 修改指令 -> 宏替换"""
    result = await processor.process_ai_response(script_id, request.text, request.character_id)
    return result.to_dict()

@app.post("/scripts/{script_id}/macros")
async def replace_macros(script_id: str, request: TextRequest):
    try:
        manager = await variable_service.get_instance(script_id)
        # 未加载的角色作用域会先从持久化数据恢复
        text = await manager.replace_macros_async(request.text, scope_for(request.character_id))
        return {"text": text}
    except Exception as e:
        _raise_for(e, "替换宏")

@app.post("/scripts/{script_id}/commands")
async def parse_commands(script_id: str, request: TextRequest):
    try:
        manager = await variable_service.get_instance(script_id)
        result = await manager.parse_commands(request.text, scope_for(request.character_id))
        return result.to_dict()
    except Exception as e:
        _raise_for(e, "执行变量指令")

@app.post("/scripts/{script_id}/register")
async def parse_register_commands(script_id: str, request: TextRequest):
    try:
        manager = await variable_service.get_instance(script_id)
        result = await manager.parse_register_commands(request.text, scope_for(request.character_id))
        return result.to_dict()
    except Exception as e:
        _raise_for(e, "执行注册指令")

@app.post("/scripts/{script_id}/preview")
async def preview_operations(script_id: str, request: TextRequest):
    """只列出指令，不修改变量"""
    return await processor.preview_variable_operations(script_id, request.text)

@app.get("/scripts/{script_id}/variables")
async def get_variables(script_id: str, character_id: Optional[str] = None):
    state = await processor.get_variable_state(script_id, character_id)
    if state is None:
        raise HTTPException(status_code=404, detail="未找到该作用域的变量数据。")
    return state

@app.get("/scripts/{script_id}/variables/summary")
async def get_variable_summary(script_id: str, character_id: Optional[str] = None):
    try:
        return {"summary": await processor.describe_variables(script_id, character_id)}
    except Exception as e:
        _raise_for(e, "生成变量摘要")

@app.get("/scripts/{script_id}/snapshot")
async def export_snapshot(script_id: str):
    try:
        manager = await variable_service.get_instance(script_id)
        return manager.export_snapshots().to_dict()
    except Exception as e:
        _raise_for(e, "导出快照")

@app.post("/scripts/{script_id}/snapshot")
async def load_snapshot(script_id: str, request: SnapshotRequest):
    try:
        manager = await variable_service.get_instance(script_id)
        snapshot = VariableSnapshot.from_dict(request.snapshot)
        await manager.load_snapshots(snapshot)
        log_event(EVENT_SNAPSHOT_LOADED, {"characters": len(snapshot.characters)}, script_id=script_id)
        return {"status": "success", "characters": sorted(snapshot.characters.keys())}
    except Exception as e:
        _raise_for(e, "载入快照")

@app.post("/scripts/{script_id}/characters/{character_id}/init")
async def init_character(script_id: str, character_id: str, request: CharacterInitRequest):
    success = await variable_service.init_character_for_script(script_id, character_id, request.config)
    if not success:
        raise HTTPException(status_code=400, detail="角色变量初始化失败。")
    return {"status": "success", "character_id": character_id}

@app.put("/scripts/{script_id}/config")
async def update_script_config(script_id: str, request: ScriptConfigRequest):
    success = await variable_service.update_script_variable_config(script_id, request.config)
    if not success:
        raise HTTPException(status_code=400, detail="剧本变量配置更新失败。")
    return {"status": "success"}

@app.put("/scripts/{script_id}/tags")
async def update_tag_config(script_id: str, request: TagConfigRequest):
    try:
        manager = await variable_service.get_instance(script_id)
        return manager.update_tag_config(request.overrides).to_dict()
    except Exception as e:
        _raise_for(e, "更新标签配置")

@app.post("/scripts/{script_id}/history")
def add_script_history(script_id: str, request: ScriptHistoryRequest):
    history_provider.add_script_entry(script_id, request.ai_response)
    return {"status": "success"}

@app.post("/chats/messages")
def add_chat_message(request: ChatMessageRequest):
    history_provider.add_message(request.chat_id, request.role, request.content)
    return {"status": "success"}

@app.delete("/scripts/{script_id}")
async def clear_script(script_id: str):
    manager = variable_service.cached_managers().get(script_id)
    if manager is None:
        raise HTTPException(status_code=404, detail="该剧本没有已加载的变量管理器。")
    try:
        await manager.flush()
    except Exception as e:
        _raise_for(e, "持久化变量")
    variable_service.clear_instance(script_id)
    return {"status": "success"}
