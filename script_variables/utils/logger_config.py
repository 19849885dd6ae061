# logger_config.py
"""
变量系统的统一日志器

- 文件日志按大小轮转，级别可由 VARIABLE_LOG_LEVEL 调整；控制台只输出警告及以上
- 结构化事件是一行JSON，带剧本ID和作用域，便于按剧本/角色过滤
"""
import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

LOG_DIR = os.getenv("VARIABLE_LOG_DIR", "logs")
LOG_FILE = os.path.join(LOG_DIR, "variable_system.log")
LOG_LEVEL = os.getenv("VARIABLE_LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES = int(os.getenv("VARIABLE_LOG_MAX_BYTES", 5 * 1024 * 1024))
LOG_BACKUP_COUNT = int(os.getenv("VARIABLE_LOG_BACKUP_COUNT", 5))

# --- 结构化事件类型 ---
EVENT_SERVER_STARTUP = "SERVER_STARTUP"
EVENT_MANAGER_CREATED = "VARIABLE_MANAGER_CREATED"
EVENT_COMMANDS = "VARIABLE_COMMANDS"
EVENT_REGISTER_COMMANDS = "VARIABLE_REGISTER_COMMANDS"
EVENT_SNAPSHOT_LOADED = "SNAPSHOT_LOADED"
EVENT_SNAPSHOT_BACKUP = "SNAPSHOT_BACKUP"
EVENT_ERROR = "ERROR"

# 线程名用来区分事件循环、watchdog 和线程池里的日志
LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s'


def setup_logger():
    logger = logging.getLogger("VariableSystemLogger")

    # 防止重复添加处理器
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        fh = RotatingFileHandler(LOG_FILE, maxBytes=LOG_MAX_BYTES,
                                 backupCount=LOG_BACKUP_COUNT, encoding='utf-8')
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    except OSError as e:
        print(f"警告: 无法打开日志文件 {LOG_FILE}: {e}")

    ch = logging.StreamHandler()
    ch.setLevel(logging.WARNING)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger

logger = setup_logger()


def format_event(event_type: str, details: dict, script_id: Optional[str] = None,
                 scope: Any = None) -> str:
    entry = {"event_type": event_type}
    if script_id is not None:
        entry["script_id"] = script_id
    if scope is not None:
        entry["scope"] = str(scope)
    entry["details"] = details
    # 作用域、快照等对象用 str() 兜底
    return json.dumps(entry, ensure_ascii=False, default=str)


def log_event(event_type: str, details: dict, script_id: Optional[str] = None, scope: Any = None):
    """记录结构化事件日志"""
    logger.info(format_event(event_type, details, script_id, scope))


def log_error(error_message: str, context: dict = None, script_id: Optional[str] = None):
    """记录错误日志：一条 ERROR 事件 + 一条可读的错误行"""
    details = {"message": error_message}
    if context:
        details["context"] = context

    log_event(EVENT_ERROR, details, script_id=script_id)
    prefix = f"[{script_id}] " if script_id else ""
    logger.error(f"{prefix}{error_message}. Context: {context}")
