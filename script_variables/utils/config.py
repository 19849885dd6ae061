# config.py
import json
import os
from dotenv import load_dotenv
from typing import Dict, List, Optional, Tuple
from script_variables.utils.logger_config import logger

load_dotenv() # 加载 .env 文件

# --- 核心路径定义 ---
BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
DATA_DIR = os.getenv("VARIABLE_DATA_DIR", os.path.join(BASE_DIR, "data"))
# 每个剧本的变量文件存放在 VARIABLES_DIR/<script_id>/ 下
VARIABLES_DIR = os.getenv("VARIABLES_DIR", os.path.join(DATA_DIR, "variables"))
# 剧本变量配置目录，文件名为 <script_id>.json，修改后会触发缓存失效
SCRIPTS_CONFIG_DIR = os.getenv("SCRIPTS_CONFIG_DIR", os.path.join(BASE_DIR, "config", "scripts"))

# --- 持久化配置 ---
# 可选值: "json"（每个作用域一个JSON文件）或 "sqlite"
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "json").lower()
DATABASE_FILE = os.getenv("VARIABLE_DATABASE_FILE", os.path.join(DATA_DIR, "variables.db"))

# --- 宏解析配置 ---
# 嵌套宏的最大解析轮数
MAX_MACRO_DEPTH = int(os.getenv("MAX_MACRO_DEPTH", 10))
# 动态宏未指定条数时的默认条数
DEFAULT_DYNAMIC_COUNT = int(os.getenv("DEFAULT_DYNAMIC_COUNT", 10))

# --- 快照备份配置 ---
SNAPSHOT_BACKUP_DIR = os.getenv("SNAPSHOT_BACKUP_DIR", os.path.join(DATA_DIR, "snapshots"))
SNAPSHOT_BACKUP_INTERVAL_MINUTES = int(os.getenv("SNAPSHOT_BACKUP_INTERVAL_MINUTES", 60))
MAX_SNAPSHOT_BACKUPS = int(os.getenv("MAX_SNAPSHOT_BACKUPS", 24))  # 每个剧本保留的快照数量

# --- 服务配置 ---
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", 8002))

SUPPORTED_STORAGE_BACKENDS = ("json", "sqlite")


def get_script_config_path(script_id: str) -> str:
    """返回剧本变量配置文件的路径"""
    return os.path.join(SCRIPTS_CONFIG_DIR, f"{script_id}.json")


def load_script_variable_config(script_id: str) -> Optional[Dict]:
    """
    读取剧本的变量配置 (variables / tables / hiddenVariables)。
    文件不存在时返回 None，解析失败时记录错误并返回 None。
    """
    file_path = get_script_config_path(script_id)
    if not os.path.isfile(file_path):
        return None
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        # 兼容整个剧本文件的格式：{"variableConfig": {...}}
        if isinstance(data, dict) and isinstance(data.get("variableConfig"), dict):
            data = data["variableConfig"]
        if not isinstance(data, dict):
            logger.error(f"错误: {file_path} 的内容应该是一个对象")
            return None
        return data
    except json.JSONDecodeError:
        logger.error(f"错误: 无法解析剧本变量配置 {file_path}")
        return None
    except Exception as e:
        logger.error(f"读取剧本变量配置 {file_path} 时发生未知错误: {e}")
        return None


def save_script_variable_config(script_id: str, variable_config: Dict) -> None:
    """写入剧本的变量配置文件"""
    os.makedirs(SCRIPTS_CONFIG_DIR, exist_ok=True)
    with open(get_script_config_path(script_id), 'w', encoding='utf-8') as f:
        json.dump(variable_config, f, ensure_ascii=False, indent=2)


def list_script_config_ids() -> List[str]:
    """列出配置目录中所有剧本ID"""
    if not os.path.isdir(SCRIPTS_CONFIG_DIR):
        return []
    return sorted(
        os.path.splitext(name)[0]
        for name in os.listdir(SCRIPTS_CONFIG_DIR)
        if name.endswith(".json")
    )


# --- 配置验证函数 ---
def validate_configuration() -> Tuple[bool, List[str]]:
    """验证系统配置是否满足最低运行要求"""
    errors = []

    if STORAGE_BACKEND not in SUPPORTED_STORAGE_BACKENDS:
        errors.append(f"不支持的存储后端: {STORAGE_BACKEND} (可选: {', '.join(SUPPORTED_STORAGE_BACKENDS)})")

    if MAX_MACRO_DEPTH < 1:
        errors.append(f"MAX_MACRO_DEPTH 必须大于0 (当前: {MAX_MACRO_DEPTH})")

    for directory in (DATA_DIR, VARIABLES_DIR, SNAPSHOT_BACKUP_DIR, SCRIPTS_CONFIG_DIR):
        if not os.path.exists(directory):
            try:
                os.makedirs(directory)
                logger.info(f"已创建目录: {directory}")
            except Exception as e:
                errors.append(f"无法创建目录 {directory}: {e}")

    is_valid = len(errors) == 0
    return is_valid, errors
