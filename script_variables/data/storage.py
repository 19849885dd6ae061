# storage.py
"""
变量持久化网关

约定：load(scope_key) -> bytes | None，save(scope_key, bytes)。
scope_key 为 "global" 或 "character_<id>"，payload 是整个作用域变量系统的 JSON。
提供三种实现：每个作用域一个JSON文件、SQLite表、进程内字典（测试用）。
"""
import asyncio
import os
import re
import sqlite3
import time
from contextlib import contextmanager
from typing import Dict, List, Optional

from script_variables.models.errors import StorageError
from script_variables.utils import config
from script_variables.utils.logger_config import logger


class VariableStorage:
    """持久化网关接口"""

    async def load(self, scope_key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def save(self, scope_key: str, payload: bytes) -> None:
        raise NotImplementedError

    async def delete(self, scope_key: str) -> None:
        raise NotImplementedError

    async def list_keys(self) -> List[str]:
        raise NotImplementedError


class MemoryStorage(VariableStorage):
    """进程内存储，主要用于测试"""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self.save_count = 0

    async def load(self, scope_key: str) -> Optional[bytes]:
        return self._data.get(scope_key)

    async def save(self, scope_key: str, payload: bytes) -> None:
        # 让出事件循环，模拟真实I/O的挂起点
        await asyncio.sleep(0)
        self._data[scope_key] = bytes(payload)
        self.save_count += 1

    async def delete(self, scope_key: str) -> None:
        self._data.pop(scope_key, None)

    async def list_keys(self) -> List[str]:
        return sorted(self._data)


# --- JSON 文件存储 ---

_UNSAFE_CHARS = re.compile(r"[^\w.\-]")


class JsonFileStorage(VariableStorage):
    """每个作用域一个JSON文件：<root>/<scope_key>.json"""

    def __init__(self, root_dir: str):
        self.root_dir = root_dir

    def _path(self, scope_key: str) -> str:
        safe_key = _UNSAFE_CHARS.sub("_", scope_key)
        return os.path.join(self.root_dir, f"{safe_key}.json")

    def _read(self, scope_key: str) -> Optional[bytes]:
        file_path = self._path(scope_key)
        if not os.path.isfile(file_path):
            return None
        with open(file_path, 'rb') as f:
            return f.read()

    def _write(self, scope_key: str, payload: bytes) -> None:
        os.makedirs(self.root_dir, exist_ok=True)
        file_path = self._path(scope_key)
        # 先写临时文件再替换，避免写到一半的文件被读取
        tmp_path = f"{file_path}.tmp"
        with open(tmp_path, 'wb') as f:
            f.write(payload)
        os.replace(tmp_path, file_path)

    def _remove(self, scope_key: str) -> None:
        file_path = self._path(scope_key)
        if os.path.isfile(file_path):
            os.remove(file_path)

    async def load(self, scope_key: str) -> Optional[bytes]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._read, scope_key)
        except OSError as e:
            logger.error(f"读取变量文件失败 ({scope_key}): {e}")
            raise StorageError(f"读取变量文件失败 ({scope_key}): {e}") from e

    async def save(self, scope_key: str, payload: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, scope_key, payload)
        except OSError as e:
            logger.error(f"保存变量文件失败 ({scope_key}): {e}")
            raise StorageError(f"保存变量文件失败 ({scope_key}): {e}") from e

    async def delete(self, scope_key: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._remove, scope_key)
        except OSError as e:
            raise StorageError(f"删除变量文件失败 ({scope_key}): {e}") from e

    async def list_keys(self) -> List[str]:
        if not os.path.isdir(self.root_dir):
            return []
        return sorted(
            name[:-len(".json")] for name in os.listdir(self.root_dir) if name.endswith(".json")
        )


# --- SQLite 存储 ---

class SqliteStorage(VariableStorage):
    """
    SQLite存储：所有剧本共用一个数据库文件，用 namespace 区分剧本。
    """

    def __init__(self, database_file: str, namespace: str = "default"):
        self.database_file = database_file
        self.namespace = namespace
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        """创建新的数据库连接"""
        # 较长的 timeout 以应对并发写入时的锁定等待
        conn = sqlite3.connect(self.database_file, timeout=15.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    @contextmanager
    def db_access(self):
        """
        提供数据库访问的上下文管理器。
        操作成功时自动提交，发生异常时自动回滚，最后关闭连接。
        """
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize_storage(self) -> None:
        """初始化表结构"""
        if self._initialized:
            return
        directory = os.path.dirname(self.database_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self.db_access() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS variable_scopes (
                    scope_key TEXT PRIMARY KEY,
                    payload BLOB NOT NULL,
                    updated_at REAL NOT NULL
                );
            """)
        self._initialized = True

    def _full_key(self, scope_key: str) -> str:
        return f"{self.namespace}:{scope_key}"

    def _read(self, scope_key: str) -> Optional[bytes]:
        self.initialize_storage()
        with self.db_access() as conn:
            row = conn.execute(
                "SELECT payload FROM variable_scopes WHERE scope_key = ?",
                (self._full_key(scope_key),)
            ).fetchone()
        return bytes(row["payload"]) if row else None

    def _write(self, scope_key: str, payload: bytes) -> None:
        self.initialize_storage()
        with self.db_access() as conn:
            conn.execute(
                """
                INSERT INTO variable_scopes (scope_key, payload, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(scope_key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (self._full_key(scope_key), sqlite3.Binary(payload), time.time())
            )

    def _remove(self, scope_key: str) -> None:
        self.initialize_storage()
        with self.db_access() as conn:
            conn.execute("DELETE FROM variable_scopes WHERE scope_key = ?", (self._full_key(scope_key),))

    def _keys(self) -> List[str]:
        self.initialize_storage()
        prefix = f"{self.namespace}:"
        with self.db_access() as conn:
            rows = conn.execute(
                "SELECT scope_key FROM variable_scopes WHERE scope_key LIKE ? ORDER BY scope_key",
                (f"{prefix}%",)
            ).fetchall()
        return [row["scope_key"][len(prefix):] for row in rows]

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except sqlite3.Error as e:
            logger.error(f"变量数据库操作失败 ({self.namespace}): {e}", exc_info=True)
            raise StorageError(f"变量数据库操作失败: {e}") from e

    async def load(self, scope_key: str) -> Optional[bytes]:
        return await self._run(self._read, scope_key)

    async def save(self, scope_key: str, payload: bytes) -> None:
        await self._run(self._write, scope_key, payload)

    async def delete(self, scope_key: str) -> None:
        await self._run(self._remove, scope_key)

    async def list_keys(self) -> List[str]:
        return await self._run(self._keys)


def create_storage(script_id: Optional[str] = None) -> VariableStorage:
    """根据配置为剧本创建持久化网关"""
    namespace = script_id or "default"
    if config.STORAGE_BACKEND == "sqlite":
        return SqliteStorage(config.DATABASE_FILE, namespace=namespace)
    return JsonFileStorage(os.path.join(config.VARIABLES_DIR, namespace))
