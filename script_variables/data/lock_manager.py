# lock_manager.py
"""
按名称区分的异步互斥锁

同一作用域的 "解析 -> 修改 -> 持久化" 必须串行执行，
不同作用域的锁互不影响。
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from script_variables.utils.logger_config import logger


class LockManager:
    """为每个锁名维护一个 asyncio.Lock"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def acquire(self, key: str):
        """
        获取指定名称的锁，在 async with 块结束后释放。
        块内抛出的异常会在释放锁之后继续向上传播。
        """
        lock = self._get_lock(key)
        if lock.locked():
            logger.debug(f"等待锁释放: {key}")
        async with lock:
            yield

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def lock_count(self) -> int:
        """当前被持有的锁数量"""
        return sum(1 for lock in self._locks.values() if lock.locked())

    def clear_all_locks(self) -> None:
        """丢弃所有锁对象（只应在没有进行中的操作时调用）"""
        held = self.lock_count()
        if held:
            logger.warning(f"清除锁时仍有 {held} 个锁被持有")
        self._locks.clear()
