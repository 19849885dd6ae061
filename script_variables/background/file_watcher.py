# script_variables/background/file_watcher.py
import asyncio
import os
import time
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from script_variables.utils import config
from script_variables.utils.logger_config import logger


class ScriptConfigChangeHandler(FileSystemEventHandler):
    """
    剧本变量配置文件变化时让对应的变量管理器缓存失效。
    事件来自 watchdog 线程，失效（含写回未持久化的修改）交给服务所在的事件循环执行。
    """

    def __init__(self, service, loop: asyncio.AbstractEventLoop):
        self.service = service
        self.loop = loop
        # 使用一个简单的去抖动机制来避免短时间内重复失效
        self.last_triggered = {}

    def _should_trigger(self, path):
        """检查事件是否应该触发失效（去抖动）"""
        now = time.time()
        last_time = self.last_triggered.get(path, 0)
        if now - last_time > 2: # 2秒的冷却时间
            self.last_triggered[path] = now
            return True
        return False

    def handle_path(self, path):
        """处理一个变化的路径，返回调度到事件循环上的 Future；被忽略时返回 None"""
        file_name = os.path.basename(path)
        if not file_name.endswith(".json"):
            return None
        script_id = os.path.splitext(file_name)[0]
        if not self._should_trigger(path):
            return None

        future = asyncio.run_coroutine_threadsafe(self.service.invalidate_instance(script_id), self.loop)
        future.add_done_callback(lambda f: self._report(file_name, script_id, f))
        return future

    def _report(self, file_name, script_id, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to invalidate variable manager for '{script_id}': {error}")
        elif future.result():
            logger.info(f"File watcher detected change of {file_name}, variable manager for '{script_id}' invalidated.")

    def on_modified(self, event):
        if event.is_directory:
            return
        self.handle_path(event.src_path)

    def on_created(self, event):
        if event.is_directory:
            return
        self.handle_path(event.src_path)


def start_file_watcher(service):
    """启动配置目录监控，返回 Observer（自带后台线程）。必须在运行中的事件循环内调用"""
    path = config.SCRIPTS_CONFIG_DIR
    os.makedirs(path, exist_ok=True)

    handler = ScriptConfigChangeHandler(service, asyncio.get_running_loop())
    observer = Observer()
    observer.schedule(handler, path, recursive=False)
    observer.daemon = True
    observer.start()

    logger.info(f"Started file watcher on directory: '{path}'")
    return observer
