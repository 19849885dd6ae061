# script_variables/background/snapshot_backup.py
import asyncio
import json
import os
import re
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from script_variables.utils import config
from script_variables.utils.logger_config import EVENT_SNAPSHOT_BACKUP, log_event, logger

_UNSAFE_CHARS = re.compile(r"[^\w.\-]")


def _backup_prefix(script_id: str) -> str:
    return f"{_UNSAFE_CHARS.sub('_', script_id)}_"


def list_backups(script_id: str, backup_dir: Optional[str] = None) -> List[str]:
    """返回剧本的快照备份文件路径，最新的在前"""
    backup_dir = backup_dir or config.SNAPSHOT_BACKUP_DIR
    if not os.path.isdir(backup_dir):
        return []
    prefix = _backup_prefix(script_id)
    # 文件名中的时间戳可以直接按字典序排序
    return sorted(
        (os.path.join(backup_dir, f) for f in os.listdir(backup_dir)
         if f.startswith(prefix) and f.endswith('.json')),
        reverse=True
    )


def _write_backup(backup_filepath: str, data: dict) -> None:
    with open(backup_filepath, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


async def backup_snapshots(service, backup_dir: Optional[str] = None) -> int:
    """
    导出所有已缓存剧本的变量快照，并清理旧的备份。
    在事件循环中运行，快照在各作用域锁内拷贝。
    返回成功备份的剧本数量。
    """
    backup_dir = backup_dir or config.SNAPSHOT_BACKUP_DIR
    backed_up = 0
    try:
        os.makedirs(backup_dir, exist_ok=True)
    except OSError as e:
        logger.error(f"无法创建快照备份目录 {backup_dir}: {e}", exc_info=True)
        return 0

    loop = asyncio.get_running_loop()
    for script_id, manager in service.cached_managers().items():
        try:
            # 1. 创建带时间戳的备份文件名
            timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
            backup_filepath = os.path.join(backup_dir, f"{_backup_prefix(script_id)}{timestamp}.json")

            # 2. 加锁导出快照，文件写入放到线程池
            snapshot = await manager.export_snapshots_async()
            await loop.run_in_executor(None, _write_backup, backup_filepath, snapshot.to_dict())
            logger.info(f"剧本 {script_id} 的变量快照已备份至: {backup_filepath}")
            backed_up += 1

            # 3. 清理旧的备份
            cleanup_old_backups(script_id, backup_dir)
        except Exception as e:
            logger.error(f"剧本 {script_id} 的变量快照备份失败: {e}", exc_info=True)

    if backed_up:
        log_event(EVENT_SNAPSHOT_BACKUP, {"scripts": backed_up, "backup_dir": backup_dir})
    return backed_up


def cleanup_old_backups(script_id: str, backup_dir: Optional[str] = None):
    """
    清理超过 MAX_SNAPSHOT_BACKUPS 数量的旧备份文件。
    """
    try:
        backups = list_backups(script_id, backup_dir)
        if len(backups) > config.MAX_SNAPSHOT_BACKUPS:
            for f in backups[config.MAX_SNAPSHOT_BACKUPS:]:
                os.remove(f)
                logger.info(f"已删除旧的快照备份: {f}")
    except Exception as e:
        logger.error(f"清理旧快照备份时出错: {e}", exc_info=True)


def load_latest_backup(script_id: str, backup_dir: Optional[str] = None) -> Optional[dict]:
    """读取剧本最新的快照备份，没有备份时返回 None"""
    backups = list_backups(script_id, backup_dir)
    if not backups:
        return None
    with open(backups[0], 'r', encoding='utf-8') as f:
        return json.load(f)


def start_backup_scheduler(service) -> AsyncIOScheduler:
    """
    在当前事件循环上启动调度器，按 SNAPSHOT_BACKUP_INTERVAL_MINUTES 定期备份变量快照。
    必须在运行中的事件循环内调用（如 FastAPI 的 startup 事件）。
    """
    scheduler = AsyncIOScheduler(timezone='Asia/Shanghai', event_loop=asyncio.get_running_loop())
    scheduler.add_job(
        backup_snapshots,
        trigger=IntervalTrigger(minutes=config.SNAPSHOT_BACKUP_INTERVAL_MINUTES),
        args=[service],
        id='variable_snapshot_backup',
        name='Variable Snapshot Backup',
        replace_existing=True
    )
    scheduler.start()
    logger.info(f"变量快照备份任务已启动，每 {config.SNAPSHOT_BACKUP_INTERVAL_MINUTES} 分钟执行一次。")
    return scheduler
