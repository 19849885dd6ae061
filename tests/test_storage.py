# test_storage.py
import asyncio
import os

import pytest

from script_variables.data.lock_manager import LockManager
from script_variables.data.storage import JsonFileStorage, MemoryStorage, SqliteStorage, create_storage
from script_variables.models.errors import StorageError
from script_variables.utils import config


def test_json_file_storage(tmp_path):
    """测试JSON文件存储的读写、列举和删除"""
    gateway = JsonFileStorage(str(tmp_path / "vars"))

    async def scenario():
        assert await gateway.load("global") is None
        await gateway.save("global", b'{"variables": {}}')
        await gateway.save("character_a/b", b"{}")
        assert await gateway.load("global") == b'{"variables": {}}'
        assert await gateway.list_keys() == ["character_a_b", "global"]
        await gateway.delete("global")
        assert await gateway.load("global") is None

    asyncio.run(scenario())
    assert os.path.isfile(tmp_path / "vars" / "character_a_b.json")
    assert not os.path.exists(tmp_path / "vars" / "global.json.tmp")


def test_json_file_storage_wraps_os_errors(tmp_path):
    blocker = tmp_path / "afile"
    blocker.write_text("not a directory")
    gateway = JsonFileStorage(str(blocker / "sub"))

    with pytest.raises(StorageError):
        asyncio.run(gateway.save("global", b"{}"))


def test_sqlite_storage_namespaces(tmp_path):
    db_file = str(tmp_path / "db" / "variables.db")
    first = SqliteStorage(db_file, namespace="s1")
    second = SqliteStorage(db_file, namespace="s2")

    async def scenario():
        await first.save("global", b'{"a": 1}')
        await first.save("global", b'{"a": 2}')
        await first.save("character_alice", b"{}")
        assert await first.load("global") == b'{"a": 2}'
        assert await second.load("global") is None
        assert await first.list_keys() == ["character_alice", "global"]
        assert await second.list_keys() == []
        await first.delete("character_alice")
        assert await first.list_keys() == ["global"]

    asyncio.run(scenario())


def test_memory_storage_counts_saves():
    gateway = MemoryStorage()

    async def scenario():
        await gateway.save("global", b"1")
        await gateway.save("global", b"2")
        return await gateway.load("global")

    assert asyncio.run(scenario()) == b"2"
    assert gateway.save_count == 2


def test_create_storage_follows_backend(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "VARIABLES_DIR", str(tmp_path))
    monkeypatch.setattr(config, "STORAGE_BACKEND", "json")
    gateway = create_storage("script1")
    assert isinstance(gateway, JsonFileStorage)
    assert gateway.root_dir == os.path.join(str(tmp_path), "script1")

    monkeypatch.setattr(config, "STORAGE_BACKEND", "sqlite")
    monkeypatch.setattr(config, "DATABASE_FILE", str(tmp_path / "v.db"))
    gateway = create_storage("script1")
    assert isinstance(gateway, SqliteStorage)
    assert gateway.namespace == "script1"


def test_lock_manager_serializes_same_key():
    locks = LockManager()
    events = []

    async def worker(name):
        async with locks.acquire("parse_commands_global"):
            events.append(f"{name}-start")
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            events.append(f"{name}-end")

    async def scenario():
        await asyncio.gather(worker("a"), worker("b"))

    asyncio.run(scenario())
    assert events == ["a-start", "a-end", "b-start", "b-end"]


def test_lock_manager_diagnostics():
    locks = LockManager()

    async def scenario():
        async with locks.acquire("parse_commands_global"):
            assert locks.is_locked("parse_commands_global") is True
            assert locks.is_locked("parse_commands_alice") is False
            assert locks.lock_count() == 1
        assert locks.is_locked("parse_commands_global") is False
        assert locks.lock_count() == 0

    asyncio.run(scenario())
    locks.clear_all_locks()
    assert locks.lock_count() == 0


def test_lock_released_on_error():
    locks = LockManager()

    async def scenario():
        with pytest.raises(ValueError):
            async with locks.acquire("k"):
                raise ValueError("boom")
        assert locks.is_locked("k") is False

    asyncio.run(scenario())
