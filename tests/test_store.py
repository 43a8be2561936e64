"""SQLite Store 单元测试

测试内容：
1. TaskStore 增查改，reschedule_count 只增不减
2. 单任务事务：不存在时 TaskNotFoundError，写入失败时 PersistenceFailure
3. LevelStore upsert、KeyValueStore get/set/remove
4. WAL 模式
"""

from unittest.mock import AsyncMock

import pytest
from mynd.reminder.exceptions import PersistenceFailure, TaskNotFoundError
from mynd.reminder.models import LevelProfile, Priority, TaskStatus, TimerPhase
from mynd.reminder.store.sqlite_init import verify_wal_mode
from mynd.reminder.store.transaction import create_task_atomically, save_task_atomically


class TestTaskStore:
    async def test_create_and_get(self, store_group, make_task, insert_tasks):
        task = make_task(task_id="t-1", priority=Priority.HIGH, allowed_intervals=[10, 30])
        await insert_tasks(task)

        loaded = await store_group.task_store.get_task("t-1")
        assert loaded == task

    async def test_get_missing_returns_none(self, store_group):
        assert await store_group.task_store.get_task("missing") is None

    async def test_list_by_owner_and_status(self, store_group, make_task, insert_tasks):
        first = make_task(task_id="t-1")
        second = make_task(task_id="t-2", status=TaskStatus.COMPLETED)
        other = make_task(task_id="t-3", owner_id="owner-2")
        await insert_tasks(second, first, other)

        all_tasks = await store_group.task_store.list_tasks("owner-1")
        assert [t.task_id for t in all_tasks] == ["t-1", "t-2"]

        pending = await store_group.task_store.list_tasks("owner-1", status=TaskStatus.PENDING)
        assert [t.task_id for t in pending] == ["t-1"]

    async def test_save_updates_timer(self, store_group, make_task, insert_tasks, clock):
        task = make_task(task_id="t-1")
        await insert_tasks(task)

        updated = task.model_copy(
            update={"timer": task.timer.model_copy(update={"phase": TimerPhase.SCHEDULED})}
        )
        await save_task_atomically(store_group.conn, store_group.task_store, updated)

        loaded = await store_group.task_store.get_task("t-1")
        assert loaded.timer.phase == TimerPhase.SCHEDULED

    async def test_reschedule_count_never_decreases(self, store_group, make_task, insert_tasks):
        task = make_task(task_id="t-1", reschedule_count=3)
        await insert_tasks(task)

        stale_write = task.model_copy(update={"reschedule_count": 1})
        await save_task_atomically(store_group.conn, store_group.task_store, stale_write)

        loaded = await store_group.task_store.get_task("t-1")
        assert loaded.reschedule_count == 3


class TestTransaction:
    async def test_save_missing_task_raises_not_found(self, store_group, make_task):
        with pytest.raises(TaskNotFoundError):
            await save_task_atomically(
                store_group.conn, store_group.task_store, make_task(task_id="ghost")
            )

    async def test_save_failure_wrapped_and_rolled_back(self, store_group, make_task):
        failing_store = AsyncMock()
        failing_store.save_task.side_effect = RuntimeError("disk full")
        with pytest.raises(PersistenceFailure) as exc_info:
            await save_task_atomically(store_group.conn, failing_store, make_task())
        assert isinstance(exc_info.value.original_error, RuntimeError)
        assert exc_info.value.recoverable is True

    async def test_duplicate_create_wrapped(self, store_group, make_task):
        task = make_task(task_id="t-1")
        await create_task_atomically(store_group.conn, store_group.task_store, task)
        with pytest.raises(PersistenceFailure):
            await create_task_atomically(store_group.conn, store_group.task_store, task)
        assert len(await store_group.task_store.list_tasks("owner-1")) == 1


class TestLevelAndKvStore:
    async def test_level_profile_upsert(self, store_group, clock):
        profile = LevelProfile(owner_id="owner-1", total_xp=40, current_xp=40, last_updated=clock())
        await store_group.level_store.save_profile(profile)
        assert await store_group.level_store.get_profile("owner-1") == profile

        bumped = profile.model_copy(update={"level": 2, "current_xp": 10, "total_xp": 110})
        await store_group.level_store.save_profile(bumped)
        loaded = await store_group.level_store.get_profile("owner-1")
        assert loaded.level == 2
        assert loaded.total_xp == 110

    async def test_missing_profile(self, store_group):
        assert await store_group.level_store.get_profile("nobody") is None

    async def test_kv_roundtrip(self, store_group):
        kv = store_group.kv_store
        assert await kv.get("k") is None
        await kv.set("k", "v1")
        await kv.set("k", "v2")
        assert await kv.get("k") == "v2"
        await kv.remove("k")
        assert await kv.get("k") is None
        # 删除不存在的键不报错
        await kv.remove("k")

    async def test_wal_mode(self, store_group):
        assert await verify_wal_mode(store_group.conn) is True
