"""单任务写入事务封装

在同一 SQLite 事务内提交一次任务写入，失败时回滚并转换为 PersistenceFailure。
"""

import aiosqlite

from ..exceptions import PersistenceFailure, TaskNotFoundError
from ..models.task import Task
from .task_store import SqliteTaskStore


async def save_task_atomically(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    task: Task,
) -> None:
    """原子写入一个任务

    Raises:
        TaskNotFoundError: 存储中已无此任务
        PersistenceFailure: 写入或提交失败（已回滚）
    """
    try:
        found = await task_store.save_task(task)
        if not found:
            await conn.rollback()
            raise TaskNotFoundError(task.task_id)
        await conn.commit()
    except TaskNotFoundError:
        raise
    except Exception as e:
        await conn.rollback()
        raise PersistenceFailure(task.task_id, e) from e


async def create_task_atomically(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    task: Task,
) -> None:
    """原子创建一个任务

    Raises:
        PersistenceFailure: 写入或提交失败（已回滚）
    """
    try:
        await task_store.create_task(task)
        await conn.commit()
    except Exception as e:
        await conn.rollback()
        raise PersistenceFailure(task.task_id, e) from e
