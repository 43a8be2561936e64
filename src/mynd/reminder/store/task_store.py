"""TaskStore SQLite 实现

此处仅提供数据库操作，不自动提交事务，由调用方管理。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.task import Task, TimerState

_COLUMNS = (
    "task_id, owner_id, title, priority, allowed_intervals, status, timer, "
    "reschedule_count, subtask_count, created_at, updated_at"
)


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        await self._conn.execute(
            f"INSERT INTO tasks ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.task_id,
                task.owner_id,
                task.title,
                task.priority.value,
                json.dumps(task.allowed_intervals),
                task.status.value,
                task.timer.model_dump_json(),
                task.reschedule_count,
                task.subtask_count,
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_tasks(self, owner_id: str, status: str | None = None) -> list[Task]:
        """查询用户的任务列表，支持按状态筛选，按 created_at 正序"""
        if status:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM tasks WHERE owner_id = ? AND status = ? "
                "ORDER BY created_at ASC",
                (owner_id, status),
            )
        else:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM tasks WHERE owner_id = ? ORDER BY created_at ASC",
                (owner_id,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def save_task(self, task: Task) -> bool:
        """覆盖写入任务的可变字段

        reschedule_count 取存储值与新值的较大者，保证只增不减。

        Returns:
            True 如果命中了已有记录
        """
        cursor = await self._conn.execute(
            """
            UPDATE tasks
            SET title = ?, priority = ?, allowed_intervals = ?, status = ?, timer = ?,
                reschedule_count = MAX(reschedule_count, ?),
                subtask_count = ?, updated_at = ?
            WHERE task_id = ?
            """,
            (
                task.title,
                task.priority.value,
                json.dumps(task.allowed_intervals),
                task.status.value,
                task.timer.model_dump_json(),
                task.reschedule_count,
                task.subtask_count,
                task.updated_at.isoformat(),
                task.task_id,
            ),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row[0],
            owner_id=row[1],
            title=row[2],
            priority=row[3],
            allowed_intervals=json.loads(row[4]),
            status=row[5],
            timer=TimerState.model_validate_json(row[6]),
            reschedule_count=row[7],
            subtask_count=row[8],
            created_at=datetime.fromisoformat(row[9]),
            updated_at=datetime.fromisoformat(row[10]),
        )
